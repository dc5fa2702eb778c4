"""
Secret loading from Google Secret Manager, with an env-backed fallback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from google.api_core import exceptions as google_exceptions
from google.cloud import secretmanager

from image_api.config import Settings

logger = logging.getLogger(__name__)

SECRET_NAMES = (
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "SESSION_SECRET",
)


class MissingSecretError(RuntimeError):
    """Raised when a secret the service cannot start without is absent."""


class SecretSource(Protocol):
    """Anything that can resolve a secret by name."""

    def get(self, name: str) -> Optional[str]:
        ...


@dataclass(frozen=True)
class AppSecrets:
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    session_secret: Optional[str] = None

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    def require_session_secret(self) -> str:
        if not self.session_secret:
            raise MissingSecretError(
                "SESSION_SECRET is not available; refusing to start without it"
            )
        return self.session_secret


@dataclass
class EnvSecretSource:
    """Reads secrets from settings (env vars / .env)."""

    settings: Settings

    def get(self, name: str) -> Optional[str]:
        value = getattr(self.settings, name.lower(), None)
        return value or None


@dataclass
class SecretManagerSource:
    """
    Reads the latest version of each secret from Google Secret Manager.
    """

    project_id: str

    def __post_init__(self):
        self._client = secretmanager.SecretManagerServiceClient()

    def get(self, name: str) -> Optional[str]:
        path = f"projects/{self.project_id}/secrets/{name}/versions/latest"
        try:
            response = self._client.access_secret_version(request={"name": path})
        except google_exceptions.GoogleAPIError as exc:
            # One unreadable secret should not hide the others.
            logger.error("Error accessing secret %s: %s", name, exc)
            return None
        return response.payload.data.decode("utf-8")


def load_secrets(
    settings: Settings, source: Optional[SecretSource] = None
) -> AppSecrets:
    """
    Resolve every secret the app needs. Secret Manager is used when a GCP
    project is configured and in-memory backends are off.
    """
    if source is None:
        if settings.gcp_project_id and not settings.use_in_memory_backends:
            logger.info("Loading secrets from Google Secret Manager...")
            source = SecretManagerSource(settings.gcp_project_id)
        else:
            source = EnvSecretSource(settings)

    values = {name.lower(): source.get(name) for name in SECRET_NAMES}
    missing = [name for name in SECRET_NAMES if not values[name.lower()]]
    if missing:
        logger.warning("Secrets not available: %s", ", ".join(missing))
    else:
        logger.info("Secrets loaded successfully.")
    return AppSecrets(**values)
