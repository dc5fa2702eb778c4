"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from fastapi import HTTPException

from image_api.config import get_settings
from image_api.db import DbClient, InMemoryDbClient, PostgresDbClient
from image_api.notifications import (
    ConnectionRegistry,
    LocalNotificationBus,
    NotificationBus,
    RedisNotificationBus,
)
from image_api.oauth import GoogleOAuthClient
from image_api.processing import ProcessingWatcher
from image_api.secret_store import AppSecrets, load_secrets
from image_api.storage import GcsStorageClient, InMemoryStorageClient, StorageClient

_secrets: AppSecrets | None = None
_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_registry: ConnectionRegistry | None = None
_bus: NotificationBus | None = None
_watcher: ProcessingWatcher | None = None
_oauth_client: GoogleOAuthClient | None = None


def get_app_secrets() -> AppSecrets:
    """Secrets are resolved once per process, at startup."""
    global _secrets
    if _secrets is None:
        _secrets = load_secrets(get_settings())
    return _secrets


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so user/upload state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.gcs_bucket_name:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = GcsStorageClient(bucket=settings.gcs_bucket_name)
    return _storage_client


def get_connection_registry() -> ConnectionRegistry:
    global _registry
    if _registry is None:
        _registry = ConnectionRegistry()
    return _registry


def get_notification_bus() -> NotificationBus:
    global _bus
    if _bus:
        return _bus

    settings = get_settings()
    registry = get_connection_registry()
    if settings.redis_url and not settings.use_in_memory_backends:
        _bus = RedisNotificationBus(
            url=settings.redis_url,
            registry=registry,
            channel=settings.redis_channel,
        )
    else:
        _bus = LocalNotificationBus(registry=registry)
    return _bus


def get_processing_watcher() -> ProcessingWatcher:
    global _watcher
    if _watcher:
        return _watcher

    settings = get_settings()
    _watcher = ProcessingWatcher(
        storage=get_storage_client(),
        db=get_db_client(),
        bus=get_notification_bus(),
        delay_seconds=settings.processing_notify_delay_seconds,
        wait_for_thumbnail=settings.wait_for_thumbnail,
        poll_interval_seconds=settings.thumbnail_poll_interval_seconds,
        timeout_seconds=settings.thumbnail_timeout_seconds,
    )
    return _watcher


def get_oauth_client() -> GoogleOAuthClient:
    global _oauth_client
    if _oauth_client:
        return _oauth_client

    secrets = get_app_secrets()
    if not secrets.google_configured:
        raise HTTPException(status_code=503, detail="Google sign-in is not configured")
    _oauth_client = GoogleOAuthClient(
        client_id=secrets.google_client_id,
        client_secret=secrets.google_client_secret,
        redirect_uri=get_settings().google_callback_url,
    )
    return _oauth_client


def reset_dependencies() -> None:
    """Drop every cached client (tests and settings reloads)."""
    global _secrets, _db_client, _storage_client, _registry, _bus, _watcher, _oauth_client
    _secrets = None
    _db_client = None
    _storage_client = None
    _registry = None
    _bus = None
    _watcher = None
    _oauth_client = None
