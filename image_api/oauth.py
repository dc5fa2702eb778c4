"""
Google OAuth 2.0 authorization-code flow: authorize URL, code exchange and
userinfo lookup.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict
from urllib.parse import urlencode

import requests

GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"

SCOPES = (
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
)


class OAuthError(Exception):
    """Raised when Google rejects or garbles a step of the sign-in flow."""


def _json_body(r: requests.Response, what: str) -> Any:
    try:
        return r.json()
    except ValueError as exc:
        raise OAuthError(f"{what} is not valid JSON") from exc


@dataclass
class GoogleOAuthClient:
    client_id: str
    client_secret: str
    redirect_uri: str
    timeout: float = 10.0

    def build_authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "access_type": "offline",
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return f"{GOOGLE_AUTH_ENDPOINT}?{urlencode(params)}"

    def exchange_code(self, code: str) -> Dict[str, Any]:
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        try:
            r = requests.post(GOOGLE_TOKEN_ENDPOINT, data=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise OAuthError(f"Token exchange failed: {exc}") from exc
        if r.status_code >= 400:
            # Keep provider error bodies out of logs.
            raise OAuthError(f"Token exchange failed (status={r.status_code})")
        data = _json_body(r, "Token response")
        if not isinstance(data, dict) or not data.get("access_token"):
            raise OAuthError("Token response missing access_token")
        return data

    def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        try:
            r = requests.get(
                GOOGLE_USERINFO_ENDPOINT,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise OAuthError(f"Userinfo request failed: {exc}") from exc
        if r.status_code >= 400:
            raise OAuthError(f"Userinfo request failed (status={r.status_code})")
        data = _json_body(r, "Userinfo response")
        if not isinstance(data, dict) or not data.get("id"):
            raise OAuthError("Userinfo response missing id")
        return data
