"""
HTTP client for the image API, the same calls the dashboard makes.

The session cookie set by the Google sign-in flow must already be present on
the `requests.Session` (e.g. copied from a browser) for authenticated calls.
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

import requests


class ApiError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ImageApiClient:
    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self.session.request(
            method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
        )
        if not response.ok:
            try:
                message = response.json().get("error")
            except (ValueError, AttributeError):
                message = None
            raise ApiError(
                response.status_code,
                message or f"Request failed with status {response.status_code}",
            )
        if response.status_code == 204:
            return None
        return response.json()

    def get_me(self) -> dict:
        return self._request("GET", "/api/auth/me")

    def logout(self) -> dict:
        return self._request("POST", "/api/auth/logout")

    def list_images(self) -> list[dict]:
        return self._request("GET", "/api/images")

    def upload_image(self, filename: str, data: bytes, content_type: str) -> dict:
        files = {"file": (filename, data, content_type)}
        return self._request("POST", "/api/images", files=files)

    def delete_image(self, filename: str) -> dict:
        return self._request("DELETE", f"/api/images/{quote(filename, safe='')}")

    def get_upload(self, filename: str) -> dict:
        return self._request("GET", f"/api/uploads/{quote(filename, safe='')}")
