"""
Storage abstraction for Google Cloud Storage and in-memory testing.

Objects are laid out per user:

    <user_id>/<filename>                       original upload
    thumbnails/<user_id>/thumb_<filename>      written by the thumbnail function
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from google.api_core import exceptions as google_exceptions
from google.cloud import storage

THUMBNAIL_ROOT = "thumbnails"
THUMBNAIL_NAME_PREFIX = "thumb_"


def original_path(user_id: str, filename: str) -> str:
    return f"{user_id}/{filename}"


def thumbnail_prefix(user_id: str) -> str:
    return f"{THUMBNAIL_ROOT}/{user_id}/"


def thumbnail_path(user_id: str, filename: str) -> str:
    return f"{thumbnail_prefix(user_id)}{THUMBNAIL_NAME_PREFIX}{filename}"


def filename_for_thumbnail(user_id: str, thumb_path: str) -> str:
    """Recover the stored filename from a thumbnail object path."""
    prefix = thumbnail_prefix(user_id) + THUMBNAIL_NAME_PREFIX
    if not thumb_path.startswith(prefix):
        raise ValueError(f"{thumb_path} is not a thumbnail of user {user_id}")
    return thumb_path[len(prefix):]


def original_path_for_thumbnail(user_id: str, thumb_path: str) -> str:
    return original_path(user_id, filename_for_thumbnail(user_id, thumb_path))


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def list_paths(self, prefix: str) -> list[str]:
        ...

    def presign_get(self, path: str, expires_in: int = 900) -> str:
        ...

    def delete(self, path: str) -> None:
        """Delete an object; raises FileNotFoundError when it does not exist."""
        ...

    def exists(self, path: str) -> bool:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = None
    content_types: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}
        if self.content_types is None:
            self.content_types = {}

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        self.stored_objects[path] = bytes(data)
        self.content_types[path] = content_type

    def list_paths(self, prefix: str) -> list[str]:
        return sorted(p for p in self.stored_objects if p.startswith(prefix))

    def presign_get(self, path: str, expires_in: int = 900) -> str:
        return f"{self.base_url}/{path}?op=get&expires={expires_in}"

    def delete(self, path: str) -> None:
        if path not in self.stored_objects:
            raise FileNotFoundError(path)
        del self.stored_objects[path]
        self.content_types.pop(path, None)

    def exists(self, path: str) -> bool:
        return path in self.stored_objects

    def reset(self) -> None:
        """Clear all stored objects (useful in tests)."""
        self.stored_objects.clear()
        self.content_types.clear()


@dataclass
class GcsStorageClient:
    """
    Google Cloud Storage client. Credentials come from the environment
    (Application Default Credentials).
    """

    bucket: str

    def __post_init__(self):
        self._client = storage.Client()
        self._bucket = self._client.bucket(self.bucket)

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        blob = self._bucket.blob(path)
        blob.upload_from_string(data, content_type=content_type)

    def list_paths(self, prefix: str) -> list[str]:
        return [blob.name for blob in self._client.list_blobs(self.bucket, prefix=prefix)]

    def presign_get(self, path: str, expires_in: int = 900) -> str:
        return self._bucket.blob(path).generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=expires_in),
            method="GET",
        )

    def delete(self, path: str) -> None:
        try:
            self._bucket.blob(path).delete()
        except google_exceptions.NotFound as exc:
            raise FileNotFoundError(path) from exc

    def exists(self, path: str) -> bool:
        return self._bucket.blob(path).exists()
