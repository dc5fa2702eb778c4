"""
Pydantic schemas for the image API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel


class EmailEntry(BaseModel):
    value: str


class UserProfile(BaseModel):
    id: str
    displayName: str
    emails: Optional[list[EmailEntry]] = None


class MessageResponse(BaseModel):
    message: str


class ImageItem(BaseModel):
    thumbnailUrl: str
    fullUrl: str
    filename: str


class UploadResponse(BaseModel):
    success: Literal[True] = True
    filename: str


class DeleteResponse(BaseModel):
    success: Literal[True] = True
    message: str = "Image deleted"


class UploadStatusResponse(BaseModel):
    filename: str
    status: str
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: int = 0
    created_at: float
    updated_at: float


class ListUploadsResponse(BaseModel):
    uploads: list[UploadStatusResponse]
