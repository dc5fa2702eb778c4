"""
HTTP and WebSocket routes for the image API.
"""

from __future__ import annotations

import logging
import posixpath
import re
import secrets
from uuid import uuid4

from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
    status,
)
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from image_api.auth import (
    SESSION_STATE_KEY,
    get_current_user,
    login_session,
    profile_from_userinfo,
    session_user_from_websocket,
)
from image_api.config import Settings, get_settings
from image_api.db import DbClient, UploadRecord
from image_api.dependencies import (
    get_connection_registry,
    get_db_client,
    get_oauth_client,
    get_processing_watcher,
    get_storage_client,
)
from image_api.notifications import ConnectionRegistry
from image_api.oauth import GoogleOAuthClient, OAuthError
from image_api.processing import ProcessingWatcher
from image_api.schemas import (
    DeleteResponse,
    ImageItem,
    ListUploadsResponse,
    MessageResponse,
    UploadResponse,
    UploadStatusResponse,
    UserProfile,
)
from image_api.storage import (
    StorageClient,
    filename_for_thumbnail,
    original_path,
    thumbnail_path,
    thumbnail_prefix,
)

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()

EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,10}$")


def _stored_filename(client_filename: str | None) -> str:
    ext = posixpath.splitext(posixpath.basename(client_filename or ""))[1].lower()
    if not EXTENSION_PATTERN.match(ext):
        ext = ""
    return f"{uuid4()}{ext}"


def _upload_status(record: UploadRecord) -> UploadStatusResponse:
    return UploadStatusResponse(**record.as_dict())


def _discard_object(storage: StorageClient, path: str) -> None:
    try:
        storage.delete(path)
    except Exception:
        logger.exception("Failed to remove orphaned object %s", path)


# --- WebSocket ---


@ws_router.websocket("/ws")
async def notifications_socket(
    websocket: WebSocket,
    registry: ConnectionRegistry = Depends(get_connection_registry),
):
    user = session_user_from_websocket(websocket)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    registry.register(user.id, websocket)
    logger.info("WebSocket connected for user %s", user.id)
    try:
        # Client frames carry nothing; keep reading to notice the disconnect.
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        registry.unregister(user.id, websocket)
        logger.info("WebSocket closed for user %s", user.id)


# --- Auth ---


@router.get("/auth/google")
def google_login(
    request: Request,
    oauth: GoogleOAuthClient = Depends(get_oauth_client),
):
    state = secrets.token_urlsafe(24)
    request.session[SESSION_STATE_KEY] = state
    return RedirectResponse(oauth.build_authorize_url(state), status_code=302)


@router.get("/auth/google/callback")
def google_callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    oauth: GoogleOAuthClient = Depends(get_oauth_client),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    failed_url = f"{settings.client_url.rstrip('/')}/login-failed"
    expected_state = request.session.pop(SESSION_STATE_KEY, None)
    if not code or not state or state != expected_state:
        logger.warning("Rejected OAuth callback: missing code or state mismatch")
        return RedirectResponse(failed_url, status_code=302)

    try:
        tokens = oauth.exchange_code(code)
        user = profile_from_userinfo(oauth.fetch_userinfo(tokens["access_token"]))
    except OAuthError as exc:
        logger.error("Google sign-in failed: %s", exc)
        return RedirectResponse(failed_url, status_code=302)

    email = user.emails[0].value if user.emails else None
    try:
        db.upsert_user(user.id, user.displayName, email)
    except Exception:
        logger.exception("Failed to save user %s", user.id)
        return RedirectResponse(failed_url, status_code=302)

    login_session(request, user)
    logger.info("User authenticated: %s", user.displayName)
    return RedirectResponse(settings.client_url, status_code=302)


@router.get(
    "/auth/me", response_model=UserProfile, response_model_exclude_none=True
)
def auth_me(user: UserProfile = Depends(get_current_user)):
    return user


@router.post("/auth/logout", response_model=MessageResponse)
def auth_logout(request: Request, user: UserProfile = Depends(get_current_user)):
    request.session.clear()
    logger.info("User logged out: %s", user.id)
    return MessageResponse(message="Logged out successfully")


# --- Images ---


@router.get("/images", response_model=list[ImageItem])
def list_images(
    user: UserProfile = Depends(get_current_user),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    ttl = settings.signed_url_ttl_seconds
    try:
        items = []
        for thumb in storage.list_paths(thumbnail_prefix(user.id)):
            if thumb.endswith("/"):
                continue
            try:
                filename = filename_for_thumbnail(user.id, thumb)
            except ValueError:
                continue
            items.append(
                ImageItem(
                    thumbnailUrl=storage.presign_get(thumb, expires_in=ttl),
                    fullUrl=storage.presign_get(
                        original_path(user.id, filename), expires_in=ttl
                    ),
                    filename=filename,
                )
            )
    except Exception:
        logger.exception("Failed to fetch images for user %s", user.id)
        raise HTTPException(status_code=500, detail="Failed to fetch images")
    return items


@router.post("/images", response_model=UploadResponse)
async def upload_image(
    file: UploadFile | None = File(None),
    user: UserProfile = Depends(get_current_user),
    storage: StorageClient = Depends(get_storage_client),
    db: DbClient = Depends(get_db_client),
    watcher: ProcessingWatcher = Depends(get_processing_watcher),
    settings: Settings = Depends(get_settings),
):
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="A file is required.")
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image files are allowed.")

    data = await file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="File too large.")

    filename = _stored_filename(file.filename)
    path = original_path(user.id, filename)
    try:
        await run_in_threadpool(storage.upload_bytes, path, data, content_type)
    except Exception:
        logger.exception("Failed to store upload %s/%s", user.id, filename)
        raise HTTPException(status_code=500, detail="Failed to upload image")
    try:
        await run_in_threadpool(
            lambda: db.create_upload(
                user.id,
                filename,
                original_filename=file.filename,
                content_type=content_type,
                size_bytes=len(data),
            )
        )
    except Exception:
        logger.exception("Failed to record upload %s/%s", user.id, filename)
        await run_in_threadpool(_discard_object, storage, path)
        raise HTTPException(status_code=500, detail="Failed to upload image")
    watcher.schedule(user.id, filename)
    logger.info("Stored upload %s/%s (%d bytes)", user.id, filename, len(data))
    return UploadResponse(filename=filename)


@router.delete("/images/{filename}", response_model=DeleteResponse)
def delete_image(
    filename: str,
    user: UserProfile = Depends(get_current_user),
    storage: StorageClient = Depends(get_storage_client),
    db: DbClient = Depends(get_db_client),
):
    name = posixpath.basename(filename)
    if not name:
        raise HTTPException(status_code=404, detail="File not found")

    try:
        storage.delete(original_path(user.id, name))
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except Exception:
        logger.exception("Failed to delete %s/%s", user.id, name)
        raise HTTPException(status_code=500, detail="Failed to delete image")

    # The original is gone, so the upload record goes too.
    db.delete_upload(user.id, name)

    try:
        storage.delete(thumbnail_path(user.id, name))
    except FileNotFoundError:
        # The thumbnail function may not have run yet.
        logger.info("No thumbnail to delete for %s/%s", user.id, name)
    except Exception:
        logger.exception("Failed to delete thumbnail for %s/%s", user.id, name)
        raise HTTPException(status_code=500, detail="Failed to delete image")

    return DeleteResponse()


# --- Upload status ---


@router.get("/uploads", response_model=ListUploadsResponse)
def list_uploads(
    limit: int = Query(50, ge=1, le=500),
    user: UserProfile = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    records = db.list_uploads(user.id, limit=limit)
    return ListUploadsResponse(uploads=[_upload_status(r) for r in records])


@router.get("/uploads/{filename}", response_model=UploadStatusResponse)
def get_upload(
    filename: str,
    user: UserProfile = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    record = db.get_upload(user.id, posixpath.basename(filename))
    if not record:
        raise HTTPException(status_code=404, detail="Upload not found")
    return _upload_status(record)
