"""
Upload -> external processing -> notify handshake.

Thumbnails are produced by an external function that watches the bucket. The
API does not hear back from it, so after each upload a background task waits
a fixed delay (and, optionally, for the thumbnail object to show up) and then
notifies the uploader.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from starlette.concurrency import run_in_threadpool

from image_api.db import DbClient, UploadStatus
from image_api.notifications import (
    PROCESSING_COMPLETE,
    PROCESSING_TIMEOUT,
    NotificationBus,
    processing_message,
)
from image_api.storage import StorageClient, thumbnail_path

logger = logging.getLogger(__name__)


class ProcessingWatcher:
    def __init__(
        self,
        *,
        storage: StorageClient,
        db: DbClient,
        bus: NotificationBus,
        delay_seconds: float = 5.0,
        wait_for_thumbnail: bool = False,
        poll_interval_seconds: float = 1.0,
        timeout_seconds: float = 60.0,
    ):
        self.storage = storage
        self.db = db
        self.bus = bus
        self.delay_seconds = delay_seconds
        self.wait_for_thumbnail = wait_for_thumbnail
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, user_id: str, filename: str) -> asyncio.Task:
        """Start watching an upload. Must be called from the event loop."""
        task = asyncio.get_running_loop().create_task(
            self.watch(user_id, filename), name=f"watch:{user_id}/{filename}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def watch(self, user_id: str, filename: str) -> Optional[UploadStatus]:
        try:
            await asyncio.sleep(self.delay_seconds)
            if self.wait_for_thumbnail and not await self._thumbnail_ready(user_id, filename):
                logger.warning(
                    "Thumbnail for %s/%s not found after %.0fs",
                    user_id,
                    filename,
                    self.timeout_seconds,
                )
                return await self._finish(user_id, filename, UploadStatus.TIMED_OUT, PROCESSING_TIMEOUT)
            return await self._finish(user_id, filename, UploadStatus.COMPLETE, PROCESSING_COMPLETE)
        except Exception:
            logger.exception("Processing watch for %s/%s failed", user_id, filename)
            try:
                await run_in_threadpool(
                    self.db.update_upload_status, user_id, filename, UploadStatus.ERROR
                )
            except Exception:
                logger.exception("Could not mark %s/%s as failed", user_id, filename)
            return UploadStatus.ERROR

    async def _thumbnail_ready(self, user_id: str, filename: str) -> bool:
        path = thumbnail_path(user_id, filename)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        while True:
            if await run_in_threadpool(self.storage.exists, path):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval_seconds)

    async def _finish(
        self, user_id: str, filename: str, status: UploadStatus, message_type: str
    ) -> UploadStatus:
        await run_in_threadpool(self.db.update_upload_status, user_id, filename, status)
        await self.bus.publish(user_id, processing_message(message_type, filename))
        logger.info("Upload %s/%s finished processing: %s", user_id, filename, status.name)
        return status

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
