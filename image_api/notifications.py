"""
Per-user real-time notifications over WebSockets.

Each signed-in user has at most one live connection in the registry. A
notification is delivered only if that user happens to be connected when it
is sent; nothing is queued or retried.

The bus decides where a notification is delivered from. The local bus hands
it straight to this process's registry. The Redis bus publishes it on a
channel that every instance listens on, so whichever instance holds the
user's socket delivers it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Dict, Protocol

import redis.asyncio as aioredis
from fastapi import WebSocket
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)

PROCESSING_COMPLETE = "PROCESSING_COMPLETE"
PROCESSING_TIMEOUT = "PROCESSING_TIMEOUT"


def processing_message(message_type: str, filename: str) -> dict:
    return {"type": message_type, "filename": filename}


class ConnectionRegistry:
    """Maps user ids to their live WebSocket connection."""

    def __init__(self):
        self._connections: Dict[str, WebSocket] = {}

    def register(self, user_id: str, websocket: WebSocket) -> None:
        # A newer connection supersedes the old one; the old socket stays
        # open but stops receiving.
        if user_id in self._connections:
            logger.info("Replacing WebSocket connection for user %s", user_id)
        self._connections[user_id] = websocket

    def unregister(self, user_id: str, websocket: WebSocket) -> None:
        if self._connections.get(user_id) is websocket:
            del self._connections[user_id]

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def send(self, user_id: str, message: dict) -> bool:
        """Send a JSON message to the user's connection. Returns False if none."""
        websocket = self._connections.get(user_id)
        if websocket is None:
            logger.debug("No connection for user %s, dropping %s", user_id, message.get("type"))
            return False
        try:
            await websocket.send_json(message)
        except Exception as exc:
            logger.warning("WebSocket send to user %s failed: %s", user_id, exc)
            self.unregister(user_id, websocket)
            return False
        return True


class NotificationBus(Protocol):
    """Routes a user's notification to whichever process holds their socket."""

    async def publish(self, user_id: str, message: dict) -> None:
        ...

    async def listen(self) -> None:
        """Run until cancelled, delivering messages from other instances."""
        ...

    async def close(self) -> None:
        ...


@dataclass
class LocalNotificationBus:
    """Single-process bus: delivers directly to the local registry."""

    registry: ConnectionRegistry

    async def publish(self, user_id: str, message: dict) -> None:
        await self.registry.send(user_id, message)

    async def listen(self) -> None:
        return None

    async def close(self) -> None:
        return None


@dataclass
class RedisNotificationBus:
    """Redis pub/sub bus for running several API instances."""

    url: str
    registry: ConnectionRegistry
    channel: str = "image_api:notifications"
    reconnect_delay_seconds: float = 1.0
    max_reconnect_delay_seconds: float = 30.0

    def __post_init__(self):
        self.client = aioredis.Redis.from_url(self.url)

    async def publish(self, user_id: str, message: dict) -> None:
        payload = json.dumps({"user_id": user_id, "message": message})
        await self.client.publish(self.channel, payload)

    async def handle(self, raw: bytes | str) -> None:
        try:
            payload = json.loads(raw)
            user_id = payload["user_id"]
            message = payload["message"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed notification on %s: %r", self.channel, raw)
            return
        await self.registry.send(user_id, message)

    async def listen(self) -> None:
        delay = self.reconnect_delay_seconds
        while True:
            pubsub = self.client.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                logger.info("Listening for notifications on %s", self.channel)
                delay = self.reconnect_delay_seconds
                async for item in pubsub.listen():
                    if item.get("type") != "message":
                        continue
                    await self.handle(item["data"])
            except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError) as exc:
                # Connection resets happen on managed Redis; resubscribe after a pause.
                logger.warning(
                    "Lost Redis subscription on %s (%s); retrying in %.1fs",
                    self.channel,
                    exc,
                    delay,
                )
            finally:
                await self._close_pubsub(pubsub)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay_seconds)

    async def _close_pubsub(self, pubsub) -> None:
        try:
            await pubsub.unsubscribe(self.channel)
        except redis_exceptions.RedisError as exc:
            logger.debug("Unsubscribe from %s failed: %s", self.channel, exc)
        await pubsub.aclose()

    async def close(self) -> None:
        await self.client.aclose()
