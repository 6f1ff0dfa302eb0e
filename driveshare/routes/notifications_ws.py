# Live notification push over WebSockets, with Redis pub/sub fan-out to other processes.
# The dispatcher calls WebSocketTransport.deliver from worker threads after each commit.
from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Set
from uuid import uuid4

import redis
from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ..db import SessionLocal
from .. import models
from ..redis_client import get_redis, is_redis_enabled
from .auth import user_from_token

router = APIRouter()
logger = logging.getLogger("driveshare.ws")

CHANNEL_PATTERN = "notify:user:*"
# Tags our own publications so the subscriber does not echo them back to local sockets
_ORIGIN = uuid4().hex


def _channel(user_id: int) -> str:
    return f"notify:user:{user_id}"


class ConnectionManager:
    """
    Tracks live notification sockets per user. A user may hold several sessions
    (tabs, devices); each one receives every payload.
    """
    def __init__(self) -> None:
        self.sessions: Dict[int, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self.sessions.setdefault(user_id, set()).add(websocket)

    async def disconnect(self, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            if user_id in self.sessions:
                self.sessions[user_id].discard(websocket)
                if not self.sessions[user_id]:
                    del self.sessions[user_id]

    def has_sessions(self, user_id: int) -> bool:
        return bool(self.sessions.get(user_id))

    async def send_to_user(self, user_id: int, message_text: str) -> None:
        # Copy to avoid iteration over a mutating set
        recipients = list(self.sessions.get(user_id, set()))
        for ws in recipients:
            try:
                if ws.application_state == WebSocketState.CONNECTED:
                    await ws.send_text(message_text)
            except (RuntimeError, WebSocketDisconnect) as exc:
                logger.debug("ws.send.failed", extra={"user_id": user_id, "error": str(exc)})
                await self.disconnect(user_id, ws)


manager = ConnectionManager()


class WebSocketTransport:
    """
    Live transport for the notification dispatcher.

    deliver() is called from request worker threads after commit: it schedules the
    send on the server's event loop without waiting, then publishes to Redis so
    sessions held by other processes receive it too.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, connections: Optional[ConnectionManager] = None) -> None:
        self.loop = loop
        self.connections = connections or manager

    def deliver(self, user_id: int, payload: Dict[str, Any]) -> bool:
        text = json.dumps(payload, default=str)
        local = self.connections.has_sessions(user_id)
        if local and not self.loop.is_closed():
            asyncio.run_coroutine_threadsafe(self.connections.send_to_user(user_id, text), self.loop)

        r = get_redis()
        if r is not None:
            try:
                r.publish(_channel(user_id), json.dumps({"origin": _ORIGIN, "user_id": user_id, "payload": payload}, default=str))
            except redis.RedisError as exc:
                logger.warning("redis.publish.failed", extra={"user_id": user_id, "error": str(exc)})
        return local


def _handle_pubsub_message(message: Dict[str, Any], loop: asyncio.AbstractEventLoop) -> None:
    if message.get("type") != "pmessage":
        return
    data = message.get("data")
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    envelope = json.loads(data)
    if envelope.get("origin") == _ORIGIN:
        return
    user_id = int(envelope["user_id"])
    if manager.has_sessions(user_id):
        text = json.dumps(envelope.get("payload") or {}, default=str)
        asyncio.run_coroutine_threadsafe(manager.send_to_user(user_id, text), loop)


def start_redis_subscriber(loop: asyncio.AbstractEventLoop) -> None:
    """
    Start a background thread that subscribes to notify:user:* and forwards payloads
    published by other processes to local sessions. Best-effort fail-open.
    """
    if not is_redis_enabled():
        logger.info("redis.subscriber.disabled")
        return

    def _run() -> None:
        backoff = 0.5
        max_backoff = 5.0
        while True:
            try:
                r = get_redis()
                if r is None:
                    time.sleep(min(backoff, max_backoff))
                    backoff = min(max_backoff, backoff * 2)
                    continue

                pubsub = r.pubsub()
                pubsub.psubscribe(CHANNEL_PATTERN)
                logger.info("redis.subscriber.started")
                backoff = 0.5
                for message in pubsub.listen():
                    if message is None:
                        continue
                    try:
                        _handle_pubsub_message(message, loop)
                    except (ValueError, KeyError, TypeError) as exc:
                        logger.debug("redis.subscriber.bad_message", extra={"error": str(exc)})
            except redis.RedisError as exc:
                logger.warning("redis.subscriber.reconnect", extra={"error": str(exc)})
                time.sleep(min(backoff, max_backoff))
                backoff = min(max_backoff, backoff * 2)

    t = threading.Thread(target=_run, name="notify-redis-subscriber", daemon=True)
    t.start()


def _get_token_from_ws(websocket: WebSocket) -> Optional[str]:
    # Prefer Authorization header if present
    auth = websocket.headers.get("authorization")
    if auth:
        parts = auth.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    return websocket.query_params.get("token") or None


@router.websocket("/notifications")
async def notifications_ws(websocket: WebSocket) -> None:
    """
    Live notification stream for the authenticated user.

    - Auth: JWT via Authorization: Bearer or ?token=
    - Server -> Client: {"type": "hello", "user_id", "unread"} on connect, then one
      {"type": "notification", ...} frame per notification.
    - Client frames are read only to detect disconnects; "ping" is answered with "pong".
    """
    db = SessionLocal()
    user: Optional[models.User] = None
    try:
        token = _get_token_from_ws(websocket)
        if not token:
            await websocket.close(code=1008)  # Policy violation
            return
        try:
            user = user_from_token(db, token)
        except HTTPException:
            await websocket.close(code=1008)
            return

        unread = (
            db.query(models.Notification)
            .filter(models.Notification.user_id == user.id, models.Notification.is_read == False)  # noqa: E712
            .count()
        )
        user_id = user.id
        db.close()

        await manager.connect(user_id, websocket)
        logger.info("notify.ws.connected", extra={"user_id": user_id, "role": user.role})
        await websocket.send_text(json.dumps({"type": "hello", "user_id": user_id, "unread": unread}))

        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            if raw.strip().lower() == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    finally:
        if user is not None:
            await manager.disconnect(user.id, websocket)
            logger.info("notify.ws.disconnected", extra={"user_id": user.id})
        db.close()
