"""Duplex event channel served at ``/ws``.

Protocol (client -> server):
    {"type": "auth", "username": "alice"}   token from the handshake cookie or header
    {"type": "auth", "username": "alice", "token": "<bearer token>"}
    {"type": "subscribe", "taskId": "task-..."}
    {"type": "unsubscribe"}
    {"type": "ping"}

Protocol (server -> client):
    {"type": "auth_success", "sessionId": "..."}
    {"type": "task_update", "taskId": "...", "task": {...}}   on subscribe
    {"type": "log", "taskId": "...", "log": {...}}            each append
    {"type": "unsubscribed"}
    {"type": "pong"}
    {"type": "heartbeat", "timestamp": 1700000000.0}
    {"type": "error", "error": "...", "code": "..."}

Malformed messages are logged and dropped; they never close the connection.
The server closes it when its session ends (logout, account deletion) or
its outbox overflows.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

from fastapi import WebSocket
from loguru import logger

from ..auth import AuthGateway, extract_token
from ..constants import SESSION_COOKIE
from ..errors import AuthenticationError, BotManagerError
from ..events.hub import Connection, TaskEventHub
from ..service import BotManagerService


class EventChannel:
    def __init__(
        self,
        hub: TaskEventHub,
        auth: AuthGateway,
        service: BotManagerService,
        *,
        heartbeat_interval: float,
    ) -> None:
        self._hub = hub
        self._auth = auth
        self._service = service
        self._heartbeat_interval = heartbeat_interval
        self._tokens: dict[str, Optional[str]] = {}  # connection id -> bearer token

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Accept a connection and run its read and write loops.

        Returns when the client disconnects or the server ends the stream
        (session closed, outbox overflow). The subscription is released
        whatever the reason for leaving.
        """
        await websocket.accept()
        conn = self._hub.register()
        handshake_token = extract_token(
            websocket.headers.get("authorization"),
            websocket.cookies.get(SESSION_COOKIE),
        )
        if handshake_token:
            self._tokens[conn.id] = handshake_token
        logger.info("WebSocket connected: {} (total={})", conn.id, self._hub.connection_count)

        reader = asyncio.create_task(self._read_loop(conn, websocket))
        writer = asyncio.create_task(self._write_loop(conn, websocket))
        server_close = False
        try:
            done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                if not finished.cancelled() and finished.exception() is not None:
                    logger.debug("WebSocket {} closed: {!r}", conn.id, finished.exception())
            server_close = writer in done and reader not in done and writer.exception() is None
        finally:
            reader.cancel()
            writer.cancel()
            await asyncio.gather(reader, writer, return_exceptions=True)
            self._hub.unregister(conn.id)
            self._tokens.pop(conn.id, None)
            if server_close:
                await websocket.close(code=conn.close_code)
            logger.info("WebSocket disconnected: {} (total={})", conn.id, self._hub.connection_count)

    # -- internals ---------------------------------------------------------

    async def _read_loop(self, conn: Connection, websocket: WebSocket) -> None:
        while True:
            event = await websocket.receive()
            if event.get("type") == "websocket.disconnect":
                return
            raw = event.get("text")
            if raw is None and event.get("bytes") is not None:
                raw = event["bytes"].decode("utf-8", errors="replace")
            message = self._parse(conn, raw)
            if message is None:
                continue
            self._dispatch(conn, message)

    async def _write_loop(self, conn: Connection, websocket: WebSocket) -> None:
        while True:
            try:
                message = await asyncio.wait_for(conn.outbox.get(), timeout=self._heartbeat_interval)
            except asyncio.TimeoutError:
                message = {"type": "heartbeat", "timestamp": time.time()}
            if message is None:
                return
            await websocket.send_text(json.dumps(message))

    def _parse(self, conn: Connection, raw: Optional[str]) -> Optional[dict[str, Any]]:
        if raw is None:
            logger.warning("WebSocket {}: empty frame dropped", conn.id)
            return None
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("WebSocket {}: malformed JSON dropped: {}", conn.id, exc)
            return None
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            logger.warning("WebSocket {}: message without a type dropped", conn.id)
            return None
        return message

    def _dispatch(self, conn: Connection, message: dict[str, Any]) -> None:
        kind = message["type"]
        try:
            if kind == "auth":
                self._on_auth(conn, message)
            elif kind == "subscribe":
                self._on_subscribe(conn, message)
            elif kind == "unsubscribe":
                self._hub.unsubscribe(conn.id)
                self._hub.send(conn.id, {"type": "unsubscribed"})
            elif kind == "ping":
                self._hub.send(conn.id, {"type": "pong"})
            else:
                logger.warning("WebSocket {}: unknown message type {!r} dropped", conn.id, kind)
        except BotManagerError as exc:
            logger.info("WebSocket {}: {} rejected: {}", conn.id, kind, exc.message)
            self._hub.send(conn.id, {"type": "error", "error": exc.message, "code": exc.code})

    def _on_auth(self, conn: Connection, message: dict[str, Any]) -> None:
        # Without a token in the message, fall back to the handshake credentials.
        token = message.get("token")
        if not isinstance(token, str) or not token:
            token = self._tokens.get(conn.id)
        principal = self._auth.current_principal(token)
        username = message.get("username")
        if username is not None and username != principal.username:
            raise AuthenticationError("Token does not match username")
        conn.principal = principal
        self._tokens[conn.id] = token
        self._hub.send(conn.id, {"type": "auth_success", "sessionId": conn.id})

    def _on_subscribe(self, conn: Connection, message: dict[str, Any]) -> None:
        task_id = message.get("taskId")
        if not isinstance(task_id, str) or not task_id:
            logger.warning("WebSocket {}: subscribe without taskId dropped", conn.id)
            return
        if conn.principal is None:
            raise AuthenticationError("Authenticate before subscribing")
        # Re-resolve so a logout or account deletion since auth is honoured.
        conn.principal = self._auth.current_principal(self._tokens.get(conn.id))
        self._service.watch_task(conn.principal, conn.id, task_id)
