"""WebSocket hub that keeps board viewers in sync with task mutations.

Protocol (client -> server)::

    {"type": "subscribe", "event": "task:moved"}     # or "*" for everything
    {"type": "unsubscribe", "event": "task:moved"}
    {"type": "board:subscribe", "boardId": "..."}
    {"type": "ping"}
    {"type": "pong"}

Protocol (server -> client)::

    {"type": "connection:established", "clientId": "client_1", "boardId": null, "timestamp": ...}
    {"type": "task:created", "data": {...}, "timestamp": ...}
    {"type": "ping", "timestamp": ...}

Delivery is best effort: there is no acknowledgement and no replay for
clients that reconnect.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from ..constants import (
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_MAX_WS_CLIENTS,
    DEFAULT_SEND_TIMEOUT_SECONDS,
)
from .bus import TASK_EVENTS, WILDCARD, EventBus, EventType


INVALID_MESSAGE = "Invalid message format"


def _timestamp() -> int:
    return int(time.time() * 1000)


class ClientState(str, Enum):
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    SUBSCRIBED = "subscribed"
    CLOSING = "closing"
    CLOSED = "closed"


_OPEN_STATES = (ClientState.ESTABLISHED, ClientState.SUBSCRIBED)


@dataclass
class _SyncClient:
    ws: WebSocket
    client_id: str
    board_id: Optional[str] = None
    subscriptions: set[str] = field(default_factory=set)
    state: ClientState = ClientState.CONNECTING
    connected_at: float = field(default_factory=time.monotonic)
    last_seen: float = field(default_factory=time.monotonic)

    def is_subscribed(self, event_type: str) -> bool:
        return event_type in self.subscriptions or WILDCARD in self.subscriptions


class BoardSyncHub:
    """Tracks connected viewers and pushes task events to them.

    Usage::

        hub = BoardSyncHub()
        hub.attach(bus)                      # forward service events

        # In a FastAPI WebSocket endpoint:
        await hub.handle_connection(websocket, board_id=board)
    """

    def __init__(
        self,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS,
        heartbeat_timeout: Optional[float] = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT_SECONDS,
        max_clients: int = DEFAULT_MAX_WS_CLIENTS,
    ) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout if heartbeat_timeout is not None else heartbeat_interval * 2
        self.send_timeout = send_timeout
        self.max_clients = max_clients
        self._clients: dict[str, _SyncClient] = {}
        self._next_client_id = 1
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._pending: set[asyncio.Task[int]] = set()
        self._handshakes = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

    # -- wiring --------------------------------------------------------------

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    def attach(self, bus: EventBus) -> None:
        """Forward every task event emitted on *bus* to connected clients."""
        for event_type in TASK_EVENTS:
            bus.subscribe(event_type, self._on_event)

    async def _on_event(self, event_type: str, data: dict[str, Any]) -> None:
        # Mutations must not wait on viewer sockets.
        task = asyncio.get_running_loop().create_task(
            self.broadcast(event_type, data, board_id=data.get("boardId"))
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for broadcasts scheduled by bus events to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- introspection -------------------------------------------------------

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def board_clients(self, board_id: str) -> list[str]:
        return [cid for cid, client in self._clients.items() if client.board_id == board_id]

    def get_client(self, client_id: str) -> Optional[_SyncClient]:
        return self._clients.get(client_id)

    # -- connection lifecycle ------------------------------------------------

    def register(self, websocket: WebSocket, board_id: Optional[str] = None) -> _SyncClient:
        """Track an already-accepted socket and mark it established."""
        client_id = f"client_{self._next_client_id}"
        self._next_client_id += 1
        client = _SyncClient(ws=websocket, client_id=client_id, board_id=board_id or None)
        client.state = ClientState.ESTABLISHED
        self._clients[client_id] = client
        logger.info("WS: client connected {} (board: {})", client_id, client.board_id or "all")
        return client

    async def handle_connection(self, websocket: WebSocket, board_id: Optional[str] = None) -> None:
        """Accept a connection and serve it until the client goes away."""
        self.attach_loop(asyncio.get_running_loop())
        if self.client_count + self._handshakes >= self.max_clients:
            logger.warning("WS: rejecting connection, {} clients already connected", self.client_count)
            await websocket.close(code=1013)
            return

        # Hold a slot while the handshake is in flight.
        self._handshakes += 1
        try:
            await websocket.accept()
        finally:
            self._handshakes -= 1
        client = self.register(websocket, board_id)
        self._ensure_heartbeat()
        try:
            await self._send(client, {
                "type": EventType.CONNECTION_ESTABLISHED.value,
                "clientId": client.client_id,
                "boardId": client.board_id,
                "timestamp": _timestamp(),
            })
            await self._read_loop(client)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.debug("WS: client {} loop ended: {}", client.client_id, exc)
        finally:
            await self._drop(client, close=client.state in _OPEN_STATES)

    async def _drop(self, client: _SyncClient, *, close: bool = True) -> None:
        if self._clients.pop(client.client_id, None) is None and client.state == ClientState.CLOSED:
            return
        client.state = ClientState.CLOSING
        if close:
            try:
                await client.ws.close()
            except Exception as exc:
                logger.debug("WS: close failed for {}: {}", client.client_id, exc)
        client.state = ClientState.CLOSED
        logger.info("WS: client disconnected {} (total={})", client.client_id, self.client_count)

    # -- inbound -------------------------------------------------------------

    async def _read_loop(self, client: _SyncClient) -> None:
        while client.state in _OPEN_STATES:
            raw = await client.ws.receive_text()
            client.last_seen = time.monotonic()
            await self.handle_message(client, raw)

    async def handle_message(self, client: _SyncClient, raw: str) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            await self._send_error(client, INVALID_MESSAGE)
            return
        if not isinstance(message, dict):
            await self._send_error(client, INVALID_MESSAGE)
            return

        kind = message.get("type")
        logger.debug("WS: message from {}: {}", client.client_id, kind)
        if kind in ("subscribe", "unsubscribe"):
            event = message.get("event")
            if not isinstance(event, str) or not event:
                await self._send_error(client, f"Missing event for {kind}")
                return
            if kind == "subscribe":
                client.subscriptions.add(event)
                client.state = ClientState.SUBSCRIBED
                reply = EventType.SUBSCRIBED.value
            else:
                client.subscriptions.discard(event)
                if not client.subscriptions:
                    client.state = ClientState.ESTABLISHED
                reply = EventType.UNSUBSCRIBED.value
            await self._send(client, {"type": reply, "event": event, "timestamp": _timestamp()})
        elif kind == "board:subscribe":
            board_id = message.get("boardId")
            client.board_id = str(board_id) if board_id else None
            logger.info("WS: client {} switched to board {}", client.client_id, client.board_id or "all")
            await self._send(client, {"type": "board:subscribed", "boardId": client.board_id, "timestamp": _timestamp()})
        elif kind == EventType.PING.value:
            await self._send(client, {"type": EventType.PONG.value, "timestamp": _timestamp()})
        elif kind == EventType.PONG.value:
            pass
        else:
            logger.warning("WS: unknown message type from {}: {}", client.client_id, kind)
            await self._send_error(client, f"Unknown message type: {kind}")

    # -- outbound ------------------------------------------------------------

    async def _send(self, client: _SyncClient, message: Union[dict[str, Any], str]) -> bool:
        payload = message if isinstance(message, str) else json.dumps(message, default=str)
        try:
            await asyncio.wait_for(client.ws.send_text(payload), timeout=self.send_timeout)
            return True
        except Exception as exc:
            logger.debug("WS: send to {} failed: {}", client.client_id, exc)
            return False

    async def _send_error(self, client: _SyncClient, error: str) -> None:
        await self._send(client, {"type": EventType.ERROR.value, "error": error, "timestamp": _timestamp()})

    async def broadcast(
        self,
        event_type: Union[str, EventType],
        data: Any,
        board_id: Optional[str] = None,
        exclude_client_id: Optional[str] = None,
    ) -> int:
        """Push ``{type, data, timestamp}`` to every matching client.

        Clients are filtered by subscription first, then by board when both
        the event and the client carry a board id.  Returns the number of
        clients the message reached; clients whose send fails are dropped.
        """
        name = event_type.value if isinstance(event_type, EventType) else str(event_type)
        targets = []
        for client in list(self._clients.values()):
            if client.state not in _OPEN_STATES:
                continue
            if exclude_client_id and client.client_id == exclude_client_id:
                continue
            if not client.is_subscribed(name):
                continue
            if board_id and client.board_id and client.board_id != board_id:
                continue
            targets.append(client)
        if not targets:
            return 0

        payload = json.dumps({"type": name, "data": data, "timestamp": _timestamp()}, default=str)
        results = await asyncio.gather(*(self._send(client, payload) for client in targets))

        sent = 0
        for client, ok in zip(targets, results):
            if ok:
                sent += 1
            else:
                await self._drop(client)
        logger.debug("WS: broadcast {} to {} client(s)", name, sent)
        return sent

    def publish_sync(self, event_type: Union[str, EventType], data: Any, board_id: Optional[str] = None) -> None:
        """Fire-and-forget broadcast from synchronous code or another thread."""
        with self._lock:
            loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            self.attach_loop(running)
            running.create_task(self.broadcast(event_type, data, board_id=board_id))
            return
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.broadcast(event_type, data, board_id=board_id), loop)

    # -- heartbeat -----------------------------------------------------------

    def _ensure_heartbeat(self) -> None:
        if self.heartbeat_interval <= 0:
            return
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.sweep()

    async def sweep(self) -> int:
        """Close clients silent for longer than the timeout, ping the rest.

        Returns the number of clients evicted.
        """
        now = time.monotonic()
        stale: list[_SyncClient] = []
        alive: list[_SyncClient] = []
        for client in list(self._clients.values()):
            if now - client.last_seen > self.heartbeat_timeout:
                stale.append(client)
            else:
                alive.append(client)

        for client in stale:
            logger.warning("WS: stale client detected {}", client.client_id)
            await self._drop(client)

        ping = {"type": EventType.PING.value, "timestamp": _timestamp()}
        results = await asyncio.gather(*(self._send(client, ping) for client in alive))
        for client, ok in zip(alive, results):
            if not ok:
                stale.append(client)
                await self._drop(client)

        logger.debug("WS: heartbeat, {} active client(s)", self.client_count)
        return len(stale)

    async def shutdown(self) -> None:
        """Notify every client, close all connections and stop the heartbeat."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except (asyncio.CancelledError, RuntimeError):
                pass
            self._heartbeat_task = None

        await self.drain()
        clients = list(self._clients.values())
        notice = {"type": EventType.SERVER_SHUTDOWN.value, "timestamp": _timestamp()}
        await asyncio.gather(*(self._send(client, notice) for client in clients))
        for client in clients:
            await self._drop(client)
        logger.info("WS: hub shut down ({} client(s) closed)", len(clients))
