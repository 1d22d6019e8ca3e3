from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any
from uuid import uuid4

from fastapi import WebSocket

from dragons_keep.errors import TransportFailure

logger = logging.getLogger(__name__)


class Connection:
    """One subscriber: a websocket plus its own outbox and sender task.

    `enqueue` never blocks. When the outbox is full the oldest pending payload is
    dropped (later `state` frames supersede earlier ones), so a slow client only
    ever hurts itself.
    """

    def __init__(self, websocket: WebSocket, *, max_pending: int = 64) -> None:
        self.websocket = websocket
        self.connection_id = uuid4().hex
        # Player id once the client identifies itself; falls back to connection_id.
        self.client_id: str | None = None
        self.rooms: set[str] = set()
        self.closed = False
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_pending)
        self._sender: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"Connection(id={self.connection_id!r}, client={self.client_id!r})"

    @property
    def identity(self) -> str:
        return self.client_id or self.connection_id

    def start(self) -> None:
        if self._sender is None:
            self._sender = asyncio.create_task(self._drain(), name=f"ws-sender-{self.connection_id}")

    def enqueue(self, payload: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            dropped = self._outbox.get_nowait()
            logger.warning("Outbox full for %s; dropped pending %s frame", self, dropped.get("type"))
            self._outbox.put_nowait(payload)
        return True

    async def _send(self, payload: dict[str, Any]) -> None:
        try:
            await self.websocket.send_json(payload)
        except Exception as e:
            raise TransportFailure(f"send to {self.identity} failed: {e}") from e

    async def _drain(self) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                await self._send(payload)
            except TransportFailure as e:
                logger.debug("%s", e)
                self.closed = True
                return

    async def close(self) -> None:
        # Cancels only this connection's pending sends.
        self.closed = True
        if self._sender is not None and not self._sender.done():
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass


class RoomHub:
    """In-process pub/sub keyed by room code.

    Contract:
      - register a socket with `connect(websocket)`, then `subscribe(room_code, conn)`.
      - fan out with `broadcast(room_code, payload)`; deliver point-to-point with
        `send_to(client_id, payload)`.

    Delivery is fire-and-forget: payloads are queued per connection and written by
    that connection's sender task. Payloads should be JSON-serializable dicts.
    """

    def __init__(self, *, max_pending: int = 64) -> None:
        self._max_pending = max_pending
        self._by_room: dict[str, set[Connection]] = defaultdict(set)
        self._by_client: dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        conn = Connection(websocket, max_pending=self._max_pending)
        conn.start()
        return conn

    async def bind_client(self, conn: Connection, client_id: str) -> None:
        """Make `conn` addressable by `client_id`. A newer connection wins."""

        async with self._lock:
            if conn.client_id and conn.client_id != client_id:
                if self._by_client.get(conn.client_id) is conn:
                    self._by_client.pop(conn.client_id, None)
            conn.client_id = client_id
            self._by_client[client_id] = conn

    async def subscribe(self, room_code: str, conn: Connection) -> None:
        async with self._lock:
            self._by_room[room_code].add(conn)
            conn.rooms.add(room_code)

    async def unsubscribe(self, room_code: str, conn: Connection) -> None:
        async with self._lock:
            self._discard(room_code, conn)

    def _discard(self, room_code: str, conn: Connection) -> None:
        conns = self._by_room.get(room_code)
        conn.rooms.discard(room_code)
        if not conns:
            return
        conns.discard(conn)
        if not conns:
            self._by_room.pop(room_code, None)

    async def disconnect(self, conn: Connection) -> set[str]:
        """Forget `conn` everywhere. Returns the rooms it was subscribed to."""

        async with self._lock:
            rooms = set(conn.rooms)
            for code in rooms:
                self._discard(code, conn)
            if conn.client_id and self._by_client.get(conn.client_id) is conn:
                self._by_client.pop(conn.client_id, None)
        await conn.close()
        return rooms

    async def broadcast(self, room_code: str, payload: dict[str, Any]) -> int:
        async with self._lock:
            conns = list(self._by_room.get(room_code, set()))

        delivered = 0
        dead: list[Connection] = []
        for conn in conns:
            if conn.enqueue(payload):
                delivered += 1
            else:
                dead.append(conn)

        if dead:
            async with self._lock:
                for conn in dead:
                    self._discard(room_code, conn)
        return delivered

    async def send_to(self, client_id: str, payload: dict[str, Any]) -> bool:
        async with self._lock:
            conn = self._by_client.get(client_id)
        if conn is None:
            logger.debug("No live connection for %s; dropping %s", client_id, payload.get("type"))
            return False
        return conn.enqueue(payload)

    async def subscriber_count(self, room_code: str) -> int:
        async with self._lock:
            return len(self._by_room.get(room_code, ()))

    async def is_connected(self, client_id: str) -> bool:
        async with self._lock:
            conn = self._by_client.get(client_id)
            return conn is not None and not conn.closed
