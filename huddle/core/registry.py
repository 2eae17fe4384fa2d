from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterator, Optional, Protocol

import websockets

from .directory import SessionDirectory
from .errors import AlreadyJoined, ConnectionGone
from .proto import encode_frame, now_ms

log = logging.getLogger("huddle.core.registry")

IdFactory = Callable[[], str]
NowFn = Callable[[], int]


class Transport(Protocol):
    """What the relay needs from a client channel (a websocket in production)."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...


class ConnectionState(str, enum.Enum):
    ATTACHED = "attached"
    JOINED = "joined"
    DETACHED = "detached"
    ABNORMALLY_DISCONNECTED = "abnormally_disconnected"


LIVE_STATES = frozenset({ConnectionState.ATTACHED, ConnectionState.JOINED})


@dataclass(slots=True)
class Connection:
    """One attached client.

    Outbound frames go through a bounded queue drained by a writer task, so
    handing a frame to a slow or stalled client never blocks the caller.
    """

    id: str
    transport: Transport
    session_id: Optional[str] = None
    state: ConnectionState = ConnectionState.ATTACHED
    last_seen_ms: int = field(default_factory=now_ms)
    send_timeout_s: float = 10.0
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=256))
    writer: Optional[asyncio.Task] = None

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def touch(self, now: int) -> None:
        self.last_seen_ms = now

    def enqueue(self, frame: Dict[str, Any]) -> bool:
        """Queue a frame for sending. False means it was dropped."""
        if not self.is_live:
            return False
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            log.warning("Outbound queue full for %s; dropped %s", self.id, frame.get("type"))
            return False
        if self.writer is None:
            self.writer = asyncio.create_task(self._write_loop(), name=f"writer-{self.id}")
        return True

    async def drain(self) -> None:
        """Wait until every queued frame was sent or dropped."""
        await self.outbox.join()

    def close_writer(self) -> None:
        if self.writer is not None:
            self.writer.cancel()
            self.writer = None
        while not self.outbox.empty():
            self.outbox.get_nowait()
            self.outbox.task_done()

    async def _write_loop(self) -> None:
        while True:
            frame = await self.outbox.get()
            try:
                await asyncio.wait_for(self.transport.send(encode_frame(frame)), self.send_timeout_s)
            except asyncio.TimeoutError:
                log.warning("Send of %s to %s timed out; dropped", frame.get("type"), self.id)
            except websockets.ConnectionClosed:
                log.debug("Connection %s closed during %s delivery", self.id, frame.get("type"))
            finally:
                self.outbox.task_done()


@dataclass(frozen=True, slots=True)
class Departure:
    """Outcome of removing a connection from its session."""

    connection_id: str
    session_id: Optional[str]
    remaining: FrozenSet[str]


class ConnectionRegistry:
    """Connection id -> connection record and liveness.

    Session membership itself lives in the :class:`SessionDirectory`; the
    registry only remembers which session a connection is in so that leaving
    and detaching always go through the directory first.
    """

    def __init__(
        self,
        directory: SessionDirectory,
        *,
        id_factory: IdFactory = lambda: str(uuid.uuid4()),
        now: NowFn = now_ms,
        send_timeout_s: float = 10.0,
        max_outbound: int = 256,
    ) -> None:
        self.directory = directory
        self.id_factory = id_factory
        self.now = now
        self.send_timeout_s = send_timeout_s
        self.max_outbound = max_outbound
        self._connections: Dict[str, Connection] = {}

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def attach(self, transport: Transport) -> str:
        conn_id = self.id_factory()
        while conn_id in self._connections:
            conn_id = self.id_factory()
        self._connections[conn_id] = Connection(
            id=conn_id,
            transport=transport,
            last_seen_ms=self.now(),
            send_timeout_s=self.send_timeout_s,
            outbox=asyncio.Queue(maxsize=self.max_outbound),
        )
        log.debug("attached %s", conn_id)
        return conn_id

    def detach(self, conn_id: str, *, abnormal: bool = False) -> Optional[Departure]:
        """Remove a connection. Returns None if it was already gone.

        The connection is marked dead and taken out of its session before it
        is dropped from the registry, so it can never be picked as a
        recipient again once this starts.
        """
        conn = self._connections.get(conn_id)
        if conn is None:
            return None
        conn.state = (
            ConnectionState.ABNORMALLY_DISCONNECTED if abnormal else ConnectionState.DETACHED
        )
        session_id = conn.session_id
        remaining: FrozenSet[str] = frozenset()
        if session_id is not None:
            remaining = self.directory.leave(session_id, conn_id)
        conn.close_writer()
        self._connections.pop(conn_id, None)
        log.debug("detached %s (%s)", conn_id, conn.state.value)
        return Departure(connection_id=conn_id, session_id=session_id, remaining=remaining)

    # ------------------------------------------------------------------
    # Session binding
    # ------------------------------------------------------------------

    def join_session(self, conn_id: str, session_id: str) -> Optional[FrozenSet[str]]:
        """Put a live connection into a session.

        Returns the pre-existing members to announce to, or None when the
        connection is already in that session (nothing to announce).
        Raises :class:`AlreadyJoined` if it sits in a different session.
        """
        conn = self._require_live(conn_id)
        if conn.session_id == session_id:
            return None
        if conn.session_id is not None:
            raise AlreadyJoined(f"already in room {conn.session_id}; leave it first")
        before = self.directory.join(session_id, conn_id)
        conn.session_id = session_id
        conn.state = ConnectionState.JOINED
        return before

    def leave_session(self, conn_id: str) -> Optional[Departure]:
        conn = self._require_live(conn_id)
        if conn.session_id is None:
            return None
        session_id = conn.session_id
        remaining = self.directory.leave(session_id, conn_id)
        conn.session_id = None
        conn.state = ConnectionState.ATTACHED
        return Departure(connection_id=conn_id, session_id=session_id, remaining=remaining)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, conn_id: str) -> Optional[Connection]:
        return self._connections.get(conn_id)

    def is_live(self, conn_id: str) -> bool:
        conn = self._connections.get(conn_id)
        return conn is not None and conn.is_live

    def session_of(self, conn_id: str) -> Optional[str]:
        conn = self._connections.get(conn_id)
        return conn.session_id if conn is not None else None

    def touch(self, conn_id: str) -> None:
        conn = self._connections.get(conn_id)
        if conn is not None:
            conn.touch(self.now())

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def __len__(self) -> int:
        return len(self._connections)

    def _require_live(self, conn_id: str) -> Connection:
        conn = self._connections.get(conn_id)
        if conn is None or not conn.is_live:
            raise ConnectionGone(f"connection {conn_id} is no longer attached")
        return conn


__all__ = ["Connection", "ConnectionState", "ConnectionRegistry", "Departure", "Transport"]
