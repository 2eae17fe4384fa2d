from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Optional

from . import proto
from .captures import CaptureIntake
from .errors import NotJoined, UnknownType
from .proto import (
    ADDRESSED_KINDS,
    RELAY_ID,
    T_CAPTURE_CHUNK,
    T_CAPTURE_END,
    T_CAPTURE_START,
    T_CAPTURE_STORED,
    T_DELIVERY_FAILED,
    T_GUEST_JOINED,
    T_HEARTBEAT,
    T_JOIN_ROOM,
    T_JOINED,
    T_LEAVE_ROOM,
    T_PEER_LEFT,
    build_frame,
)
from .registry import ConnectionRegistry, Departure

log = logging.getLogger("huddle.core.router")


class MessageRouter:
    """Validates client frames and relays them inside a room.

    Join announcements fan out to the members that were present before the
    join. Offers, answers and candidates go to exactly one named recipient,
    stamped with the sender id the relay recorded at attach time.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        captures: Optional[CaptureIntake] = None,
        notify_peer_left: bool = True,
        report_delivery_failures: bool = True,
        enforce_same_session: bool = True,
    ) -> None:
        self.registry = registry
        self.captures = captures
        self.notify_peer_left = notify_peer_left
        self.report_delivery_failures = report_delivery_failures
        self.enforce_same_session = enforce_same_session

    @property
    def directory(self):
        return self.registry.directory

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle(self, sender_id: str, frame: proto.Frame) -> None:
        payload = proto.validate_payload(frame)
        kind = frame.type

        if kind == T_JOIN_ROOM:
            await self.join(sender_id, payload.room_id)
        elif kind == T_LEAVE_ROOM:
            await self.leave(sender_id)
        elif kind in ADDRESSED_KINDS:
            await self.relay(sender_id, kind, frame.to, getattr(payload, ADDRESSED_KINDS[kind]))
        elif kind == T_HEARTBEAT:
            pass
        elif kind in {T_CAPTURE_START, T_CAPTURE_CHUNK, T_CAPTURE_END}:
            await self._handle_capture(sender_id, kind, payload)
        else:  # pragma: no cover - validate_payload rejects unknown kinds
            raise UnknownType(f"unsupported type {kind}")

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------

    async def join(self, sender_id: str, room_id: str) -> FrozenSet[str]:
        """Join ``room_id`` and announce the newcomer to the earlier members.

        Returns the set of members that were announced to. A repeated join of
        the same room only re-acks the sender.
        """
        before = self.registry.join_session(sender_id, room_id)
        if before is None:
            current = self.directory.members(room_id) - {sender_id}
            self._ack_join(sender_id, room_id, current)
            log.debug("%s re-joined %s; nothing to announce", sender_id, room_id)
            return frozenset()

        self._ack_join(sender_id, room_id, before)
        for member in sorted(before):
            self.deliver(member, build_frame(T_GUEST_JOINED, RELAY_ID, member, {"id": sender_id}))
        log.info("%s joined room %s (%d existing member(s))", sender_id, room_id, len(before))
        return before

    async def leave(self, sender_id: str) -> Departure:
        departure = self.registry.leave_session(sender_id)
        if departure is None:
            raise NotJoined("not in a room")
        log.info("%s left room %s", sender_id, departure.session_id)
        self.announce_departure(departure)
        return departure

    def announce_departure(self, departure: Departure) -> None:
        if not self.notify_peer_left or departure.session_id is None:
            return
        for member in sorted(departure.remaining):
            frame = build_frame(T_PEER_LEFT, RELAY_ID, member, {"id": departure.connection_id})
            self.deliver(member, frame)

    # ------------------------------------------------------------------
    # Addressed relay
    # ------------------------------------------------------------------

    async def relay(self, sender_id: str, kind: str, to: str, body: Any) -> bool:
        """Forward one negotiation message to ``to``. Returns True if queued for the recipient."""
        room_id = self.registry.session_of(sender_id)
        if room_id is None:
            raise NotJoined(f"join a room before sending {kind}")

        reason = None
        if not self.registry.is_live(to):
            reason = proto.R_RECIPIENT_UNKNOWN
        elif self.enforce_same_session and not self.directory.is_member(room_id, to):
            reason = proto.R_RECIPIENT_NOT_IN_SESSION
        if reason is not None:
            log.info("Dropped %s from %s to %s: %s", kind, sender_id, to, reason)
            if self.report_delivery_failures:
                self.deliver(
                    sender_id,
                    build_frame(T_DELIVERY_FAILED, RELAY_ID, sender_id, {"to": to, "kind": kind, "reason": reason}),
                )
            return False

        frame = build_frame(kind, sender_id, to, {ADDRESSED_KINDS[kind]: body})
        return self.deliver(to, frame)

    def deliver(self, conn_id: str, frame: Dict[str, Any]) -> bool:
        """Best-effort, non-blocking hand-off to a live connection's outbound queue.

        A frame that cannot be queued, or whose send later fails or times
        out, is dropped and not retried.
        """
        conn = self.registry.get(conn_id)
        if conn is None or not conn.is_live:
            log.debug("Skipped %s to dead connection %s", frame.get("type"), conn_id)
            return False
        return conn.enqueue(frame)

    # ------------------------------------------------------------------
    # Capture upload
    # ------------------------------------------------------------------

    async def _handle_capture(self, sender_id: str, kind: str, payload) -> None:
        if self.captures is None:
            raise UnknownType("capture upload is disabled")
        if kind == T_CAPTURE_START:
            self.captures.start(sender_id, payload)
        elif kind == T_CAPTURE_CHUNK:
            self.captures.chunk(sender_id, payload)
        else:
            url = await self.captures.finish(sender_id, payload)
            self.deliver(
                sender_id,
                build_frame(T_CAPTURE_STORED, RELAY_ID, sender_id, {"capture_id": payload.capture_id, "url": url}),
            )

    def _ack_join(self, sender_id: str, room_id: str, members: FrozenSet[str]) -> None:
        payload = {"room_id": room_id, "id": sender_id, "members": sorted(members)}
        self.deliver(sender_id, build_frame(T_JOINED, RELAY_ID, sender_id, payload))


__all__ = ["MessageRouter"]
