from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .captures import CaptureIntake
from .registry import ConnectionRegistry, Departure
from .router import MessageRouter

log = logging.getLogger("huddle.core.supervisor")


class LifecycleSupervisor:
    """Cleans up after connections that go away, cleanly or not.

    Both endings (DETACHED and ABNORMALLY_DISCONNECTED) take the same path:
    leave the room, drop the registry entry, discard unfinished captures and,
    if enabled on the router, tell the remaining members with ``peer-left``.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        router: MessageRouter,
        *,
        captures: Optional[CaptureIntake] = None,
        idle_timeout_s: float = 0.0,
    ) -> None:
        self.registry = registry
        self.router = router
        self.captures = captures
        self.idle_timeout_s = idle_timeout_s

    async def disconnect(self, conn_id: str, *, abnormal: bool = False) -> Optional[Departure]:
        departure = self.registry.detach(conn_id, abnormal=abnormal)
        if departure is None:
            return None
        if self.captures is not None:
            self.captures.discard(conn_id)
        if abnormal:
            log.warning("Connection %s dropped abnormally (room=%s)", conn_id, departure.session_id)
        else:
            log.info("Connection %s disconnected (room=%s)", conn_id, departure.session_id)
        self.router.announce_departure(departure)
        return departure

    # ------------------------------------------------------------------
    # Idle sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> List[str]:
        """Disconnect every live connection silent for longer than the idle timeout."""
        if self.idle_timeout_s <= 0:
            return []
        deadline_ms = self.idle_timeout_s * 1000
        now = self.registry.now()
        stale = [c for c in self.registry if c.is_live and now - c.last_seen_ms > deadline_ms]
        for conn in stale:
            await self.disconnect(conn.id, abnormal=True)
            try:
                await conn.transport.close()
            except Exception:  # pragma: no cover - transport already gone
                log.debug("close failed for idle connection %s", conn.id, exc_info=True)
        if stale:
            log.warning("Swept %d idle connection(s)", len(stale))
        return [c.id for c in stale]

    async def run(self, interval_s: float = 15.0) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:  # pragma: no cover - keep sweeping
                log.exception("idle sweep error")
            await asyncio.sleep(interval_s)


__all__ = ["LifecycleSupervisor"]
