from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from huddle.core import proto
from huddle.core.captures import CaptureIntake, LocalCaptureStore
from huddle.core.directory import SessionDirectory
from huddle.core.errors import RelayError
from huddle.core.registry import ConnectionRegistry
from huddle.core.router import MessageRouter
from huddle.core.supervisor import LifecycleSupervisor

log = logging.getLogger("huddle.server.runtime")


class RelayRuntime:
    """Websocket front end for one relay instance.

    Each instance owns its own directory, registry, router and supervisor, so
    several can run side by side in one process.
    """

    def __init__(self, config: Dict[str, Any]) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:5000"))
        self.ping_interval = config.get("ping_interval_secs", 20)
        self.sweep_interval = float(config.get("sweep_interval_secs", 15))

        self.directory = SessionDirectory()
        self.registry = ConnectionRegistry(
            self.directory,
            send_timeout_s=float(config.get("send_timeout_secs", 10)),
            max_outbound=int(config.get("max_outbound_frames", 256)),
        )

        store = LocalCaptureStore(
            Path(config.get("capture_dir", "uploads")),
            base_url=config.get("capture_base_url"),
        )
        self.captures = CaptureIntake(
            store,
            max_bytes=int(config.get("max_capture_bytes", 200 * 1024 * 1024)),
            max_pending=int(config.get("max_pending_captures", 2)),
        )

        self.router = MessageRouter(
            self.registry,
            captures=self.captures,
            notify_peer_left=bool(config.get("notify_peer_left", True)),
            report_delivery_failures=bool(config.get("report_delivery_failures", True)),
            enforce_same_session=bool(config.get("enforce_same_session", True)),
        )
        self.supervisor = LifecycleSupervisor(
            self.registry,
            self.router,
            captures=self.captures,
            idle_timeout_s=float(config.get("idle_timeout_secs", 0)),
        )

        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            ping_interval=self.ping_interval,
        )
        log.info("Relay listening on ws://%s:%d", self.listen_host, self.port)

        if self.supervisor.idle_timeout_s > 0:
            self._tasks.append(asyncio.create_task(self.supervisor.run(self.sweep_interval), name="idle-sweep"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when listening on port 0."""
        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn_id = self.registry.attach(websocket)
        log.debug("Accepted %s from %s", conn_id, self._fmt_remote(websocket))
        abnormal = True
        try:
            self.router.deliver(conn_id, proto.build_frame(proto.T_WELCOME, proto.RELAY_ID, conn_id, {"id": conn_id}))
            async for raw in websocket:
                await self._dispatch(conn_id, raw)
            abnormal = False
        except websockets.ConnectionClosedError:
            pass
        finally:
            await self.supervisor.disconnect(conn_id, abnormal=abnormal)

    async def _dispatch(self, conn_id: str, raw: Any) -> None:
        self.registry.touch(conn_id)
        try:
            frame = proto.parse_frame(raw)
            await self.router.handle(conn_id, frame)
        except RelayError as exc:
            log.warning("Rejected frame from %s: %s %s", conn_id, exc.code, exc.detail)
            self._send_error(conn_id, exc)

    def _send_error(self, conn_id: str, exc: RelayError) -> None:
        payload = {"code": exc.code, "detail": exc.detail}
        self.router.deliver(conn_id, proto.build_frame(proto.T_ERROR, proto.RELAY_ID, conn_id, payload))

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["RelayRuntime"]
