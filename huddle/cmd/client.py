from __future__ import annotations

import argparse
import asyncio
import contextlib
import hashlib
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Set

import orjson
import websockets
from websockets.asyncio.client import ClientConnection, connect

from huddle.core import proto

log = logging.getLogger("huddle.cmd.client")

CHUNK_SIZE = 64 * 1024


class ClientApp:
    """Interactive debugging client: joins a room and prints what the relay sends."""

    def __init__(self, server_url: str, room_id: str) -> None:
        self.server_url = server_url
        self.room_id = room_id

        self.ws: Optional[ClientConnection] = None
        self.my_id: Optional[str] = None
        self.peers: Set[str] = set()
        self.stored: Dict[str, str] = {}
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with connect(self.server_url) as ws:
            self.ws = ws
            await self._send_frame(proto.T_JOIN_ROOM, {"room_id": self.room_id})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("huddle client ready. Commands: /peers, /offer <id> <sdp>, /answer <id> <sdp>, "
              "/candidate <id> <json>, /upload <path>, /leave, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line:
                await self._handle_command(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split(" ", 2)
        cmd = parts[0]
        if cmd == "/peers":
            print(f"Peers: {', '.join(sorted(self.peers)) or '(none)'}")
        elif cmd in {"/offer", "/answer", "/candidate"} and len(parts) == 3:
            kind = proto.T_ICE_CANDIDATE if cmd == "/candidate" else cmd[1:]
            field = proto.ADDRESSED_KINDS[kind]
            await self._send_frame(kind, {field: _opaque(parts[2])}, to=parts[1])
        elif cmd == "/upload" and len(parts) >= 2:
            await self._cmd_upload(Path(line.split(" ", 1)[1]).expanduser())
        elif cmd == "/leave":
            await self._send_frame(proto.T_LEAVE_ROOM, {})
            self.peers.clear()
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self.handle_incoming(frame)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.stop_event.set()

    def handle_incoming(self, frame: Dict[str, Any]) -> None:
        typ = frame.get("type")
        sender = frame.get("from")
        payload = frame.get("payload") or {}
        if typ == proto.T_WELCOME:
            self.my_id = payload.get("id")
            print(f"[relay] connected as {self.my_id}")
        elif typ == proto.T_JOINED:
            self.peers = set(payload.get("members", []))
            print(f"[relay] joined {payload.get('room_id')} with {len(self.peers)} peer(s)")
        elif typ == proto.T_GUEST_JOINED:
            self.peers.add(payload.get("id"))
            print(f"[room] {payload.get('id')} joined")
        elif typ == proto.T_PEER_LEFT:
            self.peers.discard(payload.get("id"))
            print(f"[room] {payload.get('id')} left")
        elif typ in proto.ADDRESSED_KINDS:
            print(f"[{typ} from {sender}] {payload.get(proto.ADDRESSED_KINDS[typ])}")
        elif typ == proto.T_DELIVERY_FAILED:
            print(f"[relay] {payload.get('kind')} to {payload.get('to')} failed: {payload.get('reason')}")
        elif typ == proto.T_CAPTURE_STORED:
            self.stored[payload.get("capture_id")] = payload.get("url")
            print(f"[capture] stored at {payload.get('url')}")
        elif typ == proto.T_ERROR:
            print(f"ERROR ({payload.get('code')}): {payload.get('detail')}")
        else:
            log.debug("Unhandled frame %s", typ)

    async def _cmd_upload(self, path: Path) -> None:
        if not path.exists():
            print(f"File not found: {path}")
            return
        data = path.read_bytes()
        capture_id = str(uuid.uuid4())
        await self._send_frame(proto.T_CAPTURE_START, {
            "capture_id": capture_id,
            "name": path.name,
            "size": len(data),
            "sha256": hashlib.sha256(data).hexdigest(),
        })
        for index, offset in enumerate(range(0, len(data), CHUNK_SIZE)):
            chunk = data[offset : offset + CHUNK_SIZE]
            await self._send_frame(proto.T_CAPTURE_CHUNK, {
                "capture_id": capture_id,
                "index": index,
                "data": proto.b64url(chunk),
            })
        await self._send_frame(proto.T_CAPTURE_END, {"capture_id": capture_id})
        print(f"Uploading {path} as {capture_id}")

    async def _send_frame(self, type_: str, payload: Dict[str, Any], *, to: Optional[str] = None) -> None:
        assert self.ws is not None
        frame: Dict[str, Any] = {"type": type_, "payload": payload}
        if to is not None:
            frame["to"] = to
        await self.ws.send(orjson.dumps(frame).decode("utf-8"))


def _opaque(text: str) -> Any:
    """Send JSON as structured data, anything else as a plain string."""
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError:
        return text


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="huddle debug client")
    parser.add_argument("--server", required=True, help="ws://host:port of the relay")
    parser.add_argument("--room", required=True, help="Room to join")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(ClientApp(args.server, args.room).run())


if __name__ == "__main__":
    main()
