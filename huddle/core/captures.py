from __future__ import annotations

import asyncio
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Tuple
from urllib.parse import quote

from .errors import CaptureRejected
from .proto import (
    CaptureChunkPayload,
    CaptureEndPayload,
    CaptureStartPayload,
    b64url_decode,
    now_ms,
)

log = logging.getLogger("huddle.core.captures")

NowFn = Callable[[], int]

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class CaptureStore(Protocol):
    """Durable home for finished captures."""

    async def save(self, name: str, data: bytes) -> str:
        """Store ``data`` and return a URL it can be fetched from."""
        ...


def safe_name(name: str) -> str:
    base = Path(name.replace("\\", "/")).name
    cleaned = _UNSAFE.sub("_", base).strip("._")
    return cleaned or "capture.bin"


class LocalCaptureStore:
    """Writes captures into a directory as ``<epoch-ms>-<name>``.

    URLs are ``file://`` URIs unless ``base_url`` is given, in which case the
    stored file name is appended to it.
    """

    def __init__(self, root: Path, base_url: Optional[str] = None, now: NowFn = now_ms) -> None:
        self.root = Path(root)
        self.base_url = base_url
        self.now = now

    async def save(self, name: str, data: bytes) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        filename = f"{self.now()}-{safe_name(name)}"
        dest = self.root / filename
        await asyncio.to_thread(dest.write_bytes, data)
        log.info("Stored capture %s (%d bytes)", dest, len(data))
        if self.base_url:
            return f"{self.base_url.rstrip('/')}/{quote(filename)}"
        return dest.resolve().as_uri()


@dataclass
class PendingCapture:
    name: str
    size: int
    sha256: str
    chunks: Dict[int, bytes] = field(default_factory=dict)
    received: int = 0

    def add_chunk(self, index: int, data: bytes) -> None:
        previous = self.chunks.get(index)
        if previous is not None:
            self.received -= len(previous)
        self.chunks[index] = data
        self.received += len(data)

    def assemble(self) -> bytes:
        return b"".join(self.chunks[i] for i in sorted(self.chunks))


class CaptureIntake:
    """Reassembles chunked capture uploads per connection and hands them to a store.

    Each connection may have at most ``max_pending`` uploads open at once, and
    their declared sizes together may not exceed ``max_bytes``.
    """

    def __init__(
        self,
        store: CaptureStore,
        *,
        max_bytes: int = 200 * 1024 * 1024,
        max_pending: int = 2,
    ) -> None:
        self.store = store
        self.max_bytes = max_bytes
        self.max_pending = max_pending
        self._pending: Dict[Tuple[str, str], PendingCapture] = {}

    def start(self, owner: str, payload: CaptureStartPayload) -> None:
        if payload.size > self.max_bytes:
            raise CaptureRejected(f"capture exceeds {self.max_bytes} bytes")
        key = (owner, payload.capture_id)
        if key in self._pending:
            raise CaptureRejected(f"capture {payload.capture_id} already in progress")
        open_uploads = [p for (o, _), p in self._pending.items() if o == owner]
        if len(open_uploads) >= self.max_pending:
            raise CaptureRejected(f"too many captures in progress (limit {self.max_pending})")
        if sum(p.size for p in open_uploads) + payload.size > self.max_bytes:
            raise CaptureRejected(f"captures in progress would exceed {self.max_bytes} bytes")
        self._pending[key] = PendingCapture(
            name=payload.name, size=payload.size, sha256=payload.sha256.lower()
        )
        log.debug("capture %s started by %s (%d bytes)", payload.capture_id, owner, payload.size)

    def chunk(self, owner: str, payload: CaptureChunkPayload) -> None:
        key = (owner, payload.capture_id)
        pending = self._pending.get(key)
        if pending is None:
            raise CaptureRejected(f"unknown capture {payload.capture_id}")
        try:
            data = b64url_decode(payload.data)
        except (binascii.Error, ValueError) as exc:
            raise CaptureRejected("chunk data is not base64url") from exc
        pending.add_chunk(payload.index, data)
        if pending.received > pending.size:
            self._pending.pop(key, None)
            raise CaptureRejected(f"capture {payload.capture_id} larger than declared")

    async def finish(self, owner: str, payload: CaptureEndPayload) -> str:
        pending = self._pending.pop((owner, payload.capture_id), None)
        if pending is None:
            raise CaptureRejected(f"unknown capture {payload.capture_id}")
        data = pending.assemble()
        if len(data) != pending.size:
            raise CaptureRejected(f"expected {pending.size} bytes, got {len(data)}")
        if hashlib.sha256(data).hexdigest() != pending.sha256:
            raise CaptureRejected("sha256 mismatch")
        try:
            return await self.store.save(pending.name, data)
        except OSError as exc:
            log.exception("Failed to store capture %s", payload.capture_id)
            raise CaptureRejected("storage failed") from exc

    def discard(self, owner: str) -> int:
        """Drop every unfinished upload of ``owner``; return how many were dropped."""
        keys = [k for k in self._pending if k[0] == owner]
        for k in keys:
            self._pending.pop(k, None)
        if keys:
            log.info("Discarded %d unfinished capture(s) from %s", len(keys), owner)
        return len(keys)


__all__ = ["CaptureStore", "LocalCaptureStore", "CaptureIntake", "PendingCapture", "safe_name"]
