from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import orjson
import pytest

from huddle.core.directory import SessionDirectory
from huddle.core.registry import ConnectionRegistry
from huddle.core.router import MessageRouter


class FakeTransport:
    """Collects what the relay sends to one client."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, message: str) -> None:
        self.sent.append(orjson.loads(message))

    async def close(self) -> None:
        self.closed = True

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f["type"] == type_]


@pytest.fixture
def directory():
    return SessionDirectory()


@pytest.fixture
def clock():
    # mutable clock so tests can age connections
    return {"now": 1_700_000_000_000}


@pytest.fixture
def registry(directory, clock):
    counter = iter(range(1, 10_000))
    return ConnectionRegistry(
        directory,
        id_factory=lambda: f"conn-{next(counter)}",
        now=lambda: clock["now"],
    )


@pytest.fixture
def router(registry):
    return MessageRouter(registry)


@pytest.fixture
def attach(registry):
    """attach() -> (conn_id, transport)"""
    def _attach():
        transport = FakeTransport()
        return registry.attach(transport), transport
    return _attach


class StalledTransport(FakeTransport):
    """A client that stops reading: every send after the first ``accept`` hangs."""

    def __init__(self, accept: int = 0) -> None:
        super().__init__()
        self.accept = accept
        self.release = asyncio.Event()

    async def send(self, message: str) -> None:
        if len(self.sent) >= self.accept:
            await self.release.wait()
        await super().send(message)


@pytest.fixture
def settle(registry):
    """settle(*conn_ids) waits until queued frames reached the transports (all connections by default)."""
    async def _settle(*conn_ids):
        conns = [registry.get(c) for c in conn_ids] if conn_ids else list(registry)
        for conn in conns:
            if conn is not None:
                await conn.drain()
    return _settle


@pytest.fixture
def stalled_transport():
    return StalledTransport()
