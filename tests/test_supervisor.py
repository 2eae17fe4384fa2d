import asyncio

import pytest

from huddle.core.captures import CaptureIntake
from huddle.core.proto import CaptureStartPayload
from huddle.core.registry import ConnectionState
from huddle.core.supervisor import LifecycleSupervisor


class NullStore:
    async def save(self, name, data):
        return "mem://" + name


@pytest.fixture
def supervisor(registry, router):
    return LifecycleSupervisor(registry, router, idle_timeout_s=30)


async def join(router, conn_id, room):
    await router.join(conn_id, room)


@pytest.mark.asyncio
async def test_disconnect_removes_member_and_notifies(supervisor, router, registry, attach, settle):
    a, ta = attach()
    b, _ = attach()
    await join(router, a, "room1")
    await join(router, b, "room1")
    await settle()
    ta.sent.clear()

    departure = await supervisor.disconnect(b)
    await settle()

    assert departure.session_id == "room1"
    assert router.directory.members("room1") == frozenset({a})
    assert not registry.is_live(b)
    assert [f["payload"]["id"] for f in ta.of_type("peer-left")] == [b]


@pytest.mark.asyncio
async def test_abnormal_disconnect_cleans_up_the_same_way(supervisor, router, registry, attach, settle):
    a, ta = attach()
    b, _ = attach()
    await join(router, a, "room1")
    await join(router, b, "room1")
    await settle()
    ta.sent.clear()

    await supervisor.disconnect(b, abnormal=True)
    await settle()

    assert router.directory.members("room1") == frozenset({a})
    assert registry.get(b) is None
    assert len(ta.of_type("peer-left")) == 1


@pytest.mark.asyncio
async def test_disconnect_twice_notifies_once(supervisor, router, attach, settle):
    a, ta = attach()
    b, _ = attach()
    await join(router, a, "room1")
    await join(router, b, "room1")
    await settle()
    ta.sent.clear()

    await supervisor.disconnect(b)
    assert await supervisor.disconnect(b) is None
    await settle()
    assert len(ta.of_type("peer-left")) == 1


@pytest.mark.asyncio
async def test_last_member_leaving_removes_room(supervisor, router, attach):
    a, _ = attach()
    await join(router, a, "room1")
    await supervisor.disconnect(a)
    assert "room1" not in router.directory
    assert router.directory.members("room1") == frozenset()


@pytest.mark.asyncio
async def test_message_to_departed_member_is_dropped(supervisor, router, attach, settle):
    a, ta = attach()
    b, tb = attach()
    await join(router, a, "room1")
    await join(router, b, "room1")
    await supervisor.disconnect(b)
    tb.sent.clear()

    assert await router.relay(a, "answer", b, "late") is False
    await settle()
    assert tb.sent == []
    assert ta.of_type("delivery-failed")[-1]["payload"]["to"] == b


@pytest.mark.asyncio
async def test_disconnect_discards_unfinished_captures(registry, router, attach):
    intake = CaptureIntake(NullStore())
    supervisor = LifecycleSupervisor(registry, router, captures=intake)
    a, _ = attach()
    intake.start(a, CaptureStartPayload(capture_id="c1", name="take.webm", size=4, sha256="0" * 64))

    await supervisor.disconnect(a)
    assert intake.discard(a) == 0


@pytest.mark.asyncio
async def test_sweep_disconnects_idle_connections(supervisor, router, registry, attach, clock, settle):
    a, ta = attach()
    b, tb = attach()
    await join(router, a, "room1")
    await join(router, b, "room1")
    await settle()
    ta.sent.clear()

    clock["now"] += 31_000
    registry.touch(a)

    swept = await supervisor.sweep()
    await settle()

    assert swept == [b]
    assert tb.closed is True
    assert registry.is_live(a)
    assert not registry.is_live(b)
    assert [f["payload"]["id"] for f in ta.of_type("peer-left")] == [b]


@pytest.mark.asyncio
async def test_sweep_disabled_without_timeout(registry, router, attach, clock):
    supervisor = LifecycleSupervisor(registry, router)
    a, _ = attach()
    clock["now"] += 10 ** 9
    assert await supervisor.sweep() == []
    assert registry.get(a).state is ConnectionState.ATTACHED


@pytest.mark.asyncio
async def test_disconnect_of_stalled_member_cancels_its_writer(
    supervisor, router, registry, attach, settle, stalled_transport
):
    s = registry.attach(stalled_transport)
    a, ta = attach()
    await join(router, s, "room1")
    await join(router, a, "room1")
    await asyncio.sleep(0)
    conn = registry.get(s)
    writer = conn.writer

    await asyncio.wait_for(supervisor.disconnect(s, abnormal=True), 1)
    await asyncio.wait_for(conn.drain(), 1)
    await settle()

    assert writer.done()
    assert stalled_transport.sent == []
    assert [f["payload"]["id"] for f in ta.of_type("peer-left")] == [s]
