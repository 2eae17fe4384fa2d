import pytest

from huddle.core.errors import AlreadyJoined
from huddle.core.registry import ConnectionState


def test_attach_allocates_unique_live_ids(attach, registry):
    a, _ = attach()
    b, _ = attach()
    assert a != b
    assert registry.is_live(a) and registry.is_live(b)
    assert registry.get(a).state is ConnectionState.ATTACHED
    assert registry.session_of(a) is None


def test_attach_skips_colliding_ids(directory):
    from huddle.core.registry import ConnectionRegistry

    ids = iter(["x", "x", "y"])
    reg = ConnectionRegistry(directory, id_factory=lambda: next(ids))
    assert reg.attach(object()) == "x"
    assert reg.attach(object()) == "y"


def test_join_session_marks_joined(attach, registry, directory):
    a, _ = attach()
    assert registry.join_session(a, "room1") == frozenset()
    assert registry.get(a).state is ConnectionState.JOINED
    assert registry.session_of(a) == "room1"
    assert directory.members("room1") == frozenset({a})


def test_rejoin_same_session_is_noop(attach, registry, directory):
    a, _ = attach()
    b, _ = attach()
    registry.join_session(a, "room1")
    registry.join_session(b, "room1")
    assert registry.join_session(b, "room1") is None
    assert directory.members("room1") == frozenset({a, b})


def test_join_different_session_rejected(attach, registry, directory):
    a, _ = attach()
    registry.join_session(a, "room1")
    with pytest.raises(AlreadyJoined):
        registry.join_session(a, "room2")
    assert "room2" not in directory
    assert registry.session_of(a) == "room1"


def test_leave_then_join_other_session(attach, registry, directory):
    a, _ = attach()
    registry.join_session(a, "room1")
    departure = registry.leave_session(a)
    assert departure.session_id == "room1"
    assert departure.remaining == frozenset()
    assert registry.get(a).state is ConnectionState.ATTACHED
    assert registry.join_session(a, "room2") == frozenset()
    assert "room1" not in directory


def test_detach_leaves_session_first(attach, registry, directory):
    a, _ = attach()
    b, _ = attach()
    registry.join_session(a, "room1")
    registry.join_session(b, "room1")

    departure = registry.detach(b)
    assert departure.session_id == "room1"
    assert departure.remaining == frozenset({a})
    assert directory.members("room1") == frozenset({a})
    assert not registry.is_live(b)
    assert registry.get(b) is None


def test_detach_is_idempotent(attach, registry):
    a, _ = attach()
    assert registry.detach(a) is not None
    assert registry.detach(a) is None
    assert registry.detach("never-attached") is None


def test_detach_without_session(attach, registry):
    a, _ = attach()
    departure = registry.detach(a, abnormal=True)
    assert departure.session_id is None
    assert departure.remaining == frozenset()


def test_touch_updates_last_seen(attach, registry, clock):
    a, _ = attach()
    clock["now"] += 5_000
    registry.touch(a)
    assert registry.get(a).last_seen_ms == clock["now"]
    registry.touch("ghost")  # unknown ids are ignored


def test_joining_after_detach_raises(attach, registry):
    from huddle.core.errors import ConnectionGone

    a, _ = attach()
    registry.detach(a)
    with pytest.raises(ConnectionGone):
        registry.join_session(a, "room1")
    with pytest.raises(ConnectionGone):
        registry.leave_session(a)
