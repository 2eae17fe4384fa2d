from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Iterator, Set

log = logging.getLogger("huddle.core.directory")


class SessionDirectory:
    """Session id -> member connection ids.

    A session exists exactly while it has members: the first join creates the
    entry and the leave that empties it prunes the entry. There is no other
    way to create or delete a session.

    Every operation runs under one mutex and returns immutable snapshots, so
    readers never observe a half-applied join or leave.
    """

    def __init__(self) -> None:
        self._members: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def join(self, session_id: str, connection_id: str) -> FrozenSet[str]:
        """Add a member; return the members that were present just before.

        The joining connection is never part of the returned snapshot.
        """
        with self._lock:
            members = self._members.setdefault(session_id, set())
            before = frozenset(members - {connection_id})
            members.add(connection_id)
        log.debug("join %s -> %s (%d before)", connection_id, session_id, len(before))
        return before

    def leave(self, session_id: str, connection_id: str) -> FrozenSet[str]:
        """Remove a member; return the members that remain."""
        with self._lock:
            members = self._members.get(session_id)
            if members is None:
                return frozenset()
            members.discard(connection_id)
            remaining = frozenset(members)
            if not members:
                del self._members[session_id]
        log.debug("leave %s <- %s (%d remain)", connection_id, session_id, len(remaining))
        return remaining

    def members(self, session_id: str) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._members.get(session_id, ()))

    def is_member(self, session_id: str, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._members.get(session_id, ())

    def sessions(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._members))

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._members

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)


__all__ = ["SessionDirectory"]
