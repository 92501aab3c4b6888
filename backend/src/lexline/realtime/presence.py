"""Process-local presence bookkeeping.

Presence answers a single question: does a user hold at least one live
connection right now. The persisted ``online_status`` column on lawyer
profiles is advisory only; this registry is the authoritative view for the
current process and is rebuilt from reconnects after a restart.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, Protocol, Set

ONLINE = "online"
OFFLINE = "offline"


class PresenceTracker(Protocol):
    """Interface implemented by presence backends."""

    def record_connect(self, user_id: str, connection_id: str) -> bool: ...

    def record_disconnect(self, user_id: str, connection_id: str) -> bool: ...

    def is_online(self, user_id: str) -> bool: ...

    def statuses(self, user_ids: Iterable[str]) -> dict[str, str]: ...

    def filter_online(self, user_ids: Iterable[str]) -> list[str]: ...

    def online_user_ids(self) -> list[str]: ...


class InMemoryPresenceTracker:
    """Track open connection ids per user inside the current process."""

    def __init__(self) -> None:
        self._connections: Dict[str, Set[str]] = defaultdict(set)

    def record_connect(self, user_id: str, connection_id: str) -> bool:
        """Register *connection_id* and report an offline to online transition."""

        bucket = self._connections[user_id]
        was_offline = not bucket
        bucket.add(connection_id)
        return was_offline

    def record_disconnect(self, user_id: str, connection_id: str) -> bool:
        """Forget *connection_id* and report an online to offline transition."""

        bucket = self._connections.get(user_id)
        if not bucket or connection_id not in bucket:
            return False
        bucket.discard(connection_id)
        if bucket:
            return False
        self._connections.pop(user_id, None)
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    def statuses(self, user_ids: Iterable[str]) -> dict[str, str]:
        return {
            str(user_id): ONLINE if self.is_online(str(user_id)) else OFFLINE
            for user_id in user_ids
        }

    def filter_online(self, user_ids: Iterable[str]) -> list[str]:
        return [user_id for user_id in user_ids if self.is_online(user_id)]

    def online_user_ids(self) -> list[str]:
        return [user_id for user_id, bucket in self._connections.items() if bucket]

    def clear(self) -> None:
        self._connections.clear()


__all__ = ["ONLINE", "OFFLINE", "PresenceTracker", "InMemoryPresenceTracker"]
