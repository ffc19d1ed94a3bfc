"""TTL cache for room occupancy summaries."""
from __future__ import annotations

from typing import Any, Dict, Optional

from cachetools import TTLCache

OccupancyPayload = Dict[str, Any]


class RoomStatusCache:
    """Caches ``/rooms/{id}/status`` payloads keyed by room id."""

    def __init__(self, ttl: int, maxsize: int = 512) -> None:
        self._cache: TTLCache[str, OccupancyPayload] = TTLCache(maxsize=maxsize, ttl=ttl)

    @staticmethod
    def key(room_id: int) -> str:
        return f"room-status:{room_id}"

    def get(self, room_id: int) -> Optional[OccupancyPayload]:
        return self._cache.get(self.key(room_id))

    def set(self, room_id: int, payload: OccupancyPayload) -> None:
        self._cache[self.key(room_id)] = payload

    def invalidate(self, *room_ids: int) -> None:
        for room_id in room_ids:
            self._cache.pop(self.key(room_id), None)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
