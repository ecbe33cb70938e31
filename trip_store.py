"""In-memory trip state store.

Trips live only for the lifetime of the process; a restarted service rebuilds
a trip from the main backend on its next location update.
"""

from __future__ import annotations

import asyncio
import enum
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple


class TripStatus(str, enum.Enum):
    ONGOING = "ONGOING"
    STARTED = "STARTED"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DELAYED = "DELAYED"

    @classmethod
    def parse(cls, value: object) -> Optional["TripStatus"]:
        if value is None:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset({TripStatus.COMPLETED, TripStatus.CANCELLED})


class ThresholdKind(str, enum.Enum):
    APPROACHING = "APPROACHING"
    ARRIVED = "ARRIVED"


@dataclass(frozen=True)
class Stop:
    """A pickup point on a route."""
    stop_id: str
    stop_name: str
    latitude: float
    longitude: float
    pickup_stop_order: float = 0.0

    @property
    def coordinate(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)


FiredKey = Tuple[str, str, ThresholdKind]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TripState:
    """Tracking state for one bus trip."""
    trip_id: str
    route_id: str
    stops: List[Stop] = field(default_factory=list)
    current_stop_index: int = -1
    status: TripStatus = TripStatus.ONGOING
    # (trip_id, stop_id, threshold) keys that already produced a notification
    fired: Set[FiredKey] = field(default_factory=set)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_location: Optional[Tuple[float, float]] = None
    last_location_at: Optional[datetime] = None

    @property
    def total_stops(self) -> int:
        return len(self.stops)

    def advance_to(self, index: int) -> None:
        """Move the stop pointer forward; never backwards."""
        if index > self.current_stop_index:
            self.current_stop_index = index

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_dict(self) -> Dict[str, object]:
        return {
            "trip_id": self.trip_id,
            "route_id": self.route_id,
            "current_stop_index": self.current_stop_index,
            "total_stops": self.total_stops,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


TripInitializer = Callable[[], Awaitable[TripState]]


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class TripStore:
    """Owns every ``TripState`` and its fired-notification set.

    Mutations of a trip must happen inside ``async with store.lock(trip_id)``.
    Locks are per trip, so updates for different trips never wait on each other.
    """

    def __init__(self) -> None:
        self._trips: Dict[str, TripState] = {}
        self._locks: Dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def lock(self, trip_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(trip_id)
        if entry is None:
            entry = _LockEntry()
            self._locks[trip_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            # Drop the entry once nobody holds or waits on it
            if entry.users == 0 and self._locks.get(trip_id) is entry:
                del self._locks[trip_id]

    async def get_or_init(self, trip_id: str, initializer: TripInitializer) -> Tuple[TripState, bool]:
        """Return the cached trip, or build it once with ``initializer``.

        The second element is True when the record was created by this call.
        If ``initializer`` raises, nothing is stored and the error propagates.
        """
        state = self._trips.get(trip_id)
        if state is not None:
            return state, False
        state = await initializer()
        if state.trip_id != trip_id:
            raise ValueError(f"initializer returned trip {state.trip_id!r}, expected {trip_id!r}")
        self._trips[trip_id] = state
        print(f"[trip_store] initialized trip {trip_id} route={state.route_id} stops={state.total_stops}")
        return state, True

    def get(self, trip_id: str) -> Optional[TripState]:
        return self._trips.get(trip_id)

    def remove(self, trip_id: str) -> bool:
        """Evict a trip together with its fired-notification set."""
        state = self._trips.pop(trip_id, None)
        if state is None:
            return False
        state.fired.clear()
        print(f"[trip_store] removed trip {trip_id}")
        return True

    def has_fired(self, state: TripState, stop_id: str, kind: ThresholdKind) -> bool:
        return (state.trip_id, stop_id, kind) in state.fired

    def mark_fired(self, state: TripState, stop_id: str, kind: ThresholdKind) -> bool:
        """Record a notification key. Returns False if it was already recorded."""
        key = (state.trip_id, stop_id, kind)
        if key in state.fired:
            return False
        state.fired.add(key)
        return True

    def trip_ids(self) -> List[str]:
        return list(self._trips.keys())

    def __len__(self) -> int:
        return len(self._trips)

    def __contains__(self, trip_id: object) -> bool:
        return trip_id in self._trips


__all__ = [
    "FiredKey",
    "Stop",
    "TERMINAL_STATUSES",
    "ThresholdKind",
    "TripInitializer",
    "TripState",
    "TripStatus",
    "TripStore",
]
