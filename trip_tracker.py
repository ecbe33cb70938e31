"""Geofence engine for bus trips.

Location reports are matched against the route's stops; crossing the
approaching or arrived radius of a stop notifies that stop's parents once per
trip. Lifecycle and manual notifications for a trip go through here too.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from backend_client import BackendClient, RouteRecipients
from errors import NoRecipients, NotFound
from geometry import haversine
from push_dispatcher import PushDispatcher
from trip_store import TERMINAL_STATUSES, Stop, ThresholdKind, TripState, TripStatus, TripStore


# Geofence radii (meters)
DEFAULT_APPROACHING_RADIUS_M = 500.0
DEFAULT_ARRIVED_RADIUS_M = 20.0

# Title/message pairs for manual trip status notifications
STATUS_NOTIFICATIONS: Dict[str, Tuple[str, str]] = {
    "STARTED": ("🚌 Bus Started", "Bus has started the trip on Route {route_id}"),
    "ONGOING": ("🚌 Bus On Route", "Bus is currently on the way"),
    "COMPLETED": ("✅ Trip Completed", "Bus has completed the trip"),
    "CANCELLED": ("❌ Trip Cancelled", "Trip has been cancelled. Please check for updates."),
    "DELAYED": ("⏰ Bus Delayed", "Bus is running late. We apologize for the inconvenience."),
}


@dataclass(frozen=True)
class GeofenceConfig:
    """Trigger radii around each stop.

    ``approach_all_stops`` applies the approaching warning to every stop
    instead of only the first one.
    """
    approaching_radius_m: float = DEFAULT_APPROACHING_RADIUS_M
    arrived_radius_m: float = DEFAULT_ARRIVED_RADIUS_M
    approach_all_stops: bool = False

    def __post_init__(self) -> None:
        if self.arrived_radius_m <= 0 or self.approaching_radius_m <= 0:
            raise ValueError("geofence radii must be positive")
        if self.arrived_radius_m >= self.approaching_radius_m:
            raise ValueError(
                f"arrived radius ({self.arrived_radius_m}m) must be smaller than "
                f"approaching radius ({self.approaching_radius_m}m)"
            )


@dataclass
class LocationResult:
    trip_id: str
    current_stop_index: int
    total_stops: int
    status: TripStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "current_stop_index": self.current_stop_index,
            "total_stops": self.total_stops,
            "status": self.status.value,
        }


@dataclass
class PendingNotification:
    """A notification decided during stop evaluation, sent after state is settled.

    ``stop_id`` of None means every recipient on the route.
    """
    stop_id: Optional[str]
    title: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)


class _RecipientLookup:
    """Fetches route recipients at most once per request, and only on demand."""

    def __init__(self, backend: BackendClient, route_id: str) -> None:
        self._backend = backend
        self._route_id = route_id
        self._recipients: Optional[RouteRecipients] = None

    async def route(self) -> RouteRecipients:
        if self._recipients is None:
            self._recipients = await self._backend.get_route_recipients(self._route_id)
        return self._recipients

    async def tokens_for(self, stop_id: Optional[str]) -> List[str]:
        recipients = await self.route()
        if stop_id is None:
            return list(recipients.all_tokens)
        if recipients.by_stop:
            return recipients.for_stop(stop_id)
        # Flat token list carries no stop grouping; resolve through students
        return await self._backend.get_tokens_by_stop(stop_id)


class TripTracker:
    """
    Turns bus location reports into parent notifications.

    Per trip and per stop:
    - APPROACHING: bus within ``approaching_radius_m`` (first stop only unless
      ``approach_all_stops``) -> "bus is coming" to that stop's parents
    - ARRIVED: bus within ``arrived_radius_m`` -> "bus arrived" to that stop's
      parents and "bus is coming" to the next stop's parents

    Each (trip, stop, threshold) fires at most once. Reaching the last stop
    completes the trip. All state changes of an update are applied before any
    notification is sent, so a failing send never leaves the stop index and
    the fired set out of step.
    """

    def __init__(
        self,
        store: TripStore,
        backend: BackendClient,
        dispatcher: PushDispatcher,
        config: Optional[GeofenceConfig] = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.dispatcher = dispatcher
        self.config = config or GeofenceConfig()
        print(
            f"[trip_tracker] approaching={self.config.approaching_radius_m:g}m "
            f"arrived={self.config.arrived_radius_m:g}m "
            f"approach_stops={'all' if self.config.approach_all_stops else 'first'}"
        )

    def active_trip_count(self) -> int:
        return len(self.store)

    # ------------------------------------------------------------------
    # Location updates
    # ------------------------------------------------------------------

    async def process_location(
        self,
        trip_id: str,
        latitude: float,
        longitude: float,
        timestamp: Optional[datetime] = None,
    ) -> LocationResult:
        """Apply one location report and send whatever notifications it triggers.

        Raises ``UpstreamFetchError`` when an unseen trip cannot be looked up.
        """
        async with self.store.lock(trip_id):
            state, created = await self.store.get_or_init(trip_id, lambda: self._load_trip(trip_id))
            lookup = _RecipientLookup(self.backend, state.route_id)

            pending: List[PendingNotification] = []
            if created:
                pending.append(self._started_notification(state))

            if state.status in TERMINAL_STATUSES:
                await self._deliver(pending, lookup)
                return self._result(state)

            if state.status in (TripStatus.STARTED, TripStatus.PAUSED):
                state.status = TripStatus.ONGOING
            state.last_location = (latitude, longitude)
            state.last_location_at = timestamp or datetime.now(timezone.utc)

            pending.extend(self._evaluate_stops(state, (latitude, longitude)))
            completed = self._check_completion(state)
            state.touch()

            await self._deliver(pending, lookup)
            if completed:
                await self.backend.patch_trip_status(trip_id, TripStatus.COMPLETED.value)
                await self._deliver([self._completed_notification(state)], lookup)
            return self._result(state)

    async def _load_trip(self, trip_id: str) -> TripState:
        trip = await self.backend.get_trip(trip_id)
        route_id = str(trip["route_id"])
        stops = await self.backend.get_route_stops(route_id)
        return TripState(trip_id=trip_id, route_id=route_id, stops=stops)

    def _evaluate_stops(self, state: TripState, position: Tuple[float, float]) -> List[PendingNotification]:
        """Check every stop against both radii. Mutates the fired set and stop index."""
        pending: List[PendingNotification] = []
        stops = state.stops
        for i, stop in enumerate(stops):
            distance = haversine(position, stop.coordinate)

            approach_applies = i == 0 or self.config.approach_all_stops
            if (
                approach_applies
                and distance <= self.config.approaching_radius_m
                and self.store.mark_fired(state, stop.stop_id, ThresholdKind.APPROACHING)
            ):
                print(f"[trip_tracker] trip {state.trip_id}: bus {distance:.0f}m from {stop.stop_name!r} (stop {i + 1})")
                pending.append(self._approaching_notification(state, stop, distance))

            if (
                distance <= self.config.arrived_radius_m
                and self.store.mark_fired(state, stop.stop_id, ThresholdKind.ARRIVED)
            ):
                state.advance_to(i)
                print(f"[trip_tracker] trip {state.trip_id}: bus ARRIVED at {stop.stop_name!r} (stop {i + 1})")
                pending.append(self._arrived_notification(state, stop))
                if i + 1 < len(stops):
                    pending.append(self._next_stop_notification(state, stop, stops[i + 1]))
        return pending

    def _check_completion(self, state: TripState) -> bool:
        if not state.stops or state.status == TripStatus.COMPLETED:
            return False
        if state.current_stop_index != len(state.stops) - 1:
            return False
        state.status = TripStatus.COMPLETED
        print(f"[trip_tracker] trip {state.trip_id} completed, all stops reached")
        return True

    async def _deliver(self, pending: Sequence[PendingNotification], lookup: _RecipientLookup) -> int:
        sent = 0
        for note in pending:
            tokens = await lookup.tokens_for(note.stop_id)
            if not tokens:
                continue
            sent += await self.dispatcher.send(tokens, note.title, note.body, note.payload)
        return sent

    def _result(self, state: TripState) -> LocationResult:
        return LocationResult(
            trip_id=state.trip_id,
            current_stop_index=state.current_stop_index,
            total_stops=state.total_stops,
            status=state.status,
        )

    # Notification builders

    def _started_notification(self, state: TripState) -> PendingNotification:
        return PendingNotification(
            stop_id=None,
            title="🚌 Bus Started",
            body="Bus has started the trip",
            payload={"trip_id": state.trip_id, "route_id": state.route_id, "status": TripStatus.STARTED.value},
        )

    def _completed_notification(self, state: TripState) -> PendingNotification:
        return PendingNotification(
            stop_id=None,
            title="✅ Trip Completed",
            body="Bus has completed the trip. Thank you!",
            payload={"trip_id": state.trip_id, "route_id": state.route_id, "status": TripStatus.COMPLETED.value},
        )

    def _approaching_notification(self, state: TripState, stop: Stop, distance: float) -> PendingNotification:
        return PendingNotification(
            stop_id=stop.stop_id,
            title="🚌 Bus is Coming!",
            body=f"Bus is on the way to {stop.stop_name}. It will arrive in a few minutes.",
            payload={
                "trip_id": state.trip_id,
                "stop_id": stop.stop_id,
                "stop_name": stop.stop_name,
                "type": "approaching",
                "distance": str(int(round(distance))),
            },
        )

    def _arrived_notification(self, state: TripState, stop: Stop) -> PendingNotification:
        return PendingNotification(
            stop_id=stop.stop_id,
            title="🚌 Bus Arrived!",
            body=f"Bus has arrived at {stop.stop_name}. Please come to the stop.",
            payload={
                "trip_id": state.trip_id,
                "stop_id": stop.stop_id,
                "stop_name": stop.stop_name,
                "type": "arrived",
            },
        )

    def _next_stop_notification(self, state: TripState, stop: Stop, next_stop: Stop) -> PendingNotification:
        return PendingNotification(
            stop_id=next_stop.stop_id,
            title="🚌 Bus is Coming!",
            body=f"Bus has reached {stop.stop_name} and is now heading to {next_stop.stop_name}. Get ready!",
            payload={
                "trip_id": state.trip_id,
                "stop_id": next_stop.stop_id,
                "stop_name": next_stop.stop_name,
                "previous_stop": stop.stop_name,
                "type": "next_stop_warning",
            },
        )

    # ------------------------------------------------------------------
    # Trip lifecycle
    # ------------------------------------------------------------------

    async def start_trip(self, trip_id: str, route_id: str) -> int:
        """Mark a trip as started and tell every parent on the route."""
        async with self.store.lock(trip_id):
            existing = self.store.get(trip_id)
            if existing is not None and existing.status in TERMINAL_STATUSES:
                # A finished record would otherwise swallow the new run's notifications
                self.store.remove(trip_id)

            async def _build() -> TripState:
                stops = await self.backend.get_route_stops(route_id)
                return TripState(trip_id=trip_id, route_id=route_id, stops=stops)

            state, _ = await self.store.get_or_init(trip_id, _build)
            if state.route_id != route_id:
                print(f"[trip_tracker] trip {trip_id} start for route {route_id}, tracking route {state.route_id}")
            state.status = TripStatus.STARTED
            state.touch()
            return await self._broadcast_route(
                route_id,
                "🚌 Bus Started",
                "Your bus has started the trip",
                {"trip_id": trip_id, "route_id": route_id, "status": TripStatus.STARTED.value},
            )

    async def pause_trip(self, trip_id: str, route_id: str) -> int:
        async with self.store.lock(trip_id):
            state = self.store.get(trip_id)
            if state is not None and state.status not in TERMINAL_STATUSES:
                state.status = TripStatus.PAUSED
                state.touch()
            return await self._broadcast_route(
                route_id,
                "⏸️ Bus Paused",
                "Your bus has paused temporarily",
                {"trip_id": trip_id, "route_id": route_id, "status": TripStatus.PAUSED.value},
            )

    async def complete_trip(self, trip_id: str, route_id: str) -> int:
        """Tell parents the trip is over and forget all of its state."""
        async with self.store.lock(trip_id):
            recipients = await self._broadcast_route(
                route_id,
                "✅ Trip Completed",
                "Your bus has completed the trip",
                {"trip_id": trip_id, "route_id": route_id, "status": TripStatus.COMPLETED.value},
            )
            self.store.remove(trip_id)
            return recipients

    async def _broadcast_route(self, route_id: str, title: str, body: str, payload: Dict[str, Any]) -> int:
        tokens = await self.backend.get_tokens_by_route(route_id)
        if not tokens:
            print(f"[trip_tracker] no tokens found for route {route_id}")
            return 0
        return await self.dispatcher.send(tokens, title, body, payload)

    # ------------------------------------------------------------------
    # Manual notifications
    # ------------------------------------------------------------------

    async def notify_status(self, trip_id: str, status: str) -> int:
        """Send the status-specific message for ``status`` to the trip's route."""
        trip = await self.backend.get_trip(trip_id)
        route_id = str(trip["route_id"])
        tokens = await self.backend.get_tokens_by_route(route_id)
        if not tokens:
            raise NoRecipients("No FCM tokens found for this route")

        key = str(status).strip().upper()
        title, template = STATUS_NOTIFICATIONS.get(key, ("🚌 Trip Update", "Trip status: {status}"))
        message = template.format(route_id=route_id, status=status)

        parsed = TripStatus.parse(status)
        if parsed is not None:
            async with self.store.lock(trip_id):
                state = self.store.get(trip_id)
                # Finished trips only leave the terminal state through start_trip
                if state is not None and state.status not in TERMINAL_STATUSES:
                    state.status = parsed
                    state.touch()

        return await self.dispatcher.send(
            tokens, title, message, {"trip_id": trip_id, "status": status, "route_id": route_id}
        )

    async def notify_custom(self, trip_id: str, message: str, stop_id: Optional[str] = None) -> int:
        """Free-form "Bus Update" to one stop's parents or the whole route."""
        payload: Dict[str, Any] = {"trip_id": trip_id, "custom": "true"}
        if stop_id is not None:
            tokens = await self.backend.get_tokens_by_stop(stop_id)
            payload["stop_id"] = stop_id
        else:
            state = self.store.get(trip_id)
            if state is not None:
                route_id = state.route_id
            else:
                try:
                    trip = await self.backend.get_trip(trip_id)
                except NotFound:
                    print(f"[trip_tracker] custom notification for unknown trip {trip_id}")
                    return 0
                route_id = str(trip["route_id"])
            tokens = await self.backend.get_tokens_by_route(route_id)
        return await self.dispatcher.send(tokens, "Bus Update", message, payload)

    async def test_route(self, route_id: str, title: str, message: str) -> List[str]:
        tokens = await self.backend.get_tokens_by_route(route_id)
        if not tokens:
            raise NoRecipients("No FCM tokens found for this route")
        await self.dispatcher.send(tokens, title, message, {"route_id": route_id, "test": "true"})
        return tokens

    async def send_all(self, title: str, message: str, data: Optional[Dict[str, Any]] = None) -> int:
        tokens = await self.backend.get_all_tokens()
        if not tokens:
            raise NoRecipients("No FCM tokens found")
        return await self.dispatcher.send(tokens, title, message, data or {})


__all__ = [
    "DEFAULT_APPROACHING_RADIUS_M",
    "DEFAULT_ARRIVED_RADIUS_M",
    "GeofenceConfig",
    "LocationResult",
    "PendingNotification",
    "STATUS_NOTIFICATIONS",
    "TripTracker",
]
