import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend_client import RouteRecipients  # noqa: E402
from errors import NotFound  # noqa: E402
from trip_store import Stop, TripStore  # noqa: E402
from trip_tracker import GeofenceConfig, TripTracker  # noqa: E402


# Three stops along the equator, ~445m apart
ROUTE_STOPS = [
    Stop(stop_id="S1", stop_name="Oak Street", latitude=0.0, longitude=0.0, pickup_stop_order=1),
    Stop(stop_id="S2", stop_name="Maple Avenue", latitude=0.0, longitude=0.004, pickup_stop_order=2),
    Stop(stop_id="S3", stop_name="School Gate", latitude=0.0, longitude=0.008, pickup_stop_order=3),
]

STOP_TOKENS = {
    "S1": ["tok-s1a", "tok-s1b"],
    "S2": ["tok-s2"],
    "S3": ["tok-s3"],
}


class FakeBackend:
    def __init__(
        self,
        trips: Optional[Dict[str, str]] = None,
        stops: Optional[Dict[str, List[Stop]]] = None,
        stop_tokens: Optional[Dict[str, List[str]]] = None,
        all_tokens: Optional[List[str]] = None,
        grouped: bool = True,
        trip_delay: float = 0.0,
    ):
        self.trips = {"T1": "R1"} if trips is None else trips
        self.stops = {"R1": list(ROUTE_STOPS)} if stops is None else stops
        self.stop_tokens = dict(STOP_TOKENS) if stop_tokens is None else stop_tokens
        self.all_tokens = ["tok-x", "tok-y"] if all_tokens is None else all_tokens
        self.grouped = grouped
        self.trip_delay = trip_delay
        self.calls: List[tuple] = []
        self.patches: List[tuple] = []

    def _route_tokens(self) -> List[str]:
        out: List[str] = []
        for tokens in self.stop_tokens.values():
            for token in tokens:
                if token not in out:
                    out.append(token)
        return out

    async def get_trip(self, trip_id: str) -> Dict[str, Any]:
        self.calls.append(("get_trip", trip_id))
        if self.trip_delay:
            await asyncio.sleep(self.trip_delay)
        if trip_id not in self.trips:
            raise NotFound(f"GET /trips/{trip_id} returned 404", endpoint=f"/trips/{trip_id}", status=404)
        return {"id": trip_id, "route_id": self.trips[trip_id]}

    async def get_route_stops(self, route_id: str) -> List[Stop]:
        self.calls.append(("get_route_stops", route_id))
        return list(self.stops.get(route_id, []))

    async def get_route_recipients(self, route_id: str) -> RouteRecipients:
        self.calls.append(("get_route_recipients", route_id))
        if self.grouped:
            return RouteRecipients(by_stop={k: list(v) for k, v in self.stop_tokens.items()}, all_tokens=self._route_tokens())
        return RouteRecipients(all_tokens=self._route_tokens())

    async def get_tokens_by_route(self, route_id: str) -> List[str]:
        return list((await self.get_route_recipients(route_id)).all_tokens)

    async def get_tokens_by_stop(self, stop_id: str) -> List[str]:
        self.calls.append(("get_tokens_by_stop", stop_id))
        return list(self.stop_tokens.get(stop_id, []))

    async def get_all_tokens(self) -> List[str]:
        self.calls.append(("get_all_tokens",))
        return list(self.all_tokens)

    async def fetch_route_tokens_raw(self, route_id: str) -> Any:
        return {
            "stops": [
                {"stop_id": stop_id, "fcm_tokens": [{"fcm_token": t} for t in tokens]}
                for stop_id, tokens in self.stop_tokens.items()
            ]
        }

    async def patch_trip_status(self, trip_id: str, status: str) -> bool:
        self.patches.append((trip_id, status))
        return True

    async def aclose(self) -> None:
        return None


class FakeDispatcher:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(self, tokens, title, body, payload=None) -> int:
        unique = list(dict.fromkeys(t for t in tokens if t))
        if not unique:
            return 0
        self.sent.append({"tokens": unique, "title": title, "body": body, "payload": dict(payload or {})})
        return len(unique)

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [s for s in self.sent if s["payload"].get("type") == kind]

    def titled(self, title: str) -> List[Dict[str, Any]]:
        return [s for s in self.sent if s["title"] == title]

    async def aclose(self) -> None:
        return None


def offset_north(stop: Stop, meters: float):
    """Coordinate ``meters`` due north of ``stop``."""
    return (stop.latitude + meters / 111195.0, stop.longitude)


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
def dispatcher():
    return FakeDispatcher()


@pytest.fixture()
def tracker(backend, dispatcher):
    return TripTracker(
        store=TripStore(),
        backend=backend,
        dispatcher=dispatcher,
        config=GeofenceConfig(approaching_radius_m=500.0, arrived_radius_m=20.0),
    )
