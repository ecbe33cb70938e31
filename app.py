"""
Bus Tracking Notification Service (FastAPI)

Purpose
=======
Receive live bus locations from the driver app, detect when the bus approaches
or reaches each stop of its route, and push notifications to the parents
waiting at those stops. Trip lifecycle events (start, pause, complete, status
changes) are broadcast to every parent on the route.

Run
---
$ uvicorn app:app --port 10000

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import math
import os

from fastapi import APIRouter, Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend_client import BackendClient, DEFAULT_BACKEND_URL, normalize_route_tokens
from errors import InternalError, ServiceError, UpstreamFetchError, ValidationError
from push_dispatcher import PushDispatcher
from trip_store import TripStore
from trip_tracker import (
    DEFAULT_APPROACHING_RADIUS_M,
    DEFAULT_ARRIVED_RADIUS_M,
    GeofenceConfig,
    TripTracker,
)

# ---------------------------
# Config
# ---------------------------
MAIN_BACKEND_URL = (os.getenv("MAIN_BACKEND_URL") or "").strip() or DEFAULT_BACKEND_URL
PORT = int(os.getenv("PORT", "10000"))
API_PREFIX = os.getenv("API_PREFIX", "/api/v1").rstrip("/")
APPROACHING_RADIUS_M = float(os.getenv("APPROACHING_RADIUS_M", str(DEFAULT_APPROACHING_RADIUS_M)))
ARRIVED_RADIUS_M = float(os.getenv("ARRIVED_RADIUS_M", str(DEFAULT_ARRIVED_RADIUS_M)))
APPROACH_ALL_STOPS = (os.getenv("APPROACH_ALL_STOPS") or "").strip().lower() in {"1", "true", "yes", "on"}


def build_tracker(
    backend: Optional[BackendClient] = None,
    dispatcher: Optional[PushDispatcher] = None,
    store: Optional[TripStore] = None,
) -> TripTracker:
    return TripTracker(
        store=store or TripStore(),
        backend=backend or BackendClient.from_env(),
        dispatcher=dispatcher or PushDispatcher.from_env(),
        config=GeofenceConfig(
            approaching_radius_m=APPROACHING_RADIUS_M,
            arrived_radius_m=ARRIVED_RADIUS_M,
            approach_all_stops=APPROACH_ALL_STOPS,
        ),
    )


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Bus Tracking Notification Service")
router = APIRouter(prefix=API_PREFIX)


@app.on_event("startup")
async def init_tracker() -> None:
    if getattr(app.state, "tracker", None) is None:
        app.state.tracker = build_tracker()
    print(f"[app] bus tracking service on port {PORT}")
    print(f"[app] main backend: {MAIN_BACKEND_URL}")
    print(f"[app] geofence radius (approaching): {APPROACHING_RADIUS_M:g}m")
    print(f"[app] geofence radius (arrived): {ARRIVED_RADIUS_M:g}m")


@app.on_event("shutdown")
async def shutdown_clients() -> None:
    tracker = getattr(app.state, "tracker", None)
    if tracker is None:
        return
    await tracker.backend.aclose()
    await tracker.dispatcher.aclose()


def get_tracker(request: Request) -> TripTracker:
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is None:
        tracker = build_tracker()
        request.app.state.tracker = tracker
    return tracker


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    if any(err.get("type") == "json_invalid" for err in exc.errors()):
        error = ValidationError("Request body is not valid JSON")
    else:
        error = ValidationError("Invalid request body")
    return JSONResponse(error.to_dict(), status_code=error.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    print(f"[app] unhandled error on {request.method} {request.url.path}: {exc!r}")
    error = InternalError(str(exc) or exc.__class__.__name__)
    return JSONResponse(error.to_dict(), status_code=error.status_code)


# ---------------------------
# Request parsing
# ---------------------------
def _require_id(payload: Dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Missing required field: {name}")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ValidationError(f"Missing required field: {name}")


def _require_text(payload: Dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required field: {name}")
    return value


def _optional_text(payload: Dict[str, Any], name: str, default: str) -> str:
    value = payload.get(name)
    if isinstance(value, str) and value.strip():
        return value
    return default


def _optional_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Field data must be an object")
    return data


def _require_coordinate(payload: Dict[str, Any], name: str, limit: float) -> float:
    value = payload.get(name)
    if value is None or isinstance(value, bool):
        raise ValidationError(f"Missing required field: {name}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field {name} must be a number") from None
    if not math.isfinite(number) or not -limit <= number <= limit:
        raise ValidationError(f"Field {name} out of range")
    return number


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO8601 strings or epoch seconds/milliseconds; ignore anything else."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.lower().endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None


def _payload(body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ---------------------------
# REST: Bus tracking
# ---------------------------
@router.post("/bus-tracking/location")
async def update_location(request: Request, payload: Any = Body(None)):
    body = _payload(payload)
    trip_id = _require_id(body, "trip_id")
    latitude = _require_coordinate(body, "latitude", 90.0)
    longitude = _require_coordinate(body, "longitude", 180.0)
    timestamp = _parse_timestamp(body.get("timestamp"))

    print(f"[location] trip {trip_id}: {latitude}, {longitude}")
    tracker = get_tracker(request)
    try:
        result = await tracker.process_location(trip_id, latitude, longitude, timestamp)
    except Exception as exc:
        print(f"[location] error processing update for trip {trip_id}: {exc}")
        raise InternalError(str(exc)) from exc
    return {"success": True, **result.to_dict()}


@router.post("/bus-tracking/notify")
async def notify_trip(request: Request, payload: Any = Body(None)):
    body = _payload(payload)
    trip_id = _require_id(body, "trip_id")
    message = _require_text(body, "message")
    stop_id = _require_id(body, "stop_id") if body.get("stop_id") not in (None, "") else None

    tracker = get_tracker(request)
    try:
        recipients = await tracker.notify_custom(trip_id, message, stop_id)
    except Exception as exc:
        print(f"[notify] error sending custom notification for trip {trip_id}: {exc}")
        raise InternalError(str(exc)) from exc
    return {"success": True, "recipients": recipients}


# ---------------------------
# REST: Notifications
# ---------------------------
@router.post("/notifications/send")
async def send_notifications(request: Request, payload: Any = Body(None)):
    body = _payload(payload)
    tokens = body.get("tokens")
    if not isinstance(tokens, list) or not tokens:
        raise ValidationError("Missing or invalid tokens array")
    if not all(isinstance(t, str) and t.strip() for t in tokens):
        raise ValidationError("Missing or invalid tokens array")
    title = _require_text(body, "title")
    message = _require_text(body, "message")
    data = _optional_data(body)

    tracker = get_tracker(request)
    recipients = await tracker.dispatcher.send(tokens, title, message, data)
    return {"success": True, "recipients": recipients}


@router.post("/notifications/test-route")
async def test_route_notification(request: Request, payload: Any = Body(None)):
    body = _payload(payload)
    route_id = _require_id(body, "route_id")
    title = _optional_text(body, "title", "🚌 Test Notification")
    message = _optional_text(body, "message", "This is a test notification from your bus tracking system")

    tracker = get_tracker(request)
    tokens = await tracker.test_route(route_id, title, message)
    return {"success": True, "tokens_count": len(tokens), "tokens": tokens}


@router.post("/notifications/send-all")
async def send_all_notifications(request: Request, payload: Any = Body(None)):
    body = _payload(payload if payload is not None else {})
    title = _optional_text(body, "title", "🚌 Notification")
    message = _optional_text(body, "message", "You have a new notification")
    data = _optional_data(body)

    tracker = get_tracker(request)
    recipients = await tracker.send_all(title, message, data)
    return {"success": True, "recipients": recipients}


@router.post("/notifications/trip-status")
async def trip_status_notification(request: Request, payload: Any = Body(None)):
    body = _payload(payload)
    trip_id = _require_id(body, "trip_id")
    status = _require_text(body, "status").strip()

    tracker = get_tracker(request)
    try:
        recipients = await tracker.notify_status(trip_id, status)
    except UpstreamFetchError as exc:
        print(f"[trip_status] trip lookup failed for {trip_id}: {exc}")
        raise InternalError(exc.message, error="Failed to send notification") from exc
    return {"success": True, "recipients": recipients, "status": status}


# ---------------------------
# REST: Trip lifecycle
# ---------------------------
@router.post("/trip/start")
async def start_trip(request: Request, payload: Any = Body(None)):
    body = _payload(payload)
    trip_id = _require_id(body, "trip_id")
    route_id = _require_id(body, "route_id")
    print(f"[trip] start trip={trip_id} route={route_id}")
    recipients = await get_tracker(request).start_trip(trip_id, route_id)
    return {"success": True, "recipients": recipients, "status": "STARTED"}


@router.post("/trip/pause")
async def pause_trip(request: Request, payload: Any = Body(None)):
    body = _payload(payload)
    trip_id = _require_id(body, "trip_id")
    route_id = _require_id(body, "route_id")
    print(f"[trip] pause trip={trip_id} route={route_id}")
    recipients = await get_tracker(request).pause_trip(trip_id, route_id)
    return {"success": True, "recipients": recipients, "status": "PAUSED"}


@router.post("/trip/complete")
async def complete_trip(request: Request, payload: Any = Body(None)):
    body = _payload(payload)
    trip_id = _require_id(body, "trip_id")
    route_id = _require_id(body, "route_id")
    print(f"[trip] complete trip={trip_id} route={route_id}")
    recipients = await get_tracker(request).complete_trip(trip_id, route_id)
    return {"success": True, "recipients": recipients, "status": "COMPLETED"}


# ---------------------------
# REST: Diagnostics
# ---------------------------
@router.get("/test/tokens/{route_id}")
async def inspect_route_tokens(route_id: str, request: Request):
    """Raw and normalized token data for a route, for checking device registration."""
    tracker = get_tracker(request)
    raw = await tracker.backend.fetch_route_tokens_raw(route_id)
    tokens: List[str] = normalize_route_tokens(raw).all_tokens
    return {
        "success": True,
        "route_id": route_id,
        "token_count": len(tokens),
        "tokens": tokens,
        "raw_response": raw,
    }


app.include_router(router)


@app.get("/health")
async def health(request: Request):
    return {
        "status": "OK",
        "active_trips": get_tracker(request).active_trip_count(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
