"""Async client for the main transport backend (trips, route stops, FCM tokens)."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx

from errors import NotFound, UpstreamUnavailable
from trip_store import Stop

DEFAULT_BACKEND_URL = "http://localhost:8080/api/v1"
DEFAULT_TIMEOUT_S = 10.0


def _unique(tokens: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for token in tokens:
        if token in seen:
            continue
        seen.add(token)
        out.append(token)
    return out


def _extract_token(item: Any) -> Optional[str]:
    """Pull a token string out of a bare string or a ``{fcm_token|token}`` object."""
    if isinstance(item, dict):
        item = item.get("fcm_token") or item.get("token")
    if isinstance(item, str):
        text = item.strip()
        return text or None
    return None


def normalize_token_list(data: Any) -> List[str]:
    """Flat array shape: strings and/or token objects."""
    if not isinstance(data, list):
        return []
    return _unique(t for t in (_extract_token(item) for item in data) if t)


@dataclass
class RouteRecipients:
    """Tokens for a route, grouped by stop."""
    by_stop: Dict[str, List[str]] = field(default_factory=dict)
    all_tokens: List[str] = field(default_factory=list)

    def for_stop(self, stop_id: str) -> List[str]:
        return list(self.by_stop.get(str(stop_id), []))

    def __len__(self) -> int:
        return len(self.all_tokens)


def normalize_route_tokens(data: Any) -> RouteRecipients:
    """Normalize the by-route token response.

    Two shapes are served by the backend:
    * ``{"stops": [{"stop_id": .., "fcm_tokens": [{"fcm_token": ..}, ..]}, ..]}``
    * a flat array of tokens (no per-stop grouping available)
    """
    if isinstance(data, dict) and isinstance(data.get("stops"), list):
        by_stop: Dict[str, List[str]] = {}
        collected: List[str] = []
        for entry in data["stops"]:
            if not isinstance(entry, dict):
                continue
            stop_id = entry.get("stop_id")
            raw_tokens = entry.get("fcm_tokens")
            if not isinstance(raw_tokens, list):
                continue
            tokens = [t for t in (_extract_token(item) for item in raw_tokens) if t]
            if stop_id is not None:
                key = str(stop_id)
                by_stop[key] = _unique(by_stop.get(key, []) + tokens)
            collected.extend(tokens)
        return RouteRecipients(by_stop=by_stop, all_tokens=_unique(collected))
    return RouteRecipients(all_tokens=normalize_token_list(data))


def _parse_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_stops(rows: Any) -> List[Stop]:
    """Build the ordered stop list from ``/route-stops`` rows.

    Rows without an id or usable coordinates are skipped.
    """
    if isinstance(rows, dict):
        rows = rows.get("data") or rows.get("stops") or []
    if not isinstance(rows, list):
        return []
    stops: List[Stop] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        stop_id = row.get("stop_id")
        lat = _parse_float(row.get("latitude"))
        lon = _parse_float(row.get("longitude"))
        if stop_id is None or lat is None or lon is None:
            print(f"[backend] skipping malformed stop row: {row}")
            continue
        order = _parse_float(row.get("pickup_stop_order"))
        stops.append(
            Stop(
                stop_id=str(stop_id),
                stop_name=str(row.get("stop_name") or stop_id),
                latitude=lat,
                longitude=lon,
                pickup_stop_order=order if order is not None else 0.0,
            )
        )
    # sorted() is stable, so equal orders keep the upstream sequence
    return sorted(stops, key=lambda s: s.pickup_stop_order)


class BackendClient:
    """Gateway to the main backend.

    Trip metadata failures are raised; every other lookup degrades to an
    empty result after logging, so callers never branch on upstream shape
    or upstream health.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BACKEND_URL,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_env(cls) -> "BackendClient":
        """Build a ``BackendClient`` from ``MAIN_BACKEND_URL`` and ``HTTP_TIMEOUT_S``."""
        base_url = (os.getenv("MAIN_BACKEND_URL") or "").strip() or DEFAULT_BACKEND_URL
        timeout = float(os.getenv("HTTP_TIMEOUT_S", str(DEFAULT_TIMEOUT_S)))
        return cls(base_url, timeout=timeout)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        client = await self._ensure_client()
        url = f"{self._base_url}{path}"
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"{method} {path} failed: {exc}", endpoint=path) from exc
        if response.status_code == 404:
            raise NotFound(f"{method} {path} returned 404", endpoint=path, status=404)
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"{method} {path} returned {response.status_code}",
                endpoint=path,
                status=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(f"{method} {path} returned invalid JSON", endpoint=path) from exc

    async def get_trip(self, trip_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/trips/{trip_id}")
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        if not isinstance(data, dict) or data.get("route_id") in (None, ""):
            raise UpstreamUnavailable(f"trip {trip_id} has no route_id", endpoint=f"/trips/{trip_id}")
        return data

    async def get_route_stops(self, route_id: str) -> List[Stop]:
        try:
            rows = await self._request("GET", "/route-stops", params={"route_id": route_id})
        except (NotFound, UpstreamUnavailable) as exc:
            print(f"[backend] error fetching stops for route {route_id}: {exc}")
            return []
        return parse_stops(rows)

    async def fetch_route_tokens_raw(self, route_id: str) -> Any:
        return await self._request("GET", f"/fcm-tokens/by-route/{route_id}")

    async def get_route_recipients(self, route_id: str) -> RouteRecipients:
        try:
            data = await self.fetch_route_tokens_raw(route_id)
        except (NotFound, UpstreamUnavailable) as exc:
            print(f"[backend] error fetching FCM tokens for route {route_id}: {exc}")
            return RouteRecipients()
        return normalize_route_tokens(data)

    async def get_tokens_by_route(self, route_id: str) -> List[str]:
        recipients = await self.get_route_recipients(route_id)
        return list(recipients.all_tokens)

    async def get_tokens_by_stop(self, stop_id: str) -> List[str]:
        """Tokens of the parents whose students board at ``stop_id``."""
        try:
            students = await self._request("GET", f"/students/by-route/{stop_id}")
        except (NotFound, UpstreamUnavailable) as exc:
            print(f"[backend] error fetching students for stop {stop_id}: {exc}")
            return []
        if not isinstance(students, list):
            return []
        parent_ids: List[str] = _unique(
            str(s["parent_id"]) for s in students if isinstance(s, dict) and s.get("parent_id") is not None
        )
        tokens: List[str] = []
        for parent_id in parent_ids:
            try:
                parent = await self._request("GET", f"/parents/{parent_id}")
            except (NotFound, UpstreamUnavailable) as exc:
                print(f"[backend] error fetching parent {parent_id}: {exc}")
                continue
            token = _extract_token(parent) if isinstance(parent, dict) else None
            if token:
                tokens.append(token)
        return _unique(tokens)

    async def get_all_tokens(self) -> List[str]:
        try:
            data = await self._request("GET", "/fcm-tokens")
        except (NotFound, UpstreamUnavailable) as exc:
            print(f"[backend] error fetching all FCM tokens: {exc}")
            return []
        return normalize_token_list(data)

    async def patch_trip_status(self, trip_id: str, status: str) -> bool:
        try:
            await self._request("PATCH", f"/trips/{trip_id}/status", json={"status": status})
        except (NotFound, UpstreamUnavailable) as exc:
            print(f"[backend] failed to update status of trip {trip_id} to {status}: {exc}")
            return False
        return True


__all__ = [
    "BackendClient",
    "DEFAULT_BACKEND_URL",
    "RouteRecipients",
    "normalize_route_tokens",
    "normalize_token_list",
    "parse_stops",
]
