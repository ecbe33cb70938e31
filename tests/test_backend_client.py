import asyncio
import json

import httpx
import pytest

from backend_client import BackendClient, normalize_route_tokens, normalize_token_list, parse_stops
from errors import NotFound, UpstreamUnavailable

BASE = "http://backend.test/api/v1"


def _client(handler) -> BackendClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BackendClient(BASE, client=http)


def _run(coro):
    return asyncio.run(coro)


def test_route_stops_sorted_by_pickup_order():
    rows = [
        {"stop_id": 3, "stop_name": "Gate", "latitude": "1.3", "longitude": "103.3", "pickup_stop_order": 3},
        {"stop_id": 1, "stop_name": "Oak", "latitude": 1.1, "longitude": 103.1, "pickup_stop_order": 1},
        {"stop_id": 2, "stop_name": "Maple", "latitude": 1.2, "longitude": 103.2, "pickup_stop_order": 2},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/route-stops"
        assert request.url.params["route_id"] == "R1"
        return httpx.Response(200, json=rows)

    stops = _run(_client(handler).get_route_stops("R1"))

    assert [s.stop_id for s in stops] == ["1", "2", "3"]
    assert stops[2].latitude == 1.3
    assert stops[0].stop_name == "Oak"


def test_parse_stops_skips_malformed_rows_and_keeps_ties_in_order():
    rows = {
        "data": [
            {"stop_id": "A", "latitude": 1, "longitude": 2, "pickup_stop_order": 1},
            {"stop_id": "bad", "latitude": None, "longitude": 2},
            {"latitude": 1, "longitude": 2},
            {"stop_id": "B", "latitude": 1, "longitude": "x"},
            {"stop_id": "C", "latitude": 1, "longitude": 2, "pickup_stop_order": 1},
            "junk",
        ]
    }

    stops = parse_stops(rows)

    assert [s.stop_id for s in stops] == ["A", "C"]
    # Missing names fall back to the id
    assert stops[0].stop_name == "A"


def test_route_stops_failure_returns_empty_list():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    assert _run(_client(handler).get_route_stops("R1")) == []


def test_get_trip_unwraps_data_envelope():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/trips/T1"
        return httpx.Response(200, json={"data": {"id": "T1", "route_id": 7}})

    trip = _run(_client(handler).get_trip("T1"))

    assert trip["route_id"] == 7


def test_get_trip_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "no such trip"})

    with pytest.raises(NotFound) as excinfo:
        _run(_client(handler).get_trip("T404"))
    assert excinfo.value.status == 404
    assert excinfo.value.endpoint == "/trips/T404"


def test_get_trip_server_error_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(UpstreamUnavailable) as excinfo:
        _run(_client(handler).get_trip("T1"))
    assert excinfo.value.status == 503


def test_get_trip_timeout_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamUnavailable):
        _run(_client(handler).get_trip("T1"))


def test_get_trip_without_route_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "T1"})

    with pytest.raises(UpstreamUnavailable):
        _run(_client(handler).get_trip("T1"))


def test_nested_route_tokens_grouped_by_stop():
    payload = {
        "stops": [
            {"stop_id": 1, "fcm_tokens": [{"fcm_token": "a"}, {"fcm_token": "b"}]},
            {"stop_id": 2, "fcm_tokens": [{"token": "c"}, "a"]},
            {"stop_id": 3, "fcm_tokens": None},
        ]
    }

    recipients = normalize_route_tokens(payload)

    assert recipients.for_stop("1") == ["a", "b"]
    assert recipients.for_stop("2") == ["c", "a"]
    assert recipients.for_stop("3") == []
    assert recipients.all_tokens == ["a", "b", "c"]
    assert len(recipients) == 3


def test_flat_route_tokens_have_no_grouping():
    recipients = normalize_route_tokens(["a", {"fcm_token": "b"}, "", None, "a"])

    assert recipients.by_stop == {}
    assert recipients.all_tokens == ["a", "b"]


def test_normalize_token_list_ignores_non_lists():
    assert normalize_token_list({"tokens": ["a"]}) == []
    assert normalize_token_list(None) == []


def test_route_recipients_failure_is_empty():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    recipients = _run(_client(handler).get_route_recipients("R1"))

    assert recipients.all_tokens == []
    assert recipients.by_stop == {}


def test_fetch_route_tokens_raw_propagates_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    with pytest.raises(UpstreamUnavailable):
        _run(_client(handler).fetch_route_tokens_raw("R1"))


def test_tokens_by_stop_resolves_parents():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/students/by-route/S1":
            return httpx.Response(200, json=[
                {"id": 1, "parent_id": 10},
                {"id": 2, "parent_id": 11},
                {"id": 3, "parent_id": 10},
                {"id": 4, "parent_id": 12},
                {"id": 5},
            ])
        if path == "/api/v1/parents/10":
            return httpx.Response(200, json={"id": 10, "fcm_token": "p10"})
        if path == "/api/v1/parents/11":
            return httpx.Response(500)
        if path == "/api/v1/parents/12":
            return httpx.Response(200, json={"id": 12, "fcm_token": None})
        return httpx.Response(404)

    assert _run(_client(handler).get_tokens_by_stop("S1")) == ["p10"]


def test_get_all_tokens():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/fcm-tokens"
        return httpx.Response(200, json=[{"fcm_token": "x"}, {"fcm_token": "y"}, {"fcm_token": "x"}])

    assert _run(_client(handler).get_all_tokens()) == ["x", "y"]


def test_patch_trip_status_sends_status():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(204)

    assert _run(_client(handler).patch_trip_status("T1", "COMPLETED")) is True
    assert seen == {"method": "PATCH", "path": "/api/v1/trips/T1/status", "body": {"status": "COMPLETED"}}


def test_patch_trip_status_failure_returns_false():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    assert _run(_client(handler).patch_trip_status("T1", "COMPLETED")) is False


def test_invalid_json_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>")

    with pytest.raises(UpstreamUnavailable):
        _run(_client(handler).get_trip("T1"))


def test_from_env_reads_backend_url(monkeypatch):
    monkeypatch.setenv("MAIN_BACKEND_URL", "https://main.example.com/api/v1/")
    monkeypatch.setenv("HTTP_TIMEOUT_S", "3")

    client = BackendClient.from_env()

    assert client.base_url == "https://main.example.com/api/v1"
