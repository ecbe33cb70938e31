#!/usr/bin/env python3
"""
Send a test notification to every parent registered on a route.
Usage: python notify_route.py ROUTE_ID
"""

import sys

import httpx

from _service import NOTIFICATION_SERVICE_URL, error_message


def main() -> int:
    if len(sys.argv) < 2:
        print("Usage: python notify_route.py ROUTE_ID")
        return 1
    route_id = sys.argv[1]

    print(f"Sending test notification to route: {route_id}")
    try:
        resp = httpx.post(
            f"{NOTIFICATION_SERVICE_URL}/notifications/test-route",
            json={
                "route_id": route_id,
                "title": "Test Bus Notification",
                "message": "This is a test notification to verify your device registration.",
            },
            timeout=30.0,
        )
    except httpx.HTTPError as exc:
        print(f"✗ Failed: {exc}")
        return 1
    if resp.status_code != 200:
        print(f"✗ Failed: {error_message(resp)}")
        return 1
    print(f"✓ Success! Sent to {resp.json().get('tokens_count')} tokens.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
