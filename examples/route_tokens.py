#!/usr/bin/env python3
"""
Show the FCM tokens the main backend returns for a route.
Usage: python route_tokens.py ROUTE_ID
"""

import json
import sys

import httpx

from _service import NOTIFICATION_SERVICE_URL, error_message


def main() -> int:
    if len(sys.argv) < 2:
        print("Usage: python route_tokens.py ROUTE_ID")
        return 1
    route_id = sys.argv[1]

    print(f"Checking token fetch for route: {route_id}")
    try:
        resp = httpx.get(f"{NOTIFICATION_SERVICE_URL}/test/tokens/{route_id}", timeout=30.0)
    except httpx.HTTPError as exc:
        print(f"✗ Error: {exc}")
        return 1
    if resp.status_code != 200:
        print(f"✗ Error: {error_message(resp)}")
        return 1

    data = resp.json()
    print("\nResults:")
    print(f"- Token Count: {data.get('token_count')}")
    print(f"- Raw Data: {json.dumps(data.get('raw_response'), indent=2)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
