#!/usr/bin/env python3
"""
Send a notification to every registered parent device.
Usage: python send_to_all.py ["Title"] ["Message"]
"""

import sys

import httpx

from _service import NOTIFICATION_SERVICE_URL, error_message


def main() -> int:
    title = sys.argv[1] if len(sys.argv) > 1 else "School Notification"
    message = sys.argv[2] if len(sys.argv) > 2 else "You have a new update from the school transport system."

    print("Sending notification to all parents...")
    print(f"Title: {title}")
    print(f"Message: {message}")

    try:
        resp = httpx.post(
            f"{NOTIFICATION_SERVICE_URL}/notifications/send-all",
            json={"title": title, "message": message},
            timeout=30.0,
        )
    except httpx.HTTPError as exc:
        print(f"✗ Failed: {exc}")
        return 1
    if resp.status_code != 200:
        print(f"✗ Failed: {error_message(resp)}")
        return 1
    print(f"✓ Success! Recipients: {resp.json().get('recipients')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
