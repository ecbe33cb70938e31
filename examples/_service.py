"""Shared settings for the operator scripts."""

import os

NOTIFICATION_SERVICE_URL = os.getenv(
    "NOTIFICATION_SERVICE_URL",
    f"http://localhost:{os.getenv('PORT', '10000')}/api/v1",
).rstrip("/")


def error_message(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)
