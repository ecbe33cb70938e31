"""Push notification delivery for parent devices.

Notifications go through the main backend's relay endpoint first. When the
relay is not configured or fails, each token is sent directly with the
Firebase Admin SDK.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Iterable, List, Mapping, Optional

import firebase_admin
import httpx
from firebase_admin import credentials, messaging

from backend_client import DEFAULT_BACKEND_URL
from errors import DispatchError

ANDROID_CHANNEL_ID = "bus_tracking_channel"
DEFAULT_TIMEOUT_S = 10.0
DEFAULT_MAX_CONCURRENCY = 20
FIREBASE_APP_NAME = "bus-tracking"


def dedupe_tokens(tokens: Iterable[Any]) -> List[str]:
    """Distinct non-empty token strings, first occurrence wins."""
    seen = set()
    out: List[str] = []
    for token in tokens or []:
        if not isinstance(token, str):
            continue
        token = token.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        out.append(token)
    return out


def stringify_payload(payload: Optional[Mapping[str, Any]]) -> dict:
    """FCM data messages only carry string values."""
    out = {}
    for key, value in (payload or {}).items():
        if value is None:
            out[str(key)] = ""
        elif isinstance(value, str):
            out[str(key)] = value
        elif isinstance(value, bool):
            out[str(key)] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            out[str(key)] = json.dumps(value)
        else:
            out[str(key)] = str(value)
    return out


def init_firebase_app(
    *,
    project_id: str = "",
    client_email: str = "",
    private_key: str = "",
    credentials_file: str = "",
    timeout: float = DEFAULT_TIMEOUT_S,
) -> Optional[firebase_admin.App]:
    """Initialize the Firebase Admin app, or return None when not configured."""
    try:
        if credentials_file:
            cred = credentials.Certificate(credentials_file)
        elif project_id and client_email and private_key:
            cred = credentials.Certificate({
                "type": "service_account",
                "project_id": project_id,
                "client_email": client_email,
                # Keys stored in env vars usually carry literal "\n" sequences
                "private_key": private_key.replace("\\n", "\n"),
                "token_uri": "https://oauth2.googleapis.com/token",
            })
        else:
            print("[push] Firebase Admin not configured; direct delivery disabled")
            return None
        try:
            return firebase_admin.get_app(FIREBASE_APP_NAME)
        except ValueError:
            return firebase_admin.initialize_app(
                cred,
                options={"httpTimeout": timeout},
                name=FIREBASE_APP_NAME,
            )
    except (ValueError, OSError) as exc:
        print(f"[push] Firebase Admin not initialized: {exc}")
        return None


class PushDispatcher:
    """Best-effort notification fan-out. ``send`` never raises."""

    def __init__(
        self,
        *,
        relay_url: Optional[str] = None,
        firebase_app: Optional[firebase_admin.App] = None,
        timeout: float = DEFAULT_TIMEOUT_S,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._relay_url = (relay_url or "").strip() or None
        self._firebase_app = firebase_app
        self._timeout = timeout
        self._max_concurrency = max(1, int(max_concurrency))
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_env(cls) -> "PushDispatcher":
        """Build a dispatcher from environment configuration.

        * ``PUSH_RELAY_URL`` - relay endpoint; defaults to
          ``$MAIN_BACKEND_URL/notifications/send``. Set it to an empty string
          to deliver through Firebase only.
        * ``FIREBASE_PROJECT_ID`` / ``FIREBASE_CLIENT_EMAIL`` /
          ``FIREBASE_PRIVATE_KEY`` or ``FIREBASE_CREDENTIALS_FILE``.
        * ``HTTP_TIMEOUT_S``, ``PUSH_MAX_CONCURRENCY``.
        """
        timeout = float(os.getenv("HTTP_TIMEOUT_S", str(DEFAULT_TIMEOUT_S)))
        relay_url = os.getenv("PUSH_RELAY_URL")
        if relay_url is None:
            backend = (os.getenv("MAIN_BACKEND_URL") or "").strip() or DEFAULT_BACKEND_URL
            relay_url = f"{backend.rstrip('/')}/notifications/send"
        firebase_app = init_firebase_app(
            project_id=(os.getenv("FIREBASE_PROJECT_ID") or "").strip(),
            client_email=(os.getenv("FIREBASE_CLIENT_EMAIL") or "").strip(),
            private_key=os.getenv("FIREBASE_PRIVATE_KEY") or "",
            credentials_file=(os.getenv("FIREBASE_CREDENTIALS_FILE") or "").strip(),
            timeout=timeout,
        )
        return cls(
            relay_url=relay_url,
            firebase_app=firebase_app,
            timeout=timeout,
            max_concurrency=int(os.getenv("PUSH_MAX_CONCURRENCY", str(DEFAULT_MAX_CONCURRENCY))),
        )

    @property
    def relay_configured(self) -> bool:
        return self._relay_url is not None

    @property
    def native_configured(self) -> bool:
        return self._firebase_app is not None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def send(
        self,
        tokens: Iterable[Any],
        title: str,
        body: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Deliver a notification to every distinct token; returns the recipient count."""
        unique = dedupe_tokens(tokens)
        if not unique:
            print("[push] no tokens to send notification to")
            return 0

        print(f"[push] sending notification to {len(unique)} parents: {title!r}")
        data = dict(payload or {})

        if self._relay_url is not None:
            try:
                await self._send_relay(unique, title, body, data)
                print("[push] notifications sent via backend relay")
                return len(unique)
            except (httpx.HTTPError, TypeError, ValueError) as exc:
                print(f"[push] relay delivery failed: {exc}")

        if self._firebase_app is None:
            print(f"[push] [MOCK] notification: {title} - {body}")
            return len(unique)

        print("[push] falling back to Firebase Admin SDK")
        delivered = await self._send_native(unique, title, body, stringify_payload(data))
        print(f"[push] Firebase delivered {delivered}/{len(unique)}")
        return len(unique)

    async def _send_relay(self, tokens: List[str], title: str, body: str, data: dict) -> None:
        client = await self._ensure_client()
        response = await client.post(
            self._relay_url,
            json={"fcm_tokens": tokens, "title": title, "body": body, "data": data},
            timeout=self._timeout,
        )
        response.raise_for_status()

    async def _send_native(self, tokens: List[str], title: str, body: str, data: dict) -> int:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(token: str) -> bool:
            async with semaphore:
                try:
                    await asyncio.to_thread(self._send_native_one, token, title, body, data)
                    return True
                except DispatchError as exc:
                    print(f"[push] failed to send to {token}: {exc}")
                    return False

        results = await asyncio.gather(*(_one(token) for token in tokens))
        return sum(1 for ok in results if ok)

    def _send_native_one(self, token: str, title: str, body: str, data: dict) -> str:
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data=data,
            token=token,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(
                    channel_id=ANDROID_CHANNEL_ID,
                    priority="high",
                    sound="default",
                    visibility="public",
                ),
            ),
        )
        try:
            return messaging.send(message, app=self._firebase_app)
        except Exception as exc:
            # firebase_admin raises several unrelated error types per token
            raise DispatchError(str(exc), token=token) from exc


__all__ = [
    "ANDROID_CHANNEL_ID",
    "PushDispatcher",
    "dedupe_tokens",
    "init_firebase_app",
    "stringify_payload",
]
