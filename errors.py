"""Error taxonomy shared by the tracking engine and the HTTP layer."""

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP error response."""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, error: Optional[str] = None) -> None:
        if error is not None:
            self.error = error
        self.message = message or self.error
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.error, "message": self.message}


class ValidationError(ServiceError):
    """Missing or malformed request fields."""

    status_code = 400
    error = "Invalid request"


class NoRecipients(ServiceError):
    """No push tokens were found for the requested audience."""

    status_code = 404
    error = "No FCM tokens found"


class UpstreamFetchError(ServiceError):
    """A call to the main backend failed or timed out."""

    status_code = 502
    error = "Upstream request failed"

    def __init__(self, message: Optional[str] = None, *, endpoint: str = "", status: Optional[int] = None) -> None:
        self.endpoint = endpoint
        self.status = status
        super().__init__(message)


class UpstreamUnavailable(UpstreamFetchError):
    """Network error, timeout, unexpected status or undecodable body."""


class NotFound(UpstreamFetchError):
    """The backend answered 404 for the requested resource."""

    status_code = 404
    error = "Not found"


class DispatchError(ServiceError):
    """Delivery to a single recipient failed.

    Raised and caught inside the dispatcher only; it never reaches a caller.
    """

    error = "Notification delivery failed"

    def __init__(self, message: Optional[str] = None, *, token: str = "") -> None:
        self.token = token
        super().__init__(message)


class InternalError(ServiceError):
    """Unexpected failure while processing a request."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "NoRecipients",
    "UpstreamFetchError",
    "UpstreamUnavailable",
    "NotFound",
    "DispatchError",
    "InternalError",
]
