"""Error taxonomy for the discovery layer.

Every error carries a ``message`` that is safe to show to an end user as-is.
``retryable`` tells the query cache whether another attempt could change the
outcome; ``status_code`` is what the HTTP gateway answers with.
"""
from __future__ import annotations

from typing import Optional


class DiscoveryError(Exception):
    retryable = False
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DiscoveryError):
    """Malformed input caught before any network call."""

    status_code = 422

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class AuthRequiredError(DiscoveryError):
    status_code = 401

    def __init__(self, message: str = "You need to sign in first.") -> None:
        super().__init__(message)


class NotFoundError(DiscoveryError):
    status_code = 404


class RoomUnavailableError(DiscoveryError):
    status_code = 409

    def __init__(self, message: str = "This room cannot be joined right now.") -> None:
        super().__init__(message)


class RoomFullError(DiscoveryError):
    status_code = 409

    def __init__(self, message: str = "This room is full.") -> None:
        super().__init__(message)


class PrivateRoomError(DiscoveryError):
    status_code = 403

    def __init__(self, message: str = "This room is private.") -> None:
        super().__init__(message)


class RemoteError(DiscoveryError):
    """The backing store or an Edge Function reported failure, or the transport failed."""

    retryable = True
    status_code = 502

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        remote_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.details = details
        self.remote_status = remote_status

    @classmethod
    def from_remote(cls, remote_message: Optional[str], fallback: str, **kwargs) -> "RemoteError":
        """Prefer the remote-provided message, fall back to a generic one."""

        return cls(remote_message or fallback, **kwargs)
