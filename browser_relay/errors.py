"""Error taxonomy shared by the relay components and the HTTP layer."""

from __future__ import annotations

from typing import Optional


class RelayError(RuntimeError):
    """Base class for errors surfaced to HTTP callers."""

    http_status = 500
    retryable = False

    def __init__(self, message: str, *, details: str = "") -> None:
        super().__init__(message)
        self.details = details or message


class ValidationError(RelayError):
    """Malformed or disallowed input. Never retried."""

    http_status = 400


class BadRequestError(RelayError):
    http_status = 400


class SessionNotFoundError(RelayError):
    http_status = 404


class ResourceBusyError(RelayError):
    """The pooled browser lock was not acquired in time. Callers may retry."""

    http_status = 503
    retryable = True


class BrowserLaunchError(RelayError):
    pass


class StorageError(RelayError):
    pass


class NavigationError(RelayError):
    """The target did not respond in time or answered with an error status."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        attempts: int = 0,
        details: str = "",
    ) -> None:
        super().__init__(message, details=details)
        self.status = status
        self.attempts = attempts

    @property
    def is_bad_gateway(self) -> bool:
        return self.status == 502
