"""Error taxonomy shared by the queue orchestrators and remote clients."""

from __future__ import annotations

from typing import Any, Optional


class PhotoferryError(RuntimeError):
    """Base class for photoferry errors."""


class RemoteApiError(PhotoferryError):
    """Raised when a remote HTTP API answers with a status >= 400."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.details = dict(details or {})

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and 500 <= self.status_code < 600

    @property
    def is_validation_error(self) -> bool:
        return self.status_code == 400

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class OperationCancelled(PhotoferryError):
    """Raised when a stop request interrupts in-flight work. Never retried."""


class JoinTimeoutError(PhotoferryError):
    """Raised when enumeration or an upload join exceeds its time bound."""


class DuplicateJobError(PhotoferryError):
    """Raised when a live album job already exists for a folder."""


class IncompleteMetadataError(PhotoferryError):
    """Raised when source metadata lacks a display name or content type."""
