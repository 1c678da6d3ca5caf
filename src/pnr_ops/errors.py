"""
Error types for PNR Ops.

Components raise these internally; the public operation boundaries
(self-update, deploy, build) convert them into boolean outcomes, result
objects, or status messages. Only the command line logs them whole, through
to_dict().
"""

from __future__ import annotations

from typing import Any, ClassVar


class OpsError(Exception):
    """
    Base exception class for PNR Ops errors.

    Attributes:
        error_code: Error category ("invalid_argument", "unavailable",
            "failed_precondition" or "internal").
        message: Human-readable error message.
        details: Structured details such as paths or host names.
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Return error_code, message and details as a plain dictionary."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class _CodedError(OpsError):
    """An OpsError whose category is fixed by its class."""

    code: ClassVar[str]

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code=self.code, message=message, details=details)


class InvalidArgumentError(_CodedError):
    """Incomplete deployment targets and malformed names."""

    code = "invalid_argument"


class UnavailableError(_CodedError):
    """
    A remote service or host cannot be reached.

    Covers the release feed, artifact downloads, SSH/SFTP hosts and the
    cloud control plane.
    """

    code = "unavailable"


class FailedPreconditionError(_CodedError):
    """
    A precondition for the operation is not met.

    Used when a channel is not open, a snapshot is missing, or an operation
    is already in flight for the same key.
    """

    code = "failed_precondition"


class InternalError(_CodedError):
    """Failed filesystem mutations during install, restore and marker writes."""

    code = "internal"


class ReleaseFeedError(UnavailableError):
    """The release feed returned no usable release."""
