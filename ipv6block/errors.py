"""
Exception types and failure policies for the IPv6 block tool.

Every error a caller may need to render a specific remediation message for
has its own class; all of them derive from IPv6BlockError.
"""

from enum import Enum
from typing import List, Optional


class FailurePolicy(Enum):
    """How an uncertain outcome is interpreted."""

    OPEN = "open"      # permissive: report "not blocking"
    CLOSED = "closed"  # restrictive: report "blocking"

    @classmethod
    def parse(cls, value) -> "FailurePolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Invalid failure policy: {value!r}. Must be 'open' or 'closed'") from None


class IPv6BlockError(Exception):
    """Base class for every error raised by this package."""


class NetworkError(IPv6BlockError):
    """The range feed could not be retrieved."""

    def __init__(self, url: str, detail: Optional[str] = None):
        self.url = url
        self.detail = detail
        message = f"Failed to fetch IPv6 ranges from {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class FormatError(IPv6BlockError):
    """The range feed payload does not match the expected schema."""


class EmptyResultError(IPv6BlockError):
    """The range feed contained no valid IPv6 ranges."""


class InvalidArgument(IPv6BlockError, ValueError):
    """An operation was called with unusable input."""


class RuleStoreError(IPv6BlockError):
    """A Rule Store command failed."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class PermissionDenied(IPv6BlockError):
    """Elevation was refused or the process lacks administrator rights."""


class RuleCreationError(IPv6BlockError):
    """Neither rule creation path produced an active block."""

    def __init__(self, message: str, cause: Optional[BaseException] = None,
                 attempts: Optional[List] = None):
        self.cause = cause
        self.attempts = list(attempts or [])
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ResolutionError(IPv6BlockError):
    """The probe host did not resolve to any IPv6 address."""

    def __init__(self, host: str, detail: Optional[str] = None):
        self.host = host
        message = f"No IPv6 address found for {host}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


__all__ = [
    "FailurePolicy",
    "IPv6BlockError",
    "NetworkError",
    "FormatError",
    "EmptyResultError",
    "InvalidArgument",
    "RuleStoreError",
    "PermissionDenied",
    "RuleCreationError",
    "ResolutionError",
]
