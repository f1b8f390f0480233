"""
Failure taxonomy for QEMU USB/IP test runs.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(Enum):
    """Why an instance failed."""

    RESOURCE_EXHAUSTED = "resource_exhausted"
    LAUNCH_FAILED = "launch_failed"
    BOOT_TIMEOUT = "boot_timeout"
    BOOT_STALL = "boot_stall"
    GUEST_REPORTED_FAILURE = "guest_reported_failure"
    PROCESS_EXITED = "process_exited"
    RESOURCE_CONFLICT = "resource_conflict"

    @property
    def code(self) -> str:
        """Structured log code (e.g. BOOT_TIMEOUT, QEMU_CRASH)."""
        return _STRUCTURED_CODES[self]

    @property
    def is_timeout(self) -> bool:
        """Stalls and hard timeouts are both reported as timeouts."""
        return self in (FailureKind.BOOT_TIMEOUT, FailureKind.BOOT_STALL)


_STRUCTURED_CODES = {
    FailureKind.RESOURCE_EXHAUSTED: "RESOURCE_EXHAUSTED",
    FailureKind.LAUNCH_FAILED: "LAUNCH_FAILED",
    FailureKind.BOOT_TIMEOUT: "BOOT_TIMEOUT",
    FailureKind.BOOT_STALL: "BOOT_STALL",
    FailureKind.GUEST_REPORTED_FAILURE: "GUEST_FAILURE",
    FailureKind.PROCESS_EXITED: "QEMU_CRASH",
    FailureKind.RESOURCE_CONFLICT: "NETWORK_FAILURE",
}


@dataclass(frozen=True)
class FailureReason:
    """Classified failure attached to an instance."""

    kind: FailureKind
    detail: str
    category: Optional[str] = None  # e.g. "kernel_panic" for guest failures
    matched_line: Optional[str] = None

    def __str__(self) -> str:
        if self.category:
            return f"{self.kind.code} ({self.category}): {self.detail}"
        return f"{self.kind.code}: {self.detail}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.kind.code,
            "category": self.category,
            "detail": self.detail,
            "matched_line": self.matched_line,
        }


class HarnessError(Exception):
    """Base class for harness errors."""


class ConfigError(HarnessError):
    """Invalid harness configuration."""


class ResourceExhausted(HarnessError):
    """No free port pair or overlay could be allocated."""


class LaunchFailed(HarnessError):
    """The VM process could not be spawned."""


class InvalidStateTransition(HarnessError):
    """An instance was asked to move backwards through its state machine."""


class RetryExhausted(HarnessError):
    """All retry attempts failed; carries the last underlying error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
