"""
Readiness and failure detection from QEMU console logs.

The guest announces progress on its serial console. Detection is a
periodic poll of that text: each poll reads whatever the VM appended since
the last poll, then classifies the instance with a fixed priority:

    success marker > error marker > process exited > stall > timeout

A genuinely completed boot is therefore never reported as failed, even if
it was slow or printed a scary message on the way.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from .errors import FailureKind, FailureReason

logger = logging.getLogger(__name__)


class DetectionStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class MarkerRule:
    """A console pattern and the category it signals."""

    pattern: Pattern[str]
    category: str

    def search(self, line: str) -> bool:
        return self.pattern.search(line) is not None


@dataclass(frozen=True)
class MarkerMatch:
    rule: MarkerRule
    line: str

    @property
    def category(self) -> str:
        return self.rule.category


class MarkerRegistry:
    """Data-driven table of readiness and failure markers.

    Matching is case-sensitive. New failure categories are added with
    register_error() without touching the detection control flow.
    """

    DEFAULT_SUCCESS_MARKERS = [
        (r"USBIP_CLIENT_READY", "usbip_client_ready"),
        (r"CLOUD_INIT_COMPLETE", "cloud_init_complete"),
        (r"QEMU instance connection information", "connection_info"),
    ]

    DEFAULT_ERROR_MARKERS = [
        (r"Kernel panic", "kernel_panic"),
        (r"Out of memory", "out_of_memory"),
        (r"Permission denied", "permission_denied"),
        (r"No space left", "disk_full"),
        (r"Address already in use", "address_in_use"),
        (r"USBIP_CLIENT_FAILED", "usbip_client_failed"),
        (r"VHCI_MODULE_FAILED", "vhci_module_failed"),
        (r"BOOT_FAILED", "boot_failed"),
    ]

    def __init__(
        self,
        success: Optional[List[Tuple[str, str]]] = None,
        errors: Optional[List[Tuple[str, str]]] = None,
    ):
        self.success_rules: List[MarkerRule] = []
        self.error_rules: List[MarkerRule] = []

        for pattern, category in success if success is not None else self.DEFAULT_SUCCESS_MARKERS:
            self.register_success(pattern, category)
        for pattern, category in errors if errors is not None else self.DEFAULT_ERROR_MARKERS:
            self.register_error(pattern, category)

    @staticmethod
    def _rule(pattern: str, category: str) -> MarkerRule:
        return MarkerRule(pattern=re.compile(pattern), category=category)

    def register_success(self, pattern: str, category: str) -> None:
        self.success_rules.append(self._rule(pattern, category))

    def register_error(self, pattern: str, category: str) -> None:
        self.error_rules.append(self._rule(pattern, category))

    @property
    def error_categories(self) -> List[str]:
        return [rule.category for rule in self.error_rules]

    @staticmethod
    def _find(rules: List[MarkerRule], lines: List[str]) -> Optional[MarkerMatch]:
        # Newest content first
        for line in reversed(lines):
            for rule in rules:
                if rule.search(line):
                    return MarkerMatch(rule=rule, line=line.strip())
        return None

    def find_success(self, lines: List[str]) -> Optional[MarkerMatch]:
        return self._find(self.success_rules, lines)

    def find_error(self, lines: List[str]) -> Optional[MarkerMatch]:
        return self._find(self.error_rules, lines)

    def find_all_errors(self, lines: List[str]) -> List[MarkerMatch]:
        matches = []
        for line in lines:
            for rule in self.error_rules:
                if rule.search(line):
                    matches.append(MarkerMatch(rule=rule, line=line.strip()))
                    break
        return matches


class ConsoleLogReader:
    """Incrementally reads an append-only console log.

    Keeps a byte offset so each poll only reads what the VM appended.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.offset = 0
        self.lines: List[str] = []
        self._partial = ""

    @property
    def size(self) -> int:
        return self.offset

    @property
    def text(self) -> str:
        return "\n".join(self.lines + ([self._partial] if self._partial else []))

    def all_lines(self) -> List[str]:
        return self.lines + ([self._partial] if self._partial else [])

    def read_new(self) -> int:
        """Read appended bytes.

        Returns:
            Number of new bytes (0 if the log did not grow or does not exist)
        """
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                data = f.read()
        except FileNotFoundError:
            return 0

        if not data:
            return 0

        self.offset += len(data)
        chunk = self._partial + data.decode("utf-8", errors="replace")
        parts = chunk.split("\n")
        self._partial = parts.pop()
        self.lines.extend(parts)
        return len(data)


class StallPolicy:
    """Counts consecutive polls without log growth."""

    def __init__(self, threshold: int = 3):
        if threshold < 1:
            raise ValueError("stall threshold must be >= 1")
        self.threshold = threshold
        self.idle_polls = 0

    def observe(self, grew: bool) -> bool:
        """Record one poll. Returns True once the log counts as stalled."""
        if grew:
            self.idle_polls = 0
        else:
            self.idle_polls += 1
        return self.idle_polls >= self.threshold


@dataclass
class Detection:
    """Result of one poll."""

    status: DetectionStatus
    reason: Optional[FailureReason] = None
    matched_line: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not DetectionStatus.PENDING


@dataclass
class _Tracked:
    reader: ConsoleLogReader
    stall: StallPolicy
    started_at: float
    polls: int = 0


class ReadinessDetector:
    """Classifies instances as READY, FAILED or PENDING from their console logs."""

    def __init__(
        self,
        registry: Optional[MarkerRegistry] = None,
        stall_polls: int = 3,
        instance_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        reader_factory: Callable[[Path], ConsoleLogReader] = ConsoleLogReader,
        stall_factory: Optional[Callable[[], StallPolicy]] = None,
    ):
        """
        Args:
            registry: Marker table (defaults to the standard USB/IP markers)
            stall_polls: Consecutive polls without growth that count as a stall
            instance_timeout: Seconds after which a pending instance fails
            clock: Monotonic time source
            reader_factory: Creates the log reader for an instance
            stall_factory: Creates the stall policy for an instance
        """
        self.registry = registry or MarkerRegistry()
        self.stall_polls = stall_polls
        self.instance_timeout = instance_timeout
        self.clock = clock
        self.reader_factory = reader_factory
        self.stall_factory = stall_factory or (lambda: StallPolicy(self.stall_polls))
        self._tracked: Dict[int, _Tracked] = {}

    def _tracked_for(self, instance) -> _Tracked:
        tracked = self._tracked.get(instance.id)
        if tracked is None:
            tracked = _Tracked(
                reader=self.reader_factory(instance.console_log_path),
                stall=self.stall_factory(),
                started_at=self.clock(),
            )
            self._tracked[instance.id] = tracked
        return tracked

    def lines(self, instance) -> List[str]:
        """Console lines read so far for an instance."""
        tracked = self._tracked.get(instance.id)
        return tracked.reader.all_lines() if tracked else []

    def poll(self, instance) -> Detection:
        """Read new console output and classify the instance."""
        tracked = self._tracked_for(instance)
        first_poll = tracked.polls == 0
        tracked.polls += 1

        grew = tracked.reader.read_new() > 0
        lines = tracked.reader.all_lines()

        success = self.registry.find_success(lines)
        if success:
            return Detection(DetectionStatus.READY, matched_line=success.line)

        error = self.registry.find_error(lines)
        if error:
            reason = FailureReason(
                kind=FailureKind.GUEST_REPORTED_FAILURE,
                category=error.category,
                detail=f"Console reported {error.category.replace('_', ' ')}",
                matched_line=error.line,
            )
            return Detection(DetectionStatus.FAILED, reason=reason, matched_line=error.line)

        process = getattr(instance, "process", None)
        if process is not None:
            exit_code = process.poll()
            if exit_code is not None:
                reason = FailureReason(
                    kind=FailureKind.PROCESS_EXITED,
                    detail=f"QEMU process exited with code {exit_code} before becoming ready",
                )
                return Detection(DetectionStatus.FAILED, reason=reason)

        # The first poll only establishes the growth baseline
        if not first_poll and tracked.stall.observe(grew):
            reason = FailureReason(
                kind=FailureKind.BOOT_STALL,
                detail=(
                    f"Console log did not grow for {tracked.stall.idle_polls} consecutive "
                    f"polls (size {tracked.reader.size} bytes)"
                ),
            )
            return Detection(DetectionStatus.FAILED, reason=reason)

        if self.instance_timeout is not None:
            elapsed = self.clock() - tracked.started_at
            if elapsed >= self.instance_timeout:
                reason = FailureReason(
                    kind=FailureKind.BOOT_TIMEOUT,
                    detail=f"Not ready after {elapsed:.0f}s (limit {self.instance_timeout:.0f}s)",
                )
                return Detection(DetectionStatus.FAILED, reason=reason)

        return Detection(DetectionStatus.PENDING)

    def forget(self, instance) -> None:
        self._tracked.pop(instance.id, None)


@dataclass
class LogInspection:
    """One-shot readiness summary of a console log."""

    path: Path
    exists: bool
    ready_markers: List[str] = field(default_factory=list)
    error_categories: List[str] = field(default_factory=list)
    error_lines: List[str] = field(default_factory=list)
    usbip_version: Optional[str] = None
    vhci_module_loaded: bool = False
    line_count: int = 0

    @property
    def status(self) -> DetectionStatus:
        if self.ready_markers:
            return DetectionStatus.READY
        if self.error_categories:
            return DetectionStatus.FAILED
        return DetectionStatus.PENDING

    def summary(self) -> str:
        if not self.exists:
            return f"✗ Console log not found: {self.path}"

        lines = [f"Console log: {self.path} ({self.line_count} lines)"]
        if self.ready_markers:
            lines.append(f"✓ USB/IP client ready ({', '.join(self.ready_markers)})")
        else:
            lines.append("✗ USB/IP client not ready")
        lines.append(
            "✓ vhci-hcd module loaded" if self.vhci_module_loaded else "✗ vhci-hcd module not loaded"
        )
        if self.usbip_version:
            lines.append(f"✓ USB/IP version: {self.usbip_version}")
        else:
            lines.append("✗ USB/IP version not available")
        if self.error_categories:
            lines.append(f"✗ Errors detected: {', '.join(self.error_categories)}")
            for line in self.error_lines[:10]:
                lines.append(f"    {line}")
        lines.append(f"Status: {self.status.value.upper()}")
        return "\n".join(lines)


_USBIP_VERSION_RE = re.compile(r"USBIP_VERSION:?\s*(.+)$")


def inspect_log(path: Path, registry: Optional[MarkerRegistry] = None) -> LogInspection:
    """Summarize a console log without tracking state between calls."""
    registry = registry or MarkerRegistry()
    path = Path(path)
    if not path.exists():
        return LogInspection(path=path, exists=False)

    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    inspection = LogInspection(path=path, exists=True, line_count=len(lines))

    for rule in registry.success_rules:
        if any(rule.search(line) for line in lines):
            inspection.ready_markers.append(rule.category)

    for match in registry.find_all_errors(lines):
        if match.category not in inspection.error_categories:
            inspection.error_categories.append(match.category)
        inspection.error_lines.append(match.line)

    for line in reversed(lines):
        version = _USBIP_VERSION_RE.search(line)
        if version:
            inspection.usbip_version = version.group(1).strip()
            break

    inspection.vhci_module_loaded = any(
        "VHCI_MODULE_LOADED" in line and "SUCCESS" in line for line in lines
    )
    return inspection
