"""
Final test report: aggregation, verdict, and text/JSON rendering.
"""

import datetime
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

REPORT_BASENAME = "concurrent-execution-test-report"


@dataclass(frozen=True)
class ConflictCheck:
    """Outcome of one post-run conflict check."""

    name: str
    passed: bool
    conflicts: int = 0
    details: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "conflicts": self.conflicts,
            "details": list(self.details),
        }


@dataclass(frozen=True)
class InstanceSummary:
    """Per-instance line of the report."""

    id: int
    outcome: str  # "ready" or "failed"
    pid: Optional[int] = None
    admin_port: Optional[int] = None
    protocol_port: Optional[int] = None
    overlay: Optional[str] = None
    console_log: Optional[str] = None
    error_count: int = 0
    time_to_ready: Optional[float] = None
    failure: Optional[Dict[str, Any]] = None
    diagnostics: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.outcome == "ready"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "outcome": self.outcome,
            "pid": self.pid,
            "admin_port": self.admin_port,
            "protocol_port": self.protocol_port,
            "overlay": self.overlay,
            "console_log": self.console_log,
            "error_count": self.error_count,
            "time_to_ready": self.time_to_ready,
            "failure": self.failure,
            "diagnostics": self.diagnostics,
        }


@dataclass(frozen=True)
class TestReport:
    """Immutable result of one orchestration run."""

    __test__ = False  # not a pytest test class

    run_id: str
    started_at: str
    finished_at: str
    duration_seconds: float
    instance_count: int
    ready_count: int
    success_rate: int  # percent, rounded down
    threshold: int
    verdict: str  # "PASS" or "FAIL"
    instances: Tuple[InstanceSummary, ...] = ()
    conflict_checks: Tuple[ConflictCheck, ...] = ()
    host: Dict[str, Any] = field(default_factory=dict, compare=False)
    log_dir: Optional[str] = None

    @property
    def failed_count(self) -> int:
        return self.instance_count - self.ready_count

    @property
    def passed(self) -> bool:
        return self.verdict == "PASS"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": self.duration_seconds,
            "instance_count": self.instance_count,
            "ready_count": self.ready_count,
            "failed_count": self.failed_count,
            "success_rate": self.success_rate,
            "threshold": self.threshold,
            "verdict": self.verdict,
            "instances": [summary.to_dict() for summary in self.instances],
            "conflict_checks": [check.to_dict() for check in self.conflict_checks],
            "host": self.host,
            "log_dir": self.log_dir,
        }


def count_error_lines(path: Optional[Path]) -> int:
    """Count console log lines mentioning ERROR or FAILED (0 if unreadable)."""
    if path is None:
        return 0
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return sum(1 for line in f if "ERROR" in line or "FAILED" in line)
    except OSError:
        return 0


def success_rate(ready: int, total: int) -> int:
    """Percentage of ready instances, rounded down."""
    if total <= 0:
        return 0
    return ready * 100 // total


class ReportGenerator:
    """Aggregates resolved instances into a TestReport."""

    def __init__(
        self,
        threshold: int = 80,
        host_probe: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        """
        Args:
            threshold: Minimum success rate (percent) for a PASS verdict
            host_probe: Returns a host resource snapshot for the report
        """
        self.threshold = threshold
        self.host_probe = host_probe

    def summarize(self, instance, diagnostics_path: Optional[Path] = None) -> InstanceSummary:
        resources = instance.resources
        ready = instance.outcome is not None and instance.outcome.value == "ready"
        return InstanceSummary(
            id=instance.id,
            outcome="ready" if ready else "failed",
            pid=instance.pid,
            admin_port=resources.admin_port if resources else None,
            protocol_port=resources.protocol_port if resources else None,
            overlay=resources.overlay_name if resources else None,
            console_log=str(instance.console_log_path) if instance.console_log_path else None,
            error_count=count_error_lines(instance.console_log_path),
            time_to_ready=(
                round(instance.time_to_resolve, 2)
                if ready and instance.time_to_resolve is not None
                else None
            ),
            failure=instance.failure.to_dict() if instance.failure else None,
            diagnostics=str(diagnostics_path) if diagnostics_path else None,
        )

    def _host(self) -> Dict[str, Any]:
        if self.host_probe is None:
            return {}
        try:
            return self.host_probe()
        except Exception as e:
            logger.warning(f"⚠ Host snapshot for report failed: {e}")
            return {}

    def generate(
        self,
        instances: Iterable[Any],
        conflict_checks: Iterable[ConflictCheck] = (),
        run_id: str = "",
        started_at: Optional[datetime.datetime] = None,
        finished_at: Optional[datetime.datetime] = None,
        log_dir: Optional[Path] = None,
        diagnostics: Optional[Dict[int, Path]] = None,
    ) -> TestReport:
        """Build the final report.

        The verdict is PASS when the success rate reaches the threshold and
        every conflict check passed.
        """
        diagnostics = diagnostics or {}
        finished_at = finished_at or datetime.datetime.now()
        started_at = started_at or finished_at

        summaries = tuple(
            self.summarize(instance, diagnostics.get(instance.id))
            for instance in sorted(instances, key=lambda i: i.id)
        )
        checks = tuple(conflict_checks)
        ready = sum(1 for summary in summaries if summary.ready)
        rate = success_rate(ready, len(summaries))
        passed = rate >= self.threshold and all(check.passed for check in checks)

        report = TestReport(
            run_id=run_id,
            started_at=started_at.isoformat(),
            finished_at=finished_at.isoformat(),
            duration_seconds=round((finished_at - started_at).total_seconds(), 2),
            instance_count=len(summaries),
            ready_count=ready,
            success_rate=rate,
            threshold=self.threshold,
            verdict="PASS" if passed else "FAIL",
            instances=summaries,
            conflict_checks=checks,
            host=self._host(),
            log_dir=str(log_dir) if log_dir else None,
        )
        logger.info(
            f"Report: {ready}/{len(summaries)} ready ({rate}%), verdict {report.verdict}"
        )
        return report


def format_test_report(report: TestReport) -> str:
    """Render a report as plain text."""
    lines: List[str] = [
        "QEMU USB/IP Test Tool - Concurrent Execution Test Report",
        "=" * 60,
        f"Run ID: {report.run_id}",
        f"Started: {report.started_at}",
        f"Finished: {report.finished_at}",
        f"Duration: {report.duration_seconds:.1f}s",
        f"Log directory: {report.log_dir or '-'}",
        "",
        "Summary:",
        f"  Instances: {report.instance_count}",
        f"  Ready: {report.ready_count}",
        f"  Failed: {report.failed_count}",
        f"  Success rate: {report.success_rate}%",
        f"  Threshold: {report.threshold}%",
        "",
        "Conflict Checks:",
    ]

    if not report.conflict_checks:
        lines.append("  (none)")
    for check in report.conflict_checks:
        if check.passed:
            lines.append(f"  ✓ {check.name}: PASSED")
        else:
            lines.append(f"  ✗ {check.name}: FAILED ({check.conflicts} conflict(s))")
        for detail in check.details:
            lines.append(f"      {detail}")

    lines.extend(["", "Instance Details:"])
    for summary in report.instances:
        glyph = "✓" if summary.ready else "✗"
        lines.append(f"  {glyph} Instance {summary.id}: {summary.outcome.upper()}")
        lines.append(f"    PID: {summary.pid if summary.pid is not None else '-'}")
        lines.append(f"    Console log: {summary.console_log or '-'}")
        lines.append(f"    SSH port: {summary.admin_port if summary.admin_port else '-'}")
        lines.append(f"    USB/IP port: {summary.protocol_port if summary.protocol_port else '-'}")
        lines.append(f"    Overlay: {summary.overlay or '-'}")
        lines.append(f"    Errors in log: {summary.error_count}")
        if summary.time_to_ready is not None:
            lines.append(f"    Time to ready: {summary.time_to_ready:.1f}s")
        if summary.failure:
            category = f" ({summary.failure['category']})" if summary.failure.get("category") else ""
            lines.append(f"    Failure: {summary.failure['code']}{category}: {summary.failure['detail']}")
        if summary.diagnostics:
            lines.append(f"    Diagnostics: {summary.diagnostics}")

    if report.host:
        lines.extend(["", "Host Resources:"])
        for key, value in report.host.items():
            lines.append(f"  {key}: {value}")

    lines.extend(["", "=" * 60, f"Verdict: {report.verdict}"])
    return "\n".join(lines) + "\n"


def write_reports(report: TestReport, directory: Path) -> Tuple[Path, Path]:
    """Write the text and JSON reports into directory.

    Returns:
        (text_path, json_path)
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    text_path = directory / f"{REPORT_BASENAME}.txt"
    json_path = directory / f"{REPORT_BASENAME}.json"

    text_path.write_text(format_test_report(report), encoding="utf-8")
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2, default=str)

    logger.info(f"✓ Reports written: {text_path}, {json_path}")
    return text_path, json_path
