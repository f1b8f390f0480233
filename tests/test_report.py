"""
Tests for report aggregation and rendering.
"""

import datetime
import json
from unittest.mock import MagicMock

import pytest

from qemu_usbip_mcp.errors import FailureKind, FailureReason
from qemu_usbip_mcp.launcher import Instance, InstanceState
from qemu_usbip_mcp.report import (
    ConflictCheck,
    ReportGenerator,
    count_error_lines,
    format_test_report,
    success_rate,
    write_reports,
)
from qemu_usbip_mcp.resource_pool import Resources


def _instance(tmp_path, instance_id, ready, lines=()):
    log = tmp_path / f"{instance_id}-console.log"
    log.write_text("".join(line + "\n" for line in lines))
    instance = Instance(
        id=instance_id,
        console_log_path=log,
        resources=Resources(
            instance_id,
            tmp_path / f"run-{instance_id}-abcdef-overlay.qcow2",
            2221 + instance_id,
            3239 + instance_id,
        ),
        process=MagicMock(pid=1000 + instance_id),
        started_at=0.0,
    )
    instance.transition(InstanceState.PENDING)
    if ready:
        instance.transition(InstanceState.READY, now=12.0)
    else:
        instance.transition(
            InstanceState.FAILED,
            failure=FailureReason(kind=FailureKind.BOOT_TIMEOUT, detail="Not ready within 30s"),
            now=30.0,
        )
    instance.transition(InstanceState.TERMINATED)
    return instance


@pytest.mark.parametrize(
    "ready,total,expected",
    [(3, 3, 100), (2, 3, 66), (4, 5, 80), (0, 3, 0), (0, 0, 0)],
)
def test_success_rate(ready, total, expected):
    """Test the success rate rounds down."""
    assert success_rate(ready, total) == expected


def test_threshold_boundary(tmp_path):
    """Test 80% passes at the default threshold and 66% does not."""
    generator = ReportGenerator(threshold=80)

    four_of_five = [_instance(tmp_path, i, ready=i != 5) for i in range(1, 6)]
    assert generator.generate(four_of_five).verdict == "PASS"

    two_of_three = [_instance(tmp_path, i, ready=i != 3) for i in range(1, 4)]
    report = generator.generate(two_of_three)
    assert report.success_rate == 66
    assert report.verdict == "FAIL"


def test_failed_conflict_check_fails_run(tmp_path):
    """Test a conflict fails the run even with every instance ready."""
    instances = [_instance(tmp_path, 1, ready=True)]
    checks = [ConflictCheck("overlay_isolation", passed=False, conflicts=1, details=("x",))]
    report = ReportGenerator().generate(instances, checks)
    assert report.success_rate == 100
    assert report.verdict == "FAIL"


def test_instance_summaries(tmp_path):
    """Test per-instance fields."""
    instances = [
        _instance(tmp_path, 2, ready=False, lines=["ERROR: vhci attach", "USBIP_CLIENT_FAILED", "ok"]),
        _instance(tmp_path, 1, ready=True),
    ]
    diagnostics = {2: tmp_path / "diagnostics-2.log"}

    report = ReportGenerator().generate(instances, diagnostics=diagnostics)

    first, second = report.instances
    assert first.id == 1
    assert first.time_to_ready == 12.0
    assert first.admin_port == 2222
    assert first.protocol_port == 3240
    assert second.error_count == 2
    assert second.failure["code"] == "BOOT_TIMEOUT"
    assert second.diagnostics == str(tmp_path / "diagnostics-2.log")
    assert second.time_to_ready is None


def test_format_is_deterministic(tmp_path):
    """Test the text report for a fixed report."""
    start = datetime.datetime(2025, 1, 1, 10, 0, 0)
    instances = [_instance(tmp_path, i, ready=i != 3) for i in range(1, 4)]
    checks = [ConflictCheck("resource_allocation", True), ConflictCheck("overlay_isolation", True)]
    report = ReportGenerator(host_probe=lambda: {"os": "TestOS"}).generate(
        instances,
        checks,
        run_id="run-1",
        started_at=start,
        finished_at=start + datetime.timedelta(seconds=45),
    )

    text = format_test_report(report)
    assert text == format_test_report(report)
    assert text.startswith("QEMU USB/IP Test Tool - Concurrent Execution Test Report")
    assert "Success rate: 66%" in text
    assert "Duration: 45.0s" in text
    assert "✓ resource_allocation: PASSED" in text
    assert "✗ Instance 3: FAILED" in text
    assert "Failure: BOOT_TIMEOUT: Not ready within 30s" in text
    assert text.rstrip().endswith("Verdict: FAIL")


def test_write_reports(tmp_path):
    """Test text and JSON report files."""
    report = ReportGenerator().generate([_instance(tmp_path, 1, ready=True)], run_id="r1")

    text_path, json_path = write_reports(report, tmp_path / "out")

    assert text_path.name == "concurrent-execution-test-report.txt"
    assert json_path.name == "concurrent-execution-test-report.json"
    data = json.loads(json_path.read_text())
    assert data["verdict"] == "PASS"
    assert data["run_id"] == "r1"
    assert "Verdict: PASS" in text_path.read_text()


def test_count_error_lines_missing_file(tmp_path):
    """Test unreadable logs count as zero errors."""
    assert count_error_lines(tmp_path / "missing.log") == 0
