"""
Failure diagnostics for instances that did not become ready.

A diagnostics report is written for every failed instance. Collecting it
must never take the run down, so every piece that cannot be gathered is
recorded as "unavailable" instead of raising.
"""

import datetime
import logging
import os
import platform
import subprocess
import sys
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

UNAVAILABLE = "unavailable"
RUNNING = "running"


def _qemu_version(qemu_binary: str) -> str:
    try:
        result = subprocess.run(
            [qemu_binary, "--version"], capture_output=True, text=True, timeout=5
        )
    except (OSError, subprocess.SubprocessError):
        return UNAVAILABLE
    if result.returncode != 0 or not result.stdout:
        return UNAVAILABLE
    return result.stdout.splitlines()[0].strip()


def host_snapshot(
    work_dir: Optional[Path] = None, qemu_binary: str = "qemu-system-x86_64"
) -> Dict[str, Any]:
    """Collect a snapshot of the host environment.

    Args:
        work_dir: Directory whose filesystem free space is reported
        qemu_binary: QEMU binary whose version is reported

    Returns:
        Dictionary of host facts; values that could not be read are "unavailable"
    """
    snapshot: Dict[str, Any] = {
        "os": f"{platform.system()} {platform.release()}",
        "arch": platform.machine() or UNAVAILABLE,
        "python": sys.version.split()[0],
        "cpu_count": os.cpu_count() or UNAVAILABLE,
    }

    try:
        mem = psutil.virtual_memory()
        snapshot["memory_total_mb"] = mem.total // (1024 * 1024)
        snapshot["memory_available_mb"] = mem.available // (1024 * 1024)
    except (OSError, RuntimeError):
        snapshot["memory_total_mb"] = UNAVAILABLE
        snapshot["memory_available_mb"] = UNAVAILABLE

    try:
        load = psutil.getloadavg()
        snapshot["load_average"] = [round(value, 2) for value in load]
    except (OSError, AttributeError, RuntimeError):
        snapshot["load_average"] = UNAVAILABLE

    disk_path = Path(work_dir) if work_dir else Path.cwd()
    while not disk_path.exists() and disk_path != disk_path.parent:
        disk_path = disk_path.parent
    try:
        snapshot["disk_free_mb"] = psutil.disk_usage(str(disk_path)).free // (1024 * 1024)
    except OSError:
        snapshot["disk_free_mb"] = UNAVAILABLE

    snapshot["qemu_version"] = _qemu_version(qemu_binary)
    return snapshot


def tail_lines(path: Path, count: int) -> List[str]:
    """Return the last `count` lines of a text file.

    Raises:
        OSError: if the file cannot be read
    """
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=count)]


@dataclass
class DiagnosticsReport:
    """Everything known about one failed instance."""

    instance_id: int
    generated_at: str
    failure: Dict[str, Any]
    started_at: str = UNAVAILABLE
    pid: Any = UNAVAILABLE
    exit_code: Any = UNAVAILABLE
    admin_port: Any = UNAVAILABLE
    protocol_port: Any = UNAVAILABLE
    overlay: str = UNAVAILABLE
    console_log: str = UNAVAILABLE
    console_tail: List[str] = field(default_factory=list)
    host: Dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "generated_at": self.generated_at,
            "started_at": self.started_at,
            "failure": self.failure,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "admin_port": self.admin_port,
            "protocol_port": self.protocol_port,
            "overlay": self.overlay,
            "console_log": self.console_log,
            "console_tail": self.console_tail,
            "host": self.host,
        }

    def format(self) -> str:
        failure = self.failure
        lines = [
            "QEMU USB/IP Test Tool - Failure Diagnostics",
            "=" * 60,
            f"Timestamp: {self.generated_at}",
            f"Instance ID: {self.instance_id}",
            f"Started: {self.started_at}",
            "",
            "Failure:",
            f"  Kind: {failure.get('code', UNAVAILABLE)}",
            f"  Category: {failure.get('category') or '-'}",
            f"  Detail: {failure.get('detail', UNAVAILABLE)}",
            f"  Matched line: {failure.get('matched_line') or '-'}",
            "",
            "Process:",
            f"  PID: {self.pid}",
            f"  Exit code: {self.exit_code}",
            "",
            "Resources:",
            f"  SSH port: {self.admin_port}",
            f"  USB/IP port: {self.protocol_port}",
            f"  Overlay: {self.overlay}",
            "",
            "System Information:",
        ]
        for key, value in self.host.items():
            lines.append(f"  {key}: {value}")
        lines.extend(
            [
                "",
                f"Recent Console Log ({self.console_log}):",
                "-" * 60,
            ]
        )
        lines.extend(self.console_tail or [UNAVAILABLE])
        lines.append("-" * 60)
        return "\n".join(lines) + "\n"

    def write(self, directory: Path) -> Path:
        """Write diagnostics-<id>.log into directory and return its path."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"diagnostics-{self.instance_id}.log"
        path.write_text(self.format(), encoding="utf-8")
        self.path = path
        return path


class DiagnosticsGenerator:
    """Builds DiagnosticsReport objects for failed instances."""

    def __init__(
        self,
        tail_lines: int = 20,
        env_probe: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        """
        Args:
            tail_lines: Console log lines to include
            env_probe: Returns the host snapshot (default: host_snapshot())
        """
        self.tail_lines = tail_lines
        self.env_probe = env_probe or host_snapshot

    def _host(self) -> Dict[str, Any]:
        try:
            return self.env_probe()
        except Exception as e:
            logger.warning(f"⚠ Host snapshot failed: {e}")
            return {"host": UNAVAILABLE}

    def _tail(self, path: Optional[Path]) -> List[str]:
        if path is None:
            return []
        try:
            return tail_lines(path, self.tail_lines)
        except OSError as e:
            logger.debug(f"Cannot read console log {path}: {e}")
            return []

    def _exit_status(self, instance) -> Any:
        """Exit code if QEMU has exited, "running" while it is still up."""
        if instance.exit_code is not None:
            return instance.exit_code
        if instance.process is None:
            return UNAVAILABLE
        try:
            returncode = instance.process.poll()
        except OSError as e:
            logger.debug(f"Cannot poll instance #{instance.id}: {e}")
            return UNAVAILABLE
        return RUNNING if returncode is None else returncode

    def generate(self, instance) -> DiagnosticsReport:
        """Collect diagnostics for one instance. Never raises."""
        failure = instance.failure.to_dict() if instance.failure else {"code": UNAVAILABLE}
        resources = instance.resources

        return DiagnosticsReport(
            instance_id=instance.id,
            generated_at=datetime.datetime.now().isoformat(),
            started_at=getattr(instance, "started_wallclock", UNAVAILABLE),
            failure=failure,
            pid=instance.pid if instance.pid is not None else UNAVAILABLE,
            exit_code=self._exit_status(instance),
            admin_port=resources.admin_port if resources else UNAVAILABLE,
            protocol_port=resources.protocol_port if resources else UNAVAILABLE,
            overlay=resources.overlay_name if resources else UNAVAILABLE,
            console_log=str(instance.console_log_path) if instance.console_log_path else UNAVAILABLE,
            console_tail=self._tail(instance.console_log_path),
            host=self._host(),
        )

    def generate_and_write(self, instance, directory: Path) -> Optional[DiagnosticsReport]:
        """Generate and write diagnostics. Returns None if the file could not be written."""
        report = self.generate(instance)
        try:
            report.write(directory)
        except OSError as e:
            logger.error(f"✗ Failed to write diagnostics for instance #{instance.id}: {e}")
            return None
        return report
