"""
QEMU instance launching, the per-instance state machine, and VM PID tracking.
"""

import datetime
import json
import logging
import os
import platform
import shutil
import signal
import socket
import subprocess
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import HarnessConfig
from .errors import FailureReason, InvalidStateTransition, LaunchFailed
from .resource_pool import Resources

logger = logging.getLogger(__name__)

# PID tracking for launched VMs (so we can kill only our VMs)
# Keyed on the orchestrator PID so concurrent runs never touch each other's VMs
_ORCHESTRATOR_PID = os.getpid()
VM_PID_TRACKING_FILE = Path(f"/tmp/qemu-usbip-mcp-vm-pids-{_ORCHESTRATOR_PID}.json")


class InstanceState(Enum):
    STARTING = "starting"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    TERMINATED = "terminated"


_TRANSITIONS = {
    InstanceState.STARTING: {InstanceState.PENDING, InstanceState.FAILED},
    InstanceState.PENDING: {InstanceState.READY, InstanceState.FAILED},
    InstanceState.READY: {InstanceState.TERMINATED},
    InstanceState.FAILED: {InstanceState.TERMINATED},
    InstanceState.TERMINATED: set(),
}


@dataclass
class Instance:
    """One VM under test."""

    id: int
    console_log_path: Path
    resources: Optional[Resources] = None
    process: Optional[subprocess.Popen] = None
    monitor_socket: Optional[Path] = None
    command: List[str] = field(default_factory=list)
    state: InstanceState = InstanceState.STARTING
    outcome: Optional[InstanceState] = None  # READY or FAILED, kept after TERMINATED
    failure: Optional[FailureReason] = None
    started_at: float = field(default_factory=time.monotonic)
    started_wallclock: str = field(default_factory=lambda: datetime.datetime.now().isoformat())
    resolved_at: Optional[float] = None
    exit_code: Optional[int] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not None

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def time_to_resolve(self) -> Optional[float]:
        if self.resolved_at is None:
            return None
        return self.resolved_at - self.started_at

    def transition(
        self,
        new_state: InstanceState,
        failure: Optional[FailureReason] = None,
        now: Optional[float] = None,
    ) -> None:
        """Move forward through the state machine.

        Raises:
            InvalidStateTransition: if the move is not allowed
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Instance #{self.id}: {self.state.value} -> {new_state.value} not allowed"
            )
        if new_state is InstanceState.FAILED and failure is None:
            raise ValueError("FAILED transition requires a failure reason")

        self.state = new_state
        if new_state in (InstanceState.READY, InstanceState.FAILED):
            self.outcome = new_state
            self.failure = failure
            self.resolved_at = now if now is not None else time.monotonic()

    def handle(self) -> Dict[str, Any]:
        """Process handle exposed to callers: id, PID, console log."""
        return {
            "id": self.id,
            "pid": self.pid,
            "console_log": str(self.console_log_path),
        }


@dataclass
class TrackedVM:
    """A launched QEMU process as recorded in the tracking file."""

    pid: int
    pgid: int
    instance_id: int
    admin_port: int
    protocol_port: int
    console_log: str
    run_dir: str
    started_at: float = field(default_factory=time.time)

    def describe(self) -> str:
        return (
            f"instance #{self.instance_id} (PID {self.pid}, "
            f"SSH {self.admin_port}, USB/IP {self.protocol_port}, run {Path(self.run_dir).name})"
        )


def _load_tracking() -> Dict[str, Dict[str, Any]]:
    try:
        with open(VM_PID_TRACKING_FILE, "r") as f:
            records = json.load(f)
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"⚠ Ignoring unreadable VM tracking file {VM_PID_TRACKING_FILE}: {e}")
        return {}
    return records if isinstance(records, dict) else {}


def _save_tracking(records: Dict[str, Dict[str, Any]]) -> None:
    if not records:
        VM_PID_TRACKING_FILE.unlink(missing_ok=True)
        return
    tmp = VM_PID_TRACKING_FILE.with_suffix(".tmp")
    with open(tmp, "w") as f:
        json.dump(records, f, indent=2)
    tmp.replace(VM_PID_TRACKING_FILE)


def _pid_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass  # exists but belongs to another user
    return True


def track_vm_process(record: TrackedVM) -> None:
    """Record a launched VM so leftovers can be found after a crash."""
    records = _load_tracking()
    records[str(record.pid)] = asdict(record)
    try:
        _save_tracking(records)
    except OSError as e:
        logger.warning(f"Failed to track {record.describe()}: {e}")


def untrack_vm_process(pid: int) -> None:
    """Drop a VM from tracking once it has been reaped."""
    records = _load_tracking()
    if records.pop(str(pid), None) is None:
        return
    try:
        _save_tracking(records)
    except OSError as e:
        logger.warning(f"Failed to untrack VM process {pid}: {e}")


def get_tracked_vm_processes() -> Dict[int, TrackedVM]:
    """Tracked VMs whose process still exists, keyed by PID."""
    alive = {}
    for data in _load_tracking().values():
        try:
            record = TrackedVM(**data)
        except TypeError:
            logger.debug(f"Skipping malformed tracking record: {data}")
            continue
        if _pid_exists(record.pid):
            alive[record.pid] = record
    return alive


def kill_tracked_vms(force: bool = False) -> List[TrackedVM]:
    """Signal the process group of every tracked VM still alive.

    Args:
        force: Use SIGKILL instead of SIGTERM

    Returns:
        Records of the VMs that were signalled
    """
    sig = signal.SIGKILL if force else signal.SIGTERM
    killed = []

    for pid, record in get_tracked_vm_processes().items():
        try:
            os.killpg(record.pgid, sig)
            killed.append(record)
            logger.info(f"Sent {sig.name} to {record.describe()}")
        except (ProcessLookupError, PermissionError) as e:
            logger.warning(f"Could not signal {record.describe()}: {e}")
        untrack_vm_process(pid)

    return killed


def detect_accelerator() -> str:
    """Pick a QEMU accelerator for the host: kvm, hvf, or tcg."""
    system = platform.system()
    if system == "Linux" and os.access("/dev/kvm", os.R_OK | os.W_OK):
        return "kvm"
    if system == "Darwin":
        return "hvf"
    return "tcg"


def request_powerdown(monitor_socket: Optional[Path], timeout: float = 1.0) -> bool:
    """Ask the guest to power down through the QEMU human monitor.

    Returns:
        True if the command was delivered
    """
    if monitor_socket is None or not monitor_socket.exists():
        return False

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(timeout)
            client.connect(str(monitor_socket))
            client.sendall(b"system_powerdown\n")
        return True
    except OSError as e:
        logger.debug(f"Monitor powerdown via {monitor_socket} failed: {e}")
        return False


def signal_instance(instance: Instance, sig: int) -> bool:
    """Send a signal to the instance's process group.

    Returns:
        True if the signal was delivered
    """
    if instance.process is None or instance.process.poll() is not None:
        return False
    try:
        os.killpg(os.getpgid(instance.process.pid), sig)
        return True
    except (ProcessLookupError, PermissionError, OSError):
        return False


class InstanceLauncher:
    """Starts QEMU processes for test instances."""

    def __init__(
        self,
        config: HarnessConfig,
        log_dir: Path,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        """
        Args:
            config: Harness configuration
            log_dir: Run directory that receives <id>-console.log files
            spawn: Process factory (subprocess.Popen signature)
            which: Binary lookup (shutil.which signature)
        """
        self.config = config
        self.log_dir = Path(log_dir)
        self.spawn = spawn
        self.which = which
        self.accel = config.accel or detect_accelerator()

    def console_log_path(self, instance_id: int) -> Path:
        return self.log_dir / f"{instance_id}-console.log"

    def monitor_socket_path(self, instance_id: int) -> Path:
        return self.config.pid_dir / f"{self.log_dir.name}-{instance_id}-monitor.sock"

    def build_command(self, resources: Resources, monitor_socket: Path) -> List[str]:
        """Build the QEMU command line for one instance."""
        cfg = self.config
        hostfwd = (
            f"user,id=net0,"
            f"hostfwd=tcp:127.0.0.1:{resources.admin_port}-:{cfg.guest_admin_port},"
            f"hostfwd=tcp:127.0.0.1:{resources.protocol_port}-:{cfg.guest_protocol_port}"
        )
        # fmt: off
        cmd = [
            cfg.qemu_binary,
            "-machine", cfg.machine,
            "-smp", str(cfg.cpus),
            "-m", cfg.memory,
            "-accel", self.accel,
            "-drive", f"file={resources.overlay_path},format=qcow2,if=virtio",
            "-netdev", hostfwd,
            "-device", "virtio-net-pci,netdev=net0",
            "-serial", "stdio",
            "-monitor", f"unix:{monitor_socket},server,nowait",
            "-display", "none",
            "-nodefaults",
            "-no-user-config",
            "-rtc", "base=utc,clock=host",
            "-boot", "order=c",
        ]
        # fmt: on
        if self.accel in ("kvm", "hvf"):
            cmd.extend(["-cpu", "host"])
        cmd.extend(cfg.extra_qemu_args)
        return cmd

    def _write_header(self, log_path: Path, instance_id: int, resources: Resources, cmd: List[str]):
        with open(log_path, "w", encoding="utf-8") as f:
            f.write(
                f"QEMU Console Log - Instance: {instance_id} - "
                f"{datetime.datetime.now().isoformat()}\n"
            )
            f.write("=" * 40 + "\n")
            f.write(f"[INFO] Overlay image: {resources.overlay_name}\n")
            f.write(f"[INFO] SSH: {resources.admin_port}\n")
            f.write(f"[INFO] USB/IP: {resources.protocol_port}\n")
            f.write(f"[INFO] Memory: {self.config.memory}\n")
            f.write(f"[INFO] QEMU command: {' '.join(cmd)}\n")
            f.write("=" * 40 + "\n")

    def launch(self, instance_id: int, base_image: Path, resources: Resources) -> Instance:
        """Spawn one VM in the background and return its handle.

        The caller owns `resources` and must release them if this raises.

        Raises:
            LaunchFailed: QEMU is missing, the base image is missing, or spawn failed
        """
        if self.which(self.config.qemu_binary) is None:
            raise LaunchFailed(f"QEMU binary '{self.config.qemu_binary}' not found in PATH")
        if not Path(base_image).exists():
            raise LaunchFailed(f"Base image not found: {base_image}")

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.config.pid_dir.mkdir(parents=True, exist_ok=True)

        log_path = self.console_log_path(instance_id)
        monitor_socket = self.monitor_socket_path(instance_id)
        cmd = self.build_command(resources, monitor_socket)

        try:
            self._write_header(log_path, instance_id, resources, cmd)
            log_handle = open(log_path, "a", encoding="utf-8")
        except OSError as e:
            raise LaunchFailed(f"Cannot create console log {log_path}: {e}") from e

        try:
            process = self.spawn(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                close_fds=True,
                start_new_session=True,  # Own process group for clean teardown
            )
        except OSError as e:
            raise LaunchFailed(f"Failed to spawn {self.config.qemu_binary}: {e}") from e
        finally:
            # The child holds its own descriptor
            log_handle.close()

        instance = Instance(
            id=instance_id,
            console_log_path=log_path,
            resources=resources,
            process=process,
            monitor_socket=monitor_socket,
            command=cmd,
        )

        try:
            pgid = os.getpgid(process.pid)
        except OSError:
            pgid = process.pid
        track_vm_process(
            TrackedVM(
                pid=process.pid,
                pgid=pgid,
                instance_id=instance_id,
                admin_port=resources.admin_port,
                protocol_port=resources.protocol_port,
                console_log=str(log_path),
                run_dir=str(self.log_dir),
            )
        )

        logger.info(f"Instance #{instance_id} started with PID: {process.pid}")
        return instance
