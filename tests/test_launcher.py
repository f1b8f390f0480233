"""
Tests for instance launching, the instance state machine and VM PID tracking.
"""

import json
import signal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from qemu_usbip_mcp.config import HarnessConfig
from qemu_usbip_mcp.errors import (
    FailureKind,
    FailureReason,
    InvalidStateTransition,
    LaunchFailed,
)
from qemu_usbip_mcp.launcher import (
    Instance,
    InstanceLauncher,
    InstanceState,
    TrackedVM,
    get_tracked_vm_processes,
    kill_tracked_vms,
    track_vm_process,
    untrack_vm_process,
)
from qemu_usbip_mcp.resource_pool import Resources

TIMEOUT = FailureReason(kind=FailureKind.BOOT_TIMEOUT, detail="too slow")


@pytest.fixture
def resources(tmp_path):
    return Resources(
        instance_id=1,
        overlay_path=tmp_path / "run-1-abc123-overlay.qcow2",
        admin_port=2222,
        protocol_port=3240,
    )


@pytest.fixture
def config(tmp_path):
    return HarnessConfig(work_dir=tmp_path / "work", accel="tcg")


class TestInstanceStateMachine:
    """Test forward-only state transitions."""

    def test_happy_path(self, tmp_path):
        """Test STARTING -> PENDING -> READY -> TERMINATED."""
        instance = Instance(id=1, console_log_path=tmp_path / "1-console.log", started_at=0.0)
        instance.transition(InstanceState.PENDING)
        instance.transition(InstanceState.READY, now=12.5)
        assert instance.outcome is InstanceState.READY
        assert instance.time_to_resolve == 12.5

        instance.transition(InstanceState.TERMINATED)
        assert instance.state is InstanceState.TERMINATED
        assert instance.outcome is InstanceState.READY

    def test_failure_from_starting(self, tmp_path):
        """Test a launch failure resolves straight to FAILED."""
        instance = Instance(id=1, console_log_path=tmp_path / "1-console.log")
        instance.transition(InstanceState.FAILED, failure=TIMEOUT)
        assert instance.failure is TIMEOUT
        assert instance.is_resolved

    @pytest.mark.parametrize(
        "path",
        [
            [InstanceState.READY],
            [InstanceState.PENDING, InstanceState.READY, InstanceState.PENDING],
            [InstanceState.PENDING, InstanceState.TERMINATED],
        ],
    )
    def test_invalid_transitions(self, tmp_path, path):
        """Test that skipping or regressing states raises."""
        instance = Instance(id=1, console_log_path=tmp_path / "1-console.log")
        with pytest.raises(InvalidStateTransition):
            for state in path:
                instance.transition(state)

    def test_ready_cannot_become_failed(self, tmp_path):
        """Test a resolved outcome never changes."""
        instance = Instance(id=1, console_log_path=tmp_path / "1-console.log")
        instance.transition(InstanceState.PENDING)
        instance.transition(InstanceState.READY)
        with pytest.raises(InvalidStateTransition):
            instance.transition(InstanceState.FAILED, failure=TIMEOUT)

    def test_failed_requires_reason(self, tmp_path):
        """Test FAILED without a reason is rejected."""
        instance = Instance(id=1, console_log_path=tmp_path / "1-console.log")
        with pytest.raises(ValueError):
            instance.transition(InstanceState.FAILED)

    def test_handle(self, tmp_path):
        """Test the process handle exposed to callers."""
        process = MagicMock(pid=4242)
        instance = Instance(id=2, console_log_path=tmp_path / "2-console.log", process=process)
        assert instance.handle() == {
            "id": 2,
            "pid": 4242,
            "console_log": str(tmp_path / "2-console.log"),
        }


class TestBuildCommand:
    """Test the QEMU command line."""

    def test_command_contents(self, config, resources, tmp_path):
        """Test forwards, drive, serial console and monitor socket."""
        launcher = InstanceLauncher(config, tmp_path / "logs")
        cmd = launcher.build_command(resources, Path("/tmp/mon.sock"))

        assert cmd[0] == "qemu-system-x86_64"
        joined = " ".join(cmd)
        assert "-machine q35" in joined
        assert "-m 256M" in joined
        assert "-smp 1" in joined
        assert "-accel tcg" in joined
        assert f"file={resources.overlay_path},format=qcow2,if=virtio" in joined
        assert "hostfwd=tcp:127.0.0.1:2222-:22" in joined
        assert "hostfwd=tcp:127.0.0.1:3240-:3240" in joined
        assert "-serial stdio" in joined
        assert "unix:/tmp/mon.sock,server,nowait" in joined
        assert "-cpu" not in cmd

    def test_host_cpu_with_kvm(self, tmp_path, resources):
        """Test -cpu host is used with hardware acceleration."""
        config = HarnessConfig(work_dir=tmp_path, accel="kvm", extra_qemu_args=["-snapshot"])
        cmd = InstanceLauncher(config, tmp_path).build_command(resources, Path("/tmp/m.sock"))
        assert cmd[cmd.index("-cpu") + 1] == "host"
        assert cmd[-1] == "-snapshot"

    def test_accelerator_autodetect(self, tmp_path):
        """Test the accelerator is auto-detected when not configured."""
        config = HarnessConfig(work_dir=tmp_path)
        with patch("qemu_usbip_mcp.launcher.detect_accelerator", return_value="hvf"):
            launcher = InstanceLauncher(config, tmp_path)
        assert launcher.accel == "hvf"


class TestLaunch:
    """Test spawning."""

    def test_launch_writes_header_and_tracks_pid(
        self, config, resources, tmp_path, vm_tracking_file
    ):
        """Test a successful launch."""
        base = tmp_path / "base.qcow2"
        base.write_bytes(b"QFI")
        spawn = MagicMock(return_value=MagicMock(pid=4_100_001))
        launcher = InstanceLauncher(
            config, tmp_path / "logs", spawn=spawn, which=lambda b: "/usr/bin/" + b
        )

        instance = launcher.launch(1, base, resources)

        assert instance.pid == 4_100_001
        assert instance.state is InstanceState.STARTING
        assert instance.console_log_path == tmp_path / "logs" / "1-console.log"
        header = instance.console_log_path.read_text()
        assert "QEMU Console Log - Instance: 1" in header
        assert f"[INFO] Overlay image: {resources.overlay_name}" in header
        assert "[INFO] SSH: 2222" in header
        assert "[INFO] USB/IP: 3240" in header

        kwargs = spawn.call_args[1]
        assert kwargs["start_new_session"] is True

        tracked = json.loads(vm_tracking_file.read_text())
        assert tracked["4100001"]["instance_id"] == 1

    def test_missing_binary(self, config, resources, tmp_path):
        """Test LaunchFailed when QEMU is not installed."""
        launcher = InstanceLauncher(config, tmp_path / "logs", which=lambda b: None)
        with pytest.raises(LaunchFailed, match="not found"):
            launcher.launch(1, tmp_path / "base.qcow2", resources)

    def test_missing_base_image(self, config, resources, tmp_path):
        """Test LaunchFailed when the base image is missing."""
        launcher = InstanceLauncher(config, tmp_path / "logs", which=lambda b: "/usr/bin/" + b)
        with pytest.raises(LaunchFailed, match="Base image"):
            launcher.launch(1, tmp_path / "missing.qcow2", resources)

    def test_spawn_error(self, config, resources, tmp_path):
        """Test OSError from spawn becomes LaunchFailed."""
        base = tmp_path / "base.qcow2"
        base.write_bytes(b"QFI")
        launcher = InstanceLauncher(
            config,
            tmp_path / "logs",
            spawn=MagicMock(side_effect=OSError("Exec format error")),
            which=lambda b: "/usr/bin/" + b,
        )
        with pytest.raises(LaunchFailed, match="Exec format error"):
            launcher.launch(1, base, resources)


def _record(pid, pgid=None, instance_id=1, tmp_dir="/tmp/logs/run-20250101000000-abcdef"):
    return TrackedVM(
        pid=pid,
        pgid=pgid if pgid is not None else pid,
        instance_id=instance_id,
        admin_port=2221 + instance_id,
        protocol_port=3239 + instance_id,
        console_log=f"{tmp_dir}/{instance_id}-console.log",
        run_dir=tmp_dir,
    )


class TestVMProcessTracking:
    """Test VM PID tracking."""

    def test_track_and_untrack(self, vm_tracking_file):
        """Test tracking file bookkeeping."""
        track_vm_process(_record(12345, instance_id=1))
        track_vm_process(_record(12346, instance_id=2))

        data = json.loads(vm_tracking_file.read_text())
        assert set(data) == {"12345", "12346"}
        assert data["12345"]["instance_id"] == 1
        assert data["12346"]["protocol_port"] == 3241
        assert data["12345"]["console_log"].endswith("/1-console.log")

        untrack_vm_process(12345)
        data = json.loads(vm_tracking_file.read_text())
        assert set(data) == {"12346"}

        untrack_vm_process(12346)
        assert not vm_tracking_file.exists()

    def test_untrack_unknown_pid(self, vm_tracking_file):
        """Test untracking a PID that was never tracked leaves the file alone."""
        track_vm_process(_record(12345))
        untrack_vm_process(99999)
        assert set(json.loads(vm_tracking_file.read_text())) == {"12345"}

    def test_corrupt_tracking_file(self, vm_tracking_file):
        """Test an unreadable tracking file is treated as empty."""
        vm_tracking_file.write_text("{not json")
        assert get_tracked_vm_processes() == {}

        track_vm_process(_record(12345))
        assert set(json.loads(vm_tracking_file.read_text())) == {"12345"}

    def test_dead_processes_filtered(self, vm_tracking_file):
        """Test that dead PIDs are not reported."""
        track_vm_process(_record(12345, instance_id=1))
        track_vm_process(_record(12346, instance_id=2))

        def fake_kill(pid, sig):
            if pid == 12346:
                raise ProcessLookupError()

        with patch("qemu_usbip_mcp.launcher.os.kill", side_effect=fake_kill):
            tracked = get_tracked_vm_processes()

        assert list(tracked) == [12345]
        assert tracked[12345].instance_id == 1
        assert tracked[12345].admin_port == 2222

    def test_kill_tracked_vms(self, vm_tracking_file):
        """Test leftovers are signalled and untracked."""
        track_vm_process(_record(12345, pgid=12300, instance_id=2))

        with patch("qemu_usbip_mcp.launcher.os.kill"), patch(
            "qemu_usbip_mcp.launcher.os.killpg"
        ) as mock_killpg:
            killed = kill_tracked_vms(force=True)

        assert [record.pid for record in killed] == [12345]
        assert killed[0].describe() == (
            "instance #2 (PID 12345, SSH 2223, USB/IP 3241, run run-20250101000000-abcdef)"
        )
        mock_killpg.assert_called_once_with(12300, signal.SIGKILL)
        assert not vm_tracking_file.exists()

    def test_launch_records_instance(self, tmp_path, vm_tracking_file, resources):
        """Test a launched VM is tracked with its instance id and ports."""
        base = tmp_path / "base.qcow2"
        base.write_bytes(b"QFI")
        process = MagicMock(pid=54321)
        launcher = InstanceLauncher(
            HarnessConfig(work_dir=tmp_path, accel="tcg"),
            tmp_path / "logs" / "run-x",
            spawn=MagicMock(return_value=process),
            which=lambda b: "/usr/bin/" + b,
        )

        with patch("qemu_usbip_mcp.launcher.os.getpgid", return_value=54321):
            launcher.launch(1, base, resources)

        record = json.loads(vm_tracking_file.read_text())["54321"]
        assert record["instance_id"] == 1
        assert record["admin_port"] == 2222
        assert record["protocol_port"] == 3240
        assert record["run_dir"] == str(tmp_path / "logs" / "run-x")
