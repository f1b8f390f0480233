"""
Shared fixtures: a fake clock, fake QEMU processes and scripted console output.

Nothing here boots a real VM. The fake spawner hands out FakeProcess objects
and a ConsoleScript appends lines to each instance's console log as the fake
clock advances, so supervisor runs complete instantly and deterministically.
"""

import subprocess
from pathlib import Path

import pytest

from qemu_usbip_mcp.config import HarnessConfig
from qemu_usbip_mcp.detector import ReadinessDetector
from qemu_usbip_mcp.diagnostics import DiagnosticsGenerator
from qemu_usbip_mcp.launcher import InstanceLauncher
from qemu_usbip_mcp.report import ReportGenerator
from qemu_usbip_mcp.resource_pool import ResourcePool
from qemu_usbip_mcp.supervisor import ConcurrencySupervisor


class FakeClock:
    """Monotonic clock that only moves when sleep() is awaited."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self.hooks = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        for hook in self.hooks:
            hook(self.now)


class FakeProcess:
    """Stands in for subprocess.Popen."""

    def __init__(self, pid, log_path, started):
        self.pid = pid
        self.log_path = Path(log_path)
        self.started = started
        self.returncode = None
        self.signals = []

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired("qemu", timeout)
        return self.returncode


class FakeSpawner:
    """subprocess.Popen replacement recording every spawned process."""

    def __init__(self, clock, first_pid=4_000_000):
        self.clock = clock
        self.next_pid = first_pid
        self.processes = []
        self.commands = []
        self.fail_for = set()  # console log names whose spawn raises OSError

    def __call__(self, cmd, **kwargs):
        log_path = Path(kwargs["stdout"].name)
        if log_path.name in self.fail_for:
            raise OSError("qemu-system-x86_64: cannot allocate memory")
        self.next_pid += 1
        process = FakeProcess(self.next_pid, log_path, self.clock())
        self.processes.append(process)
        self.commands.append(cmd)
        return process

    def by_log(self, name):
        return [p for p in self.processes if p.log_path.name == name][-1]


class ConsoleScript:
    """Appends console lines at fixed offsets after each instance was spawned."""

    def __init__(self, spawner):
        self.spawner = spawner
        self.lines = {}  # log name -> [(offset, line)]
        self.written = set()

    def add(self, instance_id, offset, line):
        self.lines.setdefault(f"{instance_id}-console.log", []).append((offset, line))

    def boot(self, instance_id, ready_at=None, error=None, error_at=None):
        """Script a typical boot: kernel messages, then a marker."""
        self.add(instance_id, 1, "[    0.000000] Linux version 6.1.0 (builder@localhost)")
        self.add(instance_id, 6, "[    2.345678] systemd[1]: Starting cloud-init...")
        if ready_at is not None:
            self.add(instance_id, ready_at, "USBIP_VERSION: usbip (usbip-utils 2.0)")
            self.add(instance_id, ready_at, "VHCI_MODULE_LOADED: SUCCESS")
            self.add(instance_id, ready_at, "USBIP_CLIENT_READY")
        if error is not None:
            self.add(instance_id, error_at or 8, error)

    def flush(self, now):
        for process in self.spawner.processes:
            for index, (offset, line) in enumerate(self.lines.get(process.log_path.name, [])):
                key = (process.pid, index)
                if key in self.written or process.started + offset > now:
                    continue
                with open(process.log_path, "a") as f:
                    f.write(line + "\n")
                self.written.add(key)


class Harness:
    """A supervisor wired to fakes, plus handles on every fake."""

    def __init__(self, tmp_path, **config_overrides):
        self.base_image = tmp_path / "base.qcow2"
        self.base_image.write_bytes(b"QFI\xfb")
        self.log_dir = tmp_path / "work" / "logs" / "run-test"

        options = dict(
            work_dir=tmp_path / "work",
            base_image=self.base_image,
            accel="tcg",
            poll_interval=5.0,
            stall_polls=3,
            grace_period=10.0,
            retry_initial_delay=1.0,
            launch_attempts=3,
        )
        options.update(config_overrides)
        self.config = HarnessConfig(**options)

        self.clock = FakeClock()
        self.spawner = FakeSpawner(self.clock)
        self.script = ConsoleScript(self.spawner)
        self.clock.hooks.append(self.script.flush)

        self.pool = ResourcePool(
            base_image=self.base_image,
            overlay_dir=self.config.overlay_dir,
            run_id="20250101000000-abcdef",
            port_probe=lambda port: True,
            overlay_creator=lambda base, overlay: overlay.write_bytes(b"overlay"),
        )
        self.launcher = InstanceLauncher(
            self.config,
            self.log_dir,
            spawn=self.spawner,
            which=lambda binary: f"/usr/bin/{binary}",
        )
        self.detector = ReadinessDetector(
            stall_polls=self.config.stall_polls, clock=self.clock
        )
        self.supervisor = ConcurrencySupervisor(
            self.config,
            log_dir=self.log_dir,
            pool=self.pool,
            launcher=self.launcher,
            detector=self.detector,
            diagnostics=DiagnosticsGenerator(tail_lines=20, env_probe=lambda: {"os": "TestOS"}),
            report_generator=ReportGenerator(threshold=80, host_probe=lambda: {"os": "TestOS"}),
            clock=self.clock,
            sleep=self.clock.sleep,
        )


def fake_signal_instance(instance, sig):
    """Deliver a signal to a FakeProcess: it exits immediately."""
    process = instance.process
    if process is None or process.returncode is not None:
        return False
    process.signals.append(sig)
    process.returncode = -int(sig)
    return True


@pytest.fixture(autouse=True)
def vm_tracking_file(tmp_path, monkeypatch):
    """Keep VM PID tracking out of /tmp."""
    tracking_file = tmp_path / "vm-pids.json"
    monkeypatch.setattr("qemu_usbip_mcp.launcher.VM_PID_TRACKING_FILE", tracking_file)
    return tracking_file


@pytest.fixture
def harness(tmp_path, monkeypatch):
    """Supervisor wired to fakes; signals only ever reach FakeProcess objects."""
    monkeypatch.setattr("qemu_usbip_mcp.supervisor.signal_instance", fake_signal_instance)
    monkeypatch.setattr(
        "qemu_usbip_mcp.supervisor.request_powerdown", lambda monitor_socket, timeout=1.0: False
    )
    return Harness(tmp_path)


@pytest.fixture
def make_harness(tmp_path, monkeypatch):
    """Factory for harnesses with config overrides."""
    monkeypatch.setattr("qemu_usbip_mcp.supervisor.signal_instance", fake_signal_instance)
    monkeypatch.setattr(
        "qemu_usbip_mcp.supervisor.request_powerdown", lambda monitor_socket, timeout=1.0: False
    )

    def factory(**overrides):
        return Harness(tmp_path, **overrides)

    return factory


@pytest.fixture
def write_log(tmp_path):
    """Write a console log with the given lines and return its path."""

    def _write(lines, name="1-console.log"):
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write
