"""
Concurrency supervisor: drives one concurrent execution test end to end.

    launch (staggered) -> monitor -> force timeouts -> conflict checks
        -> diagnostics -> teardown -> report

Everything runs on a single asyncio task. VMs are separate OS processes,
so the only suspension points here are bounded sleeps. Teardown runs in a
finally block so an interrupted run never leaves VMs or overlays behind.
"""

import asyncio
import datetime
import logging
import re
import signal
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Set

from .config import HarnessConfig
from .detector import DetectionStatus, MarkerRegistry, ReadinessDetector
from .diagnostics import DiagnosticsGenerator, host_snapshot
from .errors import (
    FailureKind,
    FailureReason,
    HarnessError,
    LaunchFailed,
    ResourceExhausted,
    RetryExhausted,
)
from .launcher import (
    Instance,
    InstanceLauncher,
    InstanceState,
    request_powerdown,
    signal_instance,
    untrack_vm_process,
)
from .report import ConflictCheck, ReportGenerator, TestReport
from .resource_pool import ResourcePool, create_qcow2_overlay
from .retry import wait_for_port, with_retry

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "qemu_usbip_mcp"
ORCHESTRATOR_LOG = "orchestrator.log"
REAP_TIMEOUT = 5.0  # seconds to wait for a killed QEMU to exit

# Host-side messages that mean two VMs fought over a resource
RESOURCE_CONFLICT_PATTERNS = [
    re.compile(r"Port.*already in use"),
    re.compile(r"Port.*occupied"),
    re.compile(r"Network port.*conflict"),
    re.compile(r"Could not set up host forwarding rule"),
    re.compile(r"Resource allocation failed"),
    re.compile(r"Insufficient.*memory"),
    re.compile(r"CPU allocation failed"),
]

OVERLAY_REFERENCE_RE = re.compile(r"(\S*overlay\S*\.qcow2)")


class InstanceRegistry:
    """Instances of one run, keyed by id."""

    def __init__(self):
        self._instances: Dict[int, Instance] = {}

    def add(self, instance: Instance) -> None:
        if instance.id in self._instances:
            raise ValueError(f"Instance #{instance.id} already registered")
        self._instances[instance.id] = instance

    def get(self, instance_id: int) -> Optional[Instance]:
        return self._instances.get(instance_id)

    def __iter__(self) -> Iterator[Instance]:
        return iter(sorted(self._instances.values(), key=lambda i: i.id))

    def __len__(self) -> int:
        return len(self._instances)

    def pending(self) -> List[Instance]:
        return [i for i in self if not i.is_resolved]

    def ready(self) -> List[Instance]:
        return [i for i in self if i.outcome is InstanceState.READY]

    def failed(self) -> List[Instance]:
        return [i for i in self if i.outcome is InstanceState.FAILED]


def _read_lines(path: Optional[Path]) -> List[str]:
    if path is None:
        return []
    try:
        return Path(path).read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []


def check_resource_allocation(instances: List[Instance]) -> ConflictCheck:
    """Scan console logs for host resource conflict messages."""
    details = []
    for instance in instances:
        for line in _read_lines(instance.console_log_path):
            if any(pattern.search(line) for pattern in RESOURCE_CONFLICT_PATTERNS):
                details.append(f"Instance {instance.id}: {line.strip()}")

    return ConflictCheck(
        name="resource_allocation",
        passed=not details,
        conflicts=len(details),
        details=tuple(details),
    )


def check_overlay_isolation(instances: List[Instance]) -> ConflictCheck:
    """Verify no two instances shared an overlay image or host port.

    Two layers: the first overlay referenced by each console log must be
    unique, and the allocator's assignments of launched instances must be
    pairwise distinct.
    """
    details = []

    seen_overlays: Dict[str, int] = {}
    for instance in instances:
        for line in _read_lines(instance.console_log_path):
            match = OVERLAY_REFERENCE_RE.search(line)
            if match:
                name = Path(match.group(1)).name
                if name in seen_overlays:
                    details.append(
                        f"Instances {seen_overlays[name]} and {instance.id} "
                        f"both use overlay {name}"
                    )
                else:
                    seen_overlays[name] = instance.id
                break

    assigned_overlays: Dict[Path, int] = {}
    assigned_ports: Dict[int, int] = {}
    for instance in instances:
        if instance.resources is None or instance.process is None:
            continue
        res = instance.resources
        owner = assigned_overlays.setdefault(res.overlay_path, instance.id)
        if owner != instance.id:
            details.append(
                f"Instances {owner} and {instance.id} were assigned overlay {res.overlay_name}"
            )
        for port in res.ports:
            owner = assigned_ports.setdefault(port, instance.id)
            if owner != instance.id:
                details.append(f"Instances {owner} and {instance.id} were assigned port {port}")

    return ConflictCheck(
        name="overlay_isolation",
        passed=not details,
        conflicts=len(details),
        details=tuple(details),
    )


def default_log_dir(config: HarnessConfig, run_id: str) -> Path:
    """<work_dir>/logs/run-<run_id>"""
    return config.log_root / f"run-{run_id}"


def build_registry(config: HarnessConfig) -> MarkerRegistry:
    """Default marker registry plus any extra error markers from config."""
    registry = MarkerRegistry()
    for pattern, category in config.extra_error_markers.items():
        registry.register_error(pattern, category)
    return registry


class ConcurrencySupervisor:
    """Launches, monitors and tears down a batch of concurrent VMs."""

    def __init__(
        self,
        config: HarnessConfig,
        log_dir: Optional[Path] = None,
        pool: Optional[ResourcePool] = None,
        launcher: Optional[InstanceLauncher] = None,
        detector: Optional[ReadinessDetector] = None,
        diagnostics: Optional[DiagnosticsGenerator] = None,
        report_generator: Optional[ReportGenerator] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        port_waiter: Optional[Callable[..., Awaitable[None]]] = None,
    ):
        """
        Args:
            config: Harness configuration
            log_dir: Run directory (default: <work_dir>/logs/run-<run_id>)
            pool: Resource allocator (default built from config)
            launcher: Instance launcher (default built from config)
            detector: Readiness detector (default built from config)
            diagnostics: Diagnostics generator (default built from config)
            report_generator: Report generator (default built from config)
            clock: Monotonic time source
            sleep: Async sleep used for stagger, polling and retries
            port_waiter: Async port reachability check used when verify_ports is set
        """
        self.config = config
        self.clock = clock
        self.sleep = sleep

        def probe() -> Dict[str, Any]:
            return host_snapshot(config.work_dir, config.qemu_binary)

        self.pool = pool or ResourcePool(
            base_image=config.image_path,
            overlay_dir=config.overlay_dir,
            admin_port_base=config.admin_port_base,
            protocol_port_base=config.protocol_port_base,
            max_port_attempts=config.max_port_attempts,
            overlay_creator=lambda base, overlay: create_qcow2_overlay(
                base, overlay, qemu_img=config.qemu_img_binary
            ),
        )
        self.log_dir = Path(log_dir) if log_dir else default_log_dir(config, self.pool.run_id)
        self.launcher = launcher or InstanceLauncher(config, self.log_dir)
        self.detector = detector or ReadinessDetector(
            registry=build_registry(config),
            stall_polls=config.stall_polls,
            instance_timeout=config.instance_timeout,
            clock=clock,
        )
        self.diagnostics = diagnostics or DiagnosticsGenerator(
            tail_lines=config.log_tail_lines, env_probe=probe
        )
        self.report_generator = report_generator or ReportGenerator(
            threshold=config.success_threshold, host_probe=probe
        )
        self.port_waiter = port_waiter or wait_for_port

        self.registry = InstanceRegistry()
        self.diagnostics_paths: Dict[int, Path] = {}
        self._torn_down: Set[int] = set()

    @property
    def run_id(self) -> str:
        return self.pool.run_id

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self, instance_count: int, startup_stagger: float = 5.0, test_duration: float = 30.0
    ) -> TestReport:
        """Run one concurrent execution test.

        Args:
            instance_count: Number of VMs to boot (>= 1)
            startup_stagger: Seconds between consecutive launches
            test_duration: Seconds to wait for readiness after the last launch

        Returns:
            The final TestReport
        """
        if instance_count < 1:
            raise ValueError("instance_count must be >= 1")
        if startup_stagger < 0 or test_duration < 0:
            raise ValueError("startup_stagger and test_duration must be >= 0")

        self.log_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.log_dir.mkdir(exist_ok=False)
        except FileExistsError:
            raise HarnessError(f"Run directory already exists: {self.log_dir}") from None
        handler = self._attach_run_log()
        started = datetime.datetime.now()

        try:
            logger.info("=" * 60)
            logger.info(
                f"Concurrent execution test {self.run_id}: {instance_count} instance(s), "
                f"stagger {startup_stagger}s, duration {test_duration}s"
            )
            logger.info(f"Logs: {self.log_dir}")
            logger.info("=" * 60)

            try:
                await self._launch_all(instance_count, startup_stagger)
                await self._monitor(test_duration)
                self._force_timeouts(test_duration)
                checks = self.check_conflicts()
                self._write_diagnostics()
            finally:
                await self.teardown()

            report = self.report_generator.generate(
                self.registry,
                conflict_checks=checks,
                run_id=self.run_id,
                started_at=started,
                finished_at=datetime.datetime.now(),
                log_dir=self.log_dir,
                diagnostics=self.diagnostics_paths,
            )
            glyph = "✓" if report.passed else "✗"
            logger.info(
                f"{glyph} {report.verdict}: {report.ready_count}/{report.instance_count} ready "
                f"({report.success_rate}%, threshold {report.threshold}%)"
            )
            return report
        finally:
            self._detach_run_log(handler)

    def _attach_run_log(self) -> logging.Handler:
        handler = logging.FileHandler(self.log_dir / ORCHESTRATOR_LOG, mode="a")
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.addHandler(handler)
        self._saved_level = package_logger.level
        if package_logger.getEffectiveLevel() > logging.INFO:
            package_logger.setLevel(logging.INFO)
        return handler

    def _detach_run_log(self, handler: logging.Handler) -> None:
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.removeHandler(handler)
        package_logger.setLevel(self._saved_level)
        handler.close()

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    async def _launch_all(self, instance_count: int, startup_stagger: float) -> None:
        for instance_id in range(1, instance_count + 1):
            await self.launch_instance(instance_id)
            if instance_id < instance_count and startup_stagger > 0:
                await self.sleep(startup_stagger)

    def _fail(self, instance: Instance, reason: FailureReason) -> None:
        instance.transition(InstanceState.FAILED, failure=reason, now=self.clock())
        logger.error(f"{reason.kind.code}: Instance {instance.id} - {reason.detail}")
        if reason.matched_line:
            logger.error(f"  Matched: {reason.matched_line}")

    def _placeholder(self, instance_id: int, resources=None) -> Instance:
        instance = Instance(
            id=instance_id,
            console_log_path=self.launcher.console_log_path(instance_id),
            resources=resources,
            started_at=self.clock(),
        )
        self.registry.add(instance)
        return instance

    async def launch_instance(self, instance_id: int) -> Instance:
        """Allocate resources and start one VM; failures are recorded, not raised."""
        logger.info(f"Starting instance #{instance_id}...")

        try:
            resources = await with_retry(
                lambda: self.pool.allocate(instance_id),
                max_attempts=self.config.launch_attempts,
                initial_delay=self.config.retry_initial_delay,
                retry_on=ResourceExhausted,
                sleep=self.sleep,
                description=f"resource allocation for instance #{instance_id}",
            )
        except RetryExhausted as e:
            instance = self._placeholder(instance_id)
            self._fail(
                instance,
                FailureReason(kind=FailureKind.RESOURCE_EXHAUSTED, detail=str(e.last_error)),
            )
            return instance

        try:
            instance = await with_retry(
                lambda: self.launcher.launch(instance_id, self.config.image_path, resources),
                max_attempts=self.config.launch_attempts,
                initial_delay=self.config.retry_initial_delay,
                retry_on=LaunchFailed,
                sleep=self.sleep,
                description=f"launch of instance #{instance_id}",
            )
        except RetryExhausted as e:
            self.pool.release(resources)
            instance = self._placeholder(instance_id, resources)
            self._fail(
                instance, FailureReason(kind=FailureKind.LAUNCH_FAILED, detail=str(e.last_error))
            )
            return instance

        instance.started_at = self.clock()
        self.registry.add(instance)
        instance.transition(InstanceState.PENDING)
        logger.info(
            f"✓ Instance #{instance_id} launched (PID {instance.pid}, "
            f"SSH {resources.admin_port}, USB/IP {resources.protocol_port})"
        )
        return instance

    # ------------------------------------------------------------------
    # Monitor
    # ------------------------------------------------------------------

    async def _mark_ready(self, instance: Instance, matched_line: Optional[str]) -> None:
        if self.config.verify_ports and instance.resources is not None:
            try:
                await self.port_waiter(
                    "127.0.0.1",
                    instance.resources.protocol_port,
                    max_attempts=self.config.launch_attempts,
                    initial_delay=self.config.retry_initial_delay,
                    sleep=self.sleep,
                )
            except RetryExhausted as e:
                self._fail(
                    instance,
                    FailureReason(
                        kind=FailureKind.RESOURCE_CONFLICT,
                        detail=(
                            f"USB/IP port {instance.resources.protocol_port} unreachable: "
                            f"{e.last_error}"
                        ),
                    ),
                )
                return

        instance.transition(InstanceState.READY, now=self.clock())
        logger.info(
            f"✓ Instance #{instance.id} ready after {instance.time_to_resolve:.1f}s"
            + (f" ({matched_line})" if matched_line else "")
        )

    async def poll_once(self) -> int:
        """Poll every pending instance once. Returns how many are still pending."""
        for instance in self.registry.pending():
            detection = self.detector.poll(instance)
            if detection.status is DetectionStatus.READY:
                await self._mark_ready(instance, detection.matched_line)
            elif detection.status is DetectionStatus.FAILED:
                self._fail(instance, detection.reason)
        return len(self.registry.pending())

    async def _monitor(self, test_duration: float) -> None:
        deadline = self.clock() + test_duration
        logger.info(f"Monitoring {len(self.registry.pending())} instance(s) for {test_duration}s")

        while await self.poll_once():
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            await self.sleep(min(self.config.poll_interval, remaining))

    def _force_timeouts(self, test_duration: float) -> None:
        for instance in self.registry.pending():
            self._fail(
                instance,
                FailureReason(
                    kind=FailureKind.BOOT_TIMEOUT,
                    detail=f"Not ready within the {test_duration:.0f}s test duration",
                ),
            )

    # ------------------------------------------------------------------
    # Post-run
    # ------------------------------------------------------------------

    def check_conflicts(self) -> List[ConflictCheck]:
        instances = list(self.registry)
        checks = [check_resource_allocation(instances), check_overlay_isolation(instances)]
        for check in checks:
            if check.passed:
                logger.info(f"✓ {check.name}: no conflicts")
            else:
                logger.error(f"NETWORK_FAILURE: {check.name} found {check.conflicts} conflict(s)")
                for detail in check.details:
                    logger.error(f"  {detail}")
        return checks

    def _write_diagnostics(self) -> None:
        for instance in self.registry.failed():
            report = self.diagnostics.generate_and_write(instance, self.log_dir)
            if report is not None and report.path is not None:
                self.diagnostics_paths[instance.id] = report.path
                logger.info(f"DIAGNOSTICS_GENERATED: {report.path}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        """Stop every instance exactly once and release its resources.

        Powerdown request, SIGTERM to the process group, bounded grace period,
        SIGKILL for stragglers, then reap and release.
        """
        targets = [i for i in self.registry if i.id not in self._torn_down]
        self._torn_down.update(i.id for i in targets)
        live = [i for i in targets if i.is_alive]

        if live:
            logger.info(f"Stopping {len(live)} instance(s)...")
        for instance in live:
            if request_powerdown(instance.monitor_socket):
                logger.debug(f"Sent system_powerdown to instance #{instance.id}")
            signal_instance(instance, signal.SIGTERM)

        try:
            deadline = self.clock() + self.config.grace_period
            while any(i.is_alive for i in live) and self.clock() < deadline:
                await self.sleep(min(0.5, max(deadline - self.clock(), 0)))
        finally:
            for instance in live:
                if instance.is_alive:
                    logger.warning(
                        f"⚠ Instance #{instance.id} still running after "
                        f"{self.config.grace_period}s, sending SIGKILL"
                    )
                    signal_instance(instance, signal.SIGKILL)

            for instance in targets:
                await self._finalize(instance)

            leftover = self.pool.release_all()
            if leftover:
                logger.warning(f"⚠ Released {leftover} unclaimed resource allocation(s)")

    async def _reap(self, instance: Instance, timeout: float = REAP_TIMEOUT) -> None:
        deadline = self.clock() + timeout
        while True:
            returncode = instance.process.poll()
            if returncode is not None:
                instance.exit_code = returncode
                return
            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.error(f"✗ Instance #{instance.id} (PID {instance.pid}) could not be reaped")
                return
            await self.sleep(min(0.1, remaining))

    async def _finalize(self, instance: Instance) -> None:
        if instance.process is not None:
            await self._reap(instance)
            untrack_vm_process(instance.process.pid)

        if not instance.is_resolved:
            self._fail(
                instance,
                FailureReason(
                    kind=FailureKind.BOOT_TIMEOUT,
                    detail="Run interrupted before the instance became ready",
                ),
            )
        instance.transition(InstanceState.TERMINATED)

        if instance.resources is not None:
            self.pool.release(instance.resources)
        self.detector.forget(instance)
        logger.info(f"Instance #{instance.id} terminated (exit code {instance.exit_code})")

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def preview(self, instance_count: int) -> List[Dict[str, Any]]:
        """Describe the planned layout without probing ports or launching anything."""
        plans = []
        for offset, instance_id in enumerate(range(1, instance_count + 1)):
            resources = self.pool.plan(instance_id, offset)
            plans.append(
                {
                    "id": instance_id,
                    "admin_port": resources.admin_port,
                    "protocol_port": resources.protocol_port,
                    "overlay": resources.overlay_name,
                    "console_log": str(self.launcher.console_log_path(instance_id)),
                    "command": self.launcher.build_command(
                        resources, self.launcher.monitor_socket_path(instance_id)
                    ),
                }
            )
        return plans
