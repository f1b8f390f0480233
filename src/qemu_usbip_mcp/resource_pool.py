"""
Per-instance resource allocation: overlay images and host port pairs.

Every instance gets its own copy-on-write overlay over the shared base image
and its own pair of forwarded host ports (admin/SSH + USB/IP protocol), so
that concurrently running VMs never share a backing store or a listener.
"""

import datetime
import logging
import random
import socket
import string
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Set, Tuple

from .errors import ResourceExhausted

logger = logging.getLogger(__name__)

PortProbe = Callable[[int], bool]
OverlayCreator = Callable[[Path, Path], None]


@dataclass(frozen=True)
class Resources:
    """Resources exclusively owned by one instance for its lifetime."""

    instance_id: int
    overlay_path: Path
    admin_port: int
    protocol_port: int

    @property
    def overlay_name(self) -> str:
        return self.overlay_path.name

    @property
    def ports(self) -> Tuple[int, int]:
        return (self.admin_port, self.protocol_port)


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether a TCP port can be bound on the host.

    Args:
        port: Port number to probe
        host: Address to bind

    Returns:
        True if nothing else is listening on the port
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def create_qcow2_overlay(
    base_image: Path, overlay_path: Path, qemu_img: str = "qemu-img", timeout: int = 30
) -> None:
    """Create a qcow2 copy-on-write overlay backed by base_image.

    Raises:
        OSError: if qemu-img is missing or fails
    """
    try:
        subprocess.run(
            [
                qemu_img,
                "create",
                "-f",
                "qcow2",
                "-b",
                str(base_image),
                "-F",
                "qcow2",
                str(overlay_path),
            ],
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        raise OSError(f"qemu-img create failed: {e.stderr.strip() if e.stderr else e}") from e
    except subprocess.TimeoutExpired as e:
        raise OSError(f"qemu-img create timed out after {timeout}s") from e


def generate_run_id() -> str:
    """Generate a unique run ID: timestamp-random (e.g. "20251115103045-a3f9d2")."""
    timestamp = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    random_suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{timestamp}-{random_suffix}"


class ResourcePool:
    """Tracks which overlays and ports are checked out during a run.

    Only the supervisor's control flow calls allocate()/release(), so no
    locking is done here.
    """

    def __init__(
        self,
        base_image: Path,
        overlay_dir: Path,
        admin_port_base: int = 2222,
        protocol_port_base: int = 3240,
        max_port_attempts: int = 20,
        run_id: Optional[str] = None,
        port_probe: PortProbe = is_port_free,
        overlay_creator: Optional[OverlayCreator] = None,
    ):
        """
        Args:
            base_image: Shared read-only base disk image
            overlay_dir: Directory where per-instance overlays are created
            admin_port_base: First candidate admin (SSH) host port
            protocol_port_base: First candidate USB/IP host port
            max_port_attempts: Candidate port pairs to try before giving up
            run_id: Prefix for overlay names (generated if omitted)
            port_probe: Returns True when a host port is free
            overlay_creator: Creates an overlay file for (base, overlay)
        """
        self.base_image = Path(base_image)
        self.overlay_dir = Path(overlay_dir)
        self.admin_port_base = admin_port_base
        self.protocol_port_base = protocol_port_base
        self.max_port_attempts = max_port_attempts
        self.run_id = run_id or generate_run_id()
        self.port_probe = port_probe
        self.overlay_creator = overlay_creator or create_qcow2_overlay

        self._allocations: Dict[int, Resources] = {}
        self._ports_in_use: Set[int] = set()
        self._overlays_in_use: Set[Path] = set()
        self.probe_conflicts = 0  # host ports found busy while probing

    @property
    def active(self) -> Dict[int, Resources]:
        return dict(self._allocations)

    def __len__(self) -> int:
        return len(self._allocations)

    def _candidate_pairs(self) -> Iterator[Tuple[int, int]]:
        for offset in range(self.max_port_attempts):
            admin = self.admin_port_base + offset
            protocol = self.protocol_port_base + offset
            if admin > 65535 or protocol > 65535:
                return
            yield admin, protocol

    def _reserve_ports(self) -> Tuple[int, int]:
        for admin, protocol in self._candidate_pairs():
            if {admin, protocol} & self._ports_in_use:
                continue
            if not self.port_probe(admin) or not self.port_probe(protocol):
                self.probe_conflicts += 1
                logger.debug(f"Port pair {admin}/{protocol} busy on host, trying next")
                continue
            self._ports_in_use.update((admin, protocol))
            return admin, protocol

        raise ResourceExhausted(
            f"No free port pair after {self.max_port_attempts} candidates "
            f"(admin base {self.admin_port_base}, protocol base {self.protocol_port_base})"
        )

    def _overlay_path(self, instance_id: int) -> Path:
        while True:
            suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
            path = self.overlay_dir / f"{self.run_id}-{instance_id}-{suffix}-overlay.qcow2"
            if path not in self._overlays_in_use and not path.exists():
                return path

    def allocate(self, instance_id: int) -> Resources:
        """Reserve a port pair and create an overlay for an instance.

        Raises:
            ResourceExhausted: no free port pair, or the overlay could not be created
        """
        if instance_id in self._allocations:
            raise ValueError(f"Instance {instance_id} already holds resources")

        admin, protocol = self._reserve_ports()

        overlay_path = self._overlay_path(instance_id)
        try:
            self.overlay_dir.mkdir(parents=True, exist_ok=True)
            self.overlay_creator(self.base_image, overlay_path)
        except OSError as e:
            self._ports_in_use.difference_update((admin, protocol))
            raise ResourceExhausted(f"Failed to create overlay {overlay_path.name}: {e}") from e

        resources = Resources(
            instance_id=instance_id,
            overlay_path=overlay_path,
            admin_port=admin,
            protocol_port=protocol,
        )
        self._allocations[instance_id] = resources
        self._overlays_in_use.add(overlay_path)

        logger.info(
            f"✓ Allocated instance #{instance_id}: ports {admin}/{protocol}, "
            f"overlay {overlay_path.name}"
        )
        return resources

    def release(self, resources: Resources) -> bool:
        """Return an instance's resources to the pool and delete its overlay.

        Returns:
            True if the resources were held, False if already released
        """
        held = self._allocations.get(resources.instance_id)
        if held is None or held != resources:
            return False

        del self._allocations[resources.instance_id]
        self._ports_in_use.difference_update(resources.ports)
        self._overlays_in_use.discard(resources.overlay_path)

        if resources.overlay_path.exists():
            try:
                resources.overlay_path.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove overlay {resources.overlay_path}: {e}")

        logger.info(f"Released resources of instance #{resources.instance_id}")
        return True

    def release_all(self) -> int:
        """Release everything still checked out. Returns the number released."""
        count = 0
        for resources in list(self._allocations.values()):
            if self.release(resources):
                count += 1
        return count

    def plan(self, instance_id: int, offset: int) -> Resources:
        """Describe what allocate() would hand out, without probing or creating files."""
        return Resources(
            instance_id=instance_id,
            overlay_path=self.overlay_dir / f"{self.run_id}-{instance_id}-xxxxxx-overlay.qcow2",
            admin_port=self.admin_port_base + offset,
            protocol_port=self.protocol_port_base + offset,
        )
