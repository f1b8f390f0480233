"""
Harness configuration and its JSON storage.
"""

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".qemu-usbip-mcp"
DEFAULT_CONFIG_FILE = "harness.json"
DEFAULT_WORK_DIR = Path(".build") / "qemu"
DEFAULT_IMAGE_NAME = "qemu-usbip-client.qcow2"


@dataclass
class HarnessConfig:
    """Settings for one orchestration run.

    Defaults mirror the minimal VM footprint used by the USB/IP client image.
    """

    base_image: Optional[Path] = None  # Defaults to <work_dir>/qemu-usbip-client.qcow2
    work_dir: Path = DEFAULT_WORK_DIR

    # QEMU
    qemu_binary: str = "qemu-system-x86_64"
    qemu_img_binary: str = "qemu-img"
    memory: str = "256M"
    cpus: int = 1
    machine: str = "q35"
    accel: Optional[str] = None  # None = auto-detect (kvm/hvf/tcg)
    extra_qemu_args: List[str] = field(default_factory=list)

    # Networking (user mode, host forwards)
    admin_port_base: int = 2222  # forwarded to guest SSH
    protocol_port_base: int = 3240  # forwarded to guest USB/IP
    guest_admin_port: int = 22
    guest_protocol_port: int = 3240
    max_port_attempts: int = 20
    verify_ports: bool = False  # TCP-probe the forwarded USB/IP port once ready

    # Detection
    poll_interval: float = 5.0
    stall_polls: int = 3
    instance_timeout: Optional[float] = None  # Per-instance cap; None = run duration only
    extra_error_markers: Dict[str, str] = field(default_factory=dict)  # pattern -> category

    # Retry policy
    launch_attempts: int = 3
    retry_initial_delay: float = 1.0

    # Shutdown
    grace_period: float = 10.0

    # Reporting
    success_threshold: int = 80  # percent of instances that must become ready
    log_tail_lines: int = 20

    def __post_init__(self):
        self.work_dir = Path(self.work_dir)
        if self.base_image is not None:
            self.base_image = Path(self.base_image)

    @property
    def image_path(self) -> Path:
        return self.base_image or self.work_dir / DEFAULT_IMAGE_NAME

    @property
    def log_root(self) -> Path:
        return self.work_dir / "logs"

    @property
    def overlay_dir(self) -> Path:
        return self.work_dir / "overlays"

    @property
    def pid_dir(self) -> Path:
        return self.work_dir / "pids"

    def validate(self) -> None:
        """Raise ConfigError if any value is out of range."""
        if self.cpus < 1:
            raise ConfigError(f"cpus must be >= 1, got {self.cpus}")
        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.stall_polls < 1:
            raise ConfigError(f"stall_polls must be >= 1, got {self.stall_polls}")
        if self.max_port_attempts < 1:
            raise ConfigError(f"max_port_attempts must be >= 1, got {self.max_port_attempts}")
        if self.launch_attempts < 1:
            raise ConfigError(f"launch_attempts must be >= 1, got {self.launch_attempts}")
        if self.retry_initial_delay < 0:
            raise ConfigError("retry_initial_delay must be >= 0")
        if self.grace_period < 0:
            raise ConfigError("grace_period must be >= 0")
        if not 0 <= self.success_threshold <= 100:
            raise ConfigError(
                f"success_threshold must be between 0 and 100, got {self.success_threshold}"
            )
        for port in (self.admin_port_base, self.protocol_port_base):
            if not 1 <= port <= 65535:
                raise ConfigError(f"Invalid port base: {port}")
        if self.admin_port_base == self.protocol_port_base:
            raise ConfigError("admin_port_base and protocol_port_base must differ")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["work_dir"] = str(self.work_dir)
        data["base_image"] = str(self.base_image) if self.base_image else None
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "HarnessConfig":
        """Create HarnessConfig from dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(HarnessConfig)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config option(s): {', '.join(unknown)}")
        try:
            return HarnessConfig(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid config: {e}") from e


class ConfigManager:
    """Loads and saves harness configuration files."""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Args:
            config_dir: Directory for config storage (default: ~/.qemu-usbip-mcp)
        """
        if config_dir is None:
            config_dir = DEFAULT_CONFIG_DIR

        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / DEFAULT_CONFIG_FILE

    def load(self, path: Optional[Path] = None) -> HarnessConfig:
        """Load configuration.

        An explicit path must exist. The default file is optional; when it
        is missing the built-in defaults are used.
        """
        config_file = Path(path) if path else self.config_file

        if not config_file.exists():
            if path:
                raise ConfigError(f"Config file not found: {config_file}")
            logger.debug(f"Config file not found: {config_file}, using defaults")
            return HarnessConfig()

        try:
            with open(config_file, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigError(f"Failed to read config {config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config {config_file} must contain a JSON object")

        version = data.pop("version", "1.0")
        if version != "1.0":
            logger.warning(f"Unknown config version: {version}")

        config = HarnessConfig.from_dict(data)
        logger.info(f"Loaded harness config from {config_file}")
        return config

    def save(self, config: HarnessConfig) -> Path:
        """Write configuration to the default config file."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        data = {"version": "1.0"}
        data.update(config.to_dict())

        tmp_file = self.config_file.with_suffix(".tmp")
        with open(tmp_file, "w") as f:
            json.dump(data, f, indent=2)
        tmp_file.replace(self.config_file)

        logger.info(f"Saved harness config to {self.config_file}")
        return self.config_file
