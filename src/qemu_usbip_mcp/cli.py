"""
Command line entry point: qemu-usbip-test.

Boots N QEMU USB/IP client instances concurrently, waits for each to become
ready, and writes a pass/fail report. Exit code 0 on PASS, 1 otherwise,
2 for invalid arguments.
"""

import argparse
import asyncio
import logging
import re
import shutil
import signal
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import ConfigManager, HarnessConfig
from .errors import ConfigError, HarnessError
from .report import format_test_report, write_reports
from .supervisor import ConcurrencySupervisor

logger = logging.getLogger(__name__)

_DIGITS_RE = re.compile(r"^[0-9]+$")


def _integer(value: str) -> int:
    if not _DIGITS_RE.match(value):
        raise argparse.ArgumentTypeError(f"'{value}' is not a non-negative integer")
    return int(value)


def positive_int(value: str) -> int:
    number = _integer(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"'{value}' must be at least 1")
    return number


def non_negative_int(value: str) -> int:
    return _integer(value)


def percentage(value: str) -> int:
    number = _integer(value)
    if number > 100:
        raise argparse.ArgumentTypeError(f"'{value}' must be between 0 and 100")
    return number


def positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a number")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"'{value}' must be greater than 0")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qemu-usbip-test",
        description="Run multiple QEMU USB/IP client instances concurrently and "
        "verify that each one becomes ready without resource conflicts.",
        epilog="Example: qemu-usbip-test -n 5 -d 60 -s 3",
    )
    parser.add_argument(
        "-n", "--instances", type=positive_int, default=3, help="Number of instances (default: 3)"
    )
    parser.add_argument(
        "-d",
        "--duration",
        type=non_negative_int,
        default=30,
        help="Seconds to wait for readiness after the last launch (default: 30)",
    )
    parser.add_argument(
        "-s",
        "--startup-delay",
        type=non_negative_int,
        default=5,
        help="Seconds between instance launches (default: 5)",
    )
    parser.add_argument("--base-image", type=Path, help="Base qcow2 image to overlay")
    parser.add_argument("--work-dir", type=Path, help="Directory for logs, overlays and sockets")
    parser.add_argument("--config", type=Path, help="JSON config file")
    parser.add_argument(
        "--threshold", type=percentage, help="Success rate (percent) required to pass"
    )
    parser.add_argument(
        "--poll-interval", type=positive_float, help="Seconds between console log polls"
    )
    parser.add_argument(
        "--stall-polls",
        type=positive_int,
        help="Polls without console output before an instance counts as stalled",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Print the planned layout without launching"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def load_config(args: argparse.Namespace, manager: Optional[ConfigManager] = None) -> HarnessConfig:
    """Load the config file and apply command line overrides.

    Raises:
        ConfigError: invalid file or values
    """
    manager = manager or ConfigManager()
    config = manager.load(args.config)

    if args.base_image is not None:
        config.base_image = args.base_image
    if args.work_dir is not None:
        config.work_dir = args.work_dir
    if args.threshold is not None:
        config.success_threshold = args.threshold
    if args.poll_interval is not None:
        config.poll_interval = args.poll_interval
    if args.stall_polls is not None:
        config.stall_polls = args.stall_polls

    config.validate()
    return config


def check_prerequisites(config: HarnessConfig, which=shutil.which) -> List[str]:
    """Return a list of problems that prevent a run (empty when ready to go)."""
    problems = []
    for binary in (config.qemu_binary, config.qemu_img_binary):
        if which(binary) is None:
            problems.append(f"Required binary '{binary}' not found in PATH")
    if not config.image_path.exists():
        problems.append(f"Base image not found: {config.image_path}")
    return problems


def print_plan(plans) -> None:
    print("Dry run: planned instances")
    print("=" * 60)
    for plan in plans:
        print(f"Instance {plan['id']}:")
        print(f"  SSH port: {plan['admin_port']}")
        print(f"  USB/IP port: {plan['protocol_port']}")
        print(f"  Overlay: {plan['overlay']}")
        print(f"  Console log: {plan['console_log']}")
        print(f"  Command: {' '.join(plan['command'])}")


async def run_test(supervisor: ConcurrencySupervisor, args: argparse.Namespace):
    """Run the supervisor, cancelling it cleanly on SIGTERM."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    try:
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await supervisor.run(args.instances, args.startup_delay, args.duration)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGTERM)
        except (NotImplementedError, RuntimeError):
            pass


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(args)
    except ConfigError as e:
        parser.error(str(e))

    supervisor = ConcurrencySupervisor(config)

    if args.dry_run:
        print_plan(supervisor.preview(args.instances))
        for problem in check_prerequisites(config):
            print(f"⚠ {problem}")
        return 0

    problems = check_prerequisites(config)
    if problems:
        for problem in problems:
            logger.error(f"✗ {problem}")
        return 1

    try:
        report = asyncio.run(run_test(supervisor, args))
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.error("✗ Interrupted, all instances have been stopped")
        return 1
    except HarnessError as e:
        logger.error(f"✗ {e}")
        return 1

    text_path, json_path = write_reports(report, supervisor.log_dir)
    print(format_test_report(report))
    print(f"Report: {text_path}")
    print(f"JSON report: {json_path}")
    return 0 if report.passed else 1


if __name__ == "__main__":
    sys.exit(main())
