"""
MCP server exposing the QEMU USB/IP concurrent test harness.
"""
import atexit
import json
import logging
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.types import Resource, TextContent, Tool

from . import launcher
from .config import ConfigManager
from .detector import inspect_log
from .errors import FailureKind
from .report import format_test_report, write_reports
from .supervisor import ConcurrencySupervisor, build_registry

# Configure logging - log to both file and stderr
# File logging allows tailing progress: tail -f /tmp/qemu-usbip-mcp.log
log_file = Path("/tmp/qemu-usbip-mcp.log")
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(log_file, mode='a'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)
logger.info("=" * 60)
logger.info("qemu-usbip-mcp server starting")
logger.info(f"Log file: {log_file}")
logger.info("=" * 60)

app = Server("qemu-usbip-mcp")

config_manager = ConfigManager()


def _cleanup_on_exit():
    """Stop VMs this server launched and remove the tracking file."""
    try:
        launcher.kill_tracked_vms(force=True)
        if launcher.VM_PID_TRACKING_FILE.exists():
            launcher.VM_PID_TRACKING_FILE.unlink()
    except OSError:
        pass


atexit.register(_cleanup_on_exit)


@app.list_resources()
async def list_resources() -> list[Resource]:
    """List harness resources."""
    return [
        Resource(
            uri="harness://config",
            name="Harness Configuration",
            mimeType="application/json",
            description="Effective harness configuration (defaults merged with the config file)"
        ),
        Resource(
            uri="harness://failure-categories",
            name="Failure Categories",
            mimeType="application/json",
            description="Console markers and failure kinds used to classify instances"
        ),
    ]


@app.read_resource()
async def read_resource(uri: str) -> str:
    """Read a harness resource."""
    if str(uri) == "harness://config":
        return json.dumps(config_manager.load().to_dict(), indent=2)
    if str(uri) == "harness://failure-categories":
        return json.dumps(failure_categories(), indent=2)
    raise ValueError(f"Unknown resource: {uri}")


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return [
        Tool(
            name="run_concurrent_test",
            description=(
                "Boot several QEMU USB/IP client VMs concurrently, wait for each to "
                "report USBIP_CLIENT_READY on its console, check for port/overlay "
                "conflicts, and return the pass/fail report. Failed instances get a "
                "diagnostics file in the run directory."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "instances": {
                        "type": "integer",
                        "description": "Number of VMs to boot",
                        "default": 3,
                        "minimum": 1
                    },
                    "duration": {
                        "type": "integer",
                        "description": "Seconds to wait for readiness after the last launch",
                        "default": 30,
                        "minimum": 0
                    },
                    "startup_delay": {
                        "type": "integer",
                        "description": "Seconds between launches",
                        "default": 5,
                        "minimum": 0
                    },
                    "base_image": {
                        "type": "string",
                        "description": "Base qcow2 image (default: <work_dir>/qemu-usbip-client.qcow2)"
                    },
                    "work_dir": {
                        "type": "string",
                        "description": "Directory for logs, overlays and monitor sockets"
                    },
                    "threshold": {
                        "type": "integer",
                        "description": "Success rate (percent) required to pass",
                        "minimum": 0,
                        "maximum": 100
                    }
                }
            }
        ),
        Tool(
            name="check_console_log",
            description=(
                "Summarize a QEMU console log: readiness markers, USB/IP version, "
                "vhci-hcd module status and any error markers found."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "log_path": {
                        "type": "string",
                        "description": "Path to a <id>-console.log file"
                    }
                },
                "required": ["log_path"]
            }
        ),
        Tool(
            name="list_failure_categories",
            description="List the console markers and failure kinds used to classify instances.",
            inputSchema={"type": "object", "properties": {}}
        ),
        Tool(
            name="kill_tracked_vms",
            description=(
                "Kill VMs launched by this server that are still running "
                "(e.g. left over from an interrupted run)."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "force": {
                        "type": "boolean",
                        "description": "Use SIGKILL instead of SIGTERM",
                        "default": False
                    }
                }
            }
        ),
    ]


def failure_categories() -> dict:
    """Describe how instances are classified."""
    registry = build_registry(config_manager.load())
    return {
        "success_markers": [
            {"pattern": rule.pattern.pattern, "category": rule.category}
            for rule in registry.success_rules
        ],
        "error_markers": [
            {"pattern": rule.pattern.pattern, "category": rule.category}
            for rule in registry.error_rules
        ],
        "failure_kinds": [
            {"kind": kind.value, "code": kind.code, "timeout": kind.is_timeout}
            for kind in FailureKind
        ],
    }


async def _run_concurrent_test(arguments: dict) -> str:
    config = config_manager.load()
    if arguments.get("base_image"):
        config.base_image = Path(arguments["base_image"])
    if arguments.get("work_dir"):
        config.work_dir = Path(arguments["work_dir"])
    if arguments.get("threshold") is not None:
        config.success_threshold = int(arguments["threshold"])
    config.validate()

    instances = int(arguments.get("instances", 3))
    duration = int(arguments.get("duration", 30))
    startup_delay = int(arguments.get("startup_delay", 5))
    if instances < 1:
        return "Error: instances must be at least 1"
    if duration < 0 or startup_delay < 0:
        return "Error: duration and startup_delay must be >= 0"
    if not config.image_path.exists():
        return f"Error: Base image not found: {config.image_path}"

    supervisor = ConcurrencySupervisor(config)
    report = await supervisor.run(instances, startup_delay, duration)
    text_path, json_path = write_reports(report, supervisor.log_dir)

    return (
        format_test_report(report)
        + f"\nReport: {text_path}\nJSON report: {json_path}\n"
    )


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    arguments = arguments or {}
    try:
        if name == "run_concurrent_test":
            result = await _run_concurrent_test(arguments)
            return [TextContent(type="text", text=result)]

        elif name == "check_console_log":
            log_path = Path(arguments["log_path"])
            registry = build_registry(config_manager.load())
            inspection = inspect_log(log_path, registry)
            return [TextContent(type="text", text=inspection.summary())]

        elif name == "list_failure_categories":
            return [TextContent(type="text", text=json.dumps(failure_categories(), indent=2))]

        elif name == "kill_tracked_vms":
            force = bool(arguments.get("force", False))
            killed = launcher.kill_tracked_vms(force=force)
            if killed:
                output = "\n".join(
                    [f"✓ Signalled {len(killed)} VM(s):"]
                    + [f"  {record.describe()}" for record in killed]
                )
            else:
                output = "No tracked VMs running"
            return [TextContent(type="text", text=output)]

        else:
            raise ValueError(f"Unknown tool: {name}")

    except Exception as e:
        logger.error(f"Error in tool {name}: {e}", exc_info=True)
        return [TextContent(type="text", text=f"Error: {str(e)}")]


def main():
    """Main entry point for the MCP server."""
    import asyncio
    import mcp.server.stdio

    async def run():
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options()
            )

    asyncio.run(run())


if __name__ == "__main__":
    main()
