"""
QEMU USB/IP MCP - concurrent boot testing for QEMU USB/IP client VMs.

This package boots several ephemeral QEMU instances of a USB/IP client
image side by side, watches their serial consoles for readiness or failure
markers, keeps overlay images and forwarded ports isolated per instance,
and produces diagnostics plus a pass/fail report. It is usable from the
qemu-usbip-test command line and as an MCP server.
"""

__version__ = "0.1.0"
