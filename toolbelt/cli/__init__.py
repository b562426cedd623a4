"""
toolbeltctl: agent-friendly CLI for the Arduino toolbelt.

- Small, stable command surface
- ``--json`` anywhere on the line for machine-readable output
- Importable: ``main(argv)`` returns the exit code
"""

from __future__ import annotations

from toolbelt.cli.helpers import Context, _build_context, _print
from toolbelt.cli.device_cmds import (
    cmd_bootloader,
    cmd_identify,
    cmd_ota,
    cmd_ports,
    cmd_reset,
    cmd_safeguard,
)
from toolbelt.cli.build_cmds import (
    cmd_board,
    cmd_compile,
    cmd_deploy,
    cmd_lib,
    cmd_parse,
    cmd_upload,
)
from toolbelt.cli.serial_cmds import cmd_monitor
from toolbelt.cli.dispatch import main

__all__ = [
    "Context",
    "main",
    "cmd_board",
    "cmd_bootloader",
    "cmd_compile",
    "cmd_deploy",
    "cmd_identify",
    "cmd_lib",
    "cmd_monitor",
    "cmd_ota",
    "cmd_parse",
    "cmd_ports",
    "cmd_reset",
    "cmd_safeguard",
    "cmd_upload",
]
