"""Argument parser for toolbeltctl."""

from __future__ import annotations

import argparse


def _preprocess_argv(argv: list[str]) -> list[str]:
    """Move global flags (--json, --config, -v) in front of the subcommand.

    argparse only accepts them before the subcommand; agents put them
    anywhere.
    """
    global_args: list[str] = []
    rest: list[str] = []
    i = 0
    while i < len(argv):
        token = argv[i]
        if token in ("--json", "-v", "--verbose") or token.startswith("--config="):
            global_args.append(token)
            i += 1
            continue
        if token == "--config" and i + 1 < len(argv):
            global_args.extend([token, argv[i + 1]])
            i += 2
            continue
        rest.append(token)
        i += 1
    return global_args + rest


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolbeltctl",
        description="Compile, flash and talk to Arduino-class boards",
    )
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("ports", help="List serial ports")

    p = sub.add_parser("identify", help="Identify the board on a port")
    p.add_argument("port")

    p = sub.add_parser("reset", help="Reset the board on a port")
    p.add_argument("port")
    p.add_argument("--method", default="auto", choices=["auto", "dtr_rts", "1200bps"])

    p = sub.add_parser("bootloader", help="Enter the bootloader")
    p.add_argument("port")
    p.add_argument("--board", default="auto", help="FQBN, family alias or 'auto'")
    p.add_argument("--timeout", type=float, default=5.0)

    p = sub.add_parser("safeguard", help="Pre-flight check for port and FQBN")
    p.add_argument("port")
    p.add_argument("fqbn")

    p = sub.add_parser("ota", help="Network upload to an ESP32/ESP8266 via espota")
    p.add_argument("ip")
    p.add_argument("firmware", help="Compiled .bin to push")
    p.add_argument("--password", default=None)
    p.add_argument("--ota-port", type=int, default=None)

    p = sub.add_parser("compile", help="Compile a sketch")
    p.add_argument("sketch")
    p.add_argument("--fqbn", default=None)
    p.add_argument("--fix", action="store_true", help="Apply automatic fixes and retry")

    p = sub.add_parser("upload", help="Upload a compiled sketch")
    p.add_argument("sketch")
    p.add_argument("--port", required=True)
    p.add_argument("--fqbn", default=None)
    p.add_argument("--recover", action="store_true", help="Run flash recovery on failure")

    p = sub.add_parser("deploy", help="Compile, upload and optionally monitor")
    p.add_argument("sketch")
    p.add_argument("--port", default=None)
    p.add_argument("--fqbn", default=None)
    p.add_argument("--monitor-baud", type=int, default=None)
    p.add_argument("--duration", type=float, default=10.0, help="Seconds to monitor after upload")

    p = sub.add_parser("monitor", help="Print serial lines from a port")
    p.add_argument("port")
    p.add_argument("--baud", type=int, default=9600)
    p.add_argument("--duration", type=float, default=10.0)
    p.add_argument("--expect", default=None, help="Stop at the first line matching this regex")
    p.add_argument("--filter", action="append", default=[], help="Only print matching lines")
    p.add_argument("--record", default=None, help="Record to this file")
    p.add_argument("--format", default="raw", choices=["raw", "csv", "json"])

    p = sub.add_parser("lib", help="Library maintenance")
    lib = p.add_subparsers(dest="lib_action", required=True)
    q = lib.add_parser("search")
    q.add_argument("query")
    lib.add_parser("list")
    q = lib.add_parser("install")
    q.add_argument("name")
    q.add_argument("--version", default=None)
    q = lib.add_parser("uninstall")
    q.add_argument("name")
    q = lib.add_parser("upgrade")
    q.add_argument("name", nargs="?")
    q = lib.add_parser("lock", help="Write arduino.lock.json")
    q.add_argument("project")

    p = sub.add_parser("board", help="Board and core maintenance")
    board = p.add_subparsers(dest="board_action", required=True)
    board.add_parser("list")
    q = board.add_parser("listall")
    q.add_argument("query", nargs="?")
    q = board.add_parser("search")
    q.add_argument("query")
    board.add_parser("cores")
    q = board.add_parser("install")
    q.add_argument("core")

    p = sub.add_parser("parse", help="Parse a saved build log")
    p.add_argument("logfile")
    return parser
