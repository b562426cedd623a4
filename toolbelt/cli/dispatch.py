"""Command dispatch for toolbeltctl."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from toolbelt.cli.parser import _build_parser, _preprocess_argv


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the ``toolbeltctl`` CLI.

    Returns:
        Exit code: 0 on success, non-zero on error.
    """
    if argv is None:
        argv = sys.argv[1:]

    argv = _preprocess_argv(argv)

    # Late import so tests can monkeypatch toolbelt.cli.cmd_xxx and _build_context
    import toolbelt.cli as cli

    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    json_mode = args.json

    if args.cmd == "parse":
        return cli.cmd_parse(args.logfile, json_mode=json_mode)

    try:
        ctx = cli._build_context(args.config)
    except (OSError, ValueError) as e:
        cli._print({"error": f"Invalid configuration: {e}"}, json_mode=json_mode)
        return 2

    if args.cmd == "ports":
        return cli.cmd_ports(ctx, json_mode=json_mode)
    if args.cmd == "identify":
        return cli.cmd_identify(ctx, args.port, json_mode=json_mode)
    if args.cmd == "reset":
        return cli.cmd_reset(ctx, args.port, args.method, json_mode=json_mode)
    if args.cmd == "bootloader":
        return cli.cmd_bootloader(ctx, args.port, args.board, args.timeout, json_mode=json_mode)
    if args.cmd == "safeguard":
        return cli.cmd_safeguard(ctx, args.port, args.fqbn, json_mode=json_mode)
    if args.cmd == "ota":
        return cli.cmd_ota(ctx, args.ip, args.firmware, args.password, args.ota_port, json_mode=json_mode)
    if args.cmd == "compile":
        return cli.cmd_compile(ctx, args.sketch, args.fqbn, args.fix, json_mode=json_mode)
    if args.cmd == "upload":
        return cli.cmd_upload(ctx, args.sketch, args.port, args.fqbn, args.recover, json_mode=json_mode)
    if args.cmd == "deploy":
        return cli.cmd_deploy(ctx, args.sketch, args.port, args.fqbn, args.monitor_baud, args.duration,
                              json_mode=json_mode)
    if args.cmd == "monitor":
        return cli.cmd_monitor(
            ctx, args.port, args.baud, args.duration, args.expect, args.filter,
            args.record, args.format, json_mode=json_mode,
        )
    if args.cmd == "lib":
        return cli.cmd_lib(ctx, args, json_mode=json_mode)
    if args.cmd == "board":
        return cli.cmd_board(ctx, args, json_mode=json_mode)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
