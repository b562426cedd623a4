"""Compile, upload, deploy and maintenance commands."""

from __future__ import annotations

import sys

from toolbelt.build_orchestrator import Listing
from toolbelt.cli_json import to_plain
from toolbelt.compile_parser import parse_compile
from toolbelt.event_journal import EventJournal
from toolbelt.implementations import RealClock, RealFileSystem
from toolbelt.process_runner import CommandResult, OutputEvent
from toolbelt.recovery import RecoveryEngine
from toolbelt.serial_manager import SerialSessionManager

from .helpers import Context, _print
from .serial_cmds import stream_lines


def _echo(event: OutputEvent) -> None:
    target = sys.stderr if event.stream == "stderr" else sys.stdout
    target.write(event.data)
    target.flush()


def _report(result: CommandResult, *, json_mode: bool) -> int:
    if json_mode:
        _print(result.to_dict(), json_mode=True)
    else:
        for diag in result.diagnostics:
            print(f"{diag.file}:{diag.line}:{diag.column}: {diag.severity.value}: {diag.message}")
        if result.memory:
            m = result.memory
            if m.flash_bytes is not None:
                print(f"Flash: {m.flash_bytes}/{m.flash_max} bytes ({m.flash_pct}%)")
            if m.sram_bytes is not None:
                print(f"SRAM:  {m.sram_bytes}/{m.sram_max} bytes ({m.sram_pct}%)")
        if result.binary_path:
            print(f"Binary: {result.binary_path}")
        if result.error:
            print(f"Error: {result.error}", file=sys.stderr)
    return 0 if result.success else 1


def _engine(ctx: Context, sessions=None) -> RecoveryEngine:
    fs = RealFileSystem()
    clock = RealClock()
    journal = EventJournal(fs, clock, ctx.config.events_path)
    return RecoveryEngine(ctx.orchestrator, ctx.registry, sessions=sessions,
                          filesystem=fs, clock=clock, journal=journal)


def _report_pipeline(result, *, json_mode: bool) -> int:
    if json_mode:
        _print(result.to_dict(), json_mode=True)
    else:
        for t in result.transitions:
            print(f"{t.source.value} -> {t.target.value} {t.reason}".rstrip())
        for fix in result.fixes.applied_fixes:
            print(f"fixed: {fix}")
        for suggestion in result.fixes.suggestions:
            print(f"suggestion: {suggestion}")
        if result.manual_intervention_required:
            print("Manual intervention required", file=sys.stderr)
        if result.error and not result.success:
            print(f"Error: {result.error}", file=sys.stderr)
    return 0 if result.success else 1


def cmd_compile(ctx: Context, sketch: str, fqbn, fix: bool, *, json_mode: bool) -> int:
    if fix:
        return _report_pipeline(_engine(ctx).build(sketch, fqbn), json_mode=json_mode)
    stream = None if json_mode else _echo
    return _report(ctx.orchestrator.compile(sketch, fqbn, stream=stream), json_mode=json_mode)


def cmd_upload(ctx: Context, sketch: str, port: str, fqbn, recover: bool, *, json_mode: bool) -> int:
    fqbn = fqbn or ctx.config.default_fqbn
    result = ctx.orchestrator.upload(sketch, fqbn, port)
    if result.success or not recover:
        return _report(result, json_mode=json_mode)
    recovered = _engine(ctx).flash_recovery(port, fqbn, sketch)
    payload = recovered.to_dict()
    payload["upload"] = recovered.upload.to_dict() if recovered.upload else None
    _print(payload, json_mode=json_mode)
    return 0 if recovered.upload is not None and recovered.upload.success else 1


def cmd_deploy(ctx: Context, sketch: str, port, fqbn, monitor_baud, duration_s: float, *, json_mode: bool) -> int:
    sessions = SerialSessionManager(
        flush_interval_s=ctx.config.recording_flush_interval_s,
        buffer_size=ctx.config.recording_buffer_size,
    )
    try:
        result = _engine(ctx, sessions).deploy(sketch, fqbn, port, monitor_baud)
        code = _report_pipeline(result, json_mode=json_mode)
        if result.success and result.session:
            stream_lines(sessions, result.port, duration_s, json_mode=json_mode)
        return code
    finally:
        sessions.close_all()


def _report_listing(listing: Listing, key: str, *, json_mode: bool) -> int:
    if json_mode:
        _print(listing.to_dict(key), json_mode=True)
    elif listing.success:
        _print({key: to_plain(listing.items)}, json_mode=False)
    else:
        print(f"Error: {listing.error}", file=sys.stderr)
    return 0 if listing.success else 1


def cmd_lib(ctx: Context, args, *, json_mode: bool) -> int:
    orch = ctx.orchestrator
    action = args.lib_action
    if action == "search":
        return _report_listing(orch.lib_search(args.query), "libraries", json_mode=json_mode)
    if action == "list":
        return _report_listing(orch.lib_list(), "libraries", json_mode=json_mode)
    if action == "lock":
        path = orch.cache_lockfile(args.project)
        _print({"lockfile": path}, json_mode=json_mode)
        return 0 if path else 1
    if action == "install":
        result = orch.lib_install(args.name, args.version)
    elif action == "uninstall":
        result = orch.lib_uninstall(args.name)
    else:
        result = orch.lib_upgrade(args.name)
    return _report(result, json_mode=json_mode)


def cmd_board(ctx: Context, args, *, json_mode: bool) -> int:
    orch = ctx.orchestrator
    action = args.board_action
    if action == "list":
        return _report_listing(orch.board_list(), "ports", json_mode=json_mode)
    if action == "listall":
        return _report_listing(orch.board_listall(args.query), "boards", json_mode=json_mode)
    if action == "search":
        return _report_listing(orch.board_search(args.query), "boards", json_mode=json_mode)
    if action == "cores":
        return _report_listing(orch.core_list(), "cores", json_mode=json_mode)
    return _report(orch.core_install(args.core), json_mode=json_mode)


def cmd_parse(logfile: str, *, json_mode: bool) -> int:
    try:
        with open(logfile, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
    except OSError as e:
        _print({"error": f"Cannot read {logfile}: {e}"}, json_mode=json_mode)
        return 1
    report = parse_compile(text)
    result = CommandResult(
        exit_code=None,
        success=report.success,
        diagnostics=report.diagnostics,
        memory=report.memory,
    )
    return _report(result, json_mode=json_mode)
