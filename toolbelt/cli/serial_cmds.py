"""Serial monitor command."""

from __future__ import annotations

import threading

from toolbelt.expect import pattern_error
from toolbelt.interfaces import SerialConfig
from toolbelt.recording import RecordingConfig, RecordingFormat
from toolbelt.serial_manager import SerialSessionManager
from toolbelt.serial_session import SerialLine

from .helpers import Context, _print


def _show(line: SerialLine, json_mode: bool) -> None:
    if json_mode:
        _print({"port": line.port, "line": line.line,
                "timestamp": line.timestamp.isoformat()}, json_mode=True)
    else:
        print(line.line, flush=True)


def stream_lines(manager: SerialSessionManager, port: str, duration_s: float, *, json_mode: bool) -> bool:
    """Print filtered lines from ``port`` until ``duration_s`` elapses or the port closes.

    False when ``port`` has no open session.
    """
    session = manager.session(port)
    if session is None:
        return False
    done = threading.Event()
    with session.closed.subscribe(lambda reason: done.set()), \
            session.data.subscribe(lambda line: _show(line, json_mode)):
        if not session.is_open():
            return True
        done.wait(duration_s)
    return True


def cmd_monitor(
    ctx: Context,
    port: str,
    baud: int,
    duration_s: float,
    expect,
    filters: list[str],
    record,
    record_format: str,
    *,
    json_mode: bool,
) -> int:
    invalid = [e for e in map(pattern_error, filters or []) if e]
    if invalid:
        _print({"error": "; ".join(invalid), "port": port}, json_mode=json_mode)
        return 1
    manager = SerialSessionManager(
        flush_interval_s=ctx.config.recording_flush_interval_s,
        buffer_size=ctx.config.recording_buffer_size,
        use_locks=True,
        lock_dir=ctx.config.lock_dir,
    )
    opened = manager.open(port, SerialConfig(baud=baud))
    if not opened.success:
        _print({"error": opened.error, "port": port}, json_mode=json_mode)
        return 1
    try:
        if filters:
            manager.set_filters(port, filters)
        if record:
            manager.start_recording(port, RecordingConfig(record, RecordingFormat(record_format)))

        if expect:
            with manager.subscribe(port, lambda line: _show(line, json_mode)):
                result = manager.expect(port, expect, duration_s)
            _print(result.to_dict(), json_mode=json_mode)
            return 0 if result.matched else 1
        stream_lines(manager, port, duration_s, json_mode=json_mode)
        return 0
    finally:
        manager.close_all()
