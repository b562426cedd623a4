"""Port and board commands."""

from __future__ import annotations

import sys
from dataclasses import asdict

from .helpers import Context, _print


def cmd_ports(ctx: Context, *, json_mode: bool) -> int:
    ports = ctx.registry.list_ports()
    if json_mode:
        _print({"ports": [asdict(p) for p in ports]}, json_mode=True)
        return 0
    if not ports:
        print("No serial ports found")
        return 0
    for p in ports:
        ids = f"{p.vid}:{p.pid}" if p.vid and p.pid else "-"
        print(f"{p.device:20s} {ids:10s} {p.description or p.manufacturer or ''}")
    return 0


def cmd_identify(ctx: Context, port: str, *, json_mode: bool) -> int:
    ident = ctx.registry.identify(port)
    if ident is None:
        payload = {"port": port, "identified": False}
        bridge = ctx.registry.bridge(port)
        if bridge:
            payload.update(bridge=bridge.chip, candidates=list(bridge.candidates))
        _print(payload, json_mode=json_mode)
        return 1
    if json_mode:
        _print(ident.to_dict(), json_mode=True)
    else:
        print(f"{port}: {ident.board} ({ident.fqbn}) confidence {ident.confidence:.1f} via {ident.method.value}")
    return 0


def cmd_reset(ctx: Context, port: str, method: str, *, json_mode: bool) -> int:
    result = ctx.registry.reset(port, method)
    _print(result.to_dict() if json_mode else result.message, json_mode=json_mode)
    return 0 if result.success else 1


def cmd_bootloader(ctx: Context, port: str, board: str, timeout_s: float, *, json_mode: bool) -> int:
    result = ctx.registry.bootloader_mode(port, board, timeout_s)
    _print(result.to_dict() if json_mode else result.message, json_mode=json_mode)
    return 0 if result.success else 1


def cmd_safeguard(ctx: Context, port: str, fqbn: str, *, json_mode: bool) -> int:
    report = ctx.registry.safe_guard(port, fqbn)
    if json_mode:
        _print(asdict(report), json_mode=True)
    else:
        print("OK" if report.safe else "NOT SAFE")
        for e in report.errors:
            print(f"  error: {e}")
        for w in report.warnings:
            print(f"  warning: {w}")
    return 0 if report.safe else 1


def cmd_ota(ctx: Context, ip: str, firmware: str, password, ota_port, *, json_mode: bool) -> int:
    result = ctx.registry.ota_upload(ip, firmware, password, ota_port)
    if json_mode:
        _print(result.to_dict(), json_mode=True)
    elif result.success:
        print(f"Uploaded {firmware} to {ip}")
    else:
        print(f"Error: {result.error}", file=sys.stderr)
    return 0 if result.success else 1
