"""Shared utilities for toolbeltctl commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from toolbelt.build_orchestrator import BuildOrchestrator
from toolbelt.config import ToolbeltConfig, load_config
from toolbelt.device_registry import DeviceRegistry
from toolbelt.process_runner import ProcessRunner


def _print(obj: Any, *, json_mode: bool) -> None:
    if json_mode or not isinstance(obj, str):
        print(json.dumps(obj, indent=2, sort_keys=True, default=str))
    else:
        print(obj)


@dataclass
class Context:
    """Objects a command needs, built once per invocation."""
    config: ToolbeltConfig
    runner: ProcessRunner
    orchestrator: BuildOrchestrator
    registry: DeviceRegistry


def _build_context(config_path: Optional[str] = None) -> Context:
    config = load_config(config_path)
    runner = ProcessRunner()
    return Context(
        config=config,
        runner=runner,
        orchestrator=BuildOrchestrator(runner, config),
        registry=DeviceRegistry(runner, config),
    )
