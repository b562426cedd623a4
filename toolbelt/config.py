"""
Configuration loading for the toolbelt.

Settings come from a YAML file (``yaml.safe_load``) layered over dataclass
defaults, with a couple of environment overrides applied last:

- ``TOOLBELT_CONFIG``: path of the YAML file
- ``TOOLBELT_CLI_PATH``: build tool executable
- ``TOOLBELT_RUN_DIR``: directory for port locks and the event journal
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join("~", ".config", "toolbelt", "config.yaml")


def get_run_dir() -> str:
    """Directory holding ``toolbelt-locks/`` and ``toolbelt-events.jsonl``."""
    return os.environ.get("TOOLBELT_RUN_DIR", "/tmp")


@dataclass
class RecoveryConfig:
    max_compile_fix_attempts: int = 3
    max_upload_attempts: int = 2
    retry_base_delay_s: float = 1.0
    upload_baud_fallbacks: tuple[int, ...] = (115200, 57600, 9600)
    syntax_patch_threshold: float = 0.7
    reset_settle_s: float = 2.0


@dataclass
class ToolbeltConfig:
    cli_path: str = "arduino-cli"
    default_fqbn: str = "arduino:avr:uno"
    build_dir_name: str = "build"
    binary_extensions: tuple[str, ...] = (".hex", ".bin", ".uf2")
    compile_timeout_s: float = 300.0
    upload_timeout_s: float = 120.0
    tool_timeout_s: float = 60.0
    run_dir: str = field(default_factory=get_run_dir)
    signatures_path: Optional[str] = None
    hotplug_interval_s: float = 2.0
    recording_flush_interval_s: float = 5.0
    recording_buffer_size: int = 1000
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)

    @property
    def lock_dir(self) -> str:
        return os.path.join(self.run_dir, "toolbelt-locks")

    @property
    def events_path(self) -> str:
        return os.path.join(self.run_dir, "toolbelt-events.jsonl")


def _build(cls, data: dict[str, Any], where: str):
    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown config key(s) in {where}: {', '.join(unknown)}")

    kwargs: dict[str, Any] = {}
    for name, value in data.items():
        if name == "recovery":
            if not isinstance(value, dict):
                raise ValueError(f"{where}.recovery must be a mapping")
            value = _build(RecoveryConfig, value, f"{where}.recovery")
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[name] = value
    return cls(**kwargs)


def load_config(path: Optional[str] = None) -> ToolbeltConfig:
    """Load configuration from YAML.

    Resolution: explicit ``path``, then ``$TOOLBELT_CONFIG``, then the
    per-user default file. A missing default file yields defaults; a missing
    explicit file raises ``FileNotFoundError``.

    Raises:
        ValueError: the file is not a mapping or carries unknown keys.
    """
    explicit = path or os.environ.get("TOOLBELT_CONFIG")
    config_path = os.path.expanduser(explicit or DEFAULT_CONFIG_PATH)

    data: dict[str, Any] = {}
    if explicit or os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        data = loaded
        logger.debug("Loaded config from %s", config_path)

    config = _build(ToolbeltConfig, data, "config")

    cli_path = os.environ.get("TOOLBELT_CLI_PATH")
    if cli_path:
        config.cli_path = cli_path
    run_dir = os.environ.get("TOOLBELT_RUN_DIR")
    if run_dir:
        config.run_dir = run_dir
    return config
