"""
Build tool orchestration: compile, upload, monitor and maintenance
passthroughs.

Every method returns a structured value. Spawn failures and timeouts raised
by ``ProcessRunner`` are converted to failed ``CommandResult`` values tagged
with an ``ErrorKind``; a nonzero exit code is reported, never raised.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence

from .cli_json import (
    parse_board_list, parse_board_listall, parse_core_list, parse_lib_list,
    parse_lib_search, parse_version, to_plain,
)
from .compile_parser import parse_compile
from .config import ToolbeltConfig
from .errors import CommandTimeoutError, ErrorKind, ProcessSpawnError
from .implementations import RealClock, RealFileSystem
from .interfaces import ClockInterface, FileSystemInterface
from .process_runner import (
    CommandResult, LineEvent, OutputEvent, ProcessHandle, ProcessRunner, failed_result,
)

logger = logging.getLogger(__name__)

LOCKFILE_NAME = "arduino.lock.json"


@dataclass
class MonitorResult:
    success: bool
    handle: Optional[ProcessHandle] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass
class Listing:
    """Parsed ``--format json`` listing plus the tool's own verdict.

    A failed listing has ``success`` False and no items, so it can never be
    mistaken for an empty one.
    """
    success: bool
    items: list = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    result: Optional[CommandResult] = None

    def to_dict(self, key: str = "items") -> dict:
        return {
            "success": self.success,
            key: to_plain(self.items),
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


def sketch_paths(sketch: str, build_dir_name: str = "build") -> tuple[str, str, str]:
    """``(sketch_dir, sketch_name, build_dir)`` for a sketch folder or ``.ino`` file."""
    sketch = os.path.abspath(sketch)
    if sketch.endswith(".ino") or os.path.isfile(sketch):
        sketch_dir = os.path.dirname(sketch)
    else:
        sketch_dir = sketch
    name = os.path.basename(sketch_dir.rstrip(os.sep))
    return sketch_dir, name, os.path.join(sketch_dir, build_dir_name)


class BuildOrchestrator:
    """
    Drives the build tool (``arduino-cli``) through a ``ProcessRunner``.

    Usage:
        orch = BuildOrchestrator(ProcessRunner())
        result = orch.compile("sketches/Blink", "arduino:avr:uno")
        if result.success:
            orch.upload("sketches/Blink", "arduino:avr:uno", "/dev/ttyACM0")
    """

    def __init__(
        self,
        runner: ProcessRunner,
        config: Optional[ToolbeltConfig] = None,
        filesystem: Optional[FileSystemInterface] = None,
        clock: Optional[ClockInterface] = None,
    ):
        self._runner = runner
        self._config = config or ToolbeltConfig()
        self._fs = filesystem or RealFileSystem()
        self._clock = clock or RealClock()

    @property
    def config(self) -> ToolbeltConfig:
        return self._config

    def _tool(self, *args: str) -> List[str]:
        return [self._config.cli_path, *args]

    def _run(
        self,
        args: Sequence[str],
        timeout_s: Optional[float] = None,
        stream: Optional[Callable[[OutputEvent], None]] = None,
    ) -> CommandResult:
        try:
            return self._runner.run(
                self._tool(*args),
                timeout_s=timeout_s if timeout_s is not None else self._config.tool_timeout_s,
                stream=stream,
            )
        except ProcessSpawnError as e:
            logger.error("%s", e)
            return failed_result(str(e), ErrorKind.SPAWN)
        except CommandTimeoutError as e:
            return replace(e.partial, success=False, error=str(e), error_kind=ErrorKind.TIMEOUT)

    # Compile / upload / monitor

    def compile(
        self,
        sketch: str,
        fqbn: Optional[str] = None,
        extra_args: Sequence[str] = (),
        stream: Optional[Callable[[OutputEvent], None]] = None,
    ) -> CommandResult:
        """Compile ``sketch`` into ``<sketch>/build`` and parse the output.

        On success ``binary_path`` names the first produced binary found, in
        ``binary_extensions`` order.
        """
        fqbn = fqbn or self._config.default_fqbn
        sketch_dir, name, build_dir = sketch_paths(sketch, self._config.build_dir_name)
        self._fs.ensure_dir(build_dir)

        raw = self._run(
            ["compile", "--fqbn", fqbn, "--build-path", build_dir, "--verbose", *extra_args, sketch_dir],
            timeout_s=self._config.compile_timeout_s,
            stream=stream,
        )
        if raw.error_kind is ErrorKind.SPAWN:
            return raw

        report = parse_compile(raw.output)
        success = raw.success and report.success
        binary = self.find_binary(sketch_dir, build_dir) if success else None

        error, kind = raw.error, raw.error_kind
        if not success and kind is None:
            kind = ErrorKind.COMPILE
            if report.errors:
                error = f"{len(report.errors)} compile error(s)"
        if success:
            logger.info("Compiled %s for %s (%s)", name, fqbn, binary or "no binary found")
        else:
            logger.warning("Compile of %s failed: %s", name, error)
        return replace(
            raw,
            success=success,
            diagnostics=report.diagnostics,
            memory=report.memory,
            binary_path=binary,
            error=None if success else error,
            error_kind=None if success else kind,
        )

    def find_binary(self, sketch_dir: str, build_dir: Optional[str] = None) -> Optional[str]:
        name = os.path.basename(os.path.abspath(sketch_dir).rstrip(os.sep))
        build_dir = build_dir or os.path.join(sketch_dir, self._config.build_dir_name)
        for ext in self._config.binary_extensions:
            candidate = os.path.join(build_dir, f"{name}.ino{ext}")
            if self._fs.file_exists(candidate):
                return candidate
        return None

    def upload(
        self,
        sketch: str,
        fqbn: Optional[str],
        port: str,
        extra_args: Sequence[str] = (),
        stream: Optional[Callable[[OutputEvent], None]] = None,
    ) -> CommandResult:
        """Upload the compiled sketch. Output is not diagnostic-parsed."""
        fqbn = fqbn or self._config.default_fqbn
        sketch_dir, name, build_dir = sketch_paths(sketch, self._config.build_dir_name)
        args = ["upload", "--fqbn", fqbn, "--port", port, "--verbose"]
        if self._fs.file_exists(build_dir):
            args += ["--input-dir", build_dir]
        result = self._run([*args, *extra_args, sketch_dir], timeout_s=self._config.upload_timeout_s, stream=stream)
        if not result.success and result.error_kind is None:
            result = replace(result, error_kind=ErrorKind.UPLOAD, error=result.error or "upload failed")
        if result.success:
            logger.info("Uploaded %s to %s", name, port)
        return result

    def upload_at_baud(self, sketch: str, fqbn: Optional[str], port: str, baud: int) -> CommandResult:
        return self.upload(sketch, fqbn, port, extra_args=["--upload-property", f"upload.speed={baud}"])

    def monitor(
        self,
        port: str,
        baud: int = 9600,
        fqbn: Optional[str] = None,
        on_line: Optional[Callable[[LineEvent], None]] = None,
    ) -> MonitorResult:
        """Start the tool's serial monitor; lines arrive on ``handle.lines``."""
        args = ["monitor", "--port", port, "--config", f"baudrate={baud}"]
        if fqbn:
            args += ["--fqbn", fqbn]
        try:
            handle = self._runner.start(self._tool(*args), on_line=on_line, stdin=True)
        except ProcessSpawnError as e:
            return MonitorResult(False, error=str(e), error_kind=ErrorKind.SPAWN)
        return MonitorResult(True, handle=handle)

    # Maintenance passthroughs

    def version(self) -> Optional[str]:
        result = self._run(["version"])
        return parse_version(result.stdout) if result.success else None

    def initialize(self) -> CommandResult:
        """Create the tool config, refresh the index and install the default core."""
        self._run(["config", "init"])  # fails harmlessly when it already exists
        result = self._run(["core", "update-index"])
        if not result.success:
            return result
        core = ":".join(self._config.default_fqbn.split(":")[:2])
        if any(c.id == core for c in self.core_list().items):
            return result
        logger.info("Installing default core %s", core)
        return self.core_install(core)

    def sketch_new(self, path: str) -> CommandResult:
        return self._run(["sketch", "new", path])

    def _listing(self, args: Sequence[str], parse: Callable[[str], list]) -> Listing:
        result = self._run([*args, "--format", "json"])
        if not result.success:
            error = result.error or (result.stderr.strip() or f"{' '.join(args)} failed")
            logger.warning("%s failed: %s", " ".join(args), error)
            return Listing(False, error=error, error_kind=result.error_kind, result=result)
        return Listing(True, items=parse(result.stdout), result=result)

    def board_list(self) -> Listing:
        """Ports with the boards the tool matched on them."""
        return self._listing(["board", "list"], parse_board_list)

    def board_listall(self, query: Optional[str] = None) -> Listing:
        return self._listing(["board", "listall", *([query] if query else [])], parse_board_listall)

    def board_search(self, query: str) -> Listing:
        return self._listing(["board", "search", query], parse_board_listall)

    def core_list(self) -> Listing:
        return self._listing(["core", "list"], parse_core_list)

    def core_install(self, core: str) -> CommandResult:
        return self._run(["core", "install", core], timeout_s=self._config.compile_timeout_s)

    def core_uninstall(self, core: str) -> CommandResult:
        return self._run(["core", "uninstall", core])

    def lib_search(self, query: str) -> Listing:
        return self._listing(["lib", "search", query], parse_lib_search)

    def lib_list(self) -> Listing:
        return self._listing(["lib", "list"], parse_lib_list)

    def lib_install(self, name: str, version: Optional[str] = None) -> CommandResult:
        spec = f"{name}@{version}" if version else name
        return self._run(["lib", "install", spec])

    def lib_upgrade(self, name: Optional[str] = None) -> CommandResult:
        return self._run(["lib", "upgrade", name] if name else ["lib", "upgrade"])

    def lib_uninstall(self, name: str) -> CommandResult:
        return self._run(["lib", "uninstall", name])

    def cache_lockfile(self, project: str) -> Optional[str]:
        """Write ``arduino.lock.json`` pinning the tool, cores and libraries.

        Returns the lockfile path, or None when it could not be written or
        either listing failed.
        """
        cores, libs = self.core_list(), self.lib_list()
        if not (cores.success and libs.success):
            logger.warning("Not writing lockfile: %s", cores.error or libs.error)
            return None
        lockfile = {
            "cli_version": self.version() or "unknown",
            "boards": to_plain(cores.items),
            "libraries": to_plain(libs.items),
            "generated": self._clock.now().isoformat(),
        }
        path = os.path.join(project, LOCKFILE_NAME)
        try:
            self._fs.replace_file(path, json.dumps(lockfile, indent=2))
        except OSError as e:
            logger.warning("Could not write %s: %s", path, e)
            return None
        return path
