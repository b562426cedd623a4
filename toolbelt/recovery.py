"""
Build/flash pipeline with bounded automatic recovery.

State machine:

    IDLE -> COMPILING -> COMPILE_FAILED -> AUTO_FIXING -> COMPILING ...
                      -> COMPILE_SUCCEEDED -> UPLOADING
    UPLOADING -> UPLOAD_FAILED -> FLASH_RECOVERING -> UPLOADING ...
              -> UPLOAD_SUCCEEDED -> MONITORING -> IDLE

Every failure branch is bounded by ``RecoveryConfig``; running out of
attempts, or any fix that asks for a human, lands in FAILED with
``manual_intervention_required`` set. Transitions are published on
``RecoveryEngine.transitions`` and, when a journal is given, recorded.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .auto_fixer import AutoFixer, FixResult
from .board_signatures import BoardFamily
from .build_orchestrator import BuildOrchestrator, sketch_paths
from .channel import Channel
from .config import RecoveryConfig
from .device_registry import DeviceRegistry
from .errors import ErrorKind, ProcessSpawnError
from .event_journal import EventJournal
from .implementations import RealClock, RealFileSystem
from .interfaces import ClockInterface, FileSystemInterface, SerialConfig
from .process_runner import CommandResult
from .serial_manager import SerialSessionManager

logger = logging.getLogger(__name__)

LIBRARY_COLLISION_MARKER = "Multiple libraries were found"
ESP_BOOT_HINT = "ESP board detected - try holding BOOT button during upload"


class PipelineState(str, Enum):
    IDLE = "idle"
    COMPILING = "compiling"
    COMPILE_FAILED = "compile_failed"
    AUTO_FIXING = "auto_fixing"
    COMPILE_SUCCEEDED = "compile_succeeded"
    UPLOADING = "uploading"
    UPLOAD_FAILED = "upload_failed"
    FLASH_RECOVERING = "flash_recovering"
    UPLOAD_SUCCEEDED = "upload_succeeded"
    MONITORING = "monitoring"
    FAILED = "failed"


S = PipelineState
ALLOWED: Dict[PipelineState, Set[PipelineState]] = {
    S.IDLE: {S.COMPILING, S.FAILED},
    S.COMPILING: {S.COMPILE_FAILED, S.COMPILE_SUCCEEDED, S.FAILED},
    S.COMPILE_FAILED: {S.AUTO_FIXING, S.FAILED},
    S.AUTO_FIXING: {S.COMPILING, S.FAILED},
    S.COMPILE_SUCCEEDED: {S.UPLOADING, S.IDLE, S.FAILED},
    S.UPLOADING: {S.UPLOAD_FAILED, S.UPLOAD_SUCCEEDED, S.FAILED},
    S.UPLOAD_FAILED: {S.FLASH_RECOVERING, S.FAILED},
    S.FLASH_RECOVERING: {S.UPLOADING, S.UPLOAD_SUCCEEDED, S.FAILED},
    S.UPLOAD_SUCCEEDED: {S.MONITORING, S.IDLE},
    S.MONITORING: {S.IDLE},
    S.FAILED: {S.IDLE},
}


@dataclass(frozen=True)
class Transition:
    source: PipelineState
    target: PipelineState
    reason: str = ""


@dataclass
class RetryOutcome:
    success: bool
    result: Any = None
    attempts: int = 0
    failures: List[str] = field(default_factory=list)
    fatal: bool = False


@dataclass
class RecoveryOutcome:
    stage: str
    success: bool
    message: str = ""


@dataclass
class FlashRecoveryResult(FixResult):
    stages: List[RecoveryOutcome] = field(default_factory=list)
    upload: Optional[CommandResult] = None
    port: Optional[str] = None


@dataclass
class PipelineResult:
    success: bool
    state: PipelineState
    manual_intervention_required: bool = False
    compile: Optional[CommandResult] = None
    upload: Optional[CommandResult] = None
    fixes: FixResult = field(default_factory=FixResult)
    port: Optional[str] = None
    fqbn: Optional[str] = None
    compile_attempts: int = 0
    upload_attempts: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    session: Optional[dict] = None
    transitions: List[Transition] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "state": self.state.value,
            "manual_intervention_required": self.manual_intervention_required,
            "compile": self.compile.to_dict() if self.compile else None,
            "upload": self.upload.to_dict() if self.upload else None,
            "fixes": self.fixes.to_dict(),
            "port": self.port,
            "fqbn": self.fqbn,
            "compile_attempts": self.compile_attempts,
            "upload_attempts": self.upload_attempts,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "session": self.session,
            "transitions": [(t.source.value, t.target.value, t.reason) for t in self.transitions],
        }


def _succeeded(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return bool(getattr(value, "success", False))


def _failure_text(value: Any) -> str:
    return getattr(value, "error", None) or getattr(value, "message", None) or "operation failed"


class RecoveryEngine:
    """
    Compile -> auto-fix -> upload -> flash recovery -> monitor.

    Args:
        orchestrator: Build tool driver.
        registry: Device identification and reset protocols.
        sessions: Serial sessions; the target port is closed before upload
            and reopened for monitoring.
        config: Retry bounds and fallback bauds.
        filesystem: Source access for the auto-fixer.
        clock: Backoff and settle delays.
        journal: Optional JSONL journal for transitions and fixes.
    """

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        registry: DeviceRegistry,
        sessions: Optional[SerialSessionManager] = None,
        config: Optional[RecoveryConfig] = None,
        filesystem: Optional[FileSystemInterface] = None,
        clock: Optional[ClockInterface] = None,
        journal: Optional[EventJournal] = None,
    ):
        self._orch = orchestrator
        self._registry = registry
        self._sessions = sessions
        self._config = config or orchestrator.config.recovery
        self._fs = filesystem or RealFileSystem()
        self._clock = clock or RealClock()
        self._journal = journal
        self.fixer = AutoFixer(orchestrator, self._fs, self._config.syntax_patch_threshold)
        self.transitions: Channel[Transition] = Channel("pipeline.transitions")
        self._state = PipelineState.IDLE
        self._history: List[Transition] = []
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()

    @property
    def state(self) -> PipelineState:
        return self._state

    def _move(self, target: PipelineState, reason: str = "") -> None:
        with self._state_lock:
            source = self._state
            if target not in ALLOWED[source]:
                raise ValueError(f"Invalid transition {source.value} -> {target.value}")
            self._state = target
            transition = Transition(source, target, reason)
            self._history.append(transition)
        logger.info("Pipeline %s -> %s %s", source.value, target.value, reason)
        if self._journal:
            self._journal.record_transition(transition)
        self.transitions.publish(transition)

    def _journal_fix(self, fix: FixResult) -> None:
        if self._journal:
            self._journal.record_fix(fix)

    # Auto-fix operations

    def fix_include_paths(self, project, diagnostics, fqbn=None) -> FixResult:
        return self.fixer.fix_include_paths(project, diagnostics, fqbn)

    def fix_library_collision(self, project, output="") -> FixResult:
        return self.fixer.fix_library_collision(project, output)

    def fix_syntax_patch(self, path, diagnostics) -> FixResult:
        return self.fixer.fix_syntax_patch(path, diagnostics)

    # Retry

    def retry_strategy(
        self,
        operation: Callable[..., Any],
        max_retries: int = 3,
        alternate: Optional[Callable[..., Any]] = None,
        base_delay_s: Optional[float] = None,
    ) -> RetryOutcome:
        """Run ``operation`` up to ``max_retries`` times with exponential backoff.

        The delay before attempt ``n`` (n >= 2) is ``base * 2**(n-2)``. From
        the third attempt on ``alternate`` is used when given. Spawn and
        port-not-found failures, and results flagged for manual
        intervention, stop the loop immediately.
        """
        base = self._config.retry_base_delay_s if base_delay_s is None else base_delay_s
        outcome = RetryOutcome(success=False)
        for attempt in range(1, max_retries + 1):
            if attempt > 1:
                delay = base * 2 ** (attempt - 2)
                logger.info("Retry %d/%d in %.1fs", attempt, max_retries, delay)
                self._clock.sleep(delay)
            op = alternate if (alternate is not None and attempt >= 3) else operation
            outcome.attempts = attempt
            try:
                value = op()
            except ProcessSpawnError as e:
                outcome.failures.append(f"attempt {attempt}: {e}")
                outcome.fatal = True
                logger.error("Retry aborted: %s", e)
                return outcome
            except Exception as e:
                outcome.failures.append(f"attempt {attempt}: {e}")
                logger.warning("Attempt %d failed: %s", attempt, e)
                continue
            outcome.result = value
            if _succeeded(value):
                outcome.success = True
                return outcome
            outcome.failures.append(f"attempt {attempt}: {_failure_text(value)}")
            if getattr(value, "requires_manual_intervention", False) or \
                    getattr(value, "error_kind", None) in (ErrorKind.SPAWN, ErrorKind.PORT_NOT_FOUND):
                outcome.fatal = True
                return outcome
        return outcome

    # Flash recovery

    def flash_recovery(self, port: str, fqbn: str, sketch: Optional[str] = None) -> FlashRecoveryResult:
        """Staged upload recovery for ``port``.

        Control-line reset, then an upload per fallback baud (only when
        ``sketch`` is given), then the bootloader touch for native-USB
        boards. ESP boards get the boot-button instruction instead of blind
        retries.
        """
        result = FlashRecoveryResult(port=port)
        if self._registry.find_port(port) is None:
            result.suggestions.append(f"Port {port} not found - reconnect the board")
            result.requires_manual_intervention = True
            return result

        reset = self._registry.reset(port, "dtr_rts")
        result.stages.append(RecoveryOutcome("reset", reset.success, reset.message))
        if reset.success:
            result.applied_fixes.append("Reset board via DTR/RTS")
            self._clock.sleep(self._config.reset_settle_s)

        family = self._registry.family(fqbn)
        if family is BoardFamily.ESP:
            result.suggestions.append(ESP_BOOT_HINT)
            result.suggestions.append(self._registry.manual_steps(family))
            result.requires_manual_intervention = True
            return result

        if sketch is None:
            result.stages.append(RecoveryOutcome("baud_fallback", False, "no sketch to upload"))
            result.suggestions.append("Retry the upload at a lower speed")
        else:
            for baud in self._config.upload_baud_fallbacks:
                upload = self._orch.upload_at_baud(sketch, fqbn, port, baud)
                result.stages.append(RecoveryOutcome(f"upload@{baud}", upload.success, upload.error or ""))
                result.upload = upload
                if upload.success:
                    result.applied_fixes.append(f"Uploaded at {baud} baud")
                    result.success = True
                    return result

        if family is BoardFamily.NATIVE_USB:
            boot = self._registry.bootloader_mode(port, fqbn)
            result.stages.append(RecoveryOutcome("bootloader", boot.success, boot.message))
            if boot.success:
                result.applied_fixes.append(f"Entered bootloader on {boot.port}")
                result.port = boot.port
                if sketch is not None:
                    upload = self._orch.upload(sketch, fqbn, boot.port or port)
                    result.stages.append(RecoveryOutcome("upload@bootloader", upload.success, upload.error or ""))
                    result.upload = upload
                    result.success = upload.success
                    if upload.success:
                        return result
        else:
            result.suggestions.append(self._registry.manual_steps(family))

        result.success = result.success or (sketch is None and bool(result.applied_fixes))
        return result

    # Pipelines

    def build(self, sketch: str, fqbn: Optional[str] = None) -> PipelineResult:
        """Compile with bounded auto-fix; ends in IDLE or FAILED."""
        with self._run_lock:
            self._begin_run("build", sketch=sketch, fqbn=fqbn)
            result = self._compile_loop(sketch, fqbn or self._orch.config.default_fqbn)
            if result.success:
                self._move(S.IDLE, "build only")
                result.state = S.IDLE
            return self._finish(result)

    def deploy(
        self,
        sketch: str,
        fqbn: Optional[str] = None,
        port: Optional[str] = None,
        monitor_baud: Optional[int] = None,
    ) -> PipelineResult:
        """Compile, upload and optionally open a monitoring session.

        Without ``port`` the first enumerated port is used and the FQBN is
        taken from its identification when ``fqbn`` is not given.
        """
        with self._run_lock:
            self._begin_run("deploy", sketch=sketch, fqbn=fqbn, port=port)
            if port is None:
                ports = self._registry.list_ports()
                if not ports:
                    self._move(S.FAILED, "no ports")
                    return self._finish(PipelineResult(
                        False, S.FAILED, manual_intervention_required=True,
                        error="No serial ports found", error_kind=ErrorKind.PORT_NOT_FOUND,
                    ))
                port = ports[0].device
            if fqbn is None:
                ident = self._registry.identify(port)
                fqbn = ident.fqbn if ident else self._orch.config.default_fqbn

            result = self._compile_loop(sketch, fqbn)
            result.port = port
            if not result.success:
                return self._finish(result)

            guard = self._registry.safe_guard(port, fqbn)
            for warning in guard.warnings:
                result.fixes.suggestions.append(warning)
            if not guard.safe:
                missing = self._registry.find_port(port) is None
                self._move(S.FAILED, "; ".join(guard.errors))
                result.state = S.FAILED
                result.success = False
                result.manual_intervention_required = True
                result.error = "; ".join(guard.errors)
                result.error_kind = ErrorKind.PORT_NOT_FOUND if missing else None
                return self._finish(result)

            if self._sessions is not None and self._sessions.session(port) is not None:
                logger.info("Closing open session on %s before upload", port)
                self._sessions.close(port)

            self._upload_loop(result, sketch, fqbn, port)
            if not result.success:
                return self._finish(result)

            if monitor_baud and self._sessions is not None:
                self._move(S.MONITORING, f"{monitor_baud} baud")
                opened = self._sessions.open(result.port or port, SerialConfig(baud=monitor_baud))
                result.session = opened.status if opened.success else None
                if not opened.success:
                    result.fixes.suggestions.append(f"Could not open monitor: {opened.error}")
            self._move(S.IDLE, "deployed")
            result.state = S.IDLE
            return self._finish(result)

    def _begin_run(self, operation: str, **context: Any) -> None:
        if self._state is not S.IDLE:
            if self._state is S.FAILED:
                self._move(S.IDLE, "reset")
            else:
                raise ValueError(f"Pipeline busy in state {self._state.value}")
        self._history = []
        if self._journal:
            self._journal.begin_run(operation, **context)

    def _finish(self, result: PipelineResult) -> PipelineResult:
        result.transitions = list(self._history)
        result.state = self._state
        if self._journal:
            self._journal.finish_run(result)
        return result

    def _fail(self, result: PipelineResult, reason: str, manual: bool = True) -> PipelineResult:
        self._move(S.FAILED, reason)
        result.state = S.FAILED
        result.success = False
        result.manual_intervention_required = manual
        result.error = result.error or reason
        return result

    def _compile_loop(self, sketch: str, fqbn: str) -> PipelineResult:
        result = PipelineResult(False, self._state, fqbn=fqbn)
        sketch_dir, name, _ = sketch_paths(sketch, self._orch.config.build_dir_name)
        fixes_left = self._config.max_compile_fix_attempts
        timeout_retry = True

        while True:
            self._move(S.COMPILING, f"attempt {result.compile_attempts + 1}")
            result.compile_attempts += 1
            compiled = self._orch.compile(sketch, fqbn)
            result.compile = compiled

            if compiled.success:
                self._move(S.COMPILE_SUCCEEDED, compiled.binary_path or "")
                result.success = True
                result.state = S.COMPILE_SUCCEEDED
                result.error = result.error_kind = None
                return result

            result.error, result.error_kind = compiled.error, compiled.error_kind
            if compiled.error_kind is ErrorKind.SPAWN:
                return self._fail(result, compiled.error or "build tool missing")
            if compiled.error_kind is ErrorKind.TIMEOUT:
                if timeout_retry:
                    timeout_retry = False
                    self._move(S.FAILED, "compile timed out, retrying once")
                    self._move(S.IDLE, "retry")
                    continue
                return self._fail(result, "compile timed out twice", manual=False)

            self._move(S.COMPILE_FAILED, compiled.error or "")
            if fixes_left <= 0:
                return self._fail(result, "compile fix attempts exhausted")
            fixes_left -= 1

            self._move(S.AUTO_FIXING)
            fix = self._auto_fix(sketch_dir, name, compiled, fqbn)
            result.fixes.merge(fix)
            self._journal_fix(fix)
            if fix.requires_manual_intervention or not fix.applied_fixes:
                return self._fail(result, "no automatic fix applies")

    def _auto_fix(self, sketch_dir: str, name: str, compiled: CommandResult, fqbn: str) -> FixResult:
        fix = FixResult()
        if LIBRARY_COLLISION_MARKER in compiled.output:
            fix.merge(self.fixer.fix_library_collision(sketch_dir, compiled.output))
        errors = list(compiled.errors)
        fix.merge(self.fixer.fix_include_paths(sketch_dir, errors, fqbn))

        files = []
        for diag in errors:
            path = AutoFixer.resolve_source(sketch_dir, diag.file)
            if path not in files:
                files.append(path)
        if not files:
            files.append(os.path.join(sketch_dir, f"{name}.ino"))
        for path in files:
            # Line numbers in a file that just gained an include are stale.
            if path not in fix.modified_files and self._fs.file_exists(path):
                fix.merge(self.fixer.fix_syntax_patch(path, errors))
        return fix

    def _upload_loop(self, result: PipelineResult, sketch: str, fqbn: str, port: str) -> None:
        attempts_left = self._config.max_upload_attempts
        while True:
            self._move(S.UPLOADING, port)
            result.upload_attempts += 1
            uploaded = self._orch.upload(sketch, fqbn, port)
            result.upload = uploaded
            if uploaded.success:
                self._move(S.UPLOAD_SUCCEEDED, port)
                result.success = True
                result.error = result.error_kind = None
                return

            result.error, result.error_kind = uploaded.error, uploaded.error_kind
            self._move(S.UPLOAD_FAILED, uploaded.error or "")
            attempts_left -= 1
            if uploaded.error_kind is ErrorKind.SPAWN:
                self._fail(result, uploaded.error or "uploader missing")
                return
            if attempts_left <= 0:
                self._fail(result, "upload attempts exhausted")
                return

            self._move(S.FLASH_RECOVERING)
            recovered = self.flash_recovery(port, fqbn, sketch)
            result.fixes.merge(recovered)
            self._journal_fix(recovered)
            if recovered.port:
                port = recovered.port
                result.port = port
            if recovered.upload is not None and recovered.upload.success:
                result.upload = recovered.upload
                self._move(S.UPLOAD_SUCCEEDED, "flash recovery")
                result.success = True
                result.error = result.error_kind = None
                return
            if recovered.requires_manual_intervention:
                self._fail(result, "flash recovery needs manual steps")
                return
