"""
Supervision of external commands.

``ProcessRunner`` spawns commands without a shell, pumps stdout/stderr on
daemon threads and fans chunks and complete lines out to per-handle
channels. It owns the registry of live handles; nothing here is global.

Only this module raises across the subsystem boundary:
``ProcessSpawnError`` when the binary cannot be started and
``CommandTimeoutError`` when ``run`` exceeds its timeout.
"""

from __future__ import annotations

import codecs
import itertools
import logging
import os
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from . import compile_parser
from .channel import Channel
from .compile_parser import Diagnostic, MemoryReport, Severity
from .errors import CommandTimeoutError, ErrorKind, ProcessSpawnError
from .expect import ExpectResult, ExpectWatcher, pattern_error

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]

_KILL_GRACE_S = 2.0
_READER_JOIN_S = 5.0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command. Immutable once produced."""
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    success: bool = False
    diagnostics: Tuple[Diagnostic, ...] = ()
    memory: Optional[MemoryReport] = None
    timed_out: bool = False
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    binary_path: Optional[str] = None

    @property
    def output(self) -> str:
        return self.stdout + self.stderr

    @property
    def errors(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.severity is Severity.ERROR)

    @property
    def warnings(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.severity is Severity.WARNING)

    def to_dict(self) -> dict:
        return {
            "exit_code": self.exit_code,
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "memory": self.memory.to_dict() if self.memory else None,
            "timed_out": self.timed_out,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "binary_path": self.binary_path,
        }


def failed_result(error: str, kind: ErrorKind, stdout: str = "", stderr: str = "") -> CommandResult:
    """Structured failure for callers that must not raise."""
    return CommandResult(
        exit_code=None, stdout=stdout, stderr=stderr, success=False,
        error=error, error_kind=kind, timed_out=kind is ErrorKind.TIMEOUT,
    )


@dataclass(frozen=True)
class OutputEvent:
    stream: str  # "stdout" or "stderr"
    data: str


@dataclass(frozen=True)
class LineEvent:
    stream: str
    line: str


def to_argv(command: Command) -> List[str]:
    if isinstance(command, str):
        return shlex.split(command)
    return [str(part) for part in command]


class ProcessHandle:
    """A running (or finished) child process and its event channels.

    Channels:
        output: ``OutputEvent`` for every decoded chunk, in arrival order
        lines:  ``LineEvent`` for every complete line (``\\r\\n`` stripped)
        exited: the exit code, published once after all output was delivered
    """

    _ids = itertools.count(1)

    def __init__(self, proc: subprocess.Popen, argv: List[str],
                 on_finished: Optional[Callable[["ProcessHandle"], None]] = None):
        self.id = next(ProcessHandle._ids)
        self.argv = argv
        self.output: Channel[OutputEvent] = Channel(f"process-{self.id}.output")
        self.lines: Channel[LineEvent] = Channel(f"process-{self.id}.lines")
        self.exited: Channel[int] = Channel(f"process-{self.id}.exited")
        self._proc = proc
        self._on_finished = on_finished
        self._lock = threading.Lock()
        self._parts: Dict[str, List[str]] = {"stdout": [], "stderr": []}
        self._partial_line: Dict[str, str] = {"stdout": "", "stderr": ""}
        self._done = threading.Event()
        self._killed = False
        self._exit_code: Optional[int] = None
        self._readers: List[threading.Thread] = []

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def killed(self) -> bool:
        return self._killed

    def is_running(self) -> bool:
        return not self._done.is_set()

    def stdout(self) -> str:
        with self._lock:
            return "".join(self._parts["stdout"])

    def stderr(self) -> str:
        with self._lock:
            return "".join(self._parts["stderr"])

    def wait(self, timeout_s: Optional[float] = None) -> Optional[int]:
        """Block until the process exited and all output was delivered.

        Returns the exit code, or None if ``timeout_s`` elapsed first.
        """
        if not self._done.wait(timeout_s):
            return None
        return self._exit_code

    def write_stdin(self, data: str) -> bool:
        if self._proc.stdin is None or not self.is_running():
            return False
        try:
            self._proc.stdin.write(data.encode())
            self._proc.stdin.flush()
            return True
        except (BrokenPipeError, OSError) as e:
            logger.debug("stdin write to pid %d failed: %s", self.pid, e)
            return False

    def kill(self) -> bool:
        """Terminate the process. Returns False if it was already dead."""
        with self._lock:
            if self._killed or self._done.is_set() or self._proc.poll() is not None:
                return False
            self._killed = True

        logger.info("Killing pid %d (%s)", self.pid, self.argv[0])
        try:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=_KILL_GRACE_S)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                self._proc.wait(timeout=_KILL_GRACE_S)
        except ProcessLookupError:
            pass
        return True

    def result(self, timed_out: bool = False) -> CommandResult:
        code = self._exit_code
        success = code == 0 and not timed_out and not self._killed
        error = None
        kind = None
        if timed_out:
            error, kind = "timeout", ErrorKind.TIMEOUT
        elif self._killed:
            error = "killed"
        elif code not in (0, None):
            error = f"exit code {code}"
        return CommandResult(
            exit_code=code,
            stdout=self.stdout(),
            stderr=self.stderr(),
            success=success,
            timed_out=timed_out,
            error=error,
            error_kind=kind,
        )

    # Internals

    def _begin(self) -> None:
        for stream in ("stdout", "stderr"):
            pipe = getattr(self._proc, stream)
            t = threading.Thread(
                target=self._pump, args=(pipe, stream),
                name=f"toolbelt-proc-{self.id}-{stream}", daemon=True,
            )
            t.start()
            self._readers.append(t)
        threading.Thread(
            target=self._wait_exit, name=f"toolbelt-proc-{self.id}-wait", daemon=True,
        ).start()

    def _pump(self, pipe, stream: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = pipe.read1(4096)
                if not chunk:
                    break
                self._emit(stream, decoder.decode(chunk))
            self._emit(stream, decoder.decode(b"", final=True))
        except (OSError, ValueError) as e:
            logger.debug("%s reader for pid %d stopped: %s", stream, self.pid, e)
        finally:
            pipe.close()
        tail = self._partial_line[stream]
        if tail:
            self._partial_line[stream] = ""
            self.lines.publish(LineEvent(stream, tail.rstrip("\r")))

    def _emit(self, stream: str, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._parts[stream].append(text)
        self.output.publish(OutputEvent(stream, text))

        buffered = self._partial_line[stream] + text
        *complete, rest = buffered.split("\n")
        self._partial_line[stream] = rest
        for line in complete:
            self.lines.publish(LineEvent(stream, line.rstrip("\r")))

    def _wait_exit(self) -> None:
        code = self._proc.wait()
        for t in self._readers:
            t.join(_READER_JOIN_S)
        if self._proc.stdin is not None:
            try:
                self._proc.stdin.close()
            except OSError:
                pass
        self._exit_code = code
        self._done.set()
        logger.debug("pid %d exited with %d", self.pid, code)
        self.exited.publish(code)
        if self._on_finished:
            self._on_finished(self)


class ProcessRunner:
    """Spawns commands and owns the registry of live process handles."""

    def __init__(self, env: Optional[Dict[str, str]] = None):
        self._base_env = env
        self._handles: Dict[int, ProcessHandle] = {}
        self._lock = threading.Lock()

    parse_compile = staticmethod(compile_parser.parse_compile)
    parse_errors = staticmethod(compile_parser.parse_errors)
    parse_memory_map = staticmethod(compile_parser.parse_memory_map)

    def start(
        self,
        command: Command,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        on_output: Optional[Callable[[OutputEvent], None]] = None,
        on_line: Optional[Callable[[LineEvent], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
        stdin: bool = False,
    ) -> ProcessHandle:
        """Spawn ``command`` and return its handle.

        Callbacks are subscribed before the output pumps start, so no chunk
        or line is missed.

        Raises:
            ProcessSpawnError: the executable is missing or not runnable.
        """
        argv = to_argv(command)
        if not argv:
            raise ProcessSpawnError("", "empty command")

        merged_env = None
        if self._base_env or env:
            merged_env = dict(os.environ)
            merged_env.update(self._base_env or {})
            merged_env.update(env or {})

        logger.info("Running: %s", shlex.join(argv))
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                env=merged_env,
                stdin=subprocess.PIPE if stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise ProcessSpawnError(argv[0], str(e)) from e
        except OSError as e:
            raise ProcessSpawnError(argv[0], str(e)) from e

        handle = ProcessHandle(proc, argv, on_finished=self._forget)
        if on_output:
            handle.output.subscribe(on_output)
        if on_line:
            handle.lines.subscribe(on_line)
        if on_exit:
            handle.exited.subscribe(on_exit)
        with self._lock:
            self._handles[handle.id] = handle
        handle._begin()
        return handle

    def run(
        self,
        command: Command,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        stream: Optional[Callable[[OutputEvent], None]] = None,
        timeout_s: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` to completion and return its buffered output.

        ``stream`` additionally receives every chunk as it arrives.

        Raises:
            ProcessSpawnError: the executable is missing or not runnable.
            CommandTimeoutError: ``timeout_s`` elapsed; the process was
                killed and ``err.partial`` holds the output captured so far.
        """
        handle = self.start(command, cwd=cwd, env=env, on_output=stream)
        code = handle.wait(timeout_s)
        if code is None:
            logger.warning("Timed out after %ss: %s", timeout_s, handle.command_line)
            handle.kill()
            handle.wait(_READER_JOIN_S)
            raise CommandTimeoutError(handle.command_line, timeout_s or 0, handle.result(timed_out=True))
        return handle.result()

    def expect(
        self,
        command: Command,
        pattern: str,
        timeout_s: float,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExpectResult:
        """Run ``command`` until a stdout/stderr line matches ``pattern``.

        Resolves on the first matching line (capture = group 1, else the whole
        match), on process exit, or when ``timeout_s`` elapses, whichever
        comes first. The process is terminated in every case. An invalid
        pattern is reported in ``error`` without spawning anything.
        """
        bad = pattern_error(pattern)
        if bad:
            return ExpectResult(matched=False, error=bad)
        watcher = ExpectWatcher(pattern)
        handle = self.start(
            command, cwd=cwd, env=env,
            on_line=lambda ev: watcher.feed(ev.line),
            on_exit=lambda code: watcher.finish(),
        )
        result = watcher.wait(timeout_s)
        handle.lines.clear()
        handle.exited.clear()
        handle.kill()
        return result

    def kill(self, handle: ProcessHandle) -> bool:
        """Idempotent; False when the handle was already dead."""
        return handle.kill()

    def kill_all(self) -> int:
        killed = 0
        for handle in self.handles():
            if handle.kill():
                killed += 1
        return killed

    def handles(self) -> List[ProcessHandle]:
        with self._lock:
            return list(self._handles.values())

    def _forget(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles.pop(handle.id, None)
