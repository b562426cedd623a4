"""Shared fixtures for toolbelt tests."""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Union

import pytest

from toolbelt.config import ToolbeltConfig
from toolbelt.errors import CommandTimeoutError, ProcessSpawnError
from toolbelt.mocks import MockClock, MockFileSystem, MockSerialPort
from toolbelt.process_runner import CommandResult

Reply = Union[CommandResult, Exception, Callable[[List[str]], CommandResult]]


def ok(stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(exit_code=0, stdout=stdout, stderr=stderr, success=True)


def fail(stdout: str = "", stderr: str = "", code: int = 1) -> CommandResult:
    return CommandResult(exit_code=code, stdout=stdout, stderr=stderr, success=False)


class StubRunner:
    """Stands in for ProcessRunner: replies by the first matching argv prefix.

    Replies registered for a key are consumed in order; the last one
    repeats. Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self._replies: Dict[tuple, List[Reply]] = {}

    def on(self, *prefix: str, reply: Reply) -> "StubRunner":
        self._replies.setdefault(prefix, []).append(reply)
        return self

    def calls_for(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[1:1 + len(prefix)]) == prefix]

    def run(self, command, cwd=None, env=None, stream=None, timeout_s=None) -> CommandResult:
        argv = list(command)
        self.calls.append(argv)
        for prefix in sorted(self._replies, key=len, reverse=True):
            if tuple(argv[1:1 + len(prefix)]) == prefix:
                queue = self._replies[prefix]
                reply = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(reply, Exception):
                    raise reply
                if callable(reply):
                    return reply(argv)
                return reply
        return ok()

    def start(self, command, **kwargs):
        self.calls.append(list(command))
        raise ProcessSpawnError(command[0], "stub runner cannot start processes")


def timeout_error(command: str = "arduino-cli compile", partial: Optional[CommandResult] = None):
    return CommandTimeoutError(command, 1.0, partial or CommandResult(exit_code=None, timed_out=True))


@pytest.fixture(autouse=True)
def isolate_run_dir(tmp_path, monkeypatch):
    """Keep locks and journals out of /tmp for every test."""
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    monkeypatch.setenv("TOOLBELT_RUN_DIR", str(run_dir))
    monkeypatch.delenv("TOOLBELT_CONFIG", raising=False)
    monkeypatch.delenv("TOOLBELT_CLI_PATH", raising=False)
    return run_dir


@pytest.fixture(autouse=True)
def reset_mock_serial():
    MockSerialPort.reset_class_state()
    yield
    MockSerialPort.reset_class_state()


@pytest.fixture
def runner():
    return StubRunner()


@pytest.fixture
def fs():
    return MockFileSystem()


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def config(tmp_path):
    return ToolbeltConfig(run_dir=str(tmp_path / "run"))
