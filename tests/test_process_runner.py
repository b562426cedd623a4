"""Tests for toolbelt/process_runner.py using real Python child processes."""

from __future__ import annotations

import sys
import threading
import time

import pytest

from toolbelt.errors import CommandTimeoutError, ErrorKind, ProcessSpawnError
from toolbelt.process_runner import ProcessRunner, to_argv

PY = sys.executable


def py(code: str) -> list[str]:
    return [PY, "-c", code]


class TestToArgv:
    def test_string_is_split(self):
        assert to_argv("arduino-cli board list --format json") == [
            "arduino-cli", "board", "list", "--format", "json",
        ]

    def test_sequence_is_stringified(self):
        assert to_argv(["a", 1]) == ["a", "1"]


class TestRun:
    def test_success_captures_both_streams(self):
        result = ProcessRunner().run(py("import sys; print('out'); print('err', file=sys.stderr)"), timeout_s=30)
        assert result.success is True
        assert result.exit_code == 0
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert "out" in result.output and "err" in result.output

    def test_nonzero_exit_is_a_result_not_an_exception(self):
        result = ProcessRunner().run(py("import sys; sys.exit(3)"), timeout_s=30)
        assert result.success is False
        assert result.exit_code == 3
        assert result.error == "exit code 3"

    def test_missing_binary_raises_spawn_error(self):
        with pytest.raises(ProcessSpawnError) as exc:
            ProcessRunner().run(["definitely-not-a-real-binary-xyz"])
        assert exc.value.kind is ErrorKind.SPAWN

    def test_timeout_kills_and_carries_partial_output(self):
        code = "import sys, time; print('started'); sys.stdout.flush(); time.sleep(30)"
        with pytest.raises(CommandTimeoutError) as exc:
            ProcessRunner().run(py(code), timeout_s=1.0)
        partial = exc.value.partial
        assert partial.timed_out is True
        assert "started" in partial.stdout
        assert partial.success is False

    def test_stream_callback_sees_all_output(self):
        chunks = []
        ProcessRunner().run(py("print('a'); print('b')"), stream=chunks.append, timeout_s=30)
        assert "".join(c.data for c in chunks if c.stream == "stdout").split() == ["a", "b"]

    def test_env_is_merged(self):
        result = ProcessRunner(env={"TOOLBELT_X": "1"}).run(
            py("import os; print(os.environ['TOOLBELT_X'] + os.environ['TOOLBELT_Y'])"),
            env={"TOOLBELT_Y": "2"}, timeout_s=30,
        )
        assert result.stdout.strip() == "12"


class TestStart:
    def test_lines_and_exit_delivered_in_order(self):
        lines = []
        exited = threading.Event()
        codes = []

        def on_exit(code):
            codes.append(code)
            exited.set()

        handle = ProcessRunner().start(
            py("print('one'); print('two\\r'); print('three', end='')"),
            on_line=lambda ev: lines.append(ev.line),
            on_exit=on_exit,
        )
        assert handle.wait(30) == 0
        assert exited.wait(5)
        assert lines == ["one", "two", "three"]
        assert codes == [0]

    def test_handle_registry_and_kill_all(self):
        runner = ProcessRunner()
        h1 = runner.start(py("import time; time.sleep(30)"))
        h2 = runner.start(py("import time; time.sleep(30)"))
        assert {h.id for h in runner.handles()} >= {h1.id, h2.id}
        assert runner.kill_all() == 2
        assert h1.wait(10) is not None
        assert h2.wait(10) is not None
        assert h1.killed and h2.killed

    def test_kill_is_idempotent(self):
        runner = ProcessRunner()
        handle = runner.start(py("import time; time.sleep(30)"))
        assert runner.kill(handle) is True
        handle.wait(10)
        assert runner.kill(handle) is False
        assert handle.result().error == "killed"

    def test_write_stdin(self):
        handle = ProcessRunner().start(py("print(input().upper())"), stdin=True)
        assert handle.write_stdin("hello\n") is True
        assert handle.wait(30) == 0
        assert handle.stdout().strip() == "HELLO"


class TestExpect:
    def test_match_with_capture(self):
        code = "import time; print('boot'); print('ready v=42', flush=True); time.sleep(30)"
        result = ProcessRunner().expect(py(code), r"ready v=(\d+)", timeout_s=20)
        assert result.matched is True
        assert result.capture == "42"
        assert result.timed_out is False
        assert "boot" in result.logs

    def test_timeout(self):
        result = ProcessRunner().expect(py("import time; time.sleep(30)"), "never", timeout_s=0.5)
        assert result.matched is False
        assert result.timed_out is True

    def test_exit_before_match(self):
        result = ProcessRunner().expect(py("print('bye')"), "never", timeout_s=20)
        assert result.matched is False
        assert result.timed_out is False
        assert result.error == "stream ended before match"

    def test_process_always_killed(self):
        runner = ProcessRunner()
        runner.expect(py("import time; print('x', flush=True); time.sleep(30)"), "x", timeout_s=20)
        deadline = time.monotonic() + 10
        while runner.handles() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert runner.handles() == []

    def test_invalid_pattern_spawns_nothing(self):
        runner = ProcessRunner()
        result = runner.expect(["toolbelt-no-such-binary-xyz"], "ready(", timeout_s=5)
        assert result.matched is False
        assert result.timed_out is False
        assert result.error.startswith("Invalid pattern 'ready('")
        assert runner.handles() == []
