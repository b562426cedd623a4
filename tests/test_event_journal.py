"""Tests for toolbelt/event_journal.py."""

from __future__ import annotations

import json

import pytest

from toolbelt.auto_fixer import FixResult
from toolbelt.errors import ErrorKind
from toolbelt.event_journal import EventJournal
from toolbelt.implementations import RealFileSystem
from toolbelt.recovery import PipelineResult, PipelineState, Transition


@pytest.fixture
def journal(tmp_path, clock):
    return EventJournal(RealFileSystem(), clock, str(tmp_path / "events.jsonl"))


def read_lines(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


class TestRun:
    def test_full_run(self, journal, clock):
        run_id = journal.begin_run("deploy", sketch="/proj/Blink", port="/dev/ttyACM0")
        journal.record_transition(Transition(PipelineState.IDLE, PipelineState.COMPILING, "attempt 1"))
        journal.record_fix(FixResult(success=True, applied_fixes=["Added #include <Servo.h> for Servo"]))
        clock.advance(12.5)
        journal.finish_run(PipelineResult(
            True, PipelineState.IDLE, port="/dev/ttyACM0", fqbn="arduino:avr:uno",
            compile_attempts=2, upload_attempts=1,
        ))

        started, step, fix, finished = read_lines(journal.path)
        assert {e["run"] for e in (started, step, fix, finished)} == {run_id}
        assert [e["step"] for e in (started, step, fix, finished)] == [0, 1, 2, 3]
        assert started["event"] == "run.started"
        assert started["operation"] == "deploy"
        assert started["port"] == "/dev/ttyACM0"
        assert started["at"] == "2025-01-01T00:00:00"
        assert (step["from"], step["to"], step["reason"]) == ("idle", "compiling", "attempt 1")
        assert fix["applied"] == ["Added #include <Servo.h> for Servo"]
        assert fix["manual"] is False
        assert finished["outcome"] == "succeeded"
        assert finished["compile_attempts"] == 2
        assert finished["duration_s"] == 12.5
        assert journal.run_id is None

    def test_outcome_needs_human(self, journal):
        journal.begin_run("build")
        journal.finish_run(PipelineResult(
            False, PipelineState.FAILED, manual_intervention_required=True,
            error="No serial ports found", error_kind=ErrorKind.PORT_NOT_FOUND,
        ))
        finished = journal.entries()[-1]
        assert finished["outcome"] == "needs_human"
        assert finished["state"] == "failed"
        assert finished["error_kind"] == "port_not_found"

    def test_plain_failure(self, journal):
        journal.begin_run("build")
        journal.finish_run(PipelineResult(False, PipelineState.FAILED, error="3 compile error(s)"))
        assert journal.entries()[-1]["outcome"] == "failed"

    def test_empty_fix_is_skipped(self, journal):
        journal.begin_run("build")
        journal.record_fix(FixResult())
        assert [e["event"] for e in journal.entries()] == ["run.started"]

    def test_nothing_written_outside_a_run(self, journal):
        journal.record_transition(Transition(PipelineState.FAILED, PipelineState.IDLE, "reset"))
        assert journal.entries() == []


class TestEntries:
    def test_filter_by_run(self, journal):
        first = journal.begin_run("build")
        journal.finish_run(PipelineResult(True, PipelineState.IDLE))
        second = journal.begin_run("build")
        assert first != second
        assert [e["event"] for e in journal.entries(first)] == ["run.started", "run.finished"]
        assert [e["event"] for e in journal.entries(second)] == ["run.started"]

    def test_runs_from_two_journals_share_the_file(self, tmp_path, clock):
        path = str(tmp_path / "events.jsonl")
        a = EventJournal(RealFileSystem(), clock, path)
        b = EventJournal(RealFileSystem(), clock, path)
        a.begin_run("build")
        b.begin_run("deploy")
        assert [e["operation"] for e in read_lines(path)] == ["build", "deploy"]

    def test_torn_line_is_skipped(self, journal):
        journal.begin_run("build")
        with open(journal.path, "a", encoding="utf-8") as f:
            f.write('{"run": "trunc')
        assert len(journal.entries()) == 1

    def test_missing_file(self, journal):
        assert journal.entries() == []

    def test_creates_parent_dir(self, tmp_path, clock):
        path = str(tmp_path / "nested" / "events.jsonl")
        journal = EventJournal(RealFileSystem(), clock, path)
        journal.begin_run("build")
        assert journal.path == path
        assert len(read_lines(path)) == 1
