"""
Run journal for build/flash pipelines.

Each pipeline run appends JSON lines to one shared file so agents and other
processes can follow it without a reference to the engine:

    {"run": "3f2a9c1e0b7d", "step": 0, "at": "...", "event": "run.started", ...}
    {"run": "3f2a9c1e0b7d", "step": 1, "at": "...", "event": "transition",
     "from": "idle", "to": "compiling", "reason": "attempt 1"}
    {"run": "3f2a9c1e0b7d", "step": 2, "at": "...", "event": "fix",
     "applied": [...], "suggestions": [...], "manual": false}
    {"run": "3f2a9c1e0b7d", "step": 9, "at": "...", "event": "run.finished",
     "outcome": "succeeded", "state": "idle", ...}

Appends take an exclusive ``portalocker`` lock so concurrent runs in
different processes never interleave partial lines.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import portalocker

from .interfaces import ClockInterface, FileSystemInterface

if TYPE_CHECKING:
    from .auto_fixer import FixResult
    from .recovery import PipelineResult, Transition

logger = logging.getLogger(__name__)


class EventJournal:
    """Per-run JSONL journal: a start marker, typed steps and an outcome."""

    def __init__(self, filesystem: FileSystemInterface, clock: ClockInterface, events_path: str) -> None:
        self._fs = filesystem
        self._clock = clock
        self._path = events_path
        self._run_id: Optional[str] = None
        self._step = 0
        self._started_at = None
        self._fs.ensure_dir(os.path.dirname(events_path) or ".")

    @property
    def path(self) -> str:
        return self._path

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    def begin_run(self, operation: str, **context: Any) -> str:
        """Start a new run and return its id. Unfinished runs are simply superseded."""
        self._run_id = uuid.uuid4().hex[:12]
        self._step = 0
        self._started_at = self._clock.now()
        self._write("run.started", operation=operation, **context)
        return self._run_id

    def record_transition(self, transition: "Transition") -> None:
        self._write(
            "transition",
            **{"from": transition.source.value, "to": transition.target.value, "reason": transition.reason},
        )

    def record_fix(self, fix: "FixResult") -> None:
        """Journal a fixer result. Results that did and suggested nothing are skipped."""
        if not (fix.applied_fixes or fix.suggestions):
            return
        self._write(
            "fix",
            applied=list(fix.applied_fixes),
            suggestions=list(fix.suggestions),
            manual=fix.requires_manual_intervention,
        )

    def finish_run(self, result: "PipelineResult") -> None:
        if result.success:
            outcome = "succeeded"
        elif result.manual_intervention_required:
            outcome = "needs_human"
        else:
            outcome = "failed"
        elapsed = (self._clock.now() - self._started_at).total_seconds() if self._started_at else None
        self._write(
            "run.finished",
            outcome=outcome,
            state=result.state.value,
            port=result.port,
            fqbn=result.fqbn,
            compile_attempts=result.compile_attempts,
            upload_attempts=result.upload_attempts,
            error=result.error,
            error_kind=result.error_kind.value if result.error_kind else None,
            duration_s=elapsed,
        )
        self._run_id = None

    def entries(self, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Entries in file order, optionally for one run. Torn lines are skipped."""
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
        except FileNotFoundError:
            return []
        found = []
        for line in lines:
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if run_id is None or entry.get("run") == run_id:
                found.append(entry)
        return found

    def _write(self, event: str, **fields: Any) -> None:
        if self._run_id is None:
            logger.debug("journal: %s outside a run ignored", event)
            return
        entry = {"run": self._run_id, "step": self._step, "at": self._clock.now().isoformat(), "event": event}
        entry.update(fields)
        self._step += 1
        line = json.dumps(entry, default=str) + "\n"
        try:
            with open(self._path, "a", encoding="utf-8") as f:
                portalocker.lock(f, portalocker.LOCK_EX)
                try:
                    f.write(line)
                    f.flush()
                finally:
                    portalocker.unlock(f)
        except OSError as e:
            logger.warning("Could not append to journal %s: %s", self._path, e)
