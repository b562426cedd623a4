"""
Pattern-wait over a live line stream.

Shared by ``ProcessRunner.expect`` (lines of a spawned command) and
``SerialSessionManager.expect`` (lines of a serial session). The watcher is
fed from producer threads and waited on by the caller; whichever of "line
matched", "stream ended" or "timer fired" happens first decides the result,
and every later line is ignored.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Union


@dataclass
class ExpectResult:
    matched: bool
    capture: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    timed_out: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "capture": self.capture,
            "logs": list(self.logs),
            "timed_out": self.timed_out,
            "error": self.error,
        }


def pattern_error(pattern: str) -> Optional[str]:
    """Why ``pattern`` is not a valid regex, or None when it compiles."""
    try:
        re.compile(pattern)
    except re.error as e:
        return f"Invalid pattern {pattern!r}: {e}"
    return None


class ExpectWatcher:
    """First-wins matcher for one ``expect`` call."""

    def __init__(self, pattern: Union[str, Pattern[str]]):
        self._re = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._lock = threading.Lock()
        self._resolved = threading.Event()
        self._logs: List[str] = []
        self._matched = False
        self._capture: Optional[str] = None
        self._ended = False

    @property
    def resolved(self) -> bool:
        return self._resolved.is_set()

    def feed(self, line: str) -> None:
        with self._lock:
            if self._resolved.is_set():
                return
            self._logs.append(line)
            m = self._re.search(line)
            if m:
                self._matched = True
                if self._re.groups >= 1 and m.group(1) is not None:
                    self._capture = m.group(1)
                else:
                    self._capture = m.group(0)
                self._resolved.set()

    def finish(self) -> None:
        """The stream ended; resolve as not matched unless already resolved."""
        with self._lock:
            if not self._resolved.is_set():
                self._ended = True
                self._resolved.set()

    def wait(self, timeout_s: Optional[float]) -> ExpectResult:
        self._resolved.wait(timeout_s)
        with self._lock:
            timed_out = not self._resolved.is_set()
            # Close the gate so late lines cannot flip the outcome.
            self._resolved.set()
            return ExpectResult(
                matched=self._matched,
                capture=self._capture,
                logs=list(self._logs),
                timed_out=timed_out,
                error="stream ended before match" if self._ended and not self._matched else None,
            )
