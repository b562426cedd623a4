"""
Recording of serial traffic.

Every inbound line and every successful outbound write is appended to the
session's recording buffer exactly as it crossed the wire, terminator
included. Outside a recording the buffer keeps only the most recent
``buffer_size`` entries. While a recording is active it keeps everything,
and a timer thread periodically rewrites the output file from a snapshot of
the buffer, so disk I/O never runs on the thread that delivers live data.

File formats:
    raw   with timestamps, one ``[<iso>] <in|out>: <text>`` line per entry;
          without them, the payloads concatenated as-is (a byte-exact
          transcript)
    csv   ``timestamp,direction,data`` (timestamp column omitted when
          timestamps are off), standard CSV quoting, terminators stripped
    json  array of ``{"timestamp", "data", "direction"}`` records, indent 2,
          ``data`` exact
"""

from __future__ import annotations

import csv
import io
import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from .interfaces import ClockInterface, FileSystemInterface

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1000
MIN_BUFFER_SIZE = 100


class RecordingFormat(str, Enum):
    RAW = "raw"
    CSV = "csv"
    JSON = "json"


@dataclass
class RecordingConfig:
    output_file: str
    format: RecordingFormat = RecordingFormat.RAW
    include_timestamp: bool = True


@dataclass(frozen=True)
class RecordEntry:
    timestamp: datetime
    data: str
    direction: str  # "in" or "out"

    @property
    def text(self) -> str:
        """The payload without its line terminator."""
        return self.data.rstrip("\r\n")

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp.isoformat(), "data": self.data, "direction": self.direction}


def format_raw(entries: Iterable[RecordEntry], include_timestamp: bool = True) -> str:
    if include_timestamp:
        return "".join(f"[{e.timestamp.isoformat()}] {e.direction}: {e.text}\n" for e in entries)
    return "".join(e.data for e in entries)


def format_csv(entries: Iterable[RecordEntry], include_timestamp: bool = True) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    if include_timestamp:
        writer.writerow(["timestamp", "direction", "data"])
        for e in entries:
            writer.writerow([e.timestamp.isoformat(), e.direction, e.text])
    else:
        writer.writerow(["direction", "data"])
        for e in entries:
            writer.writerow([e.direction, e.text])
    return buf.getvalue()


def format_json(entries: Iterable[RecordEntry]) -> str:
    return json.dumps([e.to_dict() for e in entries], indent=2)


def render(entries: List[RecordEntry], config: RecordingConfig) -> str:
    fmt = RecordingFormat(config.format)
    if fmt is RecordingFormat.CSV:
        return format_csv(entries, config.include_timestamp)
    if fmt is RecordingFormat.JSON:
        return format_json(entries)
    return format_raw(entries, config.include_timestamp)


class Recorder:
    """Recording buffer for one port plus its flush timer."""

    def __init__(self, filesystem: FileSystemInterface, clock: ClockInterface,
                 flush_interval_s: float = 5.0, name: str = "port",
                 buffer_size: int = DEFAULT_BUFFER_SIZE):
        self._fs = filesystem
        self._clock = clock
        self._flush_interval_s = flush_interval_s
        self._name = name
        self._buffer_size = max(MIN_BUFFER_SIZE, buffer_size)
        self._entries: deque = deque(maxlen=self._buffer_size)
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._config: Optional[RecordingConfig] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> Optional[RecordingConfig]:
        return self._config

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    def set_buffer_size(self, size: int) -> int:
        """Cap the idle buffer at ``size`` entries (at least 100), dropping the oldest."""
        with self._lock:
            self._buffer_size = max(MIN_BUFFER_SIZE, size)
            if self._config is None:
                self._entries = deque(self._entries, maxlen=self._buffer_size)
            return self._buffer_size

    def append(self, direction: str, data: str) -> None:
        entry = RecordEntry(self._clock.now(), data, direction)
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> List[RecordEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def start(self, config: RecordingConfig) -> None:
        """Clear the buffer and begin periodic flushing to ``config.output_file``."""
        self.stop(flush=False)
        with self._lock:
            self._entries = deque()
            self._config = config
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"toolbelt-record-{self._name}", daemon=True,
        )
        self._thread.start()
        logger.info("Recording %s to %s (%s)", self._name, config.output_file, RecordingFormat(config.format).value)

    def stop(self, flush: bool = True) -> bool:
        """Stop the timer and write the final file. False if nothing was recording."""
        if self._config is None:
            return False
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(self._flush_interval_s + 1.0)
        self._thread = None
        ok = self.flush() if flush else True
        with self._lock:
            self._config = None
            self._entries = deque(self._entries, maxlen=self._buffer_size)
        logger.info("Recording of %s stopped", self._name)
        return ok

    def flush(self) -> bool:
        config = self._config
        if config is None:
            return False
        snapshot = self.entries()
        content = render(snapshot, config)
        with self._flush_lock:
            try:
                self._fs.replace_file(config.output_file, content)
            except OSError as e:
                logger.warning("Failed to save recording %s: %s", config.output_file, e)
                return False
        return True

    def _run(self) -> None:
        while not self._stop.wait(self._flush_interval_s):
            self.flush()
