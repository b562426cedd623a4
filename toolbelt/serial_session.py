"""
A single live serial session.

The session owns its port, a reader thread that splits inbound bytes into
lines, its filters and its recording buffer. Events are published on
per-session channels:

    lines   every inbound line (``SerialLine``), unfiltered
    data    inbound lines that pass the session's filters
    errors  human-readable error strings
    closed  the close reason ("closed" or "disconnected"), published once
"""

from __future__ import annotations

import codecs
import logging
import queue
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .channel import Channel
from .expect import ExpectResult, ExpectWatcher, pattern_error
from .interfaces import ClockInterface, FileSystemInterface, SerialConfig, SerialPortInterface
from .recording import DEFAULT_BUFFER_SIZE, Recorder, RecordingConfig

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
IDLE_POLL_S = 0.01


@dataclass(frozen=True)
class SerialLine:
    port: str
    line: str
    timestamp: datetime


class SerialSession:
    """
    Line-oriented session over one serial port.

    Writes are serialized by a per-session lock; reads happen on the
    session's own thread and never wait on writers.
    """

    def __init__(
        self,
        port: str,
        config: SerialConfig,
        serial: SerialPortInterface,
        filesystem: FileSystemInterface,
        clock: ClockInterface,
        flush_interval_s: float = 5.0,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        on_closed: Optional[Callable[["SerialSession", str], None]] = None,
    ):
        self.port = port
        self.config = config
        self._serial = serial
        self._clock = clock
        self._on_closed = on_closed
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._filters: List[re.Pattern] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._opened_at: Optional[datetime] = None
        self._lines_in = 0
        self._writes_out = 0

        self.recorder = Recorder(filesystem, clock, flush_interval_s, name=port, buffer_size=buffer_size)
        self.lines: Channel[SerialLine] = Channel(f"serial:{port}.lines")
        self.data: Channel[SerialLine] = Channel(f"serial:{port}.data")
        self.errors: Channel[str] = Channel(f"serial:{port}.errors")
        self.closed: Channel[str] = Channel(f"serial:{port}.closed")

    def open(self) -> bool:
        ok = self._serial.open(
            self.port,
            self.config.baud,
            bytesize=self.config.bytesize,
            parity=self.config.parity,
            stopbits=self.config.stopbits,
            timeout=self.config.timeout,
        )
        if not ok:
            return False
        self._opened_at = self._clock.now()
        self._thread = threading.Thread(
            target=self._read_loop, name=f"toolbelt-serial-{self.port}", daemon=True,
        )
        self._thread.start()
        logger.info("Opened %s at %d baud", self.port, self.config.baud)
        return True

    def is_open(self) -> bool:
        return not self._closed and self._serial.is_open()

    def close(self, reason: str = "closed") -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(2.0)
        self.recorder.stop()
        self._serial.close()
        logger.info("Session on %s %s", self.port, reason)
        self.closed.publish(reason)
        if self._on_closed:
            self._on_closed(self, reason)

    # Output

    def write(self, data: str, add_newline: bool = True) -> bool:
        if not self.is_open():
            return False
        text = data + "\n" if add_newline else data
        payload = text.encode()
        with self._write_lock:
            written = self._serial.write(payload)
            ok = written == len(payload)
            if ok:
                self._writes_out += 1
                self.recorder.append("out", text)
        if not ok:
            msg = f"Short write on {self.port}: {written}/{len(payload)} bytes"
            logger.warning(msg)
            self.errors.publish(msg)
        return ok

    # Filters

    def set_filters(self, patterns: List[str]) -> bool:
        """Replace the filters. An invalid pattern leaves the old ones in place."""
        for p in patterns:
            bad = pattern_error(p)
            if bad:
                logger.warning("%s: %s", self.port, bad)
                self.errors.publish(bad)
                return False
        compiled = [re.compile(p) for p in patterns]
        with self._state_lock:
            self._filters = compiled
        return True

    def clear_filters(self) -> None:
        with self._state_lock:
            self._filters = []

    @property
    def filters(self) -> List[str]:
        with self._state_lock:
            return [f.pattern for f in self._filters]

    # Pattern wait and line reads

    def expect(self, pattern: str, timeout_s: float) -> ExpectResult:
        bad = pattern_error(pattern)
        if bad:
            return ExpectResult(matched=False, error=bad)
        watcher = ExpectWatcher(pattern)
        with self.lines.subscribe(lambda ev: watcher.feed(ev.line)), \
                self.closed.subscribe(lambda reason: watcher.finish()):
            if not self.is_open():
                watcher.finish()
            return watcher.wait(timeout_s)

    def read_line(self, timeout_s: Optional[float] = None) -> Optional[SerialLine]:
        """Next inbound line that passes the filters, or None on timeout."""
        inbox: "queue.Queue[SerialLine]" = queue.Queue()
        with self.data.subscribe(inbox.put):
            try:
                return inbox.get(timeout=timeout_s)
            except queue.Empty:
                return None

    def status(self) -> dict:
        return {
            "port": self.port,
            "open": self.is_open(),
            "baud": self.config.baud,
            "bytesize": self.config.bytesize,
            "parity": self.config.parity,
            "stopbits": self.config.stopbits,
            "opened_at": self._opened_at.isoformat() if self._opened_at else None,
            "lines_in": self._lines_in,
            "writes_out": self._writes_out,
            "filters": self.filters,
            "recording": self.recorder.active,
        }

    def start_recording(self, config: RecordingConfig) -> None:
        self.recorder.start(config)

    def stop_recording(self) -> bool:
        return self.recorder.stop()

    # Reader thread

    def _read_loop(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while not self._stop.is_set():
            if not self._serial.is_open():
                if pending:
                    self._deliver(pending)
                self.errors.publish(f"{self.port} disconnected")
                self.close("disconnected")
                return
            chunk = self._serial.read_bytes(READ_CHUNK)
            if not chunk:
                self._stop.wait(IDLE_POLL_S)
                continue
            pending += decoder.decode(chunk)
            *complete, pending = pending.split("\n")
            for line in complete:
                self._deliver(line + "\n")

    def _deliver(self, raw: str) -> None:
        line = raw.rstrip("\r\n")
        self._lines_in += 1
        self.recorder.append("in", raw)
        event = SerialLine(self.port, line, self._clock.now())
        self.lines.publish(event)
        with self._state_lock:
            filters = self._filters
        if not filters or any(f.search(line) for f in filters):
            self.data.publish(event)
