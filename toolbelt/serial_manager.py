"""
Serial session management.

``SerialSessionManager`` owns the registry of open sessions, one per port.
Opening an already-open port is a no-op that reports the existing session.
Each operation returns a plain result; a port that is not open yields a
failure value, not an exception.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Type, Union

from . import telemetry
from .channel import Subscription
from .errors import ErrorKind
from .expect import ExpectResult
from .implementations import RealClock, RealFileSystem, RealSerialPort
from .interfaces import ClockInterface, FileSystemInterface, SerialConfig, SerialPortInterface
from .port_lock import PortLock
from .recording import DEFAULT_BUFFER_SIZE, RecordEntry, RecordingConfig
from .serial_session import SerialLine, SerialSession

logger = logging.getLogger(__name__)


@dataclass
class OpenResult:
    success: bool
    port: str
    already_open: bool = False
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    status: Dict = field(default_factory=dict)


class SerialSessionManager:
    """
    Per-port serial sessions.

    Args:
        serial_factory: SerialPortInterface implementation, one instance per session.
        filesystem: Where recordings are written.
        clock: Timestamps for lines and recordings.
        flush_interval_s: Recording flush cadence.
        buffer_size: Entries kept per port while no recording is active.
        use_locks: Take a cross-process ``PortLock`` for each open port.
        lock_dir: Override for the lock directory.
    """

    def __init__(
        self,
        serial_factory: Type[SerialPortInterface] = RealSerialPort,
        filesystem: Optional[FileSystemInterface] = None,
        clock: Optional[ClockInterface] = None,
        flush_interval_s: float = 5.0,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        use_locks: bool = False,
        lock_dir: Optional[str] = None,
    ):
        self._serial_factory = serial_factory
        self._fs = filesystem or RealFileSystem()
        self._clock = clock or RealClock()
        self._flush_interval_s = flush_interval_s
        self._buffer_size = buffer_size
        self._use_locks = use_locks
        self._lock_dir = lock_dir
        self._sessions: Dict[str, SerialSession] = {}
        self._port_locks: Dict[str, PortLock] = {}
        self._opening: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    parse_sensor_data = staticmethod(telemetry.parse_sensor_data)
    parse_numeric_data = staticmethod(telemetry.parse_numeric_data)
    is_plotter_data = staticmethod(telemetry.is_plotter_data)

    def open(self, port: str, config: Optional[SerialConfig] = None) -> OpenResult:
        """Open ``port``. Only other opens of the same port wait on the device."""
        with self._lock:
            opening = self._opening.setdefault(port, threading.Lock())
        with opening:
            existing = self.session(port)
            if existing is not None:
                return OpenResult(True, port, already_open=True, status=existing.status())

            port_lock = None
            if self._use_locks:
                port_lock = PortLock(port, lock_dir=self._lock_dir)
                if not port_lock.acquire():
                    owner = port_lock.get_owner()
                    who = f"PID {owner.pid} ({owner.process_name})" if owner else "another process"
                    return OpenResult(False, port, error=f"Port {port} is locked by {who}")

            session = SerialSession(
                port,
                config or SerialConfig(),
                self._serial_factory(),
                self._fs,
                self._clock,
                flush_interval_s=self._flush_interval_s,
                buffer_size=self._buffer_size,
                on_closed=self._session_closed,
            )
            if not session.open():
                if port_lock:
                    port_lock.release()
                return OpenResult(False, port, error=f"Failed to open {port}",
                                  error_kind=self._open_failure_kind(port))
            with self._lock:
                self._sessions[port] = session
                if port_lock:
                    self._port_locks[port] = port_lock
            return OpenResult(True, port, status=session.status())

    def _open_failure_kind(self, port: str) -> Optional[ErrorKind]:
        try:
            ports = self._serial_factory.list_ports()
        except OSError:
            return None
        if all(p.device != port for p in ports):
            return ErrorKind.PORT_NOT_FOUND
        return None

    def _session_closed(self, session: SerialSession, reason: str) -> None:
        with self._lock:
            if self._sessions.get(session.port) is session:
                del self._sessions[session.port]
            port_lock = self._port_locks.pop(session.port, None)
        if port_lock:
            port_lock.release()
        if reason != "closed":
            logger.warning("Session on %s ended: %s", session.port, reason)

    def session(self, port: str) -> Optional[SerialSession]:
        with self._lock:
            return self._sessions.get(port)

    def close(self, port: str) -> bool:
        session = self.session(port)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.close()
        return len(sessions)

    def open_ports(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def is_open(self, port: str) -> bool:
        session = self.session(port)
        return session is not None and session.is_open()

    def status(self, port: str) -> Optional[dict]:
        session = self.session(port)
        return session.status() if session else None

    # I/O

    def write(self, port: str, data: str, add_newline: bool = True) -> bool:
        session = self.session(port)
        if session is None:
            logger.debug("write to %s: not open", port)
            return False
        return session.write(data, add_newline)

    def expect(self, port: str, pattern: str, timeout_s: float = 5.0) -> ExpectResult:
        session = self.session(port)
        if session is None:
            return ExpectResult(matched=False, error=f"Port {port} is not open")
        return session.expect(pattern, timeout_s)

    def read_line(self, port: str, timeout_s: Optional[float] = None) -> Optional[SerialLine]:
        session = self.session(port)
        if session is None:
            return None
        return session.read_line(timeout_s)

    def subscribe(self, port: str, callback: Callable[[SerialLine], None]) -> Optional[Subscription]:
        """Subscribe to filtered live data on ``port``; None if not open."""
        session = self.session(port)
        if session is None:
            return None
        return session.data.subscribe(callback)

    # Filters

    def set_filters(self, port: str, patterns: List[str]) -> bool:
        session = self.session(port)
        if session is None:
            return False
        return session.set_filters(patterns)

    def clear_filters(self, port: str) -> bool:
        session = self.session(port)
        if session is None:
            return False
        session.clear_filters()
        return True

    # Recording

    def start_recording(self, port: str, config: Union[RecordingConfig, dict]) -> bool:
        session = self.session(port)
        if session is None:
            return False
        if isinstance(config, dict):
            config = RecordingConfig(**config)
        session.start_recording(config)
        return True

    def stop_recording(self, port: str) -> bool:
        session = self.session(port)
        if session is None:
            return False
        return session.stop_recording()

    def get_recording(self, port: str) -> List[RecordEntry]:
        session = self.session(port)
        return session.recorder.entries() if session else []

    def clear_recording(self, port: str) -> bool:
        session = self.session(port)
        if session is None:
            return False
        session.recorder.clear()
        return True

    def set_buffer_size(self, port: str, size: int) -> Optional[int]:
        """Cap ``port``'s idle recording buffer; the applied size, or None if not open."""
        session = self.session(port)
        if session is None:
            return None
        return session.recorder.set_buffer_size(size)
