"""
Mock implementations for testing.

These classes implement the abstract interfaces with in-memory behavior
suitable for unit testing without hardware.
"""

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from .interfaces import (
    ClockInterface, DevicePort, FileSystemInterface, SerialPortInterface,
)


class MockSerialPort(SerialPortInterface):
    """
    Mock serial port for testing.

    Provides a queue-based simulation of serial communication.
    Test code can inject data with inject_line() and read sent data with
    get_sent(). Control-line changes are recorded in ``line_history``.

    ``list_ports()`` returns the class-level ``available_ports`` so a
    registry built over this class sees whatever the test configured.
    """

    available_ports: List[DevicePort] = []
    fail_ports: set = set()
    opened: List[Tuple[str, int]] = []
    instances: List["MockSerialPort"] = []

    def __init__(self):
        self._is_open = False
        self._port = ""
        self._baud = 0
        self._rx_buffer: deque = deque()
        self._tx_buffer: List[bytes] = []
        self._lock = threading.Lock()
        self._fail_on_open = False
        self._fail_control_lines = False
        self.line_history: List[Tuple[str, bool]] = []
        self.close_count = 0
        MockSerialPort.instances.append(self)

    @classmethod
    def reset_class_state(cls) -> None:
        """Clear class-level port table and bookkeeping between tests."""
        cls.available_ports = []
        cls.fail_ports = set()
        cls.opened = []
        cls.instances = []

    def open(self, port: str, baud: int, bytesize: int = 8, parity: str = "N",
             stopbits: float = 1, timeout: float = 0.05) -> bool:
        if self._fail_on_open or port in MockSerialPort.fail_ports:
            return False
        self._port = port
        self._baud = baud
        self._is_open = True
        MockSerialPort.opened.append((port, baud))
        return True

    def close(self) -> None:
        if self._is_open:
            self.close_count += 1
        self._is_open = False

    def is_open(self) -> bool:
        return self._is_open

    def read_bytes(self, max_bytes: int) -> bytes:
        if not self._is_open or max_bytes <= 0:
            return b""
        with self._lock:
            if not self._rx_buffer:
                return b""
            chunk = self._rx_buffer.popleft()
            if len(chunk) > max_bytes:
                self._rx_buffer.appendleft(chunk[max_bytes:])
                chunk = chunk[:max_bytes]
            return chunk

    def write(self, data: bytes) -> int:
        if not self._is_open:
            return 0
        with self._lock:
            self._tx_buffer.append(data)
        return len(data)

    def set_dtr(self, state: bool) -> bool:
        if not self._is_open or self._fail_control_lines:
            return False
        self.line_history.append(("dtr", state))
        return True

    def set_rts(self, state: bool) -> bool:
        if not self._is_open or self._fail_control_lines:
            return False
        self.line_history.append(("rts", state))
        return True

    @staticmethod
    def list_ports() -> List[DevicePort]:
        return list(MockSerialPort.available_ports)

    # Test helper methods

    @property
    def baud(self) -> int:
        return self._baud

    def inject_line(self, line: str) -> None:
        """Inject a line into the receive buffer (for testing)."""
        self.inject_bytes((line + "\n").encode())

    def inject_bytes(self, data: bytes) -> None:
        """Inject raw bytes into the receive buffer."""
        with self._lock:
            self._rx_buffer.append(data)

    def get_sent(self) -> List[bytes]:
        """Get all data sent via write() (for testing)."""
        with self._lock:
            return self._tx_buffer.copy()

    def simulate_unplug(self) -> None:
        """Drop the port as a yanked USB cable would."""
        self._is_open = False

    def set_fail_on_open(self, fail: bool) -> None:
        """Make open() fail (for testing error handling)."""
        self._fail_on_open = fail

    def set_fail_control_lines(self, fail: bool) -> None:
        """Make set_dtr()/set_rts() fail."""
        self._fail_control_lines = fail


class MockFileSystem(FileSystemInterface):
    """
    In-memory file system for testing.

    All file operations are performed in memory without touching disk.
    """

    def __init__(self):
        self._files: Dict[str, str] = {}
        self._dirs: set = set()
        self.replace_count = 0

    def read_file(self, path: str) -> str:
        if path not in self._files:
            raise FileNotFoundError(f"No such file: {path}")
        return self._files[path]

    def write_file(self, path: str, content: str, append: bool = False) -> None:
        if append and path in self._files:
            self._files[path] += content
        else:
            self._files[path] = content

    def replace_file(self, path: str, content: str) -> None:
        self._files[path] = content
        self.replace_count += 1

    def file_exists(self, path: str) -> bool:
        return path in self._files or path in self._dirs

    def ensure_dir(self, path: str) -> None:
        self._dirs.add(path)

    # Test helper methods

    def get_all_files(self) -> Dict[str, str]:
        """Get dictionary of all files and contents."""
        return self._files.copy()


class MockClock(ClockInterface):
    """
    Controllable clock for testing.

    ``sleep()`` records the requested duration and advances the clock
    instead of blocking, so polling loops with deadlines terminate
    deterministically.
    """

    def __init__(self, start_time: Optional[datetime] = None):
        self._current_time = start_time or datetime(2025, 1, 1, 0, 0, 0)
        self._mono = 0.0
        self.sleep_calls: List[float] = []

    def now(self) -> datetime:
        return self._current_time

    def monotonic(self) -> float:
        return self._mono

    def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        self.advance(seconds)

    # Test helper methods

    def advance(self, seconds: float) -> None:
        """Advance time by specified seconds."""
        self._current_time += timedelta(seconds=seconds)
        self._mono += seconds
