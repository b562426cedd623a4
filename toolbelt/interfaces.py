"""
Interfaces for the Arduino Agent Toolbelt.

Abstract base classes that define contracts for the pluggable hardware and
time components. This enables dependency injection and mock-based testing
without a board attached.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class DevicePort:
    """A serial port as currently enumerated by the OS.

    ``vid`` and ``pid`` are lowercase 4-digit hex strings when the port is
    backed by a USB device, ``None`` otherwise.
    """
    device: str
    manufacturer: str = ""
    vid: Optional[str] = None
    pid: Optional[str] = None
    serial_number: str = ""
    description: str = ""
    friendly_name: str = ""
    hwid: str = ""

    @property
    def signature(self) -> Optional[str]:
        """``"<vid>:<pid>"`` lookup key, or None if the port has no USB IDs."""
        if self.vid and self.pid:
            return f"{self.vid}:{self.pid}".lower()
        return None


@dataclass
class SerialConfig:
    """Serial line settings for a session."""
    baud: int = 9600
    bytesize: int = 8
    parity: str = "N"
    stopbits: float = 1
    timeout: float = 0.05


class SerialPortInterface(ABC):
    """
    Abstract interface for serial port operations.

    Implementations:
    - RealSerialPort: Wraps pyserial for actual hardware
    - MockSerialPort: For unit testing without hardware
    """

    @abstractmethod
    def open(self, port: str, baud: int, bytesize: int = 8, parity: str = "N",
             stopbits: float = 1, timeout: float = 0.05) -> bool:
        """Open serial port. Returns True on success."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close serial port."""
        pass

    @abstractmethod
    def is_open(self) -> bool:
        """Check if port is currently open."""
        pass

    @abstractmethod
    def read_bytes(self, max_bytes: int) -> bytes:
        """Read up to max_bytes. Returns b'' if no data."""
        pass

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write data. Returns bytes written."""
        pass

    @abstractmethod
    def set_dtr(self, state: bool) -> bool:
        """Drive the DTR control line. Returns True on success."""
        pass

    @abstractmethod
    def set_rts(self, state: bool) -> bool:
        """Drive the RTS control line. Returns True on success."""
        pass

    @staticmethod
    @abstractmethod
    def list_ports() -> List[DevicePort]:
        """List available serial ports."""
        pass


class FileSystemInterface(ABC):
    """
    Abstract interface for the file operations recordings need.

    Implementations:
    - RealFileSystem: Actual file I/O
    - MockFileSystem: In-memory for testing
    """

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read entire file contents."""
        pass

    @abstractmethod
    def write_file(self, path: str, content: str, append: bool = False) -> None:
        """Write content to file. Creates parent dirs if needed."""
        pass

    @abstractmethod
    def replace_file(self, path: str, content: str) -> None:
        """Atomically replace a file's content (temp file + rename)."""
        pass

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if file exists."""
        pass

    @abstractmethod
    def ensure_dir(self, path: str) -> None:
        """Create directory and parents if they don't exist."""
        pass


class ClockInterface(ABC):
    """
    Abstract interface for time operations.

    Enables deterministic testing of backoff, polling and settle delays.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get current datetime."""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds from an arbitrary origin, never going backwards."""
        pass

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Sleep for specified duration."""
        pass
