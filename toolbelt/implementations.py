"""
Real implementations of interfaces for production use.

These classes wrap actual system resources (serial ports, files, time)
and implement the abstract interfaces.
"""

import logging
import os
import tempfile
import time
from datetime import datetime
from typing import List, Optional

import serial
import serial.tools.list_ports

from .interfaces import (
    ClockInterface, DevicePort, FileSystemInterface, SerialPortInterface,
)

logger = logging.getLogger(__name__)


def _hex_id(value: Optional[int]) -> Optional[str]:
    return f"{value:04x}" if value is not None else None


class RealSerialPort(SerialPortInterface):
    """
    Real serial port implementation using pyserial.

    Read/write errors (device unplugged mid-session) close the port
    instead of raising, so the owner sees ``is_open() == False``.
    """

    def __init__(self):
        self._serial: Optional[serial.Serial] = None

    def open(self, port: str, baud: int, bytesize: int = 8, parity: str = "N",
             stopbits: float = 1, timeout: float = 0.05) -> bool:
        try:
            self._serial = serial.Serial(
                port,
                baud,
                bytesize=bytesize,
                parity=parity,
                stopbits=stopbits,
                timeout=timeout,
                write_timeout=2.0,
            )
            return True
        except (serial.SerialException, ValueError, OSError) as e:
            logger.debug("open %s failed: %s", port, e)
            self._serial = None
            return False

    def close(self) -> None:
        if self._serial:
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as e:
                logger.debug("close failed: %s", e)
            self._serial = None

    def is_open(self) -> bool:
        if self._serial is None:
            return False
        return bool(self._serial.is_open)

    def read_bytes(self, max_bytes: int) -> bytes:
        if not self._serial or max_bytes <= 0:
            return b""
        try:
            waiting = self._serial.in_waiting
            if not waiting:
                return b""
            return self._serial.read(min(waiting, max_bytes))
        except (serial.SerialException, OSError) as e:
            logger.warning("Read failed on %s: %s", self._serial.port, e)
            self.close()
            return b""

    def write(self, data: bytes) -> int:
        if not self._serial:
            return 0
        try:
            written = self._serial.write(data)
            self._serial.flush()
            return written or 0
        except (serial.SerialException, OSError) as e:
            logger.warning("Write failed on %s: %s", self._serial.port, e)
            self.close()
            return 0

    def set_dtr(self, state: bool) -> bool:
        if not self._serial:
            return False
        try:
            self._serial.dtr = state
            return True
        except (serial.SerialException, OSError) as e:
            logger.debug("DTR=%s failed: %s", state, e)
            return False

    def set_rts(self, state: bool) -> bool:
        if not self._serial:
            return False
        try:
            self._serial.rts = state
            return True
        except (serial.SerialException, OSError) as e:
            logger.debug("RTS=%s failed: %s", state, e)
            return False

    @staticmethod
    def list_ports() -> List[DevicePort]:
        ports = []
        for p in serial.tools.list_ports.comports():
            ports.append(DevicePort(
                device=p.device,
                manufacturer=p.manufacturer or "",
                vid=_hex_id(p.vid),
                pid=_hex_id(p.pid),
                serial_number=p.serial_number or "",
                description=p.description or "",
                friendly_name=p.product or p.description or "",
                hwid=p.hwid or "",
            ))
        return ports


class RealFileSystem(FileSystemInterface):
    """
    Real file system implementation.
    """

    def read_file(self, path: str) -> str:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def write_file(self, path: str, content: str, append: bool = False) -> None:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        mode = "a" if append else "w"
        with open(path, mode, encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()

    def replace_file(self, path: str, content: str) -> None:
        parent = os.path.dirname(path) or "."
        os.makedirs(parent, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".tmp-", suffix=".rec")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def file_exists(self, path: str) -> bool:
        return os.path.exists(path)

    def ensure_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)


class RealClock(ClockInterface):
    """
    Real clock implementation using system time.
    """

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)
