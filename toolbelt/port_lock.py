"""
Cross-process port locking.

Provides:
- File-based port locks so two tools never fight over one serial port
- Owner information for diagnosing contention
"""

from __future__ import annotations

import errno
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import portalocker

from .config import get_run_dir

logger = logging.getLogger(__name__)


def get_lock_dir() -> str:
    return os.path.join(get_run_dir(), "toolbelt-locks")


@dataclass
class PortOwner:
    """Information about the current port owner."""
    pid: int
    process_name: str
    started: datetime
    port: str
    lock_file: str


class PortLock:
    """
    File-based port lock with contention detection.

    Usage:
        lock = PortLock("/dev/ttyACM0")
        if lock.acquire():
            ...
            lock.release()
        else:
            print(f"Port in use by: {lock.get_owner()}")
    """

    def __init__(self, port: str, lock_dir: Optional[str] = None):
        self._port = port
        self._lock_dir = lock_dir or get_lock_dir()
        self._lock_fd = None
        self._lock_path = self._get_lock_path(port, self._lock_dir)
        self._info_path = self._lock_path + ".info"
        Path(self._lock_dir).mkdir(parents=True, exist_ok=True)

    @property
    def port(self) -> str:
        return self._port

    @property
    def held(self) -> bool:
        return self._lock_fd is not None

    @staticmethod
    def _get_lock_path(port: str, lock_dir: str) -> str:
        # /dev/ttyACM0 -> <lock_dir>/_dev_ttyACM0.lock
        safe_name = port.replace("/", "_").replace("\\", "_").replace(":", "_")
        return os.path.join(lock_dir, f"{safe_name}.lock")

    def acquire(self, timeout: float = 0) -> bool:
        """
        Acquire the port lock.

        Args:
            timeout: How long to wait for the lock (0 = no wait)

        Returns:
            True if lock acquired, False otherwise
        """
        if self._lock_fd is not None:
            return True
        deadline = time.monotonic() + timeout

        while True:
            fd = open(self._lock_path, "a")
            try:
                portalocker.lock(fd, portalocker.LOCK_EX | portalocker.LOCK_NB)
            except (portalocker.exceptions.LockException, OSError):
                fd.close()
                if time.monotonic() < deadline:
                    time.sleep(0.1)
                    continue
                owner = self.get_owner()
                if owner:
                    logger.warning(
                        "Port %s locked by PID %d (%s) since %s",
                        self._port, owner.pid, owner.process_name, owner.started,
                    )
                else:
                    logger.warning("Port %s locked by unknown process", self._port)
                return False

            self._lock_fd = fd
            self._write_owner_info()
            logger.debug("Acquired lock for %s", self._port)
            return True

    def release(self) -> None:
        """Release the port lock."""
        if self._lock_fd is None:
            return
        try:
            portalocker.unlock(self._lock_fd)
        except (portalocker.exceptions.LockException, OSError) as e:
            logger.debug("Unlock %s failed: %s", self._port, e)
        self._lock_fd.close()
        self._lock_fd = None
        try:
            os.unlink(self._info_path)
        except FileNotFoundError:
            pass
        logger.debug("Released lock for %s", self._port)

    def get_owner(self) -> Optional[PortOwner]:
        """Get information about the current lock owner."""
        return _read_owner(Path(self._info_path))

    def _write_owner_info(self) -> None:
        info = {
            "pid": os.getpid(),
            "process_name": " ".join(sys.argv[:3])[:50] or f"python:{os.getpid()}",
            "started": datetime.now().isoformat(),
            "port": self._port,
        }
        tmp_path = f"{self._info_path}.tmp.{os.getpid()}"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(info, f, indent=2)
        os.replace(tmp_path, self._info_path)

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Could not acquire lock for {self._port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def _is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except OSError as e:
        # EPERM means it exists but belongs to someone else.
        return e.errno == errno.EPERM


def _read_owner(info_file: Path) -> Optional[PortOwner]:
    try:
        info = json.loads(info_file.read_text(encoding="utf-8"))
        return PortOwner(
            pid=int(info["pid"]),
            process_name=info["process_name"],
            started=datetime.fromisoformat(info["started"]),
            port=info["port"],
            lock_file=str(info_file)[: -len(".info")],
        )
    except FileNotFoundError:
        return None
    except (ValueError, KeyError, OSError) as e:
        logger.debug("Unreadable lock info %s: %s", info_file, e)
        return None


def list_all_locks(lock_dir: Optional[str] = None) -> List[PortOwner]:
    """List all currently held port locks whose owner is still alive."""
    directory = Path(lock_dir or get_lock_dir())
    if not directory.exists():
        return []
    locks = []
    for info_file in sorted(directory.glob("*.lock.info")):
        owner = _read_owner(info_file)
        if owner and _is_process_alive(owner.pid):
            locks.append(owner)
    return locks
