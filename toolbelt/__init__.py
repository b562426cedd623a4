"""
Arduino toolbelt.

Process, device, serial and build orchestration for Arduino-class boards,
with a bounded auto-fix and flash-recovery pipeline on top.
"""

from .interfaces import (
    ClockInterface,
    DevicePort,
    FileSystemInterface,
    SerialConfig,
    SerialPortInterface,
)
from .errors import (
    CommandTimeoutError,
    ErrorKind,
    ProcessSpawnError,
    ToolbeltError,
)
from .config import RecoveryConfig, ToolbeltConfig, load_config
from .channel import Channel, Subscription
from .process_runner import CommandResult, ProcessHandle, ProcessRunner
from .device_registry import DeviceRegistry, HotplugMonitor, IdentifiedDevice
from .serial_manager import SerialSessionManager
from .build_orchestrator import BuildOrchestrator
from .auto_fixer import AutoFixer, FixResult
from .recovery import PipelineResult, PipelineState, RecoveryEngine
from .port_lock import PortLock, list_all_locks

__version__ = "0.3.0"

__all__ = [
    "AutoFixer",
    "BuildOrchestrator",
    "Channel",
    "ClockInterface",
    "CommandResult",
    "CommandTimeoutError",
    "DevicePort",
    "DeviceRegistry",
    "ErrorKind",
    "FileSystemInterface",
    "FixResult",
    "HotplugMonitor",
    "IdentifiedDevice",
    "PipelineResult",
    "PipelineState",
    "PortLock",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpawnError",
    "RecoveryConfig",
    "RecoveryEngine",
    "SerialConfig",
    "SerialPortInterface",
    "SerialSessionManager",
    "Subscription",
    "ToolbeltConfig",
    "ToolbeltError",
    "list_all_locks",
    "load_config",
]
