"""
Device and port management.

Enumerates serial ports, identifies the board behind a port through an
ordered heuristic chain, runs the hardware reset / bootloader-entry
protocols, performs pre-flight checks, pushes network (OTA) uploads to ESP
boards and watches for hot-plug events.

Identification chain (first stage that yields a result wins):

    1. vid:pid signature lookup       confidence 0.9  method "vid_pid"
    2. manufacturer substring match   confidence 0.7  method "manufacturer"
    3. build tool ``board list``      confidence 0.8  method "probe"
    4. bootloader probes (pluggable)  confidence 0.5  method "bootloader"
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Type

from .board_signatures import BoardFamily, BoardSignatureTable, UsbBridge, load_signature_table
from .channel import Channel
from .cli_json import parse_board_list
from .config import ToolbeltConfig
from .errors import CommandTimeoutError, ErrorKind, ProcessSpawnError, ToolbeltError
from .implementations import RealClock, RealSerialPort
from .interfaces import ClockInterface, DevicePort, SerialPortInterface
from .process_runner import CommandResult, ProcessRunner, failed_result

logger = logging.getLogger(__name__)

FQBN_RE = re.compile(r"^[A-Za-z0-9_.\-]+:[A-Za-z0-9_.\-]+:[A-Za-z0-9_.\-]+(:[^\s]+)?$")

ESP_MANUAL_STEPS = (
    "ESP32 bootloader mode: Hold BOOT button, press EN button, then release BOOT"
)


class IdentifyMethod(str, Enum):
    VID_PID = "vid_pid"
    MANUFACTURER = "manufacturer"
    PROBE = "probe"
    BOOTLOADER = "bootloader"


CONFIDENCE = {
    IdentifyMethod.VID_PID: 0.9,
    IdentifyMethod.MANUFACTURER: 0.7,
    IdentifyMethod.PROBE: 0.8,
    IdentifyMethod.BOOTLOADER: 0.5,
}


class ResetMethod(str, Enum):
    DTR_RTS = "dtr_rts"
    TOUCH_1200 = "1200bps"
    AUTO = "auto"
    MANUAL = "manual"


@dataclass(frozen=True)
class IdentifiedDevice:
    port: str
    fqbn: str
    board: str
    confidence: float
    method: IdentifyMethod

    def to_dict(self) -> dict:
        d = asdict(self)
        d["method"] = self.method.value
        return d


@dataclass
class ResetResult:
    success: bool
    method: ResetMethod
    message: str
    port: Optional[str] = None
    requires_manual_intervention: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["method"] = self.method.value
        return d


@dataclass
class SafeGuardReport:
    safe: bool
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ResetSequence:
    """A control-line step."""
    dtr: Optional[bool]
    rts: Optional[bool]
    delay: float = 0.0


RESET_SEQUENCES = {
    # Auto-reset circuit: pulse both lines low, settle, release.
    "dtr_rts": [
        ResetSequence(dtr=False, rts=False, delay=0.1),
        ResetSequence(dtr=True, rts=True, delay=0.0),
    ],
}

TOUCH_BAUD = 1200
TOUCH_HOLD_S = 0.1
BOOTLOADER_POLL_S = 0.5

BootloaderProbe = Callable[[DevicePort], Optional[IdentifiedDevice]]


class DeviceRegistry:
    """
    Port enumeration, identification and reset protocols.

    Args:
        runner: Process runner used for build-tool and esptool probes.
        config: Toolbelt configuration (cli path, timeouts, table override).
        serial_factory: SerialPortInterface implementation; its static
            ``list_ports`` is the enumeration source.
        clock: Clock used for settle delays and polling.
        signatures: Pre-loaded signature table (defaults to the packaged one).
        bootloader_probes: Extra identification stage, tried last.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        config: Optional[ToolbeltConfig] = None,
        serial_factory: Type[SerialPortInterface] = RealSerialPort,
        clock: Optional[ClockInterface] = None,
        signatures: Optional[BoardSignatureTable] = None,
        bootloader_probes: Sequence[BootloaderProbe] = (),
        esptool_path: str = "esptool.py",
        espota_path: str = "espota.py",
    ):
        self._runner = runner
        self._config = config or ToolbeltConfig()
        self._serial_factory = serial_factory
        self._clock = clock or RealClock()
        self._signatures = signatures or load_signature_table(self._config.signatures_path)
        self._bootloader_probes = list(bootloader_probes)
        self._esptool = esptool_path
        self._espota = espota_path

    @property
    def signatures(self) -> BoardSignatureTable:
        return self._signatures

    def add_bootloader_probe(self, probe: BootloaderProbe) -> None:
        self._bootloader_probes.append(probe)

    # Enumeration

    def list_ports(self) -> List[DevicePort]:
        """Currently enumerated serial ports. Never cached."""
        try:
            return self._serial_factory.list_ports()
        except OSError as e:
            logger.warning("Port enumeration failed: %s", e)
            return []

    def find_port(self, port: str) -> Optional[DevicePort]:
        for p in self.list_ports():
            if p.device == port:
                return p
        return None

    def family(self, fqbn_or_type: Optional[str]) -> BoardFamily:
        return self._signatures.family(fqbn_or_type)

    # Identification

    def identify(self, port: str) -> Optional[IdentifiedDevice]:
        """Identify the board behind ``port``, or None if nothing matched."""
        target = self.find_port(port)
        if target is None:
            logger.debug("identify: %s not enumerated", port)
            return None

        sig = self._signatures.lookup(target.vid, target.pid)
        if sig:
            return self._identified(port, sig.fqbn, sig.board, IdentifyMethod.VID_PID)

        sig = self._signatures.match_manufacturer(target.manufacturer)
        if sig:
            return self._identified(port, sig.fqbn, sig.board, IdentifyMethod.MANUFACTURER)

        probed = self.probe_with_cli(port)
        if probed:
            return probed

        for probe in self._bootloader_probes:
            try:
                found = probe(target)
            except Exception:
                logger.exception("Bootloader probe %r failed on %s", probe, port)
                continue
            if found:
                return found
        return None

    def probe_with_cli(self, port: str) -> Optional[IdentifiedDevice]:
        """Ask the build tool which board it sees on ``port``."""
        try:
            result = self._runner.run(
                [self._config.cli_path, "board", "list", "--format", "json"],
                timeout_s=self._config.tool_timeout_s,
            )
        except ToolbeltError as e:
            logger.debug("board list probe failed: %s", e)
            return None
        if not result.success:
            return None
        for detected in parse_board_list(result.stdout):
            if detected.address == port and detected.boards:
                board = detected.boards[0]
                return self._identified(port, board.fqbn, board.name, IdentifyMethod.PROBE)
        return None

    @staticmethod
    def _identified(port: str, fqbn: str, board: str, method: IdentifyMethod) -> IdentifiedDevice:
        return IdentifiedDevice(port=port, fqbn=fqbn, board=board,
                                confidence=CONFIDENCE[method], method=method)

    # Reset protocols

    def reset(self, port: str, method: str = "auto") -> ResetResult:
        """Reset the board on ``port``.

        ``auto`` tries the DTR/RTS toggle first and falls back to the 1200
        bps touch when the control lines cannot be driven.
        """
        try:
            chosen = ResetMethod(method)
        except ValueError:
            return ResetResult(False, ResetMethod.MANUAL, f"Unsupported reset method: {method}")

        if chosen is ResetMethod.DTR_RTS:
            return self._reset_dtr_rts(port)
        if chosen is ResetMethod.TOUCH_1200:
            return self._touch_1200(port)
        if chosen is ResetMethod.AUTO:
            result = self._reset_dtr_rts(port)
            if result.success:
                return result
            logger.info("DTR/RTS reset failed on %s (%s), trying 1200 bps touch", port, result.message)
            return self._touch_1200(port)
        return ResetResult(False, ResetMethod.MANUAL, "Unsupported reset method")

    def _reset_dtr_rts(self, port: str) -> ResetResult:
        ser = self._serial_factory()
        if not ser.open(port, 9600):
            return ResetResult(False, ResetMethod.DTR_RTS, f"Failed to open port: {port}", port=port)
        ok = True
        try:
            for step in RESET_SEQUENCES["dtr_rts"]:
                if step.dtr is not None:
                    ok = ser.set_dtr(step.dtr) and ok
                if step.rts is not None:
                    ok = ser.set_rts(step.rts) and ok
                if step.delay > 0:
                    self._clock.sleep(step.delay)
        finally:
            ser.close()
        if not ok:
            return ResetResult(False, ResetMethod.DTR_RTS, "Failed to toggle DTR/RTS", port=port)
        logger.info("Reset %s via DTR/RTS", port)
        return ResetResult(True, ResetMethod.DTR_RTS, "Board reset via DTR/RTS", port=port)

    def _touch_1200(self, port: str) -> ResetResult:
        ser = self._serial_factory()
        if not ser.open(port, TOUCH_BAUD):
            return ResetResult(False, ResetMethod.TOUCH_1200, f"Failed to open port: {port}", port=port)
        try:
            self._clock.sleep(TOUCH_HOLD_S)
        finally:
            ser.close()
        logger.info("Reset %s via 1200 bps touch", port)
        return ResetResult(True, ResetMethod.TOUCH_1200, "Board reset via 1200 bps touch", port=port)

    # Bootloader entry

    def bootloader_mode(self, port: str, board_type: str = "auto", timeout_s: float = 5.0) -> ResetResult:
        """Put the board on ``port`` into its bootloader.

        ``board_type`` is an FQBN, a family alias (``esp32``, ``atmega32u4``)
        or ``auto`` to identify the port first. On success for native-USB
        boards ``result.port`` names the (possibly new) bootloader port.
        """
        if board_type == "auto":
            ident = self.identify(port)
            board_type = ident.fqbn if ident else ""
        family = self.family(board_type)

        if family is BoardFamily.NATIVE_USB:
            before = {p.device for p in self.list_ports()}
            touched = self._touch_1200(port)
            if not touched.success:
                return touched
            found = self.wait_for_bootloader_port(before, port, timeout_s)
            if found:
                return ResetResult(True, ResetMethod.TOUCH_1200, f"Bootloader port {found}", port=found)
            return ResetResult(
                False, ResetMethod.TOUCH_1200,
                f"No bootloader port appeared within {timeout_s:g}s", port=port,
            )

        if family is BoardFamily.ESP:
            if self.esp_flash_id(port):
                return ResetResult(True, ResetMethod.MANUAL, "ESP bootloader responding", port=port)
            return ResetResult(
                False, ResetMethod.MANUAL, self.manual_steps(family),
                port=port, requires_manual_intervention=True,
            )

        # Classic boards: the auto-reset pulse opens the bootloader window.
        return self._reset_dtr_rts(port)

    def esp_flash_id(self, port: str) -> bool:
        """Ask esptool to read the flash id; True if the chip answered."""
        try:
            result = self._runner.run(
                [self._esptool, "--port", port, "--baud", "115200", "flash_id"], timeout_s=5.0,
            )
        except ToolbeltError as e:
            logger.info("esptool probe on %s failed: %s", port, e)
            return False
        return result.success

    def ota_upload(self, ip: str, firmware: str, password: Optional[str] = None,
                   ota_port: Optional[int] = None) -> CommandResult:
        """Push ``firmware`` to an ESP32/ESP8266 over the network with espota.

        Never raises; a missing espota is reported as a SPAWN failure and a
        rejected push as an UPLOAD failure.
        """
        argv = [self._espota, "--ip", ip, "--file", firmware]
        if ota_port:
            argv += ["--port", str(ota_port)]
        if password:
            argv += ["--auth", password]
        try:
            result = self._runner.run(argv, timeout_s=self._config.upload_timeout_s)
        except ProcessSpawnError as e:
            logger.error("%s", e)
            return failed_result(str(e), ErrorKind.SPAWN)
        except CommandTimeoutError as e:
            return replace(e.partial, success=False, error=str(e), error_kind=ErrorKind.TIMEOUT)
        if not result.success:
            logger.warning("OTA upload to %s failed: %s", ip, result.error)
            return replace(result, error_kind=ErrorKind.UPLOAD, error=result.error or "OTA upload failed")
        logger.info("OTA upload of %s to %s done", firmware, ip)
        return result

    @staticmethod
    def manual_steps(family: BoardFamily) -> str:
        if family is BoardFamily.ESP:
            return ESP_MANUAL_STEPS
        if family is BoardFamily.NATIVE_USB:
            return "Double-tap the reset button to enter the bootloader"
        return "Press the reset button just before the upload starts"

    def wait_for_bootloader_port(self, before: Set[str], original: str, timeout_s: float) -> Optional[str]:
        """Poll for a bootloader port after a touch.

        A port counts when it is new relative to ``before``, reports
        "bootloader" in its name, or is ``original`` coming back after it
        dropped off the bus.
        """
        deadline = self._clock.monotonic() + timeout_s
        seen_gone = False
        while self._clock.monotonic() < deadline:
            ports = self.list_ports()
            devices = {p.device for p in ports}
            for p in ports:
                if "bootloader" in (p.friendly_name or p.description).lower():
                    return p.device
            new = sorted(devices - before)
            if new:
                return new[0]
            if original not in devices:
                seen_gone = True
            elif seen_gone:
                return original
            self._clock.sleep(BOOTLOADER_POLL_S)
        return None

    def wait_for_port(self, port: str, timeout_s: float) -> bool:
        deadline = self._clock.monotonic() + timeout_s
        while True:
            if self.find_port(port):
                return True
            if self._clock.monotonic() >= deadline:
                return False
            self._clock.sleep(BOOTLOADER_POLL_S)

    # Pre-flight

    def bridge(self, port: str) -> Optional[UsbBridge]:
        """The generic USB-serial bridge chip behind ``port``, if it is one."""
        target = self.find_port(port)
        return self._signatures.bridge(target.vid, target.pid) if target else None

    def safe_guard(self, port: str, fqbn: str) -> SafeGuardReport:
        errors: List[str] = []
        target = self.find_port(port)
        if target is None:
            errors.append(f"Port {port} not found")
        if not fqbn or not FQBN_RE.match(fqbn):
            errors.append("Invalid FQBN format")
        warnings = self._signatures.advisories_for(fqbn or "")
        bridge = self._signatures.bridge(target.vid, target.pid) if target else None
        if bridge and ":".join((fqbn or "").split(":")[:3]) not in bridge.candidates:
            boards = ", ".join(bridge.candidates)
            warnings.append(
                f"{port} is a {bridge.chip} USB-serial bridge, usually found on "
                f"{boards}; confirm the board behind it is {fqbn}"
            )
        return SafeGuardReport(safe=not errors, warnings=warnings, errors=errors)

    def monitor(self, interval_s: Optional[float] = None, auto_identify: bool = True) -> "HotplugMonitor":
        return HotplugMonitor(self, interval_s or self._config.hotplug_interval_s, auto_identify)


@dataclass(frozen=True)
class HotplugEvent:
    kind: str  # "port:added", "port:removed", "device:identified"
    port: str
    device: Optional[DevicePort] = None
    identified: Optional[IdentifiedDevice] = None


class HotplugMonitor:
    """Fixed-interval diff of the port set, published on ``events``."""

    def __init__(self, registry: DeviceRegistry, interval_s: float = 2.0, auto_identify: bool = True):
        self._registry = registry
        self._interval_s = interval_s
        self._auto_identify = auto_identify
        self._known: Dict[str, DevicePort] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.events: Channel[HotplugEvent] = Channel("hotplug")

    @property
    def known_ports(self) -> List[str]:
        return sorted(self._known)

    def poll_once(self) -> List[HotplugEvent]:
        current = {p.device: p for p in self._registry.list_ports()}
        emitted: List[HotplugEvent] = []

        for device, info in current.items():
            if device in self._known:
                continue
            self._known[device] = info
            emitted.append(self._emit(HotplugEvent("port:added", device, device=info)))
            if self._auto_identify:
                ident = self._registry.identify(device)
                if ident:
                    emitted.append(self._emit(HotplugEvent("device:identified", device, device=info, identified=ident)))

        for device in [d for d in self._known if d not in current]:
            info = self._known.pop(device)
            emitted.append(self._emit(HotplugEvent("port:removed", device, device=info)))
        return emitted

    def _emit(self, event: HotplugEvent) -> HotplugEvent:
        logger.info("%s %s", event.kind, event.port)
        self.events.publish(event)
        return event

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="toolbelt-hotplug", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception:
                logger.exception("Hot-plug poll failed")
            if self._stop.wait(self._interval_s):
                return
