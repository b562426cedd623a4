"""Tests for toolbelt/device_registry.py: identification, resets, hot-plug."""

from __future__ import annotations

import json
import threading

import pytest

from conftest import fail, ok, timeout_error
from toolbelt.device_registry import (
    DeviceRegistry,
    IdentifiedDevice,
    IdentifyMethod,
    ResetMethod,
)
from toolbelt.errors import ErrorKind, ProcessSpawnError
from toolbelt.interfaces import DevicePort
from toolbelt.mocks import MockSerialPort

UNO = DevicePort("/dev/ttyACM0", manufacturer="Arduino (www.arduino.cc)", vid="2341", pid="0043")
LEONARDO = DevicePort("/dev/ttyACM0", manufacturer="Arduino LLC", vid="2341", pid="0036")


@pytest.fixture
def registry(runner, config, clock):
    return DeviceRegistry(runner, config, serial_factory=MockSerialPort, clock=clock)


def board_list_json(address, fqbn, name):
    return json.dumps({"detected_ports": [
        {"port": {"address": address, "protocol": "serial"},
         "matching_boards": [{"name": name, "fqbn": fqbn}]},
    ]})


class FailingControlLines(MockSerialPort):
    def __init__(self):
        super().__init__()
        self.set_fail_control_lines(True)


class BootloaderOnTouch(MockSerialPort):
    """Re-enumerates as a bootloader port once a 1200 bps session closes."""

    def close(self):
        if self.is_open() and self.baud == 1200:
            MockSerialPort.available_ports = [
                DevicePort("/dev/ttyACM1", vid="2341", pid="8036", description="Leonardo bootloader"),
            ]
        super().close()


class TestListPorts:
    def test_reflects_current_enumeration(self, registry):
        assert registry.list_ports() == []
        MockSerialPort.available_ports = [UNO]
        assert [p.device for p in registry.list_ports()] == ["/dev/ttyACM0"]
        assert registry.find_port("/dev/ttyACM0") == UNO
        assert registry.find_port("/dev/ttyUSB9") is None


class TestIdentify:
    def test_vid_pid(self, registry):
        MockSerialPort.available_ports = [UNO]
        ident = registry.identify("/dev/ttyACM0")
        assert ident.fqbn == "arduino:avr:uno"
        assert ident.board == "Arduino Uno"
        assert ident.confidence == 0.9
        assert ident.method is IdentifyMethod.VID_PID

    def test_manufacturer_fallback(self, registry):
        MockSerialPort.available_ports = [
            DevicePort("/dev/ttyACM0", manufacturer="Arduino SA", vid="2341", pid="ffff"),
        ]
        ident = registry.identify("/dev/ttyACM0")
        assert ident.method is IdentifyMethod.MANUFACTURER
        assert ident.confidence == 0.7

    def test_vid_pid_beats_manufacturer_on_same_port(self, registry):
        MockSerialPort.available_ports = [UNO]
        ident = registry.identify("/dev/ttyACM0")
        assert ident.confidence >= 0.7
        assert ident.method is IdentifyMethod.VID_PID

    def test_build_tool_identification(self, registry, runner):
        MockSerialPort.available_ports = [DevicePort("/dev/ttyUSB0", vid="1a86", pid="7523")]
        runner.on("board", "list", reply=ok(board_list_json("/dev/ttyUSB0", "arduino:avr:nano", "Arduino Nano")))
        ident = registry.identify("/dev/ttyUSB0")
        assert ident.method is IdentifyMethod.PROBE
        assert ident.confidence == 0.8
        assert ident.fqbn == "arduino:avr:nano"

    def test_cli_identification_tolerates_missing_tool(self, registry, runner):
        MockSerialPort.available_ports = [DevicePort("/dev/ttyUSB0")]
        runner.on("board", "list", reply=ProcessSpawnError("arduino-cli", "not found"))
        assert registry.identify("/dev/ttyUSB0") is None

    def test_bootloader_check_extension_point(self, registry, runner):
        MockSerialPort.available_ports = [DevicePort("/dev/ttyUSB0")]
        runner.on("board", "list", reply=fail())
        seen = []

        def broken(port):
            raise RuntimeError("probe blew up")

        def probe(port):
            seen.append(port.device)
            return IdentifiedDevice(port.device, "arduino:avr:pro", "Pro Mini", 0.5, IdentifyMethod.BOOTLOADER)

        registry.add_bootloader_probe(broken)
        registry.add_bootloader_probe(probe)
        ident = registry.identify("/dev/ttyUSB0")
        assert ident.method is IdentifyMethod.BOOTLOADER
        assert seen == ["/dev/ttyUSB0"]

    def test_unknown_port(self, registry):
        assert registry.identify("/dev/nothing") is None


class TestReset:
    def test_dtr_rts_sequence(self, registry, clock):
        MockSerialPort.available_ports = [UNO]
        result = registry.reset("/dev/ttyACM0", "dtr_rts")
        assert result.success is True
        assert result.method is ResetMethod.DTR_RTS
        port = MockSerialPort.instances[-1]
        assert port.line_history == [("dtr", False), ("rts", False), ("dtr", True), ("rts", True)]
        assert port.close_count == 1
        assert MockSerialPort.opened == [("/dev/ttyACM0", 9600)]
        assert clock.sleep_calls == [0.1]

    def test_open_failure(self, registry):
        MockSerialPort.fail_ports = {"/dev/ttyACM0"}
        result = registry.reset("/dev/ttyACM0", "dtr_rts")
        assert result.success is False
        assert "Failed to open port" in result.message

    def test_touch_1200_closes_even_without_device_response(self, registry, clock):
        result = registry.reset("/dev/ttyACM0", "1200bps")
        assert result.success is True
        assert MockSerialPort.opened == [("/dev/ttyACM0", 1200)]
        assert MockSerialPort.instances[-1].close_count == 1
        assert MockSerialPort.instances[-1].is_open() is False
        assert clock.sleep_calls == [0.1]

    def test_auto_falls_back_to_touch(self, runner, config, clock):
        registry = DeviceRegistry(runner, config, serial_factory=FailingControlLines, clock=clock)
        result = registry.reset("/dev/ttyACM0", "auto")
        assert result.success is True
        assert result.method is ResetMethod.TOUCH_1200
        assert [baud for _, baud in MockSerialPort.opened] == [9600, 1200]

    def test_auto_prefers_dtr(self, registry):
        assert registry.reset("/dev/ttyACM0").method is ResetMethod.DTR_RTS

    def test_unsupported_method(self, registry):
        result = registry.reset("/dev/ttyACM0", "magic")
        assert result.success is False
        assert result.method is ResetMethod.MANUAL


class TestBootloaderMode:
    def test_native_usb_finds_new_port(self, runner, config, clock):
        MockSerialPort.available_ports = [LEONARDO]
        registry = DeviceRegistry(runner, config, serial_factory=BootloaderOnTouch, clock=clock)
        result = registry.bootloader_mode("/dev/ttyACM0", "arduino:avr:leonardo")
        assert result.success is True
        assert result.port == "/dev/ttyACM1"
        assert result.method is ResetMethod.TOUCH_1200

    def test_native_usb_times_out(self, registry, clock):
        MockSerialPort.available_ports = [LEONARDO]
        result = registry.bootloader_mode("/dev/ttyACM0", "atmega32u4", timeout_s=2.0)
        assert result.success is False
        assert clock.monotonic() >= 2.0

    def test_auto_identifies_first(self, runner, config, clock):
        MockSerialPort.available_ports = [LEONARDO]
        registry = DeviceRegistry(runner, config, serial_factory=BootloaderOnTouch, clock=clock)
        assert registry.bootloader_mode("/dev/ttyACM0").port == "/dev/ttyACM1"

    def test_esp_with_esptool(self, registry, runner):
        result = registry.bootloader_mode("/dev/ttyUSB0", "esp32")
        assert result.success is True
        assert runner.calls[-1][:3] == ["esptool.py", "--port", "/dev/ttyUSB0"]
        assert runner.calls[-1][-1] == "flash_id"

    def test_esp_without_esptool_needs_a_human(self, registry, runner):
        runner.on("--port", reply=ProcessSpawnError("esptool.py", "not found"))
        result = registry.bootloader_mode("/dev/ttyUSB0", "esp32:esp32:esp32")
        assert result.success is False
        assert result.requires_manual_intervention is True
        assert "Hold BOOT button" in result.message

    def test_classic_uses_dtr(self, registry):
        assert registry.bootloader_mode("/dev/ttyACM0", "arduino:avr:uno").method is ResetMethod.DTR_RTS


class TestWaitForPort:
    def test_present(self, registry):
        MockSerialPort.available_ports = [UNO]
        assert registry.wait_for_port("/dev/ttyACM0", 1.0) is True

    def test_absent_times_out(self, registry, clock):
        assert registry.wait_for_port("/dev/ttyACM0", 1.0) is False
        assert clock.monotonic() >= 1.0


class TestSafeGuard:
    def test_ok_with_advisory(self, registry):
        MockSerialPort.available_ports = [UNO]
        report = registry.safe_guard("/dev/ttyACM0", "arduino:avr:uno")
        assert report.safe is True
        assert report.errors == []
        assert report.warnings == ["Arduino boards: Can use 3.3V or 5V"]

    def test_missing_port_and_bad_fqbn(self, registry):
        report = registry.safe_guard("/dev/ttyACM0", "uno")
        assert report.safe is False
        assert "Port /dev/ttyACM0 not found" in report.errors
        assert "Invalid FQBN format" in report.errors

    def test_fqbn_with_options(self, registry):
        MockSerialPort.available_ports = [UNO]
        assert registry.safe_guard("/dev/ttyACM0", "esp32:esp32:esp32:PSRAM=enabled").safe is True

    def test_bridge_advisory_for_unexpected_board(self, registry):
        MockSerialPort.available_ports = [DevicePort("/dev/ttyUSB0", vid="1a86", pid="7523")]
        report = registry.safe_guard("/dev/ttyUSB0", "arduino:avr:uno")
        assert report.safe is True
        assert report.warnings == [
            "Arduino boards: Can use 3.3V or 5V",
            "/dev/ttyUSB0 is a CH340 USB-serial bridge, usually found on arduino:avr:nano, "
            "esp8266:esp8266:nodemcuv2; confirm the board behind it is arduino:avr:uno",
        ]

    def test_no_bridge_advisory_for_a_usual_board(self, registry):
        MockSerialPort.available_ports = [DevicePort("/dev/ttyUSB0", vid="10c4", pid="ea60")]
        report = registry.safe_guard("/dev/ttyUSB0", "esp32:esp32:esp32:PSRAM=enabled")
        assert report.warnings == ["ESP boards: Ensure 3.3V power supply"]

    def test_bridge_lookup(self, registry):
        MockSerialPort.available_ports = [UNO, DevicePort("/dev/ttyUSB0", vid="10c4", pid="ea60")]
        assert registry.bridge("/dev/ttyUSB0").chip == "CP2102"
        assert registry.bridge("/dev/ttyACM0") is None
        assert registry.bridge("/dev/ttyUSB9") is None


class TestOtaUpload:
    def test_command_line(self, registry, runner):
        result = registry.ota_upload("192.168.1.40", "/b/app.ino.bin", password="s3cret", ota_port=8266)
        assert result.success is True
        assert runner.calls == [[
            "espota.py", "--ip", "192.168.1.40", "--file", "/b/app.ino.bin",
            "--port", "8266", "--auth", "s3cret",
        ]]

    def test_defaults(self, registry, runner):
        registry.ota_upload("10.0.0.2", "/b/app.ino.bin")
        assert runner.calls[-1] == ["espota.py", "--ip", "10.0.0.2", "--file", "/b/app.ino.bin"]

    def test_rejected_push(self, registry, runner):
        runner.on("--ip", reply=fail(stderr="Authentication Failed"))
        result = registry.ota_upload("10.0.0.2", "/b/app.ino.bin", password="wrong")
        assert result.success is False
        assert result.error_kind is ErrorKind.UPLOAD
        assert result.error == "OTA upload failed"
        assert "Authentication Failed" in result.stderr

    def test_missing_espota(self, registry, runner):
        runner.on("--ip", reply=ProcessSpawnError("espota.py", "No such file or directory"))
        result = registry.ota_upload("10.0.0.2", "/b/app.ino.bin")
        assert result.success is False
        assert result.error_kind is ErrorKind.SPAWN

    def test_timeout(self, registry, runner):
        runner.on("--ip", reply=timeout_error("espota.py"))
        result = registry.ota_upload("10.0.0.2", "/b/app.ino.bin")
        assert result.success is False
        assert result.error_kind is ErrorKind.TIMEOUT
        assert result.timed_out is True


class TestHotplug:
    def test_poll_once_added_identified_removed(self, registry):
        monitor = registry.monitor()
        events = []
        monitor.events.subscribe(events.append)

        MockSerialPort.available_ports = [UNO]
        monitor.poll_once()
        assert [e.kind for e in events] == ["port:added", "device:identified"]
        assert events[1].identified.fqbn == "arduino:avr:uno"
        assert monitor.known_ports == ["/dev/ttyACM0"]

        assert monitor.poll_once() == []

        MockSerialPort.available_ports = []
        (removed,) = monitor.poll_once()
        assert removed.kind == "port:removed"
        assert monitor.known_ports == []

    def test_without_identification(self, registry):
        monitor = registry.monitor(auto_identify=False)
        MockSerialPort.available_ports = [UNO]
        assert [e.kind for e in monitor.poll_once()] == ["port:added"]

    def test_background_thread(self, registry):
        MockSerialPort.available_ports = [UNO]
        monitor = registry.monitor(interval_s=0.01)
        seen = threading.Event()
        monitor.events.subscribe(lambda e: seen.set())
        monitor.start()
        try:
            assert seen.wait(5)
        finally:
            monitor.stop()
