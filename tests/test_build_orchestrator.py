"""Tests for toolbelt/build_orchestrator.py against a stub build tool."""

from __future__ import annotations

import json

import pytest

from conftest import fail, ok, timeout_error
from toolbelt.build_orchestrator import BuildOrchestrator, sketch_paths
from toolbelt.errors import ErrorKind, ProcessSpawnError
from toolbelt.process_runner import CommandResult

SKETCH = "/proj/Blink"
BUILD = "/proj/Blink/build"
FLASH = "Sketch uses 924 bytes (2%) of program storage space. Maximum is 32256 bytes."
SRAM = ("Global variables use 9 bytes (0%) of dynamic memory, leaving 2039 bytes "
        "for local variables. Maximum is 2048 bytes.")


@pytest.fixture
def orch(runner, config, fs, clock):
    return BuildOrchestrator(runner, config, fs, clock)


class TestSketchPaths:
    def test_directory(self):
        assert sketch_paths("/proj/Blink") == ("/proj/Blink", "Blink", BUILD)

    def test_ino_file(self):
        assert sketch_paths("/proj/Blink/Blink.ino") == ("/proj/Blink", "Blink", BUILD)


class TestCompile:
    def test_success_with_memory_and_binary(self, orch, runner, fs):
        fs.write_file(f"{BUILD}/Blink.ino.hex", ":00000001FF")
        runner.on("compile", reply=ok(stdout=f"{FLASH}\n{SRAM}\n"))
        result = orch.compile(SKETCH, "arduino:avr:uno")
        assert result.success is True
        assert result.memory.flash_bytes == 924
        assert result.memory.sram_free == 2039
        assert result.binary_path == f"{BUILD}/Blink.ino.hex"
        assert fs.file_exists(BUILD)
        (call,) = runner.calls_for("compile")
        assert call == ["arduino-cli", "compile", "--fqbn", "arduino:avr:uno",
                        "--build-path", BUILD, "--verbose", SKETCH]

    def test_binary_extension_order(self, orch, runner, fs):
        fs.write_file(f"{BUILD}/Blink.ino.uf2", "u")
        fs.write_file(f"{BUILD}/Blink.ino.bin", "b")
        assert orch.compile(SKETCH).binary_path == f"{BUILD}/Blink.ino.bin"

    def test_default_fqbn_and_extra_args(self, orch, runner):
        orch.compile(SKETCH, extra_args=["--warnings", "all"])
        call = runner.calls_for("compile")[0]
        assert call[3] == "arduino:avr:uno"
        assert call[-3:] == ["--warnings", "all", SKETCH]

    def test_diagnostics_on_failure(self, orch, runner):
        runner.on("compile", reply=fail(stderr=(
            "/proj/Blink/Blink.ino:4:3: error: 'pinMod' was not declared in this scope\n"
            "/proj/Blink/Blink.ino:9:1: warning: unused variable 'x'\n"
        )))
        result = orch.compile(SKETCH)
        assert result.success is False
        assert result.error_kind is ErrorKind.COMPILE
        assert result.error == "1 compile error(s)"
        assert [d.line for d in result.errors] == [4]
        assert [d.line for d in result.warnings] == [9]
        assert result.binary_path is None

    def test_exit_zero_with_error_lines_is_failure(self, orch, runner):
        runner.on("compile", reply=ok(stdout="a.ino:1:1: error: boom\n"))
        assert orch.compile(SKETCH).success is False

    def test_spawn_failure_is_structured(self, orch, runner):
        runner.on("compile", reply=ProcessSpawnError("arduino-cli", "No such file"))
        result = orch.compile(SKETCH)
        assert result.success is False
        assert result.error_kind is ErrorKind.SPAWN

    def test_timeout_is_structured(self, orch, runner):
        partial = CommandResult(exit_code=None, stdout="Compiling...", timed_out=True)
        runner.on("compile", reply=timeout_error(partial=partial))
        result = orch.compile(SKETCH)
        assert result.success is False
        assert result.error_kind is ErrorKind.TIMEOUT
        assert result.timed_out is True
        assert result.stdout == "Compiling..."


class TestUpload:
    def test_upload_uses_build_dir(self, orch, runner, fs):
        fs.ensure_dir(BUILD)
        result = orch.upload(SKETCH, "arduino:avr:uno", "/dev/ttyACM0")
        assert result.success is True
        (call,) = runner.calls_for("upload")
        assert call == ["arduino-cli", "upload", "--fqbn", "arduino:avr:uno", "--port", "/dev/ttyACM0",
                        "--verbose", "--input-dir", BUILD, SKETCH]

    def test_upload_failure_tagged(self, orch, runner):
        runner.on("upload", reply=fail(stderr="avrdude: stk500_recv(): programmer is not responding"))
        result = orch.upload(SKETCH, None, "/dev/ttyACM0")
        assert result.success is False
        assert result.error_kind is ErrorKind.UPLOAD
        assert result.diagnostics == ()

    def test_upload_at_baud(self, orch, runner):
        orch.upload_at_baud(SKETCH, "arduino:avr:uno", "/dev/ttyACM0", 57600)
        call = runner.calls_for("upload")[0]
        assert ["--upload-property", "upload.speed=57600"] == call[-3:-1]


class TestMonitor:
    def test_spawn_failure(self, orch, runner):
        result = orch.monitor("/dev/ttyACM0", 115200, "arduino:avr:uno")
        assert result.success is False
        assert result.error_kind is ErrorKind.SPAWN
        assert runner.calls[-1] == ["arduino-cli", "monitor", "--port", "/dev/ttyACM0",
                                    "--config", "baudrate=115200", "--fqbn", "arduino:avr:uno"]


class TestPassthroughs:
    def test_version(self, orch, runner):
        runner.on("version", reply=ok(json.dumps({"VersionString": "1.0.4"})))
        assert orch.version() == "1.0.4"

    def test_version_failure(self, orch, runner):
        runner.on("version", reply=fail())
        assert orch.version() is None

    def test_lib_install_with_version(self, orch, runner):
        assert orch.lib_install("Servo", "1.2.1").success
        assert runner.calls[-1] == ["arduino-cli", "lib", "install", "Servo@1.2.1"]

    def test_lib_failure_preserved(self, orch, runner):
        runner.on("lib", "uninstall", reply=fail(stderr="library not installed"))
        result = orch.lib_uninstall("Nope")
        assert result.success is False
        assert result.exit_code == 1

    def test_lib_upgrade_all(self, orch, runner):
        orch.lib_upgrade()
        assert runner.calls[-1] == ["arduino-cli", "lib", "upgrade"]

    def test_listings(self, orch, runner):
        runner.on("lib", "list", reply=ok(json.dumps({"installed_libraries": [
            {"library": {"name": "Servo", "version": "1.2.1"}}]})))
        runner.on("lib", "search", reply=ok(json.dumps({"libraries": [{"name": "Servo", "latest": {"version": "1.2.2"}}]})))
        runner.on("board", "listall", reply=ok(json.dumps({"boards": [{"name": "Uno", "fqbn": "arduino:avr:uno"}]})))
        runner.on("board", "search", reply=ok(json.dumps({"boards": [{"name": "Nano", "fqbn": "arduino:avr:nano"}]})))
        assert orch.lib_list().items[0].version == "1.2.1"
        assert orch.lib_search("servo").items[0].version == "1.2.2"
        assert orch.board_listall().items[0].fqbn == "arduino:avr:uno"
        assert orch.board_search("nano").items[0].fqbn == "arduino:avr:nano"
        assert runner.calls_for("board", "search")[0][-3:] == ["nano", "--format", "json"]

    def test_listing_failure_is_kept(self, orch, runner):
        runner.on("lib", "list", reply=fail(stderr="Error: index corrupted"))
        listing = orch.lib_list()
        assert listing.success is False
        assert listing.items == []
        assert listing.error == "Error: index corrupted"
        assert listing.result.exit_code == 1

    def test_empty_listing_succeeds(self, orch, runner):
        runner.on("core", "list", reply=ok(json.dumps({"platforms": []})))
        listing = orch.core_list()
        assert listing.success is True
        assert listing.items == []

    def test_listing_spawn_failure_tagged(self, orch, runner):
        runner.on("board", "list", reply=ProcessSpawnError("arduino-cli", "No such file or directory"))
        listing = orch.board_list()
        assert listing.success is False
        assert listing.error_kind is ErrorKind.SPAWN

    def test_initialize_installs_missing_core(self, orch, runner):
        runner.on("core", "list", reply=ok(json.dumps({"platforms": []})))
        assert orch.initialize().success
        assert runner.calls_for("core", "install") == [["arduino-cli", "core", "install", "arduino:avr"]]
        assert runner.calls_for("config", "init")

    def test_initialize_skips_installed_core(self, orch, runner):
        runner.on("core", "list", reply=ok(json.dumps({"platforms": [{"id": "arduino:avr", "installed_version": "1.8.6"}]})))
        orch.initialize()
        assert runner.calls_for("core", "install") == []

    def test_sketch_new_and_core_maintenance(self, orch, runner):
        orch.sketch_new("/proj/New")
        orch.core_install("esp32:esp32")
        orch.core_uninstall("esp32:esp32")
        assert [c[1:3] for c in runner.calls] == [["sketch", "new"], ["core", "install"], ["core", "uninstall"]]


class TestLockfile:
    def test_cache_lockfile(self, orch, runner, fs):
        runner.on("version", reply=ok("arduino-cli  Version: 0.35.3 Commit: 95cfd65b"))
        runner.on("core", "list", reply=ok(json.dumps({"platforms": [{"id": "arduino:avr", "installed_version": "1.8.6"}]})))
        runner.on("lib", "list", reply=ok(json.dumps({"installed_libraries": [
            {"library": {"name": "Servo", "version": "1.2.1"}}]})))
        path = orch.cache_lockfile("/proj/Blink")
        assert path == "/proj/Blink/arduino.lock.json"
        data = json.loads(fs.read_file(path))
        assert data["cli_version"] == "0.35.3"
        assert data["boards"][0]["id"] == "arduino:avr"
        assert data["libraries"][0]["name"] == "Servo"
        assert data["generated"] == "2025-01-01T00:00:00"

    def test_no_lockfile_when_listing_fails(self, orch, runner, fs):
        runner.on("lib", "list", reply=fail(stderr="Error: index corrupted"))
        assert orch.cache_lockfile("/proj/Blink") is None
        assert not fs.file_exists("/proj/Blink/arduino.lock.json")
