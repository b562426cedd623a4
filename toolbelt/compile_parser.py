"""
Pure parsers for build tool output.

Maps raw compiler text to structured diagnostics and memory reports. Nothing
in here spawns processes or touches the filesystem, so every function can be
tested from captured log text alone.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

DIAGNOSTIC_RE = re.compile(r"^(.+?):(\d+):(\d+):\s*(fatal error|error|warning|note|info):\s*(.+)$")

FLASH_RE = re.compile(
    r"Sketch uses (\d+) bytes \((\d+)%\) of program storage space\. Maximum is (\d+) bytes\."
)
SRAM_RE = re.compile(
    r"Global variables use (\d+) bytes \((\d+)%\) of dynamic memory, "
    r"leaving (\d+) bytes for local variables\. Maximum is (\d+) bytes\."
)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ErrorCode(str, Enum):
    UNDECLARED = "E_UNDECLARED"
    UNDEFINED_REF = "E_UNDEFINED_REF"
    SYNTAX = "E_SYNTAX"
    UNKNOWN_TYPE = "E_UNKNOWN_TYPE"
    GENERIC = "E_GENERIC"


@dataclass(frozen=True)
class Diagnostic:
    file: str
    line: int
    column: int
    code: ErrorCode
    message: str
    severity: Severity
    hints: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "code": self.code.value,
            "message": self.message,
            "severity": self.severity.value,
            "hints": list(self.hints),
        }


@dataclass(frozen=True)
class MemoryReport:
    """Flash and SRAM usage. Fields stay None when their sentence is absent."""
    flash_bytes: Optional[int] = None
    flash_pct: Optional[int] = None
    flash_max: Optional[int] = None
    sram_bytes: Optional[int] = None
    sram_pct: Optional[int] = None
    sram_free: Optional[int] = None
    sram_max: Optional[int] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class CompileReport:
    success: bool
    diagnostics: Tuple[Diagnostic, ...] = ()
    memory: Optional[MemoryReport] = None

    @property
    def errors(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.severity is Severity.ERROR)

    @property
    def warnings(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.severity is Severity.WARNING)


def classify_message(message: str) -> ErrorCode:
    if "was not declared in this scope" in message:
        return ErrorCode.UNDECLARED
    if "undefined reference" in message:
        return ErrorCode.UNDEFINED_REF
    if "expected" in message:
        return ErrorCode.SYNTAX
    if "does not name a type" in message:
        return ErrorCode.UNKNOWN_TYPE
    return ErrorCode.GENERIC


def hints_for(message: str) -> Tuple[str, ...]:
    """Static hint text for well-known missing-library messages."""
    hints: List[str] = []
    if "WiFi" in message:
        hints.append("Missing include? Try: #include <WiFi.h> (ESP) or <WiFi101.h> (SAMD)")
        hints.append("Install proper library and select correct FQBN")
    if "Serial" in message:
        hints.append("For most Arduino boards, Serial is available by default")
        hints.append("Check if you're using the correct Serial instance (Serial1, Serial2, etc.)")
    if "was not declared" in message:
        hints.append("Check if the identifier is spelled correctly")
        hints.append("Ensure required libraries are included")
        hints.append("Verify the identifier is in scope")
    return tuple(hints)


def parse_diagnostic_line(line: str) -> Optional[Diagnostic]:
    """Parse one ``file:line:col: severity: message`` line, or return None."""
    m = DIAGNOSTIC_RE.match(line.strip())
    if not m:
        return None
    path, line_no, col, severity, message = m.groups()
    message = message.strip()
    if severity == "note":
        severity = "info"
    elif severity == "fatal error":
        severity = "error"
    return Diagnostic(
        file=path,
        line=int(line_no),
        column=int(col),
        code=classify_message(message),
        message=message,
        severity=Severity(severity),
        hints=hints_for(message),
    )


def parse_errors(output: str) -> List[Diagnostic]:
    """Every diagnostic line in ``output``, all severities, in order."""
    result = []
    for line in output.splitlines():
        diag = parse_diagnostic_line(line)
        if diag is not None:
            result.append(diag)
    return result


def parse_memory_map(output: str) -> Optional[MemoryReport]:
    """Memory summary, or None when neither summary sentence is present."""
    flash = FLASH_RE.search(output)
    sram = SRAM_RE.search(output)
    if not flash and not sram:
        return None
    values: dict = {}
    if flash:
        values.update(
            flash_bytes=int(flash.group(1)),
            flash_pct=int(flash.group(2)),
            flash_max=int(flash.group(3)),
        )
    if sram:
        values.update(
            sram_bytes=int(sram.group(1)),
            sram_pct=int(sram.group(2)),
            sram_free=int(sram.group(3)),
            sram_max=int(sram.group(4)),
        )
    return MemoryReport(**values)


def parse_compile(output: str) -> CompileReport:
    """Split diagnostics by severity and pick up the memory summary.

    ``success`` is True iff no error-severity diagnostic was found.
    """
    diags = tuple(parse_errors(output))
    return CompileReport(
        success=not any(d.severity is Severity.ERROR for d in diags),
        diagnostics=diags,
        memory=parse_memory_map(output),
    )


_IDENT_PATTERNS = (
    re.compile(r"'([^']+)' was not declared in this scope"),
    re.compile(r"^([^\s:']+): No such file or directory"),
    re.compile(r"No such file or directory: '([^']+)'"),
    re.compile(r"'([^']+)' does not name a type"),
)


def extract_identifier(message: str) -> Optional[str]:
    """Bare identifier named by an undeclared/unknown-type/missing-file message."""
    for pattern in _IDENT_PATTERNS:
        m = pattern.search(message)
        if m:
            return m.group(1)
    return None


_COLLISION_RE = re.compile(r'Multiple libraries were found for "([^"]+)"')
_USED_RE = re.compile(r"^\s*Used:\s*(.+?)\s*$")
_NOT_USED_RE = re.compile(r"^\s*Not used:\s*(.+?)\s*$")


@dataclass(frozen=True)
class LibraryCollision:
    header: str
    used: Optional[str] = None
    not_used: Tuple[str, ...] = ()


def parse_library_collisions(output: str) -> List[LibraryCollision]:
    """The build tool's "Multiple libraries were found" blocks."""
    collisions: List[LibraryCollision] = []
    header = None
    used = None
    not_used: List[str] = []

    def close_block():
        if header is not None:
            collisions.append(LibraryCollision(header, used, tuple(not_used)))

    for line in output.splitlines():
        m = _COLLISION_RE.search(line)
        if m:
            close_block()
            header, used, not_used = m.group(1), None, []
            continue
        if header is None:
            continue
        m = _USED_RE.match(line)
        if m:
            used = m.group(1)
            continue
        m = _NOT_USED_RE.match(line)
        if m:
            not_used.append(m.group(1))
            continue
        close_block()
        header = None
    close_block()
    return collisions
