"""
Automatic repair of common build failures.

Three fixers, each returning a ``FixResult``:

- ``fix_include_paths``: add the missing ``#include`` for well-known
  identifiers and install the library behind it
- ``fix_library_collision``: keep one version of a library installed twice
- ``fix_syntax_patch``: single-line patches with a confidence score; only
  patches above the threshold are written, the rest become suggestions

Failures degrade to suggestions. ``requires_manual_intervention`` is set
whenever a human has to act before another automatic attempt makes sense.
"""

from __future__ import annotations

import logging
import os
import re
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .build_orchestrator import BuildOrchestrator
from .compile_parser import (
    Diagnostic, ErrorCode, LibraryCollision, Severity, extract_identifier,
    parse_library_collisions,
)
from .implementations import RealFileSystem
from .interfaces import FileSystemInterface

logger = logging.getLogger(__name__)

# Bare identifier (lowercased) -> candidate headers, preferred first.
IDENTIFIER_HEADERS: Dict[str, List[str]] = {
    "wifi": ["WiFi.h", "WiFi101.h"],
    "servo": ["Servo.h"],
    "liquidcrystal": ["LiquidCrystal.h"],
    "softwareserial": ["SoftwareSerial.h"],
    "dht": ["DHT.h"],
    "onewire": ["OneWire.h"],
    "dallastemperature": ["DallasTemperature.h"],
    "string": ["String.h"],
    "math": ["math.h"],
    "adafruit_neopixel": ["Adafruit_NeoPixel.h"],
    "crgb": ["FastLED.h"],
    "fastled": ["FastLED.h"],
    "staticjsondocument": ["ArduinoJson.h"],
    "dynamicjsondocument": ["ArduinoJson.h"],
    "jsondocument": ["ArduinoJson.h"],
    "pubsubclient": ["PubSubClient.h"],
    "stepper": ["Stepper.h"],
    "sd": ["SD.h"],
    "eeprom": ["EEPROM.h"],
    "spi": ["SPI.h"],
    "wire": ["Wire.h"],
}

# Header -> library to install. Headers absent here ship with the core.
HEADER_LIBRARIES: Dict[str, str] = {
    "WiFi.h": "WiFi",
    "WiFi101.h": "WiFi101",
    "Servo.h": "Servo",
    "SoftwareSerial.h": "SoftwareSerial",
    "LiquidCrystal.h": "LiquidCrystal",
    "DHT.h": "DHT sensor library",
    "OneWire.h": "OneWire",
    "DallasTemperature.h": "DallasTemperature",
    "Adafruit_NeoPixel.h": "Adafruit NeoPixel",
    "FastLED.h": "FastLED",
    "ArduinoJson.h": "ArduinoJson",
    "PubSubClient.h": "PubSubClient",
    "Stepper.h": "Stepper",
    "SD.h": "SD",
}

DECLARATION_TYPES = ("int", "float", "String", "boolean")

_INCLUDE_LINE = re.compile(r"^\s*#\s*include\b")
_MISSING_SEMICOLON = re.compile(r"expected (?:'[^']*' or )?';'")


@dataclass
class FixResult:
    success: bool = False
    applied_fixes: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    requires_manual_intervention: bool = False
    modified_files: List[str] = field(default_factory=list)

    def merge(self, other: "FixResult") -> "FixResult":
        self.applied_fixes.extend(other.applied_fixes)
        self.suggestions.extend(other.suggestions)
        for path in other.modified_files:
            if path not in self.modified_files:
                self.modified_files.append(path)
        self.requires_manual_intervention = self.requires_manual_intervention or other.requires_manual_intervention
        self.success = bool(self.applied_fixes)
        return self

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SyntaxPatch:
    file: str
    line: int
    original: str
    fixed: str
    confidence: float
    description: str


def has_include(lines: Sequence[str], header: str) -> bool:
    pattern = re.compile(r"#\s*include\s*[<\"]" + re.escape(header) + r"[>\"]")
    return any(pattern.search(line) for line in lines)


def insert_include(content: str, header: str) -> Optional[str]:
    """``content`` with ``#include <header>`` after the last include.

    Returns None when the header is already included.
    """
    lines = content.split("\n")
    if has_include(lines, header):
        return None
    insert_at = 0
    for i, line in enumerate(lines):
        if _INCLUDE_LINE.match(line):
            insert_at = i + 1
    lines.insert(insert_at, f"#include <{header}>")
    return "\n".join(lines)


def pick_header(headers: List[str], fqbn: Optional[str]) -> str:
    if fqbn and "samd" in fqbn and "WiFi101.h" in headers:
        return "WiFi101.h"
    return headers[0]


def generate_syntax_patches(diag: Diagnostic, lines: List[str]) -> List[SyntaxPatch]:
    """Candidate patches for one diagnostic against the current file lines."""
    patches: List[SyntaxPatch] = []
    idx = diag.line - 1
    if idx < 0 or idx >= len(lines):
        return patches
    message = diag.message

    if _MISSING_SEMICOLON.search(message):
        target = idx
        stripped = lines[idx].strip()
        indent = len(lines[idx]) - len(lines[idx].lstrip())
        # gcc reports a missing ';' at the token that follows it.
        if not stripped or stripped.startswith("}") or diag.column <= indent + 1:
            target = idx - 1
            while target >= 0 and not lines[target].strip():
                target -= 1
        if target >= 0:
            original = lines[target]
            if not original.rstrip().endswith((";", "{", "}")):
                patches.append(SyntaxPatch(
                    file=diag.file, line=target + 1, original=original,
                    fixed=original.rstrip() + ";", confidence=0.9,
                    description="Added missing semicolon",
                ))

    if "expected ')'" in message:
        original = lines[idx]
        if original.count("(") > original.count(")"):
            body = original.rstrip()
            fixed = body[:-1] + ");" if body.endswith(";") else body + ")"
            patches.append(SyntaxPatch(
                file=diag.file, line=diag.line, original=original, fixed=fixed,
                confidence=0.8, description="Added missing closing parenthesis",
            ))

    if "was not declared in this scope" in message:
        variable = extract_identifier(message)
        if variable:
            original = lines[idx]
            indent = original[: len(original) - len(original.lstrip())]
            for type_name in DECLARATION_TYPES:
                patches.append(SyntaxPatch(
                    file=diag.file, line=diag.line, original=original,
                    fixed=f"{indent}{type_name} {variable}; // Added declaration\n{original}",
                    confidence=0.5, description=f"Declare {variable} as {type_name}",
                ))
    return patches


def _version_key(version: str):
    parts = []
    for piece in re.split(r"[.\-+]", version):
        parts.append((0, int(piece), "") if piece.isdigit() else (1, 0, piece))
    return parts


class AutoFixer:
    """
    Applies automatic fixes for compile failures.

    Args:
        orchestrator: Used for library installs and listings.
        filesystem: Source file access (injectable for tests).
        syntax_patch_threshold: Patches must score above this to be applied.
    """

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        filesystem: Optional[FileSystemInterface] = None,
        syntax_patch_threshold: float = 0.7,
    ):
        self._orch = orchestrator
        self._fs = filesystem or RealFileSystem()
        self._threshold = syntax_patch_threshold

    @staticmethod
    def resolve_source(project: str, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.join(project, path)

    # Includes

    def fix_include_paths(self, project: str, diagnostics: Iterable[Diagnostic],
                          fqbn: Optional[str] = None) -> FixResult:
        """Add includes / install libraries for undeclared identifiers.

        Idempotent: a second run over an already-fixed file modifies nothing.
        """
        result = FixResult()
        for diag in diagnostics:
            missing_file = "No such file or directory" in diag.message
            if diag.code not in (ErrorCode.UNDECLARED, ErrorCode.UNKNOWN_TYPE) and not missing_file:
                continue
            ident = extract_identifier(diag.message)
            if not ident:
                continue
            if missing_file:
                result.merge(self._install_for_header(ident))
                continue

            headers = IDENTIFIER_HEADERS.get(ident.lower())
            if not headers:
                result.suggestions.append(
                    f"Unknown identifier '{ident}'. Please check documentation or install required library."
                )
                result.requires_manual_intervention = True
                continue

            header = pick_header(headers, fqbn)
            path = self.resolve_source(project, diag.file)
            try:
                content = self._fs.read_file(path)
            except OSError as e:
                result.suggestions.append(f"Add #include <{header}> to {diag.file} (could not read it: {e})")
                result.requires_manual_intervention = True
                continue

            patched = insert_include(content, header)
            if patched is None:
                continue
            self._fs.write_file(path, patched)
            logger.info("Added #include <%s> to %s for %s", header, path, ident)
            result.applied_fixes.append(f"Added #include <{header}> for {ident}")
            if path not in result.modified_files:
                result.modified_files.append(path)
            result.merge(self._install_for_header(header))

        result.success = bool(result.applied_fixes)
        return result

    def _install_for_header(self, header: str) -> FixResult:
        result = FixResult()
        library = HEADER_LIBRARIES.get(header)
        if library is None:
            if header not in {h for hs in IDENTIFIER_HEADERS.values() for h in hs}:
                result.suggestions.append(f"No known library provides {header}; install it manually")
                result.requires_manual_intervention = True
            return result
        installed = self._orch.lib_install(library)
        if installed.success:
            result.applied_fixes.append(f"Installed library: {library}")
        else:
            result.suggestions.append(f"Could not install library {library} for {header}: {installed.error}")
        result.success = bool(result.applied_fixes)
        return result

    # Library collisions

    def fix_library_collision(self, project: str, output: str = "") -> FixResult:
        """Uninstall all but the highest installed version of duplicated libraries.

        ``output`` (a failed build log) is scanned for the tool's "Multiple
        libraries were found" blocks, which are reported as suggestions.
        """
        result = FixResult()
        for collision in parse_library_collisions(output):
            result.suggestions.append(self._describe_collision(collision))

        installed_libs = self._orch.lib_list()
        if not installed_libs.success:
            result.suggestions.append(
                f"Could not list installed libraries ({installed_libs.error}); resolve conflicts manually"
            )
            result.requires_manual_intervention = True
            return result

        versions: Dict[str, List[str]] = defaultdict(list)
        for lib in installed_libs.items:
            if lib.version not in versions[lib.name]:
                versions[lib.name].append(lib.version)

        for name, found in sorted(versions.items()):
            if len(found) < 2:
                continue
            recommended = max(found, key=_version_key)
            ok = True
            for version in found:
                if version == recommended:
                    continue
                removed = self._orch.lib_uninstall(f"{name}@{version}")
                ok = ok and removed.success
            installed = self._orch.lib_install(name, recommended)
            if ok and installed.success:
                logger.info("Resolved library conflict %s -> %s", name, recommended)
                result.applied_fixes.append(f"Resolved library conflict: {name} -> {recommended}")
            else:
                result.suggestions.append(f"Manual resolution needed for library conflict: {name}")
                result.requires_manual_intervention = True

        result.success = bool(result.applied_fixes)
        return result

    @staticmethod
    def _describe_collision(collision: LibraryCollision) -> str:
        text = f'Multiple libraries provide "{collision.header}"'
        if collision.used:
            text += f"; using {collision.used}"
        if collision.not_used:
            text += f"; ignoring {', '.join(collision.not_used)}"
        return text

    # Syntax patches

    def fix_syntax_patch(self, path: str, diagnostics: Iterable[Diagnostic]) -> FixResult:
        """Apply high-confidence single-line patches to ``path``."""
        result = FixResult()
        try:
            lines = self._fs.read_file(path).split("\n")
        except OSError as e:
            result.suggestions.append(f"Failed to patch file {path}: {e}")
            result.requires_manual_intervention = True
            return result

        name = os.path.basename(path)
        modified = False
        for diag in diagnostics:
            if diag.severity is not Severity.ERROR or os.path.basename(diag.file) != name:
                continue
            for patch in generate_syntax_patches(diag, lines):
                if patch.confidence > self._threshold and lines[patch.line - 1] == patch.original:
                    lines[patch.line - 1] = patch.fixed
                    result.applied_fixes.append(f"{patch.description} (line {patch.line})")
                    modified = True
                elif patch.confidence <= self._threshold:
                    result.suggestions.append(
                        f"{patch.description} (line {patch.line}): {patch.original.strip()} -> "
                        f"{patch.fixed.strip()}"
                    )

        if modified:
            self._fs.write_file(path, "\n".join(lines))
            result.modified_files.append(path)
            logger.info("Patched %s: %s", path, "; ".join(result.applied_fixes))
        result.success = modified
        return result
