"""Board signature table: loads the YAML identity table into dataclasses.

Usage:
    from toolbelt.board_signatures import load_signature_table

    table = load_signature_table()
    sig = table.lookup("2341", "0043")   # BoardSignature(fqbn="arduino:avr:uno", ...)

Pass a path (or ``ToolbeltConfig.signatures_path``) to override the packaged
table, e.g. in tests or for in-house boards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TABLE_PATH = Path(__file__).parent / "data" / "board_signatures.yaml"


class BoardFamily(str, Enum):
    """Bootloader-entry family of a board."""
    CLASSIC = "classic"        # reset through DTR/RTS auto-reset circuit
    NATIVE_USB = "native_usb"  # 1200 bps touch drops into the bootloader
    ESP = "esp"                # BOOT/EN strapping, esptool


@dataclass(frozen=True)
class BoardSignature:
    fqbn: str
    board: str


@dataclass(frozen=True)
class UsbBridge:
    chip: str
    candidates: tuple[str, ...] = ()


@dataclass
class BoardSignatureTable:
    signatures: dict[str, BoardSignature] = field(default_factory=dict)
    bridges: dict[str, UsbBridge] = field(default_factory=dict)
    manufacturers: dict[str, BoardSignature] = field(default_factory=dict)
    families: dict[BoardFamily, tuple[str, ...]] = field(default_factory=dict)
    advisories: list[tuple[str, str]] = field(default_factory=list)

    def lookup(self, vid: Optional[str], pid: Optional[str]) -> Optional[BoardSignature]:
        if not vid or not pid:
            return None
        return self.signatures.get(f"{vid}:{pid}".lower())

    def bridge(self, vid: Optional[str], pid: Optional[str]) -> Optional[UsbBridge]:
        if not vid or not pid:
            return None
        return self.bridges.get(f"{vid}:{pid}".lower())

    def match_manufacturer(self, manufacturer: Optional[str]) -> Optional[BoardSignature]:
        if not manufacturer:
            return None
        lowered = manufacturer.lower()
        for needle, sig in self.manufacturers.items():
            if needle in lowered:
                return sig
        return None

    def family(self, fqbn_or_type: Optional[str]) -> BoardFamily:
        """Family for an FQBN, or for a family name such as ``"esp32"``."""
        value = (fqbn_or_type or "").lower()
        aliases = {"atmega32u4": BoardFamily.NATIVE_USB, "esp32": BoardFamily.ESP, "esp8266": BoardFamily.ESP}
        if value in aliases:
            return aliases[value]
        for fam in (BoardFamily.ESP, BoardFamily.NATIVE_USB):
            if any(needle in value for needle in self.families.get(fam, ())):
                return fam
        return BoardFamily.CLASSIC

    def advisories_for(self, fqbn: str) -> list[str]:
        warnings: list[str] = []
        for needle, text in self.advisories:
            if needle in fqbn and text not in warnings:
                warnings.append(text)
        return warnings


def _signature(key: str, raw) -> BoardSignature:
    if not isinstance(raw, dict) or "fqbn" not in raw:
        raise ValueError(f"Signature {key!r} must be a mapping with an 'fqbn'")
    return BoardSignature(fqbn=raw["fqbn"], board=raw.get("board", raw["fqbn"]))


def parse_signature_table(data: dict) -> BoardSignatureTable:
    """Build a table from an already-loaded YAML mapping."""
    if not isinstance(data, dict):
        raise ValueError("Signature table must be a mapping")

    table = BoardSignatureTable()
    for key, raw in (data.get("signatures") or {}).items():
        table.signatures[str(key).lower()] = _signature(key, raw)
    for key, raw in (data.get("bridges") or {}).items():
        table.bridges[str(key).lower()] = UsbBridge(
            chip=raw.get("chip", ""), candidates=tuple(raw.get("candidates", ())),
        )
    for key, raw in (data.get("manufacturers") or {}).items():
        table.manufacturers[str(key).lower()] = _signature(key, raw)
    for key, needles in (data.get("families") or {}).items():
        table.families[BoardFamily(key)] = tuple(needles)
    for entry in data.get("advisories") or []:
        table.advisories.append((entry["match"], entry["warning"]))
    return table


def load_signature_table(path: Union[str, Path, None] = None) -> BoardSignatureTable:
    table_path = Path(path) if path else DEFAULT_TABLE_PATH
    with open(table_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    table = parse_signature_table(data)
    logger.debug("Loaded %d board signatures from %s", len(table.signatures), table_path)
    return table
