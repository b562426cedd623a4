"""
Pure parsers for the build tool's ``--format json`` output.

The tool's JSON shapes changed across releases (bare lists vs. objects with a
top-level key); each parser accepts both and returns plain dataclasses.
Malformed input yields an empty result rather than an exception.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

VERSION_RE = re.compile(r"arduino-cli\s+version:?\s+([\d.]+)", re.IGNORECASE)


@dataclass
class BoardInfo:
    name: str
    fqbn: str
    platform: str = ""


@dataclass
class DetectedPort:
    address: str
    protocol: str = ""
    label: str = ""
    boards: List[BoardInfo] = field(default_factory=list)


@dataclass
class InstalledLibrary:
    name: str
    version: str
    install_dir: str = ""
    location: str = ""


@dataclass
class LibraryRelease:
    name: str
    version: str
    sentence: str = ""
    author: str = ""
    category: str = ""


@dataclass
class InstalledCore:
    id: str
    installed_version: str
    name: str = ""
    latest_version: str = ""


def to_plain(items) -> list:
    return [asdict(i) for i in items]


def _load(text: str) -> Any:
    if not text or not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug("Unparseable tool JSON: %s", e)
        return None


def _unwrap(data: Any, key: str) -> list:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        value = data.get(key)
        if isinstance(value, list):
            return value
    return []


def _boards(entries: Any) -> List[BoardInfo]:
    boards = []
    for b in entries or []:
        if not isinstance(b, dict):
            continue
        fqbn = b.get("fqbn") or b.get("FQBN") or ""
        platform = b.get("platform")
        if isinstance(platform, dict):
            platform = platform.get("id") or (platform.get("metadata") or {}).get("id", "")
        boards.append(BoardInfo(name=b.get("name", ""), fqbn=fqbn, platform=platform or ""))
    return boards


def parse_board_list(text: str) -> List[DetectedPort]:
    """``board list --format json``.

    Old shape: ``[{"address", "protocol", "boards": [...]}, ...]``
    New shape: ``{"detected_ports": [{"port": {...}, "matching_boards": [...]}]}``
    """
    ports = []
    for entry in _unwrap(_load(text), "detected_ports"):
        if not isinstance(entry, dict):
            continue
        port = entry.get("port") if isinstance(entry.get("port"), dict) else entry
        boards = entry.get("matching_boards", entry.get("boards"))
        address = port.get("address", "")
        if not address:
            continue
        ports.append(DetectedPort(
            address=address,
            protocol=port.get("protocol", ""),
            label=port.get("label", ""),
            boards=_boards(boards),
        ))
    return ports


def parse_board_listall(text: str) -> List[BoardInfo]:
    """``board listall`` / ``board search`` output."""
    return _boards(_unwrap(_load(text), "boards"))


def parse_lib_list(text: str) -> List[InstalledLibrary]:
    """``lib list --format json``: entries carry a nested ``library`` object."""
    libs = []
    for entry in _unwrap(_load(text), "installed_libraries"):
        if not isinstance(entry, dict):
            continue
        lib = entry.get("library", entry)
        name = lib.get("name")
        if not name:
            continue
        libs.append(InstalledLibrary(
            name=name,
            version=str(lib.get("version", "")),
            install_dir=lib.get("install_dir", ""),
            location=str(lib.get("location", "")),
        ))
    return libs


def parse_lib_search(text: str) -> List[LibraryRelease]:
    releases = []
    for lib in _unwrap(_load(text), "libraries"):
        if not isinstance(lib, dict) or not lib.get("name"):
            continue
        latest = lib.get("latest") or {}
        version = lib.get("latest_version") or latest.get("version") or lib.get("version", "")
        releases.append(LibraryRelease(
            name=lib["name"],
            version=str(version),
            sentence=latest.get("sentence", lib.get("sentence", "")),
            author=latest.get("author", lib.get("author", "")),
            category=latest.get("category", lib.get("category", "")),
        ))
    return releases


def parse_core_list(text: str) -> List[InstalledCore]:
    cores = []
    for core in _unwrap(_load(text), "platforms"):
        if not isinstance(core, dict) or not core.get("id"):
            continue
        cores.append(InstalledCore(
            id=core["id"],
            installed_version=str(core.get("installed_version") or core.get("installed", "")),
            name=core.get("name", ""),
            latest_version=str(core.get("latest_version") or core.get("latest", "")),
        ))
    return cores


def parse_version(text: str) -> Optional[str]:
    """Version from ``version`` text output or ``version --format json``."""
    text = text or ""
    data = _load(text) if text.strip().startswith("{") else None
    if isinstance(data, dict) and data.get("VersionString"):
        return str(data["VersionString"])
    m = VERSION_RE.search(text)
    return m.group(1) if m else None
