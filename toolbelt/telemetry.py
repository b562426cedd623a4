"""Best-effort extraction of sensor readings and plotter series from serial lines."""

from __future__ import annotations

import re
from typing import Any, Dict, List

_TEMPERATURE = re.compile(r"temp(?:erature)?[:\s=]*(-?\d+\.?\d*)", re.IGNORECASE)
_HUMIDITY = re.compile(r"humidity[:\s=]*(\d+\.?\d*)%?", re.IGNORECASE)
_PRESSURE = re.compile(r"pressure[:\s=]*(\d+\.?\d*)", re.IGNORECASE)
_MOTION = re.compile(r"motion[:\s=]*(detected|true|yes|on|1|false|no|none|off|0)\b", re.IGNORECASE)
_DISTANCE = re.compile(r"distance[:\s=]*(\d+\.?\d*)\s*(cm|mm|m)?\b", re.IGNORECASE)

_MOTION_TRUE = {"detected", "true", "yes", "on", "1"}


def parse_sensor_data(line: str) -> Dict[str, Any]:
    """Named readings found in ``line``.

    Fields that are not present are left out, never defaulted:

        >>> parse_sensor_data("temp:25.3 humidity:60.2")
        {'temperature': 25.3, 'humidity': 60.2}
    """
    result: Dict[str, Any] = {}

    m = _TEMPERATURE.search(line)
    if m:
        result["temperature"] = float(m.group(1))
    m = _HUMIDITY.search(line)
    if m:
        result["humidity"] = float(m.group(1))
    m = _PRESSURE.search(line)
    if m:
        result["pressure"] = float(m.group(1))
    m = _MOTION.search(line)
    if m:
        result["motion"] = m.group(1).lower() in _MOTION_TRUE
    m = _DISTANCE.search(line)
    if m:
        result["distance"] = float(m.group(1))
        if m.group(2):
            result["distance_unit"] = m.group(2).lower()
    return result


_FIELD_SEP = re.compile(r"[,\s]+")
_LEADING_NUMBER = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def parse_numeric_data(line: str) -> List[float]:
    """Plotter series values from a comma/whitespace separated line.

    Each field contributes its leading number; fields without one are
    skipped:

        >>> parse_numeric_data("12, 3.5\\t-7 ok 4V")
        [12.0, 3.5, -7.0, 4.0]
    """
    values: List[float] = []
    for part in _FIELD_SEP.split(line.strip()):
        m = _LEADING_NUMBER.match(part)
        if m:
            values.append(float(m.group(0)))
    return values


def is_plotter_data(line: str) -> bool:
    """True when the line carries more than one numeric value."""
    return len(parse_numeric_data(line)) > 1
