"""Parser for storage-schemas.conf and retention definitions."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from carbond.ini import parse_ini_file

_INT_RE = re.compile(r"[+-]?[0-9]+")
_PART_RE = re.compile(r"([0-9]+)([smhdwy])")
_UNITS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
    "y": 31536000,
}


@dataclass(frozen=True)
class Retention:
    """One archive of a whisper file: its resolution and length."""

    seconds_per_point: int
    number_of_points: int


@dataclass
class Schema:
    """One section of storage-schemas.conf."""

    name: str
    pattern: re.Pattern
    retention_str: str
    retentions: list[Retention] = field(default_factory=list)
    priority: int = 0
    compressed: Optional[bool] = None


class WhisperSchemas(list):
    """Schemas ordered by priority, highest first."""

    def match(self, metric: str) -> Optional[Schema]:
        """Return the first schema whose pattern matches ``metric``, or None."""
        for schema in self:
            if schema.pattern.search(metric):
                return schema
        return None


def _parse_int(text: str, bits: int = 64) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid syntax {text!r}")
    value = int(text)
    limit = 1 << (bits - 1)
    if not -limit <= value < limit:
        raise ValueError(f"value out of range {text!r}")
    return value


def _parse_duration(part: str) -> int:
    match = _PART_RE.fullmatch(part)
    if match is None:
        raise ValueError(part)
    return int(match.group(1)) * _UNITS[match.group(2)]


def _parse_part(part: str) -> int:
    try:
        return _parse_int(part, 32)
    except ValueError:
        return _parse_duration(part)


def parse_retention_def(retention_def: str) -> Retention:
    """Parse a ``precision:length`` definition such as ``10s:24h``.

    A plain number as the length is a count of points; a duration is divided
    by the precision.
    """
    parts = retention_def.split(":")
    if len(parts) != 2:
        raise ValueError(f"not enough parts in retention definition {retention_def!r}")
    precision_text, points_text = parts

    try:
        precision = _parse_part(precision_text)
    except ValueError as exc:
        raise ValueError(f"failed to parse precision: {exc}") from None
    if precision <= 0:
        raise ValueError(f"failed to parse precision: {precision_text}")

    try:
        points = _parse_int(points_text, 32)
    except ValueError:
        try:
            points = _parse_duration(points_text) // precision
        except ValueError as exc:
            raise ValueError(f"failed to parse points: {exc}") from None
    return Retention(precision, points)


def parse_retention_defs(retention_defs: str) -> list[Retention]:
    """Parse a comma separated list of retentions in old or new format."""
    retentions: list[Retention] = []
    for retention_def in retention_defs.split(","):
        retention_def = retention_def.strip()
        parts = retention_def.split(":")
        if len(parts) != 2:
            raise ValueError(f"bad retentions spec {retention_def!r}")

        try:
            seconds, count = _parse_int(parts[0]), _parse_int(parts[1])
        except ValueError:
            retentions.append(parse_retention_def(retention_def))
        else:
            retentions.append(Retention(seconds, count))
    return retentions


def read_whisper_schemas(filename: str) -> WhisperSchemas:
    """Read storage-schemas.conf and return its schemas sorted by priority."""
    schemas = WhisperSchemas()

    for index, section in enumerate(parse_ini_file(filename)):
        name = section["name"]
        pattern_text = section.get("pattern", "")
        if not pattern_text:
            raise ValueError(f"[persister] Empty pattern for [{name}]")
        try:
            pattern = re.compile(pattern_text)
        except re.error as exc:
            raise ValueError(
                f"[persister] Failed to parse pattern {pattern_text!r} for [{name}]: {exc}"
            ) from None

        retention_str = section.get("retentions", "")
        try:
            retentions = parse_retention_defs(retention_str)
        except ValueError as exc:
            raise ValueError(
                f"[persister] Failed to parse retentions {retention_str!r} for [{name}]: {exc}"
            ) from None

        priority_text = section.get("priority", "")
        priority = 0
        if priority_text:
            try:
                priority = _parse_int(priority_text)
            except ValueError as exc:
                raise ValueError(
                    f"[persister] Failed to parse priority {priority_text!r} for [{name}]: {exc}"
                ) from None

        compressed: Optional[bool] = None
        if "compressed" in section:
            value = section["compressed"]
            if value == "true":
                compressed = True
            elif value == "false":
                compressed = False
            else:
                raise ValueError(
                    f"[persister] Failed to parse compressed {value!r} for [{name}]: "
                    "unknown value, please use true/false"
                )

        schemas.append(
            Schema(
                name=name,
                pattern=pattern,
                retention_str=retention_str,
                retentions=retentions,
                # position in file breaks ties between equal priorities
                priority=(priority << 32) - index,
                compressed=compressed,
            )
        )

    schemas.sort(key=lambda schema: schema.priority, reverse=True)
    return schemas