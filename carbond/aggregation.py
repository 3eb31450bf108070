"""Parser for storage-aggregation.conf."""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass, field
from typing import Optional

from carbond.ini import parse_ini_file


class AggregationMethod(enum.IntEnum):
    """How a whisper archive rolls points up into lower resolutions."""

    AVERAGE = 1
    SUM = 2
    LAST = 3
    MAX = 4
    MIN = 5


_METHODS = {
    "average": AggregationMethod.AVERAGE,
    "avg": AggregationMethod.AVERAGE,
    "sum": AggregationMethod.SUM,
    "last": AggregationMethod.LAST,
    "max": AggregationMethod.MAX,
    "min": AggregationMethod.MIN,
}


@dataclass
class WhisperAggregationItem:
    """One section of storage-aggregation.conf."""

    name: str
    pattern: Optional[re.Pattern]
    x_files_factor: float
    aggregation_method_str: str
    aggregation_method: AggregationMethod


def _default_item() -> WhisperAggregationItem:
    return WhisperAggregationItem(
        name="default",
        pattern=None,
        x_files_factor=0.5,
        aggregation_method_str="average",
        aggregation_method=AggregationMethod.AVERAGE,
    )


@dataclass
class WhisperAggregation:
    """Aggregation rules in file order, with a fallback for unmatched metrics."""

    data: list[WhisperAggregationItem] = field(default_factory=list)
    default: WhisperAggregationItem = field(default_factory=_default_item)

    def match(self, metric: str) -> WhisperAggregationItem:
        """Return the first rule matching ``metric``, or the default rule."""
        for item in self.data:
            if item.pattern is not None and item.pattern.search(metric):
                return item
        return self.default


def _parse_float(text: str) -> float:
    if not text or any(c.isspace() or c == "_" for c in text):
        raise ValueError(f"invalid syntax {text!r}")
    value = float(text)
    if math.isinf(value) and text.strip("+-").lower() not in ("inf", "infinity"):
        raise ValueError(f"value out of range {text!r}")
    return value


def read_whisper_aggregation(filename: str) -> WhisperAggregation:
    """Read storage-aggregation.conf into a WhisperAggregation."""
    result = WhisperAggregation()

    for section in parse_ini_file(filename):
        name = section["name"]
        pattern_text = section.get("pattern", "")
        try:
            pattern = re.compile(pattern_text)
        except re.error as exc:
            raise ValueError(
                f"failed to parse pattern {pattern_text!r} for [{name}]: {exc}"
            ) from None

        xff_text = section.get("xfilesfactor", "")
        try:
            x_files_factor = _parse_float(xff_text)
        except ValueError as exc:
            raise ValueError(
                f"failed to parse xFilesFactor {xff_text!r} in {name}: {exc}"
            ) from None

        method_str = section.get("aggregationmethod", "")
        method = _METHODS.get(method_str)
        if method is None:
            raise ValueError(
                f"unknown aggregation method '{method_str}' in section '{name}'"
            )

        result.data.append(
            WhisperAggregationItem(
                name=name,
                pattern=pattern,
                x_files_factor=x_files_factor,
                aggregation_method_str=method_str,
                aggregation_method=method,
            )
        )

    return result