"""Parser for storage-quotas.conf."""

from __future__ import annotations

import re
from dataclasses import dataclass

from carbond.ini import parse_ini_file

_MAX_INT64 = (1 << 63) - 1
_INT_RE = re.compile(r"[+-]?[0-9]+")
_DROPPING_POLICIES = ("new", "none", "")


@dataclass
class Quota:
    """Limits that apply to the metrics under one namespace pattern."""

    pattern: str
    namespaces: int = 0
    metrics: int = 0
    logical_size: int = 0
    physical_size: int = 0
    data_points: int = 0
    throughput: int = 0
    dropping_policy: str = ""
    stat_metric_prefix: str = ""


def _parse_limit(section: dict[str, str], key: str) -> int:
    text = section.get(key, "")
    if text == "":
        return 0
    if text in ("maximum", "max"):
        return _MAX_INT64
    digits = text.replace(",", "")
    if not _INT_RE.fullmatch(digits):
        raise ValueError(
            f"[persister] Failed to parse {key} for [{section['name']}]: invalid syntax {text!r}"
        )
    value = int(digits)
    if not -_MAX_INT64 - 1 <= value <= _MAX_INT64:
        raise ValueError(
            f"[persister] Failed to parse {key} for [{section['name']}]: value out of range {text!r}"
        )
    return value


def read_whisper_quotas(filename: str) -> list[Quota]:
    """Read storage-quotas.conf and return its quotas in file order."""
    quotas: list[Quota] = []

    for section in parse_ini_file(filename):
        quota = Quota(
            pattern=section["name"],
            namespaces=_parse_limit(section, "namespaces"),
            metrics=_parse_limit(section, "metrics"),
            logical_size=_parse_limit(section, "logical-size"),
            physical_size=_parse_limit(section, "physical-size"),
            data_points=_parse_limit(section, "data-points"),
            throughput=_parse_limit(section, "throughput"),
        )

        policy = section.get("dropping-policy", "")
        if policy not in _DROPPING_POLICIES:
            raise ValueError(
                f"[persister] Unknown dropping-policy {policy!r} for [{section['name']}]"
            )
        quota.dropping_policy = policy
        quota.stat_metric_prefix = section.get("stat-metric-prefix", "").removeprefix(".")

        quotas.append(quota)

    return quotas