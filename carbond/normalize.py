"""Normalisation and on-disk paths of tagged metric names."""

from __future__ import annotations

import hashlib
import itertools
import os


def normalize_original(s: str) -> str:
    """Normalise a tagged name the way the reference implementation does."""
    metric, *segments = s.split(";")
    if not metric:
        raise ValueError(f"cannot parse path {s!r}, no metric found")

    tags: dict[str, str] = {}
    for segment in segments:
        key, sep, value = segment.partition("=")
        if not sep or not key:
            raise ValueError(f"cannot parse path {s!r}, invalid segment {segment!r}")
        tags[key] = value

    return metric + "".join(sorted(f";{k}={v}" for k, v in tags.items()))


def normalize(s: str) -> str:
    """Sort tags by key and keep only the last value given for each key."""
    if ";" not in s:
        return s

    metric, *segments = s.split(";")
    if not metric:
        raise ValueError(f"cannot parse path {s!r}, no metric found")

    for segment in segments:
        if segment.find("=") < 1:
            raise ValueError(f"cannot parse path {s!r}, invalid segment {segment!r}")

    ordered = sorted(segments, key=lambda seg: seg[: seg.index("=") + 1])
    unique = [
        list(group)[-1]
        for _, group in itertools.groupby(ordered, key=lambda seg: seg[: seg.index("=")])
    ]
    return ";".join([metric, *unique])


def file_path(root: str, s: str, hash_only: bool) -> str:
    """Return the storage path (without extension) of a tagged metric."""
    digest = hashlib.sha256(s.encode("utf-8")).hexdigest()
    leaf = digest if hash_only else s.replace(".", "_DOT_")
    return os.path.normpath(os.path.join(root, "_tagged", digest[:3], digest[3:6], leaf))