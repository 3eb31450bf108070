"""Parsers for the plain, pickle and protobuf metric protocols."""

from __future__ import annotations

import io
import math
import pickle as _pickle
import struct
from typing import Any, Iterator, Union

from carbond.points import Points, _parse_float, _to_int64, one_point

_MAX_NAME = 16384
_UINT32_MAX = 0xFFFFFFFF


class ParseError(ValueError):
    """A message that does not parse; ``points`` holds what parsed before it."""

    def __init__(self, message: str, points: list[Points] | None = None) -> None:
        super().__init__(message)
        self.points = points if points is not None else []


def plain_line(data: Union[bytes, str]) -> tuple[str, float, int]:
    """Parse ``name value timestamp`` into its three parts."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    p = data.strip(b" \n\r")
    bad = f"bad message: {p.decode('utf-8', 'replace')!r}"

    i1 = p.find(b" ")
    if i1 < 1:
        raise ParseError(bad)
    i2 = p.find(b" ", i1 + 1)
    if i2 < i1 + 2:
        raise ParseError(bad)

    try:
        value = _parse_float(p[i1 + 1:i2].decode("ascii"))
        tsf = _parse_float(p[i2 + 1:].decode("ascii"))
    except (ValueError, UnicodeDecodeError):
        raise ParseError(bad) from None
    if math.isnan(value) or math.isnan(tsf):
        raise ParseError(bad)
    return p[:i1].decode("utf-8", "replace"), value, _to_int64(tsf)


def plain(body: bytes) -> list[Points]:
    """Parse newline-terminated plain lines, skipping empty ones."""
    result: list[Points] = []
    lines = body.split(b"\n")
    tail = lines.pop()
    for line in lines:
        if not line:
            continue
        try:
            name, value, timestamp = plain_line(line + b"\n")
        except ParseError as exc:
            raise ParseError(str(exc), result) from None
        result.append(one_point(name, value, timestamp))
    if tail:
        raise ParseError("unfinished line", result)
    return result


class _SafeUnpickler(_pickle.Unpickler):
    def find_class(self, module: str, name: str) -> Any:
        raise _pickle.UnpicklingError(f"global {module}.{name} is forbidden")


def _number(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    raise ParseError(f"bad value {value!r}")


def pickle(body: bytes) -> list[Points]:
    """Parse a pickled list of ``(name, (timestamp, value), ...)`` tuples."""
    try:
        data = _SafeUnpickler(io.BytesIO(body), encoding="latin-1").load()
    except ParseError:
        raise
    except Exception as exc:
        raise ParseError(f"bad pickle message: {exc}") from None
    if not isinstance(data, (list, tuple)):
        raise ParseError("pickle message is not a list")

    entries: list[tuple[str, float, int]] = []
    for item in data:
        if not isinstance(item, (list, tuple)) or len(item) < 2:
            raise ParseError(f"bad metric entry {item!r}")
        name = item[0]
        if isinstance(name, bytes):
            name = name.decode("utf-8", "replace")
        if not isinstance(name, str):
            raise ParseError(f"bad metric name {name!r}")
        for datapoint in item[1:]:
            if not isinstance(datapoint, (list, tuple)) or len(datapoint) != 2:
                raise ParseError(f"bad datapoint {datapoint!r}")
            ts = _number(datapoint[0])
            if not 0 <= ts <= _UINT32_MAX:
                raise ParseError(f"bad timestamp {datapoint[0]!r}")
            entries.append((name, _number(datapoint[1]), int(ts)))

    result: list[Points] = []
    for name, value, timestamp in entries:
        if result and result[-1].metric == name:
            result[-1].add(value, timestamp)
        else:
            result.append(one_point(name, value, timestamp))
    return result


def _varint(buf: bytes, pos: int) -> tuple[int, int]:
    result = 0
    for shift in range(0, 70, 7):
        if pos >= len(buf):
            raise ParseError("unexpected EOF")
        b = buf[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if b < 0x80:
            return result & ((1 << 64) - 1), pos
    raise ParseError("varint overflow")


def _fields(buf: bytes) -> Iterator[tuple[int, int, Any]]:
    pos = 0
    while pos < len(buf):
        key, pos = _varint(buf, pos)
        number, wire = key >> 3, key & 7
        if number == 0:
            raise ParseError("illegal field number 0")
        if wire == 0:
            value, pos = _varint(buf, pos)
        elif wire == 1:
            if pos + 8 > len(buf):
                raise ParseError("unexpected EOF")
            value, pos = buf[pos:pos + 8], pos + 8
        elif wire == 2:
            length, pos = _varint(buf, pos)
            if pos + length > len(buf):
                raise ParseError("unexpected EOF")
            value, pos = buf[pos:pos + length], pos + length
        elif wire == 5:
            if pos + 4 > len(buf):
                raise ParseError("unexpected EOF")
            value, pos = buf[pos:pos + 4], pos + 4
        else:
            raise ParseError(f"unsupported wire type {wire}")
        yield number, wire, value


def _expect(wire: int, expected: int) -> None:
    if wire != expected:
        raise ParseError(f"wrong wire type {wire}")


def _point(buf: bytes) -> tuple[int, float]:
    timestamp, value = 0, 0.0
    for number, wire, raw in _fields(buf):
        if number == 1:
            _expect(wire, 0)
            timestamp = raw & _UINT32_MAX
        elif number == 2:
            _expect(wire, 1)
            value = struct.unpack("<d", raw)[0]
    return timestamp, value


def _metric(buf: bytes) -> tuple[str, list[tuple[int, float]]]:
    name = ""
    points: list[tuple[int, float]] = []
    for number, wire, raw in _fields(buf):
        if number == 1:
            _expect(wire, 2)
            try:
                name = raw.decode("utf-8")
            except UnicodeDecodeError:
                raise ParseError("invalid utf-8 in name") from None
        elif number == 2:
            _expect(wire, 2)
            points.append(_point(raw))
    return name, points


def protobuf(body: bytes) -> list[Points]:
    """Parse a protobuf Payload of metrics with their points."""
    metrics = []
    for number, wire, raw in _fields(body):
        if number == 1:
            _expect(wire, 2)
            metrics.append(_metric(raw))
    if not metrics:
        raise ParseError("empty message")

    result: list[Points] = []
    for name, points in metrics:
        if not name:
            raise ParseError("name is empty", result)
        if len(name.encode("utf-8")) > _MAX_NAME:
            raise ParseError("name too long", result)
        if not points:
            raise ParseError("points is empty", result)
        entry = Points(name)
        for timestamp, value in points:
            entry.add(value, timestamp)
        result.append(entry)
    return result