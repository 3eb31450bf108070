"""Metric points, their text and binary encodings, and stream readers."""

from __future__ import annotations

import math
import queue
import struct
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import BinaryIO, Callable, Iterator, Optional

MB = 1048576

_UINT64_MASK = (1 << 64) - 1
_INT64_MIN = -(1 << 63)
_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class Point:
    """A single value/timestamp pair."""

    value: float
    timestamp: int


@dataclass(eq=False)
class Points:
    """A metric name with the points received for it."""

    metric: str = ""
    data: list[Point] = field(default_factory=list)

    def copy(self) -> "Points":
        """Return a copy that can be extended without touching this one."""
        return Points(self.metric, list(self.data))

    def append(self, point: Point) -> "Points":
        self.data.append(point)
        return self

    def add(self, value: float, timestamp: int) -> "Points":
        self.data.append(Point(value, timestamp))
        return self

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Points):
            return NotImplemented
        if self.metric != other.metric or len(self.data) != len(other.data):
            return False
        return all(
            a.value == b.value and a.timestamp == b.timestamp
            for a, b in zip(self.data, other.data)
        )

    def lines(self) -> Iterator[bytes]:
        """Yield the plain-text protocol line of every point."""
        for point in self.data:
            yield _line(self.metric, point)

    def write_to(self, stream: BinaryIO) -> int:
        """Write the points in the plain-text protocol; return bytes written."""
        written = 0
        for line in self.lines():
            stream.write(line)
            written += len(line)
        return written

    def write_binary_to(self, stream: BinaryIO) -> int:
        """Write the points in the delta-varint binary format; return bytes written."""
        name = self.metric.encode("utf-8")
        chunks = [_encode_varint(len(name)), name, _encode_varint(len(self.data))]
        prev_bits = 0
        prev_timestamp = 0
        for point in self.data:
            bits = _float_bits(point.value)
            chunks.append(_encode_varint(_wrap_int64(bits - prev_bits)))
            chunks.append(_encode_varint(_wrap_int64(point.timestamp - prev_timestamp)))
            prev_bits, prev_timestamp = bits, point.timestamp
        payload = b"".join(chunks)
        stream.write(payload)
        return len(payload)


@dataclass
class MetaMetric:
    """Size information about a stored metric."""

    path: str
    physical_size: int
    logical_size: int


def one_point(metric: str, value: float, timestamp: int) -> Points:
    return Points(metric, [Point(value, timestamp)])


def now_point(metric: str, value: float) -> Points:
    return one_point(metric, value, int(time.time()))


def format_value(value: float) -> str:
    """Format a float the way the plain-text protocol writes it (shortest %g)."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).normalize().as_tuple()
    digits = "".join(map(str, digit_tuple))
    count = len(digits)
    point = count + exponent
    exp = point - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if count > 1 else "")
        exp_sign = "-" if exp < 0 else "+"
        return f"{sign}{mantissa}e{exp_sign}{abs(exp):02d}"
    if point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    if point >= count:
        return f"{sign}{digits}{'0' * (point - count)}"
    return f"{sign}{digits[:point]}.{digits[point:]}"


def _line(metric: str, point: Point) -> bytes:
    return f"{metric} {format_value(point.value)} {point.timestamp}\n".encode("utf-8")


def _wrap_int64(value: int) -> int:
    value &= _UINT64_MASK
    return value - (1 << 64) if value >= 1 << 63 else value


def _float_bits(value: float) -> int:
    return struct.unpack("<q", struct.pack("<d", value))[0]


def _float_from_bits(bits: int) -> float:
    return struct.unpack("<d", struct.pack("<q", _wrap_int64(bits)))[0]


def _encode_varint(value: int) -> bytes:
    encoded = (value << 1) & _UINT64_MASK
    if value < 0:
        encoded = ~encoded & _UINT64_MASK
    out = bytearray()
    while encoded >= 0x80:
        out.append((encoded & 0x7F) | 0x80)
        encoded >>= 7
    out.append(encoded)
    return bytes(out)


def _read_varint(stream: BinaryIO) -> Optional[int]:
    """Read one zig-zag varint; None on a clean end of stream."""
    result = 0
    shift = 0
    for index in range(10):
        byte = stream.read(1)
        if not byte:
            if index == 0:
                return None
            raise ValueError("unexpected EOF")
        b = byte[0]
        if b < 0x80:
            if index == 9 and b > 1:
                raise ValueError("varint overflows a 64-bit integer")
            unsigned = result | (b << shift)
            half = unsigned >> 1
            return ~half if unsigned & 1 else half
        result |= (b & 0x7F) << shift
        shift += 7
    raise ValueError("varint overflows a 64-bit integer")


def _parse_float(text: str) -> float:
    if not text or not text.isascii() or any(c.isspace() or c == "_" for c in text):
        raise ValueError(f"invalid float {text!r}")
    signed = text[0] in "+-"
    unsigned = text[1:] if signed else text
    sign = -1.0 if text[0] == "-" else 1.0
    lowered = unsigned.lower()
    if lowered in ("inf", "infinity"):
        return sign * math.inf
    if lowered == "nan":
        return math.nan
    if not unsigned or unsigned[0] in "+-" or lowered.startswith(("inf", "nan")):
        raise ValueError(f"invalid float {text!r}")
    if lowered.startswith("0x"):
        value = sign * float.fromhex(unsigned)
    else:
        value = float(text)
    if math.isinf(value):
        raise ValueError(f"float out of range {text!r}")
    return value


def _to_int64(value: float) -> int:
    if not math.isfinite(value) or value >= 2**63 or value < -(2**63):
        return _INT64_MIN
    return int(value)


def parse_text(line: str) -> Points:
    """Parse one plain-text protocol line: ``name value timestamp``."""
    row = line.strip("\n \t\r").split(" ")
    if len(row) != 3:
        raise ValueError(f"bad message: {line!r}")
    try:
        value = _parse_float(row[1])
        timestamp = _parse_float(row[2])
    except ValueError:
        raise ValueError(f"bad message: {line!r}") from None
    if math.isnan(value) or math.isnan(timestamp):
        raise ValueError(f"bad message: {line!r}")
    return one_point(row[0], value, _to_int64(timestamp))


def read_plain(stream: BinaryIO) -> Iterator[Points]:
    """Yield points from plain-text lines, skipping lines that do not parse.

    Raises ValueError when the last line is not terminated.
    """
    for raw in stream:
        if not raw.endswith(b"\n"):
            raise ValueError("unfinished line in file")
        try:
            yield parse_text(raw.decode("utf-8", "replace"))
        except ValueError:
            continue


def read_binary(stream: BinaryIO) -> Iterator[Points]:
    """Yield points from the delta-varint binary format.

    A metric cut short by a read error is still yielded before the error is raised.
    """
    while True:
        length = _read_varint(stream)
        if length is None:
            return
        if length > MB:
            raise ValueError(f"metric name too long: {length}")
        if length < 0:
            raise ValueError(f"bad metric name length: {length}")
        name = stream.read(length).decode("utf-8", "replace")
        count = _read_varint(stream) or 0

        points: Optional[Points] = None
        bits = 0
        timestamp = 0
        try:
            for _ in range(count):
                value_delta = _read_varint(stream)
                if value_delta is None:
                    raise ValueError("EOF")
                bits = _wrap_int64(bits + value_delta)
                time_delta = _read_varint(stream)
                if time_delta is None:
                    raise ValueError("EOF")
                timestamp = _wrap_int64(timestamp + time_delta)
                if points is None:
                    points = one_point(name, _float_from_bits(bits), timestamp)
                else:
                    points.add(_float_from_bits(bits), timestamp)
        except ValueError:
            if points is not None:
                yield points
            raise
        if points is not None:
            yield points


def read_from_file(filename: str) -> Iterator[Points]:
    """Open a dump file and yield its points; ``.bin`` files are binary."""
    stream = open(filename, "rb")
    reader = read_binary if str(filename).lower().endswith(".bin") else read_plain
    return _read_and_close(stream, reader)


def _read_and_close(
    stream: BinaryIO, reader: Callable[[BinaryIO], Iterator[Points]]
) -> Iterator[Points]:
    with stream:
        yield from reader(stream)


def glue(
    source: "queue.Queue[Optional[Points]]",
    chunk_size: int,
    chunk_timeout: float,
    callback: Callable[[bytes], None],
    exit_event: Optional[threading.Event] = None,
) -> None:
    """Join points from ``source`` into plain-text chunks of at most ``chunk_size`` bytes.

    A pending chunk is handed to ``callback`` when it would overflow, every
    ``chunk_timeout`` seconds, and when ``None`` arrives on the queue (end of
    input). Setting ``exit_event`` stops without flushing.
    """
    chunks: list[bytes] = []
    size = 0

    def flush() -> None:
        nonlocal size
        if size == 0:
            return
        callback(b"".join(chunks))
        chunks.clear()
        size = 0

    next_tick = time.monotonic() + chunk_timeout
    while exit_event is None or not exit_event.is_set():
        now = time.monotonic()
        if now >= next_tick:
            flush()
            next_tick += chunk_timeout
            if next_tick <= now:
                next_tick = now + chunk_timeout
            continue
        try:
            item = source.get(timeout=min(next_tick - now, _POLL_INTERVAL))
        except queue.Empty:
            continue
        if item is None:
            flush()
            return
        for line in item.lines():
            if size + len(line) > chunk_size:
                flush()
            chunks.append(line)
            size += len(line)