"""Receivers for the plain line protocol and framed pickle/protobuf over TCP."""

from __future__ import annotations

import functools
import gzip
import io
import logging
import queue
import socket
import threading
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

from carbond import parse, receiver
from carbond.points import Points, one_point

_POLL = 0.1
_READ_TIMEOUT = 120.0
_READ_ERRORS = (OSError, EOFError, ValueError, zlib.error)

Store = Optional[Callable[[Points], None]]
FrameParser = Callable[[bytes], "list[Points]"]


@dataclass
class TCPOptions:
    listen: str = ":2003"
    enabled: bool = True
    buffer_size: int = 0
    compression: str = ""


@dataclass
class FramingOptions:
    listen: str = ":2004"
    max_message_size: int = 67108864
    enabled: bool = True
    buffer_size: int = 0


def _resolve_listen(listen: str) -> tuple[socket.AddressFamily, tuple[str, int]]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {listen!r}")
    host = host.strip("[]")
    try:
        port_number = int(port) if port else 0
    except ValueError:
        raise ValueError(f"invalid port in address {listen!r}") from None
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return family, (host, port_number)


class _Output:
    """Hands points to the store, directly or through a bounded buffer."""

    def __init__(self, store: Store, buffer_size: int, exit_event: threading.Event) -> None:
        self._store = store
        self._exit = exit_event
        self.buffer: Optional[queue.Queue] = queue.Queue(buffer_size) if buffer_size > 0 else None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.buffer is not None:
            self._thread = threading.Thread(target=self._drain, daemon=True)
            self._thread.start()

    def _deliver(self, points: Points) -> None:
        if self._store is not None:
            self._store(points)

    def __call__(self, points: Points) -> None:
        if self.buffer is None:
            self._deliver(points)
            return
        while not self._exit.is_set():
            try:
                self.buffer.put(points, timeout=_POLL)
                return
            except queue.Full:
                continue

    def _drain(self) -> None:
        while not self._exit.is_set():
            try:
                points = self.buffer.get(timeout=_POLL)
            except queue.Empty:
                continue
            self._deliver(points)

    def join(self) -> None:
        if self._thread is not None:
            self._thread.join()

    def stat(self, send: Callable[[str, float], None]) -> None:
        if self.buffer is not None:
            send("bufferLen", float(self.buffer.qsize()))
            send("bufferCap", float(self.buffer.maxsize))


def _make_crc32c_table() -> list[int]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0x82F63B78 if crc & 1 else crc >> 1
        table.append(crc)
    return table


_CRC32C_TABLE = _make_crc32c_table()


def _masked_crc32c(data: bytes) -> int:
    crc = 0xFFFFFFFF
    for byte in data:
        crc = _CRC32C_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    crc ^= 0xFFFFFFFF
    return ((((crc >> 15) | (crc << 17)) & 0xFFFFFFFF) + 0xA282EAD8) & 0xFFFFFFFF


def _snappy_decode(src: bytes) -> bytes:
    length = 0
    pos = 0
    for shift in range(0, 35, 7):
        if pos >= len(src):
            raise ValueError("snappy: corrupt input")
        byte = src[pos]
        pos += 1
        length |= (byte & 0x7F) << shift
        if byte < 0x80:
            break
    else:
        raise ValueError("snappy: corrupt input")

    out = bytearray()
    while pos < len(src):
        tag = src[pos]
        pos += 1
        kind = tag & 3
        if kind == 0:
            size = tag >> 2
            if size >= 60:
                extra = size - 59
                if pos + extra > len(src):
                    raise ValueError("snappy: corrupt input")
                size = int.from_bytes(src[pos:pos + extra], "little")
                pos += extra
            size += 1
            if pos + size > len(src):
                raise ValueError("snappy: corrupt input")
            out += src[pos:pos + size]
            pos += size
            continue
        if kind == 1:
            if pos >= len(src):
                raise ValueError("snappy: corrupt input")
            size = 4 + ((tag >> 2) & 7)
            offset = ((tag >> 5) << 8) | src[pos]
            pos += 1
        else:
            width = 2 if kind == 2 else 4
            if pos + width > len(src):
                raise ValueError("snappy: corrupt input")
            size = 1 + (tag >> 2)
            offset = int.from_bytes(src[pos:pos + width], "little")
            pos += width
        if offset == 0 or offset > len(out):
            raise ValueError("snappy: corrupt input")
        start = len(out) - offset
        if offset >= size:
            out += out[start:start + size]
        else:
            for index in range(size):
                out.append(out[start + index])
    if len(out) != length:
        raise ValueError("snappy: corrupt input")
    return bytes(out)


class _SnappyStream(io.RawIOBase):
    """Decoder for the snappy framing format."""

    def __init__(self, source: BinaryIO) -> None:
        self._source = source
        self._pending = b""
        self._identified = False

    def readable(self) -> bool:
        return True

    def _read_exact(self, size: int) -> bytes:
        data = bytearray()
        while len(data) < size:
            chunk = self._source.read(size - len(data))
            if not chunk:
                break
            data += chunk
        return bytes(data)

    def _next_chunk(self) -> Optional[bytes]:
        header = self._read_exact(4)
        if not header:
            return None
        if len(header) < 4:
            raise EOFError("snappy: unexpected EOF")
        kind = header[0]
        body = self._read_exact(int.from_bytes(header[1:], "little"))
        if len(body) < int.from_bytes(header[1:], "little"):
            raise EOFError("snappy: unexpected EOF")

        if kind == 0xFF:
            if body != b"sNaPpY":
                raise ValueError("snappy: corrupt input")
            self._identified = True
            return b""
        if not self._identified:
            raise ValueError("snappy: corrupt input")
        if kind in (0x00, 0x01):
            if len(body) < 4:
                raise ValueError("snappy: corrupt input")
            data = body[4:] if kind == 0x01 else _snappy_decode(body[4:])
            if _masked_crc32c(data) != int.from_bytes(body[:4], "little"):
                raise ValueError("snappy: corrupt input")
            return data
        if kind <= 0x7F:
            raise ValueError("snappy: unsupported input")
        return b""

    def readinto(self, buffer) -> int:
        while not self._pending:
            chunk = self._next_chunk()
            if chunk is None:
                return 0
            self._pending = chunk
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


def _open_stream(compression: str) -> Callable[[socket.socket], BinaryIO]:
    if compression == "snappy":
        return lambda conn: io.BufferedReader(_SnappyStream(conn.makefile("rb", buffering=0)))
    if compression == "gzip":
        return lambda conn: gzip.GzipFile(fileobj=conn.makefile("rb", buffering=0), mode="rb")
    return lambda conn: conn.makefile("rb")


def _peer(conn: socket.socket) -> str:
    try:
        return str(conn.getpeername())
    except OSError:
        return "unknown"


class TCPReceiver(receiver.Receiver):
    """Accepts TCP connections carrying plain lines, or framed messages
    when ``frame_parser`` is given."""

    def __init__(
        self,
        name: str,
        store: Store,
        listen: str,
        buffer_size: int = 0,
        compression: str = "",
        frame_parser: Optional[FrameParser] = None,
        max_message_size: int = 0,
    ) -> None:
        self.name = name
        self.frame_parser = frame_parser
        self.max_message_size = max_message_size
        self.logger = logging.getLogger(f"carbond.receiver.{name}")
        self._open = _open_stream(compression)

        self._lock = threading.Lock()
        self._metrics_received = 0
        self._errors = 0
        self._active = 0
        self._connections: set[socket.socket] = set()
        self._threads: list[threading.Thread] = []
        self._exit = threading.Event()
        self._stopped = False

        family, address = _resolve_listen(listen)
        self._listener = socket.create_server(address, family=family)
        self._listener.settimeout(_POLL)
        self._out = _Output(store, buffer_size, self._exit)
        self._out.start()
        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()

    def address(self) -> tuple[str, int]:
        """The bound (host, port)."""
        return self._listener.getsockname()[:2]

    def _add(self, errors: int = 0, metrics: int = 0) -> None:
        with self._lock:
            self._errors += errors
            self._metrics_received += metrics

    def _accept_loop(self) -> None:
        try:
            while not self._exit.is_set():
                try:
                    conn, _ = self._listener.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if self._exit.is_set():
                        break
                    self.logger.warning("failed to accept connection: %s", exc)
                    continue
                thread = threading.Thread(target=self.handle_connection, args=(conn,), daemon=True)
                with self._lock:
                    self._threads = [t for t in self._threads if t.is_alive()]
                    self._threads.append(thread)
                thread.start()
        finally:
            self._listener.close()

    def handle_connection(self, conn: socket.socket) -> None:
        """Read one connection until it ends, handing its points on."""
        with self._lock:
            self._connections.add(conn)
            self._active += 1
        try:
            if self._exit.is_set():
                return
            conn.settimeout(_READ_TIMEOUT)
            if self.frame_parser is not None:
                self._handle_framing(conn)
            else:
                self._handle_plain(conn)
        except Exception as exc:
            self.logger.error("panic recovered: %r", exc)
        finally:
            with self._lock:
                self._connections.discard(conn)
                self._active -= 1
            conn.close()

    def _handle_plain(self, conn: socket.socket) -> None:
        try:
            reader = self._open(conn)
        except _READ_ERRORS as exc:
            self.logger.error("failed init decompressor: %s", exc)
            return
        with reader:
            while True:
                try:
                    line = reader.readline()
                except _READ_ERRORS as exc:
                    self._add(errors=1)
                    self.logger.error("read error: %s", exc)
                    break
                if not line.endswith(b"\n"):
                    if line:
                        self.logger.warning("unfinished line %r", line)
                    break
                try:
                    name, value, timestamp = parse.plain_line(line)
                except parse.ParseError as exc:
                    self._add(errors=1)
                    self.logger.info("parse failed: %s peer=%s", exc, _peer(conn))
                    continue
                self._add(metrics=1)
                self._out(one_point(name, value, timestamp))

    def _handle_framing(self, conn: socket.socket) -> None:
        with conn.makefile("rb") as stream:
            while True:
                try:
                    header = stream.read(4)
                    if not header:
                        return
                    if len(header) < 4:
                        raise EOFError("unexpected EOF")
                    size = int.from_bytes(header, "big")
                    if size > self.max_message_size:
                        self._add(errors=1)
                        self.logger.warning("bad message size")
                        return
                    data = stream.read(size)
                    if len(data) < size:
                        raise EOFError("unexpected EOF")
                except (OSError, EOFError) as exc:
                    self._add(errors=1)
                    self.logger.warning("can't read message body: %s", exc)
                    return

                try:
                    messages = self.frame_parser(data)
                except parse.ParseError as exc:
                    self._add(errors=1)
                    self.logger.info("can't parse message data=%r: %s", data, exc)
                    return

                for message in messages:
                    self._add(metrics=len(message.data))
                    self._out(message)

    def stop(self) -> None:
        """Close the listener and all connections and wait for the workers."""
        if self._stopped:
            return
        self._stopped = True
        self._exit.set()
        self._accept_thread.join()
        with self._lock:
            connections = list(self._connections)
            threads = list(self._threads)
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for thread in threads:
            thread.join()
        self._out.join()

    def stat(self, send: Callable[[str, float], None]) -> None:
        with self._lock:
            received, errors, active = self._metrics_received, self._errors, self._active
            self._metrics_received = self._errors = 0
        send("metricsReceived", float(received))
        send("active", float(active))
        send("errors", float(errors))
        self._out.stat(send)


def new_tcp(name: str, options: TCPOptions, store: Store) -> Optional[TCPReceiver]:
    """Start a plain-line receiver, or return None if it is disabled."""
    if not options.enabled:
        return None
    return TCPReceiver(
        name,
        store,
        options.listen,
        buffer_size=options.buffer_size,
        compression=options.compression,
    )


_FRAME_PARSERS = {"pickle": parse.pickle, "protobuf": parse.protobuf}


def new_framing(parser: str, name: str, options: FramingOptions, store: Store) -> Optional[TCPReceiver]:
    """Start a length-prefixed receiver for ``parser``, or None if disabled."""
    if not options.enabled:
        return None
    frame_parser = _FRAME_PARSERS.get(parser)
    if frame_parser is None:
        raise ValueError(f"unknown frame parser {parser!r}")
    return TCPReceiver(
        name,
        store,
        options.listen,
        buffer_size=options.buffer_size,
        frame_parser=frame_parser,
        max_message_size=options.max_message_size,
    )


receiver.register("tcp", TCPOptions, new_tcp)
receiver.register("pickle", FramingOptions, functools.partial(new_framing, "pickle"))
receiver.register("protobuf", FramingOptions, functools.partial(new_framing, "protobuf"))