"""Receiver for the plain line protocol over UDP."""

from __future__ import annotations

import io
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from carbond import parse, receiver
from carbond.points import Points, one_point
from carbond.tcpreceiver import _Output, _resolve_listen

_POLL = 0.1
_MAX_DATAGRAM = 65535

Store = Optional[Callable[[Points], None]]


@dataclass
class UDPOptions:
    listen: str = ":2003"
    enabled: bool = True
    buffer_size: int = 0


class UDPReceiver(receiver.Receiver):
    """Parses each datagram as newline separated plain lines."""

    def __init__(self, name: str, options: UDPOptions, store: Store) -> None:
        self.name = name
        self.logger = logging.getLogger(f"carbond.receiver.{name}")
        self._lock = threading.Lock()
        self._metrics_received = 0
        self._errors = 0
        self._exit = threading.Event()
        self._stopped = False

        family, address = _resolve_listen(options.listen)
        self._sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            self._sock.bind(address)
        except OSError:
            self._sock.close()
            raise
        self._sock.settimeout(_POLL)

        self._out = _Output(store, options.buffer_size, self._exit)
        self._out.start()
        self._thread = threading.Thread(target=self._receive_worker, daemon=True)
        self._thread.start()

    def address(self) -> tuple[str, int]:
        """The bound (host, port)."""
        return self._sock.getsockname()[:2]

    def _add(self, errors: int = 0, metrics: int = 0) -> None:
        with self._lock:
            self._errors += errors
            self._metrics_received += metrics

    def _receive_worker(self) -> None:
        try:
            while not self._exit.is_set():
                try:
                    data, peer = self._sock.recvfrom(_MAX_DATAGRAM)
                except socket.timeout:
                    continue
                except OSError as exc:
                    if self._exit.is_set():
                        break
                    self._add(errors=1)
                    self.logger.error("read error: %s", exc)
                    continue

                for line in io.BytesIO(data):
                    try:
                        name, value, timestamp = parse.plain_line(line)
                    except parse.ParseError as exc:
                        self._add(errors=1)
                        self.logger.info("parse failed: %s peer=%s", exc, peer)
                        continue
                    self._add(metrics=1)
                    self._out(one_point(name, value, timestamp))
        finally:
            self._sock.close()

    def stop(self) -> None:
        """Stop receiving and close the socket."""
        if self._stopped:
            return
        self._stopped = True
        self._exit.set()
        self._thread.join()
        self._out.join()

    def stat(self, send: Callable[[str, float], None]) -> None:
        with self._lock:
            received, errors = self._metrics_received, self._errors
            self._metrics_received = self._errors = 0
        send("metricsReceived", float(received))
        send("errors", float(errors))
        self._out.stat(send)


def new_udp(name: str, options: UDPOptions, store: Store) -> Optional[UDPReceiver]:
    """Start a UDP receiver, or return None if it is disabled."""
    if not options.enabled:
        return None
    return UDPReceiver(name, options, store)


receiver.register("udp", UDPOptions, new_udp)