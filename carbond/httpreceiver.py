"""Receiver that accepts metrics in HTTP POST bodies."""

from __future__ import annotations

import http.server
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from carbond import parse, receiver
from carbond.points import Points

logger = logging.getLogger("carbond.receiver.http")


@dataclass
class HTTPOptions:
    listen: str = ":2007"
    max_message_size: int = 67108864


def _split_address(listen: str) -> tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {listen!r}")
    return host.strip("[]"), int(port or 0)


class HTTPReceiver(receiver.Receiver):
    """Parses POSTed bodies by Content-Type and hands points to ``store``."""

    def __init__(self, name: str, options: HTTPOptions,
                 store: Optional[Callable[[Points], None]]) -> None:
        self.name = name
        self.out = store
        self.max_message_size = options.max_message_size
        self._lock = threading.Lock()
        self._metrics_received = 0
        self._errors = 0

        owner = self

        class Handler(http.server.BaseHTTPRequestHandler):
            timeout = 10

            def log_message(self, format: str, *args: object) -> None:
                logger.debug(format, *args)

            def _reject(self, message: str) -> None:
                owner._count_error()
                self.send_error(400, explain=message)

            def do_POST(self) -> None:
                owner._handle(self)

            def do_GET(self) -> None:
                self._reject(f"Method {self.command!r} is not supported")

            do_PUT = do_DELETE = do_HEAD = do_PATCH = do_GET

        self._server = http.server.ThreadingHTTPServer(_split_address(options.listen), Handler)
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def _count_error(self) -> None:
        with self._lock:
            self._errors += 1

    def _handle(self, request: http.server.BaseHTTPRequestHandler) -> None:
        length = int(request.headers.get("Content-Length") or 0)
        if length > self.max_message_size:
            request._reject(
                f"Message too long. Max allowed message size is {self.max_message_size}")
            return
        try:
            body = request.rfile.read(length)
        except OSError as exc:
            request._reject(f"Read request failed: {exc}")
            return

        content_type = request.headers.get("Content-Type", "")
        parser = {
            "application/python-pickle": parse.pickle,
            "application/protobuf": parse.protobuf,
        }.get(content_type, parse.plain)
        try:
            data = parser(body)
        except parse.ParseError:
            request._reject("Parse failed")
            return

        count = 0
        for points in data:
            count += len(points.data)
            if self.out is not None:
                self.out(points)
        with self._lock:
            self._metrics_received += count

        request.send_response(200)
        request.send_header("Content-Length", "0")
        request.end_headers()

    def address(self) -> tuple[str, int]:
        """The bound (host, port)."""
        return self._server.server_address[:2]

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()

    def stat(self, send: Callable[[str, float], None]) -> None:
        with self._lock:
            received, errors = self._metrics_received, self._errors
            self._metrics_received = self._errors = 0
        send("metricsReceived", float(received))
        send("errors", float(errors))


receiver.register("http", HTTPOptions, HTTPReceiver)