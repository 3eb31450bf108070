"""Forwarding of tagged series to a remote tag database."""

from __future__ import annotations

import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional

from carbond.tagqueue import Queue, QueueStats

logger = logging.getLogger("carbond.tags")


@dataclass
class TagsOptions:
    """Where the queue lives and how to reach the tag database."""

    local_path: str
    tag_db: str = "http://127.0.0.1:8000"
    tag_db_timeout: float = 1.0
    tag_db_chunk_size: int = 32
    tag_db_update_interval: int = 100


def _make_sender(options: TagsOptions) -> Callable[[list[str]], None]:
    try:
        parts = urllib.parse.urlsplit(options.tag_db)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"invalid tag database url {options.tag_db!r}")
    except ValueError as exc:
        url_error = exc

        def send_bad(paths: list[str]) -> None:
            time.sleep(1.0)
            logger.error("bad tag url %s: %s", options.tag_db, url_error)
            raise url_error

        return send_bad

    target = urllib.parse.urlunsplit(parts._replace(path="/tags/tagMultiSeries", fragment=""))

    def send(paths: list[str]) -> None:
        body = urllib.parse.urlencode({"path": paths}, doseq=True).encode("ascii")
        request = urllib.request.Request(
            target,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=options.tag_db_timeout) as resp:
                resp.read()
                status = resp.status
        except urllib.error.HTTPError as exc:
            logger.error("failed to post tags: status-code=%s", exc.code)
            raise RuntimeError(f"bad status code: {exc.code}") from None
        except OSError as exc:
            logger.error("failed to post tags: %s", exc)
            raise
        if status != 200:
            logger.error("failed to post tags: status-code=%s", status)
            raise RuntimeError(f"bad status code: {status}")

    return send


class Tags:
    """Queues tagged series on disk and sends them to the tag database."""

    def __init__(self, options: TagsOptions) -> None:
        self.options = options
        self._interval = max(options.tag_db_update_interval, 1)
        self._counter = 0
        self._counter_lock = threading.Lock()
        self.queue: Optional[Queue] = None
        self.queue_error: Optional[BaseException] = None
        try:
            self.queue = Queue(options.local_path, _make_sender(options), options.tag_db_chunk_size)
        except Exception as exc:
            self.queue_error = exc

    def add(self, value: str, now: bool = False) -> None:
        """Queue ``value`` now, or on every update-interval-th call otherwise."""
        if self.queue is None:
            logger.error("queue database not initialized: %s", self.queue_error)
            return
        with self._counter_lock:
            self._counter += 1
            due = self._counter % self._interval == 0
        if now or due:
            self.queue.add(value)

    def stop(self) -> None:
        if self.queue is not None:
            self.queue.stop()

    def __enter__(self) -> "Tags":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def stat(self, send: Callable[[str, float], None]) -> None:
        """Report and reset queue counters, then report the queue lag."""
        if self.queue is None:
            raise RuntimeError("queue database not initialized")
        stats, self.queue.stats = self.queue.stats, QueueStats()
        send("queuePutErrors", float(stats.put_errors))
        send("queuePutCount", float(stats.put_count))
        send("queueDeleteErrors", float(stats.delete_errors))
        send("queueDeleteCount", float(stats.delete_count))
        send("tagdbSendFail", float(stats.send_fail))
        send("tagdbSendSuccess", float(stats.send_success))
        send("queueLag", self.queue.lag())