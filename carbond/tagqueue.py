"""Persistent queue of tagged series waiting to be sent to the tag database."""

from __future__ import annotations

import logging
import os
import sqlite3
import struct
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

logger = logging.getLogger("carbond.tags")

_KEY_PREFIX = struct.Struct(">Q")
_FETCH_BATCH = 1000


@dataclass
class QueueStats:
    """Counters of queue activity since they were last reset."""

    put_errors: int = 0
    put_count: int = 0
    delete_errors: int = 0
    delete_count: int = 0
    send_fail: int = 0
    send_success: int = 0


def _open_database(queue_dir: str) -> sqlite3.Connection:
    os.makedirs(queue_dir, exist_ok=True)
    conn = sqlite3.connect(
        os.path.join(queue_dir, "queue.db"), check_same_thread=False, isolation_level=None
    )
    try:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS queue (key BLOB PRIMARY KEY, value BLOB NOT NULL)"
        )
    except sqlite3.Error:
        conn.close()
        raise
    return conn


class Queue:
    """Series are stored on disk keyed by arrival time and sent in order.

    ``send`` receives lists of at most ``send_chunk`` series and raises on
    failure; failed series stay queued and are retried later.
    """

    def __init__(
        self,
        root_path: str,
        send: Callable[[list[str]], None],
        send_chunk: int = 1,
    ) -> None:
        if send is None:
            raise ValueError("send callback not set")

        self.path = os.path.join(root_path, "queue")
        self._db = self._open(root_path)
        self._send = send
        self._send_chunk = max(send_chunk, 1)
        self.stats = QueueStats()
        self._stats_lock = threading.Lock()
        self._db_lock = threading.Lock()
        self._changed = threading.Event()
        self._exit = threading.Event()
        self._stopped = False
        self._thread = threading.Thread(
            target=self._send_worker, name="tags-queue", daemon=True
        )
        self._thread.start()

    def _open(self, root_path: str) -> sqlite3.Connection:
        try:
            return _open_database(self.path)
        except (sqlite3.Error, OSError) as exc:
            logger.error("can't open queue database %s: %s", self.path, exc)
            if not os.path.exists(self.path):
                raise

        logger.info("queue directory %s exists, try to recover", self.path)
        move_to = os.path.join(root_path, f"queue_corrupted_{time.time_ns()}")
        try:
            os.rename(self.path, move_to)
        except OSError as exc:
            logger.error("move corrupted queue to %s failed: %s", move_to, exc)
            raise

        try:
            return _open_database(self.path)
        except (sqlite3.Error, OSError) as exc:
            logger.error("can't create new queue database %s: %s", self.path, exc)
            raise

    def __enter__(self) -> "Queue":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            setattr(self.stats, name, getattr(self.stats, name) + amount)

    def stop(self) -> None:
        """Stop the sender and close the database."""
        if self._stopped:
            return
        self._stopped = True
        self._exit.set()
        self._changed.set()
        self._thread.join()
        with self._db_lock:
            self._db.close()

    def add(self, metric: str) -> None:
        """Queue a tagged series; names without tags are ignored."""
        if ";" not in metric:
            return

        key = _KEY_PREFIX.pack(time.time_ns()) + metric.encode("utf-8")
        try:
            with self._db_lock:
                self._db.execute(
                    "INSERT OR REPLACE INTO queue (key, value) VALUES (?, ?)", (key, b"{}")
                )
        except sqlite3.Error as exc:
            self._count("put_errors")
            logger.error("write to queue database failed: %s", exc)
        finally:
            self._count("put_count")

        self._changed.set()

    def lag(self) -> float:
        """Seconds since the oldest queued series was added, 0.0 if empty."""
        with self._db_lock:
            row = self._db.execute("SELECT key FROM queue ORDER BY key LIMIT 1").fetchone()
        if row is None:
            return 0.0
        key = bytes(row[0])
        if len(key) < 8:
            return 0.0
        (added,) = _KEY_PREFIX.unpack(key[:8])
        return (time.time_ns() - added) / 1e9

    def _keys(self) -> Iterator[bytes]:
        last: Optional[bytes] = None
        while True:
            with self._db_lock:
                if last is None:
                    rows = self._db.execute(
                        "SELECT key FROM queue ORDER BY key LIMIT ?", (_FETCH_BATCH,)
                    ).fetchall()
                else:
                    rows = self._db.execute(
                        "SELECT key FROM queue WHERE key > ? ORDER BY key LIMIT ?",
                        (last, _FETCH_BATCH),
                    ).fetchall()
            if not rows:
                return
            for (key,) in rows:
                yield bytes(key)
            last = bytes(rows[-1][0])

    def _delete(self, key: bytes) -> None:
        try:
            with self._db_lock:
                self._db.execute("DELETE FROM queue WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            self._count("delete_errors")
            logger.error("delete from queue database failed: %s", exc)
        finally:
            self._count("delete_count")

    def _flush(self, batch: list[bytes]) -> bool:
        if not batch:
            return True
        used = len(batch)
        series = [key[8:].decode("utf-8", "replace") for key in batch]
        try:
            self._send(series)
        except Exception as exc:
            logger.error("failed to send tagged series: %s", exc)
            self._count("send_fail", used)
            batch.clear()
            return False

        self._count("send_success", used)
        for key in batch:
            self._delete(key)
        batch.clear()
        return True

    def _send_all(self) -> None:
        batch: list[bytes] = []
        for key in self._keys():
            if self._exit.is_set():
                return
            if len(key) < 9:
                self._delete(key)
                continue
            batch.append(key)
            if len(batch) >= self._send_chunk and not self._flush(batch):
                time.sleep(0.1)
        self._flush(batch)

    def _send_worker(self) -> None:
        while True:
            self._changed.wait(1.0)
            if self._exit.is_set():
                return
            self._changed.clear()
            try:
                self._send_all()
            except sqlite3.Error as exc:
                logger.error("reading queue database failed: %s", exc)