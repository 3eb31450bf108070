"""Writes cached points to whisper files on disk."""

from __future__ import annotations

import enum
import errno
import logging
import os
import queue
import struct
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

from carbond.aggregation import AggregationMethod, WhisperAggregation
from carbond.normalize import file_path
from carbond.points import Points
from carbond.schemas import Retention, WhisperSchemas
from carbond.throttle import ThrottleTicker, TickerClosed

try:
    import fcntl
except ImportError:  # pragma: no cover - platforms without flock
    fcntl = None  # type: ignore[assignment]

STORE_MUTEX_COUNT = 32768

logger = logging.getLogger("carbond.persister")
create_logger = logging.getLogger("carbond.whisper.new")

_META = struct.Struct(">LLfL")
_ARCHIVE_INFO = struct.Struct(">LLL")
_POINT = struct.Struct(">Ld")
_ZERO_CHUNK = 1 << 16
_POLL_INTERVAL = 0.05

StoreFunc = Callable[[str], None]


def fnv32(key: str) -> int:
    """32-bit FNV-1 hash of the UTF-8 bytes of ``key``."""
    value = 2166136261
    for byte in key.encode("utf-8"):
        value = (value * 16777619) & 0xFFFFFFFF
        value ^= byte
    return value


class ThrottleMode(enum.Enum):
    """Outcome of the metric-creation rate limit."""

    OFF = 0
    SOFT = 1
    HARD = 2

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class _Archive:
    offset: int
    seconds_per_point: int
    points: int

    @property
    def retention(self) -> int:
        return self.seconds_per_point * self.points


def _lock(fh: BinaryIO, flock: bool) -> None:
    if flock and fcntl is not None:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)


def _validate_retentions(retentions: list[Retention]) -> None:
    if not retentions:
        raise ValueError("no retentions")
    for index, retention in enumerate(retentions):
        if retention.seconds_per_point <= 0 or retention.number_of_points <= 0:
            raise ValueError(f"invalid retention at index {index}")
        if index == 0:
            continue
        previous = retentions[index - 1]
        if previous.seconds_per_point == retention.seconds_per_point:
            raise ValueError("a whisper database may not be configured having two archives with the same precision")
        if retention.seconds_per_point % previous.seconds_per_point:
            raise ValueError("higher precision archives' precision must evenly divide all lower precision archives' precision")
        if (previous.seconds_per_point * previous.number_of_points
                >= retention.seconds_per_point * retention.number_of_points):
            raise ValueError("lower precision archives must cover larger time intervals than higher precision archives")
        if previous.number_of_points < retention.seconds_per_point // previous.seconds_per_point:
            raise ValueError("each archive must have at least enough points to consolidate to the next archive")


def _aggregate(method: AggregationMethod, values: list[float]) -> float:
    if method is AggregationMethod.SUM:
        return sum(values)
    if method is AggregationMethod.LAST:
        return values[-1]
    if method is AggregationMethod.MAX:
        return max(values)
    if method is AggregationMethod.MIN:
        return min(values)
    return sum(values) / len(values)


class _WhisperFile:
    """An open whisper database in the standard uncompressed layout."""

    extended = False

    def __init__(self, fh: BinaryIO, method: AggregationMethod, x_files_factor: float,
                 archives: list[_Archive]) -> None:
        self._fh = fh
        self.method = method
        self.x_files_factor = x_files_factor
        self.archives = archives

    @classmethod
    def open(cls, path: str, flock: bool = False) -> "_WhisperFile":
        fh = open(path, "r+b")
        try:
            _lock(fh, flock)
            raw = fh.read(_META.size)
            if len(raw) < _META.size:
                raise ValueError("unable to read whisper header")
            method, _, x_files_factor, count = _META.unpack(raw)
            if count == 0:
                raise ValueError("whisper file has no archives")
            infos = fh.read(_ARCHIVE_INFO.size * count)
            if len(infos) < _ARCHIVE_INFO.size * count:
                raise ValueError("unable to read archive information")
            archives = [
                _Archive(*_ARCHIVE_INFO.unpack_from(infos, i * _ARCHIVE_INFO.size))
                for i in range(count)
            ]
            return cls(fh, AggregationMethod(method), x_files_factor, archives)
        except BaseException:
            fh.close()
            raise

    @classmethod
    def create(cls, path: str, retentions: list[Retention], method: AggregationMethod,
               x_files_factor: float, sparse: bool = False, flock: bool = False,
               compressed: bool = False) -> "_WhisperFile":
        if compressed:
            raise ValueError("compressed whisper files are not supported")
        ordered = sorted(retentions, key=lambda r: r.seconds_per_point)
        _validate_retentions(ordered)

        header_size = _META.size + _ARCHIVE_INFO.size * len(ordered)
        offset = header_size
        archives = []
        for retention in ordered:
            archives.append(_Archive(offset, retention.seconds_per_point, retention.number_of_points))
            offset += retention.number_of_points * _POINT.size

        fh = open(path, "x+b")
        try:
            _lock(fh, flock)
            max_retention = max(a.retention for a in archives)
            fh.write(_META.pack(int(method), max_retention, x_files_factor, len(archives)))
            for archive in archives:
                fh.write(_ARCHIVE_INFO.pack(archive.offset, archive.seconds_per_point, archive.points))
            if sparse:
                fh.seek(offset - 1)
                fh.write(b"\0")
            else:
                remaining = offset - header_size
                while remaining > 0:
                    size = min(remaining, _ZERO_CHUNK)
                    fh.write(bytes(size))
                    remaining -= size
            fh.flush()
        except BaseException:
            fh.close()
            raise
        return cls(fh, method, x_files_factor, archives)

    def close(self) -> None:
        self._fh.close()

    def _read_point(self, offset: int) -> tuple[int, float]:
        self._fh.seek(offset)
        raw = self._fh.read(_POINT.size)
        if len(raw) < _POINT.size:
            return 0, 0.0
        return _POINT.unpack(raw)

    def _write_point(self, offset: int, timestamp: int, value: float) -> None:
        self._fh.seek(offset)
        self._fh.write(_POINT.pack(timestamp & 0xFFFFFFFF, value))

    def _base(self, archive: _Archive) -> int:
        return self._read_point(archive.offset)[0]

    @staticmethod
    def _slot(archive: _Archive, base: int, timestamp: int) -> int:
        index = ((timestamp - base) // archive.seconds_per_point) % archive.points
        return archive.offset + index * _POINT.size

    def update_many(self, points: list[tuple[int, float]]) -> None:
        """Write points to the most precise archive covering their age."""
        now = int(time.time())
        index = 0
        current: list[tuple[int, float]] = []
        for timestamp, value in sorted(points, key=lambda p: p[0], reverse=True):
            age = now - timestamp
            while index < len(self.archives) and self.archives[index].retention < age:
                if current:
                    self._archive_update(index, current[::-1])
                    current = []
                index += 1
            if index >= len(self.archives):
                break
            current.append((timestamp, value))
        if index < len(self.archives) and current:
            self._archive_update(index, current[::-1])
        self._fh.flush()

    def _archive_update(self, index: int, points: list[tuple[int, float]]) -> None:
        archive = self.archives[index]
        step = archive.seconds_per_point
        aligned: dict[int, float] = {}
        for timestamp, value in points:
            aligned[timestamp - timestamp % step] = value

        base = self._base(archive) or min(aligned)
        for timestamp, value in aligned.items():
            self._write_point(self._slot(archive, base, timestamp), timestamp, value)

        higher = archive
        for lower in self.archives[index + 1:]:
            intervals = sorted({t - t % lower.seconds_per_point for t in aligned})
            propagated = False
            for interval in intervals:
                if self._propagate(interval, higher, lower):
                    propagated = True
            if not propagated:
                break
            higher = lower

    def _propagate(self, interval: int, higher: _Archive, lower: _Archive) -> bool:
        higher_base = self._base(higher)
        if higher_base == 0:
            return False
        count = lower.seconds_per_point // higher.seconds_per_point
        known = []
        for step in range(count):
            expected = interval + step * higher.seconds_per_point
            timestamp, value = self._read_point(self._slot(higher, higher_base, expected))
            if timestamp == expected & 0xFFFFFFFF:
                known.append(value)
        if not known or len(known) / count < self.x_files_factor:
            return False
        lower_base = self._base(lower) or interval
        self._write_point(self._slot(lower, lower_base, interval), interval,
                          _aggregate(self.method, known))
        return True


def _simplify_error(exc: BaseException) -> str:
    if isinstance(exc, OSError) and exc.strerror:
        return exc.strerror
    return str(exc)


class Whisper:
    """Pulls metrics from the cache and writes them to ``*.wsp`` files.

    ``recv(exit_event)`` returns the next metric name, or an empty string once
    ``exit_event`` is set. ``pop(metric)`` returns its Points or None.
    ``confirm(points)`` is called after points are written, and
    ``pop_confirm(metric)`` drops a metric that can never be stored.
    """

    def __init__(
        self,
        root_path: str,
        schemas: Optional[WhisperSchemas],
        aggregation: Optional[WhisperAggregation],
        recv: Callable[[threading.Event], str],
        pop: Callable[[str], Optional[Points]],
        confirm: Optional[Callable[[Points], None]] = None,
        pop_confirm: Optional[Callable[[str], object]] = None,
    ) -> None:
        self.root_path = root_path
        self.schemas = schemas
        self.aggregation = aggregation
        self.recv = recv
        self.pop = pop
        self.confirm = confirm
        self.pop_confirm = pop_confirm

        self.max_updates_per_second = 0
        self.max_creates_per_second = 0
        self.hard_max_creates_per_second = False
        self.sparse = False
        self.flock = False
        self.compressed = False
        self.hash_filenames = False
        self.remove_empty_file = False
        self.tags_enabled = False
        self.tagged_fn: Optional[Callable[[str, bool], None]] = None
        self.mock_store: Optional[Callable[[], tuple[StoreFunc, Optional[Callable[[], None]]]]] = None
        self._workers = 1

        self._counters = {
            "created": 0,
            "throttled_creates": 0,
            "update_operations": 0,
            "committed_points": 0,
            "extended": 0,
        }
        self._counter_lock = threading.Lock()
        self._store_locks = [threading.Lock() for _ in range(STORE_MUTEX_COUNT)]

        self._state_lock = threading.Lock()
        self._running = False
        self._exit = threading.Event()
        self._threads: list[threading.Thread] = []
        self._throttle_ticker: Optional[ThrottleTicker] = None
        self._max_creates_ticker: Optional[ThrottleTicker] = None

    @property
    def workers(self) -> int:
        return self._workers

    @workers.setter
    def workers(self, count: int) -> None:
        self._workers = max(count, 1)

    def _count(self, name: str, amount: int = 1) -> None:
        with self._counter_lock:
            self._counters[name] += amount

    def _metric_path(self, metric: str) -> str:
        if self.tags_enabled and ";" in metric:
            return file_path(self.root_path, metric, self.hash_filenames) + ".wsp"
        return os.path.join(self.root_path, metric.replace(".", "/") + ".wsp")

    def _drop(self, metric: str) -> None:
        if self.pop_confirm is not None:
            self.pop_confirm(metric)

    def store(self, metric: str) -> None:
        """Write the pending points of ``metric``, creating its file if needed."""
        with self._store_locks[fnv32(metric) % STORE_MUTEX_COUNT]:
            self._store(metric)

    def _store(self, metric: str) -> None:
        path = self._metric_path(metric)
        tagged = self.tags_enabled and self.tagged_fn is not None and ";" in metric

        whisper: Optional[_WhisperFile] = None
        try:
            whisper = _WhisperFile.open(path, self.flock)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as exc:
            # Files created but never written (e.g. after a crash) are
            # treated as missing when remove_empty_file is set.
            size: Optional[int] = None
            try:
                size = os.stat(path).st_size
            except OSError as stat_exc:
                logger.error("failed to stat whisper file path=%s: %s", path, _simplify_error(stat_exc))
            if not self.remove_empty_file or size is None or size > 0:
                logger.error("failed to open whisper file path=%s: %s", path, _simplify_error(exc))
                if isinstance(exc, OSError) and exc.errno == errno.ENAMETOOLONG:
                    self._drop(metric)
                return
            try:
                os.remove(path)
            except OSError as rm_exc:
                logger.error("failed to delete empty whisper file path=%s: %s", path, _simplify_error(rm_exc))
                self._drop(metric)
                return
            logger.warning("deleted empty whisper file path=%s", path)

        if whisper is None:
            whisper = self._create(metric, path, tagged)
            if whisper is None:
                return

        try:
            values = self.pop(metric)
            if values is None:
                return
            try:
                self._count("committed_points", len(values.data))
                self._count("update_operations")
                try:
                    whisper.update_many([(p.timestamp, p.value) for p in values.data])
                except Exception as exc:
                    logger.error("fail to update metric path=%s: %s", path, exc)
                if whisper.extended:
                    self._count("extended")
                    logger.info("cwhisper file has extended path=%s", path)
            finally:
                if self.confirm is not None:
                    self.confirm(values)
        finally:
            whisper.close()

        if tagged:
            self.tagged_fn(metric, False)

    def _create(self, metric: str, path: str, tagged: bool) -> Optional[_WhisperFile]:
        mode = self.max_creates_throttling()
        if mode is not ThrottleMode.OFF:
            if mode is ThrottleMode.HARD:
                self._drop(metric)
            self._count("throttled_creates")
            logger.error("metric creation throttled name=%s operation=create dropped=%s",
                         metric, mode is ThrottleMode.HARD)
            return None

        schema = self.schemas.match(metric) if self.schemas is not None else None
        if schema is None:
            logger.error("no storage schema defined for metric %s", metric)
            return None

        aggr = self.aggregation.match(metric) if self.aggregation is not None else None
        if aggr is None:
            logger.error("no storage aggregation defined for metric %s", metric)
            return None

        directory = os.path.dirname(path)
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            logger.error("mkdir failed dir=%s path=%s: %s", directory, path, _simplify_error(exc))
            return None

        compressed = self.compressed if schema.compressed is None else schema.compressed
        try:
            whisper = _WhisperFile.create(
                path, schema.retentions, aggr.aggregation_method, aggr.x_files_factor,
                sparse=self.sparse, flock=self.flock, compressed=compressed,
            )
        except (OSError, ValueError) as exc:
            logger.error(
                "create new whisper file failed path=%s retention=%s schema=%s aggregation=%s "
                "xFilesFactor=%s method=%s compressed=%s: %s",
                path, schema.retention_str, schema.name, aggr.name, aggr.x_files_factor,
                aggr.aggregation_method_str, compressed, _simplify_error(exc),
            )
            return None

        if tagged:
            self.tagged_fn(metric, True)

        create_logger.debug(
            "created path=%s retention=%s schema=%s aggregation=%s xFilesFactor=%s method=%s compressed=%s",
            path, schema.retention_str, schema.name, aggr.name, aggr.x_files_factor,
            aggr.aggregation_method_str, compressed,
        )
        self._count("created")
        return whisper

    def max_creates_throttling(self) -> ThrottleMode:
        """Decide whether a new file may be created now."""
        if self._max_creates_ticker is None:
            raise RuntimeError("persister is not started")
        if self.hard_max_creates_per_second:
            try:
                keep = self._max_creates_ticker.get()
            except TickerClosed:
                return ThrottleMode.HARD
            return ThrottleMode.OFF if keep else ThrottleMode.HARD
        try:
            self._max_creates_ticker.get(block=False)
        except queue.Empty:
            return ThrottleMode.SOFT
        except TickerClosed:
            return ThrottleMode.OFF
        return ThrottleMode.OFF

    def _wait_throttle(self) -> bool:
        while not self._exit.is_set():
            try:
                self._throttle_ticker.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            except TickerClosed:
                return True
            return True
        return False

    def _worker(self) -> None:
        store: StoreFunc = self.store
        done: Optional[Callable[[], None]] = None
        if self.mock_store is not None:
            store, done = self.mock_store()

        while self._wait_throttle():
            metric = self.recv(self._exit)
            if not metric:
                return
            store(metric)
            if done is not None:
                done()

    def stat(self, send: Callable[[str, float], None]) -> None:
        """Report counters through ``send`` and reset them."""
        with self._counter_lock:
            counters = dict(self._counters)
            for key in self._counters:
                self._counters[key] = 0

        updates = counters["update_operations"]
        committed = counters["committed_points"]
        send("updateOperations", float(updates))
        send("committedPoints", float(committed))
        send("pointsPerUpdate", committed / updates if updates > 0 else 0.0)
        send("created", float(counters["created"]))
        send("throttledCreates", float(counters["throttled_creates"]))
        send("maxCreatesPerSecond", float(self.max_creates_per_second))
        send("maxUpdatesPerSecond", float(self.max_updates_per_second))
        send("workers", float(self._workers))
        send("extended", float(counters["extended"]))

    def start(self) -> None:
        """Start the rate limiters and the worker threads."""
        with self._state_lock:
            if self._running:
                raise RuntimeError("persister already started")
            self._running = True
            self._exit = threading.Event()
            self._throttle_ticker = ThrottleTicker.soft(self.max_updates_per_second)
            if self.hard_max_creates_per_second:
                self._max_creates_ticker = ThrottleTicker.hard(self.max_creates_per_second)
            else:
                self._max_creates_ticker = ThrottleTicker.soft(self.max_creates_per_second)
            self._threads = [
                threading.Thread(target=self._worker, name=f"persister-{i}", daemon=True)
                for i in range(self._workers)
            ]
            for thread in self._threads:
                thread.start()

    def stop(self) -> None:
        """Signal the workers to exit and wait for them."""
        with self._state_lock:
            if not self._running:
                return
            self._running = False
            threads, self._threads = self._threads, []
        self._exit.set()
        for thread in threads:
            thread.join()
        self._throttle_ticker.stop()
        self._max_creates_ticker.stop()

    def __enter__(self) -> "Whisper":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def get_retention_period(self, metric: str) -> Optional[int]:
        """Seconds per point of the most precise archive, or None without a schema."""
        schema = self.schemas.match(metric) if self.schemas is not None else None
        if schema is None:
            return None
        return schema.retentions[0].seconds_per_point

    def get_aggr_conf(self, metric: str) -> Optional[tuple[str, float]]:
        """Name and xFilesFactor of the aggregation rule for ``metric``."""
        aggr = self.aggregation.match(metric) if self.aggregation is not None else None
        if aggr is None:
            return None
        return aggr.name, aggr.x_files_factor