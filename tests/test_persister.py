import os
import queue
import re
import struct
import threading
import time

import pytest

from carbond.aggregation import (
    AggregationMethod,
    WhisperAggregation,
    WhisperAggregationItem,
)
from carbond.normalize import file_path
from carbond.persister import ThrottleMode, Whisper, fnv32
from carbond.points import now_point, one_point
from carbond.schemas import Retention, Schema, WhisperSchemas


def idle_recv(exit_event):
    exit_event.wait()
    return ""


def make_recv_pop(source):
    cache = {}
    lock = threading.Lock()

    def recv(exit_event):
        while not exit_event.is_set():
            try:
                p = source.get(timeout=0.01)
            except queue.Empty:
                continue
            with lock:
                cache[p.metric] = p
            return p.metric
        return ""

    def pop(metric):
        with lock:
            return cache.pop(metric, None)

    return recv, pop


def default_schemas():
    return WhisperSchemas(
        [
            Schema(
                name="default",
                pattern=re.compile(".*"),
                retention_str="60s:5,5m:5",
                retentions=[Retention(60, 5), Retention(300, 5)],
            )
        ]
    )


class Store:
    def __init__(self, entries):
        self.entries = dict(entries)
        self.popped = []
        self.confirmed = []

    def pop(self, metric):
        self.popped.append(metric)
        return self.entries.pop(metric, None)

    def confirm(self, points):
        self.confirmed.append(points)


@pytest.fixture
def make_persister(tmp_path):
    created = []

    def factory(schemas=None, aggregation=None, entries=(), **attrs):
        store = Store(entries)
        p = Whisper(
            str(tmp_path),
            schemas,
            aggregation,
            idle_recv,
            store.pop,
            store.confirm,
            None,
        )
        for key, value in attrs.items():
            setattr(p, key, value)
        p.start()
        created.append(p)
        return p, store

    yield factory
    for p in created:
        p.stop()


def collect_stat(p):
    out = {}
    p.stat(lambda name, value: out.__setitem__(name, value))
    return out


def test_fnv32_values():
    assert fnv32("") == 2166136261
    assert fnv32("a") == 0x050C5D7E


def test_throttle_mode_str(make_persister):
    hard, _ = make_persister(max_creates_per_second=0, hard_max_creates_per_second=True)
    assert str(hard.max_creates_throttling()) == "hard"
    soft, _ = make_persister(max_creates_per_second=1)
    assert str(soft.max_creates_throttling()) == "soft"
    off, _ = make_persister(max_creates_per_second=0)
    assert str(off.max_creates_throttling()) == "off"


def test_max_creates_soft_throttling_zero(make_persister):
    p, _ = make_persister(max_creates_per_second=0)
    assert p.max_creates_throttling() is ThrottleMode.OFF


def test_max_creates_hard_throttling_zero(make_persister):
    p, _ = make_persister(max_creates_per_second=0, hard_max_creates_per_second=True)
    assert p.max_creates_throttling() is ThrottleMode.HARD


def test_max_creates_hard_throttling_one(make_persister):
    p, _ = make_persister(max_creates_per_second=1, hard_max_creates_per_second=True)
    assert p.max_creates_throttling() is ThrottleMode.OFF
    assert p.max_creates_throttling() is ThrottleMode.HARD


def test_max_creates_hard_throttling_many(make_persister):
    p, _ = make_persister(max_creates_per_second=1, hard_max_creates_per_second=True)
    assert p.max_creates_throttling() is ThrottleMode.OFF
    results = [p.max_creates_throttling() for _ in range(10)]
    assert results == [ThrottleMode.HARD] * 10


def test_throttling_requires_start(tmp_path):
    p = Whisper(str(tmp_path), None, None, idle_recv, lambda m: None)
    with pytest.raises(RuntimeError):
        p.max_creates_throttling()


def test_workers_clamped(tmp_path):
    p = Whisper(str(tmp_path), None, None, idle_recv, lambda m: None)
    p.workers = 0
    assert p.workers == 1
    p.workers = 4
    assert p.workers == 4


@pytest.mark.parametrize("rate", [0, 4000])
@pytest.mark.parametrize("workers", [1, 4])
def test_gracefully_stop(tmp_path, rate, workers):
    source = queue.Queue(maxsize=1000)
    recv, pop = make_recv_pop(source)
    p = Whisper(str(tmp_path), None, None, recv, pop)
    p.max_updates_per_second = rate
    p.workers = workers

    store_wait = threading.Event()
    count_lock = threading.Lock()
    stored = [0]

    def store(metric):
        pop(metric)
        store_wait.wait()
        with count_lock:
            stored[0] += 1

    p.mock_store = lambda: (store, None)
    p.start()

    sent = 0
    while True:
        try:
            source.put_nowait(now_point(str(sent), float(sent)))
        except queue.Full:
            break
        sent += 1

    time.sleep(0.01)
    store_wait.set()
    p.stop()

    assert stored[0] + source.qsize() == sent


@pytest.mark.parametrize("rate", [0, 4000])
@pytest.mark.parametrize("workers", [1, 4])
def test_stop_empty_throttled_persister(tmp_path, rate, workers):
    recv, pop = make_recv_pop(queue.Queue(maxsize=10))
    p = Whisper(str(tmp_path), None, None, recv, pop)
    p.max_updates_per_second = rate
    p.workers = workers
    p.mock_store = lambda: (lambda metric: None, None)
    p.start()
    time.sleep(0.01)

    start = time.monotonic()
    p.stop()
    assert time.monotonic() - start < 1.0

    stats = collect_stat(p)
    assert stats["updateOperations"] == 0.0
    assert stats["workers"] == float(workers)
    assert stats["maxUpdatesPerSecond"] == float(rate)


def test_store_creates_file(make_persister, tmp_path):
    now = int(time.time())
    points = one_point("a.b.c", 42.0, now)
    p, store = make_persister(
        schemas=default_schemas(),
        aggregation=WhisperAggregation(),
        entries={"a.b.c": points},
    )
    p.store("a.b.c")

    path = tmp_path / "a" / "b" / "c.wsp"
    data = path.read_bytes()
    assert len(data) == 16 + 24 + 10 * 12
    method, max_retention, xff, count = struct.unpack(">LLfL", data[:16])
    assert (method, max_retention, xff, count) == (1, 1500, 0.5, 2)
    assert struct.unpack(">LLL", data[16:28]) == (40, 60, 5)
    assert struct.unpack(">LLL", data[28:40]) == (100, 300, 5)
    assert struct.unpack(">Ld", data[40:52]) == (now - now % 60, 42.0)

    assert store.confirmed == [points]
    stats = collect_stat(p)
    assert stats["created"] == 1.0
    assert stats["committedPoints"] == 1.0
    assert stats["updateOperations"] == 1.0
    assert stats["pointsPerUpdate"] == 1.0

    again = collect_stat(p)
    assert again["created"] == 0.0
    assert again["pointsPerUpdate"] == 0.0


def test_store_propagates_to_lower_archive(make_persister, tmp_path):
    now = int(time.time())
    t0 = now - now % 300
    item = WhisperAggregationItem("sum", re.compile(".*"), 0.0, "sum", AggregationMethod.SUM)
    points = one_point("m", 1.0, t0).add(2.0, t0 + 60)
    p, _ = make_persister(
        schemas=default_schemas(),
        aggregation=WhisperAggregation(data=[item]),
        entries={"m": points},
    )
    p.store("m")

    data = (tmp_path / "m.wsp").read_bytes()
    assert struct.unpack(">L", data[:4]) == (int(AggregationMethod.SUM),)
    assert struct.unpack(">Ld", data[40:52]) == (t0, 1.0)
    assert struct.unpack(">Ld", data[52:64]) == (t0 + 60, 2.0)
    assert struct.unpack(">Ld", data[100:112]) == (t0, 3.0)


def test_store_updates_existing_file(make_persister, tmp_path):
    now = int(time.time())
    p, store = make_persister(
        schemas=default_schemas(),
        aggregation=WhisperAggregation(),
        entries={"x": one_point("x", 1.0, now)},
    )
    p.store("x")
    store.entries["x"] = one_point("x", 7.5, now)
    p.store("x")

    data = (tmp_path / "x.wsp").read_bytes()
    assert struct.unpack(">Ld", data[40:52]) == (now - now % 60, 7.5)
    stats = collect_stat(p)
    assert stats["created"] == 1.0
    assert stats["updateOperations"] == 2.0


def test_store_without_schema(make_persister, tmp_path):
    p, store = make_persister(
        schemas=WhisperSchemas(),
        aggregation=WhisperAggregation(),
        entries={"a.b": one_point("a.b", 1.0, int(time.time()))},
    )
    p.store("a.b")
    assert not (tmp_path / "a" / "b.wsp").exists()
    assert store.popped == []
    assert collect_stat(p)["created"] == 0.0


def test_store_tagged_metric(make_persister, tmp_path):
    metric = "cpu.load;host=a"
    calls = []
    p, _ = make_persister(
        schemas=default_schemas(),
        aggregation=WhisperAggregation(),
        entries={metric: one_point(metric, 1.0, int(time.time()))},
        tags_enabled=True,
        tagged_fn=lambda m, created: calls.append((m, created)),
    )
    p.store(metric)
    assert os.path.exists(file_path(str(tmp_path), metric, False) + ".wsp")
    assert calls == [(metric, True), (metric, False)]


def test_store_removes_empty_file(make_persister, tmp_path):
    path = tmp_path / "e.wsp"
    path.write_bytes(b"")
    p, _ = make_persister(
        schemas=default_schemas(),
        aggregation=WhisperAggregation(),
        entries={"e": one_point("e", 1.0, int(time.time()))},
        remove_empty_file=True,
    )
    p.store("e")
    assert path.stat().st_size == 160
    assert collect_stat(p)["created"] == 1.0


def test_store_keeps_empty_file_by_default(make_persister, tmp_path):
    path = tmp_path / "e.wsp"
    path.write_bytes(b"")
    p, store = make_persister(
        schemas=default_schemas(),
        aggregation=WhisperAggregation(),
        entries={"e": one_point("e", 1.0, int(time.time()))},
    )
    p.store("e")
    assert path.stat().st_size == 0
    assert store.popped == []


def test_get_retention_period_and_aggr_conf(tmp_path):
    p = Whisper(str(tmp_path), default_schemas(), WhisperAggregation(), idle_recv, lambda m: None)
    assert p.get_retention_period("any.metric") == 60
    assert p.get_aggr_conf("any.metric") == ("default", 0.5)

    empty = Whisper(str(tmp_path), WhisperSchemas(), None, idle_recv, lambda m: None)
    assert empty.get_retention_period("any.metric") is None
    assert empty.get_aggr_conf("any.metric") is None


def test_stat_reports_settings(tmp_path):
    p = Whisper(str(tmp_path), None, None, idle_recv, lambda m: None)
    p.workers = 3
    p.max_updates_per_second = 100
    p.max_creates_per_second = 5
    stats = collect_stat(p)
    assert stats["workers"] == 3.0
    assert stats["maxUpdatesPerSecond"] == 100.0
    assert stats["maxCreatesPerSecond"] == 5.0
    assert stats["throttledCreates"] == 0.0