# carbond

A library of building blocks for a Graphite/Carbon-compatible metric server.
It has network receivers for the plain line, pickle and protobuf formats.
It has readers for `storage-schemas.conf`, `storage-aggregation.conf` and
`storage-quotas.conf`. A persister writes points to whisper files, and an
on-disk queue sends tagged series to a tag database.

The package needs nothing outside the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Metric points (`carbond.points`)

```python
from carbond.points import one_point, parse_text

p = parse_text("hello.world 42.15 1422698155\n")
assert p == one_point("hello.world", 42.15, 1422698155)
p.add(43.0, 1422698215)
```

- `Points` holds a `metric` name and a list of `Point(value, timestamp)`.
  Its methods are `copy`, `append`, `add` and `lines`. Equality compares the
  name and every value and timestamp.
- `Points.write_to(stream)` writes plain-text lines. `Points.write_binary_to(stream)`
  writes the delta-encoded zig-zag varint format. Both return the number of
  bytes written.
- `read_plain(stream)` and `read_binary(stream)` are generators over a binary
  stream. `read_plain` skips lines that do not parse. It raises `ValueError` if
  the last line has no newline.
- `read_from_file(filename)` reads a file as binary if its name ends in `.bin`,
  and as plain text otherwise.
- `glue(source, chunk_size, chunk_timeout, callback, exit_event=None)` takes
  `Points` from a `queue.Queue` and joins their lines into chunks of at most
  `chunk_size` bytes. It hands a chunk to `callback` when the next line would
  overflow it, every `chunk_timeout` seconds, and when `None` arrives on the
  queue.

## Parsing wire formats (`carbond.parse`)

```python
from carbond import parse

batch = parse.plain(b"a.b 1 1422698155\nc.d 2 1422698155\n")
name, value, timestamp = parse.plain_line(b"metric.name 42 1422642189\n")
```

`parse.pickle(body)` decodes a pickled list of `(name, (timestamp, value), ...)`
entries. It refuses any pickle that references a global. `parse.protobuf(body)`
decodes a carbon `Payload` message. Any malformed input raises
`parse.ParseError`, and its `points` attribute holds what parsed before the
error.

## Storage configuration

```python
from carbond.schemas import read_whisper_schemas, parse_retention_defs
from carbond.aggregation import read_whisper_aggregation
from carbond.quotas import read_whisper_quotas

schemas = read_whisper_schemas("storage-schemas.conf")
schema = schemas.match("carbon.agents.cpu")      # Schema or None
retentions = parse_retention_defs("10s:24h,60s:30d,1h:5y")
rule = read_whisper_aggregation("storage-aggregation.conf").match("x.y")
quotas = read_whisper_quotas("storage-quotas.conf")
```

- Retentions can be given in the new format (`10s:24h`) or the old one
  (`60:43200`, seconds per point and point count). Each becomes a
  `Retention(seconds_per_point, number_of_points)`.
- Schemas are sorted by `priority`, highest first. Schemas with equal priority
  keep the order of the file. A schema may set `compressed = true|false`.
- A metric that no aggregation rule matches gets the default rule: `average`
  with an xFilesFactor of `0.5`. The accepted methods are `average`/`avg`,
  `sum`, `last`, `max` and `min`.
- In quota limits, `max` and `maximum` mean the largest 64-bit integer, and
  commas in numbers are ignored. `dropping-policy` must be `new`, `none` or
  empty.
- All three readers use `carbond.ini.parse_ini_file`. It raises `IniError`
  with the line number when the syntax is wrong.

## Tagged series

```python
from carbond.normalize import normalize, file_path

normalize("some.metric;c=1;b=2;a=3")   # "some.metric;a=3;b=2;c=1"
file_path("/data", "some.metric;tag=value", False)
```

`normalize` sorts tags by key and keeps the last value given for a key.
`file_path` builds the storage path `<root>/_tagged/<hash[:3]>/<hash[3:6]>/<name>`
from the SHA-256 of the name. With `hash_only=True` the last part is the
whole hash.

`carbond.tagqueue.Queue(root_path, send, send_chunk)` keeps tagged series in
an SQLite database under `<root_path>/queue`. A background thread passes them
to `send` in lists of at most `send_chunk`. If `send` raises, the series stay
queued and are tried again. `Queue.lag()` gives the age in seconds of the
oldest queued series.

`carbond.tagdb.Tags(TagsOptions(local_path=...))` puts a `Queue` in front of
an HTTP sender. The sender POSTs `path` form fields to `/tags/tagMultiSeries`
on `tag_db`. `Tags.add(value, now)` queues a series right away when `now` is
true. Otherwise it queues only every `tag_db_update_interval`-th call.

## Receivers

Receivers are registered by protocol name when their module is imported.
They are then built from option dicts through `carbond.receiver.new`:

```python
from carbond import receiver
import carbond.tcpreceiver  # registers "tcp", "pickle" and "protobuf"

rcv = receiver.new("tcp", {"protocol": "tcp", "listen": "127.0.0.1:0"}, print)
print(rcv.address())
rcv.stop()
```

| Protocol   | Module                    | Default listen | Format                             |
|------------|---------------------------|----------------|------------------------------------|
| `tcp`      | `carbond.tcpreceiver`     | `:2003`        | plain lines; optional `gzip` or `snappy` compression |
| `pickle`   | `carbond.tcpreceiver`     | `:2004`        | 4-byte big-endian length prefix + pickle |
| `protobuf` | `carbond.tcpreceiver`     | `:2004`        | 4-byte big-endian length prefix + protobuf |
| `udp`      | `carbond.udpreceiver`     | `:2003`        | plain lines, one or more per datagram |
| `http`     | `carbond.httpreceiver`    | `:2007`        | POST body, parsed by Content-Type  |

Option keys are the option dataclass fields, written with dashes, such as
`buffer-size` and `max-message-size`. `tcp`, `udp` and the framed receivers
return `None` when `enabled` is false. A positive `buffer-size` puts a
bounded queue between the network threads and `store`. Each receiver has
`address()`, `stop()` and `stat(send)`. `stat(send)` reports counters such as
`metricsReceived` and `errors` and then resets them.

## Persister (`carbond.persister`)

`Whisper(root_path, schemas, aggregation, recv, pop, confirm, pop_confirm)`
runs worker threads. Each worker takes metric names from `recv(exit_event)`
and their points from `pop(metric)`, and writes them to `<root>/a/b/c.wsp`.
Tagged names go to `file_path(...)` when `tags_enabled` is set. When a file is
missing, it is created from the matching schema and aggregation rule.

- Writes are paced by `ThrottleTicker` (`carbond.throttle`) at
  `max_updates_per_second`. Zero means no limit.
- File creation is limited by `max_creates_per_second`. A soft limit skips the
  create and leaves the points for later. A hard limit
  (`hard_max_creates_per_second`) drops the metric through `pop_confirm`.
- `stat(send)` reports `updateOperations`, `committedPoints`, `created`,
  `throttledCreates` and related counters.
- `get_retention_period(metric)` and `get_aggr_conf(metric)` look up the
  configuration for a metric.

## What the package does not do

- It has no command-line program and no main configuration file. The
  application wires the receivers, the persister and the tag queue together.
- It has no in-memory cache between the receivers and the persister. `recv`,
  `pop` and `confirm` must be supplied by the caller.
- It has no query or render API for stored data.
- The persister writes only the standard uncompressed whisper layout. A schema
  or setting that asks for compressed files makes the create fail.