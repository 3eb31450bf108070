import pytest

from carbond.aggregation import (
    AggregationMethod,
    WhisperAggregation,
    read_whisper_aggregation,
)

CONFIG = """
[min]
pattern = \\.min$
xFilesFactor = 0.1
aggregationMethod = min

[sum]
pattern = \\.count$
xFilesFactor = 0
aggregationMethod = sum

[avg]
pattern = ^servers\\.
xFilesFactor = 0.3
aggregationMethod = avg
"""


def read(tmp_path, content):
    path = tmp_path / "aggregation.conf"
    path.write_text(content)
    return read_whisper_aggregation(str(path))


def test_default_rule():
    aggregation = WhisperAggregation()
    item = aggregation.match("anything.at.all")
    assert item.name == "default"
    assert item.x_files_factor == 0.5
    assert item.aggregation_method is AggregationMethod.AVERAGE
    assert item.aggregation_method_str == "average"


def test_read_keeps_file_order(tmp_path):
    aggregation = read(tmp_path, CONFIG)
    assert [item.name for item in aggregation.data] == ["min", "sum", "avg"]


def test_match_picks_first_rule(tmp_path):
    aggregation = read(tmp_path, CONFIG)
    item = aggregation.match("servers.host.cpu.min")
    assert item.name == "min"
    assert item.aggregation_method is AggregationMethod.MIN
    assert item.x_files_factor == 0.1


def test_match_alias_and_fallback(tmp_path):
    aggregation = read(tmp_path, CONFIG)
    item = aggregation.match("servers.host.load")
    assert item.aggregation_method is AggregationMethod.AVERAGE
    assert item.aggregation_method_str == "avg"
    assert aggregation.match("other.metric") is aggregation.default


@pytest.mark.parametrize(
    "method, expected",
    [
        ("average", AggregationMethod.AVERAGE),
        ("sum", AggregationMethod.SUM),
        ("last", AggregationMethod.LAST),
        ("max", AggregationMethod.MAX),
        ("min", AggregationMethod.MIN),
    ],
)
def test_methods(tmp_path, method, expected):
    aggregation = read(
        tmp_path, f"[x]\npattern = .*\nxFilesFactor = 0.5\naggregationMethod = {method}\n"
    )
    assert aggregation.match("a.b").aggregation_method is expected


def test_unknown_method(tmp_path):
    with pytest.raises(ValueError, match="unknown aggregation method 'median'"):
        read(tmp_path, "[x]\npattern = .*\nxFilesFactor = 0.5\naggregationMethod = median\n")


def test_bad_x_files_factor(tmp_path):
    with pytest.raises(ValueError, match="xFilesFactor"):
        read(tmp_path, "[x]\npattern = .*\nxFilesFactor = half\naggregationMethod = sum\n")


def test_missing_x_files_factor(tmp_path):
    with pytest.raises(ValueError, match="xFilesFactor"):
        read(tmp_path, "[x]\npattern = .*\naggregationMethod = sum\n")


def test_bad_pattern(tmp_path):
    with pytest.raises(ValueError, match="pattern"):
        read(tmp_path, "[x]\npattern = ^a(b\nxFilesFactor = 0.5\naggregationMethod = sum\n")


def test_missing_file(tmp_path):
    with pytest.raises(OSError):
        read_whisper_aggregation(str(tmp_path / "missing.conf"))