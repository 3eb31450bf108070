import pytest

from carbond.quotas import Quota, read_whisper_quotas


def read(tmp_path, content):
    path = tmp_path / "quotas.conf"
    path.write_text(content)
    return read_whisper_quotas(str(path))


def test_read_full_section(tmp_path):
    quotas = read(
        tmp_path,
        """
[sys.app.*]
namespaces = 20
metrics = 1,000,000
logical-size = 250,000,000,000
physical-size = 50,000,000,000
data-points = 500,000,000
throughput = 1,000
dropping-policy = new
stat-metric-prefix = .quota.stats
""",
    )
    assert quotas == [
        Quota(
            pattern="sys.app.*",
            namespaces=20,
            metrics=1000000,
            logical_size=250000000000,
            physical_size=50000000000,
            data_points=500000000,
            throughput=1000,
            dropping_policy="new",
            stat_metric_prefix="quota.stats",
        )
    ]


def test_missing_values_are_zero(tmp_path):
    (quota,) = read(tmp_path, "[*]\nmetrics = 5\n")
    assert quota.metrics == 5
    assert quota.namespaces == 0
    assert quota.throughput == 0
    assert quota.dropping_policy == ""
    assert quota.stat_metric_prefix == ""


@pytest.mark.parametrize("word", ["max", "maximum"])
def test_maximum(tmp_path, word):
    (quota,) = read(tmp_path, f"[*]\nmetrics = {word}\n")
    assert quota.metrics == (1 << 63) - 1


def test_sections_keep_order(tmp_path):
    quotas = read(tmp_path, "[*]\nmetrics = 1\n[a.*]\nmetrics = 2\n[a.b]\nmetrics = 3\n")
    assert [q.pattern for q in quotas] == ["*", "a.*", "a.b"]
    assert [q.metrics for q in quotas] == [1, 2, 3]


def test_bad_number(tmp_path):
    with pytest.raises(ValueError, match="data-points"):
        read(tmp_path, "[*]\ndata-points = lots\n")


def test_unknown_dropping_policy(tmp_path):
    with pytest.raises(ValueError, match="dropping-policy"):
        read(tmp_path, "[*]\ndropping-policy = old\n")


@pytest.mark.parametrize("policy", ["new", "none"])
def test_known_dropping_policies(tmp_path, policy):
    (quota,) = read(tmp_path, f"[*]\ndropping-policy = {policy}\n")
    assert quota.dropping_policy == policy


def test_empty_file(tmp_path):
    assert read(tmp_path, "# nothing here\n") == []