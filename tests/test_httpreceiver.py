import urllib.error
import urllib.request

import pytest

from carbond import receiver
from carbond.httpreceiver import HTTPOptions, HTTPReceiver
from carbond.points import one_point


@pytest.fixture
def rcv():
    received = []
    r = receiver.new("http", {"protocol": "http", "listen": "127.0.0.1:0"}, received.append)
    yield r, received
    r.stop()


def post(r, body, content_type=None):
    host, port = r.address()
    req = urllib.request.Request(f"http://{host}:{port}/", data=body, method="POST")
    if content_type:
        req.add_header("Content-Type", content_type)
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status
    except urllib.error.HTTPError as exc:
        return exc.code


CASES = [
    (b"hello.world 42.15 1422698155\nmetric.name -72.11 1422698155\n", None,
     [one_point("hello.world", 42.15, 1422698155), one_point("metric.name", -72.11, 1422698155)]),
    (b"hello.world 42.15 1422698155\nmetric.nam", None, None),
    (b"hello.world 42.15 1422698155\nmetric.name -72.11 1422698155\n",
     "application/python-pickle", None),
    (b"(lp0\n(S'param1'\np1\n(I1423931224\nF60.2\ntp2\n(I1423931284\nI42\ntp3\ntp4\na(S'param2'\np5\n(I1423931224\nI-15\ntp6\ntp7\na.",
     "application/python-pickle",
     [one_point("param1", 60.2, 1423931224).add(42, 1423931284), one_point("param2", -15, 1423931224)]),
    (b"\n*\n\x06param1\x12\x0f\x08\xd8\xee\xfd\xa6\x05\x11\x9a\x99\x99\x99\x99\x19N@\x12\x0f\x08\x94\xef\xfd\xa6\x05\x11\x00\x00\x00\x00\x00\x00E@\n\x19\n\x06param2\x12\x0f\x08\xd8\xee\xfd\xa6\x05\x11\x00\x00\x00\x00\x00\x00.\xc0",
     "application/protobuf",
     [one_point("param1", 60.2, 1423931224).add(42, 1423931284), one_point("param2", -15, 1423931224)]),
]


@pytest.mark.parametrize("body,content_type,expected", CASES)
def test_http(rcv, body, content_type, expected):
    r, received = rcv
    status = post(r, body, content_type)
    if expected is None:
        assert status != 200
        assert received == []
    else:
        assert status == 200
        assert received == expected


def test_get_rejected_and_counted(rcv):
    r, _ = rcv
    host, port = r.address()
    with pytest.raises(urllib.error.HTTPError) as info:
        urllib.request.urlopen(f"http://{host}:{port}/", timeout=5)
    assert info.value.code == 400
    stats = {}
    r.stat(lambda k, v: stats.__setitem__(k, v))
    assert stats["errors"] == 1.0


def test_too_long_message():
    r = HTTPReceiver("h", HTTPOptions(listen="127.0.0.1:0", max_message_size=5), None)
    try:
        assert post(r, b"hello.world 1 1\n") == 400
    finally:
        r.stop()


def test_stop_and_rebind_same_port():
    listen = "127.0.0.1:0"
    for _ in range(10):
        r = receiver.new("http", {"protocol": "http", "listen": listen}, None)
        host, port = r.address()
        assert port > 0
        listen = f"{host}:{port}"
        r.stop()