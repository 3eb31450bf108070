import http.server
import queue
import threading
import urllib.parse

import pytest

from carbond.tagdb import Tags, TagsOptions


@pytest.fixture
def tag_server():
    received = queue.Queue()

    class Handler(http.server.BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length", 0))
            form = urllib.parse.parse_qs(self.rfile.read(length).decode())
            received.put((self.path, form.get("path", [])))
            self.send_response(200)
            self.end_headers()

        def log_message(self, *args):
            pass

    server = http.server.ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}", received
    server.shutdown()
    server.server_close()


def test_add_now_posts_series(tmp_path, tag_server):
    url, received = tag_server
    tags = Tags(TagsOptions(local_path=str(tmp_path), tag_db=url, tag_db_chunk_size=1))
    with tags:
        tags.add("hello.world;key=value", now=True)
        path, series = received.get(timeout=5)
        stats = {}
        tags.stat(lambda k, v: stats.__setitem__(k, v))
    assert path == "/tags/tagMultiSeries"
    assert series == ["hello.world;key=value"]
    assert stats["queuePutCount"] == 1.0
    assert stats["queuePutErrors"] == 0.0


def test_update_interval_counts_puts(tmp_path, tag_server):
    url, _ = tag_server
    opts = TagsOptions(local_path=str(tmp_path), tag_db=url, tag_db_update_interval=3)
    with Tags(opts) as tags:
        for _ in range(3):
            tags.add("a;b=c")
        stats = {}
        tags.stat(lambda k, v: stats.__setitem__(k, v))
        assert stats["queuePutCount"] == 1.0
        second = {}
        tags.stat(lambda k, v: second.__setitem__(k, v))
        assert second["queuePutCount"] == 0.0


def test_untagged_is_not_queued(tmp_path, tag_server):
    url, _ = tag_server
    with Tags(TagsOptions(local_path=str(tmp_path), tag_db=url)) as tags:
        tags.add("plain.metric", now=True)
        stats = {}
        tags.stat(lambda k, v: stats.__setitem__(k, v))
    assert stats["queuePutCount"] == 0.0


def test_broken_queue_path(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    tags = Tags(TagsOptions(local_path=str(blocker)))
    assert tags.queue is None
    with pytest.raises(RuntimeError):
        tags.stat(lambda k, v: None)