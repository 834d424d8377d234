import gzip
import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from bulkpost.core.http import PooledHttpClient, RequestTimeout


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    received: list = []

    def log_message(self, format, *args):  # noqa: A002
        pass

    def _reply(self, status, payload):
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length)
        if self.headers.get("Content-Encoding") == "gzip":
            raw = gzip.decompress(raw)
        records = json.loads(raw)
        type(self).received.append(
            {"path": self.path, "auth": self.headers.get("Authorization"), "records": records}
        )
        if self.path.startswith("/slow"):
            time.sleep(0.5)
        self._reply(200, {"code": 200, "num_records_imported": len(records), "status": "OK"})


@pytest.fixture
def server():
    _Handler.received = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{httpd.server_address[1]}"
    finally:
        httpd.shutdown()
        httpd.server_close()


def test_pool_reuses_keep_alive_connection(server):
    with PooledHttpClient(pool_size=2) as client:
        for i in range(3):
            body = json.dumps([{"i": i}]).encode()
            result = client.request("POST", f"{server}/import?verbose=1", body=body,
                                    headers={"Content-Type": "application/json"})
            assert result.status == 200
            assert json.loads(result.text())["num_records_imported"] == 1
        pool = client.pool_for(server)
        assert pool.created == 1
    assert [r["path"] for r in _Handler.received] == ["/import?verbose=1"] * 3


def test_gzip_body_round_trips(server):
    body = gzip.compress(json.dumps([{"a": 1}, {"a": 2}]).encode())
    with PooledHttpClient() as client:
        result = client.request(
            "POST",
            f"{server}/import",
            body=body,
            headers={"Content-Encoding": "gzip", "Authorization": "Basic abc"},
        )
    assert result.status == 200
    assert _Handler.received[0]["records"] == [{"a": 1}, {"a": 2}]
    assert _Handler.received[0]["auth"] == "Basic abc"


def test_first_byte_timeout_raises(server):
    with PooledHttpClient(timeout=5.0, first_byte_timeout=0.1) as client:
        with pytest.raises(RequestTimeout):
            client.request("POST", f"{server}/slow", body=b"[]")


def test_pool_rejects_bad_urls():
    client = PooledHttpClient()
    with pytest.raises(ValueError):
        client.pool_for("http:///no-host")
    with pytest.raises(ValueError):
        client.pool_for("ftp://example.com/x")
