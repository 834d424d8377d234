import gzip
import json
import logging
import threading

import pytest

from bulkpost import run_import
from bulkpost.core.config import RunConfig
from bulkpost.core.dispatch import PartialFailure, Success
from bulkpost.core.errors import ConfigurationError
from bulkpost.core.http import HttpResult

BASE = "http://ingest.test"


class EchoClient:
    """Accepts every batch and reports all of its records as imported."""

    def __init__(self, reject_index=None):
        self.reject_index = reject_index
        self.calls = []
        self._lock = threading.Lock()

    def request(self, method, url, *, body=None, headers=None, timeout=None, first_byte_timeout=None):
        headers = dict(headers or {})
        raw = gzip.decompress(body) if headers.get("Content-Encoding") == "gzip" else body
        with self._lock:
            self.calls.append({"method": method, "url": url, "raw": raw, "headers": headers})
        if method == "PUT":
            return HttpResult(200, b'{"code": 200, "status": "OK"}')
        records = json.loads(raw)
        payload = {"code": 200, "num_records_imported": len(records), "status": "OK"}
        if self.reject_index is not None and len(records) > self.reject_index:
            payload = {
                "code": 400,
                "num_records_imported": len(records) - 1,
                "failed_records": [{"index": self.reject_index, "message": "rejected"}],
            }
            return HttpResult(400, json.dumps(payload).encode())
        return HttpResult(200, json.dumps(payload).encode())

    def sent_records(self):
        out = []
        for call in self.calls:
            out.extend(json.loads(call["raw"]))
        return out


def _events(n, **extra):
    return [{"event": "e", "properties": {"distinct_id": f"u{i}", "i": i, **extra}} for i in range(n)]


def test_imports_all_records_in_batches():
    client = EchoClient()
    summary = run_import(
        _events(25),
        token="tok",
        base_url=BASE,
        records_per_batch=10,
        workers=2,
        client=client,
    )
    assert summary["success"] == 25
    assert summary["failed"] == 0
    assert summary["total"] == 25
    assert summary["batches"] == 3
    assert summary["requests"] == 3
    assert summary["records_processed"] == 25
    assert summary["url"] == f"{BASE}/import"
    assert sorted(r["properties"]["i"] for r in client.sent_records()) == list(range(25))
    assert all(c["url"].startswith(f"{BASE}/import?") for c in client.calls)


def test_partial_failures_surface_in_summary_and_handler():
    outcomes = []
    records = _events(5)
    summary = run_import(
        records,
        token="tok",
        base_url=BASE,
        client=EchoClient(reject_index=2),
        response_handler=outcomes.append,
    )
    assert summary["success"] == 4
    assert summary["failed"] == 1
    assert summary["bad_records"] == {"rejected": [records[2]]}
    assert len(outcomes) == 1 and isinstance(outcomes[0], PartialFailure)


def test_transform_and_empty_records():
    def drop_odd(record):
        return {} if record["properties"]["i"] % 2 else record

    records = _events(6) + [{}, None]
    client = EchoClient()
    summary = run_import(iter(records), token="tok", base_url=BASE, client=client, transform=drop_odd)
    assert summary["empty"] == 5
    assert summary["success"] == 3
    assert sorted(r["properties"]["i"] for r in client.sent_records()) == [0, 2, 4]


def test_builtin_transforms_run_in_order():
    client = EchoClient()
    records = [{"event": "e", "properties": {"distinct_id": "u", "time": 1700000000, "blank": ""}}]
    run_import(
        records,
        token="tok",
        base_url=BASE,
        client=client,
        **{"transform.remove_nulls": True, "transform.tags": {"src": "test"},
           "transform.time_offset_hours": 1, "transform.add_insert_id": True},
    )
    sent = client.sent_records()[0]["properties"]
    assert "blank" not in sent
    assert sent["src"] == "test"
    assert sent["time"] == 1700000000 * 1000 + 3600 * 1000
    assert len(sent["$insert_id"]) == 32


def test_oversized_records_are_dropped():
    records = _events(3) + [{"event": "big", "properties": {"blob": "x" * 2000}}]
    client = EchoClient()
    summary = run_import(records, token="tok", base_url=BASE, client=client, bytes_per_batch=500)
    assert summary["dropped"] == 1
    assert summary["success"] == 3
    assert all(r["event"] == "e" for r in client.sent_records())


def test_dry_run_sends_nothing():
    client = EchoClient()
    summary = run_import(_events(3), token="tok", base_url=BASE, client=client, dry_run=True)
    assert client.calls == []
    assert summary["dry_run"] == [_events(3)]
    assert summary["batches"] == 1


def test_files_with_throttle_and_adaptive(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text("".join(json.dumps(r) + "\n" for r in _events(40)), encoding="utf-8")
    client = EchoClient()
    summary = run_import(
        str(path),
        token="tok",
        base_url=BASE,
        client=client,
        memory_probe=lambda: 0,
        **{"throttle.enabled": True, "adaptive.enabled": True, "adaptive.heap_budget": 8 * 1024 ** 3},
    )
    assert summary["success"] == 40
    assert summary["adaptive"]["tier"] == "tiny"
    assert summary["backpressure"]["objects_dequeued"] == 40
    assert summary["backpressure"]["max_items"] == summary["adaptive"]["buffer_depth"] == 200


def test_run_log_written(tmp_path):
    log_path = tmp_path / "logs" / "run.jsonl"
    records = _events(3)
    run_import(records, token="tok", base_url=BASE, client=EchoClient(reject_index=0), log_path=str(log_path))
    lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert lines[0]["type"] == "summary"
    assert lines[0]["failed"] == 1
    assert "bad_records" not in lines[0]
    assert lines[1] == {"type": "rejected", "message": "rejected", "record": records[0]}


def test_lookup_table_upload():
    client = EchoClient()
    summary = run_import(
        [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}],
        secret="sec",
        base_url=BASE,
        record_type="table",
        lookup_table_id="lt1",
        client=client,
    )
    assert summary["success"] == 2
    assert client.calls[0]["method"] == "PUT"
    assert client.calls[0]["url"] == f"{BASE}/lookup-tables/lt1"
    assert client.calls[0]["raw"] == b"id,name\n1,a\n2,b\n"


def test_export_returns_descriptor():
    descriptor = {"from_date": "2024-01-01", "to_date": "2024-01-02"}
    summary = run_import(descriptor, record_type="export")
    assert summary["descriptor"] is descriptor
    assert summary["total"] == 0


def test_config_argument_is_not_modified():
    cfg = RunConfig()
    cfg.auth.token = "tok"
    cfg.target.base_url = BASE
    summary = run_import(_events(2), cfg, client=EchoClient(), workers=3)
    assert summary["workers"] == 3
    assert cfg.dispatch.workers != 3


def test_invalid_overrides_raise():
    with pytest.raises(ConfigurationError):
        run_import(_events(1), token="tok", no_such_option=1)
    with pytest.raises(ConfigurationError):
        run_import(_events(1))


def test_user_profiles_sent_uncompressed():
    client = EchoClient()

    def ok(method, url, *, body=None, headers=None, **kwargs):
        client.calls.append({"headers": dict(headers), "raw": body})
        return HttpResult(200, b'{"status": 1, "error": null}')

    client.request = ok
    outcomes = []
    summary = run_import(
        [{"$distinct_id": "u1", "$set": {"plan": "pro"}}],
        token="tok",
        base_url=BASE,
        record_type="user",
        client=client,
        response_handler=outcomes.append,
    )
    assert summary["success"] == 1
    assert "Content-Encoding" not in client.calls[0]["headers"]
    assert isinstance(outcomes[0], Success)


def test_progress_line_logged_at_end(caplog):
    with caplog.at_level(logging.INFO, logger="bulkpost"):
        run_import(_events(3), token="tok", base_url=BASE, client=EchoClient(), show_progress=True)
    assert any(r.getMessage().startswith("events: 3 | req: 1") for r in caplog.records)


def test_buffer_depth_defaults_to_workers_times_batch_size():
    summary = run_import(
        _events(5),
        token="tok",
        base_url=BASE,
        client=EchoClient(),
        workers=2,
        records_per_batch=3,
        memory_probe=lambda: 0,
        **{"throttle.enabled": True},
    )
    assert summary["backpressure"]["max_items"] == 6
    assert summary["success"] == 5


def test_transform_hook_sees_records_before_shape_fixing():
    seen = []

    def hook(record):
        seen.append(sorted(record))
        return record

    client = EchoClient()
    run_import(
        [{"event": "e", "distinct_id": "u", "time": 1}],
        token="tok",
        base_url=BASE,
        client=client,
        fix_data=True,
        transform=hook,
    )
    assert seen == [["distinct_id", "event", "time"]]
    assert client.sent_records()[0]["properties"]["distinct_id"] == "u"


def test_endpoint_without_scheme_is_rejected_before_sending():
    client = EchoClient()
    with pytest.raises(ConfigurationError, match="base_url"):
        run_import(_events(3), token="tok", base_url="ingest.test", client=client, max_retries=0)
    assert client.calls == []


def test_sender_exceptions_count_as_failed_records():
    class BrokenClient:
        def request(self, method, url, **kwargs):
            raise ValueError("no route")

    summary = run_import(_events(3), token="tok", base_url=BASE, client=BrokenClient(), max_retries=0)
    assert summary["success"] == 0
    assert summary["failed"] == 3
    assert summary["total"] == 3
    assert summary["errors"] == ["no route"]


def test_filters_are_counted_in_summary():
    records = _events(3) + _events(1) + [{"event": "debug", "properties": {"distinct_id": "x"}}]
    client = EchoClient()
    summary = run_import(
        records,
        token="tok",
        base_url=BASE,
        client=client,
        **{"transform.dedupe": True, "transform.event_denylist": ["debug"]},
    )
    assert summary["success"] == 3
    assert summary["duplicates"] == 1
    assert summary["denylist_skipped"] == 1
    assert summary["empty"] == 2
