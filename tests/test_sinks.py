import gzip
import json
from pathlib import Path

import pytest

from bulkpost.sinks.sinks import RunLogWriter, write_run_log


def test_writer_uses_temp_file_until_close(tmp_path: Path) -> None:
    path = tmp_path / "out" / "log.jsonl"
    with RunLogWriter(path) as writer:
        writer.write({"a": 1})
        assert (tmp_path / "out" / "log.jsonl.tmp").exists()
        assert not path.exists()
    assert writer.lines == 1
    assert not (tmp_path / "out" / "log.jsonl.tmp").exists()
    assert json.loads(path.read_text(encoding="utf-8")) == {"a": 1}


def test_failed_block_discards_temp_file(tmp_path: Path) -> None:
    path = tmp_path / "log.jsonl"
    with pytest.raises(ValueError):
        with RunLogWriter(path) as writer:
            writer.write({"a": 1})
            raise ValueError("boom")
    assert not path.exists()
    assert not (tmp_path / "log.jsonl.tmp").exists()


def test_gzip_selected_by_suffix(tmp_path: Path) -> None:
    path = tmp_path / "data.jsonl.gz"
    writer = RunLogWriter(path)
    assert writer.compressed
    writer.open()
    writer.write({"hello": "world"})
    writer.close()

    with gzip.open(path, "rt", encoding="utf-8") as fp:
        lines = fp.read().splitlines()
    assert json.loads(lines[0]) == {"hello": "world"}


def test_write_requires_open(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        RunLogWriter(tmp_path / "x.jsonl").write({"a": 1})


def test_write_run_log_groups_rejected_records(tmp_path: Path) -> None:
    summary = {
        "success": 3,
        "failed": 2,
        "bad_records": {"bad time": [{"i": 1}], "missing event": [{"i": 2}]},
        "dry_run": [[{"i": 0}]],
    }
    path = write_run_log(tmp_path / "run.jsonl.gz", summary)
    with gzip.open(path, "rt", encoding="utf-8") as fp:
        lines = [json.loads(line) for line in fp]
    assert lines[0] == {"success": 3, "failed": 2, "type": "summary"}
    assert lines[1:] == [
        {"type": "rejected", "message": "bad time", "record": {"i": 1}},
        {"type": "rejected", "message": "missing event", "record": {"i": 2}},
    ]
