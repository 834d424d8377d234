import json

import pytest

from bulkpost.core.chunker import BatchAccumulator, dumps_compact, iter_batches, record_size


def _rec(n: int, tag: int = 0) -> dict:
    # serialized as {"d":"xxx..."} -> n + 8 bytes
    return {"d": ("x" * (n - 2)) + f"{tag:02d}"}


def test_record_size_matches_compact_json():
    rec = {"event": "é", "properties": {"a": 1}}
    assert record_size(rec) == len(json.dumps(rec, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
    assert dumps_compact([1, 2]) == "[1,2]"


def test_count_limit_splits_batches_in_order():
    records = [{"i": i} for i in range(7)]
    batches = list(iter_batches(records, max_bytes=10_000, max_records=3))
    assert [len(b) for b in batches] == [3, 3, 1]
    assert [r["i"] for b in batches for r in b] == list(range(7))


def test_byte_limit_packs_maximal_prefix():
    # each record is 100 bytes; 250 fits two
    records = [_rec(92, i) for i in range(5)]
    assert all(record_size(r) == 100 for r in records)
    batches = list(iter_batches(records, max_bytes=250, max_records=100))
    assert [len(b) for b in batches] == [2, 2, 1]
    for batch in batches:
        assert sum(record_size(r) for r in batch) <= 250


def test_oversized_record_dropped_and_reported():
    dropped = []
    acc = BatchAccumulator(100, 10, on_drop=lambda rec, size: dropped.append(size))
    assert acc.add(_rec(200)) == []
    assert acc.dropped == 1
    assert dropped == [208]
    assert len(acc) == 0
    assert acc.flush() is None


def test_record_exactly_at_limit_is_kept():
    acc = BatchAccumulator(100, 10)
    rec = _rec(92)
    assert acc.add(rec) == []
    assert acc.flush() == [rec]


def test_mixed_sizes_never_exceed_budgets():
    sizes = [10, 300, 45, 999, 120, 5, 400, 60, 61, 250, 1200, 33]
    records = [_rec(s + 10, i) for i, s in enumerate(sizes)]
    dropped = []
    batches = list(iter_batches(records, max_bytes=1000, max_records=4, on_drop=lambda r, s: dropped.append(r)))
    for batch in batches:
        assert 0 < len(batch) <= 4
        assert sum(record_size(r) for r in batch) <= 1000
    emitted = [r for b in batches for r in b]
    kept = [r for r in records if record_size(r) <= 1000]
    assert emitted == kept
    assert len(dropped) == len(records) - len(kept)


def test_flush_emits_remainder_once():
    acc = BatchAccumulator(1000, 10)
    acc.add({"a": 1})
    acc.add({"b": 2})
    assert acc.pending_bytes == record_size({"a": 1}) + record_size({"b": 2})
    assert acc.flush() == [{"a": 1}, {"b": 2}]
    assert acc.flush() is None


def test_add_can_seal_multiple_batches_at_once():
    acc = BatchAccumulator(1000, 1)
    assert acc.add({"a": 1}) == []
    assert acc.add({"b": 2}) == [[{"a": 1}]]
    assert acc.flush() == [{"b": 2}]


def test_empty_stream_yields_nothing():
    assert list(iter_batches([], max_bytes=10, max_records=10)) == []


@pytest.mark.parametrize("max_bytes,max_records", [(0, 1), (1, 0)])
def test_invalid_budgets_rejected(max_bytes, max_records):
    with pytest.raises(ValueError):
        BatchAccumulator(max_bytes, max_records)


@pytest.mark.parametrize(
    "records, expected_lengths, expected_drops",
    [
        ([{"data": "a" * 300}] * 4, [3, 1], 0),
        ([{"data": "a" * 10}] * 10, [5, 5], 0),
        ([{"data": "a" * 1100}], [], 1),
    ],
    ids=["byte-limit", "count-limit", "oversized"],
)
def test_small_budget_cases(records, expected_lengths, expected_drops):
    drops = []
    batches = list(iter_batches(records, max_bytes=1000, max_records=5, on_drop=lambda r, size: drops.append(size)))
    assert [len(b) for b in batches] == expected_lengths
    assert len(drops) == expected_drops
