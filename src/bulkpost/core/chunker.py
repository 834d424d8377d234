# chunker.py
# SPDX-License-Identifier: MIT
"""Size- and count-bounded batching of a record stream.

Records are appended to a pending list first and batches are peeled off the
front only once a budget is exceeded. Peeling the largest prefix that fits
both budgets lets batches approach the byte limit closely when record sizes
vary, while every emitted batch still satisfies:

* ``len(batch) <= max_records``
* ``sum(record_size(r) for r in batch) <= max_bytes``
* no record larger than ``max_bytes`` is ever emitted (it is dropped)
* input order is kept within and across batches
"""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from .log import get_logger

log = get_logger(__name__)

__all__ = ["BatchAccumulator", "iter_batches", "record_size", "dumps_compact"]


def dumps_compact(obj: Any) -> str:
    """Serialize ``obj`` exactly as it is sent on the wire."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str)


def record_size(record: Any) -> int:
    """Return the UTF-8 byte length of ``record``'s wire serialization."""
    return len(dumps_compact(record).encode("utf-8"))


class BatchAccumulator:
    """Accumulate records and seal batches within byte and count budgets.

    Args:
        max_bytes (int): Byte budget per batch.
        max_records (int): Record-count budget per batch.
        on_drop (Callable[[Any, int], None] | None): Called with each
            oversized record and its size.

    Attributes:
        dropped (int): Records dropped for exceeding ``max_bytes`` alone.
    """

    def __init__(
        self,
        max_bytes: int,
        max_records: int,
        *,
        on_drop: Callable[[Any, int], None] | None = None,
    ) -> None:
        if max_bytes < 1 or max_records < 1:
            raise ValueError("BatchAccumulator requires positive byte and record budgets")
        self.max_bytes = max_bytes
        self.max_records = max_records
        self.on_drop = on_drop
        self.dropped = 0
        self._pending: deque[tuple[Any, int]] = deque()
        self._total = 0

    @property
    def pending_bytes(self) -> int:
        return self._total

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, record: Any) -> list[list[Any]]:
        """Add one record; return any batches sealed as a result."""
        size = record_size(record)
        if size > self.max_bytes:
            self.dropped += 1
            log.debug("Dropping record of %d bytes (limit %d)", size, self.max_bytes)
            if self.on_drop is not None:
                self.on_drop(record, size)
            return []
        self._pending.append((record, size))
        self._total += size

        sealed: list[list[Any]] = []
        while self._total > self.max_bytes or len(self._pending) > self.max_records:
            sealed.append(self._peel())
        return sealed

    def flush(self) -> list[Any] | None:
        """Seal whatever is pending; None when nothing is."""
        if not self._pending:
            return None
        batch = [rec for rec, _ in self._pending]
        self._pending.clear()
        self._total = 0
        return batch

    def _peel(self) -> list[Any]:
        batch: list[Any] = []
        batch_bytes = 0
        while self._pending and len(batch) < self.max_records:
            rec, size = self._pending[0]
            if batch_bytes + size > self.max_bytes:
                break
            self._pending.popleft()
            batch.append(rec)
            batch_bytes += size
        self._total -= batch_bytes
        return batch


def iter_batches(
    records: Iterable[Any],
    max_bytes: int,
    max_records: int,
    *,
    on_drop: Callable[[Any, int], None] | None = None,
) -> Iterator[list[Any]]:
    """Yield sealed batches from ``records``, flushing the remainder at the end."""
    acc = BatchAccumulator(max_bytes, max_records, on_drop=on_drop)
    for record in records:
        yield from acc.add(record)
    tail = acc.flush()
    if tail:
        yield tail
