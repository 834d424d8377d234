# adaptive.py
# SPDX-License-Identifier: MIT
"""Size-aware worker, batch-size, and buffer-depth tuning.

The controller looks at the first records of a run, estimates the average
serialized record size, and derives settings that keep concurrent in-flight
batches within a fraction of the available memory. Small records get more
workers and deeper read-ahead; large records get fewer of both.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import asdict, dataclass
from typing import Any

import psutil

from .chunker import record_size
from .config import AdaptiveConfig, SizeTier
from .log import get_logger
from .state import RunState

log = get_logger(__name__)

__all__ = ["AdaptivePlan", "AdaptiveController", "classify_tier"]


@dataclass(frozen=True)
class AdaptivePlan:
    """Settings derived from the sampled average record size."""

    avg_record_size: int
    tier: str
    workers: int
    records_per_batch: int
    buffer_depth: int
    memory_per_worker: int
    max_safe_workers: int
    sampled: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def classify_tier(avg_size: float, tiers: Sequence[SizeTier]) -> SizeTier:
    """Return the first tier whose bound covers ``avg_size``."""
    for tier in tiers:
        if tier.max_avg_bytes is None or avg_size <= tier.max_avg_bytes:
            return tier
    return tiers[-1]


class AdaptiveController:
    """Derive a memory-safe configuration from a sample of records.

    Args:
        config (AdaptiveConfig): Tier table and memory constants.
        heap_budget (int | None): Bytes of memory the run may use. Defaults
            to ``config.heap_budget`` or, failing that, total system memory
            as reported by psutil.
    """

    def __init__(self, config: AdaptiveConfig, *, heap_budget: int | None = None) -> None:
        self.config = config
        self._heap_budget = heap_budget if heap_budget is not None else config.heap_budget

    @property
    def heap_budget(self) -> int:
        if self._heap_budget is None:
            self._heap_budget = int(psutil.virtual_memory().total)
        return self._heap_budget

    def plan(
        self,
        avg_size: float,
        *,
        requested_workers: int,
        current_records_per_batch: int | None = None,
        sampled: int = 0,
    ) -> AdaptivePlan:
        """Compute settings for an average record size.

        Args:
            avg_size (float): Average serialized record size in bytes.
            requested_workers (int): Worker count the caller asked for.
            current_records_per_batch (int | None): Existing count budget;
                the plan never raises it.
            sampled (int): Number of records the average came from.

        Returns:
            AdaptivePlan: Derived settings.
        """
        cfg = self.config
        avg = max(1, int(round(avg_size)))
        tier = classify_tier(avg, cfg.tiers)

        batch_target = max(1, min(cfg.max_records_per_batch, cfg.batch_memory_target // avg))
        memory_per_worker = max(1, int(batch_target * avg * cfg.overhead_factor))
        max_safe = int(self.heap_budget * cfg.heap_fraction // memory_per_worker)
        workers = max(1, min(requested_workers, tier.max_workers, max_safe))

        current = current_records_per_batch or cfg.max_records_per_batch
        records_per_batch = max(1, min(current, batch_target))

        if avg > cfg.large_record_threshold:
            buffer_depth = min(workers * 5, 50)
        else:
            buffer_depth = min(workers * 20, 200)

        return AdaptivePlan(
            avg_record_size=avg,
            tier=tier.name,
            workers=workers,
            records_per_batch=records_per_batch,
            buffer_depth=buffer_depth,
            memory_per_worker=memory_per_worker,
            max_safe_workers=max_safe,
            sampled=sampled,
        )

    def apply(self, records: Iterable[Any], state: RunState) -> Iterator[Any]:
        """Sample the head of ``records``, tune ``state``, and re-emit everything.

        Sampling happens eagerly so ``state`` is tuned before the caller
        sizes its sender pool. The returned iterator yields the sampled
        records first, in order, followed by the rest of the stream. When a
        caller-supplied ``avg_record_size`` is configured no sampling
        happens.
        """
        cfg = self.config
        it = iter(records)
        if cfg.avg_record_size:
            head: list[Any] = []
            avg: float = cfg.avg_record_size
        else:
            head = list(itertools.islice(it, cfg.sample_size))
            if not head:
                return iter(())
            avg = sum(record_size(r) for r in head) / len(head)

        plan = self.plan(
            avg,
            requested_workers=state.workers,
            current_records_per_batch=state.records_per_batch,
            sampled=len(head),
        )
        state.workers = plan.workers
        state.records_per_batch = plan.records_per_batch
        state.buffer_depth = plan.buffer_depth
        state.adaptive_plan = plan.as_dict()
        log.info(
            "Adaptive scaling: avg=%dB tier=%s workers=%d records_per_batch=%d buffer_depth=%d",
            plan.avg_record_size,
            plan.tier,
            plan.workers,
            plan.records_per_batch,
            plan.buffer_depth,
        )
        return itertools.chain(head, it)
