# concurrency.py
# SPDX-License-Identifier: MIT
"""Thread pool with a bounded submission window for batch senders.

The batch iterator is consumed lazily: at most ``window`` batches are
submitted and unfinished at any time, and a new one is admitted as soon as
any in-flight send completes. Results reach the callbacks in completion
order on the calling thread.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import TypeVar

from .log import get_logger

log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

__all__ = ["Executor", "ExecutorConfig"]


@dataclass(frozen=True)
class ExecutorConfig:
    """Executor settings.

    Attributes:
        max_workers (int): Sender threads.
        window (int): Submitted-but-unfinished cap; raised to
            ``max_workers`` when smaller.
        thread_name_prefix (str): Worker thread name prefix.
    """
    max_workers: int
    window: int
    thread_name_prefix: str = "bulkpost-sender"


class Executor:
    """Bounded-window thread executor.

    Attributes:
        submitted (int): Items handed to the pool by the last run.
        completed (int): Items whose result reached ``on_result``.
        errors (int): Items whose worker raised.
        peak_in_flight (int): Most items submitted but not yet collected at once.
    """

    def __init__(self, cfg: ExecutorConfig) -> None:
        if cfg.max_workers < 1:
            raise ValueError("Executor requires max_workers >= 1")
        self.cfg = cfg
        self.submitted = 0
        self.completed = 0
        self.errors = 0
        self.peak_in_flight = 0

    def map_unordered(
        self,
        items: Iterable[T],
        fn: Callable[[T], R],
        on_result: Callable[[R], None],
        *,
        fail_fast: bool = False,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> int:
        """Run ``fn`` over ``items`` and feed results to ``on_result``.

        Args:
            items (Iterable[T]): Work items, pulled only when a slot is free.
            fn (Callable[[T], R]): Runs on a worker thread.
            on_result (Callable[[R], None]): Receives each result.
            fail_fast (bool): Cancel pending work and re-raise on the first
                worker exception.
            on_error (Callable[[BaseException], None] | None): Receives
                worker exceptions.

        Returns:
            int: Number of items submitted.
        """
        window = max(self.cfg.window, self.cfg.max_workers)
        self.submitted = self.completed = self.errors = self.peak_in_flight = 0
        pending: set[Future[R]] = set()

        def collect(block: bool) -> None:
            nonlocal pending
            if not pending:
                return
            done, pending = wait(pending, timeout=None if block else 0.0, return_when=FIRST_COMPLETED)
            for fut in done:
                exc = fut.exception()
                if exc is None:
                    self.completed += 1
                    on_result(fut.result())
                    continue
                self.errors += 1
                if on_error is not None:
                    on_error(exc)
                if fail_fast:
                    for other in pending:
                        other.cancel()
                    raise exc

        with ThreadPoolExecutor(
            max_workers=self.cfg.max_workers,
            thread_name_prefix=self.cfg.thread_name_prefix,
        ) as pool:
            for item in items:
                pending.add(pool.submit(fn, item))
                self.submitted += 1
                self.peak_in_flight = max(self.peak_in_flight, len(pending))
                collect(block=len(pending) >= window)
            while pending:
                collect(block=True)
        log.debug(
            "Executor finished: submitted=%d completed=%d errors=%d peak_in_flight=%d",
            self.submitted, self.completed, self.errors, self.peak_in_flight,
        )
        return self.submitted
