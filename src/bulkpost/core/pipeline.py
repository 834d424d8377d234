# pipeline.py
# SPDX-License-Identifier: MIT
"""Wire resolver, backpressure, transforms, batching and dispatch together.

:func:`run_import` is the programmatic entry point. It builds a
:class:`RunState` from a config plus keyword overrides, runs an
:class:`ImportPipeline`, and returns the run summary as a plain dict.
"""
from __future__ import annotations

import copy
import csv
import io
import logging
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import ExitStack
from pathlib import Path
from typing import Any

from ..sinks.sinks import write_run_log
from ..sources.resolver import is_cloud_input, resolve_input
from .adaptive import AdaptiveController
from .backpressure import BufferQueue, MemoryThrottle, process_memory_bytes
from .chunker import iter_batches, record_size
from .concurrency import Executor, ExecutorConfig
from .config import EXPORT_RECORD_TYPES, RunConfig, apply_overrides
from .dispatch import DispatchOutcome, Dispatcher, Failure, rows_to_csv
from .errors import UnrecognizedInputError
from .log import ProgressLogger, get_logger, temp_level
from .state import RunState
from .transforms import Transform, build_transform_chain, is_not_empty

log = get_logger(__name__)

__all__ = ["ImportPipeline", "run_import", "read_table_payload"]


def read_table_payload(data: Any) -> tuple[str, int]:
    """Return CSV text and its row count for a lookup-table upload.

    ``data`` may be a path to a CSV file, CSV text, or a list of mappings.

    Raises:
        UnrecognizedInputError: For any other descriptor.
    """
    if isinstance(data, Path) or (isinstance(data, str) and "\n" not in data and Path(data).is_file()):
        text = Path(data).read_text(encoding="utf-8")
    elif isinstance(data, str):
        text = data
    elif isinstance(data, (list, tuple)) and all(isinstance(row, Mapping) for row in data):
        text = rows_to_csv(data)
    else:
        raise UnrecognizedInputError(f"Lookup tables need a CSV path, CSV text, or rows; got {type(data).__name__}.")
    rows = sum(1 for row in csv.reader(io.StringIO(text)) if row)
    return text, max(0, rows - 1)


class ImportPipeline:
    """One import run over a prepared :class:`RunState`.

    Args:
        state (RunState): Settings and counters for the run.
        transform (Callable | None): Caller hook applied to every record as
            decoded, before built-in shape fixing; returning an empty mapping
            or None drops the record.
        response_handler (Callable[[DispatchOutcome], None] | None):
            Receives every batch outcome.
        error_handler (Callable[[BaseException, int], None] | None):
            Receives transport errors and retryable statuses.
        client (Any | None): HTTP client replacement (tests, proxies).
        memory_probe (Callable[[], int] | None): Process memory probe for
            the buffer queue.
        sleep (Callable[[float], None]): Backoff sleep.
    """

    def __init__(
        self,
        state: RunState,
        *,
        transform: Transform | None = None,
        response_handler: Callable[[DispatchOutcome], None] | None = None,
        error_handler: Callable[[BaseException, int], None] | None = None,
        client: Any | None = None,
        memory_probe: Callable[[], int] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.state = state
        self.transform = build_transform_chain(state.config, transform, on_skip=self._count_skip)
        self.response_handler = response_handler
        self.error_handler = error_handler
        self.client = client
        self.memory_probe = memory_probe
        self.sleep = sleep
        self.backpressure: dict[str, Any] | None = None
        self.progress: ProgressLogger | None = None
        if state.config.show_progress:
            self.progress = ProgressLogger(
                state.record_type,
                interval=state.config.logging.progress_interval,
                memory_probe=memory_probe or process_memory_bytes,
            )

    def _dispatcher(self) -> Dispatcher:
        return Dispatcher(
            self.state,
            client=self.client,
            response_handler=self.response_handler,
            error_handler=self.error_handler,
            sleep=self.sleep,
        )

    # ------------------------------------------------------------------
    # Record stream
    # ------------------------------------------------------------------
    def _prepare(self, records: Iterable[Any]) -> Iterator[Any]:
        state = self.state
        transform = self.transform
        for record in records:
            if not is_not_empty(record):
                state.increment(empty=1)
                continue
            if transform is not None:
                record = transform(record)
                if not is_not_empty(record):
                    state.increment(empty=1)
                    continue
            state.increment(records_processed=1, bytes_processed=record_size(record))
            yield record

    def _with_backpressure(self, stack: ExitStack, data: Any, records: Iterator[Any]) -> Iterator[Any]:
        cfg = self.state.config
        if cfg.throttle.enabled:
            queue = stack.enter_context(
                BufferQueue(
                    cfg.throttle,
                    memory_probe=self.memory_probe,
                    max_items=self.state.buffer_depth or None,
                )
            )
            queue.feed(records)
            stack.callback(self._record_backpressure, lambda: queue.stats().as_dict())
            return iter(queue)
        if is_cloud_input(data, cfg.source):
            throttle = MemoryThrottle(memory_probe=self.memory_probe)
            stack.callback(self._record_backpressure, throttle.stats)
            return throttle.throttle(records)
        return records

    def _record_backpressure(self, stats: Callable[[], dict[str, Any]]) -> None:
        self.backpressure = stats()

    def _on_drop(self, record: Any, size: int) -> None:
        self.state.increment(dropped=1)

    def _count_skip(self, counter: str) -> None:
        self.state.increment(**{counter: 1})

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def run(self, data: Any) -> dict[str, Any]:
        """Import ``data`` and return the run summary."""
        state = self.state
        record_type = state.record_type
        if record_type in EXPORT_RECORD_TYPES:
            log.info("Record type %s is not sent; returning the input descriptor.", record_type)
            state.finish()
            summary = state.summary()
            summary["descriptor"] = data
            return summary
        if record_type == "table":
            return self._run_table(data)
        return self._run_records(data)

    def _run_table(self, data: Any) -> dict[str, Any]:
        state = self.state
        text, rows = read_table_payload(data)
        state.increment(records_processed=rows, bytes_processed=len(text.encode("utf-8")))
        log.info("Uploading lookup table %s (%d rows)", state.config.target.lookup_table_id, rows)
        with self._dispatcher() as dispatcher:
            dispatcher.send(text, count=rows)
        return self._finish()

    def _run_records(self, data: Any) -> dict[str, Any]:
        state = self.state
        cfg = state.config
        with ExitStack() as stack:
            records = self._prepare(resolve_input(data, state))
            # the plan sizes the read-ahead buffer, so sample before it fills
            if cfg.adaptive.enabled:
                records = AdaptiveController(cfg.adaptive).apply(records, state)
            records = self._with_backpressure(stack, data, iter(records))

            batches = iter_batches(
                records,
                state.bytes_per_batch,
                state.records_per_batch,
                on_drop=self._on_drop,
            )
            dispatcher = stack.enter_context(self._dispatcher())
            executor = Executor(
                ExecutorConfig(max_workers=state.workers, window=max(state.workers, 1) * 2)
            )
            log.info(
                "Importing %s records: workers=%d records_per_batch=%d bytes_per_batch=%d%s",
                state.record_type,
                state.workers,
                state.records_per_batch,
                state.bytes_per_batch,
                " (dry run)" if state.dry_run else "",
            )
            executor.map_unordered(batches, dispatcher.send, self._on_outcome, on_error=self._on_worker_error)
        return self._finish()

    def _on_outcome(self, outcome: DispatchOutcome) -> None:
        if isinstance(outcome, Failure):
            log.debug("Batch failed after %d attempts: %s", outcome.attempts, outcome.error)
        if self.progress is not None:
            c = self.state.counters
            self.progress.update(c.records_processed, c.requests, c.bytes_processed)

    def _on_worker_error(self, exc: BaseException) -> None:
        log.error("Sender raised unexpectedly: %s", exc)
        self.state.store(exc, ok=False)

    def _finish(self) -> dict[str, Any]:
        state = self.state
        state.finish()
        if self.progress is not None:
            c = state.counters
            self.progress.done(c.records_processed, c.requests, c.bytes_processed)
        summary = state.summary()
        if self.backpressure is not None:
            summary["backpressure"] = self.backpressure
        c = state.counters
        level = logging.WARNING if c.failed else logging.INFO
        log.log(
            level,
            "Import summary: type=%s success=%d failed=%d empty=%d dropped=%d unparsable=%d "
            "batches=%d requests=%d retries=%d duration=%.2fs eps=%.1f",
            state.record_type,
            c.success,
            c.failed,
            c.empty,
            c.dropped,
            c.unparsable,
            c.batches,
            c.requests,
            c.retries,
            summary["duration"],
            summary["eps"],
        )
        if state.config.log_path:
            write_run_log(state.config.log_path, summary)
        return summary


def run_import(
    data: Any,
    config: RunConfig | None = None,
    *,
    transform: Transform | None = None,
    response_handler: Callable[[DispatchOutcome], None] | None = None,
    error_handler: Callable[[BaseException, int], None] | None = None,
    client: Any | None = None,
    memory_probe: Callable[[], int] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **overrides: Any,
) -> dict[str, Any]:
    """Import ``data`` and return the run summary.

    Args:
        data (Any): Input descriptor (path, directory, list, iterator,
            string, cloud URL; a CSV source for lookup tables).
        config (RunConfig | None): Base configuration; defaults are used
            when omitted. The object is not modified.
        transform (Callable | None): Per-record hook.
        response_handler (Callable | None): Per-batch outcome hook.
        error_handler (Callable | None): Per-attempt error hook.
        client (Any | None): HTTP client replacement.
        memory_probe (Callable[[], int] | None): Process memory probe.
        sleep (Callable[[float], None]): Backoff sleep.
        **overrides: Config overrides, dotted (``dispatch.workers``) or by
            unique field name (``workers``, ``token``, ``record_type``).

    Returns:
        dict[str, Any]: Totals, rates, rejected records and diagnostics.

    Raises:
        ConfigurationError: For invalid settings or credentials.
        UnrecognizedInputError: When ``data`` cannot be resolved.
        FormatMismatchError: When inputs disagree on format.
        DecodeError: When malformed input aborts decoding.
    """
    cfg = copy.deepcopy(config) if config is not None else RunConfig()
    apply_overrides(cfg, overrides)
    state = RunState.from_config(cfg)
    pipeline = ImportPipeline(
        state,
        transform=transform,
        response_handler=response_handler,
        error_handler=error_handler,
        client=client,
        memory_probe=memory_probe,
        sleep=sleep,
    )
    if cfg.verbose:
        return pipeline.run(data)
    with temp_level(logging.WARNING):
        return pipeline.run(data)
