# backpressure.py
# SPDX-License-Identifier: MIT
"""Memory-aware backpressure between a fast producer and a slower consumer.

:class:`BufferQueue` runs the producer (typically a cloud or file decoder)
on its own thread and buffers its records in a FIFO. A sampling thread
watches process memory and the queued byte estimate. Above the pause
threshold the producer is parked on a gate; the consumer keeps draining the
queue, and once both measures fall below the resume threshold the gate
reopens. Nothing that was read is ever discarded.

:class:`MemoryThrottle` applies the same gate to a plain iterator without a
queue, for pipelines that only need to slow a reader down.
"""

from __future__ import annotations

import gc
import threading
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

import psutil

from .chunker import record_size
from .config import ThrottleConfig
from .log import get_logger

log = get_logger(__name__)

__all__ = ["BufferQueue", "MemoryThrottle", "QueueStats", "process_memory_bytes"]

_MB = 1024 * 1024
_GATE_POLL = 0.1


def process_memory_bytes() -> int:
    """Resident memory of the current process in bytes."""
    return int(psutil.Process().memory_info().rss)


def _estimate_size(item: Any) -> int:
    if isinstance(item, (bytes, bytearray, str)):
        return len(item)
    try:
        return record_size(item)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class QueueStats:
    """Point-in-time view of a buffer queue."""

    queue_length: int
    queue_size_mb: float
    objects_queued: int
    objects_dequeued: int
    is_paused: bool
    pause_count: int
    resume_count: int
    heap_mb: float
    max_items: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "queue_size_mb": round(self.queue_size_mb, 3),
            "objects_queued": self.objects_queued,
            "objects_dequeued": self.objects_dequeued,
            "is_paused": self.is_paused,
            "pause_count": self.pause_count,
            "resume_count": self.resume_count,
            "heap_mb": round(self.heap_mb, 1),
            "max_items": self.max_items,
        }


class _PressureGate:
    """Pause/resume gate driven by a periodic memory sampler."""

    def __init__(
        self,
        config: ThrottleConfig,
        *,
        memory_probe: Callable[[], int] | None = None,
        name: str = "bulkpost-throttle",
    ) -> None:
        self.config = config
        self._probe = memory_probe or process_memory_bytes
        self._name = name
        self._gate = threading.Event()
        self._gate.set()
        self._stop = threading.Event()
        self._state_lock = threading.Lock()
        self._sampler: threading.Thread | None = None
        self.is_paused = False
        self.pause_count = 0
        self.resume_count = 0
        self.last_heap_mb = 0.0

    # subclasses add their own queued bytes
    def _queued_mb(self) -> float:
        return 0.0

    def _sample(self) -> tuple[float, float]:
        heap_mb = self._probe() / _MB
        self.last_heap_mb = heap_mb
        return heap_mb, self._queued_mb()

    def _pause(self, heap_mb: float, queue_mb: float) -> None:
        with self._state_lock:
            if self.is_paused:
                return
            self.is_paused = True
            self.pause_count += 1
            self._gate.clear()
        log.info(
            "Pausing producer: heap=%.1fMB queue=%.1fMB (pause at %.1fMB)",
            heap_mb,
            queue_mb,
            self.config.pause_threshold_mb,
        )

    def _resume(self, heap_mb: float, queue_mb: float) -> None:
        with self._state_lock:
            if not self.is_paused:
                return
            self.is_paused = False
            self.resume_count += 1
            self._gate.set()
        log.info("Resuming producer: heap=%.1fMB queue=%.1fMB", heap_mb, queue_mb)

    def check(self) -> None:
        """Take one memory sample and pause or resume accordingly."""
        cfg = self.config
        if self.is_paused:
            if cfg.force_gc:
                gc.collect()
            heap_mb, queue_mb = self._sample()
            if heap_mb < cfg.resume_threshold_mb and queue_mb < cfg.resume_threshold_mb:
                self._resume(heap_mb, queue_mb)
            return
        heap_mb, queue_mb = self._sample()
        if heap_mb > cfg.pause_threshold_mb or queue_mb > cfg.pause_threshold_mb:
            self._pause(heap_mb, queue_mb)

    def _run_sampler(self) -> None:
        while not self._stop.is_set():
            interval = self.config.paused_interval if self.is_paused else self.config.check_interval
            if self._stop.wait(interval):
                break
            self.check()

    def start(self) -> None:
        if self._sampler is not None:
            return
        self._sampler = threading.Thread(target=self._run_sampler, name=f"{self._name}-sampler", daemon=True)
        self._sampler.start()

    def stop(self) -> None:
        self._stop.set()
        self._gate.set()
        if self._sampler is not None and self._sampler is not threading.current_thread():
            self._sampler.join(timeout=max(self.config.paused_interval, self.config.check_interval) + 1.0)
        self._sampler = None

    def wait_open(self) -> bool:
        """Block while paused; False once the gate has been stopped."""
        while not self._gate.wait(_GATE_POLL):
            if self._stop.is_set():
                return False
        return not self._stop.is_set()


class BufferQueue(_PressureGate):
    """FIFO buffer that decouples a pausable producer from its consumer.

    Usage::

        with BufferQueue(cfg) as queue:
            queue.feed(decoded_records)
            for record in queue:
                ...

    The producer runs on a background thread started by :meth:`feed`. If it
    raises, the exception is re-raised to the consumer after the records
    read before the failure have been delivered.

    Args:
        config (ThrottleConfig): Thresholds (MB) and sampling intervals.
        memory_probe (Callable[[], int] | None): Returns process memory in
            bytes; defaults to psutil RSS.
        size_of (Callable[[Any], int] | None): Byte estimate per item.
        max_items (int | None): Read-ahead depth; the producer waits while
            this many records are buffered. None bounds by bytes only.
    """

    def __init__(
        self,
        config: ThrottleConfig,
        *,
        memory_probe: Callable[[], int] | None = None,
        size_of: Callable[[Any], int] | None = None,
        max_items: int | None = None,
    ) -> None:
        super().__init__(config, memory_probe=memory_probe, name="bulkpost-buffer")
        if max_items is not None and max_items < 1:
            raise ValueError("max_items must be >= 1")
        self.max_items = max_items
        self._size_of = size_of or _estimate_size
        self._items: deque[tuple[Any, int]] = deque()
        self._cond = threading.Condition()
        self._queued_bytes = 0
        self._done = False
        self._error: BaseException | None = None
        self._producer: threading.Thread | None = None
        self.objects_queued = 0
        self.objects_dequeued = 0

    def _queued_mb(self) -> float:
        return self._queued_bytes / _MB

    def _full(self, max_bytes: float) -> bool:
        if self.max_items is not None and len(self._items) >= self.max_items:
            return True
        return self._queued_bytes > max_bytes

    # producer side
    def put(self, item: Any) -> None:
        """Append ``item``; blocks while the queue is over ``max_queue_mb`` or full."""
        size = self._size_of(item)
        max_bytes = self.config.max_queue_mb * _MB
        with self._cond:
            while self._items and self._full(max_bytes) and not self._stop.is_set():
                self._cond.wait(_GATE_POLL)
            self._items.append((item, size))
            self._queued_bytes += size
            self.objects_queued += 1
            self._cond.notify_all()
        queue_mb = self._queued_mb()
        if not self.is_paused and queue_mb > self.config.pause_threshold_mb:
            self._pause(self.last_heap_mb, queue_mb)

    def close(self) -> None:
        """Mark the producer side finished."""
        with self._cond:
            self._done = True
            self._cond.notify_all()

    def feed(self, source: Iterable[Any]) -> None:
        """Start a producer thread that drains ``source`` into the queue."""
        if self._producer is not None:
            raise RuntimeError("BufferQueue already has a producer")
        self.start()

        def _produce() -> None:
            try:
                for item in source:
                    if not self.wait_open():
                        break
                    self.put(item)
            except BaseException as exc:  # noqa: BLE001
                self._error = exc
            finally:
                self.close()

        self._producer = threading.Thread(target=_produce, name="bulkpost-buffer-producer", daemon=True)
        self._producer.start()

    # consumer side
    def get(self, timeout: float | None = None) -> tuple[bool, Any]:
        """Pop the oldest item.

        Returns:
            tuple[bool, Any]: ``(True, item)``, or ``(False, None)`` when the
            producer is finished and the queue is empty, or on timeout.
        """
        with self._cond:
            while not self._items and not self._done:
                if not self._cond.wait(timeout if timeout is not None else _GATE_POLL) and timeout is not None:
                    return False, None
            if not self._items:
                return False, None
            item, size = self._items.popleft()
            self._queued_bytes -= size
            self.objects_dequeued += 1
            self._cond.notify_all()
            return True, item

    def __iter__(self) -> Iterator[Any]:
        try:
            while True:
                ok, item = self.get()
                if not ok:
                    break
                yield item
            if self._error is not None:
                raise self._error
        finally:
            self.shutdown()

    def __len__(self) -> int:
        return len(self._items)

    def stats(self) -> QueueStats:
        with self._cond:
            return QueueStats(
                queue_length=len(self._items),
                queue_size_mb=self._queued_mb(),
                objects_queued=self.objects_queued,
                objects_dequeued=self.objects_dequeued,
                is_paused=self.is_paused,
                pause_count=self.pause_count,
                resume_count=self.resume_count,
                heap_mb=self.last_heap_mb,
                max_items=self.max_items,
            )

    def shutdown(self) -> None:
        """Stop sampling and release a producer parked on the gate."""
        self.stop()
        with self._cond:
            self._cond.notify_all()
        producer = self._producer
        if producer is not None and producer is not threading.current_thread():
            producer.join(timeout=1.0)

    def __enter__(self) -> BufferQueue:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


class MemoryThrottle(_PressureGate):
    """Gate an iterator on process memory without buffering.

    Defaults are tuned for cloud-object reads: pause at 1200 MB, resume at
    800 MB.
    """

    def __init__(
        self,
        config: ThrottleConfig | None = None,
        *,
        memory_probe: Callable[[], int] | None = None,
    ) -> None:
        cfg = config or ThrottleConfig(pause_threshold_mb=1200, resume_threshold_mb=800)
        super().__init__(cfg, memory_probe=memory_probe, name="bulkpost-throttle")
        self.objects_processed = 0

    def throttle(self, records: Iterable[Any]) -> Iterator[Any]:
        """Yield from ``records``, waiting whenever memory is over threshold."""
        self.start()
        try:
            for record in records:
                self.objects_processed += 1
                yield record
                if not self.wait_open():
                    break
        finally:
            self.stop()

    def stats(self) -> dict[str, Any]:
        return {
            "objects_processed": self.objects_processed,
            "is_paused": self.is_paused,
            "pause_count": self.pause_count,
            "resume_count": self.resume_count,
            "heap_mb": round(self.last_heap_mb, 1),
        }
