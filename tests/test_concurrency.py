import threading
import time

import pytest

from bulkpost.core.concurrency import Executor, ExecutorConfig


def test_map_unordered_delivers_every_result():
    seen = []
    submitted = Executor(ExecutorConfig(max_workers=4, window=8)).map_unordered(
        range(20), lambda x: x * 2, seen.append
    )
    assert submitted == 20
    assert sorted(seen) == [x * 2 for x in range(20)]


def test_window_bounds_in_flight_tasks():
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def work(x):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.01)
        with lock:
            state["active"] -= 1
        return x

    executor = Executor(ExecutorConfig(max_workers=3, window=3))
    executor.map_unordered(range(15), work, lambda r: None)
    assert state["peak"] <= 3
    assert executor.peak_in_flight <= 3


def test_items_are_pulled_lazily():
    pulled = []

    def source():
        for i in range(10):
            pulled.append(i)
            yield i

    gate = threading.Event()
    results = []

    def work(x):
        gate.wait(1.0)
        return x

    def on_result(r):
        results.append(r)
        # after the first completion no more than window + 1 items were taken
        if len(results) == 1:
            assert len(pulled) <= 3
        gate.set()

    threading.Timer(0.05, gate.set).start()
    Executor(ExecutorConfig(max_workers=2, window=2)).map_unordered(source(), work, on_result)
    assert sorted(results) == list(range(10))


def test_worker_errors_go_to_on_error_and_run_continues():
    errors = []
    results = []

    def work(x):
        if x == 3:
            raise ValueError("boom")
        return x

    executor = Executor(ExecutorConfig(max_workers=2, window=2))
    executor.map_unordered(range(6), work, results.append, on_error=errors.append)
    assert sorted(results) == [0, 1, 2, 4, 5]
    assert (executor.submitted, executor.completed, executor.errors) == (6, 5, 1)
    assert len(errors) == 1 and isinstance(errors[0], ValueError)


def test_fail_fast_reraises():
    def work(x):
        raise RuntimeError("stop")

    with pytest.raises(RuntimeError):
        Executor(ExecutorConfig(max_workers=1, window=1)).map_unordered(range(3), work, lambda r: None, fail_fast=True)


def test_rejects_zero_workers():
    with pytest.raises(ValueError):
        Executor(ExecutorConfig(max_workers=0, window=1))
