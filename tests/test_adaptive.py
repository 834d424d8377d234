from bulkpost.core.adaptive import AdaptiveController, classify_tier
from bulkpost.core.config import DEFAULT_SIZE_TIERS, AdaptiveConfig, RunConfig
from bulkpost.core.state import RunState

GB = 1024 ** 3


def _state(workers: int = 50) -> RunState:
    cfg = RunConfig()
    cfg.auth.token = "t"
    cfg.dispatch.workers = workers
    return RunState.from_config(cfg)


def test_classify_tier_bounds():
    assert classify_tier(100, DEFAULT_SIZE_TIERS).name == "tiny"
    assert classify_tier(500, DEFAULT_SIZE_TIERS).name == "tiny"
    assert classify_tier(501, DEFAULT_SIZE_TIERS).name == "small"
    assert classify_tier(6000, DEFAULT_SIZE_TIERS).name == "large"
    assert classify_tier(50_000, DEFAULT_SIZE_TIERS).name == "dense"


def test_dense_records_cap_workers_at_five():
    ctl = AdaptiveController(AdaptiveConfig(enabled=True), heap_budget=8 * GB)
    plan = ctl.plan(20_000, requested_workers=50, current_records_per_batch=2000)
    assert plan.tier == "dense"
    assert plan.workers <= 5
    assert plan.records_per_batch == (10 * 1024 * 1024) // 20_000
    assert plan.buffer_depth == min(plan.workers * 5, 50)


def test_tiny_records_keep_requested_workers_within_tier():
    ctl = AdaptiveController(AdaptiveConfig(enabled=True), heap_budget=8 * GB)
    plan = ctl.plan(200, requested_workers=20, current_records_per_batch=2000)
    assert plan.tier == "tiny"
    assert plan.workers == 20
    assert plan.records_per_batch == 2000
    assert plan.buffer_depth == 200


def test_small_heap_limits_workers():
    ctl = AdaptiveController(AdaptiveConfig(enabled=True), heap_budget=64 * 1024 * 1024)
    plan = ctl.plan(1000, requested_workers=50)
    # 2000 records * 1000 B * 3 overhead = 6 MB per worker; 60% of 64 MB allows 6
    assert plan.max_safe_workers == 6
    assert plan.workers == 6


def test_apply_samples_head_and_reemits_everything():
    records = [{"blob": "x" * 20_000, "i": i} for i in range(150)]
    state = _state(workers=50)
    ctl = AdaptiveController(AdaptiveConfig(enabled=True, sample_size=100), heap_budget=8 * GB)

    out = ctl.apply(iter(records), state)

    assert state.workers <= 5
    assert state.adaptive_plan["sampled"] == 100
    assert state.adaptive_plan["tier"] == "dense"
    assert list(out) == records


def test_apply_prefers_size_hint_over_sampling():
    consumed = []

    def gen():
        for i in range(10):
            consumed.append(i)
            yield {"i": i}

    state = _state(workers=50)
    ctl = AdaptiveController(AdaptiveConfig(enabled=True, avg_record_size=8000), heap_budget=8 * GB)
    out = ctl.apply(gen(), state)
    assert consumed == []
    assert state.adaptive_plan["tier"] == "large"
    assert state.adaptive_plan["sampled"] == 0
    assert state.workers == 8
    assert [r["i"] for r in out] == list(range(10))


def test_apply_on_empty_stream_leaves_state():
    state = _state(workers=7)
    out = AdaptiveController(AdaptiveConfig(enabled=True), heap_budget=GB).apply(iter(()), state)
    assert list(out) == []
    assert state.workers == 7
    assert state.adaptive_plan is None
