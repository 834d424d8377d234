import pytest

from bulkpost.core.config import RunConfig
from bulkpost.core.transforms import (
    add_tags,
    allow_deny_lists,
    build_transform_chain,
    csv_row_to_event,
    dedupe_records,
    epoch_filter,
    fix_event_shape,
    fix_group_shape,
    fix_user_shape,
    flatten_properties,
    insert_id_for,
    is_not_empty,
    parse_time_ms,
    remove_nulls,
    scrub_properties,
    utc_offset,
)


def test_is_not_empty():
    assert is_not_empty({"a": 1})
    assert not is_not_empty({})
    assert not is_not_empty(None)
    assert not is_not_empty([1])
    assert not is_not_empty("x")


def test_parse_time_ms_handles_iso_and_numbers():
    assert parse_time_ms("2024-01-01T00:00:00Z") == 1704067200000
    assert parse_time_ms("2024-01-01T00:00:00") == 1704067200000
    assert parse_time_ms("1704067200") == 1704067200
    assert parse_time_ms(12.5) == 12.5
    assert parse_time_ms("not a time") == "not a time"


def test_fix_event_shape_moves_fields_into_properties():
    rec = {"event": "signup", "distinct_id": "u1", "time": "2024-01-01T00:00:00Z", "plan": "pro"}
    out = fix_event_shape(rec)
    assert set(out) == {"event", "properties"}
    props = out["properties"]
    assert props["distinct_id"] == "u1"
    assert props["time"] == 1704067200000
    assert props["plan"] == "pro"
    assert props["$insert_id"] == insert_id_for("signup", "u1", 1704067200000)


def test_fix_event_shape_keeps_existing_insert_id():
    rec = {"event": "e", "properties": {"time": 5, "$insert_id": "abc"}}
    assert fix_event_shape(rec)["properties"] == {"time": 5, "$insert_id": "abc"}


def test_insert_id_is_deterministic():
    assert insert_id_for("e", "u", 1) == insert_id_for("e", "u", 1)
    assert insert_id_for("e", "u", 1) != insert_id_for("e", "u", 2)
    assert len(insert_id_for("e", None, 1)) == 32


def test_fix_user_shape_wraps_flat_profile_and_adds_token():
    out = fix_user_shape({"distinct_id": "u1", "name": "Ada", "$token": "old"}, token="tok")
    assert out == {"$distinct_id": "u1", "$set": {"name": "Ada"}, "$token": "tok"}


def test_fix_user_shape_unwraps_export_properties():
    out = fix_user_shape({"$distinct_id": "u1", "$properties": {"email": "a@b.c"}})
    assert out == {"$distinct_id": "u1", "$set": {"email": "a@b.c"}}


def test_fix_user_shape_without_identifier_is_empty():
    assert fix_user_shape({"name": "nobody"}) == {}


def test_fix_user_shape_leaves_operations_alone():
    rec = {"$distinct_id": "u1", "$set_once": {"a": 1}, "$token": "keep"}
    assert fix_user_shape(rec, token="other") == rec


def test_fix_group_shape_uses_group_id_and_key():
    out = fix_group_shape({"group_id": "acme", "seats": 5}, token="t", group_key="company")
    assert out == {"$group_id": "acme", "$set": {"seats": 5}, "$token": "t", "$group_key": "company"}


def test_remove_nulls_cleans_property_maps():
    rec = {"event": "e", "properties": {"a": None, "b": "", "c": {}, "d": [], "e": 0, "f": "x"}}
    assert remove_nulls(rec)["properties"] == {"e": 0, "f": "x"}
    profile = {"$set": {"a": None, "b": 1}}
    assert remove_nulls(profile) == {"$set": {"b": 1}}


def test_add_tags_event_and_profile():
    tag = add_tags("event", {"source": "import"})
    assert tag({"event": "e", "properties": {"a": 1}})["properties"] == {"a": 1, "source": "import"}
    tag_user = add_tags("user", {"source": "import"})
    assert tag_user({"$distinct_id": "u", "$set": {}})["$set"] == {"source": "import"}


def test_utc_offset_promotes_seconds_and_shifts():
    shift = utc_offset(2)
    rec = shift({"event": "e", "properties": {"time": 1_700_000_000}})
    assert rec["properties"]["time"] == 1_700_000_000_000 + 2 * 3_600_000
    rec_ms = shift({"event": "e", "properties": {"time": 1_700_000_000_000}})
    assert rec_ms["properties"]["time"] == 1_700_000_000_000 + 2 * 3_600_000


def test_csv_row_to_event_drops_empty_identity_fields():
    row = {"event": "view", "distinct_id": "", "$insert_id": "", "time": "2024-01-01T00:00:00Z", "page": "/"}
    assert csv_row_to_event(row) == {"event": "view", "properties": {"time": 1704067200000, "page": "/"}}


def test_chain_runs_user_transform_before_fix_and_tags():
    cfg = RunConfig()
    cfg.transform.fix_data = True
    cfg.transform.tags = {"t": 1}
    seen = []

    def hook(record):
        seen.append(sorted(record))
        record["plan"] = "pro"
        return record

    chain = build_transform_chain(cfg, hook)
    out = chain({"event": "e", "distinct_id": "u", "time": 1})
    assert seen == [["distinct_id", "event", "time"]]
    assert out["properties"]["plan"] == "pro"
    assert out["properties"]["distinct_id"] == "u"
    assert out["properties"]["t"] == 1


def test_chain_short_circuits_on_empty():
    cfg = RunConfig()
    cfg.transform.tags = {"t": 1}
    chain = build_transform_chain(cfg, lambda record: None)
    assert chain({"event": "e", "properties": {}}) == {}


def test_chain_is_none_when_nothing_configured():
    assert build_transform_chain(RunConfig()) is None


def test_dedupe_ignores_key_order_and_reports_duplicates():
    skipped = []
    dedupe = dedupe_records(skipped.append)
    assert dedupe({"event": "click", "properties": {"a": 1, "b": 2}})
    assert dedupe({"properties": {"b": 2, "a": 1}, "event": "click"}) == {}
    assert dedupe({"event": "click", "properties": {"a": 2}})
    assert skipped == ["duplicates"]


def test_epoch_filter_accepts_seconds_millis_and_iso():
    skipped = []
    keep = epoch_filter(1_700_000_000, 1_700_000_100, skipped.append)
    assert keep({"event": "e", "properties": {"time": 1_700_000_050}})
    assert keep({"event": "e", "properties": {"time": 1_700_000_050_000}})
    assert keep({"event": "e", "properties": {"time": 1_699_999_999}}) == {}
    assert keep({"event": "e", "properties": {"time": "2030-01-01T00:00:00Z"}}) == {}
    assert keep({"event": "e", "properties": {}}) == {"event": "e", "properties": {}}
    assert skipped == ["out_of_bounds", "out_of_bounds"]


def test_epoch_filter_open_ended():
    after = epoch_filter(start=1_700_000_000)
    assert after({"event": "e", "properties": {"time": 4_000_000_000}})
    assert after({"event": "e", "properties": {"time": 1}}) == {}


@pytest.mark.parametrize(
    "option, allowed, rejected, counter",
    [
        ("event_allowlist", {"event": "ok", "properties": {"k": "v"}}, {"event": "no", "properties": {"k": "v"}},
         "allowlist_skipped"),
        ("event_denylist", {"event": "ok", "properties": {"k": "v"}}, {"event": "no", "properties": {"k": "v"}},
         "denylist_skipped"),
        ("prop_key_allowlist", {"properties": {"ok": "v"}}, {"properties": {"no": "v"}}, "allowlist_skipped"),
        ("prop_key_denylist", {"properties": {"ok": "v"}}, {"properties": {"no": "v"}}, "denylist_skipped"),
        ("prop_value_allowlist", {"properties": {"k": "ok"}}, {"properties": {"k": "no"}}, "allowlist_skipped"),
        ("prop_value_denylist", {"properties": {"k": "ok"}}, {"properties": {"k": "no"}}, "denylist_skipped"),
    ],
)
def test_allow_deny_lists(option, allowed, rejected, counter):
    listed = "no" if option.endswith("denylist") else "ok"
    skipped = []
    check = allow_deny_lists(**{option: [listed]}, on_skip=skipped.append)
    assert check(dict(allowed)) == allowed
    assert check(dict(rejected)) == {}
    assert skipped == [counter]


def test_scrub_properties_reaches_nested_maps_and_lists():
    record = {
        "event": "test",
        "properties": {
            "$user_id": "123",
            "email": "ak@foo.com",
            "nested": {"foo": "bar", "baz": "qux"},
            "cart": [{"item": "apple", "price": 1.02}, {"item": "banana", "price": 2.03}],
        },
    }
    assert scrub_properties(["email", "item", "foo"])(record) == {
        "event": "test",
        "properties": {
            "$user_id": "123",
            "nested": {"baz": "qux"},
            "cart": [{"price": 1.02}, {"price": 2.03}],
        },
    }


def test_flatten_properties_and_profile_operations():
    flatten = flatten_properties()
    out = flatten({"event": "e", "properties": {"a": {"b": {"c": 1}}, "d": [1, 2], "e": {}}})
    assert out["properties"] == {"a.b.c": 1, "d": [1, 2], "e": {}}
    profile = flatten({"$distinct_id": "u", "$set": {"n": {"k": "v"}, "x": 1}})
    assert profile["$set"] == {"n.k": "v", "x": 1}
    assert flatten_properties("__")({"properties": {"a": {"b": 1}}}) == {"properties": {"a__b": 1}}


def test_chain_reports_filtered_records():
    cfg = RunConfig()
    cfg.transform.dedupe = True
    cfg.transform.event_denylist = ["debug"]
    skipped = []
    chain = build_transform_chain(cfg, on_skip=skipped.append)
    assert chain({"event": "a", "properties": {}})
    assert chain({"event": "a", "properties": {}}) == {}
    assert chain({"event": "debug", "properties": {}}) == {}
    assert skipped == ["duplicates", "denylist_skipped"]
