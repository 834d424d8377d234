# transforms.py
# SPDX-License-Identifier: MIT
"""Record-shape helpers and filters applied between decoding and batching.

Each factory returns a ``Record -> Record`` callable. Transforms may mutate
their input in place; a transform that returns an empty mapping (or None)
tells the pipeline to drop the record and count it as ``empty``.
"""

from __future__ import annotations

import datetime as _dt
import hashlib
import json
import threading
from collections.abc import Callable, Mapping, MutableMapping, Sequence
from typing import Any

from .config import RunConfig
from .log import get_logger

log = get_logger(__name__)

Record = MutableMapping[str, Any]
Transform = Callable[[Record], Any]
# Receives the counter name of a record a filter turned away.
SkipCallback = Callable[[str], None]

__all__ = [
    "PROFILE_OPERATIONS",
    "Transform",
    "is_not_empty",
    "parse_time_ms",
    "insert_id_for",
    "fix_event_shape",
    "fix_user_shape",
    "fix_group_shape",
    "fix_shape",
    "remove_nulls",
    "add_tags",
    "utc_offset",
    "add_insert_id",
    "csv_row_to_event",
    "dedupe_records",
    "epoch_filter",
    "allow_deny_lists",
    "scrub_properties",
    "flatten_properties",
    "build_transform_chain",
]

PROFILE_OPERATIONS = ("$set", "$set_once", "$add", "$union", "$append", "$remove", "$unset")

# Epoch values below this are taken to be seconds rather than milliseconds.
_SECONDS_CUTOFF = 100_000_000_000


def is_not_empty(record: Any) -> bool:
    """True for a mapping with at least one key."""
    return isinstance(record, Mapping) and len(record) > 0


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def parse_time_ms(value: Any) -> Any:
    """Convert an ISO-8601 string to epoch milliseconds.

    Numbers and numeric strings come back as numbers. Naive timestamps are
    read as UTC. Values that cannot be parsed are returned unchanged.
    """
    if _is_number(value):
        number = float(value)
        return int(number) if number.is_integer() else number
    if isinstance(value, _dt.datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = _dt.datetime.fromisoformat(text)
        except ValueError:
            return value
    else:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return int(parsed.timestamp() * 1000)


def insert_id_for(event: Any, distinct_id: Any, time_value: Any) -> str:
    """Deterministic dedupe key for an event from its name, user and time."""
    key = "-".join(str(part) for part in (event, distinct_id or "", time_value))
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


# ---------------------------------------------------------------------------
# Shape fixing
# ---------------------------------------------------------------------------

def fix_event_shape(record: Record) -> Record:
    """Move flat event fields into ``properties``, parse time, add ``$insert_id``."""
    props = record.get("properties")
    if not isinstance(props, MutableMapping):
        props = {k: v for k, v in record.items() if k != "event"}
        for key in list(record):
            if key != "event":
                del record[key]
        record["properties"] = props

    time_value = props.get("time")
    if time_value and not _is_number(time_value):
        props["time"] = parse_time_ms(time_value)

    if not props.get("$insert_id"):
        props["$insert_id"] = insert_id_for(record.get("event"), props.get("distinct_id"), props.get("time"))
    return record


def _has_operation(record: Mapping[str, Any]) -> bool:
    return any(op in record for op in PROFILE_OPERATIONS)


def _wrap_profile(record: Record, id_keys: Sequence[str], id_field: str) -> Record | None:
    uuid_key = next((k for k in id_keys if record.get(k)), None)
    if uuid_key is None:
        return None
    props = dict(record)
    wrapped: dict[str, Any] = {id_field: props.pop(uuid_key)}
    props.pop("$token", None)
    props.pop(id_field, None)
    nested = props.get("$properties")
    if isinstance(nested, Mapping):
        props = dict(nested)
    wrapped["$set"] = props
    return wrapped


def fix_user_shape(record: Record, *, token: str | None = None) -> Record:
    """Wrap a flat user profile as ``{"$set": ..., "$distinct_id": ...}``.

    Profiles without an identifier become ``{}`` so the pipeline drops them.
    ``token`` is stamped as ``$token`` when the record has none.
    """
    if not _has_operation(record):
        wrapped = _wrap_profile(record, ("$distinct_id", "distinct_id"), "$distinct_id")
        if wrapped is None:
            log.debug("Skipping user profile without an identifier: %r", record)
            return {}
        record = wrapped
    if token and not record.get("$token"):
        record["$token"] = token
    return record


def fix_group_shape(record: Record, *, token: str | None = None, group_key: str | None = None) -> Record:
    """Wrap a flat group profile as ``{"$set": ..., "$group_id": ...}``."""
    if not _has_operation(record):
        wrapped = _wrap_profile(
            record,
            ("$distinct_id", "distinct_id", "$group_id", "group_id"),
            "$group_id",
        )
        if wrapped is None:
            log.debug("Skipping group profile without an identifier: %r", record)
            return {}
        record = wrapped
    if token and not record.get("$token"):
        record["$token"] = token
    if group_key and not record.get("$group_key"):
        record["$group_key"] = group_key
    return record


def fix_shape(record_type: str, *, token: str | None = None, group_key: str | None = None) -> Transform | None:
    """Return the shape fixer for ``record_type``, or None if it has none."""
    if record_type == "event":
        return fix_event_shape
    if record_type == "user":
        return lambda record: fix_user_shape(record, token=token)
    if record_type == "group":
        return lambda record: fix_group_shape(record, token=token, group_key=group_key)
    return None


# ---------------------------------------------------------------------------
# Property-level helpers
# ---------------------------------------------------------------------------

def _containers(record: Record) -> list[MutableMapping[str, Any]]:
    keys = ("properties",) + PROFILE_OPERATIONS
    return [record[k] for k in keys if isinstance(record.get(k), MutableMapping)]


def remove_nulls(record: Record) -> Record:
    """Delete None, empty-string and empty-container values from property maps."""
    for container in _containers(record):
        for key in list(container):
            value = container[key]
            if value is None or value == "":
                del container[key]
            elif isinstance(value, (Mapping, list)) and not value:
                del container[key]
    return record


def add_tags(record_type: str, tags: Mapping[str, Any]) -> Transform:
    """Merge ``tags`` into event properties or the profile operation map."""
    tags = dict(tags)

    def _apply(record: Record) -> Record:
        if not tags:
            return record
        if record_type == "event":
            props = record.get("properties")
            if isinstance(props, MutableMapping):
                props.update(tags)
            return record
        if record_type in {"user", "group"}:
            op = next((k for k in record if k in PROFILE_OPERATIONS), None)
            if op is not None and isinstance(record[op], MutableMapping):
                record[op].update(tags)
        return record

    return _apply


def utc_offset(hours: float) -> Transform:
    """Shift ``properties.time`` by ``hours``; the result is epoch milliseconds.

    Second-resolution epochs are promoted to milliseconds first.
    """
    delta_ms = int(hours * 3_600_000)

    def _apply(record: Record) -> Record:
        props = record.get("properties")
        if not isinstance(props, MutableMapping) or not props.get("time"):
            return record
        value = parse_time_ms(props["time"])
        if not _is_number(value) or isinstance(value, str):
            return record
        if value < _SECONDS_CUTOFF:
            value = value * 1000
        props["time"] = int(value + delta_ms)
        return record

    return _apply


def add_insert_id(record: Record) -> Record:
    """Add a hashed ``$insert_id`` to events that lack one."""
    props = record.get("properties")
    if isinstance(props, MutableMapping) and not props.get("$insert_id"):
        props["$insert_id"] = insert_id_for(record.get("event"), props.get("distinct_id"), props.get("time"))
    return record


def csv_row_to_event(row: Mapping[str, Any]) -> dict[str, Any]:
    """Map a flat CSV row to an event with identity fields under ``properties``.

    ``distinct_id``, ``$insert_id`` and ``time`` are dropped when empty;
    ``time`` is converted to epoch milliseconds.
    """
    rest = dict(row)
    event = rest.pop("event", None)
    distinct_id = rest.pop("distinct_id", "")
    insert_id = rest.pop("$insert_id", "")
    time_value = rest.pop("time", "")
    props: dict[str, Any] = {}
    if distinct_id:
        props["distinct_id"] = distinct_id
    if insert_id:
        props["$insert_id"] = insert_id
    if time_value:
        props["time"] = parse_time_ms(time_value)
    props.update(rest)
    return {"event": event, "properties": props}


# ---------------------------------------------------------------------------
# Filters and property rewrites
# ---------------------------------------------------------------------------

def _skip(on_skip: SkipCallback | None, counter: str) -> dict[str, Any]:
    if on_skip is not None:
        on_skip(counter)
    return {}


def dedupe_records(on_skip: SkipCallback | None = None) -> Transform:
    """Drop records identical to one already seen in this run.

    Records are compared by a SHA-256 of their key-sorted JSON, so key order
    does not matter. Duplicates are reported as ``duplicates``.
    """
    seen: set[str] = set()
    lock = threading.Lock()

    def _apply(record: Record) -> Record | dict[str, Any]:
        text = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        with lock:
            if digest in seen:
                return _skip(on_skip, "duplicates")
            seen.add(digest)
        return record

    return _apply


def epoch_filter(
    start: int | None = None,
    end: int | None = None,
    on_skip: SkipCallback | None = None,
) -> Transform:
    """Drop events whose ``properties.time`` falls outside ``[start, end]``.

    Bounds are Unix seconds; either may be None. Event times may be seconds,
    milliseconds or ISO strings. Events without a usable time pass through.
    Dropped events are reported as ``out_of_bounds``.
    """
    start_ms = start * 1000 if start is not None else None
    end_ms = end * 1000 if end is not None else None

    def _apply(record: Record) -> Record | dict[str, Any]:
        props = record.get("properties")
        if not isinstance(props, Mapping) or not props.get("time"):
            return record
        value = parse_time_ms(props["time"])
        if isinstance(value, str) or not _is_number(value):
            return record
        if value < _SECONDS_CUTOFF:
            value = value * 1000
        if (start_ms is not None and value < start_ms) or (end_ms is not None and value > end_ms):
            return _skip(on_skip, "out_of_bounds")
        return record

    return _apply


def allow_deny_lists(
    *,
    event_allowlist: Sequence[str] = (),
    event_denylist: Sequence[str] = (),
    prop_key_allowlist: Sequence[str] = (),
    prop_key_denylist: Sequence[str] = (),
    prop_value_allowlist: Sequence[Any] = (),
    prop_value_denylist: Sequence[Any] = (),
    on_skip: SkipCallback | None = None,
) -> Transform:
    """Keep or drop whole records by event name, property key or property value.

    An allow list passes a record when any of its properties (or its event
    name) is listed; a deny list drops it on any match. Checks run in the
    order event, key, value. Dropped records are reported as
    ``allowlist_skipped`` or ``denylist_skipped``.
    """
    events_in, events_out = frozenset(event_allowlist), frozenset(event_denylist)
    keys_in, keys_out = frozenset(prop_key_allowlist), frozenset(prop_key_denylist)
    # values may be unhashable, so these stay as tuples
    values_in, values_out = tuple(prop_value_allowlist), tuple(prop_value_denylist)

    def _apply(record: Record) -> Record | dict[str, Any]:
        event = record.get("event")
        if events_in and event not in events_in:
            return _skip(on_skip, "allowlist_skipped")
        if events_out and event in events_out:
            return _skip(on_skip, "denylist_skipped")
        props = record.get("properties")
        props = props if isinstance(props, Mapping) else {}
        if keys_in and not any(key in keys_in for key in props):
            return _skip(on_skip, "allowlist_skipped")
        if keys_out and any(key in keys_out for key in props):
            return _skip(on_skip, "denylist_skipped")
        if values_in and not any(value in values_in for value in props.values()):
            return _skip(on_skip, "allowlist_skipped")
        if values_out and any(value in values_out for value in props.values()):
            return _skip(on_skip, "denylist_skipped")
        return record

    return _apply


def scrub_properties(keys: Sequence[str]) -> Transform:
    """Delete ``keys`` wherever they occur, including nested maps and lists."""
    targets = frozenset(keys)

    def _scrub(value: Any) -> None:
        if isinstance(value, MutableMapping):
            for key in list(value):
                if key in targets:
                    del value[key]
                else:
                    _scrub(value[key])
        elif isinstance(value, list):
            for item in value:
                _scrub(item)

    def _apply(record: Record) -> Record:
        for key in list(record):
            if key in targets:
                del record[key]
            else:
                _scrub(record[key])
        return record

    return _apply


def _flatten_into(out: dict[str, Any], prefix: str, value: Mapping[str, Any], separator: str) -> None:
    for key, inner in value.items():
        name = f"{prefix}{separator}{key}" if prefix else str(key)
        if isinstance(inner, Mapping) and inner:
            _flatten_into(out, name, inner, separator)
        else:
            out[name] = inner


def flatten_properties(separator: str = ".") -> Transform:
    """Flatten nested maps in ``properties`` and profile operations.

    ``{"a": {"b": 1}}`` becomes ``{"a.b": 1}``. Lists are left alone.
    """

    def _apply(record: Record) -> Record:
        for key in ("properties",) + PROFILE_OPERATIONS:
            container = record.get(key)
            if isinstance(container, Mapping) and any(isinstance(v, Mapping) for v in container.values()):
                flat: dict[str, Any] = {}
                _flatten_into(flat, "", container, separator)
                record[key] = flat
        return record

    return _apply


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

def build_transform_chain(
    cfg: RunConfig,
    user_transform: Transform | None = None,
    *,
    on_skip: SkipCallback | None = None,
) -> Transform | None:
    """Compose the caller's hook and the configured built-ins into one callable.

    Order: the user hook, dedupe, shape fixing, null removal, time offset,
    tags, allow and deny lists, the epoch window, scrubbing, flattening,
    insert ids. The hook therefore sees records as decoded. Returns None
    when nothing is configured. The chain stops early and returns ``{}``
    once any step empties the record.

    Args:
        cfg (RunConfig): Source of the ``transform`` section and record type.
        user_transform (Transform | None): Caller hook.
        on_skip (SkipCallback | None): Told the counter name whenever a
            filter drops a record.
    """
    tcfg = cfg.transform
    record_type = cfg.target.record_type
    is_event = record_type == "event"
    steps: list[Transform] = []
    if user_transform is not None:
        steps.append(user_transform)
    if tcfg.dedupe:
        steps.append(dedupe_records(on_skip))
    if tcfg.fix_data:
        fixer = fix_shape(record_type, token=cfg.auth.token, group_key=cfg.target.group_key)
        if fixer is not None:
            steps.append(fixer)
    if tcfg.remove_nulls:
        steps.append(remove_nulls)
    if tcfg.time_offset_hours and is_event:
        steps.append(utc_offset(tcfg.time_offset_hours))
    if tcfg.tags:
        steps.append(add_tags(record_type, tcfg.tags))
    lists = {
        "event_allowlist": tcfg.event_allowlist,
        "event_denylist": tcfg.event_denylist,
        "prop_key_allowlist": tcfg.prop_key_allowlist,
        "prop_key_denylist": tcfg.prop_key_denylist,
        "prop_value_allowlist": tcfg.prop_value_allowlist,
        "prop_value_denylist": tcfg.prop_value_denylist,
    }
    if any(lists.values()):
        steps.append(allow_deny_lists(**lists, on_skip=on_skip))
    if (tcfg.epoch_start is not None or tcfg.epoch_end is not None) and is_event:
        steps.append(epoch_filter(tcfg.epoch_start, tcfg.epoch_end, on_skip))
    if tcfg.scrub_props:
        steps.append(scrub_properties(tcfg.scrub_props))
    if tcfg.flatten_data:
        steps.append(flatten_properties(tcfg.flatten_separator))
    if tcfg.add_insert_id and is_event:
        steps.append(add_insert_id)
    if not steps:
        return None

    def _chain(record: Record) -> Any:
        for step in steps:
            record = step(record)
            if not is_not_empty(record):
                return {}
        return record

    return _chain
