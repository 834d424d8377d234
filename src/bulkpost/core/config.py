# config.py
# SPDX-License-Identifier: MIT
"""Configuration models and helpers for bulkpost runs.

Every section is a plain slotted dataclass holding declarative knobs only.
Runtime objects (transform callables, response/error handlers, HTTP
clients) are passed to :func:`bulkpost.core.pipeline.run_import` directly
and never live on the config, so a config can always be round-tripped
through JSON or TOML.
"""
from __future__ import annotations

import json
import tomllib
from collections.abc import Sequence as ABCSequence
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, TypeVar, Union, get_args, get_origin, get_type_hints
from urllib.parse import urlsplit

from .errors import ConfigurationError
from .log import DEFAULT_FORMAT, PACKAGE_LOGGER_NAME, configure_logging

__all__ = [
    "RECORD_TYPES",
    "FORMAT_RECORD_TYPES",
    "PASSTHROUGH_RECORD_TYPES",
    "EXPORT_RECORD_TYPES",
    "AuthConfig",
    "TargetConfig",
    "BatchConfig",
    "DispatchConfig",
    "SourceConfig",
    "TransformConfig",
    "SizeTier",
    "AdaptiveConfig",
    "ThrottleConfig",
    "LoggingConfig",
    "RunConfig",
    "load_config_from_path",
    "apply_overrides",
]

# Record types that are decoded from files/streams and batched.
FORMAT_RECORD_TYPES = ("event", "user", "group")
# Record types whose input descriptor is used as-is (no decoding).
PASSTHROUGH_RECORD_TYPES = ("table", "export", "profile-export")
# Pass-through types that are never sent to an ingestion endpoint.
EXPORT_RECORD_TYPES = ("export", "profile-export")
RECORD_TYPES = FORMAT_RECORD_TYPES + PASSTHROUGH_RECORD_TYPES

MAX_RECORDS_PER_REQUEST = {"event": 2000, "user": 2000, "group": 200}
DEFAULT_BYTES_PER_BATCH = 9 * 1024 * 1024
DEFAULT_CLOUD_SCHEMES = ("gs", "gcs", "s3", "az", "abfs", "memory")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class AuthConfig:
    """Credentials; resolved once per run into an Authorization header.

    Precedence: service account (``acct`` + ``password`` + ``project``),
    API ``secret``, project ``token``, then ``bearer``.
    """

    token: Optional[str] = None
    secret: Optional[str] = None
    acct: Optional[str] = None
    password: Optional[str] = None
    project: Optional[str] = None
    bearer: Optional[str] = None


@dataclass(slots=True)
class TargetConfig:
    """Where batches go and how the endpoint should treat them.

    Attributes:
        record_type (str): One of :data:`RECORD_TYPES`.
        region (str): ``US``, ``EU`` or ``IN``.
        base_url (str | None): Overrides the regional host (proxies, tests).
        project_id (str | None): Sent as the ``project_id`` query parameter.
        lookup_table_id (str | None): Required for ``table`` uploads.
        group_key (str | None): Stamped as ``$group_key`` on group profiles
            that lack one when shape fixing is on.
        strict (bool): Ask the endpoint to validate every record.
    """

    record_type: str = "event"
    region: str = "US"
    base_url: Optional[str] = None
    project_id: Optional[str] = None
    lookup_table_id: Optional[str] = None
    group_key: Optional[str] = None
    strict: bool = True


@dataclass(slots=True)
class BatchConfig:
    """Per-request limits enforced by the batch accumulator."""

    records_per_batch: int = 2000
    bytes_per_batch: int = DEFAULT_BYTES_PER_BATCH


@dataclass(slots=True)
class DispatchConfig:
    """Sender pool, retry, and wire settings.

    ``timeout`` bounds a whole attempt and ``first_byte_timeout`` bounds the
    wait for response headers; exceeding either is retried like any other
    transient failure. Backoff is ``min(backoff_base * 2**attempt,
    backoff_max)`` seconds.
    """

    workers: int = 10
    max_retries: int = 10
    compress: bool = True
    compression_level: int = 6
    dry_run: bool = False
    timeout: float = 30.0
    first_byte_timeout: float = 10.0
    backoff_base: float = 1.0
    backoff_max: float = 5.0
    max_bad_records: int = 1000
    keep_responses: bool = False


@dataclass(slots=True)
class SourceConfig:
    """How inputs are resolved and decoded.

    Attributes:
        stream_format (str | None): Force ``jsonl``, ``json``, ``csv`` or
            ``parquet`` instead of inferring from the extension.
        gzip (bool | None): Force (True) or forbid (False) gzip
            decompression; None infers from the suffix. Forcing gzip also
            forces streaming.
        force_stream (bool): Never materialize files in memory.
        free_memory_fraction (float): Files smaller than this fraction of
            available memory are materialized when not force-streaming.
        strict_decode (bool): Abort on the first malformed line instead of
            skipping it.
        max_decode_errors (int | None): Abort after this many skipped lines.
        max_invalid_warnings (int): Cap on per-file warnings for skipped lines.
        aliases (dict[str, str]): CSV header renames applied before mapping.
        cloud_schemes (tuple[str, ...]): URL schemes treated as object storage.
        storage_options (dict[str, Any]): Passed through to ``fsspec``.
    """

    stream_format: Optional[str] = None
    gzip: Optional[bool] = None
    force_stream: bool = True
    free_memory_fraction: float = 0.5
    strict_decode: bool = False
    max_decode_errors: Optional[int] = None
    max_invalid_warnings: int = 5
    aliases: Dict[str, str] = field(default_factory=dict)
    cloud_schemes: Tuple[str, ...] = DEFAULT_CLOUD_SCHEMES
    storage_options: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TransformConfig:
    """Built-in record fixes and filters applied after the user transform hook.

    ``epoch_start``/``epoch_end`` are Unix seconds. The allow and deny lists
    drop whole records: events by name, or by a property key or value.
    """

    fix_data: bool = False
    remove_nulls: bool = False
    tags: Dict[str, Any] = field(default_factory=dict)
    time_offset_hours: float = 0
    add_insert_id: bool = False
    dedupe: bool = False
    epoch_start: Optional[int] = None
    epoch_end: Optional[int] = None
    event_allowlist: List[str] = field(default_factory=list)
    event_denylist: List[str] = field(default_factory=list)
    prop_key_allowlist: List[str] = field(default_factory=list)
    prop_key_denylist: List[str] = field(default_factory=list)
    prop_value_allowlist: List[Any] = field(default_factory=list)
    prop_value_denylist: List[Any] = field(default_factory=list)
    scrub_props: List[str] = field(default_factory=list)
    flatten_data: bool = False
    flatten_separator: str = "."


@dataclass(slots=True)
class SizeTier:
    """Average-record-size bucket and the worker ceiling that goes with it.

    ``max_avg_bytes`` of None marks the open-ended top tier.
    """

    name: str
    max_avg_bytes: Optional[int] = None
    max_workers: int = 1


DEFAULT_SIZE_TIERS: Tuple[SizeTier, ...] = (
    SizeTier("tiny", 500, 50),
    SizeTier("small", 2048, 30),
    SizeTier("medium", 5120, 15),
    SizeTier("large", 10240, 8),
    SizeTier("dense", None, 5),
)


@dataclass(slots=True)
class AdaptiveConfig:
    """Knobs for the adaptive concurrency controller.

    The defaults are empirically tuned for a JSON-over-HTTP workload and
    can be recalibrated per deployment.
    """

    enabled: bool = False
    avg_record_size: Optional[int] = None
    sample_size: int = 100
    tiers: Tuple[SizeTier, ...] = DEFAULT_SIZE_TIERS
    batch_memory_target: int = 10 * 1024 * 1024
    max_records_per_batch: int = 2000
    overhead_factor: float = 3.0
    heap_fraction: float = 0.6
    heap_budget: Optional[int] = None
    large_record_threshold: int = 5120


@dataclass(slots=True)
class ThrottleConfig:
    """Buffer-queue thresholds (MB) and sampling intervals (seconds)."""

    enabled: bool = False
    max_queue_mb: float = 2000
    pause_threshold_mb: float = 1500
    resume_threshold_mb: float = 1000
    check_interval: float = 0.1
    paused_interval: float = 1.0
    force_gc: bool = True


@dataclass(slots=True)
class LoggingConfig:
    """Controls the package logger; set propagate/logger_name to
    integrate with host apps. ``propagate`` of None leaves propagation on.
    """
    level: int | str = "INFO"
    propagate: Optional[bool] = None
    fmt: Optional[str] = DEFAULT_FORMAT
    logger_name: str = PACKAGE_LOGGER_NAME
    progress_interval: float = 5.0

    def apply(self) -> None:
        """Apply this logging configuration to the package logger."""
        configure_logging(
            level=self.level,
            propagate=self.propagate,
            fmt=self.fmt,
            logger_name=self.logger_name or PACKAGE_LOGGER_NAME,
        )


# ---------------------------------------------------------------------------
# Master config
# ---------------------------------------------------------------------------

T = TypeVar("T")


@dataclass(slots=True)
class RunConfig:
    """Declarative description of one import run.

    ``log_path`` (optional) receives a JSONL run log with the summary and
    rejected records. ``verbose`` controls whether progress is logged at
    INFO or only warnings and errors. ``show_progress`` adds a throughput
    line every ``logging.progress_interval`` seconds.
    """
    auth: AuthConfig = field(default_factory=AuthConfig)
    target: TargetConfig = field(default_factory=TargetConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    transform: TransformConfig = field(default_factory=TransformConfig)
    adaptive: AdaptiveConfig = field(default_factory=AdaptiveConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    log_path: Optional[str] = None
    verbose: bool = True
    show_progress: bool = False

    def validate(self) -> None:
        """Check the configuration for internal consistency.

        Normalizes ``target.record_type`` to lower case and
        ``target.region`` to upper case.

        Raises:
            ConfigurationError: On the first invalid setting.
        """
        tgt = self.target
        tgt.record_type = (tgt.record_type or "").strip().lower()
        if tgt.record_type not in RECORD_TYPES:
            raise ConfigurationError(
                f"target.record_type must be one of {list(RECORD_TYPES)}; got {tgt.record_type!r}."
            )
        tgt.region = (tgt.region or "US").strip().upper()
        if tgt.base_url:
            parsed = urlsplit(tgt.base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.hostname:
                raise ConfigurationError(
                    f"target.base_url must be an http(s) URL with a host; got {tgt.base_url!r}."
                )
        if tgt.record_type == "table" and not tgt.lookup_table_id:
            raise ConfigurationError("target.lookup_table_id is required for table uploads.")

        if self.batch.records_per_batch < 1:
            raise ConfigurationError("batch.records_per_batch must be >= 1.")
        if self.batch.bytes_per_batch < 1:
            raise ConfigurationError("batch.bytes_per_batch must be >= 1.")

        d = self.dispatch
        if d.workers < 1:
            raise ConfigurationError("dispatch.workers must be >= 1.")
        if d.max_retries < 0:
            raise ConfigurationError("dispatch.max_retries must be >= 0.")
        if not 0 <= d.compression_level <= 9:
            raise ConfigurationError("dispatch.compression_level must be between 0 and 9.")
        if d.timeout <= 0 or d.first_byte_timeout <= 0:
            raise ConfigurationError("dispatch timeouts must be positive.")

        s = self.source
        if s.stream_format is not None:
            s.stream_format = s.stream_format.strip().lower()
            if s.stream_format not in {"jsonl", "json", "csv", "parquet"}:
                raise ConfigurationError(
                    f"source.stream_format must be jsonl, json, csv or parquet; got {s.stream_format!r}."
                )
        if not 0.0 < s.free_memory_fraction <= 1.0:
            raise ConfigurationError("source.free_memory_fraction must be in (0, 1].")

        t = self.throttle
        if t.resume_threshold_mb >= t.pause_threshold_mb:
            raise ConfigurationError("throttle.resume_threshold_mb must be below pause_threshold_mb.")
        if t.check_interval <= 0 or t.paused_interval <= 0:
            raise ConfigurationError("throttle intervals must be positive.")

        a = self.adaptive
        if a.sample_size < 1:
            raise ConfigurationError("adaptive.sample_size must be >= 1.")
        if not a.tiers or a.tiers[-1].max_avg_bytes is not None:
            raise ConfigurationError("adaptive.tiers must end with an open-ended tier (max_avg_bytes unset).")
        bounds = [tier.max_avg_bytes for tier in a.tiers[:-1]]
        if any(b is None for b in bounds) or bounds != sorted(bounds):
            raise ConfigurationError("adaptive.tiers must be ordered by max_avg_bytes.")
        tr = self.transform
        if tr.epoch_start is not None and tr.epoch_end is not None and tr.epoch_start > tr.epoch_end:
            raise ConfigurationError("transform.epoch_start must not be after transform.epoch_end.")
        if self.logging.progress_interval <= 0:
            raise ConfigurationError("logging.progress_interval must be positive.")

    # -------------------------
    # Serialization helpers
    # -------------------------
    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serializable representation of this configuration."""
        return _dataclass_to_dict(self)

    def to_json(self, path: Path | str, *, indent: int = 2) -> str:
        """Serialize the configuration to JSON and write it to disk.

        Returns:
            str: String path to the written file.
        """
        target = Path(path)
        target.write_text(json.dumps(self.to_dict(), indent=indent, sort_keys=True), encoding="utf-8")
        return str(target)

    @classmethod
    def from_dict(cls: Type[T], data: Mapping[str, Any]) -> T:
        """Instantiate a RunConfig from a mapping produced by :meth:`to_dict`."""
        return _dataclass_from_dict(cls, data)

    @classmethod
    def from_json(cls: Type[T], path: Path | str) -> T:
        """Load a configuration from a JSON file."""
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_dict(payload)

    @classmethod
    def from_toml(cls: Type[T], path: Path | str) -> T:
        """
        Load a RunConfig from a TOML file.

        The TOML layout mirrors this dataclass: tables named [auth],
        [target], [batch], [dispatch], [source], [transform], [adaptive],
        [throttle] and [logging].
        """
        data = tomllib.loads(Path(path).read_bytes().decode("utf-8"))
        if not isinstance(data, Mapping):
            raise TypeError(f"Top-level TOML document must be a mapping; got {type(data).__name__}.")
        return cls.from_dict(data)


def load_config_from_path(path: str | Path) -> RunConfig:
    """Load a RunConfig from a ``.json`` or ``.toml`` file.

    Raises:
        ValueError: If the file extension is not ``.toml`` or ``.json``.
    """
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix == ".toml":
        return RunConfig.from_toml(p)
    if suffix == ".json":
        return RunConfig.from_json(p)
    raise ValueError(f"Unsupported config extension {p.suffix!r}; expected .toml or .json.")


def apply_overrides(cfg: RunConfig, overrides: Mapping[str, Any] | None) -> RunConfig:
    """Apply flat or dotted overrides to ``cfg`` in place.

    Keys may be ``"section.field"`` (``"dispatch.workers"``), a field name
    that is unique across sections (``"workers"``), or a top-level field
    (``"log_path"``). None values are ignored so CLI flags that were not
    given leave the config untouched.

    Raises:
        ConfigurationError: For unknown or ambiguous keys.
    """
    if not overrides:
        return cfg
    sections = {f.name: getattr(cfg, f.name) for f in fields(cfg) if is_dataclass(getattr(cfg, f.name))}
    owners: Dict[str, list[str]] = {}
    for sec_name, sec in sections.items():
        for f in fields(sec):
            owners.setdefault(f.name, []).append(sec_name)
    top_level = {f.name for f in fields(cfg)} - set(sections)

    for key, value in overrides.items():
        if value is None:
            continue
        if "." in key:
            sec_name, _, fname = key.partition(".")
            sec = sections.get(sec_name)
            if sec is None or fname not in {f.name for f in fields(sec)}:
                raise ConfigurationError(f"Unknown config option {key!r}.")
            setattr(sec, fname, value)
        elif key in top_level:
            setattr(cfg, key, value)
        elif key in owners:
            if len(owners[key]) > 1:
                choices = ", ".join(f"{s}.{key}" for s in owners[key])
                raise ConfigurationError(f"Ambiguous config option {key!r}; use one of: {choices}.")
            setattr(sections[owners[key][0]], key, value)
        else:
            raise ConfigurationError(f"Unknown config option {key!r}.")
    return cfg


def _dataclass_to_dict(obj: Any) -> Dict[str, Any]:
    """Serialize dataclasses to JSON-friendly dicts, skipping None values."""
    result: Dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        serialized = _serialize_value(value)
        if serialized is not None:
            result[f.name] = serialized
    return result


def _serialize_value(value: Any) -> Any:
    """Best-effort JSON-friendly coercion; drops values that cannot be serialized."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            serialized = _serialize_value(v)
            if serialized is not None:
                out[str(k)] = serialized
        return out
    if is_dataclass(value):
        return _dataclass_to_dict(value)
    return None


def _dataclass_from_dict(cls: Type[T], data: Mapping[str, Any] | None) -> T:
    """Instantiate a dataclass of type ``cls`` from a mapping.

    Unknown keys raise ConfigurationError so typos in config files fail
    loudly instead of being ignored.
    """
    if data is None:
        return cls()  # type: ignore[call-arg]
    type_hints = get_type_hints(cls)
    known = {f.name for f in fields(cls)}
    unknown = sorted(k for k in data if k not in known)
    if unknown:
        raise ConfigurationError(f"Unknown keys for {cls.__name__}: {', '.join(unknown)}")

    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        field_type = type_hints.get(f.name, f.type)
        kwargs[f.name] = _coerce_value(field_type, data[f.name])
    return cls(**kwargs)  # type: ignore[arg-type]


def _coerce_value(expected_type: Any, value: Any) -> Any:
    """Coerce ``value`` into the shape implied by ``expected_type``."""
    base_type, _ = _strip_optional(expected_type)
    if value is None:
        return None
    if is_dataclass_type(base_type):
        if isinstance(value, base_type):
            return value
        return _dataclass_from_dict(base_type, value)
    origin = get_origin(base_type)
    if origin in (list, tuple, ABCSequence):
        args = get_args(base_type)
        inner = args[0] if args else Any
        items = [_coerce_value(inner, v) for v in value]
        return tuple(items) if origin is tuple else list(items)
    if origin is dict:
        key_type, val_type = get_args(base_type) if get_args(base_type) else (Any, Any)
        return {_coerce_value(key_type, k): _coerce_value(val_type, v) for k, v in value.items()}
    if base_type is Path:
        return Path(value)
    if base_type in {str, int, float, bool}:
        return base_type(value)
    return value


def _strip_optional(typ: Any) -> Tuple[Any, bool]:
    """Strip Optional from a type annotation.

    Returns:
        tuple[Any, bool]: ``(base_type, is_optional)``.
    """
    origin = get_origin(typ)
    if origin is Union:
        args = [arg for arg in get_args(typ) if arg is not type(None)]
        if len(args) == 1:
            base, _ = _strip_optional(args[0])
            return base, True
    return typ, False


def is_dataclass_type(typ: Any) -> bool:
    """Return True if ``typ`` is a dataclass type (not an instance)."""
    try:
        return isinstance(typ, type) and is_dataclass(typ)
    except Exception:
        return False
