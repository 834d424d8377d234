# state.py
# SPDX-License-Identifier: MIT
"""Per-run state: resolved credentials, endpoint, limits, and counters.

A :class:`RunState` is built once from a validated :class:`RunConfig` and
threaded through every pipeline stage. Configuration-derived fields are
read-only after construction; counters are updated from concurrent sender
threads through :meth:`RunState.increment`, which serializes writes with a
lock.
"""

from __future__ import annotations

import base64
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from .config import EXPORT_RECORD_TYPES, MAX_RECORDS_PER_REQUEST, RunConfig
from .errors import ConfigurationError
from .log import get_logger

log = get_logger(__name__)

__all__ = ["REGION_HOSTS", "RunCounters", "RunState", "resolve_auth", "resolve_endpoint"]

REGION_HOSTS = {
    "US": "https://api.mixpanel.com",
    "EU": "https://api-eu.mixpanel.com",
    "IN": "https://api-in.mixpanel.com",
}

_ENDPOINT_PATHS = {
    "event": "/import",
    "user": "/engage",
    "group": "/groups",
    "table": "/lookup-tables/",
}


def resolve_auth(cfg: RunConfig) -> str:
    """Build the Authorization header value for a run.

    Precedence is service account, API secret, project token, bearer
    token. Profile runs (``user``/``group``) may go without credentials
    because their token travels in each record.

    Raises:
        ConfigurationError: When no usable credentials are configured.
    """
    auth = cfg.auth
    if auth.acct and auth.password and auth.project:
        return "Basic " + _b64(f"{auth.acct}:{auth.password}")
    if auth.secret:
        return "Basic " + _b64(f"{auth.secret}:")
    if auth.token:
        return "Basic " + _b64(f"{auth.token}:")
    if auth.bearer:
        return f"Bearer {auth.bearer}"
    if cfg.target.record_type in {"user", "group"}:
        return ""
    raise ConfigurationError("No credentials configured: set a service account, secret, token, or bearer.")


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def resolve_endpoint(cfg: RunConfig) -> str:
    """Return the full URL (without query string) batches are sent to.

    Raises:
        ConfigurationError: For unknown regions or record types without an
            ingestion endpoint.
    """
    tgt = cfg.target
    if tgt.base_url:
        base = tgt.base_url.rstrip("/")
    else:
        base = REGION_HOSTS.get((tgt.region or "").upper())
        if base is None:
            raise ConfigurationError(
                f"Unknown region {tgt.region!r}; expected one of {sorted(REGION_HOSTS)}."
            )
    path = _ENDPOINT_PATHS.get(tgt.record_type)
    if path is None:
        raise ConfigurationError(f"Record type {tgt.record_type!r} has no ingestion endpoint.")
    if tgt.record_type == "table":
        path = f"{path}{tgt.lookup_table_id}"
    return f"{base}{path}"


# Convention: hot-path dataclasses use slots=True to reduce per-instance overhead.
@dataclass(slots=True)
class RunCounters:
    """Running totals for one import."""

    records_processed: int = 0
    success: int = 0
    failed: int = 0
    retries: int = 0
    requests: int = 0
    batches: int = 0
    empty: int = 0
    dropped: int = 0
    rate_limited: int = 0
    server_errors: int = 0
    client_errors: int = 0
    bytes_processed: int = 0
    unparsable: int = 0
    duplicates: int = 0
    out_of_bounds: int = 0
    allowlist_skipped: int = 0
    denylist_skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {name: int(getattr(self, name)) for name in self.__slots__}


@dataclass
class RunState:
    """Mutable configuration-plus-counters object for a single run.

    Attributes:
        config (RunConfig): Validated configuration (read-only here).
        auth (str): Resolved Authorization header value.
        url (str | None): Endpoint URL; None for export record types.
        records_per_batch (int): Count budget after per-type caps and
            adaptive tuning.
        bytes_per_batch (int): Byte budget per request.
        workers (int): Concurrent senders.
        buffer_depth (int): Read-ahead depth used by the buffer queue.
        counters (RunCounters): Totals, guarded by an internal lock.
        bad_records (OrderedDict[str, list]): Rejected records grouped by
            rejection message, bounded by ``dispatch.max_bad_records``.
        responses (list): Raw responses kept for dry runs or when
            ``dispatch.keep_responses`` is set.
        errors (list): Transport errors from failed batches.
        dry_run_batches (list): Batches collected instead of sent.
    """

    config: RunConfig
    auth: str = ""
    url: str | None = None
    records_per_batch: int = 2000
    bytes_per_batch: int = 0
    workers: int = 1
    buffer_depth: int = 0
    counters: RunCounters = field(default_factory=RunCounters)
    bad_records: OrderedDict = field(default_factory=OrderedDict)
    responses: list[Any] = field(default_factory=list)
    errors: list[Any] = field(default_factory=list)
    dry_run_batches: list[list[Any]] = field(default_factory=list)
    adaptive_plan: dict[str, Any] | None = None
    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _bad_record_count: int = 0

    @classmethod
    def from_config(cls, cfg: RunConfig) -> RunState:
        """Validate ``cfg`` and derive the run's read-only settings.

        Raises:
            ConfigurationError: From validation, auth, or endpoint lookup.
        """
        cfg.validate()
        record_type = cfg.target.record_type
        no_endpoint = record_type in EXPORT_RECORD_TYPES
        records_per_batch = cfg.batch.records_per_batch
        cap = MAX_RECORDS_PER_REQUEST.get(record_type)
        if cap is not None and records_per_batch > cap:
            log.debug("Capping records_per_batch for %s at %d", record_type, cap)
            records_per_batch = cap
        workers = cfg.dispatch.workers
        return cls(
            config=cfg,
            auth="" if no_endpoint else resolve_auth(cfg),
            url=None if no_endpoint else resolve_endpoint(cfg),
            records_per_batch=records_per_batch,
            bytes_per_batch=cfg.batch.bytes_per_batch,
            workers=workers,
            buffer_depth=workers * records_per_batch,
        )

    @property
    def record_type(self) -> str:
        return self.config.target.record_type

    @property
    def dry_run(self) -> bool:
        return self.config.dispatch.dry_run

    def increment(self, **deltas: int) -> None:
        """Add ``deltas`` to the named counters atomically."""
        with self._lock:
            for name, delta in deltas.items():
                setattr(self.counters, name, getattr(self.counters, name) + delta)

    def add_bad_record(self, message: str, record: Any) -> None:
        """Remember a rejected record under its rejection message.

        Once ``dispatch.max_bad_records`` records are held, further ones
        are counted in ``failed`` but not retained.
        """
        limit = self.config.dispatch.max_bad_records
        with self._lock:
            if self._bad_record_count >= limit:
                return
            self.bad_records.setdefault(message or "unknown", []).append(record)
            self._bad_record_count += 1

    def store(self, response: Any, *, ok: bool) -> None:
        """Keep a response (dry run / keep_responses) or a failure payload."""
        with self._lock:
            if not ok:
                self.errors.append(response)
            elif self.dry_run or self.config.dispatch.keep_responses:
                self.responses.append(response)

    def collect_batch(self, batch: list[Any]) -> None:
        """Keep an unsent batch for inspection (dry run)."""
        with self._lock:
            self.dry_run_batches.append(batch)

    def finish(self) -> None:
        self.ended_at = time.monotonic()

    def summary(self) -> dict[str, Any]:
        """Return totals, rates, and retained diagnostics for the run."""
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        duration = max(end - self.started_at, 1e-9)
        with self._lock:
            counts = self.counters.as_dict()
            bad = {msg: list(recs) for msg, recs in self.bad_records.items()}
            responses = list(self.responses)
            errors = list(self.errors)
        total = counts["success"] + counts["failed"]
        summary: dict[str, Any] = {
            "record_type": self.record_type,
            "url": self.url,
            "workers": self.workers,
            "records_per_batch": self.records_per_batch,
            "bytes_per_batch": self.bytes_per_batch,
            "duration": round(duration, 3),
            "total": total,
            **counts,
            "eps": round(total / duration, 2),
            "rps": round(counts["requests"] / duration, 2),
            "mbps": round(counts["bytes_processed"] / 1_000_000 / duration, 4),
            "bad_records": bad,
            "responses": responses,
            "errors": [str(e) if isinstance(e, BaseException) else e for e in errors],
        }
        if self.adaptive_plan is not None:
            summary["adaptive"] = dict(self.adaptive_plan)
        if self.dry_run:
            summary["dry_run"] = [list(b) for b in self.dry_run_batches]
        return summary
