# dispatch.py
# SPDX-License-Identifier: MIT
"""Send sealed batches to the ingestion endpoint and fold in the results.

One :class:`Dispatcher` is shared by all sender threads of a run. Each call
to :meth:`Dispatcher.send` serializes a batch, optionally gzips it, retries
transient failures with capped exponential backoff, and turns the final
response into a :class:`Success`, :class:`PartialFailure`, or
:class:`Failure`. Counters on the :class:`RunState` are updated along the
way. ``send`` never raises for transport or API problems; a batch that
cannot be delivered becomes a ``Failure`` and the run moves on.
"""

from __future__ import annotations

import csv
import gzip
import http.client
import io
import json
import time
import urllib.parse
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from .chunker import dumps_compact
from .errors import BulkpostError
from .http import HttpResult, PooledHttpClient
from .log import get_logger
from .state import RunState

log = get_logger(__name__)

__all__ = [
    "RETRY_STATUS_CODES",
    "TRANSIENT_ERRORS",
    "RecordFailure",
    "Success",
    "PartialFailure",
    "Failure",
    "DispatchOutcome",
    "HttpStatusError",
    "Dispatcher",
    "rows_to_csv",
]

RETRY_STATUS_CODES = frozenset({408, 429, 500, 501, 502, 503, 504, 524})
# Timeouts, resets, refused connections, DNS and TLS failures are all OSError
# subclasses; HTTPException covers truncated or malformed responses.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OSError, http.client.HTTPException)


@dataclass(frozen=True)
class RecordFailure:
    """One record the endpoint rejected inside an accepted batch."""

    index: int
    message: str
    record: Any = None


@dataclass(frozen=True)
class Success:
    num_imported: int
    status: int | None = None
    response: Any = None
    batch: Sequence[Any] | None = None
    dry_run: bool = False


@dataclass(frozen=True)
class PartialFailure:
    num_imported: int
    failures: tuple[RecordFailure, ...] = field(default_factory=tuple)
    status: int | None = None
    response: Any = None
    batch: Sequence[Any] | None = None


@dataclass(frozen=True)
class Failure:
    error: Any
    status: int | None = None
    response: Any = None
    batch: Sequence[Any] | None = None
    attempts: int = 0


DispatchOutcome = Union[Success, PartialFailure, Failure]


class HttpStatusError(BulkpostError):
    """Retryable HTTP status passed to error handlers between attempts."""

    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


def rows_to_csv(rows: Sequence[Mapping[str, Any]]) -> str:
    """Render mappings as CSV text with a header from the union of keys."""
    header: list[str] = []
    seen: set[str] = set()
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                header.append(key)
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=header, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


def _parse_payload(result: HttpResult) -> Any:
    try:
        return json.loads(result.body.decode("utf-8")) if result.body else {}
    except (UnicodeDecodeError, ValueError):
        return {"error": "Invalid JSON response", "raw": result.text()[:1000]}


class Dispatcher:
    """Deliver batches for one run.

    Args:
        state (RunState): Run configuration and counters.
        client (PooledHttpClient | None): HTTP client; one sized to the
            run's worker count is created when omitted. Anything with a
            compatible ``request(method, url, body=, headers=, timeout=,
            first_byte_timeout=)`` method works.
        response_handler (Callable[[DispatchOutcome], None] | None): Called
            once per batch with its outcome.
        error_handler (Callable[[BaseException, int], None] | None): Called
            with each transport error or retryable status and the attempt
            number (0-based) it happened on.
        sleep (Callable[[float], None]): Backoff sleep; replaceable in tests.
    """

    def __init__(
        self,
        state: RunState,
        *,
        client: Any | None = None,
        response_handler: Callable[[DispatchOutcome], None] | None = None,
        error_handler: Callable[[BaseException, int], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.state = state
        dcfg = state.config.dispatch
        self._owns_client = client is None
        self.client = client or PooledHttpClient(
            pool_size=max(1, state.workers),
            timeout=dcfg.timeout,
            first_byte_timeout=dcfg.first_byte_timeout,
        )
        self.response_handler = response_handler
        self.error_handler = error_handler
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------
    def request_url(self) -> str:
        tgt = self.state.config.target
        if self.state.record_type == "table":
            params: dict[str, str] = {}
        else:
            params = {"ip": "0", "verbose": "1", "strict": "1" if tgt.strict else "0"}
        if tgt.project_id:
            params["project_id"] = str(tgt.project_id)
        if not params:
            return str(self.state.url)
        return f"{self.state.url}?{urllib.parse.urlencode(params)}"

    def encode(self, batch: Sequence[Any] | str) -> tuple[bytes, dict[str, str]]:
        """Serialize a batch and build its headers."""
        state = self.state
        dcfg = state.config.dispatch
        headers = {
            "Accept": "application/json",
            "Connection": "keep-alive",
        }
        if state.auth:
            headers["Authorization"] = state.auth
        if state.record_type == "table":
            text = batch if isinstance(batch, str) else rows_to_csv(batch)
            headers["Content-Type"] = "text/csv"
            return text.encode("utf-8"), headers

        body = dumps_compact(list(batch)).encode("utf-8")
        headers["Content-Type"] = "application/json"
        if dcfg.compress and state.record_type == "event":
            body = gzip.compress(body, compresslevel=dcfg.compression_level)
            headers["Content-Encoding"] = "gzip"
        return body, headers

    def _backoff(self, attempt: int) -> float:
        dcfg = self.state.config.dispatch
        return min(dcfg.backoff_base * (2 ** attempt), dcfg.backoff_max)

    def _notify_error(self, exc: BaseException, attempt: int) -> None:
        if self.error_handler is None:
            return
        try:
            self.error_handler(exc, attempt)
        except Exception as handler_exc:  # noqa: BLE001
            log.warning("error_handler raised: %s", handler_exc)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    def send(self, batch: Sequence[Any] | str, *, count: int | None = None) -> DispatchOutcome:
        """Deliver one batch and return its outcome.

        Args:
            batch (Sequence[Any] | str): Records, or CSV text for tables.
            count (int | None): Record count when ``batch`` is CSV text.

        Returns:
            DispatchOutcome: Result after retries. Transport, API and
            serialization failures all become a :class:`Failure`.
        """
        state = self.state
        size = count if count is not None else len(batch)
        state.increment(batches=1)

        if state.dry_run:
            state.collect_batch(list(batch) if not isinstance(batch, str) else [batch])
            outcome: DispatchOutcome = Success(num_imported=0, batch=batch, dry_run=True)
            self._deliver(outcome)
            return outcome

        try:
            body, headers = self.encode(batch)
        except (TypeError, ValueError) as exc:
            log.error("Could not serialize a batch of %d records: %s", size, exc)
            return self._fail(batch, size, exc)
        url = self.request_url()
        method = "PUT" if state.record_type == "table" else "POST"
        max_retries = state.config.dispatch.max_retries

        attempt = 0
        result: HttpResult | None = None
        while True:
            state.increment(requests=1)
            try:
                result = self.client.request(method, url, body=body, headers=headers)
            except TRANSIENT_ERRORS as exc:
                self._notify_error(exc, attempt)
                if attempt >= max_retries:
                    log.warning("Batch of %d failed after %d attempts: %s", size, attempt + 1, exc)
                    return self._fail(batch, size, exc, attempts=attempt + 1)
                state.increment(retries=1, client_errors=1)
                log.info("%s; retrying request #%d", exc, attempt + 1)
                self._sleep(self._backoff(attempt))
                attempt += 1
                continue
            except Exception as exc:  # noqa: BLE001
                self._notify_error(exc, attempt)
                log.error("Batch of %d failed with a non-retryable error: %s", size, exc)
                return self._fail(batch, size, exc, attempts=attempt + 1)

            if result.status in RETRY_STATUS_CODES and attempt < max_retries:
                self._notify_error(HttpStatusError(result.status, result.text()), attempt)
                if result.status == 429:
                    state.increment(retries=1, rate_limited=1)
                elif result.status >= 500:
                    state.increment(retries=1, server_errors=1)
                else:
                    state.increment(retries=1, client_errors=1)
                log.info("Got status %d; retrying request #%d", result.status, attempt + 1)
                self._sleep(self._backoff(attempt))
                attempt += 1
                continue
            break

        return self._interpret(batch, size, result, attempts=attempt + 1)

    def _fail(
        self,
        batch: Sequence[Any] | str,
        size: int,
        error: Any,
        *,
        status: int | None = None,
        response: Any = None,
        attempts: int = 0,
    ) -> Failure:
        self.state.increment(failed=size)
        self.state.store(response if response is not None else error, ok=False)
        outcome = Failure(
            error=error,
            status=status,
            response=response,
            batch=batch if self._keep_batch() else None,
            attempts=attempts,
        )
        self._deliver(outcome)
        return outcome

    def _keep_batch(self) -> bool:
        return self.state.dry_run or self.response_handler is not None

    def _deliver(self, outcome: DispatchOutcome) -> None:
        if self.response_handler is None:
            return
        try:
            self.response_handler(outcome)
        except Exception as exc:  # noqa: BLE001
            log.warning("response_handler raised: %s", exc)

    def _interpret(self, batch: Sequence[Any] | str, size: int, result: HttpResult, *, attempts: int) -> DispatchOutcome:
        state = self.state
        payload = _parse_payload(result)
        status = result.status
        ok_status = 200 <= status < 300
        data = payload if isinstance(payload, dict) else {}
        failed_records = data.get("failed_records") or []
        keep = batch if self._keep_batch() else None

        if state.record_type == "table":
            if ok_status and not data.get("error"):
                state.increment(success=size)
                state.store(payload, ok=True)
                outcome: DispatchOutcome = Success(size, status=status, response=payload, batch=keep)
                self._deliver(outcome)
                return outcome
            return self._fail(batch, size, data.get("error") or f"HTTP {status}", status=status,
                              response=payload, attempts=attempts)

        if state.record_type == "event":
            imported = int(data.get("num_records_imported") or 0)
            if not ok_status and not failed_records and not imported:
                return self._fail(batch, size, data.get("error") or f"HTTP {status}", status=status,
                                  response=payload, attempts=attempts)
        else:
            error = data.get("error")
            # a missing status means no per-record detail, not a rejection
            rejected = "status" in data and not data["status"]
            if not failed_records and (not ok_status or error or rejected):
                return self._fail(batch, size, error or f"HTTP {status}", status=status,
                                  response=payload, attempts=attempts)
            good = data.get("num_good_events")
            imported = int(good) if good is not None else size - len(failed_records)

        failures = self._attribute(batch, failed_records)
        state.increment(success=imported, failed=len(failures))
        state.store(payload, ok=True)
        if failures:
            outcome = PartialFailure(imported, failures, status=status, response=payload, batch=keep)
            log.debug("Batch partially imported: %d ok, %d rejected", imported, len(failures))
        else:
            outcome = Success(imported, status=status, response=payload, batch=keep)
            log.debug("Batch imported: %d records", imported)
        self._deliver(outcome)
        return outcome

    def _attribute(self, batch: Sequence[Any] | str, failed_records: Sequence[Any]) -> tuple[RecordFailure, ...]:
        out: list[RecordFailure] = []
        for item in failed_records:
            if not isinstance(item, Mapping):
                continue
            index = item.get("index")
            message = str(item.get("message") or "unknown")
            record = None
            if isinstance(index, int) and not isinstance(batch, str) and 0 <= index < len(batch):
                record = batch[index]
            self.state.add_bad_record(message, record)
            out.append(RecordFailure(index if isinstance(index, int) else -1, message, record))
        return tuple(out)
