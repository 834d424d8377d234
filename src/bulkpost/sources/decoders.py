# decoders.py
# SPDX-License-Identifier: MIT

"""Streaming decoders that turn byte sources into ordered record streams.

Every decoder accepts either a local path or an already-open binary file
object (cloud reads hand over fsspec file objects) and yields plain dicts.
Gzip is undone transparently in the read stage when the detected format
says the payload is compressed.
"""

from __future__ import annotations

import csv
import datetime as _dt
import decimal
import gzip
import io
import json
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

import pyarrow as pa
import pyarrow.parquet as pq

from ..core.config import SourceConfig
from ..core.errors import DecodeError
from ..core.formats import FormatSpec
from ..core.log import get_logger

log = get_logger(__name__)

__all__ = [
    "DecodePolicy",
    "open_text",
    "iter_jsonl",
    "iter_json",
    "iter_csv",
    "iter_parquet",
    "read_parquet_bytes",
    "sanitize_value",
    "decode",
]

# Integers beyond this magnitude lose precision as JSON numbers in most consumers.
_MAX_SAFE_INT = 2 ** 53 - 1
_PARQUET_BATCH_ROWS = 10_000


@dataclass
class DecodePolicy:
    """How malformed lines in line-oriented input are handled.

    Attributes:
        strict (bool): Raise :class:`DecodeError` on the first malformed line.
        max_errors (int | None): Raise once more than this many lines were
            skipped; None means unlimited.
        max_invalid_warnings (int): Warnings logged per source before the
            rest are suppressed.
    """

    strict: bool = False
    max_errors: int | None = None
    max_invalid_warnings: int = 5

    @classmethod
    def from_config(cls, cfg: SourceConfig) -> DecodePolicy:
        return cls(
            strict=cfg.strict_decode,
            max_errors=cfg.max_decode_errors,
            max_invalid_warnings=cfg.max_invalid_warnings,
        )


def _label(source: Any) -> str:
    if isinstance(source, (str, Path)):
        return str(source)
    return str(getattr(source, "path", None) or getattr(source, "name", None) or "<stream>")


@contextmanager
def _open_binary(source: Any, compressed: bool) -> Iterator[IO[bytes]]:
    if isinstance(source, (str, Path)):
        fp: IO[bytes] = open(source, "rb")
        owned = True
    else:
        fp = source
        owned = False
    try:
        if compressed:
            with gzip.GzipFile(fileobj=fp, mode="rb") as gz:
                yield gz
        else:
            yield fp
    finally:
        if owned:
            fp.close()


@contextmanager
def open_text(source: Any, *, compressed: bool = False, newline: str | None = None) -> Iterator[IO[str]]:
    """Open a path or binary file object as UTF-8 text, gunzipping if asked."""
    with _open_binary(source, compressed) as raw:
        text = io.TextIOWrapper(raw, encoding="utf-8", errors="replace", newline=newline)
        try:
            yield text
        finally:
            text.detach()


# ---------------------------------------------------------------------------
# JSONL
# ---------------------------------------------------------------------------

def iter_jsonl_lines(
    lines: Iterable[str],
    *,
    label: str,
    policy: DecodePolicy,
    on_skip: Callable[[], None] | None = None,
) -> Iterator[dict[str, Any]]:
    """Parse JSON objects from an iterable of lines.

    Blank lines are ignored. A line that is not valid JSON, or is valid
    JSON but not an object, is malformed and handled per ``policy``.
    """
    skipped = 0
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            problem = str(exc)
        else:
            if isinstance(record, dict):
                yield record
                continue
            problem = f"expected an object, got {type(record).__name__}"

        if policy.strict:
            raise DecodeError(f"Malformed record at {label}:#{lineno}: {problem}", path=label, lineno=lineno)
        skipped += 1
        if on_skip is not None:
            on_skip()
        if skipped <= policy.max_invalid_warnings:
            log.warning("Skipping malformed record at %s:#%d: %s", label, lineno, problem)
            if skipped == policy.max_invalid_warnings:
                log.debug("Suppressing further malformed-record warnings for %s", label)
        if policy.max_errors is not None and skipped > policy.max_errors:
            raise DecodeError(
                f"Too many malformed records in {label} ({skipped} > {policy.max_errors})",
                path=label,
                lineno=lineno,
            )
    if skipped:
        log.info("Finished %s: skipped_malformed=%d", label, skipped)


def iter_jsonl(
    source: Any,
    *,
    compressed: bool = False,
    policy: DecodePolicy | None = None,
    on_skip: Callable[[], None] | None = None,
    materialize: bool = False,
) -> Iterator[dict[str, Any]]:
    """Yield records from line-delimited JSON.

    With ``materialize`` the whole (decompressed) payload is read first and
    split in memory; otherwise lines are read incrementally.
    """
    policy = policy or DecodePolicy()
    label = _label(source)
    with open_text(source, compressed=compressed) as fp:
        lines: Iterable[str] = fp.read().splitlines() if materialize else fp
        yield from iter_jsonl_lines(lines, label=label, policy=policy, on_skip=on_skip)


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def iter_json(source: Any, *, compressed: bool = False) -> Iterator[dict[str, Any]]:
    """Yield records from a whole JSON document (an object or an array).

    Raises:
        DecodeError: If the document is not valid JSON or holds neither an
            object nor an array of objects.
    """
    label = _label(source)
    with open_text(source, compressed=compressed) as fp:
        try:
            doc = json.load(fp)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Invalid JSON document {label}: {exc}", path=label, lineno=exc.lineno) from exc
    if isinstance(doc, dict):
        yield doc
        return
    if not isinstance(doc, list):
        raise DecodeError(f"JSON document {label} must be an object or array", path=label)
    non_objects = 0
    for item in doc:
        if isinstance(item, dict):
            yield item
        else:
            non_objects += 1
    if non_objects:
        log.warning("Skipped %d non-object array items in %s", non_objects, label)


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

def iter_csv(
    source: Any,
    *,
    compressed: bool = False,
    delimiter: str = ",",
    aliases: Mapping[str, str] | None = None,
) -> Iterator[dict[str, Any]]:
    """Yield one dict per CSV row, renaming headers through ``aliases``.

    Empty rows are skipped; empty cells are kept as empty strings.
    """
    label = _label(source)
    with open_text(source, compressed=compressed, newline="") as fp:
        reader = csv.reader(fp, delimiter=delimiter)
        try:
            header = next(reader)
        except StopIteration:
            return
        if aliases:
            header = [aliases.get(name, name) for name in header]
        try:
            for row in reader:
                if not row or all(cell == "" for cell in row):
                    continue
                yield dict(zip(header, row))
        except csv.Error as exc:
            raise DecodeError(f"Malformed CSV in {label}: {exc}", path=label, lineno=reader.line_num) from exc


# ---------------------------------------------------------------------------
# Parquet
# ---------------------------------------------------------------------------

def sanitize_value(value: Any) -> Any:
    """Make a Parquet cell JSON-friendly.

    Timestamps, dates and times become ISO-8601 strings, integers beyond
    the float-safe range become strings, bytes become UTF-8 text, and
    decimals become floats. Containers are sanitized recursively.
    """
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > _MAX_SAFE_INT else value
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, _dt.timedelta):
        return value.total_seconds()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, decimal.Decimal):
        return float(value)
    if isinstance(value, Mapping):
        return {str(k): sanitize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        # pyarrow renders map columns as lists of (key, value) tuples
        if value and all(isinstance(v, tuple) and len(v) == 2 for v in value):
            return {str(k): sanitize_value(v) for k, v in value}
        return [sanitize_value(v) for v in value]
    return str(value)


def _sanitize_rows(rows: Iterable[Mapping[str, Any]]) -> Iterator[dict[str, Any]]:
    for row in rows:
        yield {str(k): sanitize_value(v) for k, v in row.items()}


def iter_parquet(source: Any, *, batch_size: int = _PARQUET_BATCH_ROWS) -> Iterator[dict[str, Any]]:
    """Stream rows from a Parquet file by record batch."""
    pf = pq.ParquetFile(str(source) if isinstance(source, Path) else source)
    for batch in pf.iter_batches(batch_size=batch_size):
        yield from _sanitize_rows(batch.to_pylist())


def read_parquet_bytes(data: bytes) -> list[dict[str, Any]]:
    """Decode a fully buffered Parquet object into sanitized rows."""
    table = pq.read_table(pa.BufferReader(data))
    return list(_sanitize_rows(table.to_pylist()))


# ---------------------------------------------------------------------------
# Dispatch by format
# ---------------------------------------------------------------------------

def decode(
    source: Any,
    spec: FormatSpec,
    *,
    policy: DecodePolicy | None = None,
    aliases: Mapping[str, str] | None = None,
    on_skip: Callable[[], None] | None = None,
    materialize: bool = False,
) -> Iterator[dict[str, Any]]:
    """Decode ``source`` according to ``spec``.

    Compressed Parquet is decompressed into memory before decoding since
    the columnar footer is only reachable with random access.
    """
    if spec.kind == "jsonl":
        return iter_jsonl(source, compressed=spec.compressed, policy=policy, on_skip=on_skip, materialize=materialize)
    if spec.kind == "json":
        return iter_json(source, compressed=spec.compressed)
    if spec.kind == "csv":
        return iter_csv(source, compressed=spec.compressed, delimiter=spec.delimiter, aliases=aliases)
    if spec.kind == "parquet":
        if spec.compressed:
            with _open_binary(source, True) as raw:
                return iter(read_parquet_bytes(raw.read()))
        return iter_parquet(source)
    raise DecodeError(f"Unsupported format {spec.kind!r}")
