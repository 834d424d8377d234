# formats.py
# SPDX-License-Identifier: MIT
"""Format detection for paths, object keys, and raw strings."""

from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from .errors import UnrecognizedInputError

__all__ = [
    "FORMATS",
    "GZIP_SUFFIXES",
    "MIN_CSV_SNIFF_CHARS",
    "FormatSpec",
    "detect_format",
    "split_compression",
    "sniff_string",
]

FORMATS = ("jsonl", "json", "csv", "parquet")
GZIP_SUFFIXES = (".gz", ".gzip")
# Short strings are never guessed as CSV; almost anything parses as one column.
MIN_CSV_SNIFF_CHARS = 420

_EXTENSION_FORMATS = {
    ".jsonl": "jsonl",
    ".ndjson": "jsonl",
    ".txt": "jsonl",
    ".json": "json",
    ".csv": "csv",
    ".tsv": "csv",
    ".parquet": "parquet",
}


@dataclass(frozen=True)
class FormatSpec:
    """Detected input format.

    Attributes:
        kind (str): One of ``jsonl``, ``json``, ``csv``, ``parquet``.
        compressed (bool): True when the payload is gzip-compressed.
        delimiter (str): Field delimiter for CSV input.
    """

    kind: str
    compressed: bool = False
    delimiter: str = ","


def split_compression(name: str) -> tuple[str, bool]:
    """Strip a trailing gzip suffix from ``name``.

    Returns:
        tuple[str, bool]: The name without the suffix and whether one was found.
    """
    lowered = name.lower()
    for suffix in GZIP_SUFFIXES:
        if lowered.endswith(suffix):
            return name[: -len(suffix)], True
    return name, False


def detect_format(
    name: str,
    *,
    declared: str | None = None,
    gzip: bool | None = None,
) -> FormatSpec:
    """Decide format and compression for a path or object key.

    The declared format, when given, wins over the extension. An explicit
    ``gzip`` flag wins over suffix inference in both directions.

    Args:
        name (str): File path, object key, or URL.
        declared (str | None): Explicit format override.
        gzip (bool | None): Explicit compression override.

    Returns:
        FormatSpec: Detected format.

    Raises:
        UnrecognizedInputError: If neither the extension nor ``declared``
            identifies a supported format.
    """
    base, suffix_gz = split_compression(str(name))
    compressed = suffix_gz if gzip is None else bool(gzip)
    ext = PurePosixPath(base.replace("\\", "/")).suffix.lower()
    delimiter = "\t" if ext == ".tsv" else ","

    if declared:
        kind = declared.strip().lower()
        if kind not in FORMATS:
            raise UnrecognizedInputError(f"Unsupported format {declared!r}; expected one of {FORMATS}.")
        return FormatSpec(kind, compressed, delimiter)

    kind = _EXTENSION_FORMATS.get(ext)
    if kind is None:
        raise UnrecognizedInputError(f"Cannot infer a format from {name!r}; set source.stream_format.")
    return FormatSpec(kind, compressed, delimiter)


def sniff_string(text: str) -> tuple[str, list[dict[str, Any]]] | None:
    """Guess the format of raw text and parse it.

    Tries a whole JSON document, then line-delimited JSON, then CSV (only
    for text longer than :data:`MIN_CSV_SNIFF_CHARS`). The first parse that
    succeeds wins.

    Returns:
        tuple[str, list[dict]] | None: The detected kind and its records, or
        None when nothing parses.
    """
    stripped = text.strip()
    if not stripped:
        return None

    try:
        doc = json.loads(stripped)
    except ValueError:
        pass
    else:
        if isinstance(doc, dict):
            return "json", [doc]
        if isinstance(doc, list) and all(isinstance(r, dict) for r in doc):
            return "json", doc

    records: list[dict[str, Any]] = []
    for line in stripped.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            rec = json.loads(line)
        except ValueError:
            records = []
            break
        if not isinstance(rec, dict):
            records = []
            break
        records.append(rec)
    if records:
        return "jsonl", records

    if len(text) > MIN_CSV_SNIFF_CHARS:
        reader = csv.DictReader(io.StringIO(stripped))
        try:
            rows = [dict(row) for row in reader]
        except csv.Error:
            rows = []
        if rows and reader.fieldnames and len(reader.fieldnames) > 1:
            return "csv", rows
    return None
