# sinks.py
# SPDX-License-Identifier: MIT
"""JSONL run logs.

A run log starts with one ``{"type": "summary", ...}`` line and continues
with one ``{"type": "rejected", "message": ..., "record": ...}`` line per
record the endpoint turned down. Paths ending in ``.gz`` are written
gzip-compressed. Lines go to ``<name>.tmp`` first and the file is renamed
into place on close, so an interrupted run never leaves a truncated log
under the final name.
"""
from __future__ import annotations

import gzip
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Self, TextIO

from ..core.log import get_logger

log = get_logger(__name__)

__all__ = ["RunLogWriter", "write_run_log"]

# Summary keys left out of the header line.
_HEADER_EXCLUDED_KEYS = frozenset({"bad_records", "dry_run"})


def _line(obj: Mapping[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str) + "\n"


class RunLogWriter:
    """Atomic JSONL writer for one run log.

    Args:
        path (str | os.PathLike[str]): Final location; parent directories
            are created. A ``.gz`` suffix selects gzip output.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self.compressed = self.path.name.lower().endswith(".gz")
        self.lines = 0
        self._tmp = self.path.with_name(self.path.name + ".tmp")
        self._fp: TextIO | None = None

    def open(self) -> Self:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.compressed:
            self._fp = gzip.open(self._tmp, "wt", encoding="utf-8", newline="")
        else:
            self._fp = open(self._tmp, "w", encoding="utf-8", newline="")
        return self

    def write(self, obj: Mapping[str, Any]) -> None:
        if self._fp is None:
            raise RuntimeError("RunLogWriter is not open")
        self._fp.write(_line(obj))
        self.lines += 1

    def write_summary(self, summary: Mapping[str, Any]) -> None:
        """Write the header line: the summary minus rejected records and dry-run batches."""
        header = {k: v for k, v in summary.items() if k not in _HEADER_EXCLUDED_KEYS}
        header["type"] = "summary"
        self.write(header)

    def write_rejected(self, message: str, record: Any) -> None:
        self.write({"type": "rejected", "message": message, "record": record})

    def close(self, *, commit: bool = True) -> None:
        """Close the temp file and rename it over ``path`` (or discard it)."""
        fp, self._fp = self._fp, None
        if fp is None:
            return
        fp.close()
        if commit:
            os.replace(self._tmp, self.path)
        else:
            self._tmp.unlink(missing_ok=True)

    def __enter__(self) -> Self:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close(commit=exc_type is None)


def write_run_log(path: str | os.PathLike[str], summary: Mapping[str, Any]) -> Path:
    """Write ``summary`` and its rejected records to a run log at ``path``.

    Returns:
        Path: The written file.
    """
    rejected = 0
    with RunLogWriter(path) as writer:
        writer.write_summary(summary)
        for message, records in (summary.get("bad_records") or {}).items():
            for record in records:
                writer.write_rejected(message, record)
                rejected += 1
    log.info("Wrote run log %s (%d rejected records)", writer.path, rejected)
    return writer.path
