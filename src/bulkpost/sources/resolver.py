# resolver.py
# SPDX-License-Identifier: MIT
"""Turn any supported input descriptor into one ordered record stream.

Accepted descriptors:

- live iterators and generators of records (passed through untouched);
- in-memory lists or tuples of mappings;
- raw strings holding JSON, JSONL, or CSV text;
- a local file, a directory, or a list of files and directories;
- cloud object URLs (and lists of them).

Record types that are not decoded (lookup tables, exports) get their
descriptor back unchanged. Multi-member inputs are checked for a common
format before the first record is produced.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import Callable, Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

import psutil

from ..core.config import PASSTHROUGH_RECORD_TYPES, SourceConfig
from ..core.errors import FormatMismatchError, UnrecognizedInputError
from ..core.formats import FormatSpec, detect_format, sniff_string
from ..core.log import get_logger
from ..core.state import RunState
from ..core.transforms import csv_row_to_event
from .cloud import expand_cloud_url, is_cloud_url, iter_cloud_records
from .decoders import DecodePolicy, decode

log = get_logger(__name__)

__all__ = ["resolve_input", "is_cloud_input", "list_directory", "available_memory"]


def available_memory() -> int:
    """Bytes of memory currently available to new allocations."""
    return int(psutil.virtual_memory().available)


def list_directory(path: Path) -> list[Path]:
    """Regular, non-hidden files directly inside ``path``, sorted by name."""
    return sorted(
        (p for p in path.iterdir() if p.is_file() and not p.name.startswith(".")),
        key=lambda p: p.name,
    )


def is_cloud_input(data: Any, cfg: SourceConfig) -> bool:
    """True when ``data`` is a cloud URL or a list made only of cloud URLs."""
    if isinstance(data, str):
        return is_cloud_url(data, cfg.cloud_schemes)
    if isinstance(data, (list, tuple)) and data:
        return all(is_cloud_url(item, cfg.cloud_schemes) for item in data)
    return False


def _is_path_like(value: Any) -> bool:
    if isinstance(value, Path):
        return True
    if not isinstance(value, str) or "\n" in value or len(value) > 4096:
        return False
    try:
        return os.path.exists(value)
    except (OSError, ValueError):
        return False


class _Resolver:
    """Per-call helper carrying the run's source settings and counters."""

    def __init__(self, state: RunState, *, memory_probe: Callable[[], int] | None = None) -> None:
        self.state = state
        self.cfg = state.config.source
        self.policy = DecodePolicy.from_config(self.cfg)
        self.memory_probe = memory_probe or available_memory
        self.map_csv_events = state.record_type == "event"

    def on_skip(self) -> None:
        self.state.increment(unparsable=1)

    def detect(self, name: str) -> FormatSpec:
        return detect_format(name, declared=self.cfg.stream_format, gzip=self.cfg.gzip)

    def _post(self, spec: FormatSpec, records: Iterator[dict[str, Any]]) -> Iterator[dict[str, Any]]:
        if spec.kind == "csv" and self.map_csv_events:
            return map(csv_row_to_event, records)
        return records

    # -- local files ---------------------------------------------------
    def should_materialize(self, path: Path, spec: FormatSpec) -> bool:
        if self.cfg.force_stream or spec.compressed or self.cfg.gzip:
            return False
        size = path.stat().st_size
        return size < self.memory_probe() * self.cfg.free_memory_fraction

    def open_file(self, path: Path, spec: FormatSpec) -> Iterator[dict[str, Any]]:
        if self.should_materialize(path, spec):
            log.debug("Loading %s into memory (%d bytes)", path, path.stat().st_size)
            records = list(decode(path, spec, policy=self.policy, aliases=self.cfg.aliases,
                                  on_skip=self.on_skip, materialize=True))
            return self._post(spec, iter(records))
        log.debug("Streaming %s", path)
        return self._post(spec, decode(path, spec, policy=self.policy, aliases=self.cfg.aliases,
                                       on_skip=self.on_skip))

    # -- members -------------------------------------------------------
    def expand_members(self, items: Iterable[Any]) -> list[str | Path]:
        members: list[str | Path] = []
        for item in items:
            if isinstance(item, str) and is_cloud_url(item, self.cfg.cloud_schemes):
                members.extend(expand_cloud_url(item, self.cfg))
                continue
            if not _is_path_like(item):
                raise UnrecognizedInputError(f"List member {item!r} is not an existing path or cloud URL.")
            path = Path(item)
            if path.is_dir():
                members.extend(list_directory(path))
            else:
                members.append(path)
        return members

    def check_formats(self, members: list[str | Path]) -> list[tuple[str | Path, FormatSpec]]:
        planned: list[tuple[str | Path, FormatSpec]] = []
        first: FormatSpec | None = None
        for member in members:
            spec = self.detect(str(member))
            if first is None:
                first = spec
            elif (spec.kind, spec.compressed) != (first.kind, first.compressed):
                raise FormatMismatchError(
                    f"{member} is {_describe(spec)} but earlier inputs are {_describe(first)}.",
                    expected=first,
                    found=spec,
                    member=str(member),
                )
            planned.append((member, spec))
        return planned

    def open_member(self, member: str | Path, spec: FormatSpec) -> Iterator[dict[str, Any]]:
        if isinstance(member, str) and is_cloud_url(member, self.cfg.cloud_schemes):
            records = iter_cloud_records(member, spec, self.cfg, policy=self.policy, on_skip=self.on_skip)
            return self._post(spec, records)
        return self.open_file(Path(member), spec)

    def open_many(self, items: Iterable[Any]) -> Iterator[dict[str, Any]]:
        planned = self.check_formats(self.expand_members(items))
        if planned:
            log.info("Resolved %d inputs as %s", len(planned), _describe(planned[0][1]))
        return itertools.chain.from_iterable(
            _lazy(self.open_member, member, spec) for member, spec in planned
        )

    # -- entry ---------------------------------------------------------
    def resolve(self, data: Any) -> Iterator[dict[str, Any]]:
        if isinstance(data, Mapping):
            return iter([data])
        if isinstance(data, (list, tuple)):
            if not data or all(isinstance(item, Mapping) for item in data):
                return iter(data)
            return self.open_many(data)
        if isinstance(data, Path):
            return self.resolve_path(data)
        if isinstance(data, str):
            if is_cloud_url(data, self.cfg.cloud_schemes):
                return self.open_many([data])
            if _is_path_like(data):
                return self.resolve_path(Path(data))
            sniffed = sniff_string(data)
            if sniffed is None:
                raise UnrecognizedInputError(
                    "Input string is not an existing path, a cloud URL, or parsable JSON, JSONL, or CSV."
                )
            kind, records = sniffed
            log.debug("Parsed raw string input as %s (%d records)", kind, len(records))
            return iter(records)
        if isinstance(data, Iterator):
            return data
        if isinstance(data, Iterable) and not isinstance(data, (bytes, bytearray)):
            return iter(data)
        raise UnrecognizedInputError(f"Unsupported input of type {type(data).__name__}.")

    def resolve_path(self, path: Path) -> Iterator[dict[str, Any]]:
        if not path.exists():
            raise UnrecognizedInputError(f"No such file or directory: {path}")
        if path.is_dir():
            return self.open_many([path])
        spec = self.detect(str(path))
        return self.open_file(path, spec)


def _lazy(opener: Callable[..., Iterator[Any]], *args: Any) -> Iterator[Any]:
    yield from opener(*args)


def _describe(spec: FormatSpec) -> str:
    return f"{spec.kind}{' (gzip)' if spec.compressed else ''}"


def resolve_input(
    data: Any,
    state: RunState,
    *,
    memory_probe: Callable[[], int] | None = None,
) -> Any:
    """Resolve ``data`` to an iterator of records for ``state``'s record type.

    Args:
        data (Any): Input descriptor.
        state (RunState): Run settings; ``unparsable`` is incremented for
            each skipped malformed line.
        memory_probe (Callable[[], int] | None): Returns available memory in
            bytes; used to decide whether a file is loaded whole.

    Returns:
        Iterator[dict] | Any: A record iterator, or ``data`` unchanged for
        record types that are not decoded.

    Raises:
        UnrecognizedInputError: When the descriptor cannot be resolved.
        FormatMismatchError: When members of a multi-file input disagree.
    """
    if state.record_type in PASSTHROUGH_RECORD_TYPES:
        return data
    return _Resolver(state, memory_probe=memory_probe).resolve(data)
