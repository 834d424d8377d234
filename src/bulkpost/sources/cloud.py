# cloud.py
# SPDX-License-Identifier: MIT
"""Object-storage reads through fsspec.

Text formats are streamed straight from the remote file object with gzip
undone in the read stage. Parquet needs random access to its footer, so
the object is buffered whole and decoded from memory.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from typing import Any

import fsspec
from fsspec.core import url_to_fs

from ..core.config import SourceConfig
from ..core.formats import FormatSpec
from ..core.log import get_logger
from .decoders import DecodePolicy, decode, read_parquet_bytes

log = get_logger(__name__)

__all__ = ["is_cloud_url", "expand_cloud_url", "iter_cloud_records"]

_GLOB_CHARS = ("*", "?", "[")


def is_cloud_url(value: Any, schemes: Sequence[str]) -> bool:
    """True if ``value`` is a string of the form ``scheme://...`` for a known scheme."""
    if not isinstance(value, str) or "://" not in value:
        return False
    scheme = value.split("://", 1)[0].lower()
    return scheme in {s.lower() for s in schemes}


def expand_cloud_url(url: str, cfg: SourceConfig) -> list[str]:
    """Expand a glob or prefix URL into sorted object URLs.

    A URL naming a single object comes back as a one-element list.
    """
    fs, path = url_to_fs(url, **cfg.storage_options)
    if any(ch in path for ch in _GLOB_CHARS):
        matches = sorted(fs.glob(path))
    elif fs.isdir(path):
        matches = sorted(p for p in fs.find(path) if not p.rsplit("/", 1)[-1].startswith("."))
    else:
        return [url]
    log.debug("Expanded %s to %d objects", url, len(matches))
    return [fs.unstrip_protocol(p) for p in matches]


def iter_cloud_records(
    url: str,
    spec: FormatSpec,
    cfg: SourceConfig,
    *,
    policy: DecodePolicy | None = None,
    on_skip: Callable[[], None] | None = None,
) -> Iterator[dict[str, Any]]:
    """Yield records from one object in cloud storage."""
    log.info("Reading %s (%s%s)", url, spec.kind, ", gzip" if spec.compressed else "")
    if spec.kind == "parquet":
        with fsspec.open(url, "rb", compression="gzip" if spec.compressed else None, **cfg.storage_options) as fp:
            data = fp.read()
        yield from read_parquet_bytes(data)
        return
    with fsspec.open(url, "rb", **cfg.storage_options) as fp:
        yield from decode(fp, spec, policy=policy, aliases=cfg.aliases, on_skip=on_skip)
