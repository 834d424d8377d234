# __init__.py
# SPDX-License-Identifier: MIT
"""
Top-level package exports for :mod:`bulkpost`.

bulkpost streams large record sets (JSONL, JSON, CSV, Parquet; local,
in-memory, or in object storage) into size-bounded batches and posts them
concurrently to a bulk-ingestion HTTP endpoint with retries, rate-limit
handling and partial-failure attribution.

Most callers need only :func:`run_import`, optionally with a
:class:`RunConfig` built in code or loaded with :func:`load_config_from_path`.
Anything not listed in :data:`__all__` is an expert surface and may change
between releases.

Examples:
    Import a directory of gzipped JSONL events::

        >>> from bulkpost import run_import
        >>> summary = run_import("data/events/", token="...", workers=20)
        >>> summary["success"], summary["failed"]

    Config-driven run::

        >>> from bulkpost import load_config_from_path, run_import
        >>> cfg = load_config_from_path("import.toml")
        >>> summary = run_import("gs://bucket/events.jsonl.gz", cfg)
"""

from __future__ import annotations

try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("bulkpost")
except Exception:  # PackageNotFoundError or runtime env oddities
    __version__ = "0.0.0+unknown"

from .core.chunker import BatchAccumulator, iter_batches
from .core.config import (
    AdaptiveConfig,
    AuthConfig,
    BatchConfig,
    DispatchConfig,
    LoggingConfig,
    RunConfig,
    SourceConfig,
    TargetConfig,
    ThrottleConfig,
    TransformConfig,
    load_config_from_path,
)
from .core.dispatch import Failure, PartialFailure, RecordFailure, Success
from .core.errors import (
    BulkpostError,
    ConfigurationError,
    DecodeError,
    FormatMismatchError,
    UnrecognizedInputError,
)
from .core.log import configure_logging, get_logger
from .core.pipeline import ImportPipeline, run_import
from .core.state import RunState
from .sources.resolver import resolve_input

__all__ = [
    "__version__",
    "run_import",
    "ImportPipeline",
    "resolve_input",
    "RunConfig",
    "AuthConfig",
    "TargetConfig",
    "BatchConfig",
    "DispatchConfig",
    "SourceConfig",
    "TransformConfig",
    "AdaptiveConfig",
    "ThrottleConfig",
    "LoggingConfig",
    "load_config_from_path",
    "RunState",
    "BatchAccumulator",
    "iter_batches",
    "Success",
    "PartialFailure",
    "Failure",
    "RecordFailure",
    "BulkpostError",
    "ConfigurationError",
    "UnrecognizedInputError",
    "FormatMismatchError",
    "DecodeError",
    "configure_logging",
    "get_logger",
]
