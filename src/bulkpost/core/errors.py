# errors.py
# SPDX-License-Identifier: MIT
"""Exception types raised by bulkpost.

Configuration problems are fatal and surface before records flow. Decode
errors follow the configured strictness policy. Transport failures never
escape a batch; they become :class:`~bulkpost.core.dispatch.Failure`
outcomes instead.
"""

from __future__ import annotations

__all__ = [
    "BulkpostError",
    "ConfigurationError",
    "UnrecognizedInputError",
    "FormatMismatchError",
    "DecodeError",
]


class BulkpostError(RuntimeError):
    """Base class for bulkpost errors."""


class ConfigurationError(BulkpostError, ValueError):
    """Raised for bad credentials, unknown regions, or invalid settings."""


class UnrecognizedInputError(ConfigurationError):
    """Raised when an input descriptor cannot be resolved to records."""


class FormatMismatchError(ConfigurationError):
    """Raised when members of a multi-file input disagree on format."""

    def __init__(self, message: str, *, expected: object = None, found: object = None, member: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.found = found
        self.member = member


class DecodeError(BulkpostError, ValueError):
    """Raised when a malformed record aborts decoding.

    Attributes:
        path (str | None): Source label (file path or URL) when known.
        lineno (int | None): 1-based line number for line-oriented input.
    """

    def __init__(self, message: str, *, path: str | None = None, lineno: int | None = None):
        super().__init__(message)
        self.path = path
        self.lineno = lineno
