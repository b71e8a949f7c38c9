"""Error taxonomy shared across merge-train planes."""

from __future__ import annotations


class MergeTrainError(Exception):
    """Base class for merge-train failures."""


class ConfigurationError(MergeTrainError, ValueError):
    """Fatal startup error: malformed or contradictory configuration."""


class StorageError(MergeTrainError):
    """Raised when the durable merge queue cannot be read or written."""


class GateViolationError(MergeTrainError, AssertionError):
    """Raised when a merge is attempted without explicit gate satisfaction."""


__all__ = [
    "ConfigurationError",
    "GateViolationError",
    "MergeTrainError",
    "StorageError",
]
