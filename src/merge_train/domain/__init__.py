"""
merge-train — domain types.

File: src/merge_train/domain/__init__.py

Purpose
- Domain types shared across planes: MergeRequest, ProcessResult and the error taxonomy.

Functional requirements
- Keep the domain layer free of IO side effects.
"""

from merge_train.domain.errors import (
    ConfigurationError,
    GateViolationError,
    MergeTrainError,
    StorageError,
)
from merge_train.domain.models import MergeRequest, ProcessOutcome, ProcessResult

__all__ = [
    "ConfigurationError",
    "GateViolationError",
    "MergeRequest",
    "MergeTrainError",
    "ProcessOutcome",
    "ProcessResult",
    "StorageError",
]
