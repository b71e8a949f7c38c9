"""
merge-train — integration plane.

File: src/merge_train/integration_plane/__init__.py

Purpose
- Git operations and the persistent merge queue.

Functional requirements
- Must never push the source branch and never create merge commits on the target.

Non-functional requirements
- Every operation must be safe to repeat after a crash.
"""

from merge_train.integration_plane.git_engine import (
    GitCommandError,
    GitEngine,
    GitEngineError,
    MergeResult,
    NotFastForwardError,
    PushRejectedError,
    RebaseResult,
    SanitizationError,
)
from merge_train.integration_plane.merge_queue import MergeQueueStore

__all__ = [
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "MergeQueueStore",
    "MergeResult",
    "NotFastForwardError",
    "PushRejectedError",
    "RebaseResult",
    "SanitizationError",
]
