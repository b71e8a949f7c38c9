"""Stable constants shared across merge-train planes."""

from __future__ import annotations

from typing import Final

# Git defaults.
DEFAULT_TARGET_BRANCH: Final[str] = "main"
DEFAULT_REMOTE: Final[str] = "origin"
CANDIDATE_BRANCH_PREFIX: Final[str] = "merge-train"

# Runtime paths (relative to the config file unless overridden).
DEFAULT_CONFIG_FILE: Final[str] = "merge-train.toml"
DEFAULT_QUEUE_DIR: Final[str] = ".merge-queue"
DEFAULT_LOG_DIR: Final[str] = "logs"

# Persisted record schema.
MR_RECORD_SCHEMA_VERSION: Final[int] = 1

# Tracker conventions for defects filed against pre-existing failures.
DEFECT_ISSUE_TYPE: Final[str] = "bug"
DEFECT_PRIORITY: Final[int] = 1
MERGED_CLOSE_REASON: Final[str] = "merged"

__all__ = [
    "CANDIDATE_BRANCH_PREFIX",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_LOG_DIR",
    "DEFAULT_QUEUE_DIR",
    "DEFAULT_REMOTE",
    "DEFAULT_TARGET_BRANCH",
    "DEFECT_ISSUE_TYPE",
    "DEFECT_PRIORITY",
    "MERGED_CLOSE_REASON",
    "MR_RECORD_SCHEMA_VERSION",
]
