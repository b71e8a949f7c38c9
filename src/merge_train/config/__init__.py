"""
merge-train config package public API.

File: src/merge_train/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``merge-train.toml`` + ``MERGE_TRAIN_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from merge_train.config.loader import (
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from merge_train.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    ConfigValidationIssue,
    ConflictStrategy,
    MergeQueueConfig,
    MergeTrainConfig,
    assert_runnable_config,
    assert_valid_config,
    default_config,
    merge_config,
    parse_duration,
)

__all__ = [
    "DEFAULT_CONFIG",
    "ENV_PREFIX",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConflictStrategy",
    "MergeQueueConfig",
    "MergeTrainConfig",
    "assert_runnable_config",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "parse_duration",
]
