"""Utility exports for concurrency helpers."""

from merge_train.utils.concurrency import CancellationToken

__all__ = ["CancellationToken"]
