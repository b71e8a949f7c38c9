"""
merge-train — serialized merge queue processor.

File: src/merge_train/__init__.py

Purpose
- Package root. Rebases queued merge requests onto a shared target branch one at a
  time, gates every merge on verification, and fast-forwards the target.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
