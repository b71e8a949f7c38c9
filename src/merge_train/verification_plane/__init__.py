"""
merge-train — verification plane public API.

File: src/merge_train/verification_plane/__init__.py

Purpose
- Export the verification gate, its verdict types, the test command runner and
  the per-tip baseline cache.

Functional requirements
- A merge must only follow a verdict that is satisfied for the exact candidate head.
"""

from merge_train.verification_plane.baseline import (
    BaselineCache,
    BaselineResult,
    FailureSignature,
    parse_failure_signature,
)
from merge_train.verification_plane.gate import (
    GateDecision,
    GateSatisfaction,
    GateVerdict,
    VerificationGate,
)
from merge_train.verification_plane.runner import (
    CommandExecutor,
    CommandFixer,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
    VerificationRunner,
)

__all__ = [
    "BaselineCache",
    "BaselineResult",
    "CommandExecutor",
    "CommandFixer",
    "CommandResult",
    "CommandSpec",
    "FailureSignature",
    "GateDecision",
    "GateSatisfaction",
    "GateVerdict",
    "LocalSubprocessExecutor",
    "VerificationGate",
    "VerificationRunner",
    "parse_failure_signature",
]
