"""
Verification gate: the check every candidate must pass before the target moves.

A candidate is mergeable only with an explicit satisfaction:
- ``TESTS_PASSED``: the test command passes (flaky retries included);
- ``FIX_COMMITTED``: failures were pre-existing and a fixer committed a fix
  that makes the suite pass;
- ``DEFECT_FILED``: failures were pre-existing and a tracked defect exists;
- ``GATE_DISABLED``: ``run_tests = false`` waives the gate explicitly.

Anything else is ``BRANCH_CAUSED`` or ``UNRESOLVABLE``. An unresolvable verdict is
``retryable`` when an outage caused it, such as a missing runner or a failed
tracker call. A verdict certifies one candidate head; the merge step calls
:meth:`GateVerdict.certify` with the head it is about to merge.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from merge_train.collaborators.tracker import TrackerError
from merge_train.constants import DEFECT_ISSUE_TYPE, DEFECT_PRIORITY
from merge_train.domain.errors import GateViolationError
from merge_train.integration_plane.git_engine import GitEngineError
from merge_train.verification_plane.baseline import (
    BaselineCache,
    BaselineResult,
    FailureSignature,
    parse_failure_signature,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from merge_train.collaborators.tracker import IssueTracker
    from merge_train.domain.models import MergeRequest
    from merge_train.integration_plane.git_engine import GitEngine
    from merge_train.verification_plane.runner import CommandResult, VerificationRunner

    FixerHook = Callable[[Path, FailureSignature, CommandResult], Awaitable[bool]]

_DETAIL_EXCERPT_LINES: Final[int] = 40


class GateSatisfaction(StrEnum):
    TESTS_PASSED = "tests_passed"
    FIX_COMMITTED = "fix_committed"
    DEFECT_FILED = "defect_filed"
    GATE_DISABLED = "gate_disabled"


class GateDecision(StrEnum):
    SATISFIED = "satisfied"
    BRANCH_CAUSED = "branch_caused"
    UNRESOLVABLE = "unresolvable"


@dataclass(frozen=True, slots=True)
class GateVerdict:
    """Gate result bound to the candidate head it was computed for."""

    decision: GateDecision
    candidate_head: str
    satisfaction: GateSatisfaction | None = None
    defect_id: str | None = None
    detail: str = ""
    failing_tests: tuple[str, ...] = ()
    retryable: bool = False

    def __post_init__(self) -> None:
        if (self.decision is GateDecision.SATISFIED) != (self.satisfaction is not None):
            raise ValueError("GateVerdict.satisfaction must be set exactly when satisfied")
        if self.retryable and self.decision is not GateDecision.UNRESOLVABLE:
            raise ValueError("GateVerdict.retryable only applies to unresolvable verdicts")

    @property
    def satisfied(self) -> bool:
        return self.decision is GateDecision.SATISFIED

    def certify(self, head: str) -> None:
        """Raise ``GateViolationError`` unless this verdict allows merging ``head``."""
        if not self.satisfied:
            raise GateViolationError(
                f"merge of {head[:12]} attempted without gate satisfaction "
                f"(decision={self.decision.value})"
            )
        if head != self.candidate_head:
            raise GateViolationError(
                f"gate certified {self.candidate_head[:12]} but merge targets {head[:12]}"
            )


class VerificationGate:
    """Decides whether a rebased candidate may be merged."""

    def __init__(
        self,
        *,
        git: GitEngine,
        runner: VerificationRunner | None,
        tracker: IssueTracker | None,
        run_tests: bool = True,
        retry_flaky_tests: int = 1,
        baseline_cache: BaselineCache | None = None,
        fixer: FixerHook | None = None,
        logger: Any | None = None,
    ) -> None:
        if run_tests and runner is None:
            raise ValueError("a test runner is required when run_tests is enabled")
        if retry_flaky_tests < 0:
            raise ValueError("retry_flaky_tests must be >= 0")
        self._git = git
        self._runner = runner
        self._tracker = tracker
        self._run_tests = run_tests
        self._retry_flaky_tests = retry_flaky_tests
        self._baselines = baseline_cache if baseline_cache is not None else BaselineCache()
        self._fixer = fixer
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._filed_defects: dict[str, str] = {}
        self._defect_lock = asyncio.Lock()

    @property
    def baselines(self) -> BaselineCache:
        return self._baselines

    @property
    def filed_defects(self) -> dict[str, str]:
        return dict(self._filed_defects)

    async def evaluate(
        self,
        mr: MergeRequest,
        *,
        worktree: Path,
        candidate_head: str,
        target_tip: str,
    ) -> GateVerdict:
        if not self._run_tests:
            return self._log_verdict(
                mr,
                GateVerdict(
                    decision=GateDecision.SATISFIED,
                    candidate_head=candidate_head,
                    satisfaction=GateSatisfaction.GATE_DISABLED,
                ),
            )

        result = await self._run_with_retries(worktree)
        if result.passed:
            return self._log_verdict(
                mr,
                GateVerdict(
                    decision=GateDecision.SATISFIED,
                    candidate_head=candidate_head,
                    satisfaction=GateSatisfaction.TESTS_PASSED,
                ),
            )
        if result.unavailable and not result.timed_out:
            return self._log_verdict(
                mr,
                _unresolvable(
                    candidate_head, f"test command unavailable: {result.error}", retryable=True
                ),
            )

        signature = parse_failure_signature(result)
        try:
            baseline = await self._baseline(target_tip)
        except GitEngineError as exc:
            return self._log_verdict(
                mr,
                _unresolvable(candidate_head, f"baseline checkout failed: {exc}", retryable=True),
            )
        if baseline.unavailable:
            return self._log_verdict(
                mr,
                _unresolvable(
                    candidate_head,
                    f"baseline unavailable: {baseline.result.error}",
                    retryable=True,
                ),
            )

        # The target suite completes, so a hang is introduced by the branch.
        if result.timed_out:
            return self._log_verdict(
                mr,
                GateVerdict(
                    decision=GateDecision.BRANCH_CAUSED,
                    candidate_head=candidate_head,
                    detail=(
                        f"Test command timed out on the branch ({result.error}) but completes "
                        f"on the target.\n\n{_excerpt(result.output)}"
                    ).rstrip(),
                ),
            )

        if baseline.passed or baseline.signature is None or not signature.is_subset_of(
            baseline.signature
        ):
            return self._log_verdict(
                mr,
                GateVerdict(
                    decision=GateDecision.BRANCH_CAUSED,
                    candidate_head=candidate_head,
                    detail=_failure_detail(signature, baseline, result),
                    failing_tests=signature.new_failures(baseline.signature),
                ),
            )

        self._logger.info(
            "merge_train_gate_preexisting_failure",
            mr_id=mr.id,
            target_tip=target_tip,
            signature=signature.key,
            failures=signature.describe(),
        )

        if self._fixer is not None:
            fixed = await self._attempt_fix(mr, worktree, candidate_head, signature, result)
            if fixed is not None:
                return self._log_verdict(mr, fixed)

        return self._log_verdict(
            mr, await self._file_defect(mr, candidate_head, target_tip, signature, result)
        )

    async def _run_with_retries(self, worktree: Path) -> CommandResult:
        assert self._runner is not None
        result = await self._runner.run(worktree)
        for attempt in range(self._retry_flaky_tests):
            if result.passed or result.unavailable:
                break
            self._logger.info(
                "merge_train_gate_flaky_retry",
                attempt=attempt + 1,
                retries=self._retry_flaky_tests,
                worktree=str(worktree),
            )
            result = await self._runner.run(worktree)
        return result

    async def _baseline(self, target_tip: str) -> BaselineResult:
        async def run_on_tip() -> CommandResult:
            worktree = await asyncio.to_thread(self._git.add_worktree, target_tip, detach=True)
            try:
                self._logger.info("merge_train_gate_baseline_run", target_tip=target_tip)
                return await self._run_with_retries(worktree)
            finally:
                await asyncio.to_thread(self._git.remove_worktree, worktree)

        return await self._baselines.get_or_run(target_tip, run_on_tip)

    async def _attempt_fix(
        self,
        mr: MergeRequest,
        worktree: Path,
        candidate_head: str,
        signature: FailureSignature,
        result: CommandResult,
    ) -> GateVerdict | None:
        assert self._fixer is not None
        committed = await self._fixer(worktree, signature, result)
        if not committed:
            return None

        new_head = await asyncio.to_thread(self._git.worktree_head, worktree)
        if new_head != candidate_head:
            rerun = await self._run_with_retries(worktree)
            if rerun.passed:
                return GateVerdict(
                    decision=GateDecision.SATISFIED,
                    candidate_head=new_head,
                    satisfaction=GateSatisfaction.FIX_COMMITTED,
                )

        self._logger.warning(
            "merge_train_gate_fix_rejected",
            mr_id=mr.id,
            candidate_head=candidate_head,
            attempted_head=new_head,
        )
        await asyncio.to_thread(self._git.reset_worktree, worktree, candidate_head)
        return None

    async def _file_defect(
        self,
        mr: MergeRequest,
        candidate_head: str,
        target_tip: str,
        signature: FailureSignature,
        result: CommandResult,
    ) -> GateVerdict:
        async with self._defect_lock:
            defect_id = self._filed_defects.get(signature.key)
            if defect_id is None:
                if self._tracker is None:
                    return _unresolvable(
                        candidate_head,
                        "pre-existing failure on the target and no issue tracker to file it",
                    )
                title = f"Pre-existing test failure on {mr.target} ({signature.describe(limit=3)})"
                description = (
                    f"Found while verifying {mr.id} ({mr.branch}) against {target_tip}.\n\n"
                    f"{_excerpt(result.output)}"
                )
                try:
                    defect_id = await asyncio.to_thread(
                        self._tracker.create,
                        DEFECT_ISSUE_TYPE,
                        DEFECT_PRIORITY,
                        title,
                        description,
                    )
                except TrackerError as exc:
                    return _unresolvable(
                        candidate_head, f"failed to file defect: {exc}", retryable=True
                    )
                self._filed_defects[signature.key] = defect_id
                self._logger.info(
                    "merge_train_gate_defect_filed",
                    mr_id=mr.id,
                    defect_id=defect_id,
                    signature=signature.key,
                )

        return GateVerdict(
            decision=GateDecision.SATISFIED,
            candidate_head=candidate_head,
            satisfaction=GateSatisfaction.DEFECT_FILED,
            defect_id=defect_id,
            failing_tests=tuple(sorted(signature.failing_tests)),
        )

    def _log_verdict(self, mr: MergeRequest, verdict: GateVerdict) -> GateVerdict:
        self._logger.info(
            "merge_train_gate_verdict",
            mr_id=mr.id,
            decision=verdict.decision.value,
            satisfaction=verdict.satisfaction.value if verdict.satisfaction else None,
            candidate_head=verdict.candidate_head,
            defect_id=verdict.defect_id,
            retryable=verdict.retryable,
        )
        return verdict


def _unresolvable(candidate_head: str, detail: str, *, retryable: bool = False) -> GateVerdict:
    return GateVerdict(
        decision=GateDecision.UNRESOLVABLE,
        candidate_head=candidate_head,
        detail=detail,
        retryable=retryable,
    )


def _failure_detail(
    signature: FailureSignature,
    baseline: BaselineResult,
    result: CommandResult,
) -> str:
    if baseline.passed:
        header = f"Tests fail on the branch but pass on the target: {signature.describe()}"
    else:
        new = signature.new_failures(baseline.signature)
        if new:
            header = f"Tests fail on the branch that pass on the target: {', '.join(new)}"
        else:
            header = f"Test failures differ from the target baseline: {signature.describe()}"
    return f"{header}\n\n{_excerpt(result.output)}"


def _excerpt(output: str) -> str:
    lines = output.rstrip().splitlines()
    if len(lines) <= _DETAIL_EXCERPT_LINES:
        return "\n".join(lines)
    return "\n".join(["...", *lines[-_DETAIL_EXCERPT_LINES:]])


__all__ = [
    "GateDecision",
    "GateSatisfaction",
    "GateVerdict",
    "VerificationGate",
]
