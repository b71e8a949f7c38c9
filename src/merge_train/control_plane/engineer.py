"""
merge-train — processor loop.

File: src/merge_train/control_plane/engineer.py

Purpose
- Drain the merge queue: for each MR, rebase a disposable candidate onto the
  current target tip, run the verification gate, fast-forward the target and
  push, then hand the result to the outcome handlers.

Functional requirements
- The target only moves after ``GateVerdict.certify`` accepts the exact
  candidate head being merged.
- Target fetch/sync/merge/push are serialized behind one lock; candidate
  preparation and gate runs may overlap when ``max_concurrent > 1``.
- A crash at any point leaves the MR queued; reprocessing a merged MR yields
  ``ALREADY_MERGED`` instead of a second merge.
- An MR that fails transiently sits out a growing number of ticks so the MRs
  behind it keep moving.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from merge_train.control_plane.outcomes import OutcomeAction
from merge_train.domain.errors import ConfigurationError, GateViolationError, MergeTrainError
from merge_train.domain.models import ProcessOutcome, ProcessResult
from merge_train.integration_plane.git_engine import GitEngineError, PushRejectedError
from merge_train.observability.logging import correlation_scope
from merge_train.utils.concurrency import CancellationToken
from merge_train.verification_plane.gate import GateDecision

if TYPE_CHECKING:
    from merge_train.config.schema import MergeQueueConfig
    from merge_train.control_plane.outcomes import ConflictInputs, OutcomeHandlers
    from merge_train.domain.models import MergeRequest
    from merge_train.integration_plane.git_engine import GitEngine
    from merge_train.integration_plane.merge_queue import MergeQueueStore
    from merge_train.verification_plane.gate import GateVerdict, VerificationGate

_MAX_BACKOFF_TICKS: Final[int] = 8


class Engineer:
    """Serialized merge-queue processor for one repository clone."""

    def __init__(
        self,
        *,
        config: MergeQueueConfig,
        store: MergeQueueStore,
        git: GitEngine,
        gate: VerificationGate,
        outcomes: OutcomeHandlers,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._git = git
        self._gate = gate
        self._outcomes = outcomes
        self._token = cancel_token if cancel_token is not None else CancellationToken()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._target_lock = asyncio.Lock()
        self._conflict_inputs: dict[str, ConflictInputs] = {}
        self._deferred: dict[str, ConflictInputs] = {}
        # mr id -> (consecutive transient failures, first tick it may run again)
        self._backoff: dict[str, tuple[int, int]] = {}
        self._ticks = 0
        self._cycles = 0

    @property
    def config(self) -> MergeQueueConfig:
        return self._config

    @property
    def deferred(self) -> dict[str, ConflictInputs]:
        return dict(self._deferred)

    @property
    def backoff(self) -> dict[str, tuple[int, int]]:
        return dict(self._backoff)

    async def run(self) -> None:
        """Process immediately, then once per poll interval until stopped."""
        if not self._config.enabled:
            raise ConfigurationError("merge queue is disabled (merge_queue.enabled = false)")

        self._logger.info(
            "merge_train_started",
            target_branch=self._config.target_branch,
            poll_interval=self._config.poll_interval,
            max_concurrent=self._config.max_concurrent,
            run_tests=self._config.run_tests,
        )
        while not self._token.is_cancelled:
            await self.process_once()
            if await self._token.sleep(self._config.poll_interval):
                break
        self._logger.info("merge_train_stopped")

    def stop(self) -> None:
        self._token.cancel()

    async def process_once(self) -> list[tuple[MergeRequest, ProcessResult]]:
        """Run one tick over a fresh read of the queue."""
        if self._token.is_cancelled:
            return []
        self._ticks += 1

        try:
            pending = await asyncio.to_thread(self._store.list)
        except MergeTrainError as exc:
            self._logger.warning("merge_train_queue_read_failed", error=str(exc))
            return []
        if not pending:
            self._logger.debug("merge_train_queue_empty")
            return []

        live_ids = {mr.id for mr in pending}
        for stale in set(self._deferred) - live_ids:
            del self._deferred[stale]
        for stale in set(self._backoff) - live_ids:
            del self._backoff[stale]

        selected: list[MergeRequest] = []
        for mr in pending:
            if len(selected) >= self._config.max_concurrent or self._token.is_cancelled:
                break
            if self._backing_off(mr) or await self._still_deferred(mr):
                continue
            selected.append(mr)

        if not selected:
            return []
        self._cycles += 1
        with correlation_scope(cycle_id=f"cycle-{self._cycles}"):
            outcomes = await asyncio.gather(*(self._process_and_dispatch(mr) for mr in selected))
        return list(outcomes)

    async def process_mr(self, mr: MergeRequest) -> ProcessResult:
        """Run the rebase/gate/merge state machine for one MR."""
        target = self._config.target_for(mr.target)
        with correlation_scope(mr_id=mr.id):
            self._logger.info(
                "merge_train_mr_processing",
                mr_id=mr.id,
                branch=mr.branch,
                target=target,
                worker=mr.worker,
                source_issue=mr.source_issue,
            )
            try:
                return await self._process(mr, target)
            except GateViolationError:
                raise
            except (MergeTrainError, OSError) as exc:
                self._logger.warning(
                    "merge_train_mr_transient_failure",
                    mr_id=mr.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return ProcessResult(outcome=ProcessOutcome.TRANSIENT, error=str(exc))

    async def _process_and_dispatch(self, mr: MergeRequest) -> tuple[MergeRequest, ProcessResult]:
        result = await self.process_mr(mr)
        inputs = self._conflict_inputs.pop(mr.id, None)
        action = await self._outcomes.handle(mr, result, conflict_inputs=inputs)
        if action is OutcomeAction.DEFERRED and inputs is not None:
            self._deferred[mr.id] = inputs
        else:
            self._deferred.pop(mr.id, None)
        self._record_backoff(mr, result)
        self._logger.info(
            "merge_train_mr_processed",
            mr_id=mr.id,
            outcome=result.outcome.value,
            action=action.value,
            merge_commit=result.merge_commit,
        )
        return mr, result

    async def _process(self, mr: MergeRequest, target: str) -> ProcessResult:
        async with self._target_lock:
            await asyncio.to_thread(self._git.fetch, target, mr.branch)
            tip = await asyncio.to_thread(self._git.sync_target, target)

        candidate = await asyncio.to_thread(self._git.prepare_candidate, mr.id, mr.branch)
        worktree: Path | None = None
        try:
            source_head = await asyncio.to_thread(self._git.head, candidate)
            worktree = await asyncio.to_thread(self._git.add_worktree, candidate)
            rebase = await asyncio.to_thread(self._git.rebase, worktree, tip)
            if rebase.conflict:
                self._conflict_inputs[mr.id] = (source_head, tip)
                return ProcessResult(
                    outcome=ProcessOutcome.CONFLICT,
                    error=f"rebase onto {target} conflicts",
                    conflicts=rebase.conflicts,
                )

            head = rebase.new_head
            if await asyncio.to_thread(self._git.commits_between, tip, head) == 0:
                self._logger.info("merge_train_mr_already_merged", mr_id=mr.id, target_tip=tip)
                return ProcessResult(outcome=ProcessOutcome.ALREADY_MERGED, merge_commit=tip)

            verdict = await self._gate.evaluate(
                mr, worktree=worktree, candidate_head=head, target_tip=tip
            )
            if verdict.decision is GateDecision.BRANCH_CAUSED:
                return ProcessResult(
                    outcome=ProcessOutcome.BRANCH_FAILURE,
                    error="tests failed on the branch",
                    detail=verdict.detail,
                )
            if verdict.decision is GateDecision.UNRESOLVABLE:
                outcome = (
                    ProcessOutcome.TRANSIENT if verdict.retryable else ProcessOutcome.UNRESOLVABLE
                )
                return ProcessResult(outcome=outcome, error=verdict.detail)

            return await self._merge(mr, target, tip, candidate, verdict)
        finally:
            await self._cleanup(mr, candidate, worktree)

    async def _merge(
        self,
        mr: MergeRequest,
        target: str,
        tip: str,
        candidate: str,
        verdict: GateVerdict,
    ) -> ProcessResult:
        async with self._target_lock:
            await asyncio.to_thread(self._git.fetch, target)
            current = await asyncio.to_thread(self._git.sync_target, target)
            if current != tip:
                self._logger.info(
                    "merge_train_push_race", mr_id=mr.id, expected_tip=tip, actual_tip=current
                )
                return ProcessResult(
                    outcome=ProcessOutcome.PUSH_RACE,
                    error=f"{target} moved from {tip[:12]} to {current[:12]} during verification",
                )

            head = await asyncio.to_thread(self._git.head, candidate)
            verdict.certify(head)
            merged = await asyncio.to_thread(self._git.merge_ff_only, candidate, target)
            try:
                await asyncio.to_thread(self._git.push, target)
            except PushRejectedError as exc:
                self._logger.info("merge_train_push_race", mr_id=mr.id, error=str(exc))
                await asyncio.to_thread(self._git.fetch, target)
                await asyncio.to_thread(self._git.sync_target, target)
                return ProcessResult(outcome=ProcessOutcome.PUSH_RACE, error=str(exc))

        return ProcessResult(
            outcome=ProcessOutcome.MERGED,
            merge_commit=merged.target_head,
            defect_id=verdict.defect_id,
        )

    async def _cleanup(self, mr: MergeRequest, candidate: str, worktree: Path | None) -> None:
        try:
            if worktree is not None:
                await asyncio.to_thread(self._git.remove_worktree, worktree)
            await asyncio.to_thread(self._git.delete_branch, candidate)
        except GitEngineError as exc:
            self._logger.warning(
                "merge_train_cleanup_failed", mr_id=mr.id, candidate=candidate, error=str(exc)
            )

    def _backing_off(self, mr: MergeRequest) -> bool:
        entry = self._backoff.get(mr.id)
        if entry is None or self._ticks >= entry[1]:
            return False
        self._logger.debug("merge_train_mr_skipped_backoff", mr_id=mr.id, until_tick=entry[1])
        return True

    def _record_backoff(self, mr: MergeRequest, result: ProcessResult) -> None:
        if result.outcome is not ProcessOutcome.TRANSIENT:
            self._backoff.pop(mr.id, None)
            return
        failures = self._backoff.get(mr.id, (0, 0))[0] + 1
        delay = min(2 ** (failures - 1), _MAX_BACKOFF_TICKS)
        self._backoff[mr.id] = (failures, self._ticks + delay + 1)
        self._logger.info(
            "merge_train_mr_backoff", mr_id=mr.id, failures=failures, skipped_ticks=delay
        )

    async def _still_deferred(self, mr: MergeRequest) -> bool:
        inputs = self._deferred.get(mr.id)
        if inputs is None:
            return False
        target = self._config.target_for(mr.target)
        try:
            current = await asyncio.to_thread(self._current_inputs, mr.branch, target)
        except GitEngineError as exc:
            self._logger.warning("merge_train_deferral_check_failed", mr_id=mr.id, error=str(exc))
            return False
        if current == inputs:
            self._logger.debug("merge_train_mr_skipped_deferred", mr_id=mr.id)
            return True
        del self._deferred[mr.id]
        return False

    def _current_inputs(self, branch: str, target: str) -> ConflictInputs:
        self._git.fetch(target, branch)
        if self._git.has_remote_branch(branch):
            source_head = self._git.remote_head(branch)
        else:
            source_head = self._git.head(f"refs/heads/{branch}")
        if self._git.has_remote_branch(target):
            tip = self._git.remote_head(target)
        else:
            tip = self._git.head(f"refs/heads/{target}")
        return source_head, tip


__all__ = ["Engineer"]
