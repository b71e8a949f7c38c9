"""Post-processing for each MR outcome: bookkeeping, rejection, retention.

Every side effect here is best-effort. A failed notification, tracker call,
branch deletion or queue write is logged as a warning and the remaining steps
still run; nothing is rolled back once the target has moved.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from merge_train.config.schema import ConflictStrategy, MergeQueueConfig
from merge_train.constants import MERGED_CLOSE_REASON
from merge_train.domain.errors import MergeTrainError
from merge_train.domain.models import ProcessOutcome

if TYPE_CHECKING:
    from collections.abc import Callable

    from merge_train.collaborators.mail import Notifier
    from merge_train.collaborators.tracker import IssueTracker
    from merge_train.domain.models import MergeRequest, ProcessResult
    from merge_train.integration_plane.git_engine import GitEngine
    from merge_train.integration_plane.merge_queue import MergeQueueStore

ConflictInputs = tuple[str, str]

_REJECTED_OUTCOMES: frozenset[ProcessOutcome] = frozenset(
    {ProcessOutcome.BRANCH_FAILURE, ProcessOutcome.UNRESOLVABLE}
)


class OutcomeAction(StrEnum):
    """What happened to the queue record after an outcome was handled."""

    COMPLETED = "completed"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    RETAINED = "retained"


class OutcomeHandlers:
    """Applies the bookkeeping for a ``ProcessResult``."""

    def __init__(
        self,
        *,
        config: MergeQueueConfig,
        store: MergeQueueStore,
        git: GitEngine,
        tracker: IssueTracker | None = None,
        notifier: Notifier | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._git = git
        self._tracker = tracker
        self._notifier = notifier
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._conflict_notices: set[tuple[str, str, str]] = set()

    async def handle(
        self,
        mr: MergeRequest,
        result: ProcessResult,
        *,
        conflict_inputs: ConflictInputs | None = None,
    ) -> OutcomeAction:
        if result.success:
            await self.handle_success(mr, result)
            return OutcomeAction.COMPLETED
        if result.outcome is ProcessOutcome.CONFLICT:
            if self._config.on_conflict is ConflictStrategy.AUTO_REBASE:
                await self._notify_conflict_once(mr, result, conflict_inputs)
                return OutcomeAction.DEFERRED
            await self.reject(mr, result)
            return OutcomeAction.REJECTED
        if result.outcome in _REJECTED_OUTCOMES:
            await self.reject(mr, result)
            return OutcomeAction.REJECTED

        self._logger.info(
            "merge_train_mr_retained",
            mr_id=mr.id,
            outcome=result.outcome.value,
            error=result.error,
        )
        return OutcomeAction.RETAINED

    async def handle_success(self, mr: MergeRequest, result: ProcessResult) -> None:
        """Stamp, close the source issue, delete the source branch, dequeue."""
        merge_commit = result.merge_commit or ""
        if merge_commit:
            await self._best_effort(
                "merge_train_record_update_failed",
                mr,
                self._store.update,
                mr.resolved(merge_commit, MERGED_CLOSE_REASON),
            )

        if mr.source_issue and self._tracker is not None:
            closed = await self._best_effort(
                "merge_train_close_issue_failed",
                mr,
                self._tracker.close_with_reason,
                f"Merged in {mr.id}",
                mr.source_issue,
            )
            if closed:
                self._logger.info(
                    "merge_train_source_issue_closed", mr_id=mr.id, issue=mr.source_issue
                )

        if self._config.delete_merged_branches and mr.branch:
            await self._best_effort(
                "merge_train_delete_branch_failed",
                mr,
                self._git.delete_branch,
                mr.branch,
            )

        await self._best_effort("merge_train_dequeue_failed", mr, self._store.remove, mr.id)
        self._logger.info(
            "merge_train_mr_merged",
            mr_id=mr.id,
            merge_commit=merge_commit,
            outcome=result.outcome.value,
            defect_id=result.defect_id,
        )

    async def reject(self, mr: MergeRequest, result: ProcessResult) -> None:
        """Send the MR back to its worker and drop it from the queue."""
        if result.conflict:
            subject = f"Merge conflict: {mr.title or mr.branch}"
            files = "\n".join(f"  {name}" for name in result.conflicts) or "  (unknown)"
            body = (
                f"{mr.id} ({mr.branch}) conflicts with {mr.target}.\n"
                f"Conflicting files:\n{files}\n\n"
                "Rebase onto the latest target, resolve the conflicts and resubmit."
            )
        elif result.outcome is ProcessOutcome.UNRESOLVABLE:
            subject = f"Merge blocked: {mr.title or mr.branch}"
            body = (
                f"{mr.id} ({mr.branch}) could not be verified against {mr.target}.\n\n"
                f"{result.error or result.detail or 'no detail available'}\n\n"
                "Resolve the blocker and resubmit."
            )
        else:
            subject = f"Merge rejected: {mr.title or mr.branch}"
            body = (
                f"{mr.id} ({mr.branch}) failed verification against {mr.target}.\n\n"
                f"{result.detail or result.error or 'no detail available'}"
            )

        await self._notify(mr, subject, body)

        if mr.source_issue and self._tracker is not None:
            fields = {"status": "open"}
            if mr.worker:
                fields["assignee"] = mr.worker
            await self._best_effort(
                "merge_train_reopen_issue_failed",
                mr,
                self._tracker.update,
                mr.source_issue,
                fields,
            )

        await self._best_effort("merge_train_dequeue_failed", mr, self._store.remove, mr.id)
        self._logger.info(
            "merge_train_mr_rejected",
            mr_id=mr.id,
            outcome=result.outcome.value,
            error=result.error,
        )

    async def _notify_conflict_once(
        self,
        mr: MergeRequest,
        result: ProcessResult,
        conflict_inputs: ConflictInputs | None,
    ) -> None:
        source_head, target_tip = conflict_inputs or ("", "")
        key = (mr.id, source_head, target_tip)
        if key in self._conflict_notices:
            return
        self._conflict_notices.add(key)
        files = ", ".join(result.conflicts) or "unknown files"
        await self._notify(
            mr,
            f"Merge conflict (queued): {mr.title or mr.branch}",
            f"{mr.id} ({mr.branch}) conflicts with {mr.target} in {files}. "
            "It stays queued and will be retried once either branch moves.",
        )
        self._logger.info(
            "merge_train_mr_deferred",
            mr_id=mr.id,
            source_head=source_head,
            target_tip=target_tip,
        )

    async def _notify(self, mr: MergeRequest, subject: str, body: str) -> None:
        if self._notifier is None or not mr.worker:
            return
        await self._best_effort(
            "merge_train_notify_failed", mr, self._notifier.send, mr.worker, subject, body
        )

    async def _best_effort(
        self,
        event: str,
        mr: MergeRequest,
        func: Callable[..., object],
        *args: object,
    ) -> bool:
        try:
            await asyncio.to_thread(func, *args)
        except (MergeTrainError, KeyError, OSError) as exc:
            self._logger.warning(event, mr_id=mr.id, error=str(exc))
            return False
        return True


__all__ = ["ConflictInputs", "OutcomeAction", "OutcomeHandlers"]
