"""
merge-train — end-to-end smoke test

File: tests/smoke/test_merge_train_end_to_end.py

Purpose
- Run the real git engine, queue store, verification gate and processor against a
  sandbox remote. Only the tracker and mail collaborators are faked.

What this test file should cover
- Serialized merges keep the target history linear.
- Branch-caused failures are rejected back to the worker.
- Pre-existing failures on the target are filed once and do not block merges.
- A fixer hook's commit is re-verified and merged.
- Restarting after a crash before or after the push merges exactly once.
- Concurrent candidates never overlap target operations; the loser of the
  race is retained and merged on the next tick.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

import pytest

from merge_train.config import MergeQueueConfig
from merge_train.control_plane import Engineer, OutcomeHandlers
from merge_train.domain.models import MergeRequest, ProcessOutcome
from merge_train.integration_plane import GitEngine, MergeQueueStore
from merge_train.verification_plane import VerificationGate, VerificationRunner

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from conftest import GitSandbox

    from merge_train.integration_plane import MergeResult
    from merge_train.verification_plane import CommandResult, FailureSignature

pytestmark = pytest.mark.integration

T = TypeVar("T")

_BROKEN_SUITE = (
    "if test -f broken.txt; then echo 'FAILED tests/test_core.py::test_broken'; exit 1; fi"
)


@dataclass(slots=True)
class RecordingTracker:
    created: list[tuple[str, int, str, str]] = field(default_factory=list)
    updates: list[tuple[str, dict[str, str]]] = field(default_factory=list)
    closed: list[tuple[str, str]] = field(default_factory=list)

    def update(self, issue_id: str, fields: Mapping[str, str]) -> None:
        self.updates.append((issue_id, dict(fields)))

    def close_with_reason(self, reason: str, issue_id: str) -> None:
        self.closed.append((reason, issue_id))

    def create(self, issue_type: str, priority: int, title: str, description: str) -> str:
        self.created.append((issue_type, priority, title, description))
        return f"gt-bug-{len(self.created)}"


@dataclass(slots=True)
class RecordingNotifier:
    sent: list[tuple[str, str, str]] = field(default_factory=list)

    def send(self, identity: str, subject: str, body: str) -> None:
        self.sent.append((identity, subject, body))


class TargetOpRecordingGit(GitEngine):
    """Real git engine that records when target operations start and end."""

    def __init__(self, repo_path: Path) -> None:
        super().__init__(repo_path)
        self.events: list[tuple[str, str]] = []

    def sync_target(self, target_branch: str) -> str:
        return self._recorded("sync_target", super().sync_target, target_branch)

    def merge_ff_only(self, source_branch: str, target_branch: str) -> MergeResult:
        return self._recorded("merge_ff_only", super().merge_ff_only, source_branch, target_branch)

    def push(self, target_branch: str) -> None:
        self._recorded("push", super().push, target_branch)

    def max_overlap(self) -> int:
        depth = peak = 0
        for _, edge in self.events:
            depth += 1 if edge == "start" else -1
            peak = max(peak, depth)
        return peak

    def _recorded(self, name: str, operation: Callable[..., T], *args: str) -> T:
        self.events.append((name, "start"))
        try:
            return operation(*args)
        finally:
            self.events.append((name, "end"))


@dataclass(slots=True)
class Train:
    engineer: Engineer
    store: MergeQueueStore
    gate: VerificationGate
    tracker: RecordingTracker
    notifier: RecordingNotifier

    def submit(
        self,
        mr_id: str,
        branch: str,
        *,
        worker: str = "",
        source_issue: str = "",
        priority: int = 0,
    ) -> MergeRequest:
        mr = MergeRequest(
            id=mr_id,
            title=branch,
            branch=branch,
            target="main",
            worker=worker,
            source_issue=source_issue,
            priority=priority,
        )
        return self.store.add(mr)


def build_train(
    sandbox: GitSandbox,
    queue_dir: Path,
    *,
    test_command: str,
    fixer: object | None = None,
    max_concurrent: int = 1,
    git: GitEngine | None = None,
) -> Train:
    config = MergeQueueConfig(
        test_command=test_command,
        max_concurrent=max_concurrent,
        retry_flaky_tests=0,
        poll_interval=0.01,
        test_timeout=60.0,
    )
    git = git if git is not None else GitEngine(sandbox.clone)
    store = MergeQueueStore(queue_dir)
    tracker = RecordingTracker()
    notifier = RecordingNotifier()
    gate = VerificationGate(
        git=git,
        runner=VerificationRunner(test_command, timeout_seconds=config.test_timeout),
        tracker=tracker,
        retry_flaky_tests=config.retry_flaky_tests,
        fixer=fixer,  # type: ignore[arg-type]
    )
    outcomes = OutcomeHandlers(
        config=config, store=store, git=git, tracker=tracker, notifier=notifier
    )
    engineer = Engineer(config=config, store=store, git=git, gate=gate, outcomes=outcomes)
    return Train(engineer=engineer, store=store, gate=gate, tracker=tracker, notifier=notifier)


async def test_serial_merges_keep_history_linear(git_sandbox: GitSandbox, tmp_path: Path) -> None:
    train = build_train(git_sandbox, tmp_path / "queue", test_command="test -f README.md")
    git_sandbox.push_branch("polecat/a", "a.txt", "a\n")
    git_sandbox.push_branch("polecat/b", "b.txt", "b\n")
    train.submit("mr-a", "polecat/a", priority=1, source_issue="gt-a")
    train.submit("mr-b", "polecat/b")

    first = await train.engineer.process_once()
    second = await train.engineer.process_once()

    assert [(mr.id, result.outcome) for mr, result in first] == [("mr-a", ProcessOutcome.MERGED)]
    assert [(mr.id, result.outcome) for mr, result in second] == [("mr-b", ProcessOutcome.MERGED)]
    assert train.store.list() == []

    head = git_sandbox.remote_head("main")
    assert head == second[0][1].merge_commit
    parents = git_sandbox.git(git_sandbox.remote, "rev-list", "--parents", "-n1", "main").stdout
    assert parents.split() == [head, first[0][1].merge_commit]
    merges = git_sandbox.git(git_sandbox.remote, "rev-list", "--merges", "main").stdout
    assert merges.strip() == ""
    assert git_sandbox.remote_file("main", "a.txt") == "a\n"
    assert git_sandbox.remote_file("main", "b.txt") == "b\n"
    assert train.tracker.closed == [("Merged in mr-a", "gt-a")]


async def test_branch_caused_failure_is_sent_back(git_sandbox: GitSandbox, tmp_path: Path) -> None:
    train = build_train(git_sandbox, tmp_path / "queue", test_command=_BROKEN_SUITE)
    tip = git_sandbox.remote_head("main")
    git_sandbox.push_branch("polecat/bad", "broken.txt", "oops\n")
    train.submit("mr-bad", "polecat/bad", worker="gastown/polecats/nux", source_issue="gt-9")

    ((mr, result),) = await train.engineer.process_once()

    assert mr.id == "mr-bad"
    assert result.outcome is ProcessOutcome.BRANCH_FAILURE
    assert "tests/test_core.py::test_broken" in result.detail
    assert git_sandbox.remote_head("main") == tip
    assert train.store.list() == []
    ((identity, subject, body),) = train.notifier.sent
    assert identity == "gastown/polecats/nux"
    assert subject == "Merge rejected: polecat/bad"
    assert "failed verification against main" in body
    assert train.tracker.updates == [
        ("gt-9", {"status": "open", "assignee": "gastown/polecats/nux"})
    ]
    assert train.tracker.created == []


async def test_preexisting_failure_files_one_defect_and_merges(
    git_sandbox: GitSandbox, tmp_path: Path
) -> None:
    git_sandbox.advance_main("broken.txt", "already broken\n")
    train = build_train(git_sandbox, tmp_path / "queue", test_command=_BROKEN_SUITE)
    git_sandbox.push_branch("polecat/one", "one.txt", "1\n")
    git_sandbox.push_branch("polecat/two", "two.txt", "2\n")
    train.submit("mr-one", "polecat/one", priority=1)
    train.submit("mr-two", "polecat/two")

    ((_, first),) = await train.engineer.process_once()
    ((_, second),) = await train.engineer.process_once()

    assert first.outcome is ProcessOutcome.MERGED
    assert second.outcome is ProcessOutcome.MERGED
    assert first.defect_id == "gt-bug-1"
    assert second.defect_id == "gt-bug-1"
    ((issue_type, priority, title, description),) = train.tracker.created
    assert issue_type == "bug"
    assert priority == 1
    assert title.startswith("Pre-existing test failure on main")
    assert "mr-one" in description
    assert git_sandbox.remote_file("main", "two.txt") == "2\n"
    assert train.store.list() == []


async def test_fixer_commit_is_verified_and_merged(
    git_sandbox: GitSandbox, tmp_path: Path
) -> None:
    git_sandbox.advance_main("broken.txt", "already broken\n")
    fixed_worktrees: list[Path] = []

    async def fixer(worktree: Path, signature: FailureSignature, result: CommandResult) -> bool:
        assert signature.failing_tests == frozenset({"tests/test_core.py::test_broken"})
        assert result.exit_code == 1
        git_sandbox.git(worktree, "rm", "--quiet", "broken.txt")
        git_sandbox.git(worktree, "commit", "--quiet", "-m", "fix: remove broken marker")
        fixed_worktrees.append(worktree)
        return True

    train = build_train(git_sandbox, tmp_path / "queue", test_command=_BROKEN_SUITE, fixer=fixer)
    git_sandbox.push_branch("polecat/feature", "feature.txt", "feature\n")
    train.submit("mr-feature", "polecat/feature")

    ((_, result),) = await train.engineer.process_once()

    assert result.outcome is ProcessOutcome.MERGED
    assert result.defect_id is None
    assert len(fixed_worktrees) == 1
    assert git_sandbox.remote_head("main") == result.merge_commit
    assert git_sandbox.remote_file("main", "broken.txt") is None
    assert git_sandbox.remote_file("main", "feature.txt") == "feature\n"
    assert train.tracker.created == []


async def test_conflict_is_rejected_with_file_list(git_sandbox: GitSandbox, tmp_path: Path) -> None:
    train = build_train(git_sandbox, tmp_path / "queue", test_command="true")
    git_sandbox.push_branch("polecat/readme", "README.md", "branch\n")
    tip = git_sandbox.advance_main("README.md", "main\n")
    train.submit("mr-readme", "polecat/readme", worker="gastown/polecats/toast")

    ((_, result),) = await train.engineer.process_once()

    assert result.outcome is ProcessOutcome.CONFLICT
    assert result.conflicts == ("README.md",)
    assert git_sandbox.remote_head("main") == tip
    ((identity, subject, body),) = train.notifier.sent
    assert identity == "gastown/polecats/toast"
    assert subject == "Merge conflict: polecat/readme"
    assert "README.md" in body
    assert train.store.list() == []


def _crash_mid_merge(sandbox: GitSandbox, mr_id: str, branch: str, *, pushed: bool) -> str:
    """Replay the processor's merge steps up to a crash; return the local target head."""
    git = GitEngine(sandbox.clone)
    git.fetch("main", branch)
    tip = git.sync_target("main")
    candidate = git.prepare_candidate(mr_id, branch)
    worktree = git.add_worktree(candidate)
    try:
        git.rebase(worktree, tip)
    finally:
        git.remove_worktree(worktree)
    merged = git.merge_ff_only(candidate, "main")
    if pushed:
        git.push("main")
    return merged.target_head


def _commits_since(sandbox: GitSandbox, base: str) -> int:
    count = sandbox.git(sandbox.remote, "rev-list", "--count", f"{base}..main").stdout
    return int(count.strip())


async def test_restart_after_unpushed_local_merge_merges_once(
    git_sandbox: GitSandbox, tmp_path: Path
) -> None:
    base = git_sandbox.advance_main("other.txt", "other\n")
    git_sandbox.push_branch("polecat/feature", "feature.txt", "feature\n")
    train = build_train(git_sandbox, tmp_path / "queue", test_command="test -f feature.txt")
    train.submit("mr-feature", "polecat/feature")

    local_head = _crash_mid_merge(git_sandbox, "mr-feature", "polecat/feature", pushed=False)
    assert git_sandbox.remote_head("main") == base
    assert GitEngine(git_sandbox.clone).head("refs/heads/main") == local_head

    ((mr, result),) = await train.engineer.process_once()

    assert mr.id == "mr-feature"
    assert result.outcome is ProcessOutcome.MERGED
    assert git_sandbox.remote_head("main") == result.merge_commit
    assert _commits_since(git_sandbox, base) == 1
    assert git_sandbox.remote_file("main", "feature.txt") == "feature\n"
    assert train.store.list() == []


async def test_restart_after_push_before_dequeue_is_already_merged(
    git_sandbox: GitSandbox, tmp_path: Path
) -> None:
    base = git_sandbox.remote_head("main")
    git_sandbox.push_branch("polecat/feature", "feature.txt", "feature\n")
    train = build_train(git_sandbox, tmp_path / "queue", test_command="test -f feature.txt")
    train.submit("mr-feature", "polecat/feature", source_issue="gt-7")

    pushed_head = _crash_mid_merge(git_sandbox, "mr-feature", "polecat/feature", pushed=True)
    assert git_sandbox.remote_head("main") == pushed_head
    assert [mr.id for mr in train.store.list()] == ["mr-feature"]

    ((_, result),) = await train.engineer.process_once()

    assert result.outcome is ProcessOutcome.ALREADY_MERGED
    assert result.merge_commit == pushed_head
    assert git_sandbox.remote_head("main") == pushed_head
    assert _commits_since(git_sandbox, base) == 1
    assert train.store.list() == []
    assert train.tracker.closed == [("Merged in mr-feature", "gt-7")]


async def test_concurrent_candidates_serialize_target_ops_and_retain_the_loser(
    git_sandbox: GitSandbox, tmp_path: Path
) -> None:
    base = git_sandbox.remote_head("main")
    git_sandbox.push_branch("polecat/a", "a.txt", "a\n")
    git_sandbox.push_branch("polecat/b", "b.txt", "b\n")
    git = TargetOpRecordingGit(git_sandbox.clone)
    train = build_train(
        git_sandbox, tmp_path / "queue", test_command="true", max_concurrent=2, git=git
    )
    train.submit("mr-a", "polecat/a")
    train.submit("mr-b", "polecat/b")

    first = await train.engineer.process_once()

    outcomes = {mr.id: result.outcome for mr, result in first}
    assert sorted(outcomes.values()) == sorted([ProcessOutcome.MERGED, ProcessOutcome.PUSH_RACE])
    (loser,) = [
        mr_id for mr_id, outcome in outcomes.items() if outcome is ProcessOutcome.PUSH_RACE
    ]
    assert [mr.id for mr in train.store.list()] == [loser]
    assert _commits_since(git_sandbox, base) == 1
    assert git.max_overlap() == 1
    assert [name for name, edge in git.events if edge == "start"].count("push") == 1

    ((mr, result),) = await train.engineer.process_once()

    assert mr.id == loser
    assert result.outcome is ProcessOutcome.MERGED
    assert _commits_since(git_sandbox, base) == 2
    merges = git_sandbox.git(git_sandbox.remote, "rev-list", "--merges", "main").stdout
    assert merges.strip() == ""
    assert git_sandbox.remote_file("main", "a.txt") == "a\n"
    assert git_sandbox.remote_file("main", "b.txt") == "b\n"
    assert train.store.list() == []
    assert git.max_overlap() == 1
