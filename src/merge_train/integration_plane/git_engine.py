"""Git CLI wrapper implementing the merge-train VCS contract."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from merge_train.constants import CANDIDATE_BRANCH_PREFIX, DEFAULT_REMOTE
from merge_train.domain.errors import MergeTrainError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_BRANCH_NAME_RE = re.compile(r"^[A-Za-z0-9._/-]+$")
_FORBIDDEN_BRANCH_CHARS = (" ", "\t", "\r", "\n", ":", "~", "^", "?", "*", "[", "\\")
_PUSH_REJECTED_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "failed to push some refs",
)


class GitEngineError(MergeTrainError):
    """Base error for git engine failures."""


class SanitizationError(GitEngineError):
    """Raised when a branch name is unsafe to pass to git."""


class NotFastForwardError(GitEngineError):
    """Raised when the target tip is not an ancestor of the merge source."""


class PushRejectedError(GitEngineError):
    """Raised when the remote refuses a push because the target moved."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for git invocations."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class RebaseResult:
    """Outcome of rebasing a candidate branch onto a target ref."""

    branch: str
    onto: str
    old_head: str
    new_head: str
    conflict: bool = False
    conflicts: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Result for an ff-only merge."""

    source: str
    target: str
    target_head: str


class GitEngine:
    """Wrapper around the git CLI for one local clone with a remote.

    Every operation is safe to repeat after a crash: candidate branches are
    force-reset, worktrees are pruned before reuse, branch deletion and rebase
    aborts tolerate absent state, and ``sync_target`` discards local target
    commits that never reached the remote.
    """

    def __init__(
        self,
        repo_path: Path | str,
        *,
        remote: str = DEFAULT_REMOTE,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.remote = remote
        self._env_overrides = dict(env_overrides or {})

    # ------------------------------------------------------------------
    # Remote state
    # ------------------------------------------------------------------

    def fetch(self, *branches: str) -> None:
        """Fetch remote-tracking refs for ``branches`` (all branches when empty)."""
        refspecs = [
            f"+refs/heads/{self._sanitize_branch(branch)}:refs/remotes/{self.remote}/{branch}"
            for branch in branches
        ]
        if not refspecs:
            self._run_git(["fetch", "--prune", self.remote])
            return
        for refspec in refspecs:
            # A missing remote branch is tolerated; callers fall back to local refs.
            result = self._run_git(["fetch", self.remote, refspec], check=False)
            if result.returncode != 0 and "couldn't find remote ref" not in result.stderr:
                raise GitCommandError(
                    command=result.command,
                    returncode=result.returncode,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )

    def remote_ref(self, branch: str) -> str:
        return f"{self.remote}/{self._sanitize_branch(branch)}"

    def remote_head(self, branch: str) -> str:
        return self._rev_parse(f"refs/remotes/{self.remote_ref(branch)}")

    def has_remote_branch(self, branch: str) -> bool:
        ref = f"refs/remotes/{self.remote_ref(branch)}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    # ------------------------------------------------------------------
    # Candidate preparation
    # ------------------------------------------------------------------

    def candidate_branch_name(self, mr_id: str) -> str:
        return self._sanitize_branch(f"{CANDIDATE_BRANCH_PREFIX}/{mr_id}")

    def prepare_candidate(self, mr_id: str, source_branch: str) -> str:
        """Create or force-reset the disposable candidate branch for ``mr_id``."""
        candidate = self.candidate_branch_name(mr_id)
        source = self._sanitize_branch(source_branch)
        if self.has_remote_branch(source):
            start_point = f"refs/remotes/{self.remote_ref(source)}"
        elif self._branch_exists(source):
            start_point = f"refs/heads/{source}"
        else:
            raise GitEngineError(f"Source branch not found locally or on {self.remote}: {source}")

        self._release_worktree(candidate)
        self._run_git(["branch", "--force", "--no-track", candidate, start_point])
        return candidate

    def add_worktree(self, ref: str, *, detach: bool = False) -> Path:
        """Check ``ref`` out into a fresh temporary worktree and return its path.

        With ``detach`` the worktree sits on the commit ``ref`` resolves to, which
        lets a baseline run on the target tip without touching the target branch.
        """
        if detach:
            commit = self._rev_parse(ref)
            args = ["worktree", "add", "--force", "--detach"]
        else:
            branch = self._sanitize_branch(ref)
            self._require_branch(branch)
            self._release_worktree(branch)
            commit = branch
            args = ["worktree", "add", "--force"]

        temp_path = Path(tempfile.mkdtemp(prefix="merge-train-"))
        try:
            self._run_git([*args, str(temp_path), commit])
        except GitEngineError:
            shutil.rmtree(temp_path, ignore_errors=True)
            raise
        return temp_path

    def remove_worktree(self, worktree: Path | str) -> None:
        """Remove a temporary worktree; tolerates one that is already gone."""
        path = Path(worktree)
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        self._run_git(["worktree", "prune"], check=False)
        shutil.rmtree(path, ignore_errors=True)

    def worktree_head(self, worktree: Path | str) -> str:
        return self._rev_parse("HEAD", cwd=Path(worktree))

    def reset_worktree(self, worktree: Path | str, ref: str) -> None:
        """Hard-reset the branch checked out in ``worktree`` to ``ref``."""
        self._run_git(["reset", "--hard", ref], cwd=Path(worktree))

    def rebase(self, worktree: Path | str, onto: str) -> RebaseResult:
        """Rebase the branch checked out in ``worktree`` onto ``onto``.

        A conflicting rebase is aborted and reported, never raised, so the
        worktree is always left clean.
        """
        cwd = Path(worktree)
        branch = self._current_branch(cwd)
        old_head = self._rev_parse("HEAD", cwd=cwd)

        result = self._run_git(["rebase", onto], cwd=cwd, check=False)
        if result.returncode == 0:
            return RebaseResult(
                branch=branch,
                onto=onto,
                old_head=old_head,
                new_head=self._rev_parse("HEAD", cwd=cwd),
            )

        conflict_output = self._run_git(
            ["diff", "--name-only", "--diff-filter=U"], cwd=cwd, check=False
        ).stdout
        conflicts = tuple(line.strip() for line in conflict_output.splitlines() if line.strip())
        self.abort_rebase(cwd)

        if not conflicts and not self._looks_like_conflict(result):
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return RebaseResult(
            branch=branch,
            onto=onto,
            old_head=old_head,
            new_head=self._rev_parse("HEAD", cwd=cwd),
            conflict=True,
            conflicts=conflicts,
        )

    def abort_rebase(self, worktree: Path | str) -> None:
        """Abort an in-progress rebase; no-op when none is running."""
        cwd = Path(worktree)
        self._run_git(["rebase", "--abort"], cwd=cwd, check=False)
        self._run_git(["reset", "--hard", "HEAD"], cwd=cwd, check=False)

    # ------------------------------------------------------------------
    # Target branch mutation
    # ------------------------------------------------------------------

    def sync_target(self, target_branch: str) -> str:
        """Point the local target branch at the remote tip and return it."""
        target = self._sanitize_branch(target_branch)
        if not self.has_remote_branch(target):
            self._require_branch(target)
            return self._rev_parse(f"refs/heads/{target}")

        remote_tip = self.remote_head(target)
        if not self._branch_exists(target):
            self._run_git(["branch", "--no-track", target, remote_tip])
            return remote_tip

        if self._rev_parse(f"refs/heads/{target}") == remote_tip:
            return remote_tip

        existing = self._existing_worktree_for_branch(target)
        if existing is not None:
            self._run_git(["reset", "--hard", remote_tip], cwd=existing)
        else:
            self._run_git(["update-ref", f"refs/heads/{target}", remote_tip])
        return remote_tip

    def merge_ff_only(self, source_branch: str, target_branch: str) -> MergeResult:
        """Fast-forward ``target_branch`` to ``source_branch``; never creates a merge commit."""
        source = self._sanitize_branch(source_branch)
        target = self._sanitize_branch(target_branch)
        self._require_branch(source)
        self._require_branch(target)

        target_head = self._rev_parse(f"refs/heads/{target}")
        source_head = self._rev_parse(f"refs/heads/{source}")
        if not self.is_ancestor(target_head, source_head):
            raise NotFastForwardError(
                f"{target} ({target_head[:12]}) is not an ancestor of {source} ({source_head[:12]})"
            )

        existing = self._existing_worktree_for_branch(target)
        if existing is not None:
            self._run_git(["merge", "--ff-only", source_head], cwd=existing)
        else:
            self._run_git(["update-ref", f"refs/heads/{target}", source_head, target_head])

        return MergeResult(
            source=source,
            target=target,
            target_head=self._rev_parse(f"refs/heads/{target}"),
        )

    def push(self, target_branch: str) -> None:
        """Non-force push of the target; a rejected fast-forward is a push race."""
        target = self._sanitize_branch(target_branch)
        result = self._run_git(
            ["push", "--porcelain", self.remote, f"refs/heads/{target}:refs/heads/{target}"],
            check=False,
        )
        if result.returncode == 0:
            return
        combined = f"{result.stdout}\n{result.stderr}"
        if any(marker in combined for marker in _PUSH_REJECTED_MARKERS):
            raise PushRejectedError(f"push of {target} to {self.remote} was rejected: target moved")
        raise GitCommandError(
            command=result.command,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def delete_branch(self, branch: str, *, force: bool = True) -> bool:
        """Delete a local branch; returns False when it did not exist.

        Only merge-train candidate branches have their worktree released first.
        Any other branch still checked out in a worktree is left alone and git
        refuses the delete.
        """
        name = self._sanitize_branch(branch)
        if not self._branch_exists(name):
            return False
        if name.startswith(f"{CANDIDATE_BRANCH_PREFIX}/"):
            self._release_worktree(name)
        self._run_git(["branch", "-D" if force else "-d", name])
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def head(self, ref: str) -> str:
        return self._rev_parse(ref)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._run_git(["merge-base", "--is-ancestor", ancestor, descendant], check=False)
        if result.returncode in {0, 1}:
            return result.returncode == 0
        raise GitCommandError(
            command=result.command,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def commits_between(self, base: str, head: str) -> int:
        output = self._run_git(["rev-list", "--count", f"{base}..{head}"]).stdout.strip()
        return int(output or "0")

    def branch_exists(self, branch: str) -> bool:
        return self._branch_exists(self._sanitize_branch(branch))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _looks_like_conflict(self, result: CommandResult) -> bool:
        text = f"{result.stdout}\n{result.stderr}"
        return "CONFLICT" in text or "could not apply" in text

    def _require_branch(self, branch: str) -> None:
        if not self._branch_exists(branch):
            raise GitEngineError(f"Branch does not exist: {branch}")

    def _branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def _rev_parse(self, ref: str, *, cwd: Path | None = None) -> str:
        return self._run_git(["rev-parse", "--verify", f"{ref}^{{commit}}"], cwd=cwd).stdout.strip()

    def _current_branch(self, worktree: Path) -> str:
        branch = self._run_git(["branch", "--show-current"], cwd=worktree).stdout.strip()
        if not branch:
            raise GitEngineError("Detached HEAD is not supported for this operation.")
        return branch

    def _sanitize_branch(self, value: str) -> str:
        if not isinstance(value, str) or value == "":
            raise SanitizationError("branch name cannot be empty.")
        if any(ch in value for ch in _FORBIDDEN_BRANCH_CHARS):
            raise SanitizationError(f"branch name {value!r} contains forbidden characters.")
        if ".." in value or value.startswith("-") or value.endswith("/") or value.endswith(".lock"):
            raise SanitizationError(f"branch name {value!r} is not a valid ref name.")
        if not _BRANCH_NAME_RE.fullmatch(value):
            raise SanitizationError(f"branch name {value!r} contains unsupported characters.")
        return value

    def _release_worktree(self, branch: str) -> None:
        self._run_git(["worktree", "prune"], check=False)
        existing = self._existing_worktree_for_branch(branch)
        if existing is not None and existing != self.repo_path:
            self._run_git(["worktree", "remove", "--force", str(existing)], check=False)
            self._run_git(["worktree", "prune"], check=False)

    def _existing_worktree_for_branch(self, branch: str) -> Path | None:
        output = self._run_git(["worktree", "list", "--porcelain"], check=False).stdout
        branch_ref = f"refs/heads/{branch}"

        current_worktree: Path | None = None
        for line in [*output.splitlines(), ""]:
            if not line:
                current_worktree = None
                continue
            key, _, value = line.partition(" ")
            value = value.strip()
            if key == "worktree":
                current_worktree = Path(value).resolve(strict=False)
            elif key == "branch" and value == branch_ref and current_worktree is not None:
                return current_worktree
        return None

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        completed = subprocess.run(
            command,
            cwd=run_cwd,
            env=env,
            text=True,
            capture_output=True,
            check=False,
        )

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "MergeResult",
    "NotFastForwardError",
    "PushRejectedError",
    "RebaseResult",
    "SanitizationError",
]
