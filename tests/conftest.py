"""
merge-train — shared pytest fixtures.

File: tests/conftest.py

Purpose
- Isolate every test from the developer's git and merge-train configuration.
- Provide a throwaway "bare remote + worker clone + processor clone" git setup.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

_ISOLATED_ENV_PREFIX = "MERGE_TRAIN_"


def run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = (
            f"git command failed: git {' '.join(args)}\n"
            f"stdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        )
        raise AssertionError(msg)
    return completed


class GitSandbox:
    """A bare ``origin``, a worker clone that authors branches, and the processor clone."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.remote = root / "origin.git"
        self.worker = root / "worker"
        self.clone = root / "clone"

    def setup(self) -> GitSandbox:
        run_git(self.root, "init", "--bare", "--quiet", str(self.remote))
        run_git(self.remote, "symbolic-ref", "HEAD", "refs/heads/main")

        run_git(self.root, "clone", "--quiet", str(self.remote), str(self.worker))
        run_git(self.worker, "symbolic-ref", "HEAD", "refs/heads/main")
        self.commit("README.md", "merge-train sandbox\n", "initial commit")
        run_git(self.worker, "push", "--quiet", "origin", "main")

        run_git(self.root, "clone", "--quiet", str(self.remote), str(self.clone))
        return self

    def commit(self, rel_path: str, content: str, message: str) -> str:
        path = self.worker / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        run_git(self.worker, "add", "--all")
        run_git(self.worker, "commit", "--quiet", "-m", message)
        return self.rev_parse(self.worker, "HEAD")

    def checkout(self, branch: str, *, create: bool = False, start: str = "main") -> None:
        if create:
            run_git(self.worker, "checkout", "--quiet", "-b", branch, start)
        else:
            run_git(self.worker, "checkout", "--quiet", branch)

    def push(self, branch: str) -> None:
        run_git(self.worker, "push", "--quiet", "--force", "origin", branch)

    def push_branch(self, branch: str, rel_path: str, content: str, *, base: str = "main") -> str:
        """Create ``branch`` off ``base`` with one commit and push it."""
        self.checkout(branch, create=True, start=base)
        head = self.commit(rel_path, content, f"{branch}: update {rel_path}")
        self.push(branch)
        self.checkout("main")
        return head

    def advance_main(self, rel_path: str, content: str) -> str:
        self.checkout("main")
        run_git(self.worker, "pull", "--quiet", "--ff-only", "origin", "main")
        head = self.commit(rel_path, content, f"main: update {rel_path}")
        self.push("main")
        return head

    def remote_head(self, branch: str) -> str:
        return self.rev_parse(self.remote, f"refs/heads/{branch}")

    def remote_file(self, branch: str, rel_path: str) -> str | None:
        completed = run_git(self.remote, "show", f"{branch}:{rel_path}", check=False)
        if completed.returncode != 0:
            return None
        return completed.stdout

    def git(self, cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return run_git(cwd, *args, check=check)

    def rev_parse(self, cwd: Path, ref: str) -> str:
        return run_git(cwd, "rev-parse", "--verify", f"{ref}^{{commit}}").stdout.strip()


@pytest.fixture(autouse=True)
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir(exist_ok=True)
    xdg.mkdir(exist_ok=True)

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Merge Train Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "merge-train@example.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Merge Train Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "merge-train@example.invalid")
    for name in list(os.environ):
        if name.startswith(_ISOLATED_ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def git_sandbox(tmp_path: Path) -> GitSandbox:
    root = tmp_path / "sandbox"
    root.mkdir()
    return GitSandbox(root).setup()
