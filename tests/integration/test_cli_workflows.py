"""
merge-train — CLI workflow tests against a real git sandbox.

File: tests/integration/test_cli_workflows.py

Purpose
- Drive ``submit``/``queue``/``remove``/``config``/``run --once`` through ``run_cli``
  and the process entrypoint, asserting on exit codes, stdout and the remote.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from merge_train.main import cli_entrypoint
from merge_train.ui.cli import run_cli

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import GitSandbox

_CONFIG = """
[merge_queue]
test_command = "test -f feature.txt"
poll_interval = "1s"

[git]
repo_path = "clone"

[paths]
queue_dir = "queue"

[observability]
log_dir = "logs"
log_to_stdout = false
"""


@pytest.fixture
def workspace(git_sandbox: GitSandbox) -> GitSandbox:
    (git_sandbox.root / "merge-train.toml").write_text(_CONFIG, encoding="utf-8")
    return git_sandbox


def _cli(sandbox: GitSandbox, *args: str) -> int:
    command, *rest = args
    return run_cli([command, "--repo-root", str(sandbox.root), *rest])


def _stdout_json(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    return json.loads(capsys.readouterr().out)


@pytest.mark.integration
def test_submit_queue_remove_round_trip(
    workspace: GitSandbox, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _cli(workspace, "submit", "--branch", "polecat/a", "--id", "mr-a") == 0
    assert (
        _cli(workspace, "submit", "--branch", "polecat/b", "--id", "mr-b", "--priority", "2")
        == 0
    )
    out = capsys.readouterr().out
    assert "queued mr-a (polecat/a -> main)" in out

    assert _cli(workspace, "queue", "--json") == 0
    payload = _stdout_json(capsys)
    assert payload["count"] == 2
    records = payload["merge_requests"]
    assert isinstance(records, list)
    assert [item["id"] for item in records] == ["mr-b", "mr-a"]
    assert records[1]["title"] == "polecat/a"
    assert (workspace.root / "queue" / "mr-a.json").exists()

    assert _cli(workspace, "remove", "mr-a") == 0
    assert _cli(workspace, "remove", "mr-b") == 0
    assert "removed mr-b" in capsys.readouterr().out

    assert _cli(workspace, "queue") == 0
    assert "Merge queue is empty." in capsys.readouterr().out


@pytest.mark.integration
def test_duplicate_submit_and_missing_remove(
    workspace: GitSandbox, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _cli(workspace, "submit", "--branch", "polecat/a", "--id", "mr-a") == 0
    assert _cli(workspace, "submit", "--branch", "polecat/a", "--id", "mr-a") == 2
    assert _cli(workspace, "remove", "mr-zzz") == 1

    err = capsys.readouterr().err
    assert "already queued" in err
    assert "not queued: mr-zzz" in err


@pytest.mark.integration
def test_config_command_prints_normalized_paths(
    workspace: GitSandbox, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _cli(workspace, "config") == 0

    payload = _stdout_json(capsys)
    git = payload["git"]
    assert isinstance(git, dict)
    assert git["repo_path"] == workspace.clone.resolve().as_posix()
    merge_queue = payload["merge_queue"]
    assert isinstance(merge_queue, dict)
    assert merge_queue["test_command"] == "test -f feature.txt"


@pytest.mark.integration
def test_invalid_config_exits_with_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    (tmp_path / "merge-train.toml").write_text(
        '[merge_queue]\ntest_command = "true"\nparallelism = 4\n', encoding="utf-8"
    )

    assert run_cli(["queue", "--repo-root", str(tmp_path)]) == 2
    assert "merge_queue.parallelism: unknown field" in capsys.readouterr().err


@pytest.mark.integration
def test_queue_maintenance_works_without_a_config_file(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    root = str(tmp_path)

    assert run_cli(["submit", "--repo-root", root, "--branch", "polecat/a", "--id", "mr-a"]) == 0
    assert "queued mr-a (polecat/a -> main)" in capsys.readouterr().out

    assert run_cli(["queue", "--repo-root", root, "--json"]) == 0
    assert _stdout_json(capsys)["count"] == 1
    assert (tmp_path / ".merge-queue" / "mr-a.json").exists()

    assert run_cli(["remove", "--repo-root", root, "mr-a"]) == 0
    assert "removed mr-a" in capsys.readouterr().out


@pytest.mark.integration
def test_default_config_without_test_command_is_rejected(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_cli(["run", "--once", "--repo-root", str(tmp_path)]) == 2
    assert "merge_queue.test_command" in capsys.readouterr().err


@pytest.mark.integration
def test_run_once_merges_a_passing_branch(
    workspace: GitSandbox, capsys: pytest.CaptureFixture[str]
) -> None:
    branch_head = workspace.push_branch("polecat/feature", "feature.txt", "feature\n")
    assert _cli(workspace, "submit", "--branch", "polecat/feature", "--id", "mr-feature") == 0
    capsys.readouterr()

    exit_code = _cli(workspace, "run", "--once", "--json", "--run-id", "run-cli-merge")

    assert exit_code == 0
    payload = _stdout_json(capsys)
    assert payload["run_id"] == "run-cli-merge"
    (result,) = payload["results"]
    assert result["id"] == "mr-feature"
    assert result["outcome"] == "merged"
    assert workspace.remote_head("main") == result["merge_commit"]
    assert workspace.remote_file("main", "feature.txt") == "feature\n"
    assert workspace.remote_head("polecat/feature") == branch_head
    assert not (workspace.root / "queue" / "mr-feature.json").exists()

    log_path = workspace.root / "logs" / "run-cli-merge" / "merge-train.jsonl"
    events = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    merged = [event for event in events if event["message"] == "merge_train_mr_merged"]
    assert merged
    assert merged[0]["run_id"] == "run-cli-merge"
    assert merged[0]["mr_id"] == "mr-feature"


@pytest.mark.integration
def test_fix_command_repairs_a_preexisting_failure(
    git_sandbox: GitSandbox, capsys: pytest.CaptureFixture[str]
) -> None:
    config = _CONFIG.replace(
        'test_command = "test -f feature.txt"',
        'test_command = "test -f ok.txt"\n'
        "fix_command = \"echo ok > ok.txt && git add ok.txt && git commit -qm 'fix: add ok.txt'\"",
    )
    (git_sandbox.root / "merge-train.toml").write_text(config, encoding="utf-8")
    git_sandbox.push_branch("polecat/feature", "feature.txt", "feature\n")
    assert _cli(git_sandbox, "submit", "--branch", "polecat/feature", "--id", "mr-feature") == 0
    capsys.readouterr()

    assert _cli(git_sandbox, "run", "--once", "--json") == 0

    (result,) = _stdout_json(capsys)["results"]
    assert result["outcome"] == "merged"
    assert git_sandbox.remote_file("main", "feature.txt") == "feature\n"
    assert git_sandbox.remote_file("main", "ok.txt") == "ok\n"
    assert git_sandbox.remote_head("main") == result["merge_commit"]


@pytest.mark.integration
def test_run_once_rejects_a_conflicting_branch(
    workspace: GitSandbox, capsys: pytest.CaptureFixture[str]
) -> None:
    workspace.push_branch("polecat/readme", "README.md", "branch version\n")
    tip = workspace.advance_main("README.md", "main version\n")
    assert _cli(workspace, "submit", "--branch", "polecat/readme", "--id", "mr-readme") == 0
    capsys.readouterr()

    exit_code = _cli(workspace, "run", "--once", "--run-id", "run-cli-conflict")

    assert exit_code == 1
    out = capsys.readouterr().out
    assert "mr-readme" in out
    assert "conflict" in out
    assert workspace.remote_head("main") == tip
    assert not (workspace.root / "queue" / "mr-readme.json").exists()


@pytest.mark.integration
def test_entrypoint_maps_bad_repo_root_to_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    missing = tmp_path / "missing"

    assert cli_entrypoint(["queue", "--repo-root", str(missing)]) == 2
    assert "repo root is not a directory" in capsys.readouterr().err


def test_entrypoint_normalizes_argparse_exit(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["bogus-command"]) == 2
    assert "invalid choice" in capsys.readouterr().err
