"""
merge-train — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- JSON config files and deterministic dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from merge_train.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
)
from merge_train.config.schema import ConfigValidationError

_MINIMAL_TOML = """
[merge_queue]
test_command = "make test"
""".strip()


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "merge-train.toml",
        """
[merge_queue]
test_command = "make test"
max_concurrent = 2
retry_flaky_tests = 3
poll_interval = "10s"
""".strip(),
    )

    loaded = load_config(
        config_path,
        environ={
            "MERGE_TRAIN_MERGE_QUEUE_MAX_CONCURRENT": "4",
            "MERGE_TRAIN_MERGE_QUEUE_POLL_INTERVAL": "5s",
        },
        cli_overrides={"merge_queue.poll_interval": "1s"},
    )

    queue = loaded["merge_queue"]
    assert queue["retry_flaky_tests"] == 3
    assert queue["max_concurrent"] == 4
    assert queue["poll_interval"] == "1s"
    assert queue["target_branch"] == "main"
    assert loaded["tracker"]["command"] == "bd"


def test_default_file_is_found_in_base_dir(tmp_path: Path) -> None:
    _write_config(tmp_path / "merge-train.toml", _MINIMAL_TOML)

    loaded = load_config(base_dir=tmp_path, environ={})

    assert loaded["merge_queue"]["test_command"] == "make test"


def test_missing_default_file_falls_back_to_defaults(tmp_path: Path) -> None:
    loaded = load_config(
        base_dir=tmp_path,
        environ={"MERGE_TRAIN_MERGE_QUEUE_RUN_TESTS": "false"},
    )

    assert loaded["merge_queue"]["run_tests"] is False
    assert loaded["git"]["repo_path"] == tmp_path.resolve().as_posix()


def test_defaults_alone_load_without_a_test_command(tmp_path: Path) -> None:
    loaded = load_config(base_dir=tmp_path, environ={})

    assert loaded["merge_queue"]["test_command"] == ""
    assert loaded["merge_queue"]["run_tests"] is True


def test_explicit_missing_file_is_a_load_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_a_load_error(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "merge-train.toml", "[merge_queue\n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("MERGE_TRAIN_MERGE_QUEUE_ENABLED", "maybe", "must be a boolean"),
        ("MERGE_TRAIN_MERGE_QUEUE_MAX_CONCURRENT", "many", "must be an integer"),
    ],
)
def test_env_coercion_errors(tmp_path: Path, name: str, value: str, message: str) -> None:
    config_path = _write_config(tmp_path / "merge-train.toml", _MINIMAL_TOML)

    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={name: value})


def test_env_booleans_accept_common_spellings(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "merge-train.toml", _MINIMAL_TOML)

    loaded = load_config(
        config_path,
        environ={
            "MERGE_TRAIN_MERGE_QUEUE_DELETE_MERGED_BRANCHES": "off",
            "MERGE_TRAIN_OBSERVABILITY_LOG_TO_STDOUT": "No",
            "MERGE_TRAIN_MERGE_QUEUE_INTEGRATION_BRANCHES": "yes",
        },
    )

    assert loaded["merge_queue"]["delete_merged_branches"] is False
    assert loaded["merge_queue"]["integration_branches"] is True
    assert loaded["observability"]["log_to_stdout"] is False


def test_unrelated_env_vars_are_ignored(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "merge-train.toml", _MINIMAL_TOML)

    loaded = load_config(config_path, environ={"MERGE_TRAIN_UNKNOWN_KEY": "1", "PATH": "/bin"})

    assert loaded["merge_queue"]["max_concurrent"] == 1


def test_cli_overrides_accept_section_mappings(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "merge-train.toml", _MINIMAL_TOML)

    loaded = load_config(
        config_path,
        environ={},
        cli_overrides={"observability": {"log_level": "debug"}},
    )

    assert loaded["observability"]["log_level"] == "DEBUG"


def test_invalid_cli_override_key(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "merge-train.toml", _MINIMAL_TOML)

    with pytest.raises(ConfigLoadError, match="invalid CLI override key"):
        load_config(config_path, environ={}, cli_overrides={"..": 1})


def test_unknown_file_keys_fail_validation(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "merge-train.toml",
        _MINIMAL_TOML + "\nmerge_strategy = \"squash\"\n",
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    assert [issue.path for issue in excinfo.value.issues] == ["merge_queue.merge_strategy"]


def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_dir = tmp_path / "conf"
    config_path = _write_config(
        config_dir / "train.toml",
        _MINIMAL_TOML
        + """

[git]
repo_path = "../repo"

[paths]
queue_dir = "state/queue"
""",
    )

    loaded = load_config(config_path, environ={})

    assert loaded["git"]["repo_path"] == (tmp_path / "repo").resolve().as_posix()
    assert loaded["paths"]["queue_dir"] == (config_dir / "state/queue").resolve().as_posix()
    assert loaded["observability"]["log_dir"] == (config_dir / "logs").resolve().as_posix()


def test_relative_config_path_is_resolved_against_base_dir(tmp_path: Path) -> None:
    _write_config(tmp_path / "etc" / "train.toml", _MINIMAL_TOML)

    loaded = load_config("etc/train.toml", base_dir=tmp_path, environ={})

    assert loaded["paths"]["queue_dir"].endswith("/etc/.merge-queue")


def test_json_rig_config_reads_only_the_merge_queue_section(tmp_path: Path) -> None:
    rig = _write_config(
        tmp_path / "config.json",
        json.dumps(
            {
                "type": "rig",
                "name": "gastown",
                "git": {"remote": "upstream"},
                "merge_queue": {"test_command": "pytest -q", "max_concurrent": 2},
            }
        ),
    )

    loaded = load_config(rig, environ={})

    assert loaded["merge_queue"]["max_concurrent"] == 2
    assert loaded["merge_queue"]["test_command"] == "pytest -q"
    assert loaded["git"]["remote"] == "origin"
    assert "type" not in loaded


def test_json_config_without_merge_queue_uses_defaults(tmp_path: Path) -> None:
    bare = _write_config(tmp_path / "config.json", json.dumps({"type": "rig", "name": "gastown"}))

    loaded = load_config(bare, environ={})

    assert loaded["merge_queue"]["max_concurrent"] == 1


def test_json_config_merge_queue_must_be_an_object(tmp_path: Path) -> None:
    bad = _write_config(tmp_path / "config.json", json.dumps({"merge_queue": ["pytest"]}))

    with pytest.raises(ConfigLoadError, match="merge_queue"):
        load_config(bad, environ={})


def test_dump_effective_config_is_deterministic(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "merge-train.toml", _MINIMAL_TOML)

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert json.loads(first)["merge_queue"]["test_command"] == "make test"
