"""
merge-train — config schema and strict validation.

File: src/merge_train/config/schema.py

Purpose
- Define built-in defaults for every config section and validate a merged config
  strictly: unknown keys, wrong types, bad enum values, malformed durations and
  inconsistent combinations are all reported with dotted paths.

Functional requirements
- Durations are Go-style strings (``"30s"``, ``"1m30s"``, ``"250ms"``); bare numbers
  are rejected so the unit is always explicit.
- ``run_tests = true`` requires a non-empty ``test_command`` before the processor
  runs (:func:`assert_runnable_config`); queue maintenance commands do not need one.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final, Literal, TypedDict

from merge_train.constants import (
    DEFAULT_LOG_DIR,
    DEFAULT_QUEUE_DIR,
    DEFAULT_REMOTE,
    DEFAULT_TARGET_BRANCH,
)
from merge_train.domain.errors import ConfigurationError

_DURATION_PART = re.compile(r"(?P<value>\d+(?:\.\d+)?)(?P<unit>ns|us|µs|ms|s|m|h)")
_DURATION_FULL = re.compile(r"(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|s|m|h))+")
_DURATION_UNITS: Final[Mapping[str, float]] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("git", "repo_path"),
    ("paths", "queue_dir"),
    ("observability", "log_dir"),
)


class ConflictStrategy(StrEnum):
    """What to do with an MR whose rebase conflicts."""

    ASSIGN_BACK = "assign_back"
    AUTO_REBASE = "auto_rebase"


class MergeQueueSection(TypedDict):
    enabled: bool
    target_branch: str
    integration_branches: bool
    on_conflict: Literal["assign_back", "auto_rebase"]
    run_tests: bool
    test_command: str
    fix_command: str
    delete_merged_branches: bool
    retry_flaky_tests: int
    poll_interval: str
    max_concurrent: int
    test_timeout: str


class GitSection(TypedDict):
    repo_path: str
    remote: str


class PathsSection(TypedDict):
    queue_dir: str


class TrackerSection(TypedDict):
    command: str


class NotificationsSection(TypedDict):
    command: str
    sender: str


class ObservabilitySection(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool


class MergeTrainConfig(TypedDict):
    merge_queue: MergeQueueSection
    git: GitSection
    paths: PathsSection
    tracker: TrackerSection
    notifications: NotificationsSection
    observability: ObservabilitySection


DEFAULT_CONFIG: Final[MergeTrainConfig] = {
    "merge_queue": {
        "enabled": True,
        "target_branch": DEFAULT_TARGET_BRANCH,
        "integration_branches": True,
        "on_conflict": "assign_back",
        "run_tests": True,
        "test_command": "",
        "fix_command": "",
        "delete_merged_branches": True,
        "retry_flaky_tests": 1,
        "poll_interval": "30s",
        "max_concurrent": 1,
        "test_timeout": "30m",
    },
    "git": {
        "repo_path": ".",
        "remote": DEFAULT_REMOTE,
    },
    "paths": {
        "queue_dir": DEFAULT_QUEUE_DIR,
    },
    "tracker": {
        "command": "bd",
    },
    "notifications": {
        "command": "gt",
        "sender": "refinery",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": DEFAULT_LOG_DIR,
        "log_to_stdout": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ConfigurationError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


@dataclass(frozen=True, slots=True)
class MergeQueueConfig:
    """Typed view of the ``[merge_queue]`` section; durations in seconds."""

    enabled: bool = True
    target_branch: str = DEFAULT_TARGET_BRANCH
    integration_branches: bool = True
    on_conflict: ConflictStrategy = ConflictStrategy.ASSIGN_BACK
    run_tests: bool = True
    test_command: str = ""
    fix_command: str = ""
    delete_merged_branches: bool = True
    retry_flaky_tests: int = 1
    poll_interval: float = 30.0
    max_concurrent: int = 1
    test_timeout: float | None = 1800.0

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.retry_flaky_tests < 0:
            raise ValueError("retry_flaky_tests must be >= 0")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> MergeQueueConfig:
        """Build from a validated ``merge_queue`` section."""
        timeout = parse_duration(str(section["test_timeout"]))
        return cls(
            enabled=bool(section["enabled"]),
            target_branch=str(section["target_branch"]),
            integration_branches=bool(section["integration_branches"]),
            on_conflict=ConflictStrategy(str(section["on_conflict"])),
            run_tests=bool(section["run_tests"]),
            test_command=str(section["test_command"]),
            fix_command=str(section["fix_command"]),
            delete_merged_branches=bool(section["delete_merged_branches"]),
            retry_flaky_tests=int(section["retry_flaky_tests"]),
            poll_interval=parse_duration(str(section["poll_interval"])),
            max_concurrent=int(section["max_concurrent"]),
            test_timeout=timeout if timeout > 0 else None,
        )

    def target_for(self, mr_target: str) -> str:
        """Branch an MR merges into: its own target with integration branches on."""
        if self.integration_branches and mr_target:
            return mr_target
        return self.target_branch


def parse_duration(text: str) -> float:
    """Parse a Go-style duration string into seconds.

    >>> parse_duration("1m30s")
    90.0
    """
    if not isinstance(text, str):
        raise ValueError(f"duration must be a string, got {type(text).__name__}")
    value = text.strip()
    if value == "0":
        return 0.0
    if not value or not _DURATION_FULL.fullmatch(value):
        raise ValueError(f"invalid duration {text!r}; expected e.g. '30s', '1m30s', '250ms'")
    return sum(
        float(match.group("value")) * _DURATION_UNITS[match.group("unit")]
        for match in _DURATION_PART.finditer(value)
    )


def default_config() -> MergeTrainConfig:
    """Return a deep copy of built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base``."""
    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate a fully merged config and raise ``ConfigValidationError`` on failure."""
    issues = _IssueCollector()
    if not isinstance(config, Mapping):
        issues.add("<root>", f"expected object, got {type(config).__name__}")
        raise ConfigValidationError(issues.items())

    validators = {
        "merge_queue": _validate_merge_queue,
        "git": _validate_git,
        "paths": _validate_paths,
        "tracker": _validate_command_section,
        "notifications": _validate_notifications,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(config, set(validators), "", issues)

    out: dict[str, Any] = {}
    for name in sorted(validators):
        section = config.get(name)
        if not isinstance(section, Mapping):
            issues.add(name, "missing or not a table")
            continue
        out[name] = validators[name](section, name, issues)

    if issues.has_issues:
        raise ConfigValidationError(issues.items())
    return out


def assert_runnable_config(config: Mapping[str, Any]) -> None:
    """Raise ``ConfigValidationError`` unless a validated config can drive the processor."""
    section = config["merge_queue"]
    if section["run_tests"] and not section["test_command"]:
        raise ConfigValidationError(
            [
                ConfigValidationIssue(
                    path="merge_queue.test_command",
                    message=(
                        "must be set when run_tests is true "
                        "(set run_tests = false to waive the gate)"
                    ),
                )
            ]
        )


def _validate_merge_queue(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["merge_queue"]), path, issues)
    out: dict[str, Any] = {}

    for key in ("enabled", "integration_branches", "run_tests", "delete_merged_branches"):
        parsed_bool = _as_bool(payload.get(key), _join(path, key), issues)
        if parsed_bool is not None:
            out[key] = parsed_bool

    target = _as_branch(payload.get("target_branch"), _join(path, "target_branch"), issues)
    if target is not None:
        out["target_branch"] = target

    strategy = _as_enum(
        payload.get("on_conflict"),
        _join(path, "on_conflict"),
        issues,
        allowed_values=tuple(item.value for item in ConflictStrategy),
    )
    if strategy is not None:
        out["on_conflict"] = strategy

    for key in ("test_command", "fix_command"):
        command = payload.get(key)
        if not isinstance(command, str):
            issues.add(_join(path, key), f"expected string, got {type(command).__name__}")
        else:
            out[key] = command.strip()

    retries = _as_int(
        payload.get("retry_flaky_tests"), _join(path, "retry_flaky_tests"), issues, minimum=0
    )
    if retries is not None:
        out["retry_flaky_tests"] = retries

    concurrency = _as_int(
        payload.get("max_concurrent"), _join(path, "max_concurrent"), issues, minimum=1
    )
    if concurrency is not None:
        out["max_concurrent"] = concurrency

    for key in ("poll_interval", "test_timeout"):
        parsed_duration = _as_duration(payload.get(key), _join(path, key), issues)
        if parsed_duration is not None:
            out[key] = parsed_duration

    if "poll_interval" in out and parse_duration(out["poll_interval"]) <= 0:
        issues.add(_join(path, "poll_interval"), "must be > 0")

    return out


def _validate_git(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"repo_path", "remote"}, path, issues)
    out: dict[str, Any] = {}
    repo_path = _as_path_text(payload.get("repo_path"), _join(path, "repo_path"), issues)
    if repo_path is not None:
        out["repo_path"] = repo_path
    remote = _as_branch(payload.get("remote"), _join(path, "remote"), issues)
    if remote is not None:
        out["remote"] = remote
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"queue_dir"}, path, issues)
    out: dict[str, Any] = {}
    queue_dir = _as_path_text(payload.get("queue_dir"), _join(path, "queue_dir"), issues)
    if queue_dir is not None:
        out["queue_dir"] = queue_dir
    return out


def _validate_command_section(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"command"}, path, issues)
    out: dict[str, Any] = {}
    command = _as_str(payload.get("command"), _join(path, "command"), issues)
    if command is not None:
        out["command"] = command
    return out


def _validate_notifications(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"command", "sender"}, path, issues)
    out: dict[str, Any] = {}
    for key in ("command", "sender"):
        parsed = _as_str(payload.get(key), _join(path, key), issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"log_level", "log_dir", "log_to_stdout"}, path, issues)
    out: dict[str, Any] = {}

    raw_level = payload.get("log_level")
    level = _as_enum(
        raw_level.upper() if isinstance(raw_level, str) else raw_level,
        _join(path, "log_level"),
        issues,
        allowed_values=_LOG_LEVELS,
    )
    if level is not None:
        out["log_level"] = level

    log_dir = _as_path_text(payload.get("log_dir"), _join(path, "log_dir"), issues)
    if log_dir is not None:
        out["log_dir"] = log_dir

    to_stdout = _as_bool(payload.get("log_to_stdout"), _join(path, "log_to_stdout"), issues)
    if to_stdout is not None:
        out["log_to_stdout"] = to_stdout
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_branch(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if any(ch.isspace() for ch in parsed) or parsed.startswith("-") or ".." in parsed:
        issues.add(path, f"invalid ref name {parsed!r}")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _as_duration(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(
            path,
            f"expected duration string with a unit (e.g. '30s'), got {type(value).__name__}",
        )
        return None
    try:
        parse_duration(value)
    except ValueError as exc:
        issues.add(path, str(exc))
        return None
    return value.strip()


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConflictStrategy",
    "DEFAULT_CONFIG",
    "MergeQueueConfig",
    "MergeTrainConfig",
    "PATH_FIELDS",
    "assert_runnable_config",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "parse_duration",
]
