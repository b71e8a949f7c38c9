"""Dataclass domain models for merge requests and processing outcomes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import NoReturn

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class ProcessOutcome(StrEnum):
    """Observable result categories for one processing attempt."""

    MERGED = "merged"
    ALREADY_MERGED = "already_merged"
    CONFLICT = "conflict"
    BRANCH_FAILURE = "branch_failure"
    UNRESOLVABLE = "unresolvable"
    PUSH_RACE = "push_race"
    TRANSIENT = "transient"


_SUCCESS_OUTCOMES: frozenset[ProcessOutcome] = frozenset(
    {ProcessOutcome.MERGED, ProcessOutcome.ALREADY_MERGED}
)


@dataclass(frozen=True, slots=True)
class MergeRequest:
    """One queued request to merge a source branch into a target branch."""

    id: str
    title: str
    branch: str
    target: str
    worker: str
    source_issue: str = ""
    priority: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    merge_commit: str | None = None
    close_reason: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _expect_identifier(self.id, "MergeRequest.id"))
        object.__setattr__(self, "branch", _expect_identifier(self.branch, "MergeRequest.branch"))
        object.__setattr__(self, "target", _expect_identifier(self.target, "MergeRequest.target"))
        if not isinstance(self.title, str):
            _fail("MergeRequest.title", "must be a string")
        if not isinstance(self.worker, str):
            _fail("MergeRequest.worker", "must be a string")
        if not isinstance(self.source_issue, str):
            _fail("MergeRequest.source_issue", "must be a string")
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            _fail("MergeRequest.priority", "must be an integer")
        if not isinstance(self.created_at, datetime):
            _fail("MergeRequest.created_at", "must be a datetime")
        object.__setattr__(self, "created_at", _as_utc(self.created_at))

    @property
    def queue_key(self) -> tuple[int, datetime, str]:
        """Sort key: priority descending, then oldest first, then id."""
        return (-self.priority, self.created_at, self.id)

    def resolved(self, merge_commit: str, close_reason: str) -> MergeRequest:
        return replace(self, merge_commit=merge_commit, close_reason=close_reason)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "title": self.title,
            "branch": self.branch,
            "target": self.target,
            "worker": self.worker,
            "source_issue": self.source_issue,
            "priority": self.priority,
            "created_at": _iso8601z(self.created_at),
            "merge_commit": self.merge_commit,
            "close_reason": self.close_reason,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> MergeRequest:
        created_raw = payload.get("created_at")
        if not isinstance(created_raw, str):
            _fail("MergeRequest.created_at", "must be an ISO-8601 string")
        try:
            created_at = datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"MergeRequest.created_at: invalid timestamp {created_raw!r}") from exc

        priority = payload.get("priority", 0)
        if isinstance(priority, bool) or not isinstance(priority, int):
            _fail("MergeRequest.priority", "must be an integer")

        return cls(
            id=_expect_str(payload.get("id"), "MergeRequest.id"),
            title=_optional_str(payload.get("title"), "MergeRequest.title") or "",
            branch=_expect_str(payload.get("branch"), "MergeRequest.branch"),
            target=_expect_str(payload.get("target"), "MergeRequest.target"),
            worker=_optional_str(payload.get("worker"), "MergeRequest.worker") or "",
            source_issue=_optional_str(payload.get("source_issue"), "MergeRequest.source_issue")
            or "",
            priority=priority,
            created_at=created_at,
            merge_commit=_optional_str(payload.get("merge_commit"), "MergeRequest.merge_commit"),
            close_reason=_optional_str(payload.get("close_reason"), "MergeRequest.close_reason"),
        )


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Transient outcome of one processing attempt; never persisted."""

    outcome: ProcessOutcome
    merge_commit: str | None = None
    error: str | None = None
    conflicts: tuple[str, ...] = ()
    defect_id: str | None = None
    detail: str = ""

    @property
    def success(self) -> bool:
        return self.outcome in _SUCCESS_OUTCOMES

    @property
    def conflict(self) -> bool:
        return self.outcome is ProcessOutcome.CONFLICT

    @property
    def tests_failed(self) -> bool:
        return self.outcome is ProcessOutcome.BRANCH_FAILURE

    @property
    def retry_eligible(self) -> bool:
        return self.outcome in {ProcessOutcome.PUSH_RACE, ProcessOutcome.TRANSIENT}


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_identifier(value: object, path: str) -> str:
    text = _expect_str(value, path)
    if any(ch.isspace() for ch in text):
        _fail(path, "must not contain whitespace")
    return text


def _expect_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, "must be a string")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must be non-empty")
    return normalized


def _optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        _fail(path, "must be a string or null")
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _iso8601z(value: datetime) -> str:
    return _as_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "JSONScalar",
    "JSONValue",
    "MergeRequest",
    "ProcessOutcome",
    "ProcessResult",
]
