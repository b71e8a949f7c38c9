"""Issue tracker collaborator: the slice of the beads (``bd``) CLI the processor needs."""

from __future__ import annotations

import json
import re
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from merge_train.collaborators._subprocess import CliResult, run_cli
from merge_train.domain.errors import MergeTrainError

if TYPE_CHECKING:
    from collections.abc import Mapping

_CREATED_ID_RE = re.compile(r"Created issue:\s*(?P<id>\S+)")


class TrackerError(MergeTrainError):
    """Raised when an issue tracker call fails."""


@runtime_checkable
class IssueTracker(Protocol):
    """Issue tracker operations used by the gate and outcome handlers."""

    def update(self, issue_id: str, fields: Mapping[str, str]) -> None: ...

    def close_with_reason(self, reason: str, issue_id: str) -> None: ...

    def create(
        self,
        issue_type: str,
        priority: int,
        title: str,
        description: str = "",
    ) -> str: ...


class BeadsTracker(IssueTracker):
    """``IssueTracker`` backed by the ``bd`` command line."""

    def __init__(
        self,
        *,
        command: str = "bd",
        cwd: Path | str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._command = command
        self._cwd = Path(cwd) if cwd is not None else None
        self._timeout_seconds = timeout_seconds

    def update(self, issue_id: str, fields: Mapping[str, str]) -> None:
        if not fields:
            return
        flags = [f"--{key.replace('_', '-')}={value}" for key, value in sorted(fields.items())]
        self._run(["update", issue_id, *flags])

    def close_with_reason(self, reason: str, issue_id: str) -> None:
        self._run(["close", issue_id, f"--reason={reason}"])

    def create(
        self,
        issue_type: str,
        priority: int,
        title: str,
        description: str = "",
    ) -> str:
        args = ["create", f"--type={issue_type}", f"--priority={priority}", f"--title={title}"]
        if description:
            args.append(f"--description={description}")
        result = self._run([*args, "--json"])
        issue_id = _parse_created_id(result.stdout)
        if issue_id is None:
            raise TrackerError(f"could not read created issue id from {self._command} output")
        return issue_id

    def _run(self, args: list[str]) -> CliResult:
        try:
            result = run_cli(
                [self._command, *args],
                cwd=self._cwd,
                timeout_seconds=self._timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise TrackerError(f"{self._command} {args[0]} failed: {exc}") from exc
        if not result.ok:
            raise TrackerError(result.describe())
        return result


def _parse_created_id(stdout: str) -> str | None:
    text = stdout.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        match = _CREATED_ID_RE.search(text)
        return match.group("id") if match else None
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, dict):
        issue_id = payload.get("id")
        if isinstance(issue_id, str) and issue_id:
            return issue_id
    return None


__all__ = ["BeadsTracker", "IssueTracker", "TrackerError"]
