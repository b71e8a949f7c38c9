"""Blocking subprocess helper shared by the CLI-backed collaborators."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True, slots=True)
class CliResult:
    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        detail = self.stderr.strip() or self.stdout.strip() or "no output"
        return f"{' '.join(self.command)} exited {self.returncode}: {detail}"


def run_cli(
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    env_overrides: Mapping[str, str] | None = None,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
) -> CliResult:
    """Run ``command`` and capture its output.

    Raises ``OSError`` when the executable is missing and
    ``subprocess.TimeoutExpired`` when it hangs; callers wrap both.
    """
    env = os.environ.copy()
    env.update(env_overrides or {})
    completed = subprocess.run(
        list(command),
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
        timeout=timeout_seconds,
    )
    return CliResult(
        command=tuple(command),
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


__all__ = ["CliResult", "run_cli"]
