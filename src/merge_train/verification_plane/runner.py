"""Async command execution for the verification gate's test and fix commands."""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

if TYPE_CHECKING:
    from merge_train.verification_plane.baseline import FailureSignature

_DEFAULT_SHELL = "/bin/sh"
_DEFAULT_MAX_OUTPUT_CHARS = 200_000


@dataclass(slots=True)
class CommandSpec:
    """Portable command invocation contract."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    inherit_env: bool = True

    def __post_init__(self) -> None:
        self.argv = tuple(self.argv)
        if not self.argv or not all(isinstance(item, str) and item for item in self.argv):
            raise ValueError("CommandSpec.argv: must be a non-empty sequence of strings")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds: must be > 0")

    def build_env(self) -> dict[str, str]:
        if not self.inherit_env:
            return dict(self.env)
        env = dict(os.environ)
        env.update(self.env)
        return env


@dataclass(slots=True)
class CommandResult:
    """Deterministic command execution outcome."""

    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if self.timed_out and self.exit_code is not None:
            raise ValueError("CommandResult.exit_code: must be None when timed_out is true")

    @property
    def passed(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0

    @property
    def unavailable(self) -> bool:
        """True when the command could not give a verdict at all."""
        return self.timed_out or self.error is not None or self.exit_code is None

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


@runtime_checkable
class CommandExecutor(Protocol):
    """Pluggable async command execution interface."""

    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor(CommandExecutor):
    """Async local subprocess executor with deterministic capture/timeout behavior."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = None,
        max_output_chars: int | None = _DEFAULT_MAX_OUTPUT_CHARS,
    ) -> None:
        self._default_timeout_seconds = default_timeout_seconds
        self._max_output_chars = max_output_chars

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        timeout = (
            spec.timeout_seconds
            if spec.timeout_seconds is not None
            else self._default_timeout_seconds
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=str(exc),
            )

        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(
                process=process,
                timeout_seconds=timeout,
            )
            timed_out = False
            error_text: str | None = None
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes = exc.stdout
            stderr_bytes = exc.stderr
            timed_out = True
            error_text = f"command timed out after {timeout or 0.0:.3f}s"
            exit_code = None

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=_truncate_text(_normalize_output_text(stdout_bytes), self._max_output_chars),
            stderr=_truncate_text(_normalize_output_text(stderr_bytes), self._max_output_chars),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
            error=error_text,
        )


class VerificationRunner:
    """Runs the configured test command inside a worktree.

    The command is a shell string (``go test ./...``, ``make check && npm test``)
    handed to ``/bin/sh -c`` so operators can chain steps.
    """

    def __init__(
        self,
        command: str,
        *,
        timeout_seconds: float | None = None,
        executor: CommandExecutor | None = None,
        env: Mapping[str, str] | None = None,
        shell: str = _DEFAULT_SHELL,
    ) -> None:
        if not command.strip():
            raise ValueError("test command must be non-empty")
        self._command = command
        self._timeout_seconds = timeout_seconds
        self._executor = executor if executor is not None else LocalSubprocessExecutor()
        self._env = dict(env or {})
        self._shell = shell

    @property
    def command(self) -> str:
        return self._command

    async def run(self, worktree: Path | str) -> CommandResult:
        spec = CommandSpec(
            argv=(self._shell, "-c", self._command),
            cwd=str(worktree),
            env=self._env,
            timeout_seconds=self._timeout_seconds,
        )
        return await self._executor.run(spec)


class CommandFixer:
    """Fixer hook that runs ``merge_queue.fix_command`` in the candidate worktree.

    The command sees the failing test ids in ``MERGE_TRAIN_FAILING_TESTS`` (one
    per line) and the original exit code in ``MERGE_TRAIN_FAILING_EXIT_CODE``.
    It is expected to commit its fix; the gate re-runs the suite and only
    accepts the fix when the worktree head moved and the rerun passes.
    """

    def __init__(
        self,
        command: str,
        *,
        timeout_seconds: float | None = None,
        executor: CommandExecutor | None = None,
        shell: str = _DEFAULT_SHELL,
        logger: Any | None = None,
    ) -> None:
        if not command.strip():
            raise ValueError("fix command must be non-empty")
        self._command = command
        self._timeout_seconds = timeout_seconds
        self._executor = executor if executor is not None else LocalSubprocessExecutor()
        self._shell = shell
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def command(self) -> str:
        return self._command

    async def __call__(
        self, worktree: Path, signature: FailureSignature, result: CommandResult
    ) -> bool:
        exit_code = "" if signature.exit_code is None else str(signature.exit_code)
        spec = CommandSpec(
            argv=(self._shell, "-c", self._command),
            cwd=str(worktree),
            env={
                "MERGE_TRAIN_FAILING_TESTS": "\n".join(sorted(signature.failing_tests)),
                "MERGE_TRAIN_FAILING_EXIT_CODE": exit_code,
            },
            timeout_seconds=self._timeout_seconds,
        )
        fix_result = await self._executor.run(spec)
        self._logger.info(
            "merge_train_fix_command_finished",
            worktree=str(worktree),
            exit_code=fix_result.exit_code,
            timed_out=fix_result.timed_out,
            passed=fix_result.passed,
        )
        return fix_result.passed


class _CommandTimeoutError(Exception):
    def __init__(self, *, stdout: bytes, stderr: bytes) -> None:
        super().__init__("command timed out")
        self.stdout = stdout
        self.stderr = stderr


async def _communicate_with_timeout(
    *,
    process: asyncio.subprocess.Process,
    timeout_seconds: float | None,
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate()
        return await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError as exc:
        _kill_process_group(process)
        stdout_bytes, stderr_bytes = await process.communicate()
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        _kill_process_group(process)
        await process.communicate()
        raise


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    # The test command runs under a shell; its children share the session.
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
        return
    with suppress(ProcessLookupError):
        process.kill()


def _elapsed_ms(started_ns: int) -> int:
    return max(0, time.monotonic_ns() - started_ns) // 1_000_000


def _normalize_output_text(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


__all__ = [
    "CommandExecutor",
    "CommandFixer",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "VerificationRunner",
]
