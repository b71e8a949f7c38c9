"""Command-line interface router for merge-train."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from merge_train.collaborators import BeadsTracker, MailNotifier
from merge_train.config import (
    ConfigLoadError,
    ConfigValidationError,
    MergeQueueConfig,
    assert_runnable_config,
    dump_effective_config,
    load_config,
)
from merge_train.control_plane import Engineer, OutcomeHandlers
from merge_train.domain.errors import StorageError
from merge_train.domain.models import MergeRequest, ProcessOutcome, ProcessResult
from merge_train.integration_plane import GitEngine, MergeQueueStore
from merge_train.observability import correlation_scope, setup_logging, shutdown_logging
from merge_train.ui.render import CLIRenderer, create_renderer
from merge_train.utils import CancellationToken
from merge_train.verification_plane import CommandFixer, VerificationGate, VerificationRunner

_REJECTING_OUTCOMES: Final[frozenset[ProcessOutcome]] = frozenset(
    {ProcessOutcome.CONFLICT, ProcessOutcome.BRANCH_FAILURE, ProcessOutcome.UNRESOLVABLE}
)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="merge-train",
        description=(
            "merge-train — serialized rebase/test/fast-forward merge queue.\n\n"
            "Common workflows:\n"
            "  merge-train run               Process the queue until interrupted\n"
            "  merge-train run --once        Process a single tick and exit\n"
            "  merge-train submit --branch polecat/fix-123 --worker gastown/polecats/nux\n"
            "  merge-train queue             Show queued merge requests\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Directory relative paths and the default config resolve against.",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to a TOML or JSON config (default: ./merge-train.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Process the merge queue",
        description=(
            "Poll the merge queue and land each request: rebase onto the target, run the\n"
            "verification gate, fast-forward and push.\n\n"
            "Examples:\n"
            "  merge-train run\n"
            "  merge-train run --once --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument(
        "--once", action="store_true", help="Run one processing tick, then exit."
    )
    run_parser.add_argument("--json", action="store_true", help="Emit a JSON summary.")
    run_parser.add_argument("--run-id", default=None, help="Override the generated run id.")
    run_parser.set_defaults(handler=_cmd_run)

    # queue ---------------------------------------------------------------
    queue_parser = subparsers.add_parser(
        "queue", parents=[common], help="List queued merge requests in processing order"
    )
    queue_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    queue_parser.set_defaults(handler=_cmd_queue)

    # submit --------------------------------------------------------------
    submit_parser = subparsers.add_parser(
        "submit", parents=[common], help="Queue a branch for merging"
    )
    submit_parser.add_argument("--branch", required=True, help="Source branch to merge.")
    submit_parser.add_argument("--id", dest="mr_id", default=None, help="Merge request id.")
    submit_parser.add_argument("--title", default=None, help="Human-readable title.")
    submit_parser.add_argument(
        "--worker", default="", help="Identity notified on conflict or test failure."
    )
    submit_parser.add_argument(
        "--target", default=None, help="Target branch (default: merge_queue.target_branch)."
    )
    submit_parser.add_argument(
        "--issue", dest="source_issue", default="", help="Tracker issue closed on merge."
    )
    submit_parser.add_argument(
        "--priority", type=int, default=0, help="Higher values are processed first."
    )
    submit_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    submit_parser.set_defaults(handler=_cmd_submit)

    # remove --------------------------------------------------------------
    remove_parser = subparsers.add_parser(
        "remove", parents=[common], help="Drop a merge request from the queue"
    )
    remove_parser.add_argument("mr_id", help="Merge request id.")
    remove_parser.set_defaults(handler=_cmd_remove)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective configuration as JSON"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def build_engineer(
    config: Mapping[str, Any],
    *,
    cancel_token: CancellationToken | None = None,
) -> Engineer:
    """Wire the processor and its collaborators from a validated config."""

    assert_runnable_config(config)
    merge_queue = MergeQueueConfig.from_mapping(config["merge_queue"])
    repo_path = Path(config["git"]["repo_path"])
    git = GitEngine(repo_path, remote=config["git"]["remote"])
    store = MergeQueueStore(config["paths"]["queue_dir"])

    tracker_command = config["tracker"]["command"]
    tracker = BeadsTracker(command=tracker_command, cwd=repo_path) if tracker_command else None
    mail_command = config["notifications"]["command"]
    notifier = (
        MailNotifier(
            command=mail_command,
            sender=config["notifications"]["sender"],
            cwd=repo_path,
        )
        if mail_command
        else None
    )

    runner = (
        VerificationRunner(merge_queue.test_command, timeout_seconds=merge_queue.test_timeout)
        if merge_queue.run_tests
        else None
    )
    fixer = (
        CommandFixer(merge_queue.fix_command, timeout_seconds=merge_queue.test_timeout)
        if merge_queue.run_tests and merge_queue.fix_command
        else None
    )
    gate = VerificationGate(
        git=git,
        runner=runner,
        tracker=tracker,
        fixer=fixer,
        run_tests=merge_queue.run_tests,
        retry_flaky_tests=merge_queue.retry_flaky_tests,
    )
    outcomes = OutcomeHandlers(
        config=merge_queue,
        store=store,
        git=git,
        tracker=tracker,
        notifier=notifier,
    )
    return Engineer(
        config=merge_queue,
        store=store,
        git=git,
        gate=gate,
        outcomes=outcomes,
        cancel_token=cancel_token,
    )


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    try:
        engineer = build_engineer(config)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    if not engineer.config.enabled:
        raise CLIError("merge queue is disabled (merge_queue.enabled = false)", exit_code=2)

    run_id = _optional_str(getattr(args, "run_id", None)) or _new_run_id()
    handle = setup_logging(config["observability"], run_id=run_id)
    try:
        with correlation_scope(run_id=run_id):
            if _flag(args, "once"):
                results = asyncio.run(engineer.process_once())
            else:
                asyncio.run(_run_until_signalled(engineer))
                results = []
    finally:
        shutdown_logging(handle)

    if not _flag(args, "once"):
        return 0

    if _flag(args, "json"):
        _emit_json(
            {
                "run_id": run_id,
                "results": [_result_payload(mr, result) for mr, result in results],
            }
        )
    else:
        renderer = _get_renderer(args)
        renderer.kv("Run ID", run_id)
        renderer.kv("Processed", len(results))
        renderer.table(
            ["ID", "BRANCH", "OUTCOME", "COMMIT", "ERROR"],
            [
                [
                    mr.id,
                    mr.branch,
                    result.outcome.value,
                    (result.merge_commit or "")[:12],
                    result.error or "",
                ]
                for mr, result in results
            ],
        )
        for mr, result in results:
            if result.defect_id:
                renderer.warning(f"{mr.id} merged past pre-existing failure {result.defect_id}")
            if renderer.verbose and result.detail:
                renderer.text(result.detail)
    return 1 if any(result.outcome in _REJECTING_OUTCOMES for _, result in results) else 0


def _cmd_queue(args: argparse.Namespace) -> int:
    store = _queue_store(_load_effective_config(args))
    try:
        pending = store.list()
    except StorageError as exc:
        raise CLIError(str(exc), exit_code=4) from exc

    if _flag(args, "json"):
        _emit_json({"count": len(pending), "merge_requests": [mr.to_dict() for mr in pending]})
        return 0

    renderer = _get_renderer(args)
    if not pending:
        renderer.text("Merge queue is empty.")
        return 0
    renderer.table(
        ["ID", "PRIORITY", "BRANCH", "TARGET", "WORKER", "TITLE"],
        [
            [mr.id, str(mr.priority), mr.branch, mr.target, mr.worker, mr.title]
            for mr in pending
        ],
        title=f"Merge queue ({len(pending)})",
    )
    return 0


def _cmd_submit(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = _queue_store(config)
    branch = _require_str(getattr(args, "branch", None), "branch")
    target = _optional_str(getattr(args, "target", None)) or config["merge_queue"]["target_branch"]
    mr_id = _optional_str(getattr(args, "mr_id", None)) or f"mr-{uuid.uuid4().hex[:10]}"

    try:
        mr = MergeRequest(
            id=mr_id,
            title=_optional_str(getattr(args, "title", None)) or branch,
            branch=branch,
            target=target,
            worker=str(getattr(args, "worker", "") or ""),
            source_issue=str(getattr(args, "source_issue", "") or ""),
            priority=int(getattr(args, "priority", 0)),
        )
        store.add(mr)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    except StorageError as exc:
        raise CLIError(str(exc), exit_code=4) from exc

    if _flag(args, "json"):
        _emit_json(mr.to_dict())
    else:
        print(f"queued {mr.id} ({mr.branch} -> {mr.target})")
    return 0


def _cmd_remove(args: argparse.Namespace) -> int:
    store = _queue_store(_load_effective_config(args))
    mr_id = _require_str(getattr(args, "mr_id", None), "mr_id")
    try:
        removed = store.remove(mr_id)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    except StorageError as exc:
        raise CLIError(str(exc), exit_code=4) from exc
    if not removed:
        raise CLIError(f"merge request not queued: {mr_id}", exit_code=1)
    print(f"removed {mr_id}")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    print(dump_effective_config(_load_effective_config(args)))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _run_until_signalled(engineer: Engineer) -> None:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, engineer.stop)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        await engineer.run()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _result_payload(mr: MergeRequest, result: ProcessResult) -> dict[str, object]:
    return {
        "id": mr.id,
        "branch": mr.branch,
        "outcome": result.outcome.value,
        "merge_commit": result.merge_commit,
        "error": result.error,
        "conflicts": list(result.conflicts),
        "defect_id": result.defect_id,
    }


def _new_run_id() -> str:
    stamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def _queue_store(config: Mapping[str, Any]) -> MergeQueueStore:
    return MergeQueueStore(config["paths"]["queue_dir"])


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _repo_root(args: argparse.Namespace) -> Path:
    raw = _require_str(getattr(args, "repo_root", None), "repo_root")
    candidate = Path(raw).expanduser().resolve()
    if not candidate.exists() or not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=2)
    return candidate


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    try:
        return load_config(config_path, base_dir=_repo_root(args))
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _require_str(value: object, name: str) -> str:
    parsed = _optional_str(value)
    if parsed is None:
        raise CLIError(f"missing required argument: {name}", exit_code=2)
    return parsed


__all__ = ["CLIError", "build_engineer", "build_parser", "run_cli"]
