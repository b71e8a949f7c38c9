"""Process entrypoint for ``merge-train`` and ``python -m merge_train``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    MERGE_REJECTED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


_EXIT_CODES = frozenset(int(code) for code in ExitCode)
_CONFIG_LIKE: tuple[type[BaseException], ...] = (
    FileNotFoundError,
    NotADirectoryError,
    PermissionError,
)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and map every way out of it onto an ``ExitCode``."""
    try:
        from merge_train.ui.cli import run_cli

        return _coerce_exit_code(run_cli(argv))
    except SystemExit as exc:
        # argparse exits with 2 on usage errors and 0 for --help.
        return _coerce_exit_code(exc.code)
    except KeyboardInterrupt:
        return ExitCode.SUCCESS
    except Exception as exc:  # noqa: BLE001 - last-resort boundary for the process.
        code = _classify(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return code


def _coerce_exit_code(raw: object) -> int:
    if raw is None:
        return ExitCode.SUCCESS
    if isinstance(raw, int) and raw in _EXIT_CODES:
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return ExitCode.INTERNAL_ERROR


def _classify(exc: BaseException) -> ExitCode:
    from merge_train.domain.errors import ConfigurationError

    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (ConfigurationError, *_CONFIG_LIKE)):
            return ExitCode.CONFIG_ERROR
        current = current.__cause__ or (
            None if current.__suppress_context__ else current.__context__
        )
    return ExitCode.INTERNAL_ERROR


__all__ = ["ExitCode", "cli_entrypoint"]
