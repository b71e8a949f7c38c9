"""UI package exports for the CLI and its plain-text renderer."""

from merge_train.ui.cli import CLIError, build_engineer, build_parser, run_cli
from merge_train.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_engineer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
