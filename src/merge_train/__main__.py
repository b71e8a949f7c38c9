"""Module entrypoint for ``python -m merge_train``."""

from __future__ import annotations

from merge_train.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
