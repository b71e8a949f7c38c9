"""Worker notifications over the ``gt mail`` CLI."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from merge_train.collaborators._subprocess import run_cli
from merge_train.domain.errors import MergeTrainError

TOWN_LEVEL_AGENTS: Final[frozenset[str]] = frozenset({"mayor", "deacon"})


class NotificationError(MergeTrainError):
    """Raised when a notification cannot be delivered."""


def identity_to_address(identity: str) -> str:
    """Map an agent identity to its mail address.

    Town-level agents are addressed with a trailing slash (``mayor/``); rig
    paths (``gastown/polecats/Toast``) and bare rig names pass through.
    """
    name = identity.strip()
    if name.rstrip("/") in TOWN_LEVEL_AGENTS:
        return f"{name.rstrip('/')}/"
    return name


def address_to_identity(address: str) -> str:
    """Inverse of :func:`identity_to_address`; a rig broadcast loses its slash."""
    name = address.strip()
    if name.rstrip("/") in TOWN_LEVEL_AGENTS:
        return f"{name.rstrip('/')}/"
    if name.endswith("/") and name.count("/") == 1:
        return name[:-1]
    return name


@runtime_checkable
class Notifier(Protocol):
    def send(self, identity: str, subject: str, body: str) -> None: ...


class MailNotifier(Notifier):
    """Sends ``gt mail send <address> -s <subject> -m <body>``."""

    def __init__(
        self,
        *,
        command: str = "gt",
        sender: str = "refinery",
        cwd: Path | str | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._command = command
        self._sender = sender
        self._cwd = Path(cwd) if cwd is not None else None
        self._timeout_seconds = timeout_seconds

    @property
    def sender(self) -> str:
        return self._sender

    def send(self, identity: str, subject: str, body: str) -> None:
        address = identity_to_address(identity)
        if not address:
            raise NotificationError("cannot send mail without a recipient")
        try:
            result = run_cli(
                [self._command, "mail", "send", address, "-s", subject, "-m", body],
                cwd=self._cwd,
                env_overrides={"BD_ACTOR": self._sender},
                timeout_seconds=self._timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise NotificationError(f"mail to {address} failed: {exc}") from exc
        if not result.ok:
            raise NotificationError(result.describe())


__all__ = [
    "MailNotifier",
    "NotificationError",
    "Notifier",
    "TOWN_LEVEL_AGENTS",
    "address_to_identity",
    "identity_to_address",
]
