"""
merge-train — external collaborators.

File: src/merge_train/collaborators/__init__.py

Purpose
- Thin adapters over the issue tracker (``bd``) and mail (``gt mail``) CLIs.

Non-functional requirements
- Callers treat every collaborator failure as best-effort and log it.
"""

from merge_train.collaborators.mail import (
    MailNotifier,
    NotificationError,
    Notifier,
    address_to_identity,
    identity_to_address,
)
from merge_train.collaborators.tracker import BeadsTracker, IssueTracker, TrackerError

__all__ = [
    "BeadsTracker",
    "IssueTracker",
    "MailNotifier",
    "NotificationError",
    "Notifier",
    "TrackerError",
    "address_to_identity",
    "identity_to_address",
]
