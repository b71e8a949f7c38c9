"""Crash-durable merge request queue: one JSON record per MR in a directory."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Final

import structlog

from merge_train.constants import MR_RECORD_SCHEMA_VERSION
from merge_train.domain.errors import StorageError
from merge_train.domain.models import MergeRequest

_RECORD_SUFFIX: Final[str] = ".json"
_TMP_SUFFIX: Final[str] = ".tmp"
_RECORD_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class MergeQueueStore:
    """Directory-backed queue of pending merge requests.

    Every record lives in its own file and every write is a temp-file + rename,
    so readers never observe a half-written record and a crash leaves either the
    old or the new version in place. The processor only ever removes records;
    additions come from the submission path.

    A record that cannot be parsed is skipped by :meth:`list` (with one warning
    per file) so it never blocks the rest of the queue; only a queue directory
    that cannot be read raises ``StorageError``.
    """

    def __init__(self, queue_dir: str | Path, *, logger: Any | None = None) -> None:
        self._queue_dir = Path(queue_dir).expanduser().resolve()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._reported_invalid: set[Path] = set()

    @property
    def queue_dir(self) -> Path:
        return self._queue_dir

    def list(self) -> list[MergeRequest]:
        """Return pending MRs by priority (desc), then age (oldest first), then id."""
        records: list[MergeRequest] = []
        invalid: set[Path] = set()
        for path in self._record_paths():
            try:
                records.append(self._read_record(path))
            except StorageError as exc:
                invalid.add(path)
                if path not in self._reported_invalid:
                    self._logger.warning(
                        "merge_train_queue_record_skipped", path=str(path), error=str(exc)
                    )
        self._reported_invalid = invalid
        return sorted(records, key=lambda mr: mr.queue_key)

    def count(self) -> int:
        return len(self.list())

    def get(self, mr_id: str) -> MergeRequest | None:
        path = self._record_path(mr_id)
        if not path.exists():
            return None
        return self._read_record(path)

    def add(self, mr: MergeRequest) -> MergeRequest:
        """Persist a new MR record. Submission-path only."""
        path = self._record_path(mr.id)
        if path.exists():
            raise ValueError(f"merge request already queued: {mr.id}")
        self._write_record(path, mr)
        return mr

    def update(self, mr: MergeRequest) -> MergeRequest:
        """Atomically rewrite an existing record."""
        path = self._record_path(mr.id)
        if not path.exists():
            raise KeyError(f"merge request not queued: {mr.id}")
        self._write_record(path, mr)
        return mr

    def remove(self, mr_id: str) -> bool:
        """Delete a record; returns False when it was already gone."""
        path = self._record_path(mr_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"failed to remove merge request {mr_id}: {exc}") from exc
        return True

    def _record_paths(self) -> list[Path]:
        if not self._queue_dir.exists():
            return []
        try:
            entries = list(self._queue_dir.iterdir())
        except OSError as exc:
            raise StorageError(f"failed to read merge queue {self._queue_dir}: {exc}") from exc
        return sorted(
            entry
            for entry in entries
            if entry.suffix == _RECORD_SUFFIX and entry.is_file() and not entry.name.startswith(".")
        )

    def _record_path(self, mr_id: str) -> Path:
        if not isinstance(mr_id, str) or not _RECORD_ID_RE.fullmatch(mr_id):
            raise ValueError(f"unsupported merge request id {mr_id!r}")
        return self._queue_dir / f"{mr_id}{_RECORD_SUFFIX}"

    def _read_record(self, path: Path) -> MergeRequest:
        try:
            payload_raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"failed to read merge request record {path}: {exc}") from exc

        try:
            parsed = json.loads(payload_raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"invalid JSON in merge request record {path}: {exc.msg}") from exc

        if not isinstance(parsed, dict):
            raise StorageError(f"merge request record root must be an object: {path}")

        schema_version = parsed.get("schema_version", MR_RECORD_SCHEMA_VERSION)
        if schema_version != MR_RECORD_SCHEMA_VERSION:
            raise StorageError(
                f"unsupported merge request schema version {schema_version!r} in {path}; "
                f"expected {MR_RECORD_SCHEMA_VERSION}"
            )

        try:
            return MergeRequest.from_dict(parsed)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"invalid merge request record {path}: {exc}") from exc

    def _write_record(self, path: Path, mr: MergeRequest) -> None:
        payload = {"schema_version": MR_RECORD_SCHEMA_VERSION, **mr.to_dict()}
        tmp_path = path.with_name(f".{path.name}{_TMP_SUFFIX}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(
                    json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"
                )
                handle.flush()
                os.fsync(handle.fileno())
            tmp_path.replace(path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"failed to write merge request record {path}: {exc}") from exc


__all__ = ["MergeQueueStore"]
