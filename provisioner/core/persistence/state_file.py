"""
State recorder — durable per-step execution records.

Records are stored as one JSON document (see ``RecordStore``). Writes
are atomic (write to temp file, then rename) so readers never see a
half-written file, and serialized by a single-writer lock: an
in-process ``threading.Lock`` plus an ``fcntl.flock`` on a sibling
``.lock`` file for other processes. The lock is held for one update
only; each update re-reads the file under the lock so concurrent
engines never drop each other's records.

Corrupt or unreadable storage is treated as "no prior state" and
logged as a warning, once per recorder until the file is rewritten.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from provisioner.core.models.record import ExecutionRecord, RecordStore, StepStatus

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".state"
DEFAULT_STATE_FILE = "provision.json"
USER_STATE_DIR = Path.home() / ".local" / "share" / "provisioner"


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def default_state_path(plan_dir: Path | None = None) -> Path:
    """State file location for a plan directory, or the per-user default."""
    if plan_dir is not None:
        return plan_dir / DEFAULT_STATE_DIR / DEFAULT_STATE_FILE
    return USER_STATE_DIR / DEFAULT_STATE_FILE


def _read_store(path: Path) -> tuple[RecordStore, str | None]:
    """Read the record store, returning it with a problem description (or None)."""
    if not path.is_file():
        logger.debug("No state file at %s, starting fresh", path)
        return RecordStore(), None

    try:
        raw = path.read_text(encoding="utf-8")
        store = RecordStore.model_validate(json.loads(raw))
    except json.JSONDecodeError as e:
        return RecordStore(), f"Corrupt state file {path}: {e}"
    except Exception as e:
        return RecordStore(), f"Cannot load state from {path}: {e}"
    logger.debug("Loaded %d record(s) from %s", len(store.records), path)
    return store, None


def load_store(path: Path) -> RecordStore:
    """Load the record store from a JSON file.

    Returns:
        RecordStore. Missing, corrupt or unreadable files give an empty store.
    """
    store, problem = _read_store(path)
    if problem:
        logger.warning("%s, treating all steps as pending", problem)
    return store


def save_store(store: RecordStore, path: Path) -> None:
    """Save the record store (atomic write)."""
    store.touch()
    path.parent.mkdir(parents=True, exist_ok=True)

    content = json.dumps(store.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".state_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
        logger.debug("State saved to %s", path)
    except Exception:
        tmp.unlink(missing_ok=True)
        logger.error("Failed to save state to %s", path)
        raise


class StateRecorder:
    """Per-step status store, shared safely between engine instances."""

    def __init__(self, path: Path):
        self._path = path
        self._lock_path = path.with_name(path.name + ".lock")
        self._thread_lock = threading.Lock()
        self._warned = False
        # Surface corruption up front
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _write_lock(self) -> Iterator[None]:
        """Single-writer lock, held for the duration of one update."""
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self._thread_lock, open(self._lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    # ── Reads (no lock) ─────────────────────────────────────────

    def _load(self) -> RecordStore:
        """Read the store, warning about a bad file once until it is rewritten."""
        store, problem = _read_store(self._path)
        if problem and not self._warned:
            logger.warning("%s, treating all steps as pending", problem)
            self._warned = True
        elif problem:
            logger.debug("%s", problem)
        return store

    def record(self, step_id: str) -> ExecutionRecord | None:
        return self._load().records.get(step_id)

    def get(self, step_id: str) -> StepStatus | None:
        """Recorded status of a step, or None if it never started."""
        rec = self.record(step_id)
        return rec.status if rec else None

    def all_records(self) -> list[ExecutionRecord]:
        return list(self._load().records.values())

    # ── Writes (locked) ─────────────────────────────────────────

    def set(
        self,
        step_id: str,
        status: StepStatus,
        timestamp: str | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> ExecutionRecord:
        """Create or replace the record for a step.

        Args:
            step_id: Step identifier.
            status: New status.
            timestamp: ISO timestamp (default: now).
            error: Failure reason, if any.
            **extra: Other ExecutionRecord fields (fingerprint,
                duration_ms, environment).

        Returns:
            The stored record.
        """
        record = ExecutionRecord(
            id=step_id,
            status=status,
            timestamp=timestamp or _now_iso(),
            error=error,
            **extra,
        )
        with self._write_lock():
            store = self._load()
            store.records[step_id] = record
            save_store(store, self._path)
            self._warned = False
        logger.debug("Recorded %s = %s", step_id, status)
        return record

    def clear(self, step_ids: Iterable[str] | None = None) -> int:
        """Forget records. Returns how many were removed.

        Args:
            step_ids: Steps to forget; None forgets everything.
        """
        with self._write_lock():
            store = self._load()
            if step_ids is None:
                removed = len(store.records)
                store.records.clear()
            else:
                removed = sum(1 for sid in step_ids if store.records.pop(sid, None) is not None)
            save_store(store, self._path)
            self._warned = False
        logger.info("Cleared %d record(s) from %s", removed, self._path)
        return removed
