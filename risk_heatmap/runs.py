"""
Run records and per-identity run coordination.

Training, evaluation and prediction runs are long background tasks driven
by an external scheduler. The coordinator guarantees that at most one task
executes per run identity at a time, tracks progress on the run record, and
on failure records a short sanitised message before re-raising so the
scheduler's own retry policy can take over.

Usage:

    coordinator = RunCoordinator()
    record = coordinator.create("train-burglary")
    artifact = coordinator.execute(record.run_id, lambda progress: trainer.train(..., progress=progress))
"""

from __future__ import annotations

import enum
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from risk_heatmap.errors import RiskHeatmapError, RunAlreadyActiveError

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProgressCallback = Callable[[int, "str | None"], None]

MAX_ERROR_LENGTH = 240
GENERIC_ERROR_MESSAGE = "The run failed unexpectedly."

_PATH_PATTERNS = (
    re.compile(r"[A-Za-z]:\\[^\s\"']+"),
    re.compile(r"(?<![\w.])/(?:[\w.-]+/)+[\w.-]+"),
)


def sanitize_error_message(exc: BaseException, limit: int = MAX_ERROR_LENGTH) -> str:
    """
    Short, single-line, path-free description of a failure.

    Messages of this package's own errors are kept (they are written for
    operators); anything else is reduced to a generic message plus the
    exception type so internals never leak onto the run record.
    """
    if isinstance(exc, RiskHeatmapError) and str(exc).strip():
        message = str(exc)
    else:
        message = f"{GENERIC_ERROR_MESSAGE} ({type(exc).__name__})"
    for pattern in _PATH_PATTERNS:
        message = pattern.sub("[path]", message)
    message = " ".join(message.split())
    if len(message) > limit:
        message = message[: limit - 3].rstrip() + "..."
    return message


class RunStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunRecord:
    run_id: str
    status: RunStatus = RunStatus.QUEUED
    progress: int = 0
    message: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class RunCoordinator:
    """In-process registry of run records with one active execution per identity."""

    def __init__(self) -> None:
        self._records: dict[str, RunRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def create(self, run_id: str) -> RunRecord:
        with self._guard:
            record = self._records.get(run_id)
            if record is None:
                record = RunRecord(run_id)
                self._records[run_id] = record
                self._locks[run_id] = threading.Lock()
            return record

    def get(self, run_id: str) -> RunRecord | None:
        return self._records.get(run_id)

    def is_active(self, run_id: str) -> bool:
        lock = self._locks.get(run_id)
        return lock is not None and lock.locked()

    def execute(self, run_id: str, task: Callable[[ProgressCallback], T]) -> T:
        """
        Run ``task`` for a run identity, reporting progress on its record.

        Args:
            run_id: Run identity; created on first use.
            task: Callable receiving a ``progress(percent, message)`` callback.

        Raises:
            RunAlreadyActiveError: If a task for ``run_id`` is already executing.
            Exception: Whatever ``task`` raised, after the record is marked failed.
        """
        record = self.create(run_id)
        lock = self._locks[run_id]
        if not lock.acquire(blocking=False):
            raise RunAlreadyActiveError(f"Run {run_id!r} is already in progress.")

        try:
            record.status = RunStatus.RUNNING
            record.started_at = _now()
            record.finished_at = None
            record.error_message = None
            record.progress = 0

            def progress(percent: int, message: str | None = None) -> None:
                record.progress = max(0, min(100, int(percent)))
                if message is not None:
                    record.message = message
                logger.info("[%s] %d%% %s", run_id, record.progress, message or "")

            try:
                result = task(progress)
            except Exception as exc:
                record.status = RunStatus.FAILED
                record.error_message = sanitize_error_message(exc)
                record.finished_at = _now()
                logger.error("Run %s failed: %s", run_id, exc)
                raise

            record.status = RunStatus.COMPLETED
            record.progress = 100
            record.result = result
            record.finished_at = _now()
            return result
        finally:
            lock.release()
