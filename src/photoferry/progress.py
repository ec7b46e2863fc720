"""Progress reporting port, in-memory operation tracker and the orchestrator adapter."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import itertools
import logging
from threading import Lock
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_RETRYING = "retrying"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class ProgressSink(ABC):
    """Narrow port the orchestrators report progress through."""

    @abstractmethod
    def create(
        self,
        kind: str,
        name: str,
        *,
        total: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Start tracking an operation and return its tracking id."""

    @abstractmethod
    def update_progress(self, tracking_id: str, current: int, total: Optional[int] = None) -> None:
        """Record progress."""

    @abstractmethod
    def complete(self, tracking_id: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Mark the operation completed."""

    @abstractmethod
    def fail(self, tracking_id: str, message: str) -> None:
        """Mark the operation failed."""

    def retry(self, tracking_id: str, message: str, retry_count: int, max_retries: int) -> None:
        """Annotate a retry in progress; sinks without retry display ignore it."""


@dataclass
class Operation:
    id: str
    kind: str
    name: str
    status: str = STATUS_PENDING
    current: int = 0
    total: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def percentage(self) -> int:
        if not self.total:
            return 0
        return round(self.current / self.total * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "status": self.status,
            "progress": {"current": self.current, "total": self.total, "percentage": self.percentage},
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "metadata": dict(self.metadata),
        }


class OperationStatusManager(ProgressSink):
    """In-memory operation list exposed by the API.

    Finished operations are kept for a retention window (completed 30s,
    failed 60s) and pruned on access.
    """

    def __init__(
        self,
        *,
        completed_retention: timedelta = timedelta(seconds=30),
        failed_retention: timedelta = timedelta(seconds=60),
    ):
        self._lock = Lock()
        self._operations: Dict[str, Operation] = {}
        self._ids = itertools.count(1)
        self._completed_retention = completed_retention
        self._failed_retention = failed_retention

    def create(self, kind, name, *, total=None, metadata=None) -> str:
        with self._lock:
            op_id = f"op-{next(self._ids)}"
            self._operations[op_id] = Operation(
                id=op_id,
                kind=kind,
                name=name,
                status=STATUS_IN_PROGRESS,
                total=total,
                metadata=dict(metadata or {}),
            )
        logger.info("Operation created: %s %s (%s, total=%s)", op_id, name, kind, total)
        return op_id

    def update_progress(self, tracking_id, current, total=None) -> None:
        with self._lock:
            op = self._operations.get(tracking_id)
            if op is None:
                logger.warning("Attempted to update non-existent operation %s", tracking_id)
                return
            op.current = current
            if total is not None:
                op.total = total
            if op.status == STATUS_RETRYING:
                op.error = None
            if op.status in (STATUS_PENDING, STATUS_RETRYING):
                op.status = STATUS_IN_PROGRESS

    def retry(self, tracking_id: str, message: str, retry_count: int, max_retries: int) -> None:
        with self._lock:
            op = self._operations.get(tracking_id)
            if op is None:
                return
            op.status = STATUS_RETRYING
            op.error = message
            op.retry_count = retry_count
            op.max_retries = max_retries

    def complete(self, tracking_id, metadata=None) -> None:
        self._finish(tracking_id, STATUS_COMPLETED, metadata=metadata)

    def fail(self, tracking_id, message) -> None:
        self._finish(tracking_id, STATUS_FAILED, error=message)

    def _finish(self, tracking_id: str, status: str, *, error: Optional[str] = None, metadata=None) -> None:
        with self._lock:
            op = self._operations.get(tracking_id)
            if op is None:
                logger.warning("Attempted to finish non-existent operation %s", tracking_id)
                return
            op.status = status
            op.completed_at = datetime.utcnow()
            if error is not None:
                op.error = error
            if metadata:
                op.metadata.update(metadata)

    def get_operation(self, tracking_id: str) -> Optional[Operation]:
        with self._lock:
            self._prune()
            return self._operations.get(tracking_id)

    def list_operations(self, *, status: Optional[str] = None, identity: Optional[str] = None) -> list[Operation]:
        with self._lock:
            self._prune()
            operations = list(self._operations.values())
        if status:
            operations = [op for op in operations if op.status == status]
        if identity:
            operations = [op for op in operations if op.metadata.get("identity") == identity]
        return operations

    def remove(self, tracking_id: str) -> bool:
        with self._lock:
            return self._operations.pop(tracking_id, None) is not None

    def _prune(self) -> None:
        now = datetime.utcnow()
        for op_id, op in list(self._operations.items()):
            if op.completed_at is None:
                continue
            retention = self._failed_retention if op.status == STATUS_FAILED else self._completed_retention
            if now - op.completed_at > retention:
                del self._operations[op_id]


class ProgressReporter:
    """Adapter the orchestrators use; sink failures are logged, never raised."""

    def __init__(self, sink: Optional[ProgressSink] = None):
        self._sink = sink
        self._lock = Lock()
        self._tracked: Dict[str, set[str]] = {}

    def start(
        self,
        identity: str,
        kind: str,
        name: str,
        *,
        total: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        if self._sink is None:
            return None
        payload = {"identity": identity}
        payload.update(metadata or {})
        try:
            tracking_id = self._sink.create(kind, name, total=total, metadata=payload)
        except Exception:
            logger.warning("Progress sink create failed for %s", name, exc_info=True)
            return None
        with self._lock:
            self._tracked.setdefault(identity, set()).add(tracking_id)
        return tracking_id

    def update(self, tracking_id: Optional[str], current: int, total: Optional[int] = None) -> None:
        if self._sink is None or tracking_id is None:
            return
        try:
            self._sink.update_progress(tracking_id, current, total)
        except Exception:
            logger.warning("Progress sink update failed for %s", tracking_id, exc_info=True)

    def complete(self, identity: str, tracking_id: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> None:
        if self._sink is None or tracking_id is None:
            return
        self._untrack(identity, tracking_id)
        try:
            self._sink.complete(tracking_id, metadata)
        except Exception:
            logger.warning("Progress sink complete failed for %s", tracking_id, exc_info=True)

    def retry(self, tracking_id: Optional[str], message: str, retry_count: int, max_retries: int) -> None:
        if self._sink is None or tracking_id is None:
            return
        try:
            self._sink.retry(tracking_id, message, retry_count, max_retries)
        except Exception:
            logger.warning("Progress sink retry failed for %s", tracking_id, exc_info=True)

    def fail(self, identity: str, tracking_id: Optional[str], message: str) -> None:
        if self._sink is None or tracking_id is None:
            return
        self._untrack(identity, tracking_id)
        try:
            self._sink.fail(tracking_id, message)
        except Exception:
            logger.warning("Progress sink fail failed for %s", tracking_id, exc_info=True)

    def fail_identity(self, identity: str, message: str) -> int:
        """Fail every operation still tracked for the identity."""
        with self._lock:
            tracking_ids = list(self._tracked.pop(identity, set()))
        for tracking_id in tracking_ids:
            if self._sink is None:
                break
            try:
                self._sink.fail(tracking_id, message)
            except Exception:
                logger.warning("Progress sink fail failed for %s", tracking_id, exc_info=True)
        return len(tracking_ids)

    def _untrack(self, identity: str, tracking_id: str) -> None:
        with self._lock:
            tracked = self._tracked.get(identity)
            if tracked is not None:
                tracked.discard(tracking_id)
                if not tracked:
                    del self._tracked[identity]
