"""
Sync operation store.

``OperationStore`` is the interface the orchestrator depends on. Two backends:

- ``InMemoryOperationStore``: a process-local dict guarded by an asyncio lock.
  Only valid for a single-instance deployment; a second instance would not see
  the first one's active operations and could start a concurrent sync.
- ``SqlOperationStore``: rows in ``sync_operations``. The at-most-one-active
  guard is enforced by the unique ``active_key`` column, so it holds across
  instances. Cancellation tokens remain process-local, so cancelling a running
  operation only takes effect on the instance that is executing it.
  Rows orphaned by a crashed process are failed by ``expire_stale`` once they
  stop receiving progress updates.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError

from reposync.exceptions.repository_exceptions import SyncConflictError
from reposync.models.sync_operation import (
    SYNC_STATUS_TRANSITIONS,
    SyncOperationRecord,
    SyncStatus,
    SyncType,
)
from reposync.services.sync.cancellation import CancellationToken
from reposync.utils.timeutils import isoformat, utcnow
from logconfig.logger import get_logger

logger = get_logger()


@dataclass
class SyncOperation:
    """An asynchronous sync job and its cancellation handle."""
    repository_connection_id: str
    project_id: str
    user_id: str
    sync_type: SyncType = SyncType.FULL
    include_closed: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: SyncStatus = SyncStatus.PENDING
    progress: Optional[Dict[str, Any]] = None
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancellation: CancellationToken = field(default_factory=CancellationToken, repr=False, compare=False)

    def to_status_dict(self) -> Dict[str, Any]:
        return {
            "operationId": self.id,
            "status": self.status.value,
            "syncType": self.sync_type.value,
            "includeClosed": self.include_closed,
            "progress": self.progress,
            "results": self.results,
            "error": self.error,
            "createdAt": isoformat(self.created_at),
            "startedAt": isoformat(self.started_at),
            "completedAt": isoformat(self.completed_at),
        }


def _transition_fields(new_status: SyncStatus) -> Dict[str, Any]:
    now = utcnow()
    if new_status == SyncStatus.RUNNING:
        return {"started_at": now}
    if new_status.is_terminal:
        return {"completed_at": now}
    return {}


class OperationStore(ABC):
    """Storage for sync operations with an atomic create-if-idle guard."""

    @abstractmethod
    async def create_if_idle(self, operation: SyncOperation) -> SyncOperation:
        """
        Store a new pending operation unless its repository already has one
        pending or running. The check and the insert are a single atomic step.

        Raises:
            SyncConflictError: If another operation is active for the repository
        """
        pass

    @abstractmethod
    async def get(self, operation_id: str) -> Optional[SyncOperation]:
        pass

    @abstractmethod
    async def find_active_by_repository(self, repository_connection_id: str) -> List[SyncOperation]:
        pass

    @abstractmethod
    async def transition(self, operation_id: str, new_status: SyncStatus, **fields: Any) -> bool:
        """
        Move an operation forward to ``new_status`` (compare-and-set).

        Returns:
            False if the operation is missing or its current status does not
            allow the transition; nothing is written in that case
        """
        pass

    @abstractmethod
    async def update(self, operation_id: str, **fields: Any) -> None:
        """Update progress/results/error without touching the status."""
        pass

    @abstractmethod
    async def delete(self, operation_id: str) -> bool:
        pass

    @abstractmethod
    async def cleanup(self, older_than_hours: int = 24) -> int:
        """Delete terminal operations completed more than ``older_than_hours`` ago."""
        pass

    async def expire_stale(self, idle_hours: int) -> int:
        """
        Fail active operations that no running process owns any more.

        Only meaningful for stores that outlive the process; the in-memory
        store loses its operations together with their tasks.
        """
        return 0


class InMemoryOperationStore(OperationStore):
    """Process-local operation store. Single-instance deployments only."""

    def __init__(self):
        self._operations: Dict[str, SyncOperation] = {}
        self._lock = asyncio.Lock()

    async def create_if_idle(self, operation: SyncOperation) -> SyncOperation:
        async with self._lock:
            active = self._active_for(operation.repository_connection_id)
            if active:
                raise SyncConflictError(operation.repository_connection_id, active_operation_id=active[0].id)
            self._operations[operation.id] = operation
        logger.info(f"Created sync operation {operation.id} for repository {operation.repository_connection_id}")
        return operation

    async def get(self, operation_id: str) -> Optional[SyncOperation]:
        return self._operations.get(operation_id)

    async def find_active_by_repository(self, repository_connection_id: str) -> List[SyncOperation]:
        return self._active_for(repository_connection_id)

    def _active_for(self, repository_connection_id: str) -> List[SyncOperation]:
        return [
            op for op in self._operations.values()
            if op.repository_connection_id == repository_connection_id and op.status.is_active
        ]

    async def transition(self, operation_id: str, new_status: SyncStatus, **fields: Any) -> bool:
        async with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None or new_status not in SYNC_STATUS_TRANSITIONS[operation.status]:
                return False
            operation.status = new_status
            for name, value in {**_transition_fields(new_status), **fields}.items():
                setattr(operation, name, value)
        return True

    async def update(self, operation_id: str, **fields: Any) -> None:
        operation = self._operations.get(operation_id)
        if operation is None:
            return
        for name, value in fields.items():
            setattr(operation, name, value)

    async def delete(self, operation_id: str) -> bool:
        async with self._lock:
            return self._operations.pop(operation_id, None) is not None

    async def cleanup(self, older_than_hours: int = 24) -> int:
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        async with self._lock:
            expired = [
                op_id for op_id, op in self._operations.items()
                if op.status.is_terminal and (op.completed_at or op.created_at) < cutoff
            ]
            for op_id in expired:
                del self._operations[op_id]
        return len(expired)


class SqlOperationStore(OperationStore):
    """Operation store backed by the ``sync_operations`` table."""

    def __init__(self, session_factory: Callable):
        self.session_factory = session_factory
        self._tokens: Dict[str, CancellationToken] = {}

    def _to_operation(self, record: SyncOperationRecord) -> SyncOperation:
        token = self._tokens.get(record.id)
        if token is None:
            token = CancellationToken()
        return SyncOperation(
            id=record.id,
            repository_connection_id=record.repository_connection_id,
            project_id=record.project_id,
            user_id=record.user_id,
            sync_type=record.sync_type,
            include_closed=record.include_closed,
            status=record.status,
            progress=record.progress,
            results=record.results,
            error=record.error,
            created_at=record.created_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            cancellation=token,
        )

    async def create_if_idle(self, operation: SyncOperation) -> SyncOperation:
        record = SyncOperationRecord(
            id=operation.id,
            repository_connection_id=operation.repository_connection_id,
            project_id=operation.project_id,
            user_id=operation.user_id,
            sync_type=operation.sync_type,
            include_closed=operation.include_closed,
            status=SyncStatus.PENDING,
            created_at=operation.created_at,
            active_key=operation.repository_connection_id,
        )
        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                active = await self.find_active_by_repository(operation.repository_connection_id)
                raise SyncConflictError(
                    operation.repository_connection_id,
                    active_operation_id=active[0].id if active else None,
                )

        self._tokens[operation.id] = operation.cancellation
        logger.info(f"Created sync operation {operation.id} for repository {operation.repository_connection_id}")
        return operation

    async def get(self, operation_id: str) -> Optional[SyncOperation]:
        async with self.session_factory() as session:
            record = await session.get(SyncOperationRecord, operation_id)
            return self._to_operation(record) if record else None

    async def find_active_by_repository(self, repository_connection_id: str) -> List[SyncOperation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncOperationRecord).where(
                    SyncOperationRecord.repository_connection_id == repository_connection_id,
                    SyncOperationRecord.status.in_([SyncStatus.PENDING, SyncStatus.RUNNING]),
                )
            )
            return [self._to_operation(record) for record in result.scalars().all()]

    async def transition(self, operation_id: str, new_status: SyncStatus, **fields: Any) -> bool:
        allowed_from = [status for status, targets in SYNC_STATUS_TRANSITIONS.items() if new_status in targets]
        values = {"status": new_status, **_transition_fields(new_status), **fields}
        if new_status.is_terminal:
            values["active_key"] = None

        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncOperationRecord)
                .where(SyncOperationRecord.id == operation_id, SyncOperationRecord.status.in_(allowed_from))
                .values(**values)
            )
            await session.commit()

        applied = result.rowcount == 1
        if applied and new_status.is_terminal:
            self._tokens.pop(operation_id, None)
        return applied

    async def update(self, operation_id: str, **fields: Any) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(SyncOperationRecord).where(SyncOperationRecord.id == operation_id).values(**fields)
            )
            await session.commit()

    async def delete(self, operation_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(delete(SyncOperationRecord).where(SyncOperationRecord.id == operation_id))
            await session.commit()
        self._tokens.pop(operation_id, None)
        return result.rowcount == 1

    async def cleanup(self, older_than_hours: int = 24) -> int:
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        terminal = [status for status in SyncStatus if status.is_terminal]
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SyncOperationRecord).where(
                    SyncOperationRecord.status.in_(terminal),
                    SyncOperationRecord.completed_at < cutoff,
                )
            )
            await session.commit()
        return result.rowcount

    async def expire_stale(self, idle_hours: int) -> int:
        """
        Fail pending/running rows left behind by a crashed process.

        A row is stale when it has not been written for ``idle_hours`` (progress
        updates touch ``updated_at`` every page) and this process holds no
        cancellation token for it. Failing it clears ``active_key``, which
        frees the repository for new syncs.
        """
        cutoff = utcnow() - timedelta(hours=idle_hours)
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncOperationRecord)
                .where(
                    SyncOperationRecord.status.in_([SyncStatus.PENDING, SyncStatus.RUNNING]),
                    SyncOperationRecord.updated_at < cutoff,
                    SyncOperationRecord.id.notin_(list(self._tokens)),
                )
                .values(
                    status=SyncStatus.FAILED,
                    active_key=None,
                    completed_at=now,
                    error=f"Sync abandoned: no progress for {idle_hours} hours",
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount:
            logger.warning(f"Marked {result.rowcount} abandoned sync operations as failed")
        return result.rowcount
