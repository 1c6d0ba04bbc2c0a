import enum
from sqlalchemy import Column, String, ForeignKey, Enum, Text, Boolean, DateTime, JSON

from reposync.models.base import Base


class SyncStatus(str, enum.Enum):
    """Sync operation status. Transitions only move forward."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (SyncStatus.PENDING, SyncStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


# Allowed forward transitions
SYNC_STATUS_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.RUNNING, SyncStatus.FAILED, SyncStatus.CANCELLED},
    SyncStatus.RUNNING: {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED},
    SyncStatus.COMPLETED: set(),
    SyncStatus.FAILED: set(),
    SyncStatus.CANCELLED: set(),
}


class SyncType(str, enum.Enum):
    FULL = "full"
    ISSUES_ONLY = "issuesOnly"


class SyncOperationRecord(Base):
    """
    Persistent row backing the database operation store.

    ``active_key`` equals the repository connection id while the operation is
    pending or running and is cleared on any terminal transition. Its unique
    constraint is what makes "check for an active sync, then create one" a
    single atomic insert across processes.
    """
    __tablename__ = "sync_operations"

    id = Column(String(36), primary_key=True, index=True)
    repository_connection_id = Column(
        String(36), ForeignKey("repository_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)

    status = Column(Enum(SyncStatus, native_enum=False, length=20), nullable=False, default=SyncStatus.PENDING, index=True)
    sync_type = Column(Enum(SyncType, native_enum=False, length=20), nullable=False, default=SyncType.FULL)
    include_closed = Column(Boolean, nullable=False, default=False)

    progress = Column(JSON, nullable=True)
    results = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    active_key = Column(String(36), nullable=True, unique=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SyncOperationRecord {self.id} {self.status}>"
