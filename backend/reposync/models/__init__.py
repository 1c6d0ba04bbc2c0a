from .base import Base
from .project import Project
from .repository_connection import RepositoryConnection, ServiceType
from .issue import Issue
from .sync_operation import (
    SyncOperationRecord,
    SyncStatus,
    SyncType,
    SYNC_STATUS_TRANSITIONS,
)

__all__ = [
    "Base",
    "Project",
    "RepositoryConnection",
    "ServiceType",
    "Issue",
    "SyncOperationRecord",
    "SyncStatus",
    "SyncType",
    "SYNC_STATUS_TRANSITIONS",
]
