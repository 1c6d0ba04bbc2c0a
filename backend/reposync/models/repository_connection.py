import enum
import uuid
from typing import Any, Dict, Optional
from sqlalchemy import Column, String, ForeignKey, Enum, Text, Boolean, DateTime
from sqlalchemy.orm import relationship

from reposync.models.base import Base
from reposync.utils.timeutils import isoformat


class ServiceType(str, enum.Enum):
    """Supported Git hosting providers."""
    GITHUB = "GitHub"
    GITLAB = "GitLab"
    BITBUCKET = "Bitbucket"


class RepositoryConnection(Base):
    """
    One external repository linked to one project.

    ``access_token`` and ``webhook_secret`` hold ciphertext produced by the
    credential vault; plaintext never reaches this table.
    """
    __tablename__ = "repository_connections"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    repository_url = Column(String(500), nullable=False, unique=True, index=True)
    service_type = Column(Enum(ServiceType, native_enum=False, length=20), nullable=False)

    access_token = Column(Text, nullable=False)
    webhook_secret = Column(Text, nullable=True)
    webhook_id = Column(String(100), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(DateTime, nullable=True)

    project = relationship("Project", back_populates="repository_connections")

    def __repr__(self):
        return f"<RepositoryConnection {self.repository_url} -> {self.project_id}>"

    def to_public_dict(self, webhook_configured: Optional[bool] = None) -> Dict[str, Any]:
        """Serialize without credentials."""
        if webhook_configured is None:
            webhook_configured = bool(self.webhook_secret)
        return {
            "id": self.id,
            "projectId": self.project_id,
            "repositoryUrl": self.repository_url,
            "serviceType": self.service_type.value,
            "webhookId": self.webhook_id,
            "webhookConfigured": webhook_configured,
            "isActive": self.is_active,
            "lastSyncAt": isoformat(self.last_sync_at),
            "createdAt": isoformat(self.created_at),
        }
