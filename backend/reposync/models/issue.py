import uuid
from sqlalchemy import Column, String, Integer, ForeignKey, Text, DateTime, JSON, UniqueConstraint

from reposync.models.base import Base


class Issue(Base):
    """
    Local issue record. Imported issues keep the provider identity they came from.
    """
    __tablename__ = "issues"
    __table_args__ = (
        UniqueConstraint("repository_connection_id", "remote_issue_id", name="uq_issue_remote_identity"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    repository_connection_id = Column(
        String(36), ForeignKey("repository_connections.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Provider identity
    remote_issue_id = Column(String(100), nullable=True)
    remote_number = Column(Integer, nullable=True)
    external_id = Column(String(700), nullable=True, index=True)
    html_url = Column(String(500), nullable=True)

    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(50), nullable=False, default="Backlog")
    type = Column(String(50), nullable=False, default="Task")
    reporter_id = Column(String(36), nullable=True)
    labels = Column(JSON, nullable=True)
    assignees = Column(JSON, nullable=True)

    # updated_at reported by the provider when this record was last written from it
    remote_updated_at = Column(DateTime, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Issue {self.title!r} ({self.external_id or self.id})>"
