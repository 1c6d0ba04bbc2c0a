import uuid
from sqlalchemy import Column, String, Text, JSON
from sqlalchemy.orm import relationship

from reposync.models.base import Base


class Project(Base):
    """
    Project that owns repository connections and imported issues.
    Only the fields the sync engine reads or writes are mapped here.
    """
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    key = Column(String(20), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=False)
    owner_id = Column(String(36), nullable=True, index=True)

    # Workflow configuration as committed in the repository, plus its parsed form
    config_yaml = Column(Text, nullable=True)
    config = Column(JSON, nullable=True)

    repository_connections = relationship(
        "RepositoryConnection", back_populates="project", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Project {self.key} ({self.id})>"

    @property
    def has_config(self) -> bool:
        return bool(self.config_yaml)
