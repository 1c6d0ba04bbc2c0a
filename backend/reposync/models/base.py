from typing import Any
from sqlalchemy import Column, DateTime
from sqlalchemy.orm import as_declarative, declared_attr

from reposync.utils.timeutils import utcnow


@as_declarative()
class Base:
    id: Any
    __name__: str

    # Generate __tablename__ automatically
    @declared_attr
    def __tablename__(cls) -> str:
        return cls.__name__.lower()

    # Common columns
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
