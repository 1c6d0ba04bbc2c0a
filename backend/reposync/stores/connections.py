"""
Repository connection store.

Connections are keyed globally by repository URL; ``upsert`` is the only write
path used when linking, so a repository can never be linked twice.
"""

from typing import Any, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reposync.models.repository_connection import RepositoryConnection, ServiceType


class ConnectionStore:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def find_by_id(self, connection_id: str) -> Optional[RepositoryConnection]:
        result = await self.db.execute(select(RepositoryConnection).where(RepositoryConnection.id == connection_id))
        return result.scalar_one_or_none()

    async def find_by_repository_url(self, repository_url: str) -> Optional[RepositoryConnection]:
        result = await self.db.execute(
            select(RepositoryConnection).where(RepositoryConnection.repository_url == repository_url)
        )
        return result.scalar_one_or_none()

    async def list_for_project(self, project_id: str) -> List[RepositoryConnection]:
        result = await self.db.execute(
            select(RepositoryConnection)
            .where(RepositoryConnection.project_id == project_id)
            .order_by(RepositoryConnection.created_at)
        )
        return list(result.scalars().all())

    async def upsert(
        self,
        project_id: str,
        repository_url: str,
        service_type: ServiceType,
        access_token: str,
        webhook_secret: Optional[str],
        webhook_id: Optional[str],
        is_active: bool = True,
    ) -> RepositoryConnection:
        """
        Create or update the connection for ``repository_url``.

        Credential arguments must already be encrypted.
        """
        connection = await self.find_by_repository_url(repository_url)
        if connection is None:
            connection = RepositoryConnection(
                project_id=project_id,
                repository_url=repository_url,
                service_type=service_type,
            )
            self.db.add(connection)

        connection.project_id = project_id
        connection.service_type = service_type
        connection.access_token = access_token
        connection.webhook_secret = webhook_secret
        connection.webhook_id = webhook_id
        connection.is_active = is_active

        await self.db.flush()
        await self.db.refresh(connection)
        return connection

    async def update(self, connection_id: str, **fields: Any) -> Optional[RepositoryConnection]:
        connection = await self.find_by_id(connection_id)
        if connection is None:
            return None
        for name, value in fields.items():
            if not hasattr(RepositoryConnection, name):
                raise AttributeError(f"RepositoryConnection has no field '{name}'")
            setattr(connection, name, value)
        await self.db.flush()
        return connection
