"""
Issue store used by the importer.
"""

from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reposync.models.issue import Issue


class IssueStore:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def find_by_id(self, issue_id: str) -> Optional[Issue]:
        result = await self.db.execute(select(Issue).where(Issue.id == issue_id))
        return result.scalar_one_or_none()

    async def find_by_remote_id(self, repository_connection_id: str, remote_issue_id: str) -> Optional[Issue]:
        result = await self.db.execute(
            select(Issue).where(
                Issue.repository_connection_id == repository_connection_id,
                Issue.remote_issue_id == remote_issue_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, **fields: Any) -> Issue:
        issue = Issue(**fields)
        self.db.add(issue)
        await self.db.flush()
        return issue

    async def update(self, issue: Issue, fields: Dict[str, Any]) -> Issue:
        for name, value in fields.items():
            setattr(issue, name, value)
        await self.db.flush()
        return issue

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()
