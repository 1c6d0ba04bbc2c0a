"""
Project store used by the sync engine.

Only lookups and workflow-config updates are needed here; project CRUD lives
elsewhere in the application.
"""

from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reposync.models.project import Project


class ProjectStore:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def find_by_id(self, project_id: str) -> Optional[Project]:
        result = await self.db.execute(select(Project).where(Project.id == project_id))
        return result.scalar_one_or_none()

    async def get_config(self, project_id: str) -> Optional[Dict[str, Any]]:
        project = await self.find_by_id(project_id)
        if project is None or not project.config_yaml:
            return None
        return {"yaml": project.config_yaml, "parsed": project.config}

    async def update_config(self, project_id: str, config_yaml: str, parsed: Dict[str, Any]) -> Optional[Project]:
        project = await self.find_by_id(project_id)
        if project is None:
            return None
        project.config_yaml = config_yaml
        project.config = parsed
        await self.db.flush()
        return project
