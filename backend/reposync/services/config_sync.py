"""
Project workflow configuration sync.

Reads the workflow config file committed in a linked repository and stores it
on the project. This step is best effort: a missing, unreadable or malformed
file never fails the surrounding link or sync, and never overwrites a config
the project already has.
"""

from typing import Any, Dict, Optional

import yaml

from reposync.core.settings import get_settings
from reposync.exceptions.repository_exceptions import RepositoryIntegrationError
from reposync.models.project import Project
from reposync.providers.base import ProviderAdapter, RepositoryRef
from reposync.stores.projects import ProjectStore
from logconfig.logger import get_logger

logger = get_logger()


def build_default_config(project: Project) -> Dict[str, Any]:
    """Default workflow configuration for a project whose repository has none."""
    return {
        "project_key": project.key,
        "project_name": project.name,
        "workflow": {
            "default_status": "todo",
            "statuses": [
                {"key": "todo", "name": "To Do", "type": "open"},
                {"key": "in_progress", "name": "In Progress", "type": "in_progress"},
                {"key": "in_review", "name": "In Review", "type": "in_progress"},
                {"key": "done", "name": "Done", "type": "closed"},
                {"key": "reopened", "name": "Reopened", "type": "open"},
            ],
        },
        "custom_fields": [
            {
                "key": "priority",
                "name": "Priority",
                "type": "dropdown",
                "options": ["Critical", "High", "Medium", "Low"],
                "required": False,
            },
        ],
        "automation_rules": [],
    }


def parse_config(content: str) -> Optional[Dict[str, Any]]:
    """Parse a config file; None unless it is YAML describing a mapping."""
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.warning(f"Repository config is not valid YAML: {e}")
        return None
    if not isinstance(parsed, dict):
        logger.warning("Repository config must be a YAML mapping")
        return None
    return parsed


class ConfigSyncService:
    """Copies the repository's workflow config onto its project."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or get_settings().CONFIG_FILE_PATH

    async def sync_project_config(
        self,
        adapter: ProviderAdapter,
        access_token: str,
        ref: RepositoryRef,
        project_store: ProjectStore,
        project_id: str,
    ) -> bool:
        """
        Refresh a project's config from its repository.

        Never raises for a provider or parse failure; the project keeps
        whatever config it already had.

        Returns:
            True if the project config was written, False otherwise
        """
        try:
            content = await adapter.fetch_repository_file(access_token, ref, self.config_path)
        except RepositoryIntegrationError as e:
            logger.warning(f"Could not read {self.config_path} from {ref.full_name}: {e.message}")
            return False
        except Exception as e:
            logger.opt(exception=e).warning(f"Unexpected error reading {self.config_path} from {ref.full_name}")
            return False

        if content is None:
            return await self._store_default_config(project_store, project_id, ref)

        parsed = parse_config(content)
        if parsed is None:
            logger.info(f"Keeping existing config for project {project_id}; {self.config_path} is invalid")
            return False

        await project_store.update_config(project_id, content, parsed)
        logger.info(f"Updated project {project_id} config from {ref.full_name}:{self.config_path}")
        return True

    async def _store_default_config(self, project_store: ProjectStore, project_id: str, ref: RepositoryRef) -> bool:
        project = await project_store.find_by_id(project_id)
        if project is None or project.has_config:
            return False

        config = build_default_config(project)
        await project_store.update_config(project_id, yaml.safe_dump(config, sort_keys=False), config)
        logger.info(f"{ref.full_name} has no {self.config_path}; stored default config for project {project_id}")
        return True
