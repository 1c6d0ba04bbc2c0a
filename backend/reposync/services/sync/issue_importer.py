"""
Issue importer.

Walks a repository's issues page by page and reconciles them against local
issue records: unknown issues are created, issues whose provider ``updated_at``
moved forward are updated, everything else is skipped. Local issues are never
deleted because an issue disappearing remotely is not authoritative.

Each issue is committed as soon as it is written, so a provider failure or a
cancellation part-way through leaves every issue processed so far in place.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from reposync.providers.base import IssuePage, ProviderAdapter, ProviderIssue, RepositoryRef
from reposync.services.sync.cancellation import CancellationToken
from reposync.stores.issues import IssueStore
from reposync.utils.timeutils import utcnow
from logconfig.logger import get_logger

logger = get_logger()

PAGE_SIZE = 100
PROGRESS_EVERY = 10


@dataclass
class SyncResults:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return self.created + self.updated + self.skipped + self.failed

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["count"] = self.count
        return data


@dataclass
class SyncProgress:
    current: int = 0
    total: Optional[int] = None
    processed: int = 0
    stage: str = "fetching"  # fetching | matching | creating | updating

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ImportTarget:
    """Plain identifiers of the connection being imported."""
    repository_connection_id: str
    project_id: str
    repository_url: str
    service_type: str
    user_id: str


ProgressCallback = Callable[[SyncProgress], Awaitable[None]]


def build_external_id(service_type: str, repository_url: str, remote_issue_id: str) -> str:
    return f"{service_type.lower()}:{repository_url}:{remote_issue_id}"


class IssueImporter:
    """Reconciles provider issues into the local issue store."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        issue_store: IssueStore,
        page_size: int = PAGE_SIZE,
    ):
        self.adapter = adapter
        self.issue_store = issue_store
        self.page_size = page_size

    async def run(
        self,
        target: ImportTarget,
        access_token: str,
        ref: RepositoryRef,
        include_closed: bool = False,
        cancellation: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        results: Optional[SyncResults] = None,
    ) -> SyncResults:
        """
        Import every page of issues.

        Args:
            target: Connection identifiers
            access_token: Decrypted provider token
            ref: Repository coordinates
            include_closed: Import closed issues too
            cancellation: Token checked before each page fetch
            on_progress: Async callback receiving progress snapshots
            results: Accumulator; pass one in to keep partial counts when this raises

        Returns:
            SyncResults

        Raises:
            OperationCancelled: If the token was cancelled between pages
            ProviderAPIError: If a page fetch fails; earlier pages stay committed
        """
        results = results if results is not None else SyncResults()
        progress = SyncProgress()
        state = "all" if include_closed else "open"
        page = 1

        while True:
            if cancellation is not None:
                cancellation.raise_if_cancelled()

            progress.stage = "fetching"
            await self._report(on_progress, progress)

            issue_page: IssuePage = await self.adapter.fetch_issues_page(
                access_token, ref, state=state, page=page, per_page=self.page_size
            )
            progress.total = (progress.total or 0) + len(issue_page.issues)
            logger.debug(f"Fetched page {page} ({len(issue_page.issues)} issues) for {ref.full_name}")

            for remote in issue_page.issues:
                await self._reconcile(target, remote, results, progress)
                progress.current += 1
                progress.processed += 1
                if progress.processed % PROGRESS_EVERY == 0:
                    await self._report(on_progress, progress)

            await self._report(on_progress, progress)

            if not issue_page.has_next:
                break
            page += 1

        logger.info(
            f"Imported issues for {ref.full_name}: created={results.created} "
            f"updated={results.updated} skipped={results.skipped} failed={results.failed}"
        )
        return results

    async def _reconcile(
        self,
        target: ImportTarget,
        remote: ProviderIssue,
        results: SyncResults,
        progress: SyncProgress,
    ) -> None:
        progress.stage = "matching"
        try:
            existing = await self.issue_store.find_by_remote_id(target.repository_connection_id, remote.id)

            if existing is None:
                progress.stage = "creating"
                await self.issue_store.create(**self._create_fields(target, remote))
                await self.issue_store.commit()
                results.created += 1
            elif remote.updated_at is not None and (
                existing.remote_updated_at is None or remote.updated_at > existing.remote_updated_at
            ):
                progress.stage = "updating"
                await self.issue_store.update(existing, self._update_fields(remote))
                await self.issue_store.commit()
                results.updated += 1
            else:
                results.skipped += 1
        except Exception as e:
            # One bad record must not abort the rest of the import
            await self.issue_store.rollback()
            results.failed += 1
            results.errors.append({"issueId": remote.id, "error": str(e)})
            logger.warning(f"Failed to import issue {remote.id} (#{remote.number}): {e}")

    @staticmethod
    def _status_for(remote: ProviderIssue) -> str:
        return "Done" if remote.state == "closed" else "Backlog"

    def _create_fields(self, target: ImportTarget, remote: ProviderIssue) -> Dict[str, Any]:
        return {
            "project_id": target.project_id,
            "repository_connection_id": target.repository_connection_id,
            "remote_issue_id": remote.id,
            "remote_number": remote.number,
            "external_id": build_external_id(target.service_type, target.repository_url, remote.id),
            "html_url": remote.html_url,
            "title": remote.title,
            "description": remote.body,
            "status": self._status_for(remote),
            "type": "Task",
            "reporter_id": target.user_id,
            "labels": remote.labels,
            "assignees": remote.assignees,
            "remote_updated_at": remote.updated_at,
            "last_synced_at": utcnow(),
        }

    def _update_fields(self, remote: ProviderIssue) -> Dict[str, Any]:
        return {
            "title": remote.title,
            "description": remote.body,
            "status": self._status_for(remote),
            "labels": remote.labels,
            "assignees": remote.assignees,
            "html_url": remote.html_url,
            "remote_updated_at": remote.updated_at,
            "last_synced_at": utcnow(),
        }

    @staticmethod
    async def _report(on_progress: Optional[ProgressCallback], progress: SyncProgress) -> None:
        if on_progress is not None:
            await on_progress(progress)
