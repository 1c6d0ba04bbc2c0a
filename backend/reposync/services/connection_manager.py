"""
Repository connection manager.

Links a project to an external repository, either through the provider's OAuth
redirect flow or with a caller-supplied access token. Either way the order is
fixed: conflict check, config sync, webhook registration, then persistence.
A connection row is only written once the provider has accepted the webhook,
so a failed link never leaves a half-configured connection behind.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reposync.core.security import CurrentUser, can_sync_repositories
from reposync.core.settings import Settings, get_settings
from reposync.exceptions.repository_exceptions import (
    InvalidRepositoryUrlError,
    OAuthExchangeError,
    ProjectNotFoundError,
    ProviderNotConfiguredError,
    RepositoryAlreadyLinkedError,
    RepositoryIntegrationError,
    SyncPermissionError,
    UnsupportedRepositoryTypeError,
)
from reposync.models.repository_connection import RepositoryConnection, ServiceType
from reposync.providers.base import ProviderAdapter, RepositoryRef
from reposync.providers.provider_factory import ProviderFactory
from reposync.services.config_sync import ConfigSyncService
from reposync.services.credential_vault import CredentialVault
from reposync.services.oauth_state import OAuthState, OAuthStateCodec, resolve_return_to
from reposync.stores.connections import ConnectionStore
from reposync.stores.projects import ProjectStore
from logconfig.logger import get_logger

logger = get_logger()


def build_redirect_url(origin: str, path: str, **params: Any) -> str:
    """Append query parameters to a same-origin path, keeping its query and fragment."""
    parts = urlsplit(path)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, str(value)) for key, value in params.items() if value is not None)
    return origin.rstrip("/") + urlunsplit(("", "", parts.path or "/", urlencode(query), parts.fragment))


class ConnectionManager:
    """Link protocol for repository connections."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        provider_factory: ProviderFactory,
        vault: CredentialVault,
        state_codec: Optional[OAuthStateCodec] = None,
        config_sync: Optional[ConfigSyncService] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.provider_factory = provider_factory
        self.vault = vault
        self.settings = settings or get_settings()
        self.state_codec = state_codec or OAuthStateCodec(
            secret_key=self.settings.SECRET_KEY,
            algorithm=self.settings.ALGORITHM,
            ttl_seconds=self.settings.OAUTH_STATE_TTL_SECONDS,
        )
        self.config_sync = config_sync or ConfigSyncService(self.settings.CONFIG_FILE_PATH)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    @staticmethod
    def _require_permission(user: CurrentUser) -> None:
        if not can_sync_repositories(user.role):
            raise SyncPermissionError(
                "You don't have permission to connect repositories",
                user_role=user.role,
            )

    def _resolve_adapter(self, repository_type: str, repository_url: Optional[str] = None) -> Tuple[ServiceType, ProviderAdapter, Optional[RepositoryRef]]:
        service_type = self.provider_factory.resolve_service_type(repository_type)
        adapter = self.provider_factory.create_provider(service_type)
        ref = None
        if repository_url is not None:
            ref = adapter.require_repository_ref(repository_url)
        return service_type, adapter, ref

    @staticmethod
    async def _check_conflict(connections: ConnectionStore, repository_url: str, project_id: str) -> None:
        existing = await connections.find_by_repository_url(repository_url)
        if existing is not None and existing.project_id != project_id:
            raise RepositoryAlreadyLinkedError(repository_url, conflict_project_id=existing.project_id)

    async def _sync_config(
        self,
        session: AsyncSession,
        adapter: ProviderAdapter,
        access_token: str,
        ref: RepositoryRef,
        project_id: str,
    ) -> None:
        if await self.config_sync.sync_project_config(adapter, access_token, ref, ProjectStore(session), project_id):
            await session.commit()

    async def _link(
        self,
        session: AsyncSession,
        project_id: str,
        repository_url: str,
        service_type: ServiceType,
        adapter: ProviderAdapter,
        ref: RepositoryRef,
        access_token: str,
    ) -> RepositoryConnection:
        """
        Config sync, webhook registration and persistence.

        Raises:
            WebhookRegistrationError: Nothing has been persisted
            RepositoryAlreadyLinkedError: Another project linked the repository concurrently
        """
        await self._sync_config(session, adapter, access_token, ref, project_id)

        registration = await adapter.register_webhook(
            access_token,
            repository_url,
            self.settings.webhook_callback_url(service_type.value),
        )

        connections = ConnectionStore(session)
        await self._check_conflict(connections, repository_url, project_id)
        try:
            connection = await connections.upsert(
                project_id=project_id,
                repository_url=repository_url,
                service_type=service_type,
                access_token=self.vault.encrypt(access_token),
                webhook_secret=self.vault.encrypt(registration.webhook_secret),
                webhook_id=registration.webhook_id,
                is_active=True,
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            existing = await connections.find_by_repository_url(repository_url)
            if existing is not None and existing.project_id != project_id:
                raise RepositoryAlreadyLinkedError(repository_url, conflict_project_id=existing.project_id)
            raise

        logger.info(f"Linked {service_type.value} repository {ref.full_name} to project {project_id} (connection {connection.id})")
        return connection

    # ------------------------------------------------------------------
    # OAuth flow
    # ------------------------------------------------------------------

    async def build_authorization(
        self,
        repository_type: str,
        project_id: str,
        user: CurrentUser,
        return_to: Optional[str] = None,
        repository_url: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Start the OAuth flow.

        Returns:
            {"authUrl": provider authorize URL, "state": signed state token}

        Raises:
            UnsupportedRepositoryTypeError: Unknown repository type
            ProviderNotConfiguredError: Provider OAuth app is not configured
            ProjectNotFoundError: Unknown project
            InvalidRepositoryUrlError: repository_url does not belong to the provider
            RepositoryAlreadyLinkedError: repository_url is linked to another project
        """
        self._require_permission(user)
        service_type, adapter, ref = self._resolve_adapter(repository_type, repository_url)

        config = self.settings.get_oauth_app_config(service_type.value)
        if config is None:
            _, missing = self.settings.validate_provider_config(service_type.value)
            raise ProviderNotConfiguredError(service_type.value, missing=missing)

        async with self.session_factory() as session:
            if await ProjectStore(session).find_by_id(project_id) is None:
                raise ProjectNotFoundError(project_id)
            if repository_url is not None:
                await self._check_conflict(ConnectionStore(session), repository_url, project_id)

        state = self.state_codec.encode(
            OAuthState(
                project_id=project_id,
                repository_type=service_type.value,
                user_id=user.id,
                return_to=return_to,
                repository_url=repository_url,
            )
        )
        logger.info(f"Starting {service_type.value} OAuth for project {project_id}" + (f" ({ref.full_name})" if ref else ""))
        return {"authUrl": adapter.build_authorize_url(config, state), "state": state}

    async def handle_callback(
        self,
        request_origin: str,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> str:
        """
        Complete the OAuth flow.

        Always returns the URL to redirect the browser to; failures are reported
        through the ``error`` query parameter rather than raised. Failures with no
        specific code are reported as ``link_failed``.
        """
        default_path = self.settings.OAUTH_DEFAULT_RETURN_PATH
        decoded = self.state_codec.decode(state) if state else None
        return_path = resolve_return_to(decoded.return_to if decoded else None, request_origin, default_path)

        def redirect(**params: Any) -> str:
            return build_redirect_url(request_origin, return_path, **params)

        if error:
            logger.info(f"Provider returned OAuth error: {error}")
            return redirect(error=error, error_description=error_description)
        if not code:
            return redirect(error="missing_code")
        if not state:
            return redirect(error="missing_state")
        if decoded is None:
            return build_redirect_url(request_origin, default_path, error="invalid_state")

        try:
            return await self._complete_callback(decoded, code, redirect)
        except Exception:
            logger.exception(f"OAuth callback for project {decoded.project_id} failed unexpectedly")
            return redirect(error="link_failed")

    async def _complete_callback(self, decoded: OAuthState, code: str, redirect: Callable[..., str]) -> str:
        project_id = decoded.project_id
        repository_url = decoded.repository_url

        async with self.session_factory() as session:
            if await ProjectStore(session).find_by_id(project_id) is None:
                return redirect(error="project_not_found")
            if not repository_url or not decoded.repository_type:
                return redirect(error="missing_repository_info")

            try:
                service_type, adapter, ref = self._resolve_adapter(decoded.repository_type, repository_url)
            except UnsupportedRepositoryTypeError:
                return redirect(error="unsupported_type")
            except InvalidRepositoryUrlError:
                return redirect(error="invalid_repository_url")

            config = self.settings.get_oauth_app_config(service_type.value)
            if config is None:
                return redirect(error="unsupported_type")

            try:
                await self._check_conflict(ConnectionStore(session), repository_url, project_id)
            except RepositoryAlreadyLinkedError as e:
                logger.info(f"OAuth callback for {repository_url} rejected: linked to project {e.conflict_project_id}")
                return redirect(error="repository_conflict", conflictProjectId=e.conflict_project_id)

            try:
                access_token = await adapter.exchange_code_for_token(code, config)
            except OAuthExchangeError as e:
                logger.warning(f"{service_type.value} OAuth exchange failed for project {project_id}: {e.message}")
                return redirect(error="oauth_failed", error_description=e.message)

            try:
                connection = await self._link(session, project_id, repository_url, service_type, adapter, ref, access_token)
            except RepositoryAlreadyLinkedError as e:
                return redirect(error="repository_conflict", conflictProjectId=e.conflict_project_id)
            except RepositoryIntegrationError as e:
                logger.warning(f"Webhook registration failed for {repository_url}: {e.message}")
                return redirect(error="webhook_failed")

            return redirect(success="true", repositoryId=connection.id)

    # ------------------------------------------------------------------
    # Manual token flow and listing
    # ------------------------------------------------------------------

    async def connect_with_token(
        self,
        project_id: str,
        user: CurrentUser,
        repository_url: str,
        repository_type: str,
        access_token: str,
    ) -> Dict[str, Any]:
        """
        Link a repository with a caller-supplied access token.

        Returns:
            Public connection dict

        Raises:
            SyncPermissionError, ProjectNotFoundError, UnsupportedRepositoryTypeError,
            InvalidRepositoryUrlError, RepositoryAlreadyLinkedError,
            WebhookRegistrationError
        """
        self._require_permission(user)
        service_type, adapter, ref = self._resolve_adapter(repository_type, repository_url)

        async with self.session_factory() as session:
            if await ProjectStore(session).find_by_id(project_id) is None:
                raise ProjectNotFoundError(project_id)
            await self._check_conflict(ConnectionStore(session), repository_url, project_id)

            connection = await self._link(session, project_id, repository_url, service_type, adapter, ref, access_token)
            return connection.to_public_dict(webhook_configured=True)

    async def get_connection_info(self, project_id: str) -> List[Dict[str, Any]]:
        """List a project's connections without credentials."""
        async with self.session_factory() as session:
            if await ProjectStore(session).find_by_id(project_id) is None:
                raise ProjectNotFoundError(project_id)
            connections = await ConnectionStore(session).list_for_project(project_id)

        return [
            connection.to_public_dict(
                webhook_configured=self.vault.decrypt_or_none(connection.webhook_secret, field="webhook secret") is not None
            )
            for connection in connections
        ]
