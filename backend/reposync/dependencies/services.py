"""
Service wiring.

One ``ServiceContainer`` is built per application and kept on ``app.state``;
route dependencies read from it. Tests build their own container with a
temporary database and fake provider adapters.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from reposync.core.settings import Settings, get_settings
from reposync.providers.provider_factory import ProviderFactory
from reposync.services.config_sync import ConfigSyncService
from reposync.services.connection_manager import ConnectionManager
from reposync.services.credential_vault import CredentialVault
from reposync.services.sync.orchestrator import SyncOrchestrator
from reposync.stores.operations import InMemoryOperationStore, OperationStore, SqlOperationStore
from logconfig.logger import get_logger

logger = get_logger()


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: Callable[[], AsyncSession]
    operation_store: OperationStore
    provider_factory: ProviderFactory
    vault: CredentialVault
    connection_manager: ConnectionManager
    orchestrator: SyncOrchestrator


def build_operation_store(settings: Settings, session_factory: Callable[[], AsyncSession]) -> OperationStore:
    if settings.OPERATION_STORE_BACKEND == "database":
        logger.info("Using database-backed sync operation store")
        return SqlOperationStore(session_factory)
    logger.info("Using in-memory sync operation store (single instance only)")
    return InMemoryOperationStore()


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    provider_factory: Optional[ProviderFactory] = None,
    vault: Optional[CredentialVault] = None,
    operation_store: Optional[OperationStore] = None,
) -> ServiceContainer:
    settings = settings or get_settings()
    if session_factory is None:
        from reposync.db.session import async_session_factory
        session_factory = async_session_factory

    provider_factory = provider_factory or ProviderFactory(
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        page_timeout=settings.SYNC_PAGE_TIMEOUT_SECONDS,
    )
    vault = vault or CredentialVault(settings.encryption_secret)
    operation_store = operation_store or build_operation_store(settings, session_factory)
    config_sync = ConfigSyncService(settings.CONFIG_FILE_PATH)

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        operation_store=operation_store,
        provider_factory=provider_factory,
        vault=vault,
        connection_manager=ConnectionManager(
            session_factory,
            provider_factory,
            vault,
            config_sync=config_sync,
            settings=settings,
        ),
        orchestrator=SyncOrchestrator(
            session_factory,
            operation_store,
            provider_factory,
            vault,
            config_sync=config_sync,
            settings=settings,
        ),
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_connection_manager(request: Request) -> ConnectionManager:
    return get_services(request).connection_manager


def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    return get_services(request).orchestrator
