from dependency_injector import containers, providers

from creditsync.config import Settings
from creditsync.database.session import db_session as request_db_session
from creditsync.database.session import new_session
from creditsync.providers.processor import build_customer_directory
from creditsync.services.admin_reconciliation_service import AdminReconciliationService
from creditsync.services.credit_ledger_service import CreditLedgerService
from creditsync.services.event_reconciler_service import build_reconciliation_services


class ConfigModule(containers.DeclarativeContainer):
    """Application configuration."""

    config = providers.Singleton(Settings)


class RepositoryModule(containers.DeclarativeContainer):
    """Request-scoped database session (released by the HTTP middleware)."""

    db_session = providers.Object(request_db_session)


class ServiceModule(containers.DeclarativeContainer):
    """Service layer dependencies."""

    config = providers.DependenciesContainer()
    repositories = providers.DependenciesContainer()

    customer_directory = providers.Singleton(
        build_customer_directory, settings=config.config
    )

    # 원장/매칭/정합성 서비스는 같은 세션과 같은 작업 단위를 공유
    reconciliation = providers.Factory(
        build_reconciliation_services,
        db=repositories.db_session,
        directory=customer_directory,
        settings=config.config,
        session_factory=providers.Object(new_session),
    )

    credit_ledger_service = providers.Factory(
        CreditLedgerService, db=repositories.db_session, settings=config.config
    )
    event_reconciler_service = reconciliation.provided.reconciler
    admin_reconciliation_service = providers.Factory(
        AdminReconciliationService, services=reconciliation
    )


class Container(containers.DeclarativeContainer):
    """Application container."""

    wiring_config = containers.WiringConfiguration(
        modules=[
            "creditsync.routers.admin_reconciliation_router",
            "creditsync.routers.credits_router",
            "creditsync.routers.webhook_router",
        ],
    )

    config = providers.Container(ConfigModule)
    repositories = providers.Container(RepositoryModule)
    services = providers.Container(
        ServiceModule, config=config, repositories=repositories
    )
