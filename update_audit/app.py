"""
Application wiring for Update Audit Core.

Hosts embed the engine by entering lifespan() once and building one
ReconciliationEngine per process invocation (request, cron run, CLI call):

    async with lifespan() as runtime:
        async with runtime.engine_for(inventory, actor_user_id=7) as engine:
            ...raise host signals...

Leaving the engine block flushes interrupted operations.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from update_audit.config import Settings, get_settings
from update_audit.db import database
from update_audit.services.audit_log import AuditLogService
from update_audit.services.inventory import HostInventory
from update_audit.services.policy import AutoUpdatePolicy, PolicyLocks, PolicyStore
from update_audit.services.reconciler import ReconciliationEngine
from update_audit.services.retention import RetentionService
from update_audit.services.snapshot_tracker import VersionSnapshotTracker
from update_audit.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@dataclass
class AuditRuntime:
    """Shared services for one host deployment."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    audit_log: AuditLogService
    policy: PolicyStore

    def engine_for(
        self,
        inventory: HostInventory,
        *,
        tenant_id: Optional[int] = None,
        actor_user_id: int = 0,
    ) -> ReconciliationEngine:
        """Fresh engine for one process invocation."""
        return ReconciliationEngine(
            audit_log=self.audit_log,
            snapshots=VersionSnapshotTracker(self.session_factory, inventory, self.settings),
            inventory=inventory,
            # Policy is re-read per invocation
            policy=PolicyStore(self.session_factory, self.settings),
            settings=self.settings,
            tenant_id=tenant_id,
            actor_user_id=actor_user_id,
        )

    def retention(self) -> RetentionService:
        return RetentionService(self.audit_log, self.policy)

    def auto_updates(
        self, inventory: HostInventory, locks: Optional[PolicyLocks] = None
    ) -> AutoUpdatePolicy:
        return AutoUpdatePolicy(self.policy, inventory, locks)


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
) -> AuditRuntime:
    """Assemble the services around an existing session factory."""
    settings = settings or get_settings()
    return AuditRuntime(
        settings=settings,
        session_factory=session_factory,
        audit_log=AuditLogService(session_factory, settings),
        policy=PolicyStore(session_factory, settings),
    )


@asynccontextmanager
async def lifespan(settings: Optional[Settings] = None) -> AsyncGenerator[AuditRuntime, None]:
    """
    Startup and shutdown for an embedding host.

    Handles:
    - Logging configuration
    - Database engine creation (and tables, when auto_create_tables is set)
    - Engine disposal on exit
    """
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.log_level,
        app_env=settings.app_env,
        app_version=settings.app_version,
        json_format=settings.log_json,
    )
    logger.info(
        "Starting update audit",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.app_env,
    )

    await database.on_startup(settings)
    try:
        yield build_runtime(database.get_session_factory(settings), settings)
    finally:
        logger.info("Shutting down update audit")
        await database.on_shutdown()
