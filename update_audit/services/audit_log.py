"""
Audit log service: the write path and the query/management surface.

This service provides:
- Best-effort recording of sanitized log entries (never raises into the
  host's update flow; failures are logged and counted)
- After-log listeners, e.g. for notification routing
- Filtered, paginated listing with an unpaginated total
- Single-entry deletion and age-based retention cleanup
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from update_audit.config import Settings, get_settings
from update_audit.db.database import with_unit_of_work
from update_audit.db.repositories import (
    RepositoryError,
    UpdateLogsRepository,
    VersionSnapshotsRepository,
)
from update_audit.utils.logging import get_logger
from update_audit.utils.sanitizer import (
    sanitize_entry,
    sanitize_initiation_mode,
    sanitize_kind,
    sanitize_status,
    sanitize_tenant_id,
)
from update_audit.utils.types import LogFilters, LogPage

logger = get_logger(__name__)

AfterLogListener = Callable[[int, Dict[str, Any]], Union[None, Awaitable[None]]]


class AuditLogService:
    """
    Single owner of persisted log entries.

    Every field runs through the sanitizer before it is written. Storage
    writes are single attempts: a failed insert yields None and bumps the
    insert_failures counter.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the service.

        Args:
            session_factory: Factory for database sessions
            settings: Application settings (defaults to global settings)
        """
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self._listeners: List[AfterLogListener] = []
        self._stats = {
            "inserted": 0,
            "insert_failures": 0,
            "skipped_missing_table": 0,
            "listener_failures": 0,
        }

    @property
    def stats(self) -> Dict[str, int]:
        """Counters for monitoring."""
        return dict(self._stats)

    def add_listener(self, listener: AfterLogListener) -> None:
        """Register a callback invoked with (log_id, entry) after each insert."""
        self._listeners.append(listener)

    async def record_operation(
        self,
        *,
        kind: str,
        action: str,
        item_name: str,
        item_slug: str,
        version_before: str = "",
        version_after: str = "",
        status: str = "success",
        message: str = "",
        trace: Any = None,
        actor_kind: str = "system",
        initiation_mode: str = "manual",
        batch_context: str = "",
        tenant_id: Optional[int] = None,
    ) -> Optional[int]:
        """
        Sanitize and persist one log entry.

        Args:
            kind: core, plugin, theme or translation
            action: Classified outcome
            item_name: Display name
            item_slug: Stable identifier (plugin file, theme slug, ...)
            version_before: Version before the operation
            version_after: Version after the operation
            status: success, error or cancelled
            message: Narration, markup allowed (converted to text)
            trace: Captured call stack
            actor_kind: system or user
            initiation_mode: manual, automatic or upload
            batch_context: bulk, single or ""
            tenant_id: Tenant, defaults to the configured one

        Returns:
            New entry id, or None if nothing was written
        """
        entry = sanitize_entry(
            {
                "tenant_id": tenant_id if tenant_id is not None else self.settings.default_tenant_id,
                "kind": kind,
                "action": action,
                "item_name": item_name,
                "item_slug": item_slug,
                "version_before": version_before,
                "version_after": version_after,
                "status": status,
                "message": message,
                "trace": trace,
                "actor_kind": actor_kind,
                "initiation_mode": initiation_mode,
                "batch_context": batch_context,
            },
            max_frames=self.settings.trace_max_frames,
            default_tenant=self.settings.default_tenant_id,
        )

        try:
            async with with_unit_of_work(self._session_factory) as session:
                log_id = await UpdateLogsRepository(session).insert(entry)
        except (RepositoryError, SQLAlchemyError) as e:
            # Log but don't fail the host operation
            self._stats["insert_failures"] += 1
            logger.error(
                "Failed to record update log entry",
                kind=entry["kind"],
                item_slug=entry["item_slug"],
                action=entry["action"],
                error=str(e),
            )
            return None

        if log_id is None:
            self._stats["skipped_missing_table"] += 1
            logger.warning(
                "Update log table missing, entry not recorded",
                kind=entry["kind"],
                item_slug=entry["item_slug"],
            )
            return None

        self._stats["inserted"] += 1
        logger.info(
            "Update log entry recorded",
            log_id=log_id,
            kind=entry["kind"],
            item_slug=entry["item_slug"],
            action=entry["action"],
            status=entry["status"],
            initiation_mode=entry["initiation_mode"],
        )
        await self._notify(log_id, entry)
        return log_id

    async def record_deletion(
        self,
        *,
        kind: str,
        item_name: str,
        item_slug: str,
        version_before: str = "",
        message: str = "",
        trace: Any = None,
        actor_kind: str = "system",
        tenant_id: Optional[int] = None,
    ) -> Optional[int]:
        """Persist an uninstall entry (always manual, success, no version after)."""
        return await self.record_operation(
            kind=kind,
            action="uninstall",
            item_name=item_name,
            item_slug=item_slug,
            version_before=version_before,
            version_after="",
            status="success",
            message=message,
            trace=trace,
            actor_kind=actor_kind,
            initiation_mode="manual",
            batch_context="",
            tenant_id=tenant_id,
        )

    async def _notify(self, log_id: int, entry: Dict[str, Any]) -> None:
        for listener in self._listeners:
            try:
                result = listener(log_id, dict(entry))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:  # Listeners must not break logging
                self._stats["listener_failures"] += 1
                logger.error(
                    "After-log listener failed",
                    log_id=log_id,
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(e),
                )

    # ===== Query surface =====

    def _normalize_filters(self, filters: Optional[LogFilters]) -> LogFilters:
        if filters is None:
            return LogFilters()
        return LogFilters(
            tenant_id=sanitize_tenant_id(filters.tenant_id, self.settings.default_tenant_id)
            if filters.tenant_id is not None
            else None,
            kind=sanitize_kind(filters.kind) if filters.kind else None,
            status=sanitize_status(filters.status) if filters.status else None,
            initiation_mode=sanitize_initiation_mode(filters.initiation_mode)
            if filters.initiation_mode
            else None,
        )

    def _page_size(self, per_page: Optional[int]) -> int:
        size = per_page if per_page is not None else self.settings.default_per_page
        return min(max(1, int(size)), self.settings.max_per_page)

    async def list_logs(
        self,
        filters: Optional[LogFilters] = None,
        page: int = 1,
        per_page: Optional[int] = None,
        order_by: str = "created_at",
        order: str = "desc",
    ) -> LogPage:
        """
        List entries, newest first by default.

        Args:
            filters: AND-combined filters
            page: 1-based page number
            per_page: Page size (default from settings, capped at max_per_page)
            order_by: id, created_at, kind, status, item_name or initiation_mode
            order: asc or desc

        Returns:
            LogPage with serialized entries and the unpaginated total.
            An empty page on storage failure.
        """
        filters = self._normalize_filters(filters)
        page = max(1, int(page))
        per_page = self._page_size(per_page)

        try:
            async with self._session_factory() as session:
                repo = UpdateLogsRepository(session)
                rows = await repo.query(filters, page, per_page, order_by, order)
                total = await repo.count(filters)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to list update logs", error=str(e))
            return LogPage(entries=[], total=0, page=page, per_page=per_page)

        return LogPage(
            entries=[row.to_dict() for row in rows],
            total=total,
            page=page,
            per_page=per_page,
        )

    async def count_logs(self, filters: Optional[LogFilters] = None) -> int:
        """Number of entries matching the filters."""
        try:
            async with self._session_factory() as session:
                return await UpdateLogsRepository(session).count(self._normalize_filters(filters))
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to count update logs", error=str(e))
            return 0

    async def delete_log(self, log_id: int) -> bool:
        """Delete one entry. False if it did not exist or on storage failure."""
        try:
            async with with_unit_of_work(self._session_factory) as session:
                deleted = await UpdateLogsRepository(session).delete_by_id(int(log_id))
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to delete update log", log_id=log_id, error=str(e))
            return False

        if deleted:
            logger.info("Update log entry deleted", log_id=log_id)
        return deleted

    async def cleanup(self, retention_days: int) -> int:
        """
        Delete entries older than retention_days and purge expired snapshots.

        Args:
            retention_days: Retention window; values below 1 delete nothing

        Returns:
            Number of deleted log entries
        """
        if retention_days < 1:
            return 0

        try:
            async with with_unit_of_work(self._session_factory) as session:
                deleted = await UpdateLogsRepository(session).delete_older_than(retention_days)
                purged = await VersionSnapshotsRepository(session).purge_expired()
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error(
                "Retention cleanup failed", retention_days=retention_days, error=str(e)
            )
            return 0

        logger.info(
            "Retention cleanup completed",
            retention_days=retention_days,
            deleted=deleted,
            snapshots_purged=purged,
        )
        return deleted
