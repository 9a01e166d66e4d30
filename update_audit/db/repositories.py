"""
Repository layer for Update Audit Core database operations.

This module provides repository classes that encapsulate database access
patterns behind async interfaces:
- UpdateLogsRepository: append-only audit log with filtering and retention
- VersionSnapshotsRepository: durable version-before snapshots
- PolicyOptionsRepository: named JSON policy values

Every repository method first checks that its table exists. A store that has
not been provisioned yet answers with an empty result (None, [], 0, False)
instead of an error, so capture never breaks the host's update flow.
SQLAlchemy failures are wrapped in RepositoryError.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..utils.types import LogFilters
from .database import table_exists
from .models import PolicyOption, UpdateLog, VersionSnapshot

MAX_PER_PAGE = 200

ORDERABLE_COLUMNS = {
    "id": UpdateLog.id,
    "created_at": UpdateLog.created_at,
    "kind": UpdateLog.kind,
    "status": UpdateLog.status,
    "item_name": UpdateLog.item_name,
    "initiation_mode": UpdateLog.initiation_mode,
}


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class _TableAware:
    """Caches the table-existence check for the lifetime of the session."""

    table_name: str = ""

    def __init__(self, session: AsyncSession):
        """
        Initialize repository with database session.

        Args:
            session: Async SQLAlchemy session for database operations
        """
        self.session = session
        self._table_present: Optional[bool] = None

    async def has_table(self) -> bool:
        if self._table_present is None:
            try:
                self._table_present = await table_exists(self.session, self.table_name)
            except SQLAlchemyError as e:
                raise RepositoryError(f"Failed to inspect table {self.table_name}: {e}") from e
        return self._table_present


class UpdateLogsRepository(_TableAware):
    """
    Repository for the update audit log.

    Rows are insert-only; deletion happens by id or by retention age.
    """

    table_name = UpdateLog.__tablename__

    async def insert(self, entry: Dict[str, Any]) -> Optional[int]:
        """
        Append one entry.

        Args:
            entry: Sanitized column values (id and created_at are assigned here)

        Returns:
            The new entry id, or None when the table does not exist

        Raises:
            RepositoryError: If the insert fails
        """
        if not await self.has_table():
            return None

        try:
            values = {k: v for k, v in entry.items() if k not in ("id", "created_at")}
            log = UpdateLog(**values, created_at=datetime.now(timezone.utc))
            self.session.add(log)
            await self.session.flush()
            return log.id
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error inserting log entry: {e}") from e

    @staticmethod
    def _conditions(filters: Optional[LogFilters]) -> list:
        conditions = []
        if filters is None:
            return conditions
        if filters.tenant_id is not None:
            conditions.append(UpdateLog.tenant_id == filters.tenant_id)
        if filters.kind:
            conditions.append(UpdateLog.kind == filters.kind)
        if filters.status:
            conditions.append(UpdateLog.status == filters.status)
        if filters.initiation_mode:
            conditions.append(UpdateLog.initiation_mode == filters.initiation_mode)
        return conditions

    async def query(
        self,
        filters: Optional[LogFilters] = None,
        page: int = 1,
        per_page: int = 50,
        order_by: str = "created_at",
        order: str = "desc",
    ) -> List[UpdateLog]:
        """
        Fetch one page of entries matching all given filters.

        Args:
            filters: AND-combined filters; unset fields are ignored
            page: 1-based page number (values below 1 mean page 1)
            per_page: Page size, clamped to [1, 200]
            order_by: Whitelisted column name, unknown names mean created_at
            order: "asc" or "desc" (default newest first)

        Returns:
            Matching entries, empty when the table does not exist
        """
        if not await self.has_table():
            return []

        page = max(1, int(page))
        per_page = min(max(1, int(per_page)), MAX_PER_PAGE)
        column = ORDERABLE_COLUMNS.get(order_by, UpdateLog.created_at)
        descending = str(order).lower() != "asc"

        stmt = select(UpdateLog)
        conditions = self._conditions(filters)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        if descending:
            stmt = stmt.order_by(column.desc(), UpdateLog.id.desc())
        else:
            stmt = stmt.order_by(column.asc(), UpdateLog.id.asc())
        stmt = stmt.limit(per_page).offset((page - 1) * per_page)

        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error querying logs: {e}") from e

    async def count(self, filters: Optional[LogFilters] = None) -> int:
        """Count entries matching the filters (0 when the table is missing)."""
        if not await self.has_table():
            return 0

        stmt = select(func.count()).select_from(UpdateLog)
        conditions = self._conditions(filters)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        try:
            result = await self.session.execute(stmt)
            return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error counting logs: {e}") from e

    async def get(self, log_id: int) -> Optional[UpdateLog]:
        if not await self.has_table():
            return None
        try:
            return await self.session.get(UpdateLog, log_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error loading log {log_id}: {e}") from e

    async def delete_by_id(self, log_id: int) -> bool:
        """
        Delete a single entry.

        Returns:
            True if a row was deleted
        """
        if not await self.has_table():
            return False

        try:
            result = await self.session.execute(
                delete(UpdateLog).where(UpdateLog.id == log_id)
            )
            return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error deleting log {log_id}: {e}") from e

    async def delete_older_than(self, days: int) -> int:
        """
        Delete entries older than the given number of days.

        Args:
            days: Retention window; values below 1 delete nothing

        Returns:
            Number of deleted entries
        """
        if days < 1 or not await self.has_table():
            return 0

        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        try:
            result = await self.session.execute(
                delete(UpdateLog).where(UpdateLog.created_at < cutoff)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error applying retention: {e}") from e


class VersionSnapshotsRepository(_TableAware):
    """Repository for durable version-before snapshots."""

    table_name = VersionSnapshot.__tablename__

    async def upsert(self, kind: str, identity: str, version: str, ttl: timedelta) -> bool:
        """
        Store (or replace) the snapshot for an item.

        Returns:
            False when the table does not exist
        """
        if not await self.has_table():
            return False

        now = datetime.now(timezone.utc)
        try:
            result = await self.session.execute(
                select(VersionSnapshot).where(
                    VersionSnapshot.kind == kind, VersionSnapshot.identity == identity
                )
            )
            snapshot = result.scalar_one_or_none()
            if snapshot is None:
                snapshot = VersionSnapshot(kind=kind, identity=identity)
                self.session.add(snapshot)
            snapshot.version = version
            snapshot.captured_at = now
            snapshot.expires_at = now + ttl
            await self.session.flush()
            return True
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error storing snapshot {kind}:{identity}: {e}") from e

    async def get_version(self, kind: str, identity: str) -> Optional[str]:
        """Unexpired snapshot version, or None."""
        if not await self.has_table():
            return None

        try:
            result = await self.session.execute(
                select(VersionSnapshot.version).where(
                    VersionSnapshot.kind == kind,
                    VersionSnapshot.identity == identity,
                    VersionSnapshot.expires_at > datetime.now(timezone.utc),
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error reading snapshot {kind}:{identity}: {e}") from e

    async def delete(self, kind: str, identity: str) -> int:
        if not await self.has_table():
            return 0

        try:
            result = await self.session.execute(
                delete(VersionSnapshot).where(
                    VersionSnapshot.kind == kind, VersionSnapshot.identity == identity
                )
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error deleting snapshot {kind}:{identity}: {e}") from e

    async def purge_expired(self) -> int:
        """Delete snapshots whose expiry has passed."""
        if not await self.has_table():
            return 0

        try:
            result = await self.session.execute(
                delete(VersionSnapshot).where(
                    VersionSnapshot.expires_at <= datetime.now(timezone.utc)
                )
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error purging snapshots: {e}") from e


class PolicyOptionsRepository(_TableAware):
    """Repository for named policy options."""

    table_name = PolicyOption.__tablename__

    async def get(self, name: str, default: Any = None) -> Any:
        if not await self.has_table():
            return default

        try:
            option = await self.session.get(PolicyOption, name)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error reading option {name}: {e}") from e
        return default if option is None else option.value

    async def set(self, name: str, value: Any) -> bool:
        if not await self.has_table():
            return False

        try:
            option = await self.session.get(PolicyOption, name)
            if option is None:
                self.session.add(PolicyOption(name=name, value=value))
            else:
                option.value = value
            await self.session.flush()
            return True
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error writing option {name}: {e}") from e

    async def delete(self, name: str) -> bool:
        if not await self.has_table():
            return False

        try:
            result = await self.session.execute(
                delete(PolicyOption).where(PolicyOption.name == name)
            )
            return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error deleting option {name}: {e}") from e
