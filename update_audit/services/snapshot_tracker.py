"""
Durable "version before" snapshots.

An update may span several host processes (download in one request,
install in another), so the version observed before the operation is
persisted rather than kept in memory. A snapshot is read once during
reconciliation and deleted after use.

Plugin snapshots also get an alias keyed by the main file's basename: an
uploaded package unpacked into a differently named directory is still
matched to the version it replaced.
"""

import posixpath
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from update_audit.config import Settings, get_settings
from update_audit.db.database import with_unit_of_work
from update_audit.db.repositories import RepositoryError, VersionSnapshotsRepository
from update_audit.services.inventory import HostInventory, installed_item
from update_audit.utils.logging import get_logger
from update_audit.utils.sanitizer import sanitize_version
from update_audit.utils.types import KIND_CORE, KIND_PLUGIN, KIND_THEME

logger = get_logger(__name__)

MAIN_FILE_ALIAS = "plugin_mainfile"


class VersionSnapshotTracker:
    """
    Records and consumes version-before snapshots.

    Storage failures degrade to "no snapshot": they are logged and the
    caller proceeds with whatever pending data it has.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        inventory: HostInventory,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self._inventory = inventory
        self.settings = settings or get_settings()

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.settings.snapshot_ttl_hours)

    @staticmethod
    def _alias(kind: str, identity: str) -> Optional[tuple]:
        if kind != KIND_PLUGIN or not identity:
            return None
        return MAIN_FILE_ALIAS, posixpath.basename(identity)

    async def record_before(self, kind: str, identity: str) -> str:
        """
        Snapshot the item's current version.

        Args:
            kind: core, plugin or theme
            identity: "core", plugin file or theme slug

        Returns:
            The recorded version, or "" if the item is unknown or has none
        """
        item = installed_item(self._inventory, kind, identity)
        version = item.version if item else ""
        if not version:
            logger.debug("No current version to snapshot", kind=kind, identity=identity)
            return ""

        await self.record_version(kind, identity, version)
        return version

    async def record_version(
        self, kind: str, identity: str, version: str, with_alias: bool = False
    ) -> bool:
        """
        Persist an explicit version-before.

        Args:
            kind: Item kind
            identity: Item identity
            version: Observed version (empty values are not stored)
            with_alias: Also store the plugin main-file alias

        Returns:
            True if the snapshot was written
        """
        version = sanitize_version(version)
        if not version or not identity:
            return False

        try:
            async with with_unit_of_work(self._session_factory) as session:
                repo = VersionSnapshotsRepository(session)
                written = await repo.upsert(kind, identity, version, self.ttl)
                alias = self._alias(kind, identity) if with_alias else None
                if written and alias:
                    await repo.upsert(alias[0], alias[1], version, self.ttl)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error(
                "Failed to record version snapshot",
                kind=kind,
                identity=identity,
                error=str(e),
            )
            return False

        if written:
            logger.debug("Version snapshot recorded", kind=kind, identity=identity, version=version)
        return written

    async def has_before(self, kind: str, identity: str) -> bool:
        """Non-destructive check for a snapshot (including the main-file alias)."""
        try:
            async with self._session_factory() as session:
                repo = VersionSnapshotsRepository(session)
                if await repo.get_version(kind, identity):
                    return True
                alias = self._alias(kind, identity)
                return bool(alias and await repo.get_version(*alias))
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to read version snapshot", kind=kind, identity=identity, error=str(e))
            return False

    async def consume_before(self, kind: str, identity: str) -> str:
        """
        Read and delete the snapshot for an item.

        Falls back to the main-file alias for plugins. Both rows are deleted
        whichever one answered.

        Returns:
            The snapshot version, or "" if none is stored
        """
        try:
            async with with_unit_of_work(self._session_factory) as session:
                repo = VersionSnapshotsRepository(session)
                version = await repo.get_version(kind, identity)
                alias = self._alias(kind, identity)
                if not version and alias:
                    version = await repo.get_version(*alias)
                await repo.delete(kind, identity)
                if alias:
                    await repo.delete(*alias)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to consume version snapshot", kind=kind, identity=identity, error=str(e))
            return ""

        return version or ""

    def resolve_upload_identity(
        self, kind: str, source_slug: str, uploaded_name: str = ""
    ) -> Optional[str]:
        """
        Find the installed item an uploaded package will replace.

        The unpacked directory name is tried first; failing that, the
        package's declared name is matched against installed display names.

        Args:
            kind: plugin or theme
            source_slug: Directory name of the unpacked upload
            uploaded_name: Name declared in the uploaded package header

        Returns:
            Plugin file or theme slug of the replaced item, or None
        """
        if kind == KIND_PLUGIN:
            installed = self._inventory.installed_plugins()
            for plugin_file in installed:
                if posixpath.dirname(plugin_file) == source_slug or plugin_file == source_slug:
                    return plugin_file
        elif kind == KIND_THEME:
            installed = self._inventory.installed_themes()
            if source_slug in installed:
                return source_slug
        else:
            return None

        if uploaded_name:
            for identity, item in installed.items():
                if item.name == uploaded_name:
                    return identity
        return None

    async def record_upload_before(
        self, kind: str, source_slug: str, uploaded_name: str = ""
    ) -> Optional[str]:
        """
        Snapshot the item an upload is about to replace.

        Returns:
            The resolved identity, or None when the upload is a fresh install
        """
        identity = self.resolve_upload_identity(kind, source_slug, uploaded_name)
        if identity is None:
            return None

        item = installed_item(self._inventory, kind, identity)
        if item is None or not item.version:
            return None

        await self.record_version(kind, identity, item.version, with_alias=True)
        logger.info(
            "Upload replaces installed item",
            kind=kind,
            identity=identity,
            version_before=item.version,
        )
        return identity

    async def purge_expired(self) -> int:
        try:
            async with with_unit_of_work(self._session_factory) as session:
                return await VersionSnapshotsRepository(session).purge_expired()
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to purge version snapshots", error=str(e))
            return 0

    async def record_core_before(self) -> str:
        return await self.record_before(KIND_CORE, "core")
