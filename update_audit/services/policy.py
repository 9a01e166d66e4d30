"""
Policy store and automatic-update policy.

The policy store persists two kinds of values in the options table:
- The settings document (logging on/off, retention, translation auto-updates,
  dismissed notices), validated with pydantic and defaulted from Settings
- Native auto-update keys (core major/minor mode, per-plugin and per-theme
  opt-in lists)

Host-imposed locks (environment constants that pin the policy) are passed in
as PolicyLocks and take precedence over stored values.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from update_audit.config import Settings, get_settings
from update_audit.db.database import with_unit_of_work
from update_audit.db.repositories import PolicyOptionsRepository, RepositoryError
from update_audit.services.inventory import HostInventory
from update_audit.utils.logging import get_logger

logger = get_logger(__name__)

SETTINGS_OPTION = "update_audit_settings"
CORE_MAJOR_OPTION = "auto_update_core_major"
CORE_MINOR_OPTION = "auto_update_core_minor"
CORE_DEV_OPTION = "auto_update_core_dev"
PLUGINS_OPTION = "auto_update_plugins"
THEMES_OPTION = "auto_update_themes"

CORE_MODES = ("all", "minor", "disabled")
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365
DEFAULT_RETENTION_DAYS = 90


class PolicySettings(BaseModel):
    """Stored settings document."""

    logging_enabled: bool = Field(default=True, description="Record update operations")
    retention_days: int = Field(
        default=DEFAULT_RETENTION_DAYS, description="Days to keep log entries"
    )
    auto_update_translations: bool = Field(
        default=True, description="Install language pack updates automatically"
    )
    dismissed_notices: List[str] = Field(
        default_factory=list, description="Lock notices the operator dismissed"
    )

    @field_validator("retention_days", mode="before")
    @classmethod
    def clamp_retention_days(cls, v: Any) -> int:
        """Clamp to [1, 365]; unparseable values fall back to 90."""
        try:
            days = int(v)
        except (TypeError, ValueError):
            return DEFAULT_RETENTION_DAYS
        return min(max(days, MIN_RETENTION_DAYS), MAX_RETENTION_DAYS)

    @field_validator("dismissed_notices", mode="before")
    @classmethod
    def dedupe_notices(cls, v: Any) -> List[str]:
        if not isinstance(v, (list, tuple)):
            return []
        seen: List[str] = []
        for name in v:
            if isinstance(name, str) and name and name not in seen:
                seen.append(name)
        return seen


class PolicyStore:
    """
    Reads and writes policy options.

    The settings document is cached for the lifetime of the store (one
    process invocation) and refreshed on save.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self._cached: Optional[PolicySettings] = None

    def _defaults(self) -> PolicySettings:
        return PolicySettings(
            logging_enabled=self.settings.logging_enabled,
            retention_days=self.settings.retention_days,
        )

    async def get_option(self, name: str, default: Any = None) -> Any:
        """Stored value, or default when absent or unreadable."""
        try:
            async with self._session_factory() as session:
                return await PolicyOptionsRepository(session).get(name, default)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to read policy option", option=name, error=str(e))
            return default

    async def set_option(self, name: str, value: Any) -> bool:
        try:
            async with with_unit_of_work(self._session_factory) as session:
                return await PolicyOptionsRepository(session).set(name, value)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to write policy option", option=name, error=str(e))
            return False

    async def delete_option(self, name: str) -> bool:
        try:
            async with with_unit_of_work(self._session_factory) as session:
                return await PolicyOptionsRepository(session).delete(name)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error("Failed to delete policy option", option=name, error=str(e))
            return False

    async def get_settings(self, refresh: bool = False) -> PolicySettings:
        """
        Current settings document merged over the configured defaults.

        A missing or invalid stored document yields the defaults.
        """
        if self._cached is not None and not refresh:
            return self._cached

        stored = await self.get_option(SETTINGS_OPTION)
        merged = self._defaults().model_dump()
        if isinstance(stored, dict):
            merged.update({k: v for k, v in stored.items() if k in merged})

        try:
            self._cached = PolicySettings.model_validate(merged)
        except ValidationError as e:
            logger.warning("Stored policy settings invalid, using defaults", errors=e.errors())
            self._cached = self._defaults()
        return self._cached

    async def save_settings(self, **changes: Any) -> PolicySettings:
        """
        Validate and persist changed settings.

        Raises:
            ValidationError: If a changed value has the wrong type
        """
        current = await self.get_settings()
        updated = PolicySettings.model_validate({**current.model_dump(), **changes})
        if await self.set_option(SETTINGS_OPTION, updated.model_dump()):
            self._cached = updated
            logger.info("Policy settings saved", changed=sorted(changes))
        return updated

    async def logging_enabled(self) -> bool:
        return (await self.get_settings()).logging_enabled

    async def retention_days(self) -> int:
        return (await self.get_settings()).retention_days


@dataclass(frozen=True)
class PolicyLocks:
    """
    Host-imposed overrides.

    Attributes:
        core_override: Pinned core mode value (True/"beta"/"rc"/... = all,
            "minor" = minor, False = disabled); None when not pinned
        locked_sections: Sections ("core", "plugins", "themes",
            "translations") the operator cannot change
    """

    core_override: Optional[Union[bool, str]] = None
    locked_sections: FrozenSet[str] = field(default_factory=frozenset)

    def is_locked(self, section: str) -> bool:
        if section == "core" and self.core_override is not None:
            return True
        return section in self.locked_sections


class AutoUpdatePolicy:
    """Operator controls for automatic updates."""

    def __init__(
        self,
        store: PolicyStore,
        inventory: HostInventory,
        locks: Optional[PolicyLocks] = None,
    ):
        self._store = store
        self._inventory = inventory
        self.locks = locks or PolicyLocks()

    async def get_core_config(self) -> Dict[str, Any]:
        """Core mode derived from the major/minor keys, plus the raw keys."""
        major = await self._store.get_option(CORE_MAJOR_OPTION, "unset")
        minor = await self._store.get_option(CORE_MINOR_OPTION, "enabled")
        dev = await self._store.get_option(CORE_DEV_OPTION, "enabled")

        if minor == "enabled" and major == "enabled":
            mode = "all"
        elif minor == "enabled":
            mode = "minor"
        else:
            mode = "disabled"

        override = self.locks.core_override
        if override is not None:
            if override is True or override in ("beta", "rc", "development", "branch-development"):
                mode = "all"
            elif override == "minor":
                mode = "minor"
            elif override is False:
                mode = "disabled"

        return {
            "mode": mode,
            "major": major,
            "minor": minor,
            "dev": dev,
            "overridden": override is not None,
        }

    async def get_core_mode(self) -> str:
        return (await self.get_core_config())["mode"]

    async def set_core_mode(self, mode: str) -> bool:
        """
        Set the core auto-update mode.

        Args:
            mode: all, minor or disabled

        Returns:
            False for unknown modes or when the host pins the core mode
        """
        if mode not in CORE_MODES or self.locks.is_locked("core"):
            return False

        if mode == "all":
            values = {CORE_MAJOR_OPTION: "enabled", CORE_MINOR_OPTION: "enabled"}
        elif mode == "minor":
            values = {CORE_MAJOR_OPTION: "unset", CORE_MINOR_OPTION: "enabled"}
        else:
            values = {CORE_MAJOR_OPTION: "unset", CORE_MINOR_OPTION: "disabled"}

        for name, value in values.items():
            if not await self._store.set_option(name, value):
                return False

        logger.info("Core auto-update mode changed", mode=mode)
        return True

    async def _toggle(self, option: str, identity: str, enable: bool, installed: List[str]) -> bool:
        if identity not in installed:
            return False

        current = await self._store.get_option(option, [])
        selected = [item for item in (current or []) if isinstance(item, str)]
        if enable and identity not in selected:
            selected.append(identity)
        elif not enable:
            selected = [item for item in selected if item != identity]

        # Drop entries for items that are no longer installed
        selected = [item for item in selected if item in installed]
        return await self._store.set_option(option, selected)

    async def toggle_plugin(self, plugin_file: str, enable: bool) -> bool:
        """Opt a plugin in or out of automatic updates. False if not installed."""
        if self.locks.is_locked("plugins"):
            return False
        return await self._toggle(
            PLUGINS_OPTION, plugin_file, enable, list(self._inventory.installed_plugins())
        )

    async def toggle_theme(self, stylesheet: str, enable: bool) -> bool:
        """Opt a theme in or out of automatic updates. False if not installed."""
        if self.locks.is_locked("themes"):
            return False
        return await self._toggle(
            THEMES_OPTION, stylesheet, enable, list(self._inventory.installed_themes())
        )

    async def set_translations(self, enable: bool) -> bool:
        if self.locks.is_locked("translations"):
            return False
        await self._store.save_settings(auto_update_translations=bool(enable))
        return True

    async def dismiss_notice(self, name: str) -> bool:
        settings = await self._store.get_settings()
        if name in settings.dismissed_notices:
            return True
        await self._store.save_settings(dismissed_notices=[*settings.dismissed_notices, name])
        return True

    async def snapshot(self) -> Dict[str, Any]:
        """Everything an operator screen needs in one call."""
        plugin_opt_in = set(await self._store.get_option(PLUGINS_OPTION, []) or [])
        theme_opt_in = set(await self._store.get_option(THEMES_OPTION, []) or [])
        settings = await self._store.get_settings()

        plugins = [
            {
                "file": plugin_file,
                "name": item.name,
                "version": item.version,
                "auto_update": plugin_file in plugin_opt_in,
                "update_available": self._inventory.available_update("plugin", plugin_file),
            }
            for plugin_file, item in self._inventory.installed_plugins().items()
        ]
        themes = [
            {
                "stylesheet": stylesheet,
                "name": item.name,
                "version": item.version,
                "auto_update": stylesheet in theme_opt_in,
                "update_available": self._inventory.available_update("theme", stylesheet),
            }
            for stylesheet, item in self._inventory.installed_themes().items()
        ]

        return {
            "core": await self.get_core_config(),
            "plugins": sorted(plugins, key=lambda p: p["name"].lower()),
            "themes": sorted(themes, key=lambda t: t["name"].lower()),
            "translations": {"auto_update": settings.auto_update_translations},
            "dismissed_notices": list(settings.dismissed_notices),
            "locked_sections": sorted(
                s for s in ("core", "plugins", "themes", "translations") if self.locks.is_locked(s)
            ),
        }
