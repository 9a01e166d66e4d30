"""
Host inventory interface: the live state of installed software.

The reconciliation engine reads current versions and display names from the
host at snapshot time and again at reconciliation time. This module defines
that contract as a Protocol so any host can plug in its own source, plus a
dict-backed implementation for hosts that push their state in and for tests.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Tuple

from update_audit.utils.types import (
    KIND_CORE,
    KIND_PLUGIN,
    KIND_THEME,
    InstalledItem,
)


class HostInventory(Protocol):
    """
    Read-only view of the host's installed software.

    Implementations must answer from live state: after an update has been
    applied, core_version() and the installed maps report the new versions.
    """

    def core_version(self) -> str:
        """Currently running core version."""
        ...

    def installed_plugins(self) -> Dict[str, InstalledItem]:
        """Installed plugins keyed by main file (e.g. "foo/foo.php")."""
        ...

    def installed_themes(self) -> Dict[str, InstalledItem]:
        """Installed themes keyed by stylesheet slug."""
        ...

    def available_update(self, kind: str, identity: str) -> Optional[str]:
        """
        Version offered by the pending update for an item.

        Args:
            kind: core, plugin or theme
            identity: "core", plugin file or theme slug

        Returns:
            Offered version, or None when no update is offered
        """
        ...

    def available_translation(
        self, translation_type: str, slug: str, language: str
    ) -> Optional[str]:
        """Version of the language pack offered for an item, if any."""
        ...


@dataclass
class StaticInventory:
    """
    Mutable in-memory inventory.

    Hosts that cannot be queried directly push their state into it before
    raising signals; tests drive it to simulate an update being applied.
    """

    core: str = ""
    plugins: Dict[str, InstalledItem] = field(default_factory=dict)
    themes: Dict[str, InstalledItem] = field(default_factory=dict)
    updates: Dict[Tuple[str, str], str] = field(default_factory=dict)
    translations: Dict[Tuple[str, str, str], str] = field(default_factory=dict)

    def core_version(self) -> str:
        return self.core

    def installed_plugins(self) -> Dict[str, InstalledItem]:
        return dict(self.plugins)

    def installed_themes(self) -> Dict[str, InstalledItem]:
        return dict(self.themes)

    def available_update(self, kind: str, identity: str) -> Optional[str]:
        return self.updates.get((kind, identity))

    def available_translation(
        self, translation_type: str, slug: str, language: str
    ) -> Optional[str]:
        return self.translations.get((translation_type, slug, language))

    # Mutators used by hosts and tests

    def install_plugin(self, plugin_file: str, name: str, version: str) -> None:
        self.plugins[plugin_file] = InstalledItem(name=name, version=version)

    def install_theme(self, stylesheet: str, name: str, version: str) -> None:
        self.themes[stylesheet] = InstalledItem(name=name, version=version)

    def remove_plugin(self, plugin_file: str) -> None:
        self.plugins.pop(plugin_file, None)

    def remove_theme(self, stylesheet: str) -> None:
        self.themes.pop(stylesheet, None)

    def offer_update(self, kind: str, identity: str, version: str) -> None:
        self.updates[(kind, identity)] = version

    def offer_translation(
        self, translation_type: str, slug: str, language: str, version: str
    ) -> None:
        self.translations[(translation_type, slug, language)] = version


def installed_item(
    inventory: HostInventory, kind: str, identity: str
) -> Optional[InstalledItem]:
    """
    Live state of a single item.

    Core is reported as an InstalledItem without a name; callers supply the
    configured display name.
    """
    if kind == KIND_CORE:
        version = inventory.core_version()
        return InstalledItem(name="", version=version) if version else None
    if kind == KIND_PLUGIN:
        return inventory.installed_plugins().get(identity)
    if kind == KIND_THEME:
        return inventory.installed_themes().get(identity)
    return None
