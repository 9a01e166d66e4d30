"""
Type definitions and data classes for Update Audit Core.

This module contains the shared value types passed between the host and the
reconciliation engine:
- UpdateSignal variants identifying the item an operation touches
- PendingOperation records buffered while an operation is in flight
- CompletionEvent / SweepResult describing terminal host signals
- LogFilters / LogPage used by the query surface
"""

import posixpath
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

KIND_CORE = "core"
KIND_PLUGIN = "plugin"
KIND_THEME = "theme"
KIND_TRANSLATION = "translation"

KINDS = (KIND_CORE, KIND_PLUGIN, KIND_THEME, KIND_TRANSLATION)

CORE_IDENTITY = "core"


def operation_key(kind: str, identity: str) -> str:
    """Key used by the pending buffer and the already-logged set."""
    return f"{kind}:{identity}"


@dataclass(frozen=True)
class CoreSignal:
    """The core platform itself."""

    @property
    def kind(self) -> str:
        return KIND_CORE

    @property
    def identity(self) -> str:
        return CORE_IDENTITY


@dataclass(frozen=True)
class PluginSignal:
    """
    A plugin, identified by its main file relative to the plugins root.

    Attributes:
        plugin_file: e.g. "foo/foo.php", or "hello.php" for single-file plugins
    """

    plugin_file: str

    @property
    def kind(self) -> str:
        return KIND_PLUGIN

    @property
    def identity(self) -> str:
        return self.plugin_file

    @property
    def slug(self) -> str:
        """Directory name of the plugin, or the file itself when it has none."""
        directory = posixpath.dirname(self.plugin_file)
        return directory if directory not in ("", ".") else self.plugin_file

    @property
    def main_file(self) -> str:
        """Basename of the main file, used to match uploads in renamed folders."""
        return posixpath.basename(self.plugin_file)


@dataclass(frozen=True)
class ThemeSignal:
    """A theme, identified by its stylesheet (directory) slug."""

    stylesheet: str

    @property
    def kind(self) -> str:
        return KIND_THEME

    @property
    def identity(self) -> str:
        return self.stylesheet


@dataclass(frozen=True)
class TranslationSignal:
    """
    A language pack for core, a plugin or a theme.

    Attributes:
        language: Locale code, e.g. "de_DE"
        slug: Owning item slug ("default" or empty for core)
        translation_type: "core", "plugin" or "theme"
        version: Installed language pack version, if known
    """

    language: str
    slug: str = ""
    translation_type: str = KIND_CORE
    version: str = ""

    @property
    def kind(self) -> str:
        return KIND_TRANSLATION

    @property
    def identity(self) -> str:
        if self.translation_type == KIND_CORE:
            return f"core_{self.language}"
        return f"{self.slug}_{self.language}"


UpdateSignal = Union[CoreSignal, PluginSignal, ThemeSignal, TranslationSignal]


@dataclass
class PendingOperation:
    """
    Best-known facts about an in-flight operation.

    Created when package installation begins; consumed by exactly one
    reconciliation or by the crash-recovery flush.
    """

    kind: str
    identity: str
    name: str = ""
    slug: str = ""
    version_before: str = ""
    version_after: str = ""

    @property
    def key(self) -> str:
        return operation_key(self.kind, self.identity)


@dataclass(frozen=True)
class InstalledItem:
    """Live state of an installed plugin or theme."""

    name: str
    version: str = ""


@dataclass(frozen=True)
class OperationError:
    """Error reported by a terminal host signal."""

    code: str
    message: str = ""


@dataclass
class CompletionEvent:
    """
    Authoritative end-of-operation signal from the host.

    Attributes:
        kind: Item kind the operation touched
        action: Host's action hint ("update", "install", ...)
        targets: Items the operation processed (empty for fresh installs)
        installed: Item created by an install without explicit targets
        is_bulk: The host processed the targets as one bulk run
        error: Set when the operation failed as a whole
        messages: Result or skin messages reported by the host
    """

    kind: str
    action: str = "update"
    targets: Sequence[UpdateSignal] = field(default_factory=list)
    installed: Optional[UpdateSignal] = None
    is_bulk: bool = False
    error: Optional[OperationError] = None
    messages: Sequence[str] = field(default_factory=list)


@dataclass
class SweepResult:
    """Per-item result of the host's automatic update sweep."""

    signal: UpdateSignal
    error: Optional[str] = None
    messages: Sequence[str] = field(default_factory=list)
    name: str = ""


@dataclass
class LogFilters:
    """AND-combined filters for log queries. None means unfiltered."""

    tenant_id: Optional[int] = None
    kind: Optional[str] = None
    status: Optional[str] = None
    initiation_mode: Optional[str] = None


@dataclass
class LogPage:
    """One page of log entries plus the unpaginated total."""

    entries: List[Dict[str, Any]]
    total: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.per_page - 1) // self.per_page
