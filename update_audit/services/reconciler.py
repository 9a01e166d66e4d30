"""
Reconciliation engine: turns host update signals into audit log entries.

One engine instance lives for one host process invocation. For each logical
operation it moves through:

    NotStarted -> Snapshotted -> Pending -> (CapturingFeedback)*
               -> Reconciled | Orphaned (flushed at shutdown)

- Snapshotted: the version before is persisted as early as the host allows
- Pending: best-known name/versions are buffered in memory
- CapturingFeedback: progress narration is collected
- Reconciled: a terminal signal (process complete, or the automatic sweep)
  consumed the pending entry and exactly one log entry was written

The already-logged set guarantees at most one entry per operation even
though the host can report the same operation through both terminal signals.
Operations never reconciled are written by the crash-recovery flush.
"""

from typing import List, Mapping, Optional, Sequence, Set

from update_audit.config import Settings, get_settings
from update_audit.services.audit_log import AuditLogService
from update_audit.services.classifier import classify
from update_audit.services.feedback import (
    CoreFeedback,
    NarrationSink,
    feedback_html_to_plain,
    format_item_title,
    format_note,
)
from update_audit.services.flusher import CrashRecoveryFlusher
from update_audit.services.inventory import HostInventory, installed_item
from update_audit.services.pending_buffer import PendingOperationBuffer
from update_audit.services.policy import PolicyStore
from update_audit.services.snapshot_tracker import VersionSnapshotTracker
from update_audit.utils.logging import bind_operation, get_logger
from update_audit.utils.tracing import capture_trace
from update_audit.utils.types import (
    CORE_IDENTITY,
    KIND_CORE,
    KIND_PLUGIN,
    KIND_THEME,
    KIND_TRANSLATION,
    CompletionEvent,
    CoreSignal,
    PendingOperation,
    PluginSignal,
    SweepResult,
    ThemeSignal,
    TranslationSignal,
    UpdateSignal,
    operation_key,
)

logger = get_logger(__name__)

# Host error codes meaning "the destination already exists": the host
# refused before touching anything, so there is nothing to audit.
DESTINATION_EXISTS_CODES = frozenset({"folder_exists", "destination_exists"})

UPLOAD_INSTALL_MESSAGE = "Installed from an uploaded file."

SIGNAL_TYPES = (CoreSignal, PluginSignal, ThemeSignal, TranslationSignal)


def _check_signal(signal: UpdateSignal) -> None:
    if not isinstance(signal, SIGNAL_TYPES):
        raise TypeError(f"Unsupported update signal: {type(signal).__name__}")


def _item_slug(signal: UpdateSignal) -> str:
    if isinstance(signal, PluginSignal):
        return signal.slug
    if isinstance(signal, ThemeSignal):
        return signal.stylesheet
    if isinstance(signal, TranslationSignal):
        return signal.slug or signal.language
    if isinstance(signal, CoreSignal):
        return CORE_IDENTITY
    raise TypeError(f"Unsupported update signal: {type(signal).__name__}")


class ReconciliationEngine:
    """
    Process-scoped state machine for update operations.

    Owns the pending buffer, the narration sink, core feedback, the
    already-logged set and the automatic flag. All writes go through the
    audit log service, which sanitizes them and never raises.
    """

    def __init__(
        self,
        *,
        audit_log: AuditLogService,
        snapshots: VersionSnapshotTracker,
        inventory: HostInventory,
        policy: PolicyStore,
        settings: Optional[Settings] = None,
        tenant_id: Optional[int] = None,
        actor_user_id: int = 0,
    ):
        """
        Initialize the engine for one process invocation.

        Args:
            audit_log: Log store write path
            snapshots: Durable version-before tracker
            inventory: Live host state
            policy: Policy store (logging on/off)
            settings: Application settings
            tenant_id: Tenant stamped on entries (defaults to settings)
            actor_user_id: Acting user; 0 means the system acted
        """
        self.settings = settings or get_settings()
        self.audit_log = audit_log
        self.snapshots = snapshots
        self.inventory = inventory
        self.policy = policy
        self.tenant_id = tenant_id or self.settings.default_tenant_id
        self.actor_kind = "user" if actor_user_id and actor_user_id > 0 else "system"

        self.pending = PendingOperationBuffer()
        self.narration = NarrationSink()
        self.core_feedback = CoreFeedback()
        self._already_logged: Set[str] = set()
        self._uninstalls_logged: Set[str] = set()
        self._automatic = False
        self._flusher = CrashRecoveryFlusher(self)

    async def __aenter__(self) -> "ReconciliationEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        # Runs on normal exit and when the process unwinds on an error
        await self.shutdown()
        return False

    # ===== State =====

    @property
    def core_name(self) -> str:
        return self.settings.core_display_name

    @property
    def initiation_mode(self) -> str:
        return "automatic" if self._automatic else "manual"

    def is_logged(self, kind: str, identity: str) -> bool:
        return operation_key(kind, identity) in self._already_logged

    async def is_logging_enabled(self) -> bool:
        return await self.policy.logging_enabled()

    async def commit(
        self,
        *,
        kind: str,
        identity: str,
        name: str,
        slug: str,
        action: str,
        version_before: str,
        version_after: str,
        status: str,
        message: str,
        trace: list,
        initiation_mode: str,
        batch_context: str = "",
    ) -> Optional[int]:
        """
        Write the single entry for an operation.

        A second commit for the same kind/identity in this process is a no-op.

        Returns:
            New entry id, or None if skipped or not written
        """
        key = operation_key(kind, identity)
        if key in self._already_logged:
            logger.debug("Operation already logged, skipping", key=key)
            return None
        self._already_logged.add(key)

        with bind_operation(kind=kind, identity=identity, tenant_id=self.tenant_id):
            return await self.audit_log.record_operation(
                kind=kind,
                action=action,
                item_name=name,
                item_slug=slug,
                version_before=version_before,
                version_after=version_after,
                status=status,
                message=message,
                trace=trace,
                actor_kind=self.actor_kind,
                initiation_mode=initiation_mode,
                batch_context=batch_context,
                tenant_id=self.tenant_id,
            )

    # ===== Early signals =====

    def mark_automatic(self) -> None:
        """The host is about to run its automatic update sweep."""
        self._automatic = True

    async def on_pre_update(self, signal: UpdateSignal) -> str:
        """
        Snapshot the version before an operation (NotStarted -> Snapshotted).

        Returns:
            The recorded version, "" if none was known
        """
        _check_signal(signal)
        if isinstance(signal, TranslationSignal):
            if signal.version:
                await self.snapshots.record_version(KIND_TRANSLATION, signal.identity, signal.version)
            return signal.version
        return await self.snapshots.record_before(signal.kind, signal.identity)

    async def on_core_download(self, package_url: str = "") -> PendingOperation:
        """
        The core package download is starting.

        Snapshots the running core version, opens the pending core entry with
        the offered version and starts collecting core step messages.
        """
        before = await self.snapshots.record_before(KIND_CORE, CORE_IDENTITY)
        self.core_feedback.start(package_url)
        return self.pending.begin(
            KIND_CORE,
            CORE_IDENTITY,
            name=self.core_name,
            slug=CORE_IDENTITY,
            version_before=before,
            version_after=self.inventory.available_update(KIND_CORE, CORE_IDENTITY) or "",
        )

    def on_core_feedback(self, text: str) -> None:
        self.core_feedback.collect(text)

    async def on_upload_source_selected(
        self, kind: str, source_slug: str, uploaded_name: str = ""
    ) -> Optional[str]:
        """
        An uploaded package was unpacked; snapshot the item it replaces.

        Returns:
            Identity of the replaced item, or None for a fresh install
        """
        if kind not in (KIND_PLUGIN, KIND_THEME):
            return None
        return await self.snapshots.record_upload_before(kind, source_slug, uploaded_name)

    def _translation_name(self, signal: TranslationSignal) -> str:
        if signal.translation_type == KIND_CORE:
            return f"{self.core_name} ({signal.language})"

        owner = signal.slug
        if signal.translation_type == KIND_PLUGIN:
            for plugin_file, item in self.inventory.installed_plugins().items():
                if PluginSignal(plugin_file).slug == signal.slug:
                    owner = item.name
                    break
        elif signal.translation_type == KIND_THEME:
            theme = self.inventory.installed_themes().get(signal.slug)
            if theme is not None:
                owner = theme.name
        return f"{owner} ({signal.language})"

    def _begin(self, signal: UpdateSignal) -> Optional[PendingOperation]:
        if isinstance(signal, (PluginSignal, ThemeSignal)):
            offered = self.inventory.available_update(signal.kind, signal.identity)
            if not offered:
                return None
            item = installed_item(self.inventory, signal.kind, signal.identity)
            return self.pending.begin(
                signal.kind,
                signal.identity,
                name=item.name if item and item.name else signal.identity,
                slug=_item_slug(signal),
                version_before=item.version if item else "",
                version_after=offered,
            )
        if isinstance(signal, TranslationSignal):
            return self.pending.begin(
                KIND_TRANSLATION,
                signal.identity,
                name=self._translation_name(signal),
                slug=_item_slug(signal),
                version_before=signal.version,
                version_after=self.inventory.available_translation(
                    signal.translation_type, signal.slug, signal.language
                )
                or "",
            )
        if isinstance(signal, CoreSignal):
            existing = self.pending.peek(KIND_CORE, CORE_IDENTITY)
            if existing is not None:
                return existing
            return self.pending.begin(
                KIND_CORE,
                CORE_IDENTITY,
                name=self.core_name,
                slug=CORE_IDENTITY,
                version_before=self.inventory.core_version(),
                version_after=self.inventory.available_update(KIND_CORE, CORE_IDENTITY) or "",
            )
        raise TypeError(f"Unsupported update signal: {type(signal).__name__}")

    def on_package_options_init(
        self, kind: str, signal: Optional[UpdateSignal] = None, *, is_bulk: bool = False
    ) -> Optional[PendingOperation]:
        """
        Package installation is about to begin (Snapshotted -> Pending).

        Arms narration capture for plugins, themes and translations and opens
        the pending entry when the item is known.
        """
        if kind in (KIND_PLUGIN, KIND_THEME, KIND_TRANSLATION):
            self.narration.start_capture()
        if signal is None:
            return None

        _check_signal(signal)
        entry = self._begin(signal)
        if entry is not None:
            logger.debug(
                "Pending operation opened",
                key=entry.key,
                version_before=entry.version_before,
                version_after=entry.version_after,
                is_bulk=is_bulk,
            )
        return entry

    def on_progress(self, text: str) -> None:
        self.narration.append(text)

    def on_item_boundary(self) -> None:
        """The host finished one item of a bulk run; keep capturing for the next."""
        self.narration.flush()

    # ===== Terminal signals =====

    @staticmethod
    def _details(messages: Sequence[str], narration: str = "") -> str:
        parts = [feedback_html_to_plain(m) for m in messages if m]
        if narration:
            parts.append(narration)
        return "\n".join(part for part in parts if part)

    async def on_process_complete(self, event: CompletionEvent) -> List[int]:
        """
        Authoritative end of an operation.

        Returns:
            Ids of the entries written
        """
        if not await self.is_logging_enabled():
            self.narration.stop_capture()
            self.core_feedback.drain()
            logger.debug("Logging disabled, completion not recorded", kind=event.kind)
            return []

        if event.error is not None:
            return await self._record_failure(event)

        narration = self.narration.stop_capture() if event.kind != KIND_CORE else ""
        details = self._details(event.messages, narration)
        if not details and event.kind != KIND_CORE and event.action == "install":
            details = UPLOAD_INSTALL_MESSAGE

        trace = capture_trace(self.settings.trace_max_frames)
        ids: List[Optional[int]] = []

        if event.kind == KIND_CORE:
            if event.action == "update":
                ids.append(await self._reconcile_core(details, trace))
        elif event.kind in (KIND_PLUGIN, KIND_THEME):
            batch = "bulk" if event.is_bulk else "single"
            targets = list(event.targets)
            hint = event.action
            mode = self.initiation_mode
            if not targets and event.action == "install" and event.installed is not None:
                installed = event.installed
                _check_signal(installed)
                targets = [installed]
                if await self.snapshots.has_before(installed.kind, installed.identity):
                    # An upload replaced an installed item
                    hint = "update"
                    mode = "upload"
            for target in targets:
                ids.append(await self._reconcile_item(target, hint, details, trace, mode, batch))
        elif event.kind == KIND_TRANSLATION:
            for target in event.targets:
                ids.append(await self._reconcile_translation(target, details, trace))
        else:
            logger.warning("Completion for unknown kind ignored", kind=event.kind)

        return [log_id for log_id in ids if log_id is not None]

    async def _reconcile_item(
        self,
        signal: UpdateSignal,
        hint: str,
        details: str,
        trace: list,
        mode: str,
        batch: str,
    ) -> Optional[int]:
        _check_signal(signal)
        kind, identity = signal.kind, signal.identity
        pending = self.pending.complete(kind, identity)
        before = await self.snapshots.consume_before(kind, identity)
        if not before and pending is not None:
            before = pending.version_before

        item = installed_item(self.inventory, kind, identity)
        after = item.version if item and item.version else ""
        if not after and pending is not None:
            after = pending.version_after
        name = (item.name if item else "") or (pending.name if pending else "") or identity

        action = classify(before, after, hint)
        message = format_note(format_item_title(action, name, after), details=details)
        return await self.commit(
            kind=kind,
            identity=identity,
            name=name,
            slug=pending.slug if pending and pending.slug else _item_slug(signal),
            action=action,
            version_before=before,
            version_after=after,
            status="success",
            message=message,
            trace=trace,
            initiation_mode=mode,
            batch_context=batch,
        )

    async def _reconcile_core(self, details: str, trace: list) -> Optional[int]:
        pending = self.pending.complete(KIND_CORE, CORE_IDENTITY)
        before = await self.snapshots.consume_before(KIND_CORE, CORE_IDENTITY)
        if not before and pending is not None:
            before = pending.version_before

        after = self.inventory.core_version() or (pending.version_after if pending else "")
        action = classify(before, after, "update")
        steps = self.core_feedback.drain()
        message = format_note(f"Core update to {self.core_name} {after}".strip(), steps, details)
        return await self.commit(
            kind=KIND_CORE,
            identity=CORE_IDENTITY,
            name=self.core_name,
            slug=CORE_IDENTITY,
            action=action,
            version_before=before,
            version_after=after,
            status="success",
            message=message,
            trace=trace,
            initiation_mode=self.initiation_mode,
        )

    async def _reconcile_translation(
        self, signal: TranslationSignal, details: str, trace: list
    ) -> Optional[int]:
        if not isinstance(signal, TranslationSignal):
            raise TypeError(f"Translation completion with {type(signal).__name__} target")
        identity = signal.identity
        pending = self.pending.complete(KIND_TRANSLATION, identity)
        before = await self.snapshots.consume_before(KIND_TRANSLATION, identity)
        if not before:
            before = pending.version_before if pending else signal.version

        after = pending.version_after if pending else ""
        if not after:
            after = self.inventory.available_translation(
                signal.translation_type, signal.slug, signal.language
            ) or ""
        name = (pending.name if pending else "") or self._translation_name(signal)

        action = classify(before, after, "update")
        message = format_note(format_item_title(action, name, after), details=details)
        return await self.commit(
            kind=KIND_TRANSLATION,
            identity=identity,
            name=name,
            slug=_item_slug(signal),
            action=action,
            version_before=before,
            version_after=after,
            status="success",
            message=message,
            trace=trace,
            initiation_mode=self.initiation_mode,
        )

    async def _record_failure(self, event: CompletionEvent) -> List[int]:
        error = event.error
        narration = self.narration.stop_capture()
        steps = self.core_feedback.drain() if event.kind == KIND_CORE else []

        targets: List[UpdateSignal] = list(event.targets)
        if not targets and event.installed is not None:
            targets = [event.installed]
        if not targets and event.kind == KIND_CORE:
            targets = [CoreSignal()]

        if error.code in DESTINATION_EXISTS_CODES:
            for target in targets:
                self.pending.complete(target.kind, target.identity)
            logger.info(
                "Destination already exists, failure not recorded",
                kind=event.kind,
                targets=[t.identity for t in targets],
            )
            return []

        details = self._details([error.message, *event.messages], narration)
        trace = capture_trace(self.settings.trace_max_frames)
        batch = ("bulk" if event.is_bulk else "single") if event.kind in (KIND_PLUGIN, KIND_THEME) else ""

        if not targets:
            # Failed install of a package the host never identified
            log_id = await self.commit(
                kind=event.kind,
                identity="",
                name="Unknown",
                slug="",
                action="failed",
                version_before="",
                version_after="",
                status="error",
                message=format_note(format_item_title("failed", "Unknown", ""), details=details),
                trace=trace,
                initiation_mode=self.initiation_mode,
                batch_context=batch,
            )
            return [log_id] if log_id is not None else []

        ids = []
        for target in targets:
            _check_signal(target)
            kind, identity = target.kind, target.identity
            pending = self.pending.complete(kind, identity)
            before = await self.snapshots.consume_before(kind, identity)
            if not before and pending is not None:
                before = pending.version_before
            after = pending.version_after if pending else ""

            if kind == KIND_CORE:
                name = self.core_name
            elif isinstance(target, TranslationSignal):
                name = (pending.name if pending else "") or self._translation_name(target)
            else:
                item = installed_item(self.inventory, kind, identity)
                name = (item.name if item else "") or (pending.name if pending else "") or identity
                if not before and item is not None:
                    before = item.version

            log_id = await self.commit(
                kind=kind,
                identity=identity,
                name=name,
                slug=_item_slug(target),
                action="failed",
                version_before=before,
                version_after=after,
                status="error",
                message=format_note(format_item_title("failed", name, after), steps, details),
                trace=trace,
                initiation_mode=self.initiation_mode,
                batch_context=batch,
            )
            if log_id is not None:
                ids.append(log_id)

        logger.warning(
            "Update operation failed",
            kind=event.kind,
            error_code=error.code,
            targets=[t.identity for t in targets],
        )
        return ids

    async def on_automatic_sweep_complete(
        self, results: Mapping[str, Sequence[SweepResult]]
    ) -> List[int]:
        """
        Secondary terminal signal: results of the automatic update sweep.

        Operations already logged by the primary completion are skipped and
        their leftover pending entries discarded.

        Args:
            results: Sweep results grouped by kind

        Returns:
            Ids of the entries written
        """
        if not await self.is_logging_enabled():
            return []

        trace = capture_trace(self.settings.trace_max_frames)
        ids = []
        for kind, items in results.items():
            for result in items:
                signal = result.signal
                _check_signal(signal)
                if self.is_logged(signal.kind, signal.identity):
                    self.pending.complete(signal.kind, signal.identity)
                    continue
                log_id = await self._reconcile_sweep_item(result, trace)
                if log_id is not None:
                    ids.append(log_id)
        return ids

    async def _reconcile_sweep_item(self, result: SweepResult, trace: list) -> Optional[int]:
        signal = result.signal
        kind, identity = signal.kind, signal.identity
        failed = bool(result.error)

        pending = self.pending.complete(kind, identity)
        before = await self.snapshots.consume_before(kind, identity)
        if not before and pending is not None:
            before = pending.version_before

        steps: List[str] = []
        if isinstance(signal, CoreSignal):
            name = self.core_name
            after = self.inventory.core_version()
            steps = self.core_feedback.drain()
        elif isinstance(signal, TranslationSignal):
            if not before:
                before = signal.version
            name = (pending.name if pending else "") or self._translation_name(signal)
            after = (pending.version_after if pending else "") or self.inventory.available_translation(
                signal.translation_type, signal.slug, signal.language
            ) or ""
        else:
            item = installed_item(self.inventory, kind, identity)
            name = (item.name if item else "") or (pending.name if pending else "") or result.name or identity
            after = (item.version if item else "") or (pending.version_after if pending else "")

        if failed:
            # Live state still reports the old version; record the attempted one
            after = pending.version_after if pending else ""
            action = "failed"
        else:
            action = classify(before, after, "update")

        if isinstance(signal, CoreSignal) and not failed:
            title = f"Core update to {self.core_name} {after}".strip()
        else:
            title = format_item_title(action, name, after)

        notes = self._details([result.error or "", *result.messages])
        return await self.commit(
            kind=kind,
            identity=identity,
            name=name,
            slug=(pending.slug if pending and pending.slug else _item_slug(signal)),
            action=action,
            version_before=before,
            version_after=after,
            status="error" if failed else "success",
            message=format_note(title, steps, notes),
            trace=trace,
            initiation_mode="automatic",
        )

    async def on_item_deleted(self, signal: UpdateSignal) -> Optional[int]:
        """
        A plugin or theme is being deleted; record the uninstall.

        Must be raised before the files are removed so the installed name
        and version can still be read.
        """
        _check_signal(signal)
        if not isinstance(signal, (PluginSignal, ThemeSignal)):
            logger.warning("Deletion of unsupported kind ignored", kind=signal.kind)
            return None
        if not await self.is_logging_enabled():
            return None

        key = operation_key(signal.kind, signal.identity)
        if key in self._uninstalls_logged:
            return None
        self._uninstalls_logged.add(key)

        item = installed_item(self.inventory, signal.kind, signal.identity)
        name = item.name if item and item.name else signal.identity
        version = item.version if item else ""

        with bind_operation(kind=signal.kind, identity=signal.identity, tenant_id=self.tenant_id):
            return await self.audit_log.record_deletion(
                kind=signal.kind,
                item_name=name,
                item_slug=_item_slug(signal),
                version_before=version,
                message=format_item_title("uninstall", name, version),
                trace=capture_trace(self.settings.trace_max_frames),
                actor_kind=self.actor_kind,
                tenant_id=self.tenant_id,
            )

    async def shutdown(self) -> int:
        """Process is ending: flush operations that were never reconciled."""
        return await self._flusher.flush()
