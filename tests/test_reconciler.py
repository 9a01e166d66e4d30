"""
Tests for the reconciliation engine.

Each test drives one simulated host process through the same signal
sequence the host raises, mutating the inventory where the host would
have applied the update, and then reads back the log store.
"""

import pytest

from update_audit.services.flusher import INTERRUPTED_MESSAGE
from update_audit.utils.types import (
    CompletionEvent,
    CoreSignal,
    LogFilters,
    OperationError,
    PluginSignal,
    SweepResult,
    ThemeSignal,
    TranslationSignal,
)

FOO = PluginSignal("foo/foo.php")
HELLO = PluginSignal("hello.php")
THEME = ThemeSignal("twentytwentyfour")


async def _entries(audit_log):
    page = await audit_log.list_logs(order_by="id", order="asc")
    return page.entries


async def _start_plugin_update(reconciler, inventory, signal=FOO, offered="1.1", is_bulk=False):
    inventory.offer_update("plugin", signal.identity, offered)
    await reconciler.on_pre_update(signal)
    return reconciler.on_package_options_init("plugin", signal, is_bulk=is_bulk)


class TestManualUpdates:
    """Primary completion path."""

    async def test_plugin_update(self, reconciler, inventory, audit_log):
        """Foo 1.0 -> 1.1 through the updater."""
        await _start_plugin_update(reconciler, inventory)
        reconciler.on_progress("<p>Downloading update&#8230;</p>")
        reconciler.on_progress("<p>Plugin updated successfully.</p>")
        inventory.install_plugin("foo/foo.php", "Foo", "1.1")

        ids = await reconciler.on_process_complete(
            CompletionEvent(kind="plugin", action="update", targets=[FOO])
        )

        assert len(ids) == 1
        [entry] = await _entries(audit_log)
        assert entry["action"] == "update"
        assert entry["status"] == "success"
        assert entry["item_name"] == "Foo"
        assert entry["item_slug"] == "foo"
        assert entry["version_before"] == "1.0"
        assert entry["version_after"] == "1.1"
        assert entry["initiation_mode"] == "manual"
        assert entry["batch_context"] == "single"
        assert entry["actor_kind"] == "system"
        assert entry["message"] == (
            "Updated Foo to 1.1\n\nDownloading update…\nPlugin updated successfully."
        )
        assert isinstance(entry["trace"], list)

    async def test_theme_downgrade_detected_from_versions(self, reconciler, inventory, audit_log):
        inventory.offer_update("theme", "twentytwentyfour", "0.9")
        await reconciler.on_pre_update(THEME)
        reconciler.on_package_options_init("theme", THEME)
        inventory.install_theme("twentytwentyfour", "Twenty Twenty-Four", "0.9")

        await reconciler.on_process_complete(CompletionEvent(kind="theme", targets=[THEME]))

        [entry] = await _entries(audit_log)
        assert entry["action"] == "downgrade"
        assert entry["message"].startswith("Rolled back Twenty Twenty-Four to 0.9")

    async def test_bulk_update(self, reconciler, inventory, audit_log):
        await _start_plugin_update(reconciler, inventory, FOO, "1.1", is_bulk=True)
        reconciler.on_progress("Updating Foo")
        reconciler.on_item_boundary()
        await _start_plugin_update(reconciler, inventory, HELLO, "1.7.3", is_bulk=True)
        reconciler.on_progress("Updating Hello Dolly")
        inventory.install_plugin("foo/foo.php", "Foo", "1.1")
        inventory.install_plugin("hello.php", "Hello Dolly", "1.7.3")

        ids = await reconciler.on_process_complete(
            CompletionEvent(kind="plugin", targets=[FOO, HELLO], is_bulk=True)
        )

        assert len(ids) == 2
        entries = await _entries(audit_log)
        assert [e["item_slug"] for e in entries] == ["foo", "hello.php"]
        assert {e["batch_context"] for e in entries} == {"bulk"}
        assert "Updating Foo\nUpdating Hello Dolly" in entries[0]["message"]

    async def test_same_version_reinstall(self, reconciler, inventory, audit_log):
        await _start_plugin_update(reconciler, inventory, offered="1.0")

        await reconciler.on_process_complete(CompletionEvent(kind="plugin", targets=[FOO]))

        [entry] = await _entries(audit_log)
        assert entry["action"] == "same_version"

    async def test_pending_data_used_when_inventory_no_longer_knows_item(
        self, reconciler, inventory, audit_log
    ):
        await _start_plugin_update(reconciler, inventory)
        inventory.remove_plugin("foo/foo.php")

        await reconciler.on_process_complete(CompletionEvent(kind="plugin", targets=[FOO]))

        [entry] = await _entries(audit_log)
        assert entry["item_name"] == "Foo"
        assert entry["version_after"] == "1.1"

    async def test_user_actor_and_tenant(self, runtime, inventory, audit_log):
        reconciler = runtime.engine_for(inventory, tenant_id=3, actor_user_id=7)
        await _start_plugin_update(reconciler, inventory)
        inventory.install_plugin("foo/foo.php", "Foo", "1.1")

        await reconciler.on_process_complete(CompletionEvent(kind="plugin", targets=[FOO]))

        page = await audit_log.list_logs(LogFilters(tenant_id=3))
        assert page.total == 1
        assert page.entries[0]["actor_kind"] == "user"


class TestUploads:
    """Packages installed from an uploaded archive."""

    async def test_upload_replacing_newer_version_is_downgrade(
        self, reconciler, inventory, audit_log
    ):
        """An upload of Foo 1.9 over Foo 2.0 arrives as an install."""
        inventory.install_plugin("foo/foo.php", "Foo", "2.0")

        replaced = await reconciler.on_upload_source_selected("plugin", "foo-renamed", "Foo")
        assert replaced == "foo/foo.php"
        reconciler.on_package_options_init("plugin")
        inventory.install_plugin("foo/foo.php", "Foo", "1.9")

        await reconciler.on_process_complete(
            CompletionEvent(kind="plugin", action="install", installed=FOO)
        )

        [entry] = await _entries(audit_log)
        assert entry["action"] == "downgrade"
        assert entry["initiation_mode"] == "upload"
        assert entry["version_before"] == "2.0"
        assert entry["version_after"] == "1.9"
        assert entry["message"] == "Rolled back Foo to 1.9\n\nInstalled from an uploaded file."

    async def test_upload_into_renamed_directory_uses_alias(
        self, reconciler, inventory, audit_log
    ):
        await reconciler.on_upload_source_selected("plugin", "foo-renamed", "Foo")
        inventory.install_plugin("foo-renamed/foo.php", "Foo", "1.2")

        await reconciler.on_process_complete(
            CompletionEvent(
                kind="plugin", action="install", installed=PluginSignal("foo-renamed/foo.php")
            )
        )

        [entry] = await _entries(audit_log)
        assert entry["action"] == "update"
        assert entry["version_before"] == "1.0"
        assert entry["initiation_mode"] == "upload"

    async def test_fresh_install(self, reconciler, inventory, audit_log):
        assert await reconciler.on_upload_source_selected("plugin", "bar", "Bar") is None
        reconciler.on_package_options_init("plugin")
        inventory.install_plugin("bar/bar.php", "Bar", "1.0")

        await reconciler.on_process_complete(
            CompletionEvent(kind="plugin", action="install", installed=PluginSignal("bar/bar.php"))
        )

        [entry] = await _entries(audit_log)
        assert entry["action"] == "install"
        assert entry["initiation_mode"] == "manual"
        assert entry["version_before"] == ""
        assert entry["message"].startswith("Installed Bar 1.0")


class TestFailures:
    """Operations that end with an error."""

    async def test_failed_update(self, reconciler, inventory, audit_log):
        await _start_plugin_update(reconciler, inventory)

        ids = await reconciler.on_process_complete(
            CompletionEvent(
                kind="plugin",
                targets=[FOO],
                error=OperationError("download_failed", "Download failed."),
            )
        )

        assert len(ids) == 1
        [entry] = await _entries(audit_log)
        assert entry["action"] == "failed"
        assert entry["status"] == "error"
        assert entry["version_before"] == "1.0"
        assert entry["version_after"] == "1.1"
        assert entry["message"] == "Failed to update Foo to 1.1\n\nDownload failed."

    async def test_destination_exists_is_not_recorded(self, reconciler, inventory, audit_log):
        await _start_plugin_update(reconciler, inventory)

        ids = await reconciler.on_process_complete(
            CompletionEvent(
                kind="plugin",
                action="install",
                targets=[FOO],
                error=OperationError("folder_exists", "Destination folder already exists."),
            )
        )

        assert ids == []
        assert await reconciler.shutdown() == 0
        assert await audit_log.count_logs() == 0

    async def test_failed_install_of_unknown_package(self, reconciler, audit_log):
        reconciler.on_package_options_init("plugin")

        await reconciler.on_process_complete(
            CompletionEvent(
                kind="plugin",
                action="install",
                error=OperationError("incompatible_archive", "The package could not be installed."),
            )
        )

        [entry] = await _entries(audit_log)
        assert entry["item_name"] == "Unknown"
        assert entry["action"] == "failed"
        assert entry["status"] == "error"


class TestCrashRecovery:
    """Operations the host never finished."""

    async def test_interrupted_update_flushed_on_exit(self, reconciler, inventory, audit_log):
        with pytest.raises(RuntimeError):
            async with reconciler:
                await _start_plugin_update(reconciler, inventory)
                reconciler.on_progress("Downloading update…")
                raise RuntimeError("Allowed memory size exhausted")

        [entry] = await _entries(audit_log)
        assert entry["status"] == "error"
        assert entry["action"] == "update"
        assert entry["version_before"] == "1.0"
        assert entry["version_after"] == "1.1"
        assert "may not have completed" in entry["message"]
        assert entry["message"] == INTERRUPTED_MESSAGE

    async def test_flush_runs_once(self, reconciler, inventory, audit_log):
        await _start_plugin_update(reconciler, inventory)

        assert await reconciler.shutdown() == 1
        assert await reconciler.shutdown() == 0
        assert await audit_log.count_logs() == 1

    async def test_reconciled_operations_not_flushed(self, reconciler, inventory, audit_log):
        async with reconciler:
            await _start_plugin_update(reconciler, inventory)
            inventory.install_plugin("foo/foo.php", "Foo", "1.1")
            await reconciler.on_process_complete(CompletionEvent(kind="plugin", targets=[FOO]))

        [entry] = await _entries(audit_log)
        assert entry["status"] == "success"


class TestAutomaticUpdates:
    """The automatic sweep and its overlap with the primary completion."""

    async def test_primary_and_sweep_produce_one_entry(self, reconciler, inventory, audit_log):
        reconciler.mark_automatic()
        await _start_plugin_update(reconciler, inventory)
        inventory.install_plugin("foo/foo.php", "Foo", "1.1")

        await reconciler.on_process_complete(CompletionEvent(kind="plugin", targets=[FOO]))
        ids = await reconciler.on_automatic_sweep_complete({"plugin": [SweepResult(signal=FOO)]})
        await reconciler.shutdown()

        assert ids == []
        [entry] = await _entries(audit_log)
        assert entry["initiation_mode"] == "automatic"

    async def test_sweep_then_primary_produce_one_entry(self, reconciler, inventory, audit_log):
        reconciler.mark_automatic()
        await _start_plugin_update(reconciler, inventory)
        inventory.install_plugin("foo/foo.php", "Foo", "1.1")

        swept = await reconciler.on_automatic_sweep_complete({"plugin": [SweepResult(signal=FOO)]})
        ids = await reconciler.on_process_complete(CompletionEvent(kind="plugin", targets=[FOO]))

        assert len(swept) == 1
        assert ids == []
        assert await reconciler.shutdown() == 0
        [entry] = await _entries(audit_log)
        assert entry["version_before"] == "1.0"
        assert entry["version_after"] == "1.1"

    async def test_sweep_records_operation_without_primary(self, reconciler, inventory, audit_log):
        reconciler.mark_automatic()
        await reconciler.on_pre_update(FOO)
        inventory.install_plugin("foo/foo.php", "Foo", "1.1")

        ids = await reconciler.on_automatic_sweep_complete(
            {"plugin": [SweepResult(signal=FOO, messages=["Foo updated."])]}
        )

        assert len(ids) == 1
        [entry] = await _entries(audit_log)
        assert entry["action"] == "update"
        assert entry["version_before"] == "1.0"
        assert entry["version_after"] == "1.1"
        assert entry["initiation_mode"] == "automatic"
        assert entry["batch_context"] == ""
        assert entry["message"] == "Updated Foo to 1.1\n\nFoo updated."

    async def test_sweep_failure(self, reconciler, inventory, audit_log):
        reconciler.mark_automatic()
        await _start_plugin_update(reconciler, inventory)

        await reconciler.on_automatic_sweep_complete(
            {"plugin": [SweepResult(signal=FOO, error="Download failed.")]}
        )

        [entry] = await _entries(audit_log)
        assert entry["action"] == "failed"
        assert entry["status"] == "error"
        assert entry["version_after"] == "1.1"
        assert await reconciler.shutdown() == 0

    async def test_sweep_core_update(self, reconciler, inventory, audit_log):
        reconciler.mark_automatic()
        await reconciler.on_pre_update(CoreSignal())
        inventory.core = "6.4.3"

        await reconciler.on_automatic_sweep_complete({"core": [SweepResult(signal=CoreSignal())]})

        [entry] = await _entries(audit_log)
        assert entry["kind"] == "core"
        assert entry["message"].startswith("Core update to WordPress 6.4.3")


class TestCoreAndTranslations:
    async def test_core_update(self, reconciler, inventory, audit_log):
        inventory.offer_update("core", "core", "6.5")
        await reconciler.on_core_download("https://downloads.example.org/core-6.5.zip")
        reconciler.on_core_feedback("Verifying the unpacked files&#8230;")
        inventory.core = "6.5"

        await reconciler.on_process_complete(CompletionEvent(kind="core", action="update"))

        [entry] = await _entries(audit_log)
        assert entry["item_name"] == "WordPress"
        assert entry["item_slug"] == "core"
        assert entry["version_before"] == "6.4.2"
        assert entry["version_after"] == "6.5"
        assert entry["action"] == "update"
        assert entry["message"] == (
            "Core update to WordPress 6.5\n"
            "Downloading the update from https://downloads.example.org/core-6.5.zip…\n"
            "Unpacking the update…\n"
            "Verifying the unpacked files…"
        )

    async def test_core_translation(self, reconciler, inventory, audit_log):
        signal = TranslationSignal(language="de_DE", version="1.0")
        inventory.offer_translation("core", "", "de_DE", "1.1")
        await reconciler.on_pre_update(signal)
        reconciler.on_package_options_init("translation", signal)

        await reconciler.on_process_complete(CompletionEvent(kind="translation", targets=[signal]))

        [entry] = await _entries(audit_log)
        assert entry["kind"] == "translation"
        assert entry["item_name"] == "WordPress (de_DE)"
        assert entry["item_slug"] == "de_DE"
        assert entry["version_before"] == "1.0"
        assert entry["version_after"] == "1.1"

    async def test_plugin_translation_named_after_plugin(self, reconciler, inventory, audit_log):
        signal = TranslationSignal(language="fr_FR", slug="foo", translation_type="plugin")
        reconciler.on_package_options_init("translation", signal)

        await reconciler.on_process_complete(CompletionEvent(kind="translation", targets=[signal]))

        [entry] = await _entries(audit_log)
        assert entry["item_name"] == "Foo (fr_FR)"


class TestDeletion:
    async def test_uninstall_recorded_once(self, reconciler, audit_log):
        first = await reconciler.on_item_deleted(HELLO)
        second = await reconciler.on_item_deleted(HELLO)

        assert first is not None
        assert second is None
        [entry] = await _entries(audit_log)
        assert entry["action"] == "uninstall"
        assert entry["item_name"] == "Hello Dolly"
        assert entry["version_before"] == "1.7.2"
        assert entry["message"] == "Uninstalled Hello Dolly 1.7.2"

    async def test_uninstall_does_not_block_later_update_entry(
        self, reconciler, inventory, audit_log
    ):
        await reconciler.on_item_deleted(FOO)
        await _start_plugin_update(reconciler, inventory)
        inventory.install_plugin("foo/foo.php", "Foo", "1.1")
        await reconciler.on_process_complete(CompletionEvent(kind="plugin", targets=[FOO]))

        assert [e["action"] for e in await _entries(audit_log)] == ["uninstall", "update"]

    async def test_core_deletion_ignored(self, reconciler, audit_log):
        assert await reconciler.on_item_deleted(CoreSignal()) is None
        assert await audit_log.count_logs() == 0


class TestPolicyAndValidation:
    async def test_logging_disabled_writes_nothing(self, reconciler, inventory, audit_log):
        await reconciler.policy.save_settings(logging_enabled=False)

        await _start_plugin_update(reconciler, inventory)
        reconciler.on_progress("Downloading update…")
        ids = await reconciler.on_process_complete(CompletionEvent(kind="plugin", targets=[FOO]))

        assert ids == []
        assert reconciler.narration.capturing is False
        assert await reconciler.on_item_deleted(HELLO) is None
        assert await reconciler.shutdown() == 0
        assert await audit_log.count_logs() == 0

    async def test_unknown_signal_rejected(self, reconciler):
        with pytest.raises(TypeError):
            await reconciler.on_pre_update("foo/foo.php")

        with pytest.raises(TypeError):
            reconciler.on_package_options_init("plugin", object())

    async def test_commit_is_at_most_once_per_operation(self, reconciler, audit_log):
        values = dict(
            kind="plugin",
            identity="foo/foo.php",
            name="Foo",
            slug="foo",
            action="update",
            version_before="1.0",
            version_after="1.1",
            status="success",
            message="",
            trace=[],
            initiation_mode="manual",
        )

        assert await reconciler.commit(**values) is not None
        assert await reconciler.commit(**values) is None
        assert reconciler.is_logged("plugin", "foo/foo.php")
        assert await audit_log.count_logs() == 1
