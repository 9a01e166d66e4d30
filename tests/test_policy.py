"""
Tests for the policy store and automatic-update controls.
"""

import pytest

from update_audit.services.policy import (
    CORE_MAJOR_OPTION,
    CORE_MINOR_OPTION,
    PLUGINS_OPTION,
    SETTINGS_OPTION,
    AutoUpdatePolicy,
    PolicyLocks,
    PolicySettings,
    PolicyStore,
)


@pytest.fixture
def store(session_factory, settings):
    return PolicyStore(session_factory, settings)


@pytest.fixture
def auto_updates(store, inventory):
    return AutoUpdatePolicy(store, inventory)


class TestPolicySettings:
    """Validation of the stored settings document."""

    @pytest.mark.parametrize(
        "value,expected",
        [(0, 1), (-10, 1), (30, 30), (1000, 365), ("45", 45), ("abc", 90), (None, 90)],
    )
    def test_retention_days_clamped(self, value, expected):
        assert PolicySettings(retention_days=value).retention_days == expected

    def test_dismissed_notices_deduplicated(self):
        settings = PolicySettings(dismissed_notices=["a", "b", "a", "", 3])
        assert settings.dismissed_notices == ["a", "b"]


class TestPolicyStore:
    async def test_defaults_come_from_settings(self, store):
        policy = await store.get_settings()

        assert policy.logging_enabled is True
        assert policy.retention_days == 90
        assert policy.auto_update_translations is True

    async def test_save_persists_across_stores(self, store, session_factory, settings):
        await store.save_settings(retention_days=30, logging_enabled=False)

        fresh = PolicyStore(session_factory, settings)
        assert await fresh.retention_days() == 30
        assert await fresh.logging_enabled() is False

    async def test_invalid_stored_values_are_clamped(self, store):
        await store.set_option(SETTINGS_OPTION, {"retention_days": 9999, "unknown": 1})

        assert (await store.get_settings(refresh=True)).retention_days == 365

    async def test_options_round_trip(self, store):
        assert await store.get_option("missing", "fallback") == "fallback"
        assert await store.set_option("x", {"a": [1, 2]}) is True
        assert await store.get_option("x") == {"a": [1, 2]}
        assert await store.delete_option("x") is True
        assert await store.get_option("x") is None


class TestCoreMode:
    async def test_default_is_minor(self, auto_updates):
        assert await auto_updates.get_core_mode() == "minor"

    @pytest.mark.parametrize(
        "mode,major,minor",
        [
            ("all", "enabled", "enabled"),
            ("minor", "unset", "enabled"),
            ("disabled", "unset", "disabled"),
        ],
    )
    async def test_set_core_mode(self, auto_updates, store, mode, major, minor):
        assert await auto_updates.set_core_mode(mode) is True

        assert await auto_updates.get_core_mode() == mode
        assert await store.get_option(CORE_MAJOR_OPTION) == major
        assert await store.get_option(CORE_MINOR_OPTION) == minor

    async def test_unknown_mode_rejected(self, auto_updates):
        assert await auto_updates.set_core_mode("sometimes") is False

    @pytest.mark.parametrize(
        "override,expected",
        [(True, "all"), ("beta", "all"), ("minor", "minor"), (False, "disabled")],
    )
    async def test_host_override_wins(self, store, inventory, override, expected):
        policy = AutoUpdatePolicy(store, inventory, PolicyLocks(core_override=override))

        config = await policy.get_core_config()
        assert config["mode"] == expected
        assert config["overridden"] is True
        assert await policy.set_core_mode("all") is False


class TestToggles:
    async def test_toggle_plugin(self, auto_updates, store):
        assert await auto_updates.toggle_plugin("foo/foo.php", True) is True
        assert await auto_updates.toggle_plugin("hello.php", True) is True
        assert await store.get_option(PLUGINS_OPTION) == ["foo/foo.php", "hello.php"]

        assert await auto_updates.toggle_plugin("foo/foo.php", False) is True
        assert await store.get_option(PLUGINS_OPTION) == ["hello.php"]

    async def test_toggle_uninstalled_item_rejected(self, auto_updates):
        assert await auto_updates.toggle_plugin("missing/missing.php", True) is False
        assert await auto_updates.toggle_theme("missing", True) is False

    async def test_stale_entries_pruned(self, auto_updates, store):
        await store.set_option(PLUGINS_OPTION, ["gone/gone.php"])

        await auto_updates.toggle_plugin("foo/foo.php", True)

        assert await store.get_option(PLUGINS_OPTION) == ["foo/foo.php"]

    async def test_locked_sections(self, store, inventory):
        policy = AutoUpdatePolicy(
            store, inventory, PolicyLocks(locked_sections=frozenset({"plugins", "translations"}))
        )

        assert await policy.toggle_plugin("foo/foo.php", True) is False
        assert await policy.set_translations(False) is False
        assert await policy.toggle_theme("twentytwentyfour", True) is True


class TestSnapshot:
    async def test_snapshot(self, auto_updates, inventory):
        inventory.offer_update("plugin", "foo/foo.php", "1.1")
        await auto_updates.toggle_theme("twentytwentyfour", True)
        await auto_updates.set_translations(False)
        await auto_updates.dismiss_notice("core_locked")
        await auto_updates.dismiss_notice("core_locked")

        snapshot = await auto_updates.snapshot()

        assert snapshot["core"]["mode"] == "minor"
        assert [p["name"] for p in snapshot["plugins"]] == ["Foo", "Hello Dolly"]
        assert snapshot["plugins"][0]["update_available"] == "1.1"
        assert snapshot["themes"][0]["auto_update"] is True
        assert snapshot["translations"] == {"auto_update": False}
        assert snapshot["dismissed_notices"] == ["core_locked"]
        assert snapshot["locked_sections"] == []
