"""
Shared test fixtures and configuration for update audit tests.

Each test gets its own SQLite database file (via aiosqlite) with all tables
created, plus a host inventory preloaded with a small site:
- core 6.4.2
- plugin "foo/foo.php" (Foo 1.0) and single-file "hello.php" (Hello Dolly 1.7.2)
- theme "twentytwentyfour" (Twenty Twenty-Four 1.0)
"""

import os

import pytest

os.environ.update(
    {
        "APP_ENV": "test",
        "LOG_LEVEL": "WARNING",
    }
)

from update_audit.app import build_runtime
from update_audit.config import Settings, reset_settings
from update_audit.db.database import build_engine, create_tables, make_session_factory
from update_audit.services.inventory import StaticInventory
from update_audit.utils.logging import configure_logging
from update_audit.utils.types import InstalledItem

configure_logging(log_level="WARNING", app_env="test")


@pytest.fixture(autouse=True)
def _reset_global_settings():
    """Never leak the settings singleton between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings pointing at a per-test SQLite file."""
    return Settings(
        _env_file=None,
        app_env="test",
        log_level="WARNING",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}",
    )


@pytest.fixture
async def db_engine(settings):
    """Async engine with all tables created."""
    engine = build_engine(settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def bare_engine(tmp_path, settings):
    """Async engine on a database where no table was provisioned."""
    engine = build_engine(
        settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"}
        )
    )
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def inventory() -> StaticInventory:
    """Host state before any update is applied."""
    return StaticInventory(
        core="6.4.2",
        plugins={
            "foo/foo.php": InstalledItem(name="Foo", version="1.0"),
            "hello.php": InstalledItem(name="Hello Dolly", version="1.7.2"),
        },
        themes={
            "twentytwentyfour": InstalledItem(name="Twenty Twenty-Four", version="1.0"),
        },
    )


@pytest.fixture
def runtime(session_factory, settings):
    return build_runtime(session_factory, settings)


@pytest.fixture
def audit_log(runtime):
    return runtime.audit_log


@pytest.fixture
def reconciler(runtime, inventory):
    """Engine for one simulated host process."""
    return runtime.engine_for(inventory)
