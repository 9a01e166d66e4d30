"""
Tests for scheduled retention cleanup.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from update_audit.db.database import with_unit_of_work
from update_audit.db.models import UpdateLog


async def _entry(audit_log):
    return await audit_log.record_operation(
        kind="plugin", action="update", item_name="Foo", item_slug="foo"
    )


class TestRetention:
    async def test_run_cleanup_uses_policy_window(self, runtime, audit_log, session_factory):
        old = await _entry(audit_log)
        await _entry(audit_log)
        await runtime.policy.save_settings(retention_days=7)

        async with with_unit_of_work(session_factory) as session:
            await session.execute(
                update(UpdateLog)
                .where(UpdateLog.id == old)
                .values(created_at=datetime.now(timezone.utc) - timedelta(days=10))
            )

        retention = runtime.retention()
        assert await retention.run_cleanup() == 1
        assert await retention.run_cleanup() == 0
        assert await audit_log.count_logs() == 1

    async def test_default_window_keeps_recent_entries(self, runtime, audit_log):
        await _entry(audit_log)

        assert await runtime.retention().run_cleanup() == 0
        assert await audit_log.count_logs() == 1
