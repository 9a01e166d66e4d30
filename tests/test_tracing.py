"""
Tests for call-stack capture and log context helpers.
"""

import os

import structlog

import update_audit
from update_audit.utils.logging import (
    OperationContextProcessor,
    bind_operation,
    filter_sensitive_data,
    get_logger,
    operation_context,
)
from update_audit.utils.tracing import capture_trace, format_trace


def _host_entry_point(plugin_file, attempt=1):
    return capture_trace()


class TestCaptureTrace:
    def test_caller_frames_recorded_innermost_last(self):
        frames = _host_entry_point("foo/foo.php")

        assert frames[-1]["function"] == "_host_entry_point"
        assert frames[-1]["args"] == ["'foo/foo.php'", "1"]
        assert frames[-1]["location"].endswith("test_tracing.py")
        package_dir = os.path.dirname(update_audit.__file__) + os.sep
        assert not any(f["location"].startswith(package_dir) for f in frames)

    def test_package_frames_skipped(self):
        frames = capture_trace()

        assert not any(f["function"] == "capture_trace" for f in frames)

    def test_max_frames(self):
        assert len(capture_trace(max_frames=2)) == 2

    def test_format_trace(self):
        rendered = format_trace(
            [
                {"location": "/srv/cron.py", "line": 10, "function": "main", "args": []},
                {"location": "/srv/hooks.py", "line": 42, "function": "run", "args": ["'x'", "3"]},
            ]
        )

        assert rendered == "#0 /srv/cron.py(10): main()\n#1 /srv/hooks.py(42): run('x', 3)"


class TestLogContext:
    def test_bind_operation_scopes_context(self):
        processor = OperationContextProcessor()

        with bind_operation(kind="plugin", identity="foo/foo.php"):
            with bind_operation(tenant_id=2):
                event = processor(None, "info", {"event": "x"})
            assert operation_context.get() == {"kind": "plugin", "identity": "foo/foo.php"}

        assert event == {"event": "x", "kind": "plugin", "identity": "foo/foo.php", "tenant_id": 2}
        assert operation_context.get() is None

    def test_explicit_fields_win_over_context(self):
        with bind_operation(kind="plugin"):
            event = OperationContextProcessor()(None, "info", {"kind": "theme"})

        assert event["kind"] == "theme"

    def test_database_url_masked(self):
        event = filter_sensitive_data(
            None, "info", {"database_url": "postgresql+psycopg://audit:hunter2@db:5432/audit"}
        )

        assert "hunter2" not in event["database_url"]
        assert event["database_url"].endswith("@db:5432/audit")

    def test_logger_is_structlog(self):
        logger = get_logger("update_audit.tests")
        assert hasattr(logger, "bind")
        assert structlog.is_configured()
