"""
Crash-recovery flush of operations that never reached a terminal signal.

When the host process ends while an update is in flight (fatal error,
timeout, killed worker), its pending entries would be lost with the
process. At shutdown every remaining entry is written as a degraded
error entry instead, so no started operation goes unrecorded.
"""

from typing import TYPE_CHECKING

from update_audit.utils.logging import get_logger
from update_audit.utils.tracing import capture_trace

if TYPE_CHECKING:
    from update_audit.services.reconciler import ReconciliationEngine

logger = get_logger(__name__)

INTERRUPTED_MESSAGE = (
    "This update may not have completed. "
    "It was logged when the process ended unexpectedly."
)


class CrashRecoveryFlusher:
    """Drains an engine's pending buffer exactly once."""

    def __init__(self, engine: "ReconciliationEngine"):
        self._engine = engine
        self._flushed = False

    @property
    def flushed(self) -> bool:
        return self._flushed

    async def flush(self) -> int:
        """
        Write one error entry per un-reconciled operation.

        Returns:
            Number of entries written
        """
        if self._flushed:
            return 0
        self._flushed = True

        engine = self._engine
        entries = engine.pending.drain_all()
        engine.narration.stop_capture()
        if not entries:
            return 0

        if not await engine.is_logging_enabled():
            logger.info("Logging disabled, interrupted operations dropped", count=len(entries))
            return 0

        trace = capture_trace(engine.settings.trace_max_frames)
        written = 0
        for entry in entries:
            if engine.is_logged(entry.kind, entry.identity):
                continue
            log_id = await engine.commit(
                kind=entry.kind,
                identity=entry.identity,
                name=entry.name or entry.identity,
                slug=entry.slug or entry.identity,
                action="update",
                version_before=entry.version_before,
                version_after=entry.version_after,
                status="error",
                message=INTERRUPTED_MESSAGE,
                trace=trace,
                initiation_mode=engine.initiation_mode,
            )
            if log_id is not None:
                written += 1

        logger.warning(
            "Interrupted operations flushed",
            pending=len(entries),
            written=written,
            keys=[entry.key for entry in entries],
        )
        return written
