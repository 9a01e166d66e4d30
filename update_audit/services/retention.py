"""
Retention cleanup, invoked once a day by an external scheduler.
"""

from update_audit.services.audit_log import AuditLogService
from update_audit.services.policy import PolicyStore
from update_audit.utils.logging import get_logger

logger = get_logger(__name__)


class RetentionService:
    """Applies the configured retention window to the log store."""

    def __init__(self, audit_log: AuditLogService, policy: PolicyStore):
        self._audit_log = audit_log
        self._policy = policy

    async def run_cleanup(self) -> int:
        """
        Delete entries older than the policy's retention_days.

        Idempotent: a second run without new old entries deletes nothing.

        Returns:
            Number of deleted entries
        """
        days = await self._policy.retention_days()
        deleted = await self._audit_log.cleanup(days)
        logger.info("Scheduled retention run finished", retention_days=days, deleted=deleted)
        return deleted
