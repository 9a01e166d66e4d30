"""
In-memory buffer of operations that have started but not yet been logged.

Entries are keyed "{kind}:{identity}". An entry is created when package
installation begins and consumed by exactly one of: the reconciliation that
logs the operation, or the crash-recovery flush at process end.
"""

from typing import Dict, List, Optional

from update_audit.utils.logging import get_logger
from update_audit.utils.types import PendingOperation, operation_key

logger = get_logger(__name__)


class PendingOperationBuffer:
    """Process-scoped map of in-flight operations."""

    def __init__(self):
        self._entries: Dict[str, PendingOperation] = {}
        self._drained = False

    def begin(
        self,
        kind: str,
        identity: str,
        *,
        name: str = "",
        slug: str = "",
        version_before: str = "",
        version_after: str = "",
    ) -> PendingOperation:
        """Start tracking an operation. A repeated begin overwrites the entry."""
        entry = PendingOperation(
            kind=kind,
            identity=identity,
            name=name,
            slug=slug,
            version_before=version_before,
            version_after=version_after,
        )
        if entry.key in self._entries:
            logger.debug("Pending operation replaced", key=entry.key)
        self._entries[entry.key] = entry
        return entry

    def complete(self, kind: str, identity: str) -> Optional[PendingOperation]:
        """Remove and return the entry, or None if it was never begun."""
        return self._entries.pop(operation_key(kind, identity), None)

    def peek(self, kind: str, identity: str) -> Optional[PendingOperation]:
        return self._entries.get(operation_key(kind, identity))

    def drain_all(self) -> List[PendingOperation]:
        """
        Remove and return every remaining entry.

        Draining happens once per process; later calls return nothing.
        """
        if self._drained:
            logger.warning("Pending buffer already drained", remaining=len(self._entries))
            return []

        self._drained = True
        entries = list(self._entries.values())
        self._entries.clear()
        return entries

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
