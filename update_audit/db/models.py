"""
Database models for Update Audit Core.

This module defines SQLAlchemy models for:
- The append-only update audit log (one row per logical operation)
- Durable "version before" snapshots that survive process boundaries
- Policy options (logging and auto-update settings)

Log rows are immutable once written; the only mutation the store performs
is deletion by id or by retention age.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..utils.tracing import format_trace


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UpdateLog(Base):
    """
    One audit entry per logical update operation per item.

    Attributes:
        id: Store-assigned identifier
        tenant_id: Site/tenant the operation ran in
        kind: core, plugin, theme or translation
        action: update, downgrade, install, same_version, failed or uninstall
        item_name / item_slug: Display name and stable identifier of the item
        version_before / version_after: Versions around the operation
        status: success, error or cancelled
        message: Plain-text narration of what happened
        trace: Host call stack, list of {location, line, function, args}
        actor_kind: system or user
        initiation_mode: manual, automatic or upload
        batch_context: bulk, single or "" when not applicable
        created_at: UTC time the entry was written
    """

    __tablename__ = "update_logs"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True, doc="Log entry identifier"
    )

    tenant_id: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, doc="Tenant (site) identifier"
    )

    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default="plugin", doc="Item kind"
    )

    action: Mapped[str] = mapped_column(
        String(20), nullable=False, default="update", doc="Classified outcome"
    )

    item_name: Mapped[str] = mapped_column(
        String(255), nullable=False, default="", doc="Display name of the item"
    )

    item_slug: Mapped[str] = mapped_column(
        String(255), nullable=False, default="", doc="Stable item identifier"
    )

    version_before: Mapped[str] = mapped_column(
        String(64), nullable=False, default="", doc="Version before the operation"
    )

    version_after: Mapped[str] = mapped_column(
        String(64), nullable=False, default="", doc="Version after the operation"
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="success", doc="success, error or cancelled"
    )

    message: Mapped[str] = mapped_column(
        Text, nullable=False, default="", doc="Plain-text operation narration"
    )

    trace: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list, doc="Captured call stack"
    )

    actor_kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default="system", doc="system or user"
    )

    initiation_mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default="manual", doc="manual, automatic or upload"
    )

    batch_context: Mapped[str] = mapped_column(
        String(20), nullable=False, default="", doc="bulk, single or empty"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        doc="UTC write time",
    )

    __table_args__ = (
        CheckConstraint("tenant_id >= 1", name="ck_update_logs_tenant_id"),
        Index("idx_update_logs_tenant_id", "tenant_id"),
        Index("idx_update_logs_kind", "kind"),
        Index("idx_update_logs_status", "status"),
        Index("idx_update_logs_created_at", "created_at"),
    )

    @property
    def trace_text(self) -> str:
        """Trace rendered for display."""
        return format_trace(self.trace or [])

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the query surface."""
        created_at = self.created_at
        if created_at is not None and created_at.tzinfo is None:
            # SQLite drops tzinfo; values are always written in UTC
            created_at = created_at.replace(tzinfo=timezone.utc)
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "kind": self.kind,
            "action": self.action,
            "item_name": self.item_name,
            "item_slug": self.item_slug,
            "version_before": self.version_before,
            "version_after": self.version_after,
            "status": self.status,
            "message": self.message,
            "trace": list(self.trace or []),
            "actor_kind": self.actor_kind,
            "initiation_mode": self.initiation_mode,
            "batch_context": self.batch_context,
            "created_at": created_at.isoformat() if created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<UpdateLog(id={self.id}, kind={self.kind}, slug={self.item_slug}, "
            f"action={self.action}, status={self.status})>"
        )


class VersionSnapshot(Base):
    """
    Durable "version before" of an item, written at operation start.

    Read once during reconciliation and deleted after use. The expiry keeps
    snapshots of abandoned operations from leaking into later ones.
    """

    __tablename__ = "update_version_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    kind: Mapped[str] = mapped_column(
        String(32), nullable=False, doc="Item kind or alias namespace"
    )

    identity: Mapped[str] = mapped_column(
        String(255), nullable=False, doc="Item identity within the kind"
    )

    version: Mapped[str] = mapped_column(
        String(64), nullable=False, doc="Version observed before the operation"
    )

    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, doc="Snapshot is ignored after this"
    )

    __table_args__ = (
        UniqueConstraint("kind", "identity", name="uq_update_version_snapshots_item"),
        Index("idx_update_version_snapshots_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<VersionSnapshot(kind={self.kind}, identity={self.identity}, version={self.version})>"


class PolicyOption(Base):
    """Named policy value stored as JSON."""

    __tablename__ = "update_audit_options"

    name: Mapped[str] = mapped_column(String(191), primary_key=True)

    value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<PolicyOption(name={self.name})>"
