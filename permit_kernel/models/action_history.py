"""
Module: permit_kernel.models.action_history
Responsibility: ORM persistence for the permit action history.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - Append-only: UPDATE and DELETE are rejected at the ORM level.
    - (permit_id, ordinal) is unique; ordinals follow insertion order.

Audit relevance:
    Every revoke, reapprove, extend and close (manual or automatic) leaves
    exactly one entry with the before/after status and the performer.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from permit_kernel.db.base import Base, UUIDString
from permit_kernel.domain.lifecycle import PermitStatus
from permit_kernel.domain.permit import ActionHistoryRecord, HistoryAction
from permit_kernel.exceptions import ImmutabilityViolationError


class ActionHistoryEntry(Base):
    """Persistent action history entry.  Append-only."""

    __tablename__ = "permit_action_history"

    __table_args__ = (
        CheckConstraint(
            "action IN ('REVOKED', 'REAPPROVED', 'EXTENDED', 'CLOSED')",
            name="ck_permit_action_history_valid_action",
        ),
        UniqueConstraint(
            "permit_id", "ordinal",
            name="uq_permit_action_history_permit_ordinal",
        ),
        Index("ix_permit_action_history_action", "action", "created_at"),
    )

    permit_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("permits.id"), nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    performed_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    performed_by_name: Mapped[str] = mapped_column(String(200), nullable=False)
    performed_by_role: Mapped[str] = mapped_column(String(100), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_status: Mapped[str] = mapped_column(String(20), nullable=False)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ActionHistoryEntry permit={self.permit_id} #{self.ordinal} "
            f"{self.action} {self.previous_status}->{self.new_status}>"
        )

    def to_dto(self) -> ActionHistoryRecord:
        """Convert ORM model to frozen domain DTO."""
        return ActionHistoryRecord(
            id=self.id,
            permit_id=self.permit_id,
            ordinal=self.ordinal,
            action=HistoryAction(self.action),
            performed_by=self.performed_by,
            performed_by_name=self.performed_by_name,
            performed_by_role=self.performed_by_role,
            previous_status=PermitStatus(self.previous_status),
            new_status=PermitStatus(self.new_status),
            comment=self.comment,
            signature=self.signature,
            created_at=self.created_at,
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(ActionHistoryEntry, "before_update")
def prevent_history_update(mapper, connection, target):
    """Prevent updates to action history entries."""
    raise ImmutabilityViolationError(
        entity_type="ActionHistoryEntry",
        entity_id=str(target.id),
        reason="Action history is immutable -- cannot modify",
    )


@event.listens_for(ActionHistoryEntry, "before_delete")
def prevent_history_delete(mapper, connection, target):
    """Prevent deletion of action history entries."""
    raise ImmutabilityViolationError(
        entity_type="ActionHistoryEntry",
        entity_id=str(target.id),
        reason="Action history is immutable -- cannot delete",
    )
