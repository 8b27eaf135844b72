"""
Module: permit_kernel.models.approval
Responsibility: ORM persistence for permit approval records.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - At most one PENDING record per permit (partial unique index).
    - (permit_id, ordinal) is unique; ordinals follow insertion order.
    - A record is mutable only while its decision is PENDING; once
      decided it is frozen (before_update listener).
    - Records are never deleted (before_delete listener).

Failure modes:
    - IntegrityError on a second PENDING record for the same permit.
    - ImmutabilityViolationError on UPDATE of a decided record or DELETE.

Audit relevance:
    Approval records are the decision trail.  Reapproval appends a new
    record instead of rewriting the original.
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
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.orm.attributes import get_history

from permit_kernel.db.base import Base, UUIDString
from permit_kernel.domain.permit import ApprovalDecision, ApprovalRecordSnapshot
from permit_kernel.exceptions import ImmutabilityViolationError


class ApprovalRecord(Base):
    """Persistent approval decision record."""

    __tablename__ = "approval_records"

    __table_args__ = (
        CheckConstraint(
            "decision IN ('PENDING', 'APPROVED', 'REJECTED', 'REAPPROVED')",
            name="ck_approval_records_valid_decision",
        ),
        CheckConstraint("ordinal >= 1", name="ck_approval_records_ordinal"),
        UniqueConstraint(
            "permit_id", "ordinal",
            name="uq_approval_records_permit_ordinal",
        ),
        Index(
            "ix_approval_records_one_pending",
            "permit_id",
            unique=True,
            postgresql_where=text("decision = 'PENDING'"),
            sqlite_where=text("decision = 'PENDING'"),
        ),
    )

    permit_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("permits.id"), nullable=False,
    )
    ordinal: Mapped[int] = mapped_column(nullable=False)
    decision: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalDecision.PENDING.value,
    )
    approver_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    approver_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalRecord {self.id} permit={self.permit_id} "
            f"#{self.ordinal} decision={self.decision}>"
        )

    def to_dto(self) -> ApprovalRecordSnapshot:
        """Convert ORM model to frozen domain DTO."""
        return ApprovalRecordSnapshot(
            id=self.id,
            permit_id=self.permit_id,
            ordinal=self.ordinal,
            decision=ApprovalDecision(self.decision),
            approver_role=self.approver_role,
            approver_name=self.approver_name,
            comment=self.comment,
            signature=self.signature,
            approved_at=self.approved_at,
            signed_at=self.signed_at,
            created_at=self.created_at,
        )


@event.listens_for(ApprovalRecord, "before_update")
def prevent_decided_approval_update(mapper, connection, target):
    """Only a PENDING record may be written to (its single decision)."""
    history = get_history(target, "decision")
    if history.deleted:
        previous = history.deleted[0]
    elif history.unchanged:
        previous = history.unchanged[0]
    else:
        previous = target.decision

    if previous != ApprovalDecision.PENDING.value:
        raise ImmutabilityViolationError(
            entity_type="ApprovalRecord",
            entity_id=str(target.id),
            reason=f"Approval already decided ({previous}) -- cannot modify",
        )


@event.listens_for(ApprovalRecord, "before_delete")
def prevent_approval_delete(mapper, connection, target):
    """Prevent deletion of approval records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalRecord",
        entity_id=str(target.id),
        reason="Approval records are append-only -- cannot delete",
    )
