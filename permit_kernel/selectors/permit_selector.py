"""
Module: permit_kernel.selectors.permit_selector
Responsibility: Read-only access to permits, their approval records and
    their action history.  Builds the export aggregate.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only: no mutations performed on any queried data.
    - Approval records and history entries come back in insertion order
      (``ordinal``), so exports are deterministic.

Failure modes:
    - Returns None or an empty sequence when nothing matches (never raises
      on absence of data).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from permit_kernel.domain.lifecycle import PermitStatus
from permit_kernel.domain.permit import (
    ActionHistoryRecord,
    ApprovalDecision,
    ApprovalRecordSnapshot,
    PermitAggregate,
    PermitRecord,
)
from permit_kernel.models.action_history import ActionHistoryEntry
from permit_kernel.models.approval import ApprovalRecord
from permit_kernel.models.permit import Permit
from permit_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class ApprovalStats:
    """Counts of approval records by decision."""

    pending: int = 0
    approved: int = 0
    rejected: int = 0
    reapproved: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.approved + self.rejected + self.reapproved


class PermitSelector(BaseSelector[Permit]):
    """
    Selector for permit queries.

    Contract:
        All public methods return frozen snapshots from
        ``permit_kernel.domain.permit``.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def get_permit(self, permit_id: UUID) -> PermitRecord | None:
        permit = self.session.get(Permit, permit_id)
        return permit.to_dto() if permit is not None else None

    def get_by_number(self, permit_number: str) -> PermitRecord | None:
        permit = self.session.execute(
            select(Permit).where(Permit.permit_number == permit_number)
        ).scalar_one_or_none()
        return permit.to_dto() if permit is not None else None

    def list_permits(
        self,
        status: PermitStatus | None = None,
        owner_id: UUID | None = None,
    ) -> list[PermitRecord]:
        """Permits, newest first, optionally filtered."""
        stmt = select(Permit)
        if status is not None:
            stmt = stmt.where(Permit.status == PermitStatus(status).value)
        if owner_id is not None:
            stmt = stmt.where(Permit.owner_id == owner_id)
        stmt = stmt.order_by(Permit.created_at.desc(), Permit.permit_number.desc())
        return [p.to_dto() for p in self.session.execute(stmt).scalars()]

    def approvals(self, permit_id: UUID) -> tuple[ApprovalRecordSnapshot, ...]:
        """Approval records of a permit, oldest first."""
        records = self.session.execute(
            select(ApprovalRecord)
            .where(ApprovalRecord.permit_id == permit_id)
            .order_by(ApprovalRecord.ordinal)
        ).scalars()
        return tuple(r.to_dto() for r in records)

    def action_history(self, permit_id: UUID) -> tuple[ActionHistoryRecord, ...]:
        """Action history of a permit, oldest first."""
        entries = self.session.execute(
            select(ActionHistoryEntry)
            .where(ActionHistoryEntry.permit_id == permit_id)
            .order_by(ActionHistoryEntry.ordinal)
        ).scalars()
        return tuple(e.to_dto() for e in entries)

    def aggregate(self, permit_id: UUID) -> PermitAggregate | None:
        """The export aggregate of a permit, or None if it does not exist."""
        permit = self.get_permit(permit_id)
        if permit is None:
            return None
        return PermitAggregate(
            permit=permit,
            approvals=self.approvals(permit_id),
            action_history=self.action_history(permit_id),
        )

    def list_approvals(
        self, decision: ApprovalDecision | None = None,
    ) -> list[ApprovalRecordSnapshot]:
        """Approval records across permits, newest first."""
        stmt = select(ApprovalRecord)
        if decision is not None:
            stmt = stmt.where(
                ApprovalRecord.decision == ApprovalDecision(decision).value
            )
        stmt = stmt.order_by(ApprovalRecord.created_at.desc(), ApprovalRecord.ordinal.desc())
        return [r.to_dto() for r in self.session.execute(stmt).scalars()]

    def pending_remarks(self, now: datetime) -> list[PermitRecord]:
        """Approved permits past their end date that still lack safety remarks."""
        stmt = (
            select(Permit)
            .where(
                Permit.status == PermitStatus.APPROVED.value,
                Permit.safety_remarks.is_(None),
                Permit.end_date <= now,
            )
            .order_by(Permit.end_date)
        )
        return [p.to_dto() for p in self.session.execute(stmt).scalars()]

    def approval_stats(self) -> ApprovalStats:
        rows = self.session.execute(
            select(ApprovalRecord.decision, func.count(ApprovalRecord.id))
            .group_by(ApprovalRecord.decision)
        ).all()
        counts = {decision: count for decision, count in rows}
        return ApprovalStats(
            pending=counts.get(ApprovalDecision.PENDING.value, 0),
            approved=counts.get(ApprovalDecision.APPROVED.value, 0),
            rejected=counts.get(ApprovalDecision.REJECTED.value, 0),
            reapproved=counts.get(ApprovalDecision.REAPPROVED.value, 0),
        )
