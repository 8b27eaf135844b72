"""
permit_kernel.services.approval_service -- Approval record management.

Responsibility:
    Creates and decides permit approval records.  A permit starts with
    exactly one PENDING record; deciding it freezes it; reapproval after a
    revoke appends a new REAPPROVED record instead of rewriting history.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.
    Called by LifecycleService, which holds the permit row lock and owns
    the permit status side of every decision.

Invariants enforced:
    - At most one PENDING record per permit, enforced by the partial
      unique index on approval_records; a second PENDING insert fails with
      IntegrityError at flush.
    - Only a PENDING record can be decided, and only to APPROVED or
      REJECTED.
    - Records are never updated after their decision and never deleted
      (ORM listeners in models/approval.py).

Failure modes:
    - InvalidDecisionError for a decision other than APPROVED/REJECTED.
    - ApprovalNotFoundError if approval_id is unknown.
    - ApprovalAlreadyDecidedError if the record has left PENDING.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from permit_kernel.domain.clock import Clock, SystemClock
from permit_kernel.domain.permit import APPROVER_DECISIONS, ApprovalDecision
from permit_kernel.exceptions import (
    ApprovalAlreadyDecidedError,
    ApprovalNotFoundError,
    InvalidDecisionError,
)
from permit_kernel.logging_config import get_logger
from permit_kernel.models.approval import ApprovalRecord

logger = get_logger("services.approval")

DEFAULT_APPROVER_ROLE = "FIREMAN"


def parse_decision(decision: ApprovalDecision | str) -> ApprovalDecision:
    """Coerce ``decision`` to an approver decision or raise InvalidDecisionError."""
    try:
        parsed = ApprovalDecision(decision)
    except ValueError:
        raise InvalidDecisionError(str(decision)) from None
    if parsed not in APPROVER_DECISIONS:
        raise InvalidDecisionError(parsed.value)
    return parsed


class ApprovalService:
    """Manages approval records of permits.

    Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        initial_approver_role: str = DEFAULT_APPROVER_ROLE,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._initial_approver_role = initial_approver_role

    def create_initial(self, permit_id: UUID) -> ApprovalRecord:
        """Create the PENDING record a new permit waits on."""
        record = ApprovalRecord(
            permit_id=permit_id,
            ordinal=self._next_ordinal(permit_id),
            decision=ApprovalDecision.PENDING.value,
            approver_role=self._initial_approver_role,
            created_at=self._clock.now(),
        )
        self._session.add(record)
        self._session.flush()

        logger.info(
            "approval_record_created",
            extra={
                "approval_id": str(record.id),
                "permit_id": str(permit_id),
                "decision": record.decision,
                "ordinal": record.ordinal,
            },
        )
        return record

    def decide(
        self,
        approval_id: UUID,
        decision: ApprovalDecision | str,
        comment: str | None,
        approver_name: str,
        approver_role: str | None = None,
    ) -> ApprovalRecord:
        """Record an approver's decision on a PENDING record.

        Raises:
            InvalidDecisionError: decision is not APPROVED or REJECTED.
            ApprovalNotFoundError: no record with ``approval_id``.
            ApprovalAlreadyDecidedError: the record is no longer PENDING.
        """
        parsed = parse_decision(decision)
        record = self.get(approval_id, for_update=True)

        if record.decision != ApprovalDecision.PENDING.value:
            logger.warning(
                "approval_already_decided",
                extra={
                    "approval_id": str(approval_id),
                    "decision": record.decision,
                },
            )
            raise ApprovalAlreadyDecidedError(str(approval_id), record.decision)

        record.decision = parsed.value
        record.comment = comment
        record.approver_name = approver_name
        if approver_role:
            record.approver_role = approver_role
        record.approved_at = self._clock.now()
        self._session.flush()

        logger.info(
            "approval_decided",
            extra={
                "approval_id": str(approval_id),
                "permit_id": str(record.permit_id),
                "decision": parsed.value,
            },
        )
        return record

    def create_reapproval(
        self,
        permit_id: UUID,
        comment: str | None,
        signature: str | None,
        approver_name: str,
        approver_role: str | None = None,
    ) -> ApprovalRecord:
        """Append a REAPPROVED record; earlier records are left untouched."""
        now = self._clock.now()
        record = ApprovalRecord(
            permit_id=permit_id,
            ordinal=self._next_ordinal(permit_id),
            decision=ApprovalDecision.REAPPROVED.value,
            approver_name=approver_name,
            approver_role=approver_role,
            comment=comment,
            signature=signature,
            signed_at=now if signature else None,
            approved_at=now,
            created_at=now,
        )
        self._session.add(record)
        self._session.flush()

        logger.info(
            "approval_record_created",
            extra={
                "approval_id": str(record.id),
                "permit_id": str(permit_id),
                "decision": record.decision,
                "ordinal": record.ordinal,
            },
        )
        return record

    def get(self, approval_id: UUID, for_update: bool = False) -> ApprovalRecord:
        """Load a record by id.

        Raises:
            ApprovalNotFoundError: no record with ``approval_id``.
        """
        stmt = select(ApprovalRecord).where(ApprovalRecord.id == approval_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        record = self._session.execute(stmt).scalar_one_or_none()
        if record is None:
            raise ApprovalNotFoundError(str(approval_id))
        return record

    def list_for_permit(self, permit_id: UUID) -> list[ApprovalRecord]:
        """All records of a permit, oldest first."""
        return list(
            self._session.execute(
                select(ApprovalRecord)
                .where(ApprovalRecord.permit_id == permit_id)
                .order_by(ApprovalRecord.ordinal)
            ).scalars()
        )

    def active_for_permit(self, permit_id: UUID) -> ApprovalRecord | None:
        """The most recent record of a permit."""
        return self._session.execute(
            select(ApprovalRecord)
            .where(ApprovalRecord.permit_id == permit_id)
            .order_by(ApprovalRecord.ordinal.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _next_ordinal(self, permit_id: UUID) -> int:
        # Callers hold the permit row lock, so this cannot race.
        current = self._session.execute(
            select(func.max(ApprovalRecord.ordinal))
            .where(ApprovalRecord.permit_id == permit_id)
        ).scalar()
        return (current or 0) + 1
