"""
ActionHistoryService -- append-only permit action log.

Responsibility:
    Appends one ActionHistoryEntry per lifecycle-affecting action
    (revoke, reapprove, extend, close) inside the caller's transaction,
    and lists a permit's entries in insertion order.

Architecture position:
    Kernel > Services.  Called by LifecycleService and AutoCloseSweeper.

Invariants enforced:
    - Pure append.  Entries are never updated or deleted (ORM listeners
      in models/action_history.py).
    - A write failure propagates to the caller and rolls back the
      transition it belongs to.  It is never swallowed.

Failure modes:
    - Any SQLAlchemy error from the INSERT, unchanged.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from permit_kernel.domain.clock import Clock, SystemClock
from permit_kernel.domain.lifecycle import PermitStatus
from permit_kernel.domain.permit import HistoryAction
from permit_kernel.logging_config import get_logger
from permit_kernel.models.action_history import ActionHistoryEntry

logger = get_logger("services.action_history")


class ActionHistoryService:
    """Records and lists permit actions.

    Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    def record(
        self,
        permit_id: UUID,
        action: HistoryAction,
        performed_by: UUID,
        performed_by_name: str,
        performed_by_role: str,
        comment: str | None,
        previous_status: PermitStatus,
        new_status: PermitStatus,
        signature: str | None = None,
    ) -> ActionHistoryEntry:
        """Append an entry and flush it so failures surface here."""
        entry = ActionHistoryEntry(
            permit_id=permit_id,
            ordinal=self._next_ordinal(permit_id),
            action=HistoryAction(action).value,
            performed_by=performed_by,
            performed_by_name=performed_by_name,
            performed_by_role=performed_by_role,
            comment=comment,
            previous_status=PermitStatus(previous_status).value,
            new_status=PermitStatus(new_status).value,
            signature=signature,
            created_at=self._clock.now(),
        )
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "action_recorded",
            extra={
                "permit_id": str(permit_id),
                "action": entry.action,
                "previous_status": entry.previous_status,
                "new_status": entry.new_status,
                "performed_by": str(performed_by),
                "ordinal": entry.ordinal,
            },
        )
        return entry

    def list_for_permit(self, permit_id: UUID) -> list[ActionHistoryEntry]:
        """All entries of a permit, oldest first."""
        return list(
            self._session.execute(
                select(ActionHistoryEntry)
                .where(ActionHistoryEntry.permit_id == permit_id)
                .order_by(ActionHistoryEntry.ordinal)
            ).scalars()
        )

    def _next_ordinal(self, permit_id: UUID) -> int:
        # Callers hold the permit row lock (or the sweeper's guarded UPDATE).
        current = self._session.execute(
            select(func.max(ActionHistoryEntry.ordinal))
            .where(ActionHistoryEntry.permit_id == permit_id)
        ).scalar()
        return (current or 0) + 1
