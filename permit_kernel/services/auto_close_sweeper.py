"""
AutoCloseSweeper -- time-driven closing of expired permits.

Responsibility:
    Closes permits whose validity window has passed, in two independent
    scans:

    (a) regular:  APPROVED, not extended, ``end_date <= now``
    (b) extended: EXTENDED or REAPPROVED, extended, ``extended_until <= now``

    Both set status CLOSED, ``closed_at = auto_closed_at = now`` and append
    a CLOSED action history entry performed by the system principal.

Architecture position:
    Kernel > Services.  Runs independently of request traffic (on demand
    via the orchestrator or scripts/run_auto_close.py, or from an
    external timer).

Invariants enforced:
    - Compare-and-swap: each permit is closed by an UPDATE whose WHERE
      repeats the full guard plus the status observed by the scan.  A
      permit revoked or closed in between matches zero rows and is
      skipped, so a concurrent manual action is never overwritten and no
      permit is closed twice.
    - Idempotent: a second sweep with no intervening change closes
      nothing.
    - Per-permit SAVEPOINT isolation: one failure is collected and the
      sweep moves on.  Nothing is committed here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from permit_kernel.domain.clock import Clock, SystemClock
from permit_kernel.domain.lifecycle import (
    EXTENDED_AUTO_CLOSE_STATUSES,
    REGULAR_AUTO_CLOSE_STATUSES,
    LifecycleEvent,
    PermitStatus,
    next_status,
)
from permit_kernel.domain.permit import SYSTEM_PRINCIPAL, HistoryAction
from permit_kernel.exceptions import ValidationError
from permit_kernel.logging_config import get_logger
from permit_kernel.models.permit import Permit
from permit_kernel.services.action_history_service import ActionHistoryService

logger = get_logger("services.auto_close")

REGULAR_SCAN = "regular"
EXTENDED_SCAN = "extended"

_SCAN_COMMENTS = {
    REGULAR_SCAN: "Auto-closed: end date passed",
    EXTENDED_SCAN: "Auto-closed: extension expired",
}


@dataclass(frozen=True)
class SweepFailure:
    """A permit the sweep could not close."""

    permit_id: UUID
    scan: str
    error_code: str
    error_message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "permitId": str(self.permit_id),
            "scan": self.scan,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
        }


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one sweep."""

    regular_closed: int = 0
    extended_closed: int = 0
    failures: tuple[SweepFailure, ...] = field(default_factory=tuple)
    closed_permit_ids: tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def closed_count(self) -> int:
        return self.regular_closed + self.extended_closed

    def to_dict(self) -> dict[str, Any]:
        return {
            "closedCount": self.closed_count,
            "regularClosed": self.regular_closed,
            "extendedClosed": self.extended_closed,
            "failures": [f.to_dict() for f in self.failures],
        }


def _regular_guard(now: datetime) -> tuple:
    return (
        Permit.status.in_([s.value for s in REGULAR_AUTO_CLOSE_STATUSES]),
        Permit.is_extended.is_(False),
        Permit.end_date <= now,
        Permit.closed_at.is_(None),
    )


def _extended_guard(now: datetime) -> tuple:
    return (
        Permit.status.in_([s.value for s in EXTENDED_AUTO_CLOSE_STATUSES]),
        Permit.is_extended.is_(True),
        Permit.extended_until <= now,
        Permit.closed_at.is_(None),
    )


class AutoCloseSweeper:
    """Closes expired permits.

    Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        batch_limit: int | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._batch_limit = batch_limit
        self._history = ActionHistoryService(session, self._clock)

    def sweep(self, now: datetime | None = None, limit: int | None = None) -> SweepResult:
        """Run both scans as of ``now`` (defaults to the clock).

        ``limit`` caps the permits each scan picks up.

        Raises:
            ValidationError: ``now`` is naive or ``limit`` is below 1.
        """
        now = now or self._clock.now()
        if not isinstance(now, datetime) or now.tzinfo is None or now.utcoffset() is None:
            raise ValidationError("now", "must be a timezone-aware datetime")
        limit = limit if limit is not None else self._batch_limit
        if limit is not None and (
            isinstance(limit, bool) or not isinstance(limit, int) or limit < 1
        ):
            raise ValidationError("limit", "must be a positive integer")

        logger.info(
            "auto_close_sweep_started",
            extra={"as_of": now, "limit": limit},
        )

        failures: list[SweepFailure] = []
        closed_ids: list[UUID] = []

        regular = self._run_scan(
            REGULAR_SCAN, _regular_guard(now), Permit.end_date,
            now, limit, failures, closed_ids,
        )
        extended = self._run_scan(
            EXTENDED_SCAN, _extended_guard(now), Permit.extended_until,
            now, limit, failures, closed_ids,
        )

        result = SweepResult(
            regular_closed=regular,
            extended_closed=extended,
            failures=tuple(failures),
            closed_permit_ids=tuple(closed_ids),
        )
        logger.info(
            "auto_close_sweep_completed",
            extra={
                "closed_count": result.closed_count,
                "regular_closed": regular,
                "extended_closed": extended,
                "failed": len(failures),
            },
        )
        return result

    def _run_scan(
        self,
        scan: str,
        guard: tuple,
        order_column,
        now: datetime,
        limit: int | None,
        failures: list[SweepFailure],
        closed_ids: list[UUID],
    ) -> int:
        stmt = select(Permit.id, Permit.status).where(*guard).order_by(order_column, Permit.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        candidates = self._session.execute(stmt).all()

        closed = 0
        for permit_id, observed_status in candidates:
            savepoint = self._session.begin_nested()
            try:
                if self._close_one(scan, permit_id, PermitStatus(observed_status), guard, now):
                    savepoint.commit()
                    closed += 1
                    closed_ids.append(permit_id)
                else:
                    savepoint.rollback()
                    self._expire_cached(permit_id)
                    logger.info(
                        "auto_close_skipped",
                        extra={"permit_id": str(permit_id), "scan": scan},
                    )
            except Exception as exc:
                savepoint.rollback()
                self._expire_cached(permit_id)
                failures.append(SweepFailure(
                    permit_id=permit_id,
                    scan=scan,
                    error_code=getattr(exc, "code", type(exc).__name__),
                    error_message=str(exc),
                ))
                logger.error(
                    "auto_close_failed",
                    extra={"permit_id": str(permit_id), "scan": scan},
                    exc_info=True,
                )
        return closed

    def _close_one(
        self,
        scan: str,
        permit_id: UUID,
        observed: PermitStatus,
        guard: tuple,
        now: datetime,
    ) -> bool:
        target = next_status(observed, LifecycleEvent.AUTO_CLOSE, str(permit_id))
        result = self._session.execute(
            update(Permit)
            .where(Permit.id == permit_id, Permit.status == observed.value, *guard)
            .values(
                status=target.value,
                closed_at=now,
                auto_closed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self._expire_cached(permit_id)

        self._history.record(
            permit_id=permit_id,
            action=HistoryAction.CLOSED,
            performed_by=SYSTEM_PRINCIPAL.id,
            performed_by_name=SYSTEM_PRINCIPAL.full_name,
            performed_by_role=SYSTEM_PRINCIPAL.role,
            comment=_SCAN_COMMENTS[scan],
            previous_status=observed,
            new_status=target,
        )
        logger.info(
            "permit_auto_closed",
            extra={
                "permit_id": str(permit_id),
                "scan": scan,
                "from_status": observed.value,
            },
        )
        return True

    def _expire_cached(self, permit_id: UUID) -> None:
        # The UPDATE and a savepoint rollback both bypass the identity map.
        cached = self._session.identity_map.get(
            Session.identity_key(Permit, permit_id)
        )
        if cached is not None:
            self._session.expire(cached)
