"""
PermitOrchestrator -- transaction boundary for permit operations.

Responsibility:
    Runs every permit operation as one atomic unit: opens a session,
    delegates to LifecycleService / AutoCloseSweeper / PermitSelector,
    commits on success and rolls back on any failure.  Returns frozen
    snapshots, never ORM instances.

Architecture position:
    Kernel > Services -- the outermost kernel entry point.  Transport
    layers (HTTP handlers, CLI scripts, schedulers) call this class.

Invariants enforced:
    - One lifecycle operation == one database transaction spanning the
      permit, its approval records and its action history entries.
    - A taken permit number is skipped inside the create transaction;
      a SequenceConflictError that still escapes (lost counter insert
      race) is retried with a fresh transaction, up to
      ``allocation_max_attempts``.  Callers only see it when retries run
      out.
    - Driver failures (``DBAPIError``) and pool exhaustion surface as
      PersistenceError / PersistenceTimeoutError after rollback.
    - Notifications run after commit.  A failing event sink is logged
      and never rolls anything back.

Failure modes:
    - Every PermitKernelError raised by the services, unchanged.
    - PersistenceError / PersistenceTimeoutError.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from permit_kernel.config import PermitKernelConfig
from permit_kernel.domain.clock import Clock, SystemClock
from permit_kernel.domain.lifecycle import PermitStatus
from permit_kernel.domain.permit import (
    ActionHistoryRecord,
    ApprovalDecision,
    ApprovalRecordSnapshot,
    NullEventSink,
    PermitAggregate,
    PermitDraft,
    PermitEventSink,
    PermitRecord,
    Principal,
)
from permit_kernel.exceptions import (
    PermitKernelError,
    PermitNotFoundError,
    PersistenceError,
    PersistenceTimeoutError,
    SequenceConflictError,
    ValidationError,
)
from permit_kernel.logging_config import LogContext, get_logger
from permit_kernel.selectors.permit_selector import ApprovalStats, PermitSelector
from permit_kernel.services.auto_close_sweeper import AutoCloseSweeper, SweepResult
from permit_kernel.services.lifecycle_service import LifecycleService

logger = get_logger("services.orchestrator")

T = TypeVar("T")

# PostgreSQL: query_canceled (statement_timeout), lock_not_available (lock_timeout)
_TIMEOUT_PGCODES = frozenset({"57014", "55P03"})
_TIMEOUT_MARKERS = ("database is locked", "timeout", "timed out")


def _is_timeout(exc: DBAPIError) -> bool:
    if getattr(exc.orig, "pgcode", None) in _TIMEOUT_PGCODES:
        return True
    message = str(exc.orig).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


def _parse_filter(field: str, enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(field, f"'{value}' is not a known value") from None


@dataclass(frozen=True)
class PermitOutcome:
    """A permit snapshot plus the approval record the operation touched."""

    permit: PermitRecord
    approval: ApprovalRecordSnapshot | None = None


class PermitOrchestrator:
    """
    Entry point for permit operations.

    Contract:
        Each public method owns its transaction.  On success the unit is
        committed; on failure it is rolled back and the error re-raised.

    Usage:
        orchestrator = PermitOrchestrator(get_session_factory(), config=config)
        outcome = orchestrator.create_permit(draft, requester)
        orchestrator.decide(outcome.approval.id, "APPROVED", "ok", fireman)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        clock: Clock | None = None,
        config: PermitKernelConfig | None = None,
        event_sink: PermitEventSink | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._config = config or PermitKernelConfig()
        self._event_sink = event_sink or NullEventSink()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_permit(self, draft: PermitDraft, owner: Principal) -> PermitOutcome:
        """Create a PENDING permit and its first approval record."""

        def work(session: Session) -> PermitOutcome:
            permit, approval = self._lifecycle(session).create_permit(draft, owner)
            return PermitOutcome(permit.to_dto(), approval.to_dto())

        outcome = self._run(
            "create_permit", work, actor=owner, retry_conflicts=True,
        )
        self._notify("permit_created", outcome.permit)
        return outcome

    def decide(
        self,
        approval_id: UUID,
        decision: ApprovalDecision | str,
        comment: str | None,
        actor: Principal,
    ) -> PermitOutcome:
        """Approve or reject the permit behind ``approval_id``."""

        def work(session: Session) -> PermitOutcome:
            permit, approval = self._lifecycle(session).decide(
                approval_id, decision, comment, actor,
            )
            return PermitOutcome(permit.to_dto(), approval.to_dto())

        outcome = self._run("decide", work, actor=actor)
        self._notify("decision_made", outcome.permit, outcome.approval)
        return outcome

    def extend(
        self,
        permit_id: UUID,
        extended_until: datetime,
        reason: str | None,
        actor: Principal,
        signature: str | None = None,
    ) -> PermitRecord:
        return self._run(
            "extend",
            lambda s: self._lifecycle(s).extend(
                permit_id, extended_until, reason, actor, signature=signature,
            ).to_dto(),
            actor=actor,
            permit_id=permit_id,
        )

    def revoke(
        self,
        permit_id: UUID,
        reason: str | None,
        actor: Principal,
        comment: str | None = None,
        signature: str | None = None,
    ) -> PermitRecord:
        return self._run(
            "revoke",
            lambda s: self._lifecycle(s).revoke(
                permit_id, reason, actor, comment=comment, signature=signature,
            ).to_dto(),
            actor=actor,
            permit_id=permit_id,
        )

    def reapprove(
        self,
        permit_id: UUID,
        comment: str | None,
        signature: str | None,
        actor: Principal,
    ) -> PermitOutcome:

        def work(session: Session) -> PermitOutcome:
            permit, approval = self._lifecycle(session).reapprove(
                permit_id, comment, signature, actor,
            )
            return PermitOutcome(permit.to_dto(), approval.to_dto())

        return self._run("reapprove", work, actor=actor, permit_id=permit_id)

    def close(
        self,
        permit_id: UUID,
        closure_checklist: Iterable[Any] | None,
        actor: Principal,
        comments: str | None = None,
        signature: str | None = None,
    ) -> PermitRecord:
        return self._run(
            "close",
            lambda s: self._lifecycle(s).close(
                permit_id, closure_checklist, actor,
                comments=comments, signature=signature,
            ).to_dto(),
            actor=actor,
            permit_id=permit_id,
        )

    def add_safety_remarks(
        self, permit_id: UUID, remarks: str | None, actor: Principal,
    ) -> PermitRecord:
        return self._run(
            "add_safety_remarks",
            lambda s: self._lifecycle(s).add_safety_remarks(
                permit_id, remarks, actor,
            ).to_dto(),
            actor=actor,
            permit_id=permit_id,
        )

    def update_draft(
        self, permit_id: UUID, changes: Mapping[str, Any], actor: Principal,
    ) -> PermitRecord:
        """Edit the draft fields of a permit that is still PENDING."""
        return self._run(
            "update_draft",
            lambda s: self._lifecycle(s).update_draft(
                permit_id, changes, actor,
            ).to_dto(),
            actor=actor,
            permit_id=permit_id,
        )

    def transfer_owner(
        self,
        permit_id: UUID,
        new_owner_id: UUID,
        actor: Principal,
        reason: str | None = None,
    ) -> PermitRecord:
        return self._run(
            "transfer_owner",
            lambda s: self._lifecycle(s).transfer_owner(
                permit_id, new_owner_id, actor, reason=reason,
            ).to_dto(),
            actor=actor,
            permit_id=permit_id,
        )

    def run_auto_close(
        self, now: datetime | None = None, limit: int | None = None,
    ) -> SweepResult:
        """Run one auto-close sweep as of ``now`` and commit what it closed."""

        def work(session: Session) -> SweepResult:
            sweeper = AutoCloseSweeper(
                session, self._clock, batch_limit=self._config.sweep_batch_limit,
            )
            return sweeper.sweep(now=now, limit=limit)

        return self._run("run_auto_close", work)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def action_history(self, permit_id: UUID) -> tuple[ActionHistoryRecord, ...]:
        """Action history of a permit, oldest first."""

        def work(session: Session) -> tuple[ActionHistoryRecord, ...]:
            selector = PermitSelector(session)
            if selector.get_permit(permit_id) is None:
                raise PermitNotFoundError(str(permit_id))
            return selector.action_history(permit_id)

        return self._run("action_history", work, permit_id=permit_id)

    def get_aggregate(self, permit_id: UUID) -> PermitAggregate:
        """Export aggregate: the permit, its approvals and its history."""

        def work(session: Session) -> PermitAggregate:
            aggregate = PermitSelector(session).aggregate(permit_id)
            if aggregate is None:
                raise PermitNotFoundError(str(permit_id))
            return aggregate

        return self._run("get_aggregate", work, permit_id=permit_id)

    def get_by_number(self, permit_number: str) -> PermitRecord:

        def work(session: Session) -> PermitRecord:
            permit = PermitSelector(session).get_by_number(permit_number)
            if permit is None:
                raise PermitNotFoundError(permit_number)
            return permit

        return self._run("get_by_number", work)

    def list_permits(
        self,
        status: PermitStatus | str | None = None,
        owner_id: UUID | None = None,
    ) -> list[PermitRecord]:
        """Permits, newest first, optionally filtered by status and owner."""
        if status is not None:
            status = _parse_filter("status", PermitStatus, status)
        return self._run(
            "list_permits",
            lambda s: PermitSelector(s).list_permits(status=status, owner_id=owner_id),
        )

    def list_approvals(
        self, decision: ApprovalDecision | str | None = None,
    ) -> list[ApprovalRecordSnapshot]:
        """Approval records across all permits, newest first."""
        if decision is not None:
            decision = _parse_filter("decision", ApprovalDecision, decision)
        return self._run(
            "list_approvals",
            lambda s: PermitSelector(s).list_approvals(decision=decision),
        )

    def pending_remarks(self, now: datetime | None = None) -> list[PermitRecord]:
        as_of = now or self._clock.now()
        return self._run(
            "pending_remarks", lambda s: PermitSelector(s).pending_remarks(as_of),
        )

    def approval_stats(self) -> ApprovalStats:
        return self._run(
            "approval_stats", lambda s: PermitSelector(s).approval_stats(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lifecycle(self, session: Session) -> LifecycleService:
        return LifecycleService(
            session,
            self._clock,
            permit_prefix=self._config.permit_prefix,
            numbering_timezone=self._config.numbering_timezone,
            initial_approver_role=self._config.initial_approver_role,
            allocation_max_attempts=self._config.allocation_max_attempts,
        )

    def _run(
        self,
        operation: str,
        work: Callable[[Session], T],
        *,
        actor: Principal | None = None,
        permit_id: UUID | None = None,
        retry_conflicts: bool = False,
    ) -> T:
        attempts = self._config.allocation_max_attempts if retry_conflicts else 1
        correlation_id = LogContext.get_all().get("correlation_id") or str(uuid4())

        with LogContext.bind(
            correlation_id=correlation_id,
            actor_id=str(actor.id) if actor else None,
            permit_id=str(permit_id) if permit_id else None,
        ):
            attempt = 0
            while True:
                attempt += 1
                session = self._session_factory()
                try:
                    result = work(session)
                    session.commit()
                    logger.debug(
                        "operation_committed",
                        extra={"operation": operation, "attempt": attempt},
                    )
                    return result
                except SequenceConflictError as exc:
                    session.rollback()
                    if attempt >= attempts:
                        logger.error(
                            "sequence_conflict_retries_exhausted",
                            extra={"operation": operation, "attempts": attempts},
                        )
                        raise
                    logger.warning(
                        "sequence_conflict_retry",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "bucket": exc.bucket,
                        },
                    )
                except PermitKernelError as exc:
                    session.rollback()
                    logger.info(
                        "operation_rejected",
                        extra={
                            "operation": operation,
                            "error_code": exc.code,
                            "error": str(exc),
                        },
                    )
                    raise
                except PoolTimeoutError as exc:
                    session.rollback()
                    logger.error(
                        "persistence_timeout",
                        extra={"operation": operation},
                        exc_info=True,
                    )
                    raise PersistenceTimeoutError(operation, str(exc)) from exc
                except DBAPIError as exc:
                    session.rollback()
                    error_cls = (
                        PersistenceTimeoutError if _is_timeout(exc) else PersistenceError
                    )
                    logger.error(
                        "persistence_failure",
                        extra={
                            "operation": operation,
                            "error_code": error_cls.code,
                        },
                        exc_info=True,
                    )
                    raise error_cls(operation, str(exc.orig)) from exc
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()

    def _notify(self, hook: str, *args: Any) -> None:
        try:
            getattr(self._event_sink, hook)(*args)
        except Exception:
            logger.warning(
                "event_sink_failed",
                extra={"hook": hook},
                exc_info=True,
            )
