"""
LifecycleService -- persistent permit state transitions.

Responsibility:
    Applies lifecycle events to permits: create, decide, extend, revoke,
    reapprove, close, plus the status-neutral safety-remarks overlay,
    draft edits while PENDING and owner transfer.  Target statuses come
    from the transition table in ``domain/lifecycle.py``; this service
    never compares statuses itself.

Architecture position:
    Kernel > Services -- imperative shell.  Composes SequenceService,
    ApprovalService and ActionHistoryService inside the caller's
    transaction.  Called by PermitOrchestrator.

Invariants enforced:
    - Every transition loads the permit with ``SELECT ... FOR UPDATE``
      before reading its status, so concurrent transitions on one permit
      serialize and re-applying an applied transition fails.
    - A permit and its first approval record are created together.
    - A taken permit number (counter behind the persisted numbers) is
      skipped by allocating again in the same transaction.
    - Draft fields can only be edited while the permit is PENDING.
    - Revoke, reapprove, extend and close append exactly one action
      history entry.  If that append fails the transition fails with it.

Failure modes:
    - ValidationError (and subclasses) on malformed input, before any
      mutation.
    - PermitNotFoundError / ApprovalNotFoundError.
    - InvalidTransitionError when the event is not legal from the
      permit's status; ApprovalAlreadyDecidedError on a decided record.
    - SequenceConflictError when every number allocated within
      ``allocation_max_attempts`` was already taken.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from permit_kernel.domain.clock import Clock, SystemClock
from permit_kernel.domain.lifecycle import (
    LifecycleEvent,
    PermitStatus,
    ensure_draft_editable,
    ensure_remarks_allowed,
    next_status,
)
from permit_kernel.domain.numbering import MonthKey, bucket_name
from permit_kernel.domain.permit import (
    ApprovalDecision,
    HistoryAction,
    PermitDraft,
    PermitPriority,
    Principal,
    WorkType,
)
from permit_kernel.exceptions import (
    ApprovalAlreadyDecidedError,
    PermitNotFoundError,
    SequenceConflictError,
    ValidationError,
)
from permit_kernel.logging_config import get_logger
from permit_kernel.models.approval import ApprovalRecord
from permit_kernel.models.permit import Permit
from permit_kernel.services.action_history_service import ActionHistoryService
from permit_kernel.services.approval_service import (
    DEFAULT_APPROVER_ROLE,
    ApprovalService,
    parse_decision,
)
from permit_kernel.services.sequence_service import SequenceService

logger = get_logger("services.lifecycle")

DEFAULT_PERMIT_PREFIX = "RGDGTLWP"

_DECISION_EVENTS = {
    ApprovalDecision.APPROVED: LifecycleEvent.APPROVE,
    ApprovalDecision.REJECTED: LifecycleEvent.REJECT,
}

# Fields a requester may change while the permit is PENDING
DRAFT_FIELDS = frozenset({
    "title",
    "description",
    "location",
    "work_type",
    "priority",
    "start_date",
    "end_date",
    "hazards",
    "precautions",
    "equipment",
    "contractor_name",
    "contractor_phone",
    "company_name",
    "timezone",
})


def _require_aware(field: str, value: Any) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(field, "must be a datetime")
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(field, "must be timezone-aware")
    return value


def _require_text(field: str, value: str | None) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(field, "must not be blank")
    return str(value).strip()


def _coerce_enum(field: str, enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(field, f"'{value}' is not one of {allowed}") from None


def _string_list(field: str, values: Iterable[Any] | None) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        raise ValidationError(field, "must be a list of strings, not a string")
    return [str(v) for v in values]


class LifecycleService:
    """Applies lifecycle events to persisted permits.

    Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        permit_prefix: str = DEFAULT_PERMIT_PREFIX,
        numbering_timezone: str = "UTC",
        initial_approver_role: str = DEFAULT_APPROVER_ROLE,
        allocation_max_attempts: int = 5,
    ) -> None:
        self._session = session
        self._allocation_max_attempts = max(1, allocation_max_attempts)
        self._clock = clock or SystemClock()
        self._permit_prefix = permit_prefix
        self._numbering_timezone = numbering_timezone
        self._sequence = SequenceService(session)
        self._approvals = ApprovalService(
            session, self._clock, initial_approver_role=initial_approver_role,
        )
        self._history = ActionHistoryService(session, self._clock)

    @property
    def approvals(self) -> ApprovalService:
        return self._approvals

    @property
    def history(self) -> ActionHistoryService:
        return self._history

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_permit(
        self, draft: PermitDraft, owner: Principal,
    ) -> tuple[Permit, ApprovalRecord]:
        """Create a PENDING permit with its number and first approval record.

        Raises:
            ValidationError: malformed draft.
            SequenceConflictError: every number allocated within
                ``allocation_max_attempts`` was already taken.
            SequenceExhaustedError: the month's bucket is full.
        """
        title = _require_text("title", draft.title)
        work_type = _coerce_enum("work_type", WorkType, draft.work_type)
        priority = _coerce_enum("priority", PermitPriority, draft.priority)
        start = _require_aware("start_date", draft.start_date)
        end = _require_aware("end_date", draft.end_date)
        if not start < end:
            raise ValidationError("end_date", "must be later than start_date")
        hazards = _string_list("hazards", draft.hazards)
        precautions = _string_list("precautions", draft.precautions)
        equipment = _string_list("equipment", draft.equipment)

        now = self._clock.now()
        month_key = MonthKey.from_datetime(now, self._numbering_timezone)
        fields = dict(
            title=title,
            description=draft.description,
            location=draft.location,
            work_type=work_type.value,
            priority=priority.value,
            status=PermitStatus.PENDING.value,
            start_date=start,
            end_date=end,
            is_extended=False,
            closure_checklist=[],
            hazards=hazards,
            precautions=precautions,
            equipment=equipment,
            contractor_name=draft.contractor_name,
            contractor_phone=draft.contractor_phone,
            company_name=draft.company_name,
            timezone=draft.timezone,
            owner_id=owner.id,
            created_at=now,
            updated_at=now,
        )

        # A counter that lags behind persisted numbers (restored backup,
        # manual insert) hands out a taken number.  The increment sits
        # outside the savepoint, so the next allocation moves past it.
        permit = None
        permit_number = None
        for attempt in range(1, self._allocation_max_attempts + 1):
            permit_number = self._sequence.allocate(self._permit_prefix, month_key)
            permit = self._insert_permit(permit_number, fields)
            if permit is not None:
                break
            logger.warning(
                "permit_number_taken",
                extra={"permit_number": permit_number, "attempt": attempt},
            )
        if permit is None:
            raise SequenceConflictError(
                bucket_name(self._permit_prefix, month_key),
                f"{permit_number} is already in use",
            )

        approval = self._approvals.create_initial(permit.id)

        logger.info(
            "permit_created",
            extra={
                "permit_id": str(permit.id),
                "permit_number": permit_number,
                "work_type": permit.work_type,
                "owner_id": str(owner.id),
            },
        )
        return permit, approval

    def _insert_permit(self, permit_number: str, fields: dict[str, Any]) -> Permit | None:
        """Insert a permit under ``permit_number``; None when the number is taken."""
        permit = Permit(permit_number=permit_number, **fields)
        savepoint = self._session.begin_nested()
        try:
            self._session.add(permit)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            taken = self._session.execute(
                select(Permit.id).where(Permit.permit_number == permit_number)
            ).scalar_one_or_none()
            if taken is None:
                raise
            return None
        return permit

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def decide(
        self,
        approval_id: UUID,
        decision: ApprovalDecision | str,
        comment: str | None,
        actor: Principal,
    ) -> tuple[Permit, ApprovalRecord]:
        """Approve or reject a permit through its PENDING approval record."""
        parsed = parse_decision(decision)
        record = self._approvals.get(approval_id)
        permit = self.lock_permit(record.permit_id)
        record = self._approvals.get(approval_id, for_update=True)
        if record.decision != ApprovalDecision.PENDING.value:
            raise ApprovalAlreadyDecidedError(str(approval_id), record.decision)

        current = permit.permit_status
        target = next_status(current, _DECISION_EVENTS[parsed], str(permit.id))

        record = self._approvals.decide(
            approval_id,
            parsed,
            comment=comment,
            approver_name=actor.full_name,
            approver_role=actor.role,
        )
        self._apply_status(permit, target)
        self._session.flush()

        self._log_transition(permit, current, target, parsed.value, actor)
        return permit, record

    def extend(
        self,
        permit_id: UUID,
        extended_until: datetime,
        reason: str | None,
        actor: Principal,
        signature: str | None = None,
    ) -> Permit:
        """Extend an APPROVED permit past its end date."""
        until = _require_aware("extended_until", extended_until)
        permit = self.lock_permit(permit_id)
        current = permit.permit_status
        target = next_status(current, LifecycleEvent.EXTEND, str(permit.id))

        if not until > permit.end_date:
            raise ValidationError("extended_until", "must be later than end_date")

        self._apply_status(permit, target)
        permit.is_extended = True
        permit.extended_until = until
        permit.extension_reason = reason
        self._session.flush()

        self._history.record(
            permit_id=permit.id,
            action=HistoryAction.EXTENDED,
            performed_by=actor.id,
            performed_by_name=actor.full_name,
            performed_by_role=actor.role,
            comment=reason,
            previous_status=current,
            new_status=target,
            signature=signature,
        )
        self._log_transition(permit, current, target, LifecycleEvent.EXTEND.value, actor)
        return permit

    def revoke(
        self,
        permit_id: UUID,
        reason: str | None,
        actor: Principal,
        comment: str | None = None,
        signature: str | None = None,
    ) -> Permit:
        """Revoke an active permit.  ``comment`` falls back to ``reason``."""
        text = comment if comment and comment.strip() else reason
        text = _require_text("reason", text)

        permit = self.lock_permit(permit_id)
        current = permit.permit_status
        target = next_status(current, LifecycleEvent.REVOKE, str(permit.id))

        self._apply_status(permit, target)
        self._session.flush()

        self._history.record(
            permit_id=permit.id,
            action=HistoryAction.REVOKED,
            performed_by=actor.id,
            performed_by_name=actor.full_name,
            performed_by_role=actor.role,
            comment=text,
            previous_status=current,
            new_status=target,
            signature=signature,
        )
        self._log_transition(permit, current, target, LifecycleEvent.REVOKE.value, actor)
        return permit

    def reapprove(
        self,
        permit_id: UUID,
        comment: str | None,
        signature: str | None,
        actor: Principal,
    ) -> tuple[Permit, ApprovalRecord]:
        """Reinstate a REVOKED permit with a new REAPPROVED approval record."""
        permit = self.lock_permit(permit_id)
        current = permit.permit_status
        target = next_status(current, LifecycleEvent.REAPPROVE, str(permit.id))

        self._apply_status(permit, target)
        self._session.flush()

        record = self._approvals.create_reapproval(
            permit.id,
            comment=comment,
            signature=signature,
            approver_name=actor.full_name,
            approver_role=actor.role,
        )
        self._history.record(
            permit_id=permit.id,
            action=HistoryAction.REAPPROVED,
            performed_by=actor.id,
            performed_by_name=actor.full_name,
            performed_by_role=actor.role,
            comment=comment,
            previous_status=current,
            new_status=target,
            signature=signature,
        )
        self._log_transition(permit, current, target, LifecycleEvent.REAPPROVE.value, actor)
        return permit, record

    def close(
        self,
        permit_id: UUID,
        closure_checklist: Iterable[Any] | None,
        actor: Principal,
        comments: str | None = None,
        signature: str | None = None,
    ) -> Permit:
        """Close an APPROVED or EXTENDED permit with its closure checklist."""
        if isinstance(closure_checklist, (str, bytes)):
            raise ValidationError("closure_checklist", "must be a list")
        checklist = list(closure_checklist or [])

        permit = self.lock_permit(permit_id)
        current = permit.permit_status
        target = next_status(current, LifecycleEvent.CLOSE, str(permit.id))

        now = self._clock.now()
        self._apply_status(permit, target)
        permit.closed_at = now
        permit.closure_checklist = checklist
        permit.closure_comments = comments
        self._session.flush()

        self._history.record(
            permit_id=permit.id,
            action=HistoryAction.CLOSED,
            performed_by=actor.id,
            performed_by_name=actor.full_name,
            performed_by_role=actor.role,
            comment=comments,
            previous_status=current,
            new_status=target,
            signature=signature,
        )
        self._log_transition(permit, current, target, LifecycleEvent.CLOSE.value, actor)
        return permit

    # ------------------------------------------------------------------
    # Status-neutral updates
    # ------------------------------------------------------------------

    def add_safety_remarks(
        self, permit_id: UUID, remarks: str | None, actor: Principal,
    ) -> Permit:
        """Attach safety remarks.  The status is left as it is."""
        text = _require_text("safety_remarks", remarks)
        permit = self.lock_permit(permit_id)
        ensure_remarks_allowed(permit.permit_status, str(permit.id))

        permit.safety_remarks = text
        permit.remarks_added_by = actor.full_name
        permit.remarks_added_at = self._clock.now()
        permit.updated_at = permit.remarks_added_at
        self._session.flush()

        logger.info(
            "safety_remarks_added",
            extra={
                "permit_id": str(permit.id),
                "status": permit.status,
                "actor_id": str(actor.id),
            },
        )
        return permit

    def update_draft(
        self, permit_id: UUID, changes: Mapping[str, Any], actor: Principal,
    ) -> Permit:
        """Edit the draft fields of a PENDING permit.

        ``changes`` maps field names from DRAFT_FIELDS to new values; the
        merged result is validated like a new draft.  The status, number
        and approval records are left alone and no history entry is
        written.

        Raises:
            ValidationError: empty ``changes``, an unknown field or an
                invalid value.
            InvalidTransitionError: the permit is no longer PENDING.
        """
        if not changes:
            raise ValidationError("changes", "must name at least one field")
        unknown = sorted(set(changes) - DRAFT_FIELDS)
        if unknown:
            raise ValidationError(unknown[0], "is not an editable draft field")

        permit = self.lock_permit(permit_id)
        ensure_draft_editable(permit.permit_status, str(permit.id))

        values: dict[str, Any] = {}
        for name, value in changes.items():
            if name == "title":
                value = _require_text("title", value)
            elif name == "work_type":
                value = _coerce_enum("work_type", WorkType, value).value
            elif name == "priority":
                value = _coerce_enum("priority", PermitPriority, value).value
            elif name in ("start_date", "end_date"):
                value = _require_aware(name, value)
            elif name in ("hazards", "precautions", "equipment"):
                value = _string_list(name, value)
            values[name] = value

        start = values.get("start_date", permit.start_date)
        end = values.get("end_date", permit.end_date)
        if not start < end:
            raise ValidationError("end_date", "must be later than start_date")

        for name, value in values.items():
            setattr(permit, name, value)
        permit.updated_at = self._clock.now()
        self._session.flush()

        logger.info(
            "permit_draft_updated",
            extra={
                "permit_id": str(permit.id),
                "permit_number": permit.permit_number,
                "fields": sorted(values),
                "actor_id": str(actor.id),
            },
        )
        return permit

    def transfer_owner(
        self,
        permit_id: UUID,
        new_owner_id: UUID,
        actor: Principal,
        reason: str | None = None,
    ) -> Permit:
        """Hand the permit to another owner in any status."""
        permit = self.lock_permit(permit_id)
        previous_owner = permit.owner_id
        permit.owner_id = new_owner_id
        permit.updated_at = self._clock.now()
        self._session.flush()

        logger.info(
            "permit_transferred",
            extra={
                "permit_id": str(permit.id),
                "previous_owner_id": str(previous_owner),
                "new_owner_id": str(new_owner_id),
                "actor_id": str(actor.id),
                "reason": reason,
            },
        )
        return permit

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def lock_permit(self, permit_id: UUID) -> Permit:
        """Load a permit with a row lock held until the transaction ends.

        Raises:
            PermitNotFoundError: no permit with ``permit_id``.
        """
        permit = self._session.execute(
            select(Permit)
            .where(Permit.id == permit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if permit is None:
            raise PermitNotFoundError(str(permit_id))
        return permit

    def _apply_status(self, permit: Permit, target: PermitStatus) -> None:
        permit.status = target.value
        permit.updated_at = self._clock.now()

    def _log_transition(
        self,
        permit: Permit,
        previous: PermitStatus,
        target: PermitStatus,
        event: str,
        actor: Principal,
    ) -> None:
        logger.info(
            "permit_transitioned",
            extra={
                "permit_id": str(permit.id),
                "permit_number": permit.permit_number,
                "event": event,
                "from_status": previous.value,
                "to_status": target.value,
                "actor_id": str(actor.id),
            },
        )
