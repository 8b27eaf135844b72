"""
Permit lifecycle state machine (``permit_kernel.domain.lifecycle``).

Responsibility
--------------
Pure definition of permit statuses, lifecycle events and the transition
table keyed by ``(current_status, event)``.  Services ask this module
where an event leads; they never compare statuses themselves.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  No imports from ``db/``,
``services/``, ``selectors/`` or outer layers.

Invariants enforced
-------------------
* Closed world: a pair absent from ``PERMIT_TRANSITIONS`` is illegal and
  raises ``InvalidTransitionError``.  Re-applying an applied transition
  is therefore an error, never a silent success.
* CLOSED is reachable only from APPROVED, EXTENDED (manual or automatic)
  or REAPPROVED (automatic only); PENDING never reaches it directly.
* CLOSED and REJECTED have no outgoing status edges.
* PENDING_REMARKS is an overlay label: no event leads into it.
* Draft fields are editable only while PENDING; an edit is not an event
  and never changes the status.
"""

from __future__ import annotations

from enum import Enum

from permit_kernel.exceptions import InvalidTransitionError, RemarksNotAllowedError


class PermitStatus(str, Enum):
    """Permit lifecycle states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXTENDED = "EXTENDED"
    REVOKED = "REVOKED"
    REAPPROVED = "REAPPROVED"
    CLOSED = "CLOSED"
    PENDING_REMARKS = "PENDING_REMARKS"


class LifecycleEvent(str, Enum):
    """Events that move a permit between statuses."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"
    EXTEND = "EXTEND"
    REVOKE = "REVOKE"
    REAPPROVE = "REAPPROVE"
    CLOSE = "CLOSE"
    AUTO_CLOSE = "AUTO_CLOSE"


PERMIT_TRANSITIONS: dict[tuple[PermitStatus, LifecycleEvent], PermitStatus] = {
    (PermitStatus.PENDING, LifecycleEvent.APPROVE): PermitStatus.APPROVED,
    (PermitStatus.PENDING, LifecycleEvent.REJECT): PermitStatus.REJECTED,
    (PermitStatus.APPROVED, LifecycleEvent.EXTEND): PermitStatus.EXTENDED,
    (PermitStatus.APPROVED, LifecycleEvent.REVOKE): PermitStatus.REVOKED,
    (PermitStatus.EXTENDED, LifecycleEvent.REVOKE): PermitStatus.REVOKED,
    (PermitStatus.REAPPROVED, LifecycleEvent.REVOKE): PermitStatus.REVOKED,
    (PermitStatus.REVOKED, LifecycleEvent.REAPPROVE): PermitStatus.REAPPROVED,
    # REAPPROVED is deliberately absent for manual close; see DESIGN.md.
    (PermitStatus.APPROVED, LifecycleEvent.CLOSE): PermitStatus.CLOSED,
    (PermitStatus.EXTENDED, LifecycleEvent.CLOSE): PermitStatus.CLOSED,
    (PermitStatus.APPROVED, LifecycleEvent.AUTO_CLOSE): PermitStatus.CLOSED,
    (PermitStatus.EXTENDED, LifecycleEvent.AUTO_CLOSE): PermitStatus.CLOSED,
    (PermitStatus.REAPPROVED, LifecycleEvent.AUTO_CLOSE): PermitStatus.CLOSED,
}

# Statuses in which safety remarks may be recorded (no status change).
REMARKS_ALLOWED_STATUSES: frozenset[PermitStatus] = frozenset({
    PermitStatus.APPROVED,
    PermitStatus.PENDING_REMARKS,
    PermitStatus.CLOSED,
})

# Statuses in which the requester may still edit the draft fields.
DRAFT_EDITABLE_STATUSES: frozenset[PermitStatus] = frozenset({
    PermitStatus.PENDING,
})

EDIT_DRAFT = "EDIT_DRAFT"

# Auto-close scan (a): permits running on their original end date.
REGULAR_AUTO_CLOSE_STATUSES: frozenset[PermitStatus] = frozenset({
    PermitStatus.APPROVED,
})

# Auto-close scan (b): permits running on an extension.
EXTENDED_AUTO_CLOSE_STATUSES: frozenset[PermitStatus] = frozenset({
    PermitStatus.EXTENDED,
    PermitStatus.REAPPROVED,
})

TERMINAL_PERMIT_STATUSES: frozenset[PermitStatus] = frozenset(
    status
    for status in PermitStatus
    if status is not PermitStatus.PENDING_REMARKS
    and not any(src is status for src, _ in PERMIT_TRANSITIONS)
)


def sources_for(event: LifecycleEvent) -> tuple[PermitStatus, ...]:
    """Statuses from which ``event`` is legal, in declaration order."""
    return tuple(src for (src, ev) in PERMIT_TRANSITIONS if ev is event)


def allowed_events(status: PermitStatus) -> frozenset[LifecycleEvent]:
    """Events legal from ``status``."""
    return frozenset(ev for (src, ev) in PERMIT_TRANSITIONS if src is status)


def next_status(
    current: PermitStatus,
    event: LifecycleEvent,
    permit_id: str = "?",
) -> PermitStatus:
    """Resolve the target status of ``event`` from ``current``.

    Raises:
        InvalidTransitionError: if the pair is not in the table.
    """
    target = PERMIT_TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransitionError(
            permit_id=permit_id,
            current_status=current.value,
            event=event.value,
            allowed_from=tuple(s.value for s in sources_for(event)),
        )
    return target


def ensure_remarks_allowed(current: PermitStatus, permit_id: str = "?") -> None:
    """Raise ``RemarksNotAllowedError`` unless remarks fit ``current``."""
    if current not in REMARKS_ALLOWED_STATUSES:
        raise RemarksNotAllowedError(
            permit_id=permit_id,
            status=current.value,
            allowed=tuple(
                s.value for s in PermitStatus if s in REMARKS_ALLOWED_STATUSES
            ),
        )


def ensure_draft_editable(current: PermitStatus, permit_id: str = "?") -> None:
    """Raise ``InvalidTransitionError`` once the permit has left PENDING."""
    if current not in DRAFT_EDITABLE_STATUSES:
        raise InvalidTransitionError(
            permit_id=permit_id,
            current_status=current.value,
            event=EDIT_DRAFT,
            allowed_from=tuple(
                s.value for s in PermitStatus if s in DRAFT_EDITABLE_STATUSES
            ),
        )


assert REGULAR_AUTO_CLOSE_STATUSES | EXTENDED_AUTO_CLOSE_STATUSES == frozenset(
    sources_for(LifecycleEvent.AUTO_CLOSE)
), "auto-close scans must cover exactly the AUTO_CLOSE sources"
