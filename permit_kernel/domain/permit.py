"""
Permit domain types (``permit_kernel.domain.permit``).

Responsibility
--------------
Pure value objects for the permit engine: the authenticated principal,
creation input, frozen snapshots of permits, approval records and action
history entries, the export aggregate, and the notification protocol.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from permit_kernel.domain.lifecycle import PermitStatus


class WorkType(str, Enum):
    """Kinds of hazardous work a permit can authorize."""

    CHEMICAL = "CHEMICAL"
    COLD_WORK = "COLD_WORK"
    CONFINED_SPACE = "CONFINED_SPACE"
    ELECTRICAL = "ELECTRICAL"
    ENERGIZE = "ENERGIZE"
    EXCAVATION = "EXCAVATION"
    GENERAL = "GENERAL"
    HOT_WORK = "HOT_WORK"
    PRESSURE_TESTING = "PRESSURE_TESTING"
    LIFTING = "LIFTING"
    LOTO = "LOTO"
    RADIATION = "RADIATION"
    SWMS = "SWMS"
    VEHICLE = "VEHICLE"
    WORKING_AT_HEIGHT = "WORKING_AT_HEIGHT"


class PermitPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ApprovalDecision(str, Enum):
    """Decision carried by an approval record."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REAPPROVED = "REAPPROVED"


# Decisions an approver may submit against a PENDING record.
APPROVER_DECISIONS: frozenset[ApprovalDecision] = frozenset({
    ApprovalDecision.APPROVED,
    ApprovalDecision.REJECTED,
})


class HistoryAction(str, Enum):
    """Lifecycle-affecting actions recorded in the action history."""

    REVOKED = "REVOKED"
    REAPPROVED = "REAPPROVED"
    EXTENDED = "EXTENDED"
    CLOSED = "CLOSED"


# =========================================================================
# Principal
# =========================================================================


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, supplied by the auth collaborator."""

    id: UUID
    first_name: str
    last_name: str
    role: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# Performs time-driven actions (auto-close).
SYSTEM_PRINCIPAL = Principal(
    id=UUID("00000000-0000-0000-0000-000000000000"),
    first_name="System",
    last_name="",
    role="SYSTEM",
)


# =========================================================================
# Input
# =========================================================================


@dataclass(frozen=True)
class PermitDraft:
    """Caller-supplied fields of a new permit request."""

    title: str
    work_type: WorkType | str
    start_date: datetime
    end_date: datetime
    description: str | None = None
    location: str | None = None
    priority: PermitPriority | str = PermitPriority.MEDIUM
    hazards: tuple[str, ...] = ()
    precautions: tuple[str, ...] = ()
    equipment: tuple[str, ...] = ()
    contractor_name: str | None = None
    contractor_phone: str | None = None
    company_name: str | None = None
    timezone: str | None = None


# =========================================================================
# Snapshots
# =========================================================================


@dataclass(frozen=True)
class PermitRecord:
    """Immutable snapshot of a permit."""

    id: UUID
    permit_number: str
    title: str
    work_type: WorkType
    priority: PermitPriority
    status: PermitStatus
    start_date: datetime
    end_date: datetime
    owner_id: UUID
    is_extended: bool = False
    extended_until: datetime | None = None
    extension_reason: str | None = None
    closed_at: datetime | None = None
    auto_closed_at: datetime | None = None
    closure_checklist: tuple[Any, ...] = ()
    closure_comments: str | None = None
    safety_remarks: str | None = None
    remarks_added_by: str | None = None
    remarks_added_at: datetime | None = None
    description: str | None = None
    location: str | None = None
    hazards: tuple[str, ...] = ()
    precautions: tuple[str, ...] = ()
    equipment: tuple[str, ...] = ()
    contractor_name: str | None = None
    contractor_phone: str | None = None
    company_name: str | None = None
    timezone: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalRecordSnapshot:
    """Immutable snapshot of one approval decision record."""

    id: UUID
    permit_id: UUID
    ordinal: int
    decision: ApprovalDecision
    approver_role: str | None = None
    approver_name: str | None = None
    comment: str | None = None
    signature: str | None = None
    approved_at: datetime | None = None
    signed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ActionHistoryRecord:
    """Immutable snapshot of one action history entry."""

    id: UUID
    permit_id: UUID
    ordinal: int
    action: HistoryAction
    performed_by: UUID
    performed_by_name: str
    performed_by_role: str
    previous_status: PermitStatus
    new_status: PermitStatus
    comment: str | None = None
    signature: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class PermitAggregate:
    """Read-only export aggregate: a permit with its full trails."""

    permit: PermitRecord
    approvals: tuple[ApprovalRecordSnapshot, ...] = field(default_factory=tuple)
    action_history: tuple[ActionHistoryRecord, ...] = field(default_factory=tuple)

    @property
    def active_approval(self) -> ApprovalRecordSnapshot | None:
        """The latest approval record, if any."""
        return self.approvals[-1] if self.approvals else None


# =========================================================================
# Notification collaborator
# =========================================================================


class PermitEventSink(Protocol):
    """Receives best-effort lifecycle notifications after commit."""

    def permit_created(self, permit: PermitRecord) -> None:
        ...

    def decision_made(
        self, permit: PermitRecord, approval: ApprovalRecordSnapshot,
    ) -> None:
        ...


class NullEventSink:
    """Event sink that drops every notification."""

    def permit_created(self, permit: PermitRecord) -> None:
        return None

    def decision_made(
        self, permit: PermitRecord, approval: ApprovalRecordSnapshot,
    ) -> None:
        return None
