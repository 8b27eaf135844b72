"""
Module: permit_kernel.models.permit
Responsibility: ORM persistence for work permits.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - permit_number is globally unique (unique constraint) and write-once
      (before_update listener).
    - extended_until is non-null exactly when is_extended (CHECK).
    - closed_at is non-null exactly when status is CLOSED (CHECK).
    - status is one of the lifecycle statuses (CHECK); transition rules
      live in domain/lifecycle.py and are applied by LifecycleService.

Failure modes:
    - IntegrityError on duplicate permit_number.
    - ImmutabilityViolationError when permit_number is changed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Index,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.orm.attributes import get_history

from permit_kernel.db.base import Base, UUIDString
from permit_kernel.domain.lifecycle import PermitStatus
from permit_kernel.domain.permit import PermitPriority, PermitRecord, WorkType
from permit_kernel.exceptions import ImmutabilityViolationError


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


class Permit(Base):
    """Persistent work permit.

    Contract:
        Status changes go through LifecycleService or the auto-close
        sweeper's guarded UPDATE.  Nothing in the kernel deletes permits.
    """

    __tablename__ = "permits"

    __table_args__ = (
        CheckConstraint(
            _in_list("status", PermitStatus),
            name="ck_permits_valid_status",
        ),
        CheckConstraint(
            _in_list("work_type", WorkType),
            name="ck_permits_valid_work_type",
        ),
        CheckConstraint(
            _in_list("priority", PermitPriority),
            name="ck_permits_valid_priority",
        ),
        CheckConstraint(
            "(is_extended AND extended_until IS NOT NULL) OR "
            "(NOT is_extended AND extended_until IS NULL)",
            name="ck_permits_extension_consistent",
        ),
        CheckConstraint(
            "(status = 'CLOSED' AND closed_at IS NOT NULL) OR "
            "(status <> 'CLOSED' AND closed_at IS NULL)",
            name="ck_permits_closed_at_consistent",
        ),
        CheckConstraint("start_date < end_date", name="ck_permits_date_range"),
        # Auto-close scans
        Index("ix_permits_status_end_date", "status", "end_date"),
        Index("ix_permits_status_extended_until", "status", "extended_until"),
        Index("ix_permits_owner_id", "owner_id"),
    )

    permit_number: Mapped[str] = mapped_column(
        String(40), nullable=False, unique=True,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    work_type: Mapped[str] = mapped_column(String(30), nullable=False)
    priority: Mapped[str] = mapped_column(
        String(10), nullable=False, default=PermitPriority.MEDIUM.value,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PermitStatus.PENDING.value,
    )

    start_date: Mapped[datetime] = mapped_column(nullable=False)
    end_date: Mapped[datetime] = mapped_column(nullable=False)

    is_extended: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    extended_until: Mapped[datetime | None] = mapped_column(nullable=True)
    extension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    auto_closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closure_checklist: Mapped[list[Any]] = mapped_column(
        JSON, nullable=False, default=list,
    )
    closure_comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Remarks overlay, independent of status
    safety_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    remarks_added_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    remarks_added_at: Mapped[datetime | None] = mapped_column(nullable=True)

    hazards: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    precautions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    equipment: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    contractor_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contractor_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<Permit {self.permit_number} status={self.status}>"

    @property
    def permit_status(self) -> PermitStatus:
        return PermitStatus(self.status)

    def to_dto(self) -> PermitRecord:
        """Convert ORM model to frozen domain DTO."""
        return PermitRecord(
            id=self.id,
            permit_number=self.permit_number,
            title=self.title,
            work_type=WorkType(self.work_type),
            priority=PermitPriority(self.priority),
            status=PermitStatus(self.status),
            start_date=self.start_date,
            end_date=self.end_date,
            owner_id=self.owner_id,
            is_extended=bool(self.is_extended),
            extended_until=self.extended_until,
            extension_reason=self.extension_reason,
            closed_at=self.closed_at,
            auto_closed_at=self.auto_closed_at,
            closure_checklist=tuple(self.closure_checklist or ()),
            closure_comments=self.closure_comments,
            safety_remarks=self.safety_remarks,
            remarks_added_by=self.remarks_added_by,
            remarks_added_at=self.remarks_added_at,
            description=self.description,
            location=self.location,
            hazards=tuple(self.hazards or ()),
            precautions=tuple(self.precautions or ()),
            equipment=tuple(self.equipment or ()),
            contractor_name=self.contractor_name,
            contractor_phone=self.contractor_phone,
            company_name=self.company_name,
            timezone=self.timezone,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@event.listens_for(Permit, "before_update")
def prevent_permit_number_change(mapper, connection, target):
    """Reject any change to an issued permit number."""
    history = get_history(target, "permit_number")
    if history.deleted and history.added:
        raise ImmutabilityViolationError(
            entity_type="Permit",
            entity_id=str(target.id),
            reason=(
                f"permit_number is write-once "
                f"({history.deleted[0]!r} -> {history.added[0]!r})"
            ),
        )
