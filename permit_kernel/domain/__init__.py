"""
Pure domain layer.

Value objects, the lifecycle transition table and permit number
formatting, with NO dependencies on the ORM, the database or I/O.
"""

from permit_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from permit_kernel.domain.lifecycle import (
    PERMIT_TRANSITIONS,
    LifecycleEvent,
    PermitStatus,
    next_status,
)
from permit_kernel.domain.numbering import (
    MonthKey,
    format_permit_number,
    parse_permit_number,
)
from permit_kernel.domain.permit import (
    SYSTEM_PRINCIPAL,
    ActionHistoryRecord,
    ApprovalDecision,
    ApprovalRecordSnapshot,
    HistoryAction,
    NullEventSink,
    PermitAggregate,
    PermitDraft,
    PermitEventSink,
    PermitPriority,
    PermitRecord,
    Principal,
    WorkType,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "PERMIT_TRANSITIONS",
    "LifecycleEvent",
    "PermitStatus",
    "next_status",
    "MonthKey",
    "format_permit_number",
    "parse_permit_number",
    "SYSTEM_PRINCIPAL",
    "ActionHistoryRecord",
    "ApprovalDecision",
    "ApprovalRecordSnapshot",
    "HistoryAction",
    "NullEventSink",
    "PermitAggregate",
    "PermitDraft",
    "PermitEventSink",
    "PermitPriority",
    "PermitRecord",
    "Principal",
    "WorkType",
]
