"""Services for the permit kernel (write side)."""

from permit_kernel.services.action_history_service import ActionHistoryService
from permit_kernel.services.approval_service import ApprovalService
from permit_kernel.services.auto_close_sweeper import (
    AutoCloseSweeper,
    SweepFailure,
    SweepResult,
)
from permit_kernel.services.lifecycle_service import LifecycleService
from permit_kernel.services.permit_orchestrator import PermitOrchestrator, PermitOutcome
from permit_kernel.services.sequence_service import PermitNumberCounter, SequenceService

__all__ = [
    "ActionHistoryService",
    "ApprovalService",
    "AutoCloseSweeper",
    "LifecycleService",
    "PermitNumberCounter",
    "PermitOrchestrator",
    "PermitOutcome",
    "SequenceService",
    "SweepFailure",
    "SweepResult",
]
