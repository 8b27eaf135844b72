"""ORM models for the permit kernel."""

from permit_kernel.models.action_history import ActionHistoryEntry
from permit_kernel.models.approval import ApprovalRecord
from permit_kernel.models.permit import Permit

__all__ = [
    "Permit",
    "ApprovalRecord",
    "ActionHistoryEntry",
]
