"""Selectors for the permit kernel (read side)."""

from permit_kernel.selectors.permit_selector import ApprovalStats, PermitSelector

__all__ = [
    "PermitSelector",
    "ApprovalStats",
]
