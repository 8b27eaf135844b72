"""
Permit Kernel - work permit lifecycle and approval engine

Issues, approves and closes time-bounded work permits with:
- Race-free monthly permit numbering
- A closed transition table for the permit lifecycle
- Append-only approval records and action history
- An idempotent auto-close sweep
"""

__version__ = "0.1.0"
