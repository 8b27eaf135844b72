"""
Typed exception hierarchy for the permit kernel.

Every error has a typed class (catch by type, not by message), a ``code``
class attribute (machine-readable, API-safe) and structured attributes
carrying the data a caller needs to build a precise response.

    PermitKernelError (base)
    |
    +-- ValidationError                  rejected before any mutation
    |   +-- InvalidDecisionError
    |   +-- RemarksNotAllowedError
    |   +-- InvalidPermitNumberError
    |
    +-- NotFoundError
    |   +-- PermitNotFoundError
    |   +-- ApprovalNotFoundError
    |
    +-- InvalidStateError                transition precondition unmet
    |   +-- InvalidTransitionError
    |   +-- ApprovalAlreadyDecidedError
    |
    +-- ConflictError                    retried by the orchestrator
    |   +-- SequenceConflictError
    |
    +-- PersistenceError                 store unavailable, unit rolled back
    |   +-- PersistenceTimeoutError
    |
    +-- SequenceExhaustedError
    +-- ImmutabilityViolationError

Category     | Code                       | When Raised
-------------|----------------------------|-------------------------------------
Validation   | VALIDATION_ERROR           | Malformed or missing input
             | INVALID_DECISION           | Decision not APPROVED/REJECTED
             | REMARKS_NOT_ALLOWED        | Remarks on a permit in a wrong status
             | INVALID_PERMIT_NUMBER      | Prefix or number fails the format
NotFound     | PERMIT_NOT_FOUND           | Permit id absent
             | APPROVAL_NOT_FOUND         | Approval record id absent
InvalidState | INVALID_TRANSITION         | (status, event) not in the table
             | APPROVAL_ALREADY_DECIDED   | Deciding a non-PENDING record
Conflict     | SEQUENCE_CONFLICT          | Permit number allocation race
Persistence  | PERSISTENCE_ERROR          | Driver/connection failure
             | PERSISTENCE_TIMEOUT        | Statement, lock or pool timeout
Sequence     | SEQUENCE_EXHAUSTED         | Bucket passed 9999
Immutability | IMMUTABILITY_VIOLATION     | Modifying an append-only record
"""


class PermitKernelError(Exception):
    """Base exception for all permit kernel errors."""

    code: str = "PERMIT_KERNEL_ERROR"


# Validation


class ValidationError(PermitKernelError):
    """Input is malformed or missing; nothing was mutated."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidDecisionError(ValidationError):
    """Approval decision is not one an approver may submit."""

    code: str = "INVALID_DECISION"

    def __init__(self, decision: str):
        self.decision = decision
        super().__init__(
            "decision",
            f"'{decision}' is not allowed, must be APPROVED or REJECTED",
        )


class RemarksNotAllowedError(ValidationError):
    """Safety remarks cannot be added in the permit's current status."""

    code: str = "REMARKS_NOT_ALLOWED"

    def __init__(self, permit_id: str, status: str, allowed: tuple[str, ...]):
        self.permit_id = permit_id
        self.status = status
        self.allowed = allowed
        super().__init__(
            "status",
            f"remarks can only be added to permits in {', '.join(allowed)}; "
            f"permit {permit_id} is {status}",
        )


class InvalidPermitNumberError(ValidationError):
    """Permit number or prefix does not match the persisted format."""

    code: str = "INVALID_PERMIT_NUMBER"

    def __init__(self, value: str, reason: str):
        self.value = value
        super().__init__("permit_number", f"'{value}' {reason}")


# Not found


class NotFoundError(PermitKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class PermitNotFoundError(NotFoundError):
    """Permit with given ID was not found."""

    code: str = "PERMIT_NOT_FOUND"

    def __init__(self, permit_id: str):
        self.permit_id = permit_id
        super().__init__(f"Permit not found: {permit_id}")


class ApprovalNotFoundError(NotFoundError):
    """Approval record with given ID was not found."""

    code: str = "APPROVAL_NOT_FOUND"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval not found: {approval_id}")


# Invalid state


class InvalidStateError(PermitKernelError):
    """Base exception for unmet transition preconditions."""

    code: str = "INVALID_STATE"


class InvalidTransitionError(InvalidStateError):
    """The lifecycle event is not legal from the permit's current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        permit_id: str,
        current_status: str,
        event: str,
        allowed_from: tuple[str, ...] = (),
    ):
        self.permit_id = permit_id
        self.current_status = current_status
        self.event = event
        self.allowed_from = allowed_from
        if allowed_from:
            detail = f"only permits in {', '.join(allowed_from)} can be {event.lower()}"
        else:
            detail = f"{event.lower()} is not allowed"
        super().__init__(
            f"Cannot apply {event} to permit {permit_id} in status "
            f"{current_status}: {detail}"
        )


class ApprovalAlreadyDecidedError(InvalidStateError):
    """Approval record has already left PENDING."""

    code: str = "APPROVAL_ALREADY_DECIDED"

    def __init__(self, approval_id: str, decision: str):
        self.approval_id = approval_id
        self.decision = decision
        super().__init__(
            f"Approval {approval_id} has already been processed ({decision})"
        )


# Conflict


class ConflictError(PermitKernelError):
    """Base exception for races resolved by retrying the whole unit."""

    code: str = "CONFLICT"


class SequenceConflictError(ConflictError):
    """Another creator won the permit number or counter row."""

    code: str = "SEQUENCE_CONFLICT"

    def __init__(self, bucket: str, detail: str = ""):
        self.bucket = bucket
        self.detail = detail
        msg = f"Permit number allocation conflict in bucket '{bucket}'"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


# Persistence


class PersistenceError(PermitKernelError):
    """The store failed; every side effect of the unit was rolled back."""

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Persistence failure during {operation}: {detail}")


class PersistenceTimeoutError(PersistenceError):
    """A statement, lock wait or pool checkout exceeded its bound."""

    code: str = "PERSISTENCE_TIMEOUT"


# Sequence


class SequenceExhaustedError(PermitKernelError):
    """The four-digit suffix space of a bucket is used up."""

    code: str = "SEQUENCE_EXHAUSTED"

    def __init__(self, bucket: str, limit: int):
        self.bucket = bucket
        self.limit = limit
        super().__init__(
            f"Permit number bucket '{bucket}' exhausted after {limit} permits"
        )


# Immutability


class ImmutabilityViolationError(PermitKernelError):
    """Attempt to modify an append-only or finalized record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
