"""
Lending Core Exceptions

Structured failures surfaced to callers. Every error carries a human readable
message plus a ``details`` dict that request handlers can serialise as-is.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional


class LendingError(Exception):
    """Base exception for all lending core errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ValidationError(LendingError):
    """Malformed or out-of-range input. Never mutates state."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        field_errors: Optional[Dict[str, List[str]]] = None
    ):
        self.field = field
        self.field_errors = dict(field_errors or {})
        if field and field not in self.field_errors:
            self.field_errors[field] = [message]
        super().__init__(message, {"field_errors": self.field_errors} if self.field_errors else None)


class PolicyViolation(ValidationError):
    """Principal or term exceeds the loan category's configured maximum."""


class DuplicateActiveLoan(LendingError):
    """Borrower already holds a live loan."""

    def __init__(self, borrower_id: str, existing_loan_number: Optional[str] = None):
        self.borrower_id = borrower_id
        self.existing_loan_number = existing_loan_number
        details = {"borrower_id": borrower_id}
        if existing_loan_number:
            details["existing_loan_number"] = existing_loan_number
        super().__init__("Borrower already has an active or pending loan", details)


class InsufficientFunds(LendingError):
    """Fund ledger cannot cover a requested debit."""

    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: required {required}, available {available}",
            {"required": str(required), "available": str(available)}
        )


class InvalidStateTransition(LendingError):
    """Attempted transition is not legal from the entity's current status."""

    def __init__(self, entity_type: str, entity_id: str, current: str, attempted: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot move {entity_type} {entity_id} from {current} to {attempted}",
            {"entity_type": entity_type, "entity_id": entity_id,
             "current": current, "attempted": attempted}
        )


class NotFound(LendingError):
    """Referenced loan, contribution or ledger row does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type.capitalize()} '{entity_id}' not found",
            {"entity_type": entity_type, "entity_id": entity_id}
        )


class ConcurrencyConflict(LendingError):
    """A record changed underneath the caller; reload and retry."""

    retryable = True

    def __init__(self, table: str, record_id: str, expected_version: int, actual_version: Optional[int]):
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Conflict on {table}/{record_id}, please retry",
            {"table": table, "record_id": record_id,
             "expected_version": expected_version, "actual_version": actual_version}
        )


class PermissionDenied(LendingError):
    """Acting identity lacks the capability for the requested operation."""

    def __init__(self, actor_id: str, role: str, capability: str):
        self.actor_id = actor_id
        self.role = role
        self.capability = capability
        super().__init__(
            f"Role {role} may not {capability}",
            {"actor_id": actor_id, "role": role, "capability": capability}
        )
