"""
Role-Based Access Control Module

Capability checks for the acting identity. The core managers never check
roles themselves; request handlers call ``require_capability`` once before
invoking an operation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Union

from .errors import PermissionDenied
from .logging_config import get_logger


logger = get_logger("lendme.rbac")


class Role(Enum):
    """Member roles"""
    SUPERADMIN = "SUPERADMIN"
    MANAGER = "MANAGER"
    BORROWER = "BORROWER"
    GUEST = "GUEST"


class Capability(Enum):
    """Operations gated by role"""
    # Loan capabilities
    APPLY_FOR_LOAN = "apply_for_loan"
    CREATE_LOAN_FOR_BORROWER = "create_loan_for_borrower"
    UPDATE_LOAN = "update_loan"
    REVIEW_LOAN = "review_loan"
    APPROVE_LOAN = "approve_loan"
    REJECT_LOAN = "reject_loan"
    CANCEL_LOAN = "cancel_loan"
    DELETE_LOAN = "delete_loan"
    VIEW_ALL_LOANS = "view_all_loans"

    # Repayment capabilities
    RECORD_PAYMENT = "record_payment"
    RUN_OVERDUE_SWEEP = "run_overdue_sweep"

    # Contribution capabilities
    SUBMIT_CONTRIBUTION = "submit_contribution"
    SUBMIT_CONTRIBUTION_FOR_MEMBER = "submit_contribution_for_member"
    PROCESS_CONTRIBUTION = "process_contribution"
    VIEW_ALL_CONTRIBUTIONS = "view_all_contributions"

    # Fund capabilities
    VIEW_FUND = "view_fund"
    VIEW_AUDIT_LOG = "view_audit_log"


_MEMBER_CAPABILITIES = frozenset({
    Capability.APPLY_FOR_LOAN,
    Capability.CANCEL_LOAN,
    Capability.SUBMIT_CONTRIBUTION,
})

_STAFF_CAPABILITIES = _MEMBER_CAPABILITIES | frozenset({
    Capability.CREATE_LOAN_FOR_BORROWER,
    Capability.UPDATE_LOAN,
    Capability.REVIEW_LOAN,
    Capability.APPROVE_LOAN,
    Capability.REJECT_LOAN,
    Capability.VIEW_ALL_LOANS,
    Capability.RECORD_PAYMENT,
    Capability.RUN_OVERDUE_SWEEP,
    Capability.SUBMIT_CONTRIBUTION_FOR_MEMBER,
    Capability.PROCESS_CONTRIBUTION,
    Capability.VIEW_ALL_CONTRIBUTIONS,
    Capability.VIEW_FUND,
})

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.SUPERADMIN: frozenset(Capability),
    Role.MANAGER: _STAFF_CAPABILITIES | frozenset({Capability.DELETE_LOAN}),
    Role.BORROWER: _MEMBER_CAPABILITIES,
    Role.GUEST: frozenset(),
}

STAFF_ROLES = frozenset({Role.SUPERADMIN, Role.MANAGER})


@dataclass(frozen=True)
class Actor:
    """Acting identity supplied by the caller's session layer"""
    id: str
    role: Role

    @classmethod
    def of(cls, actor_id: str, role: Union[Role, str]) -> 'Actor':
        return cls(id=actor_id, role=role if isinstance(role, Role) else Role(str(role).upper()))

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def has_capability(actor: Actor, capability: Capability) -> bool:
    """Check if the actor's role grants a capability"""
    return capability in ROLE_CAPABILITIES.get(actor.role, frozenset())


def require_capability(actor: Actor, capability: Capability) -> None:
    """
    Raise PermissionDenied unless the actor's role grants the capability
    """
    if not has_capability(actor, capability):
        logger.warning(f"Denied {capability.value} to {actor.id} ({actor.role.value})")
        raise PermissionDenied(actor.id, actor.role.value, capability.value)
