"""
Lending Engine

Wires storage, audit trail and the managers together from ``LendingConfig``
and exposes the operations invoked by form-submission handlers. Each handler
method takes the acting identity plus the raw payload, checks the actor's
capability once, validates the payload and delegates to the managers.
"""

from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .config import LendingConfig, get_config
from .contributions import Contribution, ContributionManager
from .errors import PermissionDenied
from .fund import FundLedger, FundLedgerManager
from .loans import Loan, LoanManager, PaymentScheduleEntry
from .logging_config import get_logger, setup_logging
from .payments import PaymentRecord, PaymentRecorder
from .policy import LoanPolicyTable
from .rbac import Actor, Capability, has_capability, require_capability
from .schedule import InterestModel
from .schemas import (
    ContributionRequest, LoanApplicationRequest, LoanUpdateRequest, PaymentRequest,
    RejectionRequest, parse_request
)
from .storage import StorageInterface, create_storage, utc_now


logger = get_logger("lendme.engine")


class LendingEngine:
    """
    Complete lending core with all components wired together
    """

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Callable[[], datetime]] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, log_format=self.config.log_format,
                          log_file=self.config.log_file)

        self.clock = clock or utc_now
        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage)
        self.policy_table = LoanPolicyTable(
            min_principal=self.config.min_loan_amount_decimal,
            max_term_months=self.config.max_term_months
        )
        self.fund_manager = FundLedgerManager(self.storage, self.audit_trail, clock=self.clock)
        self.loan_manager = LoanManager(
            self.storage,
            self.fund_manager,
            self.audit_trail,
            policy_table=self.policy_table,
            interest_model=InterestModel(self.config.interest_model.lower()),
            grace_period_days=self.config.grace_period_days,
            default_overdue_threshold=self.config.default_overdue_threshold,
            late_fee_daily_rate=self.config.late_fee_daily_rate_decimal,
            purpose_min_length=self.config.purpose_min_length,
            purpose_max_length=self.config.purpose_max_length,
            rejection_reason_min_length=self.config.rejection_reason_min_length,
            loan_number_prefix=self.config.loan_number_prefix,
            clock=self.clock
        )
        self.contribution_manager = ContributionManager(
            self.storage,
            self.fund_manager,
            self.audit_trail,
            min_amount=self.config.min_contribution_decimal,
            clock=self.clock
        )
        self.payment_recorder = PaymentRecorder(
            self.storage, self.loan_manager, self.fund_manager, self.audit_trail, clock=self.clock
        )

        self.fund_manager.initialize(self.config.opening_fund_balance_decimal)
        logger.info(f"Lending engine ready ({self.config.interest_model} interest, "
                    f"storage {type(self.storage).__name__})")

    # Loans

    def submit_loan(self, actor: Actor, payload: Dict[str, Any]) -> Loan:
        """
        Loan form submission.

        Members apply for themselves. Naming another ``borrower_id`` or asking
        for ``auto_approve`` is staff entry on a member's behalf.
        """
        request = parse_request(LoanApplicationRequest, payload)
        requirements = [r.model_dump() for r in request.requirements]

        borrower_id = request.borrower_id or actor.id
        if borrower_id != actor.id or request.auto_approve:
            require_capability(actor, Capability.CREATE_LOAN_FOR_BORROWER)
            if request.auto_approve:
                require_capability(actor, Capability.APPROVE_LOAN)
            return self.loan_manager.create_loan_for_borrower(
                created_by=actor.id,
                borrower_id=borrower_id,
                category=request.category,
                principal=request.amount,
                term_months=request.term_months,
                purpose=request.purpose,
                collateral=request.collateral,
                requirements=requirements,
                auto_approve=request.auto_approve
            )

        require_capability(actor, Capability.APPLY_FOR_LOAN)
        return self.loan_manager.apply_for_loan(
            borrower_id=actor.id,
            category=request.category,
            principal=request.amount,
            term_months=request.term_months,
            purpose=request.purpose,
            collateral=request.collateral,
            requirements=requirements
        )

    def update_loan(self, actor: Actor, loan_id: str, payload: Dict[str, Any]) -> Loan:
        require_capability(actor, Capability.UPDATE_LOAN)
        request = parse_request(LoanUpdateRequest, payload)
        requirements = None
        if request.requirements is not None:
            requirements = [r.model_dump() for r in request.requirements]
        return self.loan_manager.update_loan(
            loan_id,
            updated_by=actor.id,
            purpose=request.purpose,
            collateral=request.collateral,
            category=request.category,
            principal=request.amount,
            term_months=request.term_months,
            requirements=requirements
        )

    def review_loan(self, actor: Actor, loan_id: str) -> Loan:
        require_capability(actor, Capability.REVIEW_LOAN)
        return self.loan_manager.set_under_review(loan_id, reviewer_id=actor.id)

    def approve_loan(self, actor: Actor, loan_id: str) -> Loan:
        require_capability(actor, Capability.APPROVE_LOAN)
        return self.loan_manager.approve_loan(loan_id, approver_id=actor.id)

    def reject_loan(self, actor: Actor, loan_id: str, payload: Dict[str, Any]) -> Loan:
        require_capability(actor, Capability.REJECT_LOAN)
        request = parse_request(RejectionRequest, payload)
        return self.loan_manager.reject_loan(loan_id, rejected_by=actor.id, reason=request.reason)

    def cancel_loan(self, actor: Actor, loan_id: str, reason: Optional[str] = None) -> Loan:
        """Members may cancel only their own loans"""
        require_capability(actor, Capability.CANCEL_LOAN)
        if not has_capability(actor, Capability.VIEW_ALL_LOANS):
            loan = self.loan_manager.get_loan(loan_id)
            if loan.borrower_id != actor.id:
                raise PermissionDenied(actor.id, actor.role.value, Capability.CANCEL_LOAN.value)
        return self.loan_manager.cancel_loan(loan_id, cancelled_by=actor.id, reason=reason)

    def delete_loan(self, actor: Actor, loan_id: str) -> None:
        require_capability(actor, Capability.DELETE_LOAN)
        self.loan_manager.delete_loan(loan_id, deleted_by=actor.id)

    def get_loan(self, actor: Actor, loan_id: str) -> Loan:
        loan = self.loan_manager.get_loan(loan_id)
        self._require_own_or(actor, loan.borrower_id, Capability.VIEW_ALL_LOANS)
        return loan

    def get_loan_schedule(self, actor: Actor, loan_id: str) -> List[PaymentScheduleEntry]:
        self.get_loan(actor, loan_id)
        return self.loan_manager.get_schedule(loan_id)

    def list_loans(self, actor: Actor) -> List[Loan]:
        """Every loan for staff, the actor's own loans otherwise"""
        if has_capability(actor, Capability.VIEW_ALL_LOANS):
            return self.loan_manager.list_loans()
        return self.loan_manager.get_borrower_loans(actor.id)

    def run_overdue_sweep(self, actor: Actor, as_of: Optional[date] = None) -> Dict[str, int]:
        require_capability(actor, Capability.RUN_OVERDUE_SWEEP)
        return self.loan_manager.refresh_overdue(as_of)

    # Payments

    def record_payment(self, actor: Actor, payload: Dict[str, Any]) -> PaymentScheduleEntry:
        require_capability(actor, Capability.RECORD_PAYMENT)
        request = parse_request(PaymentRequest, payload)
        return self.payment_recorder.record_payment(
            request.loan_id,
            request.amount,
            request.payment_method,
            recorded_by=actor.id,
            receipt_number=request.receipt_number,
            notes=request.notes
        )

    def get_payment_history(self, actor: Actor, loan_id: str) -> List[PaymentRecord]:
        self.get_loan(actor, loan_id)
        return self.payment_recorder.get_payment_history(loan_id)

    # Contributions

    def submit_contribution(self, actor: Actor, payload: Dict[str, Any]) -> Contribution:
        """Members contribute for themselves; staff may enter one for any member"""
        request = parse_request(ContributionRequest, payload)
        contributor_id = request.contributor_id or actor.id
        if contributor_id != actor.id:
            require_capability(actor, Capability.SUBMIT_CONTRIBUTION_FOR_MEMBER)
        else:
            require_capability(actor, Capability.SUBMIT_CONTRIBUTION)
        return self.contribution_manager.submit_contribution(
            contributor_id=contributor_id,
            amount=request.amount,
            contribution_type=request.contribution_type,
            payment_method=request.payment_method,
            recorded_by=actor.id,
            receipt_number=request.receipt_number,
            description=request.description
        )

    def approve_contribution(self, actor: Actor, contribution_id: str) -> Contribution:
        require_capability(actor, Capability.PROCESS_CONTRIBUTION)
        return self.contribution_manager.approve_contribution(contribution_id, processed_by=actor.id)

    def reject_contribution(self, actor: Actor, contribution_id: str,
                            reason: Optional[str] = None) -> Contribution:
        require_capability(actor, Capability.PROCESS_CONTRIBUTION)
        return self.contribution_manager.reject_contribution(
            contribution_id, processed_by=actor.id, reason=reason
        )

    def list_contributions(self, actor: Actor) -> List[Contribution]:
        if has_capability(actor, Capability.VIEW_ALL_CONTRIBUTIONS):
            return self.contribution_manager.list_contributions()
        return self.contribution_manager.list_contributions(contributor_id=actor.id)

    # Fund & audit

    def get_fund_balance(self, actor: Actor) -> FundLedger:
        require_capability(actor, Capability.VIEW_FUND)
        return self.fund_manager.get_balance()

    def get_dashboard_summary(self, actor: Actor) -> Dict[str, Any]:
        """Fund balances with loan and contribution totals"""
        require_capability(actor, Capability.VIEW_FUND)
        return {
            "fund": self.fund_manager.get_balance(),
            "loans": self.loan_manager.get_loan_summary(),
            "contributions": self.contribution_manager.get_contribution_summary(),
        }

    def verify_audit_trail(self, actor: Actor) -> Dict[str, Any]:
        require_capability(actor, Capability.VIEW_AUDIT_LOG)
        result = self.audit_trail.verify_integrity()
        self.audit_trail.log_event(
            event_type=AuditEventType.AUDIT_INTEGRITY_CHECK,
            entity_type="audit",
            entity_id=self.audit_trail.table_name,
            metadata={"valid": result["valid"], "total_events": result["total_events"]},
            user_id=actor.id
        )
        if not result['valid']:
            logger.error(f"Audit trail integrity check failed: {len(result['hash_errors'])} hash "
                         f"errors, {len(result['chain_breaks'])} chain breaks")
        return result

    def close(self) -> None:
        self.storage.close()

    def _require_own_or(self, actor: Actor, owner_id: str, capability: Capability) -> None:
        if owner_id != actor.id:
            require_capability(actor, capability)
