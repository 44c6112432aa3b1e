"""
Loan Module

Loan lifecycle state machine: application, review, approval with fund
disbursement and schedule generation, rejection, cancellation, deletion and
the overdue/default sweep.

    PENDING -> UNDER_REVIEW -> APPROVED -> ACTIVE -> COMPLETED
                                              \\-> OVERDUE -> DEFAULTED
    PENDING | UNDER_REVIEW -> REJECTED
    PENDING | UNDER_REVIEW | REJECTED -> CANCELLED

APPROVED is transient: approval debits the fund, writes the schedule and
activates the loan in one transaction.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
import random
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import (
    DuplicateActiveLoan, InsufficientFunds, InvalidStateTransition, LendingError, NotFound,
    ValidationError
)
from .fund import FundLedgerManager
from .logging_config import get_logger, log_action
from .money import ZERO, MoneyLike, quantize_money
from .policy import LoanCategory, LoanPolicyTable, parse_category
from .schedule import (
    InterestModel, add_months, calculate_late_fee, compute_schedule, days_overdue,
    is_payment_overdue
)
from .storage import (
    StorageInterface, StorageRecord, parse_date, parse_datetime, parse_decimal, utc_now
)


logger = get_logger("lendme.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"            # Submitted, awaiting review
    UNDER_REVIEW = "UNDER_REVIEW"  # Picked up by staff
    APPROVED = "APPROVED"          # Transient, never persisted without a schedule
    ACTIVE = "ACTIVE"              # Disbursed, repayments running
    OVERDUE = "OVERDUE"            # At least one installment past its grace period
    COMPLETED = "COMPLETED"        # Fully repaid
    DEFAULTED = "DEFAULTED"        # Too many overdue installments
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED,
                         LoanStatus.REJECTED, LoanStatus.CANCELLED},
    LoanStatus.UNDER_REVIEW: {LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.CANCELLED},
    LoanStatus.APPROVED: {LoanStatus.ACTIVE},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED, LoanStatus.OVERDUE},
    LoanStatus.OVERDUE: {LoanStatus.ACTIVE, LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.REJECTED: {LoanStatus.CANCELLED},
    LoanStatus.COMPLETED: set(),
    LoanStatus.DEFAULTED: set(),
    LoanStatus.CANCELLED: set(),
}

# A borrower may hold at most one loan in these states
LIVE_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED,
                           LoanStatus.ACTIVE, LoanStatus.OVERDUE})
TERMS_EDITABLE_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.UNDER_REVIEW})
DELETABLE_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.UNDER_REVIEW,
                                LoanStatus.REJECTED, LoanStatus.CANCELLED})
TERMINAL_STATUSES = frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED,
                               LoanStatus.REJECTED, LoanStatus.CANCELLED})
REPAYING_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})

_STATUS_TIMESTAMPS = {
    LoanStatus.APPROVED: 'approved_at',
    LoanStatus.REJECTED: 'rejected_at',
    LoanStatus.CANCELLED: 'cancelled_at',
    LoanStatus.COMPLETED: 'completed_at',
    LoanStatus.DEFAULTED: 'defaulted_at',
}


class PaymentStatus(Enum):
    """Schedule entry states"""
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


@dataclass
class RequirementFile:
    """Metadata of an uploaded requirement document, stored as-is"""
    filename: str
    original_name: str
    size: int
    mime_type: str
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'filename': self.filename,
            'original_name': self.original_name,
            'size': self.size,
            'mime_type': self.mime_type,
            'path': self.path
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RequirementFile':
        return cls(
            filename=data['filename'],
            original_name=data.get('original_name', data['filename']),
            size=int(data.get('size', 0)),
            mime_type=data.get('mime_type', 'application/octet-stream'),
            path=data.get('path', '')
        )


@dataclass
class Loan(StorageRecord):
    """Loan with its fixed terms and current status"""
    loan_number: str
    borrower_id: str
    category: LoanCategory
    principal: Decimal
    interest_rate: Decimal              # annual percent, fixed with the terms
    term_months: int
    interest_model: InterestModel
    monthly_payment: Decimal
    total_amount: Decimal
    remaining_balance: Decimal
    purpose: str
    status: LoanStatus = LoanStatus.PENDING
    collateral: Optional[str] = None
    requirements: List[RequirementFile] = field(default_factory=list)

    approver_id: Optional[str] = None
    created_by: Optional[str] = None    # Staff member who entered the loan for the borrower
    rejection_reason: Optional[str] = None

    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    version: int = 0

    @property
    def total_interest(self) -> Decimal:
        return self.total_amount - self.principal

    @property
    def amount_repaid(self) -> Decimal:
        return self.total_amount - self.remaining_balance

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_number=data['loan_number'],
            borrower_id=data['borrower_id'],
            category=LoanCategory(data['category']),
            principal=parse_decimal(data['principal']),
            interest_rate=parse_decimal(data['interest_rate']),
            term_months=data['term_months'],
            interest_model=InterestModel(data['interest_model']),
            monthly_payment=parse_decimal(data['monthly_payment']),
            total_amount=parse_decimal(data['total_amount']),
            remaining_balance=parse_decimal(data['remaining_balance']),
            purpose=data['purpose'],
            status=LoanStatus(data['status']),
            collateral=data.get('collateral'),
            requirements=[RequirementFile.from_dict(r) for r in data.get('requirements', [])],
            approver_id=data.get('approver_id'),
            created_by=data.get('created_by'),
            rejection_reason=data.get('rejection_reason'),
            requested_at=parse_datetime(data.get('requested_at')),
            approved_at=parse_datetime(data.get('approved_at')),
            rejected_at=parse_datetime(data.get('rejected_at')),
            cancelled_at=parse_datetime(data.get('cancelled_at')),
            completed_at=parse_datetime(data.get('completed_at')),
            defaulted_at=parse_datetime(data.get('defaulted_at')),
            start_date=parse_date(data.get('start_date')),
            end_date=parse_date(data.get('end_date')),
            version=data.get('version', 0)
        )


@dataclass
class PaymentScheduleEntry(StorageRecord):
    """One installment of an active loan"""
    loan_id: str
    payment_number: int
    scheduled_date: date
    scheduled_amount: Decimal
    principal_amount: Decimal           # Scheduled split
    interest_amount: Decimal
    paid_amount: Decimal = ZERO         # Everything received, late fee included
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    late_fee: Decimal = ZERO            # Assessed so far, never decreases
    late_fee_paid: Decimal = ZERO
    status: PaymentStatus = PaymentStatus.PENDING
    paid_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    receipt_number: Optional[str] = None
    notes: Optional[str] = None

    @property
    def outstanding_late_fee(self) -> Decimal:
        return max(ZERO, self.late_fee - self.late_fee_paid)

    @property
    def outstanding_installment(self) -> Decimal:
        """Scheduled principal and interest not yet received"""
        return max(ZERO, self.scheduled_amount - self.principal_paid - self.interest_paid)

    @property
    def amount_due(self) -> Decimal:
        return self.outstanding_late_fee + self.outstanding_installment

    @property
    def is_open(self) -> bool:
        return self.status != PaymentStatus.PAID

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentScheduleEntry':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            payment_number=data['payment_number'],
            scheduled_date=parse_date(data['scheduled_date']),
            scheduled_amount=parse_decimal(data['scheduled_amount']),
            principal_amount=parse_decimal(data['principal_amount']),
            interest_amount=parse_decimal(data['interest_amount']),
            paid_amount=parse_decimal(data['paid_amount']),
            principal_paid=parse_decimal(data['principal_paid']),
            interest_paid=parse_decimal(data['interest_paid']),
            late_fee=parse_decimal(data['late_fee']),
            late_fee_paid=parse_decimal(data['late_fee_paid']),
            status=PaymentStatus(data['status']),
            paid_date=parse_datetime(data.get('paid_date')),
            payment_method=data.get('payment_method'),
            receipt_number=data.get('receipt_number'),
            notes=data.get('notes')
        )


def schedule_entry_id(loan_id: str, payment_number: int) -> str:
    return f"{loan_id}_{payment_number}"


class LoanManager:
    """
    Manages the loan lifecycle from application through completion or default
    """

    def __init__(
        self,
        storage: StorageInterface,
        fund_manager: FundLedgerManager,
        audit_trail: AuditTrail,
        policy_table: Optional[LoanPolicyTable] = None,
        interest_model: Union[InterestModel, str] = InterestModel.FLAT,
        grace_period_days: int = 5,
        default_overdue_threshold: int = 3,
        late_fee_daily_rate: Decimal = Decimal('0.05'),
        purpose_min_length: int = 10,
        purpose_max_length: int = 500,
        rejection_reason_min_length: int = 10,
        loan_number_prefix: str = "LOAN",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.fund_manager = fund_manager
        self.audit_trail = audit_trail
        self.policy_table = policy_table or LoanPolicyTable()
        self.interest_model = InterestModel(interest_model)
        self.grace_period_days = grace_period_days
        self.default_overdue_threshold = default_overdue_threshold
        self.late_fee_daily_rate = late_fee_daily_rate
        self.purpose_min_length = purpose_min_length
        self.purpose_max_length = purpose_max_length
        self.rejection_reason_min_length = rejection_reason_min_length
        self.loan_number_prefix = loan_number_prefix
        self.clock = clock or utc_now

        self.loans_table = "loans"
        self.schedule_table = "payment_schedules"

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply_for_loan(
        self,
        borrower_id: str,
        category: Union[LoanCategory, str],
        principal: MoneyLike,
        term_months: int,
        purpose: str,
        collateral: Optional[str] = None,
        requirements: Optional[Iterable[Union[RequirementFile, Dict[str, Any]]]] = None
    ) -> Loan:
        """
        Submit a loan application on the borrower's own behalf

        Args:
            borrower_id: Applicant
            category: Loan category, selects rate and caps
            principal: Requested amount
            term_months: Requested term
            purpose: Free text, length-limited
            collateral: Optional collateral description
            requirements: Metadata of uploaded requirement documents

        Returns:
            The PENDING loan with pre-computed terms

        Raises:
            ValidationError, PolicyViolation, DuplicateActiveLoan
        """
        loan = self._open_loan(borrower_id, category, principal, term_months, purpose,
                               collateral, requirements, created_by=None)
        log_action(
            logger, "info", f"Loan {loan.loan_number} applied for",
            user_id=borrower_id, action="loan.apply", resource=loan.id,
            extra={"category": loan.category.value, "principal": str(loan.principal),
                   "term_months": loan.term_months}
        )
        return loan

    def create_loan_for_borrower(
        self,
        created_by: str,
        borrower_id: str,
        category: Union[LoanCategory, str],
        principal: MoneyLike,
        term_months: int,
        purpose: str,
        collateral: Optional[str] = None,
        requirements: Optional[Iterable[Union[RequirementFile, Dict[str, Any]]]] = None,
        auto_approve: bool = False
    ) -> Loan:
        """
        Staff entry of a loan on a borrower's behalf.

        With ``auto_approve`` the loan is approved right away by ``created_by``.
        If the fund cannot cover it the loan is kept PENDING for later review.
        """
        loan = self._open_loan(borrower_id, category, principal, term_months, purpose,
                               collateral, requirements, created_by=created_by)
        log_action(
            logger, "info", f"Loan {loan.loan_number} created for borrower {borrower_id}",
            user_id=created_by, action="loan.create", resource=loan.id,
            extra={"auto_approve": auto_approve}
        )

        if not auto_approve:
            return loan

        try:
            return self.approve_loan(loan.id, created_by)
        except InsufficientFunds as e:
            logger.warning(
                f"Auto-approval of {loan.loan_number} skipped, loan left PENDING: {e.message}"
            )
            return self.get_loan(loan.id)

    def _open_loan(
        self,
        borrower_id: str,
        category: Union[LoanCategory, str],
        principal: MoneyLike,
        term_months: int,
        purpose: str,
        collateral: Optional[str],
        requirements: Optional[Iterable[Union[RequirementFile, Dict[str, Any]]]],
        created_by: Optional[str]
    ) -> Loan:
        if not borrower_id:
            raise ValidationError("Borrower is required", field="borrower_id")
        purpose = self._validate_purpose(purpose)
        loan_category = parse_category(category)
        if loan_category is None:
            raise ValidationError(f"Unknown loan category: {category}", field="category")
        policy = self.policy_table.validate_terms(loan_category, principal, term_months)

        amount = quantize_money(principal)
        now = self.clock()
        calculation = compute_schedule(amount, policy.interest_rate, term_months, now,
                                       self.interest_model)

        with self.storage.atomic():
            self._ensure_no_live_loan(borrower_id)

            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self._generate_loan_number(now),
                borrower_id=borrower_id,
                category=loan_category,
                principal=amount,
                interest_rate=policy.interest_rate,
                term_months=term_months,
                interest_model=self.interest_model,
                monthly_payment=calculation.monthly_payment,
                total_amount=calculation.total_amount,
                remaining_balance=calculation.total_amount,
                purpose=purpose,
                status=LoanStatus.PENDING,
                collateral=collateral,
                requirements=[_as_requirement(r) for r in (requirements or [])],
                created_by=created_by,
                requested_at=now
            )
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "borrower_id": borrower_id,
                    "category": loan.category,
                    "principal": loan.principal,
                    "interest_rate": loan.interest_rate,
                    "term_months": loan.term_months,
                    "interest_model": loan.interest_model,
                    "total_amount": loan.total_amount,
                    "created_by": created_by
                },
                user_id=created_by or borrower_id
            )

        return loan

    def update_loan(
        self,
        loan_id: str,
        updated_by: Optional[str] = None,
        purpose: Optional[str] = None,
        collateral: Optional[str] = None,
        category: Optional[Union[LoanCategory, str]] = None,
        principal: Optional[MoneyLike] = None,
        term_months: Optional[int] = None,
        requirements: Optional[Iterable[Union[RequirementFile, Dict[str, Any]]]] = None
    ) -> Loan:
        """
        Edit a loan.

        Descriptive fields may change until the loan is terminal. Category,
        principal and term may only change before approval; the terms are then
        re-validated and re-computed.
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.is_terminal:
                raise InvalidStateTransition("loan", loan.id, loan.status.value, "UPDATED")

            changes: Dict[str, Any] = {}
            if purpose is not None:
                loan.purpose = self._validate_purpose(purpose)
                changes['purpose'] = loan.purpose
            if collateral is not None:
                loan.collateral = collateral or None
                changes['collateral'] = loan.collateral
            if requirements is not None:
                loan.requirements = [_as_requirement(r) for r in requirements]
                changes['requirements'] = len(loan.requirements)

            if category is not None or principal is not None or term_months is not None:
                if loan.status not in TERMS_EDITABLE_STATUSES:
                    raise InvalidStateTransition("loan", loan.id, loan.status.value, "TERMS_UPDATED")
                new_category = category if category is not None else loan.category
                new_principal = principal if principal is not None else loan.principal
                new_term = term_months if term_months is not None else loan.term_months

                loan_category = parse_category(new_category)
                if loan_category is None:
                    raise ValidationError(f"Unknown loan category: {new_category}", field="category")
                policy = self.policy_table.validate_terms(loan_category, new_principal, new_term)

                calculation = compute_schedule(new_principal, policy.interest_rate, new_term,
                                               self.clock(), self.interest_model)
                loan.category = loan_category
                loan.principal = quantize_money(new_principal)
                loan.term_months = new_term
                loan.interest_rate = policy.interest_rate
                loan.interest_model = self.interest_model
                loan.monthly_payment = calculation.monthly_payment
                loan.total_amount = calculation.total_amount
                loan.remaining_balance = calculation.total_amount
                changes.update({
                    'category': loan.category,
                    'principal': loan.principal,
                    'term_months': loan.term_months,
                    'interest_rate': loan.interest_rate,
                    'total_amount': loan.total_amount
                })

            if not changes:
                return loan

            self.save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_UPDATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata=changes,
                user_id=updated_by
            )

        log_action(logger, "info", f"Loan {loan.loan_number} updated", user_id=updated_by,
                   action="loan.update", resource=loan.id, extra={"fields": sorted(changes)})
        return loan

    # ------------------------------------------------------------------
    # Review decisions
    # ------------------------------------------------------------------

    def set_under_review(self, loan_id: str, reviewer_id: Optional[str] = None) -> Loan:
        """PENDING -> UNDER_REVIEW"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self.mark_status(loan, LoanStatus.UNDER_REVIEW, AuditEventType.LOAN_UNDER_REVIEW,
                             user_id=reviewer_id)
        logger.info(f"Loan {loan.loan_number} under review")
        return loan

    def approve_loan(self, loan_id: str, approver_id: str) -> Loan:
        """
        Approve and disburse a loan.

        Debits the fund, writes the repayment schedule (installment ``i`` due
        ``i`` months after approval), stamps the approver and activates the
        loan. Runs as one transaction; any failure leaves the loan, the fund
        and the schedule untouched.

        Raises:
            NotFound, InvalidStateTransition, InsufficientFunds
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self._check_transition(loan, LoanStatus.APPROVED)

            self.fund_manager.debit_for_loan(loan.principal, reference=loan.loan_number,
                                             user_id=approver_id)

            now = self.clock()
            start_date = now.date()
            calculation = compute_schedule(loan.principal, loan.interest_rate, loan.term_months,
                                           start_date, loan.interest_model)
            for line in calculation.schedule:
                entry = PaymentScheduleEntry(
                    id=schedule_entry_id(loan.id, line.payment_number),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    payment_number=line.payment_number,
                    scheduled_date=line.scheduled_date,
                    scheduled_amount=line.scheduled_amount,
                    principal_amount=line.principal_amount,
                    interest_amount=line.interest_amount
                )
                self.save_schedule_entry(entry)

            loan.monthly_payment = calculation.monthly_payment
            loan.total_amount = calculation.total_amount
            loan.remaining_balance = calculation.total_amount
            loan.approver_id = approver_id
            loan.approved_at = now
            loan.start_date = start_date
            loan.end_date = add_months(start_date, loan.term_months)
            # APPROVED is only passed through; the loan is persisted ACTIVE
            loan.status = LoanStatus.ACTIVE
            loan.updated_at = now
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "principal": loan.principal,
                    "total_amount": loan.total_amount,
                    "monthly_payment": loan.monthly_payment,
                    "installments": len(calculation.schedule),
                    "start_date": start_date.isoformat(),
                    "end_date": loan.end_date.isoformat()
                },
                user_id=approver_id
            )

        log_action(
            logger, "info", f"Loan {loan.loan_number} approved and disbursed",
            user_id=approver_id, action="loan.approve", resource=loan.id,
            extra={"principal": str(loan.principal), "total_amount": str(loan.total_amount)}
        )
        return loan

    def reject_loan(self, loan_id: str, rejected_by: str, reason: str) -> Loan:
        """PENDING|UNDER_REVIEW -> REJECTED with a mandatory reason"""
        reason = (reason or "").strip()
        if len(reason) < self.rejection_reason_min_length:
            raise ValidationError(
                f"Rejection reason must be at least {self.rejection_reason_min_length} characters",
                field="reason"
            )

        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            loan.rejection_reason = reason
            loan.approver_id = rejected_by
            self.mark_status(loan, LoanStatus.REJECTED, AuditEventType.LOAN_REJECTED,
                             user_id=rejected_by, metadata={"reason": reason})

        log_action(logger, "info", f"Loan {loan.loan_number} rejected", user_id=rejected_by,
                   action="loan.reject", resource=loan.id)
        return loan

    def cancel_loan(self, loan_id: str, cancelled_by: Optional[str] = None,
                    reason: Optional[str] = None) -> Loan:
        """PENDING|UNDER_REVIEW|REJECTED -> CANCELLED"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self.mark_status(loan, LoanStatus.CANCELLED, AuditEventType.LOAN_CANCELLED,
                             user_id=cancelled_by, metadata={"reason": reason})

        log_action(logger, "info", f"Loan {loan.loan_number} cancelled", user_id=cancelled_by,
                   action="loan.cancel", resource=loan.id)
        return loan

    def delete_loan(self, loan_id: str, deleted_by: Optional[str] = None) -> None:
        """
        Remove a loan that never went live, together with any schedule rows
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status not in DELETABLE_STATUSES:
                raise InvalidStateTransition("loan", loan.id, loan.status.value, "DELETED")

            for data in self.storage.find(self.schedule_table, {'loan_id': loan.id}):
                self.storage.delete(self.schedule_table, data['id'])
            self.storage.delete(self.loans_table, loan.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DELETED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"loan_number": loan.loan_number, "status": loan.status},
                user_id=deleted_by
            )

        log_action(logger, "warning", f"Loan {loan.loan_number} deleted", user_id=deleted_by,
                   action="loan.delete", resource=loan.id)

    # ------------------------------------------------------------------
    # Overdue sweep
    # ------------------------------------------------------------------

    def refresh_overdue(self, as_of: Optional[date] = None) -> Dict[str, int]:
        """
        Mark installments past their grace period as overdue and assess late fees.

        Loans with overdue installments become OVERDUE; once the number of
        overdue installments reaches ``default_overdue_threshold`` the loan is
        DEFAULTED.

        Args:
            as_of: Reference date, defaults to today

        Returns:
            Counters of what changed
        """
        if as_of is None:
            as_of = self.clock().date()
        elif isinstance(as_of, datetime):
            as_of = as_of.date()

        results = {
            "loans_checked": 0,
            "installments_marked_overdue": 0,
            "late_fees_assessed": 0,
            "loans_marked_overdue": 0,
            "loans_defaulted": 0,
        }

        for loan in self.list_loans(REPAYING_STATUSES):
            results["loans_checked"] += 1
            with self.storage.atomic():
                # Reload under the lock; a payment may have landed meanwhile
                loan = self.get_loan(loan.id)
                if loan.status not in REPAYING_STATUSES:
                    continue
                self._sweep_loan(loan, as_of, results)

        if results["installments_marked_overdue"] or results["loans_defaulted"]:
            logger.info(f"Overdue sweep as of {as_of.isoformat()}: {results}")
        return results

    def _sweep_loan(self, loan: Loan, as_of: date, results: Dict[str, int]) -> None:
        now = self.clock()
        overdue_count = 0

        for entry in self.get_schedule(loan.id):
            if not entry.is_open:
                continue
            if not is_payment_overdue(entry.scheduled_date, as_of, self.grace_period_days):
                continue

            changed = False
            days = days_overdue(entry.scheduled_date, as_of, self.grace_period_days)
            fee = calculate_late_fee(entry.outstanding_installment, days, self.late_fee_daily_rate)
            if fee > entry.late_fee:
                entry.late_fee = fee
                results["late_fees_assessed"] += 1
                changed = True

            if entry.status == PaymentStatus.PENDING:
                entry.status = PaymentStatus.OVERDUE
                results["installments_marked_overdue"] += 1
                changed = True
                self.audit_trail.log_event(
                    event_type=AuditEventType.INSTALLMENT_OVERDUE,
                    entity_type="installment",
                    entity_id=entry.id,
                    metadata={
                        "loan_id": loan.id,
                        "payment_number": entry.payment_number,
                        "scheduled_date": entry.scheduled_date.isoformat(),
                        "days_overdue": days,
                        "late_fee": entry.late_fee
                    }
                )

            if changed:
                entry.updated_at = now
                self.save_schedule_entry(entry)
            overdue_count += 1

        if overdue_count == 0:
            return

        if loan.status == LoanStatus.ACTIVE:
            self.mark_status(loan, LoanStatus.OVERDUE, AuditEventType.LOAN_OVERDUE,
                             metadata={"overdue_installments": overdue_count})
            results["loans_marked_overdue"] += 1
            logger.warning(f"Loan {loan.loan_number} is overdue")

        if overdue_count >= self.default_overdue_threshold:
            self.mark_status(loan, LoanStatus.DEFAULTED, AuditEventType.LOAN_DEFAULTED,
                             metadata={"overdue_installments": overdue_count,
                                       "remaining_balance": loan.remaining_balance})
            results["loans_defaulted"] += 1
            logger.warning(f"Loan {loan.loan_number} defaulted with "
                           f"{overdue_count} overdue installments")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Loan:
        """Load a loan, raising NotFound if it does not exist"""
        data = self.storage.load(self.loans_table, loan_id)
        if data is None:
            raise NotFound("loan", loan_id)
        return Loan.from_dict(data)

    def get_loan_by_number(self, loan_number: str) -> Loan:
        matches = self.storage.find(self.loans_table, {'loan_number': loan_number})
        if not matches:
            raise NotFound("loan", loan_number)
        return Loan.from_dict(matches[0])

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        """All loans of a borrower, newest first"""
        loans = [Loan.from_dict(d)
                 for d in self.storage.find(self.loans_table, {'borrower_id': borrower_id})]
        loans.sort(key=lambda x: x.created_at, reverse=True)
        return loans

    def list_loans(
        self,
        status: Optional[Union[LoanStatus, Iterable[LoanStatus]]] = None
    ) -> List[Loan]:
        """All loans, optionally restricted to one or more statuses"""
        if status is None:
            records = self.storage.load_all(self.loans_table)
        elif isinstance(status, LoanStatus):
            records = self.storage.find(self.loans_table, {'status': status.value})
        else:
            records = self.storage.find(self.loans_table, {'status': [s.value for s in status]})
        return [Loan.from_dict(d) for d in records]

    def get_schedule(self, loan_id: str) -> List[PaymentScheduleEntry]:
        """Schedule entries of a loan in payment number order"""
        entries = [PaymentScheduleEntry.from_dict(d)
                   for d in self.storage.find(self.schedule_table, {'loan_id': loan_id})]
        entries.sort(key=lambda x: x.payment_number)
        return entries

    def get_next_due_entry(self, loan_id: str) -> Optional[PaymentScheduleEntry]:
        """Lowest-numbered installment that is not yet paid"""
        for entry in self.get_schedule(loan_id):
            if entry.is_open:
                return entry
        return None

    def get_loan_summary(self) -> Dict[str, Any]:
        """Portfolio counts per status and money totals"""
        loans = self.list_loans()
        counts = {status.value: 0 for status in LoanStatus}
        total_disbursed = ZERO
        total_repaid = ZERO
        total_outstanding = ZERO

        for loan in loans:
            counts[loan.status.value] += 1
            if loan.approved_at is None:
                continue
            total_disbursed += loan.principal
            total_repaid += loan.amount_repaid
            if loan.status in REPAYING_STATUSES:
                total_outstanding += loan.remaining_balance

        return {
            "total_loans": len(loans),
            "by_status": counts,
            "total_disbursed": total_disbursed,
            "total_repaid": total_repaid,
            "total_outstanding": total_outstanding,
        }

    # ------------------------------------------------------------------
    # Persistence helpers shared with payment recording
    # ------------------------------------------------------------------

    def mark_status(
        self,
        loan: Loan,
        target: LoanStatus,
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Loan:
        """
        Move a loan to ``target``, stamp the matching timestamp, save and audit.

        Must be called inside ``storage.atomic()``.
        """
        self._check_transition(loan, target)
        previous = loan.status
        now = self.clock()

        loan.status = target
        loan.updated_at = now
        stamp = _STATUS_TIMESTAMPS.get(target)
        if stamp:
            setattr(loan, stamp, now)
        self.save_loan(loan)

        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata=dict(metadata or {}, loan_number=loan.loan_number,
                          from_status=previous.value, to_status=target.value),
            user_id=user_id
        )
        return loan

    def save_loan(self, loan: Loan) -> None:
        """Compare-and-set save; bumps ``loan.version``"""
        loan.version = self.storage.save_versioned(
            self.loans_table, loan.id, loan.to_dict(), expected_version=loan.version
        )

    def save_schedule_entry(self, entry: PaymentScheduleEntry) -> None:
        self.storage.save(self.schedule_table, entry.id, entry.to_dict())

    def _check_transition(self, loan: Loan, target: LoanStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[loan.status]:
            raise InvalidStateTransition("loan", loan.id, loan.status.value, target.value)

    def _validate_purpose(self, purpose: str) -> str:
        purpose = (purpose or "").strip()
        if len(purpose) < self.purpose_min_length:
            raise ValidationError(
                f"Purpose must be at least {self.purpose_min_length} characters", field="purpose"
            )
        if len(purpose) > self.purpose_max_length:
            raise ValidationError(
                f"Purpose must not exceed {self.purpose_max_length} characters", field="purpose"
            )
        return purpose

    def _ensure_no_live_loan(self, borrower_id: str) -> None:
        live = self.storage.find(self.loans_table, {
            'borrower_id': borrower_id,
            'status': [s.value for s in LIVE_STATUSES]
        })
        if live:
            raise DuplicateActiveLoan(borrower_id, live[0].get('loan_number'))

    def _generate_loan_number(self, now: datetime, max_attempts: int = 20) -> str:
        """``<prefix><YYMMDD><4 random digits>``, unique among stored loans"""
        stem = f"{self.loan_number_prefix}{now.strftime('%y%m%d')}"
        for _ in range(max_attempts):
            candidate = f"{stem}{random.randint(0, 9999):04d}"
            if not self.storage.find(self.loans_table, {'loan_number': candidate}):
                return candidate
        raise LendingError("Could not generate a unique loan number",
                           {"prefix": stem, "attempts": max_attempts})


def _as_requirement(value: Union[RequirementFile, Dict[str, Any]]) -> RequirementFile:
    if isinstance(value, RequirementFile):
        return value
    return RequirementFile.from_dict(value)
