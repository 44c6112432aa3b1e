"""
Payment Recording Module

Applies borrower payments to the next due installment of a loan. Late fees
are settled first, the rest is split between principal and interest in the
proportion of the installment's scheduled split. Principal returns to the
fund's available capital, interest and fees are booked as fund income.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import InvalidStateTransition, ValidationError
from .fund import FundLedgerManager
from .loans import (
    REPAYING_STATUSES, LoanManager, LoanStatus, PaymentScheduleEntry, PaymentStatus
)
from .logging_config import get_logger, log_action
from .money import ZERO, MoneyLike, PaymentMethod, quantize_money, to_decimal
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal, utc_now


logger = get_logger("lendme.payments")


@dataclass
class PaymentRecord(StorageRecord):
    """Receipt of a single payment applied to one installment"""
    loan_id: str
    schedule_entry_id: str
    payment_number: int
    amount: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    late_fee_portion: Decimal
    payment_method: PaymentMethod
    paid_at: datetime
    recorded_by: Optional[str] = None
    receipt_number: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            schedule_entry_id=data['schedule_entry_id'],
            payment_number=data['payment_number'],
            amount=parse_decimal(data['amount']),
            principal_portion=parse_decimal(data['principal_portion']),
            interest_portion=parse_decimal(data['interest_portion']),
            late_fee_portion=parse_decimal(data['late_fee_portion']),
            payment_method=PaymentMethod(data['payment_method']),
            paid_at=parse_datetime(data['paid_at']),
            recorded_by=data.get('recorded_by'),
            receipt_number=data.get('receipt_number'),
            notes=data.get('notes')
        )


def split_payment(entry: PaymentScheduleEntry, amount: Decimal) -> Dict[str, Decimal]:
    """
    Split a payment against one installment into late fee, principal and interest.

    The outstanding late fee is covered first. The remainder follows the
    installment's scheduled principal/interest ratio; a payment that settles
    the installment takes exactly what is left of each part.

    Raises:
        ValidationError: amount exceeds what the installment still owes
    """
    if amount > entry.amount_due:
        raise ValidationError(
            f"Payment of {amount} exceeds the {entry.amount_due} due on installment "
            f"{entry.payment_number}",
            field="amount"
        )

    fee = min(amount, entry.outstanding_late_fee)
    rest = amount - fee
    principal_left = entry.principal_amount - entry.principal_paid
    interest_left = entry.interest_amount - entry.interest_paid

    if rest == principal_left + interest_left:
        principal, interest = principal_left, interest_left
    elif entry.scheduled_amount > 0:
        principal = min(quantize_money(rest * entry.principal_amount / entry.scheduled_amount),
                        principal_left)
        interest = rest - principal
        if interest > interest_left:
            principal += interest - interest_left
            interest = interest_left
    else:
        principal, interest = ZERO, ZERO

    return {"late_fee": fee, "principal": principal, "interest": interest}


class PaymentRecorder:
    """
    Records repayments against loan schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        fund_manager: FundLedgerManager,
        audit_trail: AuditTrail,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.fund_manager = fund_manager
        self.audit_trail = audit_trail
        self.clock = clock or utc_now
        self.payments_table = "loan_payments"

    def record_payment(
        self,
        loan_id: str,
        amount: MoneyLike,
        payment_method: Union[PaymentMethod, str],
        recorded_by: Optional[str] = None,
        receipt_number: Optional[str] = None,
        notes: Optional[str] = None
    ) -> PaymentScheduleEntry:
        """
        Apply a payment to the next due installment of a loan

        Args:
            loan_id: Loan being repaid
            amount: Amount received, at most what the next installment owes
            payment_method: How the money was received
            recorded_by: Staff member entering the payment
            receipt_number: External receipt reference
            notes: Free text

        Returns:
            The updated schedule entry

        Raises:
            NotFound, InvalidStateTransition, ValidationError
        """
        try:
            value = quantize_money(to_decimal(amount))
        except ValueError:
            raise ValidationError("Amount must be a number", field="amount")
        if value <= 0:
            raise ValidationError("Payment amount must be positive", field="amount")
        method = _parse_method(payment_method)

        with self.storage.atomic():
            loan = self.loan_manager.get_loan(loan_id)
            if loan.status not in REPAYING_STATUSES:
                raise InvalidStateTransition("loan", loan.id, loan.status.value, "PAYMENT")

            entry = self.loan_manager.get_next_due_entry(loan.id)
            if entry is None:
                raise ValidationError("Loan has no outstanding installments", field="loan_id")

            parts = split_payment(entry, value)
            now = self.clock()

            entry.paid_amount += value
            entry.late_fee_paid += parts["late_fee"]
            entry.principal_paid += parts["principal"]
            entry.interest_paid += parts["interest"]
            entry.payment_method = method.value
            if receipt_number:
                entry.receipt_number = receipt_number
            if notes:
                entry.notes = notes
            if entry.paid_amount >= entry.scheduled_amount + entry.late_fee:
                entry.status = PaymentStatus.PAID
                entry.paid_date = now
            entry.updated_at = now
            self.loan_manager.save_schedule_entry(entry)

            repaid = parts["principal"] + parts["interest"]
            loan.remaining_balance = max(ZERO, loan.remaining_balance - repaid)
            loan.updated_at = now
            self.loan_manager.save_loan(loan)

            if parts["principal"] > 0:
                self.fund_manager.credit_repayment(parts["principal"], reference=loan.loan_number,
                                                   user_id=recorded_by)
            income = parts["interest"] + parts["late_fee"]
            if income > 0:
                self.fund_manager.credit_income(income, reference=loan.loan_number,
                                                user_id=recorded_by)

            record = PaymentRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                schedule_entry_id=entry.id,
                payment_number=entry.payment_number,
                amount=value,
                principal_portion=parts["principal"],
                interest_portion=parts["interest"],
                late_fee_portion=parts["late_fee"],
                payment_method=method,
                paid_at=now,
                recorded_by=recorded_by,
                receipt_number=receipt_number,
                notes=notes
            )
            self.storage.save(self.payments_table, record.id, record.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "payment_id": record.id,
                    "payment_number": entry.payment_number,
                    "amount": value,
                    "principal": parts["principal"],
                    "interest": parts["interest"],
                    "late_fee": parts["late_fee"],
                    "payment_method": method,
                    "entry_status": entry.status,
                    "remaining_balance": loan.remaining_balance
                },
                user_id=recorded_by
            )

            self._update_loan_status(loan, recorded_by)

        log_action(
            logger, "info",
            f"Payment of {value} recorded on {loan.loan_number} installment {entry.payment_number}",
            user_id=recorded_by, action="payment.record", resource=loan.id,
            extra={"principal": str(parts["principal"]), "interest": str(parts["interest"]),
                   "late_fee": str(parts["late_fee"]), "status": loan.status.value}
        )
        return entry

    def _update_loan_status(self, loan, user_id: Optional[str]) -> None:
        """Complete a fully repaid loan, reinstate one whose arrears are cleared"""
        schedule = self.loan_manager.get_schedule(loan.id)

        if all(not e.is_open for e in schedule):
            loan.remaining_balance = ZERO
            self.loan_manager.mark_status(
                loan, LoanStatus.COMPLETED, AuditEventType.LOAN_COMPLETED, user_id=user_id,
                metadata={"total_amount": loan.total_amount}
            )
            logger.info(f"Loan {loan.loan_number} completed")
            return

        if loan.status == LoanStatus.OVERDUE and not any(
            e.status == PaymentStatus.OVERDUE for e in schedule
        ):
            self.loan_manager.mark_status(
                loan, LoanStatus.ACTIVE, AuditEventType.LOAN_REINSTATED, user_id=user_id
            )
            logger.info(f"Loan {loan.loan_number} back to ACTIVE")

    def get_payment_history(self, loan_id: str) -> List[PaymentRecord]:
        """Payments recorded against a loan, oldest first"""
        self.loan_manager.get_loan(loan_id)
        payments = [PaymentRecord.from_dict(d)
                    for d in self.storage.find(self.payments_table, {'loan_id': loan_id})]
        payments.sort(key=lambda x: x.paid_at)
        return payments


def _parse_method(method: Union[PaymentMethod, str]) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(str(method).upper())
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {method}", field="payment_method")
