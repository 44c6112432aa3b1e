"""
Fund Ledger Module

The shared fund pool is a single persisted row. Every change goes through
``FundLedgerManager``, which performs read-validate-write inside one storage
transaction and writes the row back with a version check.

Invariants:
    available_funds + loaned_funds == total_funds
    available_funds >= 0
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .audit import AuditTrail, AuditEventType
from .errors import InsufficientFunds, NotFound, ValidationError
from .logging_config import get_logger, log_action
from .money import ZERO, MoneyLike, quantize_money, to_decimal
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal, utc_now


logger = get_logger("lendme.fund")

FUND_LEDGER_ID = "main-fund"


@dataclass
class FundLedger(StorageRecord):
    """Aggregate balances of the shared fund"""
    total_funds: Decimal = ZERO
    available_funds: Decimal = ZERO
    loaned_funds: Decimal = ZERO
    total_contributions: Decimal = ZERO
    total_repayments: Decimal = ZERO
    total_income: Decimal = ZERO        # Interest and late fees collected
    last_updated: Optional[datetime] = None
    version: int = 0

    @property
    def is_balanced(self) -> bool:
        return self.available_funds + self.loaned_funds == self.total_funds

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FundLedger':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            total_funds=parse_decimal(data['total_funds']),
            available_funds=parse_decimal(data['available_funds']),
            loaned_funds=parse_decimal(data['loaned_funds']),
            total_contributions=parse_decimal(data['total_contributions']),
            total_repayments=parse_decimal(data['total_repayments']),
            total_income=parse_decimal(data.get('total_income', '0.00')),
            last_updated=parse_datetime(data.get('last_updated')),
            version=data.get('version', 0)
        )


class FundLedgerManager:
    """
    Sole accessor of the fund ledger row
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or utc_now
        self.table_name = "fund_ledger"

    def initialize(self, opening_balance: MoneyLike = ZERO) -> FundLedger:
        """
        Create the ledger row if it does not exist yet.

        The opening balance counts as available capital. Calling this again is
        a no-op that returns the existing row.
        """
        opening = quantize_money(opening_balance)
        if opening < 0:
            raise ValidationError("Opening balance cannot be negative", field="opening_balance")

        with self.storage.atomic():
            existing = self.storage.load(self.table_name, FUND_LEDGER_ID)
            if existing is not None:
                return FundLedger.from_dict(existing)

            now = self.clock()
            ledger = FundLedger(
                id=FUND_LEDGER_ID,
                created_at=now,
                updated_at=now,
                total_funds=opening,
                available_funds=opening,
                loaned_funds=ZERO,
                total_contributions=ZERO,
                total_repayments=ZERO,
                total_income=ZERO,
                last_updated=now
            )
            ledger.version = self.storage.save_versioned(
                self.table_name, ledger.id, ledger.to_dict(), expected_version=0
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.FUND_INITIALIZED,
                entity_type="fund",
                entity_id=ledger.id,
                metadata={"opening_balance": opening}
            )

        logger.info(f"Fund ledger initialized with opening balance {opening}")
        return ledger

    def get_balance(self) -> FundLedger:
        """Current ledger snapshot"""
        data = self.storage.load(self.table_name, FUND_LEDGER_ID)
        if data is None:
            raise NotFound("fund ledger", FUND_LEDGER_ID)
        return FundLedger.from_dict(data)

    def credit_contribution(self, amount: MoneyLike, reference: Optional[str] = None,
                            user_id: Optional[str] = None) -> FundLedger:
        """Approved member contribution: new capital, immediately available"""
        def apply(ledger: FundLedger, value: Decimal) -> None:
            ledger.total_funds += value
            ledger.available_funds += value
            ledger.total_contributions += value

        return self._mutate("contribution", amount, apply, AuditEventType.FUND_CREDITED,
                            reference, user_id)

    def debit_for_loan(self, amount: MoneyLike, reference: Optional[str] = None,
                       user_id: Optional[str] = None) -> FundLedger:
        """
        Move principal from available to loaned funds.

        Raises:
            InsufficientFunds: available funds do not cover the amount; the
                ledger is left unchanged
        """
        def apply(ledger: FundLedger, value: Decimal) -> None:
            if ledger.available_funds < value:
                raise InsufficientFunds(value, ledger.available_funds)
            ledger.available_funds -= value
            ledger.loaned_funds += value

        return self._mutate("loan_disbursement", amount, apply, AuditEventType.FUND_DEBITED,
                            reference, user_id)

    def credit_repayment(self, amount: MoneyLike, reference: Optional[str] = None,
                         user_id: Optional[str] = None) -> FundLedger:
        """Principal repaid by a borrower returns to available funds"""
        def apply(ledger: FundLedger, value: Decimal) -> None:
            ledger.available_funds += value
            ledger.total_repayments += value
            if value > ledger.loaned_funds:
                # Loaned funds never go negative; keep the pool balanced
                ledger.total_funds += value - ledger.loaned_funds
                ledger.loaned_funds = ZERO
            else:
                ledger.loaned_funds -= value

        return self._mutate("repayment", amount, apply, AuditEventType.FUND_CREDITED,
                            reference, user_id)

    def credit_income(self, amount: MoneyLike, reference: Optional[str] = None,
                      user_id: Optional[str] = None) -> FundLedger:
        """Interest and late fees collected grow the pool"""
        def apply(ledger: FundLedger, value: Decimal) -> None:
            ledger.total_funds += value
            ledger.available_funds += value
            ledger.total_income += value

        return self._mutate("income", amount, apply, AuditEventType.FUND_CREDITED,
                            reference, user_id)

    def _mutate(
        self,
        reason: str,
        amount: MoneyLike,
        apply: Callable[[FundLedger, Decimal], None],
        event_type: AuditEventType,
        reference: Optional[str],
        user_id: Optional[str]
    ) -> FundLedger:
        try:
            value = quantize_money(to_decimal(amount))
        except ValueError:
            raise ValidationError("Amount must be a number", field="amount")
        if value <= 0:
            raise ValidationError("Amount must be positive", field="amount")

        with self.storage.atomic():
            ledger = self.get_balance()
            apply(ledger, value)

            now = self.clock()
            ledger.last_updated = now
            ledger.updated_at = now
            ledger.version = self.storage.save_versioned(
                self.table_name, ledger.id, ledger.to_dict(), expected_version=ledger.version
            )

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="fund",
                entity_id=ledger.id,
                metadata={
                    "reason": reason,
                    "amount": value,
                    "reference": reference,
                    "available_funds": ledger.available_funds,
                    "loaned_funds": ledger.loaned_funds,
                    "total_funds": ledger.total_funds
                },
                user_id=user_id
            )

        log_action(
            logger, "info", f"Fund ledger {reason} of {value}",
            user_id=user_id, action=f"fund.{reason}", resource=reference,
            extra={"available_funds": str(ledger.available_funds),
                   "loaned_funds": str(ledger.loaned_funds)}
        )
        return ledger
