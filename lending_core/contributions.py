"""
Contribution Module

Member capital deposits. A contribution is submitted PENDING, then either
approved (crediting the fund ledger in the same transaction) or rejected.
Both decisions are final.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import InvalidStateTransition, NotFound, ValidationError
from .fund import FundLedgerManager
from .logging_config import get_logger, log_action
from .money import ZERO, MoneyLike, PaymentMethod, format_money, quantize_money, to_decimal
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal, utc_now


logger = get_logger("lendme.contributions")


class ContributionType(Enum):
    INITIAL_CAPITAL = "INITIAL_CAPITAL"
    MONTHLY_SAVINGS = "MONTHLY_SAVINGS"
    VOLUNTARY = "VOLUNTARY"
    PROFIT_SHARING = "PROFIT_SHARING"
    SPECIAL_ASSESSMENT = "SPECIAL_ASSESSMENT"


class ContributionStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class Contribution(StorageRecord):
    """A member's capital deposit"""
    contributor_id: str
    amount: Decimal
    contribution_type: ContributionType
    payment_method: PaymentMethod
    status: ContributionStatus
    contributed_at: datetime
    recorded_by: str                    # Who entered it; staff may enter for a member
    receipt_number: Optional[str] = None
    description: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contribution':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            contributor_id=data['contributor_id'],
            amount=parse_decimal(data['amount']),
            contribution_type=ContributionType(data['contribution_type']),
            payment_method=PaymentMethod(data['payment_method']),
            status=ContributionStatus(data['status']),
            contributed_at=parse_datetime(data['contributed_at']),
            recorded_by=data['recorded_by'],
            receipt_number=data.get('receipt_number'),
            description=data.get('description'),
            processed_at=parse_datetime(data.get('processed_at')),
            processed_by=data.get('processed_by'),
            rejection_reason=data.get('rejection_reason')
        )


class ContributionManager:
    """
    Contribution submission and the approve/reject decision
    """

    def __init__(
        self,
        storage: StorageInterface,
        fund_manager: FundLedgerManager,
        audit_trail: AuditTrail,
        min_amount: Decimal = Decimal('100'),
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.fund_manager = fund_manager
        self.audit_trail = audit_trail
        self.min_amount = min_amount
        self.clock = clock or utc_now
        self.table_name = "contributions"

    def submit_contribution(
        self,
        contributor_id: str,
        amount: MoneyLike,
        contribution_type: Union[ContributionType, str],
        payment_method: Union[PaymentMethod, str],
        recorded_by: Optional[str] = None,
        receipt_number: Optional[str] = None,
        description: Optional[str] = None,
        contributed_at: Optional[datetime] = None
    ) -> Contribution:
        """
        Record a contribution awaiting approval

        Args:
            contributor_id: Member whose capital this is
            amount: Deposit amount, at least ``min_amount``
            contribution_type: Kind of contribution
            payment_method: How the money was paid in
            recorded_by: Who entered it, defaults to the contributor
            receipt_number: External receipt reference
            description: Free text
            contributed_at: When the money was paid, defaults to now
        """
        if not contributor_id:
            raise ValidationError("Contributor is required", field="contributor_id")
        try:
            value = quantize_money(to_decimal(amount))
        except ValueError:
            raise ValidationError("Amount must be a number", field="amount")
        if value < self.min_amount:
            raise ValidationError(
                f"Minimum contribution amount is {format_money(self.min_amount)}", field="amount"
            )
        ctype = _parse_enum(ContributionType, contribution_type, "contribution_type")
        method = _parse_enum(PaymentMethod, payment_method, "payment_method")

        now = self.clock()
        contribution = Contribution(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            contributor_id=contributor_id,
            amount=value,
            contribution_type=ctype,
            payment_method=method,
            status=ContributionStatus.PENDING,
            contributed_at=contributed_at or now,
            recorded_by=recorded_by or contributor_id,
            receipt_number=receipt_number,
            description=description
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, contribution.id, contribution.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRIBUTION_SUBMITTED,
                entity_type="contribution",
                entity_id=contribution.id,
                metadata={
                    "contributor_id": contributor_id,
                    "amount": value,
                    "contribution_type": ctype,
                    "payment_method": method,
                    "recorded_by": contribution.recorded_by
                },
                user_id=contribution.recorded_by
            )

        log_action(logger, "info", f"Contribution of {value} submitted",
                   user_id=contribution.recorded_by, action="contribution.submit",
                   resource=contribution.id, extra={"contributor_id": contributor_id})
        return contribution

    def approve_contribution(self, contribution_id: str, processed_by: str) -> Contribution:
        """PENDING -> APPROVED and credit the fund, atomically"""
        with self.storage.atomic():
            contribution = self.get_contribution(contribution_id)
            self._check_pending(contribution, ContributionStatus.APPROVED)

            self.fund_manager.credit_contribution(contribution.amount, reference=contribution.id,
                                                  user_id=processed_by)
            self._decide(contribution, ContributionStatus.APPROVED, processed_by,
                         AuditEventType.CONTRIBUTION_APPROVED)

        log_action(logger, "info", f"Contribution {contribution.id} approved",
                   user_id=processed_by, action="contribution.approve",
                   resource=contribution.id, extra={"amount": str(contribution.amount)})
        return contribution

    def reject_contribution(self, contribution_id: str, processed_by: str,
                            reason: Optional[str] = None) -> Contribution:
        """PENDING -> REJECTED; the fund is not touched"""
        with self.storage.atomic():
            contribution = self.get_contribution(contribution_id)
            self._check_pending(contribution, ContributionStatus.REJECTED)
            contribution.rejection_reason = (reason or "").strip() or None
            self._decide(contribution, ContributionStatus.REJECTED, processed_by,
                         AuditEventType.CONTRIBUTION_REJECTED)

        log_action(logger, "info", f"Contribution {contribution.id} rejected",
                   user_id=processed_by, action="contribution.reject", resource=contribution.id)
        return contribution

    def get_contribution(self, contribution_id: str) -> Contribution:
        data = self.storage.load(self.table_name, contribution_id)
        if data is None:
            raise NotFound("contribution", contribution_id)
        return Contribution.from_dict(data)

    def list_contributions(
        self,
        contributor_id: Optional[str] = None,
        status: Optional[ContributionStatus] = None
    ) -> List[Contribution]:
        """Contributions, newest first, optionally filtered"""
        filters: Dict[str, Any] = {}
        if contributor_id:
            filters['contributor_id'] = contributor_id
        if status:
            filters['status'] = status.value
        contributions = [Contribution.from_dict(d)
                         for d in self.storage.find(self.table_name, filters)]
        contributions.sort(key=lambda x: x.contributed_at, reverse=True)
        return contributions

    def get_contribution_summary(self, contributor_id: Optional[str] = None) -> Dict[str, Any]:
        """Counts and amounts per status, approved amounts per type"""
        contributions = self.list_contributions(contributor_id)
        by_status = {s.value: {"count": 0, "amount": ZERO} for s in ContributionStatus}
        approved_by_type = {t.value: ZERO for t in ContributionType}

        for contribution in contributions:
            bucket = by_status[contribution.status.value]
            bucket["count"] += 1
            bucket["amount"] += contribution.amount
            if contribution.status == ContributionStatus.APPROVED:
                approved_by_type[contribution.contribution_type.value] += contribution.amount

        return {
            "total_contributions": len(contributions),
            "by_status": by_status,
            "approved_by_type": approved_by_type,
            "total_approved": by_status[ContributionStatus.APPROVED.value]["amount"],
        }

    def _check_pending(self, contribution: Contribution, target: ContributionStatus) -> None:
        if contribution.status != ContributionStatus.PENDING:
            raise InvalidStateTransition("contribution", contribution.id,
                                         contribution.status.value, target.value)

    def _decide(self, contribution: Contribution, target: ContributionStatus,
                processed_by: str, event_type: AuditEventType) -> None:
        now = self.clock()
        contribution.status = target
        contribution.processed_at = now
        contribution.processed_by = processed_by
        contribution.updated_at = now
        self.storage.save(self.table_name, contribution.id, contribution.to_dict())

        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="contribution",
            entity_id=contribution.id,
            metadata={
                "contributor_id": contribution.contributor_id,
                "amount": contribution.amount,
                "reason": contribution.rejection_reason
            },
            user_id=processed_by
        )


def _parse_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        raise ValidationError(f"Invalid {field_name.replace('_', ' ')}: {value}", field=field_name)
