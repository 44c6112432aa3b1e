"""
Tests for member contributions
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from lending_core.audit import AuditEventType, AuditTrail
from lending_core.contributions import (
    ContributionManager, ContributionStatus, ContributionType
)
from lending_core.errors import InvalidStateTransition, NotFound, ValidationError
from lending_core.fund import FundLedgerManager
from lending_core.money import PaymentMethod
from lending_core.storage import InMemoryStorage


FIXED_NOW = datetime(2024, 1, 20, 9, 0, tzinfo=timezone.utc)


class TestContributions:
    """Submission and approval of member capital"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.fund = FundLedgerManager(self.storage, self.audit, clock=lambda: FIXED_NOW)
        self.fund.initialize(Decimal('0'))
        self.contributions = ContributionManager(self.storage, self.fund, self.audit,
                                                 clock=lambda: FIXED_NOW)

    def _submit(self, contributor_id="member-1", amount=Decimal('5000'),
                contribution_type=ContributionType.MONTHLY_SAVINGS, **kwargs):
        return self.contributions.submit_contribution(
            contributor_id, amount, contribution_type,
            kwargs.pop("payment_method", PaymentMethod.CASH), **kwargs
        )

    def test_submit_contribution(self):
        contribution = self._submit(receipt_number="OR-123", description="January savings")

        assert contribution.status == ContributionStatus.PENDING
        assert contribution.amount == Decimal('5000.00')
        assert contribution.recorded_by == "member-1"
        assert contribution.contributed_at == FIXED_NOW
        assert contribution.receipt_number == "OR-123"
        assert self.contributions.get_contribution(contribution.id) == contribution

    def test_pending_contribution_does_not_touch_fund(self):
        self._submit()
        assert self.fund.get_balance().total_funds == Decimal('0.00')

    def test_submit_parses_strings(self):
        contribution = self._submit(amount="250.50", contribution_type="voluntary",
                                    payment_method="gcash")
        assert contribution.contribution_type == ContributionType.VOLUNTARY
        assert contribution.payment_method == PaymentMethod.GCASH

    def test_recorded_on_behalf(self):
        contribution = self._submit(recorded_by="manager-1")
        assert contribution.recorded_by == "manager-1"
        event = self.audit.get_events_by_type(AuditEventType.CONTRIBUTION_SUBMITTED)[0]
        assert event.user_id == "manager-1"

    def test_minimum_amount(self):
        with pytest.raises(ValidationError) as exc_info:
            self._submit(amount=Decimal('99.99'))
        assert exc_info.value.message == "Minimum contribution amount is ₱100.00"
        self._submit(amount=Decimal('100'))

    @pytest.mark.parametrize("field,kwargs", [
        ("amount", {"amount": "lots"}),
        ("contribution_type", {"contribution_type": "DONATION"}),
        ("payment_method", {"payment_method": "BARTER"}),
        ("contributor_id", {"contributor_id": ""}),
    ])
    def test_invalid_input(self, field, kwargs):
        with pytest.raises(ValidationError) as exc_info:
            self._submit(**kwargs)
        assert exc_info.value.field == field
        assert self.contributions.list_contributions() == []

    def test_approve_credits_fund(self):
        contribution = self._submit()
        approved = self.contributions.approve_contribution(contribution.id, "manager-1")

        assert approved.status == ContributionStatus.APPROVED
        assert approved.processed_by == "manager-1"
        assert approved.processed_at == FIXED_NOW

        ledger = self.fund.get_balance()
        assert ledger.total_funds == Decimal('5000.00')
        assert ledger.available_funds == Decimal('5000.00')
        assert ledger.total_contributions == Decimal('5000.00')

    def test_approve_twice_credits_once(self):
        contribution = self._submit()
        self.contributions.approve_contribution(contribution.id, "manager-1")
        with pytest.raises(InvalidStateTransition):
            self.contributions.approve_contribution(contribution.id, "manager-1")
        assert self.fund.get_balance().total_funds == Decimal('5000.00')

    def test_reject(self):
        contribution = self._submit()
        rejected = self.contributions.reject_contribution(contribution.id, "manager-1",
                                                          "Receipt does not match")
        assert rejected.status == ContributionStatus.REJECTED
        assert rejected.rejection_reason == "Receipt does not match"
        assert self.fund.get_balance().total_funds == Decimal('0.00')

        with pytest.raises(InvalidStateTransition):
            self.contributions.approve_contribution(contribution.id, "manager-1")

    def test_missing_contribution(self):
        with pytest.raises(NotFound):
            self.contributions.approve_contribution("missing", "manager-1")

    def test_list_contributions(self):
        older = self._submit(contributed_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = self._submit(contributed_at=datetime(2024, 1, 15, tzinfo=timezone.utc))
        other = self._submit(contributor_id="member-2")
        self.contributions.approve_contribution(other.id, "manager-1")

        assert [c.id for c in self.contributions.list_contributions("member-1")] == [
            newer.id, older.id
        ]
        approved = self.contributions.list_contributions(status=ContributionStatus.APPROVED)
        assert [c.id for c in approved] == [other.id]

    def test_summary(self):
        a = self._submit(amount=Decimal('1000'), contribution_type=ContributionType.INITIAL_CAPITAL)
        b = self._submit(amount=Decimal('500'))
        self._submit(amount=Decimal('200'))
        c = self._submit(contributor_id="member-2", amount=Decimal('300'))
        self.contributions.approve_contribution(a.id, "manager-1")
        self.contributions.approve_contribution(b.id, "manager-1")
        self.contributions.reject_contribution(c.id, "manager-1")

        summary = self.contributions.get_contribution_summary()
        assert summary["total_contributions"] == 4
        assert summary["by_status"]["APPROVED"] == {"count": 2, "amount": Decimal('1500.00')}
        assert summary["by_status"]["PENDING"] == {"count": 1, "amount": Decimal('200.00')}
        assert summary["by_status"]["REJECTED"]["count"] == 1
        assert summary["approved_by_type"]["INITIAL_CAPITAL"] == Decimal('1000.00')
        assert summary["approved_by_type"]["MONTHLY_SAVINGS"] == Decimal('500.00')
        assert summary["total_approved"] == Decimal('1500.00')

        mine = self.contributions.get_contribution_summary("member-2")
        assert mine["total_contributions"] == 1
        assert mine["total_approved"] == Decimal('0.00')
