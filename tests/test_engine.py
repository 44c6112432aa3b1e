"""
Integration tests for the lending engine

Exercises the form-submission handlers end to end: payload validation,
capability checks and the resulting loan, fund and audit state.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from lending_core.audit import AuditEventType
from lending_core.config import LendingConfig
from lending_core.engine import LendingEngine
from lending_core.errors import PermissionDenied, ValidationError
from lending_core.loans import LoanStatus, PaymentStatus
from lending_core.rbac import Actor
from lending_core.schedule import InterestModel


FIXED_NOW = datetime(2024, 1, 20, 9, 0, tzinfo=timezone.utc)
PURPOSE = "Capital for a small bakery business"


def loan_payload(**overrides):
    payload = {
        "category": "PERSONAL",
        "amount": "50,000.00",
        "term_months": 12,
        "purpose": PURPOSE,
    }
    payload.update(overrides)
    return payload


class EngineTestBase:
    """Engine over in-memory storage with a 100,000 opening fund"""

    def setup_method(self):
        self.engine = LendingEngine(
            LendingConfig(opening_fund_balance="100000.00", database_url="memory://"),
            clock=lambda: FIXED_NOW
        )
        self.admin = Actor.of("admin-1", "SUPERADMIN")
        self.manager = Actor.of("manager-1", "MANAGER")
        self.member = Actor.of("member-1", "BORROWER")
        self.other_member = Actor.of("member-2", "BORROWER")
        self.guest = Actor.of("guest-1", "GUEST")

    def teardown_method(self):
        self.engine.close()


class TestLoanSubmission(EngineTestBase):
    """Loan form handling"""

    def test_member_applies(self):
        loan = self.engine.submit_loan(self.member, loan_payload())
        assert loan.status == LoanStatus.PENDING
        assert loan.borrower_id == "member-1"
        assert loan.principal == Decimal('50000.00')
        assert loan.total_amount == Decimal('56000.00')

    def test_amount_with_currency_symbol(self):
        loan = self.engine.submit_loan(self.member, loan_payload(amount="₱2,500"))
        assert loan.principal == Decimal('2500.00')

    def test_missing_fields(self):
        payload = loan_payload()
        del payload["purpose"]
        with pytest.raises(ValidationError) as exc_info:
            self.engine.submit_loan(self.member, payload)
        assert "purpose" in exc_info.value.field_errors

    def test_invalid_amount_message(self):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.submit_loan(self.member, loan_payload(amount="lots"))
        assert exc_info.value.field_errors["amount"] == ["Amount must be a number"]

    @pytest.mark.parametrize("overrides,field", [
        ({"term_months": 0}, "term_months"),
        ({"term_months": 61}, "term_months"),
        ({"purpose": "short"}, "purpose"),
        ({"amount": "-100"}, "amount"),
    ])
    def test_form_validation(self, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.submit_loan(self.member, loan_payload(**overrides))
        assert field in exc_info.value.field_errors
        assert self.engine.list_loans(self.manager) == []

    @pytest.mark.parametrize("amount", ["5e2", "12O0", "1-2"])
    def test_malformed_amount_rejected(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.submit_loan(self.member, loan_payload(amount=amount))
        assert exc_info.value.field_errors["amount"] == ["Amount must be a number"]
        assert self.engine.list_loans(self.manager) == []

    def test_guest_cannot_apply(self):
        with pytest.raises(PermissionDenied):
            self.engine.submit_loan(self.guest, loan_payload())

    def test_member_cannot_apply_for_others(self):
        with pytest.raises(PermissionDenied):
            self.engine.submit_loan(self.member, loan_payload(borrower_id="member-2"))

    def test_member_cannot_auto_approve(self):
        with pytest.raises(PermissionDenied):
            self.engine.submit_loan(self.member, loan_payload(auto_approve=True))
        assert self.engine.list_loans(self.member) == []

    def test_manager_creates_for_member(self):
        loan = self.engine.submit_loan(self.manager, loan_payload(borrower_id="member-1"))
        assert loan.borrower_id == "member-1"
        assert loan.created_by == "manager-1"
        assert loan.status == LoanStatus.PENDING

    def test_manager_auto_approves(self):
        loan = self.engine.submit_loan(
            self.manager, loan_payload(borrower_id="member-1", auto_approve=True)
        )
        assert loan.status == LoanStatus.ACTIVE
        assert loan.approver_id == "manager-1"
        assert self.engine.get_fund_balance(self.manager).available_funds == Decimal('50000.00')


class TestLoanDecisions(EngineTestBase):
    """Review, approval, rejection, cancellation and deletion"""

    def setup_method(self):
        super().setup_method()
        self.loan = self.engine.submit_loan(self.member, loan_payload())

    def test_review_and_approve(self):
        assert self.engine.review_loan(self.manager, self.loan.id).status == LoanStatus.UNDER_REVIEW
        approved = self.engine.approve_loan(self.manager, self.loan.id)
        assert approved.status == LoanStatus.ACTIVE
        assert len(self.engine.get_loan_schedule(self.member, self.loan.id)) == 12

    def test_member_cannot_approve(self):
        with pytest.raises(PermissionDenied):
            self.engine.approve_loan(self.member, self.loan.id)
        assert self.engine.get_loan(self.member, self.loan.id).status == LoanStatus.PENDING

    def test_reject_requires_reason(self):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.reject_loan(self.manager, self.loan.id, {"reason": "no"})
        assert "reason" in exc_info.value.field_errors

        rejected = self.engine.reject_loan(self.manager, self.loan.id,
                                           {"reason": "Existing debts are too high"})
        assert rejected.status == LoanStatus.REJECTED

    def test_member_cancels_own_loan(self):
        cancelled = self.engine.cancel_loan(self.member, self.loan.id, reason="No longer needed")
        assert cancelled.status == LoanStatus.CANCELLED

    def test_member_cannot_cancel_others_loan(self):
        with pytest.raises(PermissionDenied):
            self.engine.cancel_loan(self.other_member, self.loan.id)

    def test_update_loan(self):
        updated = self.engine.update_loan(self.manager, self.loan.id,
                                          {"amount": "20000", "term_months": 10})
        assert updated.total_amount == Decimal('22400.00')
        with pytest.raises(PermissionDenied):
            self.engine.update_loan(self.member, self.loan.id, {"purpose": PURPOSE})

    def test_delete_loan(self):
        with pytest.raises(PermissionDenied):
            self.engine.delete_loan(self.member, self.loan.id)
        self.engine.delete_loan(self.manager, self.loan.id)
        assert self.engine.list_loans(self.manager) == []

    def test_loan_visibility(self):
        assert self.engine.get_loan(self.member, self.loan.id).id == self.loan.id
        assert self.engine.get_loan(self.manager, self.loan.id).id == self.loan.id
        with pytest.raises(PermissionDenied):
            self.engine.get_loan(self.other_member, self.loan.id)
        assert self.engine.list_loans(self.other_member) == []
        assert len(self.engine.list_loans(self.member)) == 1


class TestRepaymentFlow(EngineTestBase):
    """Payments and the overdue sweep through the engine"""

    def setup_method(self):
        super().setup_method()
        loan = self.engine.submit_loan(
            self.member, loan_payload(category="EMERGENCY", amount="1000", term_months=1)
        )
        self.loan = self.engine.approve_loan(self.manager, loan.id)

    def test_record_payment(self):
        entry = self.engine.record_payment(self.manager, {
            "loan_id": self.loan.id, "amount": "1,080.00", "payment_method": "cash",
            "receipt_number": "OR-77"
        })
        assert entry.status == PaymentStatus.PAID
        assert self.engine.get_loan(self.member, self.loan.id).status == LoanStatus.COMPLETED

        history = self.engine.get_payment_history(self.member, self.loan.id)
        assert [p.receipt_number for p in history] == ["OR-77"]

    def test_member_cannot_record_payment(self):
        with pytest.raises(PermissionDenied):
            self.engine.record_payment(self.member, {
                "loan_id": self.loan.id, "amount": "1080", "payment_method": "CASH"
            })

    @pytest.mark.parametrize("amount", ["5e2", "1.08e3", "1O80", "10-80"])
    def test_malformed_payment_amount(self, amount):
        fund_before = self.engine.get_fund_balance(self.manager)
        with pytest.raises(ValidationError) as exc_info:
            self.engine.record_payment(self.manager, {
                "loan_id": self.loan.id, "amount": amount, "payment_method": "CASH"
            })
        assert "amount" in exc_info.value.field_errors
        assert self.engine.get_payment_history(self.manager, self.loan.id) == []
        assert self.engine.get_fund_balance(self.manager).total_funds == fund_before.total_funds

    def test_overdue_sweep(self):
        with pytest.raises(PermissionDenied):
            self.engine.run_overdue_sweep(self.member, date(2024, 3, 6))

        results = self.engine.run_overdue_sweep(self.manager, date(2024, 3, 6))
        assert results["loans_marked_overdue"] == 1
        assert self.engine.get_loan(self.member, self.loan.id).status == LoanStatus.OVERDUE


class TestContributionFlow(EngineTestBase):
    """Contribution forms"""

    def _payload(self, **overrides):
        payload = {"amount": "500", "contribution_type": "MONTHLY_SAVINGS",
                   "payment_method": "GCASH"}
        payload.update(overrides)
        return payload

    def test_member_contributes_and_manager_approves(self):
        contribution = self.engine.submit_contribution(self.member, self._payload())
        assert contribution.contributor_id == "member-1"

        with pytest.raises(PermissionDenied):
            self.engine.approve_contribution(self.member, contribution.id)
        self.engine.approve_contribution(self.manager, contribution.id)

        assert self.engine.get_fund_balance(self.manager).total_funds == Decimal('100500.00')

    @pytest.mark.parametrize("amount", ["5e2", "1.5e3", "12O0", "1-2"])
    def test_malformed_contribution_amount(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.submit_contribution(self.member, self._payload(amount=amount))
        assert "amount" in exc_info.value.field_errors
        assert self.engine.list_contributions(self.manager) == []

    def test_contribution_on_behalf(self):
        with pytest.raises(PermissionDenied):
            self.engine.submit_contribution(self.member, self._payload(contributor_id="member-2"))

        contribution = self.engine.submit_contribution(
            self.manager, self._payload(contributor_id="member-2")
        )
        assert contribution.contributor_id == "member-2"
        assert contribution.recorded_by == "manager-1"

    def test_reject_contribution(self):
        contribution = self.engine.submit_contribution(self.member, self._payload())
        rejected = self.engine.reject_contribution(self.manager, contribution.id, "Duplicate entry")
        assert rejected.rejection_reason == "Duplicate entry"

    def test_contribution_visibility(self):
        self.engine.submit_contribution(self.member, self._payload())
        self.engine.submit_contribution(self.other_member, self._payload())
        assert len(self.engine.list_contributions(self.member)) == 1
        assert len(self.engine.list_contributions(self.manager)) == 2


class TestFundAndAudit(EngineTestBase):
    """Fund views and audit verification"""

    def test_fund_balance_requires_staff(self):
        with pytest.raises(PermissionDenied):
            self.engine.get_fund_balance(self.member)
        ledger = self.engine.get_fund_balance(self.manager)
        assert ledger.total_funds == Decimal('100000.00')

    def test_dashboard_summary(self):
        loan = self.engine.submit_loan(self.member, loan_payload())
        self.engine.approve_loan(self.manager, loan.id)
        summary = self.engine.get_dashboard_summary(self.manager)

        assert summary["fund"].loaned_funds == Decimal('50000.00')
        assert summary["loans"]["by_status"]["ACTIVE"] == 1
        assert summary["contributions"]["total_contributions"] == 0

    def test_verify_audit_trail(self):
        self.engine.submit_loan(self.member, loan_payload())
        with pytest.raises(PermissionDenied):
            self.engine.verify_audit_trail(self.manager)

        result = self.engine.verify_audit_trail(self.admin)
        assert result["valid"]
        checks = self.engine.audit_trail.get_events_by_type(AuditEventType.AUDIT_INTEGRITY_CHECK)
        assert checks[0].user_id == "admin-1"


class TestEngineConfiguration:
    """Engine wiring from configuration"""

    def test_amortizing_model(self):
        engine = LendingEngine(LendingConfig(interest_model="AMORTIZING",
                                             opening_fund_balance="100000"),
                               clock=lambda: FIXED_NOW)
        loan = engine.submit_loan(Actor.of("m", "BORROWER"), loan_payload())
        assert loan.interest_model == InterestModel.AMORTIZING
        assert loan.monthly_payment == Decimal('4442.44')
        engine.close()

    def test_configured_minimum(self):
        engine = LendingEngine(LendingConfig(min_loan_amount="5000.00"), clock=lambda: FIXED_NOW)
        with pytest.raises(ValidationError):
            engine.submit_loan(Actor.of("m", "BORROWER"), loan_payload(amount="4000"))
        engine.close()

    def test_sqlite_restart_keeps_fund(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'lendme.db'}"
        member = Actor.of("member-1", "BORROWER")
        manager = Actor.of("manager-1", "MANAGER")

        engine = LendingEngine(LendingConfig(database_url=url, opening_fund_balance="1000"),
                               clock=lambda: FIXED_NOW)
        contribution = engine.submit_contribution(member, {
            "amount": "250", "contribution_type": "VOLUNTARY", "payment_method": "CASH"
        })
        engine.approve_contribution(manager, contribution.id)
        engine.close()

        # A different opening balance on restart is ignored
        restarted = LendingEngine(LendingConfig(database_url=url, opening_fund_balance="5"),
                                  clock=lambda: FIXED_NOW)
        assert restarted.get_fund_balance(manager).total_funds == Decimal('1250.00')
        assert restarted.verify_audit_trail(Actor.of("root", "SUPERADMIN"))["valid"]
        restarted.close()
