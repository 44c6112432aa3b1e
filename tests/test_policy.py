"""
Tests for the loan policy table
"""

import pytest
from decimal import Decimal

from lending_core.errors import PolicyViolation, ValidationError
from lending_core.policy import (
    DEFAULT_POLICIES, DEFAULT_POLICY, LoanCategory, LoanPolicy, LoanPolicyTable, parse_category
)


class TestPolicyLookup:
    """Test category to policy mapping"""

    def setup_method(self):
        self.table = LoanPolicyTable()

    @pytest.mark.parametrize("category,rate,max_principal,max_term", [
        (LoanCategory.PERSONAL, '12.0', '500000', 36),
        (LoanCategory.BUSINESS, '15.0', '1000000', 60),
        (LoanCategory.EMERGENCY, '8.0', '100000', 12),
        (LoanCategory.EDUCATION, '10.0', '300000', 48),
        (LoanCategory.MEDICAL, '8.0', '200000', 24),
        (LoanCategory.AGRICULTURE, '14.0', '800000', 36),
    ])
    def test_category_policies(self, category, rate, max_principal, max_term):
        policy = self.table.policy_for(category)
        assert policy.interest_rate == Decimal(rate)
        assert policy.max_principal == Decimal(max_principal)
        assert policy.max_term_months == max_term

    def test_lookup_by_name(self):
        assert self.table.policy_for("business") == DEFAULT_POLICIES[LoanCategory.BUSINESS]

    def test_unknown_category_gets_default(self, caplog):
        with caplog.at_level("WARNING", logger="lendme.policy"):
            policy = self.table.policy_for("HOUSING")
        assert policy == DEFAULT_POLICY
        assert "HOUSING" in caplog.text

    def test_policies_are_immutable(self):
        policy = self.table.policy_for(LoanCategory.PERSONAL)
        with pytest.raises(AttributeError):
            policy.interest_rate = Decimal('1')

    def test_custom_table(self):
        table = LoanPolicyTable(policies={
            LoanCategory.PERSONAL: LoanPolicy(Decimal('9.5'), Decimal('20000'), 6)
        })
        assert table.policy_for(LoanCategory.PERSONAL).interest_rate == Decimal('9.5')
        # Categories missing from a custom table fall back to the default
        assert table.policy_for(LoanCategory.BUSINESS) == DEFAULT_POLICY

    def test_parse_category(self):
        assert parse_category("medical") == LoanCategory.MEDICAL
        assert parse_category(LoanCategory.EDUCATION) == LoanCategory.EDUCATION
        assert parse_category("mortgage") is None


class TestValidateTerms:
    """Test validation of requested principal and term"""

    def setup_method(self):
        self.table = LoanPolicyTable()

    def test_valid_terms(self):
        policy = self.table.validate_terms(LoanCategory.BUSINESS, Decimal('1000000'), 60)
        assert policy.interest_rate == Decimal('15.0')

    def test_accepts_string_amount(self):
        self.table.validate_terms("PERSONAL", "25000.50", 12)

    def test_principal_above_cap(self):
        with pytest.raises(PolicyViolation) as exc_info:
            self.table.validate_terms(LoanCategory.PERSONAL, Decimal('500000.01'), 12)
        assert exc_info.value.field == "principal"
        assert "PERSONAL" in exc_info.value.message

    def test_term_above_category_cap(self):
        with pytest.raises(PolicyViolation) as exc_info:
            self.table.validate_terms(LoanCategory.EMERGENCY, Decimal('5000'), 13)
        assert exc_info.value.field == "term_months"

    def test_below_minimum_amount(self):
        with pytest.raises(ValidationError) as exc_info:
            self.table.validate_terms(LoanCategory.PERSONAL, Decimal('999.99'), 12)
        assert not isinstance(exc_info.value, PolicyViolation)
        assert exc_info.value.field_errors == {"principal": ["Minimum loan amount is ₱1,000.00"]}

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-5000'), "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            self.table.validate_terms(LoanCategory.PERSONAL, amount, 12)
        assert exc_info.value.field == "principal"

    @pytest.mark.parametrize("term", [0, -1, 61])
    def test_term_out_of_range(self, term):
        with pytest.raises(ValidationError) as exc_info:
            self.table.validate_terms(LoanCategory.BUSINESS, Decimal('5000'), term)
        assert not isinstance(exc_info.value, PolicyViolation)
        assert exc_info.value.field == "term_months"

    def test_configured_limits(self):
        table = LoanPolicyTable(min_principal=Decimal('5000'), max_term_months=24)
        with pytest.raises(ValidationError):
            table.validate_terms(LoanCategory.PERSONAL, Decimal('4000'), 12)
        with pytest.raises(ValidationError):
            table.validate_terms(LoanCategory.BUSINESS, Decimal('10000'), 36)
