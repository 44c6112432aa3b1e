"""
Loan Policy Table

Static reference data mapping each loan category to its interest rate,
maximum principal and maximum term, plus the validation applied to loan
applications against those caps.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Union

from .errors import PolicyViolation, ValidationError
from .logging_config import get_logger
from .money import MoneyLike, format_money, to_decimal


logger = get_logger("lendme.policy")


class LoanCategory(Enum):
    """Loan categories offered by the fund"""
    PERSONAL = "PERSONAL"
    BUSINESS = "BUSINESS"
    EMERGENCY = "EMERGENCY"
    EDUCATION = "EDUCATION"
    MEDICAL = "MEDICAL"
    AGRICULTURE = "AGRICULTURE"


@dataclass(frozen=True)
class LoanPolicy:
    """Rate and caps for one loan category"""
    interest_rate: Decimal      # annual percent, e.g. Decimal('12.0')
    max_principal: Decimal
    max_term_months: int


DEFAULT_POLICIES: Dict[LoanCategory, LoanPolicy] = {
    LoanCategory.PERSONAL: LoanPolicy(Decimal('12.0'), Decimal('500000'), 36),
    LoanCategory.BUSINESS: LoanPolicy(Decimal('15.0'), Decimal('1000000'), 60),
    LoanCategory.EMERGENCY: LoanPolicy(Decimal('8.0'), Decimal('100000'), 12),
    LoanCategory.EDUCATION: LoanPolicy(Decimal('10.0'), Decimal('300000'), 48),
    LoanCategory.MEDICAL: LoanPolicy(Decimal('8.0'), Decimal('200000'), 24),
    LoanCategory.AGRICULTURE: LoanPolicy(Decimal('14.0'), Decimal('800000'), 36),
}

# Applied to any category missing from the table
DEFAULT_POLICY = LoanPolicy(Decimal('12.0'), Decimal('500000'), 36)


def parse_category(category: Union[LoanCategory, str]) -> Optional[LoanCategory]:
    """Category enum for a value, or None if it is not a known category"""
    if isinstance(category, LoanCategory):
        return category
    try:
        return LoanCategory(str(category).upper())
    except ValueError:
        return None


class LoanPolicyTable:
    """
    Lookup of loan policies by category.

    The table is immutable after construction and needs no locking.
    """

    def __init__(
        self,
        policies: Optional[Dict[LoanCategory, LoanPolicy]] = None,
        default_policy: LoanPolicy = DEFAULT_POLICY,
        min_principal: Decimal = Decimal('1000'),
        max_term_months: int = 60
    ):
        self._policies = dict(policies if policies is not None else DEFAULT_POLICIES)
        self.default_policy = default_policy
        self.min_principal = min_principal
        self.max_term_months = max_term_months

    def policy_for(self, category: Union[LoanCategory, str]) -> LoanPolicy:
        """Policy for a category, falling back to the default policy"""
        parsed = parse_category(category)
        policy = self._policies.get(parsed) if parsed else None
        if policy is None:
            logger.warning(f"No policy for loan category '{category}', using default policy")
            return self.default_policy
        return policy

    def validate_terms(
        self,
        category: Union[LoanCategory, str],
        principal: MoneyLike,
        term_months: int
    ) -> LoanPolicy:
        """
        Check principal and term against global limits and the category caps.

        Returns:
            The policy that applies

        Raises:
            ValidationError: Malformed amount or term
            PolicyViolation: Principal or term above the category maximum
        """
        try:
            amount = to_decimal(principal)
        except ValueError:
            raise ValidationError("Amount must be a number", field="principal")

        if not isinstance(term_months, int) or isinstance(term_months, bool):
            raise ValidationError("Term must be a whole number of months", field="term_months")
        if amount <= 0:
            raise ValidationError("Amount must be positive", field="principal")
        if amount < self.min_principal:
            raise ValidationError(
                f"Minimum loan amount is {format_money(self.min_principal)}", field="principal"
            )
        if term_months < 1:
            raise ValidationError("Minimum term is 1 month", field="term_months")
        if term_months > self.max_term_months:
            raise ValidationError(
                f"Maximum term is {self.max_term_months} months", field="term_months"
            )

        policy = self.policy_for(category)
        label = category.value if isinstance(category, LoanCategory) else str(category)

        if amount > policy.max_principal:
            raise PolicyViolation(
                f"Maximum amount for {label} loan is {format_money(policy.max_principal)}",
                field="principal"
            )
        if term_months > policy.max_term_months:
            raise PolicyViolation(
                f"Maximum term for {label} loan is {policy.max_term_months} months",
                field="term_months"
            )
        return policy
