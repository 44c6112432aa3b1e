"""
Pydantic schemas for form submissions handled by the lending engine
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .money import decimal_from_string, to_decimal


RequestModel = TypeVar("RequestModel", bound=BaseModel)


def _positive_amount(value: Any) -> str:
    """Accept ``1000``, ``"1,000.00"`` or ``"₱1,000"``; return a plain decimal string"""
    try:
        if isinstance(value, str):
            amount = decimal_from_string(value)
        else:
            amount = to_decimal(value)
    except ValueError:
        raise ValueError("Amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount must be positive")
    return str(amount)


class FormModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class RequirementFileModel(FormModel):
    filename: str
    original_name: str
    size: int = Field(..., ge=0)
    mime_type: str
    path: str


# Loan schemas
class LoanApplicationRequest(FormModel):
    category: str = Field(..., description="Loan category (PERSONAL, BUSINESS, ...)")
    amount: str = Field(..., description="Requested principal as a decimal string")
    term_months: int = Field(..., ge=1, le=60)
    purpose: str = Field(..., min_length=10, max_length=500)
    collateral: Optional[str] = None
    requirements: List[RequirementFileModel] = Field(default_factory=list)
    borrower_id: Optional[str] = Field(None, description="Set by staff creating a loan for a member")
    auto_approve: bool = False

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: Any) -> str:
        return _positive_amount(value)


class LoanUpdateRequest(FormModel):
    category: Optional[str] = None
    amount: Optional[str] = None
    term_months: Optional[int] = Field(None, ge=1, le=60)
    purpose: Optional[str] = Field(None, min_length=10, max_length=500)
    collateral: Optional[str] = None
    requirements: Optional[List[RequirementFileModel]] = None

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return _positive_amount(value)


class RejectionRequest(FormModel):
    reason: str = Field(..., min_length=10, description="Why the loan was rejected")


# Contribution schemas
class ContributionRequest(FormModel):
    amount: str
    contribution_type: str = Field(..., description="INITIAL_CAPITAL, MONTHLY_SAVINGS, ...")
    payment_method: str = Field(..., description="CASH, BANK_TRANSFER, GCASH, ...")
    contributor_id: Optional[str] = Field(None, description="Member the deposit belongs to")
    receipt_number: Optional[str] = None
    description: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: Any) -> str:
        return _positive_amount(value)


# Payment schemas
class PaymentRequest(FormModel):
    loan_id: str
    amount: str
    payment_method: str
    receipt_number: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: Any) -> str:
        return _positive_amount(value)


def parse_request(model: Type[RequestModel], data: Dict[str, Any]) -> RequestModel:
    """
    Validate a raw payload, turning pydantic errors into ValidationError
    with one message list per field
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        field_errors: Dict[str, List[str]] = {}
        for error in e.errors():
            name = ".".join(str(part) for part in error["loc"]) or "__root__"
            message = error["msg"]
            if message.startswith("Value error, "):
                message = message[len("Value error, "):]
            field_errors.setdefault(name, []).append(message)
        raise ValidationError("Invalid request", field_errors=field_errors) from e
