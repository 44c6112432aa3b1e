"""
Interest & Schedule Calculator

Pure functions turning (principal, rate, term, start date) into a monthly
payment amount and a full repayment schedule. No side effects, no I/O, safe
to call from any thread.

Two interchangeable interest models are supported:

* AMORTIZING - standard annuity; interest on the declining balance.
* FLAT - simple interest on the full principal for the whole term, spread
  evenly over the installments.

All amounts are Decimal, rounded to the currency minor unit with
ROUND_HALF_UP. The final installment absorbs rounding residue so that the
schedule always sums exactly to the principal and to the total payable.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Tuple, Union
import calendar

from .money import ZERO, MoneyLike, quantize_money, to_decimal


class InterestModel(Enum):
    """Selectable interest calculation strategies"""
    AMORTIZING = "amortizing"  # Annuity, interest on declining balance
    FLAT = "flat"              # Simple interest on full principal for the full term


@dataclass(frozen=True)
class ScheduleLine:
    """Single installment of a computed schedule"""
    payment_number: int
    scheduled_date: date
    scheduled_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal  # Principal still outstanding after this installment


@dataclass(frozen=True)
class LoanCalculation:
    """Result of a schedule computation"""
    monthly_payment: Decimal
    total_amount: Decimal
    total_interest: Decimal
    schedule: Tuple[ScheduleLine, ...]


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(rate_percent: Decimal) -> Decimal:
    """Annual percentage (e.g. 12) to monthly fraction (0.01)"""
    return to_decimal(rate_percent) / Decimal('100') / Decimal('12')


def annuity_payment(principal: Decimal, rate_percent: Decimal, term_months: int) -> Decimal:
    """
    Unrounded level payment: P * r * (1+r)^n / ((1+r)^n - 1), or P / n at zero rate.
    """
    r = monthly_rate(rate_percent)
    n = Decimal(term_months)
    if r == 0:
        return principal / n
    factor = (Decimal('1') + r) ** term_months
    return principal * r * factor / (factor - Decimal('1'))


def compute_schedule(
    principal: MoneyLike,
    rate_percent: MoneyLike,
    term_months: int,
    start_date: Union[date, datetime],
    model: InterestModel = InterestModel.AMORTIZING
) -> LoanCalculation:
    """
    Compute payment amounts and the full installment schedule.

    Inputs are assumed to be validated already (positive principal and term).

    Every installment is rounded to the cent, and the last one absorbs the
    rounding remainder so the schedule sums exactly to ``total_amount``. As a
    result ``monthly_payment * term_months`` equals ``total_amount`` only when
    the total divides evenly; e.g. a flat 10000 at 10% over 6 months pays
    five installments of 1833.33 and a last one of 1833.35.

    Args:
        principal: Amount borrowed
        rate_percent: Annual interest rate as a percentage, e.g. ``12`` for 12%
        term_months: Number of monthly installments
        start_date: Installment ``i`` falls due ``i`` months after this date
        model: Interest model to apply

    Returns:
        LoanCalculation with rounded monthly payment, totals and schedule
    """
    principal = quantize_money(principal)
    rate_percent = to_decimal(rate_percent)
    if isinstance(start_date, datetime):
        start_date = start_date.date()

    if model == InterestModel.FLAT:
        lines = _flat_schedule(principal, rate_percent, term_months, start_date)
        monthly_payment = lines[0].scheduled_amount
    else:
        monthly_payment = quantize_money(annuity_payment(principal, rate_percent, term_months))
        lines = _amortizing_schedule(principal, rate_percent, term_months, start_date, monthly_payment)

    total_amount = sum((line.scheduled_amount for line in lines), ZERO)
    return LoanCalculation(
        monthly_payment=monthly_payment,
        total_amount=total_amount,
        total_interest=total_amount - principal,
        schedule=tuple(lines)
    )


def _amortizing_schedule(
    principal: Decimal,
    rate_percent: Decimal,
    term_months: int,
    start_date: date,
    monthly_payment: Decimal
) -> List[ScheduleLine]:
    r = monthly_rate(rate_percent)
    remaining = principal
    lines = []

    for number in range(1, term_months + 1):
        interest = quantize_money(remaining * r)
        if number == term_months:
            # Final installment pays off exactly what is left
            principal_part = remaining
        else:
            principal_part = min(monthly_payment - interest, remaining)
        remaining = max(ZERO, remaining - principal_part)

        lines.append(ScheduleLine(
            payment_number=number,
            scheduled_date=add_months(start_date, number),
            scheduled_amount=principal_part + interest,
            principal_amount=principal_part,
            interest_amount=interest,
            remaining_balance=remaining
        ))

    return lines


def _flat_schedule(
    principal: Decimal,
    rate_percent: Decimal,
    term_months: int,
    start_date: date
) -> List[ScheduleLine]:
    total_interest = quantize_money(principal * rate_percent / Decimal('100'))
    total_amount = principal + total_interest
    n = Decimal(term_months)

    installment = quantize_money(total_amount / n)
    interest_part = quantize_money(total_interest / n)
    principal_part = installment - interest_part

    remaining = principal
    interest_left = total_interest
    lines = []

    for number in range(1, term_months + 1):
        if number == term_months:
            line_principal = remaining
            line_interest = interest_left
        else:
            line_principal = principal_part
            line_interest = interest_part
        remaining -= line_principal
        interest_left -= line_interest

        lines.append(ScheduleLine(
            payment_number=number,
            scheduled_date=add_months(start_date, number),
            scheduled_amount=line_principal + line_interest,
            principal_amount=line_principal,
            interest_amount=line_interest,
            remaining_balance=remaining
        ))

    return lines


def is_payment_overdue(scheduled_date: date, as_of: date, grace_period_days: int = 5) -> bool:
    """True once ``as_of`` is past the scheduled date plus the grace period"""
    return as_of > scheduled_date + timedelta(days=grace_period_days)


def days_overdue(scheduled_date: date, as_of: date, grace_period_days: int = 5) -> int:
    """Whole days elapsed since the grace period ended, 0 if not overdue"""
    grace_end = scheduled_date + timedelta(days=grace_period_days)
    if as_of <= grace_end:
        return 0
    return (as_of - grace_end).days


def calculate_late_fee(
    overdue_amount: MoneyLike,
    days: int,
    daily_rate_percent: MoneyLike = Decimal('0.05')
) -> Decimal:
    """
    Late fee on an overdue amount: amount * (rate / 100) * days.

    Args:
        overdue_amount: Unpaid part of the installment
        days: Days overdue (see ``days_overdue``)
        daily_rate_percent: Percent of the overdue amount charged per day
    """
    if days <= 0:
        return ZERO
    amount = to_decimal(overdue_amount)
    if amount <= 0:
        return ZERO
    return quantize_money(amount * to_decimal(daily_rate_percent) / Decimal('100') * Decimal(days))
