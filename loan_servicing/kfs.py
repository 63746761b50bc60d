"""
Key Facts Statement

Builds the regulatory disclosure attached to every loan version and computes
the annual percentage rate from the borrower's cash flows.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, date, timezone
from typing import Dict, Iterable, Optional, Tuple

from .currency import ZERO, HUNDRED, round_rate, format_amount
from .models import (
    ChangeReason, KeyFactsStatement, Loan, MoratoriumType, RepaymentSchedule
)

MONTHS_PER_YEAR = Decimal('12')
DAYS_PER_MONTH = Decimal('365') / MONTHS_PER_YEAR
MAX_MONTHLY_RATE = Decimal('1')  # 100% a month
IRR_ITERATIONS = 80


def month_offset(start: date, on_date: date) -> int:
    """Whole months between two dates, rounded to the nearest month"""
    days = Decimal((on_date - start).days)
    return max(0, int((days / DAYS_PER_MONTH).to_integral_value(rounding=ROUND_HALF_UP)))


def _npv(flows: Dict[int, Decimal], monthly_rate: Decimal) -> Decimal:
    discount = Decimal('1') / (Decimal('1') + monthly_rate)
    factor = Decimal('1')
    total = ZERO
    for offset in range(0, max(flows) + 1):
        if offset in flows:
            total += flows[offset] * factor
        factor *= discount
    return total


def calculate_apr(cash_flows: Iterable[Tuple[int, Decimal]], rate_precision: Optional[int] = None) -> Decimal:
    """
    Annualized internal rate of return of a loan's cash flows

    Args:
        cash_flows: (month offset, amount) pairs from the borrower's side;
            disbursements positive, payments negative

    Returns:
        Monthly IRR x 12 as percent per annum; 0 when the borrower pays
        nothing beyond what was received
    """
    flows: Dict[int, Decimal] = {}
    for offset, amount in cash_flows:
        flows[offset] = flows.get(offset, ZERO) + amount
    if not flows or _npv(flows, ZERO) >= 0:
        return round_rate(ZERO, rate_precision)

    low = ZERO
    high = Decimal('0.01')
    while _npv(flows, high) < 0:
        low = high
        high *= 2
        if high > MAX_MONTHLY_RATE:
            return round_rate(MAX_MONTHLY_RATE * MONTHS_PER_YEAR * HUNDRED, rate_precision)

    for _ in range(IRR_ITERATIONS):
        mid = (low + high) / 2
        if _npv(flows, mid) < 0:
            low = mid
        else:
            high = mid

    return round_rate((low + high) / 2 * MONTHS_PER_YEAR * HUNDRED, rate_precision)


def _moratorium_summary(loan: Loan, precision: Optional[int] = None) -> Tuple[str, ...]:
    lines = []
    for period in sorted(loan.moratorium_periods, key=lambda p: p.start_month):
        line = f"Months {period.start_month}-{period.end_month}: {period.moratorium_type.value}"
        if period.moratorium_type == MoratoriumType.PARTIAL:
            line += f" ({format_amount(period.partial_payment, precision)})"
        lines.append(line)
    return tuple(lines)


def _disbursement_summary(loan: Loan, precision: Optional[int] = None) -> Tuple[str, ...]:
    return tuple(
        f"{phase.sequence}. {phase.disbursement_date.isoformat()} "
        f"{format_amount(phase.amount, precision)} {phase.description}".rstrip()
        for phase in sorted(loan.disbursement_phases, key=lambda p: p.sequence)
    )


def _disbursed_as_of(loan: Loan, as_of: date) -> Decimal:
    if not loan.disbursement_phases:
        return loan.principal
    cutoff = max(as_of, loan.issue_date)
    return sum(
        (p.amount for p in loan.disbursement_phases if p.disbursement_date <= cutoff), ZERO
    )


def build_kfs(
    loan: Loan,
    schedule: RepaymentSchedule,
    version_number: int,
    trigger_reason: ChangeReason,
    generated_at: Optional[datetime] = None,
    currency_precision: Optional[int] = None
) -> KeyFactsStatement:
    """Snapshot the disclosure fields for one loan version"""
    bpi = schedule.broken_period_interest
    upfront = loan.upfront_charges
    return KeyFactsStatement(
        loan_id=loan.id,
        version_number=version_number,
        generated_at=generated_at or datetime.now(timezone.utc),
        trigger_reason=trigger_reason,
        product_type=loan.product_type,
        sanctioned_amount=loan.principal,
        disbursed_amount=_disbursed_as_of(loan, schedule.as_of),
        tenure_months=loan.tenure_months,
        installment_count=len(schedule),
        rate_type=loan.rate_type,
        annual_rate=loan.annual_rate,
        benchmark_name=loan.benchmark_name,
        benchmark_rate=loan.benchmark_rate,
        spread=loan.spread,
        reset_periodicity_months=loan.reset_periodicity_months,
        floating_strategy=loan.floating_strategy,
        emi=schedule.emi,
        first_due_date=schedule.first_due_date,
        last_due_date=schedule.last_due_date,
        total_interest=schedule.total_interest,
        upfront_charges=upfront,
        recurring_charges=schedule.total_charges,
        broken_period_interest=bpi.amount if bpi else ZERO,
        total_payable=schedule.total_payable + upfront,
        apr=schedule.apr,
        moratorium_summary=_moratorium_summary(loan, currency_precision),
        disbursement_summary=_disbursement_summary(loan, currency_precision)
    )
