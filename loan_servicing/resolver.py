"""
Moratorium and Disbursement Resolver

Validates a loan's moratorium periods and disbursement phases and resolves
them into a month-by-month timeline the schedule generator walks: due date,
moratorium in force, tranches landing on the row, cumulative disbursed
principal and whether the row is a pre-EMI row.

Violations raise ValidationError; nothing is silently corrected.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import calendar
import logging

from .exceptions import ValidationError
from .models import DisbursementPhase, MoratoriumPeriod, MoratoriumType

logger = logging.getLogger(__name__)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _month_key(value: date) -> Tuple[int, int]:
    return value.year, value.month


@dataclass(frozen=True)
class ResolvedTimeline:
    """Month-indexed view of a loan's disbursements and moratoria"""
    issue_date: date
    start_date: date
    principal: Decimal
    initial_disbursed: Decimal  # outstanding at issue, opening balance of row 1
    phases: Tuple[DisbursementPhase, ...] = ()
    moratoria: Tuple[MoratoriumPeriod, ...] = ()

    def due_date(self, month_number: int) -> date:
        # Always offset from the start date so a 31st start keeps month-ends
        return add_months(self.start_date, month_number - 1)

    def previous_due_date(self, month_number: int) -> date:
        return add_months(self.start_date, month_number - 2)

    def interest_start(self, month_number: int) -> date:
        """Start of the accrual period for a row; never before issue"""
        return max(self.previous_due_date(month_number), self.issue_date)

    def moratorium(self, month_number: int) -> Optional[MoratoriumPeriod]:
        for period in self.moratoria:
            if period.covers(month_number):
                return period
        return None

    def tranches(self, month_number: int) -> List[DisbursementPhase]:
        """Tranches first counted on this row"""
        lower = self.issue_date if month_number == 1 else self.previous_due_date(month_number)
        upper = self.due_date(month_number)
        return [
            phase for phase in self.phases
            if phase.disbursement_date > self.issue_date and lower < phase.disbursement_date <= upper
        ]

    def disbursed_in(self, month_number: int) -> Decimal:
        return sum((phase.amount for phase in self.tranches(month_number)), Decimal('0'))

    def disbursed_as_of(self, on_date: date) -> Decimal:
        if not self.phases:
            return self.principal
        return sum(
            (phase.amount for phase in self.phases if phase.disbursement_date <= max(on_date, self.issue_date)),
            Decimal('0')
        )

    @property
    def final_tranche_date(self) -> Optional[date]:
        if not self.phases:
            return None
        return self.phases[-1].disbursement_date

    def fully_disbursed_by(self, month_number: int) -> bool:
        final = self.final_tranche_date
        return final is None or final <= self.due_date(month_number)

    def is_pre_emi(self, month_number: int) -> bool:
        """Interest-only until the row's due month is after the final tranche's month"""
        final = self.final_tranche_date
        if final is None or final <= self.issue_date:
            return False
        return _month_key(self.due_date(month_number)) <= _month_key(final)

    def is_amortizing(self, month_number: int) -> bool:
        return self.moratorium(month_number) is None and not self.is_pre_emi(month_number)

    def month_for_date(self, on_date: date) -> int:
        """First month whose due date is strictly after a date"""
        months = (on_date.year - self.start_date.year) * 12 + (on_date.month - self.start_date.month)
        month_number = max(1, months)
        while month_number > 1 and self.due_date(month_number - 1) > on_date:
            month_number -= 1
        while self.due_date(month_number) <= on_date:
            month_number += 1
        return month_number


class MoratoriumDisbursementResolver:
    """Validates moratoria and disbursement phases and builds the timeline"""

    def validate_moratoria(self, periods: Sequence[MoratoriumPeriod],
                           tenure_months: Optional[int] = None) -> None:
        ordered = sorted(periods, key=lambda p: p.start_month)
        for period in ordered:
            if period.start_month < 1:
                raise ValidationError(f"Moratorium start month must be at least 1, got {period.start_month}")
            if period.start_month > period.end_month:
                raise ValidationError(
                    f"Moratorium start month {period.start_month} is after end month {period.end_month}"
                )
            if period.moratorium_type == MoratoriumType.PARTIAL:
                if period.partial_payment is None or period.partial_payment <= 0:
                    raise ValidationError("Partial moratorium requires a positive partial payment")
            elif period.partial_payment is not None:
                raise ValidationError(
                    f"Partial payment only applies to PARTIAL moratorium, not {period.moratorium_type.value}"
                )
            if tenure_months is not None and period.end_month >= tenure_months:
                raise ValidationError(
                    f"Moratorium must end before the last installment (month {tenure_months}), "
                    f"got end month {period.end_month}"
                )
        for earlier, later in zip(ordered, ordered[1:]):
            if earlier.overlaps(later):
                raise ValidationError(
                    f"Moratorium periods overlap: months {earlier.start_month}-{earlier.end_month} "
                    f"and {later.start_month}-{later.end_month}"
                )

    def validate_phases(self, phases: Sequence[DisbursementPhase], principal: Decimal,
                        issue_date: date) -> None:
        if not phases:
            return
        ordered = sorted(phases, key=lambda p: p.sequence)
        for expected, phase in enumerate(ordered, start=1):
            if phase.sequence != expected:
                raise ValidationError(
                    f"Disbursement phase sequence must be contiguous from 1, expected {expected} "
                    f"but found {phase.sequence}"
                )
            if phase.amount <= 0:
                raise ValidationError(f"Disbursement phase {phase.sequence} amount must be positive")
            if phase.disbursement_date < issue_date:
                raise ValidationError(
                    f"Disbursement phase {phase.sequence} is dated before the issue date {issue_date}"
                )
        for earlier, later in zip(ordered, ordered[1:]):
            if later.disbursement_date < earlier.disbursement_date:
                raise ValidationError(
                    f"Disbursement phase {later.sequence} is dated before phase {earlier.sequence}"
                )
        total = sum((phase.amount for phase in ordered), Decimal('0'))
        if total != principal:
            raise ValidationError(
                f"Disbursement phases total {total} but principal is {principal}"
            )

    def resolve(
        self,
        principal: Decimal,
        issue_date: date,
        start_date: date,
        moratorium_periods: Sequence[MoratoriumPeriod] = (),
        disbursement_phases: Sequence[DisbursementPhase] = (),
        tenure_months: Optional[int] = None
    ) -> ResolvedTimeline:
        """
        Validate and resolve a loan's timeline

        Args:
            principal: Sanctioned principal
            issue_date: Loan issue (first disbursement) date
            start_date: Due date of installment 1
            moratorium_periods: Periods in absolute installment numbers
            disbursement_phases: Tranches; empty means fully disbursed at issue
            tenure_months: Planned last installment; None skips the end-of-tenure checks

        Returns:
            ResolvedTimeline
        """
        if start_date <= issue_date:
            raise ValidationError(f"EMI start date {start_date} must be after issue date {issue_date}")

        self.validate_moratoria(moratorium_periods, tenure_months)
        self.validate_phases(disbursement_phases, principal, issue_date)

        phases = tuple(sorted(disbursement_phases, key=lambda p: p.sequence))
        if phases:
            initial = sum(
                (p.amount for p in phases if p.disbursement_date <= issue_date), Decimal('0')
            )
        else:
            initial = principal

        timeline = ResolvedTimeline(
            issue_date=issue_date,
            start_date=start_date,
            principal=principal,
            initial_disbursed=initial,
            phases=phases,
            moratoria=tuple(sorted(moratorium_periods, key=lambda p: p.start_month))
        )

        if tenure_months is not None and timeline.is_pre_emi(tenure_months):
            raise ValidationError(
                f"Final tranche on {timeline.final_tranche_date} leaves no amortizing installment "
                f"within {tenure_months} months"
            )

        logger.debug(
            "Resolved timeline: %d phases, %d moratoria, initial disbursed %s",
            len(phases), len(timeline.moratoria), initial
        )
        return timeline
