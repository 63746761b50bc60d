"""
Schedule Generator

Produces amortization schedules for reducing-balance loans with phased
disbursement (pre-EMI), moratoria, broken-period interest, prepayments and
recurring charges. Regeneration keeps every row due on or before a cutoff
verbatim and continues from the last kept closing balance.

Amounts are rounded to the minor unit at the end of each installment; the
final installment absorbs the rounding drift so the loan closes at exactly
zero. Invariants are verified after every generation.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from .audit import AuditEventType, AuditTrail
from .config import LoanServicingConfig, get_config
from .currency import ZERO, HUNDRED, minor_unit, round_money, periodic_rate
from .exceptions import ComputationInvariantError, ValidationError
from .kfs import calculate_apr, month_offset
from .logging_config import log_action
from .models import (
    BrokenPeriodInterest, Charge, CompoundingBasis, DisbursementPhase, Installment,
    InstallmentStatus, Loan, MoratoriumPeriod, MoratoriumType, PaymentType, Prepayment,
    PrepaymentStrategy, RepaymentSchedule
)
from .resolver import MoratoriumDisbursementResolver, ResolvedTimeline, add_months

logger = logging.getLogger(__name__)

DAYS_IN_YEAR = Decimal('365')
MAX_SEEK_DOUBLINGS = 64


@dataclass
class _Run:
    """Terms in force for the rows being generated"""
    timeline: ResolvedTimeline
    annual_rate: Decimal
    compounding: CompoundingBasis
    tenure_months: int
    recurring_charge: Decimal
    prepayment_strategy: PrepaymentStrategy
    first_row_bpi: Decimal = ZERO
    prepayments: Dict[int, Decimal] = field(default_factory=dict)
    prepayment_dates: Dict[int, List[Tuple[date, Decimal]]] = field(default_factory=dict)
    loan_id: Optional[str] = None


def _days_before(start: date, on_date: date, days: int) -> int:
    """Days of a period that elapse before a date inside it"""
    return min(max((on_date - start).days, 0), days)


def installment_status(due_date: date, as_of: date) -> InstallmentStatus:
    if due_date < as_of:
        return InstallmentStatus.PAID
    if due_date == as_of:
        return InstallmentStatus.DUE
    return InstallmentStatus.PENDING


def annuity_payment(balance: Decimal, rate: Decimal, periods: int) -> Decimal:
    """Level payment that amortizes a balance over a number of periods"""
    if periods <= 0:
        raise ValidationError("Annuity requires at least one period")
    if rate == 0:
        return balance / Decimal(periods)
    growth = (Decimal('1') + rate) ** periods
    return balance * rate * growth / (growth - Decimal('1'))


class ScheduleGenerator:
    """
    Generates and regenerates repayment schedules

    The EMI is fixed when amortization begins and held until a re-solve point:
    a REDUCE_EMI prepayment, or an explicit recompute on regeneration. With a
    held EMI the tenure is solved instead.
    """

    def __init__(self, config: Optional[LoanServicingConfig] = None,
                 resolver: Optional[MoratoriumDisbursementResolver] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.config = config or get_config()
        self.resolver = resolver or MoratoriumDisbursementResolver()
        self.audit_trail = audit_trail

    @property
    def unit(self) -> Decimal:
        return minor_unit(self.config.currency_precision)

    def _round(self, value: Decimal) -> Decimal:
        return round_money(value, self.config.currency_precision)

    def generate(
        self,
        principal: Decimal,
        annual_rate: Decimal,
        tenure_months: int,
        compounding: CompoundingBasis,
        start_date: date,
        moratorium_periods: Sequence[MoratoriumPeriod] = (),
        disbursement_phases: Sequence[DisbursementPhase] = (),
        *,
        issue_date: Optional[date] = None,
        charges: Sequence[Charge] = (),
        prepayments: Sequence[Prepayment] = (),
        prepayment_strategy: PrepaymentStrategy = PrepaymentStrategy.REDUCE_TENURE,
        as_of: Optional[date] = None,
        loan_id: Optional[str] = None
    ) -> RepaymentSchedule:
        """
        Generate a full schedule from installment 1

        Args:
            principal: Sanctioned principal
            annual_rate: Percent per annum
            tenure_months: Planned number of installments
            compounding: DAILY (actual/365) or MONTHLY (annual/12)
            start_date: Due date of installment 1
            moratorium_periods: Moratoria in absolute installment numbers
            disbursement_phases: Tranches; empty means fully disbursed at issue
            issue_date: Defaults to one month before start_date
            charges: Recurring charges go on every row, others are upfront
            prepayments: Applied to the first row due after their date
            prepayment_strategy: What a prepayment holds fixed
            as_of: Snapshot date for row status and balance; defaults to issue_date
            loan_id: For log context only

        Returns:
            RepaymentSchedule
        """
        issue_date = issue_date or add_months(start_date, -1)
        self._validate_terms(principal, annual_rate, tenure_months)
        timeline = self.resolver.resolve(
            principal, issue_date, start_date, moratorium_periods, disbursement_phases, tenure_months
        )
        bpi = self.broken_period_interest(timeline, annual_rate)
        run = self._run(timeline, annual_rate, compounding, tenure_months, charges,
                        prepayments, prepayment_strategy, bpi, loan_id, first_month=1)
        rows, emis = self._walk(run, 1, timeline.initial_disbursed, None, tenure_months)
        return self._assemble(run, (), rows, emis, bpi, charges, as_of or issue_date, None)

    def regenerate(
        self,
        previous: RepaymentSchedule,
        cutoff: date,
        *,
        principal: Decimal,
        annual_rate: Decimal,
        tenure_months: int,
        compounding: CompoundingBasis,
        start_date: date,
        issue_date: date,
        moratorium_periods: Sequence[MoratoriumPeriod] = (),
        disbursement_phases: Sequence[DisbursementPhase] = (),
        charges: Sequence[Charge] = (),
        prepayments: Sequence[Prepayment] = (),
        prepayment_strategy: PrepaymentStrategy = PrepaymentStrategy.REDUCE_TENURE,
        hold_emi: bool = False,
        as_of: Optional[date] = None,
        loan_id: Optional[str] = None
    ) -> RepaymentSchedule:
        """
        Keep rows due on or before cutoff, regenerate the rest

        With hold_emi the previous EMI is kept and the tenure solved; otherwise
        the EMI is recomputed so the loan closes at installment tenure_months.
        """
        self._validate_terms(principal, annual_rate, tenure_months)
        kept = tuple(row for row in previous.installments if row.due_date <= cutoff)
        held = previous.emi if hold_emi and previous.emi > 0 else None

        timeline = self.resolver.resolve(
            principal, issue_date, start_date, moratorium_periods, disbursement_phases,
            None if held is not None else tenure_months
        )
        if kept and kept[-1].closing_balance == 0 and timeline.fully_disbursed_by(len(kept)):
            raise ValidationError("Loan is fully repaid; nothing left to regenerate")
        if held is None and tenure_months <= len(kept):
            raise ValidationError(
                f"Tenure of {tenure_months} months leaves no installments after {cutoff}"
            )

        if kept:
            bpi = previous.broken_period_interest
            opening = kept[-1].closing_balance
        else:
            bpi = self.broken_period_interest(timeline, annual_rate)
            opening = timeline.initial_disbursed

        first_month = len(kept) + 1
        run = self._run(timeline, annual_rate, compounding, tenure_months, charges,
                        prepayments, prepayment_strategy, bpi, loan_id, first_month)
        rows, emis = self._walk(run, first_month, opening, held, None if held is not None else tenure_months)
        return self._assemble(run, kept, rows, emis, bpi, charges, as_of or cutoff, held)

    def for_loan(self, loan: Loan, *, as_of: date, previous: Optional[RepaymentSchedule] = None,
                 hold_emi: bool = False) -> RepaymentSchedule:
        """Schedule for a loan's current terms; regenerates after as_of when a previous schedule exists"""
        terms = dict(
            principal=loan.principal,
            annual_rate=loan.annual_rate,
            tenure_months=loan.tenure_months,
            compounding=loan.compounding,
            start_date=loan.emi_start_date,
            moratorium_periods=loan.moratorium_periods,
            disbursement_phases=loan.disbursement_phases,
            issue_date=loan.issue_date,
            charges=loan.charges,
            prepayments=loan.prepayments,
            prepayment_strategy=loan.prepayment_strategy,
            as_of=as_of,
            loan_id=loan.id
        )
        if previous is None:
            return self.generate(**terms)
        return self.regenerate(previous, as_of, hold_emi=hold_emi, **terms)

    def broken_period_interest(self, timeline: ResolvedTimeline,
                               annual_rate: Decimal) -> Optional[BrokenPeriodInterest]:
        """Interest from issue date to the start of the first regular period, actual/365"""
        period_start = timeline.previous_due_date(1)
        if timeline.issue_date >= period_start:
            return None
        days = (period_start - timeline.issue_date).days
        amount = self._round(timeline.initial_disbursed * annual_rate / HUNDRED / DAYS_IN_YEAR * days)
        return BrokenPeriodInterest(
            start_date=timeline.issue_date,
            end_date=period_start,
            days=days,
            amount=amount,
            added_to_first_installment=days < self.config.bpi_first_emi_threshold_days
        )

    def _validate_terms(self, principal: Decimal, annual_rate: Decimal, tenure_months: int) -> None:
        if principal <= 0:
            raise ValidationError("Principal must be positive")
        if annual_rate < 0:
            raise ValidationError("Annual rate cannot be negative")
        if tenure_months < 1 or tenure_months > self.config.max_schedule_months:
            raise ValidationError(
                f"Tenure must be between 1 and {self.config.max_schedule_months} months"
            )

    def _run(self, timeline, annual_rate, compounding, tenure_months, charges, prepayments,
             prepayment_strategy, bpi, loan_id, first_month) -> _Run:
        by_month: Dict[int, Decimal] = {}
        dated: Dict[int, List[Tuple[date, Decimal]]] = {}
        for prepayment in prepayments:
            month_number = timeline.month_for_date(prepayment.payment_date)
            if month_number >= first_month:
                by_month[month_number] = by_month.get(month_number, ZERO) + prepayment.amount
                dated.setdefault(month_number, []).append((prepayment.payment_date, prepayment.amount))
        return _Run(
            timeline=timeline,
            annual_rate=annual_rate,
            compounding=compounding,
            tenure_months=tenure_months,
            recurring_charge=sum((c.amount for c in charges if c.recurring), ZERO),
            prepayment_strategy=prepayment_strategy,
            first_row_bpi=bpi.amount if bpi and bpi.added_to_first_installment else ZERO,
            prepayments=by_month,
            prepayment_dates=dated,
            loan_id=loan_id
        )

    def _period_interest(self, run: _Run, base: Decimal, month_number: int,
                         prepaid: Sequence[Tuple[date, Decimal]] = ()) -> Decimal:
        """
        Interest for a row on its closing principal base

        DAILY accrual weighs each amount by the days it was outstanding: a
        tranche landing inside the period accrues from its own date, a
        prepaid amount accrues until the payment date.
        """
        if run.compounding == CompoundingBasis.DAILY:
            timeline = run.timeline
            start = timeline.interest_start(month_number)
            days = (timeline.due_date(month_number) - start).days
            weighted = base * days
            for phase in timeline.tranches(month_number):
                weighted -= phase.amount * _days_before(start, phase.disbursement_date, days)
            for paid_on, amount in prepaid:
                weighted += amount * _days_before(start, paid_on, days)
            return self._round(weighted * run.annual_rate / HUNDRED / DAYS_IN_YEAR)
        return self._round(base * periodic_rate(run.annual_rate, 12))

    def _split(self, run: _Run, month_number: int, base: Decimal, emi: Optional[Decimal],
               absorb: bool, project: bool = False,
               prepaid: Sequence[Tuple[date, Decimal]] = ()) -> Tuple[PaymentType, Decimal, Decimal, Decimal]:
        """Returns payment type, principal, interest collected and interest capitalized"""
        interest = self._period_interest(run, base, month_number, prepaid)
        extra = run.first_row_bpi if month_number == 1 else ZERO
        timeline = run.timeline

        moratorium = timeline.moratorium(month_number)
        if moratorium is not None:
            kind = PaymentType.for_moratorium(moratorium.moratorium_type)
            accrued = interest + extra
            if moratorium.moratorium_type == MoratoriumType.FULL:
                return kind, ZERO, ZERO, accrued
            if moratorium.moratorium_type == MoratoriumType.INTEREST_ONLY:
                return kind, ZERO, accrued, ZERO
            amount = moratorium.partial_payment
            if amount <= accrued:
                return kind, ZERO, amount, accrued - amount
            surplus = amount - accrued
            return kind, surplus if project else min(surplus, base), accrued, ZERO

        if timeline.is_pre_emi(month_number):
            return PaymentType.PRE_EMI, ZERO, interest + extra, ZERO

        principal = emi - interest
        if not project and (absorb or principal >= base):
            principal = base
        return PaymentType.REGULAR, principal, interest + extra, ZERO

    def _project(self, run: _Run, month_number: int, opening: Decimal, prepayment: Decimal,
                 emi: Decimal, final_month: int) -> Decimal:
        """Balance left after final_month when every amortizing row pays emi"""
        balance = opening
        for current in range(month_number, final_month + 1):
            base = balance + run.timeline.disbursed_in(current)
            prepaid = ()
            if current == month_number:
                base -= prepayment
                prepaid = run.prepayment_dates.get(current, ()) if prepayment else ()
            _, principal, _, capitalized = self._split(
                run, current, base, emi, False, project=True, prepaid=prepaid
            )
            balance = base - principal + capitalized
        return balance

    def _solve_emi(self, run: _Run, month_number: int, opening: Decimal, prepayment: Decimal,
                   final_month: int) -> Decimal:
        timeline = run.timeline
        base = opening + timeline.disbursed_in(month_number) - prepayment
        if base <= 0:
            return ZERO

        months = range(month_number, final_month + 1)
        balance_changing = any(
            timeline.moratorium(m) is not None
            and timeline.moratorium(m).moratorium_type != MoratoriumType.INTEREST_ONLY
            for m in months
        )
        if run.compounding == CompoundingBasis.MONTHLY and not balance_changing:
            periods = sum(1 for m in months if timeline.is_amortizing(m))
            return self._round(annuity_payment(base, periodic_rate(run.annual_rate, 12), periods))

        # Goal-seek in minor units: smallest EMI whose projection closes at final_month
        unit = self.unit
        low = 0
        high = max(1, int(base / unit))
        doublings = 0
        while self._project(run, month_number, opening, prepayment, unit * high, final_month) > 0:
            low = high
            high *= 2
            doublings += 1
            if doublings > MAX_SEEK_DOUBLINGS:
                self._invariant_failed(run.loan_id, f"EMI goal-seek did not converge at month {month_number}")
        while high - low > 1:
            mid = (low + high) // 2
            if self._project(run, month_number, opening, prepayment, unit * mid, final_month) > 0:
                low = mid
            else:
                high = mid
        return unit * high

    def _walk(self, run: _Run, first_month: int, opening: Decimal, emi: Optional[Decimal],
              final_month: Optional[int]) -> Tuple[List[Installment], Dict[int, Optional[Decimal]]]:
        timeline = run.timeline
        limit = self.config.max_schedule_months
        # A held EMI solves the tenure, which may not exceed the longest loan tenure
        solved_limit = min(limit, self.config.max_tenure_months)
        rows: List[Installment] = []
        emis: Dict[int, Optional[Decimal]] = {}
        balance = opening
        month_number = first_month

        while True:
            if final_month is None and month_number > solved_limit:
                raise ValidationError(
                    f"EMI of {emi} does not repay the loan within {solved_limit} installments"
                )
            if month_number > limit:
                self._invariant_failed(run.loan_id, f"Schedule exceeded {limit} installments")

            prepayment = run.prepayments.get(month_number, ZERO)
            disbursed = timeline.disbursed_in(month_number)
            base = balance + disbursed - prepayment
            if base < 0:
                raise ValidationError(
                    f"Prepayment of {prepayment} exceeds outstanding principal {balance + disbursed}"
                )

            amortizing = timeline.is_amortizing(month_number)
            if amortizing:
                if prepayment > 0 and emi is not None:
                    if (run.prepayment_strategy == PrepaymentStrategy.REDUCE_EMI
                            and run.tenure_months > month_number):
                        emi, final_month = None, run.tenure_months
                    else:
                        final_month = None
                if emi is None:
                    target = final_month or run.tenure_months
                    if target < month_number:
                        raise ValidationError(
                            f"No installments left to amortize after month {month_number - 1}"
                        )
                    emi = self._solve_emi(run, month_number, balance, prepayment, target)
                    final_month = target
                    logger.debug("EMI set to %s from month %d", emi, month_number)

            absorb = amortizing and final_month == month_number
            kind, principal, interest, capitalized = self._split(
                run, month_number, base, emi, absorb,
                prepaid=run.prepayment_dates.get(month_number, ())
            )
            if kind == PaymentType.REGULAR and final_month is None and principal < base \
                    and emi <= interest - (run.first_row_bpi if month_number == 1 else ZERO):
                raise ValidationError(
                    f"EMI of {emi} does not cover interest of {interest} at {run.annual_rate}% "
                    f"in month {month_number}"
                )

            closing = base - principal + capitalized
            row = Installment(
                month_number=month_number,
                due_date=timeline.due_date(month_number),
                opening_balance=balance,
                emi_amount=principal + interest,
                principal_component=principal,
                interest_component=interest,
                closing_balance=closing,
                applicable_rate=run.annual_rate,
                payment_type=kind,
                disbursed=disbursed,
                prepayment=prepayment,
                capitalized_interest=capitalized,
                charges=run.recurring_charge
            )
            rows.append(row)
            emis[month_number] = emi if amortizing else None

            if absorb:
                self._check_residual(run, row, emi, len(rows))

            balance = closing
            if balance == 0 and timeline.fully_disbursed_by(month_number):
                break
            if final_month is not None and month_number >= final_month:
                self._invariant_failed(
                    run.loan_id, f"Balance {balance} remains after final installment {month_number}"
                )
            month_number += 1

        return rows, emis

    def _check_residual(self, run: _Run, row: Installment, emi: Decimal, row_count: int) -> None:
        extra = run.first_row_bpi if row.month_number == 1 else ZERO
        residual = abs(row.emi_amount - extra - emi)
        tolerance = max(
            emi * Decimal(self.config.residual_tolerance_pct) / HUNDRED,
            self.unit * row_count
        )
        if residual > tolerance:
            self._invariant_failed(
                run.loan_id, f"Final installment residual {residual} exceeds tolerance {tolerance}"
            )

    def _invariant_failed(self, loan_id: Optional[str], message: str) -> None:
        log_action(logger, "error", message, loan_id=loan_id, action="verify_schedule")
        if loan_id and self.audit_trail is not None and self.config.enable_audit_logging:
            self.audit_trail.log_event(
                AuditEventType.COMPUTATION_INVARIANT_VIOLATED, "loan", loan_id, {'message': message}
            )
        raise ComputationInvariantError(message)

    def verify(self, installments: Sequence[Installment], timeline: ResolvedTimeline,
               run: Optional[_Run] = None, loan_id: Optional[str] = None) -> None:
        """
        Verify schedule invariants

        Raises:
            ComputationInvariantError: On any broken balance chain, non-zero final
                balance, or principal not conserved
        """
        if loan_id is None and run is not None:
            loan_id = run.loan_id
        if not installments:
            self._invariant_failed(loan_id, "Schedule has no installments")

        if installments[0].opening_balance != timeline.initial_disbursed:
            self._invariant_failed(
                loan_id, f"Opening balance {installments[0].opening_balance} does not match "
                f"amount disbursed at issue {timeline.initial_disbursed}"
            )

        previous = None
        for index, row in enumerate(installments, start=1):
            if row.month_number != index:
                self._invariant_failed(loan_id, f"Installment {row.month_number} out of sequence")
            if previous is not None:
                if row.opening_balance != previous.closing_balance:
                    self._invariant_failed(loan_id, f"Balance chain broken at month {row.month_number}")
                if row.due_date <= previous.due_date:
                    self._invariant_failed(loan_id, f"Due dates not increasing at month {row.month_number}")
            expected = (row.opening_balance + row.disbursed - row.prepayment
                        - row.principal_component + row.capitalized_interest)
            if row.closing_balance != expected:
                self._invariant_failed(loan_id, f"Closing balance mismatch at month {row.month_number}")
            if row.emi_amount != row.principal_component + row.interest_component:
                self._invariant_failed(loan_id, f"EMI split mismatch at month {row.month_number}")
            if row.closing_balance < 0:
                self._invariant_failed(loan_id, f"Negative balance at month {row.month_number}")
            previous = row

        if installments[-1].closing_balance != 0:
            self._invariant_failed(
                loan_id, f"Final closing balance is {installments[-1].closing_balance}, not zero"
            )

        disbursed = installments[0].opening_balance + sum((r.disbursed for r in installments), ZERO)
        if disbursed != timeline.principal:
            self._invariant_failed(loan_id, f"Disbursed {disbursed} does not match principal {timeline.principal}")

        repaid = sum((r.principal_component + r.prepayment for r in installments), ZERO)
        capitalized = sum((r.capitalized_interest for r in installments), ZERO)
        if abs(repaid - (disbursed + capitalized)) > self.unit:
            self._invariant_failed(
                loan_id, f"Principal not conserved: repaid {repaid}, owed {disbursed + capitalized}"
            )

    def _assemble(self, run: _Run, kept: Sequence[Installment], rows: List[Installment],
                  emis: Dict[int, Optional[Decimal]], bpi: Optional[BrokenPeriodInterest],
                  charges: Sequence[Charge], as_of: date,
                  held_emi: Optional[Decimal]) -> RepaymentSchedule:
        installments = tuple(
            replace(row, status=installment_status(row.due_date, as_of))
            for row in list(kept) + rows
        )
        timeline = run.timeline
        self.verify(installments, timeline, run)

        separate_bpi = bpi.amount if bpi and not bpi.added_to_first_installment else ZERO
        interest = sum((r.interest_component + r.capitalized_interest for r in installments), ZERO)
        recurring = sum((r.charges for r in installments), ZERO)
        paid = sum((r.emi_amount + r.prepayment for r in installments), ZERO)
        principal = installments[0].opening_balance + sum((r.disbursed for r in installments), ZERO)

        pending = [r for r in installments if r.due_date > as_of]
        emi = next(
            (emis[r.month_number] for r in pending if emis.get(r.month_number) is not None), None
        )
        if emi is None:
            solved = [value for value in emis.values() if value is not None]
            emi = solved[-1] if solved else (held_emi or ZERO)

        settled = [r for r in installments if r.due_date <= as_of]
        if settled:
            balance = settled[-1].closing_balance
        else:
            balance = timeline.disbursed_as_of(as_of)

        upfront = sum((c.amount for c in charges if not c.recurring), ZERO)
        apr = calculate_apr(
            self._cash_flows(timeline, installments, upfront, separate_bpi), self.config.rate_precision
        )

        return RepaymentSchedule(
            installments=installments,
            emi=emi,
            total_interest=interest + separate_bpi,
            total_principal=principal,
            total_charges=recurring,
            total_payable=paid + recurring + separate_bpi,
            apr=apr,
            current_rate=run.annual_rate,
            months_remaining=len(pending),
            principal_balance=balance,
            as_of=as_of,
            broken_period_interest=bpi
        )

    def _cash_flows(self, timeline: ResolvedTimeline, installments: Sequence[Installment],
                    upfront: Decimal, separate_bpi: Decimal) -> List[Tuple[int, Decimal]]:
        """Borrower-side flows: disbursements in, installments and fees out"""
        flows = [(0, timeline.initial_disbursed - upfront - separate_bpi)]
        for phase in timeline.phases:
            if phase.disbursement_date > timeline.issue_date:
                flows.append((month_offset(timeline.issue_date, phase.disbursement_date), phase.amount))
        first = max(1, month_offset(timeline.issue_date, timeline.start_date))
        for row in installments:
            flows.append((first + row.month_number - 1, -(row.emi_amount + row.charges + row.prepayment)))
        return flows
