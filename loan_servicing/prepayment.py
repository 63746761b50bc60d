"""
Prepayment Processor

Applies lump-sum principal reductions. The prepayment lands on the first
installment due after its date and is applied before that row's interest;
rows after the date are regenerated at the unchanged rate.
"""

from decimal import Decimal
from datetime import date
from typing import Optional, Tuple
import logging

from .currency import ZERO, round_money, to_decimal
from .exceptions import ValidationError
from .models import Loan, LoanStatus, Prepayment, PrepaymentStrategy, RepaymentSchedule
from .schedule import ScheduleGenerator

logger = logging.getLogger(__name__)


class PrepaymentProcessor:
    """Validates prepayments and regenerates the schedule around them"""

    def __init__(self, generator: ScheduleGenerator):
        self.generator = generator

    def outstanding_at(self, loan: Loan, schedule: RepaymentSchedule, on_date: date) -> Decimal:
        """Principal outstanding on a date, after tranches and earlier prepayments in the open period"""
        settled = [row for row in schedule.installments if row.due_date <= on_date]
        if settled:
            balance = settled[-1].closing_balance
            last_due = settled[-1].due_date
        else:
            balance = schedule.installments[0].opening_balance
            last_due = loan.issue_date

        for phase in loan.disbursement_phases:
            if phase.disbursement_date > loan.issue_date and last_due < phase.disbursement_date <= on_date:
                balance += phase.amount
        for prepayment in loan.prepayments:
            if last_due < prepayment.payment_date <= on_date:
                balance -= prepayment.amount
        return balance

    def validate(self, loan: Loan, schedule: RepaymentSchedule, amount, payment_date: date) -> Decimal:
        """Returns the validated amount"""
        if loan.status != LoanStatus.ACTIVE:
            raise ValidationError(f"Cannot prepay a {loan.status.value} loan")
        amount = to_decimal(amount, "prepayment amount")
        if amount <= 0:
            raise ValidationError("Prepayment amount must be positive")
        if amount != round_money(amount, self.generator.config.currency_precision):
            raise ValidationError(f"Prepayment amount {amount} has more precision than the currency allows")
        if not isinstance(payment_date, date):
            raise ValidationError("Prepayment date is required")
        if payment_date < loan.issue_date or payment_date >= schedule.last_due_date:
            raise ValidationError(
                f"Prepayment date {payment_date} is outside the active tenure "
                f"({loan.issue_date} to before {schedule.last_due_date})"
            )

        outstanding = self.outstanding_at(loan, schedule, payment_date)
        if amount > outstanding:
            raise ValidationError(
                f"Prepayment of {amount} exceeds outstanding principal {outstanding} on {payment_date}"
            )
        return amount

    def record(
        self,
        loan: Loan,
        schedule: RepaymentSchedule,
        amount,
        payment_date: date,
        description: str = "",
        strategy: Optional[PrepaymentStrategy] = None
    ) -> Tuple[Loan, RepaymentSchedule]:
        """
        Apply a prepayment and return the updated loan terms and schedule

        REDUCE_TENURE holds the EMI and shortens the schedule; REDUCE_EMI holds
        the remaining months and lowers the EMI. A prepayment of the whole
        outstanding balance closes the loan.
        """
        amount = self.validate(loan, schedule, amount, payment_date)
        strategy = strategy or loan.prepayment_strategy
        closes = (
            amount == self.outstanding_at(loan, schedule, payment_date)
            and all(p.disbursement_date <= payment_date for p in loan.disbursement_phases)
        )

        updated = loan.evolve(prepayment_strategy=strategy)
        updated.prepayments.append(Prepayment(amount=amount, payment_date=payment_date, description=description))

        new_schedule = self.generator.for_loan(
            updated,
            as_of=payment_date,
            previous=schedule,
            hold_emi=strategy == PrepaymentStrategy.REDUCE_TENURE
        )
        updated = updated.evolve(
            tenure_months=len(new_schedule),
            status=LoanStatus.CLOSED if closes else updated.status
        )

        saved = schedule.interest_after(payment_date) - new_schedule.interest_after(payment_date)
        logger.info(
            "Prepayment of %s on %s (%s): %d -> %d installments, interest saved %s",
            amount, payment_date, strategy.value, len(schedule), len(new_schedule),
            saved if saved > 0 else ZERO
        )
        return updated, new_schedule

    def apply(self, loan: Loan, schedule: RepaymentSchedule, amount, payment_date: date,
              description: str = "") -> RepaymentSchedule:
        """Regenerated schedule after a prepayment"""
        return self.record(loan, schedule, amount, payment_date, description)[1]
