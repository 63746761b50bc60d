"""
Loan Service

External interface of the engine. Every mutation produces exactly one new
loan version through the VersionManager; reads return stored versions.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import replace
from typing import Any, Dict, List, Optional
import uuid
import logging

from .audit import AuditEvent, AuditEventType, AuditTrail
from .benchmarks import BenchmarkStore, normalize_benchmark_name
from .config import LoanServicingConfig, get_config
from .currency import round_money, round_rate, to_decimal
from .exceptions import NotFoundError, ValidationError
from .logging_config import log_action
from .models import (
    Charge, ChangeReason, CompoundingBasis, DisbursementPhase, FloatingStrategy,
    KeyFactsStatement, Loan, LoanApplication, LoanStatus, LoanVersion, MoratoriumPeriod,
    PrepaymentStrategy, ProductType, RateType, RepaymentSchedule
)
from .prepayment import PrepaymentProcessor
from .rate_reset import BenchmarkUpdateResult, FloatingRateResetEngine, ResetResult
from .schedule import ScheduleGenerator
from .storage import StorageInterface, create_storage
from .versions import VersionManager

logger = logging.getLogger(__name__)

# Fields edit_loan accepts, with the reason used when the caller gives none
EDITABLE_FIELDS = {
    'annual_rate': ChangeReason.RATE_MODIFICATION,
    'spread': ChangeReason.SPREAD_MODIFICATION,
    'benchmark_name': ChangeReason.BENCHMARK_CHANGE,
    'tenure_months': ChangeReason.TERM_MODIFICATION,
    'compounding': ChangeReason.TERM_MODIFICATION,
    'floating_strategy': ChangeReason.TERM_MODIFICATION,
    'reset_periodicity_months': ChangeReason.TERM_MODIFICATION,
    'prepayment_strategy': ChangeReason.CUSTOMER_REQUEST,
    'product_type': ChangeReason.TERM_MODIFICATION,
    'principal': ChangeReason.TERM_MODIFICATION,
    'issue_date': ChangeReason.TERM_MODIFICATION,
    'emi_start_date': ChangeReason.TERM_MODIFICATION,
}

# Changes that only re-derive the EMI when repayment has not started
PRE_REPAYMENT_FIELDS = ('principal', 'issue_date', 'emi_start_date')
RATE_FIELDS = ('annual_rate', 'spread', 'benchmark_name')
RECOMPUTE_FIELDS = ('tenure_months', 'compounding') + PRE_REPAYMENT_FIELDS

PREPAYMENT_REASONS = (ChangeReason.CUSTOMER_REQUEST, ChangeReason.MANUAL_CORRECTION)


def _enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}")


def _default_reason(changed_terms: Dict[str, Any]) -> ChangeReason:
    if len(changed_terms) == 1:
        return EDITABLE_FIELDS.get(next(iter(changed_terms)), ChangeReason.TERM_MODIFICATION)
    if set(changed_terms) <= set(RATE_FIELDS):
        return ChangeReason.RATE_MODIFICATION
    return ChangeReason.TERM_MODIFICATION


def _money(value, field_name: str, precision: Optional[int] = None) -> Decimal:
    amount = to_decimal(value, field_name)
    if amount <= 0:
        raise ValidationError(f"{field_name} must be positive")
    if amount != round_money(amount, precision):
        raise ValidationError(f"{field_name} {amount} has more precision than the currency allows")
    return amount


def _tenure(value, limit: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Tenure must be a whole number of months")
    if value < 1 or value > limit:
        raise ValidationError(f"Tenure must be between 1 and {limit} months")
    return value


def _date(value, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"Invalid {field_name}: {value}")
    raise ValidationError(f"{field_name} is required")


class LoanService:
    """
    Loan servicing facade

    Example:
        >>> service = LoanService(InMemoryStorage())
        >>> loan = service.create_loan(application)
        >>> service.record_prepayment(loan.id, Decimal('500000'), date(2029, 1, 10))
    """

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LoanServicingConfig] = None,
                 benchmarks: Optional[BenchmarkStore] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = audit_trail or AuditTrail(self.storage)
        self.benchmarks = benchmarks or BenchmarkStore(self.storage, config=self.config)
        self.generator = ScheduleGenerator(self.config, audit_trail=self.audit_trail)
        self.versions = VersionManager(self.storage, self.audit_trail, self.config)
        self.prepayments = PrepaymentProcessor(self.generator)
        self.resets = FloatingRateResetEngine(
            self.versions, self.benchmarks, self.generator, self.audit_trail, self.config
        )

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: Dict[str, Any], user_id: Optional[str] = None) -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(event_type, entity_type, entity_id, metadata, user_id)

    def _rate(self, value: Decimal) -> Decimal:
        return round_rate(value, self.config.rate_precision)

    def _effective(self, effective_from) -> date:
        return _date(effective_from, "effective date") if effective_from is not None else date.today()

    def _active(self, loan: Loan) -> None:
        if not loan.is_active:
            raise ValidationError(f"Loan {loan.id} is {loan.status.value.lower()}")

    # ------------------------------------------------------------------
    # Creation

    def create_loan(self, application: LoanApplication, user_id: Optional[str] = None) -> Loan:
        """
        Create a loan and its version 1

        Floating loans take their rate from the benchmark in force on the
        issue date plus the spread.
        """
        if not application.customer_id:
            raise ValidationError("Customer ID is required")
        product_type = _enum(ProductType, application.product_type, "product type")
        rate_type = _enum(RateType, application.rate_type, "rate type")
        compounding = _enum(CompoundingBasis, application.compounding, "compounding")
        principal = _money(application.principal, "principal", self.config.currency_precision)
        tenure = _tenure(application.tenure_months, self.config.max_tenure_months)
        issue_date = _date(application.issue_date, "issue date")
        start_date = _date(application.emi_start_date, "EMI start date")

        strategy = _enum(
            PrepaymentStrategy,
            application.prepayment_strategy or self.config.default_prepayment_strategy,
            "prepayment strategy"
        )

        floating: Dict[str, Any] = {}
        if rate_type == RateType.FLOATING:
            if not application.benchmark_name:
                raise ValidationError("Floating loans require a benchmark")
            name = normalize_benchmark_name(application.benchmark_name)
            spread = self._rate(to_decimal(application.spread or 0, "spread"))
            entry = self.benchmarks.current_rate(name, issue_date)
            annual_rate = self._rate(entry.rate + spread)
            if application.annual_rate is not None and to_decimal(application.annual_rate, "annual rate") != annual_rate:
                raise ValidationError(
                    f"Annual rate {application.annual_rate} does not match {name} {entry.rate}% plus spread {spread}%"
                )
            periodicity = application.reset_periodicity_months
            if periodicity is not None and (isinstance(periodicity, bool) or not isinstance(periodicity, int)
                                            or periodicity < 1):
                raise ValidationError("Reset periodicity must be a positive number of months")
            floating = dict(
                benchmark_name=name,
                spread=spread,
                floating_strategy=_enum(FloatingStrategy, application.floating_strategy or "EMI_CONSTANT",
                                        "floating strategy"),
                reset_periodicity_months=periodicity,
                benchmark_rate=entry.rate,
                benchmark_effective_date=entry.effective_date
            )
        else:
            if application.annual_rate is None:
                raise ValidationError("Fixed-rate loans require an annual rate")
            if application.benchmark_name or application.spread is not None:
                raise ValidationError("Fixed-rate loans cannot carry a benchmark or spread")
            annual_rate = self._rate(to_decimal(application.annual_rate, "annual rate"))
        if annual_rate < 0:
            raise ValidationError("Annual rate cannot be negative")

        for charge in application.charges:
            self._validate_charge(charge)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=application.customer_id,
            product_type=product_type,
            principal=principal,
            tenure_months=tenure,
            issue_date=issue_date,
            emi_start_date=start_date,
            rate_type=rate_type,
            annual_rate=annual_rate,
            compounding=compounding,
            prepayment_strategy=strategy,
            disbursement_phases=list(application.disbursement_phases),
            charges=list(application.charges),
            moratorium_periods=list(application.moratorium_periods),
            **floating
        )

        schedule = self.generator.for_loan(loan, as_of=issue_date)
        self.versions.create_initial(loan, schedule, application.description, user_id)
        return self.versions.load_loan(loan.id)

    # ------------------------------------------------------------------
    # Mutations

    def _coerce_edit(self, loan: Loan, changed_terms: Dict[str, Any], effective_from: date) -> Dict[str, Any]:
        unknown = sorted(set(changed_terms) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        for name, value in changed_terms.items():
            if name == 'annual_rate':
                if loan.is_floating:
                    raise ValidationError("Floating loan rate follows its benchmark; edit the spread instead")
                values[name] = self._rate(to_decimal(value, "annual rate"))
                if values[name] < 0:
                    raise ValidationError("Annual rate cannot be negative")
            elif name in ('spread', 'benchmark_name', 'floating_strategy', 'reset_periodicity_months'):
                if not loan.is_floating:
                    raise ValidationError(f"{name} only applies to floating-rate loans")
                if name == 'spread':
                    values[name] = self._rate(to_decimal(value, "spread"))
                elif name == 'benchmark_name':
                    values[name] = normalize_benchmark_name(value)
                elif name == 'floating_strategy':
                    values[name] = _enum(FloatingStrategy, value, "floating strategy")
                else:
                    if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
                        raise ValidationError("Reset periodicity must be a positive number of months")
                    values[name] = value
            elif name == 'tenure_months':
                values[name] = _tenure(value, self.config.max_tenure_months)
            elif name == 'compounding':
                values[name] = _enum(CompoundingBasis, value, "compounding")
            elif name == 'prepayment_strategy':
                values[name] = _enum(PrepaymentStrategy, value, "prepayment strategy")
            elif name == 'product_type':
                values[name] = _enum(ProductType, value, "product type")
            elif name == 'principal':
                if loan.disbursement_phases:
                    raise ValidationError("Principal of a phased loan follows its disbursement phases")
                values[name] = _money(value, "principal", self.config.currency_precision)
            else:
                values[name] = _date(value, name)

        if loan.is_floating and ('spread' in values or 'benchmark_name' in values):
            name = values.get('benchmark_name', loan.benchmark_name)
            spread = values.get('spread', loan.spread)
            if 'benchmark_name' in values and name != loan.benchmark_name:
                entry = self.benchmarks.current_rate(name, effective_from)
                values['benchmark_rate'] = entry.rate
                values['benchmark_effective_date'] = entry.effective_date
            values['annual_rate'] = self._rate(values.get('benchmark_rate', loan.benchmark_rate) + spread)
            if values['annual_rate'] < 0:
                raise ValidationError("Benchmark plus spread cannot be negative")
        return values

    def edit_loan(
        self,
        loan_id: str,
        changed_terms: Dict[str, Any],
        change_reason=None,
        change_description: str = "",
        effective_from=None,
        expected_version: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> LoanVersion:
        """
        Change loan terms from effective_from onwards

        Rows due on or before effective_from are kept; the rest are regenerated.
        An edit that changes nothing returns the current version.
        """
        if not changed_terms:
            raise ValidationError("No terms to change")
        effective = self._effective(effective_from)
        if change_reason is None:
            change_reason = _default_reason(changed_terms)

        def apply_change(loan: Loan, current: LoanVersion):
            self._active(loan)
            values = self._coerce_edit(loan, changed_terms, effective)
            updated = loan.evolve(**values)
            if updated.terms_snapshot() == loan.terms_snapshot():
                return None

            changed = {k for k in values if getattr(loan, k) != values[k]}
            previous = current.schedule
            if changed & set(PRE_REPAYMENT_FIELDS):
                if any(row.due_date <= effective for row in previous.installments):
                    raise ValidationError(
                        f"{', '.join(sorted(changed & set(PRE_REPAYMENT_FIELDS)))} cannot change "
                        f"after repayment has started"
                    )
                previous = None

            if changed & set(RECOMPUTE_FIELDS):
                hold = False
            elif changed & set(RATE_FIELDS):
                hold = loan.is_floating and updated.floating_strategy != FloatingStrategy.TENURE_CONSTANT
            else:
                hold = True

            as_of = effective if previous is not None else max(effective, updated.issue_date)
            schedule = self.generator.for_loan(updated, as_of=as_of, previous=previous, hold_emi=hold)
            return updated.evolve(tenure_months=len(schedule)), schedule

        return self.versions.append_version(
            loan_id, change_reason, change_description or f"Changed {', '.join(sorted(changed_terms))}",
            effective, apply_change, expected_version, user_id
        )

    def _validate_charge(self, charge: Charge) -> None:
        if not charge.charge_type or not charge.payee:
            raise ValidationError("Charge type and payee are required")
        _money(charge.amount, "charge amount", self.config.currency_precision)

    def add_charge(self, loan_id: str, charge: Charge, effective_from=None, change_reason=None,
                   description: str = "", expected_version: Optional[int] = None,
                   user_id: Optional[str] = None) -> LoanVersion:
        """Attach a charge; recurring charges apply to installments after effective_from"""
        self._validate_charge(charge)
        effective = self._effective(effective_from)

        def apply_change(loan: Loan, current: LoanVersion):
            self._active(loan)
            updated = loan.evolve()
            updated.charges.append(charge)
            schedule = self.generator.for_loan(updated, as_of=effective, previous=current.schedule, hold_emi=True)
            return updated.evolve(tenure_months=len(schedule)), schedule

        version = self.versions.append_version(
            loan_id, change_reason or ChangeReason.TERM_MODIFICATION,
            description or f"Added {charge.charge_type} charge of {charge.amount}",
            effective, apply_change, expected_version, user_id
        )
        self._audit(AuditEventType.CHARGE_ADDED, "loan", loan_id, {
            'version': version.version_number, **charge.to_dict()
        }, user_id)
        return version

    def _phased(self, loan: Loan) -> Loan:
        """Loan with its principal expressed as phases; a loan without phases gets phase 1 at issue"""
        updated = loan.evolve()
        if not updated.disbursement_phases:
            updated.disbursement_phases.append(DisbursementPhase(
                sequence=1,
                disbursement_date=loan.issue_date,
                amount=loan.principal,
                description="Initial disbursement"
            ))
        return updated

    def add_disbursement_phase(self, loan_id: str, phase: DisbursementPhase, effective_from=None,
                               change_reason=None, description: str = "",
                               expected_version: Optional[int] = None,
                               user_id: Optional[str] = None) -> LoanVersion:
        """Add a pending tranche; the principal grows by its amount"""
        effective = self._effective(effective_from)
        amount = _money(phase.amount, "disbursement amount", self.config.currency_precision)

        def apply_change(loan: Loan, current: LoanVersion):
            self._active(loan)
            if phase.disbursement_date <= effective:
                raise ValidationError(
                    f"New disbursement phase must be dated after {effective}, got {phase.disbursement_date}"
                )
            updated = self._phased(loan)
            expected = len(updated.disbursement_phases) + 1
            if phase.sequence != expected:
                raise ValidationError(f"Next disbursement phase sequence is {expected}, got {phase.sequence}")
            updated.disbursement_phases.append(phase)
            updated = updated.evolve(principal=loan.principal + amount)
            schedule = self.generator.for_loan(updated, as_of=effective, previous=current.schedule)
            return updated.evolve(tenure_months=len(schedule)), schedule

        version = self.versions.append_version(
            loan_id, change_reason or ChangeReason.TERM_MODIFICATION,
            description or f"Added disbursement phase {phase.sequence} of {amount}",
            effective, apply_change, expected_version, user_id
        )
        self._audit(AuditEventType.DISBURSEMENT_PHASE_ADDED, "loan", loan_id, {
            'version': version.version_number, **phase.to_dict()
        }, user_id)
        return version

    def update_disbursement_phase(self, loan_id: str, sequence: int, amount=None,
                                  disbursement_date: Optional[date] = None,
                                  phase_description: Optional[str] = None, effective_from=None,
                                  change_reason=None, description: str = "",
                                  expected_version: Optional[int] = None,
                                  user_id: Optional[str] = None) -> LoanVersion:
        """Edit a tranche that has not been disbursed yet"""
        effective = self._effective(effective_from)
        new_amount = None
        if amount is not None:
            new_amount = _money(amount, "disbursement amount", self.config.currency_precision)
        new_date = _date(disbursement_date, "disbursement date") if disbursement_date is not None else None
        replaced: List[DisbursementPhase] = []

        def apply_change(loan: Loan, current: LoanVersion):
            self._active(loan)
            existing = next((p for p in loan.disbursement_phases if p.sequence == sequence), None)
            if existing is None:
                raise NotFoundError(f"Disbursement phase {sequence} not found on loan {loan_id}")
            if existing.is_disbursed(effective):
                raise ValidationError(f"Disbursement phase {sequence} was disbursed on {existing.disbursement_date}")
            replacement = DisbursementPhase(
                sequence=sequence,
                disbursement_date=new_date or existing.disbursement_date,
                amount=new_amount if new_amount is not None else existing.amount,
                description=phase_description if phase_description is not None else existing.description
            )
            if replacement.is_disbursed(effective):
                raise ValidationError(f"Disbursement phase must stay dated after {effective}")
            if replacement == existing:
                return None
            replaced.append(existing)
            phases = [replacement if p.sequence == sequence else p for p in loan.disbursement_phases]
            updated = loan.evolve(
                disbursement_phases=phases,
                principal=loan.principal - existing.amount + replacement.amount
            )
            schedule = self.generator.for_loan(updated, as_of=effective, previous=current.schedule)
            return updated.evolve(tenure_months=len(schedule)), schedule

        version = self.versions.append_version(
            loan_id, change_reason or ChangeReason.TERM_MODIFICATION,
            description or f"Updated disbursement phase {sequence}",
            effective, apply_change, expected_version, user_id
        )
        if replaced:
            self._audit(AuditEventType.DISBURSEMENT_PHASE_UPDATED, "loan", loan_id, {
                'version': version.version_number, 'sequence': sequence
            }, user_id)
        return version

    def remove_disbursement_phase(self, loan_id: str, sequence: int, effective_from=None,
                                  change_reason=None, description: str = "",
                                  expected_version: Optional[int] = None,
                                  user_id: Optional[str] = None) -> LoanVersion:
        """
        Cancel a tranche that has not been disbursed yet

        The principal shrinks by the tranche amount and later phases are
        renumbered so the sequence stays contiguous.
        """
        effective = self._effective(effective_from)
        removed: List[DisbursementPhase] = []

        def apply_change(loan: Loan, current: LoanVersion):
            self._active(loan)
            existing = next((p for p in loan.disbursement_phases if p.sequence == sequence), None)
            if existing is None:
                raise NotFoundError(f"Disbursement phase {sequence} not found on loan {loan_id}")
            if existing.is_disbursed(effective):
                raise ValidationError(f"Disbursement phase {sequence} was disbursed on {existing.disbursement_date}")
            removed.append(existing)
            phases = [
                replace(p, sequence=p.sequence - 1) if p.sequence > sequence else p
                for p in loan.disbursement_phases if p.sequence != sequence
            ]
            updated = loan.evolve(disbursement_phases=phases, principal=loan.principal - existing.amount)
            schedule = self.generator.for_loan(updated, as_of=effective, previous=current.schedule)
            return updated.evolve(tenure_months=len(schedule)), schedule

        version = self.versions.append_version(
            loan_id, change_reason or ChangeReason.TERM_MODIFICATION,
            description or f"Removed disbursement phase {sequence}",
            effective, apply_change, expected_version, user_id
        )
        self._audit(AuditEventType.DISBURSEMENT_PHASE_REMOVED, "loan", loan_id, {
            'version': version.version_number, **removed[0].to_dict()
        }, user_id)
        return version

    def add_moratorium_period(self, loan_id: str, period: MoratoriumPeriod, effective_from=None,
                              change_reason=None, description: str = "",
                              expected_version: Optional[int] = None,
                              user_id: Optional[str] = None) -> LoanVersion:
        """Add a moratorium over future installments; the tenure is held and the EMI recomputed"""
        effective = self._effective(effective_from)

        def apply_change(loan: Loan, current: LoanVersion):
            self._active(loan)
            settled = sum(1 for row in current.schedule.installments if row.due_date <= effective)
            if period.start_month <= settled:
                raise ValidationError(
                    f"Moratorium must start after installment {settled}, the last one due by {effective}"
                )
            updated = loan.evolve()
            updated.moratorium_periods.append(period)
            schedule = self.generator.for_loan(updated, as_of=effective, previous=current.schedule)
            return updated.evolve(tenure_months=len(schedule)), schedule

        version = self.versions.append_version(
            loan_id, change_reason or ChangeReason.CUSTOMER_REQUEST,
            description or (f"{period.moratorium_type.value} moratorium for months "
                            f"{period.start_month}-{period.end_month}"),
            effective, apply_change, expected_version, user_id
        )
        self._audit(AuditEventType.MORATORIUM_ADDED, "loan", loan_id, {
            'version': version.version_number, **period.to_dict()
        }, user_id)
        return version

    def record_prepayment(self, loan_id: str, amount, payment_date: date, description: str = "",
                          change_reason=None, strategy: Optional[PrepaymentStrategy] = None,
                          expected_version: Optional[int] = None,
                          user_id: Optional[str] = None) -> LoanVersion:
        """
        Record a lump-sum prepayment effective on payment_date

        Raises:
            ValidationError: Amount not positive, above the outstanding principal,
                or dated outside the active tenure
        """
        reason = ChangeReason.parse(change_reason) if change_reason is not None else ChangeReason.CUSTOMER_REQUEST
        if reason not in PREPAYMENT_REASONS:
            raise ValidationError(f"Prepayment cannot be recorded as {reason.value}")
        payment_date = _date(payment_date, "prepayment date")
        if strategy is not None:
            strategy = _enum(PrepaymentStrategy, strategy, "prepayment strategy")

        def apply_change(loan: Loan, current: LoanVersion):
            self._active(loan)
            return self.prepayments.record(loan, current.schedule, amount, payment_date, description, strategy)

        version = self.versions.append_version(
            loan_id, reason, description or f"Prepayment of {amount} on {payment_date}",
            payment_date, apply_change, expected_version, user_id
        )
        self._audit(AuditEventType.PREPAYMENT_RECORDED, "loan", loan_id, {
            'version': version.version_number,
            'amount': to_decimal(amount, "prepayment amount"),
            'payment_date': payment_date,
            'months_remaining': version.schedule.months_remaining,
            'emi': version.schedule.emi
        }, user_id)
        return version

    def change_status(self, loan_id: str, status, change_reason=None, description: str = "",
                      effective_from=None, expected_version: Optional[int] = None,
                      user_id: Optional[str] = None) -> LoanVersion:
        """
        Move a loan between ACTIVE, SUSPENDED and CLOSED

        A suspended loan takes no term changes, prepayments or rate resets
        until it is reactivated. A closed loan cannot be reopened. The
        schedule carries over unchanged into the new version.
        """
        new_status = _enum(LoanStatus, status, "loan status")
        effective = self._effective(effective_from)
        previous: List[LoanStatus] = []

        def apply_change(loan: Loan, current: LoanVersion):
            if loan.status == new_status:
                return None
            if loan.status == LoanStatus.CLOSED:
                raise ValidationError(f"Loan {loan.id} is closed and cannot become {new_status.value}")
            previous.append(loan.status)
            return loan.evolve(status=new_status), current.schedule

        version = self.versions.append_version(
            loan_id, change_reason or ChangeReason.MANUAL_CORRECTION,
            description or f"Status changed to {new_status.value}",
            effective, apply_change, expected_version, user_id
        )
        if previous:
            self._audit(AuditEventType.LOAN_STATUS_CHANGED, "loan", loan_id, {
                'version': version.version_number,
                'old_status': previous[0],
                'new_status': new_status
            }, user_id)
        return version

    # ------------------------------------------------------------------
    # Benchmarks and resets

    def add_benchmark_rate(self, name: str, rate, effective_date: date,
                           deadline_seconds: Optional[float] = None) -> BenchmarkUpdateResult:
        """Record a benchmark rate and reset every loan that tracks it"""
        entry = self.benchmarks.add_rate(name, rate, _date(effective_date, "effective date"))
        self._audit(AuditEventType.BENCHMARK_RATE_ADDED, "benchmark", entry.benchmark_name, {
            'rate': entry.rate, 'effective_date': entry.effective_date, 'sequence': entry.sequence
        })
        if deadline_seconds is None:
            deadline_seconds = self.config.reset_deadline_seconds
        results = self.resets.fan_out(entry, deadline_seconds)
        return BenchmarkUpdateResult(benchmark=entry, results=tuple(results))

    def run_scheduled_resets(self, as_of: date, deadline_seconds: Optional[float] = None) -> List[ResetResult]:
        if deadline_seconds is None:
            deadline_seconds = self.config.reset_deadline_seconds
        return self.resets.process_scheduled_resets(_date(as_of, "as-of date"), deadline_seconds)

    def reset_loan(self, loan_id: str, as_of=None) -> ResetResult:
        """
        Force one floating loan onto the benchmark rate in force on as_of

        Raises:
            ValidationError: Loan is fixed-rate or not active
            NotFoundError: No benchmark entry on or before as_of
        """
        on_date = self._effective(as_of)
        loan = self.versions.load_loan(loan_id)
        if not loan.is_floating:
            raise ValidationError(f"Loan {loan_id} is fixed-rate; benchmark resets do not apply")
        self._active(loan)
        entry = self.benchmarks.current_rate(loan.benchmark_name, on_date)
        log_action(logger, "info", f"Forced rate reset for loan {loan_id} to {entry.benchmark_name} {entry.rate}%",
                   loan_id=loan_id, action="rate_reset")
        return self.resets.reset_loan(loan_id, entry, effective_from=on_date)

    # ------------------------------------------------------------------
    # Reads

    def get_loan(self, loan_id: str) -> Loan:
        return self.versions.load_loan(loan_id)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.versions.list_loans(status)

    def get_current_snapshot(self, loan_id: str) -> LoanVersion:
        return self.versions.get_current(loan_id)

    def get_version(self, loan_id: str, version_number: int) -> LoanVersion:
        return self.versions.get_version(loan_id, version_number)

    def list_versions(self, loan_id: str) -> List[LoanVersion]:
        return self.versions.list_versions(loan_id)

    def _version(self, loan_id: str, version_number: Optional[int]) -> LoanVersion:
        if version_number is None:
            return self.versions.get_current(loan_id)
        return self.versions.get_version(loan_id, version_number)

    def get_schedule(self, loan_id: str, version_number: Optional[int] = None) -> RepaymentSchedule:
        return self._version(loan_id, version_number).schedule

    def get_kfs(self, loan_id: str, version_number: Optional[int] = None) -> KeyFactsStatement:
        return self._version(loan_id, version_number).kfs

    def compare_versions(self, loan_id: str, from_version: int, to_version: int) -> Dict[str, Any]:
        return self.versions.compare_versions(loan_id, from_version, to_version)

    def get_audit_events(self, loan_id: str) -> List[AuditEvent]:
        """Audit history of a loan, oldest first"""
        self.versions.load_loan(loan_id)
        return self.audit_trail.get_events_for_entity("loan", loan_id)

    def verify_audit_integrity(self) -> Dict[str, Any]:
        result = self.audit_trail.verify_integrity()
        if not result['valid']:
            log_action(logger, "error", "Audit chain integrity check failed", action="verify_audit",
                       extra={'hash_errors': len(result['hash_errors']),
                              'chain_breaks': len(result['chain_breaks'])})
        return result
