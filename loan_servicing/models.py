"""
Loan Domain Model

Plain domain values consumed and produced by the engine: the Loan aggregate,
its disbursement phases, charges, moratorium periods and prepayments, the
generated RepaymentSchedule, the immutable LoanVersion and its Key Facts
Statement. Rates are Decimal percent per annum (8.5 means 8.5%); amounts are
Decimal rounded to the currency minor unit.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging

from .storage import StorageRecord

logger = logging.getLogger(__name__)


class ProductType(Enum):
    """Loan products"""
    HOME = "HOME"
    PERSONAL = "PERSONAL"
    CAR = "CAR"
    BUSINESS = "BUSINESS"


class RateType(Enum):
    FIXED = "FIXED"
    FLOATING = "FLOATING"


class CompoundingBasis(Enum):
    """How periodic interest is derived from the annual rate"""
    DAILY = "DAILY"      # actual/365 on days in period
    MONTHLY = "MONTHLY"  # annual / 12


class LoanStatus(Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    SUSPENDED = "SUSPENDED"


class FloatingStrategy(Enum):
    """What a benchmark reset holds fixed"""
    EMI_CONSTANT = "EMI_CONSTANT"        # tenure moves
    TENURE_CONSTANT = "TENURE_CONSTANT"  # EMI moves


class PrepaymentStrategy(Enum):
    """What a prepayment holds fixed"""
    REDUCE_TENURE = "REDUCE_TENURE"  # EMI held, tenure shortens
    REDUCE_EMI = "REDUCE_EMI"        # remaining months held, EMI drops


class MoratoriumType(Enum):
    FULL = "FULL"                    # nothing collected, interest capitalized
    INTEREST_ONLY = "INTEREST_ONLY"  # interest collected, no principal
    PARTIAL = "PARTIAL"              # fixed amount collected


class PaymentType(Enum):
    """Kind of installment row"""
    REGULAR = "REGULAR"
    PRE_EMI = "PRE_EMI"
    MORATORIUM_FULL = "MORATORIUM_FULL"
    MORATORIUM_INTEREST_ONLY = "MORATORIUM_INTEREST_ONLY"
    MORATORIUM_PARTIAL = "MORATORIUM_PARTIAL"

    @classmethod
    def for_moratorium(cls, moratorium_type: MoratoriumType) -> 'PaymentType':
        return cls["MORATORIUM_" + moratorium_type.value]


class InstallmentStatus(Enum):
    PENDING = "PENDING"
    DUE = "DUE"
    PAID = "PAID"


class ChangeReason(Enum):
    """Why a loan version was created"""
    INITIAL_CREATION = "INITIAL_CREATION"
    RATE_MODIFICATION = "RATE_MODIFICATION"
    SPREAD_MODIFICATION = "SPREAD_MODIFICATION"
    TERM_MODIFICATION = "TERM_MODIFICATION"
    BENCHMARK_CHANGE = "BENCHMARK_CHANGE"
    MANUAL_CORRECTION = "MANUAL_CORRECTION"
    REGULATORY_CHANGE = "REGULATORY_CHANGE"
    CUSTOMER_REQUEST = "CUSTOMER_REQUEST"

    @classmethod
    def parse(cls, value) -> 'ChangeReason':
        """
        Normalize free-text input to a reason.

        Case, surrounding whitespace, hyphens and spaces are ignored.
        Anything unrecognized maps to MANUAL_CORRECTION.
        """
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls[key]
        except KeyError:
            logger.warning("Unrecognized change reason %r, recording as MANUAL_CORRECTION", value)
            return cls.MANUAL_CORRECTION


def _dec(value) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _date(value) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _str(value) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class DisbursementPhase:
    """One tranche of a phased disbursement"""
    sequence: int
    disbursement_date: date
    amount: Decimal
    description: str = ""

    def is_disbursed(self, as_of: date) -> bool:
        """Disbursed tranches are immutable"""
        return self.disbursement_date <= as_of

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'disbursement_date': self.disbursement_date.isoformat(),
            'amount': str(self.amount),
            'description': self.description
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DisbursementPhase':
        return cls(
            sequence=data['sequence'],
            disbursement_date=_date(data['disbursement_date']),
            amount=Decimal(data['amount']),
            description=data.get('description', "")
        )


@dataclass(frozen=True)
class Charge:
    """Fee attached to a loan"""
    charge_type: str
    payee: str
    amount: Decimal
    recurring: bool = False  # True: once per installment, False: once upfront

    def to_dict(self) -> Dict[str, Any]:
        return {
            'charge_type': self.charge_type,
            'payee': self.payee,
            'amount': str(self.amount),
            'recurring': self.recurring
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Charge':
        return cls(
            charge_type=data['charge_type'],
            payee=data['payee'],
            amount=Decimal(data['amount']),
            recurring=data.get('recurring', False)
        )


@dataclass(frozen=True)
class MoratoriumPeriod:
    """Window of installment months with suspended or reduced collection"""
    start_month: int  # 1-indexed installment number, inclusive
    end_month: int    # inclusive
    moratorium_type: MoratoriumType
    partial_payment: Optional[Decimal] = None  # PARTIAL only

    def covers(self, month_number: int) -> bool:
        return self.start_month <= month_number <= self.end_month

    def overlaps(self, other: 'MoratoriumPeriod') -> bool:
        return self.start_month <= other.end_month and other.start_month <= self.end_month

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_month': self.start_month,
            'end_month': self.end_month,
            'moratorium_type': self.moratorium_type.value,
            'partial_payment': _str(self.partial_payment)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MoratoriumPeriod':
        return cls(
            start_month=data['start_month'],
            end_month=data['end_month'],
            moratorium_type=MoratoriumType(data['moratorium_type']),
            partial_payment=_dec(data.get('partial_payment'))
        )


@dataclass(frozen=True)
class Prepayment:
    """Lump-sum principal reduction"""
    amount: Decimal
    payment_date: date
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount),
            'payment_date': self.payment_date.isoformat(),
            'description': self.description
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Prepayment':
        return cls(
            amount=Decimal(data['amount']),
            payment_date=_date(data['payment_date']),
            description=data.get('description', "")
        )


@dataclass(frozen=True)
class Installment:
    """Single row of a repayment schedule"""
    month_number: int
    due_date: date
    opening_balance: Decimal
    emi_amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    closing_balance: Decimal
    applicable_rate: Decimal
    payment_type: PaymentType = PaymentType.REGULAR
    status: InstallmentStatus = InstallmentStatus.PENDING
    disbursed: Decimal = Decimal('0')      # tranche added before this row's interest
    prepayment: Decimal = Decimal('0')     # lump sum applied before this row's interest
    capitalized_interest: Decimal = Decimal('0')
    charges: Decimal = Decimal('0')        # recurring charges collected with this row

    @property
    def total_due(self) -> Decimal:
        return self.emi_amount + self.charges

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month_number': self.month_number,
            'due_date': self.due_date.isoformat(),
            'opening_balance': str(self.opening_balance),
            'emi_amount': str(self.emi_amount),
            'principal_component': str(self.principal_component),
            'interest_component': str(self.interest_component),
            'closing_balance': str(self.closing_balance),
            'applicable_rate': str(self.applicable_rate),
            'payment_type': self.payment_type.value,
            'status': self.status.value,
            'disbursed': str(self.disbursed),
            'prepayment': str(self.prepayment),
            'capitalized_interest': str(self.capitalized_interest),
            'charges': str(self.charges)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            month_number=data['month_number'],
            due_date=_date(data['due_date']),
            opening_balance=Decimal(data['opening_balance']),
            emi_amount=Decimal(data['emi_amount']),
            principal_component=Decimal(data['principal_component']),
            interest_component=Decimal(data['interest_component']),
            closing_balance=Decimal(data['closing_balance']),
            applicable_rate=Decimal(data['applicable_rate']),
            payment_type=PaymentType(data['payment_type']),
            status=InstallmentStatus(data.get('status', 'PENDING')),
            disbursed=Decimal(data.get('disbursed', '0')),
            prepayment=Decimal(data.get('prepayment', '0')),
            capitalized_interest=Decimal(data.get('capitalized_interest', '0')),
            charges=Decimal(data.get('charges', '0'))
        )


@dataclass(frozen=True)
class BrokenPeriodInterest:
    """Interest for the gap between issue date and the first regular period"""
    start_date: date
    end_date: date
    days: int
    amount: Decimal
    added_to_first_installment: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'days': self.days,
            'amount': str(self.amount),
            'added_to_first_installment': self.added_to_first_installment
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BrokenPeriodInterest':
        return cls(
            start_date=_date(data['start_date']),
            end_date=_date(data['end_date']),
            days=data['days'],
            amount=Decimal(data['amount']),
            added_to_first_installment=data['added_to_first_installment']
        )


@dataclass(frozen=True)
class RepaymentSchedule:
    """Ordered installments plus schedule-level aggregates as of a snapshot date"""
    installments: Tuple[Installment, ...]
    emi: Decimal                  # current amortizing EMI (0 before amortization is planned)
    total_interest: Decimal
    total_principal: Decimal
    total_charges: Decimal        # recurring charges across rows
    total_payable: Decimal        # EMIs + recurring charges + separately charged BPI
    apr: Decimal
    current_rate: Decimal
    months_remaining: int
    principal_balance: Decimal    # outstanding as of as_of
    as_of: date
    broken_period_interest: Optional[BrokenPeriodInterest] = None

    def __len__(self) -> int:
        return len(self.installments)

    @property
    def final_installment(self) -> Installment:
        return self.installments[-1]

    @property
    def total_capitalized(self) -> Decimal:
        return sum((i.capitalized_interest for i in self.installments), Decimal('0'))

    @property
    def first_due_date(self) -> date:
        return self.installments[0].due_date

    @property
    def last_due_date(self) -> date:
        return self.installments[-1].due_date

    def rows_after(self, on_date: date) -> List[Installment]:
        """Rows due strictly after a date"""
        return [row for row in self.installments if row.due_date > on_date]

    def interest_after(self, on_date: date) -> Decimal:
        """Interest still to be collected after a date"""
        return sum((row.interest_component for row in self.rows_after(on_date)), Decimal('0'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installments': [row.to_dict() for row in self.installments],
            'emi': str(self.emi),
            'total_interest': str(self.total_interest),
            'total_principal': str(self.total_principal),
            'total_charges': str(self.total_charges),
            'total_payable': str(self.total_payable),
            'apr': str(self.apr),
            'current_rate': str(self.current_rate),
            'months_remaining': self.months_remaining,
            'principal_balance': str(self.principal_balance),
            'as_of': self.as_of.isoformat(),
            'broken_period_interest': (
                self.broken_period_interest.to_dict() if self.broken_period_interest else None
            )
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentSchedule':
        bpi = data.get('broken_period_interest')
        return cls(
            installments=tuple(Installment.from_dict(row) for row in data['installments']),
            emi=Decimal(data['emi']),
            total_interest=Decimal(data['total_interest']),
            total_principal=Decimal(data['total_principal']),
            total_charges=Decimal(data['total_charges']),
            total_payable=Decimal(data['total_payable']),
            apr=Decimal(data['apr']),
            current_rate=Decimal(data['current_rate']),
            months_remaining=data['months_remaining'],
            principal_balance=Decimal(data['principal_balance']),
            as_of=_date(data['as_of']),
            broken_period_interest=BrokenPeriodInterest.from_dict(bpi) if bpi else None
        )


@dataclass(frozen=True)
class KeyFactsStatement:
    """Regulatory disclosure snapshot of a loan version"""
    loan_id: str
    version_number: int
    generated_at: datetime
    trigger_reason: ChangeReason
    product_type: ProductType
    sanctioned_amount: Decimal
    disbursed_amount: Decimal
    tenure_months: int
    installment_count: int
    rate_type: RateType
    annual_rate: Decimal
    benchmark_name: Optional[str]
    benchmark_rate: Optional[Decimal]
    spread: Optional[Decimal]
    reset_periodicity_months: Optional[int]
    floating_strategy: Optional[FloatingStrategy]
    emi: Decimal
    first_due_date: date
    last_due_date: date
    total_interest: Decimal
    upfront_charges: Decimal
    recurring_charges: Decimal
    broken_period_interest: Decimal
    total_payable: Decimal
    apr: Decimal
    moratorium_summary: Tuple[str, ...] = ()
    disbursement_summary: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'version_number': self.version_number,
            'generated_at': self.generated_at.isoformat(),
            'trigger_reason': self.trigger_reason.value,
            'product_type': self.product_type.value,
            'sanctioned_amount': str(self.sanctioned_amount),
            'disbursed_amount': str(self.disbursed_amount),
            'tenure_months': self.tenure_months,
            'installment_count': self.installment_count,
            'rate_type': self.rate_type.value,
            'annual_rate': str(self.annual_rate),
            'benchmark_name': self.benchmark_name,
            'benchmark_rate': _str(self.benchmark_rate),
            'spread': _str(self.spread),
            'reset_periodicity_months': self.reset_periodicity_months,
            'floating_strategy': self.floating_strategy.value if self.floating_strategy else None,
            'emi': str(self.emi),
            'first_due_date': self.first_due_date.isoformat(),
            'last_due_date': self.last_due_date.isoformat(),
            'total_interest': str(self.total_interest),
            'upfront_charges': str(self.upfront_charges),
            'recurring_charges': str(self.recurring_charges),
            'broken_period_interest': str(self.broken_period_interest),
            'total_payable': str(self.total_payable),
            'apr': str(self.apr),
            'moratorium_summary': list(self.moratorium_summary),
            'disbursement_summary': list(self.disbursement_summary)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KeyFactsStatement':
        strategy = data.get('floating_strategy')
        return cls(
            loan_id=data['loan_id'],
            version_number=data['version_number'],
            generated_at=datetime.fromisoformat(data['generated_at']),
            trigger_reason=ChangeReason(data['trigger_reason']),
            product_type=ProductType(data['product_type']),
            sanctioned_amount=Decimal(data['sanctioned_amount']),
            disbursed_amount=Decimal(data['disbursed_amount']),
            tenure_months=data['tenure_months'],
            installment_count=data['installment_count'],
            rate_type=RateType(data['rate_type']),
            annual_rate=Decimal(data['annual_rate']),
            benchmark_name=data.get('benchmark_name'),
            benchmark_rate=_dec(data.get('benchmark_rate')),
            spread=_dec(data.get('spread')),
            reset_periodicity_months=data.get('reset_periodicity_months'),
            floating_strategy=FloatingStrategy(strategy) if strategy else None,
            emi=Decimal(data['emi']),
            first_due_date=_date(data['first_due_date']),
            last_due_date=_date(data['last_due_date']),
            total_interest=Decimal(data['total_interest']),
            upfront_charges=Decimal(data['upfront_charges']),
            recurring_charges=Decimal(data['recurring_charges']),
            broken_period_interest=Decimal(data['broken_period_interest']),
            total_payable=Decimal(data['total_payable']),
            apr=Decimal(data['apr']),
            moratorium_summary=tuple(data.get('moratorium_summary', ())),
            disbursement_summary=tuple(data.get('disbursement_summary', ()))
        )


@dataclass
class Loan(StorageRecord):
    """Loan aggregate root. Replaced, never edited, by each new version."""
    customer_id: str
    product_type: ProductType
    principal: Decimal
    tenure_months: int              # current planned installment count
    issue_date: date
    emi_start_date: date
    rate_type: RateType
    annual_rate: Decimal            # current effective rate, percent p.a.
    compounding: CompoundingBasis = CompoundingBasis.MONTHLY
    status: LoanStatus = LoanStatus.ACTIVE

    # Floating-rate terms
    benchmark_name: Optional[str] = None
    spread: Optional[Decimal] = None
    floating_strategy: Optional[FloatingStrategy] = None
    reset_periodicity_months: Optional[int] = None
    benchmark_rate: Optional[Decimal] = None          # last applied benchmark entry
    benchmark_effective_date: Optional[date] = None

    prepayment_strategy: PrepaymentStrategy = PrepaymentStrategy.REDUCE_TENURE

    disbursement_phases: List[DisbursementPhase] = field(default_factory=list)
    charges: List[Charge] = field(default_factory=list)
    moratorium_periods: List[MoratoriumPeriod] = field(default_factory=list)
    prepayments: List[Prepayment] = field(default_factory=list)

    # Explicit current-version pointer, moved atomically with each append
    current_version: int = 0
    version_count: int = 0

    @property
    def is_floating(self) -> bool:
        return self.rate_type == RateType.FLOATING

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def upfront_charges(self) -> Decimal:
        return sum((c.amount for c in self.charges if not c.recurring), Decimal('0'))

    def evolve(self, **changes) -> 'Loan':
        """Copy with changes; child lists are copied so the original stays untouched"""
        for name in ('disbursement_phases', 'charges', 'moratorium_periods', 'prepayments'):
            changes.setdefault(name, list(getattr(self, name)))
        return replace(self, **changes)

    def terms_snapshot(self) -> Dict[str, Any]:
        """Full loan terms as stored on a version"""
        data = self.to_dict()
        for key in ('id', 'created_at', 'updated_at', 'current_version', 'version_count'):
            data.pop(key, None)
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'customer_id': self.customer_id,
            'product_type': self.product_type.value,
            'principal': str(self.principal),
            'tenure_months': self.tenure_months,
            'issue_date': self.issue_date.isoformat(),
            'emi_start_date': self.emi_start_date.isoformat(),
            'rate_type': self.rate_type.value,
            'annual_rate': str(self.annual_rate),
            'compounding': self.compounding.value,
            'status': self.status.value,
            'benchmark_name': self.benchmark_name,
            'spread': _str(self.spread),
            'floating_strategy': self.floating_strategy.value if self.floating_strategy else None,
            'reset_periodicity_months': self.reset_periodicity_months,
            'benchmark_rate': _str(self.benchmark_rate),
            'benchmark_effective_date': (
                self.benchmark_effective_date.isoformat() if self.benchmark_effective_date else None
            ),
            'prepayment_strategy': self.prepayment_strategy.value,
            'disbursement_phases': [p.to_dict() for p in self.disbursement_phases],
            'charges': [c.to_dict() for c in self.charges],
            'moratorium_periods': [m.to_dict() for m in self.moratorium_periods],
            'prepayments': [p.to_dict() for p in self.prepayments],
            'current_version': self.current_version,
            'version_count': self.version_count
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        strategy = data.get('floating_strategy')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            product_type=ProductType(data['product_type']),
            principal=Decimal(data['principal']),
            tenure_months=data['tenure_months'],
            issue_date=_date(data['issue_date']),
            emi_start_date=_date(data['emi_start_date']),
            rate_type=RateType(data['rate_type']),
            annual_rate=Decimal(data['annual_rate']),
            compounding=CompoundingBasis(data['compounding']),
            status=LoanStatus(data['status']),
            benchmark_name=data.get('benchmark_name'),
            spread=_dec(data.get('spread')),
            floating_strategy=FloatingStrategy(strategy) if strategy else None,
            reset_periodicity_months=data.get('reset_periodicity_months'),
            benchmark_rate=_dec(data.get('benchmark_rate')),
            benchmark_effective_date=_date(data.get('benchmark_effective_date')),
            prepayment_strategy=PrepaymentStrategy(data.get('prepayment_strategy', 'REDUCE_TENURE')),
            disbursement_phases=[DisbursementPhase.from_dict(p) for p in data.get('disbursement_phases', [])],
            charges=[Charge.from_dict(c) for c in data.get('charges', [])],
            moratorium_periods=[MoratoriumPeriod.from_dict(m) for m in data.get('moratorium_periods', [])],
            prepayments=[Prepayment.from_dict(p) for p in data.get('prepayments', [])],
            current_version=data.get('current_version', 0),
            version_count=data.get('version_count', 0)
        )


@dataclass(frozen=True)
class LoanVersion:
    """Immutable record of a loan's terms, schedule and KFS at one point in its history"""
    loan_id: str
    version_number: int
    change_reason: ChangeReason
    description: str
    effective_from: date
    created_at: datetime
    terms: Dict[str, Any]
    schedule: RepaymentSchedule
    kfs: KeyFactsStatement
    changed_fields: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    is_current: bool = False  # set on read from the loan's pointer, never persisted

    @property
    def record_id(self) -> str:
        return version_record_id(self.loan_id, self.version_number)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.record_id,
            'loan_id': self.loan_id,
            'version_number': self.version_number,
            'change_reason': self.change_reason.value,
            'description': self.description,
            'effective_from': self.effective_from.isoformat(),
            'created_at': self.created_at.isoformat(),
            'terms': self.terms,
            'schedule': self.schedule.to_dict(),
            'kfs': self.kfs.to_dict(),
            'changed_fields': self.changed_fields
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], is_current: bool = False) -> 'LoanVersion':
        return cls(
            loan_id=data['loan_id'],
            version_number=data['version_number'],
            change_reason=ChangeReason(data['change_reason']),
            description=data.get('description', ""),
            effective_from=_date(data['effective_from']),
            created_at=datetime.fromisoformat(data['created_at']),
            terms=data['terms'],
            schedule=RepaymentSchedule.from_dict(data['schedule']),
            kfs=KeyFactsStatement.from_dict(data['kfs']),
            changed_fields=data.get('changed_fields', {}),
            is_current=is_current
        )


def version_record_id(loan_id: str, version_number: int) -> str:
    return f"{loan_id}:{version_number:06d}"


@dataclass
class LoanApplication:
    """Terms supplied by the caller to create a loan"""
    customer_id: str
    product_type: ProductType
    principal: Decimal
    tenure_months: int
    issue_date: date
    emi_start_date: date
    rate_type: RateType = RateType.FIXED
    annual_rate: Optional[Decimal] = None  # required for FIXED; derived from benchmark if omitted
    compounding: CompoundingBasis = CompoundingBasis.MONTHLY
    benchmark_name: Optional[str] = None
    spread: Optional[Decimal] = None
    floating_strategy: Optional[FloatingStrategy] = None
    reset_periodicity_months: Optional[int] = None
    prepayment_strategy: Optional[PrepaymentStrategy] = None
    disbursement_phases: List[DisbursementPhase] = field(default_factory=list)
    charges: List[Charge] = field(default_factory=list)
    moratorium_periods: List[MoratoriumPeriod] = field(default_factory=list)
    description: str = "Initial loan creation"
