"""
Floating-Rate Reset Engine

Re-prices floating loans when their benchmark moves or their reset period
elapses. Each loan is reset in its own version append, so one loan failing
never rolls back another; the fan-out reports a result per loan.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import time
import logging

from .audit import AuditEventType, AuditTrail
from .benchmarks import BenchmarkRate, BenchmarkStore
from .config import LoanServicingConfig, get_config
from .exceptions import LoanServicingError, ValidationError
from .logging_config import log_action
from .models import ChangeReason, FloatingStrategy, Loan, LoanStatus, LoanVersion, RateType
from .resolver import add_months
from .schedule import ScheduleGenerator
from .versions import VersionManager

logger = logging.getLogger(__name__)


class ResetStatus(Enum):
    APPLIED = "APPLIED"
    SKIPPED = "SKIPPED"      # loan already reflects the benchmark entry
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"  # deadline passed before the loan was attempted


@dataclass(frozen=True)
class ResetResult:
    """Outcome of resetting one loan"""
    loan_id: str
    status: ResetStatus
    previous_rate: Optional[Decimal] = None
    new_rate: Optional[Decimal] = None
    previous_emi: Optional[Decimal] = None
    new_emi: Optional[Decimal] = None
    previous_months_remaining: Optional[int] = None
    new_months_remaining: Optional[int] = None
    version_number: Optional[int] = None
    error_type: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        def text(value):
            return str(value) if value is not None else None
        return {
            'loan_id': self.loan_id,
            'status': self.status.value,
            'previous_rate': text(self.previous_rate),
            'new_rate': text(self.new_rate),
            'previous_emi': text(self.previous_emi),
            'new_emi': text(self.new_emi),
            'previous_months_remaining': self.previous_months_remaining,
            'new_months_remaining': self.new_months_remaining,
            'version_number': self.version_number,
            'error_type': self.error_type,
            'message': self.message
        }


@dataclass(frozen=True)
class BenchmarkUpdateResult:
    """A stored benchmark entry and the per-loan resets it triggered"""
    benchmark: BenchmarkRate
    results: Tuple[ResetResult, ...]

    def _with(self, status: ResetStatus) -> List[ResetResult]:
        return [r for r in self.results if r.status == status]

    @property
    def applied(self) -> List[ResetResult]:
        return self._with(ResetStatus.APPLIED)

    @property
    def skipped(self) -> List[ResetResult]:
        return self._with(ResetStatus.SKIPPED)

    @property
    def failed(self) -> List[ResetResult]:
        return self._with(ResetStatus.FAILED)

    @property
    def abandoned(self) -> List[ResetResult]:
        return self._with(ResetStatus.ABANDONED)


def latest_reset_date(issue_date: date, periodicity_months: int, as_of: date) -> Optional[date]:
    """Latest date on the grid issue_date + k * periodicity (k >= 1) that is on or before as_of"""
    if periodicity_months <= 0 or as_of < issue_date:
        return None
    elapsed = (as_of.year - issue_date.year) * 12 + (as_of.month - issue_date.month)
    k = elapsed // periodicity_months
    while k >= 1 and add_months(issue_date, k * periodicity_months) > as_of:
        k -= 1
    if k < 1:
        return None
    return add_months(issue_date, k * periodicity_months)


def reflects(loan: Loan, entry: BenchmarkRate) -> bool:
    """Whether a loan already carries a benchmark entry, or a later one"""
    if loan.benchmark_effective_date is None:
        return False
    if loan.benchmark_effective_date > entry.effective_date:
        return True
    return loan.benchmark_effective_date == entry.effective_date and loan.benchmark_rate == entry.rate


class FloatingRateResetEngine:
    """
    Applies benchmark changes to floating loans

    EMI_CONSTANT loans keep their EMI and have the tenure re-solved;
    TENURE_CONSTANT loans keep their remaining months and get a new EMI.
    """

    def __init__(self, versions: VersionManager, benchmarks: BenchmarkStore,
                 generator: ScheduleGenerator, audit_trail: Optional[AuditTrail] = None,
                 config: Optional[LoanServicingConfig] = None):
        self.versions = versions
        self.benchmarks = benchmarks
        self.generator = generator
        self.audit_trail = audit_trail
        self.config = config or get_config()

    def _audit(self, event_type: AuditEventType, loan_id: str, metadata: Dict[str, Any]) -> None:
        if self.audit_trail is not None and self.config.enable_audit_logging:
            self.audit_trail.log_event(event_type, "loan", loan_id, metadata)

    def affected_loans(self, benchmark_name: str) -> List[Loan]:
        return [
            loan for loan in self.versions.list_loans(LoanStatus.ACTIVE)
            if loan.rate_type == RateType.FLOATING and loan.benchmark_name == benchmark_name
        ]

    def reset_loan(self, loan_id: str, entry: BenchmarkRate,
                   effective_from: Optional[date] = None) -> ResetResult:
        """
        Re-price one loan to a benchmark entry

        Never raises: failures are returned as FAILED results and audited.
        """
        previous = None
        try:
            loan = self.versions.load_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE or loan.rate_type != RateType.FLOATING:
                return ResetResult(loan_id, ResetStatus.SKIPPED, message="Loan is not an active floating loan")
            if loan.benchmark_name != entry.benchmark_name:
                return ResetResult(loan_id, ResetStatus.SKIPPED,
                                   message=f"Loan tracks {loan.benchmark_name}, not {entry.benchmark_name}")
            if reflects(loan, entry):
                return ResetResult(loan_id, ResetStatus.SKIPPED, previous_rate=loan.annual_rate,
                                   new_rate=loan.annual_rate, message="Benchmark entry already applied")

            previous = self.versions.get_version(loan_id, loan.current_version)
            effective = max(effective_from or entry.effective_date, loan.issue_date, previous.effective_from)
            new_rate = entry.rate + (loan.spread or Decimal('0'))
            if new_rate < 0:
                raise ValidationError(f"Benchmark {entry.rate}% plus spread {loan.spread}% is negative")

            def apply_change(current_loan: Loan, current: LoanVersion):
                if reflects(current_loan, entry):
                    return None
                updated = current_loan.evolve(
                    annual_rate=new_rate,
                    benchmark_rate=entry.rate,
                    benchmark_effective_date=entry.effective_date
                )
                schedule = self.generator.for_loan(
                    updated,
                    as_of=effective,
                    previous=current.schedule,
                    hold_emi=current_loan.floating_strategy != FloatingStrategy.TENURE_CONSTANT
                )
                return updated.evolve(tenure_months=len(schedule)), schedule

            version = self.versions.append_version(
                loan_id,
                ChangeReason.BENCHMARK_CHANGE,
                f"{entry.benchmark_name} reset to {entry.rate}% effective {entry.effective_date}",
                effective,
                apply_change,
                expected_version=loan.current_version
            )
            if version.version_number == previous.version_number:
                return ResetResult(loan_id, ResetStatus.SKIPPED, message="Benchmark entry already applied")

        except Exception as exc:
            if not isinstance(exc, LoanServicingError):
                logger.exception("Unexpected failure resetting loan %s", loan_id)
            result = ResetResult(
                loan_id,
                ResetStatus.FAILED,
                previous_rate=previous.schedule.current_rate if previous else None,
                previous_emi=previous.schedule.emi if previous else None,
                previous_months_remaining=previous.schedule.months_remaining if previous else None,
                error_type=type(exc).__name__,
                message=str(exc)
            )
            self._audit(AuditEventType.RATE_RESET_FAILED, loan_id, {
                'benchmark': entry.benchmark_name,
                'benchmark_rate': entry.rate,
                'benchmark_effective_date': entry.effective_date,
                'error_type': result.error_type,
                'error': result.message
            })
            log_action(logger, "warning", f"Rate reset failed for loan {loan_id}: {exc}",
                       loan_id=loan_id, action="rate_reset")
            return result

        result = ResetResult(
            loan_id,
            ResetStatus.APPLIED,
            previous_rate=previous.schedule.current_rate,
            new_rate=version.schedule.current_rate,
            previous_emi=previous.schedule.emi,
            new_emi=version.schedule.emi,
            previous_months_remaining=previous.schedule.months_remaining,
            new_months_remaining=version.schedule.months_remaining,
            version_number=version.version_number,
            message=version.description
        )
        self._audit(AuditEventType.RATE_RESET_APPLIED, loan_id, {
            'benchmark': entry.benchmark_name,
            'benchmark_effective_date': entry.effective_date,
            'previous_rate': result.previous_rate,
            'new_rate': result.new_rate,
            'previous_emi': result.previous_emi,
            'new_emi': result.new_emi,
            'previous_months_remaining': result.previous_months_remaining,
            'new_months_remaining': result.new_months_remaining,
            'version': result.version_number
        })
        return result

    def _attempt(self, loan_id: str, entry: BenchmarkRate, deadline: Optional[float],
                 effective_from: Optional[date] = None) -> ResetResult:
        if deadline is not None and time.monotonic() >= deadline:
            return ResetResult(loan_id, ResetStatus.ABANDONED, message="Deadline expired before reset started")
        return self.reset_loan(loan_id, entry, effective_from)

    def _run(self, jobs: List[Tuple[str, BenchmarkRate, Optional[date]]],
             deadline_seconds: Optional[float]) -> List[ResetResult]:
        if not jobs:
            return []
        deadline = time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        workers = max(1, min(self.config.reset_workers, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rate-reset") as pool:
            futures = [
                pool.submit(self._attempt, loan_id, entry, deadline, effective_from)
                for loan_id, entry, effective_from in jobs
            ]
            return [future.result() for future in futures]

    def fan_out(self, entry: BenchmarkRate, deadline_seconds: Optional[float] = None) -> List[ResetResult]:
        """Reset every active floating loan on the entry's benchmark"""
        loans = self.affected_loans(entry.benchmark_name)
        results = self._run([(loan.id, entry, None) for loan in loans], deadline_seconds)
        self._log_summary(f"{entry.benchmark_name} {entry.rate}% fan-out", results)
        return results

    def process_scheduled_resets(self, as_of: date,
                                 deadline_seconds: Optional[float] = None) -> List[ResetResult]:
        """
        Apply periodic resets due on or before as_of

        Each loan with a reset periodicity is re-priced at its latest grid date
        to the benchmark rate in force on that date.
        """
        jobs = []
        failures = []
        for loan in self.versions.list_loans(LoanStatus.ACTIVE):
            if loan.rate_type != RateType.FLOATING or not loan.reset_periodicity_months:
                continue
            reset_date = latest_reset_date(loan.issue_date, loan.reset_periodicity_months, as_of)
            if reset_date is None:
                continue
            try:
                entry = self.benchmarks.current_rate(loan.benchmark_name, reset_date)
            except LoanServicingError as exc:
                failures.append(ResetResult(loan.id, ResetStatus.FAILED,
                                            error_type=type(exc).__name__, message=str(exc)))
                continue
            jobs.append((loan.id, entry, reset_date))

        results = failures + self._run(jobs, deadline_seconds)
        self._log_summary(f"Scheduled resets as of {as_of}", results)
        return results

    def _log_summary(self, label: str, results: List[ResetResult]) -> None:
        counts = {status.value: 0 for status in ResetStatus}
        for result in results:
            counts[result.status.value] += 1
        log_action(logger, "info", f"{label}: {len(results)} loans", action="rate_reset", extra=counts)
