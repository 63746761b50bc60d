"""
Version and Snapshot Manager

Append-only loan version history. Every mutation funnels through
append_version, which serializes per loan, computes the new terms and
schedule, builds the Key Facts Statement and persists the version row plus
the loan's current-version pointer in one storage transaction.
"""

from datetime import datetime, date, timezone
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple
import threading
import logging

from .audit import AuditEventType, AuditTrail
from .config import LoanServicingConfig, get_config
from .exceptions import ConflictError, NotFoundError, ValidationError
from .kfs import build_kfs
from .logging_config import log_action
from .models import (
    ChangeReason, Loan, LoanStatus, LoanVersion, RepaymentSchedule, version_record_id
)
from .storage import StorageInterface

logger = logging.getLogger(__name__)

ApplyChange = Callable[[Loan, LoanVersion], Optional[Tuple[Loan, RepaymentSchedule]]]


class LoanLockRegistry:
    """One lock per loan id; different loans never contend"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, loan_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = self._locks[loan_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, loan_id: str, timeout: float):
        lock = self.lock_for(loan_id)
        if not lock.acquire(timeout=timeout):
            raise ConflictError(f"Loan {loan_id} is being modified; retry later")
        try:
            yield
        finally:
            lock.release()


def diff_terms(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Field-level changes between two terms snapshots"""
    changes = {}
    for key in sorted(set(old) | set(new)):
        if old.get(key) != new.get(key):
            changes[key] = {'old': old.get(key), 'new': new.get(key)}
    return changes


class VersionManager:
    """
    Owns the loan and loan-version tables

    Versions are numbered from 1 without gaps; the loan record carries an
    explicit pointer to its current version.
    """

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 config: Optional[LoanServicingConfig] = None,
                 locks: Optional[LoanLockRegistry] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.locks = locks or LoanLockRegistry()
        self.loans_table = "loans"
        self.versions_table = "loan_versions"

    def _audit(self, event_type: AuditEventType, entity_id: str, metadata: Dict[str, Any],
               user_id: Optional[str] = None) -> None:
        if self.audit_trail is not None and self.config.enable_audit_logging:
            self.audit_trail.log_event(event_type, "loan", entity_id, metadata, user_id)

    def _lock(self, loan_id: str):
        return self.locks.hold(loan_id, self.config.lock_timeout_seconds)

    def load_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {'status': status.value} if status else {}
        loans = [Loan.from_dict(r) for r in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def _persist(self, loan: Loan, version: LoanVersion) -> None:
        with self.storage.atomic():
            self.storage.save(self.versions_table, version.record_id, version.to_dict())
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def create_initial(self, loan: Loan, schedule: RepaymentSchedule,
                       description: str = "Initial loan creation",
                       user_id: Optional[str] = None) -> LoanVersion:
        """Persist a new loan with version 1"""
        with self._lock(loan.id):
            if self.storage.exists(self.loans_table, loan.id):
                raise ConflictError(f"Loan {loan.id} already exists")

            now = datetime.now(timezone.utc)
            loan = loan.evolve(current_version=1, version_count=1, updated_at=now)
            version = LoanVersion(
                loan_id=loan.id,
                version_number=1,
                change_reason=ChangeReason.INITIAL_CREATION,
                description=description,
                effective_from=loan.issue_date,
                created_at=now,
                terms=loan.terms_snapshot(),
                schedule=schedule,
                kfs=build_kfs(loan, schedule, 1, ChangeReason.INITIAL_CREATION, now,
                              self.config.currency_precision),
                is_current=True
            )
            self._persist(loan, version)

        self._audit(AuditEventType.LOAN_CREATED, loan.id, {
            'customer_id': loan.customer_id,
            'product_type': loan.product_type,
            'principal': loan.principal,
            'annual_rate': loan.annual_rate,
            'tenure_months': loan.tenure_months,
            'emi': schedule.emi
        }, user_id)
        log_action(logger, "info", f"Created loan {loan.id}", loan_id=loan.id, version=1,
                   action="create_loan", extra={'emi': str(schedule.emi)})
        return version

    def append_version(
        self,
        loan_id: str,
        reason,
        description: str,
        effective_from: date,
        apply_change: ApplyChange,
        expected_version: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> LoanVersion:
        """
        Append a version computed from the current one

        Args:
            loan_id: Loan to change
            reason: ChangeReason or free text; unknown text becomes MANUAL_CORRECTION
            description: Human-readable change description
            effective_from: First date the change applies
            apply_change: (loan, current_version) -> (new_loan, new_schedule), or
                None when nothing changes
            expected_version: Optimistic check against the current pointer
            user_id: Actor recorded in the audit trail

        Returns:
            The new current LoanVersion, or the unchanged current one for a no-op

        Raises:
            ConflictError: Lock not acquired in time or expected_version is stale
        """
        reason = ChangeReason.parse(reason)
        with self._lock(loan_id):
            loan = self.load_loan(loan_id)
            if expected_version is not None and loan.current_version != expected_version:
                raise ConflictError(
                    f"Loan {loan_id} is at version {loan.current_version}, expected {expected_version}"
                )
            current = self.get_version(loan_id, loan.current_version)
            if effective_from < current.effective_from:
                raise ValidationError(
                    f"Change effective {effective_from} precedes current version "
                    f"effective {current.effective_from}"
                )

            outcome = apply_change(loan, current)
            if outcome is None:
                logger.info("No change for loan %s; staying at version %d", loan_id, current.version_number)
                return current
            new_loan, schedule = outcome

            number = loan.current_version + 1
            now = datetime.now(timezone.utc)
            new_loan = new_loan.evolve(current_version=number, version_count=number, updated_at=now)
            terms = new_loan.terms_snapshot()
            version = LoanVersion(
                loan_id=loan_id,
                version_number=number,
                change_reason=reason,
                description=description,
                effective_from=effective_from,
                created_at=now,
                terms=terms,
                schedule=schedule,
                kfs=build_kfs(new_loan, schedule, number, reason, now, self.config.currency_precision),
                changed_fields=diff_terms(current.terms, terms),
                is_current=True
            )
            self._persist(new_loan, version)

        self._audit(AuditEventType.LOAN_VERSION_APPENDED, loan_id, {
            'version': number,
            'change_reason': reason,
            'description': description,
            'effective_from': effective_from,
            'emi': schedule.emi,
            'months_remaining': schedule.months_remaining
        }, user_id)
        for name, change in version.changed_fields.items():
            self._audit(AuditEventType.LOAN_FIELD_CHANGED, loan_id, {
                'version': number, 'field': name, 'old': change['old'], 'new': change['new']
            }, user_id)
        if new_loan.status == LoanStatus.CLOSED and loan.status != LoanStatus.CLOSED:
            self._audit(AuditEventType.LOAN_CLOSED, loan_id, {'version': number}, user_id)

        log_action(logger, "info", f"Loan {loan_id} moved to version {number} ({reason.value})",
                   loan_id=loan_id, version=number, action="append_version",
                   extra={'changed_fields': sorted(version.changed_fields)})
        return version

    def get_version(self, loan_id: str, version_number: int) -> LoanVersion:
        data = self.storage.load(self.versions_table, version_record_id(loan_id, version_number))
        if not data:
            raise NotFoundError(f"Version {version_number} of loan {loan_id} not found")
        loan = self.storage.load(self.loans_table, loan_id)
        is_current = bool(loan) and loan.get('current_version') == version_number
        return LoanVersion.from_dict(data, is_current=is_current)

    def get_current(self, loan_id: str) -> LoanVersion:
        loan = self.load_loan(loan_id)
        return self.get_version(loan_id, loan.current_version)

    def list_versions(self, loan_id: str) -> List[LoanVersion]:
        """All versions, newest first"""
        loan = self.load_loan(loan_id)
        records = self.storage.find(self.versions_table, {'loan_id': loan_id})
        versions = [
            LoanVersion.from_dict(r, is_current=r['version_number'] == loan.current_version)
            for r in records
        ]
        versions.sort(key=lambda v: v.version_number, reverse=True)
        return versions

    def compare_versions(self, loan_id: str, from_version: int, to_version: int) -> Dict[str, Any]:
        """Term and schedule differences between two versions"""
        old = self.get_version(loan_id, from_version)
        new = self.get_version(loan_id, to_version)

        def pair(before, after):
            return {'old': before, 'new': after}

        return {
            'loan_id': loan_id,
            'from_version': from_version,
            'to_version': to_version,
            'changed_fields': diff_terms(old.terms, new.terms),
            'annual_rate': pair(old.schedule.current_rate, new.schedule.current_rate),
            'emi': pair(old.schedule.emi, new.schedule.emi),
            'months_remaining': pair(old.schedule.months_remaining, new.schedule.months_remaining),
            'installment_count': pair(len(old.schedule), len(new.schedule)),
            'total_interest': pair(old.schedule.total_interest, new.schedule.total_interest),
            'apr': pair(old.schedule.apr, new.schedule.apr)
        }
