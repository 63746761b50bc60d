"""
Test suite for floating-rate resets

Tests benchmark fan-out, EMI- and tenure-constant strategies, idempotency,
partial failure, deadlines and periodic resets.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.audit import AuditEventType
from loan_servicing.exceptions import NotFoundError, ValidationError
from loan_servicing.models import ChangeReason, FloatingStrategy, RateType
from loan_servicing.rate_reset import ResetResult, ResetStatus, latest_reset_date


class TestResetGrid:
    """Test periodic reset dates"""

    def test_latest_reset_date(self):
        """Test the latest periodic reset date on or before a date"""
        issue = date(2024, 1, 15)

        assert latest_reset_date(issue, 6, date(2024, 7, 14)) is None
        assert latest_reset_date(issue, 6, date(2024, 7, 15)) == date(2024, 7, 15)
        assert latest_reset_date(issue, 6, date(2025, 2, 1)) == date(2025, 1, 15)
        assert latest_reset_date(issue, 12, date(2026, 1, 14)) == date(2025, 1, 15)

    def test_no_grid(self):
        """Test loans without a reset period or before issue have no reset date"""
        assert latest_reset_date(date(2024, 1, 15), 0, date(2025, 1, 1)) is None
        assert latest_reset_date(date(2024, 1, 15), 6, date(2023, 1, 1)) is None

    def test_result_to_dict(self):
        """Test reset result serialization"""
        result = ResetResult("L1", ResetStatus.APPLIED, previous_rate=Decimal('8.5'),
                             new_rate=Decimal('8.75'), version_number=2)
        data = result.to_dict()

        assert data['status'] == "APPLIED"
        assert data['new_rate'] == "8.75"
        assert data['previous_emi'] is None
        assert data['version_number'] == 2


class TestBenchmarkFanOut:
    """Test resets triggered by a new benchmark rate"""

    @pytest.fixture(autouse=True)
    def setup(self, service, make_floating_application, make_application):
        self.service = service
        service.add_benchmark_rate("MCLR", Decimal('8.25'), date(2024, 1, 1))
        self.emi_constant = service.create_loan(make_floating_application())
        self.tenure_constant = service.create_loan(
            make_floating_application(floating_strategy=FloatingStrategy.TENURE_CONSTANT)
        )
        self.fixed = service.create_loan(make_application())

    def test_floating_loan_priced_from_benchmark(self):
        """Test a floating loan is priced at benchmark plus spread"""
        loan = self.service.get_loan(self.emi_constant.id)

        assert loan.rate_type == RateType.FLOATING
        assert loan.annual_rate == Decimal('8.5')
        assert loan.benchmark_rate == Decimal('8.25')
        assert loan.benchmark_effective_date == date(2024, 1, 1)
        kfs = self.service.get_kfs(loan.id)
        assert kfs.benchmark_name == "MCLR"
        assert kfs.spread == Decimal('0.25')

    def test_emi_constant_extends_tenure(self):
        """Test an EMI-constant loan absorbs a rate rise in its tenure"""
        update = self.service.add_benchmark_rate("mclr", Decimal('8.50'), date(2024, 7, 1))
        result = next(r for r in update.results if r.loan_id == self.emi_constant.id)

        assert result.status == ResetStatus.APPLIED
        assert result.new_rate == Decimal('8.75')
        assert result.new_emi == result.previous_emi
        assert result.new_months_remaining > 235
        version = self.service.get_current_snapshot(self.emi_constant.id)
        assert version.version_number == 2
        assert version.change_reason == ChangeReason.BENCHMARK_CHANGE
        assert version.effective_from == date(2024, 7, 1)
        assert len(version.schedule) > 240
        assert version.schedule.installments[5].applicable_rate == Decimal('8.75')
        assert version.schedule.installments[4].applicable_rate == Decimal('8.5')

    def test_tenure_constant_raises_emi(self):
        """Test a tenure-constant loan absorbs a rate rise in its EMI"""
        update = self.service.add_benchmark_rate("MCLR", Decimal('8.50'), date(2024, 7, 1))
        result = next(r for r in update.results if r.loan_id == self.tenure_constant.id)

        assert result.status == ResetStatus.APPLIED
        assert result.new_emi > result.previous_emi
        assert result.new_months_remaining == 235
        assert len(self.service.get_schedule(self.tenure_constant.id)) == 240

    def test_fixed_loans_untouched(self):
        """Test fixed-rate loans are not reset"""
        update = self.service.add_benchmark_rate("MCLR", Decimal('8.50'), date(2024, 7, 1))

        assert self.fixed.id not in {r.loan_id for r in update.results}
        assert len(update.applied) == 2
        assert self.service.get_loan(self.fixed.id).current_version == 1

    def test_other_benchmark_untouched(self):
        """Test loans on another benchmark are not reset"""
        self.service.add_benchmark_rate("REPO", Decimal('6.50'), date(2024, 7, 1))
        assert self.service.get_loan(self.emi_constant.id).current_version == 1

    def test_reapplying_entry_is_skipped(self):
        """Test re-running a fan-out for the same entry is skipped"""
        update = self.service.add_benchmark_rate("MCLR", Decimal('8.50'), date(2024, 7, 1))
        results = self.service.resets.fan_out(update.benchmark)

        assert [r.status for r in results] == [ResetStatus.SKIPPED, ResetStatus.SKIPPED]
        assert self.service.get_loan(self.emi_constant.id).current_version == 2

    def test_duplicate_publication_is_skipped(self):
        """Test publishing the same rate twice resets once"""
        self.service.add_benchmark_rate("MCLR", Decimal('8.50'), date(2024, 7, 1))
        update = self.service.add_benchmark_rate("MCLR", Decimal('8.50'), date(2024, 7, 1))

        assert len(update.skipped) == 2
        assert self.service.get_loan(self.tenure_constant.id).current_version == 2

    def test_partial_failure_isolated(self):
        """Test one failing loan does not stop the others"""
        update = self.service.add_benchmark_rate("MCLR", Decimal('20'), date(2024, 8, 1))

        failed = update.failed
        assert [r.loan_id for r in failed] == [self.emi_constant.id]
        assert failed[0].error_type == "ValidationError"
        assert "does not cover interest" in failed[0].message
        assert [r.loan_id for r in update.applied] == [self.tenure_constant.id]

        loan = self.service.get_loan(self.emi_constant.id)
        assert loan.current_version == 1
        assert loan.annual_rate == Decimal('8.5')
        events = self.service.get_audit_events(self.emi_constant.id)
        assert events[-1].event_type == AuditEventType.RATE_RESET_FAILED

    def test_solved_tenure_capped(self):
        """Test an EMI-constant reset that would stretch past 600 installments fails"""
        update = self.service.add_benchmark_rate("MCLR", Decimal('10.22'), date(2024, 7, 1))

        failed = update.failed
        assert [r.loan_id for r in failed] == [self.emi_constant.id]
        assert failed[0].error_type == "ValidationError"
        assert "within 600 installments" in failed[0].message
        assert [r.loan_id for r in update.applied] == [self.tenure_constant.id]

        loan = self.service.get_loan(self.emi_constant.id)
        assert loan.current_version == 1
        assert loan.tenure_months == 240

    def test_expired_deadline_abandons(self):
        """Test loans not reached before the deadline are abandoned"""
        update = self.service.add_benchmark_rate("MCLR", Decimal('8.50'), date(2024, 7, 1),
                                                 deadline_seconds=0)

        assert len(update.abandoned) == 2
        assert self.service.get_loan(self.emi_constant.id).current_version == 1

        results = self.service.resets.fan_out(update.benchmark)
        assert [r.status for r in results] == [ResetStatus.APPLIED, ResetStatus.APPLIED]

    def test_spread_edit_reprices(self):
        """Test editing the spread reprices the loan"""
        version = self.service.edit_loan(
            self.tenure_constant.id, {'spread': Decimal('0.75')}, effective_from=date(2024, 3, 20)
        )

        assert version.change_reason == ChangeReason.SPREAD_MODIFICATION
        assert self.service.get_loan(self.tenure_constant.id).annual_rate == Decimal('9.0')
        assert version.schedule.emi > self.service.get_schedule(self.tenure_constant.id, 1).emi


class TestScheduledResets:
    """Test periodic resets against benchmark history"""

    @pytest.fixture(autouse=True)
    def setup(self, service, make_floating_application):
        self.service = service
        service.add_benchmark_rate("MCLR", Decimal('8.25'), date(2024, 1, 1))
        self.loan = service.create_loan(make_floating_application(reset_periodicity_months=6))
        self.unscheduled = service.create_loan(make_floating_application())
        # Published without fan-out; picked up at the next reset date
        service.benchmarks.add_rate("MCLR", Decimal('9.0'), date(2024, 3, 1))

    def test_applies_rate_in_force_on_reset_date(self):
        """Test a periodic reset uses the rate in force on its reset date"""
        results = self.service.run_scheduled_resets(date(2024, 8, 1))

        assert [r.loan_id for r in results] == [self.loan.id]
        assert results[0].status == ResetStatus.APPLIED
        assert results[0].new_rate == Decimal('9.25')
        version = self.service.get_current_snapshot(self.loan.id)
        assert version.effective_from == date(2024, 7, 15)
        assert self.service.get_loan(self.unscheduled.id).current_version == 1

    def test_second_run_skipped(self):
        """Test a second run for the same reset date is skipped"""
        self.service.run_scheduled_resets(date(2024, 8, 1))
        results = self.service.run_scheduled_resets(date(2024, 9, 1))

        assert [r.status for r in results] == [ResetStatus.SKIPPED]

    def test_before_first_reset_date(self):
        """Test no loans reset before their first reset date"""
        assert self.service.run_scheduled_resets(date(2024, 5, 1)) == []


class TestForcedReset:
    """Test resetting a single loan on demand"""

    @pytest.fixture(autouse=True)
    def setup(self, service, make_floating_application, make_application):
        self.service = service
        service.add_benchmark_rate("MCLR", Decimal('8.25'), date(2024, 1, 1))
        self.loan = service.create_loan(make_floating_application())
        self.fixed = service.create_loan(make_application())
        service.benchmarks.add_rate("MCLR", Decimal('9.0'), date(2024, 3, 1))

    def test_applies_rate_in_force(self):
        """Test a forced reset picks up a benchmark published without fan-out"""
        result = self.service.reset_loan(self.loan.id, as_of=date(2024, 4, 1))

        assert result.status == ResetStatus.APPLIED
        assert result.new_rate == Decimal('9.25')
        assert result.version_number == 2
        version = self.service.get_current_snapshot(self.loan.id)
        assert version.change_reason == ChangeReason.BENCHMARK_CHANGE
        assert version.effective_from == date(2024, 4, 1)

    def test_repeat_is_skipped(self):
        """Test forcing the same benchmark entry twice writes one version"""
        self.service.reset_loan(self.loan.id, as_of=date(2024, 4, 1))
        result = self.service.reset_loan(self.loan.id, as_of=date(2024, 5, 1))

        assert result.status == ResetStatus.SKIPPED
        assert self.service.get_loan(self.loan.id).current_version == 2

    def test_fixed_loan_rejected(self):
        """Test a fixed-rate loan cannot be reset"""
        with pytest.raises(ValidationError, match="fixed-rate"):
            self.service.reset_loan(self.fixed.id, as_of=date(2024, 4, 1))

    def test_no_benchmark_before_date(self):
        """Test a reset dated before any publication is rejected"""
        with pytest.raises(NotFoundError):
            self.service.reset_loan(self.loan.id, as_of=date(2023, 12, 1))
