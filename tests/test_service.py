"""
Test suite for the loan service

Tests loan creation, term edits, charges, disbursement phases, moratoria
and the read side through the public facade.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.audit import AuditEventType
from loan_servicing.config import LoanServicingConfig
from loan_servicing.currency import round_money
from loan_servicing.exceptions import NotFoundError, ValidationError
from loan_servicing.models import (
    Charge, ChangeReason, DisbursementPhase, LoanStatus, MoratoriumPeriod, MoratoriumType,
    PaymentType, RateType
)
from loan_servicing.schedule import annuity_payment
from loan_servicing.service import LoanService
from loan_servicing.storage import InMemoryStorage


class TestLoanCreation:
    """Test creating loans and their first version"""

    def test_create_fixed_loan(self, service, make_application):
        """Test creating a fixed-rate loan"""
        loan = service.create_loan(make_application())

        assert loan.status == LoanStatus.ACTIVE
        assert loan.rate_type == RateType.FIXED
        assert loan.annual_rate == Decimal('8.5')
        assert loan.current_version == 1
        schedule = service.get_schedule(loan.id)
        assert len(schedule) == 240
        assert abs(schedule.emi - Decimal('43391')) < Decimal('1')

    def test_kfs_on_creation(self, service, make_application):
        """Test the key facts statement of a new loan"""
        loan = service.create_loan(make_application())
        kfs = service.get_kfs(loan.id)
        schedule = service.get_schedule(loan.id)

        assert kfs.version_number == 1
        assert kfs.trigger_reason == ChangeReason.INITIAL_CREATION
        assert kfs.sanctioned_amount == Decimal('5000000')
        assert kfs.disbursed_amount == Decimal('5000000')
        assert kfs.installment_count == 240
        assert kfs.first_due_date == date(2024, 2, 15)
        assert kfs.last_due_date == date(2044, 1, 15)
        assert kfs.emi == schedule.emi
        assert kfs.total_payable == schedule.total_payable
        assert kfs.upfront_charges == Decimal('0')

    def test_upfront_charge_raises_apr(self, service, make_application):
        """Test upfront charges raise the APR above the rate"""
        fee = Charge("PROCESSING_FEE", "Lender", Decimal('10000'))
        loan = service.create_loan(make_application(charges=[fee]))
        kfs = service.get_kfs(loan.id)
        schedule = service.get_schedule(loan.id)

        assert kfs.upfront_charges == Decimal('10000')
        assert kfs.total_payable == schedule.total_payable + Decimal('10000')
        assert kfs.apr > Decimal('8.5')
        assert schedule.installments[0].charges == Decimal('0')

    def test_recurring_charge_on_every_row(self, service, make_application):
        """Test a recurring charge lands on every installment"""
        insurance = Charge("INSURANCE", "Insurer", Decimal('500'), recurring=True)
        loan = service.create_loan(make_application(charges=[insurance]))
        schedule = service.get_schedule(loan.id)

        assert all(r.charges == Decimal('500') for r in schedule.installments)
        assert schedule.total_charges == Decimal('120000')
        assert schedule.installments[0].total_due == schedule.emi + Decimal('500')
        assert service.get_kfs(loan.id).recurring_charges == Decimal('120000')
        assert schedule.apr > Decimal('8.5')

    def test_creation_audited(self, service, make_application):
        """Test loan creation is audited"""
        loan = service.create_loan(make_application(), user_id="officer-1")
        events = service.get_audit_events(loan.id)

        assert events[0].event_type == AuditEventType.LOAN_CREATED
        assert events[0].user_id == "officer-1"
        assert events[0].metadata['principal'] == "5000000"

    def test_fixed_loan_rules(self, service, make_application):
        """Test fixed-rate loans take no benchmark terms"""
        with pytest.raises(ValidationError, match="require an annual rate"):
            service.create_loan(make_application(annual_rate=None))
        with pytest.raises(ValidationError, match="cannot carry a benchmark or spread"):
            service.create_loan(make_application(spread=Decimal('0.5')))

    def test_floating_loan_rules(self, service, make_floating_application):
        """Test floating loans need a consistent benchmark and spread"""
        with pytest.raises(ValidationError, match="require a benchmark"):
            service.create_loan(make_floating_application(benchmark_name=None))
        with pytest.raises(NotFoundError, match="No MCLR rate"):
            service.create_loan(make_floating_application())

        service.add_benchmark_rate("MCLR", Decimal('8.25'), date(2024, 1, 1))
        with pytest.raises(ValidationError, match="does not match MCLR"):
            service.create_loan(make_floating_application(annual_rate=Decimal('9')))
        with pytest.raises(ValidationError, match="Reset periodicity"):
            service.create_loan(make_floating_application(reset_periodicity_months=0))

    def test_input_validation(self, service, make_application):
        """Test invalid applications are rejected without creating a loan"""
        with pytest.raises(ValidationError, match="Customer ID is required"):
            service.create_loan(make_application(customer_id=""))
        with pytest.raises(ValidationError, match="Invalid product type"):
            service.create_loan(make_application(product_type="GOLD"))
        with pytest.raises(ValidationError, match="principal must be Decimal"):
            service.create_loan(make_application(principal=5000000.0))
        with pytest.raises(ValidationError, match="principal must be positive"):
            service.create_loan(make_application(principal=Decimal('-1')))
        with pytest.raises(ValidationError, match="Tenure must be between 1 and 600"):
            service.create_loan(make_application(tenure_months=601))
        with pytest.raises(ValidationError, match="must be after issue date"):
            service.create_loan(make_application(emi_start_date=date(2024, 1, 15)))

        assert service.list_loans() == []

    def test_string_inputs_accepted(self, service, make_application):
        """Test string inputs are parsed"""
        loan = service.create_loan(make_application(
            product_type="home", principal="5,000,000", issue_date="2024-01-15",
            emi_start_date="2024-02-15", annual_rate="8.5", compounding="monthly"
        ))
        assert loan.principal == Decimal('5000000')
        assert loan.issue_date == date(2024, 1, 15)

    def test_service_uses_its_own_configuration(self, make_application):
        """Test precision and tenure limits come from the injected configuration"""
        service = LoanService(InMemoryStorage(), config=LoanServicingConfig(
            database_url="memory://", currency_precision=0, max_tenure_months=360
        ))

        with pytest.raises(ValidationError, match="more precision than the currency allows"):
            service.create_loan(make_application(principal="5000000.50"))
        with pytest.raises(ValidationError, match="Tenure must be between 1 and 360"):
            service.create_loan(make_application(tenure_months=361))

        loan = service.create_loan(make_application(tenure_months=360))
        schedule = service.get_schedule(loan.id)
        assert schedule.emi == schedule.emi.quantize(Decimal('1'))
        assert schedule.installments[0].interest == Decimal('35417')


class TestEditLoan:
    """Test term edits"""

    @pytest.fixture(autouse=True)
    def setup(self, service, make_application):
        self.service = service
        self.loan = service.create_loan(make_application())
        self.original = service.get_schedule(self.loan.id)

    def test_rate_edit_recomputes_emi(self):
        """Test a rate edit recomputes the EMI"""
        version = self.service.edit_loan(
            self.loan.id, {'annual_rate': Decimal('9.5')}, effective_from=date(2025, 1, 20)
        )

        assert version.change_reason == ChangeReason.RATE_MODIFICATION
        assert len(version.schedule) == 240
        assert version.schedule.emi > self.original.emi
        assert version.schedule.installments[11].closing_balance == self.original.installments[11].closing_balance
        assert version.schedule.installments[12].applicable_rate == Decimal('9.5')

    def test_tenure_edit(self):
        """Test a tenure edit re-spreads the balance"""
        version = self.service.edit_loan(
            self.loan.id, {'tenure_months': 300}, effective_from=date(2025, 1, 20)
        )

        assert version.change_reason == ChangeReason.TERM_MODIFICATION
        assert len(version.schedule) == 300
        assert version.schedule.emi < self.original.emi
        assert self.service.get_loan(self.loan.id).tenure_months == 300

    def test_principal_edit_before_first_installment(self):
        """Test the principal can change before repayment starts"""
        version = self.service.edit_loan(
            self.loan.id, {'principal': Decimal('6000000')}, effective_from=date(2024, 1, 20)
        )

        assert version.schedule.installments[0].opening_balance == Decimal('6000000')
        assert version.schedule.emi == round_money(
            annuity_payment(Decimal('6000000'), Decimal('8.5') / 1200, 240)
        )

    def test_principal_frozen_after_repayment_starts(self):
        """Test the principal is frozen once repayment starts"""
        with pytest.raises(ValidationError, match="after repayment has started"):
            self.service.edit_loan(
                self.loan.id, {'principal': Decimal('6000000')}, effective_from=date(2024, 3, 1)
            )

    def test_invalid_edits(self):
        """Test unknown and invalid edits are rejected"""
        with pytest.raises(ValidationError, match="No terms to change"):
            self.service.edit_loan(self.loan.id, {})
        with pytest.raises(ValidationError, match="cannot be edited: customer_id"):
            self.service.edit_loan(self.loan.id, {'customer_id': "X"}, effective_from=date(2025, 1, 20))
        with pytest.raises(ValidationError, match="only applies to floating"):
            self.service.edit_loan(self.loan.id, {'spread': Decimal('1')}, effective_from=date(2025, 1, 20))
        with pytest.raises(ValidationError, match="cannot be negative"):
            self.service.edit_loan(self.loan.id, {'annual_rate': Decimal('-1')}, effective_from=date(2025, 1, 20))

        assert self.service.get_loan(self.loan.id).current_version == 1

    def test_floating_rate_not_directly_editable(self, make_floating_application):
        """Test a floating loan's rate cannot be edited directly"""
        self.service.add_benchmark_rate("MCLR", Decimal('8.25'), date(2024, 1, 1))
        floating = self.service.create_loan(make_floating_application())

        with pytest.raises(ValidationError, match="follows its benchmark"):
            self.service.edit_loan(floating.id, {'annual_rate': Decimal('9')}, effective_from=date(2025, 1, 20))

    def test_missing_loan(self):
        """Test editing an unknown loan raises NotFoundError"""
        with pytest.raises(NotFoundError, match="Loan missing not found"):
            self.service.edit_loan("missing", {'annual_rate': Decimal('9')}, effective_from=date(2025, 1, 20))


class TestCharges:
    """Test adding charges to an existing loan"""

    def test_recurring_charge_applies_after_effective_date(self, service, make_application):
        """Test a new recurring charge applies from its effective date"""
        loan = service.create_loan(make_application())
        original = service.get_schedule(loan.id)
        insurance = Charge("INSURANCE", "Insurer", Decimal('500'), recurring=True)

        version = service.add_charge(loan.id, insurance, effective_from=date(2025, 1, 20))

        assert version.change_reason == ChangeReason.TERM_MODIFICATION
        assert version.schedule.emi == original.emi
        assert version.schedule.installments[11].charges == Decimal('0')
        assert version.schedule.installments[12].charges == Decimal('500')
        assert version.schedule.total_charges == Decimal('500') * (len(version.schedule) - 12)
        event_types = [e.event_type for e in service.get_audit_events(loan.id)]
        assert AuditEventType.CHARGE_ADDED in event_types

    def test_charge_validation(self, service, make_application):
        """Test invalid charges are rejected"""
        loan = service.create_loan(make_application())

        with pytest.raises(ValidationError, match="type and payee are required"):
            service.add_charge(loan.id, Charge("", "Lender", Decimal('100')), effective_from=date(2025, 1, 20))
        with pytest.raises(ValidationError, match="charge amount must be positive"):
            service.add_charge(loan.id, Charge("FEE", "Lender", Decimal('0')), effective_from=date(2025, 1, 20))


class TestDisbursementPhases:
    """Test phased disbursement changes"""

    def phased_application(self, make_application):
        return make_application(
            principal=Decimal('3000000'),
            disbursement_phases=[
                DisbursementPhase(1, date(2024, 1, 15), Decimal('1000000'), "Booking"),
                DisbursementPhase(2, date(2024, 4, 10), Decimal('2000000'), "Construction"),
            ]
        )

    def test_pre_emi_on_creation(self, service, make_application):
        """Test a phased loan starts with pre-EMI rows"""
        loan = service.create_loan(self.phased_application(make_application))
        schedule = service.get_schedule(loan.id)
        kfs = service.get_kfs(loan.id)

        assert schedule.installments[0].payment_type == PaymentType.PRE_EMI
        assert schedule.installments[3].payment_type == PaymentType.REGULAR
        assert kfs.disbursed_amount == Decimal('1000000')
        assert kfs.disbursement_summary[1] == "2. 2024-04-10 2,000,000.00 Construction"

    def test_add_phase_to_unphased_loan(self, service, make_application):
        """Test adding a tranche to a single-disbursement loan"""
        loan = service.create_loan(make_application())

        version = service.add_disbursement_phase(
            loan.id, DisbursementPhase(2, date(2024, 6, 10), Decimal('1000000'), "Top-up"),
            effective_from=date(2024, 3, 20)
        )

        updated = service.get_loan(loan.id)
        assert updated.principal == Decimal('6000000')
        assert [p.amount for p in updated.disbursement_phases] == [Decimal('5000000'), Decimal('1000000')]
        assert version.schedule.total_principal == Decimal('6000000')
        assert version.schedule.installments[4].disbursed == Decimal('1000000')
        assert version.schedule.installments[5].payment_type == PaymentType.REGULAR
        assert len(version.schedule) == 240

    def test_add_phase_rules(self, service, make_application):
        """Test new tranches must be future-dated and next in sequence"""
        loan = service.create_loan(make_application())

        with pytest.raises(ValidationError, match="must be dated after 2024-03-20"):
            service.add_disbursement_phase(
                loan.id, DisbursementPhase(2, date(2024, 3, 1), Decimal('1000')),
                effective_from=date(2024, 3, 20)
            )
        with pytest.raises(ValidationError, match="Next disbursement phase sequence is 2"):
            service.add_disbursement_phase(
                loan.id, DisbursementPhase(3, date(2024, 6, 1), Decimal('1000')),
                effective_from=date(2024, 3, 20)
            )

    def test_update_pending_phase(self, service, make_application):
        """Test changing the amount of a pending tranche"""
        loan = service.create_loan(self.phased_application(make_application))

        version = service.update_disbursement_phase(
            loan.id, 2, amount=Decimal('2500000'), effective_from=date(2024, 2, 20)
        )

        updated = service.get_loan(loan.id)
        assert updated.principal == Decimal('3500000')
        assert updated.disbursement_phases[1].description == "Construction"
        assert version.schedule.total_principal == Decimal('3500000')
        assert version.schedule.installments[2].disbursed == Decimal('2500000')

    def test_update_phase_rules(self, service, make_application):
        """Test disbursed and unknown tranches cannot be updated"""
        loan = service.create_loan(self.phased_application(make_application))

        with pytest.raises(ValidationError, match="was disbursed"):
            service.update_disbursement_phase(loan.id, 1, amount=Decimal('900000'),
                                              effective_from=date(2024, 2, 20))
        with pytest.raises(ValidationError, match="must stay dated after"):
            service.update_disbursement_phase(loan.id, 2, disbursement_date=date(2024, 2, 1),
                                              effective_from=date(2024, 2, 20))
        with pytest.raises(NotFoundError, match="phase 5 not found"):
            service.update_disbursement_phase(loan.id, 5, amount=Decimal('1000'),
                                              effective_from=date(2024, 2, 20))

    def test_unchanged_phase_is_no_op(self, service, make_application):
        """Test an unchanged tranche keeps the current version"""
        loan = service.create_loan(self.phased_application(make_application))

        version = service.update_disbursement_phase(
            loan.id, 2, amount=Decimal('2000000'), effective_from=date(2024, 2, 20)
        )
        assert version.version_number == 1

    def test_remove_pending_phase(self, service, make_application):
        """Test cancelling a pending tranche shrinks the principal and renumbers phases"""
        loan = service.create_loan(make_application(
            principal=Decimal('3000000'),
            disbursement_phases=[
                DisbursementPhase(1, date(2024, 1, 15), Decimal('1000000'), "Booking"),
                DisbursementPhase(2, date(2024, 4, 10), Decimal('1000000'), "Construction"),
                DisbursementPhase(3, date(2024, 7, 10), Decimal('1000000'), "Possession"),
            ]
        ))

        version = service.remove_disbursement_phase(loan.id, 2, effective_from=date(2024, 2, 20))

        updated = service.get_loan(loan.id)
        assert updated.principal == Decimal('2000000')
        assert [p.sequence for p in updated.disbursement_phases] == [1, 2]
        assert updated.disbursement_phases[1].description == "Possession"
        assert version.version_number == 2
        assert version.change_reason == ChangeReason.TERM_MODIFICATION
        assert version.schedule.total_principal == Decimal('2000000')
        assert version.schedule.installments[5].disbursed == Decimal('1000000')
        assert version.schedule.installments[5].payment_type == PaymentType.PRE_EMI
        assert version.schedule.installments[6].payment_type == PaymentType.REGULAR
        events = service.get_audit_events(loan.id)
        assert events[-1].event_type == AuditEventType.DISBURSEMENT_PHASE_REMOVED
        assert events[-1].metadata['description'] == "Construction"

    def test_remove_phase_rules(self, service, make_application):
        """Test disbursed and unknown tranches cannot be removed"""
        loan = service.create_loan(self.phased_application(make_application))

        with pytest.raises(ValidationError, match="was disbursed"):
            service.remove_disbursement_phase(loan.id, 1, effective_from=date(2024, 2, 20))
        with pytest.raises(NotFoundError, match="phase 5 not found"):
            service.remove_disbursement_phase(loan.id, 5, effective_from=date(2024, 2, 20))
        assert service.get_loan(loan.id).current_version == 1


class TestMoratorium:
    """Test adding a moratorium to a running loan"""

    @pytest.fixture(autouse=True)
    def setup(self, service, make_application):
        self.service = service
        self.loan = service.create_loan(make_application())

    def test_interest_only_moratorium(self):
        """Test adding an interest-only moratorium"""
        version = self.service.add_moratorium_period(
            self.loan.id, MoratoriumPeriod(14, 16, MoratoriumType.INTEREST_ONLY),
            effective_from=date(2025, 1, 20)
        )
        rows = version.schedule.installments

        assert version.change_reason == ChangeReason.CUSTOMER_REQUEST
        assert len(rows) == 240
        assert [r.payment_type for r in rows[13:16]] == [PaymentType.MORATORIUM_INTEREST_ONLY] * 3
        assert rows[12].payment_type == PaymentType.REGULAR
        assert version.kfs.moratorium_summary == ("Months 14-16: INTEREST_ONLY",)

    def test_full_moratorium_capitalizes(self):
        """Test adding a full moratorium capitalizes interest"""
        version = self.service.add_moratorium_period(
            self.loan.id, MoratoriumPeriod(13, 15, MoratoriumType.FULL),
            effective_from=date(2025, 1, 20)
        )
        rows = version.schedule.installments

        assert all(r.emi_amount == Decimal('0') for r in rows[12:15])
        assert rows[14].closing_balance > rows[12].opening_balance
        assert version.schedule.total_capitalized > Decimal('0')
        assert rows[-1].closing_balance == Decimal('0')

    def test_cannot_start_in_the_past(self):
        """Test a moratorium cannot cover settled installments"""
        with pytest.raises(ValidationError, match="must start after installment 12"):
            self.service.add_moratorium_period(
                self.loan.id, MoratoriumPeriod(10, 14, MoratoriumType.FULL),
                effective_from=date(2025, 1, 20)
            )

    def test_overlap_rejected(self):
        """Test an overlapping moratorium is rejected"""
        self.service.add_moratorium_period(
            self.loan.id, MoratoriumPeriod(14, 16, MoratoriumType.INTEREST_ONLY),
            effective_from=date(2025, 1, 20)
        )
        with pytest.raises(ValidationError, match="overlap"):
            self.service.add_moratorium_period(
                self.loan.id, MoratoriumPeriod(16, 18, MoratoriumType.FULL),
                effective_from=date(2025, 1, 20)
            )


class TestReads:
    """Test read access to versions"""

    def test_schedule_by_version(self, service, make_application):
        """Test reading schedules and statements by version"""
        loan = service.create_loan(make_application())
        service.edit_loan(loan.id, {'annual_rate': Decimal('9.5')}, effective_from=date(2025, 1, 20))

        assert service.get_schedule(loan.id, 1).current_rate == Decimal('8.5')
        assert service.get_schedule(loan.id).current_rate == Decimal('9.5')
        assert service.get_kfs(loan.id, 2).trigger_reason == ChangeReason.RATE_MODIFICATION

    def test_list_loans_by_status(self, service, make_application):
        """Test listing loans filtered by status"""
        first = service.create_loan(make_application())
        second = service.create_loan(make_application(customer_id="CUST002"))
        balance = service.get_schedule(second.id).installments[59].closing_balance
        service.record_prepayment(second.id, balance, date(2029, 1, 20))

        assert [loan.id for loan in service.list_loans()] == [first.id, second.id]
        assert [loan.id for loan in service.list_loans(LoanStatus.ACTIVE)] == [first.id]
        assert [loan.id for loan in service.list_loans(LoanStatus.CLOSED)] == [second.id]


class TestLoanStatus:
    """Test suspending, reactivating and closing loans"""

    @pytest.fixture(autouse=True)
    def setup(self, service, make_application):
        self.service = service
        self.loan = service.create_loan(make_application())

    def test_suspend_appends_version(self):
        """Test suspending a loan writes a version with the schedule unchanged"""
        version = self.service.change_status(self.loan.id, "suspended", effective_from=date(2024, 3, 20))

        assert version.version_number == 2
        assert version.change_reason == ChangeReason.MANUAL_CORRECTION
        assert version.description == "Status changed to SUSPENDED"
        assert version.schedule.emi == self.service.get_schedule(self.loan.id, 1).emi
        assert self.service.get_loan(self.loan.id).status == LoanStatus.SUSPENDED
        events = self.service.get_audit_events(self.loan.id)
        assert events[-1].event_type == AuditEventType.LOAN_STATUS_CHANGED
        assert events[-1].metadata['old_status'] == "ACTIVE"
        assert events[-1].metadata['new_status'] == "SUSPENDED"

    def test_suspended_loan_rejects_changes(self):
        """Test a suspended loan takes no prepayments or edits until reactivated"""
        self.service.change_status(self.loan.id, LoanStatus.SUSPENDED, effective_from=date(2024, 3, 20))

        with pytest.raises(ValidationError, match="is suspended"):
            self.service.record_prepayment(self.loan.id, Decimal('100000'), date(2024, 4, 20))
        with pytest.raises(ValidationError, match="is suspended"):
            self.service.edit_loan(self.loan.id, {'annual_rate': Decimal('9')}, effective_from=date(2024, 4, 20))

        self.service.change_status(self.loan.id, LoanStatus.ACTIVE, effective_from=date(2024, 4, 1))
        version = self.service.record_prepayment(self.loan.id, Decimal('100000'), date(2024, 4, 20))
        assert version.version_number == 4

    def test_same_status_is_no_op(self):
        """Test changing to the current status keeps the current version"""
        version = self.service.change_status(self.loan.id, LoanStatus.ACTIVE, effective_from=date(2024, 3, 20))
        assert version.version_number == 1

    def test_closed_loan_cannot_reopen(self):
        """Test closing is final"""
        self.service.change_status(self.loan.id, LoanStatus.CLOSED, effective_from=date(2024, 3, 20))
        events = self.service.get_audit_events(self.loan.id)
        assert AuditEventType.LOAN_CLOSED in [e.event_type for e in events]

        with pytest.raises(ValidationError, match="is closed and cannot become ACTIVE"):
            self.service.change_status(self.loan.id, LoanStatus.ACTIVE, effective_from=date(2024, 4, 1))

    def test_unknown_status(self):
        """Test an unrecognised status is rejected"""
        with pytest.raises(ValidationError):
            self.service.change_status(self.loan.id, "FROZEN", effective_from=date(2024, 3, 20))
