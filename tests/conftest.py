"""
Shared fixtures for the loan servicing test suite
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.config import LoanServicingConfig
from loan_servicing.models import (
    CompoundingBasis, FloatingStrategy, LoanApplication, ProductType, RateType
)
from loan_servicing.schedule import ScheduleGenerator
from loan_servicing.service import LoanService
from loan_servicing.storage import InMemoryStorage


@pytest.fixture
def config():
    return LoanServicingConfig(database_url="memory://", reset_workers=4, lock_timeout_seconds=10.0)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def generator(config):
    return ScheduleGenerator(config)


@pytest.fixture
def service(storage, config):
    return LoanService(storage=storage, config=config)


@pytest.fixture
def make_application():
    """Factory for a 5,000,000 home loan at 8.5% over 240 months"""
    def factory(**overrides):
        terms = dict(
            customer_id="CUST001",
            product_type=ProductType.HOME,
            principal=Decimal('5000000'),
            tenure_months=240,
            issue_date=date(2024, 1, 15),
            emi_start_date=date(2024, 2, 15),
            rate_type=RateType.FIXED,
            annual_rate=Decimal('8.5'),
            compounding=CompoundingBasis.MONTHLY,
        )
        terms.update(overrides)
        return LoanApplication(**terms)
    return factory


@pytest.fixture
def make_floating_application(make_application):
    """Factory for the same home loan priced at MCLR + 0.25%"""
    def factory(**overrides):
        terms = dict(
            rate_type=RateType.FLOATING,
            annual_rate=None,
            benchmark_name="MCLR",
            spread=Decimal('0.25'),
            floating_strategy=FloatingStrategy.EMI_CONSTANT,
        )
        terms.update(overrides)
        return make_application(**terms)
    return factory
