"""Shared pytest fixtures and configuration."""

from unittest.mock import AsyncMock

import pytest

from cryptolend.config import (
    DatabaseSettings, KafkaSettings, LendingSettings, PriceFeedSettings,
    PriceSource, Settings
)
from cryptolend.loan_manager.calculator import compute_metrics
from cryptolend.loan_manager.manager import LoanLedger
from cryptolend.loan_manager.models import LoanApplication
from cryptolend.loan_manager.storage import LedgerStorage
from cryptolend.pricing import StaticPriceOracle


@pytest.fixture
def lending_config():
    """Lending rules with auto-activation."""
    return LendingSettings(
        max_ltv=0.75,
        max_payment_amount=100000.0,
        require_manual_approval=False,
        first_payment_days=30,
        admin_user_ids=["admin-1"],
        overdue_sweep_enabled=False,
    )


@pytest.fixture
def storage():
    """In-memory ledger storage, fresh per test."""
    return LedgerStorage("sqlite://")


@pytest.fixture
def ledger(storage, lending_config):
    return LoanLedger(storage, lending_config)


@pytest.fixture
def prices():
    """Reference price snapshot (BTC at 43250)."""
    return StaticPriceOracle().snapshot()


@pytest.fixture
def borrower(ledger):
    return ledger.upsert_user("user-1", email="borrower@example.com", first_name="Ada")


@pytest.fixture
def open_loan(ledger, borrower, prices):
    """Factory that originates a loan for the borrower.

    The defaults give a total repayment of exactly 5425.00.
    """
    def _open(
        principal=5000.0,
        collateral_amount=0.5,
        collateral_type="BTC",
        term_days=365,
        rate=8.5,
        user_id=None,
        now=None,
        target=None,
    ):
        application = LoanApplication(
            principal=principal,
            collateral_type=collateral_type,
            collateral_amount=collateral_amount,
            term_days=term_days,
            purpose="Working capital",
            interest_rate=rate,
        )
        metrics = compute_metrics(
            principal, collateral_amount, collateral_type, term_days, rate, prices
        )
        return (target or ledger).create_loan(user_id or borrower.id, application, metrics, now=now)

    return _open


@pytest.fixture
def service_settings(lending_config):
    """Full settings for a service backed by an in-memory database."""
    return Settings(
        database=DatabaseSettings(url="sqlite://"),
        lending=lending_config,
        price_feed=PriceFeedSettings(source=PriceSource.STATIC),
        kafka=KafkaSettings(enabled=False),
    )


@pytest.fixture
def publisher():
    """Event publisher stand-in recording calls."""
    mock = AsyncMock()
    mock.enabled = False
    return mock
