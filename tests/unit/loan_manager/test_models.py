"""
Unit tests for Loan Manager models.
"""

import pytest
from pydantic import ValidationError

from cryptolend.loan_manager.models import (
    ALLOWED_TRANSITIONS, Capability, LoanApplication, LoanMetrics, LoanStatus,
    PaymentRequest, User, UserRole, can_transition
)


class TestLoanApplication:
    """Test LoanApplication validation."""

    def application(self, **overrides):
        fields = {
            "principal": 10000.0,
            "collateral_type": "btc",
            "collateral_amount": 0.5,
            "term_days": 90,
            "purpose": "Working capital",
        }
        fields.update(overrides)
        return LoanApplication(**fields)

    def test_defaults(self):
        application = self.application()
        assert application.currency == "USDT"
        assert application.interest_rate is None

    def test_symbols_are_uppercased(self):
        application = self.application(collateral_type=" eth ", currency="usdc")
        assert application.collateral_type == "ETH"
        assert application.currency == "USDC"

    def test_unlisted_collateral_is_accepted(self):
        """Price resolution decides whether collateral is known."""
        assert self.application(collateral_type="DOGE").collateral_type == "DOGE"

    @pytest.mark.parametrize("field,value", [
        ("principal", 99.99),
        ("principal", 100000.01),
        ("term_days", 29),
        ("term_days", 366),
        ("collateral_amount", 0.0),
        ("purpose", ""),
        ("interest_rate", -0.5),
    ])
    def test_out_of_bounds(self, field, value):
        with pytest.raises(ValidationError):
            self.application(**{field: value})

    def test_bounds_are_inclusive(self):
        application = self.application(principal=100.0, term_days=365, collateral_amount=0.001)
        assert application.principal == 100.0


class TestPaymentRequest:
    """Test PaymentRequest validation."""

    @pytest.mark.parametrize("amount", [0, -5, float("nan"), float("inf")])
    def test_rejects_invalid_amounts(self, amount):
        with pytest.raises(ValidationError):
            PaymentRequest(amount=amount)

    def test_accepts_positive_amount(self):
        assert PaymentRequest(amount=12.5).amount == 12.5


class TestStateMachine:
    """Test loan status transitions."""

    @pytest.mark.parametrize("current,target", [
        (LoanStatus.PENDING, LoanStatus.ACTIVE),
        (LoanStatus.PENDING, LoanStatus.REJECTED),
        (LoanStatus.ACTIVE, LoanStatus.COMPLETED),
        (LoanStatus.ACTIVE, LoanStatus.DEFAULTED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (LoanStatus.ACTIVE, LoanStatus.PENDING),
        (LoanStatus.PENDING, LoanStatus.COMPLETED),
        (LoanStatus.COMPLETED, LoanStatus.ACTIVE),
        (LoanStatus.DEFAULTED, LoanStatus.ACTIVE),
        (LoanStatus.REJECTED, LoanStatus.ACTIVE),
    ])
    def test_forbidden(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_states(self):
        terminal = {status for status, targets in ALLOWED_TRANSITIONS.items() if not targets}
        assert terminal == {LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.REJECTED}


class TestUserCapabilities:
    """Test role based capabilities."""

    def test_user_can_only_apply(self):
        user = User(id="u1")
        assert user.has_capability(Capability.APPLY_FOR_LOAN)
        assert not user.has_capability(Capability.MANAGE_LOANS)
        assert not user.has_capability(Capability.VIEW_PLATFORM_STATS)

    def test_admin_has_everything(self):
        admin = User(id="a1", email="someone@example.com", role=UserRole.ADMIN)
        assert all(admin.has_capability(c) for c in Capability)

    def test_admin_email_grants_nothing(self):
        user = User(id="u2", email="admin@cryptolend.io")
        assert not user.has_capability(Capability.MANAGE_USERS)

    def test_suspended_user_cannot_apply(self):
        user = User(id="u3", suspended=True)
        assert not user.has_capability(Capability.APPLY_FOR_LOAN)


def test_loan_metrics_frozen():
    metrics = LoanMetrics(
        unit_price=1.0, collateral_value=1.0, ltv_ratio=0.5, liquidation_price=0.6,
        total_interest=0.0, total_repayment=0.5, monthly_payment=0.5, interest_rate=0.0,
    )
    with pytest.raises(ValidationError):
        metrics.ltv_ratio = 0.1
