"""
Unit tests for Lending Service.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from cryptolend.config import PriceSource
from cryptolend.loan_manager.models import (
    Capability, LoanApplication, LoanStatus, UserRole
)
from cryptolend.loan_manager.service import LendingService
from cryptolend.loan_manager.storage import LedgerStorage, LoanRecord
from cryptolend.pricing import CoinGeckoPriceOracle, StaticPriceOracle
from cryptolend.shared import utcnow
from cryptolend.shared.errors import (
    AccessDeniedError, IneligibleLoanError, OverpaymentError,
    UnknownCollateralError
)


def make_application(**overrides):
    fields = {
        "principal": 5000.0,
        "collateral_type": "BTC",
        "collateral_amount": 0.5,
        "term_days": 365,
        "purpose": "Working capital",
    }
    fields.update(overrides)
    return LoanApplication(**fields)


class TestLendingService:
    """Test LendingService functionality."""

    @pytest.fixture
    def service(self, service_settings, publisher):
        """Create LendingService with in-memory storage and static prices."""
        return LendingService(
            config=service_settings,
            storage=LedgerStorage("sqlite://"),
            oracle=StaticPriceOracle(),
            publisher=publisher,
        )

    @pytest.fixture
    def user_id(self, service):
        service.identify("user-1", "borrower@example.com")
        return "user-1"

    def test_initialization(self, service):
        """Test service initialization."""
        assert service.running is False
        assert service.ledger.storage is service.storage
        assert service.stats["loans_created"] == 0

    async def test_start_and_stop(self, service, publisher):
        await service.start()
        assert service.running is True
        publisher.start.assert_awaited_once()
        # Static prices and no sweep: nothing to run in the background
        assert service._tasks == []

        await service.stop()
        assert service.running is False
        publisher.stop.assert_awaited_once()

    async def test_start_with_background_loops(self, service_settings, publisher):
        config = service_settings.model_copy(update={
            "lending": service_settings.lending.model_copy(update={"overdue_sweep_enabled": True}),
            "price_feed": service_settings.price_feed.model_copy(update={"source": PriceSource.COINGECKO}),
        })
        oracle = CoinGeckoPriceOracle(config.price_feed)
        oracle.refresh = AsyncMock(return_value=False)
        service = LendingService(config=config, storage=LedgerStorage("sqlite://"),
                                 oracle=oracle, publisher=publisher)

        await service.start()
        assert len(service._tasks) == 2
        assert service.stats["last_price_refresh"] is None

        await service.stop()
        assert service._tasks == []

    def test_identify_assigns_admin_role(self, service):
        assert service.identify("admin-1").role == UserRole.ADMIN
        assert service.identify("user-9").role == UserRole.USER

    def test_require_capability(self, service, user_id):
        service.identify("admin-1")
        assert service.require_capability("admin-1", Capability.MANAGE_LOANS).id == "admin-1"

        with pytest.raises(AccessDeniedError):
            service.require_capability(user_id, Capability.MANAGE_LOANS)

    def test_removed_admin_is_demoted(self, service, service_settings, publisher):
        """Dropping an id from the admin list revokes its capabilities on the next call."""
        service.identify("admin-1")
        service.require_capability("admin-1", Capability.MANAGE_LOANS)

        config = service_settings.model_copy(update={
            "lending": service_settings.lending.model_copy(update={"admin_user_ids": []}),
        })
        restarted = LendingService(config=config, storage=service.storage,
                                   oracle=StaticPriceOracle(), publisher=publisher)

        assert restarted.identify("admin-1").role == UserRole.USER
        with pytest.raises(AccessDeniedError):
            restarted.require_capability("admin-1", Capability.MANAGE_LOANS)
        with pytest.raises(AccessDeniedError):
            restarted.require_capability("admin-1", Capability.VIEW_PLATFORM_STATS)

    def test_shared_email_does_not_block_second_user(self, service, user_id):
        other = service.identify("user-2", "borrower@example.com")
        assert other.id == "user-2"
        assert other.email is None
        assert service.identify(user_id, "borrower@example.com").email == "borrower@example.com"

    async def test_apply_for_loan(self, service, user_id, publisher):
        loan = await service.apply_for_loan(user_id, make_application())

        assert loan.status == LoanStatus.ACTIVE
        assert loan.interest_rate == 8.5
        assert loan.total_repayment == 5425.0
        assert service.stats["loans_created"] == 1
        publisher.loan_created.assert_awaited_once_with(loan)

    async def test_apply_with_explicit_rate(self, service, user_id):
        loan = await service.apply_for_loan(user_id, make_application(interest_rate=0.0))
        assert loan.total_repayment == 5000.0

    async def test_unknown_collateral_creates_nothing(self, service, user_id, publisher):
        with pytest.raises(UnknownCollateralError):
            await service.apply_for_loan(user_id, make_application(collateral_type="DOGE"))

        with service.storage.transaction("count") as session:
            assert session.query(LoanRecord).count() == 0
        assert service.ledger.list_user_transactions(user_id) == []
        publisher.loan_created.assert_not_awaited()

    async def test_insufficient_collateral(self, service, user_id):
        with pytest.raises(IneligibleLoanError):
            await service.apply_for_loan(user_id, make_application(principal=50000.0))
        assert service.stats["loans_created"] == 0

    async def test_make_payment(self, service, user_id, publisher):
        loan = await service.apply_for_loan(user_id, make_application())

        result = await service.make_payment(loan.id, user_id, 5425.0)

        assert result.loan_status == LoanStatus.COMPLETED
        assert service.stats["payments_applied"] == 1
        publisher.payment_applied.assert_awaited_once_with(loan.id, user_id, result)

    async def test_rejected_payment_is_counted(self, service, user_id, publisher):
        loan = await service.apply_for_loan(user_id, make_application())

        with pytest.raises(OverpaymentError):
            await service.make_payment(loan.id, user_id, 6000.0)

        assert service.stats["payments_rejected"] == 1
        publisher.payment_applied.assert_not_awaited()

    async def test_status_changes_publish_events(self, service_settings, publisher):
        config = service_settings.model_copy(update={
            "lending": service_settings.lending.model_copy(update={"require_manual_approval": True}),
        })
        service = LendingService(config=config, storage=LedgerStorage("sqlite://"),
                                 oracle=StaticPriceOracle(), publisher=publisher)
        service.identify("user-1")

        first = await service.apply_for_loan("user-1", make_application())
        second = await service.apply_for_loan("user-1", make_application())
        assert first.status == LoanStatus.PENDING

        approved = await service.approve_loan(first.id)
        rejected = await service.reject_loan(second.id)
        defaulted = await service.mark_defaulted(first.id)

        assert approved.status == LoanStatus.ACTIVE
        assert rejected.status == LoanStatus.REJECTED
        assert defaulted.status == LoanStatus.DEFAULTED
        assert publisher.status_changed.await_count == 3
        publisher.status_changed.assert_any_await(rejected, LoanStatus.PENDING)
        publisher.status_changed.assert_any_await(defaulted, LoanStatus.ACTIVE)

    async def test_overdue_sweep(self, service, user_id, publisher):
        loan = await service.apply_for_loan(user_id, make_application(term_days=30))

        assert await service.run_overdue_sweep() == []
        defaulted = await service.run_overdue_sweep(now=utcnow() + timedelta(days=31))

        assert [d.id for d in defaulted] == [loan.id]
        publisher.status_changed.assert_awaited_once_with(defaulted[0], LoanStatus.ACTIVE)
        assert service.stats["last_overdue_sweep"] is not None

    def test_current_state(self, service):
        state = service.get_current_state()

        assert state["running"] is False
        assert state["price_source"] == "static"
        assert "BTC" in state["priced_assets"]
        assert state["kafka_enabled"] is False
        assert state["manual_approval"] is False
