"""
Lending service: ties the price oracle, calculator, ledger and event
publisher together and runs the periodic background loops.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from cryptolend.config import PriceSource, Settings, settings
from cryptolend.logging import get_logger
from cryptolend.pricing import PriceOracle, PriceSnapshot, create_price_oracle
from cryptolend.shared import utcnow
from cryptolend.shared.errors import AccessDeniedError, LendingError
from . import metrics
from .calculator import compute_metrics
from .events import LoanEventPublisher
from .manager import LoanLedger
from .models import (
    Capability, Loan, LoanApplication, LoanStatus, PaymentResult, User, UserRole
)
from .storage import LedgerStorage, create_storage

logger = get_logger(__name__)


class LendingService:
    """Service for loan origination, repayment and administration."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        storage: Optional[LedgerStorage] = None,
        oracle: Optional[PriceOracle] = None,
        publisher: Optional[LoanEventPublisher] = None,
    ):
        self.config = config or settings
        self.storage = storage or create_storage(self.config.database.url, self.config.database.echo)
        self.oracle = oracle or create_price_oracle(self.config.price_feed)
        self.publisher = publisher or LoanEventPublisher(self.config.kafka)
        self.ledger = LoanLedger(self.storage, self.config.lending)

        # Service state
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self.stats: Dict[str, Any] = {
            "loans_created": 0,
            "payments_applied": 0,
            "payments_rejected": 0,
            "last_price_refresh": None,
            "last_overdue_sweep": None,
        }

    async def start(self):
        """Start the lending service and its background loops."""
        logger.info("Starting Lending service...")

        await self.publisher.start()
        if await self.oracle.refresh():
            self.stats["last_price_refresh"] = utcnow()

        self.running = True

        if self.config.price_feed.source != PriceSource.STATIC:
            self._tasks.append(asyncio.create_task(self.price_refresh_loop()))
        if self.config.lending.overdue_sweep_enabled:
            self._tasks.append(asyncio.create_task(self.overdue_sweep_loop()))

    async def stop(self):
        """Stop the lending service."""
        logger.info("Stopping Lending service...")
        self.running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.publisher.stop()

    # Background loops

    async def price_refresh_loop(self):
        """Keep the price snapshot fresh."""
        while self.running:
            await asyncio.sleep(self.config.price_feed.refresh_interval)
            if await self.oracle.refresh():
                self.stats["last_price_refresh"] = utcnow()
            else:
                logger.warning("Price refresh failed, keeping previous snapshot")

    async def overdue_sweep_loop(self):
        """Periodically default loans past their due date."""
        while self.running:
            try:
                await self.run_overdue_sweep()
            except LendingError as e:
                logger.error(f"Overdue sweep failed: {e}")
            await asyncio.sleep(self.config.lending.overdue_check_interval)

    async def run_overdue_sweep(self, now: Optional[datetime] = None) -> List[Loan]:
        defaulted = self.ledger.mark_overdue_loans(now)
        for loan in defaulted:
            metrics.status_transitions.labels(
                from_status=LoanStatus.ACTIVE.value, to_status=LoanStatus.DEFAULTED.value
            ).inc()
            await self.publisher.status_changed(loan, LoanStatus.ACTIVE)

        self.stats["last_overdue_sweep"] = utcnow()
        if defaulted:
            logger.info(f"Overdue sweep defaulted {len(defaulted)} loan(s)")
        return defaulted

    # Prices

    def price_snapshot(self) -> PriceSnapshot:
        snapshot = self.oracle.snapshot()
        metrics.price_snapshot_age.set((utcnow() - snapshot.captured_at).total_seconds())
        return snapshot

    # Users

    def identify(self, user_id: str, email: Optional[str] = None) -> User:
        """Register the caller the identity provider vouched for.

        The role follows the configured admin list on every call, so removing
        an id from the list demotes that user.
        """
        role = UserRole.ADMIN if user_id in self.config.lending.admin_user_ids else UserRole.USER
        return self.ledger.upsert_user(user_id, email=email, role=role)

    def require_capability(self, user_id: str, capability: Capability) -> User:
        user = self.ledger.get_user(user_id)
        if not user.has_capability(capability):
            raise AccessDeniedError(user_id, capability.value)
        return user

    # Loans

    async def apply_for_loan(self, user_id: str, application: LoanApplication) -> Loan:
        """Price the collateral, compute metrics and originate the loan."""
        rate = application.interest_rate
        if rate is None:
            rate = self.config.lending.default_interest_rate

        try:
            loan_metrics = compute_metrics(
                application.principal,
                application.collateral_amount,
                application.collateral_type,
                application.term_days,
                rate,
                self.price_snapshot(),
            )
            loan = self.ledger.create_loan(user_id, application, loan_metrics)
        except LendingError as e:
            metrics.loan_applications_rejected.labels(reason=e.kind).inc()
            raise

        metrics.loans_created.labels(collateral_type=loan.collateral_type).inc()
        self.stats["loans_created"] += 1
        await self.publisher.loan_created(loan)
        return loan

    async def make_payment(self, loan_id: str, user_id: str, amount: float) -> PaymentResult:
        """Apply a payment to one of the user's loans."""
        try:
            result = self.ledger.apply_payment(loan_id, user_id, amount)
        except LendingError as e:
            metrics.payments_rejected.labels(reason=e.kind).inc()
            self.stats["payments_rejected"] += 1
            raise

        metrics.payments_applied.inc()
        metrics.payment_volume.inc(amount)
        self.stats["payments_applied"] += 1
        if result.loan_status == LoanStatus.COMPLETED:
            metrics.status_transitions.labels(
                from_status=LoanStatus.ACTIVE.value, to_status=LoanStatus.COMPLETED.value
            ).inc()

        await self.publisher.payment_applied(loan_id, user_id, result)
        return result

    async def approve_loan(self, loan_id: str) -> Loan:
        return await self._status_change(self.ledger.approve_loan, loan_id, LoanStatus.PENDING)

    async def reject_loan(self, loan_id: str) -> Loan:
        return await self._status_change(self.ledger.reject_loan, loan_id, LoanStatus.PENDING)

    async def mark_defaulted(self, loan_id: str) -> Loan:
        return await self._status_change(self.ledger.mark_defaulted, loan_id, LoanStatus.ACTIVE)

    async def _status_change(self, action, loan_id: str, previous: LoanStatus) -> Loan:
        loan = action(loan_id)
        metrics.status_transitions.labels(
            from_status=previous.value, to_status=loan.status.value
        ).inc()
        await self.publisher.status_changed(loan, previous)
        return loan

    def get_current_state(self) -> Dict[str, Any]:
        """Service status summary."""
        snapshot = self.oracle.snapshot()
        return {
            **self.stats,
            "running": self.running,
            "price_source": snapshot.source,
            "priced_assets": sorted(snapshot.prices),
            "kafka_enabled": self.publisher.enabled,
            "manual_approval": self.config.lending.require_manual_approval,
        }
