"""
Core Loan Ledger implementation.

Owns the loan state machine and the append-only transaction ledger. Payments
and status changes on one loan are serialized twice over: an in-process lock
per loan id, and a row lock on the loan inside the database transaction.
"""

import math
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from cryptolend.config import LendingSettings, settings
from cryptolend.logging import get_logger
from cryptolend.pricing.models import PriceSnapshot
from cryptolend.shared import utcnow
from cryptolend.shared.errors import (
    AccessDeniedError, IneligibleLoanError, InvalidInputError,
    InvalidLoanStateError, LoanNotFoundError, OverpaymentError,
    PersistenceError, UserNotFoundError
)
from .calculator import collateral_value
from .models import (
    Capability, Loan, LoanApplication, LoanBalance, LoanMetrics, LoanStatus,
    LoanWithUser, PaymentResult, PlatformStats, Transaction,
    TransactionStatus, TransactionType, User, UserRole, UserStats,
    UserWithStats, can_transition
)
from .storage import LedgerStorage, LoanRecord, TransactionRecord, UserRecord

logger = get_logger(__name__)

# Tolerance for rounding when comparing payments to the repayment target
PAYMENT_EPSILON = 0.01


class LoanLockRegistry:
    """Hands out one lock per loan id; idle locks are dropped."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, loan_id: str):
        with self._guard:
            entry = self._locks.setdefault(loan_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[loan_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class LoanLedger:
    """Manages loan creation, payment reconciliation and status transitions."""

    def __init__(self, storage: LedgerStorage, config: Optional[LendingSettings] = None):
        self.storage = storage
        self.config = config or settings.lending
        self.locks = LoanLockRegistry()

    # Users

    def upsert_user(
        self,
        user_id: str,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: Optional[UserRole] = None,
    ) -> User:
        """Create a user or refresh the profile fields the identity provider sent.

        An email already held by another user is not taken over; the rest of
        the profile is still applied.
        """
        try:
            return self._upsert_user(user_id, email, first_name, last_name, role)
        except PersistenceError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            # A concurrent request inserted the same id or claimed the email first
            logger.info("Retrying user upsert after conflict", user_id=user_id)
            return self._upsert_user(user_id, email, first_name, last_name, role)

    def _upsert_user(self, user_id, email, first_name, last_name, role) -> User:
        now = utcnow()
        with self.storage.transaction("upsert_user") as session:
            if email is not None:
                owner = self.storage.get_user_by_email(session, email)
                if owner is not None and owner.id != user_id:
                    logger.warning("Email already registered to another user", user_id=user_id)
                    email = None

            record = self.storage.get_user(session, user_id)
            if record is None:
                record = UserRecord(
                    id=user_id,
                    role=(role or UserRole.USER).value,
                    suspended=False,
                    created_at=now,
                )
                session.add(record)
            elif role is not None:
                record.role = role.value

            record.email = email if email is not None else record.email
            record.first_name = first_name if first_name is not None else record.first_name
            record.last_name = last_name if last_name is not None else record.last_name
            record.updated_at = now

        return User.model_validate(record)

    def get_user(self, user_id: str) -> User:
        with self.storage.transaction("get_user") as session:
            record = self.storage.get_user(session, user_id)
            if record is None:
                raise UserNotFoundError(user_id)
            return User.model_validate(record)

    def suspend_user(self, user_id: str) -> User:
        """Stop a user from taking new loans. Existing loans are unaffected."""
        with self.storage.transaction("suspend_user") as session:
            record = self.storage.get_user(session, user_id)
            if record is None:
                raise UserNotFoundError(user_id)
            record.suspended = True
            record.updated_at = utcnow()

        logger.info("User suspended", user_id=user_id)
        return User.model_validate(record)

    # Origination

    def create_loan(
        self,
        user_id: str,
        application: LoanApplication,
        metrics: LoanMetrics,
        now: Optional[datetime] = None,
    ) -> Loan:
        """Persist a loan together with its disbursement and collateral deposit.

        The three rows share one database transaction.
        """
        if metrics.ltv_ratio > self.config.max_ltv:
            raise IneligibleLoanError(metrics.ltv_ratio, self.config.max_ltv)

        now = now or utcnow()
        status = LoanStatus.PENDING if self.config.require_manual_approval else LoanStatus.ACTIVE
        total_interest = round(metrics.total_interest, 2)

        with self.storage.transaction("create_loan") as session:
            user = self.storage.get_user(session, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            if not User.model_validate(user).has_capability(Capability.APPLY_FOR_LOAN):
                raise AccessDeniedError(user_id, Capability.APPLY_FOR_LOAN.value)

            loan = LoanRecord(
                user_id=user_id,
                principal=application.principal,
                currency=application.currency,
                collateral_type=application.collateral_type,
                collateral_amount=application.collateral_amount,
                interest_rate=metrics.interest_rate,
                term_days=application.term_days,
                purpose=application.purpose,
                status=status.value,
                monthly_payment=round(metrics.monthly_payment, 2),
                total_interest=total_interest,
                total_repayment=round(application.principal + total_interest, 2),
                collateral_value=round(metrics.collateral_value, 2),
                ltv_ratio=metrics.ltv_ratio,
                liquidation_price=metrics.liquidation_price,
                due_date=now + timedelta(days=application.term_days),
                next_payment_date=now + timedelta(days=self.config.first_payment_days),
                created_at=now,
                updated_at=now,
            )
            session.add(loan)
            session.flush()

            session.add_all([
                TransactionRecord(
                    user_id=user_id,
                    loan_id=loan.id,
                    type=TransactionType.DISBURSEMENT.value,
                    amount=application.principal,
                    currency=application.currency,
                    status=TransactionStatus.COMPLETED.value,
                    created_at=now,
                ),
                TransactionRecord(
                    user_id=user_id,
                    loan_id=loan.id,
                    type=TransactionType.COLLATERAL_DEPOSIT.value,
                    amount=application.collateral_amount,
                    currency=application.collateral_type,
                    status=TransactionStatus.COMPLETED.value,
                    created_at=now,
                ),
            ])

        logger.info(
            "Loan created",
            loan_id=loan.id,
            user_id=user_id,
            principal=application.principal,
            collateral_type=application.collateral_type,
            ltv_ratio=round(metrics.ltv_ratio, 4),
            status=status.value,
        )
        return Loan.model_validate(loan)

    # Repayment

    def _validate_payment_amount(self, amount: float) -> None:
        if not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount <= 0:
            raise InvalidInputError.for_field("amount", "Invalid payment amount")
        if amount > self.config.max_payment_amount:
            raise InvalidInputError.for_field("amount", "Payment amount exceeds maximum limit")

    @staticmethod
    def _total_paid(transactions: List[TransactionRecord]) -> float:
        return sum(
            t.amount for t in transactions
            if t.type == TransactionType.PAYMENT.value
            and t.status != TransactionStatus.FAILED.value
        )

    def apply_payment(self, loan_id: str, user_id: str, amount: float) -> PaymentResult:
        """Record a payment and complete the loan once it is paid off.

        Raises:
            InvalidInputError: amount not finite, not positive, or above the ceiling
            LoanNotFoundError: loan missing or owned by another user
            InvalidLoanStateError: loan is not active
            OverpaymentError: amount exceeds the remaining balance
        """
        self._validate_payment_amount(amount)

        with self.locks.hold(loan_id):
            with self.storage.transaction("apply_payment") as session:
                loan = self.storage.get_loan(session, loan_id, for_update=True)
                if loan is None or loan.user_id != user_id:
                    raise LoanNotFoundError(loan_id)
                if loan.status != LoanStatus.ACTIVE.value:
                    raise InvalidLoanStateError(loan_id, loan.status, "make a payment on")

                history = self.storage.list_transactions(session, loan_id=loan_id)
                total_paid = self._total_paid(history)
                remaining_balance = loan.total_repayment - total_paid

                if amount > remaining_balance + PAYMENT_EPSILON:
                    logger.warning(
                        "Payment rejected: exceeds remaining balance",
                        loan_id=loan_id,
                        amount=amount,
                        remaining_balance=round(remaining_balance, 2),
                    )
                    raise OverpaymentError(loan_id, amount, remaining_balance)

                now = utcnow()
                payment = TransactionRecord(
                    user_id=user_id,
                    loan_id=loan_id,
                    type=TransactionType.PAYMENT.value,
                    amount=amount,
                    currency=loan.currency,
                    status=TransactionStatus.COMPLETED.value,
                    created_at=now,
                )
                session.add(payment)

                new_remaining_balance = remaining_balance - amount
                if new_remaining_balance <= PAYMENT_EPSILON:
                    self._transition(loan, LoanStatus.COMPLETED, "complete", now)
                    loan.next_payment_date = None

                session.flush()
                status = LoanStatus(loan.status)

        logger.info(
            "Payment applied",
            loan_id=loan_id,
            user_id=user_id,
            amount=amount,
            remaining_balance=round(max(0.0, new_remaining_balance), 2),
            status=status.value,
        )
        if status == LoanStatus.COMPLETED:
            logger.info("Loan fully repaid", loan_id=loan_id, user_id=user_id)

        return PaymentResult(
            transaction=Transaction.model_validate(payment),
            remaining_balance=max(0.0, new_remaining_balance),
            loan_status=status,
        )

    # Status transitions

    @staticmethod
    def _transition(loan: LoanRecord, target: LoanStatus, action: str, now: datetime) -> LoanStatus:
        current = LoanStatus(loan.status)
        if not can_transition(current, target):
            raise InvalidLoanStateError(loan.id, current.value, action)
        loan.status = target.value
        loan.updated_at = now
        return current

    def _change_status(self, loan_id: str, target: LoanStatus, action: str) -> Loan:
        with self.locks.hold(loan_id):
            with self.storage.transaction(f"{action}_loan") as session:
                loan = self.storage.get_loan(session, loan_id, for_update=True)
                if loan is None:
                    raise LoanNotFoundError(loan_id)
                previous = self._transition(loan, target, action, utcnow())

        logger.info(
            "Loan status changed",
            loan_id=loan_id,
            from_status=previous.value,
            to_status=target.value,
        )
        return Loan.model_validate(loan)

    def approve_loan(self, loan_id: str) -> Loan:
        """pending -> active."""
        return self._change_status(loan_id, LoanStatus.ACTIVE, "approve")

    def reject_loan(self, loan_id: str) -> Loan:
        """pending -> rejected. Opening transactions are left untouched."""
        return self._change_status(loan_id, LoanStatus.REJECTED, "reject")

    def mark_defaulted(self, loan_id: str) -> Loan:
        """active -> defaulted."""
        return self._change_status(loan_id, LoanStatus.DEFAULTED, "default")

    def mark_overdue_loans(self, now: Optional[datetime] = None) -> List[Loan]:
        """Default every active loan whose due date has passed."""
        now = now or utcnow()
        with self.storage.transaction("list_overdue_loans") as session:
            candidates = [loan.id for loan in self.storage.list_overdue_loans(session, now)]

        defaulted = []
        for loan_id in candidates:
            with self.locks.hold(loan_id):
                with self.storage.transaction("default_loan") as session:
                    loan = self.storage.get_loan(session, loan_id, for_update=True)
                    # Paid off or changed since the scan
                    if loan.status != LoanStatus.ACTIVE.value or loan.due_date >= now:
                        continue
                    self._transition(loan, LoanStatus.DEFAULTED, "default", now)

            logger.warning("Loan defaulted: past due date", loan_id=loan_id, user_id=loan.user_id)
            defaulted.append(Loan.model_validate(loan))

        return defaulted

    # Reads

    def _owned_loan(self, session, loan_id: str, user_id: str) -> LoanRecord:
        loan = self.storage.get_loan(session, loan_id)
        if loan is None or loan.user_id != user_id:
            raise LoanNotFoundError(loan_id)
        return loan

    def get_loan(self, loan_id: str, user_id: str) -> Loan:
        with self.storage.transaction("get_loan") as session:
            return Loan.model_validate(self._owned_loan(session, loan_id, user_id))

    def list_user_loans(self, user_id: str) -> List[Loan]:
        with self.storage.transaction("list_user_loans") as session:
            return [Loan.model_validate(r) for r in self.storage.list_loans(session, user_id=user_id)]

    def get_loan_transactions(self, loan_id: str, user_id: str) -> List[Transaction]:
        with self.storage.transaction("get_loan_transactions") as session:
            self._owned_loan(session, loan_id, user_id)
            records = self.storage.list_transactions(session, loan_id=loan_id)
            return [Transaction.model_validate(r) for r in records]

    def list_user_transactions(self, user_id: str, limit: int = 10) -> List[Transaction]:
        with self.storage.transaction("list_user_transactions") as session:
            records = self.storage.list_transactions(session, user_id=user_id, limit=limit)
            return [Transaction.model_validate(r) for r in records]

    def get_loan_balance(self, loan_id: str, user_id: str) -> LoanBalance:
        with self.storage.transaction("get_loan_balance") as session:
            loan = self._owned_loan(session, loan_id, user_id)
            total_paid = self._total_paid(self.storage.list_transactions(session, loan_id=loan_id))
            return LoanBalance(
                loan_id=loan.id,
                status=LoanStatus(loan.status),
                total_repayment=loan.total_repayment,
                total_paid=total_paid,
                remaining_balance=max(0.0, loan.total_repayment - total_paid),
            )

    def get_user_stats(self, user_id: str, prices: PriceSnapshot) -> UserStats:
        """Totals over the user's active loans, collateral valued at current prices."""
        with self.storage.transaction("get_user_stats") as session:
            loans = self.storage.list_loans(session, user_id=user_id, status=LoanStatus.ACTIVE)

        return UserStats(
            total_borrowed=round(sum(loan.principal for loan in loans), 2),
            active_loans=len(loans),
            total_collateral=round(sum(
                collateral_value(loan.collateral_amount, loan.collateral_type, prices)
                for loan in loans
            ), 2),
        )

    # Administration

    def get_platform_stats(self) -> PlatformStats:
        with self.storage.transaction("get_platform_stats") as session:
            loans = self.storage.list_loans(session)
            total_users = self.storage.count_users(session)
            revenue = self.storage.sum_transactions(session, TransactionType.FEE)

        def count(status: LoanStatus) -> int:
            return sum(1 for loan in loans if loan.status == status.value)

        return PlatformStats(
            total_users=total_users,
            active_loans=count(LoanStatus.ACTIVE),
            total_volume=round(sum(loan.principal for loan in loans), 2),
            default_rate=(count(LoanStatus.DEFAULTED) / len(loans) * 100) if loans else 0.0,
            platform_revenue=round(revenue, 2),
            pending_applications=count(LoanStatus.PENDING),
        )

    def list_all_loans(self) -> List[LoanWithUser]:
        with self.storage.transaction("list_all_loans") as session:
            users = {u.id: User.model_validate(u) for u in self.storage.list_users(session)}
            return [
                LoanWithUser(**Loan.model_validate(r).model_dump(), user=users.get(r.user_id))
                for r in self.storage.list_loans(session)
            ]

    def list_users_with_stats(self) -> List[UserWithStats]:
        with self.storage.transaction("list_users_with_stats") as session:
            users = self.storage.list_users(session)
            loans = self.storage.list_loans(session)

        result = []
        for user in users:
            owned = [loan for loan in loans if loan.user_id == user.id]
            result.append(UserWithStats(
                **User.model_validate(user).model_dump(),
                total_loans=len(owned),
                active_loans=sum(1 for loan in owned if loan.status == LoanStatus.ACTIVE.value),
                total_borrowed=round(sum(loan.principal for loan in owned), 2),
            ))
        return result
