"""
Loan and transaction persistence.

The ledger drives every write through LedgerStorage.transaction(), so a loan
and its opening transactions are committed together or not at all.
"""

import uuid
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, Numeric, String,
    create_engine, func, text
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from cryptolend.logging import get_logger
from cryptolend.shared import utcnow
from cryptolend.shared.errors import PersistenceError
from .models import LoanStatus, TransactionType, UserRole

logger = get_logger(__name__)

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class UserRecord(Base):
    """SQLAlchemy model for platform users."""
    __tablename__ = 'users'

    id = Column(String(64), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=True)
    first_name = Column(String(128), nullable=True)
    last_name = Column(String(128), nullable=True)
    role = Column(String(16), nullable=False, default=UserRole.USER.value)
    suspended = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class LoanRecord(Base):
    """SQLAlchemy model for loans."""
    __tablename__ = 'loans'

    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    principal = Column(Numeric(18, 2, asdecimal=False), nullable=False)
    currency = Column(String(16), nullable=False, default="USDT")
    collateral_type = Column(String(16), nullable=False)
    collateral_amount = Column(Numeric(18, 8, asdecimal=False), nullable=False)
    interest_rate = Column(Numeric(7, 4, asdecimal=False), nullable=False)
    term_days = Column(Integer, nullable=False)
    purpose = Column(String(255), nullable=False)
    status = Column(String(16), nullable=False, default=LoanStatus.ACTIVE.value, index=True)

    monthly_payment = Column(Numeric(18, 2, asdecimal=False), nullable=False)
    total_interest = Column(Numeric(18, 2, asdecimal=False), nullable=False)
    total_repayment = Column(Numeric(18, 2, asdecimal=False), nullable=False)
    collateral_value = Column(Numeric(18, 2, asdecimal=False), nullable=False)
    ltv_ratio = Column(Float, nullable=False)
    liquidation_price = Column(Float, nullable=False)

    due_date = Column(DateTime, nullable=False, index=True)
    next_payment_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class TransactionRecord(Base):
    """SQLAlchemy model for ledger entries. Rows are never updated."""
    __tablename__ = 'transactions'

    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(String(64), ForeignKey('users.id'), nullable=False, index=True)
    loan_id = Column(String(64), ForeignKey('loans.id'), nullable=True, index=True)
    type = Column(String(32), nullable=False)
    amount = Column(Numeric(28, 8, asdecimal=False), nullable=False)
    currency = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class LedgerStorage:
    """Relational storage for users, loans and transactions."""

    def __init__(self, database_url: str, echo: bool = False):
        engine_kwargs = {"echo": echo}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise each session sees an empty database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(database_url, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def transaction(self, operation: str) -> Iterator[Session]:
        """Run a unit of work: commit on success, roll back on any error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Storage failure during {operation}: {e}")
            raise PersistenceError(operation, str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> None:
        """Round-trip a trivial query."""
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    # Users

    def get_user(self, session: Session, user_id: str) -> Optional[UserRecord]:
        return session.get(UserRecord, user_id)

    def get_user_by_email(self, session: Session, email: str) -> Optional[UserRecord]:
        return session.query(UserRecord).filter(UserRecord.email == email).one_or_none()

    def list_users(self, session: Session) -> List[UserRecord]:
        return session.query(UserRecord)\
            .order_by(UserRecord.created_at.desc())\
            .all()

    def count_users(self, session: Session) -> int:
        return session.query(func.count(UserRecord.id)).scalar() or 0

    # Loans

    def get_loan(self, session: Session, loan_id: str, for_update: bool = False) -> Optional[LoanRecord]:
        """Fetch one loan, optionally locking its row until the session ends."""
        query = session.query(LoanRecord).filter(LoanRecord.id == loan_id)
        if for_update:
            query = query.with_for_update()
        return query.one_or_none()

    def list_loans(
        self,
        session: Session,
        user_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
    ) -> List[LoanRecord]:
        """List loans newest first, optionally filtered by owner and status."""
        query = session.query(LoanRecord)
        if user_id is not None:
            query = query.filter(LoanRecord.user_id == user_id)
        if status is not None:
            query = query.filter(LoanRecord.status == status.value)
        return query.order_by(LoanRecord.created_at.desc()).all()

    def list_overdue_loans(self, session: Session, now) -> List[LoanRecord]:
        """Active loans whose due date has passed."""
        return session.query(LoanRecord)\
            .filter(LoanRecord.status == LoanStatus.ACTIVE.value)\
            .filter(LoanRecord.due_date < now)\
            .order_by(LoanRecord.due_date.asc())\
            .all()

    # Transactions

    def list_transactions(
        self,
        session: Session,
        loan_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[TransactionRecord]:
        """List transactions newest first."""
        query = session.query(TransactionRecord)
        if loan_id is not None:
            query = query.filter(TransactionRecord.loan_id == loan_id)
        if user_id is not None:
            query = query.filter(TransactionRecord.user_id == user_id)
        query = query.order_by(TransactionRecord.created_at.desc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def sum_transactions(self, session: Session, transaction_type: TransactionType) -> float:
        """Platform-wide total of one transaction type."""
        total = session.query(func.sum(TransactionRecord.amount))\
            .filter(TransactionRecord.type == transaction_type.value)\
            .scalar()
        return float(total or 0.0)


def create_storage(database_url: str, echo: bool = False) -> LedgerStorage:
    """Factory function to create the ledger storage backend."""
    if not database_url.startswith(("sqlite", "postgresql")):
        raise ValueError(f"Unsupported database URL: {database_url}")
    return LedgerStorage(database_url, echo=echo)
