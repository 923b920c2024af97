"""
Loan Manager data models.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Application bounds
MIN_PRINCIPAL = 100.0
MAX_PRINCIPAL = 100000.0
MIN_TERM_DAYS = 30
MAX_TERM_DAYS = 365
MIN_COLLATERAL_AMOUNT = 0.001


class LoanStatus(str, Enum):
    """Lifecycle states of a loan."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    REJECTED = "rejected"


class TransactionType(str, Enum):
    """Kinds of ledger entries."""
    DISBURSEMENT = "disbursement"
    COLLATERAL_DEPOSIT = "collateral_deposit"
    PAYMENT = "payment"
    COLLATERAL_RELEASE = "collateral_release"
    FEE = "fee"


class TransactionStatus(str, Enum):
    """Settlement state of a ledger entry."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# Terminal states have no outgoing edges
ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.ACTIVE, LoanStatus.REJECTED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
    LoanStatus.REJECTED: frozenset(),
}


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    """Check whether the state machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS[current]


class UserRole(str, Enum):
    """Roles assigned by the platform, independent of email address."""
    USER = "user"
    ADMIN = "admin"


class Capability(str, Enum):
    """Actions gated by role."""
    APPLY_FOR_LOAN = "apply_for_loan"
    MANAGE_LOANS = "manage_loans"
    MANAGE_USERS = "manage_users"
    VIEW_PLATFORM_STATS = "view_platform_stats"


ROLE_CAPABILITIES: Dict[UserRole, FrozenSet[Capability]] = {
    UserRole.USER: frozenset({Capability.APPLY_FOR_LOAN}),
    UserRole.ADMIN: frozenset(Capability),
}


class LoanApplication(BaseModel):
    """Loan request submitted by an applicant."""
    principal: float = Field(ge=MIN_PRINCIPAL, le=MAX_PRINCIPAL, description="Requested loan amount")
    currency: str = Field("USDT", min_length=1, max_length=16, description="Currency the loan is paid out in")
    collateral_type: str = Field(min_length=1, max_length=16, description="Collateral asset symbol, e.g. BTC")
    collateral_amount: float = Field(ge=MIN_COLLATERAL_AMOUNT, description="Units of collateral pledged")
    term_days: int = Field(ge=MIN_TERM_DAYS, le=MAX_TERM_DAYS, description="Loan term in days")
    purpose: str = Field(min_length=1, max_length=255, description="What the loan is for")
    interest_rate: Optional[float] = Field(None, ge=0, le=100, description="Nominal annual rate in percent")

    @field_validator("collateral_type", "currency")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()


class LoanMetrics(BaseModel):
    """Figures derived from an application and a price snapshot."""
    model_config = ConfigDict(frozen=True)

    unit_price: float
    collateral_value: float
    ltv_ratio: float
    liquidation_price: float
    total_interest: float
    total_repayment: float
    monthly_payment: float
    interest_rate: float


class Loan(BaseModel):
    """Persisted loan."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    principal: float
    currency: str
    collateral_type: str
    collateral_amount: float
    interest_rate: float
    term_days: int
    purpose: str
    status: LoanStatus

    # Metrics captured at origination
    monthly_payment: float
    total_interest: float
    total_repayment: float
    collateral_value: float
    ltv_ratio: float
    liquidation_price: float

    # Timing
    due_date: datetime
    next_payment_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class Transaction(BaseModel):
    """Append-only ledger entry."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    loan_id: Optional[str] = None
    type: TransactionType
    amount: float
    currency: str
    status: TransactionStatus
    created_at: datetime


class User(BaseModel):
    """Platform user as known to the ledger."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole = UserRole.USER
    suspended: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def has_capability(self, capability: Capability) -> bool:
        """Check whether this user's role grants a capability."""
        if self.suspended and capability == Capability.APPLY_FOR_LOAN:
            return False
        return capability in ROLE_CAPABILITIES[self.role]


class PaymentRequest(BaseModel):
    """Request to pay towards a loan."""
    amount: float = Field(gt=0, allow_inf_nan=False, description="Amount to pay")


class PaymentResult(BaseModel):
    """Outcome of an accepted payment."""
    transaction: Transaction
    remaining_balance: float
    loan_status: LoanStatus


class LoanBalance(BaseModel):
    """Repayment progress of a loan."""
    loan_id: str
    status: LoanStatus
    total_repayment: float
    total_paid: float
    remaining_balance: float


class UserStats(BaseModel):
    """Borrowing summary over a user's active loans."""
    total_borrowed: float
    active_loans: int
    total_collateral: float


class PlatformStats(BaseModel):
    """Platform-wide figures for administrators."""
    total_users: int
    active_loans: int
    total_volume: float
    default_rate: float
    platform_revenue: float
    pending_applications: int


class LoanWithUser(Loan):
    """Loan joined with its owner."""
    user: Optional[User] = None


class UserWithStats(User):
    """User joined with loan counts."""
    total_loans: int = 0
    active_loans: int = 0
    total_borrowed: float = 0.0


class LoanEvent(BaseModel):
    """Lifecycle event published to Kafka."""
    event: str
    loan_id: str
    user_id: str
    status: LoanStatus
    timestamp: datetime
    amount: Optional[float] = None
    remaining_balance: Optional[float] = None
    previous_status: Optional[LoanStatus] = None
    details: Dict[str, float] = Field(default_factory=dict)

