"""
Lending error taxonomy.

Every error carries enough structured context (kind plus the values involved)
for the API layer to turn it into a user-facing message.
"""

from typing import Dict, List, Optional

from . import utcnow


class LendingError(Exception):
    """Base exception for lending errors."""

    kind = "lending_error"

    def __init__(self, message: str):
        self.message = message
        self.timestamp = utcnow()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Structured payload for API responses."""
        return {"error": self.kind, "message": self.message}


class InvalidInputError(LendingError):
    """Raised when application or payment fields are malformed or out of bounds."""

    kind = "invalid_input"

    def __init__(self, errors: List[Dict[str, str]], message: str = "Invalid input data"):
        self.errors = errors
        details = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        super().__init__(f"{message} ({details})" if details else message)

    @classmethod
    def for_field(cls, field: str, message: str) -> "InvalidInputError":
        return cls([{"field": field, "message": message}])

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "errors": self.errors}


class IneligibleLoanError(InvalidInputError):
    """Raised when a loan's LTV exceeds the origination limit."""

    kind = "ineligible_loan"

    def __init__(self, ltv_ratio: float, max_ltv: float):
        self.ltv_ratio = ltv_ratio
        self.max_ltv = max_ltv
        super().__init__(
            [{
                "field": "collateral_amount",
                "message": f"LTV {ltv_ratio:.2%} exceeds the maximum of {max_ltv:.2%}",
            }],
            message="Insufficient collateral",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(ltv_ratio=self.ltv_ratio, max_ltv=self.max_ltv)
        return data


class UnknownCollateralError(LendingError):
    """Raised when a collateral type has no resolvable unit price."""

    kind = "unknown_collateral"

    def __init__(self, collateral_type: str):
        self.collateral_type = collateral_type
        super().__init__(f"No price available for collateral type {collateral_type!r}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "collateral_type": self.collateral_type}


class DegenerateCollateralError(LendingError):
    """Raised when collateral is worth nothing, leaving LTV undefined."""

    kind = "degenerate_collateral"

    def __init__(self, collateral_type: str, collateral_value: float):
        self.collateral_type = collateral_type
        self.collateral_value = collateral_value
        super().__init__(
            f"Collateral value must be positive "
            f"(Type: {collateral_type}, Value: {collateral_value})"
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "collateral_type": self.collateral_type,
            "collateral_value": self.collateral_value,
        }


class LoanNotFoundError(LendingError):
    """Raised when a loan does not exist or belongs to someone else.

    Both cases share one message so callers cannot discover which loan ids exist.
    """

    kind = "not_found"

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__("Loan not found")


class UserNotFoundError(LendingError):
    """Raised when a user id is unknown."""

    kind = "not_found"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("User not found")


class InvalidLoanStateError(LendingError):
    """Raised when an operation is attempted against a loan in the wrong state."""

    kind = "invalid_state"

    def __init__(self, loan_id: str, current_status: str, action: str):
        self.loan_id = loan_id
        self.current_status = current_status
        self.action = action
        super().__init__(f"Cannot {action} a loan with status {current_status!r}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "loan_status": self.current_status}


class OverpaymentError(LendingError):
    """Raised when a payment exceeds the loan's remaining balance."""

    kind = "overpayment"

    def __init__(self, loan_id: str, amount: float, remaining_balance: float):
        self.loan_id = loan_id
        self.amount = amount
        self.remaining_balance = remaining_balance
        super().__init__(
            f"Payment amount (${amount:.2f}) exceeds remaining balance "
            f"(${remaining_balance:.2f})"
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "amount": self.amount,
            "remaining_balance": round(self.remaining_balance, 2),
        }


class AccessDeniedError(LendingError):
    """Raised when a user lacks the capability an operation needs."""

    kind = "access_denied"

    def __init__(self, user_id: Optional[str], capability: str):
        self.user_id = user_id
        self.capability = capability
        super().__init__(f"Access denied: {capability} privileges required")


class PersistenceError(LendingError):
    """Raised when the storage layer fails. Never retried here."""

    kind = "persistence_failure"

    def __init__(self, operation: str, detail: Optional[str] = None):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage failure during {operation}")
