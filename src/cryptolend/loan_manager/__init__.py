"""Loan Manager module for loan origination, repayment and administration."""

from .models import LoanApplication, LoanMetrics, LoanStatus, Loan, Transaction
from .calculator import compute_metrics
from .manager import LoanLedger
from .service import LendingService

__all__ = [
    "LoanApplication",
    "LoanMetrics",
    "LoanStatus",
    "Loan",
    "Transaction",
    "compute_metrics",
    "LoanLedger",
    "LendingService"
]
