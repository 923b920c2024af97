"""
Loan metrics calculation.

Pure functions: the same application figures and price snapshot always give
the same LoanMetrics, and nothing here touches storage.
"""

import math
from typing import List, Dict

from cryptolend.pricing.models import PriceSnapshot
from cryptolend.shared.errors import (
    DegenerateCollateralError, InvalidInputError, UnknownCollateralError
)
from .models import LoanMetrics

# Liquidation sits 20% above the price implied by the LTV
BUFFER_FACTOR = 1.20

DAYS_PER_YEAR = 365
DAYS_PER_MONTH = 30


def _validate_inputs(
    principal: float,
    collateral_amount: float,
    term_days: int,
    annual_rate_percent: float,
) -> None:
    errors: List[Dict[str, str]] = []

    for field, value in (
        ("principal", principal),
        ("collateral_amount", collateral_amount),
        ("term_days", term_days),
    ):
        if not math.isfinite(value) or value <= 0:
            errors.append({"field": field, "message": "must be a positive number"})

    if not math.isfinite(annual_rate_percent) or annual_rate_percent < 0:
        errors.append({"field": "interest_rate", "message": "must not be negative"})

    if errors:
        raise InvalidInputError(errors)


def compute_metrics(
    principal: float,
    collateral_amount: float,
    collateral_type: str,
    term_days: int,
    annual_rate_percent: float,
    prices: PriceSnapshot,
) -> LoanMetrics:
    """Derive collateral and repayment figures for a loan application.

    Raises:
        InvalidInputError: principal, collateral amount or term not positive,
            or a negative rate
        UnknownCollateralError: the snapshot has no price for collateral_type
        DegenerateCollateralError: the collateral is worth zero or less
    """
    _validate_inputs(principal, collateral_amount, term_days, annual_rate_percent)

    unit_price = prices.price_for(collateral_type)
    if unit_price is None:
        raise UnknownCollateralError(collateral_type)

    collateral_value = collateral_amount * unit_price
    if collateral_value <= 0:
        raise DegenerateCollateralError(collateral_type, collateral_value)

    ltv_ratio = principal / collateral_value
    liquidation_price = unit_price * ltv_ratio * BUFFER_FACTOR

    term_years = term_days / DAYS_PER_YEAR
    total_interest = principal * (annual_rate_percent / 100) * term_years
    total_repayment = principal + total_interest
    monthly_payment = total_repayment / (term_days / DAYS_PER_MONTH)

    return LoanMetrics(
        unit_price=unit_price,
        collateral_value=collateral_value,
        ltv_ratio=ltv_ratio,
        liquidation_price=liquidation_price,
        total_interest=total_interest,
        total_repayment=total_repayment,
        monthly_payment=monthly_payment,
        interest_rate=annual_rate_percent,
    )


def collateral_value(collateral_amount: float, collateral_type: str, prices: PriceSnapshot) -> float:
    """Current value of pledged collateral; unpriced assets count as zero."""
    return collateral_amount * (prices.price_for(collateral_type) or 0.0)
