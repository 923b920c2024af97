"""
Prometheus metrics for the lending service.
"""

from prometheus_client import Counter, Gauge

loans_created = Counter(
    'cryptolend_loans_created_total',
    'Loans originated',
    ['collateral_type']
)

loan_applications_rejected = Counter(
    'cryptolend_loan_applications_rejected_total',
    'Loan applications refused before persistence',
    ['reason']
)

payments_applied = Counter(
    'cryptolend_payments_applied_total',
    'Payments recorded against loans'
)

payment_volume = Counter(
    'cryptolend_payment_volume',
    'Sum of accepted payment amounts'
)

payments_rejected = Counter(
    'cryptolend_payments_rejected_total',
    'Payments refused by the ledger',
    ['reason']
)

status_transitions = Counter(
    'cryptolend_loan_status_transitions_total',
    'Loan status changes',
    ['from_status', 'to_status']
)

price_snapshot_age = Gauge(
    'cryptolend_price_snapshot_age_seconds',
    'Age of the collateral price snapshot in use'
)
