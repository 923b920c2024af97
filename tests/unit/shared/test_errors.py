"""
Unit tests for the lending error taxonomy.
"""

from cryptolend.shared.errors import (
    AccessDeniedError, DegenerateCollateralError, IneligibleLoanError,
    InvalidInputError, InvalidLoanStateError, LendingError, LoanNotFoundError,
    OverpaymentError, PersistenceError, UnknownCollateralError
)


class TestErrorPayloads:
    """Test structured error payloads."""

    def test_invalid_input(self):
        error = InvalidInputError.for_field("amount", "Invalid payment amount")

        assert error.to_dict() == {
            "error": "invalid_input",
            "message": "Invalid input data (amount: Invalid payment amount)",
            "errors": [{"field": "amount", "message": "Invalid payment amount"}],
        }

    def test_ineligible_is_invalid_input(self):
        error = IneligibleLoanError(0.8, 0.75)

        assert isinstance(error, InvalidInputError)
        data = error.to_dict()
        assert data["error"] == "ineligible_loan"
        assert data["ltv_ratio"] == 0.8
        assert data["errors"][0]["field"] == "collateral_amount"
        assert "80.00%" in data["errors"][0]["message"]

    def test_overpayment_message(self):
        error = OverpaymentError("loan-1", 6000.0, 5425.0)

        assert error.message == "Payment amount ($6000.00) exceeds remaining balance ($5425.00)"
        assert error.to_dict()["remaining_balance"] == 5425.0

    def test_invalid_state(self):
        error = InvalidLoanStateError("loan-1", "completed", "make a payment on")

        assert str(error) == "Cannot make a payment on a loan with status 'completed'"
        assert error.to_dict()["loan_status"] == "completed"

    def test_collateral_errors(self):
        assert UnknownCollateralError("DOGE").to_dict()["collateral_type"] == "DOGE"
        assert DegenerateCollateralError("BTC", 0.0).to_dict()["collateral_value"] == 0.0

    def test_not_found_hides_ownership(self):
        assert LoanNotFoundError("loan-1").message == "Loan not found"

    def test_all_errors_share_base(self):
        errors = [
            AccessDeniedError("u1", "manage_loans"),
            PersistenceError("create_loan", "disk full"),
            LoanNotFoundError("loan-1"),
        ]
        for error in errors:
            assert isinstance(error, LendingError)
            assert error.timestamp is not None
        assert errors[1].message == "Storage failure during create_loan"
