"""Unified error codes and custom exceptions.

Error code ranges:
  2xxx: Credit ledger
  9xxx: System
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- 2xxx: Credit ledger ---

class InsufficientCreditsError(AppError):
    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            2001,
            f"Insufficient credits: required {required}, available {available}",
            402,
        )


class LedgerFragmentationExceededError(AppError):
    def __init__(self, detail: str) -> None:
        super().__init__(2002, f"Too many credit grants to consume from: {detail}", 500)


class InvalidAmountError(AppError):
    def __init__(self, amount: int) -> None:
        super().__init__(2003, f"Credit amount must be positive, got {amount}", 400)


class CreditConflictError(AppError):
    """A conditional decrement lost a race. Transient; the caller decides on retry."""

    def __init__(self, credit_id: str) -> None:
        super().__init__(2004, f"Concurrent modification of credit {credit_id}", 409)


class DuplicateTransactionError(AppError):
    def __init__(self, transaction_no: str) -> None:
        self.transaction_no = transaction_no
        super().__init__(2005, f"Duplicate transaction_no: {transaction_no}", 409)


class CreditNotFoundError(AppError):
    def __init__(self, credit_id: str) -> None:
        super().__init__(2006, f"Credit not found: {credit_id}", 404)


# --- 9xxx: System ---

class InternalError(AppError):
    def __init__(self, detail: str = "Internal server error") -> None:
        super().__init__(9002, detail, 500)
