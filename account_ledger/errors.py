"""
Ledger Error Taxonomy

Domain-specific exceptions raised by the money type, the account entity and
the account repository. Each error carries the context a caller needs to
build a precise user-facing message, and a ``retryable`` flag telling the
caller whether repeating the whole operation from a fresh read can succeed.
"""

from typing import Any, Optional


class LedgerError(Exception):
    """Base exception for all account ledger errors."""

    retryable = False


class InvalidAmount(LedgerError, ValueError):
    """
    Raised when an amount is missing, unparseable, zero or negative
    where a strictly positive value is required.
    """

    def __init__(self, message: str = "Amount must be positive", amount: Any = None):
        super().__init__(message)
        self.amount = amount


class InvalidCurrency(LedgerError, ValueError):
    """Raised for malformed or unsupported ISO 4217 currency codes."""

    def __init__(self, code: Any):
        super().__init__(f"Unsupported currency code: {code!r}")
        self.code = code


class CurrencyMismatch(LedgerError, ValueError):
    """
    Raised when money in two different currencies is combined or compared.
    Always a caller bug, never retried.
    """

    def __init__(self, left: Any, right: Any, operation: str = "combine"):
        super().__init__(f"Cannot {operation} {_code(left)} and {_code(right)}")
        self.left = left
        self.right = right


class AccountNotActive(LedgerError):
    """Raised when a financial operation targets a non-ACTIVE account."""

    def __init__(self, status: Any):
        name = getattr(status, "name", status)
        super().__init__(f"Account is {name} and cannot process transactions")
        self.status = status


class InsufficientFunds(LedgerError):
    """Raised when a withdrawal exceeds the available balance."""

    def __init__(self, available: Any, requested: Any):
        super().__init__(
            f"Insufficient funds. Available: {_amount(available)}, "
            f"Requested: {_amount(requested)}"
        )
        self.available = available
        self.requested = requested


class DuplicateAccountNumber(LedgerError):
    """Raised when an account number is already taken."""

    def __init__(self, account_number: str):
        super().__init__(f"Account number {account_number} already exists")
        self.account_number = account_number


class ConcurrencyConflict(LedgerError):
    """
    Raised when a concurrent writer changed the account first, or the
    storage lock could not be acquired in time. Safe to retry.
    """

    retryable = True

    def __init__(self, account_number: str, expected_version: Optional[int] = None,
                 reason: str = "account was modified concurrently"):
        super().__init__(f"Concurrency conflict on account {account_number}: {reason}")
        self.account_number = account_number
        self.expected_version = expected_version


class AccountNotFound(LedgerError):
    """Raised when no account matches the requested account number."""

    def __init__(self, account_number: str):
        super().__init__(f"Account {account_number} not found")
        self.account_number = account_number


class InvalidStatusTransition(LedgerError):
    """Raised when a status change breaks the lifecycle policy."""

    def __init__(self, current: Any, requested: Any, reason: Optional[str] = None):
        message = (
            f"Cannot change account status from "
            f"{getattr(current, 'name', current)} to {getattr(requested, 'name', requested)}"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.requested = requested


def _code(currency: Any) -> str:
    return getattr(currency, "code", str(currency))


def _amount(value: Any) -> str:
    return str(getattr(value, "amount", value))
