"""
Account Ledger Core

Customer account records with exact Decimal money, status-gated deposits
and withdrawals, non-negative balances and versioned persistence.
"""

__version__ = "1.0.0"

from .currency import Currency, Money
from .accounts import Account, AccountStatus, AccountType
from .errors import (
    LedgerError, InvalidAmount, InvalidCurrency, CurrencyMismatch,
    AccountNotActive, InsufficientFunds, DuplicateAccountNumber,
    ConcurrencyConflict, AccountNotFound, InvalidStatusTransition
)
from .repository import AccountRepository
from .manager import AccountManager

__all__ = [
    "Currency", "Money",
    "Account", "AccountStatus", "AccountType",
    "LedgerError", "InvalidAmount", "InvalidCurrency", "CurrencyMismatch",
    "AccountNotActive", "InsufficientFunds", "DuplicateAccountNumber",
    "ConcurrencyConflict", "AccountNotFound", "InvalidStatusTransition",
    "AccountRepository", "AccountManager",
]
