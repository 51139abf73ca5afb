"""
Account Module

The account entity and its lifecycle. An account holds one customer-owned
balance in a single currency; deposits and withdrawals are gated by the
account status and keep the balance non-negative. Every failed operation
leaves the account untouched.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Union
from enum import Enum
import uuid

from .currency import AmountLike, Currency, Money, to_decimal
from .errors import (
    AccountNotActive, CurrencyMismatch, InsufficientFunds, InvalidAmount
)
from .storage import StorageRecord

MAX_ACCOUNT_NUMBER_LENGTH = 34


class AccountType(Enum):
    """Banking product types"""
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    BUSINESS = "BUSINESS"


class AccountStatus(Enum):
    """Account lifecycle states"""
    PENDING = "PENDING"    # Awaiting external approval (e.g. KYC)
    ACTIVE = "ACTIVE"      # Normal operation
    FROZEN = "FROZEN"      # Temporarily suspended
    CLOSED = "CLOSED"      # Permanently closed, kept for audit

    def __str__(self) -> str:
        return self.name


# Lifecycle policy applied by callers; the entity itself accepts any status.
ALLOWED_TRANSITIONS: Dict[AccountStatus, FrozenSet[AccountStatus]] = {
    AccountStatus.PENDING: frozenset({AccountStatus.ACTIVE, AccountStatus.FROZEN, AccountStatus.CLOSED}),
    AccountStatus.ACTIVE: frozenset({AccountStatus.FROZEN, AccountStatus.CLOSED}),
    AccountStatus.FROZEN: frozenset({AccountStatus.ACTIVE, AccountStatus.CLOSED}),
    AccountStatus.CLOSED: frozenset(),
}


def is_transition_allowed(current: AccountStatus, new_status: AccountStatus) -> bool:
    """Check a status change against the lifecycle policy"""
    return current == new_status or new_status in ALLOWED_TRANSITIONS[current]


_IMMUTABLE_FIELDS = frozenset({
    "id", "created_at", "account_number", "customer_id", "account_type", "currency"
})


def _check_aware(name: str, value: datetime) -> None:
    if not isinstance(value, datetime) or value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be a timezone-aware datetime")


@dataclass(eq=False)
class Account(StorageRecord):
    """
    Customer-owned ledger balance.

    Identity, owner, type and currency are fixed once the account exists.
    Only ``balance``, ``status`` and ``updated_at`` change, through
    ``deposit``, ``withdraw`` and ``set_status``. ``version`` is the
    persisted revision used for optimistic concurrency by the repository.
    """
    account_number: str
    customer_id: str
    account_type: AccountType
    currency: Currency
    balance: Optional[Money] = None
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 0

    def __post_init__(self):
        if not isinstance(self.account_number, str) or not self.account_number.strip():
            raise ValueError("Account number is required")
        if len(self.account_number) > MAX_ACCOUNT_NUMBER_LENGTH:
            raise ValueError(
                f"Account number must be at most {MAX_ACCOUNT_NUMBER_LENGTH} characters"
            )

        if self.customer_id is None or not str(self.customer_id).strip():
            raise ValueError("Customer ID is required")
        self.customer_id = str(self.customer_id)

        if not isinstance(self.account_type, AccountType):
            raise ValueError(f"Account type must be one of {[t.name for t in AccountType]}")
        if not isinstance(self.status, AccountStatus):
            raise ValueError(f"Account status must be one of {[s.name for s in AccountStatus]}")

        self.currency = Currency.from_code(self.currency)

        if self.balance is None:
            self.balance = Money.zero(self.currency)
        self._check_balance(self.balance)

        _check_aware("created_at", self.created_at)
        _check_aware("updated_at", self.updated_at)
        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot precede created_at")

        object.__setattr__(self, "_sealed", True)

    def __setattr__(self, name, value):
        if self.__dict__.get("_sealed"):
            if name in _IMMUTABLE_FIELDS:
                raise AttributeError(f"Account.{name} is immutable")
            if name == "balance":
                self._check_balance(value)
            elif name == "updated_at":
                _check_aware(name, value)
        super().__setattr__(name, value)

    def _check_balance(self, balance) -> None:
        if not isinstance(balance, Money):
            raise TypeError(f"Account balance must be Money, got {type(balance).__name__}")
        if balance.currency != self.currency:
            raise CurrencyMismatch(balance.currency, self.currency)
        if balance.is_negative():
            raise InvalidAmount("Balance cannot be negative", balance.amount)

    @classmethod
    def open(
        cls,
        account_number: str,
        customer_id: Union[str, uuid.UUID],
        account_type: AccountType,
        currency: Union[Currency, str],
    ) -> "Account":
        """Create a new ACTIVE account with a zero balance"""
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=account_number,
            customer_id=str(customer_id),
            account_type=account_type,
            currency=currency,
        )

    def can_transact(self) -> bool:
        """Check if account can process deposits and withdrawals"""
        return self.status == AccountStatus.ACTIVE

    def deposit(self, amount: Union[Money, AmountLike]) -> Money:
        """
        Credit the account

        Args:
            amount: Strictly positive amount, either Money in the account
                currency or a plain Decimal/int/str in the account currency

        Returns:
            The new balance

        Raises:
            InvalidAmount: If amount is missing, zero or negative
            CurrencyMismatch: If amount is Money in another currency
            AccountNotActive: If status is not ACTIVE
        """
        money = self._validate_amount(amount)
        self._validate_active()

        self.balance = self.balance + money
        self._touch()
        return self.balance

    def withdraw(self, amount: Union[Money, AmountLike]) -> Money:
        """
        Debit the account

        Raises:
            InvalidAmount: If amount is missing, zero or negative
            CurrencyMismatch: If amount is Money in another currency
            AccountNotActive: If status is not ACTIVE
            InsufficientFunds: If amount exceeds the balance
        """
        money = self._validate_amount(amount)
        self._validate_active()
        if self.balance < money:
            raise InsufficientFunds(self.balance, money)

        self.balance = self.balance - money
        self._touch()
        return self.balance

    def set_status(self, status: AccountStatus) -> None:
        """Change lifecycle status. No transition guard at this level."""
        if not isinstance(status, AccountStatus):
            raise ValueError(f"Account status must be one of {[s.name for s in AccountStatus]}")
        self.status = status
        self._touch()

    def _validate_amount(self, amount: Union[Money, AmountLike]) -> Money:
        if amount is None:
            raise InvalidAmount("Amount must be positive", amount)
        if isinstance(amount, Money):
            if amount.currency != self.currency:
                raise CurrencyMismatch(amount.currency, self.currency)
            money = amount
        else:
            value = to_decimal(amount)
            money = Money(value, self.currency)
            if money.amount != value:
                raise InvalidAmount(
                    f"Amount has more than {self.currency.precision} decimal places",
                    value,
                )

        if not money.is_positive():
            raise InvalidAmount("Amount must be positive", money.amount)
        return money

    def _validate_active(self) -> None:
        if not self.can_transact():
            raise AccountNotActive(self.status)

    def _touch(self) -> None:
        # updated_at never moves backwards, even if the wall clock does
        now = datetime.now(timezone.utc)
        self.updated_at = max(now, self.updated_at)

    def __eq__(self, other) -> bool:
        if self is other:
            return True
        if not isinstance(other, Account):
            return False
        return self.account_number == other.account_number

    def __hash__(self) -> int:
        return hash(self.account_number)

    def __repr__(self) -> str:
        return (
            f"Account(account_number='{self.account_number}', "
            f"balance={self.balance.amount}, currency='{self.currency.code}', "
            f"status={self.status.name})"
        )

    __str__ = __repr__
