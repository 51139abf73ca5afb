"""
Money and Currency Module

Handles ISO 4217 currency codes and exact, currency-tagged monetary values.
NEVER uses float for monetary values: amounts are Decimal end to end.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union
import re

from .errors import CurrencyMismatch, InvalidAmount, InvalidCurrency

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen, no minor unit
    CAD = ("CAD", 2)  # Canadian Dollar
    CHF = ("CHF", 2)  # Swiss Franc
    AUD = ("AUD", 2)  # Australian Dollar
    SEK = ("SEK", 2)  # Swedish Krona
    NOK = ("NOK", 2)  # Norwegian Krone
    DKK = ("DKK", 2)  # Danish Krone
    PLN = ("PLN", 2)  # Polish Zloty

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: Union[str, "Currency"]) -> "Currency":
        """
        Resolve a 3-letter ISO 4217 code to a supported Currency

        Raises:
            InvalidCurrency: If the code is malformed or not supported
        """
        if isinstance(code, Currency):
            return code
        if not isinstance(code, str) or not _CURRENCY_CODE.match(code):
            raise InvalidCurrency(code)
        try:
            return cls[code]
        except KeyError:
            raise InvalidCurrency(code) from None

    def __str__(self) -> str:
        return self.code


AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert an amount to a finite Decimal

    Floats are refused: a binary float cannot carry an exact cent value.

    Raises:
        InvalidAmount: If value is None, a float, or not a finite number
    """
    if value is None:
        raise InvalidAmount("Amount is required", value)
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmount(f"Amount must be a Decimal, int or str, got {type(value).__name__}", value)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value.strip() if isinstance(value, str) else value)
        except InvalidOperation:
            raise InvalidAmount(f"Cannot convert {value!r} to Decimal", value) from None
    else:
        raise InvalidAmount(f"Unsupported amount type {type(value).__name__}", value)

    if not result.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}", value)
    return result


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.

    The amount may be signed so that deltas can be expressed; account
    balances built from it are kept non-negative by the account entity.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        object.__setattr__(self, 'currency', Currency.from_code(self.currency))
        amount = to_decimal(self.amount)

        # Round to currency precision
        try:
            rounded = amount.quantize(
                Decimal('0.1') ** self.currency.precision,
                rounding=ROUND_HALF_UP
            )
        except InvalidOperation:
            raise InvalidAmount(f"Amount {amount} exceeds supported precision", amount) from None
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Union[Currency, str]) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', operation: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {operation} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise CurrencyMismatch(self.currency, other.currency, operation)

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        return self.compare_to(other) < 0

    def __le__(self, other: 'Money') -> bool:
        return self.compare_to(other) <= 0

    def __gt__(self, other: 'Money') -> bool:
        return self.compare_to(other) > 0

    def __ge__(self, other: 'Money') -> bool:
        return self.compare_to(other) >= 0

    def compare_to(self, other: 'Money') -> int:
        """Total ordering on amount for equal currencies: -1, 0 or 1"""
        self._check_currency(other, "compare")
        if self.amount < other.amount:
            return -1
        if self.amount > other.amount:
            return 1
        return 0

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is strictly positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.code}"


def add(a: Money, b: Money) -> Money:
    return a + b


def subtract(a: Money, b: Money) -> Money:
    return a - b


def compare(a: Money, b: Money) -> int:
    return a.compare_to(b)


def is_positive(m: Money) -> bool:
    return m.is_positive()


def is_zero(m: Money) -> bool:
    return m.is_zero()


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "1,234.50" or "€ 99,95"

    Returns:
        Decimal value

    Raises:
        InvalidAmount: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise InvalidAmount("Value must be a non-empty string", value)

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    # Handle comma as decimal separator (European format)
    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        # Single comma - could be decimal separator
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    elif ',' in clean_value:
        clean_value = clean_value.replace(',', '')

    return to_decimal(clean_value)
