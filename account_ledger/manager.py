"""
Account Management Module

Caller-side service around the account entity: opens accounts with unique
numbers, applies deposits, withdrawals and status changes as versioned
read-modify-write cycles inside a storage transaction, and enforces the
account lifecycle policy.
"""

import secrets
import uuid
from typing import Callable, List, Optional, Union

from .accounts import Account, AccountStatus, AccountType, is_transition_allowed
from .config import LedgerConfig, get_config
from .currency import AmountLike, Currency, Money
from .errors import (
    AccountNotFound, ConcurrencyConflict, CurrencyMismatch,
    DuplicateAccountNumber, InvalidStatusTransition
)
from .logging_config import get_logger, log_action
from .repository import AccountRepository

BBAN_LENGTH = 23
MAX_NUMBER_ATTEMPTS = 5


def iban_check_digits(country_code: str, bban: str) -> str:
    """ISO 13616 mod-97 check digits for a country code and BBAN"""
    rearranged = f"{bban}{country_code.upper()}00"
    numeric = "".join(str(int(ch, 36)) for ch in rearranged)
    return f"{98 - int(numeric) % 97:02d}"


def is_valid_iban(number: str) -> bool:
    """Check the mod-97 checksum of an IBAN-like account number"""
    number = number.replace(" ", "").upper()
    if len(number) < 5 or not number.isalnum():
        return False
    rearranged = number[4:] + number[:4]
    numeric = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(numeric) % 97 == 1


def generate_account_number(country_code: str = "FR") -> str:
    """Generate a random IBAN-like account number with valid check digits"""
    bban = "".join(str(secrets.randbelow(10)) for _ in range(BBAN_LENGTH))
    country_code = country_code.upper()
    return f"{country_code}{iban_check_digits(country_code, bban)}{bban}"


def _require_frozen(account: Account) -> None:
    if account.status != AccountStatus.FROZEN:
        raise InvalidStatusTransition(account.status, AccountStatus.ACTIVE, "account is not frozen")


def _require_zero_balance(account: Account) -> None:
    if not account.balance.is_zero():
        raise InvalidStatusTransition(
            account.status, AccountStatus.CLOSED,
            f"non-zero balance {account.balance.to_string()}"
        )


class AccountManager:
    """
    Manages account lifecycle and balance changes
    """

    def __init__(self, repository: AccountRepository, config: Optional[LedgerConfig] = None):
        self.repository = repository
        self.storage = repository.storage
        self.config = config or get_config()
        self.logger = get_logger("account_ledger.accounts")

    def open_account(
        self,
        customer_id: Union[str, uuid.UUID],
        account_type: AccountType,
        currency: Union[Currency, str],
        account_number: Optional[str] = None,
    ) -> Account:
        """
        Create and persist a new ACTIVE account

        Args:
            customer_id: ID of account owner
            account_type: CHECKING, SAVINGS or BUSINESS
            currency: Account currency, fixed for the account's lifetime
            account_number: Specific account number (generated if not provided)

        Returns:
            Created Account object

        Raises:
            DuplicateAccountNumber: If the given account number is taken
        """
        if account_number is not None:
            account = self._create(account_number, customer_id, account_type, currency)
        else:
            account = self._create_with_generated_number(customer_id, account_type, currency)

        log_action(
            self.logger, "info", f"Account opened: {account.account_number}",
            action="open_account", resource=account.account_number,
            extra={
                "account_id": account.id,
                "customer_id": account.customer_id,
                "account_type": account.account_type.value,
                "currency": account.currency.code,
            }
        )
        return account

    def _create(self, account_number: str, customer_id, account_type, currency) -> Account:
        account = Account.open(account_number, customer_id, account_type, currency)
        with self.storage.atomic():
            return self.repository.add(account)

    def _create_with_generated_number(self, customer_id, account_type, currency) -> Account:
        for _ in range(MAX_NUMBER_ATTEMPTS):
            number = generate_account_number(self.config.default_country_code)
            try:
                return self._create(number, customer_id, account_type, currency)
            except DuplicateAccountNumber:
                self.logger.warning(f"Generated account number {number} already taken, retrying")
        raise DuplicateAccountNumber(number)

    def get_account(self, account_number: str) -> Account:
        """Get account by account number"""
        account = self.repository.find_by_account_number(account_number)
        if account is None:
            raise AccountNotFound(account_number)
        return account

    def get_customer_accounts(self, customer_id: Union[str, uuid.UUID]) -> List[Account]:
        """Get all accounts for a customer"""
        return self.repository.find_by_customer_id(customer_id)

    def deposit(self, account_number: str, amount: Union[Money, AmountLike]) -> Account:
        """Credit an account, retrying from a fresh read on concurrent writes"""
        account = self._apply(account_number, "deposit", lambda acc: acc.deposit(amount))
        log_action(
            self.logger, "info", f"Deposit applied to {account_number}",
            action="deposit", resource=account_number,
            extra={"amount": str(amount), "balance": str(account.balance)}
        )
        return account

    def withdraw(self, account_number: str, amount: Union[Money, AmountLike]) -> Account:
        """Debit an account, retrying from a fresh read on concurrent writes"""
        account = self._apply(account_number, "withdraw", lambda acc: acc.withdraw(amount))
        log_action(
            self.logger, "info", f"Withdrawal applied to {account_number}",
            action="withdraw", resource=account_number,
            extra={"amount": str(amount), "balance": str(account.balance)}
        )
        return account

    def change_status(self, account_number: str, new_status: AccountStatus,
                      reason: str = "",
                      precondition: Optional[Callable[[Account], None]] = None) -> Account:
        """
        Move an account to a new lifecycle status

        Args:
            precondition: Extra check run against the freshly read account
                inside the transaction; raises to refuse the change

        Raises:
            InvalidStatusTransition: If the lifecycle policy forbids the change
        """
        old_status = None

        def mutate(account: Account) -> None:
            nonlocal old_status
            old_status = account.status
            if precondition is not None:
                precondition(account)
            self._check_transition(account, new_status)
            account.set_status(new_status)

        account = self._apply(account_number, "change_status", mutate)
        log_action(
            self.logger, "info", f"Account {account_number} status changed",
            action="change_status", resource=account_number,
            extra={"old_status": old_status.value, "new_status": new_status.value, "reason": reason}
        )
        return account

    def activate(self, account_number: str, reason: str = "") -> Account:
        """Approve a PENDING account"""
        return self.change_status(account_number, AccountStatus.ACTIVE, reason)

    def freeze(self, account_number: str, reason: str = "") -> Account:
        """Freeze an account"""
        return self.change_status(account_number, AccountStatus.FROZEN, reason)

    def unfreeze(self, account_number: str, reason: str = "") -> Account:
        """Unfreeze an account"""
        return self.change_status(account_number, AccountStatus.ACTIVE, reason, _require_frozen)

    def close(self, account_number: str, reason: str = "") -> Account:
        """Close an account; the balance must be zero"""
        return self.change_status(account_number, AccountStatus.CLOSED, reason, _require_zero_balance)

    def _check_transition(self, account: Account, new_status: AccountStatus) -> None:
        if self.config.enforce_status_transitions and not is_transition_allowed(account.status, new_status):
            raise InvalidStatusTransition(account.status, new_status)

    def _apply(self, account_number: str, action: str,
               mutate: Callable[[Account], None]) -> Account:
        attempts = self.config.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self.storage.atomic():
                    account = self.get_account(account_number)
                    mutate(account)
                    return self.repository.save(account)
            except ConcurrencyConflict:
                if attempt == attempts:
                    log_action(
                        self.logger, "error", f"{action} on {account_number} abandoned after {attempt} attempts",
                        action=action, resource=account_number
                    )
                    raise
                self.logger.warning(
                    f"{action} on {account_number} conflicted (attempt {attempt}/{attempts}), retrying"
                )
            except CurrencyMismatch:
                self.logger.error(f"{action} on {account_number} used the wrong currency", exc_info=True)
                raise
