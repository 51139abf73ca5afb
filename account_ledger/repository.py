"""
Account Repository Module

Maps accounts to storage documents and answers the lookups callers need:
by account number, customer, status, currency, type and balance threshold.
Uniqueness of account numbers is pre-checked here and backed by a unique
index in the storage backend; writes are versioned so that a stale copy of
an account can never overwrite a newer one.
"""

from decimal import Decimal
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union
import uuid

from .accounts import Account, AccountStatus, AccountType
from .currency import Currency, Money
from .errors import ConcurrencyConflict, DuplicateAccountNumber
from .logging_config import get_logger
from .storage import (
    LockTimeout, StorageInterface, UniqueConstraintViolation, VersionConflict
)

CustomerId = Union[str, uuid.UUID]


class AccountRepository:
    """
    Account persistence and query layer over any StorageInterface backend
    """

    table = "accounts"

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("account_ledger.repository")
        self.storage.create_unique_index(self.table, "account_number")

    # Writes

    def add(self, account: Account) -> Account:
        """
        Persist a new account

        Raises:
            DuplicateAccountNumber: If the account number is already in use
        """
        if account.version != 0:
            raise ValueError(f"Account {account.account_number} is already persisted")
        if self.exists_by_account_number(account.account_number):
            raise DuplicateAccountNumber(account.account_number)

        data = self._account_to_dict(account, version=1)
        try:
            self.storage.insert(self.table, account.id, data)
        except UniqueConstraintViolation as e:
            # Lost a race with another writer after the pre-check
            if e.field == "account_number":
                raise DuplicateAccountNumber(account.account_number) from e
            raise
        except LockTimeout as e:
            raise ConcurrencyConflict(
                account.account_number, 0, reason="storage lock timed out"
            ) from e

        account.version = 1
        return account

    def save(self, account: Account) -> Account:
        """
        Persist an account, inserting it if it was never saved

        Existing accounts are written only if nobody else saved them since
        they were read; the in-memory version is bumped on success.

        Raises:
            DuplicateAccountNumber: For new accounts whose number is taken
            ConcurrencyConflict: If the stored account moved on, or the
                storage lock timed out
        """
        if account.version == 0:
            return self.add(account)

        expected = account.version
        data = self._account_to_dict(account, version=expected + 1)
        try:
            self.storage.update(self.table, account.id, data, expected_version=expected)
        except VersionConflict as e:
            self.logger.warning(
                f"Stale write rejected for account {account.account_number}: "
                f"expected version {e.expected}, found {e.actual}"
            )
            raise ConcurrencyConflict(account.account_number, expected) from e
        except LockTimeout as e:
            raise ConcurrencyConflict(
                account.account_number, expected, reason="storage lock timed out"
            ) from e

        account.version = expected + 1
        return account

    # Reads

    def find_by_id(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.table, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def find_by_account_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number (IBAN)"""
        accounts = self._find({"account_number": account_number})
        return accounts[0] if accounts else None

    def exists_by_account_number(self, account_number: str) -> bool:
        return self.storage.count(self.table, {"account_number": account_number}) > 0

    def find_by_customer_id(self, customer_id: CustomerId) -> List[Account]:
        """Get all accounts for a customer"""
        return self._find({"customer_id": str(customer_id)})

    def find_by_status(self, status: AccountStatus) -> List[Account]:
        return self._find({"status": status.value})

    def count_by_status(self, status: AccountStatus) -> int:
        return self.storage.count(self.table, {"status": status.value})

    def find_by_customer_id_and_status(self, customer_id: CustomerId,
                                       status: AccountStatus) -> List[Account]:
        return self._find({"customer_id": str(customer_id), "status": status.value})

    def find_by_customer_id_and_currency(self, customer_id: CustomerId,
                                         currency: Union[Currency, str]) -> List[Account]:
        currency = Currency.from_code(currency)
        return self._find({"customer_id": str(customer_id), "currency": currency.code})

    def find_by_customer_id_and_account_type(self, customer_id: CustomerId,
                                             account_type: AccountType) -> List[Account]:
        return self._find({"customer_id": str(customer_id), "account_type": account_type.value})

    def find_accounts_with_balance_above(self, threshold: Money) -> List[Account]:
        """
        Accounts holding at least ``threshold``

        Only accounts in the threshold's currency are considered: balances in
        different currencies are not comparable without an exchange rate.
        """
        if not isinstance(threshold, Money):
            raise TypeError("threshold must be Money")
        candidates = self._find({"currency": threshold.currency.code})
        return [account for account in candidates if account.balance >= threshold]

    def find_all(self) -> List[Account]:
        return self._sorted(
            self._account_from_dict(data) for data in self.storage.load_all(self.table)
        )

    def count(self) -> int:
        return self.storage.count(self.table)

    # Mapping

    def _find(self, filters: Dict[str, str]) -> List[Account]:
        return self._sorted(
            self._account_from_dict(data) for data in self.storage.find(self.table, filters)
        )

    @staticmethod
    def _sorted(accounts: Iterable[Account]) -> List[Account]:
        return sorted(accounts, key=lambda a: (a.created_at, a.account_number))

    def _account_to_dict(self, account: Account, version: int) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['account_type'] = account.account_type.value
        result['currency'] = account.currency.code
        result['balance'] = str(account.balance.amount)
        result['status'] = account.status.value
        result['version'] = version
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency.from_code(data['currency'])
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            account_type=AccountType(data['account_type']),
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            status=AccountStatus(data['status']),
            version=int(data['version']),
        )
