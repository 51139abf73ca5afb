"""
Test suite for accounts module

Tests the account entity: creation, deposit and withdrawal rules, status
gating, revision timestamps and identity semantics.
"""

import time
import uuid
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from account_ledger.currency import Money, Currency
from account_ledger.accounts import (
    Account, AccountType, AccountStatus, ALLOWED_TRANSITIONS, is_transition_allowed
)
from account_ledger.errors import (
    AccountNotActive, CurrencyMismatch, InsufficientFunds, InvalidAmount
)

ACCOUNT_NUMBER = "FR7630006000011234567890189"


def eur(value: str) -> Money:
    return Money(Decimal(value), Currency.EUR)


class TestAccountCreation:
    """Test Account.open and construction-time validation"""

    def setup_method(self):
        self.customer_id = uuid.uuid4()
        self.account = Account.open(ACCOUNT_NUMBER, self.customer_id, AccountType.CHECKING, Currency.EUR)

    def test_create_account_with_valid_data(self):
        account = self.account
        assert account.account_number == ACCOUNT_NUMBER
        assert account.customer_id == str(self.customer_id)
        assert account.account_type == AccountType.CHECKING
        assert account.currency == Currency.EUR
        assert account.status == AccountStatus.ACTIVE
        assert account.id
        assert account.created_at is not None
        assert account.updated_at == account.created_at
        assert account.version == 0

    def test_balance_starts_at_zero(self):
        assert self.account.balance == eur('0')
        assert str(self.account.balance.amount) == "0.00"
        assert self.account.balance.currency == self.account.currency

    def test_currency_code_string_is_accepted(self):
        account = Account.open("GB29NWBK60161331926819", "CUST-1", AccountType.SAVINGS, "GBP")
        assert account.currency is Currency.GBP

    def test_ids_are_unique(self):
        other = Account.open("FR7630006000019876543210123", self.customer_id, AccountType.SAVINGS, Currency.EUR)
        assert other.id != self.account.id

    @pytest.mark.parametrize("number", ["", "   ", None, "X" * 35])
    def test_invalid_account_numbers(self, number):
        with pytest.raises(ValueError):
            Account.open(number, self.customer_id, AccountType.CHECKING, Currency.EUR)

    def test_account_number_max_length(self):
        account = Account.open("X" * 34, self.customer_id, AccountType.CHECKING, Currency.EUR)
        assert len(account.account_number) == 34

    def test_customer_id_required(self):
        with pytest.raises(ValueError, match="Customer ID"):
            Account.open(ACCOUNT_NUMBER, None, AccountType.CHECKING, Currency.EUR)

    def test_account_type_must_be_enum(self):
        with pytest.raises(ValueError, match="Account type"):
            Account.open(ACCOUNT_NUMBER, self.customer_id, "CHECKING", Currency.EUR)

    def test_rehydration_rejects_broken_invariants(self):
        now = datetime.now(timezone.utc)
        base = dict(
            id="ACC001", created_at=now, updated_at=now,
            account_number=ACCOUNT_NUMBER, customer_id="CUST001",
            account_type=AccountType.CHECKING, currency=Currency.EUR,
        )

        with pytest.raises(InvalidAmount, match="negative"):
            Account(**base, balance=eur('-0.01'))

        with pytest.raises(CurrencyMismatch):
            Account(**base, balance=Money(Decimal('10.00'), Currency.USD))

        with pytest.raises(ValueError, match="updated_at"):
            Account(**dict(base, updated_at=now - timedelta(seconds=1)))

        with pytest.raises(ValueError, match="status"):
            Account(**base, status="ACTIVE")

    def test_identity_fields_are_immutable(self):
        for field, value in [
            ("id", "other"),
            ("account_number", "FR00"),
            ("customer_id", "someone-else"),
            ("account_type", AccountType.BUSINESS),
            ("currency", Currency.USD),
            ("created_at", datetime.now(timezone.utc)),
        ]:
            with pytest.raises(AttributeError):
                setattr(self.account, field, value)

    def test_naive_timestamps_rejected(self):
        naive = datetime(2024, 1, 15, 9, 30)
        with pytest.raises(ValueError, match="timezone-aware"):
            Account(
                id="ACC001", created_at=naive, updated_at=naive,
                account_number=ACCOUNT_NUMBER, customer_id="CUST001",
                account_type=AccountType.CHECKING, currency=Currency.EUR,
            )
        with pytest.raises(ValueError, match="timezone-aware"):
            self.account.updated_at = naive

    def test_balance_assignment_is_checked(self):
        with pytest.raises(InvalidAmount, match="negative"):
            self.account.balance = eur('-5.00')
        with pytest.raises(CurrencyMismatch):
            self.account.balance = Money(Decimal('5.00'), Currency.USD)
        with pytest.raises(TypeError):
            self.account.balance = Decimal('5.00')
        assert self.account.balance == eur('0.00')

        self.account.balance = eur('12.34')
        assert self.account.balance == eur('12.34')


class TestDeposit:
    """Test deposit rules"""

    def setup_method(self):
        self.account = Account.open(ACCOUNT_NUMBER, uuid.uuid4(), AccountType.CHECKING, Currency.EUR)

    def test_deposit_positive_amount(self):
        new_balance = self.account.deposit(Decimal('100.50'))
        assert self.account.balance == eur('100.50')
        assert new_balance == self.account.balance

    def test_multiple_deposits_keep_precision(self):
        self.account.deposit(Decimal('100.10'))
        self.account.deposit(Decimal('200.20'))
        self.account.deposit(Decimal('300.30'))
        assert self.account.balance.amount == Decimal('600.60')

    def test_deposit_accepts_money_and_strings(self):
        self.account.deposit(eur('10.00'))
        self.account.deposit("5.25")
        self.account.deposit(3)
        assert self.account.balance == eur('18.25')

    def test_reject_null_amount(self):
        with pytest.raises(InvalidAmount, match="positive"):
            self.account.deposit(None)

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('0.00'), Decimal('-50.00'), "-1", 0])
    def test_reject_non_positive_amounts(self, amount):
        with pytest.raises(InvalidAmount):
            self.account.deposit(amount)
        assert self.account.balance.is_zero()

    def test_reject_sub_cent_amount(self):
        with pytest.raises(InvalidAmount, match="decimal places"):
            self.account.deposit(Decimal('0.001'))
        assert self.account.balance.is_zero()

    def test_reject_float_amount(self):
        with pytest.raises(InvalidAmount):
            self.account.deposit(10.5)

    def test_reject_other_currency(self):
        with pytest.raises(CurrencyMismatch):
            self.account.deposit(Money(Decimal('10.00'), Currency.USD))
        assert self.account.balance.is_zero()

    def test_reject_deposit_when_frozen(self):
        self.account.set_status(AccountStatus.FROZEN)
        before = self.account.updated_at

        with pytest.raises(AccountNotActive, match="FROZEN") as exc_info:
            self.account.deposit(Decimal('100.00'))

        assert exc_info.value.status == AccountStatus.FROZEN
        assert str(exc_info.value) == "Account is FROZEN and cannot process transactions"
        assert self.account.balance.is_zero()
        assert self.account.updated_at == before

    def test_amount_is_validated_before_status(self):
        self.account.set_status(AccountStatus.CLOSED)
        with pytest.raises(InvalidAmount):
            self.account.deposit(Decimal('-1'))

    def test_updates_timestamp(self):
        original = self.account.updated_at
        created = self.account.created_at
        time.sleep(0.01)

        self.account.deposit(Decimal('100.00'))

        assert self.account.updated_at > original
        assert self.account.created_at == created


class TestWithdraw:
    """Test withdrawal rules"""

    def setup_method(self):
        self.account = Account.open(ACCOUNT_NUMBER, uuid.uuid4(), AccountType.CHECKING, Currency.EUR)
        self.account.deposit(Decimal('1000.00'))

    def test_withdraw_within_balance(self):
        self.account.withdraw(Decimal('250.50'))
        assert self.account.balance.amount == Decimal('749.50')

    def test_withdrawals_keep_precision(self):
        self.account.withdraw(Decimal('100.10'))
        self.account.withdraw(Decimal('200.20'))
        self.account.withdraw(Decimal('300.30'))
        assert self.account.balance.amount == Decimal('399.40')

    def test_withdraw_entire_balance(self):
        self.account.withdraw(Decimal('1000.00'))
        assert self.account.balance.is_zero()

    def test_reject_withdrawal_exceeding_balance(self):
        self.account.withdraw(Decimal('250.50'))
        before = self.account.updated_at

        with pytest.raises(InsufficientFunds, match="Insufficient funds") as exc_info:
            self.account.withdraw(Decimal('1500.00'))

        assert exc_info.value.available == eur('749.50')
        assert exc_info.value.requested == eur('1500.00')
        assert "Available: 749.50, Requested: 1500.00" in str(exc_info.value)
        assert self.account.balance.amount == Decimal('749.50')
        assert self.account.updated_at == before

    def test_reject_withdrawal_from_zero_balance(self):
        self.account.withdraw(Decimal('1000.00'))
        with pytest.raises(InsufficientFunds):
            self.account.withdraw(Decimal('0.01'))

    @pytest.mark.parametrize("amount", [None, Decimal('0'), Decimal('-100.00')])
    def test_reject_invalid_amounts(self, amount):
        with pytest.raises(InvalidAmount):
            self.account.withdraw(amount)
        assert self.account.balance == eur('1000.00')

    @pytest.mark.parametrize("status", [AccountStatus.PENDING, AccountStatus.FROZEN, AccountStatus.CLOSED])
    def test_reject_withdrawal_when_not_active(self, status):
        self.account.set_status(status)
        with pytest.raises(AccountNotActive, match=status.name):
            self.account.withdraw(Decimal('10.00'))
        assert self.account.balance == eur('1000.00')

    def test_status_is_checked_before_funds(self):
        self.account.set_status(AccountStatus.FROZEN)
        with pytest.raises(AccountNotActive):
            self.account.withdraw(Decimal('5000.00'))

    @pytest.mark.parametrize("amount", ["0.01", "1.99", "250.50", "999.99", "1000.00", "123456789012345.67"])
    def test_deposit_then_withdraw_restores_balance(self, amount):
        original = self.account.balance
        self.account.deposit(Decimal(amount))
        self.account.withdraw(Decimal(amount))
        assert self.account.balance == original


class TestAccountStatus:
    """Test status changes and the lifecycle policy"""

    def setup_method(self):
        self.account = Account.open(ACCOUNT_NUMBER, uuid.uuid4(), AccountType.SAVINGS, Currency.EUR)

    def test_change_status(self):
        self.account.set_status(AccountStatus.FROZEN)
        assert self.account.status == AccountStatus.FROZEN
        assert not self.account.can_transact()

    def test_status_change_updates_timestamp(self):
        original = self.account.updated_at
        time.sleep(0.01)
        self.account.set_status(AccountStatus.FROZEN)
        assert self.account.updated_at > original

    def test_entity_allows_any_transition(self):
        self.account.set_status(AccountStatus.CLOSED)
        self.account.set_status(AccountStatus.ACTIVE)
        assert self.account.can_transact()

    def test_reject_unknown_status(self):
        with pytest.raises(ValueError):
            self.account.set_status("FROZEN")

    def test_pending_blocks_transactions(self):
        self.account.set_status(AccountStatus.PENDING)
        with pytest.raises(AccountNotActive, match="PENDING"):
            self.account.deposit(Decimal('100.00'))

    def test_updated_at_never_moves_backwards(self):
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        self.account.updated_at = future
        self.account.deposit(Decimal('1.00'))
        assert self.account.updated_at >= future

    def test_transition_policy(self):
        assert is_transition_allowed(AccountStatus.PENDING, AccountStatus.ACTIVE)
        assert is_transition_allowed(AccountStatus.ACTIVE, AccountStatus.FROZEN)
        assert is_transition_allowed(AccountStatus.FROZEN, AccountStatus.ACTIVE)
        assert is_transition_allowed(AccountStatus.ACTIVE, AccountStatus.ACTIVE)
        assert not is_transition_allowed(AccountStatus.ACTIVE, AccountStatus.PENDING)
        for status in AccountStatus:
            if status != AccountStatus.CLOSED:
                assert not is_transition_allowed(AccountStatus.CLOSED, status)
        assert set(ALLOWED_TRANSITIONS) == set(AccountStatus)


class TestAccountEquality:
    """Accounts are identified by account number only"""

    def test_same_number_is_equal(self):
        a = Account.open(ACCOUNT_NUMBER, uuid.uuid4(), AccountType.CHECKING, Currency.EUR)
        b = Account.open(ACCOUNT_NUMBER, uuid.uuid4(), AccountType.SAVINGS, Currency.USD)
        b.deposit(Decimal('5.00'))

        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1

    def test_different_numbers_are_not_equal(self):
        customer = uuid.uuid4()
        a = Account.open(ACCOUNT_NUMBER, customer, AccountType.CHECKING, Currency.EUR)
        b = Account.open("FR7630006000019876543210123", customer, AccountType.CHECKING, Currency.EUR)
        assert a != b

    def test_equals_itself_and_not_none(self):
        a = Account.open(ACCOUNT_NUMBER, uuid.uuid4(), AccountType.CHECKING, Currency.EUR)
        assert a == a
        assert a != None  # noqa: E711
        assert a != ACCOUNT_NUMBER

    def test_string_representation(self):
        a = Account.open(ACCOUNT_NUMBER, uuid.uuid4(), AccountType.CHECKING, Currency.EUR)
        a.deposit(Decimal('100.50'))
        assert str(a) == (
            f"Account(account_number='{ACCOUNT_NUMBER}', balance=100.50, "
            f"currency='EUR', status=ACTIVE)"
        )
