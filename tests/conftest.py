"""
Shared fixtures.

Every test runs against InMemoryStorage; nothing touches Google Sheets.
"""

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional

import pytest

from bookkeeping.config import BudgetSettings, CurrencySettings, LedgerSettings
from bookkeeping.models.ledger import (
    Account,
    AccountClass,
    AccountType,
    Calibration,
    Transaction,
)
from bookkeeping.services.storage import InMemoryStorage


def at(year: int, month: int, day: int, hour: int = 12, minute: int = 0) -> datetime:
    """Aware UTC instant."""
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def transfer(
    source: Account,
    target: Account,
    amount: str,
    when: datetime,
    from_amount: Optional[str] = None,
    to_amount: Optional[str] = None,
) -> Transaction:
    return Transaction(
        from_account_id=source.id,
        to_account_id=target.id,
        amount=Decimal(amount),
        from_amount=Decimal(from_amount) if from_amount is not None else None,
        to_amount=Decimal(to_amount) if to_amount is not None else None,
        date=when,
    )


def calibration(account: Account, balance: str, when: datetime, **kwargs) -> Calibration:
    return Calibration(account_id=account.id, balance=Decimal(balance), date=when, **kwargs)


def _real(name: str, type_: AccountType, currency: str, parent=None) -> Account:
    return Account(
        name=name,
        account_class=AccountClass.REAL,
        type=type_,
        currency=currency,
        parent_id=parent.id if parent else None,
    )


def _nominal(name: str, type_: AccountType, parent=None, is_group: bool = False) -> Account:
    return Account(
        name=name,
        account_class=AccountClass.NOMINAL,
        type=type_,
        parent_id=parent.id if parent else None,
        is_group=is_group,
    )


@pytest.fixture
def chart() -> SimpleNamespace:
    """
    A small account forest.

    Expenses (group)
      Food
        Groceries
          Organic
      Transport
    Assets: bank (CNY), wallet_usd (USD); Liabilities: card (CNY)
    """
    assets = Account(
        name="Assets",
        account_class=AccountClass.REAL,
        type=AccountType.ASSET,
        is_group=True,
    )
    bank = _real("Bank", AccountType.ASSET, "CNY", assets)
    wallet_usd = _real("USD Wallet", AccountType.ASSET, "USD", assets)
    card = _real("Credit Card", AccountType.LIABILITY, "CNY")
    expenses = _nominal("Expenses", AccountType.EXPENSE, is_group=True)
    food = _nominal("Food", AccountType.EXPENSE, expenses)
    groceries = _nominal("Groceries", AccountType.EXPENSE, food)
    organic = _nominal("Organic", AccountType.EXPENSE, groceries)
    transport = _nominal("Transport", AccountType.EXPENSE, expenses)
    salary = _nominal("Salary", AccountType.INCOME)
    opening = _nominal("Opening Balance", AccountType.EQUITY)

    return SimpleNamespace(
        assets=assets,
        bank=bank,
        wallet_usd=wallet_usd,
        card=card,
        expenses=expenses,
        food=food,
        groceries=groceries,
        organic=organic,
        transport=transport,
        salary=salary,
        opening=opening,
        all=[
            assets, bank, wallet_usd, card, expenses, food,
            groceries, organic, transport, salary, opening,
        ],
    )


@pytest.fixture
def storage(chart) -> InMemoryStorage:
    return InMemoryStorage(
        accounts=chart.all,
        rates={("USD", "CNY"): Decimal("7")},
    )


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    return LedgerSettings(timezone="UTC", reconciliation_tolerance=Decimal("0.01"))


@pytest.fixture
def budget_settings() -> BudgetSettings:
    return BudgetSettings(periods_per_round=12, soft_limit_lookback=3)


@pytest.fixture
def currency_settings() -> CurrencySettings:
    return CurrencySettings(fallback_rates={}, derive_inverse=True)
