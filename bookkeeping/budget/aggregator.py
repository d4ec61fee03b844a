"""
Budget spend aggregation.

spend(plan, period_start, period_end):
1. Resolve the target expense accounts (descendant closure of the plan's roots)
2. Fetch transfers INTO those accounts dated within the period
3. Apply the plan's source-account filter (all / include / exclude)
4. Drop transfers whose source is itself an expense account
   (inter-expense adjustments are not new spend)
5. Convert each inflow into the plan's limit currency and sum

Calendar periods become instants in the configured ledger timezone:
[start-of-day(period_start), start-of-day(period_end + 1 day)).
"""

from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional
from uuid import UUID

import structlog

from bookkeeping.budget.periods import previous_periods
from bookkeeping.config import BudgetSettings, LedgerSettings, get_settings
from bookkeeping.currency.converter import CurrencyConverter
from bookkeeping.errors import MissingAccountError
from bookkeeping.models.budget import (
    AccountFilterMode,
    BudgetPlan,
    IndicatorStatus,
    PlanType,
)
from bookkeeping.models.ledger import Account, AccountType, Transaction
from bookkeeping.services.storage import LedgerStorageInterface


logger = structlog.get_logger(__name__)


def classify(
    actual: Decimal,
    hard_limit: Decimal,
    soft_limit: Optional[Decimal] = None,
) -> IndicatorStatus:
    """
    Tri-state indicator of one period.

    red   if actual > hard_limit (strict)
    star  if a soft limit is set and actual <= soft_limit
    green otherwise

    A soft limit above the hard limit is taken literally: red still wins.
    """
    if actual > hard_limit:
        return IndicatorStatus.RED
    if soft_limit is not None and actual <= soft_limit:
        return IndicatorStatus.STAR
    return IndicatorStatus.GREEN


def expand_descendants(roots: Iterable[UUID], accounts: Iterable[Account]) -> set[UUID]:
    """
    Closure of `roots` under the child relation.

    Iterative worklist over a parent-indexed adjacency map; the visited set
    makes a corrupted (cyclic) tree terminate.
    """
    children: dict[UUID, list[UUID]] = {}
    for account in accounts:
        if account.parent_id is not None:
            children.setdefault(account.parent_id, []).append(account.id)

    visited: set[UUID] = set()
    stack = list(roots)
    while stack:
        node = stack.pop()
        if node in visited:
            continue
        visited.add(node)
        stack.extend(children.get(node, ()))
    return visited


def resolve_target_accounts(plan: BudgetPlan, accounts: list[Account]) -> set[UUID]:
    """
    Expense accounts whose inflows count towards a plan.

    Raises:
        MissingAccountError: A configured root no longer exists
    """
    known = {account.id for account in accounts}

    if plan.plan_type == PlanType.CATEGORY:
        roots = [plan.category_account_id]
    elif plan.included_category_ids:
        roots = list(plan.included_category_ids)
    else:
        return {account.id for account in accounts if account.type == AccountType.EXPENSE}

    for root in roots:
        if root not in known:
            raise MissingAccountError(root, context=f"budget plan {plan.id}")
    return expand_descendants(roots, accounts)


def passes_account_filter(transaction: Transaction, plan: BudgetPlan) -> bool:
    """An empty id list disables the filter."""
    if plan.account_filter_mode == AccountFilterMode.ALL or not plan.account_filter_ids:
        return True
    listed = transaction.from_account_id in set(plan.account_filter_ids)
    if plan.account_filter_mode == AccountFilterMode.INCLUDE:
        return listed
    return not listed


class BudgetAggregator:
    """Computes period spend and soft limits for budget plans."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        ledger_settings: Optional[LedgerSettings] = None,
        budget_settings: Optional[BudgetSettings] = None,
    ):
        self._storage = storage
        self._ledger = ledger_settings or get_settings().ledger
        self._budget = budget_settings or get_settings().budget

    def new_converter(self) -> CurrencyConverter:
        return CurrencyConverter(self._storage)

    def quantize(self, amount: Decimal) -> Decimal:
        return amount.quantize(
            Decimal(1).scaleb(-self._ledger.money_places),
            rounding=ROUND_HALF_UP,
        )

    def period_instants(self, period_start: date, period_end: date) -> tuple[datetime, datetime]:
        """Half-open instant range covering the calendar days [period_start, period_end]."""
        tz = self._ledger.tzinfo
        start = datetime.combine(period_start, time.min, tzinfo=tz)
        end = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=tz)
        return start, end

    async def spend(
        self,
        plan: BudgetPlan,
        period_start: date,
        period_end: date,
        converter: Optional[CurrencyConverter] = None,
    ) -> Decimal:
        """
        Actual spend of a plan over [period_start, period_end], in the plan's
        limit currency.

        Raises:
            MissingAccountError: The plan targets an account that does not exist
            CurrencyRateNotFoundError: A transfer's currency cannot be converted
            StorageError: The store could not be queried
        """
        converter = converter or self.new_converter()
        accounts = await self._storage.get_accounts()
        by_id = {account.id: account for account in accounts}
        targets = resolve_target_accounts(plan, accounts)
        if not targets:
            return self.quantize(Decimal("0"))

        start, end = self.period_instants(period_start, period_end)
        transactions = await self._storage.get_transactions_into(targets, start, end)

        total = Decimal("0")
        counted = 0
        for tx in transactions:
            if not passes_account_filter(tx, plan):
                continue
            source = by_id.get(tx.from_account_id)
            if source is not None and source.type == AccountType.EXPENSE:
                continue

            currency = self._transaction_currency(tx, by_id)
            total += await converter.convert(tx.inflow_amount, currency, plan.limit_currency)
            counted += 1

        total = self.quantize(total)
        logger.debug(
            "budget_spend_computed",
            plan_id=str(plan.id),
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
            target_accounts=len(targets),
            transactions_fetched=len(transactions),
            transactions_counted=counted,
            total=str(total),
            currency=plan.limit_currency,
        )
        return total

    def _transaction_currency(self, tx: Transaction, by_id: dict[UUID, Account]) -> str:
        """
        Currency of the amount landing in the expense account.

        Nominal expense accounts rarely carry a currency, so the paying
        account's currency is used next, then the ledger default.
        """
        for account_id in (tx.to_account_id, tx.from_account_id):
            account = by_id.get(account_id)
            if account is not None and account.currency:
                return account.currency
        return self._ledger.default_currency

    async def soft_limit(
        self,
        plan: BudgetPlan,
        period_start: date,
        converter: Optional[CurrencyConverter] = None,
    ) -> Optional[Decimal]:
        """
        Average spend of the natural periods preceding `period_start`,
        or None when the plan has soft limits disabled.
        """
        if not plan.soft_limit_enabled:
            return None

        converter = converter or self.new_converter()
        windows = previous_periods(period_start, plan.period, self._budget.soft_limit_lookback)
        total = Decimal("0")
        for start, end in windows:
            total += await self.spend(plan, start, end, converter)
        return self.quantize(total / len(windows))
