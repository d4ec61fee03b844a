"""
Ledger Write Validation

DESIGN DECISION: The engines trust what is in the store. Every invariant
of the ledger is therefore enforced on the way IN:

ACCOUNTS:
- A parent must exist and must not be the account itself or one of its
  descendants (the forest stays acyclic)
- Leaf real accounts carry exactly one currency; nominal and group
  accounts carry none
- A currency is immutable once the account has transactions

TRANSACTIONS:
- Both accounts exist, differ, and are not groups

CALIBRATIONS:
- The account exists and holds a balance (leaf real account)
- A non-opening calibration repeating the latest balance is rejected

BUDGET PLANS:
- Every referenced category is an existing expense account

IMPORTANT: Validation NEVER silently fixes issues.
It reports them; the caller raises LedgerValidationError on errors.
"""

from typing import Optional

from bookkeeping.budget.aggregator import expand_descendants
from bookkeeping.config import LedgerSettings, get_settings
from bookkeeping.models.budget import BudgetPlan, PlanType
from bookkeeping.models.ledger import (
    Account,
    AccountClass,
    AccountType,
    Calibration,
    Transaction,
)
from bookkeeping.models.validation import (
    LedgerValidationError,
    ValidationIssue,
    ValidationResult,
)
from bookkeeping.services.storage import LedgerStorageInterface


class LedgerValidator:
    """Checks ledger writes against the store before they happen."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().ledger

    @staticmethod
    def raise_for_errors(result: ValidationResult) -> ValidationResult:
        """Raise LedgerValidationError if the result has errors; return it otherwise."""
        if not result.is_valid:
            raise LedgerValidationError(result)
        return result

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def validate_account(self, account: Account) -> ValidationResult:
        issues = []
        accounts = await self._storage.get_accounts()
        by_id = {a.id: a for a in accounts}

        if account.parent_id is not None:
            if account.parent_id == account.id:
                issues.append(ValidationIssue(
                    field="parent_id",
                    issue_type="cycle",
                    message="An account cannot be its own parent",
                    severity="error",
                ))
            elif account.parent_id not in by_id:
                issues.append(ValidationIssue(
                    field="parent_id",
                    issue_type="missing",
                    message=f"Parent account {account.parent_id} does not exist",
                    severity="error",
                ))
            elif account.parent_id in expand_descendants([account.id], accounts):
                issues.append(ValidationIssue(
                    field="parent_id",
                    issue_type="cycle",
                    message="An account cannot be moved under one of its own descendants",
                    severity="error",
                ))

        if account.is_leaf_real and not account.currency:
            issues.append(ValidationIssue(
                field="currency",
                issue_type="missing",
                message="Real accounts that are not groups need a currency",
                severity="error",
                suggested_fix=f"Use the default currency {self._settings.default_currency}",
            ))
        elif not account.is_leaf_real and account.currency:
            issues.append(ValidationIssue(
                field="currency",
                issue_type="forbidden",
                message="Only non-group real accounts carry a currency",
                severity="error",
            ))

        existing = by_id.get(account.id)
        if (
            existing is not None
            and existing.currency != account.currency
            and await self._storage.account_has_transactions(account.id)
        ):
            issues.append(ValidationIssue(
                field="currency",
                issue_type="immutable",
                message="Currency cannot change once the account has transactions",
                severity="error",
                suggested_fix="Create a new account in the other currency",
            ))

        if account.account_class == AccountClass.UNKNOWN or account.type == AccountType.UNKNOWN:
            issues.append(ValidationIssue(
                field="type",
                issue_type="unknown",
                message="Account class or type is not recognised",
                severity="warning",
            ))

        return ValidationResult(entity_type="account", issues=issues)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def validate_transaction(self, transaction: Transaction) -> ValidationResult:
        issues = []
        sides = {
            "from_account_id": transaction.from_account_id,
            "to_account_id": transaction.to_account_id,
        }
        resolved = {}
        for field, account_id in sides.items():
            account = await self._storage.get_account(account_id)
            if account is None:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="missing",
                    message=f"Account {account_id} does not exist",
                    severity="error",
                ))
                continue
            resolved[field] = account
            if account.is_group:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="group_account",
                    message=f"Group account '{account.name}' cannot take transfers directly",
                    severity="error",
                    suggested_fix="Pick one of its child accounts",
                ))
            if not account.is_active:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="inactive",
                    message=f"Account '{account.name}' is inactive",
                    severity="warning",
                ))

        source = resolved.get("from_account_id")
        target = resolved.get("to_account_id")
        if (
            source is not None and target is not None
            and source.currency and target.currency
            and source.currency != target.currency
            and transaction.to_amount is None
        ):
            issues.append(ValidationIssue(
                field="to_amount",
                issue_type="cross_currency",
                message=(
                    f"Transfer from {source.currency} to {target.currency} "
                    "has no to_amount; amount is applied to both sides"
                ),
                severity="warning",
            ))

        return ValidationResult(entity_type="transaction", issues=issues)

    # =========================================================================
    # CALIBRATIONS
    # =========================================================================

    async def validate_calibration(self, calibration: Calibration) -> ValidationResult:
        issues = []
        account = await self._storage.get_account(calibration.account_id)
        if account is None:
            issues.append(ValidationIssue(
                field="account_id",
                issue_type="missing",
                message=f"Account {calibration.account_id} does not exist",
                severity="error",
            ))
            return ValidationResult(entity_type="calibration", issues=issues)

        if not account.is_leaf_real:
            issues.append(ValidationIssue(
                field="account_id",
                issue_type="not_calibratable",
                message=f"Account '{account.name}' does not hold a balance",
                severity="error",
            ))

        if not calibration.is_opening:
            latest = await self._storage.get_latest_calibration(calibration.account_id)
            if (
                latest is not None
                and abs(latest.balance - calibration.balance)
                < self._settings.reconciliation_tolerance
            ):
                issues.append(ValidationIssue(
                    field="balance",
                    issue_type="duplicate_balance",
                    message=(
                        f"Balance {calibration.balance} repeats the latest calibration "
                        f"of {latest.date.date().isoformat()}"
                    ),
                    severity="error",
                ))

        return ValidationResult(entity_type="calibration", issues=issues)

    # =========================================================================
    # BUDGET PLANS
    # =========================================================================

    async def validate_budget_plan(self, plan: BudgetPlan) -> ValidationResult:
        issues = []
        by_id = {a.id: a for a in await self._storage.get_accounts()}

        if plan.plan_type == PlanType.CATEGORY:
            categories = {"category_account_id": [plan.category_account_id]}
        else:
            categories = {"included_category_ids": plan.included_category_ids}

        for field, ids in categories.items():
            for account_id in ids:
                account = by_id.get(account_id)
                if account is None:
                    issues.append(ValidationIssue(
                        field=field,
                        issue_type="missing",
                        message=f"Category account {account_id} does not exist",
                        severity="error",
                    ))
                elif account.type != AccountType.EXPENSE:
                    issues.append(ValidationIssue(
                        field=field,
                        issue_type="not_expense",
                        message=f"Account '{account.name}' is not an expense account",
                        severity="error",
                    ))

        for account_id in plan.account_filter_ids:
            if account_id not in by_id:
                issues.append(ValidationIssue(
                    field="account_filter_ids",
                    issue_type="missing",
                    message=f"Filter account {account_id} does not exist",
                    severity="warning",
                ))

        if plan.hard_limit == 0:
            issues.append(ValidationIssue(
                field="hard_limit",
                issue_type="zero_limit",
                message="A hard limit of 0 turns any spend red",
                severity="warning",
            ))

        return ValidationResult(entity_type="budget_plan", issues=issues)
