"""
Reconciliation Engine

Walks an account's calibrations in date order and, for every ADJACENT
pair (C1, C2), re-derives the balance change from the ledger:

    expected_delta = C2.balance - C1.balance
    actual_delta   = sum(inflows) - sum(outflows) over (C1.date, C2.date]
    diff           = actual_delta - expected_delta

A pair whose |diff| exceeds the tolerance is a ReconciliationIssue.

DESIGN DECISION: Each pair is self-contained. Drift in one pair never
carries into the next, and non-adjacent calibrations are never compared.

DESIGN DECISION: Issues are upserted keyed by the calibration pair, so
re-running a check is idempotent:
- an OPEN issue for the pair is updated in place
- an IGNORED issue for the pair suppresses it (the user already decided)
- a RESOLVED issue whose drift is still present gets a fresh OPEN issue
- a pair that balances now leaves any existing issue untouched; issues are
  closed by user action only

Failures: a single check catches StorageError and reports status=error with
the stage it failed at. A batch additionally isolates any exception per
account, so one account can never abort the others.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

import structlog

from bookkeeping.audit.logger import AuditLogger, create_correlation_id
from bookkeeping.balance.calculator import sum_inflows, sum_outflows
from bookkeeping.config import LedgerSettings, get_settings
from bookkeeping.models.audit import AuditEventBuilder
from bookkeeping.models.ledger import (
    BatchReconciliationResult,
    Calibration,
    CheckStatus,
    IssueStatus,
    ReconciliationIssue,
    ReconciliationResult,
    ReconciliationState,
    ReconciliationStatusReport,
    utcnow,
)
from bookkeeping.services.storage import (
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)


logger = structlog.get_logger(__name__)


class ReconciliationEngine:
    """Adjacent-calibration drift detection and issue management."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().ledger

    @property
    def tolerance(self) -> Decimal:
        return self._settings.reconciliation_tolerance

    # =========================================================================
    # SINGLE ACCOUNT
    # =========================================================================

    async def check(
        self,
        account_id: UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationResult:
        """
        Check every adjacent calibration pair of one account.

        Args:
            account_id: Account to check
            start_date: Only calibrations dated on/after this instant
            end_date: Only calibrations dated on/before this instant
            correlation_id: Ties the audit events to a batch run

        Returns:
            ReconciliationResult with status checked, insufficient_calibrations
            or error (never raises StorageError)
        """
        stage = "fetch_calibrations"
        try:
            calibrations = await self._storage.get_calibrations(
                account_id, date_from=start_date, date_to=end_date
            )
            if len(calibrations) < 2:
                logger.info(
                    "reconciliation_insufficient_calibrations",
                    account_id=str(account_id),
                    calibrations_found=len(calibrations),
                )
                return ReconciliationResult(
                    account_id=account_id,
                    status=CheckStatus.INSUFFICIENT_CALIBRATIONS,
                    calibrations_found=len(calibrations),
                )

            stage = "sum_transactions"
            mismatches = []
            for start, end in zip(calibrations, calibrations[1:]):
                issue = await self._compare_pair(account_id, start, end)
                if issue is not None:
                    mismatches.append(issue)

            stage = "record_issues"
            issues, created, suppressed = await self._record_issues(
                account_id, mismatches, correlation_id
            )
        except StorageError as e:
            logger.error(
                "reconciliation_failed",
                account_id=str(account_id),
                stage=stage,
                error=str(e),
            )
            await self._audit.log_reconciliation_failed(
                account_id, stage, str(e), correlation_id
            )
            return ReconciliationResult(
                account_id=account_id,
                status=CheckStatus.ERROR,
                stage=stage,
                error=str(e),
            )

        result = ReconciliationResult(
            account_id=account_id,
            status=CheckStatus.CHECKED,
            calibrations_found=len(calibrations),
            pairs_checked=len(calibrations) - 1,
            issues_found=len(issues),
            issues_created=created,
            issues_suppressed=suppressed,
            issues=issues,
        )
        await self._audit.log_reconciliation_checked(
            account_id, result.pairs_checked, result.issues_found, correlation_id
        )
        return result

    async def _compare_pair(
        self,
        account_id: UUID,
        start: Calibration,
        end: Calibration,
    ) -> Optional[ReconciliationIssue]:
        inflows = await self._storage.get_inflows(account_id, after=start.date, until=end.date)
        outflows = await self._storage.get_outflows(account_id, after=start.date, until=end.date)

        expected_delta = end.balance - start.balance
        actual_delta = sum_inflows(inflows) - sum_outflows(outflows)
        diff = actual_delta - expected_delta

        logger.debug(
            "reconciliation_pair_compared",
            account_id=str(account_id),
            start_calibration_id=str(start.id),
            end_calibration_id=str(end.id),
            expected_delta=str(expected_delta),
            actual_delta=str(actual_delta),
            diff=str(diff),
        )

        if abs(diff) <= self.tolerance:
            return None

        return ReconciliationIssue(
            account_id=account_id,
            start_calibration_id=start.id,
            end_calibration_id=end.id,
            period_start=start.date,
            period_end=end.date,
            expected_delta=expected_delta,
            actual_delta=actual_delta,
            diff=diff,
        )

    async def _record_issues(
        self,
        account_id: UUID,
        mismatches: list[ReconciliationIssue],
        correlation_id: Optional[UUID],
    ) -> tuple[list[ReconciliationIssue], int, int]:
        """
        Upsert mismatches by calibration pair.

        Returns (live issues, inserted count, pairs suppressed by an ignored issue).
        """
        if not mismatches:
            return [], 0, 0

        by_pair: dict[tuple, list[ReconciliationIssue]] = {}
        for existing in await self._storage.get_reconciliation_issues(account_id=account_id):
            by_pair.setdefault(existing.pair_key, []).append(existing)

        recorded = []
        created = 0
        suppressed = 0
        for mismatch in mismatches:
            previous = by_pair.get(mismatch.pair_key, [])
            if any(i.status == IssueStatus.IGNORED for i in previous):
                suppressed += 1
                continue

            open_issue = next((i for i in previous if i.status == IssueStatus.OPEN), None)
            if open_issue is not None:
                updated = open_issue.model_copy(update={
                    "period_start": mismatch.period_start,
                    "period_end": mismatch.period_end,
                    "expected_delta": mismatch.expected_delta,
                    "actual_delta": mismatch.actual_delta,
                    "diff": mismatch.diff,
                })
                await self._storage.update_reconciliation_issue(updated)
                recorded.append(updated)
                continue

            await self._storage.add_reconciliation_issue(mismatch)
            created += 1
            recorded.append(mismatch)
            await self._audit.log(
                AuditEventBuilder.reconciliation_issue_detected(
                    mismatch.id, account_id, mismatch.diff, correlation_id
                )
            )

        return recorded, created, suppressed

    # =========================================================================
    # BATCH
    # =========================================================================

    async def check_batch(
        self,
        account_ids: Iterable[UUID],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> BatchReconciliationResult:
        """
        Check many accounts in parallel.

        Concurrency is bounded by `batch_concurrency`. When a timeout (or the
        configured `batch_timeout_seconds`) elapses, unfinished accounts are
        cancelled and reported as failed with stage "timeout"; finished ones
        keep their results.
        """
        ids = list(dict.fromkeys(account_ids))
        correlation_id = create_correlation_id()
        semaphore = asyncio.Semaphore(self._settings.batch_concurrency)
        deadline = timeout if timeout is not None else self._settings.batch_timeout_seconds

        async def run_one(account_id: UUID) -> ReconciliationResult:
            async with semaphore:
                try:
                    return await self.check(account_id, start_date, end_date, correlation_id)
                except Exception as e:
                    logger.error(
                        "reconciliation_unexpected_error",
                        account_id=str(account_id),
                        error=str(e),
                    )
                    await self._audit.log_error(
                        "reconciliation_unexpected_error",
                        str(e),
                        {"account_id": str(account_id)},
                        correlation_id,
                    )
                    return ReconciliationResult(
                        account_id=account_id,
                        status=CheckStatus.ERROR,
                        stage="unexpected",
                        error=str(e),
                    )

        batch = BatchReconciliationResult(total_accounts=len(ids))
        if not ids:
            return batch

        tasks = [asyncio.ensure_future(run_one(account_id)) for account_id in ids]
        _, pending = await asyncio.wait(tasks, timeout=deadline)
        for task in pending:
            task.cancel()
        if pending:
            batch.timed_out = True
            await asyncio.gather(*pending, return_exceptions=True)

        for account_id, task in zip(ids, tasks):
            if task in pending:
                result = ReconciliationResult(
                    account_id=account_id,
                    status=CheckStatus.ERROR,
                    stage="timeout",
                    error=f"Batch deadline of {deadline}s exceeded",
                )
            else:
                result = task.result()
            batch.details.append(result)

            if result.status == CheckStatus.CHECKED:
                batch.checked_accounts += 1
                batch.total_issues_found += result.issues_found
            elif result.status == CheckStatus.INSUFFICIENT_CALIBRATIONS:
                batch.insufficient_calibrations.append(account_id)
            else:
                batch.failed_accounts.append(account_id)

        logger.info(
            "reconciliation_batch_completed",
            correlation_id=str(correlation_id),
            total_accounts=batch.total_accounts,
            checked_accounts=batch.checked_accounts,
            total_issues_found=batch.total_issues_found,
            failed_accounts=len(batch.failed_accounts),
            timed_out=batch.timed_out,
        )
        return batch

    async def regenerate_issues(
        self,
        account_ids: Optional[Iterable[UUID]] = None,
    ) -> BatchReconciliationResult:
        """Re-run the check for the given accounts, or for every active leaf real account."""
        if account_ids is None:
            accounts = await self._storage.get_accounts()
            account_ids = [a.id for a in accounts if a.is_leaf_real and a.is_active]
        return await self.check_batch(account_ids)

    # =========================================================================
    # STATUS AND ISSUE MANAGEMENT
    # =========================================================================

    async def reconciliation_status(
        self,
        account_id: UUID,
        now: Optional[datetime] = None,
    ) -> ReconciliationStatusReport:
        """
        Compare the latest calibration with the ledger-only balance at `now`.

        The ledger balance is every inflow minus every outflow up to `now`,
        with no calibration anchor, so any gap between the transfers and what
        the user calibrated shows up as a difference.
        """
        now = now or utcnow()
        latest = await self._storage.get_latest_calibration(account_id, at_or_before=now)
        if latest is None:
            return ReconciliationStatusReport(
                account_id=account_id,
                state=ReconciliationState.NO_CALIBRATION,
            )

        inflows = await self._storage.get_inflows(account_id, until=now)
        outflows = await self._storage.get_outflows(account_id, until=now)
        current = sum_inflows(inflows) - sum_outflows(outflows)
        diff = current - latest.balance
        state = (
            ReconciliationState.CONSISTENT
            if abs(diff) <= self.tolerance
            else ReconciliationState.HAS_DIFFERENCE
        )
        return ReconciliationStatusReport(
            account_id=account_id,
            state=state,
            calibration_balance=latest.balance,
            current_balance=current,
            diff=diff,
            last_calibration_date=latest.date,
        )

    async def list_issues(
        self,
        status: Optional[IssueStatus] = None,
        account_id: Optional[UUID] = None,
    ) -> list[ReconciliationIssue]:
        return await self._storage.get_reconciliation_issues(status=status, account_id=account_id)

    async def resolve_issue(self, issue_id: UUID) -> ReconciliationIssue:
        return await self._close_issue(issue_id, IssueStatus.RESOLVED)

    async def ignore_issue(self, issue_id: UUID) -> ReconciliationIssue:
        return await self._close_issue(issue_id, IssueStatus.IGNORED)

    async def _close_issue(self, issue_id: UUID, status: IssueStatus) -> ReconciliationIssue:
        issue = await self._storage.get_reconciliation_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"Reconciliation issue not found: {issue_id}")

        closed = issue.model_copy(update={"status": status, "resolved_at": utcnow()})
        await self._storage.update_reconciliation_issue(closed)
        await self._audit.log(AuditEventBuilder.issue_closed(issue_id, status.value))
        return closed
