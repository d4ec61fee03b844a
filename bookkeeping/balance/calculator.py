"""
Ledger Balance Calculator

No balance is ever stored. A balance at an instant is reconstructed from
the nearest calibration at or before that instant plus the transfers
recorded after it:

    balance = anchor.balance + sum(inflows) - sum(outflows)
    over transfers dated in (anchor.date, target]

DESIGN DECISION: The anchor boundary is exclusive and the target boundary
inclusive. A calibration already reflects a transfer dated exactly at its
instant, so counting it again would double it.

When an account has never been calibrated, the anchor is zero at
LEDGER_EPOCH. That is not an error. The only failure mode is the store
itself (StorageError propagates unchanged).
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from bookkeeping.models.ledger import (
    LEDGER_EPOCH,
    BalanceReport,
    Calibration,
    Transaction,
    ensure_aware,
)
from bookkeeping.services.storage import LedgerStorageInterface


logger = structlog.get_logger(__name__)


def sum_inflows(transactions: list[Transaction]) -> Decimal:
    """Effect on the receiving side: to_amount when present, else amount."""
    return sum((tx.inflow_amount for tx in transactions), Decimal("0"))


def sum_outflows(transactions: list[Transaction]) -> Decimal:
    """Effect on the paying side: from_amount when present, else amount."""
    return sum((tx.outflow_amount for tx in transactions), Decimal("0"))


class BalanceCalculator:
    """Calibration-anchored balance reconstruction."""

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage

    async def balance_at(self, account_id: UUID, target: datetime) -> Decimal:
        """
        Balance of an account at `target`.

        `target` may be past or future; this is a projection, not a live
        balance. Pass "now" for the current balance.
        """
        report = await self.explain_balance(account_id, target)
        return report.balance

    async def explain_balance(self, account_id: UUID, target: datetime) -> BalanceReport:
        """Same computation as balance_at, with the anchor and totals that produced it."""
        target = ensure_aware(target)
        anchor = await self._storage.get_latest_calibration(account_id, at_or_before=target)
        return await self._forward(account_id, target, anchor)

    async def project_balance(self, account_id: UUID, target: datetime) -> BalanceReport:
        """
        Balance at `target`, projecting backwards from a later calibration
        when none precedes the target.

            balance = next.balance - sum(inflows) + sum(outflows)
            over transfers dated in (target, next.date]

        Falls back to the zero-anchored forward computation when the
        account has no calibration at all.
        """
        target = ensure_aware(target)
        anchor = await self._storage.get_latest_calibration(account_id, at_or_before=target)
        if anchor is not None:
            return await self._forward(account_id, target, anchor)

        following = await self._storage.get_next_calibration(account_id, after=target)
        if following is None:
            return await self._forward(account_id, target, None)

        inflows = await self._storage.get_inflows(account_id, after=target, until=following.date)
        outflows = await self._storage.get_outflows(account_id, after=target, until=following.date)
        inflow_total = sum_inflows(inflows)
        outflow_total = sum_outflows(outflows)
        balance = following.balance - inflow_total + outflow_total

        logger.debug(
            "balance_projected_backward",
            account_id=str(account_id),
            target=target.isoformat(),
            anchor_calibration_id=str(following.id),
            anchor_balance=str(following.balance),
            inflow_total=str(inflow_total),
            outflow_total=str(outflow_total),
            balance=str(balance),
        )

        return BalanceReport(
            account_id=account_id,
            target=target,
            anchor_calibration_id=following.id,
            anchor_balance=following.balance,
            anchor_date=following.date,
            direction="backward",
            inflow_total=inflow_total,
            outflow_total=outflow_total,
            inflow_count=len(inflows),
            outflow_count=len(outflows),
            balance=balance,
        )

    async def _forward(
        self,
        account_id: UUID,
        target: datetime,
        anchor: Optional[Calibration],
    ) -> BalanceReport:
        after = anchor.date if anchor is not None else None
        anchor_balance = anchor.balance if anchor is not None else Decimal("0")

        inflows = await self._storage.get_inflows(account_id, after=after, until=target)
        outflows = await self._storage.get_outflows(account_id, after=after, until=target)
        inflow_total = sum_inflows(inflows)
        outflow_total = sum_outflows(outflows)
        balance = anchor_balance + inflow_total - outflow_total

        logger.debug(
            "balance_reconstructed",
            account_id=str(account_id),
            target=target.isoformat(),
            anchor_calibration_id=str(anchor.id) if anchor else None,
            anchor_balance=str(anchor_balance),
            inflow_total=str(inflow_total),
            outflow_total=str(outflow_total),
            balance=str(balance),
        )

        return BalanceReport(
            account_id=account_id,
            target=target,
            anchor_calibration_id=anchor.id if anchor else None,
            anchor_balance=anchor_balance,
            anchor_date=anchor.date if anchor else LEDGER_EPOCH,
            direction="forward",
            inflow_total=inflow_total,
            outflow_total=outflow_total,
            inflow_count=len(inflows),
            outflow_count=len(outflows),
            balance=balance,
        )
