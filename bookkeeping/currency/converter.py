"""
Currency Converter

Turns an amount in one currency into another:
    amount_in(to) = amount_in(from) * rate(from, to)

Lookup order for a pair:
1. Same currency -> 1, always
2. This converter's memo
3. Store rate from->to, then store rate to->from inverted
4. Configured fallback table, direct then inverted

DESIGN DECISION: A converter is an explicit object handed to each
aggregation pass, not a module-level singleton. Its memo lives exactly as
long as the pass that created it, so parallel passes never share (or
invalidate) each other's cache.

A missing rate is an error. Nothing in here ever assumes 1.0 for two
different currencies.
"""

from decimal import Decimal
from typing import Optional

import structlog

from bookkeeping.config import CurrencySettings, get_settings
from bookkeeping.errors import ConfigurationError, CurrencyRateNotFoundError
from bookkeeping.services.storage import LedgerStorageInterface


logger = structlog.get_logger(__name__)

ONE = Decimal("1")


class CurrencyConverter:
    """Rate lookup and conversion, memoized per instance."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        settings: Optional[CurrencySettings] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().currency
        self._memo: dict[tuple[str, str], Decimal] = {}

    async def rate(self, from_currency: str, to_currency: str) -> Decimal:
        """
        Positive multiplier converting from_currency into to_currency.

        Raises:
            CurrencyRateNotFoundError: No direct, inverse or fallback rate exists
            ConfigurationError: A configured rate is zero or negative
            StorageError: The rate store could not be queried
        """
        source = from_currency.strip().upper()
        target = to_currency.strip().upper()
        if source == target:
            return ONE

        key = (source, target)
        if key in self._memo:
            return self._memo[key]

        rate = await self._lookup(source, target)
        self._memo[key] = rate
        return rate

    async def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
    ) -> Decimal:
        return amount * await self.rate(from_currency, to_currency)

    def clear(self) -> None:
        """Forget memoized rates."""
        self._memo.clear()

    async def _lookup(self, source: str, target: str) -> Decimal:
        direct = await self._storage.get_rate(source, target)
        if direct is not None:
            return self._checked(direct, source, target, "store")

        if self._settings.derive_inverse:
            inverse = await self._storage.get_rate(target, source)
            if inverse is not None:
                return ONE / self._checked(inverse, target, source, "store")

        fallback = self._fallback(source, target)
        if fallback is not None:
            return self._checked(fallback, source, target, "fallback")

        if self._settings.derive_inverse:
            fallback_inverse = self._fallback(target, source)
            if fallback_inverse is not None:
                return ONE / self._checked(fallback_inverse, target, source, "fallback")

        logger.warning("currency_rate_missing", from_currency=source, to_currency=target)
        raise CurrencyRateNotFoundError(source, target)

    def _fallback(self, source: str, target: str) -> Optional[Decimal]:
        for configured_source, targets in self._settings.fallback_rates.items():
            if configured_source.upper() != source:
                continue
            for configured_target, rate in targets.items():
                if configured_target.upper() == target:
                    return Decimal(rate)
        return None

    @staticmethod
    def _checked(rate: Decimal, source: str, target: str, origin: str) -> Decimal:
        if rate <= 0:
            raise ConfigurationError(
                f"Non-positive {origin} rate configured for {source} -> {target}: {rate}"
            )
        logger.debug("currency_rate_resolved", from_currency=source, to_currency=target,
                     rate=str(rate), origin=origin)
        return rate
