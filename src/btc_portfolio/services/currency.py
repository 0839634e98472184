"""Conversion of native transaction amounts into the reporting currency.

Rates are the *current* rates for every currency in a snapshot; historical
rates are not tracked. A rate that cannot be obtained degrades to 1.0 and
is flagged on the result instead of failing the calculation.
"""
import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from btc_portfolio.logger import get_logger

logger = get_logger(__name__)

FALLBACK_RATE = Decimal(1)


class RateProvider(Protocol):
    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal | None: ...


@dataclass(frozen=True)
class Converted:
    amount: Decimal
    rate: Decimal
    used_fallback: bool = False


@dataclass(frozen=True)
class Unavailable:
    amount: Decimal
    currency: str
    rate: Decimal = FALLBACK_RATE
    used_fallback: bool = True


ConversionResult = Converted | Unavailable


@dataclass
class RateTable:
    target: str
    rates: dict[str, Decimal] = field(default_factory=dict)
    unavailable: set[str] = field(default_factory=set)

    def lookup(self, currency: str) -> ConversionResult:
        """Describe the rate for ``currency`` as a typed result for one unit."""
        return self.convert(Decimal(1), currency)

    def convert(self, amount: Decimal, currency: str) -> ConversionResult:
        code = currency.upper()
        if code == self.target:
            return Converted(amount=amount, rate=Decimal(1))
        rate = self.rates.get(code)
        if rate is None:
            return Unavailable(amount=amount * FALLBACK_RATE, currency=code)
        return Converted(amount=amount * rate, rate=rate)

    def rate(self, currency: str) -> Decimal:
        return self.lookup(currency).rate

    def to_target(self, amount: Decimal, currency: str) -> Decimal:
        return self.convert(amount, currency).amount


async def _lookup_rate(
    provider: RateProvider,
    currency: str,
    target: str,
) -> Decimal | None:
    try:
        rate = await provider.get_rate(currency, target)
    except Exception as exc:
        logger.warning("[FX] Rate lookup %s->%s failed: %s", currency, target, exc)
        return None
    if rate is None or rate <= 0:
        return None
    return rate


async def build_rate_table(
    provider: RateProvider | None,
    currencies: Iterable[str],
    target: str,
) -> RateTable:
    """Fetch the current rate once per distinct currency."""
    target = target.upper()
    table = RateTable(target=target)
    wanted = sorted({code.upper() for code in currencies if code} - {target})
    if not wanted:
        return table
    if provider is None:
        table.unavailable.update(wanted)
        return table

    results = await asyncio.gather(*(_lookup_rate(provider, code, target) for code in wanted))
    for code, rate in zip(wanted, results):
        if rate is None:
            table.unavailable.add(code)
            logger.warning("[FX] No rate for %s->%s, using %s.", code, target, FALLBACK_RATE)
        else:
            table.rates[code] = rate
    return table
