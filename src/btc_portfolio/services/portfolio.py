"""Cost basis, holdings and P&L over an owner's ledger snapshot.

A single running weighted average is used for cost basis; there is no lot
tracking. Everything here is synchronous and side-effect free, callers run
it in a worker thread.
"""
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from btc_portfolio.domain.dates import days_between, month_key, utcnow
from btc_portfolio.models import (
    BTC,
    SATOSHIS_PER_BTC,
    LegacyTransferType,
    Temperature,
    Transaction,
    TransactionKind,
    TransferCategory,
    Wallet,
)
from btc_portfolio.services.currency import RateTable

ZERO = Decimal(0)
HUNDRED = Decimal(100)


@dataclass(frozen=True)
class MarketSnapshot:
    """Current market inputs, already expressed in the main currency."""

    btc_price: Decimal
    change_24h: Decimal = ZERO
    change_percent_24h: Decimal = ZERO
    used_fallback_price: bool = False
    secondary_currency: str | None = None
    secondary_btc_price: Decimal | None = None


@dataclass
class LedgerPartition:
    buys: list[Transaction] = field(default_factory=list)
    sells: list[Transaction] = field(default_factory=list)
    internal: list[Transaction] = field(default_factory=list)
    external_in: list[Transaction] = field(default_factory=list)
    external_out: list[Transaction] = field(default_factory=list)

    @property
    def transfers(self) -> list[Transaction]:
        return [*self.internal, *self.external_in, *self.external_out]


class WalletBalance(BaseModel):
    wallet_id: str
    name: str
    temperature: Temperature
    include_in_total: bool
    incoming: Decimal
    outgoing: Decimal
    outgoing_btc_fees: Decimal
    balance: Decimal


class MonthlyPerformance(BaseModel):
    month: str
    buys: int = 0
    sells: int = 0
    btc_bought: Decimal = ZERO
    btc_sold: Decimal = ZERO
    invested: Decimal = ZERO
    received: Decimal = ZERO
    avg_buy_price: Decimal = ZERO
    avg_sell_price: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    net_btc: Decimal = ZERO


class DetailedMetrics(BaseModel):
    monthly_breakdown: list[MonthlyPerformance] = Field(default_factory=list)
    holding_days: int = 0
    annualized_return: float = 0.0
    win_rate: float = 0.0
    winning_trades: int = 0
    losing_trades: int = 0
    total_btc_bought: Decimal = ZERO
    total_btc_sold: Decimal = ZERO
    largest_purchase: Decimal = ZERO
    avg_buy_amount: Decimal = ZERO


class PortfolioMetrics(BaseModel):
    main_currency: str
    secondary_currency: str | None = None

    total_btc: Decimal = ZERO
    total_satoshis: int = 0
    total_bought: Decimal = ZERO
    total_sold: Decimal = ZERO
    transferred_in: Decimal = ZERO
    transferred_out: Decimal = ZERO
    btc_fees_burned: Decimal = ZERO
    btc_with_cost_basis: Decimal = ZERO

    current_btc_price: Decimal = ZERO
    portfolio_value: Decimal = ZERO
    secondary_btc_price: Decimal | None = None
    secondary_portfolio_value: Decimal | None = None

    avg_buy_price: Decimal = ZERO
    avg_sell_price: Decimal = ZERO
    total_invested: Decimal = ZERO
    total_received: Decimal = ZERO
    fiat_fees_paid: Decimal = ZERO

    unrealized_pnl: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    total_pnl: Decimal = ZERO
    roi: Decimal = ZERO

    price_change_24h: Decimal = ZERO
    price_change_percent_24h: Decimal = ZERO
    portfolio_change_24h: Decimal = ZERO
    portfolio_change_24h_percent: Decimal = ZERO

    total_transactions: int = 0
    total_buys: int = 0
    total_sells: int = 0
    total_transfers: int = 0

    hot_wallet_btc: Decimal = ZERO
    cold_wallet_btc: Decimal = ZERO
    legacy_wallet_split: bool = False
    wallets: list[WalletBalance] = Field(default_factory=list)

    used_fallback_price: bool = False
    fallback_currencies: list[str] = Field(default_factory=list)
    last_updated: datetime | None = None
    detailed: DetailedMetrics | None = None


def partition_ledger(transactions: Sequence[Transaction]) -> LedgerPartition:
    partition = LedgerPartition()
    for tx in transactions:
        if tx.kind == TransactionKind.BUY:
            partition.buys.append(tx)
        elif tx.kind == TransactionKind.SELL:
            partition.sells.append(tx)
        elif tx.transfer_category == TransferCategory.EXTERNAL_IN:
            partition.external_in.append(tx)
        elif tx.transfer_category == TransferCategory.EXTERNAL_OUT:
            partition.external_out.append(tx)
        else:
            partition.internal.append(tx)
    return partition


def _sum_btc(transactions: Sequence[Transaction]) -> Decimal:
    return sum((tx.btc_amount for tx in transactions), ZERO)


def _btc_fees(transactions: Sequence[Transaction]) -> Decimal:
    return sum((tx.fee for tx in transactions if tx.fee_currency == BTC), ZERO)


def _clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(high, value))


def weighted_price(transactions: Sequence[Transaction], rates: RateTable) -> Decimal:
    """Amount-weighted average price per BTC, converted to the table's target."""
    volume = _sum_btc(transactions)
    if volume <= 0:
        return ZERO
    weighted = sum(
        (rates.to_target(tx.price_per_btc, tx.currency) * tx.btc_amount for tx in transactions),
        ZERO,
    )
    return weighted / volume


def _converted_total(transactions: Sequence[Transaction], rates: RateTable) -> Decimal:
    return sum((rates.to_target(tx.total_amount, tx.currency) for tx in transactions), ZERO)


def compute_wallet_balances(
    transactions: Sequence[Transaction],
    wallets: Sequence[Wallet],
) -> list[WalletBalance]:
    incoming: dict[str, Decimal] = defaultdict(lambda: ZERO)
    outgoing: dict[str, Decimal] = defaultdict(lambda: ZERO)
    fees: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for tx in transactions:
        if tx.destination_wallet_id:
            incoming[tx.destination_wallet_id] += tx.btc_amount
        if tx.source_wallet_id:
            outgoing[tx.source_wallet_id] += tx.btc_amount
            if tx.fee_currency == BTC:
                fees[tx.source_wallet_id] += tx.fee

    balances: list[WalletBalance] = []
    for wallet in wallets:
        wallet_in = incoming[wallet.id]
        wallet_out = outgoing[wallet.id]
        wallet_fees = fees[wallet.id]
        balances.append(
            WalletBalance(
                wallet_id=wallet.id,
                name=wallet.name,
                temperature=wallet.temperature,
                include_in_total=wallet.include_in_total,
                incoming=wallet_in,
                outgoing=wallet_out,
                outgoing_btc_fees=wallet_fees,
                balance=max(ZERO, wallet_in - wallet_out - wallet_fees),
            )
        )
    return balances


def legacy_wallet_split(
    transactions: Sequence[Transaction],
    holdings: Decimal,
) -> tuple[Decimal, Decimal]:
    """Hot/cold split for ledgers without wallets, from legacy direction tags."""
    cold = ZERO
    for tx in transactions:
        if tx.legacy_transfer_type == LegacyTransferType.TO_COLD_WALLET:
            cold += tx.btc_amount - (tx.fee if tx.fee_currency == BTC else ZERO)
        elif tx.legacy_transfer_type == LegacyTransferType.FROM_COLD_WALLET:
            cold -= tx.btc_amount
    cold = max(ZERO, cold)
    hot = max(ZERO, holdings - cold)
    return hot, cold


def compute_detailed_metrics(
    partition: LedgerPartition,
    rates: RateTable,
    *,
    avg_buy_price: Decimal,
    roi: Decimal,
    first_timestamp: datetime | None,
    now: datetime,
) -> DetailedMetrics:
    months: dict[str, MonthlyPerformance] = {}
    buy_weight: dict[str, Decimal] = defaultdict(lambda: ZERO)
    sell_weight: dict[str, Decimal] = defaultdict(lambda: ZERO)

    for tx in partition.buys:
        key = month_key(tx.timestamp)
        entry = months.setdefault(key, MonthlyPerformance(month=key))
        entry.buys += 1
        entry.btc_bought += tx.btc_amount
        entry.invested += rates.to_target(tx.total_amount, tx.currency)
        buy_weight[key] += rates.to_target(tx.price_per_btc, tx.currency) * tx.btc_amount

    for tx in partition.sells:
        key = month_key(tx.timestamp)
        entry = months.setdefault(key, MonthlyPerformance(month=key))
        entry.sells += 1
        entry.btc_sold += tx.btc_amount
        entry.received += rates.to_target(tx.total_amount, tx.currency)
        sell_weight[key] += rates.to_target(tx.price_per_btc, tx.currency) * tx.btc_amount

    for key, entry in months.items():
        if entry.btc_bought > 0:
            entry.avg_buy_price = buy_weight[key] / entry.btc_bought
        if entry.btc_sold > 0:
            entry.avg_sell_price = sell_weight[key] / entry.btc_sold
        entry.realized_pnl = entry.received - entry.btc_sold * avg_buy_price
        entry.net_btc = entry.btc_bought - entry.btc_sold

    # A sell wins when it beats the plain mean of the buy prices before it.
    winning = losing = 0
    ordered_buys = sorted(partition.buys, key=lambda tx: tx.timestamp)
    for sell in sorted(partition.sells, key=lambda tx: tx.timestamp):
        prior = [
            rates.to_target(buy.price_per_btc, buy.currency)
            for buy in ordered_buys
            if buy.timestamp < sell.timestamp
        ]
        if not prior:
            continue
        reference = sum(prior, ZERO) / len(prior)
        if rates.to_target(sell.price_per_btc, sell.currency) > reference:
            winning += 1
        else:
            losing += 1

    holding_days = 0
    annualized = 0.0
    if first_timestamp is not None:
        holding_days = max(0, int(days_between(first_timestamp, now)))
        years = holding_days / 365.25
        growth = 1 + float(roi) / 100
        if years > 0 and growth > 0:
            annualized = (growth ** (1 / years) - 1) * 100

    total_btc_bought = _sum_btc(partition.buys)
    decided = winning + losing
    return DetailedMetrics(
        monthly_breakdown=[months[key] for key in sorted(months)],
        holding_days=holding_days,
        annualized_return=round(annualized, 4),
        win_rate=round(winning / decided * 100, 2) if decided else 0.0,
        winning_trades=winning,
        losing_trades=losing,
        total_btc_bought=total_btc_bought,
        total_btc_sold=_sum_btc(partition.sells),
        largest_purchase=max((tx.btc_amount for tx in partition.buys), default=ZERO),
        avg_buy_amount=total_btc_bought / len(partition.buys) if partition.buys else ZERO,
    )


def calculate_portfolio(
    transactions: Sequence[Transaction],
    *,
    market: MarketSnapshot,
    rates: RateTable,
    wallets: Sequence[Wallet] = (),
    detailed: bool = False,
    now: datetime | None = None,
) -> PortfolioMetrics:
    now = now or utcnow()
    partition = partition_ledger(transactions)

    btc_fees_burned = _btc_fees(partition.transfers)
    total_bought = _sum_btc(partition.buys)
    total_sold = _sum_btc(partition.sells)
    transferred_in = _sum_btc(partition.external_in)
    transferred_out = _sum_btc(partition.external_out)
    holdings = total_bought - total_sold + transferred_in - transferred_out - btc_fees_burned

    avg_buy_price = weighted_price(partition.buys, rates)
    avg_sell_price = weighted_price(partition.sells, rates)
    total_invested = _converted_total(partition.buys, rates)
    total_received = _converted_total(partition.sells, rates)
    fiat_fees_paid = sum(
        (rates.to_target(tx.fee, tx.fee_currency) for tx in transactions if tx.fee_currency != BTC),
        ZERO,
    )

    btc_with_cost_basis = _clamp(total_bought - total_sold - btc_fees_burned, ZERO, max(ZERO, holdings))
    price = market.btc_price
    current_value = holdings * price
    unrealized = btc_with_cost_basis * (price - avg_buy_price)
    realized = total_received - total_sold * avg_buy_price
    roi = ZERO
    if total_invested > 0:
        roi = (current_value + total_received - total_invested) / total_invested * HUNDRED

    change_value = holdings * market.change_24h
    change_percent = ZERO
    previous_value = current_value - change_value
    if previous_value > 0:
        change_percent = change_value / previous_value * HUNDRED

    if wallets:
        balances = compute_wallet_balances(transactions, wallets)
        counted = [balance for balance in balances if balance.include_in_total]
        hot = sum((b.balance for b in counted if b.temperature == Temperature.HOT), ZERO)
        cold = sum((b.balance for b in counted if b.temperature == Temperature.COLD), ZERO)
    else:
        balances = []
        hot, cold = legacy_wallet_split(transactions, holdings)

    secondary_value = None
    if market.secondary_btc_price is not None:
        secondary_value = holdings * market.secondary_btc_price

    metrics = PortfolioMetrics(
        main_currency=rates.target,
        secondary_currency=market.secondary_currency,
        total_btc=holdings,
        total_satoshis=int(holdings * SATOSHIS_PER_BTC),
        total_bought=total_bought,
        total_sold=total_sold,
        transferred_in=transferred_in,
        transferred_out=transferred_out,
        btc_fees_burned=btc_fees_burned,
        btc_with_cost_basis=btc_with_cost_basis,
        current_btc_price=price,
        portfolio_value=current_value,
        secondary_btc_price=market.secondary_btc_price,
        secondary_portfolio_value=secondary_value,
        avg_buy_price=avg_buy_price,
        avg_sell_price=avg_sell_price,
        total_invested=total_invested,
        total_received=total_received,
        fiat_fees_paid=fiat_fees_paid,
        unrealized_pnl=unrealized,
        realized_pnl=realized,
        total_pnl=unrealized + realized,
        roi=roi,
        price_change_24h=market.change_24h,
        price_change_percent_24h=market.change_percent_24h,
        portfolio_change_24h=change_value,
        portfolio_change_24h_percent=change_percent,
        total_transactions=len(transactions),
        total_buys=len(partition.buys),
        total_sells=len(partition.sells),
        total_transfers=len(partition.transfers),
        hot_wallet_btc=hot,
        cold_wallet_btc=cold,
        legacy_wallet_split=not wallets,
        wallets=balances,
        used_fallback_price=market.used_fallback_price,
        fallback_currencies=sorted(rates.unavailable),
        last_updated=now,
    )
    if detailed:
        first = min((tx.timestamp for tx in transactions), default=None)
        metrics.detailed = compute_detailed_metrics(
            partition,
            rates,
            avg_buy_price=avg_buy_price,
            roi=roi,
            first_timestamp=first,
            now=now,
        )
    return metrics
