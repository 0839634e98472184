"""Scoring of a dollar-cost-averaging history.

Only BUY rows are considered. Prices are converted to the reporting
currency before any comparison, and every percentage and score is a float
while money and BTC amounts stay ``Decimal``.
"""
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from btc_portfolio.domain.dates import days_between, iter_month_keys, month_key, utcnow
from btc_portfolio.models import Transaction, TransactionKind
from btc_portfolio.services.currency import RateTable

ZERO = Decimal(0)

LOCAL_WINDOW = timedelta(days=7)
RECENT_WINDOW = timedelta(days=30)
MAX_RECOMMENDATIONS = 5

TIMING_WEIGHT = 0.4
CONSISTENCY_WEIGHT = 0.3
PERFORMANCE_WEIGHT = 0.3

# (lower bound of below-local-average %, score at that bound)
_TIMING_BANDS = ((40.0, 8.5), (30.0, 7.0), (20.0, 5.5), (10.0, 4.0), (0.0, 2.5))

RecommendationType = Literal["success", "info", "warning", "tip"]


@dataclass(frozen=True)
class BuyPoint:
    timestamp: datetime
    btc_amount: Decimal
    price: Decimal
    invested: Decimal


class TimingAnalysis(BaseModel):
    below_local_avg_pct: float = 0.0
    above_local_avg_pct: float = 0.0
    btc_below_current_price: Decimal = ZERO
    btc_above_current_price: Decimal = ZERO
    best_purchase_price: Decimal = ZERO
    best_purchase_date: datetime | None = None
    worst_purchase_price: Decimal = ZERO
    worst_purchase_date: datetime | None = None
    avg_purchase_price: Decimal = ZERO
    current_price: Decimal = ZERO
    price_improvement: float = 0.0


class ConsistencyAnalysis(BaseModel):
    consistency: float = 0.0
    avg_days_between_purchases: float = 0.0
    longest_gap_days: int = 0
    longest_gap_start: datetime | None = None
    longest_gap_end: datetime | None = None
    active_months: int = 0
    total_months: int = 0
    missed_months: int = 0
    recent_activity: int = 0
    total_purchases: int = 0


class DCAScore(BaseModel):
    overall: float = 0.0
    timing: float = 0.0
    consistency: float = 0.0
    performance: float = 0.0


class WhatIfScenario(BaseModel):
    name: str
    description: str
    total_invested: Decimal
    btc_holdings: Decimal
    current_value: Decimal
    pnl: Decimal
    pnl_percentage: float
    difference: Decimal


class PriceBand(BaseModel):
    label: str
    min_price: Decimal
    max_price: Decimal
    btc_amount: Decimal
    percentage: float
    transactions: int


class MonthlyDCA(BaseModel):
    month: str
    total_invested: Decimal = ZERO
    btc_purchased: Decimal = ZERO
    avg_price: Decimal = ZERO
    transactions: int = 0
    missed: bool = True


class Recommendation(BaseModel):
    type: RecommendationType
    message: str


class DCASummary(BaseModel):
    total_invested: Decimal = ZERO
    total_btc: Decimal = ZERO
    avg_buy_price: Decimal = ZERO
    current_price: Decimal = ZERO
    current_value: Decimal = ZERO
    total_pnl: Decimal = ZERO
    total_pnl_percent: float = 0.0


class DCAAnalysis(BaseModel):
    score: DCAScore = Field(default_factory=DCAScore)
    timing: TimingAnalysis = Field(default_factory=TimingAnalysis)
    consistency: ConsistencyAnalysis = Field(default_factory=ConsistencyAnalysis)
    summary: DCASummary = Field(default_factory=DCASummary)
    what_if_scenarios: list[WhatIfScenario] = Field(default_factory=list)
    price_distribution: list[PriceBand] = Field(default_factory=list)
    monthly_breakdown: list[MonthlyDCA] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)


def _percent(part: Decimal, whole: Decimal) -> float:
    if whole == 0:
        return 0.0
    return float(part / whole * 100)


def _round1(value: float) -> float:
    return round(value, 1)


def to_buy_points(transactions: Sequence[Transaction], rates: RateTable) -> list[BuyPoint]:
    points = [
        BuyPoint(
            timestamp=tx.timestamp,
            btc_amount=tx.btc_amount,
            price=rates.to_target(tx.price_per_btc, tx.currency),
            invested=rates.to_target(tx.total_amount, tx.currency),
        )
        for tx in transactions
        if tx.kind == TransactionKind.BUY
    ]
    points.sort(key=lambda point: point.timestamp)
    return points


def analyze_timing(points: Sequence[BuyPoint], current_price: Decimal) -> TimingAnalysis:
    total_btc = sum((p.btc_amount for p in points), ZERO)
    if not points or total_btc <= 0:
        return TimingAnalysis(current_price=current_price)

    below_local = ZERO
    below_current = ZERO
    for point in points:
        nearby = [
            other.price
            for other in points
            if abs(other.timestamp - point.timestamp) <= LOCAL_WINDOW
        ]
        local_avg = sum(nearby, ZERO) / len(nearby)
        if point.price < local_avg:
            below_local += point.btc_amount
        if point.price < current_price:
            below_current += point.btc_amount

    best = min(points, key=lambda p: p.price)
    worst = max(points, key=lambda p: p.price)
    avg_price = sum((p.price * p.btc_amount for p in points), ZERO) / total_btc
    below_pct = _percent(below_local, total_btc)
    return TimingAnalysis(
        below_local_avg_pct=below_pct,
        above_local_avg_pct=100.0 - below_pct,
        btc_below_current_price=below_current,
        btc_above_current_price=total_btc - below_current,
        best_purchase_price=best.price,
        best_purchase_date=best.timestamp,
        worst_purchase_price=worst.price,
        worst_purchase_date=worst.timestamp,
        avg_purchase_price=avg_price,
        current_price=current_price,
        price_improvement=_percent(current_price - avg_price, avg_price),
    )


def gap_penalty(longest_gap_days: float) -> float:
    if longest_gap_days <= 45:
        return 0.0
    if longest_gap_days <= 90:
        return (longest_gap_days - 45) / 45 * 15
    return 15 + min(15.0, (longest_gap_days - 90) / 30 * 5)


def analyze_consistency(points: Sequence[BuyPoint], now: datetime) -> ConsistencyAnalysis:
    if not points:
        return ConsistencyAnalysis()

    gaps: list[int] = []
    longest_gap = 0
    gap_start = gap_end = None
    for previous, current in zip(points, points[1:]):
        gap = int(days_between(previous.timestamp, current.timestamp))
        gaps.append(gap)
        if gap > longest_gap:
            longest_gap = gap
            gap_start, gap_end = previous.timestamp, current.timestamp

    active = {month_key(p.timestamp) for p in points}
    all_months = list(iter_month_keys(points[0].timestamp, points[-1].timestamp))
    active_months = sum(1 for key in all_months if key in active)
    activity = active_months / len(all_months) * 100
    consistency = min(100.0, max(0.0, activity - gap_penalty(longest_gap)))

    return ConsistencyAnalysis(
        consistency=consistency,
        avg_days_between_purchases=sum(gaps) / len(gaps) if gaps else 0.0,
        longest_gap_days=longest_gap,
        longest_gap_start=gap_start,
        longest_gap_end=gap_end,
        active_months=active_months,
        total_months=len(all_months),
        missed_months=len(all_months) - active_months,
        recent_activity=sum(1 for p in points if p.timestamp >= now - RECENT_WINDOW),
        total_purchases=len(points),
    )


def timing_score(below_local_avg_pct: float) -> float:
    """Piecewise-linear, non-decreasing map of dip-buying share onto 0-10."""
    if below_local_avg_pct >= 50:
        return 10.0
    for lower, base in _TIMING_BANDS:
        if below_local_avg_pct >= lower:
            return base + (below_local_avg_pct - lower) / 10 * 1.5
    return 2.5


def performance_score(cost_basis_discount: float) -> float:
    if cost_basis_discount >= 50:
        return 10.0
    return max(0.0, 5 + cost_basis_discount / 50 * 5)


def cost_basis_discount(avg_price: Decimal, current_price: Decimal) -> float:
    return _percent(current_price - avg_price, current_price)


def calculate_score(
    timing: TimingAnalysis,
    consistency: ConsistencyAnalysis,
) -> DCAScore:
    timing_value = timing_score(timing.below_local_avg_pct)
    consistency_value = consistency.consistency / 10
    performance_value = performance_score(
        cost_basis_discount(timing.avg_purchase_price, timing.current_price)
    )
    overall = (
        timing_value * TIMING_WEIGHT
        + consistency_value * CONSISTENCY_WEIGHT
        + performance_value * PERFORMANCE_WEIGHT
    )
    return DCAScore(
        overall=_round1(overall),
        timing=_round1(timing_value),
        consistency=_round1(consistency_value),
        performance=_round1(performance_value),
    )


def _scenario(
    name: str,
    description: str,
    *,
    invested: Decimal,
    btc: Decimal,
    current_price: Decimal,
    actual_value: Decimal,
) -> WhatIfScenario:
    value = btc * current_price
    pnl = value - invested
    return WhatIfScenario(
        name=name,
        description=description,
        total_invested=invested,
        btc_holdings=btc,
        current_value=value,
        pnl=pnl,
        pnl_percentage=_percent(pnl, invested),
        difference=value - actual_value,
    )


def what_if_scenarios(points: Sequence[BuyPoint], current_price: Decimal) -> list[WhatIfScenario]:
    if not points:
        return []
    invested = sum((p.invested for p in points), ZERO)
    total_btc = sum((p.btc_amount for p in points), ZERO)
    actual_value = total_btc * current_price
    first = points[0]
    cheapest = min(points, key=lambda p: p.price)

    scenarios = [
        _scenario(
            "Your DCA Strategy",
            "Actual performance with your purchases",
            invested=invested,
            btc=total_btc,
            current_price=current_price,
            actual_value=actual_value,
        )
    ]
    if first.price > 0:
        scenarios.append(
            _scenario(
                "Lump Sum",
                f"All money invested on {first.timestamp.date().isoformat()}",
                invested=invested,
                btc=invested / first.price,
                current_price=current_price,
                actual_value=actual_value,
            )
        )
    if cheapest.price > 0:
        scenarios.append(
            _scenario(
                "Perfect Timing",
                "All money invested at the lowest price paid",
                invested=invested,
                btc=invested / cheapest.price,
                current_price=current_price,
                actual_value=actual_value,
            )
        )
    return scenarios


def _format_price(value: Decimal) -> str:
    if value >= 1000:
        return f"${value / 1000:.0f}k"
    return f"${value:.0f}"


def price_distribution(points: Sequence[BuyPoint]) -> list[PriceBand]:
    if not points:
        return []
    total_btc = sum((p.btc_amount for p in points), ZERO)
    low = min(p.price for p in points)
    high = max(p.price for p in points)
    step = (high - low) / 4
    edges = [low + step * index for index in range(4)]
    bounds = [
        (edges[0], edges[1], f"{_format_price(edges[0])}-{_format_price(edges[1])}"),
        (edges[1], edges[2], f"{_format_price(edges[1])}-{_format_price(edges[2])}"),
        (edges[2], edges[3], f"{_format_price(edges[2])}-{_format_price(edges[3])}"),
        # The top band is open so the highest price always lands somewhere.
        (edges[3], high + 1, f"{_format_price(edges[3])}+"),
    ]

    bands: list[PriceBand] = []
    for lower, upper, label in bounds:
        inside = [p for p in points if lower <= p.price < upper]
        btc = sum((p.btc_amount for p in inside), ZERO)
        if btc <= 0:
            continue
        bands.append(
            PriceBand(
                label=label,
                min_price=lower,
                max_price=upper,
                btc_amount=btc,
                percentage=_percent(btc, total_btc),
                transactions=len(inside),
            )
        )
    return bands


def monthly_breakdown(points: Sequence[BuyPoint]) -> list[MonthlyDCA]:
    if not points:
        return []
    months = {
        key: MonthlyDCA(month=key)
        for key in iter_month_keys(points[0].timestamp, points[-1].timestamp)
    }
    for point in points:
        entry = months[month_key(point.timestamp)]
        entry.total_invested += point.invested
        entry.btc_purchased += point.btc_amount
        entry.transactions += 1
        entry.missed = False
    for entry in months.values():
        if entry.btc_purchased > 0:
            entry.avg_price = entry.total_invested / entry.btc_purchased
    return list(months.values())


def build_recommendations(
    score: DCAScore,
    timing: TimingAnalysis,
    consistency: ConsistencyAnalysis,
) -> list[Recommendation]:
    tips: list[Recommendation] = []

    if score.overall >= 8:
        tips.append(Recommendation(
            type="success",
            message=f"Excellent DCA strategy! You're in the top tier with a {score.overall}/10 score.",
        ))
    elif score.overall >= 6:
        tips.append(Recommendation(
            type="success",
            message=f"Good DCA strategy! Score: {score.overall}/10. Keep it up!",
        ))
    else:
        tips.append(Recommendation(
            type="info",
            message=f"Your DCA score is {score.overall}/10. There's room for improvement!",
        ))

    below = timing.below_local_avg_pct
    if below >= 60:
        tips.append(Recommendation(
            type="success",
            message=f"Excellent timing! You bought {below:.0f}% of your BTC on dips (below 7-day average).",
        ))
    elif below >= 45:
        tips.append(Recommendation(
            type="info",
            message=f"Good timing! {below:.0f}% bought on dips vs {timing.above_local_avg_pct:.0f}% on pumps.",
        ))
    elif below < 35:
        tips.append(Recommendation(
            type="tip",
            message=(
                f"Try to buy dips! You bought {timing.above_local_avg_pct:.0f}% during local pumps. "
                "Consider limit orders."
            ),
        ))

    if consistency.missed_months > 3:
        tips.append(Recommendation(
            type="warning",
            message=f"You missed {consistency.missed_months} months. Consider setting up automatic purchases!",
        ))
    elif consistency.consistency >= 80:
        tips.append(Recommendation(
            type="success",
            message=(
                "Excellent consistency! You're investing regularly with "
                f"{consistency.consistency:.0f}% regularity."
            ),
        ))

    if consistency.longest_gap_days > 60:
        tips.append(Recommendation(
            type="warning",
            message=(
                f"Your longest gap was {consistency.longest_gap_days} days. "
                "Try to maintain regular investments."
            ),
        ))

    discount = cost_basis_discount(timing.avg_purchase_price, timing.current_price)
    if discount > 30:
        tips.append(Recommendation(
            type="success",
            message=f"Excellent cost basis! Your avg buy price is {discount:.1f}% below current price.",
        ))
    elif discount < -10:
        tips.append(Recommendation(
            type="tip",
            message=f"Your avg buy price is {abs(discount):.1f}% above current. Keep stacking!",
        ))
    elif discount >= 0:
        tips.append(Recommendation(
            type="success",
            message=f"You're in profit! Avg buy price is {discount:.1f}% below current price.",
        ))

    if score.performance >= 8:
        tips.append(Recommendation(
            type="success",
            message=f"Outstanding accumulation! Your cost basis quality is top-tier ({score.performance}/10).",
        ))
    elif score.performance < 4:
        tips.append(Recommendation(
            type="info",
            message="Your average buy is above current price. Keep accumulating, time in market matters!",
        ))

    if consistency.recent_activity == 0:
        tips.append(Recommendation(
            type="tip",
            message="No purchases in the last 30 days. Consider resuming your DCA strategy!",
        ))
    elif consistency.recent_activity >= 3:
        tips.append(Recommendation(
            type="success",
            message=f"Strong recent activity! {consistency.recent_activity} purchases in the last 30 days.",
        ))

    return tips[:MAX_RECOMMENDATIONS]


def empty_analysis(current_price: Decimal) -> DCAAnalysis:
    return DCAAnalysis(
        timing=TimingAnalysis(current_price=current_price),
        summary=DCASummary(current_price=current_price),
        recommendations=[
            Recommendation(
                type="info",
                message="Start your DCA journey by making your first Bitcoin purchase!",
            )
        ],
    )


def analyze_dca(
    transactions: Sequence[Transaction],
    *,
    current_price: Decimal,
    rates: RateTable,
    now: datetime | None = None,
) -> DCAAnalysis:
    points = to_buy_points(transactions, rates)
    if not points:
        return empty_analysis(current_price)

    now = now or utcnow()
    timing = analyze_timing(points, current_price)
    consistency = analyze_consistency(points, now)
    score = calculate_score(timing, consistency)

    invested = sum((p.invested for p in points), ZERO)
    total_btc = sum((p.btc_amount for p in points), ZERO)
    value = total_btc * current_price
    pnl = value - invested
    summary = DCASummary(
        total_invested=invested,
        total_btc=total_btc,
        avg_buy_price=invested / total_btc if total_btc > 0 else ZERO,
        current_price=current_price,
        current_value=value,
        total_pnl=pnl,
        total_pnl_percent=_percent(pnl, invested),
    )

    return DCAAnalysis(
        score=score,
        timing=timing,
        consistency=consistency,
        summary=summary,
        what_if_scenarios=what_if_scenarios(points, current_price),
        price_distribution=price_distribution(points),
        monthly_breakdown=monthly_breakdown(points),
        recommendations=build_recommendations(score, timing, consistency),
    )
