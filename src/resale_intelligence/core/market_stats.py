"""Market statistics engine.

Turns a set of raw listings into aggregate prices, a six-bucket histogram,
selling-feature insights, and a suggested selling strategy. Pure functions:
no I/O, no credit gating.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Optional

from .models import (
    MarketInsights,
    MarketStatistics,
    PriceBucket,
    RawListing,
    SellingStrategy,
)

logger = logging.getLogger(__name__)

BUCKET_COUNT = 6
SUGGESTED_PRICE_MARKUP = 1.05
MAJORITY_PCT = 50.0
HIGH_COMPETITION_LISTINGS = 50
LOW_COMPETITION_LISTINGS = 10
MODERATE_COMPETITION_LISTINGS = 30
TOP_RATED_PREMIUM_TIP_PCT = 5.0

BEST_OFFER = "BEST_OFFER"
AUCTION = "AUCTION"


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _pct(matching: int, total: int) -> float:
    return matching / total * 100 if total else 0.0


def median(sorted_prices: list[float]) -> float:
    n = len(sorted_prices)
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2 == 0:
        return (sorted_prices[mid - 1] + sorted_prices[mid]) / 2
    return sorted_prices[mid]


def build_histogram(
    sorted_prices: list[float],
    bucket_count: int = BUCKET_COUNT,
    half_open: bool = False,
) -> list[PriceBucket]:
    """Split ``[min, max]`` into equal-width buckets and count prices in each.

    Bucket ``i`` spans ``[min + i*w, min + (i+1)*w]`` and the last upper bound
    is pinned to ``max``. By default both ends are inclusive, so a price that
    sits exactly on a shared boundary is counted in both neighbours and the
    counts can add up to more than the number of listings. With
    ``half_open=True`` every bucket but the last excludes its upper bound and
    the counts always add up to the number of prices.
    """
    if not sorted_prices:
        return []

    low, high = sorted_prices[0], sorted_prices[-1]
    width = (high - low) / bucket_count
    edges = [low + i * width for i in range(bucket_count)] + [high]

    buckets = []
    for i in range(bucket_count):
        lo, hi = edges[i], edges[i + 1]
        last = i == bucket_count - 1
        if half_open and not last:
            count = sum(1 for p in sorted_prices if lo <= p < hi)
        else:
            count = sum(1 for p in sorted_prices if lo <= p <= hi)
        buckets.append(PriceBucket(min_price=lo, max_price=hi, count=count))
    return buckets


def compute_insights(listings: list[RawListing]) -> MarketInsights:
    """Share of listings offering each selling feature, plus price splits."""
    total = len(listings)
    if total == 0:
        return MarketInsights()

    free_shipping = sum(1 for l in listings if l.free_shipping)
    best_offer = sum(1 for l in listings if BEST_OFFER in l.buying_options)
    auction = sum(1 for l in listings if AUCTION in l.buying_options)
    top_rated = [l.price for l in listings if l.top_rated_seller]
    regular = [l.price for l in listings if not l.top_rated_seller]

    by_condition: dict[str, list[float]] = defaultdict(list)
    for listing in listings:
        by_condition[listing.condition].append(listing.price)
    condition_pricing = {condition: _mean(prices) for condition, prices in by_condition.items()}

    regular_avg = _mean(regular)
    if regular_avg > 0:
        premium = (_mean(top_rated) - regular_avg) / regular_avg * 100 if top_rated else 0.0
    else:
        premium = 0.0

    # Listings without a feedback score are left out entirely, not counted as zero.
    scores = [l.seller_feedback_score for l in listings if l.seller_feedback_score is not None]

    return MarketInsights(
        free_shipping_pct=_pct(free_shipping, total),
        best_offer_pct=_pct(best_offer, total),
        auction_pct=_pct(auction, total),
        top_rated_pct=_pct(len(top_rated), total),
        condition_pricing=condition_pricing,
        top_rated_premium_pct=premium,
        average_seller_rating=_mean([float(s) for s in scores]),
    )


def generate_strategy(median_price: float, insights: MarketInsights, total_count: int) -> SellingStrategy:
    """Suggested price and ordered advisory tips."""
    tips: list[str] = []

    enable_best_offer = insights.best_offer_pct > MAJORITY_PCT
    if enable_best_offer:
        tips.append(f"Enable 'Best Offer' - {int(insights.best_offer_pct)}% of sellers accept offers")

    offer_free_shipping = insights.free_shipping_pct > MAJORITY_PCT
    if offer_free_shipping:
        tips.append(f"Offer free shipping - {int(insights.free_shipping_pct)}% of competitors do")

    if total_count > HIGH_COMPETITION_LISTINGS:
        tips.append("High competition - price competitively and offer fast shipping")
    elif total_count < LOW_COMPETITION_LISTINGS:
        tips.append("Low competition - you can price higher")

    if insights.top_rated_premium_pct > TOP_RATED_PREMIUM_TIP_PCT:
        tips.append(f"Top-Rated sellers charge {int(insights.top_rated_premium_pct)}% more on average")

    return SellingStrategy(
        suggested_price=median_price * SUGGESTED_PRICE_MARKUP,
        enable_best_offer=enable_best_offer,
        offer_free_shipping=offer_free_shipping,
        tips=tips,
    )


def competition_level(total_count: int) -> str:
    if total_count < LOW_COMPETITION_LISTINGS:
        return "Low competition"
    if total_count < MODERATE_COMPETITION_LISTINGS:
        return "Moderate competition"
    return "High competition"


def analyze(listings: Iterable[RawListing], half_open_buckets: bool = False) -> MarketStatistics:
    """Aggregate a listing snapshot into market statistics.

    Args:
        listings: Observed offers; order does not matter.
        half_open_buckets: Use half-open histogram buckets so a boundary price
            is counted once. Off by default, see ``build_histogram``.

    Returns:
        MarketStatistics. With no listings every number is zero, the histogram
        is empty and there is no strategy.
    """
    listings = list(listings)
    if not listings:
        return MarketStatistics()

    prices = sorted(l.price for l in listings)
    total = len(prices)
    median_price = median(prices)
    insights = compute_insights(listings)
    histogram = build_histogram(prices, half_open=half_open_buckets)

    bucketed = sum(b.count for b in histogram)
    if bucketed != total:
        logger.debug("Histogram counts %d prices for %d listings (shared boundaries)", bucketed, total)

    # Float summation can land a hair outside [min, max] for identical prices.
    average = min(max(sum(prices) / total, prices[0]), prices[-1])

    return MarketStatistics(
        average=average,
        median=median_price,
        min=prices[0],
        max=prices[-1],
        total_count=total,
        histogram=histogram,
        insights=insights,
        strategy=generate_strategy(median_price, insights, total),
    )


def summarize(stats: MarketStatistics) -> Optional[str]:
    """One-line summary for tool output."""
    if not stats.has_data:
        return None
    return (
        f"{stats.total_count} listings, ${stats.min:.2f}-${stats.max:.2f}, "
        f"median ${stats.median:.2f}. {competition_level(stats.total_count)}."
    )
