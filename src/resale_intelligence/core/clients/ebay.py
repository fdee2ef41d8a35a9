"""eBay Browse API client.

API docs: https://developer.ebay.com/api-docs/buy/browse/resources/item_summary/methods/search
Authentication: application access token (client credentials grant).
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import httpx
from pydantic import BaseModel

from ..models import Environment, RawListing
from .http import DEFAULT_TIMEOUT_SECONDS, json_body, request

logger = logging.getLogger(__name__)

INTEGRATION_ID = "ebay"

API_BASE = {
    Environment.PRODUCTION: "https://api.ebay.com",
    Environment.SANDBOX: "https://api.sandbox.ebay.com",
}
AUTHORIZE_URL = {
    Environment.PRODUCTION: "https://auth.ebay.com/oauth2/authorize",
    Environment.SANDBOX: "https://auth.sandbox.ebay.com/oauth2/authorize",
}
APP_SCOPE = "https://api.ebay.com/oauth/api_scope"

# eBay application tokens live two hours.
DEFAULT_TOKEN_LIFETIME_SECONDS = 7200
DEFAULT_SEARCH_LIMIT = 50
MAX_QUERY_WORDS = 4

_GENERATION_SUFFIX = re.compile(r"\(\s*\d+(st|nd|rd|th)\s+generation\s*\)", re.IGNORECASE)


def token_url(environment: Environment) -> str:
    return f"{API_BASE[environment]}/identity/v1/oauth2/token"


class _Amount(BaseModel):
    value: Optional[str] = None
    currency: Optional[str] = None


class _ShippingOption(BaseModel):
    shippingCost: Optional[_Amount] = None


class _Seller(BaseModel):
    username: Optional[str] = None
    feedbackScore: Optional[int] = None
    feedbackPercentage: Optional[str] = None


class BrowseItemSummary(BaseModel):
    """The subset of an ``itemSummaries`` entry used for market statistics."""

    title: Optional[str] = None
    price: Optional[_Amount] = None
    condition: Optional[str] = None
    shippingOptions: Optional[list[_ShippingOption]] = None
    buyingOptions: Optional[list[str]] = None
    topRatedBuyingExperience: Optional[bool] = None
    seller: Optional[_Seller] = None


def simplify_query(item_name: str) -> str:
    """Drop generation qualifiers and keep the first four words.

    Long AI-generated item names over-constrain Browse search.
    """
    simplified = _GENERATION_SUFFIX.sub("", item_name)
    words = simplified.split()
    return " ".join(words[:MAX_QUERY_WORDS])


def _to_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_listing(summary: BrowseItemSummary) -> Optional[RawListing]:
    """Convert a Browse summary into a RawListing; None if it has no usable price."""
    price = _to_float(summary.price.value) if summary.price else None
    if not summary.title or price is None:
        return None

    shipping = 0.0
    if summary.shippingOptions:
        cost = summary.shippingOptions[0].shippingCost
        shipping = _to_float(cost.value if cost else None) or 0.0

    return RawListing(
        title=summary.title,
        price=price,
        condition=summary.condition or "Unknown",
        shipping_cost=shipping,
        buying_options=frozenset(summary.buyingOptions or []),
        top_rated_seller=bool(summary.topRatedBuyingExperience),
        seller_feedback_score=summary.seller.feedbackScore if summary.seller else None,
    )


def parse_search_response(data: dict) -> list[RawListing]:
    listings = []
    for raw in data.get("itemSummaries") or []:
        try:
            summary = BrowseItemSummary.model_validate(raw)
        except ValueError:
            continue
        listing = _parse_listing(summary)
        if listing is not None:
            listings.append(listing)
    return listings


async def fetch_listings(
    item_name: str,
    access_token: str,
    environment: Environment = Environment.PRODUCTION,
    limit: int = DEFAULT_SEARCH_LIMIT,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[RawListing]:
    """Search active listings for an item.

    Args:
        item_name: Free-text item name; simplified before searching.
        access_token: eBay application bearer token.
        environment: Which eBay environment the token belongs to.
        limit: Maximum listings to request.

    Returns:
        Listings with a numeric price. Entries without one are dropped.
    """
    keywords = simplify_query(item_name)
    response = await request(
        "GET",
        f"{API_BASE[environment]}/buy/browse/v1/item_summary/search",
        params={"q": keywords, "limit": str(limit)},
        headers={
            "Authorization": f"Bearer {access_token}",
            "X-EBAY-C-MARKETPLACE-ID": "EBAY_US",
        },
        timeout=timeout,
        transport=transport,
    )
    if response.status_code == 204 or not response.content:
        return []

    listings = parse_search_response(json_body(response))
    logger.info("eBay search %r returned %d priced listings", keywords, len(listings))
    return listings
