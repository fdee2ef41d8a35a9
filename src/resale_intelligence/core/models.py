"""Pydantic data models shared across the package.

Parsers, the statistics engine, the credential caches and the tool server all
exchange these models. None of them carry display formatting.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field


class Capability(str, Enum):
    """Paid remote operations routed through the request pipeline."""

    SINGLE_ITEM = "single_item"
    BULK_SCENE = "bulk_scene"
    BARCODE = "barcode"
    PRICE_RESEARCH = "price_research"
    ANCHORED_PRICE_ANALYSIS = "anchored_price_analysis"


class Marketplace(str, Enum):
    """Resale marketplaces, in canonical priority order."""

    EBAY = "ebay"
    FACEBOOK = "facebook"
    AMAZON = "amazon"
    STOCKX = "stockx"
    ETSY = "etsy"
    MERCARI = "mercari"
    POSHMARK = "poshmark"
    DEPOP = "depop"

    @property
    def display_name(self) -> str:
        return MARKETPLACE_NAMES[self]


MARKETPLACE_NAMES: dict[Marketplace, str] = {
    Marketplace.EBAY: "eBay",
    Marketplace.FACEBOOK: "Facebook Marketplace",
    Marketplace.AMAZON: "Amazon",
    Marketplace.STOCKX: "StockX",
    Marketplace.ETSY: "Etsy",
    Marketplace.MERCARI: "Mercari",
    Marketplace.POSHMARK: "Poshmark",
    Marketplace.DEPOP: "Depop",
}


class Confidence(str, Enum):
    """How sure the upstream analysis claims to be."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Environment(str, Enum):
    """Marketplace API environment a credential was issued for."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"


# ─── Parsed capability results ───────────────────────────────────────────────


class ItemAnalysis(BaseModel):
    """Identification of a single item from a photo or barcode."""

    name: str = "Unknown Item"
    condition: str = ""
    description: str = ""
    estimated_value: str = Field("", description="Free-text value range, e.g. '$20-$35'")
    category: str = ""
    specifics: Optional[dict[str, str]] = Field(None, description="Category-specific attributes")


class BulkAnalyzedItem(BaseModel):
    """One item found in a multi-item scene."""

    name: str = ""
    condition: str = ""
    description: str = ""
    estimated_value: str = ""
    category: str = ""
    location: str = Field("", description="Where in the photo the item sits")


class BulkAnalysisResult(BaseModel):
    """All items identified in one scene photo."""

    items: list[BulkAnalyzedItem] = Field(default_factory=list)
    total_count: int = 0
    total_value_text: str = ""
    scene_description: str = ""


class MarketplacePriceAnalysis(BaseModel):
    """Per-marketplace price estimates and a recommendation."""

    recommended_marketplace: Marketplace
    confidence: Confidence = Confidence.MEDIUM
    prices_by_marketplace: dict[Marketplace, float] = Field(default_factory=dict)
    reasoning: str = ""

    @property
    def best_price(self) -> Optional[float]:
        if not self.prices_by_marketplace:
            return None
        return max(self.prices_by_marketplace.values())


ParsedResult = Union[ItemAnalysis, BulkAnalysisResult, MarketplacePriceAnalysis]


# ─── Market statistics ───────────────────────────────────────────────────────


class RawListing(BaseModel):
    """One observed marketplace offer used as statistics input."""

    title: str = ""
    price: float
    condition: str = "Unknown"
    shipping_cost: float = 0.0
    buying_options: frozenset[str] = Field(default_factory=frozenset)
    top_rated_seller: bool = False
    seller_feedback_score: Optional[int] = None

    @property
    def free_shipping(self) -> bool:
        return self.shipping_cost == 0


class PriceBucket(BaseModel):
    """One histogram bar."""

    min_price: float
    max_price: float
    count: int


class MarketInsights(BaseModel):
    """Share of listings with each selling feature, as percentages."""

    free_shipping_pct: float = 0.0
    best_offer_pct: float = 0.0
    auction_pct: float = 0.0
    top_rated_pct: float = 0.0
    condition_pricing: dict[str, float] = Field(default_factory=dict, description="Average price per condition")
    top_rated_premium_pct: float = 0.0
    average_seller_rating: float = 0.0


class SellingStrategy(BaseModel):
    """Pricing and listing advice derived from the market snapshot."""

    suggested_price: float
    enable_best_offer: bool
    offer_free_shipping: bool
    tips: list[str] = Field(default_factory=list)


class MarketStatistics(BaseModel):
    """Aggregate view over a set of raw listings."""

    average: float = 0.0
    median: float = 0.0
    min: float = 0.0
    max: float = 0.0
    total_count: int = 0
    histogram: list[PriceBucket] = Field(default_factory=list)
    insights: MarketInsights = Field(default_factory=MarketInsights)
    strategy: Optional[SellingStrategy] = None

    @property
    def has_data(self) -> bool:
        return self.total_count > 0 and bool(self.histogram)


# ─── Credentials ─────────────────────────────────────────────────────────────


class TokenResponse(BaseModel):
    """OAuth token endpoint response."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"


class CachedCredential(BaseModel):
    """A bearer credential with absolute expiry, tagged with its environment."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    environment: Environment

    def expires_within(self, now: datetime, margin_seconds: float) -> bool:
        return (self.expires_at - now).total_seconds() <= margin_seconds


# ─── StockX catalog ──────────────────────────────────────────────────────────


class StockXProduct(BaseModel):
    """A catalog product returned by StockX search."""

    product_id: str = Field(alias="productId")
    title: str = ""
    brand: str = ""
    style_id: Optional[str] = Field(None, alias="styleId")
    product_type: Optional[str] = Field(None, alias="productType")
    url_key: Optional[str] = Field(None, alias="urlKey")

    model_config = {"populate_by_name": True}
