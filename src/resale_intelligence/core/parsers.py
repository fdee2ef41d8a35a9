"""Parsers for the line-oriented text returned by the analysis functions.

Every capability answers with newline-delimited ``KEY: value`` records using
fixed uppercase keys. Parsing is deliberately forgiving: unknown keys are
ignored, missing keys fall back to per-field defaults, and unrecognized
confidence or marketplace words resolve to fixed defaults. The only hard
failure is content in which none of the expected keys appear at all, which
raises ``ParseFailure``.

Default substitutions are logged at WARNING and counted in a ``ParseStats``
(``default_stats`` unless the caller passes its own) so drift in upstream
wording shows up instead of disappearing silently.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from statistics import mean
from typing import Callable, Iterator, Optional

from .errors import ParseFailure
from .models import (
    BulkAnalysisResult,
    BulkAnalyzedItem,
    Capability,
    Confidence,
    ItemAnalysis,
    Marketplace,
    MarketplacePriceAnalysis,
    ParsedResult,
)

logger = logging.getLogger(__name__)

PRICE_PATTERN = re.compile(r"\$(\d+(?:\.\d+)?)")
NOT_AVAILABLE_PATTERN = re.compile(r"n/a", re.IGNORECASE)

BULK_BOUNDARY_PREFIX = "ITEM_"
ANCHORED_DEFAULT_REASONING = "Based on live eBay data and market analysis"
PREMIUM_REASONING_THRESHOLD = 20.0

DEFAULT_CONFIDENCE = Confidence.MEDIUM
DEFAULT_MARKETPLACE = list(Marketplace)[0]

MARKETPLACE_ALIASES: dict[Marketplace, tuple[str, ...]] = {
    Marketplace.EBAY: ("ebay",),
    Marketplace.FACEBOOK: ("facebook", "fb marketplace"),
    Marketplace.AMAZON: ("amazon",),
    Marketplace.STOCKX: ("stockx", "stock x"),
    Marketplace.ETSY: ("etsy",),
    Marketplace.MERCARI: ("mercari",),
    Marketplace.POSHMARK: ("poshmark",),
    Marketplace.DEPOP: ("depop",),
}

_MARKETPLACE_KEYS = {m.name: m for m in Marketplace}
_MARKETPLACE_ORDER = list(Marketplace)

_ITEM_FIELDS = {
    "CONDITION": "condition",
    "DESCRIPTION": "description",
    "VALUE": "estimated_value",
    "CATEGORY": "category",
}
_BULK_ITEM_FIELDS = {
    "NAME": "name",
    "CONDITION": "condition",
    "DESCRIPTION": "description",
    "VALUE": "estimated_value",
    "CATEGORY": "category",
    "LOCATION": "location",
}
_BARCODE_SPECIFICS = {
    "brand": "Brand",
    "barcode_number": "Barcode",
    "barcode_format": "Barcode Format",
    "product_notes": "Notes",
}


class ParseStats:
    """Counts default substitutions made while parsing, keyed by field."""

    def __init__(self) -> None:
        self.fallbacks: Counter[str] = Counter()

    def record_fallback(self, field_name: str, raw: str) -> None:
        self.fallbacks[field_name] += 1
        logger.warning("Unrecognized %s %r, using default", field_name, raw)

    def reset(self) -> None:
        self.fallbacks.clear()


default_stats = ParseStats()


class PriceStatus(str, Enum):
    """Outcome of scanning one line for a price."""

    FOUND = "found"
    NOT_AVAILABLE = "not_available"
    MISSING = "missing"


def classify_price(text: str) -> tuple[PriceStatus, Optional[float]]:
    """Find the first ``$<int>[.<frac>]`` token in ``text``.

    A line without a price token that says ``N/A`` is an explicit "no price"
    and is reported separately from a line that simply has no price in it.
    """
    match = PRICE_PATTERN.search(text)
    if match:
        return PriceStatus.FOUND, float(match.group(1))
    if NOT_AVAILABLE_PATTERN.search(text):
        return PriceStatus.NOT_AVAILABLE, None
    return PriceStatus.MISSING, None


def extract_price(text: str) -> Optional[float]:
    return classify_price(text)[1]


def parse_confidence(text: str, stats: Optional[ParseStats] = None) -> Confidence:
    lowered = text.lower()
    if "high" in lowered:
        return Confidence.HIGH
    if "low" in lowered:
        return Confidence.LOW
    if "medium" in lowered or "moderate" in lowered:
        return Confidence.MEDIUM
    (stats or default_stats).record_fallback("confidence", text)
    return DEFAULT_CONFIDENCE


def parse_marketplace(text: str, stats: Optional[ParseStats] = None) -> Marketplace:
    lowered = text.lower()
    for marketplace in _MARKETPLACE_ORDER:
        if any(alias in lowered for alias in MARKETPLACE_ALIASES[marketplace]):
            return marketplace
    (stats or default_stats).record_fallback("marketplace", text)
    return DEFAULT_MARKETPLACE


def _lines(content: str) -> Iterator[str]:
    """Yield each line with markdown bold markers and outer whitespace removed."""
    for raw_line in content.splitlines():
        yield raw_line.replace("**", "").strip()


def _split_record(line: str) -> tuple[Optional[str], str]:
    key, sep, value = line.partition(":")
    if not sep:
        return None, ""
    return key.strip(), value.strip()


def _records(content: str) -> Iterator[tuple[str, str]]:
    """Yield ``(KEY, value)`` pairs, skipping lines without a colon."""
    for line in _lines(content):
        key, value = _split_record(line)
        if key is not None:
            yield key, value


def _parse_specifics(value: str) -> Optional[dict[str, str]]:
    try:
        data = json.loads(value)
    except (json.JSONDecodeError, RecursionError):
        logger.debug("ATTRIBUTES is not usable JSON: %r", value[:80])
        return None
    if not isinstance(data, dict):
        return None
    return {str(k): str(v) for k, v in data.items() if v is not None}


# ─── Item analysis ───────────────────────────────────────────────────────────


def parse_item_analysis(content: str, stats: Optional[ParseStats] = None) -> ItemAnalysis:
    fields: dict = {}
    for key, value in _records(content):
        if key in ("ITEM", "NAME"):
            fields["name"] = value or "Unknown Item"
        elif key in _ITEM_FIELDS:
            fields[_ITEM_FIELDS[key]] = value
        elif key == "ATTRIBUTES":
            fields["specifics"] = _parse_specifics(value)

    if not fields:
        raise ParseFailure("No item analysis fields recognized")
    return ItemAnalysis(**fields)


def parse_bulk_analysis(content: str, stats: Optional[ParseStats] = None) -> BulkAnalysisResult:
    """Items start at any line beginning with ``ITEM_``, with or without a colon."""
    items: list[BulkAnalyzedItem] = []
    current: dict = {}
    summary: dict = {}

    def flush() -> None:
        if current:
            items.append(BulkAnalyzedItem(**current))
            current.clear()

    for line in _lines(content):
        if line.startswith(BULK_BOUNDARY_PREFIX):
            flush()
            continue
        key, value = _split_record(line)
        if key is None:
            continue
        if key in _BULK_ITEM_FIELDS:
            current[_BULK_ITEM_FIELDS[key]] = value
        elif key == "TOTAL_COUNT":
            digits = re.search(r"\d+", value)
            summary["total_count"] = int(digits.group()) if digits else 0
        elif key == "TOTAL_VALUE":
            summary["total_value_text"] = value
        elif key == "SCENE_DESCRIPTION":
            summary["scene_description"] = value
    flush()

    if not items and not summary:
        raise ParseFailure("No bulk analysis fields recognized")
    return BulkAnalysisResult(items=items, **summary)


def parse_barcode_analysis(content: str, stats: Optional[ParseStats] = None) -> ItemAnalysis:
    """Barcode answers embed a JSON object, possibly wrapped in prose."""
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end <= start:
        raise ParseFailure("No JSON object in barcode response")
    try:
        data = json.loads(content[start:end + 1])
    except json.JSONDecodeError as exc:
        raise ParseFailure(f"Invalid barcode JSON: {exc}") from exc
    except RecursionError as exc:
        raise ParseFailure("Barcode JSON is nested too deeply") from exc
    if not isinstance(data, dict) or not data.get("item_name"):
        raise ParseFailure("Barcode response has no item_name")

    specifics = {
        label: str(data[key])
        for key, label in _BARCODE_SPECIFICS.items()
        if data.get(key) not in (None, "", "not visible", "unknown")
    }
    return ItemAnalysis(
        name=str(data["item_name"]),
        condition="Unknown",
        description=str(data.get("description") or ""),
        estimated_value=str(data.get("estimated_value") or ""),
        category=str(data.get("category") or ""),
        specifics=specifics or None,
    )


# ─── Price analysis ──────────────────────────────────────────────────────────


@dataclass
class _PriceScan:
    prices: dict[Marketplace, float] = field(default_factory=dict)
    recommended: Optional[str] = None
    reasoning: str = ""
    confidence: Confidence = DEFAULT_CONFIDENCE
    saw_marketplace_line: bool = False

    @property
    def recognized(self) -> bool:
        return self.saw_marketplace_line or self.recommended is not None


def _scan_price_lines(content: str, stats: Optional[ParseStats]) -> _PriceScan:
    scan = _PriceScan()
    for key, value in _records(content):
        marketplace = _MARKETPLACE_KEYS.get(key)
        if marketplace is not None:
            scan.saw_marketplace_line = True
            status, price = classify_price(value)
            if status is PriceStatus.FOUND:
                scan.prices[marketplace] = price
            elif status is PriceStatus.NOT_AVAILABLE:
                logger.debug("%s marked N/A", marketplace.value)
            else:
                logger.debug("%s line has no price token: %r", marketplace.value, value)
        elif key == "RECOMMENDED":
            scan.recommended = value
        elif key == "REASONING":
            scan.reasoning = value
        elif key == "CONFIDENCE":
            scan.confidence = parse_confidence(value, stats)
    return scan


def _top_marketplace(prices: dict[Marketplace, float]) -> Marketplace:
    ordered = sorted(prices, key=_MARKETPLACE_ORDER.index)
    return max(ordered, key=lambda m: prices[m])


def _describe_top_price(top: Marketplace, prices: dict[Marketplace, float]) -> str:
    highest = prices[top]
    average = mean(prices.values())
    percent_higher = (highest - average) / average * 100 if average > 0 else 0.0
    if percent_higher > PREMIUM_REASONING_THRESHOLD:
        return f"{top.display_name} offers {int(percent_higher)}% higher prices than average for this item"
    return f"{top.display_name} has the best price at ${highest:.2f}"


def parse_price_research(content: str, stats: Optional[ParseStats] = None) -> MarketplacePriceAnalysis:
    """Without a ``RECOMMENDED:`` line the highest-priced marketplace wins."""
    scan = _scan_price_lines(content, stats)
    if not scan.recognized:
        raise ParseFailure("No marketplace prices or recommendation recognized")

    top = _top_marketplace(scan.prices) if scan.prices else None
    if scan.recommended is not None:
        recommended = parse_marketplace(scan.recommended, stats)
        reasoning = scan.reasoning
        if not reasoning and recommended is top:
            reasoning = _describe_top_price(top, scan.prices)
    elif top is not None:
        recommended = top
        reasoning = _describe_top_price(top, scan.prices)
    else:
        (stats or default_stats).record_fallback("marketplace", "")
        recommended = DEFAULT_MARKETPLACE
        reasoning = scan.reasoning

    return MarketplacePriceAnalysis(
        recommended_marketplace=recommended,
        confidence=scan.confidence,
        prices_by_marketplace=scan.prices,
        reasoning=reasoning,
    )


def parse_anchored_price_analysis(content: str, stats: Optional[ParseStats] = None) -> MarketplacePriceAnalysis:
    scan = _scan_price_lines(content, stats)
    if not scan.recognized:
        raise ParseFailure("No marketplace prices or recommendation recognized")

    if scan.recommended is not None:
        recommended = parse_marketplace(scan.recommended, stats)
    else:
        (stats or default_stats).record_fallback("marketplace", "")
        recommended = DEFAULT_MARKETPLACE

    return MarketplacePriceAnalysis(
        recommended_marketplace=recommended,
        confidence=scan.confidence,
        prices_by_marketplace=scan.prices,
        reasoning=scan.reasoning or ANCHORED_DEFAULT_REASONING,
    )


PARSERS: dict[Capability, Callable[[str, Optional[ParseStats]], ParsedResult]] = {
    Capability.SINGLE_ITEM: parse_item_analysis,
    Capability.BULK_SCENE: parse_bulk_analysis,
    Capability.BARCODE: parse_barcode_analysis,
    Capability.PRICE_RESEARCH: parse_price_research,
    Capability.ANCHORED_PRICE_ANALYSIS: parse_anchored_price_analysis,
}


def parse(capability: Capability, content: str, stats: Optional[ParseStats] = None) -> ParsedResult:
    """Parse ``content`` for ``capability``; raises only ``ParseFailure``.

    Fallbacks are counted in ``stats`` when given, else in ``default_stats``.
    """
    if not content or not content.strip():
        raise ParseFailure(f"{capability.value}: empty content")
    try:
        return PARSERS[capability](content, stats)
    except ParseFailure:
        raise
    except (ValueError, TypeError, RecursionError) as exc:
        raise ParseFailure(f"{capability.value}: {exc}") from exc
