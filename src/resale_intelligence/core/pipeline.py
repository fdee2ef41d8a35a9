"""Credit-gated request pipeline for the paid analysis capabilities.

One call is: check the ledger can afford the capability, invoke the remote
function, unwrap the chat-completion envelope, parse the content, and only
then debit the ledger. A call that fails at any step costs nothing, and a
successful call is debited exactly once.

The ledger owns the balance and must make ``debit`` atomic. Concurrent calls
can both pass the affordability check; settling that race is the ledger's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from .clients.http import error_message
from .errors import InsufficientBudget, MalformedResponse, RemoteError
from .models import (
    BulkAnalysisResult,
    Capability,
    ItemAnalysis,
    MarketplacePriceAnalysis,
    MarketStatistics,
    ParsedResult,
)
from .parsers import ParseStats, parse

logger = logging.getLogger(__name__)


class CreditLedger(Protocol):
    """External credit balance. The pipeline never tracks the balance itself."""

    async def can_afford(self, cost: int) -> bool: ...

    async def debit(self, cost: int) -> int:
        """Remove ``cost`` credits and return the remaining balance."""
        ...


class RemoteCaller(Protocol):
    async def invoke(self, function_name: str, body: dict[str, Any]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class CapabilitySpec:
    """Fixed request metadata and price of one capability."""

    function_name: str
    model: str
    max_tokens: int
    temperature: float
    cost: int


CAPABILITIES: dict[Capability, CapabilitySpec] = {
    Capability.SINGLE_ITEM: CapabilitySpec("analyze-single-item-v2", "gpt-4o", 500, 0.3, 1),
    Capability.BULK_SCENE: CapabilitySpec("analyze-bulk-items", "gpt-4o", 1500, 0.3, 2),
    Capability.BARCODE: CapabilitySpec("analyze-barcode", "gpt-4o", 300, 0.1, 1),
    Capability.PRICE_RESEARCH: CapabilitySpec("research-prices", "gpt-4o-mini", 300, 0.3, 1),
    # Free the first time for an item, one credit for each regeneration.
    Capability.ANCHORED_PRICE_ANALYSIS: CapabilitySpec("ebay-anchored-market-analysis", "gpt-4o-mini", 500, 0.3, 1),
}


class _Message(BaseModel):
    content: str


class _Choice(BaseModel):
    message: _Message


class ChatEnvelope(BaseModel):
    """``{choices: [{message: {content}}], error?}``"""

    choices: list[_Choice] = Field(min_length=1)


def _find_error(data: dict[str, Any]) -> Optional[str]:
    message = error_message(data)
    if message:
        return message
    choices = data.get("choices")
    if isinstance(choices, list):
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            message = error_message(choice) or error_message(choice.get("message"))
            if message:
                return message
    return None


def extract_content(data: Any) -> str:
    """Return the first choice's content; an ``error`` anywhere is fatal."""
    if not isinstance(data, dict):
        raise MalformedResponse(f"Expected a JSON object, got {type(data).__name__}")
    error = _find_error(data)
    if error:
        raise RemoteError(None, error)
    try:
        envelope = ChatEnvelope.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponse(f"Response envelope has no choices/message/content: {exc.error_count()} error(s)") from exc
    return envelope.choices[0].message.content


class RequestPipeline:
    """Runs capability calls against a remote caller and a credit ledger."""

    def __init__(
        self,
        caller: RemoteCaller,
        ledger: CreditLedger,
        capabilities: Optional[dict[Capability, CapabilitySpec]] = None,
        parse_stats: Optional[ParseStats] = None,
    ):
        self.caller = caller
        self.ledger = ledger
        self.capabilities = capabilities or CAPABILITIES
        self.parse_stats = parse_stats

    def build_body(self, capability: Capability, payload: dict[str, Any]) -> dict[str, Any]:
        spec = self.capabilities[capability]
        return {
            **payload,
            "model": spec.model,
            "maxTokens": spec.max_tokens,
            "temperature": spec.temperature,
        }

    async def call(
        self,
        capability: Capability,
        payload: dict[str, Any],
        cost: Optional[int] = None,
    ) -> ParsedResult:
        """Run one paid capability call.

        Args:
            capability: Which analysis to run.
            payload: Capability-specific request fields.
            cost: Credits to charge; defaults to the capability's price.

        Raises:
            InsufficientBudget: The ledger cannot cover ``cost``. Nothing is sent.
            TransientError: Timeout or transport failure.
            RemoteError: The remote reported an error.
            MalformedResponse: The envelope lacks choices/message/content.
            ParseFailure: The content matched none of the expected fields.
        """
        spec = self.capabilities[capability]
        cost = spec.cost if cost is None else cost

        if not await self.ledger.can_afford(cost):
            logger.info("%s: insufficient credits for cost %d", capability.value, cost)
            raise InsufficientBudget(cost)

        data = await self.caller.invoke(spec.function_name, self.build_body(capability, payload))
        content = extract_content(data)
        result = parse(capability, content, self.parse_stats)

        remaining = await self.ledger.debit(cost)
        logger.info("%s: charged %d credit(s), %d remaining", capability.value, cost, remaining)
        return result

    # ─── Typed entry points ──────────────────────────────────────────────────

    async def analyze_item(self, base64_image: str) -> ItemAnalysis:
        return await self.call(Capability.SINGLE_ITEM, {"base64Image": base64_image})

    async def analyze_bulk_scene(self, base64_image: str) -> BulkAnalysisResult:
        return await self.call(Capability.BULK_SCENE, {"base64Image": base64_image})

    async def analyze_barcode(self, base64_image: str) -> ItemAnalysis:
        return await self.call(Capability.BARCODE, {"base64Image": base64_image})

    async def research_prices(self, item_name: str, category: str) -> MarketplacePriceAnalysis:
        return await self.call(Capability.PRICE_RESEARCH, {"itemName": item_name, "category": category})

    async def anchored_price_analysis(
        self,
        item_name: str,
        category: str,
        market: MarketStatistics,
        first_generation: bool,
    ) -> MarketplacePriceAnalysis:
        """Price analysis anchored on live eBay statistics."""
        payload = {
            "itemName": item_name,
            "category": category,
            "ebayData": {
                "avg": market.average,
                "min": market.min,
                "max": market.max,
                "soldListings": market.total_count,
            },
        }
        cost = 0 if first_generation else None
        return await self.call(Capability.ANCHORED_PRICE_ANALYSIS, payload, cost=cost)
