"""Tests for the credit-gated request pipeline."""

import asyncio
import logging

import pytest

from conftest import FakeCaller, FakeLedger, envelope
from resale_intelligence.core.errors import (
    InsufficientBudget,
    MalformedResponse,
    ParseFailure,
    RemoteError,
    TransientError,
)
from resale_intelligence.core import parsers
from resale_intelligence.core.market_stats import analyze
from resale_intelligence.core.models import Capability, Marketplace, RawListing
from resale_intelligence.core.parsers import ParseStats
from resale_intelligence.core.pipeline import CAPABILITIES, RequestPipeline, extract_content

ITEM_CONTENT = "ITEM: Vintage Camera\nCONDITION: Good\nVALUE: $80-$120\nCATEGORY: Cameras"
PRICE_CONTENT = "EBAY: $45.00\nSTOCKX: N/A\nRECOMMENDED: ebay\nREASONING: test\nCONFIDENCE: high"


def run(coro):
    return asyncio.run(coro)


class TestSuccessfulCalls:

    def test_debits_once_after_parse(self):
        ledger = FakeLedger(balance=5)
        caller = FakeCaller(envelope(ITEM_CONTENT))
        result = run(RequestPipeline(caller, ledger).analyze_item("aGVsbG8="))

        assert result.name == "Vintage Camera"
        assert ledger.debits == [1]
        assert ledger.balance == 4
        assert len(caller.calls) == 1

    def test_body_carries_payload_and_metadata(self):
        caller = FakeCaller(envelope(ITEM_CONTENT))
        run(RequestPipeline(caller, FakeLedger()).analyze_item("aGVsbG8="))

        function_name, body = caller.calls[0]
        assert function_name == "analyze-single-item-v2"
        assert body == {
            "base64Image": "aGVsbG8=",
            "model": "gpt-4o",
            "maxTokens": 500,
            "temperature": 0.3,
        }

    def test_bulk_scene_costs_two(self):
        ledger = FakeLedger(balance=2)
        caller = FakeCaller(envelope("ITEM_1:\nNAME: Mug\nTOTAL_COUNT: 1"))
        result = run(RequestPipeline(caller, ledger).analyze_bulk_scene("aW1n"))
        assert result.total_count == 1
        assert ledger.debits == [2]
        assert caller.calls[0][1]["maxTokens"] == 1500

    def test_price_research(self):
        ledger = FakeLedger()
        caller = FakeCaller(envelope(PRICE_CONTENT))
        result = run(RequestPipeline(caller, ledger).research_prices("Air Max 90", "Shoes"))

        assert result.recommended_marketplace is Marketplace.EBAY
        assert result.prices_by_marketplace == {Marketplace.EBAY: 45.0}
        assert caller.calls[0] == ("research-prices", {
            "itemName": "Air Max 90",
            "category": "Shoes",
            "model": "gpt-4o-mini",
            "maxTokens": 300,
            "temperature": 0.3,
        })
        assert ledger.debits == [1]

    def test_logs_charge(self, caplog):
        with caplog.at_level(logging.INFO, logger="resale_intelligence.core.pipeline"):
            run(RequestPipeline(FakeCaller(envelope(ITEM_CONTENT)), FakeLedger(balance=3)).analyze_item("x"))
        assert "single_item: charged 1 credit(s), 2 remaining" in caplog.text

    def test_fallbacks_counted_in_injected_stats(self):
        stats = ParseStats()
        caller = FakeCaller(envelope("EBAY: $20\nCONFIDENCE: unsure"))
        run(RequestPipeline(caller, FakeLedger(), parse_stats=stats).research_prices("Lamp", "Home"))

        assert stats.fallbacks["confidence"] == 1
        assert parsers.default_stats.fallbacks["confidence"] == 0


class TestAnchoredAnalysis:

    def market(self):
        return analyze([RawListing(price=p) for p in (30, 40, 50)])

    def test_first_generation_is_free(self):
        ledger = FakeLedger(balance=0)
        caller = FakeCaller(envelope("EBAY: $42\nRECOMMENDED: ebay"))
        result = run(RequestPipeline(caller, ledger).anchored_price_analysis(
            "Lego 75192", "Toys", self.market(), first_generation=True,
        ))

        assert result.reasoning == "Based on live eBay data and market analysis"
        assert ledger.checks == [0]
        assert ledger.debits == [0]
        function_name, body = caller.calls[0]
        assert function_name == "ebay-anchored-market-analysis"
        assert body["ebayData"] == {"avg": 40.0, "min": 30.0, "max": 50.0, "soldListings": 3}

    def test_regeneration_costs_one(self):
        ledger = FakeLedger(balance=0)
        caller = FakeCaller(envelope("EBAY: $42\nRECOMMENDED: ebay"))
        with pytest.raises(InsufficientBudget) as exc_info:
            run(RequestPipeline(caller, ledger).anchored_price_analysis(
                "Lego 75192", "Toys", self.market(), first_generation=False,
            ))
        assert exc_info.value.required == 1
        assert caller.calls == []


class TestFailedCalls:

    def test_insufficient_budget_makes_no_remote_call(self):
        ledger = FakeLedger(balance=0)
        caller = FakeCaller(envelope(ITEM_CONTENT))
        with pytest.raises(InsufficientBudget) as exc_info:
            run(RequestPipeline(caller, ledger).call(Capability.SINGLE_ITEM, {"base64Image": "x"}))
        assert exc_info.value.required == 1
        assert caller.calls == []
        assert ledger.debits == []

    @pytest.mark.parametrize("response,error", [
        ({"error": "Rate limited"}, RemoteError),
        ({"choices": [{"message": {"content": ITEM_CONTENT}}], "error": "quota"}, RemoteError),
        ({"choices": [{"error": {"message": "content filtered"}}]}, RemoteError),
        ({}, MalformedResponse),
        ({"choices": []}, MalformedResponse),
        ({"choices": [{"message": {}}]}, MalformedResponse),
        ({"choices": [{"text": "legacy"}]}, MalformedResponse),
        (envelope("I'm not sure what this is."), ParseFailure),
        (envelope(""), ParseFailure),
    ])
    def test_no_debit_on_failure(self, response, error):
        ledger = FakeLedger()
        with pytest.raises(error):
            run(RequestPipeline(FakeCaller(response), ledger).analyze_item("x"))
        assert ledger.debits == []
        assert ledger.balance == 10

    @pytest.mark.parametrize("error", [
        TransientError("timed out"),
        RemoteError(500, "Internal Server Error"),
    ])
    def test_transport_errors_propagate_without_debit(self, error):
        ledger = FakeLedger()
        with pytest.raises(type(error)):
            run(RequestPipeline(FakeCaller(error=error), ledger).analyze_item("x"))
        assert ledger.debits == []

    def test_remote_error_message(self):
        with pytest.raises(RemoteError) as exc_info:
            extract_content({"error": "OpenAI API key not configured"})
        assert exc_info.value.code is None
        assert exc_info.value.message == "OpenAI API key not configured"

    def test_non_object_response(self):
        with pytest.raises(MalformedResponse):
            extract_content(["not", "an", "object"])


class TestConcurrency:

    def test_each_successful_call_debits_once(self):
        ledger = FakeLedger(balance=10)
        pipeline = RequestPipeline(FakeCaller(envelope(ITEM_CONTENT)), ledger)

        async def many():
            return await asyncio.gather(*(pipeline.analyze_item("x") for _ in range(4)))

        results = run(many())
        assert len(results) == 4
        assert ledger.debits == [1, 1, 1, 1]
        assert ledger.balance == 6


class TestCapabilityTable:

    def test_every_capability_has_metadata(self):
        assert set(CAPABILITIES) == set(Capability)

    def test_barcode_uses_low_temperature(self):
        spec = CAPABILITIES[Capability.BARCODE]
        assert (spec.function_name, spec.model, spec.max_tokens, spec.temperature, spec.cost) == (
            "analyze-barcode", "gpt-4o", 300, 0.1, 1,
        )
