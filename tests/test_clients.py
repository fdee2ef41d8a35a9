"""Tests for the HTTP clients, driven through httpx.MockTransport."""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from resale_intelligence.core.clients import ebay, stockx
from resale_intelligence.core.clients.edge import EdgeFunctionClient
from resale_intelligence.core.clients.http import error_message
from resale_intelligence.core.clients.oauth import OAuthClient
from resale_intelligence.core.errors import MalformedResponse, RemoteError, TransientError
from resale_intelligence.core.models import Environment


def run(coro):
    return asyncio.run(coro)


def mock(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


class TestErrorMessage:

    @pytest.mark.parametrize("data,expected", [
        ({"error": "boom"}, "boom"),
        ({"error": {"message": "nested"}}, "nested"),
        ({"error": "invalid_grant", "error_description": "expired"}, "invalid_grant: expired"),
        ({"ok": True}, None),
        ("not a dict", None),
    ])
    def test_variants(self, data, expected):
        assert error_message(data) == expected


class TestEdgeFunctionClient:

    def test_posts_json_with_bearer(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": []})

        client = EdgeFunctionClient("https://fn.example.com/functions/v1/", "anon-key", transport=mock(handler))
        data = run(client.invoke("analyze-barcode", {"base64Image": "abc"}))

        assert data == {"choices": []}
        assert seen["url"] == "https://fn.example.com/functions/v1/analyze-barcode"
        assert seen["auth"] == "Bearer anon-key"
        assert seen["body"] == {"base64Image": "abc"}

    def test_http_error_becomes_remote_error(self):
        def handler(request):
            return httpx.Response(429, json={"error": "Too many requests"})

        client = EdgeFunctionClient("https://fn.example.com", "k", transport=mock(handler))
        with pytest.raises(RemoteError) as exc_info:
            run(client.invoke("research-prices", {}))
        assert exc_info.value.code == 429
        assert exc_info.value.message == "Too many requests"

    def test_timeout_becomes_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = EdgeFunctionClient("https://fn.example.com", "k", transport=mock(handler))
        with pytest.raises(TransientError):
            run(client.invoke("research-prices", {}))

    def test_connection_error_becomes_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = EdgeFunctionClient("https://fn.example.com", "k", transport=mock(handler))
        with pytest.raises(TransientError):
            run(client.invoke("research-prices", {}))

    def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        client = EdgeFunctionClient("https://fn.example.com", "k", transport=mock(handler))
        with pytest.raises(MalformedResponse):
            run(client.invoke("research-prices", {}))

    def test_json_array_body(self):
        def handler(request):
            return httpx.Response(200, json=[1, 2])

        client = EdgeFunctionClient("https://fn.example.com", "k", transport=mock(handler))
        with pytest.raises(MalformedResponse):
            run(client.invoke("research-prices", {}))


class TestOAuthClient:

    def test_refresh_grant_form_and_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["form"] = parse_qs(request.content.decode())
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"access_token": "new", "expires_in": 43200, "token_type": "Bearer"})

        client = OAuthClient("https://accounts.stockx.com/oauth/token", "id", "secret", transport=mock(handler))
        token = run(client.refresh("r-1"))

        assert token.access_token == "new"
        assert token.refresh_token is None
        assert token.expires_in == 43200
        assert seen["form"] == {"grant_type": ["refresh_token"], "refresh_token": ["r-1"]}
        assert seen["auth"].startswith("Basic ")

    def test_client_credentials_scope(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"access_token": "app", "expires_in": 7200})

        client = OAuthClient(ebay.token_url(Environment.SANDBOX), "id", "secret", transport=mock(handler))
        run(client.client_credentials(ebay.APP_SCOPE))
        assert seen["form"] == {"grant_type": ["client_credentials"], "scope": [ebay.APP_SCOPE]}

    def test_rejected_grant(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Refresh token expired"})

        client = OAuthClient("https://accounts.stockx.com/oauth/token", "id", "secret", transport=mock(handler))
        with pytest.raises(RemoteError) as exc_info:
            run(client.refresh("r-1"))
        assert exc_info.value.code == 400
        assert "Refresh token expired" in exc_info.value.message

    def test_token_response_without_access_token(self):
        def handler(request):
            return httpx.Response(200, json={"token_type": "Bearer"})

        client = OAuthClient("https://accounts.stockx.com/oauth/token", "id", "secret", transport=mock(handler))
        with pytest.raises(MalformedResponse):
            run(client.authorization_code("code", "https://example.com/cb"))

    def test_has_credentials(self):
        assert OAuthClient("u", "id", "secret").has_credentials
        assert not OAuthClient("u", "", "").has_credentials


class TestEbayBrowse:

    SEARCH_RESPONSE = {
        "total": 3,
        "itemSummaries": [
            {
                "title": "Apple AirPods Pro 2nd Gen",
                "price": {"value": "149.99", "currency": "USD"},
                "condition": "Used",
                "shippingOptions": [{"shippingCost": {"value": "0.00", "currency": "USD"}}],
                "buyingOptions": ["FIXED_PRICE", "BEST_OFFER"],
                "topRatedBuyingExperience": True,
                "seller": {"username": "seller1", "feedbackScore": 1520},
            },
            {
                "title": "AirPods Pro case only",
                "price": {"value": "39.00", "currency": "USD"},
                "shippingOptions": [{"shippingCost": {"value": "5.50", "currency": "USD"}}],
                "buyingOptions": ["AUCTION"],
            },
            {"title": "No price listing"},
        ],
    }

    def test_simplify_query(self):
        assert ebay.simplify_query("Apple AirPods Pro (2nd Generation) with MagSafe Case") == "Apple AirPods Pro with"
        assert ebay.simplify_query("iPad (10th generation)") == "iPad"
        assert ebay.simplify_query("Lamp") == "Lamp"

    def test_fetch_listings(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = request.url
            seen["headers"] = request.headers
            return httpx.Response(200, json=self.SEARCH_RESPONSE)

        listings = run(ebay.fetch_listings(
            "Apple AirPods Pro (2nd Generation)", "app-token",
            environment=Environment.SANDBOX, transport=mock(handler),
        ))

        assert seen["url"].host == "api.sandbox.ebay.com"
        assert seen["url"].path == "/buy/browse/v1/item_summary/search"
        assert seen["url"].params["q"] == "Apple AirPods Pro"
        assert seen["url"].params["limit"] == "50"
        assert seen["headers"]["Authorization"] == "Bearer app-token"
        assert seen["headers"]["X-EBAY-C-MARKETPLACE-ID"] == "EBAY_US"

        assert len(listings) == 2
        first, second = listings
        assert first.price == 149.99
        assert first.free_shipping
        assert first.buying_options == frozenset({"FIXED_PRICE", "BEST_OFFER"})
        assert first.top_rated_seller
        assert first.seller_feedback_score == 1520
        assert second.condition == "Unknown"
        assert second.shipping_cost == 5.5
        assert not second.top_rated_seller
        assert second.seller_feedback_score is None

    def test_no_content(self):
        listings = run(ebay.fetch_listings("x", "t", transport=mock(lambda request: httpx.Response(204))))
        assert listings == []

    def test_missing_item_summaries(self):
        assert ebay.parse_search_response({"total": 0}) == []

    def test_unauthorized(self):
        def handler(request):
            return httpx.Response(401, json={"errors": [{"message": "Invalid access token"}]})

        with pytest.raises(RemoteError) as exc_info:
            run(ebay.fetch_listings("x", "expired", transport=mock(handler)))
        assert exc_info.value.code == 401


class TestStockXSearch:

    def edge(self, handler):
        return EdgeFunctionClient("https://fn.example.com", "anon", transport=mock(handler))

    def test_products(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"products": [
                {"productId": "p-1", "title": "Jordan 1 Retro High Chicago", "brand": "Jordan", "styleId": "555088-101"},
                {"title": "missing id"},
            ]})

        products = run(stockx.search_products(self.edge(handler), "jordan 1", "user-token"))
        assert seen["url"].endswith("/stockx-search-products")
        assert seen["body"] == {"query": "jordan 1", "pageSize": 20, "accessToken": "user-token"}
        assert len(products) == 1
        assert products[0].product_id == "p-1"
        assert products[0].style_id == "555088-101"

    def test_error_in_body(self):
        handler = lambda request: httpx.Response(200, json={"error": "StockX token expired"})
        with pytest.raises(RemoteError):
            run(stockx.search_products(self.edge(handler), "dunk", "t"))

    def test_missing_products(self):
        handler = lambda request: httpx.Response(200, json={"count": 0})
        with pytest.raises(MalformedResponse):
            run(stockx.search_products(self.edge(handler), "dunk", "t"))
