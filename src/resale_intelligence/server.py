"""Resale Intelligence MCP Server.

FastMCP server exposing item analysis, price research, live eBay market
statistics and StockX catalog search to an AI client.
Run: resale-intelligence-mcp
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx
from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings, load_settings
from .core import market_stats
from .core.clients import ebay, stockx
from .core.clients.edge import EdgeFunctionClient
from .core.clients.oauth import OAuthClient
from .core.credentials import AppCredentialCache, SingleFlight, UserCredentialCache
from .core.models import StockXProduct
from .core.pipeline import RequestPipeline
from .core.search import SearchCoordinator
from .db import close_db, get_db_url, init_db
from .market import MarketPriceService
from .stores import SqlCredentialStore, SqlCreditLedger

logger = logging.getLogger(__name__)

READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True)
PAID = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=False, openWorldHint=True)


@dataclass
class Services:
    """Everything the tools need, wired from one ``Settings``."""

    settings: Settings
    ledger: SqlCreditLedger
    pipeline: RequestPipeline
    ebay_credentials: AppCredentialCache
    stockx_credentials: UserCredentialCache
    market: MarketPriceService
    product_search: SearchCoordinator[StockXProduct]


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    timeout = settings.request_timeout_seconds
    store = SqlCredentialStore(session_factory)
    ledger = SqlCreditLedger(starting_balance=settings.starting_credits, session_factory=session_factory)
    edge = EdgeFunctionClient(settings.edge_functions_url, settings.edge_functions_key, timeout, transport)
    single_flight = SingleFlight()

    ebay_credentials = AppCredentialCache(
        ebay.INTEGRATION_ID,
        settings.environment,
        store,
        OAuthClient(
            ebay.token_url(settings.environment),
            settings.ebay_client_id,
            settings.ebay_client_secret,
            timeout,
            transport,
        ),
        scope=ebay.APP_SCOPE,
        single_flight=single_flight,
        default_lifetime_seconds=ebay.DEFAULT_TOKEN_LIFETIME_SECONDS,
    )
    stockx_credentials = UserCredentialCache(
        stockx.INTEGRATION_ID,
        settings.environment,
        store,
        OAuthClient(
            stockx.TOKEN_URL,
            settings.stockx_client_id,
            settings.stockx_client_secret,
            timeout,
            transport,
        ),
        authorize_url=stockx.AUTHORIZE_URL,
        redirect_uri=settings.stockx_redirect_uri,
        scope=stockx.SCOPE,
        authorize_params={"audience": stockx.AUDIENCE},
        single_flight=single_flight,
        default_lifetime_seconds=stockx.DEFAULT_TOKEN_LIFETIME_SECONDS,
    )

    async def search_stockx(query: str) -> list[StockXProduct]:
        token = await stockx_credentials.get_valid_token()
        return await stockx.search_products(edge, query, token)

    return Services(
        settings=settings,
        ledger=ledger,
        pipeline=RequestPipeline(edge, ledger),
        ebay_credentials=ebay_credentials,
        stockx_credentials=stockx_credentials,
        market=MarketPriceService(ebay_credentials, timeout=timeout, transport=transport),
        product_search=SearchCoordinator(search_stockx),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(load_settings())
    return _services


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Initialize the database and wire the services."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    services = get_services()
    await init_db(get_db_url(services.settings.data_dir))
    logger.info(
        "Resale Intelligence ready (%s, %d credits)",
        services.settings.environment.value,
        await services.ledger.balance(),
    )
    try:
        yield
    finally:
        services.product_search.clear()
        await close_db()


mcp = FastMCP(
    "Resale Intelligence",
    instructions="Identify items from photos or barcodes, research resale prices across marketplaces, and check live eBay market statistics before listing.",
    lifespan=lifespan,
)


# ─── Paid analysis ───────────────────────────────────────────────────────────


@mcp.tool(annotations=PAID)
async def resale_analyze_item(base64_image: str) -> dict:
    """Identify a single item from a photo. Costs 1 credit.

    Args:
        base64_image: JPEG image, base64 encoded.
    """
    result = await get_services().pipeline.analyze_item(base64_image)
    return result.model_dump()


@mcp.tool(annotations=PAID)
async def resale_analyze_scene(base64_image: str) -> dict:
    """Identify every item in a photo of several items. Costs 2 credits.

    Args:
        base64_image: JPEG image, base64 encoded.
    """
    result = await get_services().pipeline.analyze_bulk_scene(base64_image)
    return result.model_dump()


@mcp.tool(annotations=PAID)
async def resale_analyze_barcode(base64_image: str) -> dict:
    """Identify a product from a photo of its barcode. Costs 1 credit.

    Args:
        base64_image: JPEG image of the barcode, base64 encoded.
    """
    result = await get_services().pipeline.analyze_barcode(base64_image)
    return result.model_dump()


@mcp.tool(annotations=PAID)
async def resale_research_prices(item_name: str, category: str = "") -> dict:
    """Estimated resale price on each marketplace and where to sell. Costs 1 credit.

    Args:
        item_name: What the item is, e.g. 'Nintendo Switch OLED'.
        category: Optional category hint, e.g. 'Electronics'.
    """
    result = await get_services().pipeline.research_prices(item_name, category)
    return {**result.model_dump(mode="json"), "best_price": result.best_price}


@mcp.tool(annotations=PAID)
async def resale_price_analysis(item_name: str, category: str = "", regenerate: bool = False) -> dict:
    """Marketplace recommendation anchored on live eBay listings.

    The first analysis of an item is free; regenerating costs 1 credit.

    Args:
        item_name: What the item is.
        category: Optional category hint.
        regenerate: True to pay for a fresh analysis of an item already analyzed.
    """
    services = get_services()
    market = await services.market.market_statistics(item_name)
    result = await services.pipeline.anchored_price_analysis(
        item_name, category, market, first_generation=not regenerate,
    )
    return {
        **result.model_dump(mode="json"),
        "best_price": result.best_price,
        "market_summary": market_stats.summarize(market),
    }


# ─── Market data ─────────────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def resale_market_statistics(item_name: str) -> dict:
    """Live eBay listing statistics: price range, histogram, insights and a selling strategy.

    Args:
        item_name: What the item is. Long names are shortened for search.
    """
    stats = await get_services().market.market_statistics(item_name)
    return {
        **stats.model_dump(),
        "competition": market_stats.competition_level(stats.total_count) if stats.has_data else None,
        "summary": market_stats.summarize(stats) or "No active listings found",
    }


@mcp.tool(annotations=READ_ONLY)
async def resale_stockx_search(query: str) -> dict:
    """Search the StockX catalog. Requires a connected StockX account.

    Args:
        query: Keywords, e.g. 'Jordan 1 Chicago'.
    """
    products = await get_services().product_search.search(query)
    if products is None:
        return {"query": query, "superseded": True, "products": []}
    return {
        "query": query,
        "superseded": False,
        "products": [p.model_dump() for p in products],
        "total": len(products),
    }


# ─── Account ─────────────────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def resale_credit_balance() -> dict:
    """Remaining analysis credits."""
    return {"credits": await get_services().ledger.balance()}


@mcp.tool(annotations=READ_ONLY)
async def resale_stockx_authorize_url(state: str) -> dict:
    """URL the user opens to connect their StockX account.

    Args:
        state: Opaque value echoed back on the redirect.
    """
    return {"url": get_services().stockx_credentials.authorization_url(state)}


@mcp.tool()
async def resale_stockx_connect(code: str) -> dict:
    """Finish connecting StockX with the code from the authorization redirect.

    Args:
        code: The ``code`` query parameter from the redirect URL.
    """
    credential = await get_services().stockx_credentials.exchange_code(code)
    return {"connected": True, "expires_at": credential.expires_at.isoformat()}


@mcp.tool()
async def resale_sign_out(integration: str = "stockx") -> dict:
    """Forget the stored token for an integration.

    Args:
        integration: 'stockx' or 'ebay'.
    """
    services = get_services()
    caches = {
        stockx.INTEGRATION_ID: services.stockx_credentials,
        ebay.INTEGRATION_ID: services.ebay_credentials,
    }
    cache = caches.get(integration.lower())
    if cache is None:
        raise ValueError(f"Unknown integration {integration!r}; expected one of {sorted(caches)}")
    await cache.invalidate()
    if cache is services.stockx_credentials:
        services.product_search.clear()
    return {"integration": integration.lower(), "signed_out": True}


def main():
    """Entry point for the CLI command."""
    mcp.run()


if __name__ == "__main__":
    main()
