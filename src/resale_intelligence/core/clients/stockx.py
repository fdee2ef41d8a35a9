"""StockX catalog client.

Catalog calls go through an edge function that holds the StockX API key; the
user's OAuth bearer token is passed along in the body.
"""

from __future__ import annotations

import logging

from ..errors import MalformedResponse, RemoteError
from ..models import StockXProduct
from .edge import EdgeFunctionClient
from .http import error_message

logger = logging.getLogger(__name__)

INTEGRATION_ID = "stockx"

AUTHORIZE_URL = "https://accounts.stockx.com/authorize"
TOKEN_URL = "https://accounts.stockx.com/oauth/token"
AUDIENCE = "gateway.stockx.com"
SCOPE = "offline_access openid"

# StockX access tokens last twelve hours; the token response does not always say so.
DEFAULT_TOKEN_LIFETIME_SECONDS = 12 * 60 * 60
DEFAULT_PAGE_SIZE = 20

SEARCH_FUNCTION = "stockx-search-products"


async def search_products(
    edge: EdgeFunctionClient,
    query: str,
    access_token: str,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[StockXProduct]:
    """Search the StockX catalog by keyword."""
    data = await edge.invoke(
        SEARCH_FUNCTION,
        {"query": query, "pageSize": page_size, "accessToken": access_token},
    )
    message = error_message(data)
    if message:
        raise RemoteError(None, message)
    products = data.get("products")
    if products is None:
        raise MalformedResponse(f"{SEARCH_FUNCTION} response has no 'products'")

    results = []
    for raw in products:
        try:
            results.append(StockXProduct.model_validate(raw))
        except ValueError:
            logger.debug("Skipping unparseable StockX product: %r", raw)
    logger.info("StockX search %r returned %d products", query, len(results))
    return results
