"""Edge function client.

The analysis capabilities and the StockX catalog are served by hosted edge
functions that hold the upstream API keys. Each function takes a JSON body
and returns JSON.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..errors import MalformedResponse
from .http import DEFAULT_TIMEOUT_SECONDS, json_body, request

logger = logging.getLogger(__name__)


class EdgeFunctionClient:
    """Invokes named edge functions with the project's anon key."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def invoke(self, function_name: str, body: dict[str, Any]) -> dict[str, Any]:
        logger.debug("Invoking edge function %s", function_name)
        response = await request(
            "POST",
            f"{self.base_url}/{function_name}",
            json=body,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=self.timeout,
            transport=self._transport,
        )
        data = json_body(response)
        if not isinstance(data, dict):
            raise MalformedResponse(f"{function_name} returned {type(data).__name__}, expected an object")
        return data
