"""Shared httpx plumbing for every outbound call.

Each request gets a bounded timeout. Timeouts and connection problems become
``TransientError``; an HTTP error status becomes ``RemoteError`` carrying the
status code and whatever message the remote supplied.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..errors import MalformedResponse, RemoteError, TransientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
CONNECT_TIMEOUT_SECONDS = 10.0


def error_message(data: Any) -> Optional[str]:
    """Pull a human-readable error out of a JSON body, if it carries one."""
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    description = data.get("error_description")
    return f"{error}: {description}" if description else str(error)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


async def request(
    method: str,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request and map failures onto the error taxonomy."""
    client_timeout = httpx.Timeout(timeout, connect=min(timeout, CONNECT_TIMEOUT_SECONDS))
    try:
        async with httpx.AsyncClient(timeout=client_timeout, transport=transport) as client:
            response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientError(f"{method} {url} timed out after {timeout:.0f}s") from exc
    except httpx.TransportError as exc:
        raise TransientError(f"{method} {url} failed: {exc}") from exc

    if response.is_error:
        message = error_message(_json_or_none(response)) or response.text[:200] or response.reason_phrase
        logger.warning("%s %s returned %d: %s", method, url, response.status_code, message)
        raise RemoteError(response.status_code, message)
    return response


def json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise MalformedResponse(f"Response from {response.request.url} is not JSON") from exc
