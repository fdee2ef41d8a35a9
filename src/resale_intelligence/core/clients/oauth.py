"""OAuth 2.0 token endpoint client.

Covers the three grants the integrations need: client credentials (app-level
eBay token), authorization code, and refresh token (user-level StockX token).
Client credentials go in an HTTP Basic header.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from ..errors import MalformedResponse
from ..models import TokenResponse
from .http import DEFAULT_TIMEOUT_SECONDS, json_body, request

logger = logging.getLogger(__name__)


class OAuthClient:
    """Token endpoint for one OAuth client registration."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self._client_secret)

    async def _request_token(self, form: dict[str, str]) -> TokenResponse:
        response = await request(
            "POST",
            self.token_url,
            data=form,
            auth=(self.client_id, self._client_secret),
            headers={"Accept": "application/json"},
            timeout=self.timeout,
            transport=self._transport,
        )
        data = json_body(response)
        try:
            return TokenResponse.model_validate(data)
        except ValueError as exc:
            raise MalformedResponse(f"Unexpected token response from {self.token_url}") from exc

    async def client_credentials(self, scope: Optional[str] = None) -> TokenResponse:
        form = {"grant_type": "client_credentials"}
        if scope:
            form["scope"] = scope
        return await self._request_token(form)

    async def authorization_code(self, code: str, redirect_uri: Optional[str] = None) -> TokenResponse:
        form = {"grant_type": "authorization_code", "code": code}
        if redirect_uri:
            form["redirect_uri"] = redirect_uri
        return await self._request_token(form)

    async def refresh(self, refresh_token: str, scope: Optional[str] = None) -> TokenResponse:
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if scope:
            form["scope"] = scope
        return await self._request_token(form)


def authorization_url(
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    **extra: str,
) -> str:
    """Consent-page URL the user is sent to before ``authorization_code``."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        **extra,
    }
    return f"{authorize_url}?{urlencode(params)}"
