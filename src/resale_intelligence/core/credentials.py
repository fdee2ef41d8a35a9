"""Bearer credential caching for the OAuth-protected integrations.

Each cache owns one ``CachedCredential`` for one integration and environment,
persists it through a ``CredentialStore``, and renews it shortly before it
expires. Concurrent renewals for the same integration are coalesced by a
``SingleFlight`` guard so only one token request is ever in flight.

Two flavours:
- ``AppCredentialCache``: application token from the client-credentials
  grant (eBay). Renewal is simply a new exchange.
- ``UserCredentialCache``: user token from the authorization-code grant with
  refresh (StockX). Renewal uses the refresh token.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from .clients import oauth as oauth_client
from .clients.oauth import OAuthClient
from .errors import NotAuthenticated, RefreshFailed, ResaleIntelligenceError
from .models import CachedCredential, Environment, TokenResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SAFETY_MARGIN_SECONDS = 300
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CacheState(str, Enum):
    EMPTY = "empty"
    VALID = "valid"
    STALE = "stale"


class SingleFlight:
    """Coalesce concurrent calls per key into one running task.

    Every caller awaiting the same key gets the same result or exception. A
    caller being cancelled does not cancel the shared task.
    """

    def __init__(self):
        self._inflight: dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda finished: self._forget(key, finished))
        else:
            logger.debug("Joining in-flight call for %s", key)
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter has gone away.
            task.exception()


class CredentialStore(Protocol):
    """Persistence for cached credentials, keyed by integration id."""

    async def load(self, integration_id: str) -> Optional[CachedCredential]: ...

    async def save(self, integration_id: str, credential: CachedCredential) -> None: ...

    async def delete(self, integration_id: str) -> None: ...


class InMemoryCredentialStore:
    def __init__(self):
        self._records: dict[str, CachedCredential] = {}

    async def load(self, integration_id: str) -> Optional[CachedCredential]:
        return self._records.get(integration_id)

    async def save(self, integration_id: str, credential: CachedCredential) -> None:
        self._records[integration_id] = credential

    async def delete(self, integration_id: str) -> None:
        self._records.pop(integration_id, None)


class CredentialCache(ABC):
    """State machine shared by both cache flavours.

    States: ``EMPTY`` (nothing usable), ``VALID`` (token held, maybe near
    expiry), ``STALE`` (last renewal failed; the old value stays readable
    through ``credential`` but is never handed out).

    ``invalidate()`` starts a new epoch. A renewal that began in an earlier
    epoch is discarded when it completes, so a sign-out always sticks.
    """

    default_lifetime_seconds: int = DEFAULT_TOKEN_LIFETIME_SECONDS

    def __init__(
        self,
        integration_id: str,
        environment: Environment,
        store: CredentialStore,
        single_flight: Optional[SingleFlight] = None,
        clock: Clock = utc_now,
        safety_margin_seconds: float = DEFAULT_SAFETY_MARGIN_SECONDS,
        default_lifetime_seconds: Optional[int] = None,
    ):
        self.integration_id = integration_id
        self.environment = environment
        self.store = store
        self.single_flight = single_flight or SingleFlight()
        self.clock = clock
        self.safety_margin_seconds = safety_margin_seconds
        if default_lifetime_seconds is not None:
            self.default_lifetime_seconds = default_lifetime_seconds
        self._credential: Optional[CachedCredential] = None
        self._state = CacheState.EMPTY
        self._loaded = False
        self._epoch = 0

    @property
    def credential(self) -> Optional[CachedCredential]:
        return self._credential

    @property
    def state(self) -> CacheState:
        return self._state

    async def load(self) -> Optional[CachedCredential]:
        """Read the persisted credential; one from another environment is discarded."""
        self._loaded = True
        stored = await self.store.load(self.integration_id)
        if stored is None:
            return None
        if stored.environment != self.environment:
            logger.warning(
                "%s: stored credential is for %s, running in %s; signing out",
                self.integration_id, stored.environment.value, self.environment.value,
            )
            await self.invalidate()
            return None
        self._credential = stored
        self._state = CacheState.VALID
        return stored

    async def get_valid_token(self) -> str:
        """Return a bearer token good for at least the safety margin, renewing if needed."""
        if not self._loaded:
            await self.load()
        credential = self._credential
        if (
            self._state is CacheState.VALID
            and credential is not None
            and not credential.expires_within(self.clock(), self.safety_margin_seconds)
        ):
            return credential.access_token
        renewed = await self.single_flight.run(self.integration_id, self._renew)
        return renewed.access_token

    async def invalidate(self) -> None:
        """Forget the credential here and in the store (sign-out)."""
        self._epoch += 1
        self._credential = None
        self._state = CacheState.EMPTY
        self._loaded = True
        await self.store.delete(self.integration_id)
        logger.info("%s: credential cleared", self.integration_id)

    @abstractmethod
    async def _renew(self) -> CachedCredential:
        """Obtain a fresh credential from the provider and accept it."""

    async def _accept(
        self,
        token: TokenResponse,
        epoch: int,
        previous_refresh_token: Optional[str] = None,
    ) -> CachedCredential:
        if epoch != self._epoch:
            logger.info("%s: signed out while the token request was running; dropping it", self.integration_id)
            raise NotAuthenticated(f"{self.integration_id}: signed out, authorization required")
        lifetime = token.expires_in or self.default_lifetime_seconds
        credential = CachedCredential(
            access_token=token.access_token,
            refresh_token=token.refresh_token or previous_refresh_token,
            expires_at=self.clock() + timedelta(seconds=lifetime),
            environment=self.environment,
        )
        await self.store.save(self.integration_id, credential)
        self._credential = credential
        self._state = CacheState.VALID
        self._loaded = True
        logger.info("%s: new access token, expires in %ds", self.integration_id, lifetime)
        return credential

    def _renewal_failed(self, exc: ResaleIntelligenceError) -> RefreshFailed:
        if self._credential is not None:
            self._state = CacheState.STALE
        logger.warning("%s: token renewal failed: %s", self.integration_id, exc)
        return RefreshFailed(self.integration_id, str(exc))


class AppCredentialCache(CredentialCache):
    """Application token from static client credentials; no refresh token."""

    def __init__(
        self,
        integration_id: str,
        environment: Environment,
        store: CredentialStore,
        oauth: OAuthClient,
        scope: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(integration_id, environment, store, **kwargs)
        self.oauth = oauth
        self.scope = scope

    async def _renew(self) -> CachedCredential:
        if not self.oauth.has_credentials:
            raise NotAuthenticated(f"{self.integration_id}: client credentials are not configured")
        epoch = self._epoch
        try:
            token = await self.oauth.client_credentials(self.scope)
        except ResaleIntelligenceError as exc:
            raise self._renewal_failed(exc) from exc
        return await self._accept(token, epoch)


class UserCredentialCache(CredentialCache):
    """User token from the authorization-code grant, renewed with its refresh token."""

    def __init__(
        self,
        integration_id: str,
        environment: Environment,
        store: CredentialStore,
        oauth: OAuthClient,
        authorize_url: str,
        redirect_uri: str,
        scope: str,
        authorize_params: Optional[dict[str, str]] = None,
        **kwargs,
    ):
        super().__init__(integration_id, environment, store, **kwargs)
        self.oauth = oauth
        self.authorize_url = authorize_url
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.authorize_params = authorize_params or {}

    def authorization_url(self, state: str) -> str:
        return oauth_client.authorization_url(
            self.authorize_url,
            self.oauth.client_id,
            self.redirect_uri,
            self.scope,
            state,
            **self.authorize_params,
        )

    async def exchange_code(self, code: str) -> CachedCredential:
        """Trade an authorization code for the first credential."""
        epoch = self._epoch
        token = await self.oauth.authorization_code(code, self.redirect_uri)
        return await self._accept(token, epoch)

    async def refresh(self) -> CachedCredential:
        """Renew with the refresh token now, even after an earlier failure."""
        if not self._loaded:
            await self.load()
        return await self.single_flight.run(self.integration_id, self._refresh)

    async def _renew(self) -> CachedCredential:
        if self._state is CacheState.STALE:
            raise NotAuthenticated(f"{self.integration_id}: refresh failed earlier, authorization required")
        return await self._refresh()

    async def _refresh(self) -> CachedCredential:
        current = self._credential
        if current is None or not current.refresh_token:
            raise NotAuthenticated(f"{self.integration_id}: no refresh token, authorization required")
        epoch = self._epoch
        try:
            token = await self.oauth.refresh(current.refresh_token)
        except ResaleIntelligenceError as exc:
            raise self._renewal_failed(exc) from exc
        return await self._accept(token, epoch, previous_refresh_token=current.refresh_token)
