"""Debounced, self-superseding product search.

Every ``search()`` call takes a new generation number and cancels the pending
one. A result is applied only while its generation is still the latest, so a
slow response to an old query can never overwrite a newer one, whatever order
the responses arrive in. The remote call is issued only after the debounce
delay, so a query superseded while waiting never reaches the network.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DEBOUNCE_SECONDS = 0.3


class SearchCoordinator(Generic[T]):
    """Runs one logical search stream over ``search_fn``."""

    def __init__(
        self,
        search_fn: Callable[[str], Awaitable[list[T]]],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self._search_fn = search_fn
        self.debounce_seconds = debounce_seconds
        self._generation = 0
        self._pending: Optional[asyncio.Task] = None
        self.results: list[T] = []
        self.query = ""
        self.last_error: Optional[BaseException] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_searching(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def search(self, query: str) -> Optional[list[T]]:
        """Search for ``query``, superseding any earlier call.

        Returns:
            The results, ``[]`` for a blank query, or ``None`` if a newer
            call superseded this one.

        Raises:
            Whatever ``search_fn`` raised, if this is still the latest call.
        """
        generation = self._advance()
        query = query.strip()
        if not query:
            self._apply("", [])
            return []

        task = asyncio.ensure_future(self._debounced(query, generation))
        self._pending = task
        try:
            await asyncio.wait([task])
        except asyncio.CancelledError:
            if self._pending is task:
                task.cancel()
                self._pending = None
            raise

        if generation != self._generation:
            if not task.cancelled():
                task.exception()
            logger.debug("Discarding superseded search %r (generation %d)", query, generation)
            return None

        self._pending = None
        error = task.exception()
        if error is not None:
            self.last_error = error
            raise error
        results = task.result()
        self._apply(query, results)
        return results

    def clear(self) -> None:
        """Cancel the pending search and drop the current results."""
        self._advance()
        self._apply("", [])

    def _advance(self) -> int:
        self._generation += 1
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        return self._generation

    def _apply(self, query: str, results: list[T]) -> None:
        self.query = query
        self.results = results
        self.last_error = None

    async def _debounced(self, query: str, generation: int) -> list[T]:
        await asyncio.sleep(self.debounce_seconds)
        logger.debug("Searching %r (generation %d)", query, generation)
        return await self._search_fn(query)
