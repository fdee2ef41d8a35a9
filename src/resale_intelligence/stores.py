"""SQLite-backed credential store and credit ledger.

These are the default implementations of the ``CredentialStore`` and
``CreditLedger`` contracts used by the server. Tests and embedders can
swap in any other object with the same methods.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .core.errors import InsufficientBudget
from .core.models import CachedCredential, Environment
from .db import get_session_factory
from .sqlmodels import CreditAccount, StoredCredential

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SqlCredentialStore:
    """Credentials table, one row per integration id."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def load(self, integration_id: str) -> Optional[CachedCredential]:
        async with self.session_factory() as session:
            row = await session.get(StoredCredential, integration_id)
            if row is None:
                return None
            return CachedCredential(
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=row.expires_at.replace(tzinfo=timezone.utc),
                environment=Environment(row.environment),
            )

    async def save(self, integration_id: str, credential: CachedCredential) -> None:
        async with self.session_factory() as session:
            await session.merge(StoredCredential(
                integration_id=integration_id,
                access_token=credential.access_token,
                refresh_token=credential.refresh_token,
                expires_at=_to_naive_utc(credential.expires_at),
                environment=credential.environment.value,
                updated_at=_utcnow(),
            ))
            await session.commit()
        logger.debug("Saved %s credential (%s)", integration_id, credential.environment.value)

    async def delete(self, integration_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(StoredCredential).where(StoredCredential.integration_id == integration_id)
            )
            await session.commit()


class SqlCreditLedger:
    """Credit balance in SQLite.

    ``debit`` is a single conditional UPDATE, so two calls racing past
    ``can_afford`` cannot take the balance below zero; the loser gets
    ``InsufficientBudget``.
    """

    def __init__(
        self,
        account_id: str = DEFAULT_ACCOUNT_ID,
        starting_balance: int = 0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.account_id = account_id
        self.starting_balance = starting_balance
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _ensure_account(self, session: AsyncSession) -> CreditAccount:
        account = await session.get(CreditAccount, self.account_id)
        if account is None:
            account = CreditAccount(
                account_id=self.account_id,
                balance=self.starting_balance,
                updated_at=_utcnow(),
            )
            session.add(account)
            await session.commit()
            logger.info("Opened credit account %s with %d credits", self.account_id, self.starting_balance)
        return account

    async def balance(self) -> int:
        async with self.session_factory() as session:
            account = await self._ensure_account(session)
            return account.balance

    async def can_afford(self, cost: int) -> bool:
        return await self.balance() >= cost

    async def debit(self, cost: int) -> int:
        async with self.session_factory() as session:
            await self._ensure_account(session)
            result = await session.execute(
                update(CreditAccount)
                .where(CreditAccount.account_id == self.account_id, CreditAccount.balance >= cost)
                .values(balance=CreditAccount.balance - cost, updated_at=_utcnow())
            )
            if result.rowcount == 0:
                await session.rollback()
                raise InsufficientBudget(cost)
            remaining = await session.scalar(
                select(CreditAccount.balance).where(CreditAccount.account_id == self.account_id)
            )
            await session.commit()
        return remaining

    async def grant(self, credits: int) -> int:
        """Add purchased credits and return the new balance."""
        if credits < 0:
            raise ValueError("credits must be non-negative")
        async with self.session_factory() as session:
            await self._ensure_account(session)
            await session.execute(
                update(CreditAccount)
                .where(CreditAccount.account_id == self.account_id)
                .values(balance=CreditAccount.balance + credits, updated_at=_utcnow())
            )
            remaining = await session.scalar(
                select(CreditAccount.balance).where(CreditAccount.account_id == self.account_id)
            )
            await session.commit()
        logger.info("Granted %d credits to %s, balance %d", credits, self.account_id, remaining)
        return remaining
