"""SQLAlchemy models for local SQLite storage.

Holds the cached OAuth credentials (one row per integration) and the credit
account balance. Analysis results are never stored; they belong to the caller.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StoredCredential(Base):
    """Persisted bearer credential for one integration."""

    __tablename__ = "credentials"

    integration_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Naive UTC; SQLite has no timezone type.
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    environment: Mapped[str] = mapped_column(String(20), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class CreditAccount(Base):
    """Credit balance for one account. The default install has a single account."""

    __tablename__ = "credit_accounts"

    account_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
