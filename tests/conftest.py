"""Shared test fixtures for Resale Intelligence."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure src is importable
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from resale_intelligence.core import parsers
from resale_intelligence.core.errors import InsufficientBudget


class FakeLedger:
    """In-memory ledger that records every call."""

    def __init__(self, balance: int = 10):
        self.balance = balance
        self.debits: list[int] = []
        self.checks: list[int] = []

    async def can_afford(self, cost: int) -> bool:
        self.checks.append(cost)
        return self.balance >= cost

    async def debit(self, cost: int) -> int:
        if self.balance < cost:
            raise InsufficientBudget(cost)
        self.debits.append(cost)
        self.balance -= cost
        return self.balance


class FakeCaller:
    """Remote caller returning a canned response (or raising a canned error)."""

    def __init__(self, response=None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    async def invoke(self, function_name: str, body: dict) -> dict:
        self.calls.append((function_name, body))
        if self.error is not None:
            raise self.error
        return self.response


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def envelope(content: str) -> dict:
    """Wrap content in a chat-completion envelope."""
    return {"choices": [{"message": {"content": content}}]}


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_parse_stats():
    parsers.default_stats.reset()
    yield
    parsers.default_stats.reset()
