"""Pytest configuration and fixtures."""

from typing import List

import pytest

from ratehistory.builder import HistoryBuilder
from ratehistory.store import CurrentRatesStore, HistoryStore


@pytest.fixture
def history_store(tmp_path) -> HistoryStore:
    return HistoryStore(tmp_path / "rates" / "history")


@pytest.fixture
def current_store(tmp_path) -> CurrentRatesStore:
    return CurrentRatesStore(tmp_path / "rates")


@pytest.fixture
def builder(history_store, current_store) -> HistoryBuilder:
    return HistoryBuilder(history_store, current_store)


@pytest.fixture
def sleeps(monkeypatch) -> List[float]:
    """Record backoff sleeps instead of waiting."""
    recorded: List[float] = []

    async def fake_sleep(delay, *args, **kwargs):
        recorded.append(delay)

    monkeypatch.setattr("ratehistory.wayback.asyncio.sleep", fake_sleep)
    return recorded
