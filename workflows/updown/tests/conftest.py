"""
Shared pytest fixtures for the Up/Down workflow test suite.

Provides:
  - T0: fixed wall-clock timestamp (08:53 UTC) used by every factory
  - FakeClock: manually advanced clock for hold-time tests
  - make_snapshot: MarketSnapshot factory that passes every market-quality gate
  - make_trade: TradeRecord factory
  - make_position: Position factory
  - seed_trades: folds N synthetic trades into a MemoryStore
"""

import pytest

from workflows.updown.memory import MemoryStore
from workflows.updown.models import (
    MarketSnapshot,
    OrderBookTop,
    Position,
    TradeRecord,
)

T0 = 1_760_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def _make_snapshot(**overrides) -> MarketSnapshot:
    data = {
        "market_id": "m1",
        "asset": "BTC",
        "up_price": 0.45,
        "down_price": 0.55,
        "reference_price": 100_000.0,
        "live_price": 100_000.0,
        "volume": 500.0,
        "liquidity": 1_000.0,
        "up_book": OrderBookTop(best_bid=0.44, best_ask=0.45, bid_depth=100.0, ask_depth=100.0),
        "down_book": OrderBookTop(best_bid=0.54, best_ask=0.55, bid_depth=100.0, ask_depth=100.0),
        "time_left_sec": 180.0,
        "window_sec": 300,
        "timestamp": T0,
    }
    data.update(overrides)
    return MarketSnapshot(**data)


def _make_trade(**overrides) -> TradeRecord:
    won = overrides.pop("won", True)
    data = {
        "market_id": "m0",
        "asset": "BTC",
        "won": won,
        "pnl": 0.5 if won else -0.5,
        "side": "YES",
        "size": 2.0,
        "entry_price": 0.45,
        "exit_price": 0.7 if won else 0.2,
        "confidence": 0.55,
        "strategies": ["momentum"],
        "regime": "ranging",
        "exit_type": "take-profit" if won else "stop-loss",
        "opened_at": T0 - 300,
        "closed_at": T0 - 60,
        "time_left_at_entry": 150.0,
    }
    data.update(overrides)
    return TradeRecord(**data)


def _make_position(**overrides) -> Position:
    data = {
        "market_id": "m1",
        "side": "YES",
        "size": 2.0,
        "entry_price": 0.50,
        "asset": "BTC",
        "opened_at": T0,
        "confidence": 0.6,
        "strategies": ["momentum"],
    }
    data.update(overrides)
    return Position(**data)


@pytest.fixture
def make_snapshot():
    return _make_snapshot


@pytest.fixture
def make_trade():
    return _make_trade


@pytest.fixture
def make_position():
    return _make_position


@pytest.fixture
def seed_trades():
    """Record ``wins`` winning then ``losses`` losing trades, or losses first with ``losses_first``."""

    def _seed(memory: MemoryStore, *, wins: int = 0, losses: int = 0, losses_first: bool = True, **overrides):
        outcomes = [False] * losses + [True] * wins if losses_first else [True] * wins + [False] * losses
        for won in outcomes:
            memory.record(_make_trade(won=won, **overrides))

    return _seed
