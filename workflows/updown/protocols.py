"""
Collaborator protocols consumed by the trading core.

The core never talks HTTP itself; the agent is wired with objects that
satisfy these protocols (``rpoly.connectors.AsyncGatewayClient`` in
production, mocks in tests).
"""

from typing import Any, Protocol, runtime_checkable

from workflows.updown.models import (
    AuthoritativePosition,
    HistoricalFeeds,
    MarketSnapshot,
    OrderResult,
    Side,
)


@runtime_checkable
class MarketFeed(Protocol):
    async def get_snapshots(self) -> list[MarketSnapshot]: ...

    async def get_feeds(self, market_id: str) -> HistoricalFeeds: ...

    async def get_bankroll(self) -> float: ...


@runtime_checkable
class PositionSource(Protocol):
    async def get_positions(self) -> list[AuthoritativePosition]: ...


@runtime_checkable
class OrderGateway(Protocol):
    async def buy(self, market_id: str, side: Side, amount_usd: float) -> OrderResult: ...

    async def sell(self, market_id: str, side: Side, size: float) -> OrderResult: ...

    async def sell_token(self, token_id: str, size: float) -> OrderResult: ...


@runtime_checkable
class StateStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, data: Any) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, text: str) -> None: ...


class NullNotifier:
    """Notifier that drops every message."""

    async def notify(self, text: str) -> None:
        return None
