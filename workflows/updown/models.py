"""
Pydantic models for the Up/Down trading workflow.

Defines the data exchanged between the components of the trading core:

    MarketSnapshot + HistoricalFeeds → SignalEngine → Signal
    Signal[] + Memory                → DecisionCore → Decision
    confirmed fill                   → Position     (owned by ExitManager)
    confirmed exit                   → TradeRecord  (append-only)

Side convention: "YES" means the tracked asset is favoured to settle above
the reference price, "NO" below it.
"""

import time
import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Side = Literal["YES", "NO"]
ExitType = Literal["take-profit", "stop-loss", "pre-close", "resolution"]
Regime = Literal["trending", "ranging", "volatile", "unknown"]

SIDE_ALIASES = {
    "yes": "YES",
    "up": "YES",
    "no": "NO",
    "down": "NO",
}


def normalize_side(raw: str) -> Side:
    """Map exchange outcome labels (Up/Down/Yes/No) onto YES/NO."""
    side = SIDE_ALIASES.get(str(raw).strip().lower())
    if side is None:
        raise ValueError(f"Unknown outcome side: {raw!r}")
    return side


def opposite(side: Side) -> Side:
    return "NO" if side == "YES" else "YES"


# ── Market Data ──────────────────────────────────────────────────────


class OrderBookTop(BaseModel):
    """Top of one outcome token's order book."""

    model_config = ConfigDict(frozen=True)

    best_bid: float | None = Field(default=None, description="Best bid price (0-1)")
    best_ask: float | None = Field(default=None, description="Best ask price (0-1)")
    bid_depth: float = Field(default=0.0, description="USD notional resting near the bid")
    ask_depth: float = Field(default=0.0, description="USD notional resting near the ask")

    @property
    def spread_pct(self) -> float | None:
        """Relative spread ``(ask - bid) / ask``, None without both quotes."""
        if not self.best_bid or not self.best_ask:
            return None
        return (self.best_ask - self.best_bid) / self.best_ask

    @property
    def depth(self) -> float:
        return min(self.bid_depth, self.ask_depth)


class MarketSnapshot(BaseModel):
    """One poll of a binary up/down market. Immutable."""

    model_config = ConfigDict(frozen=True)

    market_id: str = Field(description="Condition id of the market window")
    asset: str = Field(default="BTC", description="Tracked asset symbol")
    up_price: float = Field(description="Quoted probability of YES (0-1)")
    down_price: float = Field(description="Quoted probability of NO (0-1)")
    reference_price: float | None = Field(
        default=None, description="Asset price at window open (price to beat)"
    )
    live_price: float | None = Field(default=None, description="Current asset price")
    volume: float = Field(default=0.0, description="Traded USD volume in the window")
    liquidity: float = Field(default=0.0, description="USD liquidity on the book")
    up_book: OrderBookTop | None = None
    down_book: OrderBookTop | None = None
    time_left_sec: float = Field(description="Seconds until the window closes")
    window_sec: int = Field(default=300, description="Window length (300=5m, 900=15m)")
    timestamp: float = Field(default_factory=time.time)
    settled_outcome: Side | None = Field(
        default=None, description="Winning side once the market has resolved"
    )

    @property
    def window_label(self) -> str:
        return f"{max(1, round(self.window_sec / 60))}m"

    @property
    def elapsed_fraction(self) -> float:
        """Fraction of the window already elapsed (0-1)."""
        if self.window_sec <= 0:
            return 1.0
        elapsed = self.window_sec - self.time_left_sec
        return min(1.0, max(0.0, elapsed / self.window_sec))

    @property
    def deviation_pct(self) -> float | None:
        """Signed relative distance of the live price from the reference."""
        if not self.reference_price or not self.live_price:
            return None
        return (self.live_price - self.reference_price) / self.reference_price

    def quoted(self, side: Side) -> float:
        return self.up_price if side == "YES" else self.down_price

    def book(self, side: Side) -> OrderBookTop | None:
        return self.up_book if side == "YES" else self.down_book

    def best_bid(self, side: Side) -> float | None:
        book = self.book(side)
        return book.best_bid if book and book.best_bid else None

    def entry_price(self, side: Side) -> float:
        """Price we would pay to buy ``side`` — best ask, else the quote."""
        book = self.book(side)
        if book and book.best_ask:
            return book.best_ask
        return self.quoted(side)

    def exit_price(self, side: Side) -> float | None:
        """Price we would receive selling ``side`` — best bid, else the quote."""
        bid = self.best_bid(side)
        if bid:
            return bid
        quoted = self.quoted(side)
        return quoted if quoted > 0 else None


class OddsPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float
    up_price: float


class PricePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float
    price: float


class HolderPosition(BaseModel):
    """A large holder's position in one outcome of the market."""

    model_config = ConfigDict(frozen=True)

    side: Side
    notional: float = Field(description="USD value of the holding")
    address: str = ""


class TradeFlowEntry(BaseModel):
    """One recent fill on the market's public trade tape."""

    model_config = ConfigDict(frozen=True)

    side: Side
    action: Literal["BUY", "SELL"]
    notional: float
    timestamp: float = 0.0


class HistoricalFeeds(BaseModel):
    """Optional auxiliary feeds consumed by some signals."""

    odds_history: list[OddsPoint] = Field(default_factory=list)
    price_history: list[PricePoint] = Field(default_factory=list)
    holders: list[HolderPosition] = Field(default_factory=list)
    trade_flow: list[TradeFlowEntry] = Field(default_factory=list)


# ── Decision ─────────────────────────────────────────────────────────


class Signal(BaseModel):
    """One directional opinion emitted by a SignalEngine function."""

    model_config = ConfigDict(frozen=True)

    strategy: str
    side: Side
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""


class Decision(BaseModel):
    """Result of a single ``analyze`` call."""

    action: Literal["BUY", "SKIP"]
    side: Side | None = None
    stake: float = 0.0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    entry_price: float | None = None
    signals: list[Signal] = Field(default_factory=list)
    regime: Regime = "unknown"
    stage: str = ""
    agreement: float = 0.0
    kelly_fraction: float = 0.0
    reasons: list[str] = Field(default_factory=list)

    @property
    def reason(self) -> str:
        """The last (deciding) entry of the reason trace."""
        return self.reasons[-1] if self.reasons else ""

    @property
    def strategies(self) -> list[str]:
        return [s.strategy for s in self.signals if s.side == self.side]


# ── Positions & Execution ────────────────────────────────────────────


class EntryContext(BaseModel):
    """Market context captured at entry, carried into the TradeRecord."""

    time_left_sec: float | None = None
    window_sec: int = 300
    spread_pct: float | None = None
    live_price: float | None = None
    reference_price: float | None = None
    regime: Regime = "unknown"


class Position(BaseModel):
    """An open holding tracked by the ExitManager."""

    market_id: str
    side: Side
    size: float = Field(gt=0, description="Outcome tokens held")
    entry_price: float = Field(gt=0, lt=1)
    asset: str = "BTC"
    opened_at: float = Field(default_factory=time.time)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    strategies: list[str] = Field(default_factory=list)
    context: EntryContext = Field(default_factory=EntryContext)
    token_id: str = ""

    @property
    def stake(self) -> float:
        return self.size * self.entry_price


class BidSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float
    timestamp: float


class AuthoritativePosition(BaseModel):
    """Position as reported by the exchange — the source of truth."""

    market_id: str
    side: Side
    size: float
    avg_price: float = 0.0
    cur_price: float | None = None
    token_id: str = ""
    title: str = ""

    @property
    def is_live(self) -> bool:
        """Still sellable: resolved tokens sit at exactly 0 or 1."""
        return self.cur_price is not None and 0.0 < self.cur_price < 1.0


class OrderResult(BaseModel):
    """Outcome of one order-submission call."""

    success: bool
    status: Literal["matched", "resting", "failed"] = "failed"
    fill_price: float | None = None
    size: float | None = None
    order_id: str = ""
    error: str = ""

    @property
    def filled(self) -> bool:
        return self.success and self.status == "matched"


# ── Outcomes ─────────────────────────────────────────────────────────


def _trade_id() -> str:
    return uuid.uuid4().hex


class TradeRecord(BaseModel):
    """Immutable record of one completed trade."""

    model_config = ConfigDict(frozen=True)

    trade_id: str = Field(default_factory=_trade_id)
    market_id: str
    asset: str = "BTC"
    won: bool
    pnl: float
    side: Side
    size: float
    entry_price: float
    exit_price: float
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    strategies: list[str] = Field(default_factory=list)
    regime: Regime = "unknown"
    exit_type: ExitType = "resolution"
    opened_at: float
    closed_at: float = Field(default_factory=time.time)
    time_left_at_entry: float | None = None
    spread_at_entry: float | None = None
    live_price_at_entry: float | None = None
    reference_price_at_entry: float | None = None

    @property
    def stake(self) -> float:
        return self.size * self.entry_price

    @classmethod
    def from_position(
        cls,
        position: Position,
        *,
        exit_price: float,
        exit_type: ExitType,
        closed_at: float | None = None,
    ) -> "TradeRecord":
        pnl = (exit_price - position.entry_price) * position.size
        ctx = position.context
        return cls(
            market_id=position.market_id,
            asset=position.asset,
            won=pnl > 0,
            pnl=round(pnl, 6),
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
            exit_price=exit_price,
            confidence=position.confidence,
            strategies=list(position.strategies),
            regime=ctx.regime,
            exit_type=exit_type,
            opened_at=position.opened_at,
            closed_at=closed_at if closed_at is not None else time.time(),
            time_left_at_entry=ctx.time_left_sec,
            spread_at_entry=ctx.spread_pct,
            live_price_at_entry=ctx.live_price,
            reference_price_at_entry=ctx.reference_price,
        )
