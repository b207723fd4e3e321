"""
Memory — durable performance aggregate the DecisionCore learns from.

Updated exactly once per completed trade (duplicate trade ids are ignored):

    totals + streaks        → tilt, evolution stage
    strategies[name]        → per-strategy confidence reweighting
    hourly["HH"]            → time-of-day adjustment
    confidence_buckets["x"] → calibration of nominal vs. empirical hit rate
    price_buckets["x"]      → entry-price sanity check
    daily_pnl["YYYY-MM-DD"] → daily drawdown breaker

Counts only ever grow. Persistence: one JSON document via
WorkflowStateService (atomic replace).
"""

import math
import time
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, Field

from workflows.updown.models import TradeRecord
from workflows.updown.protocols import StateStore

logger = structlog.get_logger(__name__)

_STATE_KEY = "memory"
_MAX_RECORDED_IDS = 500
_MAX_DAILY_ENTRIES = 30


def bucket_key(value: float, width: float = 0.1) -> str:
    """Lower bound of the ``width``-wide bucket containing ``value`` in [0, 1]."""
    value = min(max(value, 0.0), 1.0)
    index = min(math.floor(value / width + 1e-9), int(round(1 / width)) - 1)
    return f"{index * width:.1f}"


def utc_day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def utc_hour(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%H")


class StrategyScore(BaseModel):
    wins: int = 0
    losses: int = 0
    cumulative_pnl: float = 0.0
    last_used_at: float = 0.0

    @property
    def total(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        return self.wins / self.total if self.total else 0.0


class OutcomeBucket(BaseModel):
    wins: int = 0
    losses: int = 0
    pnl: float = 0.0

    @property
    def total(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        return self.wins / self.total if self.total else 0.0


class ConfidenceBucket(BaseModel):
    correct: int = 0
    total: int = 0

    @property
    def hit_rate(self) -> float:
        return self.correct / self.total if self.total else 0.0


class MemoryState(BaseModel):
    """Persistent aggregate — the whole document stored under ``memory``."""

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    current_streak: int = 0  # +N wins in a row, -N losses in a row
    best_streak: int = 0
    worst_streak: int = 0
    consecutive_losses: int = 0
    daily_pnl: dict[str, float] = Field(default_factory=dict)
    strategies: dict[str, StrategyScore] = Field(default_factory=dict)
    hourly: dict[str, OutcomeBucket] = Field(default_factory=dict)
    confidence_buckets: dict[str, ConfidenceBucket] = Field(default_factory=dict)
    price_buckets: dict[str, OutcomeBucket] = Field(default_factory=dict)
    recorded_ids: list[str] = Field(default_factory=list)
    last_updated: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.wins / self.total_trades if self.total_trades else 0.0


class MemoryStore:
    """In-memory view of MemoryState with load/save through the state service."""

    def __init__(
        self,
        state_service: StateStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._service = state_service
        self._clock = clock
        self._state = MemoryState()

    @property
    def state(self) -> MemoryState:
        return self._state

    # ── Persistence ───────────────────────────────────────────────

    async def load(self) -> None:
        """Load memory. A corrupt document raises PersistenceError."""
        if self._service is None:
            return
        data = await self._service.get(_STATE_KEY)
        self._state = MemoryState(**data) if data else MemoryState()
        logger.info(
            "memory_loaded",
            total_trades=self._state.total_trades,
            win_rate=round(self._state.win_rate, 3),
            strategies=len(self._state.strategies),
        )

    async def save(self) -> None:
        if self._service is None:
            return
        await self._service.put(_STATE_KEY, self._state.model_dump(mode="json"))

    # ── Update ────────────────────────────────────────────────────

    def record(self, trade: TradeRecord) -> bool:
        """Fold one completed trade into every aggregate.

        Returns:
            False if this trade id was already recorded (no-op).
        """
        s = self._state
        if trade.trade_id in s.recorded_ids:
            logger.warning("memory_duplicate_trade", trade_id=trade.trade_id)
            return False

        s.total_trades += 1
        s.total_pnl = round(s.total_pnl + trade.pnl, 6)
        if trade.won:
            s.wins += 1
            s.consecutive_losses = 0
            s.current_streak = s.current_streak + 1 if s.current_streak > 0 else 1
        else:
            s.losses += 1
            s.consecutive_losses += 1
            s.current_streak = s.current_streak - 1 if s.current_streak < 0 else -1
        s.best_streak = max(s.best_streak, s.current_streak)
        s.worst_streak = min(s.worst_streak, s.current_streak)

        day = utc_day(trade.closed_at)
        s.daily_pnl[day] = round(s.daily_pnl.get(day, 0.0) + trade.pnl, 6)
        if len(s.daily_pnl) > _MAX_DAILY_ENTRIES:
            for old in sorted(s.daily_pnl)[:-_MAX_DAILY_ENTRIES]:
                del s.daily_pnl[old]

        for name in dict.fromkeys(trade.strategies):
            score = s.strategies.setdefault(name, StrategyScore())
            if trade.won:
                score.wins += 1
            else:
                score.losses += 1
            score.cumulative_pnl = round(score.cumulative_pnl + trade.pnl, 6)
            score.last_used_at = trade.closed_at

        hour = s.hourly.setdefault(utc_hour(trade.opened_at), OutcomeBucket())
        self._add_outcome(hour, trade)

        bucket = s.confidence_buckets.setdefault(bucket_key(trade.confidence), ConfidenceBucket())
        bucket.total += 1
        if trade.won:
            bucket.correct += 1

        price = s.price_buckets.setdefault(bucket_key(trade.entry_price), OutcomeBucket())
        self._add_outcome(price, trade)

        s.recorded_ids.append(trade.trade_id)
        s.recorded_ids = s.recorded_ids[-_MAX_RECORDED_IDS:]
        s.last_updated = self._clock()

        logger.info(
            "memory_trade_recorded",
            trade_id=trade.trade_id,
            won=trade.won,
            pnl=round(trade.pnl, 4),
            strategies=trade.strategies,
            total_trades=s.total_trades,
            streak=s.current_streak,
        )
        return True

    @staticmethod
    def _add_outcome(bucket: OutcomeBucket, trade: TradeRecord) -> None:
        if trade.won:
            bucket.wins += 1
        else:
            bucket.losses += 1
        bucket.pnl = round(bucket.pnl + trade.pnl, 6)

    # ── Queries ───────────────────────────────────────────────────

    def strategy_weight(self, name: str, min_samples: int = 5) -> float:
        """Confidence multiplier for a strategy, 0.5x–1.5x.

        Returns 1.0 until the strategy has ``min_samples`` trades; then
        ``0.5 + win_rate`` (50% → 1.0x, 70% → 1.2x, 30% → 0.8x).
        """
        score = self._state.strategies.get(name)
        if score is None or score.total < min_samples:
            return 1.0
        return round(0.5 + score.win_rate, 4)

    def hourly_win_rate(self, hour: str, min_samples: int = 5) -> float | None:
        bucket = self._state.hourly.get(hour)
        if bucket is None or bucket.total < min_samples:
            return None
        return bucket.win_rate

    def confidence_bucket(self, confidence: float) -> tuple[str, ConfidenceBucket | None]:
        key = bucket_key(confidence)
        return key, self._state.confidence_buckets.get(key)

    def price_bucket(self, price: float) -> tuple[str, OutcomeBucket | None]:
        key = bucket_key(price)
        return key, self._state.price_buckets.get(key)

    def today_pnl(self, now: float | None = None) -> float:
        return self._state.daily_pnl.get(utc_day(self._clock() if now is None else now), 0.0)

    def summary(self) -> dict:
        """Compact snapshot for status reports."""
        s = self._state
        ranked = sorted(
            ((name, sc) for name, sc in s.strategies.items() if sc.total > 0),
            key=lambda item: item[1].win_rate,
            reverse=True,
        )
        return {
            "total_trades": s.total_trades,
            "wins": s.wins,
            "losses": s.losses,
            "win_rate": round(s.win_rate, 4),
            "total_pnl": round(s.total_pnl, 4),
            "current_streak": s.current_streak,
            "best_streak": s.best_streak,
            "worst_streak": s.worst_streak,
            "consecutive_losses": s.consecutive_losses,
            "today_pnl": round(self.today_pnl(), 4),
            "strategies": {
                name: {
                    "wins": sc.wins,
                    "losses": sc.losses,
                    "win_rate": round(sc.win_rate, 3),
                    "pnl": round(sc.cumulative_pnl, 4),
                }
                for name, sc in ranked
            },
        }
