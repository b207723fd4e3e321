"""
Risk primitives for the Up/Down trading core.

Pure functions, no state — the DecisionCore feeds them Memory counters:
- Fractional Kelly position sizing
- Tilt level and confidence penalty from consecutive losses
- Daily drawdown circuit breaker
- Market regime classification
"""

import math
import statistics
from dataclasses import dataclass

import structlog

from rpoly.errors import InsufficientEdgeError
from workflows.updown.evolution import EvolutionStage
from workflows.updown.models import HistoricalFeeds, MarketSnapshot, Regime
from workflows.updown.params import DecisionConfig

logger = structlog.get_logger(__name__)


# ── Kelly Position Sizing ─────────────────────────────────────────


@dataclass(frozen=True)
class KellySizing:
    """Breakdown of one Kelly sizing computation."""

    payout_ratio: float
    full_kelly: float
    fractional_kelly: float
    raw_stake: float
    cap: float
    stake: float


def kelly_fraction(p: float, entry_price: float) -> float:
    """Full Kelly fraction for a binary token bought at ``entry_price``.

    Kelly Formula:
        b  = net_payout_ratio = (1 - entry_price) / entry_price
        f* = (p*b - (1-p)) / b

    Raises:
        InsufficientEdgeError: If there is no positive edge (f* <= 0) or
            the entry price is outside (0, 1).
    """
    if entry_price <= 0 or entry_price >= 1:
        raise InsufficientEdgeError(
            f"Entry price {entry_price} outside (0, 1)", kelly_fraction=0.0
        )

    b = (1.0 - entry_price) / entry_price
    full = (p * b - (1.0 - p)) / b
    if full <= 0:
        raise InsufficientEdgeError(
            f"No edge: Kelly {full:.4f} at p={p:.3f}, entry={entry_price:.3f}",
            kelly_fraction=full,
        )
    return full


def _floor_cents(value: float) -> float:
    return math.floor(value * 100 + 1e-9) / 100


def kelly_stake(
    p: float,
    entry_price: float,
    bankroll: float,
    stage: EvolutionStage,
    *,
    min_stake: float = 1.0,
    max_bankroll_fraction: float = 0.10,
) -> KellySizing:
    """Compute the fractional Kelly stake in USD.

    stake = bankroll × f* × stage.kelly_fraction, clamped to
    [min_stake, min(stage.max_stake, max_bankroll_fraction × bankroll)].

    A stake of 0.0 means the cap itself is below the minimum unit (bankroll
    too small to trade within the risk budget).

    Raises:
        InsufficientEdgeError: Propagated from ``kelly_fraction``.
    """
    full = kelly_fraction(p, entry_price)
    b = (1.0 - entry_price) / entry_price
    fractional = full * stage.kelly_fraction
    raw = bankroll * fractional
    cap = min(stage.max_stake, max_bankroll_fraction * bankroll)

    if cap < min_stake:
        stake = 0.0
    else:
        stake = _floor_cents(min(max(raw, min_stake), cap))

    logger.debug(
        "kelly_size_computed",
        p=round(p, 4),
        entry_price=round(entry_price, 4),
        b=round(b, 4),
        full_kelly=round(full, 4),
        fractional_kelly=round(fractional, 4),
        bankroll=round(bankroll, 2),
        raw_stake=round(raw, 2),
        cap=round(cap, 2),
        stake=stake,
        stage=stage.name,
    )

    return KellySizing(
        payout_ratio=b,
        full_kelly=full,
        fractional_kelly=fractional,
        raw_stake=raw,
        cap=cap,
        stake=stake,
    )


# ── Tilt ──────────────────────────────────────────────────────────


def tilt_level(consecutive_losses: int, max_tilt: int = 5) -> int:
    return max(0, min(consecutive_losses, max_tilt))


def tilt_penalty(level: int, per_level: float = 0.06) -> float:
    """Multiplicative confidence penalty for a tilt level (1.0 = none)."""
    return max(0.0, 1.0 - level * per_level)


# ── Daily Drawdown ────────────────────────────────────────────────


def daily_loss_exceeded(today_pnl: float, bankroll: float, max_fraction: float) -> bool:
    """True once today's realized loss exceeds ``max_fraction`` of bankroll."""
    if today_pnl >= 0:
        return False
    return -today_pnl > max_fraction * bankroll


# ── Regime ────────────────────────────────────────────────────────


def classify_regime(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds,
    config: DecisionConfig,
) -> Regime:
    """Classify the market as trending, ranging or volatile.

    Uses the live price's distance from the reference price and the
    standard deviation of recent quoted YES odds.
    """
    deviation = abs(snapshot.deviation_pct or 0.0)
    odds = [p.up_price for p in feeds.odds_history]
    odds_stdev = statistics.pstdev(odds) if len(odds) >= 2 else 0.0

    if deviation >= config.volatile_deviation_pct or odds_stdev >= config.volatile_odds_stdev:
        return "volatile"
    if deviation >= config.trending_deviation_pct:
        return "trending"
    return "ranging"
