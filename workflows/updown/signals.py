"""
SignalEngine — pure, stateless directional signal functions.

Each function inspects a MarketSnapshot (plus optional HistoricalFeeds) and
returns a single Signal or None. A signal that does not fire returns None —
never an opinion with zero strength.

Signals:
    crowd_fade      — contrarian fade of a one-sided crowd (> 62%)
    momentum        — live price vs. reference price, time-weighted
    whale_follow    — top-holder notional dominance
    odds_shift      — momentum in the quoted odds themselves
    mean_reversion  — fade an exhausted, already-priced move
    volume_spike    — follow buy-dominant order flow
    trend_confirm   — least-squares trend of live price samples vs. reference

Confidences are summed per side by the DecisionCore; nothing here fuses.
"""

from collections.abc import Callable

import structlog

from workflows.updown.models import (
    HistoricalFeeds,
    MarketSnapshot,
    Side,
    Signal,
    opposite,
)
from workflows.updown.params import (
    CrowdFadeParams,
    MeanReversionParams,
    MomentumParams,
    OddsShiftParams,
    SignalParams,
    TrendConfirmParams,
    VolumeSpikeParams,
    WhaleFollowParams,
)

logger = structlog.get_logger(__name__)


def _scale(strength: float, low: float, high: float) -> float:
    """Map a 0-1 strength linearly onto [low, high]."""
    strength = min(1.0, max(0.0, strength))
    return round(low + strength * (high - low), 4)


def _clamp(value: float, low: float, high: float) -> float:
    return round(min(high, max(low, value)), 4)


# ── Signal: Crowd Fade ──────────────────────────────────────────────


def crowd_fade(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds,
    params: CrowdFadeParams,
) -> Signal | None:
    """Fade the crowd when one side's quoted probability is extreme."""
    for crowd_side in ("YES", "NO"):
        prob = snapshot.quoted(crowd_side)
        if prob > params.threshold:
            strength = (prob - params.threshold) / (1.0 - params.threshold)
            side = opposite(crowd_side)
            return Signal(
                strategy="crowd_fade",
                side=side,
                confidence=_scale(strength, params.min_confidence, params.max_confidence),
                reason=f"Crowd {prob:.0%} on {crowd_side} — fading to {side}",
            )
    return None


# ── Signal: Momentum ────────────────────────────────────────────────


def momentum(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds,
    params: MomentumParams,
) -> Signal | None:
    """Follow the live price's distance from the reference price.

    Confidence grows with the size of the move and with how much of the
    window has elapsed (a late move has less time to reverse). Discounted
    when the quoted odds lean the other way.
    """
    dev = snapshot.deviation_pct
    if dev is None or abs(dev) <= params.noise_floor_pct:
        return None

    side: Side = "YES" if dev > 0 else "NO"
    span = max(params.full_strength_pct - params.noise_floor_pct, 1e-9)
    strength = min(1.0, (abs(dev) - params.noise_floor_pct) / span)
    time_weight = params.min_time_weight + (1.0 - params.min_time_weight) * snapshot.elapsed_fraction
    confidence = params.min_confidence + (params.max_confidence - params.min_confidence) * strength * time_weight
    confidence = _clamp(confidence, params.min_confidence, params.max_confidence)

    reason = f"{snapshot.asset} {dev:+.3%} vs reference ({snapshot.elapsed_fraction:.0%} elapsed)"
    if snapshot.quoted(side) < 0.5 - params.disagree_margin:
        confidence *= params.disagree_discount
        reason += f", odds disagree ({snapshot.quoted(side):.2f})"

    return Signal(
        strategy="momentum",
        side=side,
        confidence=confidence,
        reason=reason,
    )


# ── Signal: Whale Follow ────────────────────────────────────────────


def whale_follow(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds,
    params: WhaleFollowParams,
) -> Signal | None:
    """Follow large holders when their notional is concentrated on one side."""
    holders = feeds.holders
    if len(holders) < params.min_holders:
        return None

    yes_notional = sum(h.notional for h in holders if h.side == "YES")
    no_notional = sum(h.notional for h in holders if h.side == "NO")
    total = yes_notional + no_notional
    if total < params.min_notional:
        return None

    side: Side = "YES" if yes_notional >= no_notional else "NO"
    dominance = max(yes_notional, no_notional) / total
    if dominance < params.dominance:
        return None

    strength = (dominance - params.dominance) / (1.0 - params.dominance)
    return Signal(
        strategy="whale_follow",
        side=side,
        confidence=_scale(strength, params.min_confidence, params.max_confidence),
        reason=f"Top holders {dominance:.0%} {side} (${total:,.0f} notional)",
    )


# ── Signal: Odds Shift ──────────────────────────────────────────────


def odds_shift(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds,
    params: OddsShiftParams,
) -> Signal | None:
    """Follow a recent move in the quoted YES probability."""
    history = sorted(feeds.odds_history, key=lambda p: p.timestamp)
    if not history:
        return None
    cutoff = history[-1].timestamp - params.lookback_sec
    window = [p for p in history if p.timestamp >= cutoff]
    if len(window) < params.min_points:
        return None

    shift = window[-1].up_price - window[0].up_price
    if abs(shift) < params.threshold:
        return None

    side: Side = "YES" if shift > 0 else "NO"
    span = max(params.full_shift - params.threshold, 1e-9)
    strength = (abs(shift) - params.threshold) / span
    return Signal(
        strategy="odds_shift",
        side=side,
        confidence=_scale(strength, params.min_confidence, params.max_confidence),
        reason=f"YES odds moved {shift:+.2f} over {len(window)} snapshots",
    )


# ── Signal: Mean Reversion ──────────────────────────────────────────


def mean_reversion(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds,
    params: MeanReversionParams,
) -> Signal | None:
    """Fade an extreme move that the odds have fully priced and stopped chasing."""
    dev = snapshot.deviation_pct
    if dev is None or abs(dev) < params.min_move_pct:
        return None

    move_side: Side = "YES" if dev > 0 else "NO"
    priced = (
        snapshot.up_price > params.priced_high
        if move_side == "YES"
        else snapshot.up_price < params.priced_low
    )
    if not priced:
        return None

    history = sorted(feeds.odds_history, key=lambda p: p.timestamp)
    recent = history[-params.stall_points:]
    if len(recent) < params.stall_points:
        return None
    if abs(recent[-1].up_price - recent[0].up_price) >= params.stall_threshold:
        return None

    side = opposite(move_side)
    span = max(params.full_move_pct - params.min_move_pct, 1e-9)
    strength = (abs(dev) - params.min_move_pct) / span
    return Signal(
        strategy="mean_reversion",
        side=side,
        confidence=_scale(strength, params.min_confidence, params.max_confidence),
        reason=f"Move {dev:+.3%} priced at {snapshot.up_price:.2f} and stalled — fading",
    )


# ── Signal: Volume Spike ────────────────────────────────────────────


def volume_spike(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds,
    params: VolumeSpikeParams,
) -> Signal | None:
    """Follow recent buy flow when one outcome dominates it."""
    buys = [t for t in feeds.trade_flow if t.action == "BUY"]
    yes_buys = sum(t.notional for t in buys if t.side == "YES")
    no_buys = sum(t.notional for t in buys if t.side == "NO")
    total = yes_buys + no_buys
    if total < params.min_buy_notional:
        return None

    side: Side = "YES" if yes_buys >= no_buys else "NO"
    share = max(yes_buys, no_buys) / total
    if share < params.dominance:
        return None

    strength = (share - params.dominance) / (1.0 - params.dominance)
    return Signal(
        strategy="volume_spike",
        side=side,
        confidence=_scale(strength, params.min_confidence, params.max_confidence),
        reason=f"Buy flow {share:.0%} {side} (${total:,.0f})",
    )


# ── Signal: Trend Confirm ───────────────────────────────────────────


def _regression_slope(prices: list[float]) -> float:
    n = len(prices)
    sum_x = n * (n - 1) / 2
    sum_x2 = (n - 1) * n * (2 * n - 1) / 6
    sum_y = sum(prices)
    sum_xy = sum(i * p for i, p in enumerate(prices))
    denom = n * sum_x2 - sum_x * sum_x
    if denom == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denom


def trend_confirm(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds,
    params: TrendConfirmParams,
) -> Signal | None:
    """Confirm direction from a least-squares trend of live price samples.

    Fires when the trend and the distance from the reference agree, or when
    the price is just on the other side of the reference and moving toward it.
    """
    reference = snapshot.reference_price
    samples = sorted(feeds.price_history, key=lambda p: p.timestamp)
    if not reference or len(samples) < params.min_samples:
        return None

    prices = [s.price for s in samples]
    slope = _regression_slope(prices)
    if slope == 0:
        return None

    ups = sum(1 for a, b in zip(prices, prices[1:]) if b > a)
    downs = sum(1 for a, b in zip(prices, prices[1:]) if b < a)
    consistency = max(ups, downs) / (ups + downs or 1)
    consistency_strength = (consistency - 0.5) / 0.5
    distance = (prices[-1] - reference) / reference
    side: Side = "YES" if slope > 0 else "NO"
    toward = -distance if side == "YES" else distance

    if (side == "YES" and distance > 0) or (side == "NO" and distance < 0):
        strength = 0.6 * consistency_strength + 0.4 * min(1.0, abs(distance) / params.full_distance_pct)
        reason = f"Trend {side} and {distance:+.3%} from reference"
    elif 0 < toward < params.near_reference_pct:
        strength = 0.6 * consistency_strength
        reason = f"Trend {side} closing a {distance:+.3%} gap to reference"
    else:
        return None

    return Signal(
        strategy="trend_confirm",
        side=side,
        confidence=_scale(strength, params.min_confidence, params.max_confidence),
        reason=f"{reason} ({consistency:.0%} consistent, {len(prices)} samples)",
    )


# ── Engine ──────────────────────────────────────────────────────────

SignalFunction = Callable[[MarketSnapshot, HistoricalFeeds, object], Signal | None]

SIGNAL_FUNCTIONS: dict[str, SignalFunction] = {
    "crowd_fade": crowd_fade,
    "momentum": momentum,
    "whale_follow": whale_follow,
    "odds_shift": odds_shift,
    "mean_reversion": mean_reversion,
    "volume_spike": volume_spike,
    "trend_confirm": trend_confirm,
}


def collect_signals(
    snapshot: MarketSnapshot,
    feeds: HistoricalFeeds | None = None,
    params: SignalParams | None = None,
) -> list[Signal]:
    """Run every signal function and return the ones that fired."""
    feeds = feeds or HistoricalFeeds()
    params = params or SignalParams()

    fired: list[Signal] = []
    for name, fn in SIGNAL_FUNCTIONS.items():
        signal = fn(snapshot, feeds, getattr(params, name))
        if signal is not None:
            fired.append(signal)

    logger.debug(
        "signals_collected",
        market_id=snapshot.market_id,
        fired=[f"{s.strategy}:{s.side}:{s.confidence}" for s in fired],
    )
    return fired
