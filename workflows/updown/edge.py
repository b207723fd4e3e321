"""
EdgeAnalyzer — statistical report over the full TradeRecord history.

Answers "is there an edge, and where?":

- Win rate with a 95% Wilson score interval (valid at small n)
- Expected value per unit staked
- Average win / loss, payout ratio R, empirical Kelly ``wr - (1 - wr) / R``
- Break-even win rate at the observed average entry price
- Breakdowns by asset, hour, entry-price bucket, side, confidence bucket,
  strategy, day of week, time left at entry and exit type
- Longest win / loss streaks and plain-text recommendations

Histories shorter than ``min_trades`` produce an explicit
``insufficient_data`` report rather than statistics.
"""

import math
from datetime import datetime, timezone
from typing import Literal

import structlog
from pydantic import BaseModel, Field

from workflows.updown.memory import bucket_key
from workflows.updown.models import TradeRecord

logger = structlog.get_logger(__name__)

Verdict = Literal["edge", "possible_edge", "no_edge", "insufficient_data"]

_TIME_LEFT_EDGES = (60, 120, 180, 240)
_MIN_BUCKET_TRADES = 3
_SIDE_BIAS_GAP = 0.10


def wilson_interval(wins: int, n: int, z: float = 1.96) -> tuple[float, float]:
    """Wilson score interval for a binomial proportion, clamped to [0, 1]."""
    if n <= 0:
        return 0.0, 1.0
    p = wins / n
    z2 = z * z
    denom = 1 + z2 / n
    center = (p + z2 / (2 * n)) / denom
    margin = z * math.sqrt(p * (1 - p) / n + z2 / (4 * n * n)) / denom
    return max(0.0, center - margin), min(1.0, center + margin)


def time_left_bucket(seconds: float | None) -> str:
    if seconds is None:
        return "unknown"
    low = 0
    for edge in _TIME_LEFT_EDGES:
        if seconds < edge:
            return f"{low}-{edge}"
        low = edge
    return f"{_TIME_LEFT_EDGES[-1]}+"


class BucketStats(BaseModel):
    trades: int = 0
    wins: int = 0
    losses: int = 0
    pnl: float = 0.0
    staked: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    @property
    def ev_per_unit(self) -> float:
        return self.pnl / self.staked if self.staked else 0.0

    def add(self, trade: TradeRecord) -> None:
        self.trades += 1
        if trade.won:
            self.wins += 1
        else:
            self.losses += 1
        self.pnl = round(self.pnl + trade.pnl, 6)
        self.staked = round(self.staked + trade.stake, 6)


class EdgeReport(BaseModel):
    status: Literal["ok", "insufficient_data"]
    total_trades: int
    min_trades: int
    verdict: Verdict = "insufficient_data"
    message: str = ""

    wins: int = 0
    losses: int = 0
    win_rate: float | None = None
    wilson_low: float | None = None
    wilson_high: float | None = None

    total_pnl: float = 0.0
    total_staked: float = 0.0
    ev_per_unit: float | None = None
    avg_win: float | None = None
    avg_loss: float | None = None
    payout_ratio: float | None = None
    empirical_kelly: float | None = None
    avg_entry_price: float | None = None
    break_even_win_rate: float | None = None

    longest_win_streak: int = 0
    longest_loss_streak: int = 0
    breakdowns: dict[str, dict[str, BucketStats]] = Field(default_factory=dict)
    recommendations: list[str] = Field(default_factory=list)

    @property
    def sufficient(self) -> bool:
        return self.status == "ok"


# ── Breakdown keys ────────────────────────────────────────────────

_DIMENSIONS = {
    "asset": lambda t: [t.asset],
    "hour": lambda t: [datetime.fromtimestamp(t.opened_at, tz=timezone.utc).strftime("%H")],
    "entry_price": lambda t: [bucket_key(t.entry_price)],
    "side": lambda t: [t.side],
    "confidence": lambda t: [bucket_key(t.confidence)],
    "strategy": lambda t: list(dict.fromkeys(t.strategies)) or ["none"],
    "day_of_week": lambda t: [datetime.fromtimestamp(t.opened_at, tz=timezone.utc).strftime("%a")],
    "time_left": lambda t: [time_left_bucket(t.time_left_at_entry)],
    "exit_type": lambda t: [t.exit_type],
}


class EdgeAnalyzer:
    """Computes an EdgeReport from completed trades. Stateless."""

    def __init__(self, min_trades: int = 5, z: float = 1.96) -> None:
        self.min_trades = min_trades
        self.z = z

    def analyze(self, trades: list[TradeRecord]) -> EdgeReport:
        n = len(trades)
        if n < self.min_trades:
            logger.info("edge_insufficient_data", trades=n, min_trades=self.min_trades)
            return EdgeReport(
                status="insufficient_data",
                total_trades=n,
                min_trades=self.min_trades,
                message=f"Need at least {self.min_trades} trades for edge analysis, have {n}",
            )

        ordered = sorted(trades, key=lambda t: t.closed_at)
        wins = [t for t in ordered if t.won]
        losses = [t for t in ordered if not t.won]
        win_rate = len(wins) / n
        low, high = wilson_interval(len(wins), n, self.z)

        total_pnl = sum(t.pnl for t in ordered)
        total_staked = sum(t.stake for t in ordered)
        avg_win = sum(t.pnl for t in wins) / len(wins) if wins else 0.0
        avg_loss = abs(sum(t.pnl for t in losses) / len(losses)) if losses else 0.0
        payout_ratio = avg_win / avg_loss if avg_loss > 0 else None
        empirical_kelly = win_rate - (1 - win_rate) / payout_ratio if payout_ratio else None
        avg_entry = sum(t.entry_price for t in ordered) / n

        if low > avg_entry:
            verdict: Verdict = "edge"
        elif win_rate > avg_entry:
            verdict = "possible_edge"
        else:
            verdict = "no_edge"

        breakdowns: dict[str, dict[str, BucketStats]] = {}
        for dimension, keys_of in _DIMENSIONS.items():
            table: dict[str, BucketStats] = {}
            for trade in ordered:
                for key in keys_of(trade):
                    table.setdefault(key, BucketStats()).add(trade)
            breakdowns[dimension] = dict(sorted(table.items()))

        best_win, best_loss = _longest_streaks(ordered)

        report = EdgeReport(
            status="ok",
            total_trades=n,
            min_trades=self.min_trades,
            verdict=verdict,
            wins=len(wins),
            losses=len(losses),
            win_rate=round(win_rate, 4),
            wilson_low=round(low, 4),
            wilson_high=round(high, 4),
            total_pnl=round(total_pnl, 4),
            total_staked=round(total_staked, 4),
            ev_per_unit=round(total_pnl / total_staked, 4) if total_staked else None,
            avg_win=round(avg_win, 4),
            avg_loss=round(avg_loss, 4),
            payout_ratio=round(payout_ratio, 4) if payout_ratio is not None else None,
            empirical_kelly=round(empirical_kelly, 4) if empirical_kelly is not None else None,
            avg_entry_price=round(avg_entry, 4),
            break_even_win_rate=round(avg_entry, 4),
            longest_win_streak=best_win,
            longest_loss_streak=best_loss,
            breakdowns=breakdowns,
        )
        report.recommendations = _recommendations(report)

        logger.info(
            "edge_analyzed",
            trades=n,
            win_rate=report.win_rate,
            wilson_low=report.wilson_low,
            break_even=report.break_even_win_rate,
            verdict=verdict,
        )
        return report


def _longest_streaks(trades: list[TradeRecord]) -> tuple[int, int]:
    best_win = best_loss = run = 0
    for trade in trades:
        if trade.won:
            run = run + 1 if run > 0 else 1
            best_win = max(best_win, run)
        else:
            run = run - 1 if run < 0 else -1
            best_loss = max(best_loss, -run)
    return best_win, best_loss


def _recommendations(report: EdgeReport) -> list[str]:
    recs: list[str] = []

    hours = {
        k: v for k, v in report.breakdowns.get("hour", {}).items() if v.trades >= _MIN_BUCKET_TRADES
    }
    if len(hours) >= 2:
        best = max(hours, key=lambda k: hours[k].win_rate)
        worst = min(hours, key=lambda k: hours[k].win_rate)
        recs.append(f"Best hour {best}:00 UTC ({hours[best].win_rate:.0%} over {hours[best].trades})")
        recs.append(f"Worst hour {worst}:00 UTC ({hours[worst].win_rate:.0%} over {hours[worst].trades})")

    bands = {
        k: v
        for k, v in report.breakdowns.get("entry_price", {}).items()
        if v.trades >= _MIN_BUCKET_TRADES
    }
    if bands:
        band = max(bands, key=lambda k: bands[k].ev_per_unit)
        upper = float(band) + 0.1
        recs.append(
            f"Best entry band {band}-{upper:.1f} (EV {bands[band].ev_per_unit:+.1%} per unit)"
        )

    sides = report.breakdowns.get("side", {})
    yes, no = sides.get("YES"), sides.get("NO")
    if yes and no and min(yes.trades, no.trades) >= _MIN_BUCKET_TRADES:
        gap = yes.win_rate - no.win_rate
        if abs(gap) >= _SIDE_BIAS_GAP:
            strong, weak = ("YES", "NO") if gap > 0 else ("NO", "YES")
            recs.append(f"Side bias: {strong} wins {abs(gap):.0%} more often than {weak}")

    recs.append(
        f"Win rate {report.win_rate:.1%} (95% CI {report.wilson_low:.1%}-{report.wilson_high:.1%}) "
        f"vs break-even {report.break_even_win_rate:.1%} at avg entry {report.avg_entry_price:.2f}"
    )

    if report.verdict == "edge":
        recs.append("Edge confirmed: the interval's lower bound clears break-even")
    elif report.verdict == "possible_edge":
        recs.append("Possible edge: above break-even but not yet significant; keep stakes small")
    else:
        recs.append("No edge: win rate does not clear break-even; review entry rules")
    return recs


def format_report(report: EdgeReport) -> str:
    """Plain-text rendering for notifications and the CLI."""
    if not report.sufficient:
        return f"📊 Edge report: {report.message}"

    lines = [
        f"📊 Edge report — {report.total_trades} trades",
        f"Win rate: {report.win_rate:.1%} [{report.wilson_low:.1%}, {report.wilson_high:.1%}]",
        f"P&L: ${report.total_pnl:+.2f} on ${report.total_staked:.2f} staked",
    ]
    if report.ev_per_unit is not None:
        lines.append(f"EV/unit: {report.ev_per_unit:+.3f}")
    if report.empirical_kelly is not None:
        lines.append(f"Payout R: {report.payout_ratio:.2f}  Kelly: {report.empirical_kelly:+.3f}")
    lines.append(f"Streaks: {report.longest_win_streak}W / {report.longest_loss_streak}L")
    lines.append(f"Verdict: {report.verdict}")
    lines.extend(f"• {rec}" for rec in report.recommendations)
    return "\n".join(lines)
