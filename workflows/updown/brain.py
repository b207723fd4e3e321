"""
DecisionCore — the trading brain.

Turns a MarketSnapshot into a BUY/SKIP Decision by running an ordered gate
sequence; every gate can short-circuit to SKIP with a reason, none of them
raise:

     1. Market quality (entry window, volume, liquidity, spread, depth)
     2. Bankroll ≥ minimum stake
     3. Daily drawdown breaker
     4. Tilt (consecutive losses)
     5. Regime classification
     6. Signal collection
     7. Memory reweighting per strategy
     8. Side aggregation + agreement ratio
     9. Confidence calibration
    10. Hour-of-day adjustment
    11. Tilt penalty, clamp, stage confidence floor
    12. Volatile-regime dampening in the first stage
    13. Entry-price bucket sanity check
    14. Entry guards (max entry price, opposing odds)
    15. Fractional Kelly sizing

Also exposes the learning side: ``record_outcome`` folds a completed trade
into TradeHistory + Memory, ``get_status`` and ``analyze_edge`` report on it.
"""

import time
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from rpoly.errors import ConfigurationError, InsufficientEdgeError
from workflows.updown.edge import EdgeAnalyzer, EdgeReport
from workflows.updown.evolution import (
    DEFAULT_LADDER,
    EvolutionStage,
    current_stage,
    is_first_stage,
)
from workflows.updown.memory import MemoryStore
from workflows.updown.models import (
    Decision,
    HistoricalFeeds,
    MarketSnapshot,
    Regime,
    Signal,
    TradeRecord,
    opposite,
)
from workflows.updown.params import DecisionConfig, SignalParams
from workflows.updown.risk import (
    classify_regime,
    daily_loss_exceeded,
    kelly_stake,
    tilt_level,
    tilt_penalty,
)
from workflows.updown.signals import collect_signals
from workflows.updown.trade_history import TradeHistory

logger = structlog.get_logger(__name__)


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


class _Skip(Exception):
    """Internal short-circuit from a gate to a SKIP decision."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class DecisionCore:
    """Multi-signal decision engine that sizes with fractional Kelly and learns from outcomes."""

    def __init__(
        self,
        memory: MemoryStore,
        history: TradeHistory,
        *,
        config: DecisionConfig | None = None,
        signal_params: SignalParams | None = None,
        ladder: tuple[EvolutionStage, ...] = DEFAULT_LADDER,
        edge_analyzer: EdgeAnalyzer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.memory = memory
        self.history = history
        self.config = config or DecisionConfig()
        self.signal_params = signal_params or SignalParams()
        self.ladder = ladder
        self.edge_analyzer = edge_analyzer or EdgeAnalyzer()
        self._clock = clock

    async def load(self) -> None:
        await self.memory.load()
        await self.history.load()

    def current_stage(self) -> EvolutionStage:
        s = self.memory.state
        return current_stage(s.total_trades, s.wins, self.ladder)

    # ── Analyze ───────────────────────────────────────────────────

    def analyze(
        self,
        snapshot: MarketSnapshot | None,
        bankroll: float,
        time_left_sec: float | None = None,
        feeds: HistoricalFeeds | None = None,
    ) -> Decision:
        """Run the gate sequence for one market. Never raises for gate failures."""
        stage = self.current_stage()
        trace: list[str] = []
        ctx: dict = {"regime": "unknown", "signals": [], "agreement": 0.0, "confidence": 0.0}

        try:
            decision = self._evaluate(
                snapshot, bankroll, time_left_sec, feeds or HistoricalFeeds(), stage, trace, ctx
            )
        except ConfigurationError as e:
            trace.append(f"Configuration: {e}")
            decision = self._skip_decision(stage, trace, ctx)
            logger.info("decision_skip", reason=trace[-1], error_code=e.error_code)
            return decision
        except InsufficientEdgeError as e:
            trace.append(f"No edge: Kelly {e.kelly_fraction:.4f} ≤ 0")
            decision = self._skip_decision(stage, trace, ctx)
            decision.kelly_fraction = round(e.kelly_fraction, 6)
            logger.info("decision_skip", reason=trace[-1], error_code=e.error_code)
            return decision
        except _Skip as skip:
            trace.append(skip.reason)
            decision = self._skip_decision(stage, trace, ctx)
            logger.info(
                "decision_skip",
                market_id=snapshot.market_id if snapshot else None,
                reason=skip.reason,
                stage=stage.name,
            )
            return decision

        logger.info(
            "decision_buy",
            market_id=snapshot.market_id,
            side=decision.side,
            stake=decision.stake,
            confidence=decision.confidence,
            entry_price=decision.entry_price,
            agreement=decision.agreement,
            regime=decision.regime,
            stage=stage.name,
            strategies=decision.strategies,
        )
        return decision

    @staticmethod
    def _skip_decision(stage: EvolutionStage, trace: list[str], ctx: dict) -> Decision:
        return Decision(
            action="SKIP",
            confidence=_clamp01(ctx["confidence"]),
            signals=ctx["signals"],
            regime=ctx["regime"],
            stage=stage.name,
            agreement=ctx["agreement"],
            reasons=list(trace),
        )

    def _evaluate(
        self,
        snapshot: MarketSnapshot | None,
        bankroll: float,
        time_left_sec: float | None,
        feeds: HistoricalFeeds,
        stage: EvolutionStage,
        trace: list[str],
        ctx: dict,
    ) -> Decision:
        cfg = self.config
        s = self.memory.state

        # Gate 1: market quality
        if snapshot is None:
            raise ConfigurationError("No active market snapshot")
        if not snapshot.reference_price:
            raise ConfigurationError(f"Missing reference price for {snapshot.market_id}")

        time_left = snapshot.time_left_sec if time_left_sec is None else time_left_sec
        window = cfg.entry_window(snapshot.window_label)
        if not window.min_time_left_sec <= time_left <= window.max_time_left_sec:
            raise _Skip(
                f"Outside {snapshot.window_label} entry window: {time_left:.0f}s left "
                f"(allowed {window.min_time_left_sec:.0f}-{window.max_time_left_sec:.0f}s)"
            )
        if snapshot.volume < cfg.min_volume:
            raise _Skip(f"Volume ${snapshot.volume:.0f} < ${cfg.min_volume:.0f}")
        if snapshot.liquidity < cfg.min_liquidity:
            raise _Skip(f"Liquidity ${snapshot.liquidity:.0f} < ${cfg.min_liquidity:.0f}")
        for book in (snapshot.up_book, snapshot.down_book):
            if book is None:
                continue
            spread = book.spread_pct
            if spread is not None and spread > cfg.max_spread_pct:
                raise _Skip(f"Spread {spread:.1%} > {cfg.max_spread_pct:.0%}")
            if book.depth < cfg.min_book_depth:
                raise _Skip(f"Book depth ${book.depth:.0f} < ${cfg.min_book_depth:.0f}")
        trace.append(f"Market OK: {time_left:.0f}s left, vol ${snapshot.volume:.0f}")

        # Gate 2: bankroll
        if bankroll < cfg.min_stake:
            raise _Skip(f"Bankroll ${bankroll:.2f} below minimum stake ${cfg.min_stake:.2f}")

        # Gate 3: daily drawdown
        today_pnl = self.memory.today_pnl(snapshot.timestamp)
        if daily_loss_exceeded(today_pnl, bankroll, cfg.max_daily_loss_fraction):
            raise _Skip(
                f"Daily loss ${-today_pnl:.2f} exceeds {cfg.max_daily_loss_fraction:.0%} of bankroll"
            )

        # Gate 4: tilt
        tilt = tilt_level(s.consecutive_losses, cfg.max_tilt)
        if tilt >= cfg.tilt_pause_level:
            raise _Skip(f"Tilt level {tilt} ({s.consecutive_losses} consecutive losses), pausing")

        # Gate 5: regime
        regime: Regime = classify_regime(snapshot, feeds, cfg)
        ctx["regime"] = regime
        trace.append(f"Regime: {regime}")

        # Gate 6: signals
        raw_signals = collect_signals(snapshot, feeds, self.signal_params)
        if not raw_signals:
            raise _Skip("No signals fired")

        # Gate 7: memory reweighting
        signals: list[Signal] = []
        for sig in raw_signals:
            weight = self.memory.strategy_weight(sig.strategy, cfg.reweight_min_samples)
            if weight != 1.0:
                sig = sig.model_copy(update={"confidence": _clamp01(round(sig.confidence * weight, 4))})
            signals.append(sig)
        ctx["signals"] = signals

        # Gate 8: aggregation
        yes_sum = sum(sig.confidence for sig in signals if sig.side == "YES")
        no_sum = sum(sig.confidence for sig in signals if sig.side == "NO")
        majority, minority = max(yes_sum, no_sum), min(yes_sum, no_sum)
        if majority <= 0:
            raise _Skip("Signals carry no confidence")
        side = "YES" if yes_sum > no_sum else "NO"
        agreement = round(1.0 - minority / majority, 4)
        ctx["agreement"] = agreement
        if agreement < cfg.min_agreement:
            raise _Skip(
                f"Signals disagree: YES {yes_sum:.2f} vs NO {no_sum:.2f} "
                f"(agreement {agreement:.2f} < {cfg.min_agreement:.2f})"
            )
        confidence = majority
        ctx["confidence"] = confidence
        trace.append(f"{side} {majority:.2f} vs {minority:.2f}, agreement {agreement:.2f}")

        # Gate 9: calibration
        key, bucket = self.memory.confidence_bucket(confidence)
        if bucket is not None and bucket.total >= cfg.calibration_min_samples:
            nominal = float(key) + 0.05
            if bucket.hit_rate < nominal - cfg.calibration_margin:
                confidence *= bucket.hit_rate / nominal
                trace.append(
                    f"Calibrated: bucket {key} hits {bucket.hit_rate:.0%} vs nominal {nominal:.0%}"
                )

        # Gate 10: hour of day
        hour = datetime.fromtimestamp(snapshot.timestamp, tz=timezone.utc).strftime("%H")
        hour_wr = self.memory.hourly_win_rate(hour, cfg.hourly_min_samples)
        if hour_wr is not None:
            adj = 1.0 + (hour_wr - 0.5) * cfg.hourly_sensitivity
            adj = min(1.0 + cfg.hourly_max_adjustment, max(1.0 - cfg.hourly_max_adjustment, adj))
            confidence *= adj
            trace.append(f"Hour {hour} win rate {hour_wr:.0%} → x{adj:.3f}")

        # Gate 11: tilt penalty + clamp + stage floor
        if tilt:
            confidence *= tilt_penalty(tilt, cfg.tilt_penalty_per_level)
            trace.append(f"Tilt {tilt} penalty x{tilt_penalty(tilt, cfg.tilt_penalty_per_level):.2f}")
        confidence = _clamp01(confidence)
        ctx["confidence"] = confidence
        if confidence < stage.confidence_floor:
            raise _Skip(
                f"Confidence {confidence:.3f} below {stage.name} floor {stage.confidence_floor:.2f}"
            )

        # Gate 12: volatile regime while still in the first stage
        if regime == "volatile" and is_first_stage(stage, self.ladder):
            confidence = _clamp01(confidence * cfg.volatile_early_stage_penalty)
            ctx["confidence"] = confidence
            trace.append(f"Volatile regime at {stage.name} → x{cfg.volatile_early_stage_penalty}")
            if confidence < stage.confidence_floor:
                raise _Skip(
                    f"Confidence {confidence:.3f} below {stage.name} floor "
                    f"{stage.confidence_floor:.2f} after volatility dampening"
                )

        # Gate 13: entry-price bucket
        entry_price = snapshot.entry_price(side)
        price_key, price_bucket = self.memory.price_bucket(entry_price)
        if (
            price_bucket is not None
            and price_bucket.total >= cfg.price_bucket_min_samples
            and price_bucket.win_rate < cfg.price_bucket_min_win_rate
        ):
            confidence = _clamp01(confidence * cfg.price_bucket_penalty)
            ctx["confidence"] = confidence
            trace.append(
                f"Price bucket {price_key} wins {price_bucket.win_rate:.0%} → x{cfg.price_bucket_penalty}"
            )

        # Gate 14: entry guards
        if entry_price > window.max_entry_price:
            raise _Skip(
                f"Entry {entry_price:.2f} above {snapshot.window_label} max {window.max_entry_price:.2f}"
            )
        opposing = snapshot.quoted(opposite(side))
        if opposing > cfg.max_opposing_price:
            raise _Skip(f"Opposing side quoted {opposing:.2f} > {cfg.max_opposing_price:.2f}")

        # Gate 15: Kelly sizing
        sizing = kelly_stake(
            confidence,
            entry_price,
            bankroll,
            stage,
            min_stake=cfg.min_stake,
            max_bankroll_fraction=cfg.max_bankroll_fraction,
        )
        if sizing.stake <= 0:
            raise _Skip(f"Stake cap ${sizing.cap:.2f} below minimum ${cfg.min_stake:.2f}")
        trace.append(
            f"Kelly {sizing.full_kelly:.3f} x{stage.kelly_fraction} → ${sizing.stake:.2f} "
            f"(cap ${sizing.cap:.2f})"
        )

        return Decision(
            action="BUY",
            side=side,
            stake=sizing.stake,
            confidence=round(confidence, 4),
            entry_price=entry_price,
            signals=signals,
            regime=regime,
            stage=stage.name,
            agreement=agreement,
            kelly_fraction=round(sizing.fractional_kelly, 6),
            reasons=list(trace),
        )

    # ── Learning ──────────────────────────────────────────────────

    async def record_outcome(self, record: TradeRecord) -> dict:
        """Append a completed trade and fold it into Memory exactly once.

        The trade history is the dedup authority: Memory only keeps a bounded
        window of recent ids, so a trade the history already holds is never
        counted again.

        Raises:
            PersistenceError: The history write failed; nothing was recorded.
        """
        stage_before = self.current_stage()
        appended = await self.history.append(record)
        counted = appended and self.memory.record(record)
        if counted:
            await self.memory.save()

        stage_after = self.current_stage()
        s = self.memory.state
        summary = {
            "recorded": appended,
            "duplicate": not appended,
            "trade_id": record.trade_id,
            "won": record.won,
            "pnl": round(record.pnl, 4),
            "exit_type": record.exit_type,
            "total_trades": s.total_trades,
            "win_rate": round(s.win_rate, 4),
            "total_pnl": round(s.total_pnl, 4),
            "streak": s.current_streak,
            "stage": stage_after.name,
            "stage_changed": stage_after.name != stage_before.name,
        }
        if summary["stage_changed"]:
            logger.info("evolution_stage_changed", old=stage_before.name, new=stage_after.name)
        return summary

    def get_status(self) -> dict:
        """Memory summary plus the current evolution stage and the next rung."""
        stage = self.current_stage()
        names = [st.name for st in self.ladder]
        idx = names.index(stage.name)
        nxt = self.ladder[idx + 1] if idx + 1 < len(self.ladder) else None
        status = self.memory.summary()
        status["stage"] = stage.model_dump()
        status["next_stage"] = nxt.model_dump() if nxt else None
        status["trades_logged"] = len(self.history)
        return status

    def analyze_edge(self) -> EdgeReport:
        return self.edge_analyzer.analyze(self.history.trades)
