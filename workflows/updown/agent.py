"""
TradingAgent — one decision/exit cycle per externally driven tick.

Responsibilities (ONLY):
  - Fetch snapshots, authoritative positions and bankroll from collaborators
  - Sweep orphans on startup and whenever the tracked market set changes
  - Per market: reconcile → exit rules → (if untouched) analyze → buy
  - Send the periodic edge report (every N trades) and status report (every M seconds)

Explicitly NOT responsible for:
  - Any gate, sizing or exit rule (→ DecisionCore / ExitManager)
  - Trade recording (→ ExitManager → DecisionCore.record_outcome)
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from rpoly.config import AgentSettings
from rpoly.core.workflow_state import WorkflowStateService
from rpoly.errors import GatewayError, TransientNetworkError
from workflows.updown.brain import DecisionCore
from workflows.updown.edge import format_report
from workflows.updown.exit_manager import ExitManager, ExitState
from workflows.updown.memory import MemoryStore
from workflows.updown.models import (
    AuthoritativePosition,
    Decision,
    EntryContext,
    MarketSnapshot,
    Position,
    opposite,
)
from workflows.updown.params import load_exit_rules
from workflows.updown.protocols import (
    MarketFeed,
    Notifier,
    NullNotifier,
    OrderGateway,
    PositionSource,
)
from workflows.updown.trade_history import TradeHistory

logger = structlog.get_logger(__name__)


class TradingAgent:
    """Thin orchestration over DecisionCore + ExitManager."""

    def __init__(
        self,
        brain: DecisionCore,
        exit_manager: ExitManager,
        feed: MarketFeed,
        positions: PositionSource,
        gateway: OrderGateway,
        *,
        notifier: Notifier | None = None,
        poll_interval_sec: float = 3.0,
        max_consecutive_errors: int = 10,
        error_pause_sec: float = 30.0,
        edge_report_every: int = 25,
        status_report_sec: float = 300.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.brain = brain
        self.exit_manager = exit_manager
        self._feed = feed
        self._positions = positions
        self._gateway = gateway
        self._notifier = notifier or NullNotifier()
        self.poll_interval_sec = poll_interval_sec
        self.max_consecutive_errors = max_consecutive_errors
        self.error_pause_sec = error_pause_sec
        self.edge_report_every = edge_report_every
        self.status_report_sec = status_report_sec
        self._clock = clock
        self._sleep = sleep

        self._ticks = 0
        self._last_tracked: frozenset[str] | None = None
        self._last_report_trades = 0
        self._last_status_at: float | None = None

    async def start(self) -> None:
        await self.brain.load()
        total = self.brain.memory.state.total_trades
        self._last_report_trades = total - total % self.edge_report_every if self.edge_report_every else total
        self._last_status_at = self._clock()
        logger.info("agent_started", stage=self.brain.current_stage().name, total_trades=total)

    # ── Tick ─────────────────────────────────────────────────────────

    async def tick(self) -> dict:
        """Run one full cycle. Sells and their retries complete before returning."""
        self._ticks += 1
        snapshots = await self._feed.get_snapshots()
        remote = await self._positions.get_positions()
        bankroll = await self._feed.get_bankroll()

        summary: dict = {"tick": self._ticks, "markets": len(snapshots), "entries": [], "exits": [], "orphans_sold": []}

        await self.exit_manager.flush_pending()

        tracked = self.exit_manager.tracked_markets
        if self._last_tracked is None or tracked != self._last_tracked:
            summary["orphans_sold"] = await self.exit_manager.sweep_orphans(remote)
            self._last_tracked = tracked

        remote_by_key = {(p.market_id, p.side): p for p in remote}
        seen: set[str] = set()

        for snapshot in snapshots:
            seen.add(snapshot.market_id)
            with structlog.contextvars.bound_contextvars(
                market_id=snapshot.market_id, asset=snapshot.asset
            ):
                held = self.exit_manager.position(snapshot.market_id)
                if held is not None and self.exit_manager.state(snapshot.market_id) == ExitState.OPEN:
                    self.exit_manager.reconcile(
                        snapshot.market_id, remote_by_key.get((snapshot.market_id, held.side))
                    )

                outcome = await self.exit_manager.evaluate(snapshot)
                if outcome.action in ("exit", "flagged"):
                    summary["exits"].append(outcome.model_dump(exclude={"record"}))

                if snapshot.settled_outcome is None and self.exit_manager.can_enter(snapshot.market_id):
                    feeds = await self._feed.get_feeds(snapshot.market_id)
                    decision = self.brain.analyze(snapshot, bankroll, snapshot.time_left_sec, feeds)
                    if decision.action == "BUY":
                        position = await self._enter(snapshot, decision)
                        if position is not None:
                            bankroll -= position.stake
                            summary["entries"].append(position.market_id)

        await self._resolve_vanished(seen, remote_by_key)
        if snapshots:
            self.exit_manager.evict_closed(seen)
        await self._maybe_report_edge()
        await self._maybe_report_status(bankroll)
        return summary

    async def _enter(self, snapshot: MarketSnapshot, decision: Decision) -> Position | None:
        try:
            result = await self._gateway.buy(snapshot.market_id, decision.side, decision.stake)
        except GatewayError as e:
            logger.warning("entry_failed", **e.to_dict())
            return None

        if not result.filled:
            logger.warning("entry_not_filled", status=result.status, error=result.error)
            return None

        fill = result.fill_price or decision.entry_price
        size = result.size or round(decision.stake / fill, 4)
        book = snapshot.book(decision.side)
        position = Position(
            market_id=snapshot.market_id,
            side=decision.side,
            size=size,
            entry_price=fill,
            asset=snapshot.asset,
            opened_at=self._clock(),
            confidence=decision.confidence,
            strategies=decision.strategies,
            context=EntryContext(
                time_left_sec=snapshot.time_left_sec,
                window_sec=snapshot.window_sec,
                spread_pct=book.spread_pct if book else None,
                live_price=snapshot.live_price,
                reference_price=snapshot.reference_price,
                regime=decision.regime,
            ),
        )
        self.exit_manager.open_position(position)
        await self._notify(
            f"🎯 BUY {decision.side} {snapshot.asset} ${decision.stake:.2f} @ {fill:.2f} "
            f"({decision.confidence:.0%}, {', '.join(decision.strategies)})"
        )
        return position

    async def _resolve_vanished(
        self,
        seen: set[str],
        remote_by_key: dict[tuple[str, str], AuthoritativePosition],
    ) -> None:
        """Settle tracked positions whose market dropped out of the feed."""
        for market_id in self.exit_manager.tracked_markets - seen:
            held = self.exit_manager.position(market_id)
            remote = remote_by_key.get((market_id, held.side))
            if remote is None or remote.cur_price is None or remote.is_live:
                logger.debug("tracked_market_not_in_feed", market_id=market_id)
                continue
            settled = held.side if remote.cur_price >= 1.0 else opposite(held.side)
            await self.exit_manager.resolve(market_id, settled)

    async def _maybe_report_edge(self) -> None:
        if not self.edge_report_every:
            return
        total = self.brain.memory.state.total_trades
        if total - self._last_report_trades < self.edge_report_every:
            return
        self._last_report_trades = total - total % self.edge_report_every
        report = self.brain.analyze_edge()
        await self._notify(format_report(report))

    async def _maybe_report_status(self, bankroll: float) -> None:
        if not self.status_report_sec:
            return
        now = self._clock()
        if self._last_status_at is None:
            self._last_status_at = now
            return
        if now - self._last_status_at < self.status_report_sec:
            return
        self._last_status_at = now

        status = self.brain.get_status()
        lines = [
            "🤖 rPoly status",
            f"├ Balance: ${bankroll:.2f}",
            f"├ Open: {len(self.exit_manager.open_positions())}",
            f"├ Record: {status['wins']}W/{status['losses']}L ({status['win_rate']:.0%} WR)",
            f"├ P/L: ${status['total_pnl']:+.2f} total | ${status['today_pnl']:+.2f} today",
            f"└ Brain: {status['stage']['name']} (streak {status['current_streak']})",
        ]
        for pos in self.exit_manager.open_positions():
            flag = " ⚠️" if self.exit_manager.is_flagged(pos.market_id) else ""
            lines.insert(-1, f"│  {pos.side} {pos.asset} x{pos.size:.2f} @ {pos.entry_price:.2f}{flag}")
        if self.exit_manager.pending_records:
            lines.insert(-1, f"├ Unrecorded trades: {len(self.exit_manager.pending_records)}")
        await self._notify("\n".join(lines))

    async def _notify(self, text: str) -> None:
        try:
            await self._notifier.notify(text)
        except Exception as e:
            logger.warning("notify_failed", error=str(e))

    # ── Main Loop ────────────────────────────────────────────────────

    async def run_forever(self, max_ticks: int | None = None) -> None:
        """Tick, sleep, repeat. Survives per-tick failures."""
        consecutive_errors = 0
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            ticks += 1
            try:
                summary = await self.tick()
                consecutive_errors = 0
                if summary["entries"] or summary["exits"] or summary["orphans_sold"]:
                    logger.info("tick_completed", **summary)
            except TransientNetworkError as e:
                consecutive_errors += 1
                logger.error("unresolved_risk", tick=ticks, **e.to_dict())
            except Exception as e:
                consecutive_errors += 1
                logger.error("tick_failed", tick=ticks, error=str(e), exc_info=True)

            if consecutive_errors >= self.max_consecutive_errors:
                logger.error(
                    "agent_error_pause",
                    consecutive_errors=consecutive_errors,
                    pause_sec=self.error_pause_sec,
                )
                await self._sleep(self.error_pause_sec)
                consecutive_errors = 0
            else:
                await self._sleep(self.poll_interval_sec)


def create_agent(
    settings: AgentSettings,
    client,
    notifier: Notifier | None = None,
) -> TradingAgent:
    """Wire a TradingAgent from settings and a gateway client.

    ``client`` must implement MarketFeed, PositionSource and OrderGateway.
    """
    state = WorkflowStateService(settings.state_namespace, data_dir=settings.data_dir)
    brain = DecisionCore(MemoryStore(state), TradeHistory(state))
    rules = load_exit_rules(settings.profiles_path or None, settings.strategy_profile or None)
    exit_manager = ExitManager(
        client,
        client,
        rules=rules,
        recorder=brain.record_outcome,
        notifier=notifier,
    )
    return TradingAgent(
        brain,
        exit_manager,
        client,
        client,
        client,
        notifier=notifier,
        poll_interval_sec=settings.poll_interval_sec,
        max_consecutive_errors=settings.max_consecutive_errors,
        error_pause_sec=settings.error_pause_sec,
        edge_report_every=settings.edge_report_every,
        status_report_sec=settings.status_report_sec,
    )
