"""
ExitManager — per-market exit state machine for open positions.

    NONE ──fill──▶ OPEN ──sell submitted──▶ EXITING ──fill / gone upstream──▶ CLOSED
                    ▲                          │
                    └──── sell failed (≤ N) ───┘

While OPEN with more than ``pre_close_sec`` left, every evaluation adds the
current best bid to a short buffer (≤ ``bid_window_sec`` old, ≤
``bid_max_samples`` entries). The buffer median is the smoothed price; exits
fire on the smoothed P/L so a single flash tick cannot trigger them:

    take-profit  smoothed ≥ +TP   and held ≥ min_hold_tp   and ≥ N samples
    stop-loss    smoothed ≤ SL    and held ≥ min_hold_sl   and ≥ N samples
    emergency    smoothed ≤ EMERG and held ≥ min_hold_emerg and ≥ N samples

At or below the pre-close cutoff a position is sold unless it is currently
profitable, in which case it rides to resolution for the full binary payout.

Failed sells are retried with a fixed delay; before every retry the
authoritative position is re-queried and wins over the local estimate
(trust remote, reconcile local). When the budget is exhausted the position
goes back to OPEN, is flagged, and an unresolved-risk notification is sent.

All per-market state lives in the ``table`` owned by this instance.
"""

import asyncio
import statistics
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

import structlog
from pydantic import BaseModel

from rpoly.errors import GatewayError, PersistenceError, PositionConflictError, StateDriftError
from workflows.updown.models import (
    AuthoritativePosition,
    BidSample,
    ExitType,
    MarketSnapshot,
    OrderResult,
    Position,
    Side,
    TradeRecord,
)
from workflows.updown.params import ExitRules
from workflows.updown.protocols import Notifier, NullNotifier, OrderGateway, PositionSource

logger = structlog.get_logger(__name__)

Recorder = Callable[[TradeRecord], Awaitable[dict]]


def _pct_change(price: float | None, entry_price: float) -> float | None:
    if price is None:
        return None
    # rounded so 0.60 vs 0.50 compares as exactly +20%
    return round((price - entry_price) / entry_price, 9)


class ExitState(str, Enum):
    NONE = "NONE"
    OPEN = "OPEN"
    EXITING = "EXITING"
    CLOSED = "CLOSED"


@dataclass
class MarketExitState:
    """Mutable per-market entry in the ExitManager's state table."""

    state: ExitState = ExitState.NONE
    position: Position | None = None
    bids: list[BidSample] = field(default_factory=list)
    flagged: bool = False
    closed_at: float | None = None


class ExitOutcome(BaseModel):
    """Result of one evaluation of one market."""

    market_id: str
    action: Literal["none", "hold", "exit", "flagged"]
    exit_type: ExitType | None = None
    reason: str = ""
    pnl_pct: float | None = None
    smoothed_pnl_pct: float | None = None
    samples: int = 0
    record: TradeRecord | None = None


class ExitManager:
    """Owns every open Position and decides when to close it."""

    def __init__(
        self,
        gateway: OrderGateway,
        positions: PositionSource,
        *,
        rules: ExitRules | None = None,
        recorder: Recorder | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        table: dict[str, MarketExitState] | None = None,
    ) -> None:
        self._gateway = gateway
        self._positions = positions
        self.rules = rules or ExitRules()
        self._recorder = recorder
        self._notifier = notifier or NullNotifier()
        self._clock = clock
        self._sleep = sleep
        self.table: dict[str, MarketExitState] = table if table is not None else {}
        self.pending_records: list[TradeRecord] = []

    # ── State queries ─────────────────────────────────────────────

    def state(self, market_id: str) -> ExitState:
        entry = self.table.get(market_id)
        return entry.state if entry else ExitState.NONE

    def position(self, market_id: str) -> Position | None:
        entry = self.table.get(market_id)
        return entry.position if entry else None

    def can_enter(self, market_id: str) -> bool:
        """Only untouched markets accept a new entry; closed ones are not re-entered."""
        return self.state(market_id) == ExitState.NONE

    def is_flagged(self, market_id: str) -> bool:
        entry = self.table.get(market_id)
        return bool(entry and entry.flagged)

    @property
    def tracked_markets(self) -> frozenset[str]:
        return frozenset(
            mid
            for mid, entry in self.table.items()
            if entry.state in (ExitState.OPEN, ExitState.EXITING)
        )

    def open_positions(self) -> list[Position]:
        return [
            entry.position
            for entry in self.table.values()
            if entry.state in (ExitState.OPEN, ExitState.EXITING) and entry.position
        ]

    # ── Transitions ───────────────────────────────────────────────

    def open_position(self, position: Position) -> None:
        """NONE → OPEN on a confirmed fill.

        Raises:
            PositionConflictError: The market already has (or had) a position.
        """
        current = self.state(position.market_id)
        if current != ExitState.NONE:
            raise PositionConflictError(
                f"Market {position.market_id} is {current.value}, cannot open",
                market_id=position.market_id,
            )
        self.table[position.market_id] = MarketExitState(state=ExitState.OPEN, position=position)
        logger.info(
            "position_opened",
            market_id=position.market_id,
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
            strategies=position.strategies,
        )

    def reconcile(self, market_id: str, remote: AuthoritativePosition | None) -> None:
        """Align an OPEN position with the exchange's view (size, real fill price)."""
        entry = self.table.get(market_id)
        if entry is None or entry.state != ExitState.OPEN or remote is None:
            return
        pos = entry.position
        if remote.side != pos.side:
            return

        if remote.size >= self.rules.min_sell_size and abs(remote.size - pos.size) >= self.rules.min_sell_size:
            drift = StateDriftError(
                f"Local size {pos.size} != remote {remote.size}",
                market_id=market_id,
                local_size=pos.size,
                remote_size=remote.size,
            )
            logger.warning("position_size_drift", **drift.to_dict())
            pos.size = remote.size

        if 0 < remote.avg_price < 1 and abs(remote.avg_price - pos.entry_price) > self.rules.price_refresh_tolerance:
            logger.info(
                "entry_price_refreshed",
                market_id=market_id,
                old=round(pos.entry_price, 4),
                new=round(remote.avg_price, 4),
            )
            pos.entry_price = remote.avg_price

    # ── Bid buffer ────────────────────────────────────────────────

    def record_bid(self, market_id: str, price: float, timestamp: float | None = None) -> None:
        entry = self.table.get(market_id)
        if entry is None:
            return
        now = self._clock() if timestamp is None else timestamp
        entry.bids.append(BidSample(price=price, timestamp=now))
        self._prune(entry, now)

    def _prune(self, entry: MarketExitState, now: float) -> None:
        fresh = [b for b in entry.bids if now - b.timestamp < self.rules.bid_window_sec]
        entry.bids = fresh[-self.rules.bid_max_samples:]

    def smoothed_price(self, market_id: str) -> float | None:
        entry = self.table.get(market_id)
        if entry is None:
            return None
        self._prune(entry, self._clock())
        if not entry.bids:
            return None
        return statistics.median(b.price for b in entry.bids)

    # ── Evaluation ────────────────────────────────────────────────

    async def evaluate(self, snapshot: MarketSnapshot) -> ExitOutcome:
        """Run the exit rules for one market against a fresh snapshot."""
        market_id = snapshot.market_id
        entry = self.table.get(market_id)
        if entry is None or entry.state != ExitState.OPEN:
            return ExitOutcome(market_id=market_id, action="none")

        if snapshot.settled_outcome is not None:
            return await self.resolve(market_id, snapshot.settled_outcome)

        rules = self.rules
        pos = entry.position
        now = self._clock()
        held = now - pos.opened_at

        bid = snapshot.exit_price(pos.side)
        if bid is not None:
            self.record_bid(market_id, bid, now)
        else:
            self._prune(entry, now)

        pnl_pct = _pct_change(bid, pos.entry_price)
        smoothed = statistics.median(b.price for b in entry.bids) if entry.bids else None
        smoothed_pct = _pct_change(smoothed, pos.entry_price)
        samples = len(entry.bids)

        def outcome(action, reason, exit_type=None, record=None) -> ExitOutcome:
            return ExitOutcome(
                market_id=market_id,
                action=action,
                exit_type=exit_type,
                reason=reason,
                pnl_pct=round(pnl_pct, 4) if pnl_pct is not None else None,
                smoothed_pnl_pct=round(smoothed_pct, 4) if smoothed_pct is not None else None,
                samples=samples,
                record=record,
            )

        # Pre-close: cut anything not in profit, let winners ride
        if snapshot.time_left_sec <= rules.pre_close_sec:
            if pnl_pct is not None and pnl_pct > 0:
                return outcome("hold", f"In profit {pnl_pct:+.1%} at {snapshot.time_left_sec:.0f}s, holding to resolution")
            reason = (
                f"Pre-close at {snapshot.time_left_sec:.0f}s, P/L "
                f"{'unknown' if pnl_pct is None else f'{pnl_pct:+.1%}'}"
            )
            return await self._exit(entry, "pre-close", reason, bid, outcome)

        if smoothed_pct is None or samples < rules.min_bid_samples:
            return outcome("hold", f"Warming up bid buffer ({samples}/{rules.min_bid_samples})")

        if smoothed_pct >= rules.take_profit_pct and held >= rules.min_hold_tp_sec:
            reason = f"Take profit: smoothed {smoothed_pct:+.1%} after {held:.0f}s"
            return await self._exit(entry, "take-profit", reason, bid, outcome)

        if smoothed_pct <= rules.emergency_loss_pct and held >= rules.min_hold_emergency_sec:
            reason = f"Emergency stop: smoothed {smoothed_pct:+.1%} after {held:.0f}s"
            return await self._exit(entry, "stop-loss", reason, bid, outcome)

        if smoothed_pct <= rules.stop_loss_pct and held >= rules.min_hold_sl_sec:
            reason = f"Stop loss: smoothed {smoothed_pct:+.1%} after {held:.0f}s"
            return await self._exit(entry, "stop-loss", reason, bid, outcome)

        return outcome("hold", f"Holding: smoothed {smoothed_pct:+.1%}, held {held:.0f}s")

    async def _exit(
        self,
        entry: MarketExitState,
        exit_type: ExitType,
        reason: str,
        last_bid: float | None,
        outcome: Callable[..., ExitOutcome],
    ) -> ExitOutcome:
        """OPEN → EXITING → CLOSED, or back to OPEN + flagged when the budget runs out."""
        pos = entry.position
        rules = self.rules
        entry.state = ExitState.EXITING
        logger.info("exit_triggered", market_id=pos.market_id, exit_type=exit_type, reason=reason)

        for attempt in range(1, rules.sell_retries + 1):
            if attempt > 1:
                await self._sleep(rules.retry_delay_sec)
                remote = await self._query_remote(pos.market_id, pos.side)
                if remote is None or remote.size < rules.min_sell_size:
                    logger.info("exit_confirmed_by_absence", market_id=pos.market_id, attempt=attempt)
                    record = await self._close(entry, exit_type, last_bid if last_bid is not None else pos.entry_price)
                    return outcome("exit", f"{reason} (position gone upstream)", exit_type, record)
                if abs(remote.size - pos.size) >= rules.min_sell_size:
                    drift = StateDriftError(
                        f"Local size {pos.size} != remote {remote.size} before retry",
                        market_id=pos.market_id,
                        local_size=pos.size,
                        remote_size=remote.size,
                    )
                    logger.warning("position_size_drift", attempt=attempt, **drift.to_dict())
                    pos.size = remote.size

            result = await self._submit_sell(pos, attempt)
            if result.filled:
                exit_price = result.fill_price or last_bid or pos.entry_price
                record = await self._close(entry, exit_type, exit_price)
                return outcome("exit", reason, exit_type, record)

        entry.state = ExitState.OPEN
        entry.flagged = True
        logger.error(
            "unresolved_risk",
            market_id=pos.market_id,
            side=pos.side,
            size=pos.size,
            exit_type=exit_type,
            attempts=rules.sell_retries,
        )
        await self._notify(
            f"⚠️ Unresolved risk: could not sell {pos.side} x{pos.size:.2f} on {pos.market_id} "
            f"after {rules.sell_retries} attempts ({exit_type})"
        )
        return outcome("flagged", f"{reason}; sell failed {rules.sell_retries}x", exit_type)

    async def _submit_sell(self, pos: Position, attempt: int) -> OrderResult:
        try:
            result = await self._gateway.sell(pos.market_id, pos.side, pos.size)
        except GatewayError as e:
            logger.warning("sell_error", market_id=pos.market_id, attempt=attempt, **e.to_dict())
            return OrderResult(success=False, status="failed", error=str(e))

        if result.filled:
            logger.info(
                "sell_filled",
                market_id=pos.market_id,
                attempt=attempt,
                size=pos.size,
                fill_price=result.fill_price,
            )
        else:
            logger.warning(
                "sell_not_filled",
                market_id=pos.market_id,
                attempt=attempt,
                status=result.status,
                error=result.error,
            )
        return result

    async def _query_remote(self, market_id: str, side: Side) -> AuthoritativePosition | None:
        try:
            remote = await self._positions.get_positions()
        except GatewayError as e:
            logger.warning("position_refresh_failed", market_id=market_id, **e.to_dict())
            # Unknown is not absence: keep the local estimate for this attempt
            entry = self.table.get(market_id)
            pos = entry.position
            return AuthoritativePosition(market_id=market_id, side=side, size=pos.size)
        for p in remote:
            if p.market_id == market_id and p.side == side:
                return p
        return None

    async def _close(self, entry: MarketExitState, exit_type: ExitType, exit_price: float) -> TradeRecord:
        pos = entry.position
        now = self._clock()
        record = TradeRecord.from_position(pos, exit_price=exit_price, exit_type=exit_type, closed_at=now)
        entry.state = ExitState.CLOSED
        entry.closed_at = now
        entry.bids = []
        entry.flagged = False

        logger.info(
            "position_closed",
            market_id=pos.market_id,
            exit_type=exit_type,
            exit_price=round(exit_price, 4),
            pnl=round(record.pnl, 4),
            won=record.won,
        )
        await self._record(record)
        icon = "✅" if record.won else "❌"
        await self._notify(
            f"{icon} {exit_type} {pos.side} {pos.asset} x{pos.size:.2f} "
            f"@ {pos.entry_price:.2f} → {exit_price:.2f} | P&L ${record.pnl:+.2f}"
        )
        return record

    async def _record(self, record: TradeRecord) -> bool:
        """Hand a closed trade to the recorder; a failed write is parked for retry."""
        if self._recorder is None:
            return True
        try:
            await self._recorder(record)
        except PersistenceError as e:
            logger.error(
                "unresolved_risk",
                reason="trade_not_recorded",
                trade_id=record.trade_id,
                market_id=record.market_id,
                record=record.model_dump(mode="json"),
                **e.to_dict(),
            )
            if record not in self.pending_records:
                self.pending_records.append(record)
            return False
        return True

    async def flush_pending(self) -> int:
        """Retry recording parked trades, oldest first. Returns how many went through."""
        flushed = 0
        for record in list(self.pending_records):
            if not await self._record(record):
                break
            self.pending_records.remove(record)
            flushed += 1
        if flushed:
            logger.info("pending_trades_recorded", count=flushed, remaining=len(self.pending_records))
        return flushed

    # ── Resolution ────────────────────────────────────────────────

    async def resolve(self, market_id: str, settled_outcome: Side) -> ExitOutcome:
        """Close a held position at its settled value: 1.0 if our side won, else 0.0."""
        entry = self.table.get(market_id)
        if entry is None or entry.state not in (ExitState.OPEN, ExitState.EXITING):
            return ExitOutcome(market_id=market_id, action="none")

        pos = entry.position
        settled_value = 1.0 if pos.side == settled_outcome else 0.0
        record = await self._close(entry, "resolution", settled_value)
        return ExitOutcome(
            market_id=market_id,
            action="exit",
            exit_type="resolution",
            reason=f"Resolved {settled_outcome}, held {pos.side}",
            record=record,
        )

    # ── Orphans ───────────────────────────────────────────────────

    def find_orphans(self, remote: list[AuthoritativePosition]) -> list[AuthoritativePosition]:
        """Live exchange positions for markets we do not track."""
        now = self._clock()
        tracked = self.tracked_markets
        orphans = []
        for p in remote:
            if p.size < self.rules.min_sell_size or p.market_id in tracked or not p.is_live:
                continue
            entry = self.table.get(p.market_id)
            if entry and entry.closed_at is not None and now - entry.closed_at < self.rules.post_exit_lag_sec:
                continue
            orphans.append(p)
        return orphans

    async def sweep_orphans(self, remote: list[AuthoritativePosition]) -> list[str]:
        """Sell every orphan unconditionally. Orphans produce no TradeRecord."""
        orphans = self.find_orphans(remote)
        if not orphans:
            return []

        logger.warning("orphans_found", count=len(orphans), markets=[o.market_id for o in orphans])
        sold: list[str] = []
        for i, orphan in enumerate(orphans):
            if i:
                await self._sleep(self.rules.retry_delay_sec)
            try:
                if orphan.token_id:
                    result = await self._gateway.sell_token(orphan.token_id, orphan.size)
                else:
                    result = await self._gateway.sell(orphan.market_id, orphan.side, orphan.size)
            except GatewayError as e:
                logger.warning("orphan_sell_error", market_id=orphan.market_id, **e.to_dict())
                continue

            if result.success:
                sold.append(orphan.market_id)
                logger.info("orphan_sold", market_id=orphan.market_id, side=orphan.side, size=orphan.size)
                await self._notify(f"♻️ Orphan sold: {orphan.side} x{orphan.size:.2f}\n{orphan.title[:50]}")
            else:
                logger.warning("orphan_sell_failed", market_id=orphan.market_id, error=result.error)
        return sold

    # ── Housekeeping ──────────────────────────────────────────────

    def evict_closed(self, listed: set[str]) -> list[str]:
        """Drop CLOSED rows once their market left the feed and the lag window passed."""
        now = self._clock()
        stale = [
            mid
            for mid, entry in self.table.items()
            if entry.state == ExitState.CLOSED
            and mid not in listed
            and entry.closed_at is not None
            and now - entry.closed_at >= self.rules.post_exit_lag_sec
        ]
        for mid in stale:
            del self.table[mid]
        if stale:
            logger.debug("closed_markets_evicted", markets=stale)
        return stale

    async def _notify(self, text: str) -> None:
        try:
            await self._notifier.notify(text)
        except Exception as e:
            logger.warning("notify_failed", error=str(e))
