"""
Tests for the ExitManager — smoothed TP/SL, hold guards, pre-close,
retry-with-reconciliation, resolution and orphan sweeping.
"""

from unittest.mock import AsyncMock

import pytest

from rpoly.errors import GatewayError, PersistenceError, PositionConflictError
from workflows.updown.exit_manager import ExitManager, ExitState
from workflows.updown.models import AuthoritativePosition, OrderBookTop, OrderResult

T0 = 1_760_000_000.0

FILLED = OrderResult(success=True, status="matched", fill_price=0.44, size=2.0)
FAILED = OrderResult(success=False, status="failed", error="no liquidity")
RESTING = OrderResult(success=True, status="resting", order_id="o-1")


def _snap(make_snapshot, bid: float | None, time_left: float = 180.0, **overrides):
    book = OrderBookTop(best_bid=bid, best_ask=(bid or 0.5) + 0.01, bid_depth=50.0, ask_depth=50.0)
    return make_snapshot(up_book=book, up_price=bid or 0.0, time_left_sec=time_left, **overrides)


def _remote(market_id="m1", side="YES", size=2.0, **kwargs) -> AuthoritativePosition:
    return AuthoritativePosition(market_id=market_id, side=side, size=size, **kwargs)


@pytest.fixture
def gateway():
    gw = AsyncMock()
    gw.sell.return_value = FILLED
    gw.sell_token.return_value = FILLED
    return gw


@pytest.fixture
def positions():
    src = AsyncMock()
    src.get_positions.return_value = [_remote()]
    return src


@pytest.fixture
def manager(gateway, positions, clock):
    return ExitManager(
        gateway,
        positions,
        recorder=AsyncMock(return_value={}),
        notifier=AsyncMock(),
        clock=clock,
        sleep=AsyncMock(),
    )


@pytest.fixture
def opened(manager, make_position):
    manager.open_position(make_position())
    return manager


async def _feed(manager, clock, make_snapshot, bid: float, offsets, time_left: float = 180.0):
    outcome = None
    for t in offsets:
        clock.now = T0 + t
        outcome = await manager.evaluate(_snap(make_snapshot, bid, time_left))
    return outcome


# ── State machine ───────────────────────────────────────────────────


class TestStates:
    def test_untracked_market_can_enter(self, manager):
        assert manager.state("m1") == ExitState.NONE
        assert manager.can_enter("m1")

    def test_open_blocks_reentry(self, opened, make_position):
        assert opened.state("m1") == ExitState.OPEN
        assert not opened.can_enter("m1")
        assert opened.tracked_markets == frozenset({"m1"})
        with pytest.raises(PositionConflictError) as exc:
            opened.open_position(make_position())
        assert exc.value.market_id == "m1"

    @pytest.mark.asyncio
    async def test_closed_market_not_reentered(self, opened, make_snapshot):
        await opened.resolve("m1", "YES")
        assert opened.state("m1") == ExitState.CLOSED
        assert not opened.can_enter("m1")
        assert opened.tracked_markets == frozenset()

    @pytest.mark.asyncio
    async def test_untracked_evaluation_is_noop(self, manager, make_snapshot):
        outcome = await manager.evaluate(_snap(make_snapshot, 0.9))
        assert outcome.action == "none"


# ── Smoothed exits ──────────────────────────────────────────────────


class TestTakeProfit:
    @pytest.mark.asyncio
    async def test_fires_after_min_hold(self, opened, clock, make_snapshot, gateway):
        outcome = await _feed(opened, clock, make_snapshot, 0.60, [35, 42])
        assert outcome.action == "hold"

        outcome = await _feed(opened, clock, make_snapshot, 0.60, [50])
        assert outcome.action == "exit"
        assert outcome.exit_type == "take-profit"
        assert outcome.smoothed_pnl_pct == pytest.approx(0.20)
        gateway.sell.assert_awaited_once_with("m1", "YES", 2.0)
        assert opened.state("m1") == ExitState.CLOSED

    @pytest.mark.asyncio
    async def test_held_too_briefly(self, opened, clock, make_snapshot, gateway):
        outcome = await _feed(opened, clock, make_snapshot, 0.60, [25, 32, 40])
        assert outcome.action == "hold"
        gateway.sell.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_spike_is_smoothed_away(self, opened, clock, make_snapshot, gateway):
        await _feed(opened, clock, make_snapshot, 0.50, [46, 48])
        outcome = await _feed(opened, clock, make_snapshot, 0.90, [50])
        assert outcome.action == "hold"
        assert outcome.pnl_pct == pytest.approx(0.8)
        gateway.sell.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_warm_up_needs_samples(self, opened, clock, make_snapshot):
        outcome = await _feed(opened, clock, make_snapshot, 0.70, [60, 61])
        assert outcome.action == "hold"
        assert outcome.reason.startswith("Warming up")
        assert outcome.samples == 2


class TestStopLoss:
    @pytest.mark.asyncio
    async def test_hold_guard(self, opened, clock, make_snapshot, gateway):
        outcome = await _feed(opened, clock, make_snapshot, 0.39, [11, 18, 25])
        assert outcome.action == "hold"
        gateway.sell.assert_not_awaited()

        outcome = await _feed(opened, clock, make_snapshot, 0.39, [31])
        assert outcome.action == "exit"
        assert outcome.exit_type == "stop-loss"
        assert outcome.reason.startswith("Stop loss")

    @pytest.mark.asyncio
    async def test_emergency_after_short_hold(self, opened, clock, make_snapshot):
        outcome = await _feed(opened, clock, make_snapshot, 0.29, [1, 3, 6])
        assert outcome.action == "exit"
        assert outcome.exit_type == "stop-loss"
        assert outcome.reason.startswith("Emergency stop")


class TestPreClose:
    @pytest.mark.asyncio
    async def test_profitable_rides_to_resolution(self, opened, clock, make_snapshot, gateway):
        outcome = await _feed(opened, clock, make_snapshot, 0.55, [10], time_left=40.0)
        assert outcome.action == "hold"
        gateway.sell.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bid", [0.45, 0.50])
    async def test_losing_or_flat_is_sold(self, opened, clock, make_snapshot, bid):
        outcome = await _feed(opened, clock, make_snapshot, bid, [10], time_left=40.0)
        assert outcome.action == "exit"
        assert outcome.exit_type == "pre-close"
        assert outcome.record.exit_price == 0.44


# ── Retry / reconciliation ──────────────────────────────────────────


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_adopts_remote_size(self, opened, clock, make_snapshot, gateway, positions):
        gateway.sell.side_effect = [FAILED, FILLED]
        positions.get_positions.return_value = [_remote(size=1.8)]

        outcome = await _feed(opened, clock, make_snapshot, 0.45, [10], time_left=40.0)

        assert outcome.action == "exit"
        assert gateway.sell.await_args_list[1].args == ("m1", "YES", 1.8)
        opened._sleep.assert_awaited_with(1.0)
        assert outcome.record.size == 1.8

    @pytest.mark.asyncio
    async def test_gateway_exception_counts_as_failure(self, opened, clock, make_snapshot, gateway):
        gateway.sell.side_effect = [GatewayError("boom", endpoint="/api/sell"), FILLED]
        outcome = await _feed(opened, clock, make_snapshot, 0.45, [10], time_left=40.0)
        assert outcome.action == "exit"
        assert gateway.sell.await_count == 2

    @pytest.mark.asyncio
    async def test_absence_upstream_closes(self, opened, clock, make_snapshot, gateway, positions):
        gateway.sell.return_value = FAILED
        positions.get_positions.return_value = []

        outcome = await _feed(opened, clock, make_snapshot, 0.45, [10], time_left=40.0)

        assert outcome.action == "exit"
        assert "(position gone upstream)" in outcome.reason
        assert outcome.record.exit_price == 0.45
        gateway.sell.assert_awaited_once()
        assert opened.state("m1") == ExitState.CLOSED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [FAILED, RESTING])
    async def test_budget_exhausted_flags(self, opened, clock, make_snapshot, gateway, result):
        gateway.sell.return_value = result

        outcome = await _feed(opened, clock, make_snapshot, 0.45, [10], time_left=40.0)

        assert outcome.action == "flagged"
        assert gateway.sell.await_count == 3
        assert opened.state("m1") == ExitState.OPEN
        assert opened.is_flagged("m1")
        text = opened._notifier.notify.await_args.args[0]
        assert text.startswith("⚠️ Unresolved risk")
        opened._recorder.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_position_query_keeps_local_size(self, opened, clock, make_snapshot, gateway, positions):
        gateway.sell.side_effect = [FAILED, FILLED]
        positions.get_positions.side_effect = GatewayError("down")

        outcome = await _feed(opened, clock, make_snapshot, 0.45, [10], time_left=40.0)

        assert outcome.action == "exit"
        assert gateway.sell.await_args_list[1].args == ("m1", "YES", 2.0)


# ── Resolution ──────────────────────────────────────────────────────


class TestResolution:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("settled,pnl", [("YES", 1.0), ("NO", -1.0)])
    async def test_settles_at_binary_value(self, opened, make_snapshot, settled, pnl):
        outcome = await opened.evaluate(_snap(make_snapshot, 0.5, settled_outcome=settled))

        assert outcome.exit_type == "resolution"
        assert outcome.record.pnl == pnl
        assert outcome.record.won is (pnl > 0)
        opened._recorder.assert_awaited_once_with(outcome.record)

    @pytest.mark.asyncio
    async def test_recorder_sees_record_once(self, opened):
        await opened.resolve("m1", "YES")
        again = await opened.resolve("m1", "YES")
        assert again.action == "none"
        opened._recorder.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_recording_is_parked_and_retried(self, opened):
        write_error = PersistenceError("disk full", key="trade_history")
        opened._recorder.side_effect = [write_error, write_error, {}]

        outcome = await opened.resolve("m1", "YES")

        assert outcome.action == "exit"
        assert opened.state("m1") == ExitState.CLOSED
        assert opened.pending_records == [outcome.record]

        assert await opened.flush_pending() == 0
        assert opened.pending_records == [outcome.record]

        assert await opened.flush_pending() == 1
        assert opened.pending_records == []
        assert opened._recorder.await_count == 3
        opened._recorder.assert_awaited_with(outcome.record)


# ── Reconcile ───────────────────────────────────────────────────────


class TestReconcile:
    def test_refreshes_entry_price(self, opened):
        opened.reconcile("m1", _remote(avg_price=0.53))
        assert opened.position("m1").entry_price == 0.53

    def test_small_price_difference_ignored(self, opened):
        opened.reconcile("m1", _remote(avg_price=0.505))
        assert opened.position("m1").entry_price == 0.50

    def test_adopts_remote_size(self, opened):
        opened.reconcile("m1", _remote(size=1.5))
        assert opened.position("m1").size == 1.5

    def test_other_side_ignored(self, opened):
        opened.reconcile("m1", _remote(side="NO", size=9.0))
        assert opened.position("m1").size == 2.0


# ── Orphans ─────────────────────────────────────────────────────────


class TestOrphans:
    @pytest.mark.asyncio
    async def test_find_orphans(self, opened, clock, make_position):
        opened.open_position(make_position(market_id="m5"))
        await opened.resolve("m5", "YES")
        clock.advance(10)

        remote = [
            _remote("m1", cur_price=0.5),  # tracked
            _remote("m2", cur_price=0.5),  # orphan
            _remote("m3", cur_price=1.0),  # resolved
            _remote("m4", size=0.001, cur_price=0.5),  # dust
            _remote("m5", cur_price=0.5),  # just closed, settlement lag
        ]
        assert [o.market_id for o in opened.find_orphans(remote)] == ["m2"]

        clock.advance(30)
        assert [o.market_id for o in opened.find_orphans(remote)] == ["m2", "m5"]

    @pytest.mark.asyncio
    async def test_sweep_sells_without_recording(self, manager, gateway):
        remote = [
            _remote("m2", cur_price=0.5, token_id="tok-2", title="BTC Up or Down"),
            _remote("m3", side="NO", size=1.5, cur_price=0.4),
        ]

        sold = await manager.sweep_orphans(remote)

        assert sold == ["m2", "m3"]
        gateway.sell_token.assert_awaited_once_with("tok-2", 2.0)
        gateway.sell.assert_awaited_once_with("m3", "NO", 1.5)
        manager._sleep.assert_awaited_once()
        manager._recorder.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sweep_survives_errors(self, manager, gateway):
        gateway.sell.side_effect = [GatewayError("boom"), FILLED]
        remote = [_remote("m2", cur_price=0.5), _remote("m3", cur_price=0.5)]
        assert await manager.sweep_orphans(remote) == ["m3"]


# ── Housekeeping ────────────────────────────────────────────────────


class TestEviction:
    @pytest.mark.asyncio
    async def test_closed_rows_dropped_after_lag_when_unlisted(self, opened, clock, make_position):
        opened.open_position(make_position(market_id="m2"))
        await opened.resolve("m1", "NO")

        clock.advance(10)
        assert opened.evict_closed(set()) == []

        clock.advance(20)
        assert opened.evict_closed({"m1"}) == []
        assert opened.evict_closed(set()) == ["m1"]

        assert set(opened.table) == {"m2"}
        assert opened.state("m2") == ExitState.OPEN
