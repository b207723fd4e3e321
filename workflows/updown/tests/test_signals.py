"""
Tests for the SignalEngine — each signal's firing conditions and
confidence range, plus the collector.
"""

import pytest

from workflows.updown.models import (
    HistoricalFeeds,
    HolderPosition,
    OddsPoint,
    PricePoint,
    TradeFlowEntry,
)
from workflows.updown.params import SignalParams
from workflows.updown.signals import (
    collect_signals,
    crowd_fade,
    mean_reversion,
    momentum,
    odds_shift,
    trend_confirm,
    volume_spike,
    whale_follow,
)

PARAMS = SignalParams()
EMPTY = HistoricalFeeds()


def _odds(*prices, start: float = 0.0, step: float = 10.0) -> list[OddsPoint]:
    return [OddsPoint(timestamp=start + i * step, up_price=p) for i, p in enumerate(prices)]


class TestCrowdFade:
    def test_quiet_market(self, make_snapshot):
        assert crowd_fade(make_snapshot(), EMPTY, PARAMS.crowd_fade) is None

    def test_fades_heavy_yes(self, make_snapshot):
        sig = crowd_fade(make_snapshot(up_price=0.80, down_price=0.20), EMPTY, PARAMS.crowd_fade)
        assert sig.side == "NO"
        assert 0.12 <= sig.confidence <= 0.35

    def test_more_skew_more_confidence(self, make_snapshot):
        mild = crowd_fade(make_snapshot(up_price=0.30, down_price=0.70), EMPTY, PARAMS.crowd_fade)
        heavy = crowd_fade(make_snapshot(up_price=0.10, down_price=0.90), EMPTY, PARAMS.crowd_fade)
        assert mild.side == heavy.side == "YES"
        assert heavy.confidence > mild.confidence


class TestMomentum:
    def test_below_noise_floor(self, make_snapshot):
        assert momentum(make_snapshot(live_price=100_002.0), EMPTY, PARAMS.momentum) is None

    def test_missing_prices(self, make_snapshot):
        assert momentum(make_snapshot(live_price=None), EMPTY, PARAMS.momentum) is None

    def test_follows_move(self, make_snapshot):
        up = momentum(make_snapshot(live_price=100_150.0, up_price=0.5, down_price=0.5), EMPTY, PARAMS.momentum)
        down = momentum(make_snapshot(live_price=99_850.0, up_price=0.5, down_price=0.5), EMPTY, PARAMS.momentum)
        assert up.side == "YES"
        assert down.side == "NO"
        assert 0.20 <= up.confidence <= 0.55

    def test_later_is_stronger(self, make_snapshot):
        early = momentum(make_snapshot(live_price=100_200.0, time_left_sec=280.0, up_price=0.5, down_price=0.5), EMPTY, PARAMS.momentum)
        late = momentum(make_snapshot(live_price=100_200.0, time_left_sec=30.0, up_price=0.5, down_price=0.5), EMPTY, PARAMS.momentum)
        assert late.confidence > early.confidence

    def test_disagreeing_odds_discount(self, make_snapshot):
        agree = momentum(make_snapshot(live_price=100_300.0, up_price=0.50, down_price=0.50), EMPTY, PARAMS.momentum)
        disagree = momentum(make_snapshot(live_price=100_300.0, up_price=0.30, down_price=0.70), EMPTY, PARAMS.momentum)
        assert disagree.confidence < agree.confidence

    def test_disagree_discount_applies_below_range_floor(self, make_snapshot):
        weak = make_snapshot(live_price=100_031.0, up_price=0.30, down_price=0.70)
        signal = momentum(weak, EMPTY, PARAMS.momentum)

        floor = PARAMS.momentum.min_confidence
        assert signal.confidence < floor
        assert signal.confidence == pytest.approx(floor * PARAMS.momentum.disagree_discount, abs=0.002)


class TestWhaleFollow:
    def _holders(self, yes: float, no: float, count: int = 4) -> HistoricalFeeds:
        holders = [HolderPosition(side="YES", notional=yes / 2)] * 2
        holders += [HolderPosition(side="NO", notional=no / (count - 2))] * (count - 2)
        return HistoricalFeeds(holders=holders)

    def test_too_few_holders(self, make_snapshot):
        feeds = HistoricalFeeds(holders=[HolderPosition(side="YES", notional=500)])
        assert whale_follow(make_snapshot(), feeds, PARAMS.whale_follow) is None

    def test_follows_dominant_side(self, make_snapshot):
        sig = whale_follow(make_snapshot(), self._holders(yes=900, no=100), PARAMS.whale_follow)
        assert sig.side == "YES"
        assert 0.10 <= sig.confidence <= 0.35

    def test_balanced_holders(self, make_snapshot):
        assert whale_follow(make_snapshot(), self._holders(yes=500, no=500), PARAMS.whale_follow) is None


class TestOddsShift:
    def test_shift_up(self, make_snapshot):
        feeds = HistoricalFeeds(odds_history=_odds(0.40, 0.44, 0.50))
        sig = odds_shift(make_snapshot(), feeds, PARAMS.odds_shift)
        assert sig.side == "YES"
        assert 0.10 <= sig.confidence <= 0.30

    def test_old_points_ignored(self, make_snapshot):
        feeds = HistoricalFeeds(odds_history=_odds(0.30, 0.50, 0.50, 0.51, step=40.0))
        assert odds_shift(make_snapshot(), feeds, PARAMS.odds_shift) is None

    def test_too_few_points(self, make_snapshot):
        feeds = HistoricalFeeds(odds_history=_odds(0.40, 0.60))
        assert odds_shift(make_snapshot(), feeds, PARAMS.odds_shift) is None


class TestMeanReversion:
    def test_fades_priced_stalled_move(self, make_snapshot):
        snap = make_snapshot(live_price=100_300.0, up_price=0.85, down_price=0.15)
        feeds = HistoricalFeeds(odds_history=_odds(0.85, 0.852, 0.855))
        sig = mean_reversion(snap, feeds, PARAMS.mean_reversion)
        assert sig.side == "NO"
        assert 0.12 <= sig.confidence <= 0.30

    def test_still_moving(self, make_snapshot):
        snap = make_snapshot(live_price=100_300.0, up_price=0.85, down_price=0.15)
        feeds = HistoricalFeeds(odds_history=_odds(0.78, 0.82, 0.85))
        assert mean_reversion(snap, feeds, PARAMS.mean_reversion) is None

    def test_not_priced(self, make_snapshot):
        snap = make_snapshot(live_price=100_300.0, up_price=0.60, down_price=0.40)
        feeds = HistoricalFeeds(odds_history=_odds(0.60, 0.60, 0.60))
        assert mean_reversion(snap, feeds, PARAMS.mean_reversion) is None


class TestVolumeSpike:
    def test_buy_flow_dominance(self, make_snapshot):
        flow = [TradeFlowEntry(side="NO", action="BUY", notional=80.0)] * 3 + [
            TradeFlowEntry(side="YES", action="BUY", notional=20.0),
            TradeFlowEntry(side="YES", action="SELL", notional=500.0),
        ]
        sig = volume_spike(make_snapshot(), HistoricalFeeds(trade_flow=flow), PARAMS.volume_spike)
        assert sig.side == "NO"
        assert 0.10 <= sig.confidence <= 0.30

    def test_thin_flow(self, make_snapshot):
        flow = [TradeFlowEntry(side="YES", action="BUY", notional=50.0)]
        assert volume_spike(make_snapshot(), HistoricalFeeds(trade_flow=flow), PARAMS.volume_spike) is None


class TestTrendConfirm:
    def _prices(self, *prices) -> HistoricalFeeds:
        return HistoricalFeeds(price_history=[PricePoint(timestamp=i, price=p) for i, p in enumerate(prices)])

    def test_trend_above_reference(self, make_snapshot):
        feeds = self._prices(*[100_000 + 20 * i for i in range(10)])
        sig = trend_confirm(make_snapshot(), feeds, PARAMS.trend_confirm)
        assert sig.side == "YES"
        assert 0.15 <= sig.confidence <= 0.45

    def test_closing_gap_from_below(self, make_snapshot):
        feeds = self._prices(*[99_950 + 5 * i for i in range(8)])
        sig = trend_confirm(make_snapshot(), feeds, PARAMS.trend_confirm)
        assert sig.side == "YES"

    def test_trend_far_on_wrong_side(self, make_snapshot):
        feeds = self._prices(*[99_000 + 10 * i for i in range(8)])
        assert trend_confirm(make_snapshot(), feeds, PARAMS.trend_confirm) is None

    def test_needs_samples(self, make_snapshot):
        feeds = self._prices(100_000, 100_050, 100_100)
        assert trend_confirm(make_snapshot(), feeds, PARAMS.trend_confirm) is None


class TestCollect:
    def test_quiet_market_fires_nothing(self, make_snapshot):
        assert collect_signals(make_snapshot()) == []

    def test_confidence_always_in_unit_range(self, make_snapshot):
        snap = make_snapshot(live_price=101_000.0, up_price=0.95, down_price=0.05, time_left_sec=10.0)
        feeds = HistoricalFeeds(odds_history=_odds(0.20, 0.60, 0.95))
        for sig in collect_signals(snap, feeds):
            assert 0.0 <= sig.confidence <= 1.0

    @pytest.mark.parametrize("live", [99_500.0, 100_500.0])
    def test_momentum_in_collection(self, make_snapshot, live):
        names = [s.strategy for s in collect_signals(make_snapshot(live_price=live, up_price=0.5, down_price=0.5))]
        assert "momentum" in names
