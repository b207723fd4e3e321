"""
Tunable parameter sets for the Up/Down trading core.

Every empirically-tuned threshold lives here as a named, independently
configurable pydantic model — one per signal, one for the decision gates and
one for exit management. Defaults are the values the live agent trades with.

Exit rules are grouped into strategy profiles stored in ``profiles.yaml``::

    active: simple
    profiles:
      simple:
        name: Simple TP/SL
        take_profit_pct: 0.20
        ...
"""

from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, Field

from rpoly.errors import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_PROFILES_PATH = Path(__file__).resolve().parent / "profiles.yaml"


# ── Signal Parameters ───────────────────────────────────────────────


class CrowdFadeParams(BaseModel):
    threshold: float = 0.62
    min_confidence: float = 0.12
    max_confidence: float = 0.35


class MomentumParams(BaseModel):
    noise_floor_pct: float = 0.0003
    full_strength_pct: float = 0.003
    min_confidence: float = 0.20
    max_confidence: float = 0.55
    min_time_weight: float = 0.5
    disagree_margin: float = 0.05
    disagree_discount: float = 0.6


class WhaleFollowParams(BaseModel):
    min_holders: int = 3
    min_notional: float = 50.0
    dominance: float = 0.60
    min_confidence: float = 0.10
    max_confidence: float = 0.35


class OddsShiftParams(BaseModel):
    lookback_sec: float = 60.0
    min_points: int = 3
    threshold: float = 0.05
    full_shift: float = 0.20
    min_confidence: float = 0.10
    max_confidence: float = 0.30


class MeanReversionParams(BaseModel):
    min_move_pct: float = 0.001
    full_move_pct: float = 0.005
    priced_high: float = 0.75
    priced_low: float = 0.25
    stall_points: int = 3
    stall_threshold: float = 0.01
    min_confidence: float = 0.12
    max_confidence: float = 0.30


class VolumeSpikeParams(BaseModel):
    min_buy_notional: float = 100.0
    dominance: float = 0.65
    min_confidence: float = 0.10
    max_confidence: float = 0.30


class TrendConfirmParams(BaseModel):
    min_samples: int = 8
    near_reference_pct: float = 0.001
    full_distance_pct: float = 0.003
    min_confidence: float = 0.15
    max_confidence: float = 0.45


class SignalParams(BaseModel):
    """One parameter set per signal function."""

    crowd_fade: CrowdFadeParams = Field(default_factory=CrowdFadeParams)
    momentum: MomentumParams = Field(default_factory=MomentumParams)
    whale_follow: WhaleFollowParams = Field(default_factory=WhaleFollowParams)
    odds_shift: OddsShiftParams = Field(default_factory=OddsShiftParams)
    mean_reversion: MeanReversionParams = Field(default_factory=MeanReversionParams)
    volume_spike: VolumeSpikeParams = Field(default_factory=VolumeSpikeParams)
    trend_confirm: TrendConfirmParams = Field(default_factory=TrendConfirmParams)


# ── Decision Gates ──────────────────────────────────────────────────


class EntryWindow(BaseModel):
    """Seconds-left range in which new entries are allowed."""

    min_time_left_sec: float
    max_time_left_sec: float
    max_entry_price: float


class DecisionConfig(BaseModel):
    """Thresholds for the DecisionCore gate sequence."""

    # Gate 1: market quality
    entry_windows: dict[str, EntryWindow] = Field(
        default_factory=lambda: {
            "5m": EntryWindow(min_time_left_sec=60, max_time_left_sec=240, max_entry_price=0.50),
            "15m": EntryWindow(min_time_left_sec=30, max_time_left_sec=480, max_entry_price=0.60),
        }
    )
    min_volume: float = 50.0
    min_liquidity: float = 100.0
    max_spread_pct: float = 0.12
    min_book_depth: float = 20.0

    # Gate 2 / sizing
    min_stake: float = 1.0
    max_bankroll_fraction: float = 0.10

    # Gate 3: daily drawdown
    max_daily_loss_fraction: float = 0.20

    # Gate 4: tilt
    max_tilt: int = 5
    tilt_pause_level: int = 4
    tilt_penalty_per_level: float = 0.06

    # Gate 5: regime
    volatile_deviation_pct: float = 0.0025
    volatile_odds_stdev: float = 0.08
    trending_deviation_pct: float = 0.0008

    # Gate 7: memory reweighting
    reweight_min_samples: int = 5

    # Gate 8: aggregation
    min_agreement: float = 0.20

    # Gate 9: calibration
    calibration_min_samples: int = 10
    calibration_margin: float = 0.05

    # Gate 10: time of day
    hourly_min_samples: int = 5
    hourly_sensitivity: float = 0.4
    hourly_max_adjustment: float = 0.10

    # Gate 12: regime dampening
    volatile_early_stage_penalty: float = 0.85

    # Gate 13: price bucket sanity
    price_bucket_min_samples: int = 10
    price_bucket_min_win_rate: float = 0.40
    price_bucket_penalty: float = 0.85

    # Gate 14: entry guards
    max_opposing_price: float = 0.75

    def entry_window(self, window_label: str) -> EntryWindow:
        return self.entry_windows.get(window_label) or self.entry_windows["5m"]


# ── Exit Rules / Strategy Profiles ──────────────────────────────────


class ExitRules(BaseModel):
    """Exit-management parameters of one strategy profile."""

    name: str = "Simple TP/SL"
    take_profit_pct: float = 0.20
    stop_loss_pct: float = -0.20
    emergency_loss_pct: float = -0.40
    min_hold_tp_sec: float = 45.0
    min_hold_sl_sec: float = 30.0
    min_hold_emergency_sec: float = 5.0
    pre_close_sec: float = 45.0
    bid_window_sec: float = 20.0
    bid_max_samples: int = 5
    min_bid_samples: int = 3
    sell_retries: int = 3
    retry_delay_sec: float = 1.0
    post_exit_lag_sec: float = 30.0
    min_sell_size: float = 0.01
    price_refresh_tolerance: float = 0.01


class StrategyProfiles(BaseModel):
    active: str
    profiles: dict[str, ExitRules]


def load_exit_rules(path: str | Path | None = None, profile: str | None = None) -> ExitRules:
    """Load the exit rules of a strategy profile from YAML.

    Args:
        path: Profiles file; defaults to the bundled ``profiles.yaml``.
        profile: Profile key; defaults to the file's ``active`` entry.

    Raises:
        ConfigurationError: If the file or the requested profile is missing.
    """
    profiles_path = Path(path) if path else DEFAULT_PROFILES_PATH
    if not profiles_path.exists():
        raise ConfigurationError(f"Strategy profiles not found at {profiles_path}")

    with open(profiles_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    profiles = StrategyProfiles(**data)
    key = profile or profiles.active
    rules = profiles.profiles.get(key)
    if rules is None:
        raise ConfigurationError(
            f"Unknown strategy profile {key!r}",
            detail=f"available: {sorted(profiles.profiles)}",
        )
    logger.info("strategy_profile_loaded", profile=key, name=rules.name)
    return rules
