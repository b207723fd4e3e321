"""
Evolution stages — risk budget that expands with demonstrated skill.

The stage is never stored: it is a pure function of the cumulative trade
count and win rate, recomputed every cycle. A stage is reached only when BOTH
its minimum trade count and its minimum win rate are satisfied; the engine
uses the highest such stage.
"""

from pydantic import BaseModel, ConfigDict


class EvolutionStage(BaseModel):
    """Risk parameters unlocked at one rung of the ladder."""

    model_config = ConfigDict(frozen=True)

    name: str
    min_trades: int
    min_win_rate: float
    max_stake: float
    kelly_fraction: float
    confidence_floor: float


DEFAULT_LADDER: tuple[EvolutionStage, ...] = (
    EvolutionStage(
        name="seedling",
        min_trades=0,
        min_win_rate=0.0,
        max_stake=1.0,
        kelly_fraction=0.10,
        confidence_floor=0.45,
    ),
    EvolutionStage(
        name="sprout",
        min_trades=20,
        min_win_rate=0.52,
        max_stake=2.0,
        kelly_fraction=0.15,
        confidence_floor=0.43,
    ),
    EvolutionStage(
        name="grower",
        min_trades=50,
        min_win_rate=0.54,
        max_stake=5.0,
        kelly_fraction=0.20,
        confidence_floor=0.41,
    ),
    EvolutionStage(
        name="veteran",
        min_trades=150,
        min_win_rate=0.55,
        max_stake=10.0,
        kelly_fraction=0.25,
        confidence_floor=0.40,
    ),
)


def current_stage(
    total_trades: int,
    wins: int,
    ladder: tuple[EvolutionStage, ...] = DEFAULT_LADDER,
) -> EvolutionStage:
    """Return the highest stage whose trade count AND win rate are both met."""
    win_rate = wins / total_trades if total_trades > 0 else 0.0
    reached = ladder[0]
    for stage in ladder:
        if total_trades >= stage.min_trades and win_rate >= stage.min_win_rate:
            reached = stage
    return reached


def is_first_stage(
    stage: EvolutionStage,
    ladder: tuple[EvolutionStage, ...] = DEFAULT_LADDER,
) -> bool:
    return stage.name == ladder[0].name
