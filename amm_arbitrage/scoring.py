"""
Opportunity scoring and ranking.

score = w_profit * normalize(net_profit, profit_cap)
      + w_percent * normalize(profit_percent, percent_cap)
      + w_hops * (1 / hop_count)

normalize() clamps to [0, 1], so each term saturates once an opportunity is
profitable (or short) enough. Both orderings are stable sorts: ties fall back
to fewer hops, then to the order the opportunities were produced in.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Union

from .types import ArbitrageOpportunity
from .utils import clamp

Number = Union[int, float, Decimal]


@dataclass(frozen=True)
class ScoreWeights:
    """Weights and saturation caps for the opportunity score."""

    profit: float = 0.5
    percent: float = 0.3
    hops: float = 0.2
    profit_cap: float = 100.0  # reference currency
    percent_cap: float = 10.0  # percent


DEFAULT_WEIGHTS = ScoreWeights()


def normalize(value: Number, cap: float) -> float:
    """value / cap clamped to [0, 1]."""
    if cap <= 0:
        raise ValueError(f"cap must be positive: {cap}")
    return clamp(float(value) / cap, 0.0, 1.0)


def score_opportunity(
    net_profit: Number,
    profit_percent: Number,
    hop_count: int,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> float:
    """Weighted score in [0, sum(weights)]."""
    if hop_count <= 0:
        raise ValueError(f"hop_count must be positive: {hop_count}")
    return (
        weights.profit * normalize(net_profit, weights.profit_cap)
        + weights.percent * normalize(profit_percent, weights.percent_cap)
        + weights.hops * (1.0 / hop_count)
    )


def rank_by_net_profit(
    opportunities: Iterable[ArbitrageOpportunity],
) -> List[ArbitrageOpportunity]:
    """Primary queue: highest net profit first."""
    return sorted(opportunities, key=lambda o: (-o.net_profit, o.hop_count))


def ranked_shortlist(
    opportunities: Iterable[ArbitrageOpportunity], limit: Optional[int] = None
) -> List[ArbitrageOpportunity]:
    """Highest score first, truncated to `limit` when given."""
    ranked = sorted(opportunities, key=lambda o: (-o.score, o.hop_count))
    return ranked if limit is None else ranked[:limit]
