"""
Constant-product pool arbitrage.

Integer-exact pool pricing and liquidity accounting, cyclic route discovery
over the token graph, route simulation with the pools' own pricing formula,
and opportunity scoring.
"""

from amm_arbitrage.discovery import build_token_graph, discover_routes, find_cycles
from amm_arbitrage.pool import Pool, ReserveUpdate, quote_output
from amm_arbitrage.registry import PoolRegistry
from amm_arbitrage.scoring import ScoreWeights, rank_by_net_profit, ranked_shortlist
from amm_arbitrage.simulator import RouteSimulation, RouteSimulator, format_opportunity
from amm_arbitrage.types import (
    ArbitrageOpportunity,
    ExecutionDecision,
    SwapStep,
    Token,
    TransactionResult,
    Urgency,
)
from amm_arbitrage.version import __version__

PROJECT_NAME = "amm-arbitrage-agent"
VERSION = __version__

__all__ = [
    "PROJECT_NAME",
    "VERSION",
    "__version__",
    "ArbitrageOpportunity",
    "ExecutionDecision",
    "Pool",
    "PoolRegistry",
    "ReserveUpdate",
    "RouteSimulation",
    "RouteSimulator",
    "ScoreWeights",
    "SwapStep",
    "Token",
    "TransactionResult",
    "Urgency",
    "build_token_graph",
    "discover_routes",
    "find_cycles",
    "format_opportunity",
    "quote_output",
    "rank_by_net_profit",
    "ranked_shortlist",
]
