"""
Autonomous arbitrage agent: reads pool state from a data provider, finds
and ranks cyclic routes, consults an advisory oracle, and executes approved
routes through a settlement client.
"""

from arb_agent.data_provider import (
    GraphQLDataProvider,
    PoolState,
    RegistryDataProvider,
    RouteProfit,
)
from arb_agent.executor import (
    Executor,
    JsonRpcSettlementClient,
    PreflightResult,
    SettlementReceipt,
    SimulatedSettlement,
)
from arb_agent.oracle import MarketAnalysis, OracleClient
from arb_agent.orchestrator import AgentState, AgentStatus, ArbitrageAgent

__all__ = [
    "AgentState",
    "AgentStatus",
    "ArbitrageAgent",
    "Executor",
    "GraphQLDataProvider",
    "JsonRpcSettlementClient",
    "MarketAnalysis",
    "OracleClient",
    "PoolState",
    "PreflightResult",
    "RegistryDataProvider",
    "RouteProfit",
    "SettlementReceipt",
    "SimulatedSettlement",
]
