"""
Read-only pool state providers.

The agent only ever reads market state: token list, pool reserves, and
optionally a server-side route quote. GraphQLDataProvider talks to an
indexer over GraphQL; RegistryDataProvider serves an in-memory
PoolRegistry (the bundled mock market and tests).
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from amm_arbitrage.exceptions import DataError, DataProviderError
from amm_arbitrage.pool import Pool
from amm_arbitrage.registry import PoolRegistry
from amm_arbitrage.simulator import DEFAULT_GAS_PER_HOP, RouteSimulator
from amm_arbitrage.types import Token
from amm_arbitrage.utils import calculate_percentage, get_logger, normalize_address

logger = get_logger(__name__)


@dataclass(frozen=True)
class PoolState:
    """Observed pool state. Reserves follow token0/token1."""

    address: str
    token0: Token
    token1: Token
    reserve0: int
    reserve1: int
    fee_bps: int
    total_shares: int = 0

    @classmethod
    def from_pool(cls, pool: Pool) -> "PoolState":
        return cls(
            address=pool.address,
            token0=pool.token0,
            token1=pool.token1,
            reserve0=pool.reserve0,
            reserve1=pool.reserve1,
            fee_bps=pool.fee_bps,
            total_shares=pool.total_shares,
        )


@dataclass(frozen=True)
class RouteProfit:
    """Route quote as reported by a provider."""

    route: List[str]
    amount_in: int
    amount_out: int
    profit: int
    profit_percent: Decimal
    gas_estimate: int
    viable: bool


class DataProvider(Protocol):
    async def list_tokens(self) -> List[Token]: ...

    async def list_pools(self) -> List[PoolState]: ...

    async def pools_by_token(self, token: str) -> List[PoolState]: ...

    async def calculate_route_profit(
        self, route: Sequence[str], amount_in: int
    ) -> RouteProfit: ...


# ----------------------------------------------------------------------
# GraphQL
# ----------------------------------------------------------------------

_TOKEN_FIELDS = "address symbol decimals name"
_POOL_FIELDS = (
    "address token0 { %s } token1 { %s } reserve0 reserve1 swapFee totalSupply"
    % (_TOKEN_FIELDS, _TOKEN_FIELDS)
)

TOKENS_QUERY = "query { tokens { %s } }" % _TOKEN_FIELDS
POOLS_QUERY = "query { pools { %s } }" % _POOL_FIELDS
POOLS_BY_TOKEN_QUERY = (
    "query($token: String!) { poolsByToken(token: $token) { %s } }" % _POOL_FIELDS
)
ROUTE_PROFIT_QUERY = """
query($route: [String!]!, $amountIn: String!) {
  calculateRouteProfit(route: $route, amountIn: $amountIn) {
    route amountIn amountOut profit profitPercent gasEstimate viable
  }
}
"""


def parse_token(data: Dict[str, Any]) -> Token:
    try:
        return Token(
            address=data["address"],
            decimals=int(data.get("decimals", 18)),
            symbol=data.get("symbol") or "",
            name=data.get("name") or "",
        )
    except (KeyError, TypeError, ValueError) as e:
        raise DataError(f"Malformed token record: {data!r}", source="graphql") from e


def parse_pool(data: Dict[str, Any]) -> PoolState:
    """Indexer pool record -> PoolState. Amounts arrive as decimal strings."""
    try:
        return PoolState(
            address=normalize_address(data["address"]),
            token0=parse_token(data["token0"]),
            token1=parse_token(data["token1"]),
            reserve0=int(data["reserve0"]),
            reserve1=int(data["reserve1"]),
            fee_bps=int(data["swapFee"]),
            total_shares=int(data.get("totalSupply") or 0),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise DataError(f"Malformed pool record: {data!r}", source="graphql") from e


def parse_route_profit(data: Dict[str, Any]) -> RouteProfit:
    try:
        return RouteProfit(
            route=[normalize_address(a) for a in data["route"]],
            amount_in=int(data["amountIn"]),
            amount_out=int(data["amountOut"]),
            profit=int(data["profit"]),
            profit_percent=Decimal(str(data["profitPercent"]).rstrip("%") or "0"),
            gas_estimate=int(data["gasEstimate"]),
            viable=bool(data["viable"]),
        )
    except (KeyError, TypeError, ValueError, ArithmeticError) as e:
        raise DataError(f"Malformed route quote: {data!r}", source="graphql") from e


class GraphQLDataProvider:
    """
    Indexer client over GraphQL POST.

    Transport failures, non-200 answers and GraphQL `errors` all surface as
    DataProviderError; malformed records as DataError.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session

    async def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict:
        payload = {"query": query, "variables": variables or {}}
        try:
            if self._session is not None:
                return await self._post(self._session, payload)
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                return await self._post(session, payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DataProviderError(
                f"GraphQL request failed: {e}", endpoint=self.endpoint
            ) from e

    async def _post(self, session: aiohttp.ClientSession, payload: Dict) -> Dict:
        async with session.post(self.endpoint, json=payload) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise DataProviderError(
                    f"GraphQL HTTP {resp.status}",
                    endpoint=self.endpoint,
                    status_code=resp.status,
                    details={"body": text[:500]},
                )
            body = await resp.json(content_type=None)

        if not isinstance(body, dict):
            raise DataProviderError("GraphQL response is not an object", endpoint=self.endpoint)
        if body.get("errors"):
            raise DataProviderError(
                f"GraphQL errors: {body['errors']}",
                endpoint=self.endpoint,
                details={"errors": body["errors"]},
            )
        data = body.get("data")
        if not isinstance(data, dict):
            raise DataProviderError("GraphQL response has no data", endpoint=self.endpoint)
        return data

    async def list_tokens(self) -> List[Token]:
        data = await self.query(TOKENS_QUERY)
        return [parse_token(t) for t in data.get("tokens") or []]

    async def list_pools(self) -> List[PoolState]:
        data = await self.query(POOLS_QUERY)
        return [parse_pool(p) for p in data.get("pools") or []]

    async def pools_by_token(self, token: str) -> List[PoolState]:
        data = await self.query(POOLS_BY_TOKEN_QUERY, {"token": normalize_address(token)})
        return [parse_pool(p) for p in data.get("poolsByToken") or []]

    async def calculate_route_profit(
        self, route: Sequence[str], amount_in: int
    ) -> RouteProfit:
        data = await self.query(
            ROUTE_PROFIT_QUERY,
            {"route": [normalize_address(a) for a in route], "amountIn": str(amount_in)},
        )
        if not data.get("calculateRouteProfit"):
            raise DataError("Empty route quote", source="graphql")
        return parse_route_profit(data["calculateRouteProfit"])


# ----------------------------------------------------------------------
# In-memory
# ----------------------------------------------------------------------


class RegistryDataProvider:
    """Serves a live PoolRegistry; reads always reflect current reserves."""

    def __init__(self, registry: PoolRegistry, gas_per_hop: int = DEFAULT_GAS_PER_HOP):
        self.registry = registry
        self.gas_per_hop = gas_per_hop
        self._simulator = RouteSimulator(registry)

    async def list_tokens(self) -> List[Token]:
        return self.registry.tokens()

    async def list_pools(self) -> List[PoolState]:
        return [PoolState.from_pool(pool) for pool in self.registry.pools()]

    async def pools_by_token(self, token: str) -> List[PoolState]:
        return [PoolState.from_pool(pool) for pool in self.registry.pools_for_token(token)]

    async def calculate_route_profit(
        self, route: Sequence[str], amount_in: int
    ) -> RouteProfit:
        simulation = self._simulator.simulate(route, amount_in)
        return RouteProfit(
            route=list(simulation.route),
            amount_in=amount_in,
            amount_out=simulation.amount_out,
            profit=simulation.profit,
            profit_percent=calculate_percentage(simulation.profit, amount_in),
            gas_estimate=len(simulation.pools) * self.gas_per_hop,
            viable=simulation.viable,
        )
