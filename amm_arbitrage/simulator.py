"""
Route profit simulator.

Walks a cyclic route hop by hop against the registry's current pool state,
using the same quote_output() the pools pay out with, so a simulated amount
is exactly what an uncontended execution would receive. Simulation never
mutates a pool.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .discovery import DEFAULT_MAX_HOPS, build_token_graph, find_cycles
from .exceptions import InsufficientLiquidityError, ValidationError
from .pool import Pool, quote_output
from .registry import PoolRegistry
from .scoring import DEFAULT_WEIGHTS, ScoreWeights, rank_by_net_profit, score_opportunity
from .types import ArbitrageOpportunity, Route, hop_count
from .utils import calculate_percentage, from_base_units, get_logger, to_base_units

logger = get_logger(__name__)

DEFAULT_GAS_PER_HOP = 150_000
DEFAULT_GAS_PRICE_GWEI = 20
DEFAULT_NATIVE_PRICE_USD = 2000
DEFAULT_MIN_PROFIT_PERCENT = 0.1

# Indicative reference-currency prices by symbol; unknown symbols price at 0
DEFAULT_REFERENCE_PRICES: Dict[str, Decimal] = {
    "WETH": Decimal("2000"),
    "ETH": Decimal("2000"),
    "USDC": Decimal("1"),
    "DAI": Decimal("1"),
    "USDT": Decimal("1"),
    "WBTC": Decimal("40000"),
    "BTC": Decimal("40000"),
}

GWEI = Decimal("1e-9")


@dataclass
class RouteSimulation:
    """Result of walking a route at one input amount."""

    route: Route
    amount_in: int
    amount_out: int
    viable: bool
    reason: Optional[str] = None
    pools: List[str] = field(default_factory=list)
    hop_outputs: List[int] = field(default_factory=list)

    @property
    def profit(self) -> int:
        return max(self.amount_out - self.amount_in, 0)

    @property
    def hop_count(self) -> int:
        return hop_count(self.route)


class RouteSimulator:
    """
    Prices routes against a PoolRegistry and turns profitable ones into
    scored ArbitrageOpportunity values.

    Settlement cost of a route is
    hops * gas_per_hop * gas_price_gwei * 1e-9 * native_price_usd.
    """

    def __init__(
        self,
        registry: PoolRegistry,
        min_profit_percent: float = DEFAULT_MIN_PROFIT_PERCENT,
        gas_per_hop: int = DEFAULT_GAS_PER_HOP,
        gas_price_gwei: float = DEFAULT_GAS_PRICE_GWEI,
        native_price_usd: float = DEFAULT_NATIVE_PRICE_USD,
        reference_prices: Optional[Mapping[str, Union[int, float, str, Decimal]]] = None,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
    ):
        self.registry = registry
        self.min_profit_percent = Decimal(str(min_profit_percent))
        self.gas_per_hop = gas_per_hop
        self.gas_price_gwei = Decimal(str(gas_price_gwei))
        self.native_price_usd = Decimal(str(native_price_usd))
        prices = DEFAULT_REFERENCE_PRICES if reference_prices is None else reference_prices
        self.reference_prices = {
            symbol.upper(): Decimal(str(price)) for symbol, price in prices.items()
        }
        self.weights = weights

    @classmethod
    def from_config(cls, registry: PoolRegistry, config) -> "RouteSimulator":
        """Build from an AgentConfig."""
        return cls(
            registry,
            min_profit_percent=config.min_profit_percent,
            gas_per_hop=config.gas_per_hop,
            gas_price_gwei=config.gas_price_gwei,
            native_price_usd=config.native_price_usd,
            reference_prices=config.reference_prices,
        )

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def simulate(self, route: Sequence[str], amount_in: int) -> RouteSimulation:
        """
        Walk `route` with `amount_in` of its first token.

        A missing pool, an empty reserve or a hop whose output truncates to
        zero makes the route non-viable with amount_out 0; none of them
        raise.

        Raises:
            ValidationError: amount_in <= 0
        """
        route = tuple(route)
        if isinstance(amount_in, bool) or not isinstance(amount_in, int):
            raise ValidationError(f"amount_in must be an integer, got {amount_in!r}")
        if amount_in <= 0:
            raise ValidationError(f"amount_in must be positive: {amount_in}")
        if len(route) < 2:
            return RouteSimulation(route, amount_in, 0, False, "route has no hops")

        amount = amount_in
        pools: List[str] = []
        outputs: List[int] = []
        for token_in, token_out in zip(route, route[1:]):
            pool = self.registry.get_pool(token_in, token_out)
            if pool is None:
                return self._dead_end(
                    route, amount_in, pools, outputs,
                    f"no pool for {token_in} -> {token_out}",
                )
            pools.append(pool.address)
            try:
                reserve_in = pool.reserve_of(token_in)
                reserve_out = pool.reserve_of(token_out)
                amount = quote_output(amount, reserve_in, reserve_out, pool.fee_bps)
            except InsufficientLiquidityError:
                return self._dead_end(
                    route, amount_in, pools, outputs, f"pool {pool.address} has no liquidity"
                )
            outputs.append(amount)
            if amount == 0:
                return self._dead_end(
                    route, amount_in, pools, outputs,
                    f"output truncates to zero at pool {pool.address}",
                )

        viable = amount > amount_in
        return RouteSimulation(
            route,
            amount_in,
            amount,
            viable,
            None if viable else "output does not exceed input",
            pools,
            outputs,
        )

    @staticmethod
    def _dead_end(route, amount_in, pools, outputs, reason) -> RouteSimulation:
        logger.debug("Route %s not viable: %s", "->".join(route), reason)
        return RouteSimulation(route, amount_in, 0, False, reason, pools, outputs)

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    def reference_price(self, symbol: str) -> Decimal:
        return self.reference_prices.get(symbol.upper(), Decimal("0"))

    def settlement_cost(self, hops: int) -> Decimal:
        """Estimated settlement cost of a route in the reference currency."""
        return (
            Decimal(hops * self.gas_per_hop)
            * self.gas_price_gwei
            * GWEI
            * self.native_price_usd
        )

    def evaluate(
        self, route: Sequence[str], amount_in: int
    ) -> Optional[ArbitrageOpportunity]:
        """
        Simulate and value a route.

        Returns:
            The opportunity, or None when the route is not profitable or its
            profit percent is below min_profit_percent
        """
        simulation = self.simulate(route, amount_in)
        if not simulation.viable:
            return None

        profit_percent = calculate_percentage(simulation.profit, amount_in)
        if profit_percent < self.min_profit_percent:
            return None

        start = self.registry.get_token(simulation.route[0])
        decimals = start.decimals if start else 18
        symbols = [self._symbol(address) for address in simulation.route]

        profit_value = from_base_units(simulation.profit, decimals) * self.reference_price(
            symbols[0]
        )
        cost = self.settlement_cost(simulation.hop_count)
        net_profit = profit_value - cost

        return ArbitrageOpportunity(
            route=simulation.route,
            route_symbols=symbols,
            amount_in=amount_in,
            amount_out=simulation.amount_out,
            profit=simulation.profit,
            profit_percent=profit_percent,
            profit_value=profit_value,
            settlement_cost=cost,
            net_profit=net_profit,
            score=score_opportunity(
                net_profit, profit_percent, simulation.hop_count, self.weights
            ),
            pools=simulation.pools,
        )

    def find_opportunities(
        self,
        start: str,
        probe_amounts: Iterable[Union[int, float, str, Decimal]],
        max_hops: int = DEFAULT_MAX_HOPS,
    ) -> List[ArbitrageOpportunity]:
        """
        Discover every route from `start` and evaluate it at each probe amount.

        Probe amounts are whole-token quantities scaled by the start token's
        decimals. Only viable opportunities are kept, highest net profit first.
        """
        token = self.registry.get_token(start)
        if token is None:
            logger.debug("Unknown start token %s", start)
            return []

        graph = build_token_graph(self.registry.pools())
        routes = find_cycles(graph, token.address, max_hops)
        amounts = [to_base_units(amount, token.decimals) for amount in probe_amounts]

        opportunities = []
        for route in routes:
            for amount_in in amounts:
                if amount_in <= 0:
                    continue
                opportunity = self.evaluate(route, amount_in)
                if opportunity is not None and opportunity.viable:
                    opportunities.append(opportunity)

        logger.debug(
            "%s: %d routes, %d viable opportunities",
            token.symbol,
            len(routes),
            len(opportunities),
        )
        return rank_by_net_profit(opportunities)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def route_pools(self, route: Sequence[str]) -> List[Pool]:
        """Pools along a route, skipping hops with no pool."""
        pools = []
        for token_in, token_out in zip(route, route[1:]):
            pool = self.registry.get_pool(token_in, token_out)
            if pool is not None:
                pools.append(pool)
        return pools

    def _symbol(self, address: str) -> str:
        token = self.registry.get_token(address)
        return token.symbol if token else address[:8]


def format_opportunity(opportunity: ArbitrageOpportunity, decimals: int = 18) -> str:
    """Console block for one opportunity."""
    width = 61
    rule = "+" + "-" * width + "+"

    def row(text: str) -> str:
        return f"| {text:<{width - 1}}|"

    lines = [
        rule,
        row("ARBITRAGE OPPORTUNITY"),
        rule,
        row(f"Route: {' -> '.join(opportunity.route_symbols)}"),
        row(f"Input: {from_base_units(opportunity.amount_in, decimals):.6f}"),
        row(f"Output: {from_base_units(opportunity.amount_out, decimals):.6f}"),
        rule,
        row(f"Profit: ${opportunity.profit_value:.4f}"),
        row(f"Profit %: {opportunity.profit_percent:.4f}%"),
        row(f"Settlement cost: ${opportunity.settlement_cost:.4f}"),
        row(f"Net profit: ${opportunity.net_profit:.4f}"),
        row(f"Score: {opportunity.score:.4f}"),
        rule,
    ]
    return "\n".join(lines)
