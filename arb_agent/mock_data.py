"""
Bundled mock market: four tokens, four 30 bps pools.

WETH/DAI is priced about 5% above WETH/USDC and USDC/DAI sits slightly off
peg, so the WETH -> DAI -> USDC -> WETH triangle is profitable at small
sizes. Used by `--mock` and by the tests.
"""

from typing import Callable, Dict, Optional

from amm_arbitrage.pool import Pool
from amm_arbitrage.registry import PoolRegistry
from amm_arbitrage.types import Token
from amm_arbitrage.utils import to_base_units

TOKENS: Dict[str, Token] = {
    "WETH": Token("0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2", 18, "WETH", "Wrapped ETH"),
    "USDC": Token("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", 6, "USDC", "USD Coin"),
    "DAI": Token("0x6b175474e89094c44da98b954eedeac495271d0f", 18, "DAI", "Dai Stablecoin"),
    "WBTC": Token("0x2260fac5e5542a773aa44fbcfedf7c193bc2c599", 8, "WBTC", "Wrapped BTC"),
}

# (address, token_a, token_b, reserve_a, reserve_b, total_supply) in whole units
POOLS = (
    ("0xpool1wethusdc", "WETH", "USDC", 100, 200_000, 1_000),
    ("0xpool2wethdai", "WETH", "DAI", 50, 105_000, 500),
    ("0xpool3usdcdai", "USDC", "DAI", 500_000, 497_500, 5_000),
    ("0xpool4wbtcweth", "WBTC", "WETH", 10, 200, 200),
)

FEE_BPS = 30


def build_mock_registry(clock: Optional[Callable[[], float]] = None) -> PoolRegistry:
    """Fresh registry holding the mock market."""
    registry = PoolRegistry()
    for token in TOKENS.values():
        registry.add_token(token)

    for address, sym_a, sym_b, reserve_a, reserve_b, supply in POOLS:
        token_a, token_b = TOKENS[sym_a], TOKENS[sym_b]
        registry.add_pool(
            Pool.from_state(
                token_a,
                token_b,
                to_base_units(reserve_a, token_a.decimals),
                to_base_units(reserve_b, token_b.decimals),
                fee_bps=FEE_BPS,
                # LP share supply is denominated in 18 decimals
                total_shares=to_base_units(supply, 18),
                address=address,
                clock=clock,
            )
        )
    return registry
