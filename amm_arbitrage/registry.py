"""
Token and pool store.

A PoolRegistry owns the known tokens and at most one pool per unordered token
pair. It is an ordinary object: the orchestrator builds one per scan cycle
from the data provider's snapshot, and tests build their own.
"""

from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union

from .exceptions import DataError, DuplicatePoolError, ValidationError
from .pool import DEFAULT_FEE_BPS, Pool
from .types import Token
from .utils import normalize_address

TokenRef = Union[Token, str]


def pair_key(token_a: TokenRef, token_b: TokenRef) -> Tuple[str, str]:
    """Order-insensitive key for a token pair."""
    a = token_a.address if isinstance(token_a, Token) else normalize_address(token_a)
    b = token_b.address if isinstance(token_b, Token) else normalize_address(token_b)
    return (a, b) if a < b else (b, a)


class PoolRegistry:
    """Maps token pairs to pools. Iteration follows insertion order."""

    def __init__(self):
        self._tokens: Dict[str, Token] = {}
        self._pools: Dict[Tuple[str, str], Pool] = {}
        self._pools_by_address: Dict[str, Pool] = {}

    def add_token(self, token: Token) -> Token:
        """Register a token; re-adding a known address returns the existing one."""
        return self._tokens.setdefault(token.address, token)

    def get_token(self, address: str) -> Optional[Token]:
        return self._tokens.get(normalize_address(address))

    def tokens(self) -> List[Token]:
        return list(self._tokens.values())

    def pools(self) -> List[Pool]:
        return list(self._pools.values())

    def create_pool(
        self,
        token_a: Token,
        token_b: Token,
        fee_bps: int = DEFAULT_FEE_BPS,
        address: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> Pool:
        """Create an empty pool for a new pair."""
        return self.add_pool(
            Pool(token_a, token_b, fee_bps=fee_bps, address=address, clock=clock)
        )

    def add_pool(self, pool: Pool) -> Pool:
        key = pair_key(pool.token0, pool.token1)
        if key in self._pools:
            raise DuplicatePoolError(
                f"Pool already registered for {pool.token0.symbol}/{pool.token1.symbol}",
                {"existing": self._pools[key].address, "new": pool.address},
            )
        self.add_token(pool.token0)
        self.add_token(pool.token1)
        self._pools[key] = pool
        self._pools_by_address[pool.address] = pool
        return pool

    def get_pool(self, token_a: TokenRef, token_b: TokenRef) -> Optional[Pool]:
        """Pool connecting two tokens in either order, or None."""
        return self._pools.get(pair_key(token_a, token_b))

    def get_pool_by_address(self, address: str) -> Optional[Pool]:
        return self._pools_by_address.get(normalize_address(address))

    def pools_for_token(self, token: TokenRef) -> List[Pool]:
        return [pool for pool in self._pools.values() if pool.has_token(token)]

    def __len__(self) -> int:
        return len(self._pools)

    def __contains__(self, pair) -> bool:
        token_a, token_b = pair
        return pair_key(token_a, token_b) in self._pools

    @classmethod
    def from_snapshot(
        cls, tokens: Iterable[Token], pool_states: Iterable["PoolStateLike"]
    ) -> "PoolRegistry":
        """
        Build a registry from provider state. A pool whose tokens were not
        listed is still registered with the tokens it carries.
        """
        registry = cls()
        for token in tokens:
            registry.add_token(token)
        for state in pool_states:
            try:
                pool = Pool.from_state(
                    state.token0,
                    state.token1,
                    state.reserve0,
                    state.reserve1,
                    fee_bps=state.fee_bps,
                    total_shares=state.total_shares,
                    address=state.address,
                )
            except ValidationError as e:
                raise DataError(
                    f"Invalid pool state for {state.address}: {e}", source="snapshot"
                ) from e
            registry.add_pool(pool)
        return registry


class PoolStateLike(Protocol):
    """Attributes read by PoolRegistry.from_snapshot (see data_provider.PoolState)."""

    address: str
    token0: Token
    token1: Token
    reserve0: int
    reserve1: int
    fee_bps: int
    total_shares: int
