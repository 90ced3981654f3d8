"""
Constant-product liquidity pool with integer reserve and share accounting.

Pricing uses the x*y=k invariant with the fee taken from the input:

    amountInWithFee = amountIn * (10000 - feeBps)
    amountOut = floor(amountInWithFee * reserveOut /
                      (reserveIn * 10000 + amountInWithFee))

All arithmetic is on Python ints (unbounded) with floor division, in exactly
this order. The route simulator calls quote_output() directly, so the
simulated output of a hop is always the output the pool would pay.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple, Union

from .exceptions import (
    DeadlineExpiredError,
    InsufficientInputError,
    InsufficientLiquidityBurnedError,
    InsufficientLiquidityError,
    InsufficientLiquidityMintedError,
    InsufficientSharesError,
    InvalidTokenError,
    ReentrancyError,
    SlippageExceededError,
    ValidationError,
    ZeroAmountError,
)
from .types import Token
from .utils import get_current_timestamp, get_logger, normalize_address

logger = get_logger(__name__)

FEE_DENOMINATOR = 10_000
DEFAULT_FEE_BPS = 30

# Holder credited with shares that exist outside this process (pool snapshots)
EXTERNAL_HOLDER = "external"


def _require_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"{name} must be an integer amount, got {type(value).__name__}"
        )
    return value


def _validate_fee(fee_bps: int) -> int:
    fee_bps = _require_int(fee_bps, "fee_bps")
    if not 0 <= fee_bps < FEE_DENOMINATOR:
        raise ValidationError(f"fee_bps must be in [0, {FEE_DENOMINATOR}): {fee_bps}")
    return fee_bps


def quote_output(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
    """
    Output amount of a swap against the given reserves.

    Args:
        amount_in: Input amount in native units
        reserve_in: Reserve of the input token
        reserve_out: Reserve of the output token
        fee_bps: Swap fee in basis points (30 = 0.30%)

    Returns:
        Output amount, truncated toward zero. Always < reserve_out.

    Raises:
        InsufficientInputError: amount_in <= 0
        InsufficientLiquidityError: either reserve <= 0
    """
    amount_in = _require_int(amount_in, "amount_in")
    reserve_in = _require_int(reserve_in, "reserve_in")
    reserve_out = _require_int(reserve_out, "reserve_out")
    fee_bps = _validate_fee(fee_bps)

    if amount_in <= 0:
        raise InsufficientInputError(f"amount_in must be positive: {amount_in}")
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidityError(
            f"Reserves must be positive: in={reserve_in}, out={reserve_out}"
        )

    amount_in_with_fee = amount_in * (FEE_DENOMINATOR - fee_bps)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * FEE_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


def babylonian_sqrt(y: int) -> int:
    """Floor of the square root of a non-negative int (Babylonian method)."""
    y = _require_int(y, "y")
    if y < 0:
        raise ValidationError(f"Cannot take square root of negative value: {y}")
    if y > 3:
        z = y
        x = y // 2 + 1
        while x < z:
            z = x
            x = (y // x + x) // 2
        return z
    if y != 0:
        return 1
    return 0


@dataclass(frozen=True)
class ReserveUpdate:
    """Post-operation reserves published by every mutating pool call."""

    pool: str
    reserve0: int
    reserve1: int


ReserveListener = Callable[[ReserveUpdate], None]
TokenRef = Union[Token, str]


class Pool:
    """
    Two-asset constant-product pool.

    token0 < token1 by address. Reserves and share balances change only
    through add_liquidity(), remove_liquidity() and swap(). Each of those
    runs under a per-pool non-blocking lock: an overlapping mutating call
    (another thread, or a reserve listener calling back into the pool) is
    rejected with ReentrancyError instead of waiting. Every check runs
    before the first state write, so a rejected call leaves the pool
    untouched.
    """

    def __init__(
        self,
        token_a: Token,
        token_b: Token,
        fee_bps: int = DEFAULT_FEE_BPS,
        address: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        if token_a == token_b:
            raise ValidationError(
                f"Pool tokens must differ: {token_a.address} == {token_b.address}"
            )
        self.token0, self.token1 = sorted((token_a, token_b))
        self.fee_bps = _validate_fee(fee_bps)
        self.address = (
            normalize_address(address)
            if address
            else f"pool:{self.token0.address}:{self.token1.address}"
        )

        self._reserve0 = 0
        self._reserve1 = 0
        self._total_shares = 0
        self._shares: Dict[str, int] = {}

        self._lock = threading.Lock()
        self._listeners: List[ReserveListener] = []
        self._clock = clock or get_current_timestamp

    @classmethod
    def from_state(
        cls,
        token_a: Token,
        token_b: Token,
        reserve_a: int,
        reserve_b: int,
        fee_bps: int = DEFAULT_FEE_BPS,
        total_shares: int = 0,
        address: Optional[str] = None,
        holder: str = EXTERNAL_HOLDER,
        clock: Optional[Callable[[], float]] = None,
    ) -> "Pool":
        """
        Build a pool from observed state (e.g. a data-provider snapshot).

        reserve_a/reserve_b follow token_a/token_b and are reordered with the
        tokens. Outstanding shares are credited to `holder` so that the share
        ledger still sums to total_shares.
        """
        pool = cls(token_a, token_b, fee_bps=fee_bps, address=address, clock=clock)
        reserve_a = _require_int(reserve_a, "reserve_a")
        reserve_b = _require_int(reserve_b, "reserve_b")
        total_shares = _require_int(total_shares, "total_shares")
        if reserve_a < 0 or reserve_b < 0 or total_shares < 0:
            raise ValidationError(
                "Pool state must be non-negative",
                {"reserve_a": reserve_a, "reserve_b": reserve_b, "total": total_shares},
            )

        if pool.token0 == token_a:
            pool._reserve0, pool._reserve1 = reserve_a, reserve_b
        else:
            pool._reserve0, pool._reserve1 = reserve_b, reserve_a

        pool._total_shares = total_shares
        if total_shares:
            pool._shares[holder] = total_shares
        return pool

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def reserve0(self) -> int:
        return self._reserve0

    @property
    def reserve1(self) -> int:
        return self._reserve1

    @property
    def reserves(self) -> Tuple[int, int]:
        return self._reserve0, self._reserve1

    @property
    def total_shares(self) -> int:
        return self._total_shares

    @property
    def is_locked(self) -> bool:
        return self._lock.locked()

    def shares_of(self, holder: str) -> int:
        return self._shares.get(holder, 0)

    def holders(self) -> Dict[str, int]:
        return dict(self._shares)

    def has_token(self, token: TokenRef) -> bool:
        address = _address_of(token)
        return address in (self.token0.address, self.token1.address)

    def other(self, token: TokenRef) -> Token:
        """The pool's token on the other side of `token`."""
        address = _address_of(token)
        if address == self.token0.address:
            return self.token1
        if address == self.token1.address:
            return self.token0
        raise InvalidTokenError(
            f"Token {address} is not in pool {self.address}", pool_address=self.address
        )

    def reserve_of(self, token: TokenRef) -> int:
        address = _address_of(token)
        if address == self.token0.address:
            return self._reserve0
        if address == self.token1.address:
            return self._reserve1
        raise InvalidTokenError(
            f"Token {address} is not in pool {self.address}", pool_address=self.address
        )

    def quote(self, token_in: TokenRef, amount_in: int) -> int:
        """Output for amount_in of token_in at current reserves. Does not mutate."""
        reserve_in = self.reserve_of(token_in)
        reserve_out = self.reserve_of(self.other(token_in))
        return quote_output(amount_in, reserve_in, reserve_out, self.fee_bps)

    def spot_price(self, token: TokenRef) -> Decimal:
        """
        Marginal price of one whole `token` in whole units of the other token,
        fee excluded. Display only; 0 when either reserve is empty.
        """
        base = self._token(token)
        quote = self.other(base)
        reserve_base = self.reserve_of(base)
        reserve_quote = self.reserve_of(quote)
        if reserve_base == 0 or reserve_quote == 0:
            return Decimal("0")
        base_units = Decimal(reserve_base) / (Decimal(10) ** base.decimals)
        quote_units = Decimal(reserve_quote) / (Decimal(10) ** quote.decimals)
        return quote_units / base_units

    # ------------------------------------------------------------------
    # Reserve-update notification
    # ------------------------------------------------------------------

    def add_listener(self, listener: ReserveListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ReserveListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        update = ReserveUpdate(self.address, self._reserve0, self._reserve1)
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                # state is already committed
                logger.exception("Reserve listener failed for pool %s", self.address)

    @contextmanager
    def _guard(self, operation: str):
        if not self._lock.acquire(blocking=False):
            raise ReentrancyError(
                f"{operation} rejected: pool {self.address} is busy",
                pool_address=self.address,
            )
        try:
            yield
        finally:
            self._lock.release()

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def add_liquidity(self, amount0: int, amount1: int, provider: str) -> int:
        """
        Deposit both tokens and mint liquidity shares to `provider`.

        First deposit mints floor(sqrt(amount0 * amount1)). Later deposits
        mint the smaller of the two proportional shares, so an unbalanced
        deposit is credited at its worse-priced side.

        Returns:
            Shares minted

        Raises:
            ZeroAmountError: either amount <= 0
            InsufficientLiquidityError: shares outstanding against an empty reserve
            InsufficientLiquidityMintedError: deposit too small to mint a share
            ReentrancyError: pool busy
        """
        with self._guard("add_liquidity"):
            amount0 = _require_int(amount0, "amount0")
            amount1 = _require_int(amount1, "amount1")
            if amount0 <= 0 or amount1 <= 0:
                raise ZeroAmountError(
                    f"Both deposit amounts must be positive: {amount0}, {amount1}",
                    pool_address=self.address,
                )

            if self._total_shares == 0:
                shares = babylonian_sqrt(amount0 * amount1)
            else:
                if self._reserve0 == 0 or self._reserve1 == 0:
                    raise InsufficientLiquidityError(
                        "Pool has outstanding shares but an empty reserve",
                        pool_address=self.address,
                    )
                shares = min(
                    amount0 * self._total_shares // self._reserve0,
                    amount1 * self._total_shares // self._reserve1,
                )

            if shares == 0:
                raise InsufficientLiquidityMintedError(
                    f"Deposit of {amount0}/{amount1} mints zero shares",
                    pool_address=self.address,
                )

            self._reserve0 += amount0
            self._reserve1 += amount1
            self._total_shares += shares
            self._shares[provider] = self._shares.get(provider, 0) + shares

            logger.debug(
                "Pool %s: +liquidity %d/%d -> %d shares for %s",
                self.address,
                amount0,
                amount1,
                shares,
                provider,
            )
            self._notify()
            return shares

    def remove_liquidity(self, shares: int, provider: str) -> Tuple[int, int]:
        """
        Burn `provider`'s shares for a proportional cut of both reserves.

        Returns:
            (amount0, amount1) paid out, each floor(shares * reserve / total)

        Raises:
            ZeroAmountError: shares <= 0
            InsufficientSharesError: shares exceed the provider's balance
            InsufficientLiquidityBurnedError: either payout rounds to zero
            ReentrancyError: pool busy
        """
        with self._guard("remove_liquidity"):
            shares = _require_int(shares, "shares")
            if shares <= 0:
                raise ZeroAmountError(
                    f"shares must be positive: {shares}", pool_address=self.address
                )
            balance = self._shares.get(provider, 0)
            if shares > balance:
                raise InsufficientSharesError(
                    f"{provider} holds {balance} shares, cannot burn {shares}",
                    pool_address=self.address,
                )

            amount0 = shares * self._reserve0 // self._total_shares
            amount1 = shares * self._reserve1 // self._total_shares
            if amount0 == 0 or amount1 == 0:
                raise InsufficientLiquidityBurnedError(
                    f"Burning {shares} shares returns {amount0}/{amount1}",
                    pool_address=self.address,
                )

            remaining = balance - shares
            if remaining:
                self._shares[provider] = remaining
            else:
                del self._shares[provider]
            self._total_shares -= shares
            self._reserve0 -= amount0
            self._reserve1 -= amount1

            logger.debug(
                "Pool %s: -liquidity %d shares -> %d/%d for %s",
                self.address,
                shares,
                amount0,
                amount1,
                provider,
            )
            self._notify()
            return amount0, amount1

    def swap(
        self,
        token_in: TokenRef,
        amount_in: int,
        min_amount_out: int,
        deadline: float,
    ) -> int:
        """
        Swap amount_in of token_in for the other token.

        Returns:
            Output amount (quote_output at the current reserves)

        Raises:
            DeadlineExpiredError: now > deadline
            InsufficientInputError: amount_in <= 0
            InvalidTokenError: token_in not in this pool
            InsufficientLiquidityError: either reserve empty
            ZeroAmountError: output rounds to zero
            SlippageExceededError: output < min_amount_out
            ReentrancyError: pool busy
        """
        with self._guard("swap"):
            now = self._clock()
            if now > deadline:
                raise DeadlineExpiredError(
                    f"Swap deadline {deadline} passed (now {now})",
                    pool_address=self.address,
                )
            amount_in = _require_int(amount_in, "amount_in")
            min_amount_out = _require_int(min_amount_out, "min_amount_out")
            if amount_in <= 0:
                raise InsufficientInputError(
                    f"amount_in must be positive: {amount_in}", pool_address=self.address
                )

            token_in = self._token(token_in)
            zero_for_one = token_in == self.token0
            reserve_in, reserve_out = (
                (self._reserve0, self._reserve1)
                if zero_for_one
                else (self._reserve1, self._reserve0)
            )
            if reserve_in <= 0 or reserve_out <= 0:
                raise InsufficientLiquidityError(
                    f"Pool {self.address} has an empty reserve",
                    pool_address=self.address,
                )

            amount_out = quote_output(amount_in, reserve_in, reserve_out, self.fee_bps)
            if amount_out == 0:
                raise ZeroAmountError(
                    f"Swap of {amount_in} rounds to zero output",
                    pool_address=self.address,
                )
            if amount_out < min_amount_out:
                raise SlippageExceededError(
                    f"Output {amount_out} below minimum {min_amount_out}",
                    pool_address=self.address,
                    expected_min=min_amount_out,
                    actual=amount_out,
                )

            if zero_for_one:
                self._reserve0 += amount_in
                self._reserve1 -= amount_out
            else:
                self._reserve1 += amount_in
                self._reserve0 -= amount_out

            logger.debug(
                "Pool %s: swap %d %s -> %d",
                self.address,
                amount_in,
                token_in.symbol,
                amount_out,
            )
            self._notify()
            return amount_out

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _token(self, token: TokenRef) -> Token:
        address = _address_of(token)
        if address == self.token0.address:
            return self.token0
        if address == self.token1.address:
            return self.token1
        raise InvalidTokenError(
            f"Token {address} is not in pool {self.address}", pool_address=self.address
        )

    def copy(self) -> "Pool":
        """Independent pool with the same reserves, fee and share ledger."""
        clone = Pool(
            self.token0, self.token1, fee_bps=self.fee_bps, address=self.address,
            clock=self._clock,
        )
        clone._reserve0 = self._reserve0
        clone._reserve1 = self._reserve1
        clone._total_shares = self._total_shares
        clone._shares = dict(self._shares)
        return clone

    def to_dict(self) -> Dict[str, object]:
        return {
            "address": self.address,
            "token0": self.token0.symbol,
            "token1": self.token1.symbol,
            "reserve0": str(self._reserve0),
            "reserve1": str(self._reserve1),
            "fee_bps": self.fee_bps,
            "total_shares": str(self._total_shares),
            "price0": str(self.spot_price(self.token0)),
            "price1": str(self.spot_price(self.token1)),
        }

    def __repr__(self) -> str:
        return (
            f"Pool({self.token0.symbol}/{self.token1.symbol}, "
            f"reserves={self._reserve0}/{self._reserve1}, fee={self.fee_bps}bps)"
        )


def _address_of(token: TokenRef) -> str:
    if isinstance(token, Token):
        return token.address
    return normalize_address(token)
