"""
Unit tests for the constant-product pool.

Tests cover:
- Output formula and truncation
- Liquidity minting and burning
- Swap checks (deadline, slippage, zero output)
- Atomicity of rejected operations
- Re-entrancy rejection
"""

import logging
import unittest

import pytest

from amm_arbitrage.exceptions import (
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
from amm_arbitrage.pool import Pool, babylonian_sqrt, quote_output
from amm_arbitrage.types import Token

TOKEN_A = Token("0x000000000000000000000000000000000000000a", 18, "AAA")
TOKEN_B = Token("0x000000000000000000000000000000000000000b", 18, "BBB")
TOKEN_C = Token("0x000000000000000000000000000000000000000c", 18, "CCC")


def make_pool(reserve_a=1000, reserve_b=1000, fee_bps=30, now=100.0):
    pool = Pool(TOKEN_A, TOKEN_B, fee_bps=fee_bps, clock=lambda: now)
    pool.add_liquidity(reserve_a, reserve_b, "lp")
    return pool


class TestQuoteOutput(unittest.TestCase):
    """Constant-product output calculation."""

    def test_reference_swap(self):
        # 100 * 9970 * 1000 // (1000 * 10000 + 997000) = 90
        self.assertEqual(quote_output(100, 1000, 1000, 30), 90)

    def test_zero_fee(self):
        self.assertEqual(quote_output(100, 1000, 1000, 0), 90)
        self.assertEqual(quote_output(1000, 1000, 1000, 0), 500)

    def test_output_below_reserve(self):
        for amount in (1, 10, 10**6, 10**30):
            self.assertLess(quote_output(amount, 1000, 1000, 30), 1000)

    def test_monotonic_in_amount(self):
        previous = 0
        for amount in range(1, 2000, 37):
            out = quote_output(amount, 5000, 7000, 30)
            self.assertGreaterEqual(out, previous)
            previous = out

    def test_higher_fee_pays_less(self):
        self.assertGreaterEqual(
            quote_output(500, 10_000, 10_000, 5), quote_output(500, 10_000, 10_000, 100)
        )

    def test_invalid_inputs(self):
        with self.assertRaises(InsufficientInputError):
            quote_output(0, 1000, 1000, 30)
        with self.assertRaises(InsufficientLiquidityError):
            quote_output(10, 0, 1000, 30)
        with self.assertRaises(InsufficientLiquidityError):
            quote_output(10, 1000, 0, 30)
        with self.assertRaises(ValidationError):
            quote_output(10, 1000, 1000, 10_000)
        with self.assertRaises(ValidationError):
            quote_output(1.5, 1000, 1000, 30)


class TestBabylonianSqrt(unittest.TestCase):
    def test_small_values(self):
        self.assertEqual(
            [babylonian_sqrt(v) for v in range(10)], [0, 1, 1, 1, 2, 2, 2, 2, 2, 3]
        )

    def test_floor(self):
        self.assertEqual(babylonian_sqrt(4_000_000), 2000)
        self.assertEqual(babylonian_sqrt(4_000_001), 2000)
        self.assertEqual(babylonian_sqrt(10**36), 10**18)

    def test_negative(self):
        with self.assertRaises(ValidationError):
            babylonian_sqrt(-1)


class TestLiquidity(unittest.TestCase):
    def test_token_ordering(self):
        pool = Pool(TOKEN_B, TOKEN_A)
        self.assertEqual(pool.token0, TOKEN_A)
        self.assertEqual(pool.token1, TOKEN_B)

    def test_same_token_rejected(self):
        with self.assertRaises(ValidationError):
            Pool(TOKEN_A, TOKEN_A)

    def test_first_deposit_mints_geometric_mean(self):
        pool = Pool(TOKEN_A, TOKEN_B)
        shares = pool.add_liquidity(1000, 4000, "alice")
        self.assertEqual(shares, 2000)
        self.assertEqual(pool.total_shares, 2000)
        self.assertEqual(pool.shares_of("alice"), 2000)
        self.assertEqual(pool.reserves, (1000, 4000))

    def test_later_deposit_credited_at_worse_side(self):
        pool = Pool(TOKEN_A, TOKEN_B)
        pool.add_liquidity(1000, 4000, "alice")
        # 500/1000 of reserve0 vs 1000/4000 of reserve1 -> min(1000, 500)
        shares = pool.add_liquidity(500, 1000, "bob")
        self.assertEqual(shares, 500)
        self.assertEqual(pool.total_shares, 2500)
        self.assertEqual(sum(pool.holders().values()), pool.total_shares)

    def test_zero_deposit_rejected(self):
        pool = Pool(TOKEN_A, TOKEN_B)
        with self.assertRaises(ZeroAmountError):
            pool.add_liquidity(0, 100, "alice")
        self.assertEqual(pool.reserves, (0, 0))

    def test_dust_deposit_mints_nothing(self):
        pool = Pool(TOKEN_A, TOKEN_B)
        pool.add_liquidity(1000, 4000, "alice")
        # min(1 * 2000 // 1000, 1 * 2000 // 4000) == 0
        with self.assertRaises(InsufficientLiquidityMintedError):
            pool.add_liquidity(1, 1, "bob")
        self.assertEqual(pool.reserves, (1000, 4000))
        self.assertEqual(pool.shares_of("bob"), 0)

    def test_first_deposit_round_trip_is_exact(self):
        pool = Pool(TOKEN_A, TOKEN_B)
        shares = pool.add_liquidity(1000, 4000, "alice")
        self.assertEqual(pool.remove_liquidity(shares, "alice"), (1000, 4000))
        self.assertEqual(pool.total_shares, 0)
        self.assertEqual(pool.holders(), {})

    def test_round_trip_never_pays_more_than_deposit(self):
        pool = Pool(TOKEN_A, TOKEN_B)
        pool.add_liquidity(1003, 4001, "alice")
        shares = pool.add_liquidity(333, 777, "bob")
        amount0, amount1 = pool.remove_liquidity(shares, "bob")
        self.assertLessEqual(amount0, 333)
        self.assertLessEqual(amount1, 777)

    def test_remove_more_than_held(self):
        pool = make_pool()
        with self.assertRaises(InsufficientSharesError):
            pool.remove_liquidity(pool.shares_of("lp") + 1, "lp")
        with self.assertRaises(InsufficientSharesError):
            pool.remove_liquidity(1, "nobody")
        with self.assertRaises(ZeroAmountError):
            pool.remove_liquidity(0, "lp")

    def test_dust_withdrawal_rejected(self):
        pool = Pool(TOKEN_A, TOKEN_B)
        pool.add_liquidity(1, 10**6, "alice")
        with self.assertRaises(InsufficientLiquidityBurnedError):
            pool.remove_liquidity(1, "alice")
        self.assertEqual(pool.reserves, (1, 10**6))


class TestSwap(unittest.TestCase):
    def test_reference_swap_updates_reserves(self):
        pool = make_pool()
        out = pool.swap(TOKEN_A, 100, 0, deadline=200.0)
        self.assertEqual(out, 90)
        self.assertEqual(pool.reserves, (1100, 910))

    def test_reverse_direction(self):
        pool = make_pool()
        out = pool.swap(TOKEN_B.address, 100, 90, deadline=200.0)
        self.assertEqual(out, 90)
        self.assertEqual(pool.reserves, (910, 1100))

    def test_invariant_never_decreases(self):
        pool = make_pool(10**9, 3 * 10**9)
        k = pool.reserve0 * pool.reserve1
        for amount in (1, 10**3, 10**6, 10**8):
            pool.swap(TOKEN_A, amount, 0, deadline=200.0)
            new_k = pool.reserve0 * pool.reserve1
            self.assertGreaterEqual(new_k, k)
            k = new_k

    def test_slippage_rejected_without_state_change(self):
        pool = make_pool()
        with self.assertRaises(SlippageExceededError) as ctx:
            pool.swap(TOKEN_A, 100, 91, deadline=200.0)
        self.assertEqual(ctx.exception.actual, 90)
        self.assertEqual(ctx.exception.expected_min, 91)
        self.assertEqual(pool.reserves, (1000, 1000))

    def test_deadline(self):
        pool = make_pool(now=100.0)
        with self.assertRaises(DeadlineExpiredError):
            pool.swap(TOKEN_A, 100, 0, deadline=99.0)
        self.assertEqual(pool.swap(TOKEN_A, 100, 0, deadline=100.0), 90)

    def test_zero_output(self):
        pool = make_pool(10**9, 10)
        with self.assertRaises(ZeroAmountError):
            pool.swap(TOKEN_A, 1, 0, deadline=200.0)
        self.assertEqual(pool.reserves, (10**9, 10))

    def test_unknown_token(self):
        pool = make_pool()
        with self.assertRaises(InvalidTokenError):
            pool.swap(TOKEN_C, 100, 0, deadline=200.0)

    def test_empty_pool(self):
        pool = Pool(TOKEN_A, TOKEN_B, clock=lambda: 0.0)
        with self.assertRaises(InsufficientLiquidityError):
            pool.swap(TOKEN_A, 100, 0, deadline=1.0)

    def test_bad_amount(self):
        pool = make_pool()
        with self.assertRaises(InsufficientInputError):
            pool.swap(TOKEN_A, 0, 0, deadline=200.0)


class TestListeners(unittest.TestCase):
    def test_updates_published(self):
        pool = make_pool()
        seen = []
        pool.add_listener(seen.append)
        pool.swap(TOKEN_A, 100, 0, deadline=200.0)
        self.assertEqual(len(seen), 1)
        self.assertEqual((seen[0].reserve0, seen[0].reserve1), (1100, 910))

        pool.remove_listener(seen.append)
        pool.swap(TOKEN_A, 100, 0, deadline=200.0)
        self.assertEqual(len(seen), 1)

    def test_reentrant_swap_rejected(self):
        pool = make_pool()
        errors = []

        def reenter(update):
            try:
                pool.swap(TOKEN_A, 10, 0, deadline=200.0)
            except ReentrancyError as e:
                errors.append(e)

        pool.add_listener(reenter)
        pool.swap(TOKEN_A, 100, 0, deadline=200.0)
        self.assertEqual(len(errors), 1)
        self.assertEqual(pool.reserves, (1100, 910))
        self.assertFalse(pool.is_locked)


def test_failing_listener_is_logged(caplog):
    pool = make_pool()

    def broken(update):
        raise RuntimeError("listener blew up")

    pool.add_listener(broken)
    with caplog.at_level(logging.ERROR):
        out = pool.swap(TOKEN_A, 100, 0, deadline=200.0)

    assert out == 90
    assert pool.reserves == (1100, 910)
    assert "Reserve listener failed" in caplog.text


def test_from_state_reorders_reserves():
    pool = Pool.from_state(TOKEN_B, TOKEN_A, 500, 200, total_shares=300)
    assert pool.token0 == TOKEN_A
    assert pool.reserves == (200, 500)
    assert pool.reserve_of(TOKEN_B) == 500
    assert pool.shares_of("external") == 300


def test_from_state_rejects_negative_reserves():
    with pytest.raises(ValidationError):
        Pool.from_state(TOKEN_A, TOKEN_B, -1, 100)


def test_copy_is_independent():
    pool = make_pool()
    clone = pool.copy()
    clone.swap(TOKEN_A, 100, 0, deadline=200.0)
    assert pool.reserves == (1000, 1000)
    assert clone.reserves == (1100, 910)
    assert clone.address == pool.address


def test_spot_price():
    usdc = Token("0x00000000000000000000000000000000000000d6", 6, "USDC")
    pool = Pool.from_state(TOKEN_A, usdc, 10 * 10**18, 20_000 * 10**6)
    assert pool.spot_price(TOKEN_A) == 2000
    assert Pool(TOKEN_A, TOKEN_B).spot_price(TOKEN_A) == 0
