"""
Arbitrage execution behind confidence and safety gates.

Handles:
- The advisory decision gate (execute flag and confidence threshold)
- Pre-flight checks (balance, gas price ceiling, profit floor)
- Swap step construction with per-hop minimum outputs
- Submission to a settlement client

Settlement is pluggable: SimulatedSettlement replays routes against the
in-memory pools (paper trading), JsonRpcSettlementClient forwards them to
an external settlement service. Signing is the settlement side's concern.
"""

import asyncio
import itertools
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import aiohttp
from web3 import Web3

from amm_arbitrage.exceptions import (
    AmmArbitrageError,
    ExecutionError,
    NetworkError,
    PoolError,
    SlippageExceededError,
)
from amm_arbitrage.pool import Pool, quote_output
from amm_arbitrage.registry import PoolRegistry
from amm_arbitrage.types import (
    ArbitrageOpportunity,
    ExecutionDecision,
    SwapStep,
    TransactionResult,
)
from amm_arbitrage.utils import get_current_timestamp, get_logger, normalize_address

logger = get_logger(__name__)

GWEI = 10**9
WEI_PER_NATIVE = Decimal(10**18)


@dataclass
class SettlementReceipt:
    """What a settlement client reports for an accepted route."""

    settlement_id: str
    gas_used: int
    gas_price_wei: int
    amount_out: int


@dataclass
class PreflightResult:
    passed: bool
    errors: List[str] = field(default_factory=list)


class SettlementClient(Protocol):
    kind: str

    async def get_balance(self, token: str) -> int: ...

    async def get_gas_price(self) -> int: ...

    async def submit(
        self, steps: Sequence[SwapStep], opportunity: ArbitrageOpportunity
    ) -> SettlementReceipt: ...


# ----------------------------------------------------------------------
# Settlement clients
# ----------------------------------------------------------------------


class SimulatedSettlement:
    """
    Paper settlement against a PoolRegistry.

    A route is first replayed on quotes; if any hop pays less than its
    minimum the whole route reverts and nothing changes. With
    apply_to_pools=True an accepted route is then swapped through the real
    pools, so paper trades move the in-memory market.
    """

    kind = "simulated"

    def __init__(
        self,
        registry: PoolRegistry,
        balances: Optional[Dict[str, int]] = None,
        default_balance: int = 10 * 10**18,
        gas_price_wei: int = 20 * GWEI,
        gas_per_hop: int = 150_000,
        apply_to_pools: bool = False,
        deadline_sec: float = 60.0,
        clock: Callable[[], float] = get_current_timestamp,
    ):
        self.registry = registry
        self.balances = {normalize_address(k): v for k, v in (balances or {}).items()}
        self.default_balance = default_balance
        self.gas_price_wei = gas_price_wei
        self.gas_per_hop = gas_per_hop
        self.apply_to_pools = apply_to_pools
        self.deadline_sec = deadline_sec
        self._clock = clock
        self._counter = itertools.count(1)

    async def get_balance(self, token: str) -> int:
        return self.balances.get(normalize_address(token), self.default_balance)

    async def get_gas_price(self) -> int:
        return self.gas_price_wei

    async def submit(
        self, steps: Sequence[SwapStep], opportunity: ArbitrageOpportunity
    ) -> SettlementReceipt:
        if not steps:
            raise ExecutionError("Empty route", opportunity_id=opportunity.id)

        pools = []
        for step in steps:
            pool = self.registry.get_pool_by_address(step.pool)
            if pool is None:
                raise ExecutionError(
                    f"Unknown pool {step.pool}", opportunity_id=opportunity.id
                )
            pools.append(pool)

        amount_out = self._replay(steps, pools, opportunity)
        if self.apply_to_pools:
            amount_out = self._apply(steps, pools, opportunity)

        start = normalize_address(steps[0].token_in)
        balance = await self.get_balance(start)
        self.balances[start] = balance - steps[0].amount_in + amount_out

        nonce = next(self._counter)
        settlement_id = Web3.to_hex(
            Web3.keccak(text=f"{nonce}:{opportunity.id}:{self._clock()}")
        )
        return SettlementReceipt(
            settlement_id=settlement_id,
            gas_used=len(steps) * self.gas_per_hop,
            gas_price_wei=self.gas_price_wei,
            amount_out=amount_out,
        )

    def _replay(self, steps, pools: List[Pool], opportunity) -> int:
        amount = steps[0].amount_in
        for step, pool in zip(steps, pools):
            try:
                amount = quote_output(
                    amount,
                    pool.reserve_of(step.token_in),
                    pool.reserve_of(step.token_out),
                    pool.fee_bps,
                )
            except PoolError as e:
                raise ExecutionError(
                    f"Simulated revert at {pool.address}: {e}",
                    opportunity_id=opportunity.id,
                ) from e
            if amount < step.min_amount_out:
                raise ExecutionError(
                    "Simulated revert: slippage exceeded",
                    opportunity_id=opportunity.id,
                    details={
                        "pool": pool.address,
                        "expected_min": step.min_amount_out,
                        "actual": amount,
                    },
                )
        return amount

    def _apply(self, steps, pools: List[Pool], opportunity) -> int:
        deadline = self._clock() + self.deadline_sec
        amount = steps[0].amount_in
        for step, pool in zip(steps, pools):
            try:
                amount = pool.swap(step.token_in, amount, step.min_amount_out, deadline)
            except SlippageExceededError as e:
                raise ExecutionError(
                    "Swap reverted: slippage exceeded",
                    opportunity_id=opportunity.id,
                    details={"pool": pool.address, "actual": e.actual},
                ) from e
            except PoolError as e:
                raise ExecutionError(
                    f"Swap reverted at {pool.address}: {e}", opportunity_id=opportunity.id
                ) from e
        return amount


class JsonRpcSettlementClient:
    """
    JSON-RPC client for an external settlement service.

    Methods: eth_gasPrice, settlement_getBalance, settlement_submitRoute.
    """

    kind = "jsonrpc"

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self._session = session
        self._id = 0

    async def call(self, method: str, params: Sequence[Any]) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "method": method, "params": list(params), "id": self._id}
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            if self._session is not None:
                data = await self._post(self._session, payload, headers)
            else:
                async with aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as session:
                    data = await self._post(session, payload, headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"{method} failed: {e}", endpoint=self.endpoint) from e

        if not isinstance(data, dict):
            raise NetworkError(f"{method}: malformed response", endpoint=self.endpoint)
        if data.get("error"):
            raise ExecutionError(f"{method} rejected: {data['error']}")
        return data.get("result")

    async def _post(self, session, payload, headers) -> Any:
        async with session.post(self.endpoint, json=payload, headers=headers) as resp:
            if resp.status != 200:
                raise NetworkError(
                    f"RPC HTTP {resp.status}", endpoint=self.endpoint, status_code=resp.status
                )
            return await resp.json(content_type=None)

    async def get_balance(self, token: str) -> int:
        return _to_int(await self.call("settlement_getBalance", [normalize_address(token)]))

    async def get_gas_price(self) -> int:
        return _to_int(await self.call("eth_gasPrice", []))

    async def submit(
        self, steps: Sequence[SwapStep], opportunity: ArbitrageOpportunity
    ) -> SettlementReceipt:
        route = {
            "opportunityId": opportunity.id,
            "steps": [
                {
                    "pool": s.pool,
                    "tokenIn": s.token_in,
                    "tokenOut": s.token_out,
                    "amountIn": str(s.amount_in),
                    "minAmountOut": str(s.min_amount_out),
                }
                for s in steps
            ],
        }
        result = await self.call("settlement_submitRoute", [route])
        try:
            return SettlementReceipt(
                settlement_id=str(result["settlementId"]),
                gas_used=_to_int(result.get("gasUsed", 0)),
                gas_price_wei=_to_int(result.get("gasPrice", 0)),
                amount_out=_to_int(result["amountOut"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ExecutionError(
                f"Malformed settlement receipt: {result!r}", opportunity_id=opportunity.id
            ) from e


def _to_int(value: Any) -> int:
    """RPC quantities arrive as hex strings, decimal strings or ints."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError(f"Not an integer quantity: {value!r}")


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------


class Executor:
    """
    Turns an approved opportunity into a settled route.

    The sequence counter advances once per successful submission only.
    """

    def __init__(
        self,
        settlement: SettlementClient,
        confidence_threshold: float = 0.6,
        max_gas_price_gwei: float = 50.0,
        min_profit_percent: float = 0.05,
        native_price_usd: float = 2000.0,
    ):
        self.settlement = settlement
        self.confidence_threshold = confidence_threshold
        self.max_gas_price_wei = int(Decimal(str(max_gas_price_gwei)) * GWEI)
        self.min_profit_percent = Decimal(str(min_profit_percent))
        self.native_price_usd = Decimal(str(native_price_usd))

        self.sequence = 0
        self.executions_attempted = 0
        self.executions_successful = 0
        self.executions_refused = 0
        self.total_cost = Decimal("0")

    @classmethod
    def from_config(cls, settlement: SettlementClient, config) -> "Executor":
        return cls(
            settlement,
            confidence_threshold=config.confidence_threshold,
            max_gas_price_gwei=config.max_gas_price_gwei,
            min_profit_percent=config.preflight_min_profit_percent,
            native_price_usd=config.native_price_usd,
        )

    def check_decision(self, decision: ExecutionDecision) -> Optional[str]:
        """Refusal reason, or None when the decision clears the gate."""
        if not decision.execute:
            return "Advisory decision: do not execute"
        if decision.confidence < self.confidence_threshold:
            return (
                f"Confidence too low: {decision.confidence:.2f} "
                f"< {self.confidence_threshold:.2f}"
            )
        return None

    async def preflight(self, opportunity: ArbitrageOpportunity) -> PreflightResult:
        """Run every check and report all failures together."""
        errors: List[str] = []

        try:
            balance = await self.settlement.get_balance(opportunity.start_token)
            if balance < opportunity.amount_in:
                errors.append(
                    f"Insufficient balance: {balance} < {opportunity.amount_in}"
                )
        except (AmmArbitrageError, ValueError) as e:
            errors.append(f"Balance check failed: {e}")

        try:
            gas_price = await self.settlement.get_gas_price()
            if gas_price > self.max_gas_price_wei:
                errors.append(
                    f"Gas price too high: {Web3.from_wei(gas_price, 'gwei')} gwei "
                    f"> {Web3.from_wei(self.max_gas_price_wei, 'gwei')} gwei"
                )
        except (AmmArbitrageError, ValueError) as e:
            errors.append(f"Gas price check failed: {e}")

        if opportunity.profit_percent < self.min_profit_percent:
            errors.append(
                f"Opportunity profit too low: {opportunity.profit_percent:.4f}% "
                f"< {self.min_profit_percent}%"
            )

        return PreflightResult(passed=not errors, errors=errors)

    def build_steps(
        self,
        opportunity: ArbitrageOpportunity,
        pools: Sequence[Pool],
        max_slippage_percent: float,
    ) -> List[SwapStep]:
        """
        One SwapStep per hop. Each hop's input is the previous hop's expected
        output at current reserves; its minimum output is that expectation
        less max_slippage_percent.

        Raises:
            ExecutionError: a hop has no pool among `pools`, or the
                slippage is not a finite percentage in [0, 100)
        """
        if not (
            isinstance(max_slippage_percent, (int, float))
            and (isinstance(max_slippage_percent, int) or math.isfinite(max_slippage_percent))
            and 0 <= max_slippage_percent < 100
        ):
            raise ExecutionError(
                f"Invalid max slippage: {max_slippage_percent!r}",
                opportunity_id=opportunity.id,
            )
        slippage_bps = int(Decimal(str(max_slippage_percent)) * 100)

        steps = []
        amount = opportunity.amount_in
        route = opportunity.route
        for token_in, token_out in zip(route, route[1:]):
            pool = _find_pool(pools, token_in, token_out)
            if pool is None:
                raise ExecutionError(
                    f"No pool found for {token_in} -> {token_out}",
                    opportunity_id=opportunity.id,
                )
            try:
                expected = pool.quote(token_in, amount)
            except PoolError as e:
                raise ExecutionError(
                    f"Cannot quote {pool.address}: {e}", opportunity_id=opportunity.id
                ) from e
            min_out = expected * (10_000 - slippage_bps) // 10_000
            steps.append(SwapStep(pool.address, token_in, token_out, amount, min_out))
            amount = expected
        return steps

    async def execute(
        self,
        opportunity: ArbitrageOpportunity,
        decision: ExecutionDecision,
        pools: Sequence[Pool],
    ) -> TransactionResult:
        """
        Settle an opportunity. Failures come back as failed results; a
        failed settlement is not retried.
        """
        refusal = self.check_decision(decision)
        if refusal:
            self.executions_refused += 1
            logger.info("Execution refused for %s: %s", opportunity.id, refusal)
            return TransactionResult.failed(refusal)

        self.executions_attempted += 1
        try:
            steps = self.build_steps(opportunity, pools, decision.max_slippage)
        except ExecutionError as e:
            logger.error("Cannot prepare %s: %s", opportunity.id, e)
            return TransactionResult.failed(str(e))

        logger.info(
            "Executing %s (%d hops, expected net %.4f)",
            " -> ".join(opportunity.route_symbols),
            len(steps),
            opportunity.net_profit,
        )
        try:
            receipt = await self.settlement.submit(steps, opportunity)
        except (AmmArbitrageError, ValueError) as e:
            logger.error("Settlement failed for %s: %s", opportunity.id, e)
            return TransactionResult.failed(str(e), steps)

        self.sequence += 1
        self.executions_successful += 1
        cost = (
            Decimal(receipt.gas_used * receipt.gas_price_wei)
            / WEI_PER_NATIVE
            * self.native_price_usd
        )
        self.total_cost += cost
        realized = receipt.amount_out - opportunity.amount_in

        logger.info(
            "Settled %s as %s (sequence %d, realized %d, cost %.4f)",
            opportunity.id,
            receipt.settlement_id,
            self.sequence,
            realized,
            cost,
        )
        return TransactionResult(
            success=True,
            settlement_id=receipt.settlement_id,
            cost=cost,
            realized_profit=realized,
            sequence=self.sequence,
            steps=steps,
        )

    def status(self) -> Dict[str, Any]:
        return {
            "settlement": getattr(self.settlement, "kind", type(self.settlement).__name__),
            "sequence": self.sequence,
            "attempted": self.executions_attempted,
            "successful": self.executions_successful,
            "refused": self.executions_refused,
            "total_cost": float(self.total_cost),
            "confidence_threshold": self.confidence_threshold,
            "max_gas_price_gwei": float(Web3.from_wei(self.max_gas_price_wei, "gwei")),
        }


def _find_pool(pools: Sequence[Pool], token_a: str, token_b: str) -> Optional[Pool]:
    for pool in pools:
        if pool.has_token(token_a) and pool.has_token(token_b):
            return pool
    return None
