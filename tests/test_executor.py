"""Tests for the gated executor and the settlement clients."""

from decimal import Decimal

import pytest

from amm_arbitrage.exceptions import ExecutionError, NetworkError
from amm_arbitrage.registry import PoolRegistry
from amm_arbitrage.simulator import RouteSimulator
from amm_arbitrage.types import ExecutionDecision, Urgency
from arb_agent.executor import Executor, JsonRpcSettlementClient, SimulatedSettlement, _to_int
from arb_agent.mock_data import TOKENS, build_mock_registry

ROUTE = tuple(TOKENS[s].address for s in ("WETH", "DAI", "USDC", "WETH"))
ONE_WETH = 10**18


def approve(confidence=0.8, max_slippage=0.5):
    return ExecutionDecision(
        execute=True,
        confidence=confidence,
        reasoning="looks fine",
        max_slippage=max_slippage,
        urgency=Urgency.MEDIUM,
    )


@pytest.fixture
def registry():
    return build_mock_registry()


@pytest.fixture
def opportunity(registry):
    return RouteSimulator(registry).evaluate(ROUTE, ONE_WETH)


@pytest.fixture
def pools(registry):
    return RouteSimulator(registry).route_pools(ROUTE)


class TestDecisionGate:
    def test_confidence_threshold_is_inclusive(self, registry):
        executor = Executor(SimulatedSettlement(registry))
        assert executor.check_decision(approve(0.60)) is None
        assert "Confidence too low" in executor.check_decision(approve(0.59))

    def test_do_not_execute(self, registry):
        executor = Executor(SimulatedSettlement(registry))
        refusal = executor.check_decision(ExecutionDecision.conservative("down"))
        assert refusal == "Advisory decision: do not execute"

    @pytest.mark.asyncio
    async def test_low_confidence_refused_before_settlement(self, registry, opportunity, pools):
        settlement = SimulatedSettlement(registry)
        executor = Executor(settlement)

        result = await executor.execute(opportunity, approve(0.59), pools)

        assert not result.success
        assert "Confidence too low" in result.error
        assert executor.executions_refused == 1
        assert executor.executions_attempted == 0
        assert executor.sequence == 0


class TestPreflight:
    @pytest.mark.asyncio
    async def test_passes_on_mock_market(self, registry, opportunity):
        result = await Executor(SimulatedSettlement(registry)).preflight(opportunity)
        assert result.passed
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_reports_every_failure(self, registry, opportunity):
        settlement = SimulatedSettlement(
            registry, default_balance=0, gas_price_wei=100 * 10**9
        )
        executor = Executor(settlement, min_profit_percent=50)

        result = await executor.preflight(opportunity)

        assert not result.passed
        assert len(result.errors) == 3
        assert result.errors[0].startswith("Insufficient balance")
        assert result.errors[1].startswith("Gas price too high")
        assert result.errors[2].startswith("Opportunity profit too low")

    @pytest.mark.asyncio
    async def test_settlement_failures_become_errors(self, opportunity):
        class Unreachable:
            kind = "broken"

            async def get_balance(self, token):
                raise NetworkError("connection refused")

            async def get_gas_price(self):
                raise ValueError("bad quantity")

        result = await Executor(Unreachable()).preflight(opportunity)
        assert result.errors == [
            "Balance check failed: connection refused",
            "Gas price check failed: bad quantity",
        ]


class TestBuildSteps:
    def test_min_outputs_apply_slippage(self, opportunity, pools):
        executor = Executor(SimulatedSettlement(build_mock_registry()))
        steps = executor.build_steps(opportunity, pools, max_slippage_percent=0.5)

        assert [s.token_in for s in steps] == list(ROUTE[:-1])
        assert steps[0].amount_in == ONE_WETH
        amount = ONE_WETH
        for step, pool in zip(steps, pools):
            expected = pool.quote(step.token_in, amount)
            assert step.amount_in == amount
            assert step.min_amount_out == expected * 9950 // 10000
            amount = expected
        assert amount == opportunity.amount_out

    def test_missing_pool(self, opportunity, pools):
        executor = Executor(SimulatedSettlement(build_mock_registry()))
        with pytest.raises(ExecutionError, match="No pool found"):
            executor.build_steps(opportunity, pools[:2], max_slippage_percent=0.5)

    @pytest.mark.parametrize("slippage", [float("inf"), float("nan"), 100, 250, -0.1])
    def test_out_of_range_slippage_rejected(self, opportunity, pools, slippage):
        executor = Executor(SimulatedSettlement(build_mock_registry()))
        with pytest.raises(ExecutionError, match="Invalid max slippage"):
            executor.build_steps(opportunity, pools, max_slippage_percent=slippage)

    @pytest.mark.asyncio
    async def test_infinite_slippage_fails_without_settling(self, registry, opportunity, pools):
        executor = Executor(SimulatedSettlement(registry, apply_to_pools=True))
        before = [pool.reserves for pool in pools]

        result = await executor.execute(opportunity, approve(max_slippage=float("inf")), pools)

        assert not result.success
        assert "Invalid max slippage" in result.error
        assert executor.sequence == 0
        assert [pool.reserves for pool in pools] == before


class TestExecute:
    @pytest.mark.asyncio
    async def test_successful_paper_trade(self, registry, opportunity, pools):
        settlement = SimulatedSettlement(registry)
        executor = Executor(settlement)

        result = await executor.execute(opportunity, approve(), pools)

        assert result.success
        assert result.sequence == 1
        assert result.settlement_id.startswith("0x")
        assert result.realized_profit == opportunity.amount_out - ONE_WETH
        # 3 hops * 150k gas * 20 gwei = 0.009 native, at 2000
        assert result.cost == Decimal("18")
        assert len(result.steps) == 3
        assert await settlement.get_balance(ROUTE[0]) == 10 * ONE_WETH + result.realized_profit

    @pytest.mark.asyncio
    async def test_sequence_advances_on_success_only(self, registry, opportunity, pools):
        executor = Executor(SimulatedSettlement(registry))

        first = await executor.execute(opportunity, approve(), pools)
        refused = await executor.execute(opportunity, approve(0.1), pools)
        second = await executor.execute(opportunity, approve(), pools)

        assert (first.sequence, refused.sequence, second.sequence) == (1, None, 2)
        assert executor.sequence == 2
        assert executor.status()["successful"] == 2
        assert executor.status()["refused"] == 1

    @pytest.mark.asyncio
    async def test_slippage_reverts_whole_route(self, registry, opportunity, pools):
        settlement = SimulatedSettlement(registry, apply_to_pools=True)
        executor = Executor(settlement)
        steps_pools = [p.copy() for p in pools]

        # Someone else trades first and moves the WETH/DAI price
        weth_dai = registry.get_pool(ROUTE[0], ROUTE[1])
        weth_dai.swap(ROUTE[0], 5 * ONE_WETH, 0, deadline=float("inf"))
        before = [p.reserves for p in registry.pools()]

        result = await executor.execute(opportunity, approve(max_slippage=0.1), steps_pools)

        assert not result.success
        assert "slippage" in result.error
        assert len(result.steps) == 3
        assert [p.reserves for p in registry.pools()] == before
        assert executor.sequence == 0

    @pytest.mark.asyncio
    async def test_apply_to_pools_moves_reserves(self, registry, opportunity, pools):
        settlement = SimulatedSettlement(registry, apply_to_pools=True)
        executor = Executor(settlement)
        weth_dai = registry.get_pool(ROUTE[0], ROUTE[1])
        before = weth_dai.reserve_of(ROUTE[0])

        result = await executor.execute(opportunity, approve(), pools)

        assert result.success
        assert weth_dai.reserve_of(ROUTE[0]) == before + ONE_WETH
        # The same route is now less attractive
        again = RouteSimulator(registry).simulate(ROUTE, ONE_WETH)
        assert again.amount_out < opportunity.amount_out

    @pytest.mark.asyncio
    async def test_unknown_pool_fails(self, opportunity, pools):
        executor = Executor(SimulatedSettlement(PoolRegistry()))
        result = await executor.execute(opportunity, approve(), pools)
        assert not result.success
        assert "Unknown pool" in result.error


class FakeRpc(JsonRpcSettlementClient):
    def __init__(self, responses):
        super().__init__("http://settlement.local")
        self.responses = responses
        self.calls = []

    async def _post(self, session, payload, headers):
        self.calls.append(payload)
        return self.responses[payload["method"]]


class TestJsonRpcSettlement:
    @pytest.mark.asyncio
    async def test_quantities(self):
        rpc = FakeRpc(
            {
                "eth_gasPrice": {"jsonrpc": "2.0", "id": 1, "result": "0x4a817c800"},
                "settlement_getBalance": {"jsonrpc": "2.0", "id": 2, "result": "1000"},
            }
        )
        rpc._session = object()
        assert await rpc.get_gas_price() == 20 * 10**9
        assert await rpc.get_balance("0xABC") == 1000
        assert rpc.calls[1]["params"] == ["0xabc"]
        assert [c["id"] for c in rpc.calls] == [1, 2]

    @pytest.mark.asyncio
    async def test_submit(self, opportunity, pools):
        rpc = FakeRpc(
            {
                "settlement_submitRoute": {
                    "result": {
                        "settlementId": "0xfeed",
                        "gasUsed": "0x6ddd0",
                        "gasPrice": 20 * 10**9,
                        "amountOut": str(opportunity.amount_out),
                    }
                }
            }
        )
        rpc._session = object()
        executor = Executor(rpc)

        result = await executor.execute(opportunity, approve(), pools)

        assert result.success
        assert result.settlement_id == "0xfeed"
        assert result.cost == Decimal("18")
        route = rpc.calls[0]["params"][0]
        assert route["opportunityId"] == opportunity.id
        assert len(route["steps"]) == 3

    @pytest.mark.asyncio
    async def test_rpc_error(self, opportunity, pools):
        rpc = FakeRpc({"settlement_submitRoute": {"error": {"code": -32000, "message": "revert"}}})
        rpc._session = object()

        result = await Executor(rpc).execute(opportunity, approve(), pools)

        assert not result.success
        assert "rejected" in result.error


def test_to_int():
    assert _to_int("0x10") == 16
    assert _to_int("42") == 42
    assert _to_int(7) == 7
    with pytest.raises(ValueError):
        _to_int(None)
