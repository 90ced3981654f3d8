"""
Agent orchestrator.

One scan cycle:

    provider tokens + pools -> registry snapshot -> routes per token
    -> simulate at each probe amount -> viable -> rank by net profit
    -> top N -> advisory oracle -> (auto-execute) gate, preflight, execute

start() runs one cycle immediately, then one per poll interval on an
asyncio task. Cycles never overlap: a cycle requested while another is in
flight is skipped. stop() only disarms future cycles.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from amm_arbitrage.config_loader import AgentConfig
from amm_arbitrage.exceptions import DataError, NetworkError
from amm_arbitrage.metrics import AgentMetrics
from amm_arbitrage.registry import PoolRegistry
from amm_arbitrage.scoring import rank_by_net_profit
from amm_arbitrage.simulator import RouteSimulator, format_opportunity
from amm_arbitrage.types import ArbitrageOpportunity, TransactionResult
from amm_arbitrage.utils import (
    ensure_path_exists,
    format_duration,
    format_profit,
    get_current_timestamp,
    get_logger,
    safe_json_dump,
    timestamp_to_iso,
)

from .data_provider import DataProvider
from .executor import Executor
from .oracle import MarketAnalysis, OracleClient

logger = get_logger(__name__)

TOP_LOGGED = 5


class AgentState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SCANNING = "scanning"
    EVALUATING = "evaluating"
    STOPPED = "stopped"


@dataclass
class AgentStatus:
    """Point-in-time view of the agent."""

    state: AgentState
    scans: int = 0
    skipped_scans: int = 0
    opportunities_found: int = 0
    opportunities_executed: int = 0
    total_realized_value: Decimal = Decimal("0")
    last_scan: Optional[float] = None
    last_scan_duration: Optional[float] = None
    top_opportunities: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    executor: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "scans": self.scans,
            "skipped_scans": self.skipped_scans,
            "opportunities_found": self.opportunities_found,
            "opportunities_executed": self.opportunities_executed,
            "total_realized_value": float(self.total_realized_value),
            "last_scan": timestamp_to_iso(self.last_scan) if self.last_scan else None,
            "last_scan_duration": self.last_scan_duration,
            "top_opportunities": self.top_opportunities,
            "errors": self.errors,
            "executor": self.executor,
        }


class ArbitrageAgent:
    """Coordinates provider, simulator, oracle and executor."""

    def __init__(
        self,
        config: AgentConfig,
        provider: DataProvider,
        oracle: OracleClient,
        executor: Executor,
        metrics: Optional[AgentMetrics] = None,
    ):
        self.config = config
        self.provider = provider
        self.oracle = oracle
        self.executor = executor
        self.metrics = metrics or AgentMetrics()

        self.state = AgentState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._cycle_in_flight = False

        self._scans = 0
        self._skipped_scans = 0
        self._opportunities_found = 0
        self._opportunities_executed = 0
        self._total_realized_value = Decimal("0")
        self._last_scan: Optional[float] = None
        self._last_scan_duration: Optional[float] = None
        self._top: List[ArbitrageOpportunity] = []
        self._errors: Deque[str] = deque(maxlen=config.error_history_size)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run one cycle now, then one every poll interval until stop()."""
        if self.state not in (AgentState.IDLE, AgentState.STOPPED):
            logger.warning("Agent is already running")
            return

        logger.info(
            "Agent starting: min profit %.3f%%, max hops %d, auto-execute %s, poll %.1fs",
            self.config.min_profit_percent,
            self.config.max_hops,
            "on" if self.config.auto_execute else "off",
            self.config.poll_interval_sec,
        )
        self._stopping = False
        self.state = AgentState.RUNNING
        await self.scan()
        if self._stopping:
            return
        self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.config.poll_interval_sec)
            if self._stopping:
                break
            await self.scan()

    async def stop(self) -> None:
        """
        Disarm future cycles. A cycle already in flight runs to completion
        before this returns.
        """
        if self.state in (AgentState.IDLE, AgentState.STOPPED) and self._task is None:
            logger.warning("Agent is not running")
            return

        self._stopping = True
        self.state = AgentState.STOPPED
        task, self._task = self._task, None
        if task is not None:
            if not self._cycle_in_flight:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Agent stopped after %d scans", self._scans)

    async def run_forever(self) -> None:
        """start() and block until the polling task ends."""
        await self.start()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Scan cycle
    # ------------------------------------------------------------------

    async def scan(self) -> List[ArbitrageOpportunity]:
        """
        One full cycle. Never raises: failures are logged and kept in the
        bounded error history. Returns the ranked viable opportunities.
        """
        if self._cycle_in_flight:
            self._skipped_scans += 1
            logger.info("Scan skipped: previous cycle still in flight")
            return []

        self._cycle_in_flight = True
        previous = self.state
        if previous in (AgentState.IDLE, AgentState.RUNNING):
            self.state = AgentState.SCANNING
        started = time.perf_counter()
        opportunities: List[ArbitrageOpportunity] = []
        try:
            opportunities = await self._scan_cycle()
        except Exception as e:
            logger.exception("Scan failed")
            self._record_error("scan", f"Scan failed: {e}")
        finally:
            duration = time.perf_counter() - started
            self._cycle_in_flight = False
            self._scans += 1
            self._last_scan = get_current_timestamp()
            self._last_scan_duration = duration
            self.metrics.record_scan(duration, len(opportunities))
            logger.debug("Scan finished in %s", format_duration(duration))
            if self.state in (AgentState.SCANNING, AgentState.EVALUATING):
                self.state = previous
            self._write_status()
        return opportunities

    async def _scan_cycle(self) -> List[ArbitrageOpportunity]:
        logger.info(
            "Scanning for opportunities at %s", timestamp_to_iso(get_current_timestamp())
        )

        simulator = await self._snapshot()
        if simulator is None:
            return []

        opportunities = self.find_all(simulator)
        self._opportunities_found += len(opportunities)
        self._top = opportunities[:TOP_LOGGED]

        if not opportunities:
            logger.info("No opportunities found this scan")
            return []

        logger.info(
            "Found %d viable opportunities; top %d by net profit:",
            len(opportunities),
            len(self._top),
        )
        for i, opp in enumerate(self._top, 1):
            logger.info(
                "%d. %s net %.4f (%s, cost %.4f)",
                i,
                " -> ".join(opp.route_symbols),
                opp.net_profit,
                format_profit(opp.profit_percent),
                opp.settlement_cost,
            )

        if self.state is AgentState.SCANNING:
            self.state = AgentState.EVALUATING
        for opportunity in opportunities[: self.config.max_concurrent_opportunities]:
            await self._evaluate(opportunity, simulator)
        return opportunities

    async def _snapshot(self) -> Optional[RouteSimulator]:
        try:
            tokens = await self.provider.list_tokens()
            pool_states = await self.provider.list_pools()
            registry = PoolRegistry.from_snapshot(tokens, pool_states)
        except (NetworkError, DataError) as e:
            logger.error("Data provider unavailable: %s", e)
            self._record_error("data_provider", f"Data provider error: {e}")
            return None
        logger.debug("Snapshot: %d tokens, %d pools", len(registry.tokens()), len(registry))
        return RouteSimulator.from_config(registry, self.config)

    def find_all(self, simulator: RouteSimulator) -> List[ArbitrageOpportunity]:
        found: List[ArbitrageOpportunity] = []
        for token in simulator.registry.tokens():
            found.extend(
                simulator.find_opportunities(
                    token.address, self.config.probe_amounts, self.config.max_hops
                )
            )
        return rank_by_net_profit(found)

    async def _evaluate(
        self, opportunity: ArbitrageOpportunity, simulator: RouteSimulator
    ) -> Optional[TransactionResult]:
        start = simulator.registry.get_token(opportunity.start_token)
        logger.info(
            "\n%s", format_opportunity(opportunity, start.decimals if start else 18)
        )
        pools = simulator.route_pools(opportunity.route)

        decision = await self.oracle.analyze_opportunity(opportunity, pools)
        self.metrics.record_verdict(decision.execute)
        logger.info(
            "Decision: execute=%s confidence=%.1f%% urgency=%s reasoning=%s",
            decision.execute,
            decision.confidence * 100,
            decision.urgency.value,
            decision.reasoning,
        )
        if decision.risks:
            logger.info("Risks: %s", ", ".join(decision.risks))

        if not decision.execute:
            return None
        if not self.config.auto_execute:
            logger.info("Auto-execute is disabled, skipping execution")
            return None

        refusal = self.executor.check_decision(decision)
        if refusal:
            self.metrics.record_execution("refused")
            logger.info("Not executing: %s", refusal)
            return None

        preflight = await self.executor.preflight(opportunity)
        if not preflight.passed:
            self.metrics.record_execution("preflight_failed")
            logger.warning("Pre-flight checks failed: %s", "; ".join(preflight.errors))
            return None

        result = await self.executor.execute(opportunity, decision, pools)
        if result.success:
            self.metrics.record_execution("success")
            self._opportunities_executed += 1
            if start is not None:
                self._total_realized_value += simulator.reference_price(start.symbol) * (
                    Decimal(result.realized_profit) / (Decimal(10) ** start.decimals)
                )
        else:
            self.metrics.record_execution("failed")
            self._record_error("execution", f"Execution failed for {opportunity.id}: {result.error}")
        return result

    async def analyze_market(self, token_limit: Optional[int] = None) -> MarketAnalysis:
        """Ask the oracle for a market read over current opportunities."""
        simulator = await self._snapshot()
        if simulator is None:
            return MarketAnalysis.neutral("Market data unavailable")
        opportunities = self.find_all(simulator)
        if token_limit is not None:
            allowed = {t.address for t in simulator.registry.tokens()[:token_limit]}
            opportunities = [o for o in opportunities if o.start_token in allowed]
        return await self.oracle.analyze_market(opportunities)

    async def manual_execute(self, opportunity_id: str) -> Optional[TransactionResult]:
        """Re-scan, look the opportunity up by id and run it through the gates."""
        simulator = await self._snapshot()
        if simulator is None:
            return None
        for opportunity in self.find_all(simulator):
            if opportunity.id == opportunity_id:
                pools = simulator.route_pools(opportunity.route)
                decision = await self.oracle.analyze_opportunity(opportunity, pools)
                return await self.executor.execute(opportunity, decision, pools)
        logger.warning("Opportunity %s not found", opportunity_id)
        return None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _record_error(self, stage: str, message: str) -> None:
        self._errors.append(f"{timestamp_to_iso(get_current_timestamp())} {message}")
        self.metrics.record_scan_error(stage)

    def status(self) -> AgentStatus:
        return AgentStatus(
            state=self.state,
            scans=self._scans,
            skipped_scans=self._skipped_scans,
            opportunities_found=self._opportunities_found,
            opportunities_executed=self._opportunities_executed,
            total_realized_value=self._total_realized_value,
            last_scan=self._last_scan,
            last_scan_duration=self._last_scan_duration,
            top_opportunities=[o.to_dict() for o in self._top],
            errors=list(self._errors),
            executor=self.executor.status(),
        )

    def _write_status(self) -> None:
        if not self.config.status_file:
            return
        try:
            path = ensure_path_exists(self.config.status_file, is_file=True)
            path.write_text(safe_json_dump(self.status().to_dict()))
        except OSError as e:
            logger.warning("Could not write status file %s: %s", self.config.status_file, e)
