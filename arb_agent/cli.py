"""
Arbitrage agent command line.

Usage:
    python -m arb_agent start --mock
    python -m arb_agent scan --config config/agent.yaml --max-hops 3
    python -m arb_agent status --config config/agent.yaml
    python -m arb_agent analyze --mock
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import logging_config
from amm_arbitrage.config_loader import AgentConfig, load_config
from amm_arbitrage.exceptions import ConfigurationError
from amm_arbitrage.metrics import AgentMetrics
from amm_arbitrage.registry import PoolRegistry
from amm_arbitrage.simulator import format_opportunity
from amm_arbitrage.utils import get_logger
from amm_arbitrage.version import get_version

from .data_provider import GraphQLDataProvider, RegistryDataProvider
from .executor import Executor, JsonRpcSettlementClient, SimulatedSettlement
from .mock_data import build_mock_registry
from .oracle import OracleClient
from .orchestrator import ArbitrageAgent

logger = get_logger(__name__)

COMMANDS = ("start", "scan", "status", "analyze")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arb_agent",
        description="Cyclic arbitrage agent for constant-product pools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Paper-trade the bundled mock market
  python -m arb_agent start --mock --auto-execute

  # One scan against an indexer
  python -m arb_agent scan --endpoint http://localhost:4000/graphql
        """,
    )
    parser.add_argument("command", choices=COMMANDS, help="What to run")
    parser.add_argument("--config", help="Path to config YAML file")
    parser.add_argument(
        "--min-profit", type=float, help="Minimum profit percent (default: 0.1)"
    )
    parser.add_argument("--max-hops", type=int, help="Maximum swaps per route (default: 4)")
    parser.add_argument("--oracle-endpoint", help="Chat-completions endpoint of the oracle")
    parser.add_argument("--oracle-key", help="Oracle credential (prefer ORACLE_API_KEY)")
    parser.add_argument(
        "--auto-execute",
        action="store_true",
        default=None,
        help="Execute approved opportunities",
    )
    parser.add_argument(
        "--poll-interval", type=float, help="Seconds between scans (default: 5)"
    )
    parser.add_argument("--endpoint", help="GraphQL endpoint of the pool data indexer")
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Serve the bundled mock market in-process with paper settlement",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    return parser


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "min_profit_percent": args.min_profit,
        "max_hops": args.max_hops,
        "oracle_endpoint": args.oracle_endpoint,
        "oracle_api_key": args.oracle_key,
        "auto_execute": args.auto_execute,
        "poll_interval_sec": args.poll_interval,
        "data_endpoint": args.endpoint,
    }


def build_agent(config: AgentConfig, mock: bool = False) -> ArbitrageAgent:
    """Wire provider, oracle, settlement and executor from configuration."""
    if mock:
        registry = build_mock_registry()
        provider = RegistryDataProvider(registry, gas_per_hop=config.gas_per_hop)
        settlement = SimulatedSettlement(
            registry,
            gas_price_wei=int(config.gas_price_gwei * 10**9),
            gas_per_hop=config.gas_per_hop,
            apply_to_pools=True,
        )
    else:
        provider = GraphQLDataProvider(config.data_endpoint)
        if config.settlement_endpoint:
            settlement = JsonRpcSettlementClient(
                config.settlement_endpoint, api_key=config.settlement_api_key
            )
        elif config.auto_execute:
            raise ConfigurationError(
                "auto_execute needs a settlement_endpoint (or --mock for paper trading)"
            )
        else:
            # Never submitted to: execution is off
            settlement = SimulatedSettlement(PoolRegistry())

    oracle = OracleClient.from_config(config)
    if not oracle.configured:
        logger.warning("Oracle credential not set: every verdict will be 'do not execute'")
    executor = Executor.from_config(settlement, config)
    return ArbitrageAgent(config, provider, oracle, executor, metrics=AgentMetrics())


async def run_start(agent: ArbitrageAgent) -> int:
    metrics_port = agent.config.metrics_port
    if metrics_port:
        await agent.metrics.start_server(metrics_port)
    try:
        await agent.run_forever()
    finally:
        await agent.stop()
        if metrics_port:
            await agent.metrics.stop_server()
    return 0


async def run_scan(agent: ArbitrageAgent) -> int:
    opportunities = await agent.scan()
    status = agent.status()
    print(f"\n{len(opportunities)} viable opportunities")
    for opportunity in opportunities[:5]:
        print(format_opportunity(opportunity))
    for error in status.errors:
        print(f"error: {error}", file=sys.stderr)
    return 1 if status.errors and not opportunities else 0


async def run_analyze(agent: ArbitrageAgent) -> int:
    analysis = await agent.analyze_market()
    print(json.dumps(analysis.to_dict(), indent=2))
    return 0


def show_status(config: AgentConfig) -> int:
    if not config.status_file:
        print("No status_file configured", file=sys.stderr)
        return 1
    path = Path(config.status_file)
    if not path.exists():
        print(f"No status recorded yet at {path}", file=sys.stderr)
        return 1
    print(path.read_text())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging_config.setup_debug()
    else:
        logging_config.setup()

    try:
        config = load_config(args.config, overrides=config_overrides(args))
    except ConfigurationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    if args.command == "status":
        return show_status(config)

    try:
        agent = build_agent(config, mock=args.mock)
    except ConfigurationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1
    runners = {"start": run_start, "scan": run_scan, "analyze": run_analyze}
    try:
        return asyncio.run(runners[args.command](agent))
    except KeyboardInterrupt:
        print("\nStopped by user")
        return 0
