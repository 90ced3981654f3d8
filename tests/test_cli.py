"""
CLI smoke tests. Commands run in-process through main() against the
bundled mock market; no network is touched.
"""

import json
import logging

import pytest

from amm_arbitrage.config_loader import AgentConfig
from amm_arbitrage.exceptions import ConfigurationError
from arb_agent.cli import build_agent, build_parser, config_overrides, main
from arb_agent.data_provider import GraphQLDataProvider, RegistryDataProvider
from arb_agent.executor import JsonRpcSettlementClient, SimulatedSettlement


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    """No credentials from the developer's shell or .env, and restore logging."""
    for var in (
        "OPENROUTER_API_KEY",
        "ORACLE_API_KEY",
        "ORACLE_ENDPOINT",
        "SETTLEMENT_ENDPOINT",
        "DATA_ENDPOINT",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)

    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    for name in ("amm_arbitrage", "arb_agent"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_parser_overrides():
    args = build_parser().parse_args(
        ["scan", "--min-profit", "0.5", "--max-hops", "3", "--auto-execute"]
    )
    overrides = config_overrides(args)
    assert args.command == "scan"
    assert overrides["min_profit_percent"] == 0.5
    assert overrides["max_hops"] == 3
    assert overrides["auto_execute"] is True
    assert overrides["poll_interval_sec"] is None


def test_parser_rejects_unknown_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["trade"])


def test_build_agent_mock_shares_registry():
    agent = build_agent(AgentConfig(), mock=True)
    assert isinstance(agent.provider, RegistryDataProvider)
    assert isinstance(agent.executor.settlement, SimulatedSettlement)
    assert agent.executor.settlement.registry is agent.provider.registry
    assert agent.executor.settlement.apply_to_pools


def test_build_agent_remote():
    config = AgentConfig(
        settlement_endpoint="http://settlement.local", data_endpoint="http://indexer/graphql"
    )
    agent = build_agent(config)
    assert isinstance(agent.provider, GraphQLDataProvider)
    assert agent.provider.endpoint == "http://indexer/graphql"
    assert isinstance(agent.executor.settlement, JsonRpcSettlementClient)


def test_auto_execute_needs_settlement():
    with pytest.raises(ConfigurationError, match="settlement_endpoint"):
        build_agent(AgentConfig(auto_execute=True))


def test_scan_mock(capsys):
    assert main(["scan", "--mock"]) == 0
    out = capsys.readouterr().out
    assert "1 viable opportunities" in out
    assert "WETH -> DAI -> USDC -> WETH" in out


def test_status_without_status_file(capsys):
    assert main(["status"]) == 1
    assert "No status_file configured" in capsys.readouterr().err


def test_status_after_scan(tmp_path, capsys):
    config_path = tmp_path / "agent.yaml"
    status_path = tmp_path / "status.json"
    config_path.write_text(f"status_file: {status_path}\nmax_hops: 3\n")

    assert main(["scan", "--mock", "--config", str(config_path)]) == 0
    capsys.readouterr()
    assert main(["status", "--config", str(config_path)]) == 0

    out = capsys.readouterr().out
    data = json.loads(out[out.index("{"):])
    assert data["scans"] == 1
    assert data["opportunities_found"] == 1


def test_config_error_exit_code(capsys):
    assert main(["scan", "--mock", "--config", "/non/existent.yaml"]) == 1
    assert "Config error" in capsys.readouterr().err


def test_analyze_without_credential(capsys):
    assert main(["analyze", "--mock"]) == 0
    out = capsys.readouterr().out
    data = json.loads(out[out.index("{"):])
    assert data["summary"] == "Market analysis unavailable"


def test_version(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--version"])
    assert exc_info.value.code == 0
    assert capsys.readouterr().out.strip() == "arb_agent 0.1.0"
