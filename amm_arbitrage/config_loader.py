"""
Configuration loading and normalization for the arbitrage agent.

Layering, lowest to highest precedence:

    built-in defaults < YAML file < environment (.env included) < overrides

The YAML file is flat, with optional ``oracle``, ``settlement`` and
``costs`` sections whose keys map onto prefixed AgentConfig fields
(``oracle.timeout`` -> ``oracle_timeout``). The result is an immutable
AgentConfig; every invalid value raises ConfigurationError.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .utils import get_logger

logger = get_logger(__name__)

DEFAULT_ORACLE_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_ORACLE_MODEL = "qwen/qwen3-coder:free"
DEFAULT_DATA_ENDPOINT = "http://localhost:4000/graphql"


def _default_reference_prices() -> Dict[str, float]:
    return {
        "WETH": 2000.0,
        "ETH": 2000.0,
        "USDC": 1.0,
        "DAI": 1.0,
        "USDT": 1.0,
        "WBTC": 40000.0,
        "BTC": 40000.0,
    }


@dataclass(frozen=True)
class AgentConfig:
    """Immutable runtime configuration for the agent."""

    # Discovery and valuation
    min_profit_percent: float = 0.1
    max_hops: int = 4
    probe_amounts: Tuple[float, ...] = (1.0, 5.0, 10.0)
    reference_prices: Dict[str, float] = field(default_factory=_default_reference_prices)
    gas_price_gwei: float = 20.0
    gas_per_hop: int = 150_000
    native_price_usd: float = 2000.0

    # Loop
    poll_interval_sec: float = 5.0
    max_concurrent_opportunities: int = 3
    error_history_size: int = 50
    status_file: Optional[str] = None
    metrics_port: Optional[int] = None

    # Execution gates
    auto_execute: bool = False
    confidence_threshold: float = 0.6
    max_gas_price_gwei: float = 50.0
    preflight_min_profit_percent: float = 0.05

    # Advisory oracle
    oracle_endpoint: str = DEFAULT_ORACLE_ENDPOINT
    oracle_api_key: Optional[str] = None
    oracle_model: str = DEFAULT_ORACLE_MODEL
    oracle_timeout: float = 30.0
    oracle_max_attempts: int = 3

    # Settlement and data
    settlement_endpoint: Optional[str] = None
    settlement_api_key: Optional[str] = None
    data_endpoint: str = DEFAULT_DATA_ENDPOINT

    def to_dict(self) -> Dict[str, Any]:
        """Dictionary form with credentials masked."""
        data = dataclasses.asdict(self)
        for key in ("oracle_api_key", "settlement_api_key"):
            if data[key]:
                data[key] = "***"
        data["probe_amounts"] = list(self.probe_amounts)
        return data


# YAML section -> field prefix
_SECTIONS = {"oracle": "oracle_", "settlement": "settlement_", "costs": ""}

# Environment variable -> field. ORACLE_API_KEY wins over OPENROUTER_API_KEY.
_ENV_VARS = (
    ("OPENROUTER_API_KEY", "oracle_api_key"),
    ("ORACLE_API_KEY", "oracle_api_key"),
    ("ORACLE_ENDPOINT", "oracle_endpoint"),
    ("ORACLE_MODEL", "oracle_model"),
    ("SETTLEMENT_ENDPOINT", "settlement_endpoint"),
    ("SETTLEMENT_API_KEY", "settlement_api_key"),
    ("DATA_ENDPOINT", "data_endpoint"),
)

_FIELD_NAMES = {f.name for f in dataclasses.fields(AgentConfig)}


def load_yaml_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Load and parse a YAML configuration file into a flat field dict."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to load config {config_path}: {e}")

    if config_dict is None:
        return {}
    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"Configuration root must be a mapping: {config_path}",
            {"type": type(config_dict).__name__},
        )
    return _flatten(config_dict, str(config_path))


def _flatten(config_dict: Mapping[str, Any], source: str) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in config_dict.items():
        if key in _SECTIONS and isinstance(value, dict):
            prefix = _SECTIONS[key]
            for sub_key, sub_value in value.items():
                flat[f"{prefix}{sub_key}"] = sub_value
        else:
            flat[key] = value

    unknown = sorted(set(flat) - _FIELD_NAMES)
    if unknown:
        raise ConfigurationError(
            f"Unknown configuration keys in {source}: {', '.join(unknown)}",
            {"unknown": unknown},
        )
    return flat


def _env_values(env: Mapping[str, str]) -> Dict[str, Any]:
    values = {}
    for var, name in _ENV_VARS:
        value = env.get(var)
        if value:
            values[name] = value
    return values


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw value to the type of the named AgentConfig field."""
    default = _DEFAULTS[name]
    try:
        if name == "probe_amounts":
            if isinstance(value, (int, float, str)):
                value = [value]
            return tuple(float(v) for v in value)
        if name == "reference_prices":
            return {str(k).upper(): float(v) for k, v in dict(value).items()}
        if value is None:
            return None
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int) or name == "metrics_port":
            if isinstance(value, float) and not value.is_integer():
                raise ValueError("expected a whole number")
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}", {"error": str(e)})


_DEFAULTS: Dict[str, Any] = {
    f.name: (f.default if f.default is not dataclasses.MISSING else f.default_factory())
    for f in dataclasses.fields(AgentConfig)
}


def validate_config(config: AgentConfig) -> None:
    """Raise ConfigurationError on the first out-of-range setting."""
    checks = (
        (config.min_profit_percent >= 0, "min_profit_percent must be >= 0"),
        (config.max_hops >= 3, "max_hops must be at least 3"),
        (len(config.probe_amounts) > 0, "probe_amounts must not be empty"),
        (all(a > 0 for a in config.probe_amounts), "probe_amounts must be positive"),
        (config.gas_price_gwei >= 0, "gas_price_gwei must be >= 0"),
        (config.gas_per_hop >= 0, "gas_per_hop must be >= 0"),
        (config.native_price_usd >= 0, "native_price_usd must be >= 0"),
        (config.poll_interval_sec > 0, "poll_interval_sec must be positive"),
        (
            config.max_concurrent_opportunities >= 1,
            "max_concurrent_opportunities must be at least 1",
        ),
        (config.error_history_size >= 1, "error_history_size must be at least 1"),
        (
            0.0 <= config.confidence_threshold <= 1.0,
            "confidence_threshold must be in [0, 1]",
        ),
        (config.max_gas_price_gwei > 0, "max_gas_price_gwei must be positive"),
        (config.oracle_timeout > 0, "oracle_timeout must be positive"),
        (config.oracle_max_attempts >= 1, "oracle_max_attempts must be at least 1"),
        (
            config.metrics_port is None or 0 < config.metrics_port < 65536,
            "metrics_port must be a valid TCP port",
        ),
    )
    for ok, message in checks:
        if not ok:
            raise ConfigurationError(message, {"config": config.to_dict()})


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> AgentConfig:
    """
    Build the agent configuration.

    Args:
        config_path: Optional YAML file
        overrides: Explicit values (e.g. CLI flags); None values are ignored
        env: Environment mapping, os.environ when omitted
        use_dotenv: Load a .env file into os.environ first

    Returns:
        Validated AgentConfig

    Raises:
        ConfigurationError: Unreadable file, unknown key or invalid value
    """
    if env is None:
        if use_dotenv:
            load_dotenv()
        env = os.environ

    raw: Dict[str, Any] = {}
    if config_path:
        raw.update(load_yaml_config(config_path))
        logger.info("Loaded configuration from %s", config_path)
    raw.update(_env_values(env))
    if overrides:
        unknown = sorted(set(overrides) - _FIELD_NAMES)
        if unknown:
            raise ConfigurationError(f"Unknown configuration overrides: {', '.join(unknown)}")
        raw.update({k: v for k, v in overrides.items() if v is not None})

    values = {name: _coerce(name, value) for name, value in raw.items()}
    config = AgentConfig(**values)
    validate_config(config)
    return config
