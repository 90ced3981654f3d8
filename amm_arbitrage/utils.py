"""
Shared helpers for the pool arbitrage packages: clock and duration text,
status-file JSON, token and pool address keys, base-unit conversion and the
package logger factory.
"""

import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Union

from web3 import Web3

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"


# Clock
def get_current_timestamp() -> float:
    """Wall-clock seconds; the default clock for pools, executor and agent."""
    return time.time()


def timestamp_to_iso(timestamp: float) -> str:
    """UTC ISO 8601 text for a scan or settlement timestamp."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def format_duration(seconds: float) -> str:
    """Scan duration as 12.34s, 2.5m or 1.2h."""
    if seconds < 60:
        return f"{seconds:.2f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


# Status and prompt JSON
def _encode_extra(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # amounts and profits keep their exact digits
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (tuple, set, frozenset)):
        return list(obj)
    return str(obj)


def safe_json_dump(data: Any, **kwargs) -> str:
    """
    Indented JSON for status files and oracle prompts.

    Decimal becomes its string form, Enum its value and datetime ISO text;
    anything else unknown is stringified rather than rejected.
    """
    options = {"indent": 2, "ensure_ascii": False, "default": _encode_extra}
    options.update(kwargs)
    return json.dumps(data, **options)


def ensure_path_exists(path: Union[str, Path], is_file: bool = False) -> Path:
    """Create `path` (or, with is_file, its parent directory) and return it."""
    target = Path(path)
    (target.parent if is_file else target).mkdir(parents=True, exist_ok=True)
    return target


# Addresses
def normalize_address(address: str) -> str:
    """Canonical identity key for a token or pool address (lowercase, stripped)."""
    if not isinstance(address, str) or not address.strip():
        raise ValueError(f"Invalid address: {address!r}")
    return address.strip().lower()


def display_address(address: str) -> str:
    """EIP-55 checksum form for hex addresses, unchanged otherwise."""
    if Web3.is_address(address):
        return Web3.to_checksum_address(address)
    return address


# Numbers
def clamp(value: float, min_val: float, max_val: float) -> float:
    return max(min_val, min(value, max_val))


def calculate_percentage(value: Union[int, Decimal], total: Union[int, Decimal]) -> Decimal:
    """value / total * 100, or 0 when total is 0."""
    if total == 0:
        return Decimal("0")
    return Decimal(value) / Decimal(total) * Decimal("100")


def to_base_units(amount: Union[int, float, str, Decimal], decimals: int) -> int:
    """Convert a human token amount to integer base units (truncating)."""
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def from_base_units(amount: int, decimals: int) -> Decimal:
    """Convert integer base units to a human token amount."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def format_profit(percent_profit) -> str:
    """
    Signed two-decimal percentage for log lines.

        >>> format_profit(1.2345)
        '+1.23%'
        >>> format_profit(-4.56)
        '-4.56%'
    """
    return f"{float(percent_profit):+.2f}%"


# Logging
def get_logger(name: str, level: Union[str, int] = logging.INFO) -> logging.Logger:
    """
    Module logger for the agent packages.

    Until logging_config.setup() takes over, each logger writes through its
    own stderr handler in LOG_FORMAT. Repeated calls return the same logger
    without stacking handlers.
    """
    logger = logging.getLogger(name)
    if logger.level == logging.NOTSET:
        logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(handler)
    return logger
