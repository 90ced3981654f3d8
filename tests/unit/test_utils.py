"""
Unit tests for amm_arbitrage.utils module.

Tests common utility functions and ensures no circular imports.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from amm_arbitrage.types import Token, Urgency
from amm_arbitrage.utils import (
    calculate_percentage,
    clamp,
    display_address,
    ensure_path_exists,
    format_duration,
    format_profit,
    from_base_units,
    get_current_timestamp,
    normalize_address,
    safe_json_dump,
    timestamp_to_iso,
    to_base_units,
)


class TestTimestampUtils:
    """Test timestamp utilities."""

    def test_get_current_timestamp(self):
        timestamp = get_current_timestamp()
        assert isinstance(timestamp, float)
        assert timestamp > 0

    def test_timestamp_to_iso(self):
        assert timestamp_to_iso(0).startswith("1970-01-01T00:00:00")
        assert "T" in timestamp_to_iso(1700000000.0)

    def test_format_duration(self):
        assert format_duration(30) == "30.00s"
        assert format_duration(120) == "2.0m"
        assert format_duration(3600) == "1.0h"


class TestJsonUtils:
    def test_safe_json_dump_decimal_and_datetime(self):
        dt = datetime(2024, 1, 1, tzinfo=timezone.utc)
        data = json.loads(safe_json_dump({"value": Decimal("1.50"), "at": dt}))
        assert data == {"value": "1.50", "at": "2024-01-01T00:00:00+00:00"}

    def test_safe_json_dump_enum_and_tuple(self):
        data = json.loads(safe_json_dump({"urgency": Urgency.HIGH, "risks": ("a", "b")}))
        assert data == {"urgency": "high", "risks": ["a", "b"]}


class TestPathUtils:
    def test_ensure_path_exists_for_file(self, tmp_path):
        target = tmp_path / "nested" / "dir" / "status.json"
        path = ensure_path_exists(target, is_file=True)
        assert path == target
        assert target.parent.is_dir()
        assert not target.exists()

    def test_ensure_path_exists_for_dir(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_path_exists(target)
        assert target.is_dir()


class TestAddressUtils:
    def test_normalize_address(self):
        assert normalize_address("  0xAbC ") == "0xabc"

    @pytest.mark.parametrize("bad", ["", "   ", None, 42])
    def test_normalize_address_rejects(self, bad):
        with pytest.raises(ValueError):
            normalize_address(bad)

    def test_display_address_checksums_hex(self):
        weth = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
        assert display_address(weth) == "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
        assert Token(weth).checksum_address == display_address(weth)
        assert display_address("pool:a:b") == "pool:a:b"


class TestMathUtils:
    def test_clamp(self):
        assert clamp(5, 0, 10) == 5
        assert clamp(-1, 0, 10) == 0
        assert clamp(11, 0, 10) == 10

    def test_calculate_percentage(self):
        assert calculate_percentage(1, 100) == Decimal("1")
        assert calculate_percentage(5, 0) == Decimal("0")

    def test_base_units(self):
        assert to_base_units(1, 18) == 10**18
        assert to_base_units("1.5", 6) == 1_500_000
        assert to_base_units(0.1, 18) == 10**17
        assert from_base_units(1_500_000, 6) == Decimal("1.5")


def test_format_profit():
    assert format_profit(1.2345) == "+1.23%"
    assert format_profit(Decimal("-4.56")) == "-4.56%"
    assert format_profit(0) == "+0.00%"
