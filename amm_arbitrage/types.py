"""
Core data types shared by discovery, simulation, the advisory oracle and
the executor.

Token amounts are always integers in the token's native units. Percentages
are stored as Decimal percent values (e.g. 0.15 for 0.15%).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .utils import display_address, normalize_address

# Ordered token addresses, first == last
Route = Tuple[str, ...]

MIN_ROUTE_HOPS = 3


def hop_count(route: Route) -> int:
    """Number of swaps in a route."""
    return max(len(route) - 1, 0)


def is_cycle(route: Route) -> bool:
    """True for a closed route of at least MIN_ROUTE_HOPS swaps."""
    return len(route) >= MIN_ROUTE_HOPS + 1 and route[0] == route[-1]


@dataclass(frozen=True, order=True)
class Token:
    """
    An observed token. Ordering and equality use the address only.

    Attributes:
        address: Identity key (normalized lowercase address)
        decimals: Native decimal precision
        symbol: Display symbol
        name: Display name
    """

    address: str
    decimals: int = field(default=18, compare=False)
    symbol: str = field(default="", compare=False)
    name: str = field(default="", compare=False)

    def __post_init__(self):
        object.__setattr__(self, "address", normalize_address(self.address))
        if self.decimals < 0:
            raise ValueError(f"decimals must be non-negative: {self.decimals}")
        if not self.symbol:
            object.__setattr__(self, "symbol", self.address[:8])

    @property
    def checksum_address(self) -> str:
        return display_address(self.address)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "decimals": self.decimals,
            "symbol": self.symbol,
            "name": self.name,
        }


class Urgency(Enum):
    """Urgency tier reported by the advisory oracle."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class ArbitrageOpportunity:
    """
    A simulated cyclic route at one probe amount.

    Attributes:
        route: Token addresses, first == last
        route_symbols: Display symbols for the route
        amount_in: Input amount in start-token units
        amount_out: Simulated output amount in start-token units
        profit: Gross profit in start-token units (0 when not profitable)
        profit_percent: Profit as percent of amount_in
        profit_value: Gross profit in the reference currency
        settlement_cost: Estimated settlement cost in the reference currency
        net_profit: profit_value - settlement_cost
        score: Normalized ranking score
        pools: Pool addresses along the route
    """

    route: Route
    route_symbols: List[str]
    amount_in: int
    amount_out: int
    profit: int
    profit_percent: Decimal
    profit_value: Decimal
    settlement_cost: Decimal
    net_profit: Decimal
    score: float = 0.0
    pools: List[str] = field(default_factory=list)

    @property
    def viable(self) -> bool:
        return self.net_profit > 0

    @property
    def hop_count(self) -> int:
        return hop_count(self.route)

    @property
    def start_token(self) -> str:
        return self.route[0]

    @property
    def id(self) -> str:
        return f"{'-'.join(self.route)}-{self.amount_in}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "route": list(self.route),
            "route_symbols": self.route_symbols,
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out),
            "profit": str(self.profit),
            "profit_percent": float(self.profit_percent),
            "profit_value": float(self.profit_value),
            "settlement_cost": float(self.settlement_cost),
            "net_profit": float(self.net_profit),
            "score": self.score,
            "viable": self.viable,
            "pools": self.pools,
        }


@dataclass(frozen=True)
class ExecutionDecision:
    """
    Structured verdict from the advisory oracle.

    max_slippage is a percent (0.5 for 0.5%). recommended_amount is free text
    from the oracle ("same", "decrease", or an amount) and is advisory only.
    """

    execute: bool
    confidence: float
    reasoning: str
    recommended_amount: str = "same"
    max_slippage: float = 0.5
    urgency: Urgency = Urgency.LOW
    risks: Tuple[str, ...] = ()

    @classmethod
    def conservative(cls, reason: str, risk: str = "advisory oracle unavailable"):
        """Fail-closed default: never execute, zero confidence."""
        return cls(
            execute=False,
            confidence=0.0,
            reasoning=reason,
            recommended_amount="same",
            max_slippage=0.5,
            urgency=Urgency.LOW,
            risks=(risk,),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execute": self.execute,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "recommended_amount": self.recommended_amount,
            "max_slippage": self.max_slippage,
            "urgency": self.urgency.value,
            "risks": list(self.risks),
        }


@dataclass(frozen=True)
class SwapStep:
    """One hop of a submitted route."""

    pool: str
    token_in: str
    token_out: str
    amount_in: int
    min_amount_out: int


@dataclass
class TransactionResult:
    """
    Outcome of an execution attempt.

    Attributes:
        success: Whether settlement succeeded
        settlement_id: Opaque identifier from the settlement layer
        cost: Settlement cost actually incurred (reference currency)
        realized_profit: Profit realized in start-token units
        error: Failure description
        sequence: Executor sequence number of a successful submission
        steps: Submitted hops
    """

    success: bool
    settlement_id: Optional[str] = None
    cost: Decimal = Decimal("0")
    realized_profit: int = 0
    error: Optional[str] = None
    sequence: Optional[int] = None
    steps: List[SwapStep] = field(default_factory=list)

    @classmethod
    def failed(cls, error: str, steps: Optional[List[SwapStep]] = None):
        return cls(success=False, error=error, steps=steps or [])
