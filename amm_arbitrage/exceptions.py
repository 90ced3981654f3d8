"""
Exception hierarchy for the pool arbitrage system.

Provides specific exception types for different error categories to enable
better error handling and debugging. Pool invariant violations derive from
PoolError so callers can reject a single operation without inspecting
messages.
"""

from typing import Optional, Dict, Any


class AmmArbitrageError(Exception):
    """Base exception for all pool arbitrage related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(AmmArbitrageError):
    """Raised when there are configuration-related issues."""

    pass


class ValidationError(AmmArbitrageError):
    """Raised when validation of data or arguments fails."""

    pass


class DataError(AmmArbitrageError):
    """Raised when market data is missing or malformed."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.source = source


class NetworkError(AmmArbitrageError):
    """Raised when network or connectivity issues occur."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class DataProviderError(NetworkError):
    """Raised when the pool-state data provider cannot answer a query."""

    pass


class OracleError(NetworkError):
    """Raised when the advisory decision service cannot be reached or parsed."""

    pass


class ExecutionError(AmmArbitrageError):
    """Raised when trade execution cannot be prepared or submitted."""

    def __init__(
        self,
        message: str,
        opportunity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.opportunity_id = opportunity_id


class DuplicatePoolError(AmmArbitrageError):
    """Raised when a second pool is registered for the same token pair."""

    pass


# ---------------------------------------------------------------------------
# Pool invariant violations
# ---------------------------------------------------------------------------


class PoolError(AmmArbitrageError):
    """Base class for rejected pool operations. State is never modified."""

    def __init__(
        self,
        message: str,
        pool_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.pool_address = pool_address


class InsufficientInputError(PoolError):
    """Input amount is zero or negative."""

    pass


class InsufficientLiquidityError(PoolError):
    """One of the reserves needed for pricing is empty."""

    pass


class InsufficientLiquidityMintedError(PoolError):
    """A deposit would mint zero liquidity shares."""

    pass


class InsufficientLiquidityBurnedError(PoolError):
    """A withdrawal would return zero of either token (dust)."""

    pass


class InsufficientSharesError(PoolError):
    """Holder tries to burn more shares than it owns."""

    pass


class ZeroAmountError(PoolError):
    """A required amount argument is zero or negative."""

    pass


class DeadlineExpiredError(PoolError):
    """Swap submitted after its deadline."""

    pass


class SlippageExceededError(PoolError):
    """Swap output is below the caller's minimum acceptable output."""

    def __init__(
        self,
        message: str,
        pool_address: Optional[str] = None,
        expected_min: Optional[int] = None,
        actual: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, pool_address, details)
        self.expected_min = expected_min
        self.actual = actual


class InvalidTokenError(PoolError):
    """Token is not one of the pool's two tokens."""

    pass


class ReentrancyError(PoolError):
    """A mutating call overlapped another mutating call on the same pool."""

    pass
