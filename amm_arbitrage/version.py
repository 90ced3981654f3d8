"""Version information for the pool arbitrage agent."""

__version__ = "0.1.0"
__version_info__ = tuple(int(i) for i in __version__.split("."))


def get_version() -> str:
    """Get the current version string."""
    return __version__
