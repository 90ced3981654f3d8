"""
Logging configuration for the agent command line.

Usage:
    import logging_config
    logging_config.setup()
"""

import logging
import sys


def setup(level=logging.INFO):
    """
    Configure one root console handler with a short format.

    - HH:MM:SS timestamps
    - Library chatter (aiohttp access log, web3, urllib3) held at WARNING
    """

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S"
    )
    console.setFormatter(formatter)
    root.addHandler(console)

    # Suppress noisy loggers
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    # Package loggers carry their own handlers from get_logger(); route them
    # through the root handler only, at the requested level.
    for name in ("amm_arbitrage", "arb_agent"):
        package_logger = logging.getLogger(name)
        package_logger.setLevel(level)
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if isinstance(logger, logging.Logger) and name.startswith(
            ("amm_arbitrage.", "arb_agent.")
        ):
            logger.handlers.clear()
            logger.setLevel(logging.NOTSET)


def setup_debug():
    """Verbose logging, including aiohttp access lines."""
    setup(level=logging.DEBUG)
    logging.getLogger("aiohttp.access").setLevel(logging.INFO)
