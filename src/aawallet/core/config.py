"""
aawallet Configuration

All tunables come from environment variables prefixed with ``AAWALLET_``.
Protocol constants that every deployment must agree on (owner limits, typed
data versions) are plain module constants and are not overridable.
"""

from __future__ import annotations

import logging
import os
from enum import Enum

logger = logging.getLogger(__name__)


class NetworkType(Enum):
    DEVNET = "devnet"
    TESTNET = "testnet"
    MAINNET = "mainnet"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _get_int(env_var: str, default: int) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        return int(raw, 0)
    except ValueError as e:
        raise ConfigurationError(f"{env_var} must be an integer, got {raw!r}") from e


def _get_bool(env_var: str, default: bool) -> bool:
    raw = os.getenv(env_var, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# Get network type from environment variable
NETWORK = os.getenv("AAWALLET_NETWORK", "devnet")  # Default to devnet for safety

# Chain parameters used by the contract host
CHAIN_ID = _get_int("AAWALLET_CHAIN_ID", 31337)
BLOCK_GAS_LIMIT = _get_int("AAWALLET_BLOCK_GAS_LIMIT", 30_000_000)
GENESIS_TIMESTAMP = _get_int("AAWALLET_GENESIS_TIMESTAMP", 1_700_000_000)
MAX_CALL_DEPTH = 1024

# Logging
LOG_LEVEL = os.getenv("AAWALLET_LOG_LEVEL", "INFO").upper()
LOG_JSON = _get_bool("AAWALLET_LOG_JSON", False)

# Wallet protocol constants
MAX_OWNERS_ON_CREATION = 100
ACCOUNT_DOMAIN_VERSION = "2"
SINGLE_OWNER_DOMAIN_NAME = "SmartAccount"
MULTI_OWNER_DOMAIN_NAME = "MultiOwnerSmartAccount"


def validate_config() -> None:
    """Fail fast on settings the host cannot run with."""
    try:
        NetworkType(NETWORK.lower())
    except ValueError as e:
        raise ConfigurationError(
            f"AAWALLET_NETWORK must be one of {[n.value for n in NetworkType]}, got {NETWORK!r}"
        ) from e

    if CHAIN_ID <= 0:
        raise ConfigurationError(f"AAWALLET_CHAIN_ID must be positive, got {CHAIN_ID}")

    if NETWORK.lower() == NetworkType.MAINNET.value and CHAIN_ID == 31337:
        raise ConfigurationError(
            "AAWALLET_CHAIN_ID must be set explicitly for mainnet; 31337 is the devnet id"
        )

    if LOG_LEVEL not in logging.getLevelNamesMapping():
        raise ConfigurationError(f"AAWALLET_LOG_LEVEL {LOG_LEVEL!r} is not a logging level")

    logger.debug(
        "Configuration validated",
        extra={"event": "config.validated", "network": NETWORK, "chain_id": CHAIN_ID},
    )
