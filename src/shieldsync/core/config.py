"""
shieldsync Configuration

Supports testnet and mainnet with separate consensus parameters. Every value
can be overridden through a ``SHIELDSYNC_*`` environment variable; the module
is read once at import time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from shieldsync.core.sync_exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class NetworkType(Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"


@dataclass(frozen=True)
class NetworkParameters:
    """Consensus values the scanner needs to know about a network."""
    network: NetworkType
    sapling_activation_height: int


MAINNET_PARAMETERS = NetworkParameters(NetworkType.MAINNET, 419_200)
TESTNET_PARAMETERS = NetworkParameters(NetworkType.TESTNET, 280_000)


def network_parameters(network: str) -> NetworkParameters:
    """Return the parameters for ``network`` ("mainnet" or "testnet")."""
    try:
        network_type = NetworkType(network.strip().lower())
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid network '{network}' specified. Use 'testnet' or 'mainnet'.",
            details={"network": network},
        ) from exc
    if network_type is NetworkType.MAINNET:
        return MAINNET_PARAMETERS
    return TESTNET_PARAMETERS


def _get_int(env_var: str, default: int) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{env_var} must be an integer, got {raw!r}",
            details={"env_var": env_var},
        ) from exc


def _get_optional_int(env_var: str) -> Optional[int]:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return None
    return _get_int(env_var, 0)


# Network selection (default to testnet for safety)
NETWORK = os.getenv("SHIELDSYNC_NETWORK", "testnet")
PARAMETERS = network_parameters(NETWORK)

# Rewind safety policy
PRUNING_DEPTH = _get_int("SHIELDSYNC_PRUNING_DEPTH", 100)
STABLE_CHECKPOINT_HEIGHT = _get_optional_int("SHIELDSYNC_STABLE_CHECKPOINT_HEIGHT")
# Blocks to step back below an invalid-chain lower bound before rescanning
REORG_REWIND_MARGIN = _get_int("SHIELDSYNC_REORG_REWIND_MARGIN", 10)

# Scanning
SCAN_BATCH_LIMIT = _get_optional_int("SHIELDSYNC_SCAN_BATCH_LIMIT")

# Storage locations
DATA_DIR = os.getenv("SHIELDSYNC_DATA_DIR", os.path.join(os.getcwd(), "data"))
CACHE_DB_PATH = os.getenv("SHIELDSYNC_CACHE_DB", os.path.join(DATA_DIR, "cache.sqlite"))
FS_CACHE_DIR = os.getenv("SHIELDSYNC_FS_CACHE_DIR", os.path.join(DATA_DIR, "fs_cache"))
WALLET_DB_PATH = os.getenv("SHIELDSYNC_WALLET_DB", os.path.join(DATA_DIR, "wallet.sqlite"))

# Logging
LOG_LEVEL = os.getenv("SHIELDSYNC_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("SHIELDSYNC_LOG_FILE", "").strip() or None
ENVIRONMENT = os.getenv("SHIELDSYNC_ENVIRONMENT", "production")

if PRUNING_DEPTH < 0:
    raise ConfigurationError(
        "SHIELDSYNC_PRUNING_DEPTH must not be negative",
        details={"pruning_depth": PRUNING_DEPTH},
    )

if SCAN_BATCH_LIMIT is not None and SCAN_BATCH_LIMIT <= 0:
    logger.warning(
        "Ignoring non-positive scan batch limit %s",
        SCAN_BATCH_LIMIT,
        extra={"event": "config.invalid_batch_limit"},
    )
    SCAN_BATCH_LIMIT = None
