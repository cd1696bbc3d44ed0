"""
shieldsync - Wallet Synchronization

One round of the light-client sync loop:

1. Validate the cached chain above the wallet tip
2. If it is invalid, rewind the wallet a little below the first bad height,
   drop the cache above the same height and return so the caller can refetch
3. Otherwise scan the cache in batches until no unscanned blocks remain

Fetching blocks from a server is the caller's job; this module only ever
reads and truncates the local cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from shieldsync.core import config
from shieldsync.core.chain.block_cache import BlockSource
from shieldsync.core.chain.chain_validator import validate_chain
from shieldsync.core.sync_exceptions import (
    InvalidChainError,
    RequestedRewindInvalidError,
    get_error_context,
)
from shieldsync.core.wallet.note_decryption import NoteDecryptor
from shieldsync.core.wallet.rewind import RewindPolicy, rewind_to_height
from shieldsync.core.wallet.scanner import ScanSummary, scan_cached_blocks
from shieldsync.core.wallet.wallet_db import WalletDb

logger = logging.getLogger(__name__)

# Marks "use config.SCAN_BATCH_LIMIT" so that an explicit None still means unbounded
_CONFIGURED_LIMIT = object()


@dataclass
class SyncResult:
    """Outcome of one ``sync_wallet`` round."""

    scans: List[ScanSummary] = field(default_factory=list)
    invalid_chain: Optional[InvalidChainError] = None
    rewound_to: Optional[int] = None
    blocks_truncated: int = 0

    @property
    def blocks_scanned(self) -> int:
        return sum(scan.blocks_scanned for scan in self.scans)

    @property
    def needs_refetch(self) -> bool:
        """True when the cache was truncated and must be refilled before the next round."""
        return self.invalid_chain is not None


def _recover_from_invalid_chain(
    cache: BlockSource,
    wallet_db: WalletDb,
    error: InvalidChainError,
    policy: RewindPolicy,
    rewind_margin: int,
) -> SyncResult:
    target = error.lower_bound - rewind_margin
    birthday = wallet_db.get_birthday_height()
    if birthday is not None and target < birthday:
        target = birthday
    try:
        rewind_to_height(wallet_db, target, policy)
    except RequestedRewindInvalidError as e:
        # The margin pushed us past the pruning depth; go to the boundary instead
        logger.warning(
            "Rewind target rejected, falling back to the stable boundary",
            extra={"event": "sync.rewind_bounded", **get_error_context(e)},
        )
        target = max(e.safe_height, birthday) if birthday is not None else e.safe_height
        rewind_to_height(wallet_db, target, policy)

    truncated = cache.truncate_to_height(target)
    logger.warning(
        "Recovered from invalid cached chain",
        extra={
            "event": "sync.reorg_recovered",
            "rewound_to": target,
            "blocks_truncated": truncated,
            **get_error_context(error),
        },
    )
    return SyncResult(invalid_chain=error, rewound_to=target, blocks_truncated=truncated)


def sync_wallet(
    cache: BlockSource,
    wallet_db: WalletDb,
    decryptor: NoteDecryptor,
    policy: Optional[RewindPolicy] = None,
    limit: Any = _CONFIGURED_LIMIT,
    rewind_margin: int = config.REORG_REWIND_MARGIN,
) -> SyncResult:
    """
    Validate the cache and scan it into the wallet.

    Args:
        cache: Block cache filled by the caller
        wallet_db: Wallet store to update
        decryptor: Trial-decryption oracle
        policy: Rewind policy; read from configuration when omitted
        limit: Blocks per scan batch; defaults to ``config.SCAN_BATCH_LIMIT``.
            An explicit None scans everything in one batch
        rewind_margin: Blocks to step back below an invalid-chain lower bound

    Returns:
        SyncResult; ``needs_refetch`` is set when the cache was truncated
    """
    if policy is None:
        policy = RewindPolicy.from_config()
    if limit is _CONFIGURED_LIMIT:
        limit = config.SCAN_BATCH_LIMIT

    try:
        validate_chain(
            cache,
            wallet_db.get_max_height_hash(),
            wallet_db.params.sapling_activation_height,
        )
    except InvalidChainError as e:
        return _recover_from_invalid_chain(cache, wallet_db, e, policy, rewind_margin)

    result = SyncResult()
    while True:
        summary = scan_cached_blocks(cache, wallet_db, decryptor, limit)
        if summary.blocks_scanned == 0:
            break
        result.scans.append(summary)
        if limit is None:
            break

    checkpoint = wallet_db.get_checkpoint()
    logger.info(
        "Wallet sync round finished",
        extra={
            "event": "sync.completed",
            "blocks_scanned": result.blocks_scanned,
            "tip_height": checkpoint.height if checkpoint else None,
        },
    )
    return result
