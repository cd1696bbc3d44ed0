"""
shieldsync - Chain Validation

Checks hash-chain continuity of cached blocks:
- at the boundary between the wallet's scanned history and the cache
- between consecutive cached blocks

The validator is advisory. It never mutates either store; on failure the
caller decides whether to purge the cache and refetch, or to rewind.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from shieldsync.core.chain.block_cache import BlockSource
from shieldsync.core.chain.traversal import for_each_block
from shieldsync.core.compact_formats import CompactBlock
from shieldsync.core.sync_exceptions import (
    BlockHeightDiscontinuityError,
    InvalidChainError,
    PrevHashMismatchError,
)

logger = logging.getLogger(__name__)

WalletTip = Tuple[int, bytes]


@dataclass
class ChainValidationReport:
    """Outcome of a successful validation walk."""

    from_height: int
    blocks_checked: int
    tip_height: Optional[int]
    validation_time: float

    def to_dict(self) -> dict:
        return {
            "from_height": self.from_height,
            "blocks_checked": self.blocks_checked,
            "tip_height": self.tip_height,
            "validation_time": self.validation_time,
        }


class _ChainWalk:
    """Running state of a validation walk: the last block seen."""

    def __init__(self, validate_from: Optional[WalletTip]):
        self.prev_height: Optional[int] = validate_from[0] if validate_from else None
        self.prev_hash: Optional[bytes] = validate_from[1] if validate_from else None
        self.blocks_checked = 0

    def __call__(self, block: CompactBlock) -> None:
        current_height = block.height
        if self.prev_height is not None and current_height != self.prev_height + 1:
            raise BlockHeightDiscontinuityError(self.prev_height + 1, current_height)
        if self.prev_hash is not None and self.prev_hash != block.prev_hash():
            raise PrevHashMismatchError(current_height)
        self.prev_height = current_height
        self.prev_hash = block.hash()
        self.blocks_checked += 1


def validate_chain(
    cache: BlockSource,
    validate_from: Optional[WalletTip],
    activation_height: int,
) -> ChainValidationReport:
    """
    Validate the cached chain above the wallet tip.

    Walks the cache upward from just above ``validate_from`` (or from the
    lowest cached block at or above ``activation_height`` when the wallet is
    empty). The first block must link to the wallet tip hash; every later
    block must sit at the previous height + 1 and name the previous block's
    hash as its parent.

    An empty cache, or one holding nothing above the tip, is valid.

    Args:
        cache: Block cache to check
        validate_from: ``(height, hash)`` of the wallet's highest scanned block,
            or None if the wallet has scanned nothing
        activation_height: Lowest height the wallet ever scans

    Returns:
        Report describing the walk

    Raises:
        InvalidChainError: with ``lower_bound`` set to the first untrustworthy height
    """
    start = time.time()
    from_height = validate_from[0] if validate_from else activation_height - 1
    walk = _ChainWalk(validate_from)

    try:
        for_each_block(cache, from_height, None, walk)
    except InvalidChainError as e:
        logger.warning(
            "Cached chain is invalid",
            extra={
                "event": "chain_validator.invalid",
                "lower_bound": e.lower_bound,
                "cause": e.cause,
            },
        )
        raise

    report = ChainValidationReport(
        from_height=from_height,
        blocks_checked=walk.blocks_checked,
        tip_height=walk.prev_height,
        validation_time=time.time() - start,
    )
    logger.debug(
        "Cached chain validated",
        extra={"event": "chain_validator.valid", **report.to_dict()},
    )
    return report
