"""
Ordered, height-bounded traversal of a compact block cache.
"""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Callable, Optional

from shieldsync.core.chain.block_cache import BlockSource
from shieldsync.core.chain.block_serialization import decode_block
from shieldsync.core.compact_formats import CompactBlock
from shieldsync.core.sync_exceptions import CorruptedDataError

logger = logging.getLogger(__name__)


def for_each_block(
    cache: BlockSource,
    last_scanned_height: int,
    limit: Optional[int],
    visit: Callable[[CompactBlock], None],
) -> int:
    """
    Invoke ``visit`` once per cached block above ``last_scanned_height``.

    Blocks are decoded one at a time in ascending height order, at most
    ``limit`` of them (all remaining blocks when ``limit`` is None). Before a
    block is visited its decoded height is compared with the height key of the
    row it was read from; a mismatch raises ``CorruptedDataError`` and nothing
    at or after that row is visited.

    Errors raised by ``visit`` stop the traversal and propagate unchanged.
    Whatever ``visit`` committed for earlier blocks stays committed.

    Args:
        cache: Backend to read from
        last_scanned_height: Exclusive lower bound of the traversal
        limit: Maximum number of blocks, or None for no bound
        visit: Callback receiving each decoded block

    Returns:
        Number of blocks visited
    """
    visited = 0
    with closing(cache.read_range(last_scanned_height, limit)) as rows:
        for row_height, payload in rows:
            block = decode_block(payload)
            if block.height != row_height:
                logger.error(
                    "Cached block height does not match its row",
                    extra={
                        "event": "traversal.height_mismatch",
                        "row_height": row_height,
                        "block_height": block.height,
                    },
                )
                raise CorruptedDataError(
                    f"Block height {block.height} did not match row's height field value {row_height}",
                    details={"row_height": row_height, "block_height": block.height},
                )
            visit(block)
            visited += 1
    return visited
