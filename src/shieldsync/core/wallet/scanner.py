"""
shieldsync - Block Scanner

Scans cached compact blocks above the wallet checkpoint, discovering notes
received by and spent from the wallet's accounts.

Per block, in cache order:
1. The block must be exactly one above the last processed height
2. Every output is offered to the trial-decryption oracle; matches become
   notes at the next commitment-tree positions
3. Every spend nullifier is checked against the unspent notes of all accounts
4. Notes, spend markers and the checkpoint commit in one transaction

Because each block commits on its own, a scan may be interrupted between
blocks and simply resumed from the checkpoint later. Note discovery depends
only on block contents and viewing keys, and positions only on scan order, so
re-scanning after a rewind reproduces the same notes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from shieldsync.core.chain.block_cache import BlockSource
from shieldsync.core.chain.traversal import for_each_block
from shieldsync.core.compact_formats import CompactBlock
from shieldsync.core.sync_exceptions import BlockHeightDiscontinuityError
from shieldsync.core.wallet.note_decryption import NoteDecryptor
from shieldsync.core.wallet.wallet_db import (
    NewNote,
    ScannedBlock,
    SpentNullifier,
    WalletDb,
)

logger = logging.getLogger(__name__)


@dataclass
class ScanSummary:
    """What one ``scan_cached_blocks`` call processed."""

    first_height: Optional[int] = None
    last_height: Optional[int] = None
    blocks_scanned: int = 0
    notes_received: int = 0
    notes_spent: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "first_height": self.first_height,
            "last_height": self.last_height,
            "blocks_scanned": self.blocks_scanned,
            "notes_received": self.notes_received,
            "notes_spent": self.notes_spent,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


def scan_block(
    block: CompactBlock,
    decryptor: NoteDecryptor,
    viewing_keys: Mapping[int, str],
    unspent_nullifiers: Mapping[bytes, int],
    tree_size: int,
) -> ScannedBlock:
    """
    Compute the wallet effects of one block without touching storage.

    Args:
        block: Block to scan
        decryptor: Trial-decryption oracle
        viewing_keys: Viewing key per account
        unspent_nullifiers: Nullifiers of unspent wallet notes before this block
        tree_size: Commitment tree size before this block

    Returns:
        The notes, spends and checkpoint values for ``advance_by_block``
    """
    notes: List[NewNote] = []
    spends: List[SpentNullifier] = []
    # Notes found earlier in this block can be spent later in the same block
    known_nullifiers = set(unspent_nullifiers)
    position = tree_size

    for tx in block.vtx:
        for spend in tx.spends:
            if spend.nf in known_nullifiers:
                spends.append(SpentNullifier(nullifier=spend.nf, txid=tx.txid))
                known_nullifiers.discard(spend.nf)

        for output_index, output in enumerate(tx.outputs):
            decrypted = decryptor.try_decrypt(output, viewing_keys) if viewing_keys else None
            if decrypted is not None:
                notes.append(
                    NewNote(
                        account=decrypted.account,
                        value=decrypted.value,
                        memo=decrypted.memo,
                        nullifier=decrypted.nullifier,
                        position=position,
                        txid=tx.txid,
                        output_index=output_index,
                    )
                )
                known_nullifiers.add(decrypted.nullifier)
            position += 1

    return ScannedBlock(
        height=block.height,
        block_hash=block.hash(),
        block_time=block.time or 0,
        tree_size=position,
        notes=notes,
        spends=spends,
    )


class _ScanState:
    """Visitor handed to the traversal; carries state from block to block."""

    def __init__(self, wallet_db: WalletDb, decryptor: NoteDecryptor, summary: ScanSummary):
        self.wallet_db = wallet_db
        self.decryptor = decryptor
        self.summary = summary
        checkpoint = wallet_db.get_checkpoint()
        if checkpoint is None:
            self.last_height = wallet_db.params.sapling_activation_height - 1
            self.tree_size = 0
        else:
            self.last_height = checkpoint.height
            self.tree_size = checkpoint.tree_size
        self.viewing_keys = wallet_db.get_viewing_keys()
        self.unspent_nullifiers: Dict[bytes, int] = wallet_db.get_unspent_nullifiers()

    def __call__(self, block: CompactBlock) -> None:
        expected_height = self.last_height + 1
        if block.height != expected_height:
            raise BlockHeightDiscontinuityError(expected_height, block.height)

        scanned = scan_block(
            block,
            self.decryptor,
            self.viewing_keys,
            self.unspent_nullifiers,
            self.tree_size,
        )
        self.wallet_db.advance_by_block(scanned)

        spent = {s.nullifier for s in scanned.spends}
        for note in scanned.notes:
            if note.nullifier not in spent:
                self.unspent_nullifiers[note.nullifier] = note.account
        for nullifier in spent:
            self.unspent_nullifiers.pop(nullifier, None)

        self.last_height = scanned.height
        self.tree_size = scanned.tree_size
        if self.summary.first_height is None:
            self.summary.first_height = scanned.height
        self.summary.last_height = scanned.height
        self.summary.blocks_scanned += 1
        self.summary.notes_received += len(scanned.notes)
        self.summary.notes_spent += len(scanned.spends)

        logger.debug(
            "Scanned block",
            extra={
                "event": "scanner.block_scanned",
                "height": scanned.height,
                "notes": len(scanned.notes),
                "spends": len(scanned.spends),
            },
        )


def scan_cached_blocks(
    cache: BlockSource,
    wallet_db: WalletDb,
    decryptor: NoteDecryptor,
    limit: Optional[int] = None,
) -> ScanSummary:
    """
    Scan cached blocks above the wallet checkpoint.

    Args:
        cache: Block cache to read from
        wallet_db: Wallet store to update
        decryptor: Trial-decryption oracle
        limit: Maximum number of blocks to scan, or None for all cached blocks

    Returns:
        Summary of the blocks processed

    Raises:
        BlockHeightDiscontinuityError: A block was missing from the cache; every
            block before the gap has been committed
        CorruptedDataError: A cached row disagreed with its decoded block
    """
    start = time.time()
    summary = ScanSummary()
    with wallet_db.lock:
        state = _ScanState(wallet_db, decryptor, summary)
        try:
            for_each_block(cache, state.last_height, limit, state)
        except BlockHeightDiscontinuityError as e:
            logger.warning(
                "Scan stopped at a height discontinuity",
                extra={
                    "event": "scanner.discontinuity",
                    "expected_height": e.expected_height,
                    "actual_height": e.actual_height,
                    "last_scanned_height": state.last_height,
                },
            )
            raise
        finally:
            summary.elapsed_seconds = time.time() - start

    if summary.blocks_scanned:
        logger.info(
            "Scanned cached blocks",
            extra={"event": "scanner.completed", **summary.to_dict()},
        )
    return summary
