"""
Compact block data model.

A compact block is the pruned form of a chain block that carries only what a
shielded wallet needs for scanning: block and parent hashes, spend nullifiers,
note commitments, ephemeral keys and the first ``COMPACT_NOTE_SIZE`` bytes of
each output ciphertext. Order of transactions, spends and outputs is
significant (it fixes commitment-tree insertion order) and is preserved.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from shieldsync.core.sync_exceptions import BlockDecodeError

HASH_SIZE = 32
# Bytes of note plaintext needed for trial decryption (lead byte, diversifier, value, rseed)
COMPACT_NOTE_SIZE = 1 + 11 + 8 + 32
# Offset of hashPrevBlock in a serialized block header (after nVersion)
HEADER_PREV_HASH_OFFSET = 4


def double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


@dataclass(frozen=True)
class CompactSpend:
    """A shielded spend, reduced to the nullifier it reveals."""
    nf: bytes


@dataclass(frozen=True)
class CompactOutput:
    """A shielded output, reduced to what trial decryption needs."""
    cmu: bytes
    epk: bytes
    ciphertext: bytes


@dataclass(frozen=True)
class CompactTx:
    index: int
    txid: bytes
    spends: List[CompactSpend] = field(default_factory=list)
    outputs: List[CompactOutput] = field(default_factory=list)


@dataclass(frozen=True)
class CompactBlock:
    """
    One block of the chain in compact form.

    ``block_hash``/``parent_hash`` hold the raw hash fields as received. Use
    :meth:`hash` and :meth:`prev_hash`, which fall back to the embedded header
    when those fields are empty.
    """
    height: int
    block_hash: bytes = b""
    parent_hash: bytes = b""
    vtx: List[CompactTx] = field(default_factory=list)
    time: Optional[int] = None
    header: bytes = b""

    def hash(self) -> bytes:
        if self.header:
            return double_sha256(self.header)
        if len(self.block_hash) != HASH_SIZE:
            raise BlockDecodeError(
                f"Block {self.height} has no header and a {len(self.block_hash)}-byte hash",
                details={"height": self.height},
            )
        return self.block_hash

    def prev_hash(self) -> bytes:
        if self.header:
            end = HEADER_PREV_HASH_OFFSET + HASH_SIZE
            if len(self.header) < end:
                raise BlockDecodeError(
                    f"Block {self.height} header is truncated ({len(self.header)} bytes)",
                    details={"height": self.height},
                )
            return self.header[HEADER_PREV_HASH_OFFSET:end]
        if len(self.parent_hash) != HASH_SIZE:
            raise BlockDecodeError(
                f"Block {self.height} has no header and a {len(self.parent_hash)}-byte prev hash",
                details={"height": self.height},
            )
        return self.parent_hash

    def outputs_count(self) -> int:
        return sum(len(tx.outputs) for tx in self.vtx)


@dataclass(frozen=True)
class BlockMeta:
    """Side index row locating a block file in the filesystem cache."""
    height: int
    block_hash: bytes
    block_time: int
    sapling_outputs_count: int
    orchard_actions_count: int = 0

    def block_file_path(self, blocks_dir: Union[str, Path]) -> Path:
        return Path(blocks_dir) / f"{self.height}-{self.block_hash.hex()}-compactblock"

    @classmethod
    def from_block(cls, block: CompactBlock) -> BlockMeta:
        return cls(
            height=block.height,
            block_hash=block.hash(),
            block_time=block.time or 0,
            sapling_outputs_count=block.outputs_count(),
            orchard_actions_count=0,
        )
