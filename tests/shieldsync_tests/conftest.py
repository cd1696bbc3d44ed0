import hashlib
import os
import struct
from typing import Mapping, Optional, Tuple

import pytest

from shieldsync.core.chain.block_cache import BlockDb
from shieldsync.core.chain.fs_block_cache import FsBlockDb
from shieldsync.core.compact_formats import (
    COMPACT_NOTE_SIZE,
    CompactBlock,
    CompactOutput,
    CompactSpend,
    CompactTx,
)
from shieldsync.core.config import TESTNET_PARAMETERS
from shieldsync.core.wallet.note_decryption import DecryptedNote, NoteDecryptor
from shieldsync.core.wallet.rewind import RewindPolicy
from shieldsync.core.wallet.wallet_db import WalletDb

SAPLING_ACTIVATION = TESTNET_PARAMETERS.sapling_activation_height
ACCOUNT_KEY = "zxviewtestsapling-account-0"
EXTERNAL_KEY = "zxviewtestsapling-external"

_TAG_SIZE = 8


def _key_tag(viewing_key: str) -> bytes:
    return hashlib.sha256(viewing_key.encode("utf-8")).digest()[:_TAG_SIZE]


def fake_nullifier(viewing_key: str, cmu: bytes) -> bytes:
    return hashlib.sha256(viewing_key.encode("utf-8") + cmu).digest()


class FakeNoteDecryptor(NoteDecryptor):
    """
    Stand-in for trial decryption.

    A fake output's ciphertext starts with a tag derived from the recipient's
    viewing key, followed by the big-endian note value. The nullifier is
    derived from the viewing key and the note commitment.
    """

    def __init__(self):
        self.calls = 0

    def try_decrypt(self, output: CompactOutput, viewing_keys: Mapping[int, str]) -> Optional[DecryptedNote]:
        self.calls += 1
        tag = output.ciphertext[:_TAG_SIZE]
        for account, viewing_key in viewing_keys.items():
            if tag == _key_tag(viewing_key):
                (value,) = struct.unpack(">Q", output.ciphertext[_TAG_SIZE:_TAG_SIZE + 8])
                return DecryptedNote(
                    account=account,
                    value=value,
                    memo=b"",
                    nullifier=fake_nullifier(viewing_key, output.cmu),
                )
        return None


class BlockFactory:
    """Builds fake compact blocks paying to and spending from viewing keys."""

    account_key = ACCOUNT_KEY
    external_key = EXTERNAL_KEY

    def output(self, viewing_key: str, value: int) -> Tuple[CompactOutput, bytes]:
        cmu = os.urandom(32)
        ciphertext = _key_tag(viewing_key) + struct.pack(">Q", value)
        ciphertext += bytes(COMPACT_NOTE_SIZE - len(ciphertext))
        output = CompactOutput(cmu=cmu, epk=os.urandom(32), ciphertext=ciphertext)
        return output, fake_nullifier(viewing_key, cmu)

    def empty_block(self, height: int, prev_hash: bytes) -> CompactBlock:
        return CompactBlock(
            height=height,
            block_hash=os.urandom(32),
            parent_hash=prev_hash,
            vtx=[],
            time=1_600_000_000 + height,
        )

    def receiving_block(
        self, height: int, prev_hash: bytes, viewing_key: str, value: int
    ) -> Tuple[CompactBlock, bytes]:
        """Block with one transaction paying ``value`` to ``viewing_key``."""
        output, nullifier = self.output(viewing_key, value)
        block = CompactBlock(
            height=height,
            block_hash=os.urandom(32),
            parent_hash=prev_hash,
            vtx=[CompactTx(index=0, txid=os.urandom(32), spends=[], outputs=[output])],
            time=1_600_000_000 + height,
        )
        return block, nullifier

    def spending_block(
        self,
        height: int,
        prev_hash: bytes,
        spent: Tuple[bytes, int],
        viewing_key: str,
        to_key: str,
        value: int,
    ) -> CompactBlock:
        """
        Block with one transaction spending ``spent`` (nullifier, value),
        paying ``value`` to ``to_key`` and the change back to ``viewing_key``.
        """
        nullifier, in_value = spent
        payment, _ = self.output(to_key, value)
        change, _ = self.output(viewing_key, in_value - value)
        return CompactBlock(
            height=height,
            block_hash=os.urandom(32),
            parent_hash=prev_hash,
            vtx=[
                CompactTx(
                    index=0,
                    txid=os.urandom(32),
                    spends=[CompactSpend(nf=nullifier)],
                    outputs=[payment, change],
                )
            ],
            time=1_600_000_000 + height,
        )

    def chain(self, start_height: int, count: int, prev_hash: bytes = bytes(32)):
        """``count`` linked empty blocks starting at ``start_height``."""
        blocks = []
        for height in range(start_height, start_height + count):
            block = self.empty_block(height, prev_hash)
            blocks.append(block)
            prev_hash = block.hash()
        return blocks


@pytest.fixture
def blocks():
    return BlockFactory()


@pytest.fixture
def decryptor():
    return FakeNoteDecryptor()


@pytest.fixture
def block_db(tmp_path):
    """SQLite blob cache in a temp directory"""
    db = BlockDb(str(tmp_path / "cache.sqlite"))
    yield db
    db.close()


@pytest.fixture
def fs_block_db(tmp_path):
    """Filesystem cache in a temp directory"""
    db = FsBlockDb(tmp_path / "fs_cache")
    yield db
    db.close()


@pytest.fixture(params=["blob", "fs"])
def cache(request, tmp_path):
    """Either cache backend; tests using it run once per backend"""
    if request.param == "blob":
        db = BlockDb(str(tmp_path / "cache.sqlite"))
    else:
        db = FsBlockDb(tmp_path / "fs_cache")
    yield db
    db.close()


@pytest.fixture
def wallet_db(tmp_path):
    """Testnet wallet with account 0 registered"""
    db = WalletDb(str(tmp_path / "wallet.sqlite"), params=TESTNET_PARAMETERS)
    db.add_account(0, ACCOUNT_KEY)
    yield db
    db.close()


@pytest.fixture
def rewind_policy():
    return RewindPolicy(pruning_depth=100)
