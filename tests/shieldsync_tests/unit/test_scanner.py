"""
Unit tests for the block scanner.

Tests verify:
- Notes received by the wallet are found and valued
- Spends mark notes spent and change notes are found
- Scanning requires sequential blocks and resumes after a gap is filled
- Commitment tree positions follow scan order
- Batched scanning and interruption between blocks
"""

import os

import pytest

from shieldsync.core.chain.block_serialization import encode_block
from shieldsync.core.compact_formats import CompactBlock, CompactSpend, CompactTx
from shieldsync.core.config import TESTNET_PARAMETERS
from shieldsync.core.sync_exceptions import BlockHeightDiscontinuityError, CorruptedDataError
from shieldsync.core.wallet.scanner import ScanSummary, scan_cached_blocks

SAPLING_ACTIVATION = TESTNET_PARAMETERS.sapling_activation_height


class TestSequentialScanning:
    """Test that scanning only ever advances one block at a time"""

    def test_requires_sequential_blocks(self, cache, wallet_db, blocks, decryptor):
        """A gap stops the scan; filling it lets the scan continue"""
        value = 50_000
        cb1, _ = blocks.receiving_block(SAPLING_ACTIVATION, bytes(32), blocks.account_key, value)
        cache.store(cb1)
        scan_cached_blocks(cache, wallet_db, decryptor)
        assert wallet_db.get_balance(0) == value

        cb2, _ = blocks.receiving_block(SAPLING_ACTIVATION + 1, cb1.hash(), blocks.account_key, value)
        cb3, _ = blocks.receiving_block(SAPLING_ACTIVATION + 2, cb2.hash(), blocks.account_key, value)
        cache.store(cb3)

        with pytest.raises(BlockHeightDiscontinuityError) as exc_info:
            scan_cached_blocks(cache, wallet_db, decryptor)

        assert exc_info.value.expected_height == SAPLING_ACTIVATION + 1
        assert exc_info.value.actual_height == SAPLING_ACTIVATION + 2
        assert str(SAPLING_ACTIVATION + 1) in str(exc_info.value)
        assert wallet_db.get_checkpoint().height == SAPLING_ACTIVATION
        assert wallet_db.get_balance(0) == value

        cache.store(cb2)
        summary = scan_cached_blocks(cache, wallet_db, decryptor)

        assert summary.blocks_scanned == 2
        assert wallet_db.get_balance(0) == 150_000

    def test_empty_wallet_starts_at_activation(self, cache, wallet_db, blocks, decryptor):
        """An empty wallet only accepts the activation block first"""
        cache.store(blocks.empty_block(SAPLING_ACTIVATION + 1, bytes(32)))

        with pytest.raises(BlockHeightDiscontinuityError) as exc_info:
            scan_cached_blocks(cache, wallet_db, decryptor)

        assert exc_info.value.expected_height == SAPLING_ACTIVATION
        assert wallet_db.is_empty()

    def test_resumes_from_birthday_checkpoint(self, cache, wallet_db, blocks, decryptor):
        """A seeded wallet scans from just above its checkpoint"""
        birthday = SAPLING_ACTIVATION + 100
        birthday_hash = bytes([9]) * 32
        wallet_db.init_checkpoint(birthday, birthday_hash, 1_600_000_000, 40)

        cb, _ = blocks.receiving_block(birthday + 1, birthday_hash, blocks.account_key, 10)
        cache.store(blocks.empty_block(birthday, bytes(32)))
        cache.store(cb)
        summary = scan_cached_blocks(cache, wallet_db, decryptor)

        assert summary.first_height == birthday + 1
        assert summary.blocks_scanned == 1
        assert wallet_db.get_received_notes()[0].position == 40
        assert wallet_db.get_tree_size() == 41

    def test_nothing_to_scan(self, cache, wallet_db, decryptor):
        summary = scan_cached_blocks(cache, wallet_db, decryptor)

        assert summary == ScanSummary(elapsed_seconds=summary.elapsed_seconds)
        assert wallet_db.is_empty()

    def test_corrupt_cache_stops_scan(self, block_db, wallet_db, blocks, decryptor):
        first = blocks.empty_block(SAPLING_ACTIVATION, bytes(32))
        block_db.store(first)
        block_db.conn.execute(
            "INSERT INTO compactblocks (height, data) VALUES (?, ?)",
            (SAPLING_ACTIVATION + 1, encode_block(blocks.empty_block(SAPLING_ACTIVATION + 3, first.hash()))),
        )

        with pytest.raises(CorruptedDataError):
            scan_cached_blocks(block_db, wallet_db, decryptor)

        assert wallet_db.get_checkpoint().height == SAPLING_ACTIVATION


class TestNoteDiscovery:
    """Test received and change notes"""

    def test_finds_received_notes(self, cache, wallet_db, blocks, decryptor):
        assert wallet_db.get_balance(0) == 0

        value = 50_000
        cb, nf = blocks.receiving_block(SAPLING_ACTIVATION, bytes(32), blocks.account_key, value)
        cache.store(cb)
        summary = scan_cached_blocks(cache, wallet_db, decryptor)

        assert summary.notes_received == 1
        assert wallet_db.get_balance(0) == value

        value2 = 70_000
        cb2, _ = blocks.receiving_block(SAPLING_ACTIVATION + 1, cb.hash(), blocks.account_key, value2)
        cache.store(cb2)
        scan_cached_blocks(cache, wallet_db, decryptor)

        assert wallet_db.get_balance(0) == value + value2
        notes = wallet_db.get_received_notes(0)
        assert [n.nullifier for n in notes][0] == nf
        assert [n.height for n in notes] == [SAPLING_ACTIVATION, SAPLING_ACTIVATION + 1]
        assert [n.position for n in notes] == [0, 1]

    def test_ignores_other_wallets_notes(self, cache, wallet_db, blocks, decryptor):
        cb, _ = blocks.receiving_block(SAPLING_ACTIVATION, bytes(32), blocks.external_key, 50_000)
        cache.store(cb)
        summary = scan_cached_blocks(cache, wallet_db, decryptor)

        assert summary.notes_received == 0
        assert summary.blocks_scanned == 1
        assert wallet_db.get_balance(0) == 0
        assert wallet_db.get_tree_size() == 1

    def test_finds_change_notes(self, cache, wallet_db, blocks, decryptor):
        """Spending a note marks it spent and the change comes back as a new note"""
        value = 50_000
        cb, nf = blocks.receiving_block(SAPLING_ACTIVATION, bytes(32), blocks.account_key, value)
        cache.store(cb)
        scan_cached_blocks(cache, wallet_db, decryptor)
        assert wallet_db.get_balance(0) == value

        value2 = 20_000
        cb2 = blocks.spending_block(
            SAPLING_ACTIVATION + 1, cb.hash(), (nf, value), blocks.account_key, blocks.external_key, value2
        )
        cache.store(cb2)
        summary = scan_cached_blocks(cache, wallet_db, decryptor)

        assert summary.notes_spent == 1
        assert summary.notes_received == 1
        assert wallet_db.get_balance(0) == value - value2

        spent, change = wallet_db.get_received_notes(0)
        assert spent.is_spent
        assert spent.spent_height == SAPLING_ACTIVATION + 1
        assert spent.spent_txid == cb2.vtx[0].txid
        assert not change.is_spent
        # Payment to the external key sits at position 1, the change at 2
        assert change.position == 2
        assert change.output_index == 1
        assert wallet_db.get_unspent_nullifiers() == {change.nullifier: 0}

    def test_spend_of_note_found_in_same_block(self, cache, wallet_db, blocks, decryptor):
        """A note received and spent within one block ends up spent"""
        output, nf = blocks.output(blocks.account_key, 30_000)
        block = CompactBlock(
            height=SAPLING_ACTIVATION,
            block_hash=os.urandom(32),
            parent_hash=bytes(32),
            vtx=[
                CompactTx(index=0, txid=os.urandom(32), outputs=[output]),
                CompactTx(index=1, txid=os.urandom(32), spends=[CompactSpend(nf=nf)]),
            ],
            time=1,
        )
        cache.store(block)
        summary = scan_cached_blocks(cache, wallet_db, decryptor)

        assert summary.notes_received == 1
        assert summary.notes_spent == 1
        assert wallet_db.get_balance(0) == 0
        assert wallet_db.get_unspent_nullifiers() == {}

    def test_unknown_spends_ignored(self, cache, wallet_db, blocks, decryptor):
        cb, _ = blocks.receiving_block(SAPLING_ACTIVATION, bytes(32), blocks.account_key, 10)
        cb2 = blocks.spending_block(
            SAPLING_ACTIVATION + 1, cb.hash(), (bytes([7]) * 32, 10), blocks.external_key, blocks.external_key, 5
        )
        cache.store(cb)
        cache.store(cb2)
        summary = scan_cached_blocks(cache, wallet_db, decryptor)

        assert summary.notes_spent == 0
        assert wallet_db.get_balance(0) == 10

    def test_multiple_accounts(self, cache, wallet_db, blocks, decryptor):
        wallet_db.add_account(1, blocks.external_key)
        cb, _ = blocks.receiving_block(SAPLING_ACTIVATION, bytes(32), blocks.account_key, 10)
        cb2, _ = blocks.receiving_block(SAPLING_ACTIVATION + 1, cb.hash(), blocks.external_key, 20)
        cache.store(cb)
        cache.store(cb2)
        scan_cached_blocks(cache, wallet_db, decryptor)

        assert wallet_db.get_balance(0) == 10
        assert wallet_db.get_balance(1) == 20


class TestBatching:
    """Test bounded scans"""

    def test_limit_bounds_each_scan(self, cache, wallet_db, blocks, decryptor):
        for block in blocks.chain(SAPLING_ACTIVATION, 5):
            cache.store(block)

        first = scan_cached_blocks(cache, wallet_db, decryptor, limit=2)
        second = scan_cached_blocks(cache, wallet_db, decryptor, limit=2)
        third = scan_cached_blocks(cache, wallet_db, decryptor, limit=2)
        fourth = scan_cached_blocks(cache, wallet_db, decryptor, limit=2)

        assert [s.blocks_scanned for s in (first, second, third, fourth)] == [2, 2, 1, 0]
        assert second.first_height == SAPLING_ACTIVATION + 2
        assert wallet_db.get_checkpoint().height == SAPLING_ACTIVATION + 4

    def test_interrupted_scan_keeps_committed_blocks(self, cache, wallet_db, blocks, decryptor):
        """A failure while scanning one block leaves earlier blocks committed"""
        cb, _ = blocks.receiving_block(SAPLING_ACTIVATION, bytes(32), blocks.account_key, 10)
        cb2, _ = blocks.receiving_block(SAPLING_ACTIVATION + 1, cb.hash(), blocks.account_key, 20)
        cache.store(cb)
        cache.store(cb2)

        real_try_decrypt = decryptor.try_decrypt

        def failing(output, viewing_keys):
            if decryptor.calls >= 1:
                raise RuntimeError("oracle unavailable")
            return real_try_decrypt(output, viewing_keys)

        decryptor.try_decrypt = failing
        with pytest.raises(RuntimeError):
            scan_cached_blocks(cache, wallet_db, decryptor)

        assert wallet_db.get_checkpoint().height == SAPLING_ACTIVATION
        assert wallet_db.get_balance(0) == 10

        decryptor.try_decrypt = real_try_decrypt
        scan_cached_blocks(cache, wallet_db, decryptor)
        assert wallet_db.get_balance(0) == 30

    def test_to_dict(self, cache, wallet_db, blocks, decryptor):
        for block in blocks.chain(SAPLING_ACTIVATION, 2):
            cache.store(block)

        data = scan_cached_blocks(cache, wallet_db, decryptor).to_dict()
        assert data["first_height"] == SAPLING_ACTIVATION
        assert data["last_height"] == SAPLING_ACTIVATION + 1
        assert data["blocks_scanned"] == 2
