"""
shieldsync - Wallet Store

SQLite store of everything the wallet derives from scanning: accounts and
their viewing keys, the scanned-block checkpoints, received notes and the
spend markers on them.

Invariants:
- The checkpoint (highest row of ``blocks``) only advances one block at a
  time through ``advance_by_block``, which writes the block's notes, spend
  markers and checkpoint row in a single transaction
- Spending a note sets ``spent_height``/``spent_txid``; rows are never deleted
  for a spend, so a rewind can clear the marker again
- Commitment-tree positions are derived from scan order (``tree_size`` of the
  previous checkpoint plus the output's index within the block)

Thread Safety:
    ``lock`` is a reentrant lock. The scanner and the rewind engine hold it for
    their whole run so a scan and a rewind of one wallet never interleave.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from shieldsync.core import config
from shieldsync.core.config import NetworkParameters
from shieldsync.core.sqlite_utils import atomic_transaction, connect
from shieldsync.core.sync_exceptions import (
    AccountIdDiscontinuityError,
    BlockHeightDiscontinuityError,
    DatabaseError,
    TableNotEmptyError,
    UnknownAccountError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletCheckpoint:
    """Highest scanned block: its height, hash and the commitment tree size after it."""
    height: int
    block_hash: bytes
    tree_size: int


@dataclass(frozen=True)
class NewNote:
    """A note discovered while scanning a block, not yet persisted."""
    account: int
    value: int
    memo: bytes
    nullifier: bytes
    position: int
    txid: bytes
    output_index: int


@dataclass(frozen=True)
class SpentNullifier:
    nullifier: bytes
    txid: bytes


@dataclass
class ScannedBlock:
    """Effects of scanning one block, committed together by ``advance_by_block``."""
    height: int
    block_hash: bytes
    block_time: int
    tree_size: int
    notes: List[NewNote] = field(default_factory=list)
    spends: List[SpentNullifier] = field(default_factory=list)


@dataclass(frozen=True)
class ReceivedNote:
    id: int
    account: int
    value: int
    memo: bytes
    position: int
    height: int
    txid: bytes
    output_index: int
    nullifier: bytes
    spent_height: Optional[int]
    spent_txid: Optional[bytes]

    @property
    def is_spent(self) -> bool:
        return self.spent_height is not None


_NOTE_COLUMNS = (
    "id_note, account, value, memo, position, height, txid, output_index, "
    "nullifier, spent_height, spent_txid"
)


def _note_from_row(row: tuple) -> ReceivedNote:
    return ReceivedNote(
        id=row[0],
        account=row[1],
        value=row[2],
        memo=bytes(row[3]) if row[3] is not None else b"",
        position=row[4],
        height=row[5],
        txid=bytes(row[6]),
        output_index=row[7],
        nullifier=bytes(row[8]),
        spent_height=row[9],
        spent_txid=bytes(row[10]) if row[10] is not None else None,
    )


class WalletDb:
    """
    SQLite-backed wallet store.

    Schema:
        accounts(account, viewing_key)
        blocks(height, hash, time, tree_size) - one checkpoint row per scanned block
        received_notes(id_note, account, value, memo, position, height, txid,
                       output_index, nullifier, spent_height, spent_txid)
    """

    def __init__(self, db_path: str, params: Optional[NetworkParameters] = None):
        """
        Open (and create if missing) a wallet database.

        Args:
            db_path: Path to SQLite database file
            params: Network parameters; defaults to the configured network
        """
        self.db_path = db_path
        self.params = params or config.PARAMETERS
        self.lock = threading.RLock()
        self.conn = connect(db_path)
        init_wallet_db(self.conn)

        logger.info(
            "Wallet store initialized",
            extra={
                "event": "wallet_db.initialized",
                "db_path": db_path,
                "network": self.params.network.value,
            },
        )

    # ==================== Accounts ====================

    def add_account(self, account: int, viewing_key: str) -> None:
        """
        Register an account and its viewing key.

        Account identifiers must be allocated sequentially from 0.
        """
        with self.lock:
            try:
                row = self.conn.execute("SELECT MAX(account) FROM accounts").fetchone()
                expected = 0 if row[0] is None else row[0] + 1
                if account != expected:
                    raise AccountIdDiscontinuityError(expected, account)
                self.conn.execute(
                    "INSERT INTO accounts (account, viewing_key) VALUES (?, ?)",
                    (account, viewing_key),
                )
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to add account {account}: {e}") from e

    def get_viewing_keys(self) -> Dict[int, str]:
        with self.lock:
            try:
                rows = self.conn.execute(
                    "SELECT account, viewing_key FROM accounts ORDER BY account"
                ).fetchall()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to load viewing keys: {e}") from e
        return {account: key for account, key in rows}

    # ==================== Checkpoints ====================

    def init_checkpoint(self, height: int, block_hash: bytes, block_time: int, tree_size: int) -> None:
        """
        Seed an empty wallet with a birthday checkpoint.

        Scanning then resumes at ``height + 1``.

        Raises:
            TableNotEmptyError: If the wallet has already scanned blocks
        """
        with self.lock:
            with atomic_transaction(self.conn, "checkpoint initialization") as conn:
                if conn.execute("SELECT 1 FROM blocks LIMIT 1").fetchone() is not None:
                    raise TableNotEmptyError("blocks")
                conn.execute(
                    "INSERT INTO blocks (height, hash, time, tree_size) VALUES (?, ?, ?, ?)",
                    (height, block_hash, block_time, tree_size),
                )

    def get_checkpoint(self) -> Optional[WalletCheckpoint]:
        with self.lock:
            try:
                row = self.conn.execute(
                    "SELECT height, hash, tree_size FROM blocks ORDER BY height DESC LIMIT 1"
                ).fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to read wallet checkpoint: {e}") from e
        if row is None:
            return None
        return WalletCheckpoint(height=row[0], block_hash=bytes(row[1]), tree_size=row[2])

    def get_birthday_height(self) -> Optional[int]:
        """
        Height of a seeded birthday checkpoint, or None.

        Blocks below a birthday were never scanned, so its tree size cannot be
        rebuilt by scanning; rewinds stop there. A wallet scanned from Sapling
        activation has no birthday and may be rewound to empty.
        """
        with self.lock:
            try:
                row = self.conn.execute("SELECT MIN(height) FROM blocks").fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to read wallet birthday: {e}") from e
        if row is None or row[0] is None:
            return None
        if row[0] <= self.params.sapling_activation_height:
            return None
        return row[0]

    def get_max_height_hash(self) -> Optional[Tuple[int, bytes]]:
        """Return ``(height, hash)`` of the highest scanned block, or None if empty."""
        checkpoint = self.get_checkpoint()
        if checkpoint is None:
            return None
        return checkpoint.height, checkpoint.block_hash

    def is_empty(self) -> bool:
        return self.get_checkpoint() is None

    def get_tree_size(self) -> int:
        checkpoint = self.get_checkpoint()
        return checkpoint.tree_size if checkpoint else 0

    def advance_by_block(self, scanned: ScannedBlock) -> int:
        """
        Commit the effects of one scanned block atomically.

        Inserts the block's checkpoint row and discovered notes, then marks
        every unspent note whose nullifier was revealed in the block as spent.

        Args:
            scanned: Effects computed by the scanner

        Returns:
            Number of notes marked spent

        Raises:
            BlockHeightDiscontinuityError: If the block does not directly follow
                the current checkpoint
        """
        with self.lock:
            with atomic_transaction(self.conn, f"advance to block {scanned.height}") as conn:
                row = conn.execute("SELECT MAX(height) FROM blocks").fetchone()
                if row[0] is not None and scanned.height != row[0] + 1:
                    raise BlockHeightDiscontinuityError(row[0] + 1, scanned.height)

                conn.execute(
                    "INSERT INTO blocks (height, hash, time, tree_size) VALUES (?, ?, ?, ?)",
                    (scanned.height, scanned.block_hash, scanned.block_time, scanned.tree_size),
                )
                for note in scanned.notes:
                    conn.execute(
                        """
                        INSERT INTO received_notes (
                            account, value, memo, position, height, txid,
                            output_index, nullifier, spent_height, spent_txid
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL)
                        """,
                        (
                            note.account,
                            note.value,
                            note.memo,
                            note.position,
                            scanned.height,
                            note.txid,
                            note.output_index,
                            note.nullifier,
                        ),
                    )

                spent = 0
                for spend in scanned.spends:
                    cursor = conn.execute(
                        """
                        UPDATE received_notes SET spent_height = ?, spent_txid = ?
                        WHERE nullifier = ? AND spent_height IS NULL
                        """,
                        (scanned.height, spend.txid, spend.nullifier),
                    )
                    spent += cursor.rowcount
        return spent

    # ==================== Notes & balances ====================

    def get_unspent_nullifiers(self) -> Dict[bytes, int]:
        """Map the nullifier of every unspent note (all accounts) to its account."""
        with self.lock:
            try:
                rows = self.conn.execute(
                    "SELECT nullifier, account FROM received_notes WHERE spent_height IS NULL"
                ).fetchall()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to load unspent nullifiers: {e}") from e
        return {bytes(nf): account for nf, account in rows}

    def get_received_notes(self, account: Optional[int] = None) -> List[ReceivedNote]:
        """Return received notes in commitment-tree order, optionally for one account."""
        query = f"SELECT {_NOTE_COLUMNS} FROM received_notes"
        params: tuple = ()
        if account is not None:
            query += " WHERE account = ?"
            params = (account,)
        query += " ORDER BY position"
        with self.lock:
            try:
                rows = self.conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to load received notes: {e}") from e
        return [_note_from_row(row) for row in rows]

    def get_balance(self, account: int) -> int:
        """Sum of the values of the account's unspent notes."""
        with self.lock:
            try:
                known = self.conn.execute(
                    "SELECT 1 FROM accounts WHERE account = ?", (account,)
                ).fetchone()
                if known is None:
                    raise UnknownAccountError(account)
                row = self.conn.execute(
                    """
                    SELECT COALESCE(SUM(value), 0) FROM received_notes
                    WHERE account = ? AND spent_height IS NULL
                    """,
                    (account,),
                ).fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to compute balance for account {account}: {e}") from e
        return row[0]

    def get_lowest_unspent_note_height(self) -> Optional[int]:
        """Discovery height of the oldest note that is still unspent."""
        with self.lock:
            try:
                row = self.conn.execute(
                    "SELECT MIN(height) FROM received_notes WHERE spent_height IS NULL"
                ).fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to query unspent note heights: {e}") from e
        return row[0] if row and row[0] is not None else None

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def __enter__(self) -> WalletDb:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def init_wallet_db(conn: sqlite3.Connection) -> None:
    """Create the wallet schema if it does not exist."""
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
                account INTEGER PRIMARY KEY,
                viewing_key TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS blocks (
                height INTEGER PRIMARY KEY,
                hash BLOB NOT NULL,
                time INTEGER NOT NULL,
                tree_size INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS received_notes (
                id_note INTEGER PRIMARY KEY,
                account INTEGER NOT NULL REFERENCES accounts(account),
                value INTEGER NOT NULL CHECK (value >= 0),
                memo BLOB,
                position INTEGER NOT NULL,
                height INTEGER NOT NULL REFERENCES blocks(height),
                txid BLOB NOT NULL,
                output_index INTEGER NOT NULL,
                nullifier BLOB NOT NULL UNIQUE,
                spent_height INTEGER,
                spent_txid BLOB,
                UNIQUE (txid, output_index)
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_received_notes_height ON received_notes(height)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_received_notes_spent ON received_notes(spent_height)"
        )
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize wallet database: {e}") from e
