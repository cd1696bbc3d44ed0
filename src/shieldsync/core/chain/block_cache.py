"""
shieldsync - Compact Block Cache

Append-only local store of compact blocks keyed by height. Two backends
implement the same ``BlockSource`` capability:

- ``BlockDb``: one SQLite row per height holding the encoded block bytes
- ``FsBlockDb`` (see ``fs_block_cache``): one file per block plus a SQLite
  metadata index

The traversal, validator and scanner only depend on ``BlockSource``.

Design:
- Rows are streamed from a cursor, never materialised as a whole
- Every sqlite3 failure is wrapped in ``DatabaseError`` so callers can tell a
  storage failure apart from corruption (``CorruptedDataError``) and
  undecodable payloads (``BlockDecodeError``)
- WAL mode for durability
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Iterator, Optional, Tuple

from shieldsync.core.chain.block_serialization import encode_block
from shieldsync.core.compact_formats import CompactBlock
from shieldsync.core.sqlite_utils import connect
from shieldsync.core.sync_exceptions import DatabaseError

logger = logging.getLogger(__name__)

# Upper bound used when no traversal limit is given (heights are u32 on chain)
MAX_ROW_LIMIT = 2**32 - 1

CompactBlockRow = Tuple[int, bytes]


def contiguous_height(
    conn: sqlite3.Connection, table: str, floor: Optional[int]
) -> Optional[int]:
    """
    Return the greatest H such that every height in ``[floor, H]`` has a row.

    Args:
        conn: Connection holding ``table``
        table: Table with an integer ``height`` column
        floor: Lowest height of the run; ``None`` means the lowest stored height

    Returns:
        Top of the contiguous run, or None if ``floor`` itself is not stored
    """
    if floor is None:
        row = conn.execute(f"SELECT MIN(height) FROM {table}").fetchone()
        if row is None or row[0] is None:
            return None
        floor = row[0]
    elif conn.execute(f"SELECT 1 FROM {table} WHERE height = ?", (floor,)).fetchone() is None:
        return None
    row = conn.execute(
        f"""
        SELECT MIN(c.height) FROM {table} c
        WHERE c.height >= ?
          AND NOT EXISTS (SELECT 1 FROM {table} n WHERE n.height = c.height + 1)
        """,
        (floor,),
    ).fetchone()
    return row[0]


class BlockSource(ABC):
    """
    Capability shared by the cache backends.

    Implementations are single-writer, multi-reader. ``read_range`` yields raw
    ``(height, payload)`` rows; decoding and the height consistency check are
    done by ``traversal.for_each_block``.
    """

    @abstractmethod
    def store(self, block: CompactBlock) -> None:
        """Append or overwrite the entry for ``block.height``."""

    @abstractmethod
    def read_range(self, last_scanned_height: int, limit: Optional[int] = None) -> Iterator[CompactBlockRow]:
        """Yield rows above ``last_scanned_height`` in ascending height order."""

    @abstractmethod
    def highest_contiguous_height(self) -> Optional[int]:
        """Greatest height reachable from the backend floor without gaps."""

    @abstractmethod
    def get_max_cached_height(self) -> Optional[int]:
        """Highest stored height, gaps notwithstanding."""

    @abstractmethod
    def truncate_to_height(self, height: int) -> int:
        """Delete every entry above ``height``; returns the number removed."""

    def close(self) -> None:
        pass

    def __enter__(self) -> BlockSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class BlockDb(BlockSource):
    """
    SQLite blob cache: one row per height with the encoded block bytes.

    Schema:
        compactblocks(height INTEGER PRIMARY KEY, data BLOB NOT NULL)
    """

    def __init__(self, db_path: str, floor: int = 0):
        """
        Initialize the cache database.

        Args:
            db_path: Path to SQLite database file
            floor: Height at which ``highest_contiguous_height`` starts counting
        """
        self.db_path = db_path
        self.floor = floor
        self.lock = threading.RLock()
        self.conn = connect(db_path)
        init_cache_database(self.conn)

        logger.info(
            "Block cache initialized",
            extra={"event": "block_cache.initialized", "db_path": db_path},
        )

    def store(self, block: CompactBlock) -> None:
        payload = encode_block(block)
        with self.lock:
            try:
                self.conn.execute(
                    "INSERT OR REPLACE INTO compactblocks (height, data) VALUES (?, ?)",
                    (block.height, payload),
                )
            except sqlite3.Error as e:
                raise DatabaseError(
                    f"Failed to store block {block.height}: {e}",
                    details={"height": block.height},
                ) from e

    def read_range(self, last_scanned_height: int, limit: Optional[int] = None) -> Iterator[CompactBlockRow]:
        # Separate connection so a long traversal never interleaves with writes
        conn = connect(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT height, data FROM compactblocks WHERE height > ? ORDER BY height ASC LIMIT ?",
                (last_scanned_height, MAX_ROW_LIMIT if limit is None else limit),
            )
            while True:
                row = cursor.fetchone()
                if row is None:
                    break
                yield row[0], bytes(row[1])
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to read cached blocks above {last_scanned_height}: {e}",
                details={"last_scanned_height": last_scanned_height},
            ) from e
        finally:
            conn.close()

    def highest_contiguous_height(self) -> Optional[int]:
        with self.lock:
            try:
                return contiguous_height(self.conn, "compactblocks", self.floor)
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to query contiguous height: {e}") from e

    def get_max_cached_height(self) -> Optional[int]:
        with self.lock:
            try:
                row = self.conn.execute("SELECT MAX(height) FROM compactblocks").fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to query max cached height: {e}") from e
            return row[0] if row and row[0] is not None else None

    def truncate_to_height(self, height: int) -> int:
        with self.lock:
            try:
                cursor = self.conn.execute("DELETE FROM compactblocks WHERE height > ?", (height,))
            except sqlite3.Error as e:
                raise DatabaseError(
                    f"Failed to truncate block cache to {height}: {e}",
                    details={"height": height},
                ) from e
            removed = cursor.rowcount
        logger.info(
            "Truncated block cache",
            extra={"event": "block_cache.truncated", "height": height, "blocks_removed": removed},
        )
        return removed

    def close(self) -> None:
        with self.lock:
            self.conn.close()


def init_cache_database(conn: sqlite3.Connection) -> None:
    """Create the blob cache schema if it does not exist."""
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS compactblocks (
                height INTEGER PRIMARY KEY,
                data BLOB NOT NULL
            )
            """
        )
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize cache database: {e}") from e
