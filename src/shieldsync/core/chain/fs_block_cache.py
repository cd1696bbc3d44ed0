"""
shieldsync - Filesystem Compact Block Cache

Stores each compact block in its own file under ``<root>/blocks`` and keeps a
SQLite side index (``<root>/blockmeta.sqlite``) of height, hash, time and
output counts. The index answers height queries without opening block files.

Durability:
- Block files are written to a temp file, fsynced and renamed into place
  before their metadata row is committed, so an indexed row never points at a
  partially written file
- Metadata batches commit in one ``BEGIN IMMEDIATE`` transaction; either
  every row in the batch becomes visible or none does
- If the rollback of a failed batch also fails the index can no longer be
  trusted and ``UnrecoverableStorageError`` is raised
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Union

from shieldsync.core.chain.block_cache import (
    MAX_ROW_LIMIT,
    BlockSource,
    CompactBlockRow,
    contiguous_height,
)
from shieldsync.core.chain.block_serialization import encode_block
from shieldsync.core.compact_formats import BlockMeta, CompactBlock
from shieldsync.core.sqlite_utils import atomic_transaction, connect
from shieldsync.core.sync_exceptions import DatabaseError, StorageError

logger = logging.getLogger(__name__)

BLOCKMETA_DB_NAME = "blockmeta.sqlite"
BLOCKS_DIR_NAME = "blocks"


class FsBlockDb(BlockSource):
    """
    File-per-block cache indexed by a metadata table.

    Schema:
        compactblocks_meta(height INTEGER PRIMARY KEY, blockhash BLOB,
                           time INTEGER, sapling_outputs_count INTEGER,
                           orchard_actions_count INTEGER)

    The contiguous-height floor is the lowest indexed height.
    """

    def __init__(self, fsblockdb_root: Union[str, Path]):
        """
        Open (and create if missing) a filesystem block cache.

        Args:
            fsblockdb_root: Directory holding the metadata db and block files
        """
        self.root = Path(fsblockdb_root)
        self.blocks_dir = self.root / BLOCKS_DIR_NAME
        try:
            self.blocks_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DatabaseError(
                f"Failed to create block directory {self.blocks_dir}: {e}",
                details={"blocks_dir": str(self.blocks_dir)},
            ) from e
        self.db_path = str(self.root / BLOCKMETA_DB_NAME)
        self.lock = threading.RLock()
        self.conn = connect(self.db_path)
        init_blockmeta_db(self.conn)

        logger.info(
            "Filesystem block cache initialized",
            extra={"event": "fs_block_cache.initialized", "root": str(self.root)},
        )

    def _write_block_file(self, meta: BlockMeta, payload: bytes) -> Path:
        final_path = meta.block_file_path(self.blocks_dir)
        tmp_path = final_path.with_name(final_path.name + ".tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, final_path)
        except OSError as e:
            raise StorageError(
                f"Failed to write block file {final_path}: {e}",
                details={"height": meta.height, "path": str(final_path)},
            ) from e
        return final_path

    def store(self, block: CompactBlock) -> None:
        meta = BlockMeta.from_block(block)
        with self.lock:
            previous = self.find_block(block.height)
            self._write_block_file(meta, encode_block(block))
            self.write_block_metadata([meta])
            if previous is not None and previous.block_hash != meta.block_hash:
                self._remove_block_file(previous)

    def write_block_metadata(self, block_meta: Sequence[BlockMeta]) -> None:
        """
        Insert a batch of metadata rows atomically.

        Args:
            block_meta: Rows to insert; an existing row at the same height is replaced

        Raises:
            DatabaseError: The batch failed and was rolled back
            UnrecoverableStorageError: The rollback itself failed
        """
        with self.lock:
            with atomic_transaction(self.conn, f"metadata batch of {len(block_meta)} rows") as conn:
                for meta in block_meta:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO compactblocks_meta
                        (height, blockhash, time, sapling_outputs_count, orchard_actions_count)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            meta.height,
                            meta.block_hash,
                            meta.block_time,
                            meta.sapling_outputs_count,
                            meta.orchard_actions_count,
                        ),
                    )

        logger.debug(
            "Wrote block metadata batch",
            extra={"event": "fs_block_cache.metadata_written", "rows": len(block_meta)},
        )

    def find_block(self, height: int) -> Optional[BlockMeta]:
        """Return the metadata row for ``height``, or None if it is not cached."""
        with self.lock:
            try:
                row = self.conn.execute(
                    """
                    SELECT height, blockhash, time, sapling_outputs_count, orchard_actions_count
                    FROM compactblocks_meta WHERE height = ?
                    """,
                    (height,),
                ).fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to look up block {height}: {e}") from e
        return _meta_from_row(row) if row else None

    def read_range(self, last_scanned_height: int, limit: Optional[int] = None) -> Iterator[CompactBlockRow]:
        conn = connect(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT height, blockhash, time, sapling_outputs_count, orchard_actions_count
                FROM compactblocks_meta
                WHERE height > ?
                ORDER BY height ASC LIMIT ?
                """,
                (last_scanned_height, MAX_ROW_LIMIT if limit is None else limit),
            )
            while True:
                row = cursor.fetchone()
                if row is None:
                    break
                meta = _meta_from_row(row)
                block_file = meta.block_file_path(self.blocks_dir)
                try:
                    payload = block_file.read_bytes()
                except OSError as e:
                    raise StorageError(
                        f"Failed to read block file {block_file}: {e}",
                        details={"height": meta.height, "path": str(block_file)},
                    ) from e
                yield meta.height, payload
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to read block metadata above {last_scanned_height}: {e}",
                details={"last_scanned_height": last_scanned_height},
            ) from e
        finally:
            conn.close()

    def highest_contiguous_height(self) -> Optional[int]:
        with self.lock:
            try:
                return contiguous_height(self.conn, "compactblocks_meta", None)
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to query contiguous height: {e}") from e

    def get_max_cached_height(self) -> Optional[int]:
        with self.lock:
            try:
                row = self.conn.execute("SELECT MAX(height) FROM compactblocks_meta").fetchone()
            except sqlite3.Error as e:
                raise DatabaseError(f"Failed to query max cached height: {e}") from e
        # MAX() always returns a row, holding NULL when the table is empty
        return row[0] if row and row[0] is not None else None

    def _remove_block_file(self, meta: BlockMeta) -> None:
        try:
            meta.block_file_path(self.blocks_dir).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(
                f"Failed to remove block file for height {meta.height}: {e}",
                details={"height": meta.height},
            ) from e

    def truncate_to_height(self, height: int) -> int:
        with self.lock:
            try:
                rows = self.conn.execute(
                    """
                    SELECT height, blockhash, time, sapling_outputs_count, orchard_actions_count
                    FROM compactblocks_meta WHERE height > ?
                    """,
                    (height,),
                ).fetchall()
                self.conn.execute("DELETE FROM compactblocks_meta WHERE height > ?", (height,))
            except sqlite3.Error as e:
                raise DatabaseError(
                    f"Failed to truncate block metadata to {height}: {e}",
                    details={"height": height},
                ) from e
            # Index rows go first so no row ever points at a deleted file
            removed: List[BlockMeta] = [_meta_from_row(row) for row in rows]
            for meta in removed:
                self._remove_block_file(meta)

        logger.info(
            "Truncated filesystem block cache",
            extra={"event": "fs_block_cache.truncated", "height": height, "blocks_removed": len(removed)},
        )
        return len(removed)

    def close(self) -> None:
        with self.lock:
            self.conn.close()


def _meta_from_row(row: Sequence) -> BlockMeta:
    return BlockMeta(
        height=row[0],
        block_hash=bytes(row[1]),
        block_time=row[2],
        sapling_outputs_count=row[3],
        orchard_actions_count=row[4],
    )


def init_blockmeta_db(conn: sqlite3.Connection) -> None:
    """Create the metadata index schema if it does not exist."""
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS compactblocks_meta (
                height INTEGER PRIMARY KEY CHECK (height >= 0),
                blockhash BLOB NOT NULL,
                time INTEGER NOT NULL,
                sapling_outputs_count INTEGER NOT NULL CHECK (sapling_outputs_count >= 0),
                orchard_actions_count INTEGER NOT NULL CHECK (orchard_actions_count >= 0)
            )
            """
        )
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize block metadata database: {e}") from e
