"""
SQLite helpers shared by the block cache and the wallet store.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from shieldsync.core.sync_exceptions import DatabaseError, UnrecoverableStorageError

logger = logging.getLogger(__name__)


def connect(db_path: str) -> sqlite3.Connection:
    """
    Open a SQLite connection in autocommit mode with WAL enabled.

    Transactions are opened explicitly with :func:`atomic_transaction`.
    """
    directory = os.path.dirname(db_path)
    try:
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")  # Safe with WAL
        conn.execute("PRAGMA foreign_keys=ON")
    except (sqlite3.Error, OSError) as e:
        raise DatabaseError(
            f"Failed to open database {db_path}: {e}",
            details={"db_path": db_path},
        ) from e
    return conn


@contextmanager
def atomic_transaction(conn: sqlite3.Connection, operation: str) -> Iterator[sqlite3.Connection]:
    """
    Run the body of the ``with`` block as one ``BEGIN IMMEDIATE`` transaction.

    Any exception rolls the transaction back and propagates; sqlite3 errors are
    wrapped in ``DatabaseError``. If the rollback itself fails the database is
    in an unknown state and ``UnrecoverableStorageError`` is raised instead.

    Args:
        conn: Connection opened by :func:`connect`
        operation: Short description used in error messages and logs
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to begin {operation}: {e}", details={"operation": operation}) from e

    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException as error:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as rollback_error:
                logger.critical(
                    "Rollback failed; database is likely corrupt",
                    extra={
                        "event": "sqlite.rollback_failed",
                        "operation": operation,
                        "error": str(error),
                        "rollback_error": str(rollback_error),
                    },
                )
                raise UnrecoverableStorageError(error, rollback_error) from rollback_error
        if isinstance(error, sqlite3.Error):
            raise DatabaseError(
                f"{operation} rolled back: {error}",
                details={"operation": operation},
            ) from error
        raise
