"""
shieldsync - Wallet Rewind

Rolls the wallet store back to a target height so blocks above it can be
rescanned, typically after a reorg was detected by the chain validator.

Rewinding to height T:
- deletes notes discovered above T
- clears spend markers set above T, so those notes count as unspent again
- deletes checkpoint rows above T

A wallet seeded with a birthday checkpoint is never rewound below it.

Rewind Policy:
Rewinds shallower than ``pruning_depth`` blocks are always allowed. Deeper
rewinds must go at least as far back as the wallet's stable boundary (the
configured stable checkpoint height, otherwise the discovery height of the
oldest unspent note); anything between would leave the wallet with spendable
notes whose surrounding history has been pruned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from shieldsync.core import config as config_module
from shieldsync.core.sqlite_utils import atomic_transaction
from shieldsync.core.sync_exceptions import RequestedRewindInvalidError
from shieldsync.core.wallet.wallet_db import WalletDb

logger = logging.getLogger(__name__)


@dataclass
class RewindPolicy:
    """Rewind safety configuration"""
    pruning_depth: int  # Rewinds shallower than this are always allowed
    stable_checkpoint_height: Optional[int] = None  # Overrides the unspent-note boundary

    @classmethod
    def from_config(cls, config: Any = None) -> RewindPolicy:
        """Create policy from config object or environment"""
        # Environment first, then the given config object, then the config module
        if config is None:
            config = config_module

        pruning_depth = config_module._get_int(
            "SHIELDSYNC_PRUNING_DEPTH", getattr(config, "PRUNING_DEPTH", 100)
        )
        stable_height = config_module._get_optional_int("SHIELDSYNC_STABLE_CHECKPOINT_HEIGHT")
        if stable_height is None:
            stable_height = getattr(config, "STABLE_CHECKPOINT_HEIGHT", None)

        return cls(pruning_depth=pruning_depth, stable_checkpoint_height=stable_height)

    def stable_boundary(self, wallet_db: WalletDb) -> Optional[int]:
        """Height a deep rewind must reach, or None when nothing constrains it."""
        if self.stable_checkpoint_height is not None:
            return self.stable_checkpoint_height
        return wallet_db.get_lowest_unspent_note_height()


def rewind_to_height(
    wallet_db: WalletDb,
    target_height: int,
    policy: Optional[RewindPolicy] = None,
) -> Optional[int]:
    """
    Roll the wallet back so its checkpoint is at most ``target_height``.

    A target at or above the current checkpoint (or an empty wallet) is a
    no-op. A target below a seeded birthday checkpoint stops at the birthday,
    which is never deleted. The rollback commits atomically.

    Args:
        wallet_db: Wallet store to roll back
        target_height: Highest height to keep
        policy: Rewind policy; read from configuration when omitted

    Returns:
        The checkpoint height after the rewind, or None if the wallet is now empty

    Raises:
        RequestedRewindInvalidError: The rewind is deeper than the pruning
            depth but stops short of the stable boundary
    """
    if policy is None:
        policy = RewindPolicy.from_config()

    with wallet_db.lock:
        checkpoint = wallet_db.get_checkpoint()
        if checkpoint is None or target_height >= checkpoint.height:
            logger.debug(
                "Rewind target not below wallet checkpoint, nothing to do",
                extra={
                    "event": "rewind.noop",
                    "target_height": target_height,
                    "checkpoint_height": checkpoint.height if checkpoint else None,
                },
            )
            return checkpoint.height if checkpoint else None

        birthday = wallet_db.get_birthday_height()
        if birthday is not None and target_height < birthday:
            logger.warning(
                "Rewind target below wallet birthday, stopping at the birthday",
                extra={
                    "event": "rewind.clamped",
                    "target_height": target_height,
                    "birthday_height": birthday,
                },
            )
            target_height = birthday

        if target_height < checkpoint.height - policy.pruning_depth:
            boundary = policy.stable_boundary(wallet_db)
            if boundary is not None and target_height > boundary:
                logger.warning(
                    "Rejected rewind past the pruning depth",
                    extra={
                        "event": "rewind.rejected",
                        "target_height": target_height,
                        "checkpoint_height": checkpoint.height,
                        "safe_height": boundary,
                        "pruning_depth": policy.pruning_depth,
                    },
                )
                raise RequestedRewindInvalidError(boundary, target_height, policy.pruning_depth)

        with atomic_transaction(wallet_db.conn, f"rewind to {target_height}") as conn:
            notes_removed = conn.execute(
                "DELETE FROM received_notes WHERE height > ?", (target_height,)
            ).rowcount
            notes_unspent = conn.execute(
                """
                UPDATE received_notes SET spent_height = NULL, spent_txid = NULL
                WHERE spent_height > ?
                """,
                (target_height,),
            ).rowcount
            blocks_removed = conn.execute(
                "DELETE FROM blocks WHERE height > ?", (target_height,)
            ).rowcount
            row = conn.execute("SELECT MAX(height) FROM blocks").fetchone()
            new_height = row[0] if row else None

    logger.info(
        "Rewound wallet",
        extra={
            "event": "rewind.completed",
            "target_height": target_height,
            "previous_height": checkpoint.height,
            "checkpoint_height": new_height,
            "blocks_removed": blocks_removed,
            "notes_removed": notes_removed,
            "notes_unspent": notes_unspent,
        },
    )
    return new_height
