"""
Trial-decryption oracle interface.

The scanner never performs note decryption itself. It hands each compact
output and the wallet's viewing keys to a ``NoteDecryptor`` and records
whatever the decryptor reports as belonging to an account.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

from shieldsync.core.compact_formats import CompactOutput

MEMO_SIZE = 512


@dataclass(frozen=True)
class DecryptedNote:
    """
    A compact output recognised as belonging to one of the wallet's accounts.

    Attributes:
        account: Account whose viewing key decrypted the output
        value: Note value in zatoshis
        memo: Memo bytes (empty when the compact ciphertext does not carry one)
        nullifier: Nullifier that will be revealed when the note is spent
    """
    account: int
    value: int
    memo: bytes
    nullifier: bytes


class NoteDecryptor(ABC):
    """Trial-decrypts compact outputs against account viewing keys."""

    @abstractmethod
    def try_decrypt(
        self,
        output: CompactOutput,
        viewing_keys: Mapping[int, str],
    ) -> Optional[DecryptedNote]:
        """
        Attempt to decrypt ``output`` with each account's viewing key.

        Args:
            output: The compact output to test
            viewing_keys: Encoded viewing key per account id

        Returns:
            The decrypted note for the first matching account, or None
        """
