"""
shieldsync - Shielded Light-Client Wallet Sync

Local compact-block cache, chain validation, block scanning and rewind for a
light-client wallet that tracks shielded notes.

Main Components:
- Block Cache: SQLite blob store and filesystem store with a metadata index
- Chain Validation: hash-chain and height continuity checks over the cache
- Scanner: trial-decrypts cached outputs and tracks note spends
- Rewind: rolls the wallet back below a reorg

For detailed documentation, see: DESIGN.md
"""

__version__ = "0.1.0"
__author__ = "shieldsync Development Team"

__all__ = []
