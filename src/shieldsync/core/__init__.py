"""
shieldsync Core Module

Core functionality for wallet synchronization including:
- Compact block formats and serialization
- Block cache backends and traversal
- Wallet storage, scanning and rewind
- Configuration, logging and error types
"""

__all__ = []
