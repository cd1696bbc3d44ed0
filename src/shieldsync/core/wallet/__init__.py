"""
Wallet store, note scanning and rewind.
"""
