"""
Compact block cache backends, traversal and chain validation.
"""
