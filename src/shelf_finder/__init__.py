"""
Shelf Finder – collaborative store aisle map.

Local offline-first aisle/product store, a shared remote directory, and the
sync engine that reconciles the two. Aisle signs are read through a vision
RPC and product lookups fall back to an AI ranking RPC.
"""

__version__ = "0.3.0"

__all__ = [
    "config",
    "logging",
    "paths",
    "errors",
]
