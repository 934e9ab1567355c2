"""Offline-first local store (SQLite).

Modules:
- db: schema, transactions, and typed fetch helpers for stores/aisles/products
"""

from .db import LocalStore, LocalTransaction, normalize_keyword_list

__all__ = [
    "LocalStore",
    "LocalTransaction",
    "normalize_keyword_list",
]
