"""Shared remote directory: in-process store, HTTP app and HTTP client.

Modules:
- directory: document model, InMemoryDirectory, subscriptions
- server: Starlette JSON surface over a directory (long-poll watch)
- client: requests-based HttpDirectory with background watch threads
"""

from .client import HttpDirectory
from .directory import (
    API_ERRORS,
    REPORTED_USERS,
    SERVER_TIMESTAMP,
    STORES,
    DocumentSnapshot,
    InMemoryDirectory,
    ListenerRegistration,
    RemoteDirectory,
    aisles_path,
    products_path,
)

__all__ = [
    "API_ERRORS",
    "REPORTED_USERS",
    "SERVER_TIMESTAMP",
    "STORES",
    "DocumentSnapshot",
    "HttpDirectory",
    "InMemoryDirectory",
    "ListenerRegistration",
    "RemoteDirectory",
    "aisles_path",
    "products_path",
]
