"""Typed failures surfaced to callers of the push, ingestion and suggestion paths."""

from __future__ import annotations

from typing import Optional


class ShelfFinderError(Exception):
    """Base class; `user_message` is safe to render in a UI banner."""

    user_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.user_message)


class NotSynced(ShelfFinderError):
    user_message = "Store is not synced yet."


class Unauthenticated(ShelfFinderError):
    user_message = "Please sign in first."


class NoTitleDetected(ShelfFinderError):
    user_message = "No aisle title could be detected from the sign."


class DuplicateAisle(ShelfFinderError):
    user_message = "This aisle already exists."

    def __init__(self, title: str) -> None:
        self.title = title
        super().__init__(f"Aisle '{title}' already exists")


class PersistenceError(ShelfFinderError):
    user_message = "Failed to save changes."


class RpcFailure(ShelfFinderError):
    user_message = "The remote service could not be reached."


class RemoteUnavailable(RpcFailure):
    user_message = "Offline: the shared directory is not reachable."


class IdentityTimeout(ShelfFinderError):
    user_message = "Signing in took too long."


class OperationCancelled(ShelfFinderError):
    user_message = "Cancelled."
