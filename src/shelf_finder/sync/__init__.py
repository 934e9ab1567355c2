"""Local <-> remote synchronization.

Modules:
- reconcile: pure full-snapshot planning (inserts/updates/deletes)
- engine: subscriptions, per-store locking, push path, worker pool
"""

from .engine import AISLES, PRODUCTS, CancellationToken, SubscriptionState, SyncEngine
from .reconcile import MalformedSnapshot, ReconcilePlan, reconcile_aisles, reconcile_products

__all__ = [
    "AISLES",
    "PRODUCTS",
    "CancellationToken",
    "MalformedSnapshot",
    "ReconcilePlan",
    "SubscriptionState",
    "SyncEngine",
    "reconcile_aisles",
    "reconcile_products",
]
