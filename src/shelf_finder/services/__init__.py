"""User-facing flows built on the local store, sync engine and RPC backends.

Modules:
- ingestion: aisle-sign photos and manual aisle entry/edit/delete
- suggestion: product -> aisle lookup (known, local scoring, AI ranking)
- stores: store create/edit/confirmed delete
- reports: user reports and edit attribution
"""

from .ingestion import AisleIngestionService, IngestionResult
from .reports import ReportService, UserReport, partition_reports
from .stores import StoreService, delete_confirmation_phrase
from .suggestion import AisleSuggestion, AisleSuggestionService, best_matching_aisle, score_aisle

__all__ = [
    "AisleIngestionService",
    "AisleSuggestion",
    "AisleSuggestionService",
    "IngestionResult",
    "ReportService",
    "StoreService",
    "UserReport",
    "best_matching_aisle",
    "delete_confirmation_phrase",
    "partition_reports",
    "score_aisle",
]
