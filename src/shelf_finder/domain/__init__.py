from .models import Aisle, Link, Linked, Place, ProductItem, Store, Unlinked, link_from
from .normalize import content_hash, geo_cell, normalize_name, sanitize_keywords

__all__ = [
    "Aisle",
    "Link",
    "Linked",
    "Place",
    "ProductItem",
    "Store",
    "Unlinked",
    "link_from",
    "content_hash",
    "geo_cell",
    "normalize_name",
    "sanitize_keywords",
]
