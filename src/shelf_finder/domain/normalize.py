import hashlib
import re
from typing import Iterable, List, Optional

from ..logging import get_logger

_LOG = get_logger("normalize")

_WS = re.compile(r"\s+")

MIN_KEYWORD_LETTERS = 3


def normalize_name(value: Optional[str]) -> str:
    """Comparison key for store and aisle names.

    Lowercases, trims, and collapses internal whitespace runs to one space.
    Idempotent: normalize_name(normalize_name(x)) == normalize_name(x).
    """
    if not value:
        return ""
    return _WS.sub(" ", str(value).lower()).strip()


def _round3(value: float) -> float:
    # round-half-away-from-zero like the mobile client, not banker's rounding
    scaled = abs(float(value)) * 1000
    rounded = int(scaled + 0.5) / 1000
    return rounded if value >= 0 else -rounded


def geo_cell(lat: float, lng: float) -> str:
    """Coarse ~110m bucket: each coordinate rounded to 3 decimals, joined by '|'."""
    return f"{_round3(lat)}|{_round3(lng)}"


def content_hash(name: str) -> str:
    """SHA-256 hex digest of the normalized name, used as a remote document id."""
    return hashlib.sha256(normalize_name(name).encode("utf-8")).hexdigest()


def _letter_count(value: str) -> int:
    return sum(1 for ch in value if ch.isalpha())


def sanitize_keywords(candidates: Iterable[Optional[str]]) -> List[str]:
    """Trim, drop entries with fewer than 3 letters, lowercase, de-dup, sort.

    ["12", "A!", "milk", " Milk ", "Dairy"] -> ["dairy", "milk"]
    """
    kept = set()
    dropped: List[str] = []
    for raw in candidates:
        if not isinstance(raw, str):
            continue
        s = raw.strip()
        if not s:
            continue
        if _letter_count(s) < MIN_KEYWORD_LETTERS:
            dropped.append(s)
            continue
        kept.add(s.lower())
    if dropped:
        _LOG.debug("Dropped noisy keywords: %s", dropped)
    return sorted(kept)
