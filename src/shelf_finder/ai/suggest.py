from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..domain.models import Aisle
from ..errors import RpcFailure
from ..logging import get_logger
from .client import AIBackend


LOG = get_logger("suggest-rpc")

LABELS = ("sure", "likely", "maybe", "uncertain")
MAX_CANDIDATES = 3


def label_for_score(score: float) -> str:
    if score >= 0.85:
        return "sure"
    if score >= 0.7:
        return "likely"
    if score >= 0.4:
        return "maybe"
    return "uncertain"


@dataclass(frozen=True)
class SuggestionCandidate:
    aisle_id: str
    confidence_label: str
    confidence_score: float
    reason: str = ""


@dataclass(frozen=True)
class SuggestionResponse:
    candidates: List[SuggestionCandidate] = field(default_factory=list)
    not_found: bool = False

    @property
    def top(self) -> Optional[SuggestionCandidate]:
        return self.candidates[0] if self.candidates else None


def build_suggest_request(product_name: str, aisles: List[Aisle], *, model: Optional[str] = None) -> Dict[str, Any]:
    """Project local aisles into the RPC shape; ids are local aisle ids."""
    payload: Dict[str, Any] = {
        "productName": product_name,
        "aisles": [{"id": a.aisle_id, "nameOrNumber": a.name_or_number, "keywords": list(a.keywords)} for a in aisles],
    }
    if model:
        payload["model"] = model
    return payload


def _score(value: Any) -> Optional[float]:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if score != score:  # NaN
        return None
    return min(max(score, 0.0), 1.0)


def parse_suggest_response(raw: Any, *, known_ids: Optional[set] = None) -> SuggestionResponse:
    """Validate candidates: unknown labels are derived from the score, at most three kept.

    Candidates pointing at aisle ids that were not offered are dropped.
    """
    if not isinstance(raw, dict):
        raise RpcFailure("suggest: reply is not a JSON object")
    items = raw.get("candidates")
    if items is not None and not isinstance(items, list):
        raise RpcFailure("suggest: candidates is not a list")

    out: List[SuggestionCandidate] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        aisle_id = item.get("aisleId")
        if not isinstance(aisle_id, str) or not aisle_id:
            continue
        if known_ids is not None and aisle_id not in known_ids:
            LOG.debug(f"Dropping candidate for unknown aisle {aisle_id!r}")
            continue
        score = _score(item.get("confidence_score"))
        if score is None:
            continue
        label = item.get("confidence_label")
        if label not in LABELS:
            label = label_for_score(score)
        reason = item.get("reason") if isinstance(item.get("reason"), str) else ""
        out.append(SuggestionCandidate(aisle_id, label, score, reason.strip()))
        if len(out) == MAX_CANDIDATES:
            break

    not_found = bool(raw.get("not_found")) or not out
    return SuggestionResponse(candidates=out, not_found=not_found)


def request_suggestions(
    backend: AIBackend,
    product_name: str,
    aisles: List[Aisle],
    *,
    model: Optional[str] = None,
) -> SuggestionResponse:
    request = build_suggest_request(product_name, aisles, model=model)
    LOG.info(f"Suggest request: product={product_name!r} aisles={len(aisles)}")
    raw = backend.suggest(request)
    return parse_suggest_response(raw, known_ids={a.aisle_id for a in aisles})
