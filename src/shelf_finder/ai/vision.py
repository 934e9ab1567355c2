from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..domain.normalize import sanitize_keywords
from ..errors import NoTitleDetected, RpcFailure
from ..logging import get_logger
from .client import AIBackend


LOG = get_logger("vision")

MAX_BASE64_CHARS = 8_000_000
DETAILS = ("high", "low")


def sniff_image_mime(data: bytes) -> str:
    """Best-effort mime from magic bytes; unknown payloads are sent as JPEG."""
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[4:8] == b"ftyp" and data[8:12] in (b"heic", b"heix", b"hevc", b"hevx", b"mif1", b"msf1"):
        return "image/heic"
    return "image/jpeg"


def build_vision_request(image_bytes: bytes, *, model: str, detail: str = "high") -> Dict[str, Any]:
    if not image_bytes:
        raise ValueError("image_bytes is empty")
    encoded = base64.b64encode(image_bytes).decode("ascii")
    if len(encoded) > MAX_BASE64_CHARS:
        raise RpcFailure(f"Image too large ({len(encoded)} base64 chars > {MAX_BASE64_CHARS})")
    if detail not in DETAILS:
        LOG.debug(f"Unknown detail {detail!r}; using 'high'")
        detail = "high"
    return {
        "image": {"mime": sniff_image_mime(image_bytes), "base64": encoded, "detail": detail},
        "model": model,
    }


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s or None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


@dataclass(frozen=True)
class VisionResult:
    aisle_code: Optional[str] = None
    title_original: Optional[str] = None
    title_en: Optional[str] = None
    keywords_original: List[str] = field(default_factory=list)
    keywords_en: List[str] = field(default_factory=list)
    language: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisionResult":
        """Tolerant decode: every field may be missing or null."""
        return cls(
            aisle_code=_clean(data.get("aisle_code")),
            title_original=_clean(data.get("title_original")),
            title_en=_clean(data.get("title_en")),
            keywords_original=_string_list(data.get("keywords_original")),
            keywords_en=_string_list(data.get("keywords_en")),
            language=_clean(data.get("language")),
        )

    def display_title(self) -> str:
        """Aisle code, else original title, else English title."""
        for candidate in (self.aisle_code, self.title_original, self.title_en):
            if candidate:
                return candidate
        raise NoTitleDetected()

    def keyword_candidates(self) -> List[str]:
        out = list(self.keywords_original) + list(self.keywords_en)
        out.extend(t for t in (self.title_original, self.title_en) if t)
        return out

    def keywords(self) -> List[str]:
        return sanitize_keywords(self.keyword_candidates())


def analyze_aisle_image(
    backend: AIBackend,
    image_bytes: bytes,
    *,
    model: str,
    detail: str = "high",
) -> VisionResult:
    request = build_vision_request(image_bytes, model=model, detail=detail)
    LOG.info(f"Vision request: mime={request['image']['mime']} chars={len(request['image']['base64'])} detail={request['image']['detail']}")
    raw = backend.vision(request)
    if not isinstance(raw, dict):
        raise RpcFailure("vision: reply is not a JSON object")
    result = VisionResult.from_dict(raw)
    LOG.debug(f"Vision result: code={result.aisle_code!r} title={result.title_original!r} en={result.title_en!r}")
    return result
