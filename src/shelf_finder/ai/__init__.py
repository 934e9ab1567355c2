"""Vision and aisle-suggestion RPCs.

Modules:
- client: backends (OpenAI SDK, hosted proxy) and JSON reply scavenging
- prompts: model instructions for both calls
- vision: request building (mime sniffing, size limit) and tolerant decoding
- suggest: request projection and candidate validation
"""

from .client import AIBackend, OpenAIBackend, ProxyBackend, TaskImportance, build_ai_backend
from .suggest import SuggestionCandidate, SuggestionResponse, request_suggestions
from .vision import VisionResult, analyze_aisle_image, sniff_image_mime

__all__ = [
    "AIBackend",
    "OpenAIBackend",
    "ProxyBackend",
    "SuggestionCandidate",
    "SuggestionResponse",
    "TaskImportance",
    "VisionResult",
    "analyze_aisle_image",
    "build_ai_backend",
    "request_suggestions",
    "sniff_image_mime",
]
