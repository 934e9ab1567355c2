"""RPC backends for the vision and aisle-suggestion calls.

Two interchangeable backends share one surface (`vision(request)` and
`suggest(request)`, both taking and returning plain dicts in the wire shape):

- OpenAIBackend: OpenAI SDK over an httpx client, JSON-object responses
- ProxyBackend: POST to a hosted proxy (`/vision`, `/suggest`) with requests
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
import requests
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from ..config import Settings
from ..errors import RpcFailure
from ..logging import get_logger
from .prompts import SUGGEST_SYSTEM_PROMPT, VISION_SYSTEM_PROMPT, suggest_user_prompt, vision_user_prompt


LOG = get_logger("ai-client")


class TaskImportance(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_MODEL_FOR = {
    TaskImportance.LOW: "gpt-4o-mini",
    TaskImportance.MEDIUM: "gpt-4o-mini",
    TaskImportance.HIGH: "gpt-4o",
}

_TEMPERATURE_FOR = {
    TaskImportance.LOW: 0.1,
    TaskImportance.MEDIUM: 0.3,
    TaskImportance.HIGH: 0.2,
}


def model_for(importance: TaskImportance) -> str:
    return _MODEL_FOR[importance]


def temperature_for(importance: TaskImportance) -> float:
    return _TEMPERATURE_FOR[importance]


def _scavenge_json_block(s: str) -> Optional[Any]:
    if not s:
        return None

    candidates: List[str] = []

    # 1) fenced code blocks first (```json ... ```)
    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        candidates.append(fenced.group(1).strip())

    # 2) the outermost object slice
    start_obj = s.find("{")
    end_obj = s.rfind("}")
    if start_obj != -1 and end_obj != -1 and end_obj > start_obj:
        candidates.append(s[start_obj : end_obj + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue

    return None


def parse_json_object(text: Optional[str], *, what: str) -> Dict[str, Any]:
    """Decode a model reply into a dict, falling back to fenced/loose JSON."""
    if not text:
        raise RpcFailure(f"{what}: empty model reply")
    try:
        data = json.loads(text)
    except ValueError:
        LOG.debug("JSON parse failed for %s; attempting fallback (first 300 chars: %r)", what, text[:300])
        data = _scavenge_json_block(text)
    if not isinstance(data, dict):
        raise RpcFailure(f"{what}: reply is not a JSON object")
    return data


class AIBackend:
    """Interface for the two RPCs the ingestion and suggestion flows need."""

    name = "base"

    def vision(self, request: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def suggest(self, request: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class OpenAIBackend(AIBackend):
    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        suggest_model: Optional[str] = None,
        importance: TaskImportance = TaskImportance.MEDIUM,
        client: Optional[OpenAI] = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise RpcFailure("OPENAI_API_KEY missing in env/.env; cannot call OpenAI")
            http_client = httpx.Client(
                http2=True,
                timeout=httpx.Timeout(connect=10.0, read=timeout, write=timeout, pool=10.0),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )
            client = OpenAI(api_key=api_key, base_url=base_url, http_client=http_client, max_retries=0)
        self.client = client
        self.importance = importance
        self.suggest_model = suggest_model or model_for(importance)

    def _json_chat(self, messages: List[Dict[str, Any]], *, model: str, temperature: float, what: str) -> Dict[str, Any]:
        LOG.info("Calling OpenAI chat completions model='%s' for %s", model, what)
        try:
            resp = self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except (APIConnectionError, APITimeoutError) as exc:
            LOG.error("Network/timeout while calling OpenAI (%s): %s", what, exc)
            raise RpcFailure(f"{what}: {exc}") from exc
        except APIStatusError as exc:
            body = getattr(getattr(exc, "response", None), "text", None)
            LOG.error("OpenAI returned %s for %s. Body preview: %r", exc.status_code, what, body[:300] if body else None)
            raise RpcFailure(f"{what}: HTTP {exc.status_code}") from exc
        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise RpcFailure(f"{what}: no choices in reply")
        return parse_json_object(choices[0].message.content, what=what)

    def vision(self, request: Dict[str, Any]) -> Dict[str, Any]:
        image = request["image"]
        data_url = f"data:{image['mime']};base64,{image['base64']}"
        messages = [
            {"role": "system", "content": VISION_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": vision_user_prompt()},
                    {"type": "image_url", "image_url": {"url": data_url, "detail": image.get("detail", "high")}},
                ],
            },
        ]
        return self._json_chat(messages, model=request["model"], temperature=0.0, what="vision")

    def suggest(self, request: Dict[str, Any]) -> Dict[str, Any]:
        aisles_json = json.dumps(request.get("aisles") or [], ensure_ascii=False)
        messages = [
            {"role": "system", "content": SUGGEST_SYSTEM_PROMPT},
            {"role": "user", "content": suggest_user_prompt(request["productName"], aisles_json)},
        ]
        return self._json_chat(
            messages,
            model=request.get("model") or self.suggest_model,
            temperature=temperature_for(self.importance),
            what="suggest",
        )


class ProxyBackend(AIBackend):
    """Hosted proxy that holds the model key; callers authenticate with their actor id."""

    name = "proxy"

    def __init__(
        self,
        base_url: str,
        *,
        actor_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.actor_provider = actor_provider
        self.s = session if session is not None else requests.Session()
        self.s.headers.update({"Accept": "application/json"})

    def _post(self, path: str, payload: Dict[str, Any], what: str) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        actor = self.actor_provider() if self.actor_provider else None
        if actor:
            headers["Authorization"] = f"Bearer {actor}"
        try:
            r = self.s.post(f"{self.base}{path}", json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            LOG.error(f"{what} proxy request failed: {exc}")
            raise RpcFailure(f"{what}: {exc}") from exc
        if r.status_code >= 400:
            preview = (r.text or "")[:300]
            LOG.error(f"{what} proxy HTTP {r.status_code}: {preview}")
            raise RpcFailure(f"{what}: HTTP {r.status_code}")
        try:
            body = r.json()
        except ValueError as exc:
            raise RpcFailure(f"{what}: proxy reply is not JSON") from exc
        if not isinstance(body, dict):
            raise RpcFailure(f"{what}: proxy reply is not an object")
        return body

    def vision(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/vision", request, "vision")

    def suggest(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/suggest", request, "suggest")


def build_ai_backend(
    settings: Settings,
    *,
    actor_provider: Optional[Callable[[], Optional[str]]] = None,
    client: Optional[OpenAI] = None,
) -> AIBackend:
    """Pick the backend named by SHELF_AI_BACKEND; SHELF_AI_IMPORTANCE tunes OpenAI suggestions."""
    if settings.ai_backend == "proxy":
        if not settings.ai_proxy_url:
            raise RpcFailure("SHELF_AI_PROXY_URL is not configured")
        LOG.info("AI backend selected: proxy")
        return ProxyBackend(settings.ai_proxy_url, actor_provider=actor_provider, timeout=settings.http_timeout)
    importance = TaskImportance(settings.ai_importance)
    LOG.info(f"AI backend selected: OpenAI (importance={importance.value})")
    return OpenAIBackend(
        settings.openai_api_key,
        timeout=settings.http_timeout,
        suggest_model=settings.suggest_model,
        importance=importance,
        client=client,
    )
