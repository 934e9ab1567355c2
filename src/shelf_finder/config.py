import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger
from .paths import default_db_path, expand_abs

log = get_logger("config")

DEFAULT_VISION_MODEL = "gpt-4.1-mini"
AI_IMPORTANCE = ("low", "medium", "high")
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_IDENTITY_TIMEOUT = 8.0
AI_BACKENDS = ("openai", "proxy")


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    Running the CLI from a subdirectory (e.g. `src/`) still finds the
    repository-level `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read the nearest .env into a mapping without mutating os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    values = {k: v.strip() for k, v in dotenv_values(path).items() if v is not None}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _lookup(env: Dict[str, str], key: str) -> Optional[str]:
    v = os.environ.get(key)
    if v is None:
        v = env.get(key) or env.get(key.lower())
    if v is None:
        return None
    v = v.strip()
    return v or None


def _float_or(value: Optional[str], default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        log.warning(f"{key}={value!r} is not a number; using {default}")
        return default
    if parsed <= 0:
        log.warning(f"{key}={value!r} must be positive; using {default}")
        return default
    return parsed


@dataclass(frozen=True)
class Settings:
    db_path: str
    directory_url: Optional[str]
    ai_backend: str
    ai_proxy_url: Optional[str]
    openai_api_key: Optional[str]
    vision_model: str
    suggest_model: Optional[str]
    ai_importance: str
    http_timeout: float
    identity_timeout: float
    actor_id: Optional[str]


def load_settings(start_dir: Optional[str] = None) -> Settings:
    """Resolve settings from the environment first, then the nearest .env."""
    base = start_dir or os.getcwd()
    env = _read_dotenv(base)

    db_path = _lookup(env, "SHELF_DB_PATH")
    db_path = expand_abs(db_path) if db_path else default_db_path(base)

    backend = (_lookup(env, "SHELF_AI_BACKEND") or "openai").lower()
    if backend not in AI_BACKENDS:
        log.warning(f"Unknown SHELF_AI_BACKEND={backend!r}; defaulting to 'openai'")
        backend = "openai"

    # picks the suggestion model and temperature unless SHELF_SUGGEST_MODEL is set
    importance = (_lookup(env, "SHELF_AI_IMPORTANCE") or "medium").lower()
    if importance not in AI_IMPORTANCE:
        log.warning(f"Unknown SHELF_AI_IMPORTANCE={importance!r}; defaulting to 'medium'")
        importance = "medium"

    openai_key = _lookup(env, "OPENAI_API_KEY")
    proxy_url = _lookup(env, "SHELF_AI_PROXY_URL")
    if backend == "openai" and not openai_key:
        log.info("OPENAI_API_KEY not set; AI calls will fail until configured")
    if backend == "proxy" and not proxy_url:
        log.info("SHELF_AI_PROXY_URL not set; AI calls will fail until configured")

    settings = Settings(
        db_path=db_path,
        directory_url=_lookup(env, "SHELF_DIRECTORY_URL"),
        ai_backend=backend,
        ai_proxy_url=proxy_url,
        openai_api_key=openai_key,
        vision_model=_lookup(env, "SHELF_VISION_MODEL") or DEFAULT_VISION_MODEL,
        suggest_model=_lookup(env, "SHELF_SUGGEST_MODEL"),
        ai_importance=importance,
        http_timeout=_float_or(_lookup(env, "SHELF_HTTP_TIMEOUT"), DEFAULT_HTTP_TIMEOUT, key="SHELF_HTTP_TIMEOUT"),
        identity_timeout=_float_or(
            _lookup(env, "SHELF_IDENTITY_TIMEOUT"), DEFAULT_IDENTITY_TIMEOUT, key="SHELF_IDENTITY_TIMEOUT"
        ),
        actor_id=_lookup(env, "SHELF_ACTOR_ID"),
    )
    log.debug(f"Settings resolved: db={settings.db_path} backend={settings.ai_backend}")
    return settings
