from __future__ import annotations

import os
from pathlib import Path

import pytest

from shelf_finder.config import DEFAULT_HTTP_TIMEOUT, load_settings

KEYS = (
    "SHELF_DB_PATH",
    "SHELF_DIRECTORY_URL",
    "SHELF_AI_BACKEND",
    "SHELF_AI_PROXY_URL",
    "OPENAI_API_KEY",
    "SHELF_VISION_MODEL",
    "SHELF_SUGGEST_MODEL",
    "SHELF_AI_IMPORTANCE",
    "SHELF_HTTP_TIMEOUT",
    "SHELF_IDENTITY_TIMEOUT",
    "SHELF_ACTOR_ID",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in KEYS:
        monkeypatch.delenv(key, raising=False)


def test_dotenv_values_and_defaults(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "SHELF_DIRECTORY_URL=http://127.0.0.1:8010\n"
        "SHELF_AI_BACKEND=Proxy\n"
        "SHELF_AI_PROXY_URL=https://proxy.example\n"
        "SHELF_HTTP_TIMEOUT=abc\n"
        "SHELF_IDENTITY_TIMEOUT=3\n",
        encoding="utf-8",
    )
    nested = tmp_path / "src" / "deeper"
    nested.mkdir(parents=True)

    settings = load_settings(str(nested))
    assert settings.directory_url == "http://127.0.0.1:8010"
    assert settings.ai_backend == "proxy"
    assert settings.ai_proxy_url == "https://proxy.example"
    assert settings.http_timeout == DEFAULT_HTTP_TIMEOUT
    assert settings.identity_timeout == 3.0
    assert settings.suggest_model is None
    assert settings.ai_importance == "medium"
    assert settings.db_path == os.path.join(str(tmp_path), "var", "shelfdb", "shelf.sqlite3")


def test_environment_wins_over_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("SHELF_SUGGEST_MODEL=from-file\nSHELF_ACTOR_ID=file-user\n", encoding="utf-8")
    monkeypatch.setenv("SHELF_SUGGEST_MODEL", "from-env")
    monkeypatch.setenv("SHELF_DB_PATH", str(tmp_path / "custom.sqlite3"))

    settings = load_settings(str(tmp_path))
    assert settings.suggest_model == "from-env"
    assert settings.actor_id == "file-user"
    assert settings.db_path == str(tmp_path / "custom.sqlite3")


def test_unknown_backend_falls_back_to_openai(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("", encoding="utf-8")
    monkeypatch.setenv("SHELF_AI_BACKEND", "gemini")
    assert load_settings(str(tmp_path)).ai_backend == "openai"


def test_importance_is_validated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("SHELF_AI_IMPORTANCE=HIGH\n", encoding="utf-8")
    assert load_settings(str(tmp_path)).ai_importance == "high"

    monkeypatch.setenv("SHELF_AI_IMPORTANCE", "urgent")
    assert load_settings(str(tmp_path)).ai_importance == "medium"
