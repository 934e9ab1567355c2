from __future__ import annotations

import json
from pathlib import Path

import pytest

from shelf_finder.cli.main import build_parser, main


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    (tmp_path / ".env").write_text("", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    for key in ("SHELF_DIRECTORY_URL", "SHELF_AI_BACKEND", "OPENAI_API_KEY", "SHELF_AI_PROXY_URL"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SHELF_DB_PATH", str(tmp_path / "shelf.sqlite3"))
    monkeypatch.setenv("SHELF_ACTOR_ID", "cli-user")
    return tmp_path


def _json_out(capsys: pytest.CaptureFixture) -> object:
    return json.loads(capsys.readouterr().out)


def test_parser_requires_subcommand() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_store_and_aisle_flow(cli_env: Path, capsys: pytest.CaptureFixture) -> None:
    assert main(["stores", "add", "--name", "Super Yuda", "--lat", "32.0854", "--lng", "34.7824"]) == 0
    store = _json_out(capsys)
    assert store["name"] == "Super Yuda"
    assert store["remote_id"]

    assert main(["aisles", "add", "--store", store["store_id"], "--name", "Dairy", "--keyword", "milk"]) == 0
    aisle = _json_out(capsys)
    assert aisle["keywords"] == ["milk"]

    assert main(["aisles", "list", "--store", store["store_id"], "--keyword", "mil"]) == 0
    assert [a["name_or_number"] for a in _json_out(capsys)] == ["Dairy"]

    assert main(["db", "summary"]) == 0
    summary = _json_out(capsys)
    assert summary["stores"] == 1
    assert summary["aisles"] == 1


def test_local_match_needs_no_backend(
    cli_env: Path, capsys: pytest.CaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    main(["stores", "add", "--name", "Corner Shop"])
    store = _json_out(capsys)
    main(["aisles", "add", "--store", store["store_id"], "--name", "Bakery", "--keyword", "bread"])
    capsys.readouterr()

    monkeypatch.setenv("SHELF_AI_BACKEND", "proxy")
    monkeypatch.setenv("SHELF_AI_PROXY_URL", "http://127.0.0.1:9")
    assert main(["suggest", "--store", store["store_id"], "--product", "bread"]) == 0
    out = _json_out(capsys)
    assert out["source"] == "local"
    assert out["aisle"]["name_or_number"] == "Bakery"


def test_delete_requires_confirmation(cli_env: Path, capsys: pytest.CaptureFixture) -> None:
    main(["stores", "add", "--name", "Super Yuda"])
    store = _json_out(capsys)

    assert main(["stores", "delete", "--store", store["store_id"]]) == 2
    assert "DELETE SUPER" in capsys.readouterr().out
    assert main(["stores", "delete", "--store", store["store_id"], "--confirm", "nope"]) == 2
    assert main(["stores", "delete", "--store", store["store_id"], "--confirm", "delete super"]) == 0

    main(["stores", "list"])
    assert _json_out(capsys) == []


def test_duplicate_aisle_exits_with_error(cli_env: Path, capsys: pytest.CaptureFixture) -> None:
    main(["stores", "add", "--name", "Corner Shop"])
    store = _json_out(capsys)
    assert main(["aisles", "add", "--store", store["store_id"], "--name", "Dairy"]) == 0
    capsys.readouterr()
    assert main(["aisles", "add", "--store", store["store_id"], "--name", "Dairy"]) == 1
    assert "already exists" in capsys.readouterr().err


def test_reports_commands(cli_env: Path, capsys: pytest.CaptureFixture) -> None:
    assert main(["reports", "submit", "--user", "vandal", "--reason", "spam"]) == 0
    assert capsys.readouterr().out.strip()

    assert main(["reports", "submit", "--user", "vandal"]) == 2

    assert main(["reports", "list"]) == 0
    assert _json_out(capsys) == {"new": [], "handled": []}

    assert main(["reports", "edited-by", "--user", "cli-user"]) == 0
    assert _json_out(capsys) == {"stores": [], "aisles": []}
