from __future__ import annotations

from pathlib import Path

from beacon.credentials import PLACEHOLDER_TOKEN, TokenStore


def test_env_token_wins_over_file(monkeypatch, tmp_path: Path) -> None:
    store = TokenStore(path=tmp_path / "token.json")
    store.save_token("from-file")
    monkeypatch.setenv("GEOBEACON_AUTH_TOKEN", " from-env ")

    assert store.get_token() == "from-env"


def test_save_load_and_clear(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("GEOBEACON_AUTH_TOKEN", raising=False)
    store = TokenStore(path=tmp_path / "nested" / "token.json")

    assert store.get_token() is None
    assert store.bearer_token() == PLACEHOLDER_TOKEN

    store.save_token("abc123")
    assert store.get_token() == "abc123"
    assert not list((tmp_path / "nested").glob("*.tmp"))

    store.clear_token()
    store.clear_token()
    assert store.get_token() is None


def test_garbage_token_file_is_ignored(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("GEOBEACON_AUTH_TOKEN", raising=False)
    path = tmp_path / "token.json"
    path.write_text("{not json", encoding="utf-8")

    assert TokenStore(path=path).get_token() is None

    path.write_text('["auth_token"]', encoding="utf-8")
    assert TokenStore(path=path).get_token() is None


def test_store_without_path_has_no_token(monkeypatch) -> None:
    monkeypatch.delenv("GEOBEACON_AUTH_TOKEN", raising=False)
    assert TokenStore().get_token() is None
