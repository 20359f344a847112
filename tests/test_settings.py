"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from promptrelay.services.settings import (
    SecretVault,
    SessionConfig,
    Settings,
    SettingsStore,
    redact_secret,
)


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    assert _store(tmp_path).load() == Settings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = Settings(
        api_key="super-secret",
        organization="acme",
        base_url="https://example.com/v1",
        model="gpt-4",
        max_tokens=512,
        temperature=0.2,
        proxy_server="http://proxy:8080",
        show_notification=True,
    )

    store.save(original)
    reloaded = _store(tmp_path).load()

    assert reloaded == original


def test_api_key_is_encrypted_on_disk(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(Settings(api_key="sk-plaintext"))

    payload = json.loads(store.path.read_text(encoding="utf-8"))

    assert "api_key" not in payload
    assert payload["api_key_ciphertext"].startswith("fernet:")
    assert "sk-plaintext" not in store.path.read_text(encoding="utf-8")
    assert payload["secret_backend"] == "fernet"


def test_load_legacy_plaintext_api_key_migrates_it(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(json.dumps({"api_key": "plain-key", "model": "gpt-4"}), encoding="utf-8")

    loaded = _store(tmp_path).load()

    assert loaded.api_key == "plain-key"
    assert loaded.model == "gpt-4"
    migrated = json.loads(target.read_text(encoding="utf-8"))
    assert "api_key" not in migrated
    assert migrated["api_key_ciphertext"]


def test_load_ignores_invalid_json(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text("{not json", encoding="utf-8")

    assert _store(tmp_path).load() == Settings()


def test_unknown_fields_are_dropped(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text(json.dumps({"model": "gpt-4", "theme": "dark"}), encoding="utf-8")

    assert _store(tmp_path).load().model == "gpt-4"


def test_cli_overrides_then_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(Settings(model="gpt-3.5-turbo", api_key="abc"))
    monkeypatch.setenv("PROMPTRELAY_MODEL", "gpt-4")
    monkeypatch.setenv("PROMPTRELAY_MAX_TOKENS", "256")
    monkeypatch.setenv("PROMPTRELAY_SHOW_NOTIFICATION", "yes")
    monkeypatch.setenv("PROMPTRELAY_TEMPERATURE", "not-a-number")

    loaded = _store(tmp_path).load(overrides={"model": "code-davinci-002", "top_p": 0.5})

    assert loaded.model == "gpt-4"
    assert loaded.top_p == 0.5
    assert loaded.max_tokens == 256
    assert loaded.show_notification is True
    assert loaded.temperature == 1.0
    assert loaded.api_key == "abc"


def test_session_config_normalizes_blank_values() -> None:
    settings = Settings(api_key="  key  ", organization="  ", proxy_server="", method="Custom", authentication_type="OAuth")

    config = settings.session_config()

    assert isinstance(config, SessionConfig)
    assert config.api_key == "key"
    assert config.organization is None
    assert config.proxy is None
    assert config.login_method == "Custom"
    assert config.auth_type == "OAuth"


def test_client_identity_tracks_client_fields_only() -> None:
    base = SessionConfig(api_key="a", model="gpt-4")

    assert base.client_identity() == SessionConfig(api_key="a", model="gpt-4", auto_scroll=False).client_identity()
    assert base.client_identity() != SessionConfig(api_key="a", model="gpt-4", temperature=0.1).client_identity()


def test_vault_rejects_unknown_backend(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "k")

    with pytest.raises(ValueError):
        vault.decrypt("dpapi:abc")
    assert vault.decrypt(vault.encrypt("secret")) == "secret"
    assert vault.encrypt("") == ""


def test_redact_secret() -> None:
    assert redact_secret("") == ""
    assert redact_secret("abcd") == "****"
    assert redact_secret("sk-123456") == "sk*****56"
