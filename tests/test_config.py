from __future__ import annotations

import os
from pathlib import Path

import pytest

from relay.config import (
    BackendProfile,
    ProfileStore,
    ProviderKind,
    load_config,
    parse_profiles,
)
from relay.errors import ConfigurationError

PROFILES_TOML = """
[[profiles]]
id = "groq"
kind = "groq"
api_key_env = "GROQ_API_KEY"
quota_reset_period = 60
quota_limit = { max_requests = 30 }

[[profiles]]
id = "claude"
kind = "anthropic"
model = "claude-3-5-haiku-20241022"

[profiles.credentials]
api_key = "sk-inline"
""".strip()


def _write(path: Path, text: str, mtime: float | None = None) -> None:
    path.write_text(text, encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))


def test_load_config_reads_profiles_and_settings(tmp_path: Path) -> None:
    _write(tmp_path / "profiles.toml", PROFILES_TOML)
    _write(tmp_path / "relay.yaml", "default_reset_period: 120\nrequest_timeout: 30\nstream_buffer: 8\n")

    loaded = load_config(str(tmp_path))

    assert [profile.id for profile in loaded.profiles] == ["groq", "claude"]
    groq, claude = loaded.profiles
    assert groq.kind is ProviderKind.GROQ
    assert groq.credentials.api_key_env == "GROQ_API_KEY"
    assert groq.quota_limit is not None and groq.quota_limit.max_requests == 30
    assert groq.quota_reset_period == 60
    assert claude.credentials.resolve() == "sk-inline"
    assert "sk-inline" not in repr(claude)
    assert loaded.settings.default_reset_period == 120
    assert loaded.settings.request_timeout == 30
    assert loaded.settings.stream_buffer == 8
    assert set(loaded.mtimes) == {"profiles", "settings"}


def test_settings_file_is_optional(tmp_path: Path) -> None:
    _write(tmp_path / "profiles.toml", PROFILES_TOML)
    loaded = load_config(str(tmp_path))
    assert loaded.settings.default_reset_period == 3600
    assert loaded.settings.request_timeout is None
    assert loaded.settings.metrics_dir is None
    assert set(loaded.mtimes) == {"profiles"}


def test_dummy_flag_selects_dummy_profiles(tmp_path: Path) -> None:
    _write(tmp_path / "profiles.toml", PROFILES_TOML)
    _write(tmp_path / "profiles.dummy.toml", '[[profiles]]\nid = "d"\nkind = "dummy"\n')
    loaded = load_config(str(tmp_path), use_dummy=True)
    assert [profile.id for profile in loaded.profiles] == ["d"]


def test_validation_errors_are_flattened() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        parse_profiles(
            [
                {"id": "a", "kind": "gemini-cli"},
                {"id": "b", "kind": "groq", "quota_limit": {"max_requests": 0}},
            ]
        )
    message = str(excinfo.value)
    assert "profiles -> 0 -> kind" in message
    assert "profiles -> 1 -> quota_limit -> max_requests" in message
    assert "; " in message


def test_missing_profiles_file_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="cannot read"):
        load_config(str(tmp_path))


def test_malformed_toml_is_a_configuration_error(tmp_path: Path) -> None:
    _write(tmp_path / "profiles.toml", "[[profiles]\nid = ")
    with pytest.raises(ConfigurationError, match="profiles.toml"):
        load_config(str(tmp_path))


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="duplicate profile ids: a"):
        parse_profiles([{"id": "a", "kind": "dummy"}, {"id": "a", "kind": "groq"}])


def test_unknown_profile_keys_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="rpm"):
        parse_profiles([{"id": "a", "kind": "dummy", "rpm": 60}])


def test_flat_credentials_are_lifted() -> None:
    profile = BackendProfile.model_validate({"id": "x", "kind": "xai", "api_key_env": "XAI_KEY"})
    assert profile.credentials.api_key_env == "XAI_KEY"
    assert profile.credentials.api_key is None


def test_credentials_resolve_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    profile = BackendProfile.model_validate({"id": "x", "kind": "xai", "api_key_env": "RELAY_TEST_XAI"})
    monkeypatch.delenv("RELAY_TEST_XAI", raising=False)
    assert profile.credentials.resolve() is None
    monkeypatch.setenv("RELAY_TEST_XAI", "xai-123")
    assert profile.credentials.resolve() == "xai-123"


def test_profile_store_refreshes_on_mtime_change(tmp_path: Path) -> None:
    profiles_file = tmp_path / "profiles.toml"
    _write(profiles_file, PROFILES_TOML, mtime=1_000_000)
    store = ProfileStore(str(tmp_path))
    assert [profile.id for profile in store()] == ["groq", "claude"]
    assert store.refresh() is False

    _write(profiles_file, '[[profiles]]\nid = "solo"\nkind = "dummy"\n', mtime=1_000_100)
    assert store.refresh() is True
    assert [profile.id for profile in store.profiles] == ["solo"]

    _write(tmp_path / "relay.yaml", "stream_buffer: 4\n", mtime=1_000_200)
    assert store.refresh() is True
    assert store.settings.stream_buffer == 4


def test_profile_store_keeps_last_good_config_on_error(tmp_path: Path) -> None:
    profiles_file = tmp_path / "profiles.toml"
    _write(profiles_file, PROFILES_TOML, mtime=1_000_000)
    store = ProfileStore(str(tmp_path))

    _write(profiles_file, '[[profiles]]\nid = "broken"\nkind = "nope"\n', mtime=1_000_100)
    with pytest.raises(ConfigurationError):
        store.refresh()
    assert [profile.id for profile in store.profiles] == ["groq", "claude"]


def test_shipped_example_config_is_valid() -> None:
    config_dir = Path(__file__).resolve().parents[1] / "config"
    loaded = load_config(str(config_dir))
    assert loaded.profiles
    dummy = load_config(str(config_dir), use_dummy=True)
    assert all(profile.kind is ProviderKind.DUMMY for profile in dummy.profiles)
