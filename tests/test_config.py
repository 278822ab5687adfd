"""Tests for tusqueue/config.py — ConfigManager."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from keyring.errors import PasswordDeleteError

from tusqueue.config import ConfigManager, DEFAULT_CONFIG

ENDPOINT = "https://tus.example.com/files/"


@pytest.fixture(autouse=True)
def mock_keyring():
    """Keep tests away from the real OS keyring."""
    with patch("tusqueue.config.keyring") as kr:
        kr.get_password.return_value = None
        yield kr


@pytest.fixture()
def tmp_config(tmp_path: Path) -> ConfigManager:
    """Return a ConfigManager backed by a temporary directory."""
    return ConfigManager(base_dir=tmp_path)


class TestDefaultConfig:
    def test_default_created_when_missing(self, tmp_path: Path) -> None:
        """Config file is created with defaults if it does not exist."""
        cm = ConfigManager(base_dir=tmp_path)
        assert (tmp_path / "config.json").exists()
        assert cm.get("chunk_size") == 16 * 1024

    def test_all_default_keys_present(self, tmp_config: ConfigManager) -> None:
        """Every key in DEFAULT_CONFIG is present after initialisation."""
        for key in DEFAULT_CONFIG:
            assert key in tmp_config.get_all()

    def test_path_defaults_live_under_base_dir(self, tmp_path: Path) -> None:
        cm = ConfigManager(base_dir=tmp_path)
        assert Path(cm.get("staging_dir")) == tmp_path / "staging"
        assert Path(cm.get("url_store")) == tmp_path / "tus_urls.json"

    def test_finish_retry_defaults(self, tmp_config: ConfigManager) -> None:
        assert tmp_config.get("finish_max_attempts") == 5
        assert tmp_config.get("finish_retry_delay") == 1.0
        assert tmp_config.get("job_workers") == 1


class TestCorruptConfig:
    def test_corrupt_json_resets_to_defaults(self, tmp_path: Path) -> None:
        """A corrupt config.json triggers a silent reset, not a crash."""
        config_path = tmp_path / "config.json"
        config_path.write_text("{ this is not valid json !!!", encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get("log_level") == "INFO"

    def test_non_dict_root_resets(self, tmp_path: Path) -> None:
        """A config.json whose root is not an object triggers a reset."""
        config_path = tmp_path / "config.json"
        config_path.write_text("[1, 2, 3]", encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get("require_network") is True

    def test_reset_preserves_new_file(self, tmp_path: Path) -> None:
        """After a corrupt-reset, the config file is valid JSON."""
        config_path = tmp_path / "config.json"
        config_path.write_text("GARBAGE", encoding="utf-8")
        ConfigManager(base_dir=tmp_path)
        loaded = json.loads(config_path.read_text(encoding="utf-8"))
        assert isinstance(loaded, dict)

    def test_partial_file_merged_with_defaults(self, tmp_path: Path) -> None:
        """Keys missing from an older config file fall back to defaults."""
        (tmp_path / "config.json").write_text('{"chunk_size": 1024}', encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get("chunk_size") == 1024
        assert cm.get("finish_max_attempts") == 5

    def test_corrupt_profiles_reset(self, tmp_path: Path) -> None:
        (tmp_path / "profiles.json").write_text("{}", encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get_profiles() == []


class TestGetSet:
    def test_set_persists_to_disk(self, tmp_path: Path) -> None:
        """set() writes the updated value to disk."""
        cm = ConfigManager(base_dir=tmp_path)
        cm.set("chunk_size", 65536)
        # Re-load from disk
        cm2 = ConfigManager(base_dir=tmp_path)
        assert cm2.get("chunk_size") == 65536

    def test_get_unknown_key_returns_default(self, tmp_config: ConfigManager) -> None:
        """get() returns the provided default for unknown keys."""
        assert tmp_config.get("nonexistent_key", "fallback") == "fallback"

    def test_get_unknown_key_returns_none_by_default(
        self, tmp_config: ConfigManager
    ) -> None:
        assert tmp_config.get("nonexistent_key") is None


class TestProfileRoundtrip:
    def test_save_and_retrieve_profile(self, tmp_config: ConfigManager) -> None:
        """A saved profile can be retrieved by name."""
        tmp_config.save_profile({"name": "media", "endpoint": ENDPOINT})
        retrieved = tmp_config.get_profile("media")
        assert retrieved is not None
        assert retrieved["endpoint"] == ENDPOINT

    def test_save_strips_token(self, tmp_config: ConfigManager) -> None:
        """Tokens are stripped from profiles before writing to disk."""
        tmp_config.save_profile({"name": "media", "endpoint": ENDPOINT, "token": "s3cret"})
        assert "token" not in tmp_config.get_profile("media")  # type: ignore[operator]
        assert "s3cret" not in (tmp_config.base_dir / "profiles.json").read_text(encoding="utf-8")

    def test_upsert_replaces_existing_profile(self, tmp_config: ConfigManager) -> None:
        """Saving a profile with an existing name replaces it."""
        tmp_config.save_profile({"name": "media", "endpoint": "https://a.example.com/"})
        tmp_config.save_profile({"name": "media", "endpoint": "https://b.example.com/"})
        assert tmp_config.get_profile("media")["endpoint"] == "https://b.example.com/"  # type: ignore[index]
        assert len(tmp_config.get_profiles()) == 1

    def test_save_profile_without_name_raises(self, tmp_config: ConfigManager) -> None:
        """save_profile raises ValueError if the profile has no name."""
        with pytest.raises(ValueError, match="non-empty 'name'"):
            tmp_config.save_profile({"endpoint": ENDPOINT})

    def test_profile_for_endpoint_ignores_trailing_slash(
        self, tmp_config: ConfigManager
    ) -> None:
        tmp_config.save_profile({"name": "media", "endpoint": ENDPOINT})
        assert tmp_config.profile_for_endpoint(ENDPOINT.rstrip("/"))["name"] == "media"  # type: ignore[index]
        assert tmp_config.profile_for_endpoint("https://elsewhere.example.com/") is None


class TestDeleteProfile:
    def test_delete_existing_profile(self, tmp_config: ConfigManager, mock_keyring) -> None:
        """delete_profile removes the profile, its token and returns True."""
        tmp_config.save_profile({"name": "ToDelete", "endpoint": ENDPOINT})
        result = tmp_config.delete_profile("ToDelete")
        assert result is True
        assert tmp_config.get_profile("ToDelete") is None
        mock_keyring.delete_password.assert_called_once_with("TusQueue", "ToDelete")

    def test_delete_nonexistent_returns_false(self, tmp_config: ConfigManager) -> None:
        """delete_profile returns False when the profile does not exist."""
        result = tmp_config.delete_profile("GhostProfile")
        assert result is False

    def test_delete_persists_to_disk(self, tmp_path: Path) -> None:
        """After deletion, a re-loaded ConfigManager does not see the profile."""
        cm = ConfigManager(base_dir=tmp_path)
        cm.save_profile({"name": "ToDelete", "endpoint": ENDPOINT})
        cm.delete_profile("ToDelete")
        cm2 = ConfigManager(base_dir=tmp_path)
        assert cm2.get_profile("ToDelete") is None

    def test_missing_token_is_tolerated(self, tmp_config: ConfigManager, mock_keyring) -> None:
        mock_keyring.delete_password.side_effect = PasswordDeleteError("not found")
        tmp_config.save_profile({"name": "media", "endpoint": ENDPOINT})
        assert tmp_config.delete_profile("media") is True


class TestHeaders:
    def test_bearer_header_for_known_endpoint(
        self, tmp_config: ConfigManager, mock_keyring
    ) -> None:
        tmp_config.save_profile({"name": "media", "endpoint": ENDPOINT})
        tmp_config.store_token("media", "s3cret")
        mock_keyring.set_password.assert_called_once_with("TusQueue", "media", "s3cret")

        mock_keyring.get_password.return_value = "s3cret"
        assert tmp_config.headers_for(ENDPOINT) == {"Authorization": "Bearer s3cret"}
        mock_keyring.get_password.assert_called_with("TusQueue", "media")

    def test_no_profile_no_headers(self, tmp_config: ConfigManager, mock_keyring) -> None:
        assert tmp_config.headers_for(ENDPOINT) == {}
        mock_keyring.get_password.assert_not_called()

    def test_profile_without_token(self, tmp_config: ConfigManager) -> None:
        tmp_config.save_profile({"name": "media", "endpoint": ENDPOINT})
        assert tmp_config.headers_for(ENDPOINT) == {}
