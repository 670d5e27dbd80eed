"""Tests for configuration loading."""

import json

from sitemirror.config import (
    BypassConfig,
    CaptureConfig,
    MirrorConfig,
    Settings,
    VerificationConfig,
)


class TestSectionConfig:
    """Tests for the per-section dataclasses."""

    def test_backoff_grows_per_attempt(self):
        config = BypassConfig(backoff_base_seconds=2.0, backoff_multiplier=3.0)
        assert config.backoff_for(1) == 2.0
        assert config.backoff_for(3) == 18.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SITEMIRROR_BYPASS_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("SITEMIRROR_BYPASS_POLL_INTERVAL_SECONDS", "0.25")
        config = BypassConfig.from_env()
        assert config.max_attempts == 7
        assert config.poll_interval_seconds == 0.25

    def test_from_env_bool(self, monkeypatch):
        monkeypatch.setenv("SITEMIRROR_VERIFY_CHECK_SIMILARITY", "yes")
        assert VerificationConfig.from_env().check_similarity is True

    def test_invalid_env_value_is_ignored(self, monkeypatch, caplog):
        monkeypatch.setenv("SITEMIRROR_CAPTURE_ASSET_RETRIES", "many")
        config = CaptureConfig.from_env()
        assert config.asset_retries == CaptureConfig().asset_retries
        assert "SITEMIRROR_CAPTURE_ASSET_RETRIES" in caplog.text

    def test_from_file_section(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"capture": {"asset_retries": 9, "unknown": 1}}))
        config = CaptureConfig.from_file(str(path), section="capture")
        assert config.asset_retries == 9
        assert not hasattr(config, "unknown")

    def test_from_missing_file(self, tmp_path):
        assert CaptureConfig.from_file(str(tmp_path / "absent.json")) == CaptureConfig()


class TestMirrorConfig:
    """Tests for MirrorConfig.load."""

    def test_defaults(self):
        config = MirrorConfig.load()
        assert config.headless is True
        assert config.verification.certify_threshold == 95.0

    def test_environment_wins_over_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "headless": False,
            "output_dir": "from-file",
            "bypass": {"max_attempts": 4},
            "capture": {"asset_retries": 5},
        }))
        monkeypatch.setenv("SITEMIRROR_BYPASS_MAX_ATTEMPTS", "9")
        monkeypatch.setenv("SITEMIRROR_OUTPUT_DIR", "from-env")

        config = MirrorConfig.load(str(path))

        assert config.headless is False
        assert config.output_dir == "from-env"
        assert config.bypass.max_attempts == 9
        assert config.capture.asset_retries == 5
        assert isinstance(config.verification, VerificationConfig)

    def test_to_dict_nests_sections(self):
        data = MirrorConfig().to_dict()
        assert data["bypass"]["max_attempts"] == BypassConfig().max_attempts
        assert "certify_threshold" in data["verification"]


class TestSettings:
    """Tests for API-key settings."""

    def test_solver_config_from_keys(self, monkeypatch):
        settings = Settings()
        monkeypatch.setattr(settings, "TWOCAPTCHA_API_KEY", None)
        monkeypatch.setattr(settings, "CAPSOLVER_API_KEY", "cap-key")
        monkeypatch.setattr(settings, "ANTICAPTCHA_API_KEY", "anti-key")

        assert settings.solver_config() == {
            "capsolver": {"api_key": "cap-key", "priority": 1},
            "anticaptcha": {"api_key": "anti-key", "priority": 2},
        }
