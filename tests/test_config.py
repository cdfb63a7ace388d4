"""Tests for configuration validation."""

import pytest
from pydantic import ValidationError

from epc_reconciler.utils.config import Settings


class TestConfigValidation:
    """Test configuration validation."""

    def test_defaults_load_without_environment(self, monkeypatch):
        """Test that every setting has a working default."""
        for name in (
            "REGISTER_BASE_URL",
            "HOUSE_PRICES_BASE_URL",
            "HTTP_TIMEOUT_SECONDS",
            "LOG_LEVEL",
            "DATABASE_URL",
            "NOTIFY_WEBHOOK_URL",
        ):
            monkeypatch.delenv(name, raising=False)

        config = Settings(_env_file=None)

        assert config.register_base_url == "https://find-energy-certificate.service.gov.uk"
        assert config.house_prices_base_url == "https://www.rightmove.co.uk"
        assert config.register_parse_timeout_seconds == 20.0
        assert config.ocr_timeout_seconds == 30.0
        assert config.log_level == "INFO"

    def test_environment_overrides(self, mock_env):
        """Test that values are read from the environment."""
        config = Settings(_env_file=None)

        assert config.register_base_url == "https://register.example"
        assert config.log_level == "DEBUG"

    def test_empty_base_url_rejected(self):
        """Test that empty upstream hosts are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            Settings(register_base_url="  ", _env_file=None)

        assert "register_base_url" in str(exc_info.value).lower()

    def test_non_http_base_url_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(house_prices_base_url="ftp://prices.example", _env_file=None)

        assert "house_prices_base_url" in str(exc_info.value).lower()

    def test_trailing_slash_stripped(self):
        config = Settings(register_base_url=" https://register.example/ ", _env_file=None)

        assert config.register_base_url == "https://register.example"

    def test_invalid_database_url_rejected(self):
        """Test that non-PostgreSQL URLs are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            Settings(database_url="mysql://localhost/test", _env_file=None)

        assert "postgresql" in str(exc_info.value).lower()

    def test_blank_database_url_is_none(self):
        config = Settings(database_url="   ", _env_file=None)

        assert config.database_url is None

    def test_whitespace_trimmed(self):
        """Test that whitespace is trimmed from values."""
        config = Settings(
            database_url="  postgresql://localhost/test  ",
            notify_webhook_url="  https://hooks.example/epc  ",
            _env_file=None,
        )

        assert config.database_url == "postgresql://localhost/test"
        assert config.notify_webhook_url == "https://hooks.example/epc"

    def test_invalid_webhook_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(notify_webhook_url="hooks.example/epc", _env_file=None)

        assert "notify_webhook_url" in str(exc_info.value).lower()

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(ocr_timeout_seconds=0, _env_file=None)

        assert "ocr_timeout_seconds" in str(exc_info.value).lower()

    def test_log_level_normalised(self):
        config = Settings(log_level=" warning ", _env_file=None)

        assert config.log_level == "WARNING"

    def test_unknown_log_level_rejected(self):
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD", _env_file=None)
