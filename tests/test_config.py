"""
Unit tests for settings.
"""
import pytest
from pydantic import ValidationError

from boost_payments.config import Settings


class TestSettings:
    """Test suite for Settings."""

    @pytest.mark.unit
    def test_defaults(self) -> None:
        """Test the defaults keep verification on and use the documented limits."""
        settings = Settings(_env_file=None)

        assert settings.signature_test_mode is False
        assert settings.transaction_max_retries == 3
        assert settings.transaction_timeout_ms == 30000
        assert settings.idempotency_ttl_seconds == 86400
        assert settings.get_rate_limits() == {
            "boost_order": 5,
            "boost_payment": 10,
            "webhook": 100,
        }

    @pytest.mark.unit
    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test settings are read from the environment."""
        monkeypatch.setenv("RATE_LIMIT_WEBHOOK", "7")
        monkeypatch.setenv("BILLPLZ_XSIGN_KEY", "secret")

        settings = Settings(_env_file=None)

        assert settings.get_rate_limits()["webhook"] == 7
        assert settings.billplz_xsign_key == "secret"

    @pytest.mark.unit
    def test_postgres_url_converted(self) -> None:
        """Test plain postgresql URLs are switched to the asyncpg driver."""
        settings = Settings(_env_file=None, database_url="postgresql://u:p@db:5432/shop")
        assert settings.database_url == "postgresql+asyncpg://u:p@db:5432/shop"

    @pytest.mark.unit
    def test_log_level_normalized(self) -> None:
        """Test log levels are upper-cased and validated."""
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="chatty")

    @pytest.mark.unit
    def test_test_mode_refused_in_production(self) -> None:
        """Test the signature bypass cannot be enabled in production."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, app_env="production", signature_test_mode=True)

    @pytest.mark.unit
    def test_allowed_origins(self) -> None:
        """Test origins are split and trimmed."""
        settings = Settings(_env_file=None, allowed_origins="https://a.test, https://b.test")
        assert settings.get_allowed_origins_list() == ["https://a.test", "https://b.test"]
