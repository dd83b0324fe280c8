"""Tests for settings and provider credentials."""

from dataclasses import replace

import pytest

from billing_engine.config import EnkapCredentials, S3PCredentials, Settings, get_settings
from billing_engine.errors import ConfigurationError


class TestCredentials:
    """Credential bundles validate themselves."""

    def test_s3p_requires_token_and_secret(self):
        with pytest.raises(ConfigurationError, match="S3P_ACCESS_TOKEN"):
            S3PCredentials(base_url="https://s3p.test/v2", access_token="tok", access_secret="")

    def test_s3p_timeout_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            S3PCredentials(
                base_url="https://s3p.test/v2", access_token="tok", access_secret="sec", timeout_seconds=0
            )

    def test_enkap_requires_key_and_secret(self):
        with pytest.raises(ConfigurationError, match="ENKAP_CONSUMER_KEY"):
            EnkapCredentials(
                token_url="https://enkap.test/token",
                api_base_url="https://enkap.test/api",
                consumer_key="",
                consumer_secret="secret",
            )

    def test_enkap_defaults(self):
        credentials = EnkapCredentials(
            token_url="https://enkap.test/token",
            api_base_url="https://enkap.test/api",
            consumer_key="key",
            consumer_secret="secret",
        )
        assert credentials.refresh_margin_seconds == 300
        assert credentials.timeout_seconds == 45.0


class TestSettings:
    """Environment-backed settings."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("APP_URL", "https://billing.example.cm/")
        monkeypatch.setenv("S3P_ACCESS_TOKEN", "tok")
        monkeypatch.setenv("S3P_ACCESS_SECRET", "sec")
        monkeypatch.setenv("POLL_MAX_ATTEMPTS", "10")

        settings = Settings.from_env()

        assert settings.app_url == "https://billing.example.cm"
        assert settings.s3p_callback_url == "https://billing.example.cm/api/v1/webhooks/s3p"
        assert settings.enkap_notification_url == "https://billing.example.cm/api/v1/webhooks/enkap"
        assert settings.poll_max_attempts == 10
        assert settings.s3p_credentials().access_token == "tok"

    def test_incomplete_provider_credentials(self):
        settings = replace(get_settings(), enkap_consumer_key="", enkap_consumer_secret="")
        with pytest.raises(ConfigurationError):
            settings.enkap_credentials()
