"""Tests for service API key validation."""

import pytest

from assistant_gateway.auth import CredentialValidator, caller_key, validate_service_api_key


class TestValidateServiceApiKey:
    """validate_service_api_key reading SERVICE_API_KEY from the environment."""

    @pytest.fixture(autouse=True)
    def service_key(self, monkeypatch):
        monkeypatch.setenv("SERVICE_API_KEY", "secret123")

    def test_matching_key(self):
        assert validate_service_api_key("secret123") is True

    def test_missing_key(self):
        assert validate_service_api_key(None) is False
        assert validate_service_api_key("") is False

    def test_wrong_key(self):
        assert validate_service_api_key("wrong") is False
        assert validate_service_api_key("secret1234") is False
        assert validate_service_api_key("SECRET123") is False

    def test_closed_when_secret_unset(self, monkeypatch):
        monkeypatch.delenv("SERVICE_API_KEY")
        assert validate_service_api_key("secret123") is False
        assert validate_service_api_key(None) is False

    def test_empty_secret_counts_as_unset(self, monkeypatch):
        monkeypatch.setenv("SERVICE_API_KEY", "")
        assert validate_service_api_key("") is False


class TestCredentialValidator:
    """CredentialValidator holding an explicit secret."""

    def test_validate(self):
        validator = CredentialValidator("s3cr3t")
        assert validator.configured is True
        assert validator.validate("s3cr3t") is True
        assert validator.validate("nope") is False
        assert validator.validate(None) is False

    def test_unconfigured_rejects_everything(self):
        validator = CredentialValidator(None)
        assert validator.configured is False
        assert validator.validate("anything") is False

    def test_non_ascii_key(self):
        validator = CredentialValidator("clé-secrète")
        assert validator.validate("clé-secrète") is True
        assert validator.validate("cle-secrete") is False


def test_caller_key_is_stable_and_opaque():
    assert caller_key("secret123") == caller_key("secret123")
    assert caller_key("secret123") != caller_key("secret124")
    assert "secret123" not in caller_key("secret123")
    assert len(caller_key("secret123")) == 32
