from dataclasses import FrozenInstanceError
from ipaddress import ip_network

import pytest

from settlement.config import SANDBOX_PROCESS_URL, load_settings
from settlement.errors import ConfigurationError


def test_load_settings_from_environment(monkeypatch):
    monkeypatch.setenv("PAYFAST_MERCHANT_ID", "10000100")
    monkeypatch.setenv("PAYFAST_MERCHANT_KEY", "46f0cd694581a")
    monkeypatch.setenv("PAYFAST_PASSPHRASE", "jt7NOE43FZPn")
    monkeypatch.setenv("PAYFAST_TRUSTED_NETWORKS", "197.97.145.144/28, 41.74.179.192/27")
    monkeypatch.setenv("TRUST_FORWARDED_FOR", "yes")
    monkeypatch.delenv("PAYFAST_PROCESS_URL", raising=False)

    settings = load_settings()

    assert settings.merchant_id == "10000100"
    assert settings.passphrase == "jt7NOE43FZPn"
    assert settings.process_url == SANDBOX_PROCESS_URL
    assert settings.trusted_networks == (ip_network("197.97.145.144/28"), ip_network("41.74.179.192/27"))
    assert settings.trust_forwarded_for is True


def test_missing_credentials_fail_fast(monkeypatch):
    monkeypatch.setenv("PAYFAST_MERCHANT_ID", "")
    monkeypatch.setenv("PAYFAST_MERCHANT_KEY", "")

    with pytest.raises(ConfigurationError):
        load_settings()
    assert load_settings(require_credentials=False).has_merchant_credentials is False


def test_bad_network(monkeypatch):
    monkeypatch.setenv("PAYFAST_TRUSTED_NETWORKS", "not-a-network")

    with pytest.raises(ConfigurationError):
        load_settings(require_credentials=False)


def test_settings_are_immutable(settings):
    with pytest.raises(FrozenInstanceError):
        settings.merchant_id = "other"
