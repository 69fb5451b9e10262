"""Tests for settings loading from config.ini and GWA_* variables."""

import pytest

from async_whatsapp_service.config_loader import load_settings, resolve_factory
from async_whatsapp_service.outbound import normalize_address

ENV_KEYS = (
    "GWA_CONFIG",
    "GWA_DB_PATH",
    "GWA_TRANSPORT_FACTORY",
    "GWA_SESSIONS_DIR",
    "GWA_DEFAULT_COUNTRY_CODE",
    "GWA_ADDRESS_SUFFIX",
    "GWA_WEBHOOK_TIMEOUT",
    "GWA_LOG_DELIVERY_ACTIVITY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(str(tmp_path / "absent.ini"))
    assert settings["db_path"] == "/data/whatsapp_service.db"
    assert settings["transport_factory"] is None
    assert settings["sessions_dir"] == "./sessions"
    assert settings["default_country_code"] == "+91"
    assert settings["address_suffix"] == "@c.us"
    assert settings["webhook_timeout"] == 10.0
    assert settings["log_delivery_activity"] is False


def test_config_file_overrides_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "gateway.ini"
    config_file.write_text(
        """
[storage]
db_path = ~/gateway.db

[transport]
factory =  tests.test_config_loader:make_transport

[delivery]
default_country_code = +1
webhook_timeout_seconds = 2.5

[logging]
delivery_activity = yes
"""
    )
    monkeypatch.setenv("GWA_DEFAULT_COUNTRY_CODE", "+44")
    monkeypatch.setenv("GWA_ADDRESS_SUFFIX", "@s.whatsapp.net")

    settings = load_settings(str(config_file))

    assert settings["db_path"].endswith("gateway.db")
    assert not settings["db_path"].startswith("~")
    assert settings["transport_factory"] == "tests.test_config_loader:make_transport"
    assert settings["default_country_code"] == "+1"
    assert settings["address_suffix"] == "@s.whatsapp.net"
    assert settings["webhook_timeout"] == 2.5
    assert settings["log_delivery_activity"] is True


def test_config_path_from_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "env.ini"
    config_file.write_text("[transport]\nsessions_dir = /var/lib/gwa\n")
    monkeypatch.setenv("GWA_CONFIG", str(config_file))
    assert load_settings()["sessions_dir"] == "/var/lib/gwa"


def test_resolve_factory_accepts_both_notations():
    assert resolve_factory("async_whatsapp_service.outbound:normalize_address") is normalize_address
    assert resolve_factory("async_whatsapp_service.outbound.normalize_address") is normalize_address


@pytest.mark.parametrize(
    "reference",
    [None, "", "nodots", "async_whatsapp_service.outbound:missing", "async_whatsapp_service.outbound:DEFAULT_COUNTRY_CODE"],
)
def test_resolve_factory_rejects_bad_references(reference):
    with pytest.raises(ValueError):
        resolve_factory(reference)
