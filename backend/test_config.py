import json
import logging

import pytest

from broker_session.broker.exceptions import ConfigurationError
from broker_session.broker.mobile_api import MobileApiBroker
from broker_session.broker.transport import HttpTransport
from broker_session.broker.web_portal import WebPortalBroker
from broker_session.client import build_backend
from broker_session import config
from broker_session.config import ClientSettings, load_credentials, load_settings, update_settings
from broker_session.events.schemas import LoginType
from broker_session.security.audit_log import LOGIN_FAILED, audit

BROKER_ENV = [
    "BROKER_BACKEND", "BROKER_MAX_ATTEMPTS", "BROKER_PRICE_DECIMALS", "BROKER_REQUEST_TIMEOUT",
    "BROKER_CLIENT_ID", "BROKER_PASSWORD", "BROKER_TRADING_PASSWORD", "BROKER_DEVICE_ID",
    "BROKER_LOGIN_TYPE", "BROKER_DUMP_RESPONSES",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in BROKER_ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = load_settings()
    assert settings.backend == "mobile"
    assert settings.max_attempts == 3
    assert settings.price_decimals == 2
    assert settings.dump_responses is False


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("BROKER_BACKEND", "WEB")
    monkeypatch.setenv("BROKER_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("BROKER_REQUEST_TIMEOUT", "12.5")
    monkeypatch.setenv("BROKER_DUMP_RESPONSES", "yes")

    settings = load_settings()
    assert settings.backend == "web"
    assert settings.max_attempts == 5
    assert settings.request_timeout == 12.5
    assert settings.dump_responses is True


@pytest.mark.parametrize("name, value", [
    ("BROKER_MAX_ATTEMPTS", "three"),
    ("BROKER_MAX_ATTEMPTS", "0"),
    ("BROKER_BACKEND", "fax"),
    ("BROKER_REQUEST_TIMEOUT", "-1"),
])
def test_bad_settings_are_configuration_errors(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        load_settings()


def test_credentials_missing_returns_none():
    assert load_credentials() is None


def test_credentials_from_environment(monkeypatch):
    monkeypatch.setenv("BROKER_CLIENT_ID", "1234567")
    monkeypatch.setenv("BROKER_PASSWORD", "1111")
    monkeypatch.setenv("BROKER_TRADING_PASSWORD", "4321")
    monkeypatch.setenv("BROKER_LOGIN_TYPE", "PIN")

    creds = load_credentials()
    assert creds.identity == "1234567"
    assert creds.secret.get_secret_value() == "1111"
    assert creds.trading_secret.get_secret_value() == "4321"
    assert creds.login_type is LoginType.PIN
    assert creds.device_id is None


def test_unknown_login_type(monkeypatch):
    monkeypatch.setenv("BROKER_CLIENT_ID", "1234567")
    monkeypatch.setenv("BROKER_PASSWORD", "1111")
    monkeypatch.setenv("BROKER_LOGIN_TYPE", "fingerprint")
    with pytest.raises(ConfigurationError):
        load_credentials()


def test_build_backend_by_name():
    transport = HttpTransport()
    assert isinstance(build_backend(ClientSettings(backend="mobile"), transport), MobileApiBroker)
    assert isinstance(build_backend(ClientSettings(backend="web"), transport), WebPortalBroker)
    with pytest.raises(ConfigurationError):
        build_backend(ClientSettings(backend="fax"), transport)


def test_update_settings_changes_known_fields(monkeypatch):
    monkeypatch.setattr(config, "_SETTINGS", ClientSettings())
    settings = update_settings(max_attempts=5, backend="web")
    assert settings is config.get_settings()
    assert settings.max_attempts == 5
    assert settings.backend == "web"


def test_update_settings_rejects_unknown_keys(monkeypatch):
    monkeypatch.setattr(config, "_SETTINGS", ClientSettings())
    with pytest.raises(ConfigurationError) as exc_info:
        update_settings(max_atempts=5, bogus=1)
    assert exc_info.value.reason == "Unknown setting(s): bogus, max_atempts."
    # Nothing is applied when any key is unknown
    assert config.get_settings().max_attempts == 3


def test_audit_entry_is_json(caplog):
    logger = logging.getLogger("SessionAudit")
    logger.addHandler(caplog.handler)
    try:
        entry = audit(LOGIN_FAILED, backend="web", detail="Login rejected (HTTP 200)", success=False)
    finally:
        logger.removeHandler(caplog.handler)

    assert entry["event"] == "LOGIN_FAILED"
    assert entry["success"] is False
    logged = json.loads(caplog.records[-1].getMessage())
    assert logged["backend"] == "web"
    assert caplog.records[-1].levelno == logging.WARNING
