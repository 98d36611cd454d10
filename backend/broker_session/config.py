"""
Broker Session Configuration
=============================
Settings for the session-and-retry layer, loaded from BROKER_* environment
variables (a local .env file is honoured via python-dotenv).

  BROKER_BACKEND            mobile | web                 (default mobile)
  BROKER_MAX_ATTEMPTS       end-to-end attempts per op   (default 3)
  BROKER_PRICE_DECIMALS     minor-unit precision         (default 2, whole cents)
  BROKER_REQUEST_TIMEOUT    seconds, owned by transport  (default 30)
  BROKER_DUMP_RESPONSES     log raw bodies at DEBUG      (default false)

Credentials are read separately by load_credentials() and are never part of
ClientSettings.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

from dotenv import load_dotenv

from broker_session.broker.exceptions import ConfigurationError
from broker_session.events.schemas import Credentials, LoginType

logger = logging.getLogger("BrokerConfig")

BACKEND_MOBILE = "mobile"
BACKEND_WEB    = "web"

# ── Endpoints ────────────────────────────────────────────────────────────────
MOBILE_API_URL    = "https://app.commsec.com.au/v5/services/service.svc/"
MOBILE_API_ORIGIN = "https://app.commsec.com.au"   # trading calls fail without an Origin header
WEB_PORTAL_URL    = "https://www2.commsec.com.au"


@dataclass
class ClientSettings:
    backend: str = BACKEND_MOBILE

    # Retry budget
    max_attempts: int = 3            # restart-from-scratch attempts per operation

    # Venue accepts whole cents only
    price_decimals: int = 2

    # Transport
    request_timeout: float = 30.0
    mobile_api_url: str = MOBILE_API_URL
    mobile_api_origin: str = MOBILE_API_ORIGIN
    web_portal_url: str = WEB_PORTAL_URL
    device_platform: str = "python"
    dump_responses: bool = False

    # History / order listing windows
    history_limit: int = 20          # same page size the mobile app uses
    recent_confirmations: int = 10   # web portal shows the last 10 by default
    order_lookback_days: int = 31    # one month, as the mobile app does

    def validate(self) -> "ClientSettings":
        if self.backend not in (BACKEND_MOBILE, BACKEND_WEB):
            raise ConfigurationError(f"Unknown backend '{self.backend}'. Use 'mobile' or 'web'.")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1.")
        if self.price_decimals < 0:
            raise ConfigurationError("price_decimals cannot be negative.")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive.")
        return self


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'.")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'.")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> ClientSettings:
    """Build settings from the environment. Raises ConfigurationError on bad values."""
    load_dotenv()
    settings = ClientSettings(
        backend             = os.getenv("BROKER_BACKEND", BACKEND_MOBILE).strip().lower(),
        max_attempts        = _env_int("BROKER_MAX_ATTEMPTS", 3),
        price_decimals      = _env_int("BROKER_PRICE_DECIMALS", 2),
        request_timeout     = _env_float("BROKER_REQUEST_TIMEOUT", 30.0),
        mobile_api_url      = os.getenv("BROKER_MOBILE_API_URL", MOBILE_API_URL),
        mobile_api_origin   = os.getenv("BROKER_MOBILE_API_ORIGIN", MOBILE_API_ORIGIN),
        web_portal_url      = os.getenv("BROKER_WEB_PORTAL_URL", WEB_PORTAL_URL),
        device_platform     = os.getenv("BROKER_DEVICE_PLATFORM", "python"),
        dump_responses      = _env_bool("BROKER_DUMP_RESPONSES", False),
        history_limit       = _env_int("BROKER_HISTORY_LIMIT", 20),
        recent_confirmations= _env_int("BROKER_RECENT_CONFIRMATIONS", 10),
        order_lookback_days = _env_int("BROKER_ORDER_LOOKBACK_DAYS", 31),
    )
    return settings.validate()


def load_credentials() -> Optional[Credentials]:
    """
    Credentials from BROKER_CLIENT_ID / BROKER_PASSWORD (+ optional
    BROKER_TRADING_PASSWORD, BROKER_DEVICE_ID, BROKER_LOGIN_TYPE).
    Returns None when the identity or secret is missing; connect() then fails
    with ConfigurationError instead of sending an empty login.
    """
    load_dotenv()
    identity = os.getenv("BROKER_CLIENT_ID", "")
    secret   = os.getenv("BROKER_PASSWORD", "")
    if not identity or not secret:
        logger.warning("BROKER_CLIENT_ID / BROKER_PASSWORD not set; no credentials loaded")
        return None

    login_type = os.getenv("BROKER_LOGIN_TYPE", LoginType.PASSWORD.value).strip().lower()
    try:
        login_type = LoginType(login_type)
    except ValueError:
        raise ConfigurationError(f"BROKER_LOGIN_TYPE must be 'password' or 'pin', got '{login_type}'.")

    return Credentials(
        identity       = identity,
        secret         = secret,
        trading_secret = os.getenv("BROKER_TRADING_PASSWORD") or None,
        device_id      = os.getenv("BROKER_DEVICE_ID") or None,
        login_type     = login_type,
    )


# ── Singleton ────────────────────────────────────────────────────────────────
_SETTINGS: Optional[ClientSettings] = None


def get_settings() -> ClientSettings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = load_settings()
    return _SETTINGS


def update_settings(**kwargs) -> ClientSettings:
    settings = get_settings()
    known = {f.name for f in fields(ClientSettings)}
    unknown = sorted(set(kwargs) - known)
    if unknown:
        raise ConfigurationError(f"Unknown setting(s): {', '.join(unknown)}.")
    for k, v in kwargs.items():
        setattr(settings, k, v)
    return settings.validate()
