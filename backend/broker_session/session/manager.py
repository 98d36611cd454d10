import logging
from typing import Optional

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.broker.exceptions import (
    AuthenticationError,
    BrokerException,
    ConfigurationError,
)
from broker_session.events.schemas import Credentials, LoginResult, Session
from broker_session.security.audit_log import (
    LOGIN_FAILED,
    LOGIN_SUCCESS,
    LOGOUT,
    SESSION_INVALIDATED,
    audit,
)

logger = logging.getLogger("SessionManager")


class SessionManager:
    """
    Owns the authentication state of one client instance.

    Login is never retried here; whether to log in again is the
    RetryController's decision, and a failed login costs it one attempt.
    Concurrent operations that both observe connected=False will each log in;
    re-login is idempotent and is not coalesced.
    """

    def __init__(self, backend: AbstractBrokerAPI, credentials: Optional[Credentials] = None):
        self.backend      = backend
        self._credentials = credentials
        self.session      = Session()
        self.login_count  = 0
        self.last_login: Optional[LoginResult] = None

    @property
    def connected(self) -> bool:
        return self.session.connected

    @property
    def has_credentials(self) -> bool:
        return self._credentials is not None

    def trading_secret(self) -> Optional[str]:
        if self._credentials is None or self._credentials.trading_secret is None:
            return None
        return self._credentials.trading_secret.get_secret_value()

    async def ensure_authenticated(self) -> Session:
        """No-op when connected; never degrades a valid session."""
        if not self.session.connected:
            await self.connect()
        return self.session

    async def connect(self, credentials: Optional[Credentials] = None) -> LoginResult:
        """
        Always performs exactly one login exchange, even when already
        connected. Raises ConfigurationError without contacting the server
        when no credentials have been supplied.
        """
        if credentials is not None:
            self._credentials = credentials
        if self._credentials is None:
            raise ConfigurationError("Missing broker credentials!")

        logger.info(f"Logging in via {self.backend.name} backend")
        self.login_count += 1
        try:
            result = await self.backend.authenticate(self.session, self._credentials)
        except AuthenticationError as e:
            self.session.connected = False
            audit(LOGIN_FAILED, backend=self.backend.name, detail=e.reason, success=False)
            logger.warning(f"Login failed: {e.reason}")
            raise
        except BrokerException as e:
            self.session.connected = False
            audit(LOGIN_FAILED, backend=self.backend.name, detail=e.reason, success=False)
            logger.warning(f"Login failed: {e.reason}")
            raise AuthenticationError(f"Login failed: {e.reason}") from e

        self.session.connected   = True
        self.session.generation += 1
        self.session.accounts    = list(result.accounts)
        if result.default_account:
            self.session.default_account = result.default_account
        if result.device_id:
            if result.device_id != self.session.device_id:
                logger.info("New device ID allocated; store it with your credentials for future logins")
            self.session.device_id = result.device_id
        self.last_login = result

        audit(LOGIN_SUCCESS, backend=self.backend.name,
              extra={"generation": self.session.generation, "accounts": len(result.accounts)})
        logger.info(f"Logged in successfully (session generation {self.session.generation})")
        return result

    def invalidate(self, reason: str = "session marked stale") -> None:
        """Mark the session stale without contacting the server. Credentials are kept."""
        if self.session.connected:
            logger.info(f"Session invalidated: {reason}")
            audit(SESSION_INVALIDATED, backend=self.backend.name, detail=reason, success=False)
        self.session.connected = False

    async def logout(self) -> bool:
        """Best effort, single attempt. Returns False if the server could not be told."""
        ok = True
        try:
            await self.backend.logout(self.session)
        except BrokerException as e:
            ok = False
            logger.warning(f"Logout was not acknowledged: {e.reason}")
        self.session.connected = False
        self.session.request_token = None
        audit(LOGOUT, backend=self.backend.name, success=ok)
        return ok

    def set_default_account(self, account_number: str) -> None:
        """Only needed when one login holds several trading accounts."""
        self.session.default_account = account_number
