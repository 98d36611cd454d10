"""
Shared fixtures: a scripted in-memory backend standing in for the broker.
"""
from datetime import date
from typing import Dict, List

import pytest

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.broker.exceptions import AuthenticationError
from broker_session.config import ClientSettings
from broker_session.events.schemas import Confirmation, Credentials, FormState, LoginResult
from broker_session.execution.retry import RetryController
from broker_session.session.manager import SessionManager


class ScriptedBroker(AbstractBrokerAPI):
    """
    Each method pops its next outcome from `script[method]`: an exception is
    raised, anything else is returned. An empty script means the default
    happy-path answer.
    """
    name = "scripted"

    def __init__(self, requires_trading_secret: bool = False):
        self.requires_trading_secret = requires_trading_secret
        self.script: Dict[str, list] = {}
        self.calls: List[str] = []
        self.submitted_forms: List[tuple] = []
        self.quote_requests: List[dict] = []
        self.confirmations: List[Confirmation] = []

    def _next(self, method, default):
        self.calls.append(method)
        queue = self.script.get(method)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return default

    async def authenticate(self, session, credentials):
        return self._next("authenticate", LoginResult(default_account="1234567", device_id="dev-1"))

    async def initiate_order(self, session, side):
        return self._next("initiate_order",
                          FormState(generation=session.generation, fields={"token": f"init-{session.generation}"}))

    async def specify_order(self, session, ticket, form):
        self.submitted_forms.append(("specify_order", session.generation, form))
        return self._next("specify_order",
                          FormState(generation=session.generation, fields={"token": f"spec-{session.generation}"}))

    async def confirm_order(self, session, ticket, form, trading_secret):
        self.submitted_forms.append(("confirm_order", session.generation, form))
        return self._next("confirm_order", "AB123")

    async def get_quotes(self, session, hashes):
        self.quote_requests.append(dict(hashes))
        return self._next("get_quotes", [])

    async def open_history(self, session, query):
        return self._next("open_history",
                          FormState(generation=session.generation, fields={"searchToken": "s1"}))

    async def fetch_confirmations(self, session, query, context):
        return self._next("fetch_confirmations", list(self.confirmations))

    def count(self, method: str) -> int:
        return self.calls.count(method)


def make_confirmation(conf_id: str, trade_date: date, stock: str = "ANZ") -> Confirmation:
    return Confirmation(
        confirmation_id=conf_id,
        order_id=f"O{conf_id}",
        trade_date=trade_date,
        is_buy=True,
        stock=stock,
        units="1,000",
        approx_price="25.120",
        fee="19.95",
        total="25139.95",
        settlement_date=trade_date,
    )


@pytest.fixture
def credentials():
    return Credentials(identity="1234567", secret="hunter2", trading_secret="4321")


@pytest.fixture
def broker():
    return ScriptedBroker()


@pytest.fixture
def sessions(broker, credentials):
    return SessionManager(broker, credentials)


@pytest.fixture
def retry(sessions):
    return RetryController(sessions)


@pytest.fixture
def settings():
    return ClientSettings()


@pytest.fixture
def login_rejected():
    return AuthenticationError("Login rejected (HTTP 200)")
