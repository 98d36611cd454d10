"""
Broker Client
=============
Caller-facing surface. Wires one transport, one backend, one SessionManager
and one RetryController together; every operation below runs its unit of
work through that RetryController.

    async with BrokerClient(credentials=load_credentials()) as client:
        await client.connect()
        quotes = await client.fill_quotes({"ANZ": StockQuote.blank("ANZ")})
        order  = await client.buy(Order(stock="ANZ", quantity=100, limit_price=25.10))
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.broker.exceptions import ConfigurationError
from broker_session.broker.mobile_api import MobileApiBroker
from broker_session.broker.transport import HttpTransport
from broker_session.broker.web_portal import WebPortalBroker
from broker_session.config import BACKEND_MOBILE, BACKEND_WEB, ClientSettings, get_settings
from broker_session.events.schemas import (
    Confirmation,
    Credentials,
    Holding,
    LoginResult,
    Order,
    OrderRecord,
    OrderSide,
    Session,
    StockQuote,
    Watchlist,
)
from broker_session.execution.order_machine import OrderPlacementMachine
from broker_session.execution.retry import RetryController
from broker_session.history.reader import HistoryReader
from broker_session.market_data.poller import MarketDataPoller
from broker_session.session.manager import SessionManager

logger = logging.getLogger("BrokerClient")


def build_backend(settings: ClientSettings, transport: HttpTransport) -> AbstractBrokerAPI:
    if settings.backend == BACKEND_MOBILE:
        return MobileApiBroker(transport, settings)
    if settings.backend == BACKEND_WEB:
        return WebPortalBroker(transport, settings)
    raise ConfigurationError(f"Unknown backend '{settings.backend}'. Use 'mobile' or 'web'.")


class BrokerClient:

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        credentials: Optional[Credentials] = None,
        transport: Optional[HttpTransport] = None,
        backend: Optional[AbstractBrokerAPI] = None,
    ):
        self.settings  = (settings or get_settings()).validate()
        self.transport = transport or HttpTransport(
            timeout=self.settings.request_timeout,
            dump_responses=self.settings.dump_responses,
        )
        self.backend  = backend or build_backend(self.settings, self.transport)
        self.sessions = SessionManager(self.backend, credentials)
        self.retry    = RetryController(self.sessions)
        self.poller   = MarketDataPoller(self.backend, self.retry, self.settings.max_attempts)
        self.history_reader = HistoryReader(self.backend, self.retry, self.settings.max_attempts)

    @property
    def session(self) -> Session:
        return self.sessions.session

    # ── Session ───────────────────────────────────────────────────────────

    async def connect(self, credentials: Optional[Credentials] = None) -> LoginResult:
        return await self.sessions.connect(credentials)

    async def ensure_authenticated(self) -> Session:
        return await self.sessions.ensure_authenticated()

    def set_default_account(self, account_number: str) -> None:
        self.sessions.set_default_account(account_number)

    async def logout(self) -> bool:
        return await self.sessions.logout()

    # ── Market data ───────────────────────────────────────────────────────

    async def fill_quotes(self, quotes: Dict[str, StockQuote]) -> Dict[str, StockQuote]:
        return await self.poller.fill(quotes)

    async def poll_quotes(self, hashes: Dict[str, Optional[str]]) -> Dict[str, StockQuote]:
        return await self.poller.poll(hashes)

    async def watchlists(self) -> List[Watchlist]:
        return await self.retry.run_with_retry(
            self.settings.max_attempts,
            lambda session: self.backend.get_watchlists(session),
            operation="watchlists",
        )

    # ── Orders ────────────────────────────────────────────────────────────

    async def place_order(self, order: Order, side: OrderSide) -> Order:
        # One machine per order so transitions never mix between orders
        machine = OrderPlacementMachine(
            self.backend,
            self.sessions,
            self.retry,
            max_attempts=self.settings.max_attempts,
            price_decimals=self.settings.price_decimals,
        )
        return await machine.place(order, side)

    async def buy(self, order: Order) -> Order:
        return await self.place_order(order, OrderSide.BUY)

    async def sell(self, order: Order) -> Order:
        return await self.place_order(order, OrderSide.SELL)

    def _lookback(self, date_from: Optional[date]) -> date:
        return date_from or date.today() - timedelta(days=self.settings.order_lookback_days)

    async def orders(self, date_from: Optional[date] = None, limit: Optional[int] = None) -> List[OrderRecord]:
        since = self._lookback(date_from)
        return await self.retry.run_with_retry(
            self.settings.max_attempts,
            lambda session: self.backend.list_orders(session, since, limit or self.settings.history_limit),
            operation="orders",
        )

    async def order_status(self, order_id: str) -> OrderRecord:
        since = self._lookback(None)
        return await self.retry.run_with_retry(
            self.settings.max_attempts,
            lambda session: self.backend.find_order(session, order_id, since, self.settings.history_limit),
            operation="order_status",
        )

    async def cancel_order(self, order_id: str) -> bool:
        if self.backend.requires_trading_secret and self.sessions.trading_secret() is None:
            raise ConfigurationError("A trading password is required to cancel orders on this backend.")
        return await self.retry.run_with_retry(
            self.settings.max_attempts,
            lambda session: self.backend.cancel_order(session, order_id, self.sessions.trading_secret()),
            operation="cancel_order",
        )

    # ── Portfolio ─────────────────────────────────────────────────────────

    async def holdings(self, account: Optional[str] = None) -> List[Holding]:
        return await self.retry.run_with_retry(
            self.settings.max_attempts,
            lambda session: self.backend.get_holdings(session, account),
            operation="holdings",
        )

    async def history(self, date_from: date, date_to: date) -> List[Confirmation]:
        return await self.history_reader.confirmations_in_range(date_from, date_to)

    async def recent_confirmations(self, limit: Optional[int] = None) -> List[Confirmation]:
        return await self.history_reader.recent_confirmations(limit or self.settings.recent_confirmations)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
