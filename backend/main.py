import asyncio
import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.client import BrokerClient
from broker_session.config import get_settings, load_credentials
from broker_session.events.schemas import (
    Confirmation,
    Credentials,
    FormState,
    LoginResult,
    Order,
    StockQuote,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


class MockBroker(AbstractBrokerAPI):
    """A simulated broker so the lifecycle can be run without an account."""
    name = "mock"

    async def authenticate(self, session, credentials) -> LoginResult:
        logging.info(f"MockBroker authenticated client {credentials.identity}")
        return LoginResult(default_account="000000")

    async def initiate_order(self, session, side) -> FormState:
        return FormState(generation=session.generation, fields={"token": uuid.uuid4().hex})

    async def specify_order(self, session, ticket, form) -> FormState:
        logging.info(f"MockBroker validated {ticket.side.value} {ticket.quantity} x {ticket.stock} @ {ticket.limit_price}")
        return FormState(generation=session.generation, fields={"token": uuid.uuid4().hex})

    async def confirm_order(self, session, ticket, form, trading_secret):
        return f"M{uuid.uuid4().hex[:7].upper()}"

    async def get_quotes(self, session, hashes):
        return [StockQuote(code=code, last_price="25.37", volume="1,234,567", change_hash="h1")
                for code in hashes]

    async def open_history(self, session, query) -> FormState:
        return FormState(generation=session.generation, fields={"searchToken": "s1"})

    async def fetch_confirmations(self, session, query, context):
        yesterday = date.today() - timedelta(days=1)
        return [Confirmation(confirmation_id="C1", order_id="O1", trade_date=yesterday, is_buy=True,
                             stock="ANZ", units="1,000", approx_price="25.120", fee="19.95",
                             total="25139.95", settlement_date=date.today())]


async def demonstrate_lifecycle():
    credentials = load_credentials()
    if credentials is None:
        logging.info("No BROKER_CLIENT_ID / BROKER_PASSWORD set; running against MockBroker")
        client = BrokerClient(settings=get_settings(), backend=MockBroker(),
                              credentials=Credentials(identity="demo", secret="demo"))
    else:
        client = BrokerClient(settings=get_settings(), credentials=credentials)

    async with client:
        await client.connect()

        # 1. Quotes. Hashes from this poll ride along on the next one.
        quotes = await client.fill_quotes({code: StockQuote.blank(code) for code in ("ANZ", "CBA")})
        for q in quotes.values():
            logging.info(f"{q.code}: {q.last_price} (volume {q.volume})")

        # 2. Buy 1 ANZ at 95% of the last price; far enough off market to sit in the book.
        last = quotes["ANZ"].last_price or Decimal("1")
        order = Order(stock="ANZ", quantity=1, limit_price=last * Decimal("0.95"))
        await client.buy(order)
        if order.result_id:
            logging.info(f"--- SUCCESS: order reference {order.result_id} ---")
        else:
            logging.error(f"--- ORDER REJECTED: {order.error_reason} ---")

        # 3. What was actually traded recently.
        for c in await client.recent_confirmations(5):
            side = "BUY" if c.is_buy else "SELL"
            logging.info(f"{c.trade_date} {side} {c.units} x {c.stock} @ {c.approx_price} (order {c.order_id})")

        await client.logout()


if __name__ == "__main__":
    asyncio.run(demonstrate_lifecycle())
