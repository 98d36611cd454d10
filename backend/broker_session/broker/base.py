import abc
from datetime import date
from typing import Dict, List, Optional

from broker_session.broker.exceptions import UnsupportedOperationError
from broker_session.events.schemas import (
    Confirmation,
    Credentials,
    FormState,
    Holding,
    HistoryQuery,
    LoginResult,
    OrderRecord,
    OrderSide,
    OrderTicket,
    Session,
    StockQuote,
    Watchlist,
)


class AbstractBrokerAPI(abc.ABC):
    """
    Backend-agnostic capability interface: authenticate, place order (three
    steps), get quotes, get history. The scraped web portal and the JSON
    mobile API each implement it; retry and state-machine logic never looks
    behind it.

    Implementations only CLASSIFY failures by raising TransientSessionError
    or PermanentBusinessError subclasses. They never retry and never flip
    session.connected themselves.
    """

    name: str = "abstract"

    # Confirm cannot be submitted without the trading password on this backend.
    requires_trading_secret: bool = False

    @abc.abstractmethod
    async def authenticate(self, session: Session, credentials: Credentials) -> LoginResult:
        """One login exchange. Raises AuthenticationError on any rejection."""
        pass

    async def logout(self, session: Session) -> None:
        """Single best-effort attempt. Default: nothing to tell the server."""
        return None

    # ── Order placement wizard ─────────────────────────────────────────────

    @abc.abstractmethod
    async def initiate_order(self, session: Session, side: OrderSide) -> FormState:
        """Load the order form and return the form-state token for Specify."""
        pass

    @abc.abstractmethod
    async def specify_order(self, session: Session, ticket: OrderTicket, form: FormState) -> FormState:
        """Submit stock/quantity/price; returns the confirmation token for Confirm."""
        pass

    @abc.abstractmethod
    async def confirm_order(
        self,
        session: Session,
        ticket: OrderTicket,
        form: FormState,
        trading_secret: Optional[str],
    ) -> Optional[str]:
        """
        Submit the trading password. Returns the server-issued reference
        exactly as found (possibly empty); the caller decides what an empty
        reference means. The only step that can create a real order.
        """
        pass

    # ── Market data ───────────────────────────────────────────────────────

    @abc.abstractmethod
    async def get_quotes(self, session: Session, hashes: Dict[str, Optional[str]]) -> List[StockQuote]:
        """
        One batched request for every code. Codes whose hash still matches are
        omitted from the result.
        """
        pass

    # ── Confirmations ─────────────────────────────────────────────────────

    @abc.abstractmethod
    async def open_history(self, session: Session, query: HistoryQuery) -> FormState:
        """Phase one: fetch the listing context token."""
        pass

    @abc.abstractmethod
    async def fetch_confirmations(
        self, session: Session, query: HistoryQuery, context: FormState
    ) -> List[Confirmation]:
        """
        Phase two: filtered result set. Raises ResponseParseError when the
        result container is absent; an empty list means no trades.
        """
        pass

    # ── Optional capabilities ─────────────────────────────────────────────

    async def find_order(self, session: Session, order_id: str, since: date, limit: int) -> OrderRecord:
        raise UnsupportedOperationError(f"The {self.name} backend does not provide order status.")

    async def list_orders(self, session: Session, since: date, limit: int) -> List[OrderRecord]:
        raise UnsupportedOperationError(f"The {self.name} backend does not provide order listings.")

    async def cancel_order(self, session: Session, order_id: str, trading_secret: Optional[str]) -> bool:
        raise UnsupportedOperationError(f"The {self.name} backend does not provide order cancellation.")

    async def get_holdings(self, session: Session, account: Optional[str]) -> List[Holding]:
        raise UnsupportedOperationError(f"The {self.name} backend does not provide holdings.")

    async def get_watchlists(self, session: Session) -> List[Watchlist]:
        raise UnsupportedOperationError(f"The {self.name} backend does not provide watchlists.")
