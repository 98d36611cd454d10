"""
Order Placement State Machine
==============================
  INITIATE --(load order form, obtain form-state token)--> SPECIFY
  SPECIFY  --(stock/qty/price + form-state token)--------> CONFIRM
  CONFIRM  --(trading secret + confirmation token)-------> DONE(id) | REJECTED(reason)

Restart from INITIATE is the only recovery path. A transient failure at any
step throws the whole attempt away, including its form-state tokens, and the
RetryController starts again from INITIATE after re-authenticating.

Residual risk: if a Confirm is applied by the server but its response is
lost, the restart can reach Confirm again and create a second real order.
There is no idempotency key on this platform; the exposure is bounded only
by the attempt budget.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Optional, Tuple, Union

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.broker.exceptions import (
    ConfigurationError,
    PermanentBusinessError,
    SessionExpiredError,
)
from broker_session.events.schemas import FormState, Order, OrderSide, OrderTicket, Session
from broker_session.execution.retry import RetryController
from broker_session.security.audit_log import ORDER_PLACED, ORDER_REJECTED, audit
from broker_session.session.manager import SessionManager

logger = logging.getLogger("OrderPlacementMachine")

NO_REFERENCE = "Trade error: No reference number was returned for this order"


class OrderState(str, Enum):
    INITIATE = "initiate"
    SPECIFY  = "specify"
    CONFIRM  = "confirm"
    DONE     = "done"
    REJECTED = "rejected"


def round_price(value: Union[Decimal, float, int, str], decimals: int = 2) -> Decimal:
    """
    Round half-up to the venue's minor unit: 1.005 -> 1.01, 19.995 -> 20.00.
    Floats are read through their shortest repr so binary noise does not
    turn a half into a bit-less-than-half.
    """
    if isinstance(value, float):
        value = repr(value)
    quantum = Decimal(1).scaleb(-decimals)
    return Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


class OrderPlacementMachine:
    """
    Drives one order through Initiate -> Specify -> Confirm.
    Use one instance per order; `transitions` records (attempt, state) pairs.
    """

    def __init__(
        self,
        backend: AbstractBrokerAPI,
        sessions: SessionManager,
        retry: RetryController,
        max_attempts: int = 3,
        price_decimals: int = 2,
    ):
        self.backend        = backend
        self.sessions       = sessions
        self.retry          = retry
        self.max_attempts   = max_attempts
        self.price_decimals = price_decimals
        self.state: Optional[OrderState] = None
        self.transitions: List[Tuple[int, OrderState]] = []
        self._attempt = 0

    async def place(self, order: Order, side: OrderSide) -> Order:
        """
        Resolves with the same order object: result_id set on success,
        error_reason set on a platform rejection. ExhaustedRetriesError is
        raised (order left open) when only transient failures were seen.
        """
        if order.is_terminal:
            raise ValueError(f"Order for {order.stock} has already been placed or rejected.")
        if self.backend.requires_trading_secret and self.sessions.trading_secret() is None:
            raise ConfigurationError("A trading password is required to place orders on this backend.")

        if order.quantity <= 0:
            return self._reject(order, side, "Trade error: Quantity must be a positive number of units")

        # Venue only accepts whole minor units
        if order.limit_price is not None:
            order.limit_price = round_price(order.limit_price, self.price_decimals)

        ticket = OrderTicket(
            side=side,
            stock=order.stock.strip().upper(),
            quantity=order.quantity,
            limit_price=order.limit_price,
            options=order.options,
        )
        price_desc = "at market" if ticket.is_at_market else f"@ {ticket.limit_price}"
        logger.info(f"Placing {side.value} order: {ticket.quantity} x {ticket.stock} {price_desc}")

        try:
            reference = await self.retry.run_with_retry(
                self.max_attempts,
                lambda session: self._run_once(session, ticket),
                operation=f"place_order:{side.value.lower()}",
            )
        except PermanentBusinessError as e:
            self._enter(OrderState.REJECTED)
            return self._reject(order, side, e.reason)

        order.mark_placed(reference)
        audit(ORDER_PLACED, backend=self.backend.name, operation="place_order",
              extra={"side": side.value, "stock": ticket.stock, "quantity": ticket.quantity,
                     "reference": reference})
        logger.info(f"Order reference is {reference}")
        return order

    async def _run_once(self, session: Session, ticket: OrderTicket) -> str:
        """One full pass of the wizard. Nothing from a previous pass is reused."""
        self._attempt += 1

        self._enter(OrderState.INITIATE)
        form = await self.backend.initiate_order(session, ticket.side)
        self._require_current(form, session)

        self._enter(OrderState.SPECIFY)
        confirm_form = await self.backend.specify_order(session, ticket, form)
        self._require_current(confirm_form, session)

        self._enter(OrderState.CONFIRM)
        reference = await self.backend.confirm_order(
            session, ticket, confirm_form, self.sessions.trading_secret()
        )
        if reference is None or not reference.strip():
            raise PermanentBusinessError(NO_REFERENCE)

        self._enter(OrderState.DONE)
        return reference.strip()

    def _enter(self, state: OrderState) -> None:
        self.state = state
        self.transitions.append((self._attempt, state))
        logger.debug(f"attempt {self._attempt}: {state.value}")

    def _require_current(self, form: FormState, session: Session) -> None:
        # Form tokens die with the session that issued them
        if form.generation != session.generation:
            raise SessionExpiredError("Form state belongs to an earlier session")

    def _reject(self, order: Order, side: OrderSide, reason: str) -> Order:
        order.mark_rejected(reason)
        audit(ORDER_REJECTED, backend=self.backend.name, operation="place_order",
              detail=reason, success=False, extra={"side": side.value, "stock": order.stock})
        logger.warning(f"Order for {order.stock} rejected: {reason}")
        return order
