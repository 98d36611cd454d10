import json
import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.broker.exceptions import (
    AuthenticationError,
    BrokerException,
    OrderRejectedError,
    PermanentBusinessError,
    ResponseParseError,
    SessionExpiredError,
    TransientSessionError,
)
from broker_session.broker.transport import HttpTransport, TransportRequest, TransportResponse
from broker_session.config import ClientSettings
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
    TradingAccount,
    Watchlist,
)

logger = logging.getLogger("MobileApiBroker")


class MobileApiBroker(AbstractBrokerAPI):
    """
    JSON RPC surface used by the broker's mobile app.

    POST bodies are {"data": "<json-encoded params>"}; GET parameters go in
    the query string. Every 200 response may carry a rotating requestToken
    that must be echoed on the next trading call. HTTP 403 means the session
    has been dropped server-side.
    """

    name = "mobile"

    def __init__(self, transport: HttpTransport, settings: ClientSettings):
        self.transport = transport
        self.settings  = settings
        self.base_url  = settings.mobile_api_url

    # ── Wire helpers ──────────────────────────────────────────────────────

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Origin": self.settings.mobile_api_origin,   # required for trades
        }

    async def _post(self, session: Session, service: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        request = TransportRequest(
            method="POST",
            url=self.base_url + service,
            json_body={"data": json.dumps(params)},
            headers=self._headers(),
        )
        return await self._call(session, service, request)

    async def _get(self, session: Session, service: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request = TransportRequest(
            method="GET",
            url=self.base_url + service,
            params={k: v for k, v in (params or {}).items() if v is not None},
            headers=self._headers(),
        )
        return await self._call(session, service, request)

    async def _call(self, session: Session, service: str, request: TransportRequest) -> Dict[str, Any]:
        response = await self.transport.exchange(request)
        payload = self._decode(response, service)
        logger.debug(f"{service}: HTTP {response.status_code}")

        if response.status_code == 200:
            if isinstance(payload, dict):
                session.rotate_token(payload.get("requestToken"))
                return payload
            if payload is None:
                return {}
            raise ResponseParseError(f"{service}: unexpected response shape")

        self._handle_response_errors(response, payload, service)
        return {}

    def _decode(self, response: TransportResponse, service: str) -> Any:
        if not response.is_json:
            return None
        try:
            return json.loads(response.body) if response.body else None
        except ValueError:
            if response.status_code == 200:
                raise ResponseParseError(f"{service}: response is not valid JSON")
            return None

    def _handle_response_errors(self, response: TransportResponse, payload: Any, service: str) -> None:
        """
        Translates HTTP errors into the transient/permanent taxonomy. Only the
        broker's own `message` is surfaced; bodies carry requestTokens and are
        never echoed.
        """
        if isinstance(payload, dict) and payload.get("message"):
            msg = f'Broker says: "{payload["message"]}"'
        else:
            msg = f"{service}: HTTP {response.status_code}"

        if response.status_code in (401, 403):
            # Probably got logged out
            raise SessionExpiredError(msg)
        if response.status_code >= 500:
            raise TransientSessionError(f"{service}: server error {response.status_code}. {msg}")
        raise PermanentBusinessError(msg)

    def _account(self, session: Session, account: Optional[str] = None) -> str:
        account = account or session.default_account
        if not account:
            raise PermanentBusinessError("No default trading account found, you will have to specify one.")
        return account

    # ── Session ───────────────────────────────────────────────────────────

    async def authenticate(self, session: Session, credentials: Credentials) -> LoginResult:
        params = {
            "devicePlatform": self.settings.device_platform,
            "clientId": credentials.identity,
            "deviceId": session.device_id or credentials.device_id,
            "loginType": credentials.login_type.value,
            "password": credentials.secret.get_secret_value(),
        }
        try:
            payload = await self._post(session, "login", params)
        except SessionExpiredError as e:
            raise AuthenticationError(f"Login not permitted: {e.reason}")
        except BrokerException as e:
            raise AuthenticationError(f"Unknown login error: {e.reason}")

        try:
            accounts = [
                TradingAccount(
                    account_number=str(a.get("accountNumber", "")),
                    name=a.get("name") or "",
                    is_default=bool(a.get("defaultTradingAccount")),
                    operations=list(a.get("mobileOperations") or []),
                )
                for a in payload.get("accounts") or []
            ]
            device_id = payload.get("deviceId")
            result = LoginResult(
                default_account=next((a.account_number for a in accounts if a.is_default), None),
                device_id=str(device_id) if device_id else None,
                accounts=accounts,
                trading_password_enabled=bool(payload.get("tradingPasswordEnabled", True)),
            )
        except (AttributeError, TypeError, ValidationError):
            raise AuthenticationError("Unknown login error: unreadable login response")

        if result.default_account is None:
            logger.info("No default trading account found, you will have to specify one.")
        return result

    async def logout(self, session: Session) -> None:
        await self._post(session, "logout", None)

    # ── Orders ────────────────────────────────────────────────────────────

    def _form(self, session: Session, payload: Dict[str, Any], step: str, **extra: str) -> FormState:
        token = payload.get("requestToken")
        if not token:
            # Empty body instead of the order pad: the session is gone
            raise SessionExpiredError(f"{step} did not return a request token")
        return FormState(generation=session.generation,
                         fields={"requestToken": str(token), **extra})

    def _ticket_params(self, session: Session, ticket: OrderTicket) -> Dict[str, Any]:
        options = ticket.options
        params: Dict[str, Any] = {
            "accountId": self._account(session),
            "stockCode": ticket.stock,
            "orderSide": ticket.side.value,
            "units": ticket.quantity,
            "expiry": options.expiry_date.isoformat() if options.expiry_date else "GoodForDay",
            "settlement": "Sponsored" if options.sponsored_settlement else "Issuer",
        }
        if ticket.is_at_market:
            params["priceType"] = "AtMarket"
        else:
            params["priceType"] = "Limit"
            params["limitPrice"] = str(ticket.limit_price)
        if options.srn:
            params["srn"] = options.srn
        if options.comment:
            params["comment"] = options.comment
        return params

    @staticmethod
    def _raise_for_order_errors(payload: Dict[str, Any], fallback: str) -> None:
        errors = payload.get("errors") or payload.get("validationMessages") or []
        if isinstance(errors, str):
            errors = [errors]
        messages = [e.get("message", "") if isinstance(e, dict) else str(e) for e in errors]
        if messages or payload.get("status") == "fail":
            raise OrderRejectedError.from_messages(messages, fallback)

    async def initiate_order(self, session: Session, side: OrderSide) -> FormState:
        payload = await self._get(session, "getorderpad", {
            "accountId": self._account(session),
            "orderSide": side.value,
        })
        return self._form(session, payload, "Order pad")

    async def specify_order(self, session: Session, ticket: OrderTicket, form: FormState) -> FormState:
        params = self._ticket_params(session, ticket)
        params["requestToken"] = form.fields.get("requestToken", "")
        payload = await self._post(session, "validateorder", params)
        self._raise_for_order_errors(payload, "Got an unexpected response while validating the order")
        return self._form(session, payload, "Order validation",
                          orderToken=str(payload.get("orderToken") or ""))

    async def confirm_order(
        self,
        session: Session,
        ticket: OrderTicket,
        form: FormState,
        trading_secret: Optional[str],
    ) -> Optional[str]:
        params = self._ticket_params(session, ticket)
        params["requestToken"] = form.fields.get("requestToken", "")
        params["orderToken"] = form.fields.get("orderToken", "")
        params["tradingPassword"] = trading_secret or ""
        payload = await self._post(session, "placeorder", params)
        self._raise_for_order_errors(payload, "Got an unexpected response while placing the order")
        reference = payload.get("orderNumber") or payload.get("orderId")
        return None if reference is None else str(reference)

    async def list_orders(self, session: Session, since: date, limit: int) -> List[OrderRecord]:
        stamp = int(datetime.combine(since, time.min, tzinfo=timezone.utc).timestamp())
        payload = await self._get(session, "getorders", {
            "accountNumber": self._account(session),
            "fromDateTimeStamp": stamp,
            "maxLength": limit,
        })
        if "orders" not in payload:
            raise ResponseParseError("getorders: no order list in response")
        try:
            return [
                OrderRecord(
                    order_id=str(o.get("orderNumber") or o.get("orderId")),
                    stock=o.get("code") or o.get("stockCode") or "",
                    is_buy=str(o.get("orderSide", o.get("side", ""))).lower().startswith("b"),
                    status=o.get("status") or "Unknown",
                    units=int(o.get("units") or 0),
                    units_filled=int(o.get("unitsFilled") or 0),
                    limit_price=o.get("limitPrice"),
                )
                for o in payload["orders"]
            ]
        except (AttributeError, TypeError, ValueError, ValidationError) as e:
            raise ResponseParseError(f"getorders: unreadable order entry ({type(e).__name__})")

    async def find_order(self, session: Session, order_id: str, since: date, limit: int) -> OrderRecord:
        for record in await self.list_orders(session, since, limit):
            if record.order_id == order_id:
                return record
        raise PermanentBusinessError(f"Unknown order reference {order_id}")

    async def cancel_order(self, session: Session, order_id: str, trading_secret: Optional[str]) -> bool:
        """Cancelling an already cancelled order still succeeds."""
        payload = await self._post(session, "cancelorder", {
            "accountId": self._account(session),
            "orderId": order_id,
            "requestToken": session.request_token,
            "tradingPassword": trading_secret or "",
        })
        if not payload.get("orderDidCancel") or payload.get("status") == "fail":
            raise OrderRejectedError(f"Order {order_id} was not cancelled")
        return True

    # ── Market data ───────────────────────────────────────────────────────

    async def get_quotes(self, session: Session, hashes: Dict[str, Optional[str]]) -> List[StockQuote]:
        payload = await self._post(session, "getStockInfos", {
            "enableHash": True,
            "stockCodesWithHash": hashes,
        })
        if "stockInfos" not in payload:
            raise ResponseParseError("getStockInfos: no stockInfos in response")
        return [self._quote(item) for item in payload["stockInfos"] or []]

    @staticmethod
    def _quote(item: Dict[str, Any]) -> StockQuote:
        try:
            return StockQuote(
                code=item["code"],
                last_price=item.get("lastPrice"),
                volume=item.get("volume"),
                change_hash=item.get("hash"),
                bid=item.get("bid"),
                offer=item.get("offer"),
                sensitive_announcement=bool(item.get("sensitiveAnnouncement", False)),
            )
        except (KeyError, TypeError, ValidationError):
            raise ResponseParseError("Quote entry is missing its code or has malformed numbers")

    async def get_watchlists(self, session: Session) -> List[Watchlist]:
        payload = await self._get(session, "watchlists")
        if "lists" not in payload:
            raise ResponseParseError("watchlists: no lists in response")
        try:
            return [
                Watchlist(watchlist_id=str(w.get("id")),
                          quotes=[self._quote(i) for i in w.get("items") or []])
                for w in payload["lists"]
            ]
        except (AttributeError, TypeError, ValidationError):
            raise ResponseParseError("watchlists: unreadable watchlist entry")

    async def get_holdings(self, session: Session, account: Optional[str]) -> List[Holding]:
        payload = await self._get(session, "getholdings", {"accountId": self._account(session, account)})
        if "entities" not in payload:
            raise ResponseParseError("getholdings: no entities in response")
        holdings = []
        try:
            for entity in payload["entities"]:
                for acct in entity.get("accounts") or []:
                    for h in acct.get("holdings") or []:
                        holdings.append(Holding(
                            account_number=str(acct.get("accountNumber", "")),
                            entity_name=acct.get("entityName") or entity.get("entityName") or "",
                            code=h["code"],
                            available_units=int(h.get("availableUnits") or 0),
                            purchase_price=h.get("purchasePrice"),
                        ))
        except (AttributeError, KeyError, TypeError, ValueError, ValidationError):
            raise ResponseParseError("getholdings: unreadable holding entry")
        return holdings

    # ── Confirmations ─────────────────────────────────────────────────────

    async def open_history(self, session: Session, query: HistoryQuery) -> FormState:
        payload = await self._get(session, "confirmationsearch", {"accountNumber": self._account(session)})
        token = payload.get("searchToken")
        if not token:
            raise SessionExpiredError("Confirmation search did not return a search token")
        return FormState(generation=session.generation, fields={"searchToken": str(token)})

    async def fetch_confirmations(
        self, session: Session, query: HistoryQuery, context: FormState
    ) -> List[Confirmation]:
        payload = await self._get(session, "getconfirmations", {
            "accountNumber": self._account(session),
            "searchToken": context.fields.get("searchToken"),
            "fromDate": query.date_from.isoformat() if query.date_from else None,
            "toDate": query.date_to.isoformat() if query.date_to else None,
            "maxLength": query.limit or self.settings.history_limit,
        })
        if "confirmations" not in payload:
            raise ResponseParseError("getconfirmations: no confirmations in response")
        try:
            rows = [
                Confirmation(
                    confirmation_id=str(c["confirmationNumber"]),
                    order_id=str(c["orderNumber"]),
                    trade_date=c["tradeDate"][:10],
                    is_buy=str(c.get("side", "")).upper().startswith("B"),
                    stock=c["code"],
                    units=c["units"],
                    approx_price=c["averagePrice"],
                    fee=c["brokerage"],
                    total=c["total"],
                    settlement_date=c["settlementDate"][:10],
                )
                for c in payload["confirmations"]
            ]
        except (KeyError, TypeError, ValidationError):
            raise ResponseParseError("getconfirmations: unreadable confirmation entry")
        return [r for r in rows if query.matches(r)]
