"""
Web Portal Backend
===================
Scrapes the broker's server-rendered ASP.NET pages.

Order placement is three requests against the same PlaceOrder.aspx page:
  1. GET the page for its __VIEWSTATE. Without it the portal complains that
     the brokerage amount and advice type are missing; those values are
     validated server-side and cannot be supplied as ordinary form fields.
  2. POST the order details with that state. Success is a page carrying the
     trading-password box plus fresh hidden state.
  3. POST the trading password; success is a page with the order reference.

Warnings on step 2/3 (e.g. "an order for this stock is already in the
market") are treated as errors.
"""

import json
import logging
import re
from datetime import date
from typing import Dict, List, Optional

from bs4 import BeautifulSoup
from pydantic import ValidationError

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.broker.exceptions import (
    AuthenticationError,
    OrderRejectedError,
    PermanentBusinessError,
    ResponseParseError,
    SessionExpiredError,
    TransportError,
)
from broker_session.broker.transport import HttpTransport, TransportRequest, TransportResponse
from broker_session.config import ClientSettings
from broker_session.events.schemas import (
    Confirmation,
    Credentials,
    FormState,
    HistoryQuery,
    LoginResult,
    OrderRecord,
    OrderSide,
    OrderTicket,
    Session,
    StockQuote,
)

logger = logging.getLogger("WebPortalBroker")

LOGIN_PATH         = "/Public/HomePage/Login.aspx"
MARKET_DATA_PATH   = "/Private/Watchlist/Watchlists.asmx/GetMarketData"
PLACE_ORDER_PATH   = "/Private/EquityTrading/AustralianShares/PlaceOrder.aspx"
CONFIRMATIONS_PATH = "/Private/MyPortfolio/Confirmations/Confirmations.aspx"

# ── PlaceOrder.aspx control names ─────────────────────────────────────────────
_OV = "ctl00$BodyPlaceHolder$OrderView1$ctl02$"
F_LIMIT_PRICE   = _OV + "txtOrderStyleLimitPrice$field"
F_AT_MARKET     = _OV + "cbOrderStyleAtMarket$field"
F_STOCK         = _OV + "ucSecuritySearch$txtSmartSearch$Input"
F_UNITS         = _OV + "txtQuantityUnits$field"
F_VALUE         = _OV + "txtQuantityValue$field"
F_GOOD_FOR_DAY  = _OV + "cbExpiryGoodForDay$field"
F_GOOD_UNTIL    = _OV + "txtExpiryGoodUntil$field"
F_SRN           = _OV + "txtSRN$field"
F_COMMENT       = _OV + "txtConfirmationComment$field"
F_PREVIEW       = _OV + "btnPreview$implementation$field"
F_IS_ML_ACCOUNT = _OV + "hidIsMLAccount"
F_TRADING_PWD   = _OV + "ucOrderSpecification$tradingPwd$tradingPwdCGTextBox$field"
F_SUBMIT_TARGET = _OV + "ucOrderSpecification$btnSubmitOrder$implementation$field"
F_HIDDEN_0      = "ctl00$BodyPlaceHolder$OrderView1$ctl00"
F_HIDDEN_1      = "ctl00$BodyPlaceHolder$OrderView1$ctl01"

ID_TRADING_PWD  = "ctl00_BodyPlaceHolder_OrderView1_ctl02_ucOrderSpecification_tradingPwd_tradingPwdCGTextBox_field"
ID_PREVIEW_BTN  = "ctl00_BodyPlaceHolder_OrderView1_ctl02_btnPreview_implementation_field"
ID_REFERENCE    = "ctl00_BodyPlaceHolder_OrderView1_ctl02_lblReferenceNo"
SEL_STEP2_ERRORS = "#ctl00_BodyPlaceHolder_OrderView1_ctl02_mpMessage ul li.error"
SEL_STEP3_ERRORS = "ul.AbbreviatedInfoPanel li"

# ── Confirmations.aspx control names ──────────────────────────────────────────
_CV = "ctl00$BodyPlaceHolder$ConfirmationsView1$"
F_CONF_BUY   = _CV + "chbxBuy$field"
F_CONF_SELL  = _CV + "chbxSell$field"
F_CONF_FROM  = _CV + "calendarFrom$field"
F_CONF_TO    = _CV + "calendarTo$field"
F_CONF_ALL   = _CV + "gdvwConfirmationDetails_Underlying$TopPagerRow$btnAll$implementation"
ID_CONF_TABLE = "ctl00_BodyPlaceHolder_ConfirmationsView1_gdvwConfirmationDetails_Underlying"

_DMY_RE = re.compile(r"^\s*(\d{1,2})/(\d{1,2})/(\d{4})\s*$")


def parse_dmy(text: str) -> date:
    """'d/mm/yyyy' -> date."""
    m = _DMY_RE.match(text or "")
    if not m:
        raise ValueError(f"not a d/m/yyyy date: {text!r}")
    day, month, year = (int(g) for g in m.groups())
    return date(year, month, day)


def format_dmy(d: date) -> str:
    """date -> 'd/m/yyyy' (no zero padding, as the portal's calendars expect)."""
    return f"{d.day}/{d.month}/{d.year}"


def repair_json(bad_json: str) -> str:
    """
    Market data arrives as a JavaScript object literal (unquoted keys, single
    quotes). Rewrite it into JSON instead of evaluating it. Colons inside
    string values are masked first so the key-quoting pass cannot touch them.
    """
    def _mask(m):
        return ': "' + m.group(1).replace(":", "@colon@") + '"'

    fixed = re.sub(r':\s*"([^"]*)"', _mask, bad_json)
    fixed = re.sub(r":\s*'([^']*)'", _mask, fixed)
    fixed = re.sub(r"(['\"])?([a-z0-9A-Z_]+)(['\"])?\s*:", r'"\2": ', fixed)
    return fixed.replace("@colon@", ":")


class WebPortalBroker(AbstractBrokerAPI):
    """Scraped multi-page forms. The cookie jar held by the transport is the session."""

    name = "web"
    requires_trading_secret = True

    def __init__(self, transport: HttpTransport, settings: ClientSettings):
        self.transport = transport
        self.settings  = settings
        self.base_url  = settings.web_portal_url.rstrip("/")

    def _url(self, path: str) -> str:
        return self.base_url + path

    def _check(self, response: TransportResponse, step: str) -> BeautifulSoup:
        """Any non-200 on a private page means the portal bounced us to the login page."""
        if response.status_code != 200:
            raise SessionExpiredError(
                f"{step}: server returned {response.status_code}, session seems to have expired"
            )
        return BeautifulSoup(response.body, "html.parser")

    @staticmethod
    def _input_value(soup: BeautifulSoup, name: str) -> Optional[str]:
        tag = soup.find("input", attrs={"name": name})
        if tag is None:
            return None
        return tag.get("value", "")

    # ── Session ───────────────────────────────────────────────────────────

    async def authenticate(self, session: Session, credentials: Credentials) -> LoginResult:
        # Start from an empty jar so no half-dead session cookies ride along
        self.transport.clear_cookies()
        request = TransportRequest(
            method="POST",
            url=self._url(LOGIN_PATH),
            form={
                "ctl00$cpContent$txtLogin": credentials.identity,
                "ctl00$cpContent$txtPassword": credentials.secret.get_secret_value(),
                "ctl00$cpContent$btnLogin": "",
                "__EVENTTARGET": "",
            },
        )
        try:
            response = await self.transport.exchange(request)
        except TransportError as e:
            raise AuthenticationError(f"Login failed: {e.reason}")

        # A successful login redirects to the private area
        if response.status_code != 302:
            raise AuthenticationError(f"Login rejected (HTTP {response.status_code})")
        logger.debug(f"Login accepted, {len(self.transport.cookies)} session cookie(s) set")
        return LoginResult()

    async def logout(self, session: Session) -> None:
        self.transport.clear_cookies()

    # ── Market data ───────────────────────────────────────────────────────

    async def get_quotes(self, session: Session, hashes: Dict[str, Optional[str]]) -> List[StockQuote]:
        # The portal has no change hashes: every requested code comes back each time
        request = TransportRequest(
            method="POST",
            url=self._url(MARKET_DATA_PATH),
            json_body={"stockCodes": ";".join(hashes), "properties": "Equities"},
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        response = await self.transport.exchange(request)
        if response.status_code != 200:
            raise SessionExpiredError(
                f"Market data: server returned {response.status_code}, session seems to have expired"
            )
        try:
            wrapper = json.loads(response.body)
            data = json.loads(repair_json(wrapper["d"]))
            price_data = data[0]["PriceData"]
            if not isinstance(price_data, dict):
                raise TypeError("PriceData is not an object")
        except (ValueError, KeyError, IndexError, TypeError):
            raise ResponseParseError("Market data response could not be parsed")

        quotes = []
        for code, item in price_data.items():
            try:
                quotes.append(StockQuote(
                    code=code,
                    last_price=item.get("Last"),
                    volume=item.get("Volume"),
                    bid=item.get("Bid"),
                    offer=item.get("Offer"),
                    sensitive_announcement=str(item.get("SensitiveAnnouncement", "False")) != "False",
                ))
            except (AttributeError, ValidationError):
                raise ResponseParseError(f"Market data for {code} has malformed numbers")
        return quotes

    # ── Orders ────────────────────────────────────────────────────────────

    async def initiate_order(self, session: Session, side: OrderSide) -> FormState:
        response = await self.transport.exchange(
            TransportRequest(method="GET", url=self._url(PLACE_ORDER_PATH))
        )
        soup = self._check(response, "Order step 1")
        viewstate = self._input_value(soup, "__VIEWSTATE")
        if viewstate is None:
            # A 200 without the order form is the login page in disguise
            raise SessionExpiredError("Order step 1: order form not found, session seems to have expired")
        return FormState(generation=session.generation, fields={"__VIEWSTATE": viewstate})

    def _order_form(self, ticket: OrderTicket, form: FormState) -> Dict[str, str]:
        options = ticket.options
        postdata = {
            F_LIMIT_PRICE: "" if ticket.is_at_market else str(ticket.limit_price),
            "OrderType": f"{_OV}rboOrder{ticket.side.value}$field",
            F_STOCK: ticket.stock,
            F_UNITS: str(ticket.quantity),
            F_VALUE: "",
            F_SRN: options.srn or "",
            F_COMMENT: options.comment,
            F_PREVIEW: "Proceed",
            F_IS_ML_ACCOUNT: "False",
            "ctl00$ucSecuritySearch$txtOptionParent$field": "",
            "ctl00$ucSecuritySearch$ddlExpiryMonth$field": "0",
            "ctl00$ucSecuritySearch$ddlExpiryYear$field": str(date.today().year),
            "ctl00$ucSecuritySearch$ddlOptionStrat$field": "Both",
            "ctl00$ucSecuritySearch$ddlOptionExercise$field": "A",
            "__EVENTTARGET": "",
            "__VIEWSTATE": form.fields.get("__VIEWSTATE", ""),
        }
        if ticket.is_at_market:
            postdata[F_AT_MARKET] = "on"
        if options.expiry_date is None:
            postdata[F_GOOD_FOR_DAY] = "on"
        else:
            postdata[F_GOOD_UNTIL] = format_dmy(options.expiry_date)
        if ticket.side is OrderSide.BUY:
            postdata["Settlement"] = _OV + ("rdoSponsored$field" if options.sponsored_settlement
                                            else "rdoIssuer$field")
        return postdata

    async def specify_order(self, session: Session, ticket: OrderTicket, form: FormState) -> FormState:
        response = await self.transport.exchange(TransportRequest(
            method="POST",
            url=self._url(PLACE_ORDER_PATH),
            form=self._order_form(ticket, form),
        ))
        soup = self._check(response, "Order step 2")

        if soup.find(id=ID_TRADING_PWD) is None:
            # No trading password box: the portal sent the form back with errors
            errors = [li.find("a").get_text(strip=True) if li.find("a") else li.get_text(strip=True)
                      for li in soup.select(SEL_STEP2_ERRORS)]
            logger.warning(f"Order step 2 returned {len(errors)} error(s) for {ticket.stock}")
            raise OrderRejectedError.from_messages(errors, "Got an unexpected response to step 2")

        return FormState(generation=session.generation, fields={
            F_HIDDEN_0: self._input_value(soup, F_HIDDEN_0) or "",
            F_HIDDEN_1: self._input_value(soup, F_HIDDEN_1) or "",
            "__VIEWSTATE": self._input_value(soup, "__VIEWSTATE") or "",
        })

    async def confirm_order(
        self,
        session: Session,
        ticket: OrderTicket,
        form: FormState,
        trading_secret: Optional[str],
    ) -> Optional[str]:
        postdata = dict(form.fields)
        postdata[F_TRADING_PWD] = trading_secret or ""
        postdata["__EVENTTARGET"] = F_SUBMIT_TARGET
        response = await self.transport.exchange(TransportRequest(
            method="POST",
            url=self._url(PLACE_ORDER_PATH),
            form=postdata,
        ))
        soup = self._check(response, "Order step 3")

        errors = soup.select(SEL_STEP3_ERRORS)
        if soup.find(id=ID_PREVIEW_BTN) is not None or errors:
            # Got the step 2 page back again
            messages = [li.find("h4").get_text(strip=True) if li.find("h4") else li.get_text(strip=True)
                        for li in errors]
            raise OrderRejectedError.from_messages(messages, "Got an unexpected response to step 3")

        ref = soup.find(id=ID_REFERENCE)
        if ref is None:
            raise OrderRejectedError("Trade error: Did not get a reference number for this order")
        return ref.get_text(strip=True)

    async def find_order(self, session: Session, order_id: str, since: date, limit: int) -> OrderRecord:
        # The portal has no order book page; an order is only visible once confirmed
        query = HistoryQuery(date_from=since, date_to=date.today())
        context = await self.open_history(session, query)
        for c in await self.fetch_confirmations(session, query, context):
            if c.order_id == order_id:
                return OrderRecord(order_id=c.order_id, stock=c.stock, is_buy=c.is_buy,
                                   status="Confirmed", units=c.units, units_filled=c.units)
        raise PermanentBusinessError(f"No confirmation found for order {order_id}")

    # ── Confirmations ─────────────────────────────────────────────────────

    async def open_history(self, session: Session, query: HistoryQuery) -> FormState:
        response = await self.transport.exchange(
            TransportRequest(method="GET", url=self._url(CONFIRMATIONS_PATH))
        )
        soup = self._check(response, "Confirmations listing")
        viewstate = self._input_value(soup, "__VIEWSTATE")
        if viewstate is None:
            raise SessionExpiredError("Confirmations listing: page state not found, session seems to have expired")
        fields = {"__VIEWSTATE": viewstate}
        if query.is_recent:
            # The listing page already shows the latest confirmations, newest first
            table = soup.find(id=ID_CONF_TABLE)
            fields["listing"] = str(table) if table is not None else ""
        return FormState(generation=session.generation, fields=fields)

    async def fetch_confirmations(
        self, session: Session, query: HistoryQuery, context: FormState
    ) -> List[Confirmation]:
        if query.is_recent:
            listing = BeautifulSoup(context.fields.get("listing", ""), "html.parser")
            return scrape_confirmations(listing)

        response = await self.transport.exchange(TransportRequest(
            method="POST",
            url=self._url(CONFIRMATIONS_PATH),
            form={
                F_CONF_BUY: "on",
                F_CONF_SELL: "on",
                F_CONF_FROM: format_dmy(query.date_from) if query.date_from else "",
                F_CONF_TO: format_dmy(query.date_to) if query.date_to else "",
                "__VIEWSTATE": context.fields.get("__VIEWSTATE", ""),
                "__EVENTTARGET": F_CONF_ALL,
            },
        ))
        soup = self._check(response, "Confirmations search")
        return scrape_confirmations(soup)


def scrape_confirmations(soup: BeautifulSoup) -> List[Confirmation]:
    """
    Rows of the confirmations grid. Columns: confirmation id, order id, trade
    date, B/S, stock, units, average price (3dp), brokerage, total, settlement.
    """
    table = soup.find(id=ID_CONF_TABLE)
    if table is None:
        raise ResponseParseError("Cannot find confirmations table")

    data = []
    for row in table.find_all("tr"):
        classes = row.get("class") or []
        if "GridRow" not in classes and "GridAlternateRow" not in classes:
            continue
        cells = row.find_all("td", recursive=False)
        try:
            code = cells[4].select_one("span.StockCode")
            data.append(Confirmation(
                confirmation_id=cells[0].get_text(strip=True),
                order_id=cells[1].get_text(strip=True),
                trade_date=parse_dmy(cells[2].get_text(strip=True)),
                is_buy=cells[3].get_text(strip=True) == "B",
                stock=(code or cells[4]).get_text(strip=True),
                units=cells[5].get_text(strip=True),
                approx_price=cells[6].get_text(strip=True),
                fee=cells[7].get_text(strip=True),
                total=cells[8].get_text(strip=True),
                settlement_date=parse_dmy(cells[9].get_text(strip=True)),
            ))
        except (IndexError, ValueError, ValidationError):
            raise ResponseParseError("Confirmations table has an unreadable row")
    return data
