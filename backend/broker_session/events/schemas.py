from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


def _to_decimal(value):
    # floats go through str() so 1.005 stays 1.005 rather than 1.00499999...
    if value is None or isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        if isinstance(value, str):
            return Decimal(value.replace(",", "").strip())
        return Decimal(value)
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")


class LoginType(str, Enum):
    PASSWORD = "password"
    PIN = "pin"


class OrderSide(str, Enum):
    BUY = "Buy"
    SELL = "Sell"


class Credentials(BaseModel):
    """
    Opaque credential bag supplied once by the caller.
    Secrets are SecretStr so they never leak through repr() or logging.
    """
    identity: str
    secret: SecretStr
    trading_secret: Optional[SecretStr] = None
    device_id: Optional[str] = None
    login_type: LoginType = LoginType.PASSWORD


class TradingAccount(BaseModel):
    account_number: str
    name: str = ""
    is_default: bool = False
    operations: List[str] = Field(default_factory=list)


class LoginResult(BaseModel):
    """What a backend learned from one successful login exchange."""
    default_account: Optional[str] = None
    device_id: Optional[str] = None
    accounts: List[TradingAccount] = Field(default_factory=list)
    trading_password_enabled: bool = True


@dataclass
class Session:
    """
    Authentication state of one client instance.
    Only SessionManager flips `connected` or bumps `generation`; backends may
    rotate the request token through rotate_token().
    """
    connected: bool = False
    default_account: Optional[str] = None
    device_id: Optional[str] = None
    accounts: List[TradingAccount] = field(default_factory=list)
    request_token: Optional[str] = field(default=None, repr=False)
    generation: int = 0

    def rotate_token(self, token: Optional[str]) -> None:
        if token:
            self.request_token = token


class OrderOptions(BaseModel):
    """Rarely used order fields. Defaults match a plain good-for-day order."""
    expiry_date: Optional[date] = None          # None = good for day
    sponsored_settlement: bool = True           # False = issuer sponsored (needs srn)
    srn: Optional[str] = Field(default=None, repr=False)
    comment: str = ""


class Order(BaseModel):
    """
    Buy or sell request created by the caller and mutated in place while it is
    placed. Terminal once result_id or error_reason is set, never both.
    """
    stock: str
    quantity: int
    limit_price: Optional[Decimal] = None       # None = at market
    result_id: Optional[str] = None
    error_reason: Optional[str] = None
    options: OrderOptions = Field(default_factory=OrderOptions)

    @field_validator("limit_price", mode="before")
    @classmethod
    def _coerce_price(cls, value):
        return _to_decimal(value)

    @property
    def is_at_market(self) -> bool:
        return self.limit_price is None

    @property
    def is_terminal(self) -> bool:
        return self.result_id is not None or self.error_reason is not None

    def mark_placed(self, reference: str) -> None:
        if self.is_terminal:
            raise ValueError(f"Order for {self.stock} is already terminal")
        self.result_id = reference

    def mark_rejected(self, reason: str) -> None:
        if self.is_terminal:
            raise ValueError(f"Order for {self.stock} is already terminal")
        self.error_reason = reason


class OrderTicket(BaseModel):
    """Normalized order details submitted at the Specify step."""
    model_config = ConfigDict(frozen=True)

    side: OrderSide
    stock: str
    quantity: int
    limit_price: Optional[Decimal] = None
    options: OrderOptions = Field(default_factory=OrderOptions)

    @property
    def is_at_market(self) -> bool:
        return self.limit_price is None


class FormState(BaseModel):
    """
    Opaque per-session values echoed back on the next wizard step.
    Stamped with the session generation that produced them.
    """
    model_config = ConfigDict(frozen=True)

    generation: int
    fields: Dict[str, str] = Field(default_factory=dict, repr=False)


class StockQuote(BaseModel):
    code: str
    last_price: Optional[Decimal] = None
    volume: Optional[int] = None
    change_hash: Optional[str] = Field(default=None, repr=False)
    bid: Optional[Decimal] = None
    offer: Optional[Decimal] = None
    sensitive_announcement: bool = False

    @field_validator("last_price", "bid", "offer", mode="before")
    @classmethod
    def _coerce_prices(cls, value):
        if value in ("", None):
            return None
        return _to_decimal(value)

    @field_validator("volume", mode="before")
    @classmethod
    def _coerce_volume(cls, value):
        # Volumes arrive as "1,234,567" from both backends
        if value in ("", None):
            return None
        if isinstance(value, str):
            return int(value.replace(",", "").strip())
        return int(value)

    @classmethod
    def blank(cls, code: str) -> "StockQuote":
        return cls(code=code)


class Confirmation(BaseModel):
    """A confirmed trade (contract note). Read only."""
    model_config = ConfigDict(frozen=True)

    confirmation_id: str
    order_id: str
    trade_date: date
    is_buy: bool
    stock: str
    units: int
    approx_price: Decimal
    fee: Decimal
    total: Decimal
    settlement_date: date

    @field_validator("approx_price", "fee", "total", mode="before")
    @classmethod
    def _coerce_amounts(cls, value):
        return _to_decimal(value)

    @field_validator("units", mode="before")
    @classmethod
    def _coerce_units(cls, value):
        if isinstance(value, str):
            return int(value.replace(",", "").strip())
        return value


class HistoryQuery(BaseModel):
    """Filter for the second phase of a history read."""
    model_config = ConfigDict(frozen=True)

    date_from: Optional[date] = None
    date_to: Optional[date] = None
    limit: Optional[int] = None

    @property
    def is_recent(self) -> bool:
        """No date window: the most recent `limit` rows of the listing."""
        return self.date_from is None and self.date_to is None

    def matches(self, confirmation: Confirmation) -> bool:
        if self.date_from is not None and confirmation.trade_date < self.date_from:
            return False
        if self.date_to is not None and confirmation.trade_date > self.date_to:
            return False
        return True


class OrderRecord(BaseModel):
    """An order as listed by the platform, used for status lookups."""
    order_id: str
    stock: str
    is_buy: bool
    status: str
    units: int = 0
    units_filled: int = 0
    limit_price: Optional[Decimal] = None

    @field_validator("limit_price", mode="before")
    @classmethod
    def _coerce_price(cls, value):
        if value in ("", None):
            return None
        return _to_decimal(value)


class Holding(BaseModel):
    account_number: str
    entity_name: str = ""
    code: str
    available_units: int
    purchase_price: Optional[Decimal] = None

    @field_validator("purchase_price", mode="before")
    @classmethod
    def _coerce_price(cls, value):
        if value in ("", None):
            return None
        return _to_decimal(value)


class Watchlist(BaseModel):
    watchlist_id: str
    quotes: List[StockQuote] = Field(default_factory=list)
