from datetime import date
from decimal import Decimal

import pytest

from broker_session.broker.exceptions import (
    ExhaustedRetriesError,
    ResponseParseError,
    SessionExpiredError,
)
from broker_session.events.schemas import HistoryQuery, StockQuote
from broker_session.history.reader import HistoryReader
from broker_session.market_data.poller import MarketDataPoller

from conftest import make_confirmation


# ── MarketDataPoller ──────────────────────────────────────────────────────────

@pytest.fixture
def poller(broker, retry):
    return MarketDataPoller(broker, retry, max_attempts=3)


@pytest.mark.asyncio
async def test_absent_code_is_left_untouched(broker, poller):
    anz = StockQuote(code="ANZ", last_price="25.00", volume=100, change_hash="h1")
    quotes = {"ANZ": anz, "CBA": StockQuote.blank("CBA")}
    broker.script["get_quotes"] = [[
        StockQuote(code="CBA", last_price="101.50", volume="1,234,567", change_hash="h9"),
    ]]

    result = await poller.fill(quotes)

    assert result is quotes
    assert broker.quote_requests == [{"ANZ": "h1", "CBA": None}]
    assert quotes["ANZ"] is anz
    assert anz.last_price == Decimal("25.00")
    assert anz.change_hash == "h1"
    assert quotes["CBA"].last_price == Decimal("101.50")
    assert quotes["CBA"].volume == 1234567
    assert quotes["CBA"].change_hash == "h9"


@pytest.mark.asyncio
async def test_bid_and_offer_only_overwritten_when_present(broker, poller):
    quotes = {"ANZ": StockQuote(code="ANZ", bid="24.99", offer="25.01")}
    broker.script["get_quotes"] = [[StockQuote(code="ANZ", last_price="25.00", offer="25.02")]]

    await poller.fill(quotes)
    assert quotes["ANZ"].bid == Decimal("24.99")
    assert quotes["ANZ"].offer == Decimal("25.02")


@pytest.mark.asyncio
async def test_unrequested_codes_are_ignored(broker, poller):
    quotes = {"ANZ": StockQuote.blank("ANZ")}
    broker.script["get_quotes"] = [[StockQuote(code="XYZ", last_price="1.00")]]
    await poller.fill(quotes)
    assert list(quotes) == ["ANZ"]


@pytest.mark.asyncio
async def test_sensitive_announcement_flag_is_copied(broker, poller):
    quotes = {"BHP": StockQuote.blank("BHP")}
    broker.script["get_quotes"] = [[StockQuote(code="BHP", last_price="45.00", sensitive_announcement=True)]]
    await poller.fill(quotes)
    assert quotes["BHP"].sensitive_announcement


@pytest.mark.asyncio
async def test_transient_failure_keeps_no_partial_results(broker, poller):
    quotes = {"ANZ": StockQuote(code="ANZ", last_price="25.00", change_hash="h1")}
    broker.script["get_quotes"] = [SessionExpiredError("HTTP 403")] * 3

    with pytest.raises(ExhaustedRetriesError):
        await poller.fill(quotes)
    assert quotes["ANZ"].last_price == Decimal("25.00")
    assert len(broker.quote_requests) == 3


@pytest.mark.asyncio
async def test_empty_request_makes_no_call(broker, poller):
    assert await poller.poll({}) == {}
    assert broker.calls == []


# ── HistoryReader ─────────────────────────────────────────────────────────────

@pytest.fixture
def reader(broker, retry):
    return HistoryReader(broker, retry, max_attempts=3)


@pytest.mark.asyncio
async def test_history_is_idempotent(broker, reader):
    broker.confirmations = [
        make_confirmation("1", date(2026, 3, 2)),
        make_confirmation("2", date(2026, 3, 5), stock="CBA"),
    ]
    first = await reader.confirmations_in_range(date(2026, 3, 1), date(2026, 3, 31))
    second = await reader.confirmations_in_range(date(2026, 3, 1), date(2026, 3, 31))

    assert first == second
    assert [c.confirmation_id for c in first] == ["1", "2"]
    assert first[0].units == 1000
    assert first[0].approx_price == Decimal("25.120")


@pytest.mark.asyncio
async def test_empty_history_is_valid(reader):
    assert await reader.confirmations_in_range(date(2026, 3, 1), date(2026, 3, 31)) == []


@pytest.mark.asyncio
async def test_missing_table_is_permanent(broker, reader):
    broker.script["fetch_confirmations"] = [ResponseParseError("Cannot find confirmations table")]
    with pytest.raises(ResponseParseError):
        await reader.recent_confirmations(10)
    assert broker.count("open_history") == 1


@pytest.mark.asyncio
async def test_phase_two_failure_restarts_at_phase_one(broker, reader):
    broker.script["fetch_confirmations"] = [SessionExpiredError("HTTP 302")]
    broker.confirmations = [make_confirmation("1", date(2026, 3, 2))]

    rows = await reader.recent_confirmations(5)
    assert len(rows) == 1
    assert broker.count("open_history") == 2
    assert broker.count("authenticate") == 2


@pytest.mark.asyncio
async def test_recent_confirmations_are_limited(broker, reader):
    broker.confirmations = [make_confirmation(str(i), date(2026, 3, i + 1)) for i in range(12)]
    rows = await reader.recent_confirmations(10)
    assert len(rows) == 10


@pytest.mark.asyncio
async def test_inverted_range_is_rejected(broker, reader):
    with pytest.raises(ValueError):
        await reader.confirmations_in_range(date(2026, 3, 31), date(2026, 3, 1))
    assert broker.calls == []


def test_history_query_window_is_inclusive():
    query = HistoryQuery(date_from=date(2026, 3, 2), date_to=date(2026, 3, 4))
    kept = [d for d in range(1, 6) if query.matches(make_confirmation(str(d), date(2026, 3, d)))]
    assert kept == [2, 3, 4]
    assert not query.is_recent


def test_open_ended_history_query():
    since = HistoryQuery(date_from=date(2026, 3, 2))
    assert since.matches(make_confirmation("1", date(2030, 1, 1)))
    assert not since.matches(make_confirmation("2", date(2026, 3, 1)))
    assert not since.is_recent

    recent = HistoryQuery(limit=5)
    assert recent.is_recent
    assert recent.matches(make_confirmation("3", date(1999, 1, 1)))
