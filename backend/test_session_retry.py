import asyncio

import pytest

from broker_session.broker.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ExhaustedRetriesError,
    OrderRejectedError,
    PermanentBusinessError,
    SessionExpiredError,
    TransportError,
)
from broker_session.events.schemas import Credentials, LoginResult, TradingAccount
from broker_session.execution.retry import RetryController
from broker_session.session.manager import SessionManager

from conftest import ScriptedBroker


# ── SessionManager ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ensure_authenticated_logs_in_once(broker, sessions):
    first = await sessions.ensure_authenticated()
    second = await sessions.ensure_authenticated()

    assert first is second
    assert broker.count("authenticate") == 1
    assert sessions.login_count == 1
    assert sessions.connected


@pytest.mark.asyncio
async def test_connect_stores_login_result(broker, sessions):
    broker.script["authenticate"] = [LoginResult(
        default_account="7654321",
        device_id="dev-9",
        accounts=[TradingAccount(account_number="7654321", name="J CITIZEN", is_default=True)],
    )]
    await sessions.connect()

    assert sessions.session.default_account == "7654321"
    assert sessions.session.device_id == "dev-9"
    assert sessions.session.generation == 1
    assert [a.account_number for a in sessions.session.accounts] == ["7654321"]


@pytest.mark.asyncio
async def test_connect_always_performs_one_exchange(broker, sessions):
    await sessions.connect()
    await sessions.connect()
    assert broker.count("authenticate") == 2
    assert sessions.session.generation == 2


@pytest.mark.asyncio
async def test_connect_without_credentials_never_contacts_server(broker):
    sessions = SessionManager(broker)
    with pytest.raises(ConfigurationError):
        await sessions.connect()
    assert broker.calls == []
    assert not sessions.connected


@pytest.mark.asyncio
async def test_connect_rejected_leaves_session_disconnected(broker, sessions, login_rejected):
    broker.script["authenticate"] = [login_rejected]
    with pytest.raises(AuthenticationError):
        await sessions.connect()
    assert not sessions.connected
    assert sessions.has_credentials


@pytest.mark.asyncio
async def test_transport_failure_during_login_is_authentication_error(broker, sessions):
    broker.script["authenticate"] = [TransportError("Transport failure (ConnectTimeout) talking to the broker")]
    with pytest.raises(AuthenticationError) as exc_info:
        await sessions.connect()
    assert "ConnectTimeout" in exc_info.value.reason
    assert not sessions.connected


@pytest.mark.asyncio
async def test_invalidate_keeps_credentials_and_forces_relogin(broker, sessions):
    await sessions.ensure_authenticated()
    sessions.invalidate("test")
    assert not sessions.connected
    assert sessions.has_credentials

    await sessions.ensure_authenticated()
    assert broker.count("authenticate") == 2


@pytest.mark.asyncio
async def test_logout_is_best_effort(broker, sessions):
    await sessions.ensure_authenticated()

    async def failing_logout(session):
        raise SessionExpiredError("already gone")

    broker.logout = failing_logout
    assert await sessions.logout() is False
    assert not sessions.connected


def test_credentials_never_show_secrets(credentials):
    text = repr(credentials) + str(credentials)
    assert "hunter2" not in text
    assert "4321" not in text


# ── RetryController ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_all_transient_exhausts_after_max_attempts(broker, sessions, retry):
    seen = []

    async def unit(session):
        seen.append(sessions.connected)
        raise SessionExpiredError("HTTP 403")

    with pytest.raises(ExhaustedRetriesError) as exc_info:
        await retry.run_with_retry(3, unit, operation="test")

    assert len(seen) == 3
    # Every attempt was preceded by a successful authentication check
    assert all(seen)
    assert broker.count("authenticate") == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.last_reason == "HTTP 403"


@pytest.mark.asyncio
async def test_permanent_on_attempt_k_stops(broker, retry):
    attempts = []

    async def unit(session):
        attempts.append(session.generation)
        if len(attempts) < 2:
            raise TransportError("timeout")
        raise OrderRejectedError("Trade error: Market closed")

    with pytest.raises(PermanentBusinessError):
        await retry.run_with_retry(5, unit)

    assert len(attempts) == 2
    assert broker.count("authenticate") == 2


@pytest.mark.asyncio
async def test_success_after_transient_returns_value(retry):
    outcomes = [SessionExpiredError("expired"), "done"]

    async def unit(session):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert await retry.run_with_retry(3, unit) == "done"
    assert retry.last_attempt.number == 2


@pytest.mark.asyncio
async def test_single_attempt_budget(broker, retry):
    calls = []

    async def unit(session):
        calls.append(1)
        raise SessionExpiredError("expired")

    with pytest.raises(ExhaustedRetriesError):
        await retry.run_with_retry(1, unit)
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("budget", [0, -1])
async def test_non_positive_budget_is_configuration_error(broker, retry, budget):
    async def unit(session):
        return "unreachable"

    with pytest.raises(ConfigurationError):
        await retry.run_with_retry(budget, unit)
    assert broker.calls == []


@pytest.mark.asyncio
async def test_failed_login_consumes_an_attempt(broker, retry, login_rejected):
    broker.script["authenticate"] = [login_rejected, login_rejected]
    calls = []

    async def unit(session):
        calls.append(session.generation)
        return "ok"

    assert await retry.run_with_retry(3, unit) == "ok"
    assert broker.count("authenticate") == 3
    assert calls == [1]


@pytest.mark.asyncio
async def test_login_never_succeeding_exhausts_with_login_reason(login_rejected):
    broker = ScriptedBroker()
    broker.script["authenticate"] = [login_rejected] * 3
    retry = RetryController(SessionManager(broker, Credentials(identity="x", secret="y")))

    async def unit(session):
        return "unreachable"

    with pytest.raises(ExhaustedRetriesError) as exc_info:
        await retry.run_with_retry(3, unit)
    assert exc_info.value.last_reason == login_rejected.reason


@pytest.mark.asyncio
async def test_configuration_error_is_never_retried(broker):
    retry = RetryController(SessionManager(broker))

    async def unit(session):
        return "unreachable"

    with pytest.raises(ConfigurationError):
        await retry.run_with_retry(3, unit)
    assert broker.count("authenticate") == 0


class YieldingLoginBroker(ScriptedBroker):
    """Login suspends once, so two operations can both see a disconnected session."""

    async def authenticate(self, session, credentials):
        await asyncio.sleep(0)
        return await super().authenticate(session, credentials)


@pytest.mark.asyncio
async def test_concurrent_operations_each_log_in(credentials):
    broker = YieldingLoginBroker()
    sessions = SessionManager(broker, credentials)
    retry = RetryController(sessions)

    async def unit(session):
        await asyncio.sleep(0)
        return session.generation

    first, second = await asyncio.gather(
        retry.run_with_retry(1, unit, operation="first"),
        retry.run_with_retry(1, unit, operation="second"),
    )

    # Re-login is not coalesced; both land on the newest session
    assert broker.count("authenticate") == 2
    assert sessions.login_count == 2
    assert sessions.connected
    assert first == second == 2
