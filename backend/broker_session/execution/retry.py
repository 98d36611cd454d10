import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from broker_session.broker.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ExhaustedRetriesError,
    PermanentBusinessError,
    TransientSessionError,
)
from broker_session.events.schemas import Session
from broker_session.security.audit_log import RETRIES_EXHAUSTED, audit
from broker_session.session.manager import SessionManager

logger = logging.getLogger("RetryController")

T = TypeVar("T")

UnitOfWork = Callable[[Session], Awaitable[T]]


@dataclass(frozen=True)
class RetryAttempt:
    operation: str
    attempts_remaining: int
    number: int


class RetryController:
    """
    The only place attempts are counted. A unit of work reports its outcome by
    returning (completed), raising TransientSessionError (invalidate the
    session, rerun the unit from its start) or raising PermanentBusinessError
    (stop now, whatever budget is left).

    Every attempt, the first included, is preceded by ensure_authenticated();
    a failed login there counts as a transient outcome consuming one attempt.
    """

    def __init__(self, sessions: SessionManager):
        self.sessions = sessions
        self.last_attempt: Optional[RetryAttempt] = None

    async def run_with_retry(
        self,
        max_attempts: int,
        unit_of_work: UnitOfWork,
        operation: str = "operation",
    ) -> T:
        if max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be at least 1 (got {max_attempts}).")

        attempts_remaining = max_attempts
        last_reason = "no attempt completed"

        while attempts_remaining > 0:
            attempt = RetryAttempt(
                operation=operation,
                attempts_remaining=attempts_remaining,
                number=max_attempts - attempts_remaining + 1,
            )
            self.last_attempt = attempt
            attempts_remaining -= 1

            try:
                session = await self.sessions.ensure_authenticated()
            except AuthenticationError as e:
                last_reason = e.reason
                logger.warning(
                    f"{operation}: login failed on attempt {attempt.number}/{max_attempts}: {e.reason}"
                )
                continue

            try:
                result = await unit_of_work(session)
            except TransientSessionError as e:
                last_reason = e.reason
                self.sessions.invalidate(e.reason)
                if attempts_remaining > 0:
                    logger.warning(
                        f"{operation}: transient failure on attempt {attempt.number}/{max_attempts} "
                        f"({e.reason}). Reconnecting and restarting from the beginning."
                    )
                continue
            except PermanentBusinessError as e:
                logger.error(f"{operation}: permanent failure on attempt {attempt.number}: {e.reason}")
                raise

            if attempt.number > 1:
                logger.info(f"{operation}: succeeded on attempt {attempt.number}/{max_attempts}")
            return result

        logger.error(f"{operation}: all {max_attempts} attempt(s) failed. Last error: {last_reason}")
        audit(RETRIES_EXHAUSTED, backend=self.sessions.backend.name, operation=operation,
              detail=last_reason, success=False, extra={"attempts": max_attempts})
        raise ExhaustedRetriesError(last_reason, max_attempts)
