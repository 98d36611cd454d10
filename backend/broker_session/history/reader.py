import logging
from datetime import date
from typing import List

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.events.schemas import Confirmation, HistoryQuery
from broker_session.execution.retry import RetryController

logger = logging.getLogger("HistoryReader")


class HistoryReader:
    """
    Two-phase read of confirmed trades: fetch the listing context token, then
    request the filtered rows with it. Both phases share one retry invocation,
    so a failure in either restarts at phase one with a fresh token.
    """

    def __init__(self, backend: AbstractBrokerAPI, retry: RetryController, max_attempts: int = 3):
        self.backend      = backend
        self.retry        = retry
        self.max_attempts = max_attempts

    async def confirmations_in_range(self, date_from: date, date_to: date) -> List[Confirmation]:
        if date_from > date_to:
            raise ValueError(f"date_from {date_from} is after date_to {date_to}")
        query = HistoryQuery(date_from=date_from, date_to=date_to)
        return await self._read(query, "confirmations_in_range")

    async def recent_confirmations(self, limit: int = 10) -> List[Confirmation]:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        query = HistoryQuery(limit=limit)
        return await self._read(query, "recent_confirmations")

    async def _read(self, query: HistoryQuery, operation: str) -> List[Confirmation]:
        async def unit(session):
            context = await self.backend.open_history(session, query)
            return await self.backend.fetch_confirmations(session, query, context)

        rows = await self.retry.run_with_retry(self.max_attempts, unit, operation=operation)
        # Listings arrive newest first, so the head of the list is the most recent
        if query.limit is not None:
            rows = rows[:query.limit]
        logger.info(f"{operation}: {len(rows)} confirmation(s)")
        return rows

