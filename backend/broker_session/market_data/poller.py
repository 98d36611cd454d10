import logging
from typing import Dict, Optional

from broker_session.broker.base import AbstractBrokerAPI
from broker_session.events.schemas import StockQuote
from broker_session.execution.retry import RetryController

logger = logging.getLogger("MarketDataPoller")


class MarketDataPoller:
    """
    Refreshes quotes for a set of codes in one batched request.

    Each stored quote carries the change hash from the previous poll. The hash
    goes back with the next request; the platform omits codes that have not
    changed since, so an absent code means "unchanged", not "unknown".
    """

    def __init__(self, backend: AbstractBrokerAPI, retry: RetryController, max_attempts: int = 3):
        self.backend      = backend
        self.retry        = retry
        self.max_attempts = max_attempts

    async def poll(self, hashes: Dict[str, Optional[str]]) -> Dict[str, StockQuote]:
        """
        Raw differential poll: {code: last hash or None} in, changed quotes out.
        A transient failure restarts the whole batch; no partial results survive.
        """
        if not hashes:
            return {}
        request = dict(hashes)

        async def unit(session):
            return await self.backend.get_quotes(session, request)

        updates = await self.retry.run_with_retry(self.max_attempts, unit, operation="get_quotes")
        changed: Dict[str, StockQuote] = {}
        for update in updates:
            if update.code not in request:
                logger.debug(f"Ignoring quote for unrequested code {update.code}")
                continue
            changed[update.code] = update
        return changed

    async def fill(self, quotes: Dict[str, StockQuote]) -> Dict[str, StockQuote]:
        """
        Update the given quotes in place and return the same mapping.
        Codes missing from the response keep their previous price, volume and hash.
        """
        changed = await self.poll({code: q.change_hash for code, q in quotes.items()})

        for code, update in changed.items():
            quote = quotes[code]
            quote.last_price  = update.last_price
            quote.volume      = update.volume
            quote.change_hash = update.change_hash
            if update.bid is not None:
                quote.bid = update.bid
            if update.offer is not None:
                quote.offer = update.offer
            quote.sensitive_announcement = update.sensitive_announcement
            if update.sensitive_announcement:
                logger.warning(f"{code} has a price-sensitive announcement")

        logger.info(f"Quotes refreshed: {len(changed)} changed, {len(quotes) - len(changed)} unchanged")
        return quotes
