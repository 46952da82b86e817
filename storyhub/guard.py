import logging
from contextlib import asynccontextmanager
from typing import Hashable, Set

from .errors import DuplicateSubmissionError

logger = logging.getLogger(__name__)


class SubmitGuard:
    """Rejects a mutation while an identical one is still in flight.

    Keys are ``(action, resource_id, user_id)`` tuples. The store offers no
    idempotency key, so this is the only deduplication for double clicks
    and re-sent requests.
    """

    def __init__(self):
        self._in_flight: Set[Hashable] = set()

    def busy(self, key: Hashable) -> bool:
        return key in self._in_flight

    @asynccontextmanager
    async def hold(self, key: Hashable):
        if key in self._in_flight:
            logger.info("Rejected duplicate submission %s", key)
            raise DuplicateSubmissionError("This action is already in progress")
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)
