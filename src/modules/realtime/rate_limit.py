"""Per-connection moving-window rate limiting for inbound socket events."""

import logging

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from src.config import settings

logger = logging.getLogger(__name__)

_NAMESPACE = "socket"


class ConnectionRateLimiter:
    """Counts events per connection id against a single ``limits`` rate string.

    A burst from one connection only throttles that connection; other
    devices of the same user keep their own window.
    """

    def __init__(self, limit: str | None = None) -> None:
        self.limit = limit or settings.socket_rate_limit
        self.item = parse(self.limit)
        self.storage = MemoryStorage()
        self.strategy = MovingWindowRateLimiter(self.storage)

    def hit(self, connection_id: str) -> bool:
        """Record one event. Returns False when the connection is over its limit."""
        allowed = self.strategy.hit(self.item, _NAMESPACE, connection_id)
        if not allowed:
            logger.warning("Connection %s exceeded socket rate limit %s", connection_id, self.limit)
        return allowed

    def remaining(self, connection_id: str) -> int:
        return self.strategy.get_window_stats(self.item, _NAMESPACE, connection_id).remaining

    def reset(self, connection_id: str) -> None:
        self.strategy.clear(self.item, _NAMESPACE, connection_id)
