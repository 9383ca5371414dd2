from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from .errors import RateLimited
from .logs import get_logger, sanitize_log_value


logger = get_logger("ratelimit")


def key_subject(api_key: str) -> str:
    return f"key:{api_key}"


def ip_subject(scope: str, ip: str) -> str:
    return f"{scope}:{ip or 'unknown'}"


class RateLimiter:
    """Moving-window gate consulted before mutating operations.

    A rejected call is not recorded, so callers that back off regain capacity
    as soon as earlier hits leave the window.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        *,
        namespace: str = "pastehost",
        storage_uri: str = "memory://",
    ) -> None:
        self.item = RateLimitItemPerSecond(max(int(limit), 1), max(int(window_seconds), 1))
        self.namespace = namespace
        self.storage = storage_from_string(storage_uri)
        self._strategy = MovingWindowRateLimiter(self.storage)

    def hit_allowed(self, subject: str) -> bool:
        return self._strategy.hit(self.item, self.namespace, subject)

    def allow(self, subject: str) -> None:
        if not self.hit_allowed(subject):
            logger.warning(
                "rate_limited namespace=%s subject=%s",
                self.namespace,
                sanitize_log_value(subject),
            )
            raise RateLimited("Rate limit exceeded")

    def remaining(self, subject: str) -> int:
        stats = self._strategy.get_window_stats(self.item, self.namespace, subject)
        return int(stats[1])

    def reset(self) -> None:
        self.storage.reset()
