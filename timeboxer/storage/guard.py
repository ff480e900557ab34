import logging
import time
import uuid
from contextlib import contextmanager
from typing import Iterator

import redis

from timeboxer.config.settings import get_settings
from timeboxer.models.errors import RecalculationInProgress

settings = get_settings()
logger = logging.getLogger(__name__)


class RecalculationGuard:
    """
    Serializes recalculations per scope, with state kept in redis so every
    worker process sees it.

    - ``hold``: one lease per scope (expires after ``lock_timeout_seconds``).
      With ``debounce=True`` a second request inside ``debounce_seconds`` of
      the last accepted one is rejected as well.
    - ``mark_pending`` / ``is_latest``: trailing debounce for automatic
      triggers; only the newest trigger of a burst goes on to recalculate.
    """

    def __init__(
        self,
        client=None,
        debounce_seconds: float = settings.recalc_debounce_seconds,
        lock_timeout_seconds: int = settings.recalc_lock_timeout_seconds,
    ):
        self.redis_client = client if client is not None else redis.from_url(settings.redis_url, decode_responses=True)
        self.debounce_seconds = debounce_seconds
        self.lock_timeout_seconds = lock_timeout_seconds

    @property
    def _debounce_ms(self) -> int:
        return max(1, int(self.debounce_seconds * 1000))

    @property
    def _lock_ms(self) -> int:
        return max(1, int(self.lock_timeout_seconds * 1000))

    @staticmethod
    def _key(kind: str, scope: str) -> str:
        return f"recalc:{kind}:{scope}"

    def _acquire(self, scope: str, token: str, blocking_timeout: float) -> bool:
        deadline = time.monotonic() + blocking_timeout
        while True:
            if self.redis_client.set(self._key("lock", scope), token, nx=True, px=self._lock_ms):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)

    @contextmanager
    def hold(self, scope: str = "default", debounce: bool = True, blocking_timeout: float = 0) -> Iterator[str]:
        """Run one recalculation for ``scope`` or raise RecalculationInProgress."""
        token = uuid.uuid4().hex
        if not self._acquire(scope, token, blocking_timeout):
            logger.info(f"Recalculation for {scope} already running")
            raise RecalculationInProgress(f"recalculation for {scope} is already running")
        if debounce and not self.redis_client.set(self._key("debounce", scope), token, nx=True, px=self._debounce_ms):
            self._release(scope, token)
            logger.info(f"Recalculation for {scope} debounced")
            raise RecalculationInProgress(f"recalculation for {scope} was just triggered")
        try:
            yield token
        finally:
            self._release(scope, token)

    def _release(self, scope: str, token: str) -> None:
        key = self._key("lock", scope)
        # The lease may have expired and been taken by someone else
        if self.redis_client.get(key) == token:
            self.redis_client.delete(key)

    def mark_pending(self, scope: str = "default") -> str:
        token = uuid.uuid4().hex
        ttl_ms = self._debounce_ms + self._lock_ms
        self.redis_client.set(self._key("pending", scope), token, px=ttl_ms)
        return token

    def is_latest(self, scope: str, token: str) -> bool:
        return self.redis_client.get(self._key("pending", scope)) == token

    def health_check(self) -> bool:
        """Check Redis connection."""
        try:
            self.redis_client.ping()
            return True
        except redis.RedisError:
            return False
