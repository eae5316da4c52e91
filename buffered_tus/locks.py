"""Redis-backed named locks.

A lock is a ``SET NX PX`` key holding a random token; release is an atomic
compare-and-delete so a holder whose lock already expired can never delete a lock
that another caller has since acquired.
"""

import asyncio
import logging
import socket
import time
import uuid
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import TypeVar

import redis.asyncio as async_redis

from buffered_tus.errors import LockTimeout
from buffered_tus.monitoring import get_metrics_collector


logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_PREFIX = "buffered_tus:locks:"

_RELEASE_SCRIPT = "if redis.call('GET', KEYS[1]) == ARGV[1] then return redis.call('DEL', KEYS[1]) else return 0 end"


class RedisLockService:
    def __init__(
        self,
        redis_client: async_redis.Redis,
        *,
        retry_delay_ms: int = 100,
        prefix: str = LOCK_PREFIX,
    ) -> None:
        if retry_delay_ms <= 0:
            raise ValueError("retry_delay_ms must be greater than zero")
        self.redis_client = redis_client
        self.retry_delay = retry_delay_ms / 1000.0
        self.prefix = prefix
        self.hostname = socket.gethostname()

    def _lock_key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    async def try_acquire(self, name: str, duration_seconds: float) -> Optional[str]:
        """Acquire a lock once without waiting. Returns the holder token or None."""
        if not name or not name.strip():
            raise ValueError("lock name is required")
        if duration_seconds <= 0:
            raise ValueError("lock duration must be greater than zero")

        token = f"{self.hostname}:{uuid.uuid4().hex}"
        ok = await self.redis_client.set(
            self._lock_key(name.strip()), token, nx=True, px=max(1, int(duration_seconds * 1000))
        )
        if ok:
            logger.debug(f"Lock '{name}' acquired by {self.hostname} for {duration_seconds}s")
            return token
        logger.debug(f"Lock '{name}' already held, acquire attempt by {self.hostname} skipped")
        return None

    async def release(self, name: str, token: str) -> None:
        """Release a lock held with ``token``. Failures are logged, never raised."""
        try:
            await self.redis_client.eval(_RELEASE_SCRIPT, 1, self._lock_key(name.strip()), token)
            logger.debug(f"Lock '{name}' released by {self.hostname}")
        except Exception as e:
            logger.warning(f"Failed to release lock '{name}' by {self.hostname}: {e}. Proceeding")

    async def run_with_lock(
        self,
        name: str,
        duration_seconds: float,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``action`` while holding ``name``.

        Acquisition polls for up to twice the lock duration, then raises ``LockTimeout``
        without having run the action.
        """
        acquire_budget = duration_seconds * 2
        deadline = time.monotonic() + acquire_budget

        token = await self.try_acquire(name, duration_seconds)
        while token is None:
            if time.monotonic() >= deadline:
                get_metrics_collector().record_lock_timeout(name)
                raise LockTimeout(name, acquire_budget)
            await asyncio.sleep(self.retry_delay)
            token = await self.try_acquire(name, duration_seconds)

        try:
            return await action()
        finally:
            await self.release(name, token)
