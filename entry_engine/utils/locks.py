"""
Redis-based per-tournament locking.

Serializes the local read-modify-write of a tournament's capacity state
(reservation, promotion, slot release). The lock is never held across a
payment gateway round-trip.

Lock keys:
- lock:tournament:{id}:capacity
"""

import asyncio
import hashlib
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional, Set
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.logging_config import get_logger
from entry_engine.utils.errors import LockUnavailableError

logger = get_logger(__name__)


@dataclass
class LockInfo:
    """Lock metadata."""

    lock_key: str
    owner_id: str
    acquired_at: float
    expires_at: float


class TournamentLockManager:
    """
    Redis-based lock manager keyed by tournament.

    - SET NX PX: atomic acquisition with expiry (a crashed holder cannot
      wedge a tournament)
    - Lua GET + DEL: release only when the stored owner token matches
    """

    RELEASE_LOCK_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        default_lock_timeout_ms: int = 10000,
        default_acquire_timeout_ms: int = 5000,
        retry_interval_ms: int = 25,
    ):
        self.redis = redis_client
        self.default_lock_timeout_ms = default_lock_timeout_ms
        self.default_acquire_timeout_ms = default_acquire_timeout_ms
        self.retry_interval_ms = retry_interval_ms

        self._instance_id = str(uuid4())
        self._held_locks: Set[str] = set()
        self._release_script = None

    async def _ensure_scripts(self) -> None:
        if self._release_script is None:
            self._release_script = self.redis.register_script(self.RELEASE_LOCK_SCRIPT)

    @staticmethod
    def make_lock_key(tournament_id: str) -> str:
        return f"lock:tournament:{tournament_id}:capacity"

    def _make_owner_token(self) -> str:
        raw = f"{self._instance_id}:{time.time_ns()}:{uuid4().hex[:8]}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    async def acquire(
        self,
        tournament_id: str,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> LockInfo:
        """
        Acquire the tournament lock, polling until acquire_timeout_ms.

        Raises:
            LockUnavailableError: If the lock cannot be acquired in time
        """
        await self._ensure_scripts()

        lock_timeout = lock_timeout_ms or self.default_lock_timeout_ms
        acquire_timeout = acquire_timeout_ms or self.default_acquire_timeout_ms

        lock_key = self.make_lock_key(tournament_id)
        owner_token = self._make_owner_token()
        start_time = time.monotonic() * 1000

        while True:
            acquired = await self.redis.set(
                lock_key,
                owner_token,
                nx=True,
                px=lock_timeout,
            )
            if acquired:
                now = time.time()
                self._held_locks.add(lock_key)
                return LockInfo(
                    lock_key=lock_key,
                    owner_id=owner_token,
                    acquired_at=now,
                    expires_at=now + (lock_timeout / 1000),
                )

            elapsed = (time.monotonic() * 1000) - start_time
            if elapsed >= acquire_timeout:
                logger.warning(
                    "tournament_lock_timeout",
                    tournament_id=tournament_id,
                    waited_ms=int(elapsed),
                )
                raise LockUnavailableError(tournament_id)

            await asyncio.sleep(self.retry_interval_ms / 1000)

    async def release(self, lock_info: LockInfo) -> bool:
        """
        Release the lock if still owned.

        Returns:
            True if released, False if it had expired or been taken over
        """
        await self._ensure_scripts()

        result = await self._release_script(
            keys=[lock_info.lock_key],
            args=[lock_info.owner_id],
        )
        self._held_locks.discard(lock_info.lock_key)
        if result != 1:
            logger.warning("tournament_lock_lost", lock_key=lock_info.lock_key)
        return result == 1

    @asynccontextmanager
    async def lock(
        self,
        tournament_id: str,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> AsyncGenerator[LockInfo, None]:
        """
        Context manager for automatic acquire/release.

        ```python
        async with lock_manager.lock("spring-open") as lock_info:
            ...  # exclusive access to the tournament's capacity state
        ```
        """
        lock_info = await self.acquire(tournament_id, lock_timeout_ms, acquire_timeout_ms)
        try:
            yield lock_info
        finally:
            await self.release(lock_info)

    async def cleanup_all(self) -> int:
        """Release all locks held by this instance (shutdown)."""
        released = 0
        for lock_key in list(self._held_locks):
            await self.redis.delete(lock_key)
            self._held_locks.discard(lock_key)
            released += 1
        return released


@asynccontextmanager
async def locked_transaction(
    lock_manager: TournamentLockManager,
    db: AsyncSession,
    tournament_id: str,
) -> AsyncGenerator[LockInfo, None]:
    """Hold the tournament lock for one unit of work.

    The session is committed before the lock is released, or rolled back
    if the block raises.
    """
    async with lock_manager.lock(tournament_id) as lock_info:
        try:
            yield lock_info
            await db.commit()
        except Exception:
            await db.rollback()
            raise
