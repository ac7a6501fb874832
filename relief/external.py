import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import redis

from .core.errors import TransientInfraError
from .integrations.redis_client import redis_conn
from .settings import settings

logger = logging.getLogger(__name__)

SIGNER_LOCK_KEY = "lock:signer:{chain_id}:{signer}"


class SignerLockRegistry:
    """Mutex per (chain id, signer address), shared by every worker process.

    Every admin-signed write on a chain shares one nonce sequence, so nonce
    fetch, signing and broadcast must not interleave across sagas. Jobs run in
    separate processes and event loops, so the lock is an owner-checked Redis
    ``SET NX EX`` key polled until ``wait_seconds`` runs out.
    """

    def __init__(
        self,
        conn=None,
        *,
        ttl_seconds: int | None = None,
        wait_seconds: float | None = None,
        poll_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.conn = conn if conn is not None else redis_conn
        self.ttl_seconds = int(settings.SIGNER_LOCK_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        self.wait_seconds = float(settings.SIGNER_LOCK_WAIT_SECONDS if wait_seconds is None else wait_seconds)
        self.poll_seconds = float(settings.SIGNER_LOCK_POLL_SECONDS if poll_seconds is None else poll_seconds)
        self._sleep = sleep or asyncio.sleep

    @staticmethod
    def key_for(chain_id: int, signer: str) -> str:
        return SIGNER_LOCK_KEY.format(chain_id=int(chain_id), signer=signer.lower())

    @asynccontextmanager
    async def hold(self, chain_id: int, signer: str):
        key = self.key_for(chain_id, signer)
        token = await self._acquire(key)
        try:
            yield
        finally:
            self._release(key, token)

    async def _acquire(self, key: str) -> str:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.wait_seconds
        waited = False
        while True:
            try:
                if self.conn.set(key, token, nx=True, ex=self.ttl_seconds):
                    if waited:
                        logger.info("signer_lock_acquired_after_wait key=%s", key)
                    return token
            except redis.RedisError as exc:
                raise TransientInfraError("signer lock unavailable", context={"key": key}) from exc
            if time.monotonic() >= deadline:
                raise TransientInfraError(
                    "timed out waiting for the signer lock",
                    context={"key": key, "wait_seconds": self.wait_seconds},
                )
            if not waited:
                logger.info("signer_lock_wait key=%s", key)
                waited = True
            await self._sleep(self.poll_seconds)

    def _release(self, key: str, token: str) -> None:
        try:
            current = self.conn.get(key)
            if isinstance(current, bytes):
                current = current.decode()
            if current == token:
                self.conn.delete(key)
            else:
                logger.warning("signer_lock_lost key=%s", key)
        except redis.RedisError:
            logger.exception("signer_lock_release_failed key=%s", key)


def _async_semaphore(limit: int | None) -> asyncio.Semaphore | None:
    if limit is None or limit <= 0:
        return None
    return asyncio.Semaphore(limit)


@asynccontextmanager
async def async_limited(semaphore: asyncio.Semaphore | None):
    if semaphore is None:
        yield
        return
    async with semaphore:
        yield


SIGNER_LOCKS = SignerLockRegistry()
CIRCLE_SEMAPHORE = _async_semaphore(settings.EXTERNAL_MAX_CONCURRENT_CIRCLE_CALLS)
