import asyncio
import threading
import time

import pytest
import redis

from relief.core.errors import TransientInfraError
from relief.external import SignerLockRegistry


class FakeRedis:
    def __init__(self):
        self.store = {}
        self._guard = threading.Lock()

    def get(self, key):
        with self._guard:
            return self.store.get(key)

    def set(self, key, value, nx=False, ex=None):
        with self._guard:
            if nx and key in self.store:
                return None
            self.store[key] = value.encode() if isinstance(value, str) else value
            return True

    def delete(self, key):
        with self._guard:
            self.store.pop(key, None)


class _DownRedis:
    def set(self, key, value, nx=False, ex=None):
        raise redis.ConnectionError("connection refused")


def test_writers_in_separate_event_loops_are_serialized():
    conn = FakeRedis()
    registry = SignerLockRegistry(conn, poll_seconds=0.01, wait_seconds=5)
    spans = {}

    async def _job(name):
        async with registry.hold(1, "0xabc"):
            started = time.monotonic()
            await asyncio.sleep(0.1)
            spans[name] = (started, time.monotonic())

    threads = [threading.Thread(target=lambda n=name: asyncio.run(_job(n))) for name in ("a", "b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    (a_start, a_end), (b_start, b_end) = spans["a"], spans["b"]
    assert a_end <= b_start or b_end <= a_start
    assert conn.store == {}


def test_same_loop_writers_are_serialized():
    registry = SignerLockRegistry(FakeRedis(), poll_seconds=0.001, wait_seconds=5)
    order = []

    async def _write(name):
        async with registry.hold(1, "0xABC"):
            order.append(f"{name}:start")
            await asyncio.sleep(0.01)
            order.append(f"{name}:end")

    async def _run():
        await asyncio.gather(_write("a"), _write("b"))

    asyncio.run(_run())
    assert order in (
        ["a:start", "a:end", "b:start", "b:end"],
        ["b:start", "b:end", "a:start", "a:end"],
    )


def test_distinct_chains_do_not_block_each_other():
    registry = SignerLockRegistry(FakeRedis(), poll_seconds=0.001, wait_seconds=0)
    order = []

    async def _write(chain_id):
        async with registry.hold(chain_id, "0xabc"):
            order.append(f"{chain_id}:start")
            await asyncio.sleep(0)
            order.append(f"{chain_id}:end")

    async def _run():
        await asyncio.gather(_write(1), _write(2))

    asyncio.run(_run())
    assert order == ["1:start", "2:start", "1:end", "2:end"]


def test_signer_key_is_case_insensitive():
    assert SignerLockRegistry.key_for(1, "0xABC") == SignerLockRegistry.key_for(1, "0xabc")


def test_held_lock_times_out_and_is_left_alone():
    conn = FakeRedis()
    key = SignerLockRegistry.key_for(1, "0xabc")
    conn.store[key] = b"other-worker"
    registry = SignerLockRegistry(conn, poll_seconds=0, wait_seconds=0)

    async def _run():
        async with registry.hold(1, "0xabc"):
            pass

    with pytest.raises(TransientInfraError):
        asyncio.run(_run())
    assert conn.store[key] == b"other-worker"


def test_redis_outage_blocks_writes():
    registry = SignerLockRegistry(_DownRedis(), wait_seconds=0)

    async def _run():
        async with registry.hold(1, "0xabc"):
            raise AssertionError("write must not run without the lock")

    with pytest.raises(TransientInfraError):
        asyncio.run(_run())
