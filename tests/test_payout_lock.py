import asyncio
import json

from relief.jobs import tasks


class FakeRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value.encode() if isinstance(value, str) else value
        return True

    def delete(self, key):
        self.store.pop(key, None)


class _FakeResult:
    def to_dict(self):
        return {"ok": True, "market_id": "m1", "status": "completed"}


class _FakeOrchestrator:
    def __init__(self):
        self.calls = []

    async def run(self, market_id):
        self.calls.append(market_id)
        return _FakeResult()


def test_payout_lock_skips_run(monkeypatch):
    fake_redis = FakeRedis()
    fake_redis.store[tasks.PAYOUT_LOCK_KEY.format(market_id="m1")] = b"other-worker"
    monkeypatch.setattr(tasks, "redis_conn", fake_redis)
    orchestrator = _FakeOrchestrator()

    result = asyncio.run(tasks.run_market_payout(None, "m1", orchestrator=orchestrator))

    assert result["reason"] == "payout_locked"
    assert orchestrator.calls == []


def test_payout_lock_released_and_result_stored(monkeypatch):
    fake_redis = FakeRedis()
    monkeypatch.setattr(tasks, "redis_conn", fake_redis)
    orchestrator = _FakeOrchestrator()

    result = asyncio.run(tasks.run_market_payout(None, "m1", orchestrator=orchestrator))

    assert result["ok"] is True
    assert orchestrator.calls == ["m1"]
    assert tasks.PAYOUT_LOCK_KEY.format(market_id="m1") not in fake_redis.store
    stored = json.loads(fake_redis.store[tasks.PAYOUT_LAST_RESULT_KEY.format(market_id="m1")])
    assert stored["status"] == "completed"
    assert "ts" in stored


def test_redis_outage_means_no_run(monkeypatch):
    class _BrokenRedis(FakeRedis):
        def set(self, key, value, nx=False, ex=None):
            raise ConnectionError("redis down")

    monkeypatch.setattr(tasks, "redis_conn", _BrokenRedis())
    orchestrator = _FakeOrchestrator()

    result = asyncio.run(tasks.run_market_payout(None, "m1", orchestrator=orchestrator))

    assert result["ok"] is False
    assert orchestrator.calls == []


def test_lock_not_released_when_owned_by_another_worker(monkeypatch):
    fake_redis = FakeRedis()
    monkeypatch.setattr(tasks, "redis_conn", fake_redis)
    key = "lock:test"

    locked, value = tasks._acquire(key, 60)
    assert locked is True
    fake_redis.store[key] = b"someone-else"
    tasks._release(key, value)

    assert fake_redis.store[key] == b"someone-else"
