from types import SimpleNamespace

from relief.jobs import scheduler
from relief.settings import settings


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


class FakeQueue:
    def __init__(self):
        self.job_ids = []
        self.enqueued = []

    def enqueue(self, func, *args, job_id=None, **kwargs):
        self.enqueued.append((func.__name__, job_id))
        self.job_ids.append(job_id)
        return SimpleNamespace(id=job_id)


def test_tick_enqueues_one_reconciliation():
    queue = FakeQueue()
    conn = FakeRedis()

    first = scheduler.tick(queue, conn, "1:100", 300)
    second = scheduler.tick(queue, conn, "1:100", 300)

    assert first == scheduler.RECONCILE_JOB_ID
    assert second is None
    assert queue.enqueued == [("reconcile_sync_wrapper", scheduler.RECONCILE_JOB_ID)]
    assert conn.store[scheduler.SCHEDULER_HEARTBEAT_KEY] == b"1:100"


def test_tick_takes_over_heartbeat_and_respects_disable(monkeypatch, caplog):
    queue = FakeQueue()
    conn = FakeRedis()
    conn.store[scheduler.SCHEDULER_HEARTBEAT_KEY] = b"other:1"
    monkeypatch.setattr(settings, "RECONCILE_ENABLED", False)

    result = scheduler.tick(queue, conn, "1:100", 300)

    assert result is None
    assert queue.enqueued == []
    assert conn.store[scheduler.SCHEDULER_HEARTBEAT_KEY] == b"1:100"
    assert "scheduler_multiple_detected" in caplog.text
