import asyncio

import pytest

from relief.core.errors import CustodyApiError, RetriesExhaustedError, SimulationRevertError, is_transient_error
from relief.core.retry import RetryableOperation


def _recording_sleep(delays):
    async def _sleep(seconds):
        delays.append(seconds)

    return _sleep


def test_transient_errors_retry_with_capped_backoff():
    delays = []
    calls = {"count": 0}

    async def _flaky():
        calls["count"] += 1
        if calls["count"] < 4:
            raise RuntimeError("in-flight transaction limit reached")
        return "0xabc"

    operation = RetryableOperation(
        "test_write",
        max_attempts=5,
        base_seconds=30,
        max_seconds=60,
        sleep=_recording_sleep(delays),
    )
    result = asyncio.run(operation.run(_flaky))

    assert result == "0xabc"
    assert calls["count"] == 4
    assert delays == [30, 60, 60]


def test_non_transient_error_propagates_immediately():
    delays = []
    calls = {"count": 0}

    async def _revert():
        calls["count"] += 1
        raise SimulationRevertError("would revert")

    operation = RetryableOperation("test_write", max_attempts=5, base_seconds=1, sleep=_recording_sleep(delays))
    with pytest.raises(SimulationRevertError):
        asyncio.run(operation.run(_revert))
    assert calls["count"] == 1
    assert delays == []


def test_exhausted_retries_raise_with_cause():
    delays = []

    async def _always_limited():
        raise RuntimeError("429 Too Many Requests")

    operation = RetryableOperation("test_write", max_attempts=3, base_seconds=2, max_seconds=10, sleep=_recording_sleep(delays))
    with pytest.raises(RetriesExhaustedError) as excinfo:
        asyncio.run(operation.run(_always_limited))

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.cause, RuntimeError)
    assert delays == [2, 4]


def test_classifier_markers():
    assert is_transient_error(RuntimeError("nonce too low"))
    assert is_transient_error(TimeoutError())
    assert not is_transient_error(RuntimeError("execution reverted: not owner"))
    assert not is_transient_error(SimulationRevertError("x"))


def test_lambda_returning_coroutine_is_awaited_and_retried():
    delays = []
    calls = []

    async def _fetch(block):
        calls.append(block)
        if len(calls) == 1:
            raise RuntimeError("request timeout")
        return [block]

    operation = RetryableOperation("test_scan", max_attempts=3, base_seconds=1, sleep=_recording_sleep(delays))
    result = asyncio.run(operation.run(lambda b=42: _fetch(b)))

    assert result == [42]
    assert calls == [42, 42]
    assert delays == [1]


def test_custody_errors_retry_only_on_rate_limit_and_server_faults():
    assert is_transient_error(CustodyApiError("busy", status_code=429))
    assert is_transient_error(CustodyApiError("down", status_code=503))
    assert not is_transient_error(CustodyApiError("bad request", status_code=400))
    assert not is_transient_error(CustodyApiError("transfer create returned no id"))
    assert not is_transient_error(CustodyApiError("custody api GET /x returned invalid json"))
    assert not is_transient_error(CustodyApiError("entity public key missing from response"))
