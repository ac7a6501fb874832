import asyncio

from fakes import VAULT, FakeChain, no_sleep
from relief.adapters.positions import PositionResolver
from relief.core.retry import RetryableOperation

MARKET = "0x" + "aa" * 32
OTHER_MARKET = "0x" + "bb" * 32


def _deployed(block, position, market=MARKET, address=VAULT, amount=1_000):
    return {
        "event": "Deployed",
        "address": address,
        "block_number": block,
        "log_index": 0,
        "tx_hash": f"0x{block:064x}",
        "args": {
            "marketId": bytes.fromhex(market[2:]),
            "positionId": bytes.fromhex(position * 32),
            "amount": amount,
        },
    }


def _resolver(chain, **kwargs):
    retry = RetryableOperation("position_scan", max_attempts=2, base_seconds=0, sleep=no_sleep)
    return PositionResolver(chain, VAULT, retry=retry, **kwargs)


def test_scan_filters_by_emitter_and_market():
    chain = FakeChain()
    chain.logs = [
        _deployed(960, "02", amount=2_000),
        _deployed(910, "01"),
        _deployed(920, "03", address="0x" + "99" * 20),
        _deployed(930, "04", market=OTHER_MARKET),
    ]
    scan = asyncio.run(_resolver(chain, chunk_blocks=50).find_all(MARKET, from_block=900))

    assert [position.position_id for position in scan.positions] == ["0x" + "01" * 32, "0x" + "02" * 32]
    assert scan.total_deposited == 3_000
    assert scan.partial is False
    assert chain.log_queries == [(900, 949), (950, 999), (1000, 1000)]


def test_failed_chunk_is_reported_not_skipped():
    chain = FakeChain()
    chain.logs = [_deployed(910, "01"), _deployed(960, "02")]
    chain.failing_ranges = {(950, 999)}

    scan = asyncio.run(_resolver(chain, chunk_blocks=50).find_all(MARKET, from_block=900))

    assert scan.partial is True
    assert scan.failed_ranges == [(950, 999)]
    assert len(scan.positions) == 1


def test_default_window_trails_latest_block():
    chain = FakeChain(block=5_000)
    scan = asyncio.run(_resolver(chain, window_blocks=100, chunk_blocks=100).find_all(MARKET))
    assert scan.from_block == 4_901
    assert scan.to_block == 5_000
    assert scan.positions == []
