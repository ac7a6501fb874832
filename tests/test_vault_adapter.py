import asyncio

import pytest

from fakes import USDC, VAULT, FakeChain
from relief.adapters.vault import YieldVaultAdapter
from relief.core.errors import PositionTrackingError

MARKET = "0x" + "aa" * 32
POSITION = "0x" + "0f" * 32


def _event(name, address, **args):
    return {"event": name, "address": address, "block_number": 10, "tx_hash": "0x01", "args": args}


def test_deploy_reads_position_from_own_event():
    chain = FakeChain()
    chain.handlers["deployToAave"] = lambda market, amount: {
        "events": {
            "Deployed": [
                _event("Deployed", "0x" + "99" * 20, marketId=bytes.fromhex(MARKET[2:]), positionId=b"\x01" * 32, amount=amount),
                _event("Deployed", VAULT.upper().replace("0X", "0x"), marketId=bytes.fromhex(MARKET[2:]), positionId=bytes.fromhex(POSITION[2:]), amount=amount),
            ]
        }
    }
    position_id = asyncio.run(YieldVaultAdapter(chain, VAULT, USDC).deploy(MARKET, 5_000))
    assert position_id == POSITION


def test_withdraw_without_event_is_tracking_error():
    chain = FakeChain()
    chain.handlers["withdrawFromAave"] = lambda position: {"events": {"Withdrawn": []}}
    with pytest.raises(PositionTrackingError):
        asyncio.run(YieldVaultAdapter(chain, VAULT, USDC).withdraw(POSITION))


def test_withdraw_splits_principal_and_yield():
    chain = FakeChain()
    chain.handlers["withdrawFromAave"] = lambda position: {
        "events": {
            "Withdrawn": [
                _event("Withdrawn", VAULT, positionId=bytes.fromhex(POSITION[2:]), principal=5_000, **{"yield": 120}),
            ]
        }
    }
    result = asyncio.run(YieldVaultAdapter(chain, VAULT, USDC).withdraw(POSITION))
    assert result.principal == 5_000
    assert result.yield_amount == 120
    assert result.total == 5_120


def test_find_withdrawal_recovers_from_logs():
    chain = FakeChain(block=50)
    chain.logs = [
        _event("Withdrawn", "0x" + "99" * 20, positionId=bytes.fromhex(POSITION[2:]), principal=1, **{"yield": 1}),
        _event("Withdrawn", VAULT, positionId=bytes.fromhex(POSITION[2:]), principal=5_000, **{"yield": 80}),
    ]
    result = asyncio.run(YieldVaultAdapter(chain, VAULT, USDC).find_withdrawal(POSITION, from_block=1))
    assert result is not None
    assert result.principal == 5_000
    assert result.yield_amount == 80
