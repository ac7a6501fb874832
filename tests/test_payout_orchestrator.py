import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payout_fakes import LOSER, NGO_WALLET, POSITION_1, WINNER_1, WINNER_2, build_saga, seed_market
from relief.adapters.positions import Position, PositionScan
from relief.adapters.settlement import WinnerPayout
from relief.db import Base
from relief.models import BridgeOperation, MarketState, PayoutRecord, PayoutRun, RecipientType, Trader
from relief.payouts.orchestrator import SagaState


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _records(db, market):
    return {
        (record.recipient_type, record.destination_address): record
        for record in db.query(PayoutRecord).filter(PayoutRecord.market_id == market.id).all()
    }


def test_full_saga_pays_every_recipient(db_session):
    market, ngo = seed_market(db_session)
    saga = build_saga(db_session)

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is True
    assert result.status == "completed"
    assert result.completed_step == SagaState.DONE
    db_session.refresh(market)
    assert market.state == MarketState.PAID_OUT

    records = _records(db_session, market)
    assert str(records[(RecipientType.NGO, NGO_WALLET)].total) == "0.600000"
    assert str(records[(RecipientType.WINNER, WINNER_1)].total) == "0.650000"
    assert str(records[(RecipientType.WINNER, WINNER_2)].total) == "0.650000"
    assert str(records[(RecipientType.LOSER, LOSER)].total) == "0.500000"
    assert all(record.transfer_state == "COMPLETE" for record in records.values())

    assert [item["amount"] for item in saga.custody.created] == ["0.600000", "0.650000", "0.650000", "0.500000"]
    assert {item["token_id"] for item in saga.custody.created} == {"usdc-token"}
    assert result.totals["total_yield"] == 1_000_000
    assert result.totals["protocol_share"] == 100_000
    assert result.totals["settled"] == 2_400_000

    assert saga.vault_adapter.withdrawn == [POSITION_1, "0x" + "02" * 32]
    assert saga.settlement.record_calls == [1_000_000]
    assert saga.bridge.calls == [(saga.vault_config.name, saga.home_config.name, 2_500_000)]
    funding = saga.home.calls("transfer")
    assert len(funding) == 1
    assert funding[0]["args"][1] == 2_400_000

    run = db_session.query(PayoutRun).filter(PayoutRun.market_id == market.id).one()
    assert run.status == "completed"
    assert run.finished_at is not None
    assert db_session.query(BridgeOperation).filter(BridgeOperation.direction == "return").count() == 1


def test_rerun_after_completion_is_a_no_op(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    asyncio.run(saga.orchestrator.run(market.id))

    again = asyncio.run(saga.orchestrator.run(str(market.id)))

    assert again.ok is True
    assert again.status == "completed"
    assert len(saga.custody.created) == 4
    assert len(saga.vault_adapter.withdrawn) == 2
    assert saga.settlement.record_calls == [1_000_000]
    assert len(again.recipients) == 4


def test_failed_transfer_leaves_market_resolved_and_rerun_retries_only_it(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    saga.custody.fail_destinations.add(LOSER)

    first = asyncio.run(saga.orchestrator.run(market.id))

    assert first.ok is True
    assert first.partial is True
    db_session.refresh(market)
    assert market.state == MarketState.RESOLVED
    loser = _records(db_session, market)[(RecipientType.LOSER, LOSER)]
    assert loser.transfer_state == "FAILED"
    assert loser.error_reason == "INSUFFICIENT_TOKEN"
    failed_key = saga.custody.created[-1]["idempotency_key"]

    saga.custody.fail_destinations.clear()
    second = asyncio.run(saga.orchestrator.run(market.id))

    assert second.ok is True
    assert second.status == "completed"
    db_session.refresh(market)
    assert market.state == MarketState.PAID_OUT
    assert len(saga.custody.created) == 5
    assert saga.custody.created[-1]["destination_address"] == LOSER
    assert saga.custody.created[-1]["idempotency_key"] != failed_key
    db_session.refresh(loser)
    assert loser.attempt == 2
    assert loser.transfer_state == "COMPLETE"
    assert len(saga.vault_adapter.withdrawn) == 2
    assert len(saga.home.calls("transfer")) == 1


def test_bridge_failure_halts_and_resume_skips_finished_steps(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    saga.bridge.failures = 1

    first = asyncio.run(saga.orchestrator.run(market.id))

    assert first.ok is False
    assert first.status == "halted"
    assert first.error["code"] == "bridge_failed"
    assert first.error["step"] == SagaState.BRIDGING_BACK
    run = db_session.query(PayoutRun).filter(PayoutRun.market_id == market.id).one()
    assert run.completed_step == SagaState.SWAPPING_BACK
    assert run.error_step == SagaState.BRIDGING_BACK
    assert db_session.query(PayoutRecord).count() == 0

    second = asyncio.run(saga.orchestrator.run(market.id))

    assert second.ok is True
    assert second.status == "completed"
    assert len(saga.bridge.calls) == 2
    assert len(saga.vault_adapter.withdrawn) == 2
    assert len(saga.vault_adapter.transfers_out) == 1
    assert saga.positions.calls == 1
    db_session.refresh(run)
    assert run.attempts == 2


def test_withdraw_revert_recovers_earlier_withdrawal(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    saga.vault_adapter.revert_positions.add(POSITION_1)

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is True
    run = db_session.query(PayoutRun).filter(PayoutRun.market_id == market.id).one()
    assert run.context["withdrawals"][POSITION_1]["tx_hash"] == "0xrecovered"
    assert run.context["withdrawn_yield"] == 1_000_000


def test_unresolved_state_is_a_precondition_failure(db_session):
    market, _ = seed_market(db_session, state=MarketState.CLOSED, outcome=None)
    saga = build_saga(db_session)

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is False
    assert result.error["code"] == "precondition_failed"
    assert result.error["step"] == SagaState.FETCHING_CONTEXT
    assert db_session.query(PayoutRun).count() == 0
    assert saga.positions.calls == 0


def test_invalid_outcome_is_not_payable(db_session):
    market, _ = seed_market(db_session, outcome="INVALID")
    saga = build_saga(db_session)

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is False
    assert result.error["http_status"] == 409


def test_unknown_market(db_session):
    saga = build_saga(db_session)
    result = asyncio.run(saga.orchestrator.run("not-a-uuid"))
    assert result.ok is False
    assert result.error["http_status"] == 404


def test_partial_position_scan_halts(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    saga.positions.failed_ranges = [(0, 49)]

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is False
    assert result.error["code"] == "position_tracking"
    assert result.error["step"] == SagaState.RESOLVING_POSITIONS
    assert saga.vault_adapter.withdrawn == []


def test_deposits_above_trade_principal_violate_invariant(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    saga.positions.positions = saga.positions.positions + [
        Position("0x" + "03" * 32, saga.positions.positions[0].market_id, 10, block_number=12)
    ]

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is False
    assert result.error["code"] == "invariant_violation"


def test_zero_yield_halts_before_recording(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    saga.vault_adapter.results = {
        key: (principal, 0) for key, (principal, _) in saga.vault_adapter.results.items()
    }

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is False
    assert result.error["code"] == "balance_insufficient"
    assert result.error["step"] == SagaState.YIELD_RECORDED
    assert saga.settlement.record_calls == []


def test_unknown_trader_is_reported_without_blocking_others(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    stranger = "0x" + "cc" * 20
    saga.settlement.winners.append(WinnerPayout(stranger, 0, 0))

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is True
    assert result.status == "partial"
    failed = [item for item in result.recipients if item["error"] == "trader_not_found"]
    assert [item["recipient_id"] for item in failed] == [stranger]
    assert len(saga.custody.created) == 4
    db_session.refresh(market)
    assert market.state == MarketState.RESOLVED


def test_contract_without_rows_falls_back_to_trades(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    saga.settlement.winners = []
    saga.settlement.losers = []

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is True
    assert saga.settlement.calculate_calls == 1
    records = _records(db_session, market)
    # zero contract rewards split the 300_000 winner pool equally
    assert str(records[(RecipientType.WINNER, WINNER_1)].total) == "0.650000"
    assert str(records[(RecipientType.LOSER, LOSER)].total) == "0.500000"


def test_step_order_is_fixed():
    assert SagaState.ORDER[0] == SagaState.FETCHING_CONTEXT
    assert SagaState.ORDER[-1] == SagaState.DONE
    assert len(SagaState.ORDER) == 12


def test_empty_scan_halts(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)

    async def _empty(market_onchain_id, from_block=None):
        return PositionScan([], 0, 100)

    saga.positions.find_all = _empty
    result = asyncio.run(saga.orchestrator.run(market.id))
    assert result.error["code"] == "position_tracking"


def test_short_vault_balance_halts_until_funds_arrive(db_session):
    market, _ = seed_market(db_session)
    saga = build_saga(db_session)
    lag = {"units": 1}
    held_balance = saga.vault_adapter.balance

    async def _lagging_balance():
        return await held_balance() - lag["units"]

    saga.vault_adapter.balance = _lagging_balance
    first = asyncio.run(saga.orchestrator.run(market.id))

    assert first.ok is False
    assert first.error["code"] == "balance_insufficient"
    assert first.error["step"] == SagaState.BALANCE_CONFIRMED
    assert saga.vault_adapter.transfers_out == []
    assert saga.bridge.calls == []

    lag["units"] = 0
    second = asyncio.run(saga.orchestrator.run(market.id))

    assert second.ok is True
    assert saga.vault_adapter.transfers_out[0][1] == 2_500_000
    assert len(saga.vault_adapter.withdrawn) == 2


def test_case_duplicate_trader_rows_pay_the_oldest(db_session):
    market, _ = seed_market(db_session)
    original = db_session.query(Trader).filter(Trader.wallet_address == WINNER_1).one()
    db_session.add(
        Trader(
            wallet_address="0x" + WINNER_1[2:].upper(),
            created_at=datetime(2099, 1, 1, tzinfo=timezone.utc),
        )
    )
    db_session.commit()
    saga = build_saga(db_session)

    result = asyncio.run(saga.orchestrator.run(market.id))

    assert result.ok is True
    assert result.status == "completed"
    assert len(saga.custody.created) == 4
    winner = _records(db_session, market)[(RecipientType.WINNER, WINNER_1)]
    assert winner.recipient_id == original.id
