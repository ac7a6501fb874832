import asyncio
import dataclasses

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fakes import FakeChain, no_sleep
from payout_fakes import NGO_WALLET, FakeBridge, FakeCustody, seed_market
from relief.chain.config import home_chain, vault_chain
from relief.custody.poller import TransactionPoller
from relief.db import Base
from relief.models import BridgeOperation, RecipientType
from relief.payouts.distribution import CREATING, PayoutDistributor, TreasuryWallet

TREASURY = TreasuryWallet(wallet_id="treasury-wallet", token_id="usdc-token")


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


def _distributor(db, custody=None, bridge=None):
    home_config = home_chain()
    custody = custody or FakeCustody(home_config.usdc_address)
    poller = TransactionPoller(custody.get_transfer, interval_seconds=0, max_attempts=2, sleep=no_sleep)
    bridge = bridge or FakeBridge(FakeChain(), home_config)
    return PayoutDistributor(db, custody, poller, home=home_config, bridge=bridge), custody, bridge


def _pay_ngo(distributor, market, ngo, amount, chain=None):
    return asyncio.run(
        distributor.pay(
            market,
            recipient_type=RecipientType.NGO,
            recipient_id=ngo.id,
            destination_address=NGO_WALLET,
            principal=0,
            yield_share=amount,
            treasury=TREASURY,
            chain=chain,
        )
    )


class _PendingBridge(FakeBridge):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.resumed = 0

    async def bridge(self, source, destination, amount, recipient=None):
        result = await super().bridge(source, destination, amount, recipient)
        return dataclasses.replace(result, state="pending")

    async def resume(self, result, destination):
        self.resumed += 1
        return dataclasses.replace(result, state="success")


def test_home_chain_ngo_payout_completes(db_session):
    market, ngo = seed_market(db_session)
    distributor, custody, _ = _distributor(db_session)

    outcome = _pay_ngo(distributor, market, ngo, 600_000)

    assert outcome.state == "COMPLETE"
    assert outcome.total == "0.600000"
    assert custody.created[0]["amount"] == "0.600000"
    assert custody.created[0]["destination_address"] == NGO_WALLET


def test_cross_chain_ngo_payout_goes_through_bridge(db_session):
    market, ngo = seed_market(db_session)
    distributor, custody, bridge = _distributor(db_session)

    outcome = _pay_ngo(distributor, market, ngo, 600_000, chain=vault_chain())

    assert outcome.state == "COMPLETE"
    assert outcome.transfer_id == "cctp:0x" + "cd" * 32
    assert custody.created == []
    assert bridge.calls == [(home_chain().name, vault_chain().name, 600_000)]
    operation = db_session.query(BridgeOperation).one()
    assert operation.direction == "ngo_payout"
    assert operation.message == "0x" + "ab" * 16
    assert operation.destination_chain_id == vault_chain().chain_id


def test_pending_cross_chain_payout_resumes_on_refresh(db_session):
    market, ngo = seed_market(db_session)
    bridge = _PendingBridge(FakeChain(), home_chain())
    distributor, _, _ = _distributor(db_session, bridge=bridge)

    outcome = _pay_ngo(distributor, market, ngo, 600_000, chain=vault_chain())
    assert outcome.state == "PENDING"
    assert outcome.needs_reconciliation is True

    record = distributor._find(market.id, RecipientType.NGO, ngo.id)
    refreshed = asyncio.run(distributor.refresh(record))

    assert refreshed.state == "COMPLETE"
    assert refreshed.needs_reconciliation is False
    assert bridge.resumed == 1
    assert len(bridge.calls) == 1
    assert db_session.query(BridgeOperation).one().state == "success"


def test_create_error_keeps_idempotency_key_for_retry(db_session):
    market, ngo = seed_market(db_session)
    custody = FakeCustody(home_chain().usdc_address)
    original_create = custody.create_transfer
    attempts = {"count": 0}

    async def flaky_create(**kwargs):
        attempts["count"] += 1
        if attempts["count"] == 1:
            custody.created.append(kwargs)
            raise ConnectionError("connection reset")
        return await original_create(**kwargs)

    custody.create_transfer = flaky_create
    distributor, _, _ = _distributor(db_session, custody=custody)

    first = _pay_ngo(distributor, market, ngo, 600_000)
    assert first.state == CREATING
    assert first.needs_reconciliation is True

    second = _pay_ngo(distributor, market, ngo, 600_000)
    assert second.state == "COMPLETE"
    keys = [call["idempotency_key"] for call in custody.created]
    assert len(keys) == 2
    assert keys[0] == keys[-1]


def test_settled_record_is_not_paid_twice(db_session):
    market, ngo = seed_market(db_session)
    distributor, custody, _ = _distributor(db_session)

    _pay_ngo(distributor, market, ngo, 600_000)
    again = _pay_ngo(distributor, market, ngo, 600_000)

    assert again.skipped is True
    assert len(custody.created) == 1


def test_zero_amount_is_recorded_without_transfer(db_session):
    market, ngo = seed_market(db_session)
    distributor, custody, _ = _distributor(db_session)

    outcome = _pay_ngo(distributor, market, ngo, 0)

    assert outcome.state == "COMPLETE"
    assert outcome.error == "zero_amount"
    assert custody.created == []
