from types import SimpleNamespace
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from payout_fakes import NGO_WALLET, seed_market
from relief.db import Base, get_db
from relief.main import app
from relief.models import MarketState, Outcome, PayoutRecord, PayoutRun, RecipientType
from relief.settings import settings

ADMIN = {"X-Admin-Key": "test-admin-key"}


@pytest.fixture()
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(db_session, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "test-admin-key")

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class _FakeQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, func, *args, **kwargs):
        self.jobs.append((func.__name__, args, kwargs))
        return SimpleNamespace(id=f"job-{len(self.jobs)}")


def test_health_ok(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True, "database": "ok"}


def test_admin_routes_require_key(client, db_session):
    market, _ = seed_market(db_session, state=MarketState.CLOSED, outcome=None)

    response = client.post(f"/admin/markets/{market.id}/resolve", json={"outcome": "YES"})
    assert response.status_code == 401

    response = client.post(
        f"/admin/markets/{market.id}/resolve",
        json={"outcome": "YES"},
        headers={"X-Admin-Key": "wrong"},
    )
    assert response.status_code == 401


def test_resolve_enqueues_payout(client, db_session, monkeypatch):
    market, _ = seed_market(db_session, state=MarketState.CLOSED, outcome=None)
    enqueued = []
    monkeypatch.setattr(
        "relief.services.resolution._enqueue_payout",
        lambda market_id: enqueued.append(market_id) or "job-resolve",
    )

    response = client.post(f"/admin/markets/{market.id}/resolve", json={"outcome": "yes"}, headers=ADMIN)

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == Outcome.YES
    assert body["state"] == MarketState.RESOLVED
    assert body["payout_job_id"] == "job-resolve"
    assert enqueued == [str(market.id)]

    response = client.post(f"/admin/markets/{market.id}/resolve", json={"outcome": "NO"}, headers=ADMIN)
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "precondition_failed"


def test_payout_trigger_enqueues_job(client, db_session, monkeypatch):
    market, _ = seed_market(db_session)
    queue = _FakeQueue()
    monkeypatch.setattr("relief.api.routes.payouts.q", queue)

    response = client.post(f"/admin/markets/{market.id}/payouts", headers=ADMIN)

    assert response.status_code == 202
    assert response.json() == {"job_id": "job-1", "market_id": str(market.id)}
    assert queue.jobs[0][0] == "payout_sync_wrapper"
    assert queue.jobs[0][1] == (str(market.id),)


def test_payout_trigger_rejects_unresolved_market(client, db_session, monkeypatch):
    market, _ = seed_market(db_session, state=MarketState.ACTIVE, outcome=None)
    queue = _FakeQueue()
    monkeypatch.setattr("relief.api.routes.payouts.q", queue)

    response = client.post(f"/admin/markets/{market.id}/payouts", headers=ADMIN)

    assert response.status_code == 409
    assert queue.jobs == []


def test_deployment_trigger_converts_amount(client, db_session, monkeypatch):
    market, _ = seed_market(db_session, state=MarketState.ACTIVE, outcome=None)
    queue = _FakeQueue()
    monkeypatch.setattr("relief.api.routes.markets.q", queue)

    response = client.post(f"/admin/markets/{market.id}/deployments", json={"amount": "1.5"}, headers=ADMIN)

    assert response.status_code == 202
    assert response.json()["amount_units"] == 1_500_000
    assert queue.jobs[0][0] == "deployment_sync_wrapper"
    assert queue.jobs[0][1] == (str(market.id), 1_500_000)

    response = client.post(f"/admin/markets/{market.id}/deployments", json={"amount": "0"}, headers=ADMIN)
    assert response.status_code == 422


def test_market_and_ngo_payout_history(client, db_session):
    market, ngo = seed_market(db_session)
    db_session.add(PayoutRun(market_id=market.id, completed_step="DONE", status="completed", context={}, attempts=1))
    db_session.add(
        PayoutRecord(
            market_id=market.id,
            recipient_type=RecipientType.NGO,
            recipient_id=ngo.id,
            destination_address=NGO_WALLET,
            chain="ARC-TESTNET",
            principal=0,
            yield_share=0.6,
            total=0.6,
            transfer_id="transfer-1",
            transfer_state="COMPLETE",
            tx_hash="0xabc",
        )
    )
    db_session.commit()

    response = client.get(f"/markets/{market.id}/payouts")
    assert response.status_code == 200
    body = response.json()
    assert body["market_state"] == MarketState.RESOLVED
    assert body["run"]["status"] == "completed"
    assert body["records"][0]["transfer_state"] == "COMPLETE"

    response = client.get(f"/ngos/{ngo.id}/payouts")
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Relief Org"
    assert body["payouts"][0]["market_id"] == str(market.id)
    assert body["payouts"][0]["tx_hash"] == "0xabc"


def test_unknown_ids_return_404(client):
    assert client.get(f"/markets/{uuid4()}/payouts").status_code == 404
    assert client.get(f"/ngos/{uuid4()}/payouts").status_code == 404
    response = client.post(f"/admin/markets/{uuid4()}/payouts", headers=ADMIN)
    assert response.status_code == 404


def test_reconcile_trigger_is_deduplicated(client, monkeypatch):
    queue = _FakeQueue()
    queue.job_ids = []
    monkeypatch.setattr("relief.api.routes.payouts.q", queue)

    first = client.post("/admin/payouts/reconcile", headers=ADMIN)
    queue.job_ids.append("reconcile-pending-payouts")
    second = client.post("/admin/payouts/reconcile", headers=ADMIN)

    assert first.status_code == 202
    assert first.json()["queued"] is True
    assert second.json() == {"job_id": None, "queued": False}
