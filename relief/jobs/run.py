import asyncio
from sqlalchemy.orm import Session
from ..db import SessionLocal
from .tasks import run_market_deployment, run_market_payout, run_reconciliation


def payout_sync_wrapper(market_id: str):
    db: Session = SessionLocal()
    try:
        return asyncio.run(run_market_payout(db, market_id))
    finally:
        db.close()


def deployment_sync_wrapper(market_id: str, amount: int):
    db: Session = SessionLocal()
    try:
        return asyncio.run(run_market_deployment(db, market_id, amount))
    finally:
        db.close()


def reconcile_sync_wrapper():
    db: Session = SessionLocal()
    try:
        return asyncio.run(run_reconciliation(db))
    finally:
        db.close()
