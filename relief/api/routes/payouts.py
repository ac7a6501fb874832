import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...auth import admin_key_auth
from ...db import get_db
from ...integrations.rq_queue import q
from ...jobs.run import payout_sync_wrapper
from ...jobs.scheduler import enqueue_reconciliation
from ...models import Market, MarketState, Outcome, PayoutRecord, PayoutRun
from ...settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _record_payload(record: PayoutRecord) -> dict:
    return {
        "id": record.id,
        "recipient_type": record.recipient_type,
        "recipient_id": str(record.recipient_id),
        "destination_address": record.destination_address,
        "chain": record.chain,
        "principal": str(record.principal),
        "yield_share": str(record.yield_share),
        "total": str(record.total),
        "transfer_id": record.transfer_id,
        "transfer_state": record.transfer_state,
        "tx_hash": record.tx_hash,
        "attempt": record.attempt,
        "needs_reconciliation": bool(record.needs_reconciliation),
        "error_reason": record.error_reason,
        "error_details": record.error_details,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


@router.post("/admin/markets/{market_id}/payouts", status_code=202)
def admin_run_payouts(
    market_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(admin_key_auth),
):
    market = db.get(Market, market_id)
    if market is None:
        raise HTTPException(status_code=404, detail="Market not found")
    if market.state != MarketState.RESOLVED or market.outcome not in Outcome.PAYABLE:
        raise HTTPException(
            status_code=409,
            detail=f"Market is {market.state} with outcome {market.outcome}",
        )
    job = q.enqueue(payout_sync_wrapper, str(market.id), job_timeout=settings.PAYOUT_JOB_TIMEOUT_SECONDS)
    logger.info("payout_job_enqueued market_id=%s job_id=%s", market.id, job.id)
    return {"job_id": job.id, "market_id": str(market.id)}


@router.get("/markets/{market_id}/payouts")
def market_payouts(market_id: uuid.UUID, db: Session = Depends(get_db)):
    market = db.get(Market, market_id)
    if market is None:
        raise HTTPException(status_code=404, detail="Market not found")
    run = db.query(PayoutRun).filter(PayoutRun.market_id == market.id).one_or_none()
    records = (
        db.query(PayoutRecord)
        .filter(PayoutRecord.market_id == market.id)
        .order_by(PayoutRecord.id.asc())
        .all()
    )
    context = (run.context or {}) if run else {}
    return {
        "market_id": str(market.id),
        "market_state": market.state,
        "outcome": market.outcome,
        "run": {
            "status": run.status,
            "completed_step": run.completed_step,
            "error_step": run.error_step,
            "last_error": run.last_error,
            "attempts": run.attempts,
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "plan": context.get("plan"),
            "unresolved": context.get("unresolved") or {},
        }
        if run
        else None,
        "records": [_record_payload(record) for record in records],
    }


@router.post("/admin/payouts/reconcile", status_code=202)
def admin_reconcile_payouts(_=Depends(admin_key_auth)):
    job_id = enqueue_reconciliation(q)
    return {"job_id": job_id, "queued": job_id is not None}
