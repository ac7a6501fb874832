import logging
import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ...auth import admin_key_auth
from ...core.errors import SagaError
from ...core.units import to_units
from ...db import get_db
from ...integrations.rq_queue import q
from ...jobs.run import deployment_sync_wrapper
from ...models import Market, MarketState
from ...services.resolution import resolve_market
from ...settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


class ResolveRequest(BaseModel):
    outcome: str | None = None


class DeploymentRequest(BaseModel):
    amount: Decimal = Field(gt=0, description="USDC amount to move from escrow into the vault")


@router.post("/admin/markets/{market_id}/resolve")
async def admin_resolve_market(
    market_id: uuid.UUID,
    payload: ResolveRequest | None = None,
    db: Session = Depends(get_db),
    _=Depends(admin_key_auth),
):
    try:
        return await resolve_market(db, market_id, payload.outcome if payload else None)
    except SagaError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict()) from exc


@router.post("/admin/markets/{market_id}/deployments", status_code=202)
def admin_deploy_market(
    market_id: uuid.UUID,
    payload: DeploymentRequest,
    db: Session = Depends(get_db),
    _=Depends(admin_key_auth),
):
    market = db.get(Market, market_id)
    if market is None:
        raise HTTPException(status_code=404, detail="Market not found")
    if market.state != MarketState.ACTIVE:
        raise HTTPException(status_code=409, detail=f"Market is {market.state}")
    amount = to_units(payload.amount)
    job = q.enqueue(
        deployment_sync_wrapper,
        str(market.id),
        amount,
        job_timeout=settings.PAYOUT_JOB_TIMEOUT_SECONDS,
    )
    logger.info("deployment_job_enqueued market_id=%s amount=%s job_id=%s", market.id, amount, job.id)
    return {"job_id": job.id, "market_id": str(market.id), "amount_units": amount}
