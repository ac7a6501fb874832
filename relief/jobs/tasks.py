import json
import logging
import os
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..core.logging_config import bind_log_context
from ..integrations.redis_client import redis_conn
from ..payouts.factory import build_orchestrator
from ..services.deployment import deploy_market_funds
from ..services.reconciliation import reconcile_pending_payouts
from ..settings import settings

logger = logging.getLogger(__name__)

PAYOUT_LOCK_KEY = "lock:payout:{market_id}"
DEPLOYMENT_LOCK_KEY = "lock:deployment:{market_id}"
RECONCILE_LOCK_KEY = "lock:reconcile"
PAYOUT_LAST_RESULT_KEY = "payout:last_result:{market_id}"


def _acquire(key: str, ttl: int) -> tuple[bool, str]:
    lock_value = f"{os.getpid()}:{datetime.now(timezone.utc).isoformat()}"
    try:
        locked = redis_conn.set(key, lock_value, nx=True, ex=ttl)
    except Exception:
        logger.exception("job_lock_failed key=%s", key)
        # payouts never run without the lock held
        locked = False
    return bool(locked), lock_value


def _release(key: str, lock_value: str) -> None:
    try:
        current = redis_conn.get(key)
        if current and current.decode() == lock_value:
            redis_conn.delete(key)
    except Exception:
        logger.exception("job_lock_release_failed key=%s", key)


async def run_market_payout(db: Session, market_id: str, *, orchestrator=None) -> dict:
    lock_key = PAYOUT_LOCK_KEY.format(market_id=market_id)
    locked, lock_value = _acquire(lock_key, settings.PAYOUT_LOCK_TTL_SECONDS)
    if not locked:
        logger.info("payout_skipped market_id=%s reason=lock_held", market_id)
        return {"ok": False, "market_id": str(market_id), "reason": "payout_locked"}

    result: dict = {"ok": False, "market_id": str(market_id)}
    try:
        with bind_log_context(market_id=str(market_id), job="payout"):
            orchestrator = orchestrator or build_orchestrator(db)
            outcome = await orchestrator.run(market_id)
        result = outcome.to_dict()
        return result
    except Exception:
        logger.exception("payout_job_failed market_id=%s", market_id)
        result["error"] = "payout_failed"
        raise
    finally:
        _release(lock_key, lock_value)
        result["ts"] = datetime.now(timezone.utc).isoformat()
        try:
            redis_conn.set(
                PAYOUT_LAST_RESULT_KEY.format(market_id=market_id),
                json.dumps(result, ensure_ascii=True, default=str),
            )
        except Exception:
            logger.exception("payout_status_update_failed market_id=%s", market_id)


async def run_market_deployment(db: Session, market_id: str, amount: int, *, deployer=None) -> dict:
    lock_key = DEPLOYMENT_LOCK_KEY.format(market_id=market_id)
    locked, lock_value = _acquire(lock_key, settings.PAYOUT_LOCK_TTL_SECONDS)
    if not locked:
        logger.info("deployment_skipped market_id=%s reason=lock_held", market_id)
        return {"ok": False, "market_id": str(market_id), "reason": "deployment_locked"}
    try:
        with bind_log_context(market_id=str(market_id), job="deployment"):
            result = await deploy_market_funds(db, market_id, amount, deployer=deployer)
        return result.to_dict()
    finally:
        _release(lock_key, lock_value)


async def run_reconciliation(db: Session, *, reconciler=None) -> dict:
    locked, lock_value = _acquire(RECONCILE_LOCK_KEY, settings.PAYOUT_LOCK_TTL_SECONDS)
    if not locked:
        logger.debug("reconcile_skipped reason=lock_held")
        return {"ok": False, "reason": "reconcile_locked"}
    try:
        with bind_log_context(job="reconcile"):
            return await reconcile_pending_payouts(
                db, reconciler=reconciler, limit=settings.RECONCILE_BATCH_LIMIT
            )
    finally:
        _release(RECONCILE_LOCK_KEY, lock_value)
