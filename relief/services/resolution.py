import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..core.errors import ConfigurationError, PreconditionError, TransientInfraError, is_transient_error
from ..http_logging import OutboundTimer, log_outbound_response
from ..models import Market, MarketState, Outcome, as_uuid
from ..settings import settings

logger = logging.getLogger(__name__)

OUTCOME_CODES = {1: Outcome.YES, 2: Outcome.NO, 3: Outcome.INVALID}
RESOLVABLE_STATES = (MarketState.ACTIVE, MarketState.CLOSED)


@dataclass(frozen=True)
class Verdict:
    outcome: str | None
    confidence: int | None = None
    evidence: str | None = None

    @property
    def pending(self) -> bool:
        return self.outcome is None


def parse_verdict(payload: dict[str, Any]) -> Verdict:
    try:
        code = int(payload.get("outcome", 0))
    except (TypeError, ValueError):
        code = 0
    confidence = payload.get("confidence")
    return Verdict(
        outcome=OUTCOME_CODES.get(code),
        confidence=int(confidence) if isinstance(confidence, (int, float)) else None,
        evidence=payload.get("evidence_string") or payload.get("evidence"),
    )


class OutcomeResolver:
    """Client for the external resolution service's ``/verify`` endpoint."""

    def __init__(self, base_url: str | None = None, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.base_url = (base_url or settings.RESOLUTION_SERVICE_URL or "").rstrip("/")
        self._http_client = http_client

    async def verify(self, market: Market) -> Verdict:
        if not self.base_url:
            raise ConfigurationError("RESOLUTION_SERVICE_URL is not configured")
        body = {"marketId": market.onchain_id, "question": market.question}
        payload = await self._post("/verify", body)
        verdict = parse_verdict(payload)
        logger.info(
            "resolution_verdict market_id=%s outcome=%s confidence=%s",
            market.id,
            verdict.outcome or "PENDING",
            verdict.confidence,
        )
        return verdict

    @retry(
        retry=retry_if_exception(is_transient_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        timer = OutboundTimer()
        if self._http_client is not None:
            response = await self._http_client.post(url, json=body)
        else:
            async with httpx.AsyncClient(timeout=settings.RESOLUTION_TIMEOUT_SECONDS) as client:
                response = await client.post(url, json=body)
        log_outbound_response(response, timer.elapsed(), service="resolution")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientInfraError(
                f"resolution service returned {response.status_code}",
                context={"status_code": response.status_code},
            )
        response.raise_for_status()
        return response.json()


async def resolve_market(
    db: Session,
    market_id,
    outcome: str | None = None,
    *,
    resolver: OutcomeResolver | None = None,
    enqueue_payout: Callable[[str], str | None] | None = None,
) -> dict[str, Any]:
    """Set a market's outcome and hand payable markets to the payout queue.

    An explicit ``outcome`` from an operator wins over the resolution service.
    A pending verdict leaves the market untouched.
    """
    market_key = as_uuid(market_id)
    market = db.get(Market, market_key) if market_key else None
    if market is None:
        error = PreconditionError("market not found", context={"market_id": str(market_id)})
        error.http_status = 404
        raise error
    if market.state == MarketState.PAID_OUT:
        raise PreconditionError("market is already paid out", context={"market_id": str(market.id)})
    if market.state not in RESOLVABLE_STATES or market.outcome:
        raise PreconditionError(
            f"market is {market.state} with outcome {market.outcome}",
            context={"market_id": str(market.id), "state": market.state, "outcome": market.outcome},
        )

    if outcome is not None:
        outcome = outcome.strip().upper()
        if outcome not in (Outcome.YES, Outcome.NO, Outcome.INVALID):
            error = PreconditionError(f"unknown outcome {outcome}")
            error.http_status = 400
            raise error
        verdict = Verdict(outcome=outcome, evidence="admin")
    else:
        verdict = await (resolver or OutcomeResolver()).verify(market)

    result: dict[str, Any] = {
        "ok": True,
        "market_id": str(market.id),
        "outcome": verdict.outcome,
        "confidence": verdict.confidence,
        "evidence": verdict.evidence,
        "payout_job_id": None,
    }
    if verdict.pending:
        result["state"] = market.state
        logger.info("market_resolution_pending market_id=%s", market.id)
        return result

    market.outcome = verdict.outcome
    market.state = MarketState.RESOLVED
    market.resolved_at = datetime.now(timezone.utc)
    db.commit()
    result["state"] = market.state
    logger.info("market_resolved market_id=%s outcome=%s", market.id, market.outcome)

    if market.outcome in Outcome.PAYABLE:
        enqueue = enqueue_payout or _enqueue_payout
        result["payout_job_id"] = enqueue(str(market.id))
    return result


def _enqueue_payout(market_id: str) -> str | None:
    from ..integrations.rq_queue import q
    from ..jobs.run import payout_sync_wrapper

    job = q.enqueue(payout_sync_wrapper, market_id, job_timeout=settings.PAYOUT_JOB_TIMEOUT_SECONDS)
    logger.info("payout_job_enqueued market_id=%s job_id=%s", market_id, job.id)
    return job.id
