import logging
from collections import Counter
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..adapters.bridge import BridgeAdapter
from ..chain.config import ChainConfig, home_chain
from ..custody.client import CustodialWalletClient
from ..custody.poller import TransactionPoller
from ..custody.schemas import FAILURE_STATES, PENDING_STATES, SUCCESS_STATES
from ..models import Market, MarketState, PayoutRecord, PayoutRun
from ..payouts.distribution import PayoutDistributor

logger = logging.getLogger(__name__)


class PayoutReconciler:
    """Re-reads payout records whose transfer outcome is still unknown."""

    def __init__(
        self,
        db: Session,
        custody: CustodialWalletClient,
        *,
        bridge: BridgeAdapter | None = None,
        home: ChainConfig | None = None,
    ) -> None:
        self.db = db
        self.distributor = PayoutDistributor(
            db,
            custody,
            TransactionPoller(custody.get_transfer, max_attempts=1),
            home=home or home_chain(),
            bridge=bridge,
        )

    def pending_records(self, limit: int | None = None) -> list[PayoutRecord]:
        query = (
            self.db.query(PayoutRecord)
            .filter(
                or_(
                    PayoutRecord.needs_reconciliation.is_(True),
                    PayoutRecord.transfer_state.in_(sorted(PENDING_STATES)),
                )
            )
            .order_by(PayoutRecord.id.asc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    async def reconcile(self, limit: int | None = None) -> dict[str, Any]:
        counts: Counter[str] = Counter()
        markets = set()
        for record in self.pending_records(limit):
            counts["checked"] += 1
            if not record.transfer_id:
                # only the payout run can re-send a create with the stored key
                counts["awaiting_rerun"] += 1
                continue
            outcome = await self.distributor.refresh(record)
            if outcome.state in SUCCESS_STATES:
                counts["settled"] += 1
                markets.add(record.market_id)
            elif outcome.state in FAILURE_STATES:
                counts["failed"] += 1
            else:
                counts["pending"] += 1

        closed = [str(market_id) for market_id in markets if self._close_market_if_settled(market_id)]
        summary = {
            "ok": True,
            "checked": counts["checked"],
            "settled": counts["settled"],
            "failed": counts["failed"],
            "pending": counts["pending"],
            "awaiting_rerun": counts["awaiting_rerun"],
            "markets_paid_out": closed,
        }
        logger.info(
            "payout_reconciliation_done checked=%s settled=%s failed=%s pending=%s awaiting_rerun=%s",
            summary["checked"],
            summary["settled"],
            summary["failed"],
            summary["pending"],
            summary["awaiting_rerun"],
        )
        return summary

    def _close_market_if_settled(self, market_id) -> bool:
        market = self.db.get(Market, market_id)
        run = self.db.query(PayoutRun).filter(PayoutRun.market_id == market_id).one_or_none()
        if market is None or run is None or market.state != MarketState.RESOLVED:
            return False
        if run.completed_step != "DONE" or (run.context or {}).get("unresolved"):
            return False
        records = self.db.query(PayoutRecord).filter(PayoutRecord.market_id == market_id).all()
        if any(record.transfer_state not in SUCCESS_STATES for record in records):
            return False
        market.state = MarketState.PAID_OUT
        run.status = "completed"
        self.db.commit()
        logger.info("market_paid_out_after_reconciliation market_id=%s", market_id)
        return True


async def reconcile_pending_payouts(
    db: Session,
    *,
    reconciler: PayoutReconciler | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    if reconciler is None:
        from ..payouts.factory import build_reconciler

        reconciler = build_reconciler(db)
    return await reconciler.reconcile(limit)
