import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...db import get_db
from ...models import Market, Ngo, PayoutRecord, RecipientType

router = APIRouter()


@router.get("/ngos/{ngo_id}/payouts")
def ngo_payouts(ngo_id: uuid.UUID, db: Session = Depends(get_db)):
    ngo = db.get(Ngo, ngo_id)
    if ngo is None:
        raise HTTPException(status_code=404, detail="NGO not found")
    rows = (
        db.query(PayoutRecord, Market)
        .join(Market, Market.id == PayoutRecord.market_id)
        .filter(
            PayoutRecord.recipient_type == RecipientType.NGO,
            PayoutRecord.recipient_id == ngo.id,
        )
        .order_by(PayoutRecord.created_at.desc(), PayoutRecord.id.desc())
        .all()
    )
    return {
        "ngo_id": str(ngo.id),
        "name": ngo.name,
        "payouts": [
            {
                "id": record.id,
                "market_id": str(market.id),
                "question": market.question,
                "outcome": market.outcome,
                "resolved_at": market.resolved_at.isoformat() if market.resolved_at else None,
                "chain": record.chain,
                "principal": str(record.principal),
                "yield_share": str(record.yield_share),
                "total": str(record.total),
                "transfer_id": record.transfer_id,
                "transfer_state": record.transfer_state,
                "tx_hash": record.tx_hash,
                "created_at": record.created_at.isoformat() if record.created_at else None,
            }
            for record, market in rows
        ],
    }
