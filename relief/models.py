import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base


class MarketState:
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    RESOLVED = "RESOLVED"
    PAID_OUT = "PAID_OUT"

    ORDER = (ACTIVE, CLOSED, RESOLVED, PAID_OUT)


class Outcome:
    YES = "YES"
    NO = "NO"
    INVALID = "INVALID"

    PAYABLE = (YES, NO)


class RecipientType:
    NGO = "NGO"
    WINNER = "WINNER"
    LOSER = "LOSER"


class Market(Base):
    __tablename__ = "markets"
    __table_args__ = (
        UniqueConstraint("onchain_id", name="uq_markets_onchain_id"),
        Index("ix_markets_state", "state"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    onchain_id: Mapped[str] = mapped_column(String(66), nullable=False)
    escrow_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    question: Mapped[str] = mapped_column(Text, default="")
    state: Mapped[str] = mapped_column(String(16), default=MarketState.ACTIVE, nullable=False)
    outcome: Mapped[str | None] = mapped_column(String(16), nullable=True)
    eligible_ngo_ids: Mapped[list] = mapped_column(JSON, default=list)
    # first block worth scanning for vault deposits; falls back to a trailing window
    position_scan_from_block: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )


class Trader(Base):
    __tablename__ = "traders"
    __table_args__ = (
        UniqueConstraint("wallet_address", name="uq_traders_wallet_address"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    custodial_wallet_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_market_id", "market_id"),
        Index("ix_trades_trader_id", "trader_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    market_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("markets.id", ondelete="CASCADE"), nullable=False
    )
    trader_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("traders.id", ondelete="CASCADE"), nullable=False
    )
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    principal_amount: Mapped[float] = mapped_column(Numeric(20, 6), nullable=False)
    custodial_transfer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())


class Ngo(Base):
    __tablename__ = "ngos"
    __table_args__ = (
        Index("ix_ngos_onchain_id", "onchain_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    onchain_id: Mapped[str | None] = mapped_column(String(66), nullable=True)
    wallet_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    custodial_wallet_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    preferred_chain: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())


class BridgeOperation(Base):
    __tablename__ = "bridge_operations"
    __table_args__ = (
        Index("ix_bridge_operations_market_id", "market_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    market_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("markets.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(20, 6), nullable=False)
    source_chain: Mapped[str] = mapped_column(String(32), nullable=False)
    destination_chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    attestation_id: Mapped[str | None] = mapped_column(String(132), nullable=True)
    burn_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    # raw CCTP message, kept so a pending mint can be resumed later
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())


class PayoutRecord(Base):
    __tablename__ = "payout_records"
    __table_args__ = (
        UniqueConstraint(
            "market_id",
            "recipient_id",
            "recipient_type",
            name="uq_payout_records_market_recipient",
        ),
        Index("ix_payout_records_reconcile", "needs_reconciliation"),
        Index("ix_payout_records_recipient", "recipient_type", "recipient_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    market_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("markets.id", ondelete="CASCADE"), nullable=False
    )
    recipient_type: Mapped[str] = mapped_column(String(8), nullable=False)
    recipient_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    destination_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    chain: Mapped[str] = mapped_column(String(32), nullable=False)
    principal: Mapped[float] = mapped_column(Numeric(20, 6), default=0)
    yield_share: Mapped[float] = mapped_column(Numeric(20, 6), default=0)
    total: Mapped[float] = mapped_column(Numeric(20, 6), default=0)
    transfer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transfer_state: Mapped[str] = mapped_column(String(32), nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, default=False)
    error_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )


class DeploymentRun(Base):
    __tablename__ = "deployment_runs"
    __table_args__ = (
        Index("ix_deployment_runs_market_status", "market_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    market_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("markets.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[float] = mapped_column(Numeric(20, 6), nullable=False)
    completed_step: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    # tx hashes, bridge progress and the swapped amount, so a re-run resumes
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_step: Mapped[str | None] = mapped_column(String(32), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
    finished_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PayoutRun(Base):
    __tablename__ = "payout_runs"
    __table_args__ = (
        UniqueConstraint("market_id", name="uq_payout_runs_market_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    market_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("markets.id", ondelete="CASCADE"), nullable=False
    )
    completed_step: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_step: Mapped[str | None] = mapped_column(String(32), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
    finished_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def as_uuid(value) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None
