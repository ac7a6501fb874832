import logging
from dataclasses import asdict, dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..adapters.bridge import BridgeAdapter, BridgeResult
from ..chain.config import ChainConfig, chain_by_name
from ..core.errors import SagaError
from ..core.units import format_units, from_units, to_units
from ..custody.client import CustodialWalletClient, transfer_idempotency_key
from ..custody.poller import PollOutcome, TransactionPoller
from ..custody.schemas import FAILURE_STATES, PENDING_STATES, SUCCESS_STATES
from ..models import BridgeOperation, Market, PayoutRecord

logger = logging.getLogger(__name__)

CREATING = "CREATING"
CCTP_PREFIX = "cctp:"


@dataclass(frozen=True)
class RecipientOutcome:
    recipient_type: str
    recipient_id: str
    total: str
    state: str
    transfer_id: str | None = None
    tx_hash: str | None = None
    needs_reconciliation: bool = False
    error: str | None = None
    skipped: bool = False

    @property
    def failed(self) -> bool:
        return self.state in FAILURE_STATES

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TreasuryWallet:
    wallet_id: str
    token_id: str


class PayoutDistributor:
    """Pays one recipient at a time, at most once per (market, recipient, type).

    The record is committed before any transfer is requested, and the custody
    idempotency key is derived from the record, so a crash between the request
    and the bookkeeping re-attaches to the same transfer on the next run.
    """

    def __init__(
        self,
        db: Session,
        custody: CustodialWalletClient,
        poller: TransactionPoller,
        *,
        home: ChainConfig,
        bridge: BridgeAdapter | None = None,
    ) -> None:
        self.db = db
        self.custody = custody
        self.poller = poller
        self.home = home
        self.bridge = bridge

    async def pay(
        self,
        market: Market,
        *,
        recipient_type: str,
        recipient_id,
        destination_address: str,
        principal: int,
        yield_share: int,
        treasury: TreasuryWallet | None,
        chain: ChainConfig | None = None,
    ) -> RecipientOutcome:
        chain = chain or self.home
        total = int(principal) + int(yield_share)
        record = self._load_or_create(
            market,
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            destination_address=destination_address,
            chain=chain,
            principal=principal,
            yield_share=yield_share,
        )
        if record.transfer_state in SUCCESS_STATES:
            logger.info(
                "payout_already_settled market_id=%s recipient_type=%s recipient_id=%s transfer_id=%s",
                market.id,
                recipient_type,
                recipient_id,
                record.transfer_id,
            )
            return _outcome(record, skipped=True)
        if total <= 0:
            record.transfer_state = "COMPLETE"
            record.error_reason = "zero_amount"
            self.db.commit()
            return _outcome(record, skipped=True)

        try:
            if chain.name.upper() != self.home.name.upper():
                await self._pay_cross_chain(record, market, chain, destination_address, total)
            elif record.transfer_id and record.transfer_state in PENDING_STATES:
                transfer = await self.custody.get_transfer(record.transfer_id)
                self._apply_poll(record, await self.poller.poll(transfer))
            else:
                await self._pay_custodial(record, market, treasury, destination_address, total)
        except SagaError as exc:
            self._mark_unsettled(record, exc.code, exc.message)
        except Exception as exc:
            logger.exception(
                "payout_transfer_error market_id=%s recipient_type=%s recipient_id=%s",
                market.id,
                recipient_type,
                recipient_id,
            )
            self._mark_unsettled(record, "unexpected_error", str(exc))
        self.db.commit()
        outcome = _outcome(record)
        logger.info(
            "payout_recipient_done market_id=%s recipient_type=%s recipient_id=%s total=%s state=%s "
            "reconcile=%s",
            market.id,
            recipient_type,
            recipient_id,
            outcome.total,
            outcome.state,
            outcome.needs_reconciliation,
        )
        return outcome

    async def refresh(self, record: PayoutRecord) -> RecipientOutcome:
        """Re-read one unsettled record without creating a new transfer."""
        try:
            if record.transfer_id and record.transfer_id.startswith(CCTP_PREFIX):
                market = self.db.get(Market, record.market_id)
                await self._pay_cross_chain(
                    record,
                    market,
                    chain_by_name(record.chain),
                    record.destination_address,
                    to_units(record.total),
                )
            elif record.transfer_id:
                transfer = await self.custody.get_transfer(record.transfer_id)
                self._apply_poll(record, PollOutcome(transfer, attempts=1, timed_out=transfer.is_pending))
        except SagaError as exc:
            self._mark_unsettled(record, exc.code, exc.message)
        self.db.commit()
        return _outcome(record)

    async def _pay_custodial(
        self,
        record: PayoutRecord,
        market: Market,
        treasury: TreasuryWallet | None,
        destination_address: str,
        total: int,
    ) -> None:
        if treasury is None:
            raise SagaError("treasury wallet is not ready")
        if record.transfer_state in FAILURE_STATES:
            # a known failed transfer gets a fresh idempotency key
            record.attempt = (record.attempt or 1) + 1
            record.transfer_id = None
            record.transfer_state = CREATING
            self.db.commit()
        key = transfer_idempotency_key(market.id, record.recipient_type, record.recipient_id, record.attempt)
        created = await self.custody.create_transfer(
            wallet_id=treasury.wallet_id,
            token_id=treasury.token_id,
            destination_address=destination_address,
            amount=format_units(total),
            idempotency_key=key,
        )
        record.transfer_id = created.id
        record.transfer_state = created.state
        record.needs_reconciliation = False
        self.db.commit()
        self._apply_poll(record, await self.poller.poll(created))

    async def _pay_cross_chain(
        self,
        record: PayoutRecord,
        market: Market,
        chain: ChainConfig,
        destination_address: str,
        total: int,
    ) -> None:
        if self.bridge is None:
            raise SagaError(f"no bridge configured for payouts on {chain.name}")
        if record.transfer_id and record.transfer_id.startswith(CCTP_PREFIX):
            operation = self._bridge_operation(record.transfer_id)
            if operation is None or not operation.message:
                raise SagaError("pending cross-chain payout has no stored bridge message")
            result = BridgeResult(
                state="pending",
                source_chain=self.home.name,
                destination_chain=chain.name,
                amount=total,
                recipient=destination_address,
                message=operation.message,
                message_hash=operation.attestation_id,
            )
            result = await self.bridge.resume(result, chain)
            operation.state = result.state
        else:
            result = await self.bridge.bridge(self.home, chain, total, recipient=destination_address)
            if result.message_hash:
                self.db.add(
                    BridgeOperation(
                        market_id=market.id,
                        direction="ngo_payout",
                        amount=from_units(total),
                        source_chain=self.home.name,
                        destination_chain_id=chain.chain_id,
                        attestation_id=result.message_hash,
                        burn_tx_hash=result.burn_tx_hash,
                        message=result.message,
                        state=result.state,
                    )
                )
        self._apply_bridge(record, result)

    def _apply_bridge(self, record: PayoutRecord, result: BridgeResult) -> None:
        if result.message_hash:
            record.transfer_id = f"{CCTP_PREFIX}{result.message_hash}"
        record.tx_hash = result.burn_tx_hash or record.tx_hash
        if result.state == "success":
            record.transfer_state = "COMPLETE"
            record.needs_reconciliation = False
        elif result.state == "pending":
            record.transfer_state = "PENDING"
            record.needs_reconciliation = True
        else:
            failed_step = result.first_error()
            record.transfer_state = "FAILED"
            record.needs_reconciliation = False
            record.error_reason = f"bridge_{failed_step.name}" if failed_step else "bridge_error"
            record.error_details = failed_step.error_message if failed_step else None

    def _apply_poll(self, record: PayoutRecord, outcome: PollOutcome) -> None:
        transfer = outcome.transfer
        record.transfer_state = transfer.state
        record.tx_hash = transfer.tx_hash or record.tx_hash
        record.needs_reconciliation = outcome.timed_out
        if outcome.failed:
            record.error_reason = "simulation_revert" if outcome.simulation_revert else (transfer.error_reason or "failed")
            record.error_details = transfer.error_details
        elif outcome.succeeded:
            record.error_reason = None
            record.error_details = None

    def _mark_unsettled(self, record: PayoutRecord, reason: str, details: str) -> None:
        logger.error(
            "payout_transfer_unsettled market_id=%s recipient_type=%s recipient_id=%s reason=%s details=%s",
            record.market_id,
            record.recipient_type,
            record.recipient_id,
            reason,
            details,
        )
        record.error_reason = reason[:128]
        record.error_details = details
        if record.transfer_id and record.transfer_state in PENDING_STATES:
            # the transfer exists; only our view of it is stale
            record.needs_reconciliation = True
        elif record.transfer_state == CREATING:
            # the create request may have landed; retry with the same idempotency key
            record.needs_reconciliation = True
        else:
            record.transfer_state = "FAILED"

    def _load_or_create(
        self,
        market: Market,
        *,
        recipient_type: str,
        recipient_id,
        destination_address: str,
        chain: ChainConfig,
        principal: int,
        yield_share: int,
    ) -> PayoutRecord:
        record = self._find(market.id, recipient_type, recipient_id)
        if record is not None:
            return record
        record = PayoutRecord(
            market_id=market.id,
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            destination_address=destination_address,
            chain=chain.name,
            principal=from_units(principal),
            yield_share=from_units(yield_share),
            total=from_units(int(principal) + int(yield_share)),
            transfer_state=CREATING,
            attempt=1,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            record = self._find(market.id, recipient_type, recipient_id)
            if record is None:
                raise
        return record

    def _find(self, market_id, recipient_type: str, recipient_id) -> PayoutRecord | None:
        return (
            self.db.query(PayoutRecord)
            .filter(
                PayoutRecord.market_id == market_id,
                PayoutRecord.recipient_type == recipient_type,
                PayoutRecord.recipient_id == recipient_id,
            )
            .one_or_none()
        )

    def _bridge_operation(self, transfer_id: str) -> BridgeOperation | None:
        message_hash = transfer_id[len(CCTP_PREFIX):]
        return (
            self.db.query(BridgeOperation)
            .filter(BridgeOperation.attestation_id == message_hash)
            .order_by(BridgeOperation.id.desc())
            .first()
        )


def _outcome(record: PayoutRecord, skipped: bool = False) -> RecipientOutcome:
    return RecipientOutcome(
        recipient_type=record.recipient_type,
        recipient_id=str(record.recipient_id),
        total=str(record.total),
        state=record.transfer_state,
        transfer_id=record.transfer_id,
        tx_hash=record.tx_hash,
        needs_reconciliation=bool(record.needs_reconciliation),
        error=record.error_reason,
        skipped=skipped,
    )


def outcome_from_record(record: PayoutRecord) -> RecipientOutcome:
    return _outcome(record)
