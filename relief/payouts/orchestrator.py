"""Payout saga for one resolved market.

The run is an explicit state machine persisted in ``payout_runs``. Every step
commits ``completed_step`` together with the JSON context before the next one
starts, and irreversible sub-actions inside a step checkpoint the context as
they finish, so a re-run resumes after the last completed work instead of
repeating it. Nothing is rolled back: a fatal error halts the run and leaves
the market in its last consistent state.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from ..adapters.bridge import BridgeAdapter, BridgeResult
from ..adapters.positions import PositionResolver
from ..adapters.settlement import ONCHAIN_RESOLVED, LoserPayout, SettlementContracts, WinnerPayout
from ..adapters.swap import SwapAdapter
from ..adapters.vault import WithdrawResult, YieldVaultAdapter
from ..chain.config import ChainConfig, chain_by_name
from ..chain.tokens import transfer_token
from ..core.errors import (
    BalanceInsufficientError,
    BridgeError,
    ChainTransactionError,
    InvariantViolationError,
    PositionTrackingError,
    PreconditionError,
    SagaError,
    SimulationRevertError,
    TransientInfraError,
)
from ..core.logging_config import bind_log_context
from ..core.units import from_units, is_bytes32_hex, normalize_hex, to_units
from ..custody.client import CustodialWalletClient
from ..custody.schemas import FAILURE_STATES, SUCCESS_STATES
from ..models import (
    BridgeOperation,
    Market,
    MarketState,
    Ngo,
    Outcome,
    PayoutRecord,
    PayoutRun,
    RecipientType,
    Trade,
    Trader,
    as_uuid,
)
from ..settings import settings
from .calculator import PayoutCalculator, PayoutPlan
from .distribution import PayoutDistributor, RecipientOutcome, TreasuryWallet, outcome_from_record

logger = logging.getLogger(__name__)


class SagaState:
    FETCHING_CONTEXT = "FETCHING_CONTEXT"
    RESOLVING_POSITIONS = "RESOLVING_POSITIONS"
    WITHDRAWING = "WITHDRAWING"
    BALANCE_CONFIRMED = "BALANCE_CONFIRMED"
    SWAPPING_BACK = "SWAPPING_BACK"
    BRIDGING_BACK = "BRIDGING_BACK"
    YIELD_RECORDED = "YIELD_RECORDED"
    ONCHAIN_RESOLVED = "ONCHAIN_RESOLVED"
    PAYOUTS_CALCULATED = "PAYOUTS_CALCULATED"
    DISTRIBUTING_NGO = "DISTRIBUTING_NGO"
    DISTRIBUTING_TRADERS = "DISTRIBUTING_TRADERS"
    DONE = "DONE"

    ORDER = (
        FETCHING_CONTEXT,
        RESOLVING_POSITIONS,
        WITHDRAWING,
        BALANCE_CONFIRMED,
        SWAPPING_BACK,
        BRIDGING_BACK,
        YIELD_RECORDED,
        ONCHAIN_RESOLVED,
        PAYOUTS_CALCULATED,
        DISTRIBUTING_NGO,
        DISTRIBUTING_TRADERS,
        DONE,
    )


class RunStatus:
    RUNNING = "running"
    HALTED = "halted"
    COMPLETED = "completed"
    PARTIAL = "partial"


@dataclass
class PayoutRunResult:
    ok: bool
    market_id: str
    status: str
    completed_step: str | None = None
    recipients: list[dict[str, Any]] = field(default_factory=list)
    totals: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None

    @property
    def partial(self) -> bool:
        return self.ok and self.status == RunStatus.PARTIAL

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["partial"] = self.partial
        return payload


class PayoutOrchestrator:
    def __init__(
        self,
        db: Session,
        *,
        home,
        vault,
        home_config: ChainConfig,
        vault_config: ChainConfig,
        positions: PositionResolver,
        vault_adapter: YieldVaultAdapter,
        swap: SwapAdapter,
        bridge: BridgeAdapter,
        settlement: SettlementContracts,
        custody: CustodialWalletClient,
        distributor: PayoutDistributor,
        calculator: PayoutCalculator | None = None,
        treasury_wallet_id: str | None = None,
        vault_token: str | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.db = db
        self.home = home
        self.vault = vault
        self.home_config = home_config
        self.vault_config = vault_config
        self.positions = positions
        self.vault_adapter = vault_adapter
        self.swap = swap
        self.bridge = bridge
        self.settlement = settlement
        self.custody = custody
        self.distributor = distributor
        self.calculator = calculator or PayoutCalculator()
        self.treasury_wallet_id = treasury_wallet_id or settings.CIRCLE_TREASURY_WALLET_ID
        self.vault_token = vault_token or settings.VAULT_TOKEN_ADDRESS or vault_config.usdc_address
        self._sleep = sleep or asyncio.sleep
        self._handlers = {
            SagaState.RESOLVING_POSITIONS: self._resolve_positions,
            SagaState.WITHDRAWING: self._withdraw,
            SagaState.BALANCE_CONFIRMED: self._confirm_balance,
            SagaState.SWAPPING_BACK: self._swap_back,
            SagaState.BRIDGING_BACK: self._bridge_back,
            SagaState.YIELD_RECORDED: self._record_yield,
            SagaState.ONCHAIN_RESOLVED: self._resolve_onchain,
            SagaState.PAYOUTS_CALCULATED: self._calculate_payouts,
            SagaState.DISTRIBUTING_NGO: self._distribute_ngos,
            SagaState.DISTRIBUTING_TRADERS: self._distribute_traders,
            SagaState.DONE: self._finish,
        }

    async def run(self, market_id) -> PayoutRunResult:
        market_key = as_uuid(market_id)
        market = self.db.get(Market, market_key) if market_key else None
        if market is None:
            error = PreconditionError(
                "market not found",
                step=SagaState.FETCHING_CONTEXT,
                context={"market_id": str(market_id)},
            )
            error.http_status = 404
            return PayoutRunResult(ok=False, market_id=str(market_id), status=RunStatus.HALTED, error=error.to_dict())

        run = self._load_run(market)
        if run is not None and run.completed_step == SagaState.DONE and market.state == MarketState.PAID_OUT:
            logger.info("payout_run_already_completed market_id=%s", market.id)
            return self._result(market, run, ok=True)

        ctx: dict[str, Any] = dict(run.context or {}) if run is not None else {}
        try:
            self._fetch_context(market, ctx)
        except SagaError as exc:
            exc.with_step(SagaState.FETCHING_CONTEXT)
            logger.warning("payout_precondition_failed market_id=%s error=%s", market.id, exc.message)
            if run is not None:
                self._halt(run, exc)
            return PayoutRunResult(
                ok=False,
                market_id=str(market.id),
                status=RunStatus.HALTED,
                completed_step=run.completed_step if run is not None else None,
                error=exc.to_dict(),
            )

        if run is None:
            run = PayoutRun(market_id=market.id, context={}, attempts=0, status=RunStatus.RUNNING)
            self.db.add(run)
        run.attempts = (run.attempts or 0) + 1
        run.status = RunStatus.RUNNING
        run.last_error = None
        run.error_step = None
        self._checkpoint(run, ctx)
        if run.completed_step is None:
            self._complete_step(run, SagaState.FETCHING_CONTEXT, ctx)

        steps = self._pending_steps(run, market)
        logger.info(
            "payout_run_started market_id=%s attempt=%s resume_after=%s steps=%s",
            market.id,
            run.attempts,
            run.completed_step,
            len(steps),
        )
        current = SagaState.FETCHING_CONTEXT
        try:
            for current in steps:
                with bind_log_context(market_id=str(market.id), step=current):
                    await self._handlers[current](market, run, ctx)
                    self._complete_step(run, current, ctx)
        except SagaError as exc:
            exc.with_step(current)
            self.db.rollback()
            self._halt(run, exc)
            return self._result(market, run, ok=False, error=exc.to_dict())
        except Exception as exc:
            logger.exception("payout_step_unexpected_error market_id=%s step=%s", market.id, current)
            wrapped = SagaError(str(exc) or exc.__class__.__name__, step=current, context={"type": exc.__class__.__name__})
            self.db.rollback()
            self._halt(run, wrapped)
            return self._result(market, run, ok=False, error=wrapped.to_dict())

        return self._result(market, run, ok=True)

    def _fetch_context(self, market: Market, ctx: dict[str, Any]) -> None:
        if market.state != MarketState.RESOLVED:
            raise PreconditionError(
                f"market is {market.state}, payouts need RESOLVED",
                context={"market_id": str(market.id), "state": market.state},
            )
        if market.outcome not in Outcome.PAYABLE:
            raise PreconditionError(
                f"market outcome {market.outcome} is not payable",
                context={"market_id": str(market.id), "outcome": market.outcome},
            )
        if not is_bytes32_hex(market.onchain_id):
            raise PreconditionError(
                "market has no valid on-chain id",
                context={"market_id": str(market.id), "onchain_id": market.onchain_id},
            )
        if not market.escrow_address:
            raise PreconditionError("market has no escrow address", context={"market_id": str(market.id)})
        principal = (
            self.db.query(func.coalesce(func.sum(Trade.principal_amount), 0))
            .filter(Trade.market_id == market.id)
            .scalar()
        )
        ctx["market_onchain_id"] = normalize_hex(market.onchain_id)
        ctx["outcome"] = market.outcome
        ctx["principal_total"] = to_units(principal)

    def _pending_steps(self, run: PayoutRun, market: Market) -> list[str]:
        completed = run.completed_step
        if completed == SagaState.DONE and market.state != MarketState.PAID_OUT:
            # failed recipients left the market RESOLVED; retry the distribution only
            return list(SagaState.ORDER[SagaState.ORDER.index(SagaState.DISTRIBUTING_NGO):])
        start = SagaState.ORDER.index(completed) + 1 if completed in SagaState.ORDER else 1
        return list(SagaState.ORDER[start:])

    async def _resolve_positions(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        scan = await self.positions.find_all(ctx["market_onchain_id"], market.position_scan_from_block)
        if scan.partial:
            raise PositionTrackingError(
                "position scan is incomplete",
                context={"failed_ranges": [list(item) for item in scan.failed_ranges]},
            )
        if not scan.positions:
            raise PositionTrackingError(
                "no vault positions found for market",
                context={"from_block": scan.from_block, "to_block": scan.to_block},
            )
        if scan.total_deposited > ctx["principal_total"]:
            raise InvariantViolationError(
                "vault deposits exceed recorded trade principal",
                context={"deposited": scan.total_deposited, "principal": ctx["principal_total"]},
            )
        ctx["positions"] = [asdict(position) for position in scan.positions]
        ctx["deposited"] = scan.total_deposited
        ctx["scan"] = {"from_block": scan.from_block, "to_block": scan.to_block}

    async def _withdraw(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        withdrawals = ctx.setdefault("withdrawals", {})
        for position in ctx["positions"]:
            position_id = position["position_id"]
            if position_id in withdrawals:
                continue
            try:
                result = await self.vault_adapter.withdraw(position_id)
            except SimulationRevertError:
                # a crash after an earlier withdrawal leaves the position closed
                result = await self.vault_adapter.find_withdrawal(position_id, position["block_number"])
                if result is None:
                    raise
                logger.warning(
                    "vault_withdrawal_recovered market_id=%s position_id=%s tx=%s",
                    market.id,
                    position_id,
                    result.tx_hash,
                )
            withdrawals[position_id] = asdict(result)
            self._checkpoint(run, ctx)
        results = [WithdrawResult(**item) for item in withdrawals.values()]
        ctx["withdrawn_principal"] = sum(item.principal for item in results)
        ctx["withdrawn_yield"] = sum(item.yield_amount for item in results)
        ctx["expected_balance"] = sum(item.total for item in results)

    async def _confirm_balance(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        expected = int(ctx["expected_balance"])
        attempts = max(int(settings.BALANCE_RECHECK_ATTEMPTS), 1)
        balance = 0
        for attempt in range(attempts):
            balance = await self.vault_adapter.balance()
            if balance >= expected:
                break
            if attempt + 1 < attempts:
                delay = settings.BALANCE_RECHECK_BASE_SECONDS * (attempt + 1)
                logger.info(
                    "vault_balance_recheck market_id=%s balance=%s expected=%s delay_seconds=%s",
                    market.id,
                    balance,
                    expected,
                    delay,
                )
                await self._sleep(delay)
        if balance < expected or balance <= 0:
            raise BalanceInsufficientError(
                "vault balance is zero after withdrawal" if balance <= 0 else "vault balance is short of the withdrawn total",
                context={"expected": expected, "balance": balance, "attempts": attempts},
            )
        ctx["available"] = expected

    async def _swap_back(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        available = int(ctx["available"])
        if not ctx.get("transfer_out_tx"):
            ctx["transfer_out_tx"] = await self.vault_adapter.transfer_out(self.vault.address, available) or "submitted"
            self._checkpoint(run, ctx)
        if normalize_hex(self.vault_token) == normalize_hex(self.vault_config.usdc_address):
            ctx["bridge_amount"] = available
            return
        if not ctx.get("swap"):
            result = await self.swap.swap(
                self.vault_token,
                self.vault_config.usdc_address,
                settings.SWAP_FEE_TIER,
                available,
                settings.SWAP_REVERSE_SLIPPAGE_BPS,
            )
            ctx["swap"] = asdict(result)
            self._checkpoint(run, ctx)
        ctx["bridge_amount"] = int(ctx["swap"]["amount_out"])

    async def _bridge_back(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        amount = int(ctx["bridge_amount"])
        usdc = self.home_config.usdc_address
        result = BridgeResult.from_dict(ctx["bridge_back"]) if ctx.get("bridge_back") else None
        if result is not None and result.state == "error":
            if result.message:
                # burned but never minted; only the mint is retried
                result.state = "pending"
            else:
                result = None
        if result is None:
            ctx["home_balance_before"] = await self.home.token_balance(usdc)
            self._checkpoint(run, ctx)
            result = await self.bridge.bridge(self.vault_config, self.home_config, amount)
            operation = BridgeOperation(
                market_id=market.id,
                direction="return",
                amount=from_units(amount),
                source_chain=self.vault_config.name,
                destination_chain_id=self.home_config.chain_id,
                attestation_id=result.attestation_id,
                burn_tx_hash=result.burn_tx_hash,
                message=result.message,
                state=result.state,
            )
            self.db.add(operation)
            self.db.flush()
            ctx["bridge_back_operation_id"] = operation.id
            ctx["bridge_back"] = result.to_dict()
            self._checkpoint(run, ctx)

        _raise_bridge_error(result)
        if result.state == "pending":
            await self._sleep(settings.BRIDGE_GRACE_SECONDS)
            result = await self.bridge.resume(result, self.home_config)
            ctx["bridge_back"] = result.to_dict()
            operation_id = ctx.get("bridge_back_operation_id")
            operation = self.db.get(BridgeOperation, operation_id) if operation_id else None
            if operation is not None:
                operation.state = result.state
            self._checkpoint(run, ctx)
            _raise_bridge_error(result)

        reserve = settings.GAS_RESERVE_UNITS if self.home_config.native_settlement_asset else 0
        required = int(ctx.get("home_balance_before", 0)) + amount - reserve
        balance = await self.home.token_balance(usdc)
        if balance < required:
            if result.state != "success":
                raise BalanceInsufficientError(
                    "bridged funds have not arrived on the home chain",
                    context={"balance": balance, "required": required, "bridge_state": result.state},
                )
            logger.warning(
                "home_balance_short_after_bridge market_id=%s balance=%s required=%s",
                market.id,
                balance,
                required,
            )
        ctx["home_balance_after"] = balance

    async def _record_yield(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        distributable = int(ctx.get("withdrawn_yield", 0)) + int(settings.DISTRIBUTION_YIELD_TOP_UP_UNITS)
        if distributable <= 0:
            raise BalanceInsufficientError(
                "market produced no distributable yield",
                context={"withdrawn_yield": ctx.get("withdrawn_yield", 0)},
            )
        recorded = await self.settlement.total_yield(ctx["market_onchain_id"])
        if recorded >= distributable:
            logger.info(
                "yield_already_recorded market_id=%s recorded=%s distributable=%s",
                market.id,
                recorded,
                distributable,
            )
        else:
            ctx["yield_record_tx"] = await self.settlement.record_yield(
                ctx["market_onchain_id"], distributable - recorded
            )
        ctx["distributable_yield"] = distributable

    async def _resolve_onchain(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        state = await self.settlement.ensure_resolved(ctx["market_onchain_id"], market.escrow_address)
        if state < ONCHAIN_RESOLVED:
            raise ChainTransactionError(
                "market did not reach the resolved state on-chain",
                context={"onchain_state": state},
            )
        ctx["onchain_state"] = state

    async def _calculate_payouts(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        onchain_id = ctx["market_onchain_id"]
        total_yield = await self.settlement.total_yield(onchain_id)
        if total_yield <= 0:
            raise BalanceInsufficientError("treasury reports no yield for market", context={"total_yield": total_yield})

        winners = await self.settlement.winner_payouts(onchain_id)
        losers = await self.settlement.loser_payouts(onchain_id)
        if not winners and not losers:
            ctx["calculate_tx"] = await self.settlement.calculate_payouts(market.escrow_address)
            winners = await self.settlement.winner_payouts(onchain_id)
            losers = await self.settlement.loser_payouts(onchain_id)
        if not winners and not losers:
            winners, losers = self._payouts_from_trades(market)

        reported: dict[str, int] = {}
        for row in await self.settlement.ngo_payouts(onchain_id):
            ngo = self.db.query(Ngo).filter(func.lower(Ngo.onchain_id) == row.ngo_onchain_id).one_or_none()
            if ngo is None:
                logger.warning("payout_ngo_unknown market_id=%s ngo_onchain_id=%s", market.id, row.ngo_onchain_id)
                continue
            reported[str(ngo.id)] = reported.get(str(ngo.id), 0) + row.amount

        plan = self.calculator.build_plan(
            total_yield,
            winners,
            losers,
            reported_ngo_amounts=reported,
            eligible_ngos=[str(item) for item in (market.eligible_ngo_ids or [])],
        )
        ctx["plan"] = plan.to_dict()

    def _payouts_from_trades(self, market: Market) -> tuple[list[WinnerPayout], list[LoserPayout]]:
        logger.warning("payout_contract_rows_empty market_id=%s using_trades=true", market.id)
        rows = (
            self.db.query(Trader.wallet_address, Trade.side, func.sum(Trade.principal_amount))
            .join(Trade, Trade.trader_id == Trader.id)
            .filter(Trade.market_id == market.id)
            .group_by(Trader.wallet_address, Trade.side)
            .all()
        )
        winners = []
        losers = []
        for address, side, principal in rows:
            if str(side).upper() == market.outcome:
                winners.append(WinnerPayout(address.lower(), to_units(principal), 0))
            else:
                losers.append(LoserPayout(address.lower(), to_units(principal)))
        return winners, losers

    async def _distribute_ngos(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        plan = PayoutPlan.from_dict(ctx["plan"])
        treasury = await self._fund_treasury(market, run, ctx, plan)
        unresolved = ctx.setdefault("unresolved", {})
        for allocation in plan.ngos:
            key = f"{RecipientType.NGO}:{allocation.recipient}"
            ngo_key = as_uuid(allocation.recipient)
            ngo = self.db.get(Ngo, ngo_key) if ngo_key else None
            if ngo is None or not ngo.wallet_address:
                unresolved[key] = "ngo_not_found" if ngo is None else "ngo_wallet_missing"
                continue
            try:
                chain = chain_by_name(ngo.preferred_chain) if ngo.preferred_chain else self.home_config
            except SagaError as exc:
                unresolved[key] = exc.code
                continue
            unresolved.pop(key, None)
            await self.distributor.pay(
                market,
                recipient_type=RecipientType.NGO,
                recipient_id=ngo.id,
                destination_address=ngo.wallet_address,
                principal=allocation.principal,
                yield_share=allocation.yield_share,
                treasury=treasury,
                chain=chain,
            )
            self._checkpoint(run, ctx)

    async def _distribute_traders(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        plan = PayoutPlan.from_dict(ctx["plan"])
        treasury = await self._fund_treasury(market, run, ctx, plan)
        unresolved = ctx.setdefault("unresolved", {})
        for recipient_type, allocation in plan.trader_allocations:
            key = f"{recipient_type}:{allocation.recipient}"
            trader = self._trader_for(allocation.recipient)
            if trader is None:
                unresolved[key] = "trader_not_found"
                continue
            unresolved.pop(key, None)
            await self.distributor.pay(
                market,
                recipient_type=recipient_type,
                recipient_id=trader.id,
                destination_address=trader.wallet_address,
                principal=allocation.principal,
                yield_share=allocation.yield_share,
                treasury=treasury,
            )
            self._checkpoint(run, ctx)

    def _trader_for(self, wallet_address: str) -> Trader | None:
        matches = (
            self.db.query(Trader)
            .filter(func.lower(Trader.wallet_address) == wallet_address.lower())
            .order_by(Trader.created_at.asc(), Trader.id.asc())
            .all()
        )
        if len(matches) > 1:
            # rows differing only in case; the oldest keeps the idempotency keys stable
            logger.warning(
                "trader_wallet_ambiguous wallet=%s matches=%s chosen=%s",
                wallet_address,
                len(matches),
                matches[0].id,
            )
        return matches[0] if matches else None

    async def _finish(self, market: Market, run: PayoutRun, ctx: dict[str, Any]) -> None:
        records = self._records(market)
        failed = [record for record in records if record.transfer_state in FAILURE_STATES]
        # pending transfers keep the market RESOLVED until reconciliation settles them
        unsettled = [record for record in records if record.transfer_state not in SUCCESS_STATES]
        if unsettled or ctx.get("unresolved"):
            run.status = RunStatus.PARTIAL
            logger.warning(
                "payout_run_partial market_id=%s failed=%s unsettled=%s unresolved=%s",
                market.id,
                len(failed),
                len(unsettled),
                len(ctx.get("unresolved") or {}),
            )
        else:
            market.state = MarketState.PAID_OUT
            run.status = RunStatus.COMPLETED
        run.finished_at = datetime.now(timezone.utc)

    async def _fund_treasury(self, market: Market, run: PayoutRun, ctx: dict[str, Any], plan: PayoutPlan) -> TreasuryWallet:
        if not self.treasury_wallet_id:
            raise PreconditionError("CIRCLE_TREASURY_WALLET_ID is not configured")
        funding = ctx.get("treasury_funding")
        if not funding:
            wallet = await self.custody.get_wallet(self.treasury_wallet_id)
            needed = self._custodial_total(plan)
            balance = await self.home.token_balance(self.home_config.usdc_address)
            reserve = settings.GAS_RESERVE_UNITS if self.home_config.native_settlement_asset else 0
            spendable = max(balance - reserve, 0)
            amount = min(needed, spendable)
            if amount <= 0:
                raise BalanceInsufficientError(
                    "signer has no spendable balance to fund the treasury",
                    context={"balance": balance, "reserve": reserve, "needed": needed},
                )
            if amount < needed:
                logger.warning(
                    "treasury_funding_capped market_id=%s needed=%s spendable=%s",
                    market.id,
                    needed,
                    spendable,
                )
            tx_hash = await transfer_token(
                self.home, self.home_config.usdc_address, wallet.address, amount, label="treasury_funding"
            )
            funding = {"wallet_address": wallet.address, "amount": amount, "tx_hash": tx_hash}
            ctx["treasury_funding"] = funding
            self._checkpoint(run, ctx)
            logger.info(
                "treasury_funded market_id=%s wallet=%s amount=%s tx=%s",
                market.id,
                wallet.address,
                amount,
                tx_hash,
            )
        if not ctx.get("treasury_token_id"):
            ctx["treasury_token_id"] = await self._treasury_token_id()
            self._checkpoint(run, ctx)
        return TreasuryWallet(wallet_id=self.treasury_wallet_id, token_id=ctx["treasury_token_id"])

    def _custodial_total(self, plan: PayoutPlan) -> int:
        total = sum(allocation.total for _, allocation in plan.trader_allocations)
        for allocation in plan.ngos:
            ngo_key = as_uuid(allocation.recipient)
            ngo = self.db.get(Ngo, ngo_key) if ngo_key else None
            if ngo is None:
                continue
            if ngo.preferred_chain and ngo.preferred_chain.upper() != self.home_config.name.upper():
                continue
            total += allocation.total
        return total

    async def _treasury_token_id(self) -> str:
        usdc = normalize_hex(self.home_config.usdc_address)
        attempts = max(int(settings.TREASURY_TOKEN_POLL_ATTEMPTS), 1)
        for attempt in range(1, attempts + 1):
            for balance in await self.custody.get_token_balances(self.treasury_wallet_id):
                if normalize_hex(balance.token_address) == usdc or (balance.symbol or "").upper() == "USDC":
                    return balance.token_id
            logger.info("treasury_token_not_indexed attempt=%s max_attempts=%s", attempt, attempts)
            if attempt < attempts:
                await self._sleep(settings.TRANSFER_POLL_INTERVAL_SECONDS)
        raise TransientInfraError(
            "settlement token is not indexed in the treasury wallet yet",
            context={"wallet_id": self.treasury_wallet_id, "attempts": attempts},
        )

    def _load_run(self, market: Market) -> PayoutRun | None:
        return self.db.query(PayoutRun).filter(PayoutRun.market_id == market.id).one_or_none()

    def _checkpoint(self, run: PayoutRun, ctx: dict[str, Any]) -> None:
        run.context = dict(ctx)
        flag_modified(run, "context")
        self.db.commit()

    def _complete_step(self, run: PayoutRun, step: str, ctx: dict[str, Any]) -> None:
        run.completed_step = step
        self._checkpoint(run, ctx)
        logger.info("payout_step_completed market_id=%s step=%s", run.market_id, step)

    def _halt(self, run: PayoutRun, error: SagaError) -> None:
        run.status = RunStatus.HALTED
        run.last_error = error.message
        run.error_step = error.step
        self.db.commit()
        logger.error(
            "payout_run_halted market_id=%s step=%s code=%s error=%s",
            run.market_id,
            error.step,
            error.code,
            error.message,
        )

    def _records(self, market: Market) -> list[PayoutRecord]:
        return (
            self.db.query(PayoutRecord)
            .filter(PayoutRecord.market_id == market.id)
            .order_by(PayoutRecord.id.asc())
            .all()
        )

    def _result(self, market: Market, run: PayoutRun, *, ok: bool, error: dict[str, Any] | None = None) -> PayoutRunResult:
        ctx = run.context or {}
        recipients: list[RecipientOutcome] = [outcome_from_record(record) for record in self._records(market)]
        for key, reason in (ctx.get("unresolved") or {}).items():
            recipient_type, recipient_id = key.split(":", 1)
            recipients.append(
                RecipientOutcome(recipient_type=recipient_type, recipient_id=recipient_id, total="0", state="FAILED", error=reason)
            )
        totals: dict[str, Any] = {}
        if ctx.get("plan"):
            plan = PayoutPlan.from_dict(ctx["plan"])
            totals = {
                "total_yield": plan.split.total,
                "ngo_share": plan.split.ngo_share,
                "winner_share": plan.split.winner_share,
                "protocol_share": plan.split.protocol_share,
                "undistributed": plan.undistributed,
                "outflow": plan.total_outflow,
                "settled": sum(to_units(record.total) for record in self._records(market) if record.transfer_state in SUCCESS_STATES),
            }
        return PayoutRunResult(
            ok=ok,
            market_id=str(market.id),
            status=run.status,
            completed_step=run.completed_step,
            recipients=[item.to_dict() for item in recipients],
            totals=totals,
            error=error,
        )


def _raise_bridge_error(result: BridgeResult) -> None:
    if result.state != "error":
        return
    failed = result.first_error()
    raise BridgeError(
        f"bridge failed at {failed.name if failed else 'unknown'}: {failed.error_message if failed else ''}".strip(),
        context={"bridge": result.to_dict()},
    )
