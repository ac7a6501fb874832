"""Deposit leg: escrow -> vault chain -> lending position.

Each finished step is checkpointed on a ``DeploymentRun`` row. Re-running a
deployment that halted resumes after its last completed step, so escrow is
released and funds are bridged at most once per deployment.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from ..adapters.bridge import BridgeAdapter, BridgeResult
from ..adapters.settlement import SettlementContracts
from ..adapters.swap import SwapAdapter
from ..adapters.vault import YieldVaultAdapter
from ..chain.config import ChainConfig
from ..core.errors import BalanceInsufficientError, BridgeError, PreconditionError, SagaError
from ..core.units import from_units, is_bytes32_hex, normalize_hex, to_units
from ..models import BridgeOperation, DeploymentRun, Market, MarketState, as_uuid
from ..settings import settings

logger = logging.getLogger(__name__)


class DeploymentStep:
    ESCROW_RELEASE = "escrow_release"
    BRIDGE = "bridge"
    BRIDGE_REGISTRATION = "bridge_registration"
    SWAP = "swap"
    VAULT_DEPLOY = "vault_deploy"

    ORDER = (ESCROW_RELEASE, BRIDGE, BRIDGE_REGISTRATION, SWAP, VAULT_DEPLOY)


class DeploymentStatus:
    RUNNING = "running"
    HALTED = "halted"
    COMPLETED = "completed"


@dataclass
class DeploymentResult:
    ok: bool
    market_id: str
    amount: int
    run_id: int | None = None
    steps: list[dict[str, Any]] = field(default_factory=list)
    position_id: str | None = None
    attestation_id: str | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MarketDeployer:
    def __init__(
        self,
        *,
        home,
        vault,
        home_config: ChainConfig,
        vault_config: ChainConfig,
        bridge: BridgeAdapter,
        settlement: SettlementContracts,
        swap: SwapAdapter,
        vault_adapter: YieldVaultAdapter,
        vault_token: str | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.home = home
        self.vault = vault
        self.home_config = home_config
        self.vault_config = vault_config
        self.bridge = bridge
        self.settlement = settlement
        self.swap = swap
        self.vault_adapter = vault_adapter
        self.vault_token = vault_token or settings.VAULT_TOKEN_ADDRESS or vault_config.usdc_address
        self._sleep = sleep or asyncio.sleep
        self._handlers = {
            DeploymentStep.ESCROW_RELEASE: self._release_escrow,
            DeploymentStep.BRIDGE: self._bridge_out,
            DeploymentStep.BRIDGE_REGISTRATION: self._register_bridge,
            DeploymentStep.SWAP: self._swap_forward,
            DeploymentStep.VAULT_DEPLOY: self._deploy_to_vault,
        }

    async def deploy(self, db: Session, market: Market, amount: int) -> DeploymentResult:
        amount = int(amount)
        run = self._load_run(db, market, amount)
        if run.completed_step:
            logger.info(
                "market_deployment_resumed market_id=%s run_id=%s completed_step=%s",
                market.id,
                run.id,
                run.completed_step,
            )
        run.status = DeploymentStatus.RUNNING
        run.attempts = int(run.attempts or 0) + 1
        run.last_error = None
        run.error_step = None
        db.commit()

        ctx: dict[str, Any] = dict(run.context or {})
        ctx.setdefault("steps", [])
        step = DeploymentStep.ESCROW_RELEASE
        try:
            if market.position_scan_from_block is None:
                market.position_scan_from_block = await self.vault.block_number()
                db.commit()
            for step in self._pending_steps(run):
                await self._handlers[step](db, market, run, ctx, amount)
                self._complete_step(db, run, step, ctx)
        except SagaError as exc:
            exc.with_step(step)
            db.rollback()
            run.status = DeploymentStatus.HALTED
            run.last_error = exc.message
            run.error_step = exc.step
            db.commit()
            logger.error(
                "market_deployment_failed market_id=%s run_id=%s step=%s code=%s error=%s",
                market.id,
                run.id,
                step,
                exc.code,
                exc.message,
            )
            result = self._result(market, run, ctx, amount, ok=False)
            result.error = exc.to_dict()
            return result

        run.status = DeploymentStatus.COMPLETED
        run.finished_at = datetime.now(timezone.utc)
        db.commit()
        result = self._result(market, run, ctx, amount, ok=True)
        logger.info(
            "market_deployment_completed market_id=%s amount=%s position_id=%s attestation_id=%s attempts=%s",
            market.id,
            amount,
            result.position_id,
            result.attestation_id,
            run.attempts,
        )
        return result

    async def _release_escrow(self, db: Session, market: Market, run: DeploymentRun, ctx: dict[str, Any], amount: int) -> None:
        tx_hash = await self.settlement.release_escrow(self.home.address, amount)
        ctx["steps"].append(_step(DeploymentStep.ESCROW_RELEASE, tx_hash, self.home_config))

    async def _bridge_out(self, db: Session, market: Market, run: DeploymentRun, ctx: dict[str, Any], amount: int) -> None:
        usdc = self.vault_config.usdc_address
        bridged = BridgeResult.from_dict(ctx["bridge"]) if ctx.get("bridge") else None
        if bridged is not None and bridged.state == "error":
            if bridged.message:
                # burned but never minted; only the mint is retried
                bridged.state = "pending"
            else:
                bridged = None
        if bridged is None:
            ctx["vault_balance_before"] = await self.vault.token_balance(usdc)
            self._checkpoint(db, run, ctx)
            bridged = await self.bridge.bridge(self.home_config, self.vault_config, amount)
            ctx["bridge"] = bridged.to_dict()
            self._checkpoint(db, run, ctx)
        if bridged.state == "pending":
            await self._sleep(settings.BRIDGE_GRACE_SECONDS)
            bridged = await self.bridge.resume(bridged, self.vault_config)
            ctx["bridge"] = bridged.to_dict()
            self._checkpoint(db, run, ctx)
        if bridged.state == "error":
            failed = bridged.first_error()
            raise BridgeError(
                f"bridge to vault chain failed at {failed.name if failed else 'unknown'}",
                context={"bridge": bridged.to_dict()},
            )
        if not bridged.attestation_id:
            raise BridgeError("bridge produced no attestation id", context={"bridge": bridged.to_dict()})
        before = int(ctx.get("vault_balance_before", 0))
        balance = await self.vault.token_balance(usdc)
        if balance - before < amount and bridged.state != "success":
            raise BalanceInsufficientError(
                "bridged funds have not arrived on the vault chain",
                context={"before": before, "after": balance, "amount": amount, "bridge_state": bridged.state},
            )
        db.add(
            BridgeOperation(
                market_id=market.id,
                direction="deposit",
                amount=from_units(amount),
                source_chain=self.home_config.name,
                destination_chain_id=self.vault_config.chain_id,
                attestation_id=bridged.attestation_id,
                burn_tx_hash=bridged.burn_tx_hash,
                message=bridged.message,
                state=bridged.state,
            )
        )
        ctx["attestation_id"] = bridged.attestation_id
        ctx["steps"].append(
            _step(DeploymentStep.BRIDGE, bridged.burn_tx_hash, self.home_config, state=bridged.state)
        )

    async def _register_bridge(self, db: Session, market: Market, run: DeploymentRun, ctx: dict[str, Any], amount: int) -> None:
        tx_hash = await self.settlement.register_bridge(
            normalize_hex(market.onchain_id), amount, self.vault_config.chain_id, ctx["attestation_id"]
        )
        ctx["steps"].append(_step(DeploymentStep.BRIDGE_REGISTRATION, tx_hash, self.home_config))

    async def _swap_forward(self, db: Session, market: Market, run: DeploymentRun, ctx: dict[str, Any], amount: int) -> None:
        if normalize_hex(self.vault_token) == normalize_hex(self.vault_config.usdc_address):
            ctx["deposit_amount"] = amount
            return
        swapped = await self.swap.swap(
            self.vault_config.usdc_address,
            self.vault_token,
            settings.SWAP_FEE_TIER,
            amount,
            settings.SWAP_FORWARD_SLIPPAGE_BPS,
        )
        ctx["deposit_amount"] = swapped.amount_out
        ctx["steps"].append(
            _step(DeploymentStep.SWAP, swapped.tx_hash, self.vault_config, amount_out=swapped.amount_out)
        )

    async def _deploy_to_vault(self, db: Session, market: Market, run: DeploymentRun, ctx: dict[str, Any], amount: int) -> None:
        position_id = await self.vault_adapter.deploy(normalize_hex(market.onchain_id), int(ctx["deposit_amount"]))
        ctx["position_id"] = position_id
        ctx["steps"].append({"name": DeploymentStep.VAULT_DEPLOY, "state": "success", "position_id": position_id})

    def _load_run(self, db: Session, market: Market, amount: int) -> DeploymentRun:
        unfinished = (
            db.query(DeploymentRun)
            .filter(DeploymentRun.market_id == market.id, DeploymentRun.status != DeploymentStatus.COMPLETED)
            .order_by(DeploymentRun.id.desc())
            .first()
        )
        if unfinished is not None:
            if to_units(unfinished.amount) != amount:
                raise PreconditionError(
                    f"an unfinished deployment of {unfinished.amount} must complete first",
                    context={"run_id": unfinished.id, "completed_step": unfinished.completed_step},
                )
            return unfinished
        run = DeploymentRun(
            market_id=market.id,
            amount=from_units(amount),
            status=DeploymentStatus.RUNNING,
            context={},
            attempts=0,
        )
        db.add(run)
        db.flush()
        return run

    def _pending_steps(self, run: DeploymentRun) -> list[str]:
        if run.completed_step is None:
            return list(DeploymentStep.ORDER)
        return list(DeploymentStep.ORDER[DeploymentStep.ORDER.index(run.completed_step) + 1 :])

    def _checkpoint(self, db: Session, run: DeploymentRun, ctx: dict[str, Any]) -> None:
        run.context = dict(ctx)
        flag_modified(run, "context")
        db.commit()

    def _complete_step(self, db: Session, run: DeploymentRun, step: str, ctx: dict[str, Any]) -> None:
        run.completed_step = step
        self._checkpoint(db, run, ctx)
        logger.info("deployment_step_completed market_id=%s run_id=%s step=%s", run.market_id, run.id, step)

    def _result(self, market: Market, run: DeploymentRun, ctx: dict[str, Any], amount: int, *, ok: bool) -> DeploymentResult:
        return DeploymentResult(
            ok=ok,
            market_id=str(market.id),
            amount=amount,
            run_id=run.id,
            steps=list(ctx.get("steps") or []),
            position_id=ctx.get("position_id"),
            attestation_id=ctx.get("attestation_id"),
        )


def _step(name: str, tx_hash: str | None, chain: ChainConfig, *, state: str = "success", **extra) -> dict[str, Any]:
    payload = {"name": name, "state": state, "tx_hash": tx_hash, "explorer_url": chain.tx_url(tx_hash)}
    payload.update(extra)
    return payload


async def deploy_market_funds(
    db: Session,
    market_id,
    amount: int,
    *,
    deployer: MarketDeployer | None = None,
) -> DeploymentResult:
    market_key = as_uuid(market_id)
    market = db.get(Market, market_key) if market_key else None
    if market is None:
        error = PreconditionError("market not found", context={"market_id": str(market_id)})
        error.http_status = 404
        raise error
    if market.state != MarketState.ACTIVE:
        raise PreconditionError(
            f"market is {market.state}, deposits need ACTIVE",
            context={"market_id": str(market.id), "state": market.state},
        )
    if not is_bytes32_hex(market.onchain_id):
        error = PreconditionError("market has no valid on-chain id", context={"onchain_id": market.onchain_id})
        error.http_status = 400
        raise error
    if int(amount) <= 0:
        error = PreconditionError("amount must be positive", context={"amount": amount})
        error.http_status = 400
        raise error
    if deployer is None:
        from ..payouts.factory import build_deployer

        deployer = build_deployer()
    return await deployer.deploy(db, market, int(amount))
