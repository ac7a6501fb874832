import logging
from dataclasses import dataclass

from web3 import Web3

from ..chain.abi import (
    BRIDGE_MANAGER_ABI,
    MARKET_ABI,
    MARKET_FACTORY_ABI,
    PAYOUT_EXECUTOR_ABI,
    TREASURY_VAULT_ABI,
)
from ..core.errors import ConfigurationError
from ..core.units import normalize_hex, to_bytes32
from ..settings import settings

logger = logging.getLogger(__name__)

ONCHAIN_ACTIVE = 0
ONCHAIN_CLOSED = 1
ONCHAIN_RESOLVED = 2
ONCHAIN_PAID_OUT = 3


@dataclass(frozen=True)
class WinnerPayout:
    address: str
    principal: int
    reward: int


@dataclass(frozen=True)
class LoserPayout:
    address: str
    principal: int


@dataclass(frozen=True)
class NgoPayout:
    ngo_onchain_id: str
    custodial_wallet_id: str
    amount: int
    chain_id: int


class SettlementContracts:
    """Home-chain escrow, treasury and payout-executor calls."""

    def __init__(
        self,
        chain,
        *,
        treasury_vault: str | None,
        market_factory: str | None,
        payout_executor: str | None,
        bridge_manager: str | None = None,
    ) -> None:
        self.chain = chain
        self.treasury_vault = treasury_vault
        self.market_factory = market_factory
        self.payout_executor = payout_executor
        self.bridge_manager = bridge_manager

    async def total_yield(self, market_onchain_id: str) -> int:
        return int(
            await self.chain.read(
                _require(self.treasury_vault, "TREASURY_VAULT_ADDRESS"),
                TREASURY_VAULT_ABI,
                "getTotalYield",
                to_bytes32(market_onchain_id),
            )
        )

    async def record_yield(self, market_onchain_id: str, amount: int) -> str | None:
        receipt = await self.chain.transact(
            _require(self.treasury_vault, "TREASURY_VAULT_ADDRESS"),
            TREASURY_VAULT_ABI,
            "recordYield",
            to_bytes32(market_onchain_id),
            int(amount),
            label="record_yield",
        )
        return receipt.get("transactionHash")

    async def market_state(self, market_address: str) -> int:
        info = await self.chain.read(market_address, MARKET_ABI, "getMarketInfo")
        # tuple(marketId, question, disasterType, location, startTime, endTime, state, policyId, eligibleNGOs)
        return int(info[6])

    async def ensure_resolved(self, market_onchain_id: str, market_address: str) -> int:
        state = await self.market_state(market_address)
        if state >= ONCHAIN_RESOLVED:
            logger.info("onchain_market_already_resolved market=%s state=%s", market_onchain_id, state)
            return state
        factory = _require(self.market_factory, "MARKET_FACTORY_ADDRESS")
        key = to_bytes32(market_onchain_id)
        if state == ONCHAIN_ACTIVE:
            await self.chain.transact(factory, MARKET_FACTORY_ABI, "forceCloseMarket", key, label="force_close_market")
        await self.chain.transact(factory, MARKET_FACTORY_ABI, "resolveMarket", key, label="resolve_market")
        state = await self.market_state(market_address)
        logger.info("onchain_market_resolved market=%s state=%s", market_onchain_id, state)
        return state

    async def calculate_payouts(self, market_address: str) -> str | None:
        receipt = await self.chain.transact(
            _require(self.payout_executor, "PAYOUT_EXECUTOR_ADDRESS"),
            PAYOUT_EXECUTOR_ABI,
            "calculatePayouts",
            Web3.to_checksum_address(market_address),
            gas_limit=settings.PAYOUT_CALCULATION_GAS_LIMIT,
            label="calculate_payouts",
        )
        return receipt.get("transactionHash")

    async def winner_payouts(self, market_onchain_id: str) -> list[WinnerPayout]:
        rows = await self._read_executor("getWinnerPayouts", market_onchain_id)
        return [WinnerPayout(str(row[0]).lower(), int(row[1]), int(row[2])) for row in rows]

    async def loser_payouts(self, market_onchain_id: str) -> list[LoserPayout]:
        rows = await self._read_executor("getLoserPayouts", market_onchain_id)
        return [LoserPayout(str(row[0]).lower(), int(row[1])) for row in rows]

    async def ngo_payouts(self, market_onchain_id: str) -> list[NgoPayout]:
        rows = await self._read_executor("getNGOPayouts", market_onchain_id)
        return [NgoPayout(normalize_hex(row[0]), str(row[1]), int(row[2]), int(row[3])) for row in rows]

    async def release_escrow(self, to: str, amount: int) -> str | None:
        receipt = await self.chain.transact(
            _require(self.market_factory, "MARKET_FACTORY_ADDRESS"),
            MARKET_FACTORY_ABI,
            "emergencyWithdraw",
            Web3.to_checksum_address(to),
            int(amount),
            label="escrow_release",
        )
        return receipt.get("transactionHash")

    async def register_bridge(
        self,
        market_onchain_id: str,
        amount: int,
        destination_chain_id: int,
        attestation_id: str,
    ) -> str | None:
        receipt = await self.chain.transact(
            _require(self.bridge_manager, "BRIDGE_MANAGER_ADDRESS"),
            BRIDGE_MANAGER_ABI,
            "initiateBridge",
            to_bytes32(market_onchain_id),
            int(amount),
            int(destination_chain_id),
            attestation_id,
            label="register_bridge",
        )
        return receipt.get("transactionHash")

    async def _read_executor(self, fn_name: str, market_onchain_id: str) -> list:
        rows = await self.chain.read(
            _require(self.payout_executor, "PAYOUT_EXECUTOR_ADDRESS"),
            PAYOUT_EXECUTOR_ABI,
            fn_name,
            to_bytes32(market_onchain_id),
        )
        return list(rows or [])


def _require(value: str | None, name: str) -> str:
    if not value:
        raise ConfigurationError(f"{name} is not configured")
    return value
