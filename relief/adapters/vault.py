import logging
from dataclasses import dataclass

from web3 import Web3

from ..chain.abi import YIELD_CONTROLLER_ABI
from ..chain.tokens import ensure_allowance
from ..core.errors import PositionTrackingError
from ..core.units import normalize_hex, to_bytes32

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WithdrawResult:
    position_id: str
    principal: int
    yield_amount: int
    tx_hash: str | None

    @property
    def total(self) -> int:
        return self.principal + self.yield_amount


class YieldVaultAdapter:
    """Deposit and withdraw against the lending-protocol yield controller.

    Neither call returns its result synchronously; both are read back from the
    receipt, counting only logs emitted by the controller itself.
    """

    def __init__(self, chain, vault_address: str, vault_token: str) -> None:
        self.chain = chain
        self.vault_address = vault_address
        self.vault_token = vault_token

    async def deploy(self, market_onchain_id: str, amount: int) -> str:
        market_key = normalize_hex(market_onchain_id)
        await ensure_allowance(self.chain, self.vault_token, self.vault_address, int(amount), label="vault_approve")
        receipt = await self.chain.transact(
            self.vault_address,
            YIELD_CONTROLLER_ABI,
            "deployToAave",
            to_bytes32(market_key),
            int(amount),
            label="vault_deploy",
        )
        tx_hash = receipt.get("transactionHash")
        for event in self._own_events(receipt, "Deployed"):
            if normalize_hex(event["args"]["marketId"]) != market_key:
                continue
            position_id = normalize_hex(event["args"]["positionId"])
            logger.info(
                "vault_position_opened market=%s position_id=%s amount=%s tx=%s",
                market_key,
                position_id,
                event["args"]["amount"],
                tx_hash,
            )
            return position_id
        logger.error("vault_deploy_event_missing market=%s tx=%s", market_key, tx_hash)
        raise PositionTrackingError(
            "deposit succeeded but no Deployed event from the vault was found",
            context={"market_onchain_id": market_key, "tx_hash": tx_hash},
        )

    async def withdraw(self, position_id: str) -> WithdrawResult:
        position_key = normalize_hex(position_id)
        receipt = await self.chain.transact(
            self.vault_address,
            YIELD_CONTROLLER_ABI,
            "withdrawFromAave",
            to_bytes32(position_key),
            label="vault_withdraw",
        )
        tx_hash = receipt.get("transactionHash")
        result = self._match_withdrawal(self._own_events(receipt, "Withdrawn"), position_key, tx_hash)
        if result is None:
            logger.error("vault_withdraw_event_missing position_id=%s tx=%s", position_key, tx_hash)
            raise PositionTrackingError(
                "withdrawal succeeded but no Withdrawn event from the vault was found",
                context={"position_id": position_key, "tx_hash": tx_hash},
            )
        logger.info(
            "vault_position_withdrawn position_id=%s principal=%s yield=%s tx=%s",
            position_key,
            result.principal,
            result.yield_amount,
            tx_hash,
        )
        return result

    async def find_withdrawal(self, position_id: str, from_block: int, to_block: int | None = None) -> WithdrawResult | None:
        """Recover an earlier withdrawal from the event log, e.g. after a crash mid-step."""
        position_key = normalize_hex(position_id)
        if to_block is None:
            to_block = await self.chain.block_number()
        events = await self.chain.get_logs(
            self.vault_address, YIELD_CONTROLLER_ABI, "Withdrawn", from_block, to_block
        )
        own = [event for event in events if self._is_own(event)]
        for event in own:
            if normalize_hex(event["args"]["positionId"]) == position_key:
                return self._match_withdrawal([event], position_key, event.get("tx_hash"))
        return None

    async def transfer_out(self, to: str, amount: int) -> str | None:
        receipt = await self.chain.transact(
            self.vault_address,
            YIELD_CONTROLLER_ABI,
            "transferUSDC",
            Web3.to_checksum_address(to),
            int(amount),
            label="vault_transfer_out",
        )
        return receipt.get("transactionHash")

    async def balance(self) -> int:
        return await self.chain.token_balance(self.vault_token, self.vault_address)

    def _own_events(self, receipt: dict, event_name: str) -> list[dict]:
        events = self.chain.decode_events(receipt, YIELD_CONTROLLER_ABI, event_name)
        own = []
        for event in events:
            if not self._is_own(event):
                logger.warning(
                    "vault_foreign_log_ignored event=%s emitter=%s",
                    event_name,
                    event.get("address"),
                )
                continue
            own.append(event)
        return own

    def _is_own(self, event: dict) -> bool:
        return str(event.get("address", "")).lower() == self.vault_address.lower()

    @staticmethod
    def _match_withdrawal(events: list[dict], position_key: str, tx_hash: str | None) -> WithdrawResult | None:
        for event in events:
            args = event["args"]
            if normalize_hex(args["positionId"]) != position_key:
                continue
            return WithdrawResult(
                position_id=position_key,
                principal=int(args["principal"]),
                yield_amount=int(args["yield"]),
                tx_hash=tx_hash,
            )
        return None
