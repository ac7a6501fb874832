import logging
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.contract import AsyncContract
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.types import TxParams

from ..core.errors import (
    ChainTransactionError,
    ConfigurationError,
    SimulationRevertError,
    TransientInfraError,
)
from ..core.retry import RetryableOperation
from ..external import SIGNER_LOCKS, SignerLockRegistry
from ..settings import settings
from .abi import ERC20_ABI, event_signature
from .config import ChainConfig

logger = logging.getLogger(__name__)

_DEFAULT_GAS_LIMIT = 300_000


class ChainClient:
    """RPC adapter for one chain plus the admin signing key.

    Reads are plain ``eth_call``s. ``transact`` dry-runs the call, then under the
    per-(chain, signer) lock reads the pending nonce, signs once and broadcasts
    that one transaction with classifier-driven resends. Receipt waits are never
    retried.
    """

    def __init__(
        self,
        config: ChainConfig,
        account: LocalAccount | None = None,
        *,
        w3: AsyncWeb3 | None = None,
        locks: SignerLockRegistry = SIGNER_LOCKS,
    ) -> None:
        self.config = config
        self.account = account
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url, request_kwargs={"timeout": 30}))
        self._locks = locks

    @classmethod
    def from_private_key(cls, config: ChainConfig, private_key: str | None) -> "ChainClient":
        account = Account.from_key(private_key) if private_key else None
        return cls(config, account)

    @property
    def address(self) -> str:
        if self.account is None:
            raise ConfigurationError("signer key is not configured", context={"chain": self.config.name})
        return self.account.address

    def contract(self, address: str, abi: list[dict[str, Any]]) -> AsyncContract:
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    async def read(self, address: str, abi: list[dict[str, Any]], fn_name: str, *args) -> Any:
        fn = self.contract(address, abi).functions[fn_name](*args)
        return await fn.call()

    async def token_balance(self, token: str, owner: str | None = None) -> int:
        owner = owner or self.address
        return int(await self.read(token, ERC20_ABI, "balanceOf", Web3.to_checksum_address(owner)))

    async def simulate(self, address: str, abi: list[dict[str, Any]], fn_name: str, *args, label: str | None = None) -> Any:
        fn = self.contract(address, abi).functions[fn_name](*args)
        try:
            return await fn.call({"from": self.address})
        except ContractLogicError as exc:
            logger.error(
                "chain_simulation_reverted chain=%s call=%s reason=%s",
                self.config.name,
                label or fn_name,
                exc,
            )
            raise SimulationRevertError(
                f"{label or fn_name} would revert: {exc}",
                context={"chain": self.config.name, "call": fn_name, "reason": str(exc)},
            ) from exc

    async def transact(
        self,
        address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        *args,
        gas_limit: int | None = None,
        label: str | None = None,
        simulate: bool = True,
    ) -> dict[str, Any]:
        label = label or fn_name
        if simulate:
            await self.simulate(address, abi, fn_name, *args, label=label)
        fn = self.contract(address, abi).functions[fn_name](*args)
        async with self._locks.hold(self.config.chain_id, self.address):
            signed, tx_params = await self._sign(fn, gas_limit, label)
            tx_hash = await self._broadcast(signed, label)
        logger.info(
            "chain_tx_submitted chain=%s call=%s nonce=%s gas=%s tx=%s",
            self.config.name,
            label,
            tx_params["nonce"],
            tx_params.get("gas"),
            tx_hash,
        )
        return await self.wait_for_receipt(tx_hash, label=label)

    async def _sign(self, fn, gas_limit: int | None, label: str):
        nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
        tx_params: TxParams = {
            "from": self.address,
            "nonce": nonce,
            "chainId": self.config.chain_id,
        }
        tx_params.update(await self._fee_params())
        if gas_limit:
            tx_params["gas"] = int(gas_limit)
        else:
            tx_params["gas"] = await self._estimate_gas(fn, tx_params, label)
        built = await fn.build_transaction(tx_params)
        return self.account.sign_transaction(built), tx_params

    async def _broadcast(self, signed, label: str) -> str:
        """Send one signed transaction, resending the same bytes on transient failures.

        The nonce is fixed at signing, so a resend can never execute the call
        twice. A node that already holds the transaction answers "already
        known", or "nonce too low" once it is mined; both mean it was accepted.
        """
        tx_hash = Web3.to_hex(signed.hash)
        attempts = {"count": 0}

        async def _send() -> str:
            attempts["count"] += 1
            try:
                await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as exc:
                text = str(exc).lower()
                if "already known" in text or ("nonce too low" in text and attempts["count"] > 1):
                    logger.info(
                        "chain_tx_already_accepted chain=%s call=%s tx=%s attempt=%s",
                        self.config.name,
                        label,
                        tx_hash,
                        attempts["count"],
                    )
                    return tx_hash
                if "nonce too low" in text:
                    raise ChainTransactionError(
                        f"{label} nonce was consumed by another sender",
                        context={"chain": self.config.name, "tx_hash": tx_hash},
                    ) from exc
                raise
            return tx_hash

        operation = RetryableOperation(f"{self.config.name}:{label}")
        return await operation.run(_send)

    async def _fee_params(self) -> dict[str, int]:
        latest = await self.w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": int(await self.w3.eth.gas_price)}
        priority = int(await self.w3.eth.max_priority_fee)
        return {"maxFeePerGas": int(base_fee) * 2 + priority, "maxPriorityFeePerGas": priority}

    async def _estimate_gas(self, fn, tx_params: TxParams, label: str) -> int:
        try:
            estimate = await fn.estimate_gas(tx_params)
        except ContractLogicError as exc:
            raise SimulationRevertError(
                f"{label} would revert during gas estimation: {exc}",
                context={"chain": self.config.name, "call": label},
            ) from exc
        except Exception as exc:
            logger.warning(
                "chain_gas_estimate_failed chain=%s call=%s default_gas=%s error=%s",
                self.config.name,
                label,
                _DEFAULT_GAS_LIMIT,
                exc,
            )
            return _DEFAULT_GAS_LIMIT
        return int(estimate * (100 + settings.GAS_LIMIT_BUFFER_PCT) / 100)

    async def wait_for_receipt(self, tx_hash: str, *, label: str | None = None, timeout: float | None = None) -> dict[str, Any]:
        timeout = settings.RECEIPT_TIMEOUT_SECONDS if timeout is None else timeout
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as exc:
            raise TransientInfraError(
                f"receipt for {tx_hash} not available after {timeout}s",
                context={"chain": self.config.name, "tx_hash": tx_hash, "call": label},
            ) from exc
        receipt = dict(receipt)
        receipt["transactionHash"] = Web3.to_hex(receipt["transactionHash"])
        if receipt.get("status") == 0:
            logger.error(
                "chain_tx_reverted chain=%s call=%s tx=%s gas_used=%s",
                self.config.name,
                label,
                tx_hash,
                receipt.get("gasUsed"),
            )
            raise ChainTransactionError(
                f"{label or 'transaction'} reverted on-chain",
                context={"chain": self.config.name, "tx_hash": tx_hash},
            )
        logger.info(
            "chain_tx_confirmed chain=%s call=%s tx=%s block=%s",
            self.config.name,
            label,
            tx_hash,
            receipt.get("blockNumber"),
        )
        return receipt

    async def get_logs(
        self,
        address: str,
        abi: list[dict[str, Any]],
        event_name: str,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        topic = Web3.to_hex(Web3.keccak(text=event_signature(abi, event_name)))
        raw_logs = await self.w3.eth.get_logs(
            {
                "address": Web3.to_checksum_address(address),
                "fromBlock": int(from_block),
                "toBlock": int(to_block),
                "topics": [topic],
            }
        )
        return self._decode(raw_logs, abi, event_name, address)

    def decode_events(self, receipt: dict[str, Any], abi: list[dict[str, Any]], event_name: str) -> list[dict[str, Any]]:
        return self._decode(receipt.get("logs") or [], abi, event_name, None)

    def _decode(self, logs, abi, event_name: str, address: str | None) -> list[dict[str, Any]]:
        topic = Web3.to_hex(Web3.keccak(text=event_signature(abi, event_name)))
        # the emitting address is re-checked by callers; any address decodes here
        event = getattr(self.contract(address or "0x" + "00" * 20, abi).events, event_name)()
        decoded = []
        for log in logs:
            topics = log.get("topics") or []
            if not topics or Web3.to_hex(topics[0]).lower() != topic.lower():
                continue
            data = event.process_log(log)
            decoded.append(
                {
                    "address": log["address"],
                    "block_number": int(log["blockNumber"]),
                    "log_index": int(log.get("logIndex", 0)),
                    "tx_hash": Web3.to_hex(log["transactionHash"]),
                    "args": dict(data["args"]),
                }
            )
        return decoded
