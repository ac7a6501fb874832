"""Attestation-based burn/mint bridge (CCTP).

``bridge`` burns on the source chain, waits a bounded time for the attestation
and mints on the destination. When the attestation is not ready in time the
result is ``pending``; the caller waits a grace period, calls ``resume`` and
re-verifies the destination balance before relying on the funds.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from web3 import Web3

from ..chain.abi import MESSAGE_TRANSMITTER_ABI, TOKEN_MESSENGER_ABI
from ..chain.config import ChainConfig
from ..chain.tokens import ensure_allowance
from ..core.errors import SagaError, SimulationRevertError
from ..core.units import normalize_hex, to_bytes32
from .attestation import AttestationClient

logger = logging.getLogger(__name__)

SUCCESS = "success"
PENDING = "pending"
ERROR = "error"


@dataclass
class BridgeStep:
    name: str
    state: str
    tx_hash: str | None = None
    explorer_url: str | None = None
    error_message: str | None = None


@dataclass
class BridgeResult:
    state: str
    source_chain: str
    destination_chain: str
    amount: int
    recipient: str
    steps: list[BridgeStep] = field(default_factory=list)
    message: str | None = None
    message_hash: str | None = None

    @property
    def attestation_id(self) -> str | None:
        return self.message_hash

    @property
    def burn_tx_hash(self) -> str | None:
        for step in self.steps:
            if step.name == "burn":
                return step.tx_hash
        return None

    def first_error(self) -> BridgeStep | None:
        for step in self.steps:
            if step.state == ERROR:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BridgeResult":
        data = dict(payload)
        data["steps"] = [BridgeStep(**step) for step in data.get("steps") or []]
        return cls(**data)


class BridgeAdapter:
    def __init__(
        self,
        client_for: Callable[[ChainConfig], Any],
        attestations: AttestationClient,
    ) -> None:
        self._client_for = client_for
        self.attestations = attestations

    async def bridge(
        self,
        source: ChainConfig,
        destination: ChainConfig,
        amount: int,
        recipient: str | None = None,
    ) -> BridgeResult:
        source.require_cctp()
        destination.require_cctp()
        src = self._client_for(source)
        dst = self._client_for(destination)
        recipient = recipient or dst.address
        result = BridgeResult(
            state=PENDING,
            source_chain=source.name,
            destination_chain=destination.name,
            amount=int(amount),
            recipient=recipient,
        )
        logger.info(
            "bridge_started source=%s destination=%s amount=%s recipient=%s",
            source.name,
            destination.name,
            amount,
            recipient,
        )

        try:
            approve_tx = await ensure_allowance(
                src, source.usdc_address, source.token_messenger, int(amount), label="bridge_approve"
            )
        except Exception as exc:
            return self._fail(result, "approve", exc)
        result.steps.append(BridgeStep("approve", SUCCESS, approve_tx, source.tx_url(approve_tx)))

        try:
            receipt = await src.transact(
                source.token_messenger,
                TOKEN_MESSENGER_ABI,
                "depositForBurn",
                int(amount),
                int(destination.cctp_domain),
                to_bytes32(recipient),
                Web3.to_checksum_address(source.usdc_address),
                label="bridge_burn",
            )
        except Exception as exc:
            return self._fail(result, "burn", exc)
        burn_tx = receipt.get("transactionHash")
        messages = [
            event
            for event in src.decode_events(receipt, MESSAGE_TRANSMITTER_ABI, "MessageSent")
            if str(event["address"]).lower() == source.message_transmitter.lower()
        ]
        if not messages:
            result.steps.append(
                BridgeStep(
                    "burn",
                    ERROR,
                    burn_tx,
                    source.tx_url(burn_tx),
                    "burn receipt has no MessageSent log from the message transmitter",
                )
            )
            result.state = ERROR
            logger.error("bridge_message_missing source=%s tx=%s", source.name, burn_tx)
            return result
        message = messages[0]["args"]["message"]
        result.message = normalize_hex(message)
        result.message_hash = Web3.to_hex(Web3.keccak(hexstr=result.message))
        result.steps.append(BridgeStep("burn", SUCCESS, burn_tx, source.tx_url(burn_tx)))

        return await self._complete(result, destination, dst)

    async def resume(self, result: BridgeResult, destination: ChainConfig) -> BridgeResult:
        if result.state != PENDING or not result.message:
            return result
        # drop the stale pending attestation step before retrying
        result.steps = [step for step in result.steps if step.name not in {"fetchAttestation", "mint"}]
        return await self._complete(result, destination, self._client_for(destination))

    async def _complete(self, result: BridgeResult, destination: ChainConfig, dst) -> BridgeResult:
        attestation = await self.attestations.wait(result.message_hash)
        if not attestation:
            result.steps.append(BridgeStep("fetchAttestation", PENDING))
            result.state = PENDING
            logger.warning(
                "bridge_pending destination=%s message_hash=%s",
                destination.name,
                result.message_hash,
            )
            return result
        result.steps.append(BridgeStep("fetchAttestation", SUCCESS))

        try:
            receipt = await dst.transact(
                destination.message_transmitter,
                MESSAGE_TRANSMITTER_ABI,
                "receiveMessage",
                bytes.fromhex(result.message[2:]),
                bytes.fromhex(normalize_hex(attestation)[2:]),
                label="bridge_mint",
            )
        except SimulationRevertError as exc:
            if "nonce already used" in str(exc).lower():
                # a relayer minted first; the funds are already at the recipient
                logger.info("bridge_already_minted message_hash=%s", result.message_hash)
                result.steps.append(BridgeStep("mint", SUCCESS))
                result.state = SUCCESS
                return result
            return self._fail(result, "mint", exc)
        except Exception as exc:
            return self._fail(result, "mint", exc)

        mint_tx = receipt.get("transactionHash")
        result.steps.append(BridgeStep("mint", SUCCESS, mint_tx, destination.tx_url(mint_tx)))
        result.state = SUCCESS
        logger.info(
            "bridge_completed source=%s destination=%s amount=%s mint_tx=%s",
            result.source_chain,
            result.destination_chain,
            result.amount,
            mint_tx,
        )
        return result

    def _fail(self, result: BridgeResult, step_name: str, exc: Exception) -> BridgeResult:
        message = exc.message if isinstance(exc, SagaError) else str(exc)
        if isinstance(exc, SagaError):
            logger.error("bridge_step_failed step=%s error=%s", step_name, message)
        else:
            logger.exception("bridge_step_failed step=%s", step_name)
        result.steps.append(BridgeStep(step_name, ERROR, error_message=message))
        result.state = ERROR
        return result
