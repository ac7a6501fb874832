import logging
import uuid
from typing import Any

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..core.errors import ConfigurationError, CustodyApiError, is_transient_error
from ..external import CIRCLE_SEMAPHORE, async_limited
from ..http_logging import OutboundTimer, log_outbound_response
from ..security.crypto import encrypt_entity_secret
from ..settings import settings
from .schemas import (
    CustodialWallet,
    TokenBalance,
    TransferResult,
    parse_token_balances,
    parse_transfer,
    parse_wallet,
)

logger = logging.getLogger(__name__)

_IDEMPOTENCY_NAMESPACE = uuid.UUID("8b0f5a43-4f58-4d4b-9a57-4c2f8f3e9c11")

_retry_transient = retry(
    retry=retry_if_exception(is_transient_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


def transfer_idempotency_key(*parts: object) -> str:
    """Stable key so a re-sent create after a crash maps to the same transfer."""
    return str(uuid.uuid5(_IDEMPOTENCY_NAMESPACE, ":".join(str(part) for part in parts)))


class CustodialWalletClient:
    """Developer-controlled wallet API (Circle W3S) behind one normalized shape."""

    def __init__(
        self,
        api_key: str | None = None,
        entity_secret: str | None = None,
        *,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key or settings.CIRCLE_API_KEY
        self.entity_secret = entity_secret or settings.CIRCLE_ENTITY_SECRET
        self.base_url = (base_url or settings.CIRCLE_API_BASE).rstrip("/")
        self._http_client = http_client
        self._public_key_pem: str | None = None

    async def create_transfer(
        self,
        *,
        wallet_id: str,
        token_id: str,
        destination_address: str,
        amount: str,
        idempotency_key: str,
        fee_level: str | None = None,
    ) -> TransferResult:
        body = {
            "idempotencyKey": idempotency_key,
            "walletId": wallet_id,
            "tokenId": token_id,
            "destinationAddress": destination_address,
            "amounts": [amount],
            "feeLevel": fee_level or settings.CIRCLE_FEE_LEVEL,
        }
        payload = await self._post_transfer(body)
        result = parse_transfer(payload)
        if not result.id:
            raise CustodyApiError("transfer create returned no id", context={"payload": _truncate(payload)})
        logger.info(
            "custody_transfer_created transfer_id=%s state=%s wallet_id=%s amount=%s",
            result.id,
            result.state,
            wallet_id,
            amount,
        )
        return result

    async def get_transfer(self, transfer_id: str) -> TransferResult:
        payload = await self._request("GET", f"/v1/w3s/transactions/{transfer_id}")
        result = parse_transfer(payload)
        if not result.id:
            result = result.model_copy(update={"id": transfer_id})
        return result

    async def get_wallet(self, wallet_id: str) -> CustodialWallet:
        payload = await self._request("GET", f"/v1/w3s/wallets/{wallet_id}")
        return parse_wallet(payload)

    async def get_token_balances(self, wallet_id: str) -> list[TokenBalance]:
        payload = await self._request("GET", f"/v1/w3s/wallets/{wallet_id}/balances")
        return parse_token_balances(payload)

    async def _entity_secret_ciphertext(self) -> str:
        if not self.entity_secret:
            raise ConfigurationError("CIRCLE_ENTITY_SECRET is not configured")
        if self._public_key_pem is None:
            payload = await self._request("GET", "/v1/w3s/config/entity/publicKey")
            data = payload.get("data") or {}
            self._public_key_pem = data.get("publicKey")
            if not self._public_key_pem:
                raise CustodyApiError("entity public key missing from response")
        return encrypt_entity_secret(self.entity_secret, self._public_key_pem)

    @_retry_transient
    async def _post_transfer(self, body: dict[str, Any]) -> dict[str, Any]:
        # a ciphertext is single-use, so every attempt encrypts the secret afresh
        attempt_body = {**body, "entitySecretCiphertext": await self._entity_secret_ciphertext()}
        return await self._request_once("POST", "/v1/w3s/developer/transactions/transfer", json=attempt_body)

    @_retry_transient
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        return await self._request_once(method, path, **kwargs)

    async def _request_once(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError("CIRCLE_API_KEY is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with async_limited(CIRCLE_SEMAPHORE):
            if self._http_client is not None:
                response = await self._send(self._http_client, method, path, headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=settings.CIRCLE_TIMEOUT_SECONDS) as client:
                    response = await self._send(client, method, path, headers, **kwargs)
        if not response.is_success:
            raise CustodyApiError(
                f"custody api {method} {path} failed with {response.status_code}",
                status_code=response.status_code,
                context={"body": response.text[:300]},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CustodyApiError(f"custody api {method} {path} returned invalid json") from exc
        return payload if isinstance(payload, dict) else {}

    async def _send(self, client: httpx.AsyncClient, method: str, path: str, headers: dict, **kwargs) -> httpx.Response:
        timer = OutboundTimer()
        response = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        log_outbound_response(response, timer.elapsed(), service="custody")
        return response


def _truncate(payload: Any, limit: int = 300) -> str:
    return str(payload)[:limit]
