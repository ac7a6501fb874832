import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from ..http_logging import OutboundTimer, log_outbound_response
from ..settings import settings

logger = logging.getLogger(__name__)


class AttestationClient:
    """Polls the CCTP attestation service for a burn message hash."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        interval_seconds: float | None = None,
        max_attempts: int | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.base_url = (base_url or settings.ATTESTATION_API_BASE).rstrip("/")
        self.interval_seconds = (
            settings.ATTESTATION_POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self.max_attempts = max(
            int(settings.ATTESTATION_POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts), 1
        )
        self._http_client = http_client
        self._sleep = sleep or asyncio.sleep

    async def fetch(self, message_hash: str) -> str | None:
        """Return the attestation hex, or None while it is still pending."""
        url = f"{self.base_url}/attestations/{message_hash}"
        try:
            if self._http_client is not None:
                response = await self._get(self._http_client, url)
            else:
                async with httpx.AsyncClient(timeout=15) as client:
                    response = await self._get(client, url)
        except httpx.HTTPError as exc:
            logger.warning("attestation_fetch_error message_hash=%s error=%s", message_hash, exc)
            return None
        if response.status_code == 404:
            return None
        if not response.is_success:
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("attestation_invalid_json message_hash=%s", message_hash)
            return None
        if str(payload.get("status", "")).lower() != "complete":
            return None
        attestation = payload.get("attestation")
        if not attestation or attestation == "PENDING":
            return None
        return attestation

    async def wait(self, message_hash: str) -> str | None:
        for attempt in range(1, self.max_attempts + 1):
            attestation = await self.fetch(message_hash)
            if attestation:
                logger.info("attestation_ready message_hash=%s attempts=%s", message_hash, attempt)
                return attestation
            if attempt < self.max_attempts:
                await self._sleep(self.interval_seconds)
        logger.warning(
            "attestation_pending message_hash=%s attempts=%s",
            message_hash,
            self.max_attempts,
        )
        return None

    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        timer = OutboundTimer()
        response = await client.get(url)
        log_outbound_response(response, timer.elapsed(), service="attestation", expected_statuses=(404,))
        return response
