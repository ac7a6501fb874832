import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..settings import settings
from .schemas import TransferResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollOutcome:
    transfer: TransferResult
    attempts: int
    timed_out: bool

    @property
    def state(self) -> str:
        return self.transfer.state

    @property
    def succeeded(self) -> bool:
        return self.transfer.is_success

    @property
    def failed(self) -> bool:
        return self.transfer.is_failure

    @property
    def simulation_revert(self) -> bool:
        return self.failed and self.transfer.is_simulation_revert


class TransactionPoller:
    """Poll a custodial transfer until it leaves the pending states.

    Exceeding the attempt bound returns the last pending state with
    ``timed_out=True``; callers record it for reconciliation instead of failing.
    """

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[TransferResult]],
        *,
        interval_seconds: float | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._fetch = fetch
        self.interval_seconds = (
            settings.TRANSFER_POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self.max_attempts = max(
            int(settings.TRANSFER_POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts), 1
        )
        self._sleep = sleep or asyncio.sleep

    async def poll(self, initial: TransferResult) -> PollOutcome:
        current = initial
        if not current.is_pending and current.state != "UNKNOWN":
            return PollOutcome(current, attempts=0, timed_out=False)

        for attempt in range(1, self.max_attempts + 1):
            await self._sleep(self.interval_seconds)
            try:
                fetched = await self._fetch(current.id)
            except Exception as exc:
                logger.warning(
                    "transfer_poll_error transfer_id=%s attempt=%s error=%s",
                    current.id,
                    attempt,
                    exc,
                )
                continue
            current = fetched
            if current.is_pending or current.state == "UNKNOWN":
                logger.debug(
                    "transfer_poll_pending transfer_id=%s attempt=%s state=%s",
                    current.id,
                    attempt,
                    current.state,
                )
                continue
            if current.is_failure:
                logger.error(
                    "transfer_failed transfer_id=%s state=%s reason=%s details=%s simulation_revert=%s",
                    current.id,
                    current.state,
                    current.error_reason,
                    current.error_details,
                    current.is_simulation_revert,
                )
            else:
                logger.info(
                    "transfer_settled transfer_id=%s state=%s attempts=%s tx=%s",
                    current.id,
                    current.state,
                    attempt,
                    current.tx_hash,
                )
            return PollOutcome(current, attempts=attempt, timed_out=False)

        logger.warning(
            "transfer_poll_timeout transfer_id=%s attempts=%s last_state=%s",
            current.id,
            self.max_attempts,
            current.state,
        )
        return PollOutcome(current, attempts=self.max_attempts, timed_out=True)
