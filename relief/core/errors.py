"""Error taxonomy shared by the chain adapters, the custody client and the payout saga.

Every error that can stop a payout run derives from ``SagaError`` so the
orchestrator can persist it with the failing step and turn it into a single
structured ``{error, http_status}`` payload.
"""

from typing import Any

import httpx
from web3.exceptions import ContractLogicError


class SagaError(Exception):
    http_status = 500
    code = "saga_error"

    def __init__(self, message: str, *, step: str | None = None, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.step = step
        self.context = dict(context or {})

    def with_step(self, step: str) -> "SagaError":
        if self.step is None:
            self.step = step
        return self

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "http_status": self.http_status,
        }
        if self.step:
            payload["step"] = self.step
        if self.context:
            payload["context"] = self.context
        return payload


class ConfigurationError(SagaError):
    code = "configuration_error"


class PreconditionError(SagaError):
    http_status = 409
    code = "precondition_failed"


class TransientInfraError(SagaError):
    http_status = 503
    code = "transient_infra"


class RetriesExhaustedError(SagaError):
    http_status = 503
    code = "retries_exhausted"

    def __init__(self, message: str, *, attempts: int, cause: BaseException | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.cause = cause
        self.context.setdefault("attempts", attempts)


class BalanceInsufficientError(SagaError):
    code = "balance_insufficient"


class SimulationRevertError(SagaError):
    """A dry run predicted a revert; the call is never submitted or retried."""

    http_status = 422
    code = "simulation_revert"


class ChainTransactionError(SagaError):
    code = "transaction_failed"


class PositionTrackingError(SagaError):
    code = "position_tracking"


class SwapStarvedError(SagaError):
    code = "swap_starved"


class BridgeError(SagaError):
    code = "bridge_failed"


class InvariantViolationError(SagaError):
    code = "invariant_violation"


class CustodyApiError(SagaError):
    http_status = 502
    code = "custody_api_error"

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.context.setdefault("status_code", status_code)


_TRANSIENT_MARKERS = (
    "in-flight transaction limit",
    "rate limit",
    "too many requests",
    "429",
    "nonce too low",
    "replacement transaction underpriced",
    "already known",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "connection reset",
    "503",
    "502",
)


def is_transient_error(exc: BaseException) -> bool:
    """Classify an exception raised by an RPC write or an outbound API call."""
    if isinstance(exc, TransientInfraError):
        return True
    if isinstance(exc, CustodyApiError):
        # no status means a malformed response, which a resend will not fix
        return exc.status_code is not None and (exc.status_code == 429 or exc.status_code >= 500)
    if isinstance(exc, SagaError):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, ContractLogicError):
        return False
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)
