import logging
import time

import httpx

from .settings import settings

logger = logging.getLogger("relief.http")


class OutboundTimer:
    def __init__(self) -> None:
        self._start = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self._start


def log_outbound_response(
    response: httpx.Response,
    duration_seconds: float,
    *,
    service: str,
    expected_statuses: tuple[int, ...] = (),
) -> None:
    """Log slow or failed calls to custody, attestation and resolution services.

    ``expected_statuses`` are non-2xx answers the caller treats as a normal
    outcome, such as a 404 while an attestation is not yet published.
    """
    threshold = max(float(settings.HTTPX_SLOW_REQUEST_THRESHOLD_SECONDS or 0), 0.0)
    slow = threshold > 0 and duration_seconds >= threshold
    failed = not response.is_success and response.status_code not in expected_statuses
    if not (slow or failed):
        logger.debug(
            "outbound_request service=%s status=%s latency_ms=%s",
            service,
            response.status_code,
            int(duration_seconds * 1000),
        )
        return
    logger.warning(
        "outbound_request_%s service=%s method=%s path=%s status=%s latency_ms=%s",
        "failed" if failed else "slow",
        service,
        response.request.method,
        response.request.url.path,
        response.status_code,
        int(duration_seconds * 1000),
    )
