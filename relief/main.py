import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.router import api_router
from .core.errors import SagaError
from .core.logging_config import configure_logging
from .request_logging import RequestLoggingMiddleware
from .settings import settings

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Relief market payouts",
    description="Escrow, vault and payout orchestration for disaster-relief prediction markets.",
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SagaError)
async def saga_error_handler(request: Request, exc: SagaError):
    logger.warning(
        "saga_error_response path=%s code=%s step=%s error=%s",
        request.url.path,
        exc.code,
        exc.step,
        exc.message,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


app.include_router(api_router)
