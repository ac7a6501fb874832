from fastapi import APIRouter

from .routes import health, markets, ngos, payouts

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(markets.router)
api_router.include_router(payouts.router)
api_router.include_router(ngos.router)
