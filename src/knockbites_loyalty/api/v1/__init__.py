from fastapi import APIRouter

from .endpoints import health, loyalty, observability, orders, referrals

router = APIRouter()
router.include_router(health.router)
router.include_router(loyalty.router)
router.include_router(referrals.router)
router.include_router(orders.router)
router.include_router(observability.router)
