"""API v1 router combining all route modules."""

from fastapi import APIRouter

from app.api.v1 import abandoned_carts, coupons, health, orders

api_router = APIRouter()

# Include health check routes (no prefix)
api_router.include_router(health.router)

# Coupons (validate/apply/available public, management admin-only)
api_router.include_router(
    coupons.router,
    prefix="/coupons",
    tags=["coupons"],
)

# Abandoned carts (storefront + email tracking public, stats/sweep admin-only)
api_router.include_router(
    abandoned_carts.router,
    prefix="/abandoned-carts",
    tags=["abandoned-carts"],
)

# Order completion hook (checkout service, admin token)
api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["orders"],
)
