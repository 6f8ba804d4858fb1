"""Abandoned cart endpoints: cart save, token recovery, email tracking, admin."""

import base64
import logging

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse

from app.core.deps import AdminUser, DBSession, EmailServiceDep, OptionalUser, user_id_of
from app.core.rate_limit import limiter
from app.schemas.abandoned_cart import (
    AbandonedCartCreate,
    AbandonedCartSaveResponse,
    AbandonedCartStats,
    CartItem,
    ProcessEmailsResponse,
    RecoveredCartResponse,
)
from app.services.recovery_service import RecoveryService

logger = logging.getLogger(__name__)

router = APIRouter()

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


# --- Public endpoints (storefront and email clients) ---


@router.post("", response_model=AbandonedCartSaveResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def save_abandoned_cart(
    request: Request,  # noqa: ARG001 - required by slowapi
    data: AbandonedCartCreate,
    db: DBSession,
    email_service: EmailServiceDep,
    user: OptionalUser,
) -> AbandonedCartSaveResponse:
    """Store the shopper's cart and schedule its next reminder."""
    service = RecoveryService(db, email_service)
    cart = await service.save_abandoned_cart(data, user_id=user_id_of(user))
    return AbandonedCartSaveResponse(recovery_url=cart.recovery_url)


@router.post("/recover/{token}", response_model=RecoveredCartResponse)
@limiter.limit("20/minute")
async def recover_cart(
    request: Request,  # noqa: ARG001 - required by slowapi
    token: str,
    db: DBSession,
    email_service: EmailServiceDep,
) -> RecoveredCartResponse:
    """Redeem a recovery token and return the cart contents.

    Unknown, already-used and expired tokens all answer 404.
    """
    cart = await RecoveryService(db, email_service).recover_cart(token)

    return RecoveredCartResponse(
        cart_items=[CartItem.model_validate(item) for item in cart.cart_items],
        coupon_code=cart.coupon_code,
    )


@router.get("/track/open/{email_id}", include_in_schema=False)
async def track_email_open(
    email_id: str,
    db: DBSession,
    email_service: EmailServiceDep,
) -> Response:
    """Tracking pixel. Always answers with the image."""
    try:
        await RecoveryService(db, email_service).track_open(email_id)
    except Exception:
        logger.exception("Failed to track open for reminder %s", email_id)

    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


@router.get("/track/click/{email_id}", include_in_schema=False)
async def track_email_click(
    email_id: str,
    db: DBSession,
    email_service: EmailServiceDep,
    redirect_url: str | None = Query(None, alias="redirectUrl"),
) -> Response:
    """Record a click, then send the shopper on to ``redirectUrl``."""
    try:
        await RecoveryService(db, email_service).track_click(email_id)
    except Exception:
        logger.exception("Failed to track click for reminder %s", email_id)

    if redirect_url and redirect_url.startswith(("http://", "https://")):
        return RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)
    return JSONResponse({"success": True, "message": "Click tracked"}, headers=NO_CACHE_HEADERS)


# --- Admin endpoints ---


@router.get("/stats", response_model=AbandonedCartStats)
async def get_abandoned_cart_stats(
    _admin: AdminUser,
    db: DBSession,
    email_service: EmailServiceDep,
) -> AbandonedCartStats:
    """Abandonment, recovery and email engagement statistics."""
    return await RecoveryService(db, email_service).get_stats()


@router.post("/process-emails", response_model=ProcessEmailsResponse)
async def process_abandoned_cart_emails(
    _admin: AdminUser,
    db: DBSession,
    email_service: EmailServiceDep,
) -> ProcessEmailsResponse:
    """Run one reminder sweep now instead of waiting for the scheduler."""
    result = await RecoveryService(db, email_service).dispatch_due_reminders()
    return ProcessEmailsResponse(
        processed=result.processed,
        sent=result.sent,
        failed=result.failed,
    )
