"""Coupon endpoints: shopper validation/application and admin management."""

import logging
from uuid import UUID

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse

from app.core.deps import AdminUser, DBSession, OptionalUser, user_id_of
from app.core.rate_limit import limiter
from app.models.coupon import CouponStatus
from app.schemas.common import PaginatedResponse
from app.schemas.coupon import (
    CouponApplyRequest,
    CouponApplyResponse,
    CouponCreate,
    CouponPublicResponse,
    CouponResponse,
    CouponStats,
    CouponUpdate,
    CouponValidateRequest,
    CouponValidateResponse,
)
from app.services.coupon_service import CouponService
from app.services.errors import NotFoundError, ServiceError

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Public endpoints ---


@router.post(
    "/validate",
    response_model=CouponValidateResponse,
    responses={400: {"description": "Coupon cannot be used"}, 404: {"description": "Unknown code"}},
)
@limiter.limit("30/minute")
async def validate_coupon(
    request: Request,  # noqa: ARG001 - required by slowapi
    data: CouponValidateRequest,
    db: DBSession,
    user: OptionalUser,
) -> CouponValidateResponse | JSONResponse:
    """Check whether a code is usable, optionally pricing it against a cart."""
    service = CouponService(db)
    try:
        evaluation = await service.validate_coupon(
            data.code,
            user_id=user_id_of(user),
            subtotal=data.subtotal,
            items=data.items,
        )
    except ServiceError as e:
        code = status.HTTP_404_NOT_FOUND if isinstance(e, NotFoundError) else status.HTTP_400_BAD_REQUEST
        return JSONResponse(status_code=code, content={"is_valid": False, "detail": e.message})

    return CouponValidateResponse(
        coupon=CouponPublicResponse.model_validate(evaluation.coupon),
        discount_amount=evaluation.discount_amount,
        subtotal=evaluation.subtotal,
    )


@router.post("/apply", response_model=CouponApplyResponse)
@limiter.limit("30/minute")
async def apply_coupon(
    request: Request,  # noqa: ARG001 - required by slowapi
    data: CouponApplyRequest,
    db: DBSession,
    user: OptionalUser,
) -> CouponApplyResponse:
    """Price a code against a cart subtotal."""
    service = CouponService(db)
    evaluation = await service.apply_coupon(
        data.code,
        data.subtotal,
        data.items,
        user_id=user_id_of(user),
    )

    return CouponApplyResponse(
        coupon=CouponPublicResponse.model_validate(evaluation.coupon),
        discount_amount=evaluation.discount_amount,
        subtotal_before_discount=evaluation.subtotal,
        subtotal_after_discount=evaluation.subtotal_after_discount,
    )


@router.get("/available", response_model=list[CouponPublicResponse])
async def list_available_coupons(db: DBSession) -> list[CouponPublicResponse]:
    """Coupons currently open to shoppers."""
    service = CouponService(db)
    coupons = await service.get_available_coupons()
    return [CouponPublicResponse.model_validate(c) for c in coupons]


# --- Admin endpoints ---


@router.get("/stats", response_model=CouponStats)
async def get_coupon_stats(_admin: AdminUser, db: DBSession) -> CouponStats:
    """Coupon usage statistics."""
    return await CouponService(db).get_stats()


@router.post("", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    data: CouponCreate,
    _admin: AdminUser,
    db: DBSession,
) -> CouponResponse:
    """Create a coupon."""
    coupon = await CouponService(db).create_coupon(data)
    return CouponResponse.model_validate(coupon)


@router.get("", response_model=PaginatedResponse[CouponResponse])
async def list_coupons(
    _admin: AdminUser,
    db: DBSession,
    status_filter: CouponStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> PaginatedResponse[CouponResponse]:
    """Paginated coupon list, newest first."""
    coupons, total = await CouponService(db).list_coupons(status_filter, page, page_size)
    pages = (total + page_size - 1) // page_size if total > 0 else 1
    return PaginatedResponse(
        items=[CouponResponse.model_validate(c) for c in coupons],
        total=total,
        page=page,
        page_size=page_size,
        pages=pages,
    )


@router.get("/{coupon_id}", response_model=CouponResponse)
async def get_coupon(coupon_id: UUID, _admin: AdminUser, db: DBSession) -> CouponResponse:
    coupon = await CouponService(db).get_coupon(coupon_id)
    return CouponResponse.model_validate(coupon)


@router.put("/{coupon_id}", response_model=CouponResponse)
async def update_coupon(
    coupon_id: UUID,
    data: CouponUpdate,
    _admin: AdminUser,
    db: DBSession,
) -> CouponResponse:
    """Update the provided fields of a coupon."""
    coupon = await CouponService(db).update_coupon(coupon_id, data)
    return CouponResponse.model_validate(coupon)


@router.delete("/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_coupon(coupon_id: UUID, _admin: AdminUser, db: DBSession) -> None:
    await CouponService(db).delete_coupon(coupon_id)
    logger.info("Coupon %s deleted by admin", coupon_id)
