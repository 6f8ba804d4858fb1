"""Domain exceptions raised by services and translated to HTTP by the routes."""


class ServiceError(Exception):
    """Base class for expected, user-facing service errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ServiceError):
    """Unknown coupon, cart, or token. No state was changed."""


class CouponNotFoundError(NotFoundError):
    def __init__(self, message: str = "Invalid coupon code") -> None:
        super().__init__(message)


class CartNotFoundError(NotFoundError):
    def __init__(self, message: str = "Invalid or expired recovery token") -> None:
        super().__init__(message)


class CouponInvalidError(ServiceError):
    """Coupon exists but cannot be used (inactive, expired, limit, minimum...)."""


class CouponConflictError(ServiceError):
    """Coupon code already taken."""

    def __init__(self, message: str = "Coupon code already exists") -> None:
        super().__init__(message)
