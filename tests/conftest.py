"""Pytest configuration and fixtures for the Cartback API test suite.

Provides:
- A fresh SQLite database (aiosqlite) per test, tables created from the models
- Mock authentication (JWT bypass) for shopper and admin clients
- A mock Resend email service
- Disabled rate limiting
- Model factory fixtures for Coupon, CouponUsage, AbandonedCart and RecoveryEmail
"""

import secrets
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.auth import get_current_user, get_optional_user
from app.core.config import settings
from app.core.database import get_async_session
from app.core.deps import get_db, get_email_service
from app.core.rate_limit import limiter
from app.main import app
from app.models.abandoned_cart import AbandonedCart, CartStatus
from app.models.base import Base, utcnow
from app.models.coupon import Coupon, CouponScope, CouponStatus, DiscountType
from app.models.coupon_usage import CouponUsage
from app.models.recovery_email import EmailStatus, EmailType, RecoveryEmail
from app.services.email_service import EmailService

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
TEST_USER_ID = "test-user-id"
TEST_USER_EMAIL = "shopper@example.com"
TEST_ADMIN_ID = "test-admin-id"
TEST_MESSAGE_ID = "re_test_123"

SAMPLE_CART_ITEMS: list[dict[str, Any]] = [
    {
        "product_id": "prod_1",
        "product_name": "Premium Widget",
        "quantity": 2,
        "price": "49.99",
        "image": "https://cdn.example.com/widget.png",
        "category_id": "widgets",
    },
    {
        "product_id": "prod_2",
        "product_name": "Widget Case",
        "quantity": 1,
        "price": "30.01",
    },
]

# ---------------------------------------------------------------------------
# Disable rate limiting globally for tests
# ---------------------------------------------------------------------------
limiter.enabled = False


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a throwaway SQLite file.

    NullPool gives every session its own connection, so the conditional
    UPDATEs used for claims and counters behave as they do on PostgreSQL.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for test setup and assertions."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Email mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_email_service() -> MagicMock:
    """EmailService stand-in whose sends succeed with a fixed message id."""
    service = MagicMock(spec=EmailService)
    service.send_email = AsyncMock(return_value=TEST_MESSAGE_ID)
    return service


# ---------------------------------------------------------------------------
# Auth mock
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_user() -> dict[str, Any]:
    """Return the default authenticated shopper payload (mimics decoded JWT)."""
    return {"sub": TEST_USER_ID, "email": TEST_USER_EMAIL, "role": "customer"}


@pytest.fixture
def admin_user() -> dict[str, Any]:
    """Return an admin JWT payload."""
    return {"sub": TEST_ADMIN_ID, "email": "admin@example.com", "role": "admin"}


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def _override_common(
    session_factory: async_sessionmaker[AsyncSession],
    email_service: MagicMock,
) -> None:
    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_async_session] = _override_session
    app.dependency_overrides[get_db] = _override_session
    app.dependency_overrides[get_email_service] = lambda: email_service


def _override_user(user: dict[str, Any]) -> None:
    async def _current() -> dict[str, Any]:
        return user

    async def _optional() -> dict[str, Any] | None:
        return user

    app.dependency_overrides[get_current_user] = _current
    app.dependency_overrides[get_optional_user] = _optional


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    mock_email_service: MagicMock,
    auth_user: dict[str, Any],
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client authenticated as a (non-admin) shopper."""
    _override_common(session_factory, mock_email_service)
    _override_user(auth_user)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_client(
    session_factory: async_sessionmaker[AsyncSession],
    mock_email_service: MagicMock,
    admin_user: dict[str, Any],
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client authenticated as an admin."""
    _override_common(session_factory, mock_email_service)
    _override_user(admin_user)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def unauthed_client(
    session_factory: async_sessionmaker[AsyncSession],
    mock_email_service: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """Guest client. Auth is NOT overridden."""
    _override_common(session_factory, mock_email_service)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def plain_client() -> AsyncGenerator[AsyncClient, None]:
    """Minimal async test client with NO dependency overrides."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Model Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def coupon_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates Coupon instances in the test database."""

    async def _create(
        *,
        code: str = "SAVE10",
        discount_type: DiscountType = DiscountType.PERCENTAGE,
        discount_value: Decimal | str = Decimal("10"),
        start_date: datetime | None = None,
        status: CouponStatus = CouponStatus.ACTIVE,
        scope: CouponScope = CouponScope.CART,
        **overrides: Any,
    ) -> Coupon:
        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(discount_value),
            start_date=start_date or utcnow() - timedelta(days=1),
            status=status,
            scope=scope,
            **overrides,
        )
        db_session.add(coupon)
        await db_session.commit()
        await db_session.refresh(coupon)
        return coupon

    return _create


@pytest.fixture
def coupon_usage_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that appends CouponUsage ledger rows."""

    async def _create(
        *,
        coupon: Coupon,
        user_id: str | None = TEST_USER_ID,
        order_id: str = "order-1",
        discount_amount: Decimal | str = Decimal("5.00"),
    ) -> CouponUsage:
        usage = CouponUsage(
            coupon_id=coupon.id,
            coupon_code=coupon.code,
            user_id=user_id,
            order_id=order_id,
            discount_amount=Decimal(discount_amount),
            used_at=utcnow(),
        )
        db_session.add(usage)
        await db_session.commit()
        await db_session.refresh(usage)
        return usage

    return _create


@pytest.fixture
def abandoned_cart_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates AbandonedCart instances (no reminders)."""

    async def _create(
        *,
        email: str = TEST_USER_EMAIL,
        created_at: datetime | None = None,
        status: CartStatus = CartStatus.ACTIVE,
        cart_items: list[dict[str, Any]] | None = None,
        subtotal: Decimal | str = Decimal("129.99"),
        total: Decimal | str | None = None,
        expires_at: datetime | None = None,
        **overrides: Any,
    ) -> AbandonedCart:
        created = created_at or utcnow()
        token = secrets.token_hex(20)
        values: dict[str, Any] = {
            "email": email,
            "cart_items": SAMPLE_CART_ITEMS if cart_items is None else cart_items,
            "subtotal": Decimal(subtotal),
            "discount_amount": Decimal("0"),
            "total": Decimal(total if total is not None else subtotal),
            "status": status,
            "recovery_token": token,
            "recovery_url": f"{settings.frontend_url}/recover-cart?token={token}",
            "expires_at": expires_at or created + timedelta(days=7),
            "emails_sent": 0,
            "emails_opened": 0,
            "emails_clicked": 0,
            "extra_data": {},
            "created_at": created,
            "updated_at": created,
            "recovery_emails": [],
        }
        values.update(overrides)
        cart = AbandonedCart(**values)
        db_session.add(cart)
        await db_session.commit()
        return cart

    return _create


@pytest.fixture
def recovery_email_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that appends a reminder record to a cart and bumps emails_sent."""

    async def _create(
        *,
        cart: AbandonedCart,
        email_type: EmailType = EmailType.FIRST_REMINDER,
        status: EmailStatus = EmailStatus.PENDING,
        scheduled_for: datetime | None = None,
        **overrides: Any,
    ) -> RecoveryEmail:
        reminder = RecoveryEmail(
            position=len(cart.recovery_emails),
            email_type=email_type,
            status=status,
            subject="Did you forget something? Your cart is waiting!",
            scheduled_for=scheduled_for or utcnow() - timedelta(minutes=1),
            **overrides,
        )
        cart.recovery_emails.append(reminder)
        cart.emails_sent += 1
        await db_session.commit()
        return reminder

    return _create


# ---------------------------------------------------------------------------
# Background task fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_async_session_maker_recovery(
    session_factory: async_sessionmaker[AsyncSession],
    mock_email_service: MagicMock,
) -> Generator[None, None, None]:
    """Point recovery tasks at the test database and the mock mail client."""
    with (
        patch("app.workers.tasks.recovery.async_session_maker", session_factory),
        patch(
            "app.workers.tasks.recovery.EmailService.from_settings",
            return_value=mock_email_service,
        ),
    ):
        yield
