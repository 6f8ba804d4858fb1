"""Tests for the abandoned cart API routes."""

import uuid
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.abandoned_carts import TRACKING_PIXEL
from app.models.abandoned_cart import AbandonedCart, CartStatus
from app.models.recovery_email import EmailStatus, RecoveryEmail
from tests.conftest import SAMPLE_CART_ITEMS, TEST_USER_EMAIL, TEST_USER_ID


class TestSaveCartRoute:
    """POST /api/v1/abandoned-carts"""

    @pytest.mark.asyncio
    async def test_guest_saves_cart(
        self,
        unauthed_client: AsyncClient,
        db_session: AsyncSession,
    ) -> None:
        response = await unauthed_client.post(
            "/api/v1/abandoned-carts",
            json={
                "email": TEST_USER_EMAIL,
                "cart_items": SAMPLE_CART_ITEMS,
                "subtotal": "129.99",
                "total": "129.99",
            },
        )
        assert response.status_code == 201
        body = response.json()
        assert "/recover-cart?token=" in body["recovery_url"]

        cart = (await db_session.execute(select(AbandonedCart))).scalar_one()
        assert cart.user_id is None
        assert cart.emails_sent == 1
        assert cart.recovery_emails[0].status == EmailStatus.PENDING

    @pytest.mark.asyncio
    async def test_signed_in_cart_gets_user_id(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
    ) -> None:
        response = await client.post(
            "/api/v1/abandoned-carts",
            json={
                "email": TEST_USER_EMAIL,
                "cart_items": SAMPLE_CART_ITEMS,
                "subtotal": "129.99",
                "total": "129.99",
            },
        )
        assert response.status_code == 201
        cart = (await db_session.execute(select(AbandonedCart))).scalar_one()
        assert cart.user_id == TEST_USER_ID

    @pytest.mark.asyncio
    async def test_empty_cart_rejected(self, unauthed_client: AsyncClient) -> None:
        response = await unauthed_client.post(
            "/api/v1/abandoned-carts",
            json={"email": TEST_USER_EMAIL, "cart_items": [], "subtotal": "0", "total": "0"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_bad_email_rejected(self, unauthed_client: AsyncClient) -> None:
        response = await unauthed_client.post(
            "/api/v1/abandoned-carts",
            json={
                "email": "not-an-email",
                "cart_items": SAMPLE_CART_ITEMS,
                "subtotal": "129.99",
                "total": "129.99",
            },
        )
        assert response.status_code == 422


class TestRecoverRoute:
    """POST /api/v1/abandoned-carts/recover/{token}"""

    @pytest.mark.asyncio
    async def test_recover_then_404(
        self,
        unauthed_client: AsyncClient,
        abandoned_cart_factory: Callable[..., Any],
    ) -> None:
        cart = await abandoned_cart_factory(coupon_code="SAVE10")

        response = await unauthed_client.post(f"/api/v1/abandoned-carts/recover/{cart.recovery_token}")
        assert response.status_code == 200
        body = response.json()
        assert body["coupon_code"] == "SAVE10"
        assert [i["product_id"] for i in body["cart_items"]] == ["prod_1", "prod_2"]

        again = await unauthed_client.post(f"/api/v1/abandoned-carts/recover/{cart.recovery_token}")
        assert again.status_code == 404
        assert again.json()["detail"] == "Invalid or expired recovery token"

    @pytest.mark.asyncio
    async def test_unknown_token(self, unauthed_client: AsyncClient) -> None:
        response = await unauthed_client.post("/api/v1/abandoned-carts/recover/deadbeef")
        assert response.status_code == 404


class TestTrackingRoutes:
    """Open pixel and click redirect."""

    @pytest.mark.asyncio
    async def test_open_returns_pixel_and_counts(
        self,
        unauthed_client: AsyncClient,
        db_session: AsyncSession,
        abandoned_cart_factory: Callable[..., Any],
        recovery_email_factory: Callable[..., Any],
    ) -> None:
        cart = await abandoned_cart_factory()
        reminder = await recovery_email_factory(cart=cart, status=EmailStatus.SENT)

        response = await unauthed_client.get(f"/api/v1/abandoned-carts/track/open/{reminder.id}")

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL
        assert response.headers["content-type"] == "image/gif"
        assert "no-store" in response.headers["cache-control"]

        stmt = select(RecoveryEmail).where(RecoveryEmail.id == reminder.id)
        tracked = (
            await db_session.execute(stmt.execution_options(populate_existing=True))
        ).scalar_one()
        assert tracked.status == EmailStatus.OPENED

    @pytest.mark.asyncio
    async def test_open_unknown_id_still_returns_pixel(self, unauthed_client: AsyncClient) -> None:
        response = await unauthed_client.get("/api/v1/abandoned-carts/track/open/garbage")
        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL

    @pytest.mark.asyncio
    async def test_open_tracking_error_still_returns_pixel(
        self,
        unauthed_client: AsyncClient,
    ) -> None:
        with patch(
            "app.api.v1.abandoned_carts.RecoveryService.track_open",
            side_effect=RuntimeError("db down"),
        ):
            response = await unauthed_client.get(
                f"/api/v1/abandoned-carts/track/open/{uuid.uuid4()}"
            )
        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL

    @pytest.mark.asyncio
    async def test_click_redirects(
        self,
        unauthed_client: AsyncClient,
        abandoned_cart_factory: Callable[..., Any],
        recovery_email_factory: Callable[..., Any],
    ) -> None:
        cart = await abandoned_cart_factory()
        reminder = await recovery_email_factory(cart=cart, status=EmailStatus.SENT)

        response = await unauthed_client.get(
            f"/api/v1/abandoned-carts/track/click/{reminder.id}",
            params={"redirectUrl": cart.recovery_url},
        )
        assert response.status_code == 302
        assert response.headers["location"] == cart.recovery_url

    @pytest.mark.asyncio
    @pytest.mark.parametrize("redirect", [None, "javascript:alert(1)", "/relative"])
    async def test_click_without_safe_redirect_returns_json(
        self,
        unauthed_client: AsyncClient,
        redirect: str | None,
    ) -> None:
        params = {"redirectUrl": redirect} if redirect else {}
        response = await unauthed_client.get(
            f"/api/v1/abandoned-carts/track/click/{uuid.uuid4()}",
            params=params,
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Click tracked"}


class TestAdminCartRoutes:
    @pytest.mark.asyncio
    async def test_stats(
        self,
        admin_client: AsyncClient,
        abandoned_cart_factory: Callable[..., Any],
    ) -> None:
        await abandoned_cart_factory()
        await abandoned_cart_factory(email="done@example.com", status=CartStatus.RECOVERED)

        response = await admin_client.get("/api/v1/abandoned-carts/stats")
        assert response.status_code == 200
        body = response.json()
        assert body["total_carts"] == 2
        assert body["recovery_rate"] == 50.0

    @pytest.mark.asyncio
    async def test_process_emails(
        self,
        admin_client: AsyncClient,
        mock_email_service: MagicMock,
        abandoned_cart_factory: Callable[..., Any],
        recovery_email_factory: Callable[..., Any],
    ) -> None:
        cart = await abandoned_cart_factory()
        await recovery_email_factory(cart=cart)

        response = await admin_client.post("/api/v1/abandoned-carts/process-emails")
        assert response.status_code == 200
        body = response.json()
        assert (body["processed"], body["sent"], body["failed"]) == (1, 1, 0)
        mock_email_service.send_email.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shopper_cannot_process(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/abandoned-carts/process-emails")
        assert response.status_code == 403
