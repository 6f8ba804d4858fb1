"""Dependency injection for FastAPI routes."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

# Re-export auth dependencies for convenience
from app.core.auth import (
    AdminUser,
    CurrentUser,
    OptionalUser,
    get_admin_user,
    get_current_user,
    get_optional_user,
)
from app.core.database import get_async_session
from app.services.email_service import EmailService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped database session."""
    async for session in get_async_session():
        yield session


def get_email_service() -> EmailService:
    """Mail client for the request, built from settings."""
    return EmailService.from_settings()


# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Mail client dependency (overridden in tests)
EmailServiceDep = Annotated[EmailService, Depends(get_email_service)]


def user_id_of(user: dict[str, object] | None) -> str | None:
    """The ``sub`` claim of an optional JWT payload."""
    if not user:
        return None
    sub = user.get("sub")
    return str(sub) if sub is not None else None


__all__ = [
    "AdminUser",
    "CurrentUser",
    "DBSession",
    "EmailServiceDep",
    "OptionalUser",
    "get_admin_user",
    "get_current_user",
    "get_db",
    "get_email_service",
    "get_optional_user",
    "user_id_of",
]
