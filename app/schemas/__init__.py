"""Pydantic schemas for request/response validation."""

from app.schemas.common import HealthResponse, PaginatedResponse

__all__ = [
    "HealthResponse",
    "PaginatedResponse",
]
