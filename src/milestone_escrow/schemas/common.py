"""Response envelope and shared schema pieces.

Every endpoint answers with the same envelope:
    {"success": true, "message": "...", "data": ..., "pagination": {...}}
Errors use {"success": false, "error": {...}} (see api/middleware.py).
"""

from __future__ import annotations

import math
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

WALLET_PATTERN = r"^0x[a-fA-F0-9]{40}$"
TX_HASH_PATTERN = r"^0x[a-fA-F0-9]{64}$"


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> Pagination:
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope."""

    success: bool = True
    message: str = "OK"
    data: T | None = None
    pagination: Pagination | None = None


def ok(data: Any = None, message: str = "OK", pagination: Pagination | None = None) -> dict:
    """Build a success envelope for a route's return value."""
    body: dict[str, Any] = {"success": True, "message": message, "data": data}
    if pagination is not None:
        body["pagination"] = pagination
    return body


class ErrorDetail(BaseModel):
    message: str
    statusCode: int  # noqa: N815 - wire name
    code: str
    errors: list[dict] | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail


class ReasonRequest(BaseModel):
    """Body for actions that carry a free-text reason (cancel, dispute, reject, revision)."""

    reason: str | None = Field(default=None, max_length=2000)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
