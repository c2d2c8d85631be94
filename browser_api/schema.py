from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ApiError(BaseModel):
    message: str
    stack: str | None = None


class ErrorResponse(BaseModel):
    status: str = "error"
    error: ApiError


class SuccessResponse(BaseModel):
    status: str = "success"
    data: Any = None


class ViewportOverride(BaseModel):
    width: int = Field(..., ge=100, le=7680)
    height: int = Field(..., ge=100, le=4320)


class ContextOverrides(BaseModel):
    """Optional per-request browsing context settings for `POST /run`."""

    locale: str | None = Field(None, min_length=2, max_length=35)
    user_agent: str | None = Field(None, min_length=1, max_length=1000)
    viewport: ViewportOverride | None = None
    extra_http_headers: dict[str, str] | None = None
    stealth: bool | None = None
    block_resource_types: list[str] | None = Field(None, max_length=20)
    block_url_patterns: list[str] | None = Field(None, max_length=200)
