"""Pydantic response models for the health endpoint."""
from __future__ import annotations

from pydantic import BaseModel, Field

from fernet_locksmith import __version__


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str = "ok"
    service: str = "fernet-locksmith"
    version: str = __version__
    checks: dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str = ""


__all__ = ["ErrorResponse", "HealthResponse"]
