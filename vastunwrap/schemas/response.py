"""
Pydantic schemas for API responses.
"""

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")
    python: str = Field(..., description="Interpreter version")
    now: str = Field(..., description="Current UTC time (ISO 8601)")
    cache_entries: int = Field(..., description="Entries held by the resolution cache")


class ErrorResponse(BaseModel):
    """Error response schema."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    reason: str | None = Field(None, description="Machine-readable failure kind")
    details: dict[str, Any] | None = Field(None, description="Error details")
    request_id: str | None = Field(None, description="Request identifier")

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "SecurityError",
                "message": "Host resolves to a forbidden address: 10.0.0.5",
                "reason": "security",
                "details": {"host": "ads.internal.example", "ip": "10.0.0.5"},
                "request_id": "4b6f6c1e-3c1a-4f53-9d62-3f8d1c2b7a90",
            }
        }
    }
