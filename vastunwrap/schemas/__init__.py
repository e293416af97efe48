"""
Pydantic schemas for API responses and bid annotations.
"""

from vastunwrap.schemas.response import ErrorResponse, HealthResponse
from vastunwrap.schemas.unwrap import UnwrapAnnotation

__all__ = [
    "ErrorResponse",
    "HealthResponse",
    "UnwrapAnnotation",
]
