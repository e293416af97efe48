"""
Per-bid unwrap annotation written to ``bid.ext.unwrap``.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UnwrapAnnotation(BaseModel):
    """Outcome of unwrapping one bid's ad markup."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"depth": 2, "cached": False},
                {"depth": 0, "cached": True, "mergedImps": 1},
                {"depth": 0, "cached": False, "reason": "security"},
            ]
        },
    )

    depth: int = Field(0, description="Wrapper hops followed to reach the InLine ad")
    cached: bool = Field(False, description="Resolution was served from the cache")
    merged_imps: int | None = Field(
        None,
        alias="mergedImps",
        description="Impression pixels merged in from the derived wrapper",
    )
    reason: str | None = Field(None, description="Failure kind, when unwrapping failed")

    def to_ext(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
