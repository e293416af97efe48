"""
Unwrap Router – resolve a single VAST ad tag.

Endpoints:
    GET /unwrap?url=<vastUrl> – Follow the wrapper chain, return merged InLine XML
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response

from vastunwrap.common.exceptions import ValidationError
from vastunwrap.proxy_server.dependencies import get_resolver
from vastunwrap.proxy_server.middleware.metrics import record_resolution
from vastunwrap.unwrap_engine.resolver import WrapperResolver

router = APIRouter()


@router.get(
    "/unwrap",
    summary="Resolve a VAST ad tag",
    responses={
        200: {"content": {"application/xml": {}}, "description": "Merged InLine VAST"},
        400: {"description": "Missing or invalid url"},
        403: {"description": "Destination refused"},
        502: {"description": "Upstream or VAST failure"},
        504: {"description": "Deadline elapsed"},
    },
)
async def unwrap(
    url: str | None = Query(None, description="Ad tag URL to resolve"),
    resolver: WrapperResolver = Depends(get_resolver),
) -> Response:
    """
    Resolve ``url`` down to its InLine ad.

    ``X-Unwrap-Depth`` carries the hops followed and ``X-Unwrap-Cache``
    whether the result came from the cache (``hit`` / ``miss``).
    """
    if not url or not url.strip():
        raise ValidationError("missing ?url=")

    result = await resolver.resolve(url.strip())
    record_resolution(result.cache_status, result.hop_depth)

    return Response(
        content=result.xml,
        media_type="application/xml",
        headers={
            "X-Unwrap-Depth": str(result.hop_depth),
            "X-Unwrap-Cache": result.cache_status,
        },
    )
