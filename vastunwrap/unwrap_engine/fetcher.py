"""
Secure fetcher – HTTP exchange with manual, revalidated redirects, a single
deadline for the whole hop sequence and a bounded body read.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx

from vastunwrap.common.exceptions import (
    NetworkError,
    PayloadTooLargeError,
    ProtocolError,
    TooManyRedirectsError,
    UnwrapError,
    UnwrapTimeoutError,
)
from vastunwrap.common.logger import LoggerMixin
from vastunwrap.unwrap_engine.endpoint import EndpointValidator

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


class RejectAllCookies(DefaultCookiePolicy):
    """Cookie policy that never stores a cookie."""

    def set_ok(self, cookie, request) -> bool:
        return False


def create_http_client(transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """
    The shared client behind every fetch.

    One client serves every caller, so it must not carry session state:
    its cookie jar refuses all cookies. Deadlines are enforced per fetch
    by ``SecureFetcher``, hence no client timeout.
    """
    return httpx.AsyncClient(
        transport=transport,
        timeout=None,
        cookies=CookieJar(policy=RejectAllCookies()),
    )


@dataclass
class FetchResponse:
    """A fully read (and size-bounded) upstream response."""

    url: str
    status_code: int
    headers: httpx.Headers
    content: bytes
    redirects: int = 0
    elapsed_ms: float = 0.0

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class SecureFetcher(LoggerMixin):
    """
    Fetch a URL without trusting anything the network says.

    * every hop (including the first) passes ``EndpointValidator``
    * redirects are followed by hand, at most ``max_redirects`` times
    * one ``asyncio.timeout`` covers DNS, connects and every hop
    * bodies larger than ``max_body_bytes`` are refused
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        validator: EndpointValidator,
        max_body_bytes: int = 1_500_000,
        max_redirects: int = 3,
    ):
        self._client = client
        self._validator = validator
        self.max_body_bytes = max_body_bytes
        self.max_redirects = max_redirects

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout_ms: int = 8000,
        allowlist: list[str] | None = None,
    ) -> FetchResponse:
        """
        Perform the request sequence.

        Raises:
            ValidationError / SecurityError: A hop failed validation.
            ProtocolError: Redirect without Location, or too many redirects.
            UnwrapTimeoutError: The deadline elapsed.
            PayloadTooLargeError: Body exceeded the ceiling.
            NetworkError: DNS or connection failure.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with asyncio.timeout(timeout_ms / 1000):
                response = await self._fetch_hops(url, method, content, headers or {}, allowlist)
        except TimeoutError as e:
            raise UnwrapTimeoutError(
                f"Upstream request timed out after {timeout_ms}ms", {"url": url}
            ) from e
        except httpx.TimeoutException as e:
            raise UnwrapTimeoutError(f"Upstream request timed out: {e}", {"url": url}) from e
        except UnwrapError:
            raise
        except httpx.HTTPError as e:
            raise NetworkError(f"Upstream request failed: {e}", {"url": url}) from e

        response.elapsed_ms = (loop.time() - started) * 1000
        return response

    async def _fetch_hops(
        self,
        url: str,
        method: str,
        content: bytes | None,
        headers: dict[str, str],
        allowlist: list[str] | None,
    ) -> FetchResponse:
        current = await self._validator.validate(url, allowlist)
        redirects = 0

        while True:
            async with self._client.stream(
                method, current, content=content, headers=headers, follow_redirects=False
            ) as response:
                if response.status_code not in REDIRECT_STATUSES:
                    body = await self._read_limited(response)
                    return FetchResponse(
                        url=current,
                        status_code=response.status_code,
                        headers=response.headers,
                        content=body,
                        redirects=redirects,
                    )

                location = response.headers.get("location")
                status_code = response.status_code

            if redirects >= self.max_redirects:
                raise TooManyRedirectsError(
                    f"Too many redirects (max {self.max_redirects})", {"url": current}
                )
            if not location:
                raise ProtocolError("Redirect without Location header", {"url": current})

            try:
                target = httpx.URL(current).join(location)
            except httpx.InvalidURL as e:
                raise ProtocolError(f"Invalid redirect Location: {e}", {"url": current}) from e

            # Full policy + DNS check before following
            current = await self._validator.validate(target, allowlist)
            redirects += 1

            if status_code == 303:
                method, content = "GET", None

            self.logger.debug("Following redirect", status=status_code, target=current, hop=redirects)

    async def _read_limited(self, response: httpx.Response) -> bytes:
        declared = response.headers.get("content-length")
        if declared:
            try:
                length = int(declared)
            except ValueError:
                length = None
            if length is not None and length > self.max_body_bytes:
                raise PayloadTooLargeError(
                    f"Upstream response too large (Content-Length {length} > {self.max_body_bytes})",
                    {"limit": self.max_body_bytes, "declared": length},
                )

        total = 0
        chunks: list[bytes] = []
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > self.max_body_bytes:
                # Leaving the stream context closes the connection
                raise PayloadTooLargeError(
                    "Upstream response too large",
                    {"limit": self.max_body_bytes, "read": total},
                )
            chunks.append(chunk)
        return b"".join(chunks)
