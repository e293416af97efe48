"""
Endpoint validation – scheme, credential and allowlist policy, then
address safety.
"""

from __future__ import annotations

import httpx

from vastunwrap.common.exceptions import ValidationError
from vastunwrap.unwrap_engine.address import AddressSafetyChecker


def parse_https_url(candidate: str) -> httpx.URL:
    """
    Parse a URL and apply the syntactic policy (no network access).

    Raises:
        ValidationError: Unparseable, not https, credentials embedded, or no host.
    """
    try:
        url = httpx.URL(candidate.strip())
    except (httpx.InvalidURL, TypeError) as e:
        raise ValidationError(f"Invalid URL: {e}") from e

    if url.scheme != "https":
        raise ValidationError("Endpoint must use https", {"scheme": url.scheme})
    if url.userinfo:
        raise ValidationError("Credentials in URL are not allowed")
    if not url.host:
        raise ValidationError("Endpoint URL has no host")
    return url


def host_allowed(url: httpx.URL, allowlist: list[str] | None) -> bool:
    """Exact match of ``host`` or ``host:port`` against the allowlist."""
    if not allowlist:
        return True
    host = url.host.lower()
    candidates = {host}
    if url.port is not None:
        candidates.add(f"{host}:{url.port}")
    return any(entry.lower() in candidates for entry in allowlist)


class EndpointValidator:
    """A URL is validated only once both the policy and the DNS checks pass."""

    def __init__(self, checker: AddressSafetyChecker | None = None):
        self.checker = checker or AddressSafetyChecker()

    async def validate(self, candidate_url: str | httpx.URL, allowlist: list[str] | None = None) -> str:
        url = parse_https_url(str(candidate_url))

        if not host_allowed(url, allowlist):
            raise ValidationError(
                "Endpoint host is not in allowlist",
                {"host": url.host},
                status_code=403,
            )

        await self.checker.check(url.host)
        return str(url)
