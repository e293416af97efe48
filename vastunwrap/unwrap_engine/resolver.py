"""
Wrapper resolution – follows a VAST Wrapper chain to its InLine ad and
folds every wrapper's tracking surface into it.

State machine::

    START -> FETCHED -> INLINE_FOUND ------------------> MERGING -> DONE
                     -> WRAPPER_FOUND -> (fetch next) -^
    any state -> FAILED

The chain is walked iteratively with an explicit accumulator; each hop
gets its own fetch deadline, capped by a budget for the whole chain.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Literal

import httpx

from vastunwrap.common.cache import CacheKeys, ResolutionCache
from vastunwrap.common.config import ResolverSettings
from vastunwrap.common.exceptions import (
    DepthExceededError,
    NetworkError,
    ProtocolError,
    UnwrapError,
    UnwrapTimeoutError,
)
from vastunwrap.common.logger import LoggerMixin
from vastunwrap.common.vast import AdDocument
from vastunwrap.unwrap_engine.fetcher import SecureFetcher
from vastunwrap.unwrap_engine.merge import MergeEngine

CacheStatus = Literal["hit", "miss"]

_ACCEPT_XML = "application/xml,text/xml,*/*"


class ResolverState(str, Enum):
    START = "start"
    FETCHED = "fetched"
    INLINE_FOUND = "inline_found"
    WRAPPER_FOUND = "wrapper_found"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ResolutionResult:
    """Final merged InLine XML and how it was obtained."""

    xml: str
    hop_depth: int
    cache_status: CacheStatus

    @property
    def cached(self) -> bool:
        return self.cache_status == "hit"


class WrapperResolver(LoggerMixin):
    """
    Resolve ad-tag URLs (or Wrapper markup) to a single InLine document.

    Usage::

        resolver = WrapperResolver(fetcher, MergeEngine(), ResolutionCache(), settings.resolver)
        result = await resolver.resolve("https://ads.example.com/vast?vastid=42")
    """

    def __init__(
        self,
        fetcher: SecureFetcher,
        merger: MergeEngine,
        cache: ResolutionCache,
        settings: ResolverSettings,
    ):
        self.fetcher = fetcher
        self.merger = merger
        self.cache = cache
        self.settings = settings
        # cache key -> completion event of the resolution currently fetching it
        self._inflight: dict[str, asyncio.Event] = {}

    @property
    def max_depth(self) -> int:
        return self.settings.max_depth

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def resolve(self, url: str, *, max_depth: int | None = None) -> ResolutionResult:
        """
        Resolve an ad-tag URL.

        Args:
            url: The first VAST document to fetch.
            max_depth: Override for the wrapper hop limit.

        Raises:
            ProtocolError: Missing redirect target, a document that is
                neither InLine nor Wrapper, or the depth limit reached
                (``DepthExceededError``).
            UnwrapError: Any fetch failure from ``SecureFetcher``.
        """
        limit = self.max_depth if max_depth is None else max_depth
        cache_key = CacheKeys.for_ad_tag(url)

        # Wait out an identical resolution already in progress, then re-check
        # the cache, exactly as if the two had run one after the other
        while (pending := self._inflight.get(cache_key)) is not None:
            await pending.wait()

        hit = self.cache.get_entry(cache_key)
        if hit is not None:
            # A hit stands in for the walk only where the walk would succeed
            if hit.depth > limit:
                self.logger.warning(
                    "Wrapper resolution failed",
                    url=url,
                    state=ResolverState.FAILED.value,
                    depth=hit.depth,
                    reason=DepthExceededError.reason,
                    cache="hit",
                )
                raise DepthExceededError(
                    f"Wrapper chain exceeded maximum depth of {limit}",
                    {"url": url, "depth": hit.depth},
                )
            self.logger.debug("Resolution cache hit", key=cache_key, depth=hit.depth)
            return ResolutionResult(xml=hit.value, hop_depth=0, cache_status="hit")

        done = asyncio.Event()
        self._inflight[cache_key] = done
        try:
            return await self._resolve_chain(url, cache_key, limit)
        finally:
            del self._inflight[cache_key]
            done.set()

    async def _resolve_chain(self, url: str, cache_key: str, limit: int) -> ResolutionResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.chain_timeout_ms / 1000

        state = ResolverState.START
        chain: list[AdDocument] = []
        hops = 0
        current_url = url
        try:
            doc = await self._fetch_document(current_url, deadline)
            state = ResolverState.FETCHED

            while hops < limit:
                if doc.is_inline:
                    state = ResolverState.INLINE_FOUND
                    break
                if not doc.is_wrapper:
                    raise ProtocolError(
                        "VAST document has neither InLine nor Wrapper", {"url": current_url}
                    )
                state = ResolverState.WRAPPER_FOUND

                next_url = doc.ad_tag_uri
                if not next_url:
                    raise ProtocolError("missing redirect target", {"url": current_url})

                chain.append(doc)
                hops += 1
                current_url = self._join(current_url, next_url)
                self.logger.debug("Following wrapper", depth=hops, target=current_url)

                doc = await self._fetch_document(current_url, deadline)
                state = ResolverState.FETCHED

            if not doc.is_inline:
                if doc.is_wrapper:
                    raise DepthExceededError(
                        f"Wrapper chain exceeded maximum depth of {limit}",
                        {"url": url, "depth": hops},
                    )
                raise ProtocolError(
                    "VAST document has neither InLine nor Wrapper", {"url": current_url}
                )

            state = ResolverState.MERGING
            for wrapper in reversed(chain):
                self.merger.merge(wrapper, doc)
            xml = doc.to_xml()
        except UnwrapError as e:
            self.logger.warning(
                "Wrapper resolution failed",
                url=url,
                state=state.value,
                depth=hops,
                reason=e.reason,
                error=e.message,
            )
            raise

        self.cache.set(cache_key, xml, depth=hops)
        self.logger.debug("Wrapper resolution done", url=url, depth=hops, state=ResolverState.DONE.value)
        return ResolutionResult(xml=xml, hop_depth=hops, cache_status="miss")

    async def resolve_markup(self, document: AdDocument) -> ResolutionResult:
        """
        Resolve ad markup that is itself a Wrapper.

        The markup counts as the outermost hop and its own tracking surface
        is merged last, so the cached entry for the inner URL stays free of
        this bid's trackers.
        """
        if not document.is_wrapper:
            raise ProtocolError("Ad markup is not a Wrapper")
        next_url = document.ad_tag_uri
        if not next_url:
            raise ProtocolError("missing redirect target")
        if self.max_depth < 1:
            raise DepthExceededError(f"Wrapper chain exceeded maximum depth of {self.max_depth}")

        inner = await self.resolve(next_url, max_depth=self.max_depth - 1)
        inline = AdDocument.parse(inner.xml)
        self.merger.merge(document, inline)
        return ResolutionResult(
            xml=inline.to_xml(),
            hop_depth=inner.hop_depth + 1,
            cache_status=inner.cache_status,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch_document(self, url: str, deadline: float) -> AdDocument:
        remaining_ms = (deadline - asyncio.get_running_loop().time()) * 1000
        if remaining_ms <= 0:
            raise UnwrapTimeoutError(
                f"Wrapper chain exceeded its {self.settings.chain_timeout_ms}ms budget", {"url": url}
            )

        response = await self.fetcher.fetch(
            url,
            headers={"User-Agent": self.settings.downstream_ua, "Accept": _ACCEPT_XML},
            timeout_ms=int(min(self.settings.timeout_ms, remaining_ms)),
        )
        if not response.is_success:
            raise NetworkError(
                f"Ad tag returned HTTP {response.status_code}",
                {"url": url, "status": response.status_code},
            )
        return AdDocument.parse(response.content)

    @staticmethod
    def _join(base: str, target: str) -> str:
        try:
            return str(httpx.URL(base).join(target))
        except httpx.InvalidURL as e:
            raise ProtocolError(f"Invalid VASTAdTagURI: {e}", {"url": base}) from e
