"""
Bid response processing – unwraps VAST ad markup inside an OpenRTB bid
response and annotates each touched bid under ``bid.ext.unwrap``.

Flow per bid:
    1. ``adm`` is a VAST Wrapper  -> resolve the chain, replace ``adm``
    2. ``adm`` is an InLine ad and the ``nurl`` names an equivalent
       wrapper endpoint           -> resolve it and merge only its
                                     Impression pixels into ``adm``
    3. anything else              -> left untouched, no annotation
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from string import Formatter
from typing import Any
from urllib.parse import parse_qs, quote, unquote, urlsplit

from vastunwrap.common.config import ResolverSettings
from vastunwrap.common.exceptions import UnwrapError
from vastunwrap.common.logger import LoggerMixin
from vastunwrap.common.vast import AdDocument, looks_like_vast
from vastunwrap.proxy_server.middleware.metrics import record_bid_annotation, record_resolution
from vastunwrap.schemas.unwrap import UnwrapAnnotation
from vastunwrap.unwrap_engine.merge import MergeEngine
from vastunwrap.unwrap_engine.resolver import ResolutionResult, WrapperResolver

REASON_DERIVATION_FAILED = "derivation_failed"
REASON_FETCH_FAILED = "fetch_failed"
REASON_NO_MARKUP_MATCH = "no_markup_match"
REASON_INTERNAL = "internal"


class DerivationError(ValueError):
    """The nurl names a wrapper endpoint that cannot be rebuilt."""


def iter_bids(bid_response: Mapping[str, Any]) -> list[dict[str, Any]]:
    """All ``seatbid[].bid[]`` objects, in document order."""
    bids: list[dict[str, Any]] = []
    seatbids = bid_response.get("seatbid")
    if not isinstance(seatbids, list):
        return bids
    for seatbid in seatbids:
        if not isinstance(seatbid, dict) or not isinstance(seatbid.get("bid"), list):
            continue
        bids.extend(bid for bid in seatbid["bid"] if isinstance(bid, dict))
    return bids


def _absolute_url(value: str) -> str | None:
    candidate = value.strip()
    # Tolerate one extra level of percent-encoding
    if "://" not in candidate and "%3a%2f%2f" in candidate.lower():
        candidate = unquote(candidate)
    parts = urlsplit(candidate)
    if parts.scheme.lower() in ("http", "https") and parts.netloc:
        return candidate
    return None


def derive_wrapper_url(
    nurl: str,
    param_names: list[str],
    template: str = "",
) -> str | None:
    """
    Rebuild the wrapper endpoint a bid's InLine markup came from.

    Returns:
        The derived URL, or None when the nurl carries nothing to derive from.

    Raises:
        DerivationError: The nurl references a wrapper endpoint but it
            cannot be rebuilt (not an absolute URL, template parameters
            missing).
    """
    params = {k: v[0] for k, v in parse_qs(urlsplit(nurl).query).items() if v}

    for name in param_names:
        value = params.get(name)
        if value is None:
            continue
        url = _absolute_url(value)
        if url is None:
            raise DerivationError(f"nurl parameter {name!r} is not an absolute URL")
        return url

    if not template:
        return None

    fields = {f for _, f, _, _ in Formatter().parse(template) if f}
    if not fields & params.keys():
        return None
    missing = fields - params.keys()
    if missing:
        raise DerivationError(f"nurl lacks template parameters: {sorted(missing)}")
    return template.format_map({f: quote(params[f], safe="") for f in fields})


def markup_matches(markup: AdDocument, resolved: AdDocument) -> bool:
    """Same ``Ad@id``; failing ids on either side, a shared MediaFile URL."""
    if markup.ad_id and resolved.ad_id:
        return markup.ad_id == resolved.ad_id
    return bool(set(markup.media_file_urls()) & set(resolved.media_file_urls()))


class BidResponseProcessor(LoggerMixin):
    """
    Unwrap every VAST bid of an OpenRTB bid response, in place.

    Per-bid failures are annotated on the bid and never abort its siblings.
    """

    def __init__(
        self,
        resolver: WrapperResolver,
        merger: MergeEngine,
        settings: ResolverSettings,
    ):
        self.resolver = resolver
        self.merger = merger
        self.settings = settings

    async def process(self, bid_response: dict[str, Any]) -> list[UnwrapAnnotation]:
        """
        Process all bids of ``bid_response``.

        Returns:
            The annotations written, in bid order.
        """
        bids = iter_bids(bid_response)
        if self.settings.parallel_bids:
            outcomes = await asyncio.gather(*(self._process_bid(bid) for bid in bids))
        else:
            outcomes = [await self._process_bid(bid) for bid in bids]

        annotations: list[UnwrapAnnotation] = []
        for bid, annotation in zip(bids, outcomes):
            if annotation is None:
                continue
            ext = bid.get("ext")
            if not isinstance(ext, dict):
                ext = bid["ext"] = {}
            ext["unwrap"] = annotation.to_ext()
            annotations.append(annotation)
            record_bid_annotation(annotation.reason or "ok")
        return annotations

    # ------------------------------------------------------------------
    # Per bid
    # ------------------------------------------------------------------

    async def _process_bid(self, bid: dict[str, Any]) -> UnwrapAnnotation | None:
        adm = bid.get("adm")
        if not looks_like_vast(adm):
            return None

        try:
            document = AdDocument.parse(adm)
            if document.is_wrapper:
                return await self._unwrap_markup(bid, document)
            if document.is_inline:
                return await self._merge_derived_impressions(bid, document)
            return None
        except UnwrapError as e:
            self.logger.warning(
                "Bid unwrap failed",
                bid_id=bid.get("id"),
                reason=e.reason,
                error=e.message,
            )
            return UnwrapAnnotation(reason=e.reason)
        except Exception as e:
            self.logger.exception("Unexpected bid unwrap failure", bid_id=bid.get("id"), error=str(e))
            return UnwrapAnnotation(reason=REASON_INTERNAL)

    async def _unwrap_markup(self, bid: dict[str, Any], document: AdDocument) -> UnwrapAnnotation:
        result = await self.resolver.resolve_markup(document)
        record_resolution(result.cache_status, result.hop_depth)
        bid["adm"] = result.xml
        return UnwrapAnnotation(depth=result.hop_depth, cached=result.cached)

    async def _merge_derived_impressions(
        self,
        bid: dict[str, Any],
        document: AdDocument,
    ) -> UnwrapAnnotation | None:
        nurl = bid.get("nurl")
        if not isinstance(nurl, str) or not nurl:
            return None

        try:
            derived = derive_wrapper_url(
                nurl, self.settings.derive_param_names, self.settings.derive_template
            )
        except DerivationError as e:
            self.logger.warning("Wrapper derivation failed", bid_id=bid.get("id"), error=str(e))
            return UnwrapAnnotation(reason=REASON_DERIVATION_FAILED)
        if derived is None:
            return None

        try:
            result = await self.resolver.resolve(derived)
            resolved = AdDocument.parse(result.xml)
        except UnwrapError as e:
            self.logger.warning(
                "Derived wrapper fetch failed",
                bid_id=bid.get("id"),
                url=derived,
                reason=e.reason,
                error=e.message,
            )
            return UnwrapAnnotation(reason=REASON_FETCH_FAILED)
        record_resolution(result.cache_status, result.hop_depth)

        if not markup_matches(document, resolved):
            self.logger.debug(
                "Derived wrapper does not match bid markup",
                bid_id=bid.get("id"),
                markup_ad=document.ad_id,
                resolved_ad=resolved.ad_id,
            )
            return self._annotation(result, reason=REASON_NO_MARKUP_MATCH)

        added = self.merger.merge_impressions(resolved, document)
        if added:
            bid["adm"] = document.to_xml()
        return self._annotation(result, merged_imps=added)

    @staticmethod
    def _annotation(result: ResolutionResult, **kwargs: Any) -> UnwrapAnnotation:
        return UnwrapAnnotation(depth=result.hop_depth, cached=result.cached, **kwargs)
