"""
Tracker merge – folds one wrapper level's tracking surface into the
terminal InLine document.

Field rules (first occurrence wins, entries are only ever appended):

============================  ====================  ==========================
Field                         Order                 De-dup key
============================  ====================  ==========================
Impression                    inline, wrapper       URL (only if imp_dedup)
Tracking                      inline, wrapper       event + URL
Verification                  inline, wrapper       whole-entry structure
Viewable / NotViewable / ...  inline, wrapper       URL, per group
ClickTracking                 wrapper, inline       URL
Error                         wrapper, inline       URL
============================  ====================  ==========================

ClickTracking and Error put the wrapper entries first; every other field
lists the inline ad's own entries first.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Hashable, Iterable
from xml.etree.ElementTree import Element

from vastunwrap.common.exceptions import ProtocolError
from vastunwrap.common.logger import LoggerMixin
from vastunwrap.common.vast import VIEWABLE_GROUPS, AdDocument, structural_key, text_of

KeyFn = Callable[[Element], Hashable]

# Tags that follow a given element inside its parent; new elements are
# inserted ahead of the first one present.
_IMPRESSION_BEFORE = (
    "AdServingId", "Category", "Description", "Advertiser", "Pricing", "Survey",
    "Error", "Extensions", "ViewableImpression", "AdVerifications", "Creatives", "Expires",
)
_ERROR_BEFORE = ("Extensions", "ViewableImpression", "AdVerifications", "Creatives", "Expires")
_VIEWABLE_BEFORE = ("AdVerifications", "Creatives", "Expires")
_VERIFICATIONS_BEFORE = ("Creatives", "Expires")
_TRACKING_EVENTS_BEFORE = ("AdParameters", "VideoClicks", "MediaFiles", "Icons")
_VIDEO_CLICKS_BEFORE = ("MediaFiles", "Icons")


def url_key(el: Element) -> str:
    return text_of(el)


def tracking_key(el: Element) -> tuple[str, str]:
    return (el.get("event", ""), text_of(el))


def union(
    first: Iterable[Element],
    second: Iterable[Element],
    key: KeyFn,
    dedup: bool = True,
) -> list[Element]:
    """Stable first-occurrence union of two element sequences."""
    merged: list[Element] = []
    seen: set[Hashable] = set()
    for el in (*first, *second):
        if dedup:
            k = key(el)
            if k in seen:
                continue
            seen.add(k)
        merged.append(el)
    return merged


def _copies(elements: Iterable[Element]) -> list[Element]:
    return [copy.deepcopy(el) for el in elements]


def _insert_index(parent: Element, before: tuple[str, ...]) -> int:
    for i, child in enumerate(parent):
        if child.tag in before:
            return i
    return len(parent)


def replace_children(
    parent: Element,
    tag: str,
    merged: list[Element],
    before: tuple[str, ...] = (),
) -> None:
    """
    Replace ``parent``'s ``tag`` children with ``merged``.

    The merged run goes where the first original child was; with no
    original, ahead of the first ``before`` tag (or at the end).
    """
    children = list(parent)
    existing = [c for c in children if c.tag == tag]
    if existing:
        index = next(i for i, c in enumerate(children) if c is existing[0])
        for child in existing:
            parent.remove(child)
    else:
        index = _insert_index(parent, before)

    for offset, el in enumerate(merged):
        parent.insert(index + offset, el)


def _ensure_child(parent: Element, tag: str, before: tuple[str, ...]) -> Element:
    child = parent.find(tag)
    if child is None:
        child = Element(tag)
        parent.insert(_insert_index(parent, before), child)
    return child


class MergeEngine(LoggerMixin):
    """
    Merge wrapper tracking surfaces into an InLine document.

    Usage::

        engine = MergeEngine(imp_dedup=False)
        for wrapper in reversed(chain):
            engine.merge(wrapper, inline)
    """

    def __init__(self, imp_dedup: bool = False):
        self.imp_dedup = imp_dedup

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def merge(self, wrapper: AdDocument, inline: AdDocument) -> AdDocument:
        """Merge one wrapper level into ``inline`` (mutated and returned)."""
        body = self._inline_body(inline)
        source = wrapper.surface()
        target = inline.surface()

        # Impression
        replace_children(
            body,
            "Impression",
            union(target.impressions, _copies(source.impressions), url_key, dedup=self.imp_dedup),
            before=_IMPRESSION_BEFORE,
        )

        # Error (wrapper first)
        replace_children(
            body,
            "Error",
            union(_copies(source.errors), target.errors, url_key),
            before=_ERROR_BEFORE,
        )

        self._merge_viewable(body, target.viewable, source.viewable)
        self._merge_verifications(body, target.verifications, source.verifications)

        linear = inline.primary_linear()
        if linear is None:
            if source.tracking_events or source.click_tracking:
                self.logger.debug(
                    "InLine has no Linear creative; wrapper tracking and clicks dropped",
                    ad_id=inline.ad_id,
                )
        else:
            self._merge_tracking(linear, source.tracking_events)
            self._merge_clicks(linear, source.click_tracking)

        self.logger.debug(
            "Merged wrapper level",
            ad_id=inline.ad_id,
            impressions=len(source.impressions),
            tracking=len(source.tracking_events),
            verifications=len(source.verifications),
            clicks=len(source.click_tracking),
        )
        return inline

    def merge_impressions(self, source: AdDocument, inline: AdDocument) -> int:
        """
        Append the Impression pixels of ``source`` that ``inline`` lacks.

        ``source`` usually ends in the same InLine ad, so URLs already on
        ``inline`` are always skipped, whatever ``imp_dedup`` says.

        Returns:
            Number of Impression elements added.
        """
        body = self._inline_body(inline)
        own = body.findall("Impression")
        seen = {url_key(el) for el in own}
        added: list[Element] = []
        for el in source.surface().impressions:
            key = url_key(el)
            if key not in seen:
                seen.add(key)
                added.append(copy.deepcopy(el))

        replace_children(body, "Impression", [*own, *added], before=_IMPRESSION_BEFORE)
        return len(added)

    # ------------------------------------------------------------------
    # Field merges
    # ------------------------------------------------------------------

    @staticmethod
    def _inline_body(inline: AdDocument) -> Element:
        body = inline.inline
        if body is None:
            raise ProtocolError("Merge target is not an InLine ad")
        return body

    @staticmethod
    def _merge_viewable(
        body: Element,
        own: dict[str, list[Element]],
        incoming: dict[str, list[Element]],
    ) -> None:
        groups = {
            g: union(own.get(g, []), _copies(incoming.get(g, [])), url_key)
            for g in VIEWABLE_GROUPS
        }
        if not any(groups.values()):
            return

        container = _ensure_child(body, "ViewableImpression", _VIEWABLE_BEFORE)
        for i, group in enumerate(VIEWABLE_GROUPS):
            # Empty groups are never created
            if groups[group]:
                replace_children(container, group, groups[group], before=VIEWABLE_GROUPS[i + 1:])

    @staticmethod
    def _merge_verifications(
        body: Element,
        own: list[Element],
        incoming: list[Element],
    ) -> None:
        merged = union(own, _copies(incoming), structural_key)
        if not merged:
            return
        container = _ensure_child(body, "AdVerifications", _VERIFICATIONS_BEFORE)
        replace_children(container, "Verification", merged)

    @staticmethod
    def _merge_tracking(linear: Element, incoming: list[Element]) -> None:
        own = linear.findall("TrackingEvents/Tracking")
        merged = union(own, _copies(incoming), tracking_key)
        if not merged:
            return
        container = _ensure_child(linear, "TrackingEvents", _TRACKING_EVENTS_BEFORE)
        replace_children(container, "Tracking", merged)

    @staticmethod
    def _merge_clicks(linear: Element, incoming: list[Element]) -> None:
        own = linear.findall("VideoClicks/ClickTracking")
        merged = union(_copies(incoming), own, url_key)
        if not merged:
            return
        container = _ensure_child(linear, "VideoClicks", _VIDEO_CLICKS_BEFORE)
        replace_children(container, "ClickTracking", merged, before=("CustomClick",))

