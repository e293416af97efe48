"""
VAST document model – the XML parse / serialize boundary.

Parsing normalizes a VAST tree once (namespaces stripped, CDATA exposed as
plain element text) and exposes the mergeable tracking surface of the
selected ``<Ad>`` as ordered element lists, so merge code never has to
guess at node shapes.

Wire shape handled::

    VAST/Ad/{InLine|Wrapper}
        Impression*, Error*
        ViewableImpression/{Viewable,NotViewable,ViewUndetermined}*
        AdVerifications/Verification*
        Creatives/Creative/Linear/TrackingEvents/Tracking*
        Creatives/Creative/Linear/VideoClicks/ClickTracking*
        VASTAdTagURI                      (Wrapper only)
"""

from __future__ import annotations

import codecs
import copy
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from xml.etree.ElementTree import Element, ParseError, fromstring, indent, register_namespace, tostring

from vastunwrap.common.exceptions import ProtocolError

register_namespace("xsi", "http://www.w3.org/2001/XMLSchema-instance")

VIEWABLE_GROUPS: tuple[str, ...] = ("Viewable", "NotViewable", "ViewUndetermined")

# Leaf elements whose text is a URL or opaque payload; re-emitted as CDATA
CDATA_TAGS: frozenset[str] = frozenset({
    "VASTAdTagURI",
    "Impression",
    "Error",
    "Tracking",
    "ClickThrough",
    "ClickTracking",
    "CustomClick",
    "MediaFile",
    "Mezzanine",
    "InteractiveCreativeFile",
    "JavaScriptResource",
    "ExecutableResource",
    "VerificationParameters",
    "AdParameters",
    "Viewable",
    "NotViewable",
    "ViewUndetermined",
    "StaticResource",
    "IFrameResource",
    "HTMLResource",
    "CompanionClickThrough",
    "CompanionClickTracking",
    "NonLinearClickThrough",
    "NonLinearClickTracking",
    "IconClickThrough",
    "IconClickTracking",
    "IconViewTracking",
})

_DOCTYPE_RE = re.compile(r"<!DOCTYPE", re.IGNORECASE)

# Longest BOM first: the UTF-32-LE mark starts with the UTF-16-LE one
_BOMS: tuple[tuple[bytes, str], ...] = (
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


class AdKind(str, Enum):
    INLINE = "inline"
    WRAPPER = "wrapper"
    EMPTY = "empty"


def text_of(el: Optional[Element]) -> str:
    """Uniform text content of a node (CDATA or plain), stripped."""
    if el is None or el.text is None:
        return ""
    return el.text.strip()


def _cdata(text: str) -> str:
    """Wrap text in CDATA, splitting any embedded terminator."""
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def _strip_namespaces(root: Element) -> None:
    for el in root.iter():
        if isinstance(el.tag, str) and el.tag.startswith("{"):
            el.tag = el.tag.split("}", 1)[1]


def decode_xml_bytes(raw: bytes) -> str:
    """
    Decode a fetched document: UTF-8 unless a byte order mark says
    UTF-16 or UTF-32.

    Raises:
        ProtocolError: The bytes are not valid in that encoding.
    """
    encoding = next((name for bom, name in _BOMS if raw.startswith(bom)), "utf-8")
    try:
        return raw.decode(encoding)
    except UnicodeDecodeError as e:
        raise ProtocolError(f"VAST document is not valid {encoding.upper()} text: {e}") from e


def parse_vast(text: str | bytes) -> Element:
    """
    Parse VAST XML into a normalized element tree.

    Raises:
        ProtocolError: On malformed XML, a DOCTYPE declaration, or a
            root element other than ``<VAST>``.
    """
    source = text if isinstance(text, str) else decode_xml_bytes(text)
    if _DOCTYPE_RE.search(source):
        raise ProtocolError("DOCTYPE declarations are not allowed in VAST documents")
    try:
        # Parsed as text, so expat never re-reads an encoding declaration
        root = fromstring(source)
    except ParseError as e:
        raise ProtocolError(f"Malformed VAST XML: {e}") from e

    _strip_namespaces(root)
    if root.tag != "VAST":
        raise ProtocolError(f"Expected <VAST> root element, got <{root.tag}>")
    return root


def serialize_vast(root: Element) -> str:
    """Serialize a VAST tree, re-emitting URL-bearing leaves as CDATA."""
    tree = copy.deepcopy(root)

    # ElementTree has no CDATA support; park the text behind opaque tokens
    nonce = uuid.uuid4().hex
    cdata: dict[str, str] = {}
    for i, el in enumerate(tree.iter()):
        if el.tag in CDATA_TAGS and len(el) == 0 and el.text and el.text.strip():
            token = f"__CDATA_{nonce}_{i}__"
            cdata[token] = el.text.strip()
            el.text = token

    indent(tree, space="  ")
    raw_xml = tostring(tree, encoding="unicode")
    for token, value in cdata.items():
        raw_xml = raw_xml.replace(token, _cdata(value), 1)

    return f'<?xml version="1.0" encoding="UTF-8"?>\n{raw_xml}'


def structural_key(el: Element) -> tuple:
    """Identity of a whole subtree: tag, attributes, text and children."""
    return (
        el.tag,
        tuple(sorted(el.attrib.items())),
        text_of(el),
        tuple(structural_key(child) for child in el),
    )


def looks_like_vast(markup: object) -> bool:
    return isinstance(markup, str) and "<VAST" in markup


# ---------------------------------------------------------------------------
# Tracking surface
# ---------------------------------------------------------------------------

@dataclass
class TrackingSurface:
    """Ordered, URL-bearing entries of one Ad that take part in merges."""

    impressions: list[Element] = field(default_factory=list)
    tracking_events: list[Element] = field(default_factory=list)
    verifications: list[Element] = field(default_factory=list)
    viewable: dict[str, list[Element]] = field(default_factory=dict)
    click_tracking: list[Element] = field(default_factory=list)
    errors: list[Element] = field(default_factory=list)

    @classmethod
    def from_body(cls, body: Optional[Element], linears: list[Element]) -> "TrackingSurface":
        if body is None:
            return cls(viewable={g: [] for g in VIEWABLE_GROUPS})

        tracking: list[Element] = []
        clicks: list[Element] = []
        for linear in linears:
            tracking.extend(linear.findall("TrackingEvents/Tracking"))
            clicks.extend(linear.findall("VideoClicks/ClickTracking"))

        return cls(
            impressions=body.findall("Impression"),
            tracking_events=tracking,
            verifications=body.findall("AdVerifications/Verification"),
            viewable={g: body.findall(f"ViewableImpression/{g}") for g in VIEWABLE_GROUPS},
            click_tracking=clicks,
            errors=body.findall("Error"),
        )

    def impression_urls(self) -> list[str]:
        return [text_of(el) for el in self.impressions]

    def tracking_keys(self) -> list[tuple[str, str]]:
        return [(el.get("event", ""), text_of(el)) for el in self.tracking_events]


# ---------------------------------------------------------------------------
# Ad document
# ---------------------------------------------------------------------------

class AdDocument:
    """
    A parsed VAST document and its selected ``<Ad>``.

    The first ``<Ad>`` is the selected one; it carries exactly one of
    ``<InLine>`` / ``<Wrapper>``, or neither (an empty / no-fill response).
    """

    def __init__(self, root: Element):
        self.root = root
        ad = self.ad
        if ad is not None and ad.find("InLine") is not None and ad.find("Wrapper") is not None:
            raise ProtocolError("Ad contains both <InLine> and <Wrapper>")

    @classmethod
    def parse(cls, text: str | bytes) -> "AdDocument":
        return cls(parse_vast(text))

    def __repr__(self) -> str:
        return f"AdDocument(kind={self.kind.value}, ad_id={self.ad_id!r})"

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @property
    def ad(self) -> Optional[Element]:
        return self.root.find("Ad")

    @property
    def ad_id(self) -> Optional[str]:
        ad = self.ad
        return ad.get("id") if ad is not None else None

    @property
    def inline(self) -> Optional[Element]:
        ad = self.ad
        return ad.find("InLine") if ad is not None else None

    @property
    def wrapper(self) -> Optional[Element]:
        ad = self.ad
        return ad.find("Wrapper") if ad is not None else None

    @property
    def body(self) -> Optional[Element]:
        """The InLine or Wrapper element, whichever is present."""
        inline = self.inline
        return inline if inline is not None else self.wrapper

    @property
    def kind(self) -> AdKind:
        if self.inline is not None:
            return AdKind.INLINE
        if self.wrapper is not None:
            return AdKind.WRAPPER
        return AdKind.EMPTY

    @property
    def is_inline(self) -> bool:
        return self.kind is AdKind.INLINE

    @property
    def is_wrapper(self) -> bool:
        return self.kind is AdKind.WRAPPER

    @property
    def ad_tag_uri(self) -> Optional[str]:
        """The Wrapper's redirect target, or None when absent or blank."""
        wrapper = self.wrapper
        if wrapper is None:
            return None
        return text_of(wrapper.find("VASTAdTagURI")) or None

    def linears(self) -> list[Element]:
        body = self.body
        if body is None:
            return []
        return body.findall("Creatives/Creative/Linear")

    def primary_linear(self) -> Optional[Element]:
        linears = self.linears()
        return linears[0] if linears else None

    def media_file_urls(self) -> list[str]:
        return [
            url
            for linear in self.linears()
            for url in (text_of(mf) for mf in linear.findall("MediaFiles/MediaFile"))
            if url
        ]

    def surface(self) -> TrackingSurface:
        return TrackingSurface.from_body(self.body, self.linears())

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def to_xml(self) -> str:
        return serialize_vast(self.root)
