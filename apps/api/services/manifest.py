"""Adaptive-streaming manifest parsing and rendition selection.

Manifests are untrusted third-party documents (Instagram ships DASH MPDs in
``video_dash_manifest``). They are read with BeautifulSoup's lenient
``html.parser`` tree builder, which tolerates unclosed tags, stray text and
broken markup, so a bad ``Representation`` block is skipped without losing the
rest of the document.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning
from bs4.element import CData, NavigableString, Tag
from bs4.exceptions import ParserRejectedMarkup

from services.errors import ParseFailure

logger = logging.getLogger(__name__)

# MPDs are XML; the HTML builder is used on purpose for its leniency.
warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)

DEFAULT_PREFERRED_QUALITY_LABEL = "240p"
QUALITY_LABEL_ATTRIBUTES = ("fbqualitylabel", "qualitylabel", "label")
URL_ATTRIBUTES = ("url", "media", "src")
MIME_ATTRIBUTES = ("mimetype", "contenttype")
# Real MPDs are a few tens of KB; anything far larger is refused unparsed.
MAX_MANIFEST_CHARS = 2_000_000


@dataclass(frozen=True)
class Rendition:
    """One encoded variant of a video."""

    bandwidth: int
    url: str
    quality_label: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    mime_type: Optional[str] = None
    data_size: Optional[int] = None


def _safe_positive_int(value: Any) -> Optional[int]:
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed) or parsed < 1:
        return None
    return int(parsed)


def _first_attribute(tag: Tag, names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = str(tag.get(name) or "").strip()
        if value:
            return value
    return None


def _own_text(tag: Tag) -> Optional[str]:
    # Direct text only; an unclosed BaseURL swallows everything after it.
    text = "".join(str(child) for child in tag.contents if type(child) in (NavigableString, CData))
    return text.strip() or None


@dataclass
class _Candidate:
    tag: Tag
    adaptation_mime: Optional[str]
    base_url: Optional[str] = None


def _collect(soup: BeautifulSoup) -> List[_Candidate]:
    """Walk the tree once, pairing each Representation with its own BaseURL.

    Unclosed Representation tags nest the following ones inside them, so a
    BaseURL belongs to the nearest enclosing Representation only.
    """
    found: List[_Candidate] = []
    # (tag, mime type of the enclosing AdaptationSet, index of the enclosing Representation)
    stack: List[Tuple[Tag, Optional[str], Optional[int]]] = [(soup, None, None)]
    while stack:
        node, adaptation_mime, owner = stack.pop()
        if node.name == "adaptationset":
            adaptation_mime = _first_attribute(node, MIME_ATTRIBUTES)
            owner = None
        elif node.name == "representation":
            owner = len(found)
            found.append(_Candidate(tag=node, adaptation_mime=adaptation_mime))
        elif node.name == "baseurl" and owner is not None and found[owner].base_url is None:
            found[owner].base_url = _own_text(node)
        for child in reversed(node.contents):
            if isinstance(child, Tag):
                stack.append((child, adaptation_mime, owner))
    return found


def _to_rendition(candidate: _Candidate) -> Optional[Rendition]:
    representation = candidate.tag
    mime_type = _first_attribute(representation, MIME_ATTRIBUTES) or candidate.adaptation_mime
    if mime_type and mime_type.lower().startswith("audio"):
        return None

    url = candidate.base_url or _first_attribute(representation, URL_ATTRIBUTES)
    if not url:
        raise ParseFailure("representation without URL")

    return Rendition(
        bandwidth=_safe_positive_int(representation.get("bandwidth")) or 0,
        url=url,
        quality_label=_first_attribute(representation, QUALITY_LABEL_ATTRIBUTES),
        width=_safe_positive_int(representation.get("width")),
        height=_safe_positive_int(representation.get("height")),
        mime_type=mime_type,
    )


def _video_representations(manifest_text: Any) -> List[Rendition]:
    # Every video Representation with a URL; bandwidth is 0 when missing or unusable.
    if not isinstance(manifest_text, str) or not manifest_text.strip():
        return []
    if len(manifest_text) > MAX_MANIFEST_CHARS:
        logger.warning(
            "%s", ParseFailure(f"Manifest of {len(manifest_text)} chars exceeds limit of {MAX_MANIFEST_CHARS}")
        )
        return []

    try:
        soup = BeautifulSoup(manifest_text, "html.parser")
    except ParserRejectedMarkup as exc:
        logger.warning("%s", ParseFailure(f"Manifest rejected by parser: {exc}"))
        return []

    renditions: List[Rendition] = []
    skipped = 0
    for candidate in _collect(soup):
        try:
            rendition = _to_rendition(candidate)
        except ParseFailure:
            skipped += 1
            continue
        if rendition is not None:
            renditions.append(rendition)

    if skipped:
        logger.debug("Skipped %d manifest representations without a URL", skipped)
    return renditions


def parse_renditions(manifest_text: Any) -> List[Rendition]:
    """Return every well-formed video rendition (URL and bandwidth) in document order."""
    return [r for r in _video_representations(manifest_text) if r.bandwidth > 0]


def lowest_bandwidth(renditions: Iterable[Rendition]) -> Optional[Rendition]:
    """Lowest-bandwidth playable rendition; ties keep first-seen order."""
    playable = [r for r in renditions if r.url and r.bandwidth and r.bandwidth > 0]
    if not playable:
        return None
    return sorted(playable, key=lambda r: r.bandwidth)[0]


def select_lowest_bandwidth(
    manifest_text: Any,
    preferred_label: Optional[str] = DEFAULT_PREFERRED_QUALITY_LABEL,
) -> Optional[Rendition]:
    """Pick the cheapest playable rendition from a manifest.

    A rendition explicitly labelled with ``preferred_label`` wins outright,
    even if a lower-bandwidth entry exists or it declares no bandwidth at
    all. Otherwise the globally lowest bandwidth entry is returned. Returns
    None for empty, oversized or unusable input.
    """
    renditions = _video_representations(manifest_text)
    if not renditions:
        return None

    marker = (preferred_label or "").strip().lower()
    if marker:
        for rendition in renditions:
            if (rendition.quality_label or "").strip().lower() == marker:
                return rendition

    return lowest_bandwidth(renditions)
