"""Page- and element-level text context for rule matching.

Matching on literal text nodes alone misses content whose topic is only
implied, so decisions use the semantic surroundings too: headings, nearby
links and parent text. This widens the match surface and accepts the extra
false positives that come with it.
"""

from __future__ import annotations

import re
from typing import Iterator, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Comment, Tag

HEADINGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
NEARBY_LINK_DISTANCE = 3

# Nodes the scanner itself injects; their text must never feed matching.
INJECTED_CLASSES = ("silent-zone-overlay", "silent-zone-page-warning")
_SKIPPED_TAGS = {"script", "style", "template", "noscript"}


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def is_injected(tag: Tag) -> bool:
    classes = tag.get("class") or []
    return any(name in classes for name in INJECTED_CLASSES)


def inside_injected(tag: Tag) -> bool:
    """True if the tag is, or sits inside, a scanner-injected node."""

    node: Optional[Tag] = tag
    while isinstance(node, Tag):
        if is_injected(node):
            return True
        node = node.parent
    return False


def _visible_strings(root: Tag, exclude: Optional[Tag] = None) -> Iterator[str]:
    for string in root.find_all(string=True):
        if isinstance(string, Comment):
            continue
        skip = False
        for parent in string.parents:
            if parent is root:
                break
            if parent is exclude or parent.name in _SKIPPED_TAGS or is_injected(parent):
                skip = True
                break
        if not skip:
            yield str(string)


def text_of(tag: Tag, exclude: Optional[Tag] = None) -> str:
    """Return the tag's text, skipping scripts, comments and injected nodes."""

    if is_injected(tag):
        return ""
    return collapse_whitespace(" ".join(_visible_strings(tag, exclude)))


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str:
    meta = soup.find("meta", attrs=attrs)
    if meta is None:
        return ""
    return (meta.get("content") or "").strip()


def page_context(soup: BeautifulSoup, url: str) -> str:
    """Title, meta description/keywords, OG title/description, URL path and all h1s."""

    parts: List[str] = []
    if soup.title and soup.title.string:
        parts.append(soup.title.string.strip())
    parts.append(_meta_content(soup, name="description"))
    parts.append(_meta_content(soup, name="keywords"))
    parts.append(_meta_content(soup, property="og:title"))
    parts.append(_meta_content(soup, property="og:description"))
    parts.append(urlparse(url).path if url else "")
    for heading in soup.find_all("h1"):
        if not inside_injected(heading):
            parts.append(text_of(heading))
    return " ".join(part for part in parts if part)


def _element_siblings(element: Tag, forward: bool, limit: int) -> Iterator[Tag]:
    node = element.next_sibling if forward else element.previous_sibling
    seen = 0
    while node is not None and seen < limit:
        if isinstance(node, Tag):
            yield node
            seen += 1
        node = node.next_sibling if forward else node.previous_sibling


def nearby_links(element: Tag, distance: int = NEARBY_LINK_DISTANCE) -> List[Tag]:
    """Anchors among the ``distance`` closest element siblings on each side."""

    links: List[Tag] = []
    for forward in (False, True):
        for sibling in _element_siblings(element, forward, distance):
            if sibling.name == "a":
                links.append(sibling)
    return links


def nearest_heading(element: Tag) -> Optional[Tag]:
    """First heading found while walking up from the element to <body>."""

    current: Optional[Tag] = element
    while isinstance(current, Tag) and current.name not in ("body", "[document]"):
        for heading in current.find_all(HEADINGS):
            if not inside_injected(heading):
                return heading
        current = current.parent
    return None


def element_context(element: Tag) -> str:
    """Parent text (minus the element), nearest heading and nearby link text."""

    parts: List[str] = []
    parent = element.parent
    if isinstance(parent, Tag) and parent.name != "[document]":
        parts.append(text_of(parent, exclude=element))

    heading = nearest_heading(element)
    if heading is not None:
        parts.append(text_of(heading))

    for link in nearby_links(element):
        parts.append(text_of(link))

    return " ".join(part for part in parts if part)


def element_match_text(element: Tag) -> str:
    """The element's own text followed by its context."""

    return f"{text_of(element)} {element_context(element)}".strip()


def word_count(text: str) -> int:
    return len(text.split())
