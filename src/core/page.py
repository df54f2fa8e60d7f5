"""Page document model used by the scanner.

A PageDocument wraps a BeautifulSoup tree together with its URL and a way
to measure rendered boxes. Content changes made through its methods are
reported to observers as mutation records, mirroring what a DOM mutation
observer would deliver for childList and characterData changes.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Callable, List, Optional, Protocol
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag

from core.context import word_count

CHILD_LIST = "childList"
CHARACTER_DATA = "characterData"

# Rough text metrics used when no explicit size is available.
_CHAR_WIDTH_PX = 7
_LINE_HEIGHT_PX = 18
_MAX_LINE_WIDTH_PX = 800

_PX_RE = re.compile(r"^(-?\d+(?:\.\d+)?)px$")


@dataclass(frozen=True)
class Mutation:
    """A single content change delivered to page observers."""

    kind: str
    target: Optional[Tag] = None


@dataclass(frozen=True)
class Box:
    """Rendered position and size of an element, in document coordinates."""

    top: float
    left: float
    width: float
    height: float


class BoxMeasurer(Protocol):
    """Measure the rendered box of an element."""

    def measure(self, element: Tag) -> Box:
        ...


def parse_style(value: Optional[str]) -> dict[str, str]:
    """Parse an inline ``style`` attribute into an ordered dict."""

    declarations: dict[str, str] = {}
    for chunk in (value or "").split(";"):
        name, sep, prop_value = chunk.partition(":")
        if not sep:
            continue
        name = name.strip().lower()
        if name:
            declarations[name] = prop_value.strip()
    return declarations


def format_style(declarations: dict[str, str]) -> str:
    return "; ".join(f"{name}: {value}" for name, value in declarations.items() if value != "")


def get_style(element: Tag, name: str) -> str:
    return parse_style(element.get("style")).get(name, "")


def set_style(element: Tag, name: str, value: str) -> None:
    """Set (or clear, with an empty value) one inline style property."""

    declarations = parse_style(element.get("style"))
    if value:
        declarations[name] = value
    else:
        declarations.pop(name, None)
    formatted = format_style(declarations)
    if formatted:
        element["style"] = formatted
    elif element.has_attr("style"):
        del element["style"]


def _px(value: str) -> Optional[float]:
    match = _PX_RE.match(value.strip()) if value else None
    return float(match.group(1)) if match else None


class InlineStyleMeasurer:
    """Measure boxes from inline styles, estimating from text when absent.

    Static HTML has no layout engine, so explicit ``width``/``height``/
    ``top``/``left`` pixel values win, hidden elements measure 0x0, and
    anything else gets a line-wrapped estimate from its word count.
    """

    def measure(self, element: Tag) -> Box:
        node: Optional[Tag] = element
        while isinstance(node, Tag):
            style = parse_style(node.get("style"))
            if style.get("display") == "none" or style.get("visibility") == "hidden" or node.has_attr("hidden"):
                return Box(0, 0, 0, 0)
            node = node.parent

        style = parse_style(element.get("style"))
        text_len = len(element.get_text(" ", strip=True))
        estimated_width = min(max(text_len, 1) * _CHAR_WIDTH_PX, _MAX_LINE_WIDTH_PX)
        width = _px(style.get("width", ""))
        if width is None:
            width = float(estimated_width)
        height = _px(style.get("height", ""))
        if height is None:
            lines = max(1, -(-text_len * _CHAR_WIDTH_PX // int(max(width, 1))))
            height = float(lines * _LINE_HEIGHT_PX)
        top = _px(style.get("top", "")) or 0.0
        left = _px(style.get("left", "")) or 0.0
        return Box(top=top, left=left, width=width, height=height)


class PageDocument:
    """A parsed page with mutation notifications and scroll/viewport state."""

    def __init__(
        self,
        html: str,
        url: str = "",
        measurer: Optional[BoxMeasurer] = None,
    ) -> None:
        self.soup = BeautifulSoup(html, "html.parser")
        self.url = url
        self.measurer: BoxMeasurer = measurer or InlineStyleMeasurer()
        self.scroll_x = 0.0
        self.scroll_y = 0.0
        self._observers: List[Callable[[List[Mutation]], None]] = []
        self._ensure_body()

    def _ensure_body(self) -> None:
        if self.soup.body is not None:
            return
        host = self.soup.html or self.soup
        body = self.soup.new_tag("body")
        for child in list(host.contents):
            if isinstance(child, Tag) and child.name in ("head", "html"):
                continue
            body.append(child.extract())
        host.append(body)

    @property
    def body(self) -> Tag:
        return self.soup.body

    @property
    def hostname(self) -> str:
        return urlparse(self.url).hostname or ""

    def observe(self, callback: Callable[[List[Mutation]], None]) -> Callable[[], None]:
        """Register a mutation observer; returns a function that detaches it."""

        self._observers.append(callback)

        def disconnect() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return disconnect

    def _notify(self, mutations: List[Mutation]) -> None:
        for callback in list(self._observers):
            callback(mutations)

    def new_tag(self, name: str, **attrs: str) -> Tag:
        return self.soup.new_tag(name, attrs=attrs)

    def fragment(self, html: str) -> List[Tag]:
        parsed = BeautifulSoup(html, "html.parser")
        return [node.extract() for node in list(parsed.contents)]

    def select(self, selector: str) -> List[Tag]:
        return self.soup.select(selector)

    def append_html(self, html: str, parent: Optional[Tag] = None) -> None:
        target = parent if parent is not None else self.body
        for node in self.fragment(html):
            target.append(node)
        self._notify([Mutation(CHILD_LIST, target)])

    def replace_html(self, element: Tag, html: str) -> None:
        element.clear()
        for node in self.fragment(html):
            element.append(node)
        self._notify([Mutation(CHILD_LIST, element)])

    def set_text(self, element: Tag, text: str) -> None:
        element.string = text
        self._notify([Mutation(CHARACTER_DATA, element)])

    def remove(self, element: Tag) -> None:
        parent = element.parent
        element.decompose()
        self._notify([Mutation(CHILD_LIST, parent)])

    def scroll_to(self, x: float, y: float) -> None:
        self.scroll_x = x
        self.scroll_y = y

    def qualifies(self, element: Tag, min_words: int, min_width: float, min_height: float) -> bool:
        """Word count and rendered size filters that exclude page chrome."""

        if word_count(element.get_text(" ", strip=True)) < min_words:
            return False
        box = self.measurer.measure(element)
        return box.width > min_width and box.height > min_height

    def render(self) -> str:
        return str(self.soup)
