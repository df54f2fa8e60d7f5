"""Page scanner and mutation watcher.

The scanner applies and reverses suppression effects on one page. It is
single-threaded and event driven: a scan runs on start, on every page
mutation, on rule updates and on resume. There is no coalescing of
mutation bursts; every mutation triggers a full scan.

States: idle -> scanning -> paused | watching.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import html
import logging
from typing import Callable, Iterable, List, Optional

from bs4 import Tag

from core.config import ScannerConfig
from core.context import element_match_text, inside_injected, page_context
from core.models import MuteRule
from core.page import Mutation, PageDocument, get_style, set_style
from core.platforms import detect_platform, platform_selectors
from core.rules_engine import RuleMatch, find_match

LOGGER = logging.getLogger(__name__)

IDLE = "idle"
SCANNING = "scanning"
PAUSED = "paused"
WATCHING = "watching"

MUTED_ATTR = "data-silent-zone-muted"
KEY_ATTR = "data-silent-zone-key"
OVERLAY_ID_ATTR = "data-silent-zone-overlay-id"
ORIGINAL_ATTRS = {
    "filter": "data-silent-zone-original-filter",
    "opacity": "data-silent-zone-original-opacity",
    "position": "data-silent-zone-original-position",
}
OVERLAY_CLASS = "silent-zone-overlay"
PAGE_WARNING_CLASS = "silent-zone-page-warning"

VIEWPORT_EVENTS = ("resize", "scroll")


@dataclass
class PageSession:
    """Per-page user decisions; lives as long as the scanner."""

    allowed: bool = False
    revealed: set[str] = field(default_factory=set)


class PageScanner:
    """Apply suppression effects to one page according to the current rules."""

    def __init__(
        self,
        page: PageDocument,
        config: Optional[ScannerConfig] = None,
        platform: Optional[str] = None,
        on_go_back: Optional[Callable[[], None]] = None,
    ) -> None:
        self._page = page
        self._config = config or ScannerConfig()
        self.platform = platform or detect_platform(page.hostname)
        self._on_go_back = on_go_back
        self._rules: List[MuteRule] = []
        self._active = True
        self._disconnect: Optional[Callable[[], None]] = None
        self._recheck: Optional[asyncio.TimerHandle] = None
        # overlay id -> element whose box the overlay tracks on resize/scroll
        self._tracked: dict[str, Tag] = {}
        self._next_key = 0
        self.session = PageSession()
        self.state = IDLE

    @property
    def rules(self) -> List[MuteRule]:
        return list(self._rules)

    @property
    def active(self) -> bool:
        return self._active

    # Lifecycle

    def start(self, rules: Iterable[MuteRule], active: bool = True) -> None:
        """Load rules, then either clear everything (paused) or scan and watch."""

        self._rules = list(rules)
        self._active = active
        if not active:
            LOGGER.info("Scanner paused on start, clearing all effects")
            self.unmute_page()
            self.state = PAUSED
            return
        self.scan()
        self._watch()
        self.state = WATCHING

    def stop(self) -> None:
        if self._disconnect is not None:
            self._disconnect()
            self._disconnect = None
        self._cancel_recheck()
        self.state = IDLE

    def _watch(self) -> None:
        if self._disconnect is None:
            self._disconnect = self._page.observe(self._on_mutations)

    def _on_mutations(self, mutations: List[Mutation]) -> None:
        LOGGER.debug("%s mutation(s) observed, rescanning", len(mutations))
        self.scan()

    def update_rules(self, rules: Iterable[MuteRule]) -> None:
        self._rules = list(rules)
        LOGGER.info("Scanner received %s rules", len(self._rules))
        if self.state != IDLE:
            self.scan()

    def set_active(self, active: bool) -> None:
        """Pause or resume suppression.

        Pausing clears every effect and warning and restores scrolling right
        away, then once more after ``recheck_delay`` to catch effects from
        scans already in flight when the toggle happened.
        """

        self._active = active
        if active:
            LOGGER.info("Scanner resumed, rescanning page")
            self._cancel_recheck()
            self._watch()
            self.scan()
            self.state = WATCHING
            return

        LOGGER.info("Scanner paused, clearing all effects")
        self.unmute_page()
        self.state = PAUSED
        self._schedule_recheck()

    def _schedule_recheck(self) -> None:
        self._cancel_recheck()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running event loop, skipping delayed pause re-check")
            return
        self._recheck = loop.call_later(self._config.recheck_delay, self._pause_recheck)

    def _cancel_recheck(self) -> None:
        if self._recheck is not None:
            self._recheck.cancel()
            self._recheck = None

    def _pause_recheck(self) -> None:
        self._recheck = None
        if self._active:
            return
        leftovers = self._page.select(f".{PAGE_WARNING_CLASS}, [{MUTED_ATTR}='true']")
        if leftovers:
            LOGGER.info("Follow-up check found %s leftover effects, removing them", len(leftovers))
        self.unmute_page()

    # Scanning

    def scan(self) -> None:
        """Run one full scan pass over the page."""

        if not self._active:
            self.unmute_page()
            return

        resume_state = self.state if self.state != SCANNING else WATCHING
        self.state = SCANNING
        try:
            page_match = find_match(
                page_context(self._page.soup, self._page.url), self._rules, self.platform
            )
            if page_match is not None:
                LOGGER.info("Page context matches rule %s", page_match.rule.id)
                self.show_page_warning(page_match)
                return
            # The page no longer matches, so lift any interstitial left from earlier rules.
            self._remove_page_warnings()

            for element in self._text_elements():
                match = find_match(element_match_text(element), self._rules, self.platform)
                if match is not None and self._key(element) not in self.session.revealed:
                    self.mute_element(element, match)
                else:
                    self.unmute_element(element)
        finally:
            self.state = resume_state

    def _text_elements(self) -> List[Tag]:
        cfg = self._config
        elements: List[Tag] = []
        for element in self._page.select(platform_selectors(self.platform)):
            if inside_injected(element):
                continue
            if self._page.qualifies(element, cfg.min_words, cfg.min_width, cfg.min_height):
                elements.append(element)
        return elements

    def _key(self, element: Tag) -> str:
        key = element.get(KEY_ATTR)
        if not key:
            self._next_key += 1
            key = f"sz-{self._next_key}"
            element[KEY_ATTR] = key
        return key

    # Element effects

    def mute_element(self, element: Tag, match: RuleMatch) -> None:
        """Blur, dim and cover the element. No-op if already muted."""

        if element.get(MUTED_ATTR) == "true":
            return

        element[MUTED_ATTR] = "true"
        for prop, attr in ORIGINAL_ATTRS.items():
            element[attr] = get_style(element, prop)
        set_style(element, "filter", f"blur({self._config.blur_amount})")
        set_style(element, "opacity", self._config.opacity)

        overlay_id = f"silent-zone-overlay-{self._key(element)}"
        keywords = html.escape(", ".join(match.keywords or list(match.rule.keywords)))
        overlay = self._page.fragment(
            f'<div class="{OVERLAY_CLASS}" id="{overlay_id}">'
            f'<div class="silent-zone-warning">'
            f"<p>Content muted: Contains &quot;{keywords}&quot;</p>"
            f'<button class="silent-zone-show-btn" data-overlay-id="{overlay_id}">Show Anyway</button>'
            f"</div></div>"
        )[0]
        self._page.body.append(overlay)
        element[OVERLAY_ID_ATTR] = overlay_id
        self._tracked[overlay_id] = element
        self._position_overlay(element, overlay)

    def unmute_element(self, element: Tag) -> None:
        """Restore the element's original look. No-op if not muted."""

        if element.get(MUTED_ATTR) != "true":
            return

        for prop, attr in ORIGINAL_ATTRS.items():
            set_style(element, prop, element.get(attr) or "")
            if element.has_attr(attr):
                del element[attr]
        del element[MUTED_ATTR]

        overlay_id = element.get(OVERLAY_ID_ATTR)
        if overlay_id:
            overlay = self._page.soup.find(id=overlay_id)
            if overlay is not None:
                overlay.decompose()
            del element[OVERLAY_ID_ATTR]
            self._tracked.pop(overlay_id, None)

    def _position_overlay(self, element: Tag, overlay: Tag) -> None:
        box = self._page.measurer.measure(element)
        set_style(overlay, "position", "absolute")
        set_style(overlay, "top", f"{box.top + self._page.scroll_y:g}px")
        set_style(overlay, "left", f"{box.left + self._page.scroll_x:g}px")
        set_style(overlay, "width", f"{box.width:g}px")
        set_style(overlay, "height", f"{box.height:g}px")

    def on_viewport_event(self, kind: str) -> None:
        """Re-position every overlay after a ``resize`` or ``scroll``."""

        if kind not in VIEWPORT_EVENTS:
            return
        for overlay_id, element in list(self._tracked.items()):
            overlay = self._page.soup.find(id=overlay_id)
            if overlay is None:
                self._tracked.pop(overlay_id, None)
                continue
            self._position_overlay(element, overlay)

    def show_anyway(self, overlay_id: str) -> bool:
        """Reveal one muted element and keep it revealed for this page."""

        element = self._tracked.get(overlay_id)
        if element is None:
            return False
        self.session.revealed.add(self._key(element))
        self.unmute_element(element)
        LOGGER.info("User revealed muted element %s", overlay_id)
        return True

    def muted_elements(self) -> List[Tag]:
        return self._page.select(f"[{MUTED_ATTR}='true']")

    def overlays(self) -> List[Tag]:
        return self._page.select(f".{OVERLAY_CLASS}")

    # Page-level warning

    def show_page_warning(self, match: RuleMatch) -> None:
        """Cover the whole page with one interstitial and block scrolling."""

        if not self._active:
            return
        if self.session.allowed:
            LOGGER.debug("Page allowed for this session, not showing warning")
            return
        if self.page_warnings():
            return

        keywords = html.escape(", ".join(match.rule.keywords))
        warning = self._page.fragment(
            f'<div class="{PAGE_WARNING_CLASS}" style="position: fixed; top: 0; left: 0; '
            f"width: 100%; height: 100%; background-color: rgba(0, 0, 0, 0.8); "
            f'z-index: 9999999; display: flex; align-items: center; justify-content: center">'
            f'<div class="silent-zone-page-warning-content">'
            f"<h2>Content Muted</h2>"
            f"<p>This page contains content related to: &quot;{keywords}&quot;</p>"
            f'<div class="silent-zone-page-warning-buttons">'
            f'<button class="silent-zone-page-warning-proceed">Proceed Anyway</button>'
            f'<button class="silent-zone-page-warning-back">Go Back</button>'
            f"</div></div></div>"
        )[0]
        self._page.body.append(warning)
        set_style(self._page.body, "overflow", "hidden")

    def page_warnings(self) -> List[Tag]:
        return self._page.select(f".{PAGE_WARNING_CLASS}")

    def _remove_page_warnings(self) -> None:
        for warning in self.page_warnings():
            warning.decompose()
        if get_style(self._page.body, "overflow") == "hidden":
            set_style(self._page.body, "overflow", "")

    def proceed_anyway(self) -> None:
        """Dismiss the interstitial and allow this page for the session."""

        self._remove_page_warnings()
        self.session.allowed = True
        LOGGER.info("User chose to proceed on %s", self._page.url)

    def go_back(self) -> None:
        if self._on_go_back is not None:
            self._on_go_back()

    def unmute_page(self) -> None:
        """Reverse every element effect, remove warnings, restore scrolling."""

        for element in self.muted_elements():
            self.unmute_element(element)
        # Overlays whose element vanished from the page
        for overlay in self.overlays():
            overlay.decompose()
        self._tracked.clear()
        self._remove_page_warnings()
