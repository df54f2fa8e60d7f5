from __future__ import annotations

import asyncio

from core.config import ScannerConfig
from core.models import MuteRule
from core.page import PageDocument, get_style
from core.rules_engine import RuleMatch
from core.scanner import OVERLAY_ID_ATTR, PAUSED, WATCHING, PageScanner

PAGE = """
<html><head><title>Daily news</title></head><body>
<div><article>The big spoiler about the finale was revealed today</article></div>
<div><article style="opacity: 0.9">Weather will be sunny across the region tomorrow</article></div>
</body></html>
"""

SPOILER = MuteRule(id="r1", keywords=("spoiler",))


def _scanner(html: str = PAGE, url: str = "https://example.com/today", **config) -> tuple[PageDocument, PageScanner]:
    page = PageDocument(html, url=url)
    return page, PageScanner(page, ScannerConfig(**config))


def test_scan_mutes_only_matching_elements() -> None:
    page, scanner = _scanner()
    scanner.start([SPOILER])

    muted = scanner.muted_elements()
    assert scanner.state == WATCHING
    assert len(muted) == 1
    assert "spoiler" in muted[0].get_text()
    assert get_style(muted[0], "filter") == "blur(8px)"
    assert get_style(muted[0], "opacity") == "0.7"
    overlays = scanner.overlays()
    assert len(overlays) == 1
    assert "Show Anyway" in overlays[0].get_text()
    assert '"spoiler"' in overlays[0].get_text()


def test_muting_twice_leaves_one_overlay_and_same_style() -> None:
    page, scanner = _scanner()
    scanner.start([SPOILER])
    element = scanner.muted_elements()[0]
    style_before = element["style"]

    scanner.mute_element(element, RuleMatch(rule=SPOILER, keywords=["spoiler"]))

    assert len(scanner.overlays()) == 1
    assert element["style"] == style_before


def test_unmute_restores_original_style() -> None:
    html = PAGE.replace("sunny", "sunny spoiler")
    page, scanner = _scanner(html)
    scanner.start([SPOILER])
    assert len(scanner.muted_elements()) == 2

    scanner.update_rules([])

    assert scanner.muted_elements() == []
    assert scanner.overlays() == []
    weather = page.select("article")[1]
    assert weather["style"] == "opacity: 0.9"
    assert not page.select("article")[0].has_attr("style")


def test_mutations_trigger_rescan() -> None:
    page, scanner = _scanner()
    scanner.start([SPOILER])

    page.append_html("<div><article>Another spoiler appears in this late article</article></div>")

    assert len(scanner.muted_elements()) == 2

    scanner.stop()
    page.append_html("<div><article>One more spoiler after the scanner stopped</article></div>")
    assert len(scanner.muted_elements()) == 2


def test_small_elements_are_ignored() -> None:
    html = '<body><div><article style="width: 40px">spoiler spoiler spoiler</article></div></body>'
    page, scanner = _scanner(html)
    scanner.start([SPOILER])

    assert scanner.muted_elements() == []


def test_show_anyway_keeps_element_revealed() -> None:
    page, scanner = _scanner()
    scanner.start([SPOILER])
    element = scanner.muted_elements()[0]
    overlay_id = element[OVERLAY_ID_ATTR]

    assert scanner.show_anyway(overlay_id)
    assert scanner.muted_elements() == []

    scanner.update_rules([SPOILER])
    assert scanner.muted_elements() == []
    assert not scanner.show_anyway("missing")


def test_page_level_match_shows_single_warning() -> None:
    html = PAGE.replace("Daily news", "Spoiler alert: finale recap")
    page, scanner = _scanner(html)
    went_back = []
    scanner = PageScanner(page, on_go_back=lambda: went_back.append(True))
    scanner.start([SPOILER])

    assert len(scanner.page_warnings()) == 1
    assert get_style(page.body, "overflow") == "hidden"
    assert scanner.muted_elements() == []

    scanner.scan()
    assert len(scanner.page_warnings()) == 1

    scanner.go_back()
    assert went_back == [True]

    scanner.proceed_anyway()
    assert scanner.page_warnings() == []
    assert get_style(page.body, "overflow") == ""
    assert scanner.session.allowed

    scanner.scan()
    assert scanner.page_warnings() == []


def test_overlay_follows_scroll() -> None:
    page, scanner = _scanner()
    scanner.start([SPOILER])

    page.scroll_to(0, 100)
    scanner.on_viewport_event("scroll")

    assert get_style(scanner.overlays()[0], "top") == "100px"


def test_pause_clears_effects_and_rechecks_later() -> None:
    async def scenario() -> tuple[int, int]:
        page, scanner = _scanner(recheck_delay=0.01)
        scanner.start([SPOILER])
        element = page.select("article")[0]

        scanner.set_active(False)
        assert scanner.state == PAUSED
        assert scanner.muted_elements() == []

        # An effect applied by a scan that was still running when paused.
        scanner.mute_element(element, RuleMatch(rule=SPOILER, keywords=["spoiler"]))
        leftover = len(scanner.muted_elements())
        await asyncio.sleep(0.05)
        return leftover, len(scanner.muted_elements())

    leftover, after = asyncio.run(scenario())

    assert leftover == 1
    assert after == 0


def test_start_paused_and_resume() -> None:
    page, scanner = _scanner()
    scanner.start([SPOILER], active=False)

    assert scanner.state == PAUSED
    assert scanner.muted_elements() == []

    scanner.set_active(True)
    assert scanner.state == WATCHING
    assert len(scanner.muted_elements()) == 1


def test_page_warning_lifts_when_rule_is_removed() -> None:
    html = PAGE.replace("Daily news", "Spoiler alert: finale recap")
    page, scanner = _scanner(html)
    scanner.start([SPOILER])
    assert len(scanner.page_warnings()) == 1

    scanner.update_rules([])

    assert scanner.page_warnings() == []
    assert get_style(page.body, "overflow") == ""
    assert not scanner.session.allowed
