from __future__ import annotations

from bs4 import BeautifulSoup

from core.context import element_context, element_match_text, nearby_links, page_context, text_of
from core.platforms import detect_platform, platform_selectors


def test_page_context_collects_metadata_path_and_h1() -> None:
    soup = BeautifulSoup(
        """
        <html><head>
          <title>Match report</title>
          <meta name="description" content="Full recap">
          <meta name="keywords" content="football, derby">
          <meta property="og:title" content="Derby day">
          <meta property="og:description" content="Late winner">
        </head><body><h1>City win the derby</h1><p>Body text</p></body></html>
        """,
        "html.parser",
    )

    context = page_context(soup, "https://example.com/sport/derby-recap")

    for part in ("Match report", "Full recap", "football, derby", "Derby day", "Late winner", "/sport/derby-recap", "City win the derby"):
        assert part in context
    assert "Body text" not in context


def test_element_context_uses_parent_heading_and_nearby_links() -> None:
    soup = BeautifulSoup(
        """
        <body><section>
          <h2>Finale discussion</h2>
          <a href="/a">episode guide</a>
          <p id="target">What did everyone think?</p>
          <span>parent note</span>
          <a href="/b">cast interview</a>
        </section></body>
        """,
        "html.parser",
    )
    target = soup.find(id="target")

    context = element_context(target)

    assert "Finale discussion" in context
    assert "episode guide" in context
    assert "cast interview" in context
    assert "parent note" in context
    assert "What did everyone think?" not in context
    assert element_match_text(target).startswith("What did everyone think?")
    assert [link.get_text() for link in nearby_links(target)] == ["episode guide", "cast interview"]


def test_text_of_skips_scripts_and_injected_overlays() -> None:
    soup = BeautifulSoup(
        """
        <div id="root">Visible words<script>var hidden = 1;</script>
        <div class="silent-zone-overlay">Content muted: Contains "spoiler"</div></div>
        """,
        "html.parser",
    )

    assert text_of(soup.find(id="root")) == "Visible words"


def test_platform_detection() -> None:
    assert detect_platform("www.youtube.com") == "youtube"
    assert detect_platform("x.com") == "twitter"
    assert detect_platform("old.reddit.com") == "reddit"
    assert detect_platform("netflix.com") == "news"
    assert detect_platform("") == "news"
    assert "article" in platform_selectors("news")
    assert platform_selectors("unknown") == 'p, article, .content, [role="article"]'
