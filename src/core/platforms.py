"""Platform detection and per-platform content selectors."""

from __future__ import annotations

DEFAULT_PLATFORM = "news"

COMMON_SELECTORS = 'p, article, .content, [role="article"]'

# Selectors pick text-bearing content blocks and skip site chrome.
PLATFORM_SELECTORS: dict[str, str] = {
    "facebook": (
        '.userContent, .userContentWrapper, [data-ad-preview="message"], '
        '[data-testid="post_message"], [role="article"]'
    ),
    "twitter": '.tweet-text, [data-testid="tweetText"], article, [role="article"]',
    "youtube": (
        "#content-text, .ytd-video-secondary-info-renderer, .ytd-comment-renderer-text, "
        ".comment-renderer-text-content, .ytd-expander"
    ),
    "reddit": '.entry .md, .Comment__body, [data-test-id="post-content"], .Post__content',
    "tiktok": ".tiktok-1itcwxg-ImgPoster, .tiktok-1n8z9r7-DivContainer, .video-feed-item-desc",
    "instagram": ".C4VMK, ._a9zs, .xdj266r, ._aacl",
    "news": (
        "article, .article-body, .article-content, .story-body, .story-content, "
        ".entry-content, .post-content"
    ),
}

_HOST_MARKERS: list[tuple[str, tuple[str, ...]]] = [
    ("facebook", ("facebook.com",)),
    ("youtube", ("youtube.com",)),
    ("twitter", ("twitter.com", "x.com")),
    ("tiktok", ("tiktok.com",)),
    ("reddit", ("reddit.com",)),
    ("instagram", ("instagram.com",)),
]


def detect_platform(hostname: str) -> str:
    """Map a hostname to a platform id; anything unknown counts as news."""

    host = (hostname or "").lower()
    for platform, markers in _HOST_MARKERS:
        if any(host == marker or host.endswith("." + marker) for marker in markers):
            return platform
    return DEFAULT_PLATFORM


def platform_selectors(platform: str) -> str:
    return PLATFORM_SELECTORS.get(platform, COMMON_SELECTORS)
