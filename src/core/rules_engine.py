"""Rule predicate evaluation (core domain).

Pure match logic with no I/O. Every keyword is evaluated under the rule's
mode flags and a rule matches when ANY of its keywords does.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
import re
from typing import Iterable, List, Optional

from core.ids import now_ms as _now_ms
from core.models import ALL_PLATFORMS_ID, MuteRule

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleMatch:
    """The first matching rule plus the keywords reported to the user."""

    rule: MuteRule
    keywords: List[str]

    @property
    def reason(self) -> str:
        return f"keyword(s): {', '.join(self.keywords)}"


@lru_cache(maxsize=512)
def _compile(pattern: str, flags: int) -> Optional[re.Pattern]:
    # Invalid patterns are cached as None so the warning is logged once.
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        LOGGER.warning("Invalid regex pattern %r, falling back to substring match: %s", pattern, exc)
        return None


def _flags(rule: MuteRule) -> int:
    return 0 if rule.case_sensitive else re.IGNORECASE


def match_keyword(text: str, keyword: str, rule: MuteRule) -> bool:
    """Return True when one keyword matches under the rule's mode flags.

    Never raises: a regex keyword that fails to compile degrades to plain
    substring containment for that keyword only, ignoring whole-word mode.
    """

    if rule.use_regex:
        compiled = _compile(keyword, _flags(rule))
        if compiled is not None:
            return compiled.search(text) is not None
    elif rule.match_whole_word:
        bounded = _compile(rf"\b{re.escape(keyword)}\b", _flags(rule))
        return bounded is not None and bounded.search(text) is not None

    if rule.case_sensitive:
        return keyword in text
    return keyword.casefold() in text.casefold()


def matches(text: str, rule: MuteRule) -> bool:
    """Return True if ANY keyword of the rule matches the text."""

    return any(match_keyword(text, keyword, rule) for keyword in rule.keywords)


def matched_keywords(text: str, rule: MuteRule) -> List[str]:
    """Return the keywords that match, in rule order."""

    return [keyword for keyword in rule.keywords if match_keyword(text, keyword, rule)]


def is_expired(rule: MuteRule, now_ms: Optional[int] = None) -> bool:
    """A rule is expired iff it has a finite window and ``now`` is past it.

    ``duration_ms == -1`` never expires. A zero duration is rejected at the
    boundary; if one slips through it expires immediately after start.
    """

    if rule.duration_ms < 0:
        return False
    now = _now_ms() if now_ms is None else now_ms
    return now > rule.start_time + rule.duration_ms


def applies_to_platform(rule: MuteRule, platform: str) -> bool:
    return any(p.id == ALL_PLATFORMS_ID or p.id == platform for p in rule.platforms)


def find_matching_rule(
    text: str,
    rules: Iterable[MuteRule],
    platform: str,
    now_ms: Optional[int] = None,
) -> Optional[MuteRule]:
    """Return the first applicable, unexpired rule with a matching keyword.

    Collection order decides: the first match wins and determines which
    keywords are reported to the user.
    """

    now = _now_ms() if now_ms is None else now_ms
    for rule in rules:
        if not applies_to_platform(rule, platform):
            continue
        if is_expired(rule, now):
            continue
        if matches(text, rule):
            return rule
    return None


def find_match(
    text: str,
    rules: Iterable[MuteRule],
    platform: str,
    now_ms: Optional[int] = None,
) -> Optional[RuleMatch]:
    """Like find_matching_rule, but also reports the matching keywords."""

    rule = find_matching_rule(text, rules, platform, now_ms)
    if rule is None:
        return None
    return RuleMatch(rule=rule, keywords=matched_keywords(text, rule))
