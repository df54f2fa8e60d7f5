"""Translation between MuteRule and its wire, cache and store shapes.

The wire format and the local cache use camelCase records; the rule store
uses snake_case rows. This module is the only place that knows either
shape, and the only place that validates rules arriving from outside.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from core.errors import MalformedRuleError
from core.ids import now_ms
from core.models import DEFAULT_PLATFORMS, PERMANENT, MuteRule, Platform

LOGGER = logging.getLogger(__name__)


def _coerce_keywords(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    elif not isinstance(raw, (list, tuple)):
        raw = [str(raw)]
    keywords = [str(k) for k in raw if k is not None and str(k).strip()]
    return tuple(keywords)


def _coerce_platforms(raw: Any) -> tuple[Platform, ...]:
    """Normalize the platform shapes seen in stored rows to ``Platform``s.

    Accepts a list of ``{id, name}`` dicts, a list of strings, a single
    string, or a mapping of ``id -> name``/``id -> {name}``.
    """

    if raw is None:
        return ()
    if isinstance(raw, str):
        return (Platform(raw, raw),)
    items: list[Platform] = []
    if isinstance(raw, Mapping):
        for key, value in raw.items():
            if isinstance(value, str):
                items.append(Platform(value, value))
            elif isinstance(value, Mapping):
                items.append(Platform(str(value.get("id", key)), str(value.get("name", key))))
            else:
                items.append(Platform(str(key), str(value)))
        return tuple(items)
    for entry in raw:
        if isinstance(entry, str):
            items.append(Platform(entry, entry))
        elif isinstance(entry, Mapping) and entry.get("id"):
            platform_id = str(entry["id"])
            items.append(Platform(platform_id, str(entry.get("name") or platform_id)))
    return tuple(items)


def _platforms_to_wire(platforms: Iterable[Platform]) -> list[dict]:
    return [{"id": p.id, "name": p.name} for p in platforms]


def validate_rule(rule: MuteRule) -> MuteRule:
    """Raise MalformedRuleError unless the rule satisfies the model invariants."""

    if not rule.id:
        raise MalformedRuleError("rule id is required")
    if not rule.keywords:
        raise MalformedRuleError(f"rule {rule.id} has no keywords")
    if not rule.platforms:
        raise MalformedRuleError(f"rule {rule.id} has no platforms")
    if rule.duration_ms == 0:
        raise MalformedRuleError(f"rule {rule.id} has a zero duration")
    if rule.duration_ms < 0 and rule.duration_ms != PERMANENT:
        raise MalformedRuleError(f"rule {rule.id} has a negative duration")
    return rule


def rule_from_wire(record: Mapping[str, Any], *, strict: bool = True) -> MuteRule:
    """Build a MuteRule from a camelCase record (wire or cache).

    Missing platforms mean "all". In strict mode missing keywords and a
    zero duration are rejected. Non-strict mode only decodes; the store
    validates each client rule itself so one bad record cannot hide the
    ids of the rest.
    """

    rule_id = record.get("id")
    keywords = _coerce_keywords(record.get("keywords"))
    platforms = _coerce_platforms(record.get("platforms")) or DEFAULT_PLATFORMS

    duration = record.get("durationMs")
    start_time = record.get("startTime")
    rule = MuteRule(
        id=str(rule_id) if rule_id is not None else "",
        keywords=keywords,
        platforms=platforms,
        start_time=int(start_time) if start_time is not None else 0,
        duration_ms=int(duration) if duration is not None else PERMANENT,
        use_regex=bool(record.get("useRegex", False)),
        case_sensitive=bool(record.get("caseSensitive", False)),
        match_whole_word=bool(record.get("matchWholeWord", False)),
    )
    if strict:
        validate_rule(rule)
    return rule


def rule_to_wire(rule: MuteRule) -> dict:
    """Return the camelCase record for the wire and the local cache."""

    return {
        "id": rule.id,
        "keywords": list(rule.keywords),
        "platforms": _platforms_to_wire(rule.platforms),
        "startTime": rule.start_time,
        "durationMs": rule.duration_ms,
        "useRegex": rule.use_regex,
        "caseSensitive": rule.case_sensitive,
        "matchWholeWord": rule.match_whole_word,
        "serverSynced": rule.server_synced,
    }


def rules_from_wire(records: Iterable[Mapping[str, Any]], *, strict: bool = True) -> list[MuteRule]:
    """Decode a list of records, skipping (and logging) malformed ones."""

    rules: list[MuteRule] = []
    for record in records or []:
        try:
            rules.append(rule_from_wire(record, strict=strict))
        except MalformedRuleError as exc:
            LOGGER.warning("Skipping malformed rule record: %s", exc)
    return rules


def rule_from_row(row: Mapping[str, Any]) -> MuteRule:
    """Build a MuteRule from a snake_case store row.

    Stored rows are trusted but historically loose: keywords may be a
    scalar and platforms may be a string or mapping, so both are coerced
    with the same fallbacks the sync endpoint always applied.
    """

    keywords = _coerce_keywords(row.get("keywords")) or ("unknown",)
    platforms = _coerce_platforms(row.get("platforms")) or DEFAULT_PLATFORMS
    duration = row.get("duration_ms")
    return MuteRule(
        id=str(row["id"]),
        keywords=keywords,
        platforms=platforms,
        start_time=int(row.get("start_time") or 0),
        duration_ms=int(duration) if duration is not None else PERMANENT,
        use_regex=bool(row.get("use_regex")),
        case_sensitive=bool(row.get("case_sensitive")),
        match_whole_word=bool(row.get("match_whole_word")),
    )


def rule_to_row(rule: MuteRule, user_id: str, *, now: Optional[int] = None) -> dict:
    """Return the snake_case row inserted by the rule store.

    Rules reach here already validated; a missing start time defaults to now.
    """

    return {
        "id": rule.id,
        "user_id": user_id,
        "keywords": list(rule.keywords),
        "platforms": _platforms_to_wire(rule.platforms),
        "start_time": rule.start_time or (now if now is not None else now_ms()),
        "duration_ms": rule.duration_ms,
        "use_regex": rule.use_regex,
        "case_sensitive": rule.case_sensitive,
        "match_whole_word": rule.match_whole_word,
    }
