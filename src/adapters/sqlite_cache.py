"""SQLite rule cache adapter.

Implements the core RuleCachePort. Each identity owns one row holding the
whole rule list as a JSON array of camelCase records, so every write is a
whole-list replacement.
"""

from __future__ import annotations

from dataclasses import asdict
import json
import logging
import sqlite3
from typing import Iterable, Optional

from core.ids import LOCAL_PREFIX, now_ms as _now_ms
from core.models import MuteRule, SyncStatus
from core.rule_codec import rule_to_wire, rules_from_wire
from core.rules_engine import is_expired

LOGGER = logging.getLogger(__name__)

ACTIVE_KEY = "active"


def _dedupe(rules: Iterable[MuteRule]) -> list[MuteRule]:
    """Keep the first occurrence of each id, preserving order."""

    seen: set[str] = set()
    unique: list[MuteRule] = []
    for rule in rules:
        if rule.id in seen:
            continue
        seen.add(rule.id)
        unique.append(rule)
    return unique


class SQLiteRuleCache:
    """Thin SQLite wrapper that satisfies the RuleCachePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - rule_cache: per-identity JSON list of rules
        - sync_status: per-identity bookkeeping about recent sync attempts
        - flags: global switches such as the pause flag
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rule_cache (
                    user_id TEXT PRIMARY KEY,
                    rules_json TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_status (
                    user_id TEXT PRIMARY KEY,
                    status_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS flags (
                    name TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    # Rules

    def get(self, user_id: str) -> list[MuteRule]:
        """Return the cached rules for an identity (empty if none or corrupt)."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT rules_json FROM rule_cache WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return []
        try:
            records = json.loads(row["rules_json"])
        except json.JSONDecodeError:
            LOGGER.error("Cached rules for %s are not valid JSON, treating as empty", user_id)
            return []
        if not isinstance(records, list):
            LOGGER.error("Cached rules for %s are not a list, treating as empty", user_id)
            return []
        return rules_from_wire(records)

    def put(self, user_id: str, rules: Iterable[MuteRule]) -> None:
        """Replace the whole cached list for an identity."""

        payload = json.dumps([rule_to_wire(rule) for rule in _dedupe(rules)])
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rule_cache (user_id, rules_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    rules_json = excluded.rules_json,
                    updated_at = excluded.updated_at
                """,
                (user_id, payload, _now_ms()),
            )

    def upsert(self, user_id: str, rule: MuteRule) -> list[MuteRule]:
        """Insert or replace one rule and return the new list.

        Replaces by id first. A rule carrying a server id also replaces a
        locally-minted entry with the same keyword set, which is how a
        locally created rule gets swapped for its synced copy.
        """

        rules = self.get(user_id)
        index = next((i for i, existing in enumerate(rules) if existing.id == rule.id), None)
        if index is None and rule.server_synced:
            index = next(
                (
                    i
                    for i, existing in enumerate(rules)
                    if existing.id.startswith(LOCAL_PREFIX) and existing.keyword_key() == rule.keyword_key()
                ),
                None,
            )
        if index is None:
            rules.append(rule)
        else:
            rules[index] = rule
        rules = _dedupe(rules)
        self.put(user_id, rules)
        return rules

    def remove(self, user_id: str, rule_id: str) -> list[MuteRule]:
        rules = [rule for rule in self.get(user_id) if rule.id != rule_id]
        self.put(user_id, rules)
        return rules

    def apply_id_mapping(self, user_id: str, mapping: dict[str, str]) -> list[MuteRule]:
        """Rename client ids to server ids, leaving exactly one copy of each."""

        rules = self.get(user_id)
        if not mapping:
            return rules
        renamed = [rule.with_id(mapping[rule.id]) if rule.id in mapping else rule for rule in rules]
        rules = _dedupe(renamed)
        self.put(user_id, rules)
        LOGGER.info("Applied %s id mapping(s) to cache for %s", len(mapping), user_id)
        return rules

    def cleanup_expired(self, user_id: str, now_ms: Optional[int] = None) -> list[str]:
        """Drop expired rules from the cache and return their ids."""

        now = _now_ms() if now_ms is None else now_ms
        rules = self.get(user_id)
        kept = [rule for rule in rules if not is_expired(rule, now)]
        removed = [rule.id for rule in rules if is_expired(rule, now)]
        if removed:
            self.put(user_id, kept)
            LOGGER.info("Removed %s expired rule(s) from cache for %s", len(removed), user_id)
        return removed

    # Sync status

    def get_status(self, user_id: str) -> SyncStatus:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT status_json FROM sync_status WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return SyncStatus()
        try:
            return SyncStatus(**json.loads(row["status_json"]))
        except (json.JSONDecodeError, TypeError):
            LOGGER.error("Stored sync status for %s is unreadable, resetting", user_id)
            return SyncStatus()

    def set_status(self, user_id: str, status: SyncStatus) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_status (user_id, status_json)
                VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET status_json = excluded.status_json
                """,
                (user_id, json.dumps(asdict(status))),
            )

    # Pause flag

    def is_active(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM flags WHERE name = ?", (ACTIVE_KEY,)).fetchone()
        return row is None or row["value"] == "1"

    def set_active(self, active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO flags (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value
                """,
                (ACTIVE_KEY, "1" if active else "0"),
            )
