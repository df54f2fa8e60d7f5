"""SQLite rule repository adapter for the sync server.

Implements the core RuleRepositoryPort. Rows are snake_case; keywords and
platforms are stored as JSON text and decoded through core.rule_codec.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Optional

from core.ids import generate_server_id
from core.models import MuteRule
from core.rule_codec import rule_from_row, rule_to_row

LOGGER = logging.getLogger(__name__)


def _loads(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        # Older rows may hold a bare keyword or platform name.
        return value


class SQLiteRuleRepository:
    """Owner-scoped rule rows in one SQLite table."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the mute_rules table if it does not exist.

        Fields:
        - seq: insertion order, keeps listings stable
        - id: server id (UUID), unique across all users
        - user_id: owner; every query is scoped by it
        - client_id: locally-minted id the row was created from, if any
        - keywords / platforms: JSON text
        - start_time / duration_ms: epoch ms and length (-1 permanent)
        - use_regex / case_sensitive / match_whole_word: mode flags
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS mute_rules (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    client_id TEXT,
                    keywords TEXT NOT NULL,
                    platforms TEXT NOT NULL,
                    start_time INTEGER NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    use_regex INTEGER NOT NULL DEFAULT 0,
                    case_sensitive INTEGER NOT NULL DEFAULT 0,
                    match_whole_word INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS mute_rules_user ON mute_rules (user_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS mute_rules_client ON mute_rules (user_id, client_id)"
            )

    @staticmethod
    def _to_rule(row: sqlite3.Row) -> MuteRule:
        record = dict(row)
        record.pop("client_id", None)
        record["keywords"] = _loads(record.get("keywords"))
        record["platforms"] = _loads(record.get("platforms"))
        return rule_from_row(record)

    def list_rules(self, user_id: str) -> list[MuteRule]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mute_rules WHERE user_id = ? ORDER BY seq",
                (user_id,),
            ).fetchall()
        return [self._to_rule(row) for row in rows]

    def get_rule(self, user_id: str, rule_id: str) -> Optional[MuteRule]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mute_rules WHERE user_id = ? AND id = ?",
                (user_id, rule_id),
            ).fetchone()
        return self._to_rule(row) if row else None

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM mute_rules WHERE user_id = ? AND id = ?",
                (user_id, rule_id),
            )
            return cur.rowcount > 0

    def insert_rule(self, user_id: str, rule: MuteRule, client_id: Optional[str] = None) -> MuteRule:
        """Insert a rule and return the stored copy.

        An id already taken by another row is replaced with a fresh one, so
        callers must use the returned rule's id.
        """

        candidate = rule
        while True:
            row = rule_to_row(candidate, user_id)
            try:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO mute_rules (
                            id,
                            user_id,
                            client_id,
                            keywords,
                            platforms,
                            start_time,
                            duration_ms,
                            use_regex,
                            case_sensitive,
                            match_whole_word
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            row["id"],
                            row["user_id"],
                            client_id,
                            json.dumps(row["keywords"]),
                            json.dumps(row["platforms"]),
                            row["start_time"],
                            row["duration_ms"],
                            int(row["use_regex"]),
                            int(row["case_sensitive"]),
                            int(row["match_whole_word"]),
                        ),
                    )
            except sqlite3.IntegrityError:
                LOGGER.warning("Rule id %s already taken, minting a new one", candidate.id)
                candidate = candidate.with_id(generate_server_id())
                continue
            stored = self.get_rule(user_id, candidate.id)
            if stored is None:
                raise RuntimeError(f"Inserted rule {candidate.id} could not be read back")
            return stored

    def find_by_client_id(self, user_id: str, client_id: str) -> Optional[MuteRule]:
        """Return the row previously created from a locally-minted id, if any."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mute_rules WHERE user_id = ? AND client_id = ? ORDER BY seq LIMIT 1",
                (user_id, client_id),
            ).fetchone()
        return self._to_rule(row) if row else None
