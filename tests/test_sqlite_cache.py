from __future__ import annotations

import sqlite3

from adapters.sqlite_cache import SQLiteRuleCache
from core.ids import generate_server_id
from core.models import MuteRule, SyncStatus


def _cache(tmp_path) -> SQLiteRuleCache:
    cache = SQLiteRuleCache(str(tmp_path / "cache.db"))
    cache.init_db()
    return cache


def test_put_and_get_round_trip_per_identity(tmp_path) -> None:
    cache = _cache(tmp_path)
    rules = [MuteRule(id="local_1_aaaaaaa", keywords=("spoiler",), start_time=10)]

    cache.put("alice", rules)

    assert cache.get("alice") == rules
    assert cache.get("bob") == []


def test_upsert_replaces_local_entry_with_synced_copy(tmp_path) -> None:
    cache = _cache(tmp_path)
    local = MuteRule(id="local_1_aaaaaaa", keywords=("spoiler", "leak"), start_time=10)
    other = MuteRule(id="local_2_bbbbbbb", keywords=("weather",), start_time=10)
    cache.put("alice", [local, other])

    synced = local.with_id(generate_server_id())
    rules = cache.upsert("alice", synced)

    assert [rule.id for rule in rules] == [synced.id, other.id]

    updated = MuteRule(id=synced.id, keywords=("spoiler", "leak"), start_time=10, case_sensitive=True)
    rules = cache.upsert("alice", updated)
    assert len(rules) == 2
    assert rules[0].case_sensitive


def test_upsert_collapses_keyword_sets_in_any_order(tmp_path) -> None:
    cache = _cache(tmp_path)
    cache.put("alice", [MuteRule(id="local_1_aaaaaaa", keywords=("spoiler", "leak"), start_time=10)])

    synced = MuteRule(id=generate_server_id(), keywords=("leak", "spoiler"), start_time=10)
    rules = cache.upsert("alice", synced)

    assert [rule.id for rule in rules] == [synced.id]


def test_id_mapping_leaves_exactly_one_copy(tmp_path) -> None:
    cache = _cache(tmp_path)
    server_id = generate_server_id()
    local = MuteRule(id="local_1_aaaaaaa", keywords=("spoiler",), start_time=10)
    # The synced copy may already be present next to the local one.
    cache.put("alice", [local, local.with_id(server_id)])

    rules = cache.apply_id_mapping("alice", {local.id: server_id})

    assert [rule.id for rule in rules] == [server_id]
    assert cache.get("alice")[0].server_synced


def test_remove_and_cleanup_expired(tmp_path) -> None:
    cache = _cache(tmp_path)
    expired = MuteRule(id="local_1_aaaaaaa", keywords=("a",), start_time=1000, duration_ms=10)
    permanent = MuteRule(id="local_2_bbbbbbb", keywords=("b",), start_time=1000)
    doomed = MuteRule(id="local_3_ccccccc", keywords=("c",), start_time=1000)
    cache.put("alice", [expired, permanent, doomed])

    assert cache.cleanup_expired("alice", now_ms=5000) == [expired.id]
    cache.remove("alice", doomed.id)

    assert cache.get("alice") == [permanent]


def test_corrupt_json_reads_as_empty(tmp_path) -> None:
    cache = _cache(tmp_path)
    with sqlite3.connect(str(tmp_path / "cache.db")) as conn:
        conn.execute(
            "INSERT INTO rule_cache (user_id, rules_json, updated_at) VALUES (?, ?, ?)",
            ("alice", "{not json", 0),
        )

    assert cache.get("alice") == []


def test_status_and_pause_flag(tmp_path) -> None:
    cache = _cache(tmp_path)

    assert cache.get_status("alice") == SyncStatus()
    assert cache.is_active()

    cache.set_status("alice", SyncStatus(fail_count=3, last_message="offline", offline=True))
    cache.set_active(False)

    assert cache.get_status("alice").fail_count == 3
    assert cache.get_status("alice").offline
    assert not cache.is_active()
