from __future__ import annotations

from dataclasses import replace
import threading
from typing import Optional

from adapters.sqlite_cache import SQLiteRuleCache
from adapters.sqlite_rule_repository import SQLiteRuleRepository
from core.ids import generate_server_id, is_server_id
from core.models import MuteRule, SyncFlags
from core.reconcile import Reconciler

USER = "user-1"


class FakeRepository:
    def __init__(self, rules: Optional[dict[str, list[MuteRule]]] = None) -> None:
        self.rules: dict[str, list[MuteRule]] = {key: list(value) for key, value in (rules or {}).items()}
        self.client_ids: dict[tuple[str, str], str] = {}
        self.deleted: list[str] = []

    def list_rules(self, user_id: str) -> list[MuteRule]:
        return list(self.rules.get(user_id, []))

    def get_rule(self, user_id: str, rule_id: str) -> Optional[MuteRule]:
        return next((rule for rule in self.rules.get(user_id, []) if rule.id == rule_id), None)

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        before = len(self.rules.get(user_id, []))
        self.rules[user_id] = [rule for rule in self.rules.get(user_id, []) if rule.id != rule_id]
        self.deleted.append(rule_id)
        return len(self.rules[user_id]) < before

    def insert_rule(self, user_id: str, rule: MuteRule, client_id: Optional[str] = None) -> MuteRule:
        self.rules.setdefault(user_id, []).append(rule)
        if client_id:
            self.client_ids[(user_id, client_id)] = rule.id
        return rule

    def find_by_client_id(self, user_id: str, client_id: str) -> Optional[MuteRule]:
        rule_id = self.client_ids.get((user_id, client_id))
        return self.get_rule(user_id, rule_id) if rule_id else None


def _server_rules(count: int) -> list[MuteRule]:
    return [MuteRule(id=generate_server_id(), keywords=(f"kw{i}",), start_time=1) for i in range(count)]


def _local(name: str) -> MuteRule:
    return MuteRule(id=f"local_1_{name}", keywords=(name,), start_time=1)


def test_empty_client_list_never_deletes() -> None:
    repo = FakeRepository({USER: _server_rules(5)})

    result = Reconciler(repo).reconcile(USER, [], SyncFlags())

    assert len(result.canonical_rules) == 5
    assert result.deleted_ids == []


def test_initial_sync_skips_deletion_unless_forced() -> None:
    client = [_local("other")]

    repo = FakeRepository({USER: _server_rules(5)})
    result = Reconciler(repo).reconcile(USER, client, SyncFlags(is_initial_sync=True))
    assert len([r for r in result.canonical_rules if r.keywords != ("other",)]) == 5
    assert result.deleted_ids == []

    repo = FakeRepository({USER: _server_rules(5)})
    result = Reconciler(repo).reconcile(USER, client, SyncFlags(is_initial_sync=True, is_force_sync=True))
    assert len(result.deleted_ids) == 5
    assert [r.keywords for r in result.canonical_rules] == [("other",)]


def test_mass_deletion_guard_flags_anomaly() -> None:
    repo = FakeRepository({USER: _server_rules(3)})

    result = Reconciler(repo).reconcile(USER, [_local("other")], SyncFlags())

    assert result.anomaly
    assert result.deleted_ids == []
    assert len(result.canonical_rules) == 4


def test_single_server_rule_can_be_deleted() -> None:
    repo = FakeRepository({USER: _server_rules(1)})

    result = Reconciler(repo).reconcile(USER, [_local("other")], SyncFlags(is_after_deletion=True))

    assert not result.anomaly
    assert len(result.deleted_ids) == 1


def test_partial_deletion_on_update() -> None:
    server = _server_rules(3)
    repo = FakeRepository({USER: server})

    result = Reconciler(repo).reconcile(USER, server[:2], SyncFlags(is_after_deletion=True))

    assert result.deleted_ids == [server[2].id]
    assert [r.id for r in result.canonical_rules] == [server[0].id, server[1].id]


def test_local_rules_get_server_ids() -> None:
    repo = FakeRepository()
    local = _local("spoiler")

    result = Reconciler(repo).reconcile(USER, [local], SyncFlags())

    server_id = result.id_mapping[local.id]
    assert is_server_id(server_id)
    assert result.added_ids == [server_id]
    assert [r.id for r in result.canonical_rules] == [server_id]


def test_applying_mapping_to_cache_leaves_one_copy(tmp_path) -> None:
    cache = SQLiteRuleCache(str(tmp_path / "cache.db"))
    cache.init_db()
    local = _local("spoiler")
    cache.put(USER, [local])

    result = Reconciler(FakeRepository()).reconcile(USER, [local], SyncFlags())
    for rule in result.canonical_rules:
        cache.upsert(USER, rule)
    rules = cache.apply_id_mapping(USER, result.id_mapping)

    assert [rule.id for rule in rules] == [result.id_mapping[local.id]]


def test_repeated_reconciliation_is_stable() -> None:
    server = _server_rules(2)
    repo = FakeRepository({USER: server})
    client = [server[0], _local("spoiler")]
    reconciler = Reconciler(repo)

    first = reconciler.reconcile(USER, client, SyncFlags())
    second = reconciler.reconcile(USER, client, SyncFlags())

    assert first.canonical_rules == second.canonical_rules
    assert first.id_mapping == second.id_mapping
    assert second.added_ids == []


def test_malformed_client_rules_are_rejected() -> None:
    repo = FakeRepository()
    bad_duration = replace(_local("zero"), duration_ms=0)
    no_keywords = replace(_local("empty"), keywords=())
    good = _local("good")

    result = Reconciler(repo).reconcile(USER, [bad_duration, no_keywords, good], SyncFlags())

    assert list(result.id_mapping) == [good.id]
    assert len(result.canonical_rules) == 1


def test_client_server_ids_are_kept_and_missing_start_time_defaults() -> None:
    repo = FakeRepository()
    rule = MuteRule(id=generate_server_id(), keywords=("spoiler",))

    result = Reconciler(repo).reconcile(USER, [rule], SyncFlags())

    assert result.id_mapping == {}
    assert result.canonical_rules[0].id == rule.id
    assert result.canonical_rules[0].start_time > 0


def test_check_deletions_and_snapshot() -> None:
    server = _server_rules(2)
    repo = FakeRepository({USER: server})
    reconciler = Reconciler(repo)
    gone = generate_server_id()

    assert reconciler.check_deletions(USER, [server[0].id, gone]) == [gone]
    assert reconciler.snapshot(USER) == server
    assert reconciler.snapshot("someone-else") == []


def test_concurrent_reconciliations_do_not_duplicate(tmp_path) -> None:
    repo = SQLiteRuleRepository(str(tmp_path / "rules.db"))
    repo.init_db()
    reconciler = Reconciler(repo)
    local = _local("spoiler")
    results = []

    def run() -> None:
        results.append(reconciler.reconcile(USER, [local], SyncFlags()))

    threads = [threading.Thread(target=run) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(repo.list_rules(USER)) == 1
    assert len({result.id_mapping[local.id] for result in results}) == 1


def test_sqlite_repository_scopes_by_user(tmp_path) -> None:
    repo = SQLiteRuleRepository(str(tmp_path / "rules.db"))
    repo.init_db()
    rule = MuteRule(id=generate_server_id(), keywords=("spoiler", "leak"), start_time=5, duration_ms=1000)

    stored = repo.insert_rule(USER, rule)
    assert stored == rule
    assert repo.get_rule("intruder", rule.id) is None
    assert not repo.delete_rule("intruder", rule.id)

    # A taken id is replaced rather than overwriting another user's row.
    clash = repo.insert_rule("intruder", rule)
    assert clash.id != rule.id
    assert repo.list_rules(USER) == [rule]

    assert repo.delete_rule(USER, rule.id)
    assert repo.list_rules(USER) == []
