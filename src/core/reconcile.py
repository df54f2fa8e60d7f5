"""Store-side reconciliation of a client's rule list against the server set.

One cycle per request: guarded deletions, validated additions, then a
re-read of the authoritative set. Runs under a per-identity lock so two
requests for the same user never interleave their read-modify-write.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import Iterable, Optional

from core.errors import MalformedRuleError
from core.ids import generate_server_id, is_server_id, now_ms
from core.models import MuteRule, ReconcileResult, SyncFlags
from core.ports import RuleRepositoryPort
from core.rule_codec import validate_rule
from core.single_flight import KeyedLock

LOGGER = logging.getLogger(__name__)


class Reconciler:
    """Merge client rules into the store for one identity at a time."""

    def __init__(self, repository: RuleRepositoryPort, lock: Optional[KeyedLock] = None) -> None:
        self._repository = repository
        self._lock = lock or KeyedLock()

    def snapshot(self, user_id: str) -> list[MuteRule]:
        """Read-only view of the user's server rules."""

        with self._lock.hold(user_id):
            return self._repository.list_rules(user_id)

    def check_deletions(self, user_id: str, rule_ids: Iterable[str]) -> list[str]:
        """Return the ids from ``rule_ids`` that no longer exist for the user."""

        with self._lock.hold(user_id):
            existing = {rule.id for rule in self._repository.list_rules(user_id)}
        return [rule_id for rule_id in rule_ids if rule_id and rule_id not in existing]

    def delete(self, user_id: str, rule_id: str) -> bool:
        with self._lock.hold(user_id):
            deleted = self._repository.delete_rule(user_id, rule_id)
        LOGGER.info("Direct delete of rule %s for %s: %s", rule_id, user_id, deleted)
        return deleted

    def reconcile(
        self,
        user_id: str,
        client_rules: list[MuteRule],
        flags: SyncFlags = SyncFlags(),
    ) -> ReconcileResult:
        """Run one reconciliation cycle and return the canonical server set."""

        with self._lock.hold(user_id):
            server_rules = self._repository.list_rules(user_id)
            server_ids = {rule.id for rule in server_rules}
            known = self._known_client_ids(user_id, client_rules, server_ids)
            client_ids = {rule.id for rule in client_rules} | set(known.values())
            LOGGER.info(
                "Reconciling %s client rules against %s server rules for %s (type=%s, after_deletion=%s)",
                len(client_rules),
                len(server_rules),
                user_id,
                flags.sync_type,
                flags.is_after_deletion,
            )

            result = ReconcileResult(canonical_rules=[])
            self._delete_phase(user_id, server_rules, client_ids, len(client_rules), flags, result)
            self._add_phase(user_id, client_rules, server_ids, known, result)

            result.canonical_rules = self._repository.list_rules(user_id)
        LOGGER.info(
            "Reconciliation for %s done: deleted=%s, added=%s, canonical=%s",
            user_id,
            len(result.deleted_ids),
            len(result.added_ids),
            len(result.canonical_rules),
        )
        return result

    def _known_client_ids(
        self, user_id: str, client_rules: list[MuteRule], server_ids: set[str]
    ) -> dict[str, str]:
        """Map locally-minted ids that were already stored to their server ids.

        A client that never saw an earlier response resends the same local
        ids; resolving them keeps a retry from inserting a second copy or
        deleting the first.
        """

        known: dict[str, str] = {}
        for rule in client_rules:
            if is_server_id(rule.id) or rule.id in server_ids:
                continue
            stored = self._repository.find_by_client_id(user_id, rule.id)
            if stored is not None:
                known[rule.id] = stored.id
        return known

    def _delete_phase(
        self,
        user_id: str,
        server_rules: list[MuteRule],
        client_ids: set[str],
        client_count: int,
        flags: SyncFlags,
        result: ReconcileResult,
    ) -> None:
        if not server_rules:
            return
        if client_count == 0:
            LOGGER.info("Client sent no rules, skipping deletions")
            return
        if flags.is_initial_sync and not flags.is_force_sync and not flags.is_after_deletion:
            LOGGER.info("Initial sync, skipping deletions")
            return

        candidates = [rule for rule in server_rules if rule.id not in client_ids]
        if not candidates:
            return

        wipes_everything = len(candidates) == len(server_rules) and len(server_rules) > 1
        if wipes_everything and not flags.is_force_sync:
            LOGGER.warning(
                "Blocked deletion of all %s rules for %s; client state looks wrong",
                len(server_rules),
                user_id,
            )
            result.anomaly = True
            return
        if wipes_everything:
            LOGGER.info("Force sync deleting all %s rules for %s", len(server_rules), user_id)

        for rule in candidates:
            # Another request may have removed it since the first read.
            if self._repository.get_rule(user_id, rule.id) is None:
                LOGGER.debug("Rule %s already gone, skipping deletion", rule.id)
                continue
            if self._repository.delete_rule(user_id, rule.id):
                result.deleted_ids.append(rule.id)
                LOGGER.info("Deleted rule %s for %s", rule.id, user_id)

    def _add_phase(
        self,
        user_id: str,
        client_rules: list[MuteRule],
        server_ids: set[str],
        known: dict[str, str],
        result: ReconcileResult,
    ) -> None:
        seen: set[str] = set()
        for rule in client_rules:
            if rule.id in server_ids or rule.id in seen:
                continue
            seen.add(rule.id)
            if rule.id in known:
                result.id_mapping[rule.id] = known[rule.id]
                continue
            try:
                validate_rule(rule)
            except MalformedRuleError as exc:
                LOGGER.warning("Rejected client rule for %s: %s", user_id, exc)
                continue

            candidate = rule if is_server_id(rule.id) else rule.with_id(generate_server_id())
            if not candidate.start_time:
                candidate = replace(candidate, start_time=now_ms())
            client_id = None if is_server_id(rule.id) else rule.id
            inserted = self._repository.insert_rule(user_id, candidate, client_id=client_id)
            result.added_ids.append(inserted.id)
            if inserted.id != rule.id:
                result.id_mapping[rule.id] = inserted.id
            LOGGER.info("Added rule %s for %s (client id %s)", inserted.id, user_id, rule.id)
