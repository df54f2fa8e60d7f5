"""Client-side sync coordinator.

One coordinator per profile owns the in-memory rule state, keeps the local
cache in step with the remote rule store and tells listeners (page
scanners) whenever the rule set changes. Network failures never remove
rules that are already in use.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

from core.config import SyncConfig
from core.errors import AuthExpiredError, MalformedRuleError, TransientNetworkError
from core.ids import generate_local_id, now_ms
from core.models import MuteRule, SyncFlags, SyncStatus
from core.rule_codec import validate_rule
from core.ports import AuthHandler, RemoteRuleStorePort, RuleCachePort
from core.single_flight import AsyncKeyedLock

LOGGER = logging.getLogger(__name__)

Listener = Callable[[List[MuteRule]], None]


class RuleState:
    """The current rule list plus a version bumped on every replacement."""

    def __init__(self) -> None:
        self._rules: List[MuteRule] = []
        self.version = 0
        self._listeners: List[Listener] = []

    @property
    def rules(self) -> List[MuteRule]:
        return list(self._rules)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that detaches it."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def replace(self, rules: Iterable[MuteRule]) -> None:
        self._rules = list(rules)
        self.version += 1
        for listener in list(self._listeners):
            listener(self.rules)


class SyncCoordinator:
    """Keep one identity's cached rules reconciled with the remote store."""

    def __init__(
        self,
        user_id: str,
        cache: RuleCachePort,
        remote: RemoteRuleStorePort,
        config: SyncConfig,
        on_auth_expired: Optional[AuthHandler] = None,
        lock: Optional[AsyncKeyedLock] = None,
    ) -> None:
        self.user_id = user_id
        self._cache = cache
        self._remote = remote
        self._config = config
        self._on_auth_expired = on_auth_expired
        self._lock = lock or AsyncKeyedLock()
        self._generation = 0
        self.auth_suspended = False
        self.state = RuleState()

    @property
    def rules(self) -> List[MuteRule]:
        return self.state.rules

    @property
    def status(self) -> SyncStatus:
        return self._cache.get_status(self.user_id)

    def load(self) -> List[MuteRule]:
        """Read the cache, drop expired rules and publish the result."""

        removed = self._cache.cleanup_expired(self.user_id)
        if removed:
            LOGGER.info("Dropped %s expired rule(s) on load", len(removed))
        rules = self._cache.get(self.user_id)
        self.state.replace(rules)
        LOGGER.info("%s rules are loaded from cache", len(rules))
        return rules

    def _publish(self, rules: Optional[Iterable[MuteRule]] = None) -> None:
        self.state.replace(self._cache.get(self.user_id) if rules is None else rules)

    # Local mutations

    def _ensure_authorized(self) -> None:
        if self.auth_suspended:
            raise AuthExpiredError("Rule changes are suspended until re-authentication")

    async def add_rule(self, rule: MuteRule) -> MuteRule:
        """Store a rule locally, publish it, then sync it to the server.

        Raises MalformedRuleError, with nothing stored, when the rule breaks
        the model rules (no keywords, zero duration and so on).
        """

        self._ensure_authorized()
        if not rule.id:
            rule = rule.with_id(generate_local_id())
        if not rule.start_time:
            rule = replace(rule, start_time=now_ms())
        validate_rule(rule)
        self._publish(self._cache.upsert(self.user_id, rule))
        LOGGER.info("Added local rule %s with keywords %s", rule.id, ", ".join(rule.keywords))
        await self.sync()
        return rule

    async def remove_rule(self, rule_id: str) -> None:
        """Delete a rule on the server (best effort) and locally, then sync."""

        self._ensure_authorized()
        rule = next((r for r in self._cache.get(self.user_id) if r.id == rule_id), None)
        if rule is not None and rule.server_synced:
            try:
                await self._remote.delete(rule_id)
            except TransientNetworkError as exc:
                LOGGER.warning("Direct delete of %s failed, relying on sync: %s", rule_id, exc)
            except AuthExpiredError:
                self._handle_auth_expired()
        self._publish(self._cache.remove(self.user_id, rule_id))
        LOGGER.info("Removed rule %s locally", rule_id)
        await self.sync_after_deletion()

    # Sync entry points

    async def sync(self) -> bool:
        """Regular sync: read the server set, then push local changes."""

        return await self._run(self._sync_update, "update")

    async def force_full_sync(self) -> bool:
        """Push the local set with the force flag; the server answer becomes the truth."""

        return await self._run(self._sync_force, "full-sync")

    async def sync_after_deletion(self) -> bool:
        return await self._run(self._sync_after_deletion, "after-deletion")

    async def check_remote_deletions(self) -> List[str]:
        """Drop server-synced rules the store no longer has; return their ids."""

        synced = [rule.id for rule in self._cache.get(self.user_id) if rule.server_synced]
        if not synced:
            return []
        try:
            gone = await self._remote.check_deletions(synced)
        except TransientNetworkError as exc:
            LOGGER.warning("Deletion check failed: %s", exc)
            return []
        for rule_id in gone:
            self._cache.remove(self.user_id, rule_id)
        if gone:
            LOGGER.info("Removed %s rule(s) deleted on the server", len(gone))
            self._publish()
        return gone

    def resume_after_auth(self, token: Optional[str] = None) -> None:
        """Lift the suspension after the auth provider obtained new credentials."""

        set_token = getattr(self._remote, "set_token", None)
        if token is not None and set_token is not None:
            set_token(token)
        self.auth_suspended = False
        LOGGER.info("Authentication restored, sync resumed")

    async def run_periodic(self, interval: Optional[float] = None, stop: Optional[asyncio.Event] = None) -> None:
        """Sync on a fixed interval until ``stop`` is set."""

        delay = self._config.interval_seconds if interval is None else interval
        stop = stop or asyncio.Event()
        while not stop.is_set():
            if self.status.fail_count > self._config.max_failures_before_force:
                LOGGER.info("Several failed syncs in a row, trying a full sync")
                await self.force_full_sync()
            else:
                await self.sync()
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    # Internals

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation

    async def _run(self, operation: Callable[[int], Awaitable[bool]], label: str) -> bool:
        if self.auth_suspended:
            LOGGER.info("Skipping %s sync while authentication is suspended", label)
            return False

        self._generation += 1
        generation = self._generation
        async with self._lock.hold(self.user_id):
            if self._superseded(generation):
                LOGGER.debug("%s sync superseded before it started", label)
                return False
            try:
                applied = await operation(generation)
            except TransientNetworkError as exc:
                self._record_failure(f"{label} sync failed: {exc}")
                return False
            except MalformedRuleError as exc:
                self._record_failure(f"{label} sync rejected: {exc}")
                return False
            except AuthExpiredError as exc:
                self._record_failure(f"{label} sync unauthorized: {exc}")
                self._handle_auth_expired()
                return False
            if not applied:
                LOGGER.debug("%s sync response discarded, a newer request is queued", label)
                return False
            self._record_success(f"{label} sync complete")
            return True

    def _fold_server_state(self, server_rules: List[MuteRule]) -> List[MuteRule]:
        """Merge a fresh server read into the cache before local rules are pushed.

        Synced rules the server no longer has are dropped. Server rules this
        client has never held are adopted, so pushing the local list cannot
        delete rules created on another device. Only ids the client knew and
        then removed are left out of the push.
        """

        local = self._cache.get(self.user_id)
        server_ids = {rule.id for rule in server_rules}
        known = set(self._cache.get_status(self.user_id).known_server_ids)
        local_ids = {rule.id for rule in local}

        gone = {rule.id for rule in local if rule.server_synced and rule.id not in server_ids}
        unseen = [rule for rule in server_rules if rule.id not in known and rule.id not in local_ids]
        if gone:
            LOGGER.info("Removing %s rule(s) deleted elsewhere", len(gone))
            local = [rule for rule in local if rule.id not in gone]
        if unseen:
            LOGGER.info("Adopting %s rule(s) created elsewhere", len(unseen))
            local.extend(unseen)
        if gone or unseen:
            self._cache.put(self.user_id, local)
        return local

    async def _sync_update(self, generation: int) -> bool:
        server_rules = await self._remote.fetch()
        if self._superseded(generation):
            return False

        local = self._fold_server_state(server_rules)
        if {rule.id for rule in local} == {rule.id for rule in server_rules}:
            # Nothing local to push; the server set is already the answer.
            self._apply(server_rules, {}, keep_unsynced=False)
            return True

        canonical, mapping = await self._remote.reconcile(local, SyncFlags())
        if self._superseded(generation):
            return False
        self._apply(canonical, mapping)
        return True

    async def _sync_force(self, generation: int) -> bool:
        local = self._cache.get(self.user_id)
        canonical, mapping = await self._remote.reconcile(local, SyncFlags(is_force_sync=True))
        if self._superseded(generation):
            return False
        self._apply(canonical, mapping, keep_unsynced=not canonical)
        return True

    async def _sync_after_deletion(self, generation: int) -> bool:
        server_rules = await self._remote.fetch()
        if self._superseded(generation):
            return False

        local = self._fold_server_state(server_rules)
        canonical, mapping = await self._remote.reconcile(local, SyncFlags(is_after_deletion=True))
        if self._superseded(generation):
            return False
        self._apply(canonical, mapping)
        return True

    def _apply(self, canonical: List[MuteRule], mapping: dict[str, str], keep_unsynced: bool = True) -> None:
        """Merge the server answer with local rules the server has not seen yet."""

        local = self._cache.apply_id_mapping(self.user_id, mapping)
        merged = list(canonical)
        if keep_unsynced:
            server_ids = {rule.id for rule in canonical}
            unsynced = [rule for rule in local if not rule.server_synced and rule.id not in server_ids]
            if unsynced:
                LOGGER.info("Keeping %s local rule(s) not yet on the server", len(unsynced))
            merged.extend(unsynced)
        self._cache.put(self.user_id, merged)
        status = self._cache.get_status(self.user_id)
        self._cache.set_status(
            self.user_id, replace(status, known_server_ids=[rule.id for rule in canonical])
        )
        self._publish()

    def _record_success(self, message: str) -> None:
        now = now_ms()
        status = self._cache.get_status(self.user_id)
        status = replace(
            status,
            fail_count=0,
            last_success_ms=now,
            last_sync_ms=now,
            last_sync_success=True,
            last_message=message,
            offline=False,
        )
        self._cache.set_status(self.user_id, status)
        LOGGER.info("%s (%s rules)", message, len(self.state.rules))

    def _record_failure(self, message: str) -> None:
        now = now_ms()
        status = self._cache.get_status(self.user_id)
        status = replace(
            status,
            fail_count=status.fail_count + 1,
            last_fail_ms=now,
            last_sync_ms=now,
            last_sync_success=False,
            last_message=message,
            offline=True,
        )
        self._cache.set_status(self.user_id, status)
        LOGGER.warning("%s; keeping %s cached rules", message, len(self.state.rules))

    def _handle_auth_expired(self) -> None:
        if self.auth_suspended:
            return
        self.auth_suspended = True
        LOGGER.warning("Credentials rejected for %s, suspending sync", self.user_id)
        if self._on_auth_expired is not None:
            self._on_auth_expired(self.user_id)
