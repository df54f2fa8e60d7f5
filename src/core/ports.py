"""Ports (interfaces) used by the core.

Ports define the minimal contracts for the local cache, the remote rule
store and the store-side repository so that the core can be reused with
different backends.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from core.models import MuteRule, SyncFlags, SyncStatus


class RuleCachePort(Protocol):
    """Client-side persistent rule cache, keyed by identity."""

    def get(self, user_id: str) -> list[MuteRule]:
        ...

    def put(self, user_id: str, rules: Iterable[MuteRule]) -> None:
        ...

    def upsert(self, user_id: str, rule: MuteRule) -> list[MuteRule]:
        ...

    def remove(self, user_id: str, rule_id: str) -> list[MuteRule]:
        ...

    def apply_id_mapping(self, user_id: str, mapping: dict[str, str]) -> list[MuteRule]:
        ...

    def cleanup_expired(self, user_id: str, now_ms: Optional[int] = None) -> list[str]:
        ...

    def get_status(self, user_id: str) -> SyncStatus:
        ...

    def set_status(self, user_id: str, status: SyncStatus) -> None:
        ...

    def is_active(self) -> bool:
        ...

    def set_active(self, active: bool) -> None:
        ...


class RemoteRuleStorePort(Protocol):
    """Remote rule store operations used by the sync coordinator.

    Implementations raise TransientNetworkError, AuthExpiredError or
    MalformedRuleError; they never return partial results.
    """

    async def fetch(self) -> list[MuteRule]:
        ...

    async def reconcile(
        self, client_rules: list[MuteRule], flags: SyncFlags
    ) -> tuple[list[MuteRule], dict[str, str]]:
        ...

    async def delete(self, rule_id: str) -> bool:
        ...

    async def check_deletions(self, rule_ids: list[str]) -> list[str]:
        ...


class RuleRepositoryPort(Protocol):
    """Store-side rule rows scoped by owner."""

    def list_rules(self, user_id: str) -> list[MuteRule]:
        ...

    def get_rule(self, user_id: str, rule_id: str) -> Optional[MuteRule]:
        ...

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        ...

    def insert_rule(self, user_id: str, rule: MuteRule, client_id: Optional[str] = None) -> MuteRule:
        ...

    def find_by_client_id(self, user_id: str, client_id: str) -> Optional[MuteRule]:
        ...


class AuthHandler(Protocol):
    """Called when the store rejects the current credentials."""

    def __call__(self, user_id: str) -> None:
        ...


class TokenVerifier(Protocol):
    """Resolve a bearer token to a user id, or None when it is not valid."""

    def __call__(self, token: str) -> Optional[str]:
        ...
