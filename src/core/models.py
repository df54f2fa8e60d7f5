"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any wire or storage format. Translation to camelCase (wire,
cache) and snake_case (rule store) lives in core.rule_codec.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from core.ids import is_server_id

ALL_PLATFORMS_ID = "all"
PERMANENT = -1


@dataclass(frozen=True)
class Platform:
    """A site or service a rule applies to. ``id == "all"`` is a wildcard."""

    id: str
    name: str


DEFAULT_PLATFORMS = (Platform(ALL_PLATFORMS_ID, "All Platforms"),)


@dataclass(frozen=True)
class MuteRule:
    """A user-defined suppression predicate."""

    id: str
    keywords: tuple[str, ...]
    platforms: tuple[Platform, ...] = DEFAULT_PLATFORMS
    start_time: int = 0
    duration_ms: int = PERMANENT
    use_regex: bool = False
    case_sensitive: bool = False
    match_whole_word: bool = False

    @property
    def server_synced(self) -> bool:
        # Derived: a rule is synced once it carries a server-assigned id.
        return is_server_id(self.id)

    @property
    def is_permanent(self) -> bool:
        return self.duration_ms < 0

    def expires_at(self) -> Optional[int]:
        if self.is_permanent:
            return None
        return self.start_time + self.duration_ms

    def with_id(self, new_id: str) -> "MuteRule":
        return replace(self, id=new_id)

    def keyword_key(self) -> frozenset[str]:
        """Identity of the logical keyword set, used to collapse duplicates.

        Order does not matter: ("a", "b") and ("b", "a") are the same set.
        """

        return frozenset(self.keywords)


@dataclass(frozen=True)
class SyncFlags:
    """Context flags for one reconciliation request."""

    is_initial_sync: bool = False
    is_force_sync: bool = False
    is_after_deletion: bool = False

    @property
    def sync_type(self) -> str:
        if self.is_force_sync:
            return "full-sync"
        return "initial" if self.is_initial_sync else "update"


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation cycle for one identity."""

    canonical_rules: list[MuteRule]
    id_mapping: dict[str, str] = field(default_factory=dict)
    deleted_ids: list[str] = field(default_factory=list)
    added_ids: list[str] = field(default_factory=list)
    anomaly: bool = False


@dataclass
class SyncStatus:
    """Client-side bookkeeping about recent sync attempts."""

    fail_count: int = 0
    last_success_ms: Optional[int] = None
    last_fail_ms: Optional[int] = None
    last_sync_ms: Optional[int] = None
    last_sync_success: Optional[bool] = None
    last_message: str = ""
    offline: bool = False
    # Server ids the client held after its last applied sync. A fetched id
    # outside this set was created elsewhere and is adopted, not pushed away.
    known_server_ids: list[str] = field(default_factory=list)
