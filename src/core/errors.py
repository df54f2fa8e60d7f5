"""Error types shared by the core and adapters.

Adapters translate transport and storage failures into these so callers can
decide between falling back to cached state, deferring to re-auth, or
rejecting a payload.
"""

from __future__ import annotations


class SilentZoneError(Exception):
    """Base class for all domain errors."""


class TransientNetworkError(SilentZoneError):
    """A sync or auth call failed or timed out; cached state stays in use."""


class AuthExpiredError(SilentZoneError):
    """The bearer token was rejected; re-auth is delegated to the auth provider."""


class MalformedRuleError(SilentZoneError):
    """A rule is missing keywords/platforms or has an invalid duration."""

