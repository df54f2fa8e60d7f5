"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ScannerConfig:
    """Page scanner settings: suppression look and element filters."""

    blur_amount: str = "8px"
    opacity: str = "0.7"
    min_words: int = 2
    min_width: float = 50
    min_height: float = 15
    recheck_delay: float = 0.5


@dataclass(frozen=True)
class SyncConfig:
    """Remote rule store settings consumed by the sync coordinator."""

    endpoint: str
    interval_seconds: float = 10
    timeout_seconds: float = 10
    max_failures_before_force: int = 2
