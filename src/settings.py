"""Static configuration for silentzone.

All user-editable settings (sync endpoint, cache, scanner, server,
logging) live in a single JSON file for quick edits without touching
Python. Secrets stay in the environment (.env).
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# SILENTZONE_CONFIG points at an alternate file, e.g. one config per profile.
CONFIG_PATH = os.getenv("SILENTZONE_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config(path: str) -> dict:
    """Read the sectioned config file; a missing file is a setup error."""

    if not os.path.exists(path):
        raise FileNotFoundError(f"silentzone config not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config(CONFIG_PATH)

# Remote rule store used by the sync coordinator.
_sync = _CONFIG.get("sync", {})
SYNC_ENDPOINT = _sync.get("endpoint", "http://127.0.0.1:8787/api/mute-rules/sync")
SYNC_INTERVAL_SECONDS = float(_sync.get("interval_seconds", 10))
SYNC_TIMEOUT_SECONDS = float(_sync.get("timeout_seconds", 10))
SYNC_MAX_FAILURES_BEFORE_FORCE = int(_sync.get("max_failures_before_force", 2))

# Local rule cache shared by every scanner in this profile.
_cache = _CONFIG.get("cache", {})
CACHE_DB_PATH = _resolve_path(_cache.get("db_path", "silentzone_cache.db"))

# Suppression look and the filters that keep page chrome out of scans.
_scanner = _CONFIG.get("scanner", {})
BLUR_AMOUNT = _scanner.get("blur_amount", "8px")
MUTED_OPACITY = str(_scanner.get("opacity", "0.7"))
MIN_WORDS = int(_scanner.get("min_words", 2))
MIN_WIDTH = float(_scanner.get("min_width", 50))
MIN_HEIGHT = float(_scanner.get("min_height", 15))
RECHECK_DELAY_MS = int(_scanner.get("recheck_delay_ms", 500))

# Sync endpoint (store side). Tokens map bearer tokens to user ids.
_server = _CONFIG.get("server", {})
SERVER_HOST = _server.get("host", "127.0.0.1")
SERVER_PORT = int(_server.get("port", 8787))
SERVER_BASE_PATH = _server.get("base_path", "/api/mute-rules/sync")
SERVER_DB_PATH = _resolve_path(_server.get("db_path", "silentzone_rules.db"))
SERVER_TOKENS = dict(_server.get("tokens", {}))

# Console, rotating file and secret redaction; see app._configure_logging.
LOGGING = _CONFIG.get("logging", {})
