"""HTTP sync endpoint in front of the store-side reconciler.

Routes (relative to the configured base path):
- GET  <base>                      -> {success, serverRules}
- PUT  <base>                      -> {success, serverRules, idMapping}
- DELETE <base>/rule?id=<id>       -> {success}
- GET  <base>/check-deletions?ids= -> {success, deletedRuleIds}

Every request needs ``Authorization: Bearer <token>``; the token is mapped
to a user id by the injected verifier.
"""

from __future__ import annotations

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import json
import logging
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs, urlparse

from core.errors import MalformedRuleError
from core.models import SyncFlags
from core.ports import TokenVerifier
from core.reconcile import Reconciler
from core.rule_codec import rule_from_wire, rule_to_wire

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_PATH = "/api/mute-rules/sync"


class StaticTokenVerifier:
    """Token verifier backed by a fixed ``token -> user id`` map from config."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)

    def __call__(self, token: str) -> Optional[str]:
        return self._tokens.get(token)


def _error(status: int, error: str, message: str) -> tuple[int, dict]:
    return status, {"success": False, "error": error, "message": message}


class SyncApi:
    """Transport-free request dispatch, so handlers stay thin."""

    def __init__(
        self,
        reconciler: Reconciler,
        verify_token: TokenVerifier,
        base_path: str = DEFAULT_BASE_PATH,
    ) -> None:
        self._reconciler = reconciler
        self._verify_token = verify_token
        self._base_path = base_path.rstrip("/")

    def _authenticate(self, headers: Mapping[str, str]) -> Optional[str]:
        auth = headers.get("authorization") or ""
        if not auth.startswith("Bearer "):
            return None
        token = auth[len("Bearer "):].strip()
        return self._verify_token(token) if token else None

    def handle(
        self,
        method: str,
        target: str,
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> tuple[int, dict]:
        """Return ``(status, json payload)`` for one request."""

        # HTTP header names are case-insensitive.
        headers = {name.lower(): value for name, value in headers.items()}
        parsed = urlparse(target)
        path = parsed.path.rstrip("/")
        query = parse_qs(parsed.query)

        route = None
        if path == self._base_path:
            route = "sync"
        elif path == f"{self._base_path}/rule":
            route = "rule"
        elif path == f"{self._base_path}/check-deletions":
            route = "check-deletions"
        if route is None:
            return _error(404, "Not found", f"No route for {parsed.path}")

        user_id = self._authenticate(headers)
        if user_id is None:
            return _error(401, "Unauthorized", "Missing or invalid authorization token")

        if route == "sync" and method == "GET":
            rules = self._reconciler.snapshot(user_id)
            return 200, {"success": True, "serverRules": [rule_to_wire(rule) for rule in rules]}
        if route == "sync" and method == "PUT":
            return self._handle_put(user_id, headers, body)
        if route == "rule" and method == "DELETE":
            rule_id = (query.get("id") or [""])[0]
            if not rule_id:
                return _error(400, "Invalid request", "id is required")
            return 200, {"success": True, "deleted": self._reconciler.delete(user_id, rule_id)}
        if route == "check-deletions" and method == "GET":
            raw = (query.get("ids") or [""])[0]
            ids = [rule_id for rule_id in raw.split(",") if rule_id]
            return 200, {"success": True, "deletedRuleIds": self._reconciler.check_deletions(user_id, ids)}
        return _error(405, "Method not allowed", f"{method} is not supported on {parsed.path}")

    def _handle_put(self, user_id: str, headers: Mapping[str, str], body: bytes) -> tuple[int, dict]:
        try:
            payload: Any = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            return _error(400, "Invalid request", "Body must be JSON")
        records = payload.get("clientRules") if isinstance(payload, dict) else None
        if not isinstance(records, list):
            return _error(400, "Invalid request", "clientRules must be an array")

        try:
            # Decode only; each rule is validated during the addition phase.
            client_rules = [rule_from_wire(record, strict=False) for record in records]
        except (MalformedRuleError, AttributeError, TypeError, ValueError) as exc:
            LOGGER.warning("Rejected sync payload from %s: %s", user_id, exc)
            return _error(400, "Invalid request", "clientRules contains an unreadable rule")

        flags = SyncFlags(
            is_initial_sync=headers.get("x-sync-type") == "initial",
            is_force_sync=payload.get("forceSync") is True or headers.get("x-force-sync") == "true",
            is_after_deletion=headers.get("x-after-deletion") == "true",
        )
        result = self._reconciler.reconcile(user_id, client_rules, flags)
        return 200, {
            "success": True,
            "serverRules": [rule_to_wire(rule) for rule in result.canonical_rules],
            "idMapping": result.id_mapping,
            "anomaly": result.anomaly,
        }


def build_handler(api: SyncApi) -> type[BaseHTTPRequestHandler]:
    class Handler(BaseHTTPRequestHandler):
        server_version = "silentzone-sync/1.0"

        def log_message(self, fmt: str, *args: Any) -> None:
            LOGGER.debug("%s - %s", self.address_string(), fmt % args)

        def _dispatch(self, method: str) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length > 0 else b""
            try:
                status, payload = api.handle(method, self.path, dict(self.headers.items()), body)
            except Exception:
                LOGGER.exception("Unexpected error while handling %s %s", method, self.path)
                status, payload = _error(500, "Server error", "An unexpected error occurred")
            data = json.dumps(payload).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def do_GET(self) -> None:
            self._dispatch("GET")

        def do_PUT(self) -> None:
            self._dispatch("PUT")

        def do_DELETE(self) -> None:
            self._dispatch("DELETE")

    return Handler


def make_server(host: str, port: int, api: SyncApi) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), build_handler(api))
    LOGGER.info("Sync endpoint listening on %s:%s", host, server.server_address[1])
    return server
