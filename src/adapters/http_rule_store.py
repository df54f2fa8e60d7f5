"""HTTP client for the remote rule store.

Implements the core RemoteRuleStorePort over JSON requests with a bearer
token. Transport failures are translated into core error types; every call
is bounded by the configured timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import Any, Optional
import urllib.error
import urllib.parse
import urllib.request

from core.errors import AuthExpiredError, MalformedRuleError, TransientNetworkError
from core.models import MuteRule, SyncFlags
from core.rule_codec import rule_to_wire, rules_from_wire

LOGGER = logging.getLogger(__name__)


class HttpRuleStore:
    """Remote rule store adapter using blocking urllib calls off the event loop."""

    def __init__(self, endpoint: str, token: Optional[str], timeout: float = 10) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._token = token
        self._timeout = timeout

    def set_token(self, token: Optional[str]) -> None:
        """Swap in a refreshed bearer token."""

        self._token = token

    def _url(self, path: str = "", query: Optional[dict[str, str]] = None) -> str:
        url = f"{self._endpoint}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        return url

    def _send(
        self,
        method: str,
        url: str,
        payload: Optional[dict] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        if not self._token:
            raise AuthExpiredError("No auth token available")

        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(url, data=data, method=method)
        request.add_header("Authorization", f"Bearer {self._token}")
        request.add_header("Accept", "application/json")
        if data is not None:
            request.add_header("Content-Type", "application/json")
        for name, value in (headers or {}).items():
            request.add_header(name, value)

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")
            if e.code in (401, 403):
                raise AuthExpiredError(f"Rule store rejected credentials ({e.code})") from e
            if e.code == 400:
                raise MalformedRuleError(f"Rule store rejected payload: {detail}") from e
            raise TransientNetworkError(f"Rule store error {e.code}: {detail}") from e
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
            raise TransientNetworkError(f"Rule store unreachable: {e}") from e

        try:
            decoded = json.loads(body) if body else {}
        except json.JSONDecodeError as e:
            raise TransientNetworkError("Rule store returned invalid JSON") from e
        if not isinstance(decoded, dict) or not decoded.get("success", False):
            raise TransientNetworkError(f"Rule store reported failure: {decoded!r}")
        return decoded

    async def _call(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        LOGGER.debug("%s %s", method, url)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._send, method, url, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"{method} {url} timed out after {self._timeout}s") from e

    async def fetch(self) -> list[MuteRule]:
        """Read the server rule set without changing it."""

        response = await self._call("GET", self._url())
        return rules_from_wire(response.get("serverRules") or [])

    async def reconcile(
        self, client_rules: list[MuteRule], flags: SyncFlags
    ) -> tuple[list[MuteRule], dict[str, str]]:
        """Send the client set for reconciliation; return server rules and id mapping."""

        headers = {
            "x-sync-type": flags.sync_type,
            "x-after-deletion": "true" if flags.is_after_deletion else "false",
            "x-force-sync": "true" if flags.is_force_sync else "false",
        }
        payload: dict[str, Any] = {"clientRules": [rule_to_wire(rule) for rule in client_rules]}
        if flags.is_force_sync:
            payload["forceSync"] = True
        response = await self._call("PUT", self._url(), payload=payload, headers=headers)
        mapping = response.get("idMapping") or {}
        return rules_from_wire(response.get("serverRules") or []), {
            str(key): str(value) for key, value in mapping.items()
        }

    async def delete(self, rule_id: str) -> bool:
        response = await self._call("DELETE", self._url("/rule", {"id": rule_id}))
        return bool(response.get("success"))

    async def check_deletions(self, rule_ids: list[str]) -> list[str]:
        """Return which of ``rule_ids`` the server no longer has."""

        if not rule_ids:
            return []
        response = await self._call(
            "GET", self._url("/check-deletions", {"ids": ",".join(rule_ids)})
        )
        return [str(rule_id) for rule_id in response.get("deletedRuleIds") or []]
