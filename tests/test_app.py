from __future__ import annotations

import logging

import pytest

import app
import settings
from adapters.sqlite_cache import SQLiteRuleCache
from core.models import MuteRule


def test_redacting_formatter_masks_env_secrets(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_TOKEN", "super-secret-token")
    monkeypatch.setattr(settings, "SERVER_TOKENS", {"server-token": "alice"})
    secrets = app._collect_redaction_values({"redact": {"enabled": True, "patterns": ["AUTH_TOKEN", "UNSET_VAR"]}})
    formatter = app._RedactingFormatter(secrets, fmt="%(message)s")
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "token=%s", ("super-secret-token",), None)

    assert secrets == ["super-secret-token", "server-token"]
    assert formatter.format(record) == "token=***"
    header = logging.LogRecord("test", logging.INFO, __file__, 1, "Authorization: Bearer abc.def", (), None)
    assert formatter.format(header) == "Authorization: Bearer ***"
    assert app._collect_redaction_values({"redact": {"enabled": False, "patterns": ["AUTH_TOKEN"]}}) == []


def test_scan_command_mutes_html_file(tmp_path, monkeypatch) -> None:
    db_path = str(tmp_path / "cache.db")
    monkeypatch.setattr(settings, "CACHE_DB_PATH", db_path)
    monkeypatch.setattr(settings, "LOGGING", {})
    monkeypatch.setenv("USER_ID", "alice")
    cache = SQLiteRuleCache(db_path)
    cache.init_db()
    cache.put("alice", [MuteRule(id="local_1_abcdefg", keywords=("spoiler",), start_time=1)])

    source = tmp_path / "page.html"
    source.write_text(
        "<html><body><div><article>The big spoiler about the finale was revealed</article></div></body></html>",
        encoding="utf-8",
    )
    output = tmp_path / "muted.html"

    app.main(["scan", str(source), "--url", "https://example.com/today", "--output", str(output)])

    rendered = output.read_text(encoding="utf-8")
    assert 'data-silent-zone-muted="true"' in rendered
    assert "silent-zone-overlay" in rendered


def test_pause_command_skips_muting(tmp_path, monkeypatch) -> None:
    db_path = str(tmp_path / "cache.db")
    monkeypatch.setattr(settings, "CACHE_DB_PATH", db_path)
    monkeypatch.setattr(settings, "LOGGING", {})
    monkeypatch.setenv("USER_ID", "alice")

    app.main(["pause"])

    assert not SQLiteRuleCache(db_path).is_active()


def test_add_command_rejects_zero_duration(tmp_path, monkeypatch) -> None:
    db_path = str(tmp_path / "cache.db")
    monkeypatch.setattr(settings, "CACHE_DB_PATH", db_path)
    monkeypatch.setattr(settings, "LOGGING", {})
    monkeypatch.setenv("USER_ID", "alice")
    monkeypatch.setenv("AUTH_TOKEN", "token")

    with pytest.raises(SystemExit):
        app.main(["add", "spoiler", "--duration-ms", "0"])

    assert SQLiteRuleCache(db_path).get("alice") == []
