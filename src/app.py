"""Application entry point for silentzone."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.http_rule_store import HttpRuleStore
from adapters.sqlite_cache import SQLiteRuleCache
from adapters.sqlite_rule_repository import SQLiteRuleRepository
from adapters.sync_server import StaticTokenVerifier, SyncApi, make_server
from core.config import ScannerConfig, SyncConfig
from core.coordinator import SyncCoordinator
from core.errors import MalformedRuleError
from core.models import DEFAULT_PLATFORMS, PERMANENT, MuteRule, Platform
from core.page import PageDocument
from core.reconcile import Reconciler
from core.scanner import PageScanner

NAME = "SILENTZONE"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


_BEARER_RE = re.compile(r"(Bearer\s+)\S+")


class _RedactingFormatter(logging.Formatter):
    """Mask sync tokens in every record, including ones echoed in headers."""

    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        text = _BEARER_RE.sub(r"\1***", super().format(record))
        for secret in self._secrets:
            text = text.replace(secret, "***")
        return text


def _collect_redaction_values(config: dict) -> list[str]:
    redact = (config or {}).get("redact", {})
    if not redact.get("enabled", False):
        return []
    secrets = {os.getenv(name) for name in redact.get("patterns", [])}
    # Bearer tokens the sync endpoint accepts are secrets as well.
    secrets.update(settings.SERVER_TOKENS)
    return sorted((secret for secret in secrets if secret), key=len, reverse=True)


def _log_handlers(config: dict, level: int, formatter: logging.Formatter) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if config.get("console", True):
        # stderr keeps `scan` output on stdout clean.
        handlers.append(logging.StreamHandler(sys.stderr))

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        log_path = file_cfg.get("path", "logs/silentzone.log")
        if not os.path.isabs(log_path):
            log_path = os.path.join(settings.PROJECT_ROOT, log_path)
        if os.path.dirname(log_path):
            os.makedirs(os.path.dirname(log_path), exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
                backupCount=int(file_cfg.get("backup_count", 5)),
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    formatter = _RedactingFormatter(
        _collect_redaction_values(config),
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers = _log_handlers(config, level, formatter)
    if handlers:
        logging.basicConfig(level=level, handlers=handlers)


def _user_id() -> str:
    user_id = os.getenv("USER_ID")
    if not user_id:
        raise RuntimeError("USER_ID is required (set it in .env)")
    return user_id


def _open_cache() -> SQLiteRuleCache:
    cache = SQLiteRuleCache(settings.CACHE_DB_PATH)
    cache.init_db()
    return cache


def _scanner_config() -> ScannerConfig:
    return ScannerConfig(
        blur_amount=settings.BLUR_AMOUNT,
        opacity=settings.MUTED_OPACITY,
        min_words=settings.MIN_WORDS,
        min_width=settings.MIN_WIDTH,
        min_height=settings.MIN_HEIGHT,
        recheck_delay=settings.RECHECK_DELAY_MS / 1000,
    )


def _on_auth_expired(user_id: str) -> None:
    logging.getLogger(__name__).error(
        "Auth token for %s was rejected. Update AUTH_TOKEN in .env and restart.", user_id
    )


def _build_coordinator() -> SyncCoordinator:
    config = SyncConfig(
        endpoint=settings.SYNC_ENDPOINT,
        interval_seconds=settings.SYNC_INTERVAL_SECONDS,
        timeout_seconds=settings.SYNC_TIMEOUT_SECONDS,
        max_failures_before_force=settings.SYNC_MAX_FAILURES_BEFORE_FORCE,
    )
    remote = HttpRuleStore(config.endpoint, os.getenv("AUTH_TOKEN"), timeout=config.timeout_seconds)
    return SyncCoordinator(
        _user_id(),
        _open_cache(),
        remote,
        config,
        on_auth_expired=_on_auth_expired,
    )


def _run() -> None:
    _print_banner()
    logger = logging.getLogger(__name__)
    logger.info("Starting silentzone sync loop")

    coordinator = _build_coordinator()
    coordinator.load()

    async def _loop() -> None:
        await coordinator.check_remote_deletions()
        await coordinator.run_periodic()

    try:
        asyncio.run(_loop())
    except KeyboardInterrupt:
        logger.info("Stopped by user")


def _sync(force: bool) -> None:
    coordinator = _build_coordinator()
    coordinator.load()
    ok = asyncio.run(coordinator.force_full_sync() if force else coordinator.sync())
    status = coordinator.status
    print(f"{'OK' if ok else 'FAILED'}: {status.last_message} ({len(coordinator.rules)} rules)")


def _scan(path: str, url: str, output: Optional[str]) -> None:
    logger = logging.getLogger(__name__)
    cache = _open_cache()
    rules = cache.get(_user_id())

    with open(path, "r", encoding="utf-8") as handle:
        page = PageDocument(handle.read(), url=url)
    scanner = PageScanner(page, _scanner_config())
    scanner.start(rules, active=cache.is_active())
    logger.info(
        "Scanned %s as %s: %s muted element(s), %s page warning(s)",
        path,
        scanner.platform,
        len(scanner.muted_elements()),
        len(scanner.page_warnings()),
    )
    scanner.stop()

    rendered = page.render()
    if output:
        with open(output, "w", encoding="utf-8") as handle:
            handle.write(rendered)
    else:
        print(rendered)


def _serve() -> None:
    _print_banner()
    logger = logging.getLogger(__name__)
    if not settings.SERVER_TOKENS:
        logger.warning("server.tokens is empty; every request will be rejected")

    repository = SQLiteRuleRepository(settings.SERVER_DB_PATH)
    repository.init_db()
    api = SyncApi(
        Reconciler(repository),
        StaticTokenVerifier(settings.SERVER_TOKENS),
        base_path=settings.SERVER_BASE_PATH,
    )
    server = make_server(settings.SERVER_HOST, settings.SERVER_PORT, api)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    finally:
        server.server_close()


def _add(args: argparse.Namespace) -> None:
    platforms = tuple(Platform(name, name) for name in args.platform) if args.platform else DEFAULT_PLATFORMS
    rule = MuteRule(
        id="",
        keywords=tuple(args.keywords),
        duration_ms=args.duration_ms,
        use_regex=args.regex,
        case_sensitive=args.case_sensitive,
        match_whole_word=args.whole_word,
        platforms=platforms,
    )
    coordinator = _build_coordinator()
    coordinator.load()
    try:
        added = asyncio.run(coordinator.add_rule(rule))
    except MalformedRuleError as exc:
        raise SystemExit(f"Invalid rule: {exc}") from exc
    print(f"Added {added.id}: {', '.join(added.keywords)}")


def _remove(rule_id: str) -> None:
    coordinator = _build_coordinator()
    coordinator.load()
    asyncio.run(coordinator.remove_rule(rule_id))
    print(f"Removed {rule_id}")


def _set_active(active: bool) -> None:
    _open_cache().set_active(active)
    print("Muting resumed" if active else "Muting paused")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="silentzone")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Load the cache and keep rules in sync")

    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle")
    sync_parser.add_argument("--force", action="store_true", help="Push local rules as the source of truth")

    scan_parser = subparsers.add_parser("scan", help="Mute an HTML file with the cached rules")
    scan_parser.add_argument("file")
    scan_parser.add_argument("--url", required=True, help="URL the page was loaded from")
    scan_parser.add_argument("--output", help="Write the result here instead of stdout")

    subparsers.add_parser("serve", help="Start the sync endpoint")

    add_parser = subparsers.add_parser("add", help="Add a mute rule")
    add_parser.add_argument("keywords", nargs="+")
    add_parser.add_argument("--duration-ms", type=int, default=PERMANENT)
    add_parser.add_argument("--platform", action="append", help="Platform id, repeatable (default: all)")
    add_parser.add_argument("--regex", action="store_true")
    add_parser.add_argument("--case-sensitive", action="store_true")
    add_parser.add_argument("--whole-word", action="store_true")

    remove_parser = subparsers.add_parser("remove", help="Remove a mute rule by id")
    remove_parser.add_argument("rule_id")

    subparsers.add_parser("pause", help="Pause muting on every page")
    subparsers.add_parser("resume", help="Resume muting")

    args = parser.parse_args(argv)
    load_dotenv()
    _configure_logging()

    if args.command == "sync":
        _sync(args.force)
        return
    if args.command == "scan":
        _scan(args.file, args.url, args.output)
        return
    if args.command == "serve":
        _serve()
        return
    if args.command == "add":
        _add(args)
        return
    if args.command == "remove":
        _remove(args.rule_id)
        return
    if args.command in {"pause", "resume"}:
        _set_active(args.command == "resume")
        return
    _run()


if __name__ == "__main__":
    main()
