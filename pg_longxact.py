# SPDX-License-Identifier: GPL-3.0-or-later
# pg_longxact.py
#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
pg_longxact v1.0: PostgreSQL long transaction watchdog

Reports transactions in the target database that have been open longer than
a threshold, optionally names the session blocking each waiting one, and can
escalate to pg_cancel_backend / pg_terminate_backend.

Key features
- Priority order: non-waiting transactions first, oldest first
- Blocker resolution from pg_locks (one blocker per waiter)
- Escalation: cancel past cancel_after, terminate past terminate_after when
  the cancel is not possible or fails
- Single-shot (at most one backend touched per run) or --cancel-all
- Report lines logged at a chosen severity, or printed as rows
- Advisory lock to avoid overlapping runs
- Optional Slack/Telegram notification when a backend was touched

Dependencies
  pip3 install "psycopg[binary]" pyyaml requests

Notes
- Meant to be run from cron or a systemd timer; every run is one scan.
- Requires pg_signal_backend (or superuser) to cancel/terminate others.
"""

import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

import requests

from longxact_config import cfg_for_db, load_config, resolve_watch_settings, setup_logging
from longxact_models import config_error, report_mode
from longxact_provider import (
    apply_session_settings,
    pg_admin,
    pg_client,
    pg_session_provider,
    probe_capabilities,
    release_advisory_lock,
    try_advisory_lock,
)
from longxact_scan import scan, scan_result


def slack_notify(webhook_url: str, text: str) -> None:
    """Send a Slack message via incoming webhook."""
    if not webhook_url:
        return
    try:
        requests.post(webhook_url, json={"text": text}, timeout=5)
    except Exception as e:
        logging.warning("slack_notify failed: %s", e)


def telegram_notify(bot_token: str, chat_id: str, text: str) -> None:
    """Send a Telegram message via bot API."""
    if not bot_token or not chat_id:
        return
    try:
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        requests.post(url, data={"chat_id": chat_id, "text": text}, timeout=5)
    except Exception as e:
        logging.warning("telegram_notify failed: %s", e)


def build_notify_text(dbname: str, result: scan_result, dry_run: bool) -> str:
    """Compact message: header, counts, then one line per escalation outcome."""
    mode = "DRY-RUN" if dry_run else "APPLY"
    lines: List[str] = [
        f"[pg_longxact] {mode} db={dbname}",
        f"long_xacts={result.scanned} blockers={result.blockers_reported} actions={len(result.outcomes)}",
    ]
    lines.extend(result.outcome_lines)
    text = "\n".join(lines).strip()
    return f"```\n{text}\n```"


def notify(notify_cfg: Dict[str, Any], dbname: str, result: scan_result, dry_run: bool) -> None:
    only_on_action = bool(notify_cfg.get("only_on_action", True))
    if only_on_action and not result.outcomes:
        return
    text = build_notify_text(dbname, result, dry_run)
    slack_notify(notify_cfg.get("slack_webhook_url", ""), text)
    telegram_notify(notify_cfg.get("telegram_bot_token", ""), notify_cfg.get("telegram_chat_id", ""), text)


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="PostgreSQL long transaction watchdog")
    ap.add_argument("--config", required=True, help="config.yaml path")
    ap.add_argument("--dbname", default=None, help="override db.dbname")
    ap.add_argument("--min-duration", default=None, help="report transactions older than this (e.g. 1s, 5min)")
    ap.add_argument("--report-blockers", action="store_true", default=None, help="also report the blocking session")
    ap.add_argument(
        "--report-mode",
        default=None,
        help="debug|log|info|notice|warning to log lines; any other value prints them as rows",
    )
    ap.add_argument("--cancel-after", default=None, help="cancel transactions older than this")
    ap.add_argument("--terminate-after", default=None, help="terminate when cancel is not possible and older than this")
    ap.add_argument("--cancel-all", action="store_true", default=None, help="escalate every qualifying transaction")
    ap.add_argument("--dry-run", action="store_true", help="do not signal backends, only log what would be done")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    cfg = load_config(args.config)
    run_cfg = cfg.get("run", {}) or {}

    setup_logging(str(run_cfg.get("log_level", "info")))

    if args.dbname:
        cfg = cfg_for_db(cfg, args.dbname)
    dbname = str((cfg.get("db", {}) or {}).get("dbname", ""))
    if not dbname:
        logging.error("config_invalid error=db.dbname is required")
        return 1

    try:
        settings = resolve_watch_settings(args, cfg)
    except config_error as e:
        logging.error("config_invalid error=%s", e)
        return 1

    dry_run = bool(args.dry_run or run_cfg.get("dry_run", False))
    advisory_lock_key = int(run_cfg.get("advisory_lock_key", 90421002))

    # If we cannot connect, fail fast; watch_once handles everything after.
    try:
        with pg_client(cfg, context=f"watch:{dbname}") as pg:
            return watch_once(pg, cfg, settings, dbname, dry_run, advisory_lock_key)
    except Exception:
        return 3


def watch_once(
    pg: pg_client,
    cfg: Dict[str, Any],
    settings: Dict[str, Any],
    dbname: str,
    dry_run: bool,
    advisory_lock_key: int,
) -> int:
    """Run a single guarded scan on an open connection and return the exit code."""
    try:
        apply_session_settings(pg, cfg)
        if not try_advisory_lock(pg, advisory_lock_key):
            logging.warning("[pg_longxact] already running (advisory_lock_key=%d)", advisory_lock_key)
            return 2
    except Exception as e:
        logging.exception("session_setup_failed db=%s err=%s", dbname, e)
        return 1

    try:
        caps = probe_capabilities(pg)
        provider = pg_session_provider(pg, caps)
        admin = pg_admin(pg, dry_run=dry_run)

        logging.info(
            "scan_start db=%s min_duration=%s cancel_after=%s terminate_after=%s cancel_all=%s dry_run=%s",
            dbname,
            settings["min_duration"],
            settings["cancel_after"],
            settings["terminate_after"],
            settings["cancel_all"],
            dry_run,
        )

        result = scan(provider, admin, **settings)

        logging.info(
            "scan_end db=%s long_xacts=%d blockers=%d actions=%d",
            dbname,
            result.scanned,
            result.blockers_reported,
            len(result.outcomes),
        )
    except config_error as e:
        logging.error("config_invalid error=%s", e)
        return 1
    except Exception as e:
        logging.exception("scan_failed db=%s err=%s", dbname, e)
        return 1
    finally:
        try:
            release_advisory_lock(pg, advisory_lock_key)
        except Exception as e:
            logging.warning("advisory_unlock_failed key=%d err=%s", advisory_lock_key, e)

    if not report_mode.parse(settings["mode"]).emits:
        for row in result.rows:
            print(row)

    notify(cfg.get("notify", {}) or {}, dbname, result, dry_run)
    return 0


def main_entry() -> None:
    sys.exit(main())


if __name__ == "__main__":
    main_entry()
