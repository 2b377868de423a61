# SPDX-License-Identifier: GPL-3.0-or-later
# longxact_config.py

"""Configuration loading, duration parsing and logging setup."""

import argparse
import datetime as dt
import logging
import re
from typing import Any, Dict, Optional

import yaml

from longxact_models import config_error

unit_seconds = {
    "ms": 0.001,
    "msec": 0.001,
    "msecs": 0.001,
    "millisecond": 0.001,
    "milliseconds": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hrs": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
}

duration_token_re = re.compile(r"([-+]?\d+(?:\.\d+)?)\s*([a-z]*)")
clock_re = re.compile(r"^([-+]?)(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")


def parse_duration(value: Any) -> Optional[dt.timedelta]:
    """
    Parse a duration.

    Accepted forms:
    - timedelta
    - int/float (seconds)
    - "500ms", "1s", "10 minutes", "1 hour 30 min", "2h"
    - "HH:MM:SS[.fff]"
    - None or "" (not set)
    """
    if value is None:
        return None
    if isinstance(value, dt.timedelta):
        return value
    if isinstance(value, bool):
        raise config_error(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return dt.timedelta(seconds=float(value))

    s = str(value).strip().lower()
    if not s:
        return None

    m = clock_re.match(s)
    if m:
        sign = -1.0 if m.group(1) == "-" else 1.0
        total = int(m.group(2)) * 3600 + int(m.group(3)) * 60 + float(m.group(4))
        return dt.timedelta(seconds=sign * total)

    total = 0.0
    pos = 0
    for tok in duration_token_re.finditer(s):
        if s[pos:tok.start()].strip():
            raise config_error(f"invalid duration: {value!r}")
        unit = tok.group(2) or "s"
        if unit not in unit_seconds:
            raise config_error(f"invalid duration unit {unit!r} in {value!r}")
        total += float(tok.group(1)) * unit_seconds[unit]
        pos = tok.end()

    if pos == 0 or s[pos:].strip():
        raise config_error(f"invalid duration: {value!r}")

    return dt.timedelta(seconds=total)


def as_duration(value: Any, name: str) -> Optional[dt.timedelta]:
    """parse_duration plus the non-negative check every threshold needs."""
    td = parse_duration(value)
    if td is not None and td < dt.timedelta(0):
        raise config_error(f"{name} must not be negative (got {value!r})")
    return td


def setup_logging(level_name: str) -> None:
    """Configure root logger."""
    level_map = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}
    level = level_map.get((level_name or "info").strip().lower(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_config(path: str) -> Dict[str, Any]:
    """Load YAML configuration file."""
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise config_error(f"config root must be a mapping: {path}")
    return cfg


def cfg_for_db(cfg: Dict[str, Any], dbname: str) -> Dict[str, Any]:
    """Clone config and override dbname."""
    new_cfg = dict(cfg)
    new_db = dict(cfg.get("db", {}) or {})
    new_db["dbname"] = dbname
    new_cfg["db"] = new_db
    return new_cfg


def resolve_watch_settings(args: argparse.Namespace, cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge the watch section of the config with command line overrides and
    validate it. Returns the keyword arguments for a scan.
    """
    watch_cfg = dict(cfg.get("watch", {}) or {})

    def pick(arg_name: str, key: str, default: Any) -> Any:
        v = getattr(args, arg_name, None)
        if v is not None:
            return v
        return watch_cfg.get(key, default)

    min_duration = as_duration(pick("min_duration", "min_duration", None), "min_duration")
    if min_duration is None:
        raise config_error("watch.min_duration (or --min-duration) is required")

    settings = {
        "min_duration": min_duration,
        "report_blockers": bool(pick("report_blockers", "report_blockers", False)),
        "mode": str(pick("report_mode", "report_mode", "notice")),
        "cancel_after": as_duration(pick("cancel_after", "cancel_after", None), "cancel_after"),
        "terminate_after": as_duration(pick("terminate_after", "terminate_after", None), "terminate_after"),
        "cancel_all": bool(pick("cancel_all", "cancel_all", False)),
        "max_statement_len": int(watch_cfg.get("max_statement_len", 0) or 0),
    }
    if settings["max_statement_len"] < 0:
        raise config_error("watch.max_statement_len must not be negative")
    return settings
