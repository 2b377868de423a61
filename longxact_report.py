# SPDX-License-Identifier: GPL-3.0-or-later
# longxact_report.py

"""
Report lines and the sinks that carry them.

Line layouts are consumed by log scrapers; field order is fixed.
"""

import logging
from typing import Any, List, Optional

from longxact_models import (
    blocker_record,
    escalation_outcome,
    report_mode,
    transaction_record,
)

line_prefix = "long_xact"

# PostgreSQL ranks LOG above WARNING for the server log.
log_level = 35
notice_level = 25
logging.addLevelName(log_level, "LOG")
logging.addLevelName(notice_level, "NOTICE")

level_for_mode = {
    report_mode.DEBUG: logging.DEBUG,
    report_mode.LOG: log_level,
    report_mode.INFO: logging.INFO,
    report_mode.NOTICE: notice_level,
    report_mode.WARNING: logging.WARNING,
}

report_logger = logging.getLogger("long_xact")


def _one_line(s: Any, max_len: int = 0) -> str:
    """Render text into a single line; truncate to max_len when it is positive."""
    if s is None:
        return ""
    t = " ".join(str(s).replace("\r", " ").replace("\n", " ").split())
    if max_len > 0 and len(t) > max_len:
        return t[: max_len - 3] + "..."
    return t


def _fmt_ms(ms: float) -> str:
    return f"{ms:.3f}"


def format_summary(rec: transaction_record, max_statement_len: int = 0) -> str:
    wait = ""
    if rec.has_wait_detail:
        wait = f" wait_event_type: {rec.wait_event_type or ''} wait_event: {rec.wait_event or ''}"
    return (
        f"{line_prefix} pid: {rec.backend_id} duration: {_fmt_ms(rec.elapsed_ms)} ms "
        f"user: {rec.actor} application: {rec.origin_app} client: {rec.origin_client}"
        f"{wait} statement: {_one_line(rec.statement_text, max_statement_len)}"
    )


def format_blocker(waiter: transaction_record, b: blocker_record, max_statement_len: int = 0) -> str:
    return (
        f"{line_prefix} waiter pid: {waiter.backend_id} blocker detail is; "
        f"pid: {b.backend_id} duration: {_fmt_ms(b.elapsed_ms)} ms "
        f"relation: {b.locked_resource} lock type: {b.lock_kind} "
        f"user: {b.actor} application: {b.origin_app} client: {b.origin_client} "
        f"statement: {_one_line(b.statement_text, max_statement_len)}"
    )


def format_outcome(outcome: escalation_outcome) -> str:
    return f"{line_prefix} {outcome.kind.value} backend with pid: {outcome.backend_id}"


class log_sink:
    """Emits every line through the report logger at one fixed level."""

    def __init__(self, mode: report_mode, logger: Optional[logging.Logger] = None):
        self.level = level_for_mode[mode]
        self.logger = logger or report_logger

    def emit(self, line: str) -> None:
        self.logger.log(self.level, "%s", line)

    def rows(self) -> List[str]:
        return []


class rows_sink:
    """Accumulates lines to hand back to the caller."""

    def __init__(self):
        self._rows: List[str] = []

    def emit(self, line: str) -> None:
        self._rows.append(line)

    def rows(self) -> List[str]:
        return list(self._rows)


def make_sink(mode: report_mode, logger: Optional[logging.Logger] = None):
    """Build the one sink used for a whole call."""
    if mode.emits:
        return log_sink(mode, logger)
    return rows_sink()
