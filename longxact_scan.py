# SPDX-License-Identifier: GPL-3.0-or-later
# longxact_scan.py

"""
One pass of the long transaction watchdog.

The scan fetches the threshold-exceeding transactions once, walks them in
priority order (non-waiters first, oldest first), reports each one,
optionally reports its blocker, and feeds it through the escalation policy.
No state survives the call.
"""

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Union

from longxact_config import as_duration
from longxact_escalation import admin_primitives, evaluate
from longxact_models import (
    blocker_record,
    config_error,
    escalation_outcome,
    escalation_policy,
    order_for_scan,
    report_mode,
    transaction_record,
)
from longxact_report import format_blocker, format_outcome, format_summary, make_sink


class session_provider(Protocol):
    def fetch_long_transactions(self, min_duration: dt.timedelta) -> List[transaction_record]: ...

    def resolve_blocker(self, backend_id: int) -> Optional[blocker_record]: ...


@dataclass
class scan_result:
    rows: List[str] = field(default_factory=list)
    scanned: int = 0
    blockers_reported: int = 0
    attempts: int = 0
    outcomes: List[escalation_outcome] = field(default_factory=list)
    outcome_lines: List[str] = field(default_factory=list)


def build_policy(
    cancel_after: Any = None,
    terminate_after: Any = None,
    cancel_all: bool = False,
) -> escalation_policy:
    """Validate escalation thresholds; raises config_error on bad input."""
    cancel_td = as_duration(cancel_after, "cancel_after")
    terminate_td = as_duration(terminate_after, "terminate_after")
    if terminate_td is not None and cancel_td is None:
        logging.warning("terminate_after is set without cancel_after; termination is only tried after a cancel attempt")
    return escalation_policy(cancel_after=cancel_td, terminate_after=terminate_td, cancel_all=bool(cancel_all))


def scan(
    provider: session_provider,
    admin: admin_primitives,
    min_duration: Any,
    report_blockers: bool = False,
    mode: Union[str, report_mode] = "notice",
    cancel_after: Any = None,
    terminate_after: Any = None,
    cancel_all: bool = False,
    logger: Optional[logging.Logger] = None,
    max_statement_len: int = 0,
) -> scan_result:
    """Run one scan and return the rows plus what was done."""
    min_td = as_duration(min_duration, "min_duration")
    if min_td is None:
        raise config_error("min_duration is required")
    policy = build_policy(cancel_after, terminate_after, cancel_all)

    resolved = mode if isinstance(mode, report_mode) else report_mode.parse(mode)
    sink = make_sink(resolved, logger)

    records = order_for_scan(provider.fetch_long_transactions(min_td))
    logging.debug("scan_fetched count=%d min_duration=%s mode=%s", len(records), min_td, resolved.value)

    result = scan_result(scanned=len(records))
    attempts = 0

    for rec in records:
        sink.emit(format_summary(rec, max_statement_len))

        if report_blockers and rec.is_waiting:
            blocker = provider.resolve_blocker(rec.backend_id)
            if blocker is not None:
                sink.emit(format_blocker(rec, blocker, max_statement_len))
                result.blockers_reported += 1

        attempts, outcome = evaluate(rec, policy, attempts, admin)
        if outcome is not None:
            line = format_outcome(outcome)
            sink.emit(line)
            result.outcomes.append(outcome)
            result.outcome_lines.append(line)

    result.attempts = attempts
    result.rows = sink.rows()
    return result


def run(
    provider: session_provider,
    admin: admin_primitives,
    min_duration: Any,
    report_blockers: bool = False,
    mode: Union[str, report_mode] = "notice",
    cancel_after: Any = None,
    terminate_after: Any = None,
    cancel_all: bool = False,
) -> List[str]:
    """
    Scan once and return the report rows.

    Rows come back only when mode is not one of debug/log/info/notice/warning;
    otherwise every line is logged at that level and the result is empty.
    """
    return scan(
        provider,
        admin,
        min_duration,
        report_blockers=report_blockers,
        mode=mode,
        cancel_after=cancel_after,
        terminate_after=terminate_after,
        cancel_all=cancel_all,
    ).rows
