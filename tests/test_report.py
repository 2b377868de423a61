# SPDX-License-Identifier: GPL-3.0-or-later
"""
Unit tests for report line formatting and sinks.
"""

import logging

from longxact_models import escalation_outcome, outcome_kind, report_mode
from longxact_report import (
    format_blocker,
    format_outcome,
    format_summary,
    log_sink,
    make_sink,
    rows_sink,
)
from longxact_fakes import make_blocker, make_xact


class TestFormatting:

    def test_summary_line(self):
        rec = make_xact(101, 2.5, statement="select *\n  from t\r\nwhere id = 1")
        assert format_summary(rec) == (
            "long_xact pid: 101 duration: 2500.000 ms user: app application: billing "
            "client: 10.0.0.5 statement: select * from t where id = 1"
        )

    def test_summary_with_wait_classification(self):
        rec = make_xact(102, 1.25, waiting=True, wait_event_type="Lock", wait_event="transactionid")
        line = format_summary(rec)
        assert " client: 10.0.0.5 wait_event_type: Lock wait_event: transactionid statement: select 1" in line

    def test_summary_truncates_statement(self):
        rec = make_xact(103, 1, statement="x" * 50)
        line = format_summary(rec, max_statement_len=10)
        assert line.endswith("statement: xxxxxxx...")

    def test_blocker_line(self):
        waiter = make_xact(200, 3, waiting=True)
        line = format_blocker(waiter, make_blocker(100, seconds=4))
        assert line == (
            "long_xact waiter pid: 200 blocker detail is; pid: 100 duration: 4000.000 ms "
            "relation: public.accounts (RowExclusiveLock) lock type: relation "
            "user: app application: billing client: 10.0.0.5 "
            "statement: update accounts set balance = 0"
        )

    def test_outcome_lines(self):
        assert format_outcome(escalation_outcome(outcome_kind.CANCELLED, 5)) == "long_xact cancelled backend with pid: 5"
        assert format_outcome(escalation_outcome(outcome_kind.TERMINATED, 5)) == "long_xact terminated backend with pid: 5"
        assert format_outcome(escalation_outcome(outcome_kind.UNABLE_TO_CANCEL, 5)) == (
            "long_xact unable to cancel backend with pid: 5"
        )
        assert format_outcome(escalation_outcome(outcome_kind.UNABLE_TO_TERMINATE, 5)) == (
            "long_xact unable to terminate backend with pid: 5"
        )


class TestSinks:

    def test_rows_sink_accumulates(self):
        sink = make_sink(report_mode.ROWS)
        assert isinstance(sink, rows_sink)
        sink.emit("a")
        sink.emit("b")
        assert sink.rows() == ["a", "b"]

    def test_log_sink_levels(self, caplog):
        caplog.set_level(logging.DEBUG, logger="long_xact")
        for mode, levelname in [
            (report_mode.DEBUG, "DEBUG"),
            (report_mode.LOG, "LOG"),
            (report_mode.INFO, "INFO"),
            (report_mode.NOTICE, "NOTICE"),
            (report_mode.WARNING, "WARNING"),
        ]:
            sink = make_sink(mode)
            assert isinstance(sink, log_sink)
            sink.emit(f"line {mode.value}")
            assert sink.rows() == []
            assert caplog.records[-1].levelname == levelname
            assert caplog.records[-1].getMessage() == f"line {mode.value}"
