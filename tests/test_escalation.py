# SPDX-License-Identifier: GPL-3.0-or-later
"""
Unit tests for the escalation controller.
"""

import datetime as dt

from longxact_escalation import evaluate, is_eligible
from longxact_models import escalation_policy, outcome_kind
from longxact_fakes import fake_admin, make_xact


def minutes(n):
    return dt.timedelta(minutes=n)


class TestEligibility:
    """Which records the controller is allowed to touch."""

    def test_no_cancel_threshold_means_never(self):
        rec = make_xact(10, 3600)
        assert not is_eligible(rec, escalation_policy(), 0)
        assert not is_eligible(rec, escalation_policy(terminate_after=minutes(1)), 0)

    def test_younger_than_threshold(self):
        rec = make_xact(10, 60)
        assert not is_eligible(rec, escalation_policy(cancel_after=minutes(10)), 0)

    def test_threshold_is_strict(self):
        rec = make_xact(10, 600)
        assert not is_eligible(rec, escalation_policy(cancel_after=minutes(10)), 0)

    def test_single_shot_after_first_attempt(self):
        rec = make_xact(10, 3600)
        policy = escalation_policy(cancel_after=minutes(1))
        assert is_eligible(rec, policy, 0)
        assert not is_eligible(rec, policy, 1)

    def test_cancel_all_ignores_attempts(self):
        rec = make_xact(10, 3600)
        policy = escalation_policy(cancel_after=minutes(1), cancel_all=True)
        assert is_eligible(rec, policy, 5)


class TestEvaluate:
    """Outcomes and the attempt counter."""

    def setup_method(self):
        self.admin = fake_admin()

    def test_not_eligible_leaves_counter(self):
        attempts, outcome = evaluate(make_xact(1, 5), escalation_policy(cancel_after=minutes(1)), 0, self.admin)
        assert attempts == 0
        assert outcome is None
        assert self.admin.calls == []

    def test_active_is_cancelled(self):
        attempts, outcome = evaluate(make_xact(1, 120), escalation_policy(cancel_after=minutes(1)), 0, self.admin)
        assert attempts == 1
        assert outcome.kind is outcome_kind.CANCELLED
        assert outcome.backend_id == 1
        assert self.admin.calls == [("cancel", 1)]

    def test_idle_in_transaction_skips_cancel(self):
        policy = escalation_policy(cancel_after=minutes(1), terminate_after=minutes(2))
        rec = make_xact(7, 600, state="idle in transaction")
        attempts, outcome = evaluate(rec, policy, 0, self.admin)
        assert attempts == 1
        assert outcome.kind is outcome_kind.TERMINATED
        assert self.admin.calls == [("terminate", 7)]

    def test_aborted_idle_in_transaction_skips_cancel(self):
        policy = escalation_policy(cancel_after=minutes(1))
        rec = make_xact(7, 600, state="idle in transaction (aborted)")
        _, outcome = evaluate(rec, policy, 0, self.admin)
        assert outcome.kind is outcome_kind.UNABLE_TO_CANCEL
        assert self.admin.calls == []

    def test_idle_without_terminate_threshold(self):
        policy = escalation_policy(cancel_after=minutes(1))
        _, outcome = evaluate(make_xact(7, 600, state="idle in transaction"), policy, 0, self.admin)
        assert outcome.kind is outcome_kind.UNABLE_TO_CANCEL

    def test_failed_cancel_below_terminate_threshold(self):
        admin = fake_admin(cancel_fails={3})
        policy = escalation_policy(cancel_after=minutes(1), terminate_after=minutes(30))
        _, outcome = evaluate(make_xact(3, 300), policy, 0, admin)
        assert outcome.kind is outcome_kind.UNABLE_TO_CANCEL
        assert admin.calls == [("cancel", 3)]

    def test_failed_cancel_then_terminate(self):
        admin = fake_admin(cancel_fails={3})
        policy = escalation_policy(cancel_after=minutes(1), terminate_after=minutes(2))
        _, outcome = evaluate(make_xact(3, 300), policy, 0, admin)
        assert outcome.kind is outcome_kind.TERMINATED
        assert admin.calls == [("cancel", 3), ("terminate", 3)]

    def test_failed_terminate(self):
        admin = fake_admin(cancel_fails={3}, terminate_fails={3})
        policy = escalation_policy(cancel_after=minutes(1), terminate_after=minutes(2))
        attempts, outcome = evaluate(make_xact(3, 300), policy, 0, admin)
        assert attempts == 1
        assert outcome.kind is outcome_kind.UNABLE_TO_TERMINATE

    def test_successful_cancel_never_terminates(self):
        policy = escalation_policy(cancel_after=minutes(1), terminate_after=minutes(2))
        _, outcome = evaluate(make_xact(3, 300), policy, 0, self.admin)
        assert outcome.kind is outcome_kind.CANCELLED
        assert self.admin.calls == [("cancel", 3)]
