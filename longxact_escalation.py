# SPDX-License-Identifier: GPL-3.0-or-later
# longxact_escalation.py

"""
Escalation decisions for one scan.

The attempt counter is passed in and returned, never stored, so a scan is a
fold of evaluate() over the ordered records. The counter is shared between
cancel and terminate: in single-shot mode the first qualifying transaction
consumes the whole budget whichever action it ends up receiving.
"""

from typing import Optional, Protocol, Tuple

from longxact_models import (
    escalation_outcome,
    escalation_policy,
    execution_state,
    outcome_kind,
    transaction_record,
)


class admin_primitives(Protocol):
    def cancel_backend(self, backend_id: int) -> bool: ...

    def terminate_backend(self, backend_id: int) -> bool: ...


def is_eligible(rec: transaction_record, policy: escalation_policy, attempts: int) -> bool:
    """Return True when this record may be escalated in this scan."""
    if attempts > 0 and not policy.cancel_all:
        return False
    if policy.cancel_after is None:
        return False
    return rec.elapsed > policy.cancel_after


def can_cancel(rec: transaction_record) -> bool:
    """An idle-in-transaction session has no running statement to cancel."""
    return rec.execution_state is not execution_state.IDLE_IN_TRANSACTION


def past_terminate_threshold(rec: transaction_record, policy: escalation_policy) -> bool:
    return policy.terminate_after is not None and rec.elapsed > policy.terminate_after


def evaluate(
    rec: transaction_record,
    policy: escalation_policy,
    attempts: int,
    admin: admin_primitives,
) -> Tuple[int, Optional[escalation_outcome]]:
    """
    Decide and apply escalation for one record.

    Returns (attempts, outcome). outcome is None when the record was not
    eligible; otherwise it is exactly one of cancelled / terminated /
    unable to cancel / unable to terminate.
    """
    if not is_eligible(rec, policy, attempts):
        return attempts, None

    attempts += 1
    pid = rec.backend_id

    if can_cancel(rec) and admin.cancel_backend(pid):
        return attempts, escalation_outcome(outcome_kind.CANCELLED, pid)

    if past_terminate_threshold(rec, policy):
        if admin.terminate_backend(pid):
            return attempts, escalation_outcome(outcome_kind.TERMINATED, pid)
        return attempts, escalation_outcome(outcome_kind.UNABLE_TO_TERMINATE, pid)

    return attempts, escalation_outcome(outcome_kind.UNABLE_TO_CANCEL, pid)
