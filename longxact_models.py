# SPDX-License-Identifier: GPL-3.0-or-later
# longxact_models.py

"""
Data model shared by the long transaction watchdog.

Records are built fresh from live server state on every scan and discarded
when the scan returns. Nothing here holds a connection or talks to the server.
"""

import datetime as dt
import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

unknown_app = "[unknown]"
local_client = "[local]"
unknown_resource = "[unknown]"


class config_error(ValueError):
    """Raised for malformed configuration, always before a scan starts."""


class execution_state(enum.Enum):
    ACTIVE = "active"
    IDLE_IN_TRANSACTION = "idle in transaction"
    OTHER = "other"

    @classmethod
    def from_pg(cls, state: Optional[str]) -> "execution_state":
        """Map a pg_stat_activity.state value onto the closed set."""
        s = (state or "").strip().lower()
        if s == "active":
            return cls.ACTIVE
        if s.startswith("idle in transaction"):
            return cls.IDLE_IN_TRANSACTION
        return cls.OTHER


class report_mode(enum.Enum):
    DEBUG = "debug"
    LOG = "log"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ROWS = "rows"

    @classmethod
    def parse(cls, value: Optional[str]) -> "report_mode":
        """Resolve a severity name; anything outside the emission set means ROWS."""
        s = str(value or "").strip().lower()
        for m in cls:
            if m is not cls.ROWS and m.value == s:
                return m
        return cls.ROWS

    @property
    def emits(self) -> bool:
        return self is not report_mode.ROWS


@dataclass(frozen=True)
class transaction_record:
    """One open transaction older than the scan threshold."""
    backend_id: int
    actor: str
    origin_app: str
    origin_client: str
    statement_text: str
    execution_state: execution_state
    elapsed: dt.timedelta
    elapsed_seconds: float
    is_waiting: bool
    wait_event_type: Optional[str] = None
    wait_event: Optional[str] = None

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_seconds * 1000.0

    @property
    def has_wait_detail(self) -> bool:
        return bool(self.wait_event_type or self.wait_event)


@dataclass(frozen=True)
class blocker_record:
    """The session holding the lock a waiting transaction needs."""
    backend_id: int
    actor: str
    origin_app: str
    origin_client: str
    statement_text: str
    execution_state: execution_state
    elapsed_seconds: float
    lock_type: str
    lock_mode: Optional[str] = None
    lock_xid: Optional[str] = None
    relation_name: Optional[str] = None
    held_relations: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_seconds * 1000.0

    @property
    def locked_resource(self) -> str:
        """Best-effort description of what the blocker holds."""
        if self.relation_name:
            if self.lock_mode:
                return f"{self.relation_name} ({self.lock_mode})"
            return self.relation_name
        if self.held_relations:
            return "any of: " + ", ".join(self.held_relations)
        return unknown_resource

    @property
    def lock_kind(self) -> str:
        if self.lock_type == "transactionid":
            return f"transaction id {self.lock_xid}" if self.lock_xid else "transaction id"
        return self.lock_type or unknown_resource


@dataclass(frozen=True)
class escalation_policy:
    """Escalation thresholds for one scan."""
    cancel_after: Optional[dt.timedelta] = None
    terminate_after: Optional[dt.timedelta] = None
    cancel_all: bool = False


class outcome_kind(enum.Enum):
    CANCELLED = "cancelled"
    TERMINATED = "terminated"
    UNABLE_TO_CANCEL = "unable to cancel"
    UNABLE_TO_TERMINATE = "unable to terminate"


@dataclass(frozen=True)
class escalation_outcome:
    kind: outcome_kind
    backend_id: int


@dataclass(frozen=True)
class server_capabilities:
    """
    What the connected server exposes, probed once per run.

    The snapshot and lock queries are built from this; nothing downstream
    branches on the server version.
    """
    server_version_num: int
    pid_column: str = "pid"
    query_column: str = "query"
    has_state: bool = True
    has_wait_event: bool = True
    has_blocking_pids: bool = True

    @classmethod
    def for_version(cls, server_version_num: int) -> "server_capabilities":
        v = int(server_version_num)
        if v < 90200:
            return cls(
                server_version_num=v,
                pid_column="procpid",
                query_column="current_query",
                has_state=False,
                has_wait_event=False,
                has_blocking_pids=False,
            )
        if v < 90600:
            return cls(server_version_num=v, has_wait_event=False, has_blocking_pids=False)
        return cls(server_version_num=v)


def order_for_scan(records: List[transaction_record]) -> List[transaction_record]:
    """Non-waiting transactions first, then waiters; oldest first within each group."""
    return sorted(records, key=lambda r: (r.is_waiting, -r.elapsed_seconds))
