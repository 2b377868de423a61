# SPDX-License-Identifier: GPL-3.0-or-later
# longxact_provider.py

"""
PostgreSQL side of the watchdog: connection handling, the capability probe,
the session snapshot, the lock resolver and the two administrative primitives.

Notes
- Uses psycopg3 if available; falls back to psycopg2.
- Cancelling or terminating other backends requires superuser or
  pg_signal_backend membership.
"""

import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Tuple

from longxact_models import (
    blocker_record,
    execution_state,
    local_client,
    server_capabilities,
    transaction_record,
    unknown_app,
)

try:
    import psycopg
    from psycopg.rows import dict_row

    psycopg3_available = True
except ImportError:
    psycopg3_available = False
    import psycopg2
    import psycopg2.extras


def mask_password(pw: Any) -> str:
    """Mask password strings for logs."""
    if pw is None:
        return ""
    s = str(pw)
    return "********" if s else ""


def format_conn_info(db_cfg: Dict[str, Any]) -> str:
    """Return a sanitized connection string for error logs."""
    host = db_cfg.get("host", "")
    port = db_cfg.get("port", "")
    dbname = db_cfg.get("dbname", "")
    user = db_cfg.get("user", "")
    password = mask_password(db_cfg.get("password", ""))
    timeout = db_cfg.get("connect_timeout_sec", 5)
    app = db_cfg.get("application_name", "")
    return (
        f"host={host} port={port} dbname={dbname} user={user} password={password} "
        f"connect_timeout_sec={timeout} application_name={app}"
    )


def log_connect_error(context: str, db_cfg: Dict[str, Any], exc: Exception) -> None:
    """Log connection failures with safe details and quick diagnostic hints."""
    logging.error("db_connect_failed context=%s conn=%s", context, format_conn_info(db_cfg))
    logging.error("db_connect_failed error=%s", str(exc))

    host = db_cfg.get("host", "")
    port = db_cfg.get("port", "")
    dbname = db_cfg.get("dbname", "")
    user = db_cfg.get("user", "")

    logging.error(
        "db_connect_failed hints: "
        "1) network reachability (firewall / security group) "
        "2) pg_hba.conf rule "
        "3) user/password "
        "4) dbname exists / datallowconn"
    )
    logging.error(
        "db_connect_failed quick_check: "
        f'psql "host={host} port={port} dbname={dbname} user={user}"'
    )


class pg_client:
    """Context-managed PostgreSQL client that supports psycopg3 and psycopg2."""

    def __init__(self, cfg: Dict[str, Any], context: str = "unknown"):
        self.cfg = cfg
        self.context = context
        self.conn = None

    def __enter__(self) -> "pg_client":
        db_cfg = self.cfg["db"]
        params = dict(
            host=db_cfg.get("host"),
            port=db_cfg.get("port", 5432),
            dbname=db_cfg["dbname"],
            user=db_cfg.get("user"),
            password=db_cfg.get("password"),
            connect_timeout=db_cfg.get("connect_timeout_sec", 5),
            application_name=db_cfg.get("application_name", "pg_longxact"),
        )
        try:
            if psycopg3_available:
                self.conn = psycopg.connect(row_factory=dict_row, **params)
            else:
                self.conn = psycopg2.connect(**params)
            self.conn.autocommit = True
            return self
        except Exception as e:
            log_connect_error(self.context, db_cfg, e)
            raise

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self.conn:
                self.conn.close()
        finally:
            self.conn = None

    def execute(self, sql: str, params: Optional[Tuple[Any, ...]] = None) -> None:
        with self.conn.cursor() as cur:
            cur.execute(sql, params)

    def fetchall(self, sql: str, params: Optional[Tuple[Any, ...]] = None) -> List[Dict[str, Any]]:
        if psycopg3_available:
            with self.conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchall()
        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            return list(cur.fetchall())

    def fetchone(self, sql: str, params: Optional[Tuple[Any, ...]] = None) -> Optional[Dict[str, Any]]:
        rows = self.fetchall(sql, params)
        return rows[0] if rows else None


def apply_session_settings(pg: pg_client, cfg: Dict[str, Any]) -> None:
    """Keep the watchdog's own session from hanging on catalog reads."""
    limits_cfg = cfg.get("limits", {}) or {}

    lock_timeout_ms = int(limits_cfg.get("lock_timeout_ms", 2000) or 2000)
    statement_timeout_ms = int(limits_cfg.get("statement_timeout_ms", 10000) or 10000)

    pg.execute(f"set lock_timeout = '{lock_timeout_ms}ms';")
    pg.execute(f"set statement_timeout = '{statement_timeout_ms}ms';")


def try_advisory_lock(pg: pg_client, key: int) -> bool:
    """Best-effort singleton lock to prevent overlapping runs."""
    row = pg.fetchone("select pg_try_advisory_lock(%s) as ok;", (key,))
    return bool(row and row["ok"])


def release_advisory_lock(pg: pg_client, key: int) -> None:
    pg.execute("select pg_advisory_unlock(%s);", (key,))


def probe_capabilities(pg: pg_client) -> server_capabilities:
    """Ask the server once which activity/lock columns and functions it has."""
    row = pg.fetchone("select current_setting('server_version_num')::int as version_num;")
    if not row:
        raise RuntimeError("unable to read server_version_num")
    caps = server_capabilities.for_version(int(row["version_num"]))
    logging.debug(
        "capabilities server_version_num=%d wait_event=%s blocking_pids=%s",
        caps.server_version_num,
        caps.has_wait_event,
        caps.has_blocking_pids,
    )
    return caps


def state_expr(caps: server_capabilities, alias: str) -> str:
    if caps.has_state:
        return f"{alias}.state"
    return (
        f"case when {alias}.current_query = '<IDLE> in transaction' "
        f"then 'idle in transaction' else 'active' end"
    )


def build_snapshot_sql(caps: server_capabilities) -> str:
    """Long transactions in the current database, in scan priority order."""
    pid = f"a.{caps.pid_column}"

    if caps.has_wait_event:
        wait_cols = """
        coalesce(a.wait_event_type = 'Lock', false) as is_waiting,
        a.wait_event_type as wait_event_type,
        a.wait_event as wait_event"""
    else:
        wait_cols = """
        coalesce(a.waiting, false) as is_waiting,
        null::text as wait_event_type,
        null::text as wait_event"""

    return f"""
    select
        {pid} as backend_id,
        a.usename as actor,
        a.application_name as origin_app,
        host(a.client_addr) as origin_client,
        a.{caps.query_column} as statement_text,
        {state_expr(caps, "a")} as state,
        now() - a.xact_start as elapsed,
        extract(epoch from now() - a.xact_start) as elapsed_seconds,{wait_cols}
    from pg_stat_activity a
    where a.datname = current_database()
      and a.xact_start is not null
      and {pid} <> pg_backend_pid()
      and now() - a.xact_start > %s
    order by is_waiting, elapsed desc;
    """


def build_blocker_sql(caps: server_capabilities) -> str:
    """First granted lock held by another backend on what the waiter wants."""
    bpid = f"ba.{caps.pid_column}"
    blocking_filter = "and b.pid = any(pg_blocking_pids(w.pid))" if caps.has_blocking_pids else ""

    return f"""
    select
        b.pid as backend_id,
        ba.usename as actor,
        ba.application_name as origin_app,
        host(ba.client_addr) as origin_client,
        ba.{caps.query_column} as statement_text,
        {state_expr(caps, "ba")} as state,
        coalesce(extract(epoch from now() - ba.xact_start), 0) as elapsed_seconds,
        b.locktype as lock_type,
        b.mode as lock_mode,
        b.transactionid::text as lock_xid,
        case when c.oid is not null
             then quote_ident(n.nspname) || '.' || quote_ident(c.relname)
        end as relation_name
    from pg_locks w
    join pg_locks b
      on b.granted
     and b.pid <> w.pid
     and b.locktype = w.locktype
     and b.database is not distinct from w.database
     and b.relation is not distinct from w.relation
     and b.page is not distinct from w.page
     and b.tuple is not distinct from w.tuple
     and b.virtualxid is not distinct from w.virtualxid
     and b.transactionid is not distinct from w.transactionid
     and b.classid is not distinct from w.classid
     and b.objid is not distinct from w.objid
     and b.objsubid is not distinct from w.objsubid
    join pg_stat_activity ba on {bpid} = b.pid
    left join pg_class c on c.oid = b.relation
    left join pg_namespace n on n.oid = c.relnamespace
    where w.pid = %s
      and not w.granted
      {blocking_filter}
    order by (c.oid is null), ba.xact_start nulls last
    limit 1;
    """


held_relations_sql = """
    select distinct quote_ident(n.nspname) || '.' || quote_ident(c.relname) as relation_name
    from pg_locks l
    join pg_class c on c.oid = l.relation
    join pg_namespace n on n.oid = c.relnamespace
    where l.pid = %s
      and l.granted
      and l.locktype = 'relation'
      and c.relkind in ('r', 'p', 'm', 'f')
      and n.nspname not in ('pg_catalog', 'information_schema')
    order by 1;
"""


def _seconds(value: Any) -> float:
    if value is None:
        return 0.0
    return float(value)


def row_to_transaction(r: Dict[str, Any]) -> transaction_record:
    """Normalize a snapshot row, filling the provenance sentinels."""
    elapsed_seconds = _seconds(r.get("elapsed_seconds"))
    elapsed = r.get("elapsed")
    if not isinstance(elapsed, dt.timedelta):
        elapsed = dt.timedelta(seconds=elapsed_seconds)

    return transaction_record(
        backend_id=int(r["backend_id"]),
        actor=str(r.get("actor") or ""),
        origin_app=str(r.get("origin_app") or unknown_app),
        origin_client=str(r.get("origin_client") or local_client),
        statement_text=str(r.get("statement_text") or ""),
        execution_state=execution_state.from_pg(r.get("state")),
        elapsed=elapsed,
        elapsed_seconds=elapsed_seconds,
        is_waiting=bool(r.get("is_waiting")),
        wait_event_type=r.get("wait_event_type"),
        wait_event=r.get("wait_event"),
    )


def row_to_blocker(r: Dict[str, Any], held_relations: Tuple[str, ...] = ()) -> blocker_record:
    lock_xid = r.get("lock_xid")
    return blocker_record(
        backend_id=int(r["backend_id"]),
        actor=str(r.get("actor") or ""),
        origin_app=str(r.get("origin_app") or unknown_app),
        origin_client=str(r.get("origin_client") or local_client),
        statement_text=str(r.get("statement_text") or ""),
        execution_state=execution_state.from_pg(r.get("state")),
        elapsed_seconds=_seconds(r.get("elapsed_seconds")),
        lock_type=str(r.get("lock_type") or ""),
        lock_mode=r.get("lock_mode"),
        lock_xid=str(lock_xid) if lock_xid is not None else None,
        relation_name=r.get("relation_name"),
        held_relations=tuple(held_relations),
    )


class pg_session_provider:
    """Snapshot provider and lock resolver bound to one connection."""

    def __init__(self, pg: pg_client, caps: server_capabilities):
        self.pg = pg
        self.caps = caps
        self.snapshot_sql = build_snapshot_sql(caps)
        self.blocker_sql = build_blocker_sql(caps)

    def fetch_long_transactions(self, min_duration: dt.timedelta) -> List[transaction_record]:
        rows = self.pg.fetchall(self.snapshot_sql, (min_duration,))
        return [row_to_transaction(r) for r in rows]

    def resolve_blocker(self, backend_id: int) -> Optional[blocker_record]:
        row = self.pg.fetchone(self.blocker_sql, (backend_id,))
        if not row:
            return None

        held: Tuple[str, ...] = ()
        if not row.get("relation_name"):
            rel_rows = self.pg.fetchall(held_relations_sql, (int(row["backend_id"]),))
            held = tuple(str(x["relation_name"]) for x in rel_rows)

        return row_to_blocker(row, held)


class pg_admin:
    """
    The two administrative primitives.

    Both return False instead of raising: a backend that already went away,
    or a signal the server refuses, is an expected outcome of a watchdog run.
    """

    def __init__(self, pg: pg_client, dry_run: bool = False):
        self.pg = pg
        self.dry_run = dry_run

    def _signal(self, func: str, backend_id: int) -> bool:
        if self.dry_run:
            logging.info("[DRY-RUN] select %s(%d);", func, backend_id)
            return True
        try:
            row = self.pg.fetchone(f"select {func}(%s) as ok;", (backend_id,))
        except Exception as e:
            logging.warning("admin_failed func=%s pid=%d error=%s", func, backend_id, e)
            return False
        ok = bool(row and row["ok"])
        logging.info("admin func=%s pid=%d ok=%s", func, backend_id, ok)
        return ok

    def cancel_backend(self, backend_id: int) -> bool:
        return self._signal("pg_cancel_backend", backend_id)

    def terminate_backend(self, backend_id: int) -> bool:
        return self._signal("pg_terminate_backend", backend_id)
