import json
import os
import sqlite3
import threading
from functools import wraps
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import DEFAULTS, TERMINAL_STATES, JOB_TERMINAL
from .utils import iso, utcnow

_local = threading.local()

TASK_COLUMNS = (
    "id", "job_id", "batch_index", "source", "priority", "payload", "state",
    "retry_count", "max_retries", "error_class", "error", "not_before",
    "dispatched_at", "version", "result", "created_at", "updated_at",
    "started_at", "completed_at",
)


def db_path() -> Path:
    home = Path(os.environ.get("REVIEWPIPE_HOME", Path.home() / ".reviewpipe"))
    home.mkdir(parents=True, exist_ok=True)
    return home / "queue.db"


def get_conn() -> sqlite3.Connection:
    """One connection per thread, reopened when REVIEWPIPE_HOME moves."""
    path = db_path()
    conn = getattr(_local, "conn", None)
    if conn is None or getattr(_local, "path", None) != path:
        if conn is not None:
            conn.close()
        conn = sqlite3.connect(path, timeout=30)
        conn.row_factory = sqlite3.Row
        _local.conn = conn
        _local.path = path
        init_db(conn)
    return conn


def close_conn() -> None:
    conn = getattr(_local, "conn", None)
    if conn is not None:
        conn.close()
    _local.conn = None
    _local.path = None


def with_conn(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        conn = get_conn()
        return fn(conn, *args, **kwargs)
    return wrapper


def init_db(conn: sqlite3.Connection):
    conn.executescript(
        """
        PRAGMA journal_mode=WAL;
        CREATE TABLE IF NOT EXISTS jobs(
          id TEXT PRIMARY KEY,
          app_name TEXT NOT NULL,
          status TEXT NOT NULL,
          error TEXT,
          stats TEXT,
          result TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          analysis_started_at TEXT,
          completed_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
        CREATE TABLE IF NOT EXISTS raw_items(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          job_id TEXT NOT NULL,
          source TEXT NOT NULL,
          payload TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_raw_items_job ON raw_items(job_id);
        CREATE TABLE IF NOT EXISTS tasks(
          id TEXT PRIMARY KEY,
          job_id TEXT NOT NULL,
          batch_index INTEGER NOT NULL,
          source TEXT NOT NULL DEFAULT '',
          priority INTEGER NOT NULL DEFAULT 0,
          payload TEXT NOT NULL,
          state TEXT NOT NULL,
          retry_count INTEGER NOT NULL DEFAULT 0,
          max_retries INTEGER NOT NULL,
          error_class TEXT,
          error TEXT,
          not_before TEXT,
          dispatched_at TEXT,
          version INTEGER NOT NULL DEFAULT 0,
          result TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          started_at TEXT,
          completed_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_tasks_state_next ON tasks(state, not_before);
        CREATE INDEX IF NOT EXISTS idx_tasks_job ON tasks(job_id, state);
        CREATE TABLE IF NOT EXISTS config(
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS alert_rules(
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          condition TEXT NOT NULL,
          severity TEXT NOT NULL,
          threshold REAL NOT NULL,
          channels TEXT NOT NULL,
          cooldown REAL NOT NULL,
          enabled INTEGER NOT NULL DEFAULT 1,
          last_triggered TEXT
        );
        CREATE TABLE IF NOT EXISTS alerts(
          id TEXT PRIMARY KEY,
          rule_id TEXT NOT NULL,
          severity TEXT NOT NULL,
          message TEXT NOT NULL,
          data TEXT,
          created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS workers(
          id TEXT PRIMARY KEY,
          pid INTEGER NOT NULL,
          started_at TEXT NOT NULL,
          stopped_at TEXT
        );
        """
    )
    # defaults
    for k, v in DEFAULTS.items():
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO NOTHING",
            (k, v if isinstance(v, str) else json.dumps(v)),
        )
    conn.execute("INSERT INTO config(key,value) VALUES('shutdown','false') ON CONFLICT(key) DO NOTHING")
    conn.commit()


def _assignments(fields: Dict[str, Any]) -> Tuple[str, List[Any]]:
    cols = ", ".join(f"{k}=?" for k in fields)
    return cols, list(fields.values())


# -----------------------------
# Jobs
# -----------------------------
@with_conn
def insert_job(conn, job: Dict[str, Any]):
    conn.execute(
        """INSERT INTO jobs(id,app_name,status,error,stats,result,created_at,updated_at,analysis_started_at,completed_at)
           VALUES(:id,:app_name,:status,:error,:stats,:result,:created_at,:updated_at,:analysis_started_at,:completed_at)
        """, job)
    conn.commit()


@with_conn
def get_job(conn, job_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()


@with_conn
def list_jobs(conn, status: Optional[str] = None) -> List[sqlite3.Row]:
    if status:
        cur = conn.execute("SELECT * FROM jobs WHERE status=? ORDER BY created_at", (status,))
    else:
        cur = conn.execute("SELECT * FROM jobs ORDER BY created_at")
    return cur.fetchall()


@with_conn
def update_job_if(conn, job_id: str, expected_status: str, fields: Dict[str, Any]) -> bool:
    """Compare-and-swap on the job's status. False means another writer got there first."""
    fields = {"updated_at": iso(utcnow()), **fields}
    cols, values = _assignments(fields)
    cur = conn.execute(
        f"UPDATE jobs SET {cols} WHERE id=? AND status=?",
        (*values, job_id, expected_status),
    )
    conn.commit()
    return cur.rowcount == 1


@with_conn
def add_raw_items(conn, job_id: str, items: Iterable[Dict[str, Any]]) -> int:
    rows = [(job_id, item.get("source", ""), json.dumps(item)) for item in items]
    conn.executemany("INSERT INTO raw_items(job_id,source,payload) VALUES(?,?,?)", rows)
    conn.commit()
    return len(rows)


@with_conn
def get_raw_items(conn, job_id: str) -> List[Dict[str, Any]]:
    cur = conn.execute("SELECT payload FROM raw_items WHERE job_id=? ORDER BY id", (job_id,))
    return [json.loads(r["payload"]) for r in cur.fetchall()]


# -----------------------------
# Tasks
# -----------------------------
@with_conn
def insert_tasks(conn, tasks: Sequence[Dict[str, Any]]):
    cols = ",".join(TASK_COLUMNS)
    params = ",".join(f":{c}" for c in TASK_COLUMNS)
    conn.executemany(f"INSERT INTO tasks({cols}) VALUES({params})", tasks)
    conn.commit()


@with_conn
def get_task(conn, task_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()


@with_conn
def list_tasks(conn, job_id: Optional[str] = None, states: Optional[Sequence[str]] = None) -> List[sqlite3.Row]:
    sql = "SELECT * FROM tasks"
    where, args = [], []
    if job_id:
        where.append("job_id=?")
        args.append(job_id)
    if states:
        where.append(f"state IN ({','.join('?' * len(states))})")
        args.extend(states)
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY job_id, batch_index"
    return conn.execute(sql, args).fetchall()


@with_conn
def transition_task(conn, task_id: str, expected_state: str, expected_version: int, fields: Dict[str, Any]) -> bool:
    """Conditional update keyed on (state, version); bumps version on success."""
    fields = {"updated_at": iso(utcnow()), **fields}
    cols, values = _assignments(fields)
    cur = conn.execute(
        f"UPDATE tasks SET {cols}, version=version+1 WHERE id=? AND state=? AND version=?",
        (*values, task_id, expected_state, expected_version),
    )
    conn.commit()
    return cur.rowcount == 1


@with_conn
def counts_by_state(conn, job_id: Optional[str] = None) -> Dict[str, int]:
    if job_id:
        cur = conn.execute("SELECT state, COUNT(*) FROM tasks WHERE job_id=? GROUP BY state", (job_id,))
    else:
        cur = conn.execute("SELECT state, COUNT(*) FROM tasks GROUP BY state")
    return {row[0]: row[1] for row in cur.fetchall()}


@with_conn
def fetch_ready_tasks(conn, now: str, job_id: Optional[str] = None) -> List[sqlite3.Row]:
    """Pending tasks plus queued tasks whose not-before has passed and that hold no dispatch lease."""
    sql = """
        SELECT * FROM tasks
         WHERE (state='pending' OR (state='queued' AND (not_before IS NULL OR not_before <= ?)))
           AND dispatched_at IS NULL
    """
    args: List[Any] = [now]
    if job_id:
        sql += " AND job_id=?"
        args.append(job_id)
    return conn.execute(sql, args).fetchall()


@with_conn
def lease_task(conn, task_id: str, expected_state: str, expected_version: int, now: str, budget: int) -> bool:
    """Queue a task with a dispatch lease, but only while in-flight work is under `budget`.

    The capacity check and the update run under one write lock, so overlapping
    schedulers never lease past the budget between them.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        cur = conn.execute(
            """UPDATE tasks SET state='queued', dispatched_at=?, updated_at=?, version=version+1
                WHERE id=? AND state=? AND version=?
                  AND (SELECT COUNT(*) FROM tasks
                        WHERE state='running' OR (state='queued' AND dispatched_at IS NOT NULL)) < ?""",
            (now, iso(utcnow()), task_id, expected_state, expected_version, budget),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return cur.rowcount == 1


@with_conn
def count_in_flight(conn) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM tasks WHERE state='running' OR (state='queued' AND dispatched_at IS NOT NULL)"
    ).fetchone()
    return row[0]


@with_conn
def running_started_before(conn, cutoff: str) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM tasks WHERE state='running' AND started_at < ? ORDER BY started_at", (cutoff,)
    ).fetchall()


@with_conn
def dispatched_before(conn, cutoff: str) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM tasks WHERE state='queued' AND dispatched_at IS NOT NULL AND dispatched_at < ?", (cutoff,)
    ).fetchall()


@with_conn
def waiting_since_before(conn, cutoff: str, now: str) -> List[sqlite3.Row]:
    """Unleased waiting tasks that became eligible before `cutoff`.

    A task starts waiting when it last changed state, or when its not-before
    passes if that is later. Tasks still backing off are not waiting yet.
    """
    return conn.execute(
        """SELECT * FROM tasks
            WHERE state IN ('pending','queued') AND dispatched_at IS NULL
              AND (not_before IS NULL OR not_before <= ?)
              AND MAX(updated_at, COALESCE(not_before, updated_at)) < ?
            ORDER BY created_at""",
        (now, cutoff),
    ).fetchall()


@with_conn
def recent_outcomes(conn, since: str) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT state, started_at, completed_at FROM tasks WHERE state IN ('completed','failed') AND completed_at >= ?",
        (since,),
    ).fetchall()


@with_conn
def oldest_running_start(conn) -> Optional[str]:
    row = conn.execute("SELECT MIN(started_at) FROM tasks WHERE state='running'").fetchone()
    return row[0]


@with_conn
def jobs_with_waiting_tasks(conn) -> List[str]:
    cur = conn.execute(
        """SELECT DISTINCT t.job_id FROM tasks t JOIN jobs j ON j.id = t.job_id
            WHERE t.state IN ('pending','queued') AND j.status='analyzing'"""
    )
    return [r[0] for r in cur.fetchall()]


@with_conn
def delete_terminal_tasks(conn, cutoff: str) -> int:
    """Retention sweep: only terminal tasks of terminal jobs are ever deleted."""
    task_states = ",".join(f"'{s}'" for s in TERMINAL_STATES)
    job_states = ",".join(f"'{s}'" for s in JOB_TERMINAL)
    cur = conn.execute(
        f"""DELETE FROM tasks
             WHERE state IN ({task_states}) AND completed_at < ?
               AND job_id IN (SELECT id FROM jobs WHERE status IN ({job_states}))""",
        (cutoff,),
    )
    conn.commit()
    return cur.rowcount


# -----------------------------
# Config
# -----------------------------
@with_conn
def config_get(conn, key: str, default: Optional[str] = None) -> Optional[str]:
    row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
    return row[0] if row else default


@with_conn
def config_set(conn, key: str, value: str):
    conn.execute("INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value", (key, value))
    conn.commit()


@with_conn
def config_all(conn) -> Dict[str, str]:
    return {r["key"]: r["value"] for r in conn.execute("SELECT key, value FROM config").fetchall()}


# -----------------------------
# Alerts
# -----------------------------
@with_conn
def upsert_alert_rule(conn, rule: Dict[str, Any]):
    """Insert a rule or refresh its definition; last_triggered is left alone on update."""
    conn.execute(
        """INSERT INTO alert_rules(id,name,condition,severity,threshold,channels,cooldown,enabled,last_triggered)
           VALUES(:id,:name,:condition,:severity,:threshold,:channels,:cooldown,:enabled,:last_triggered)
           ON CONFLICT(id) DO UPDATE SET
             name=excluded.name,
             condition=excluded.condition,
             severity=excluded.severity,
             threshold=excluded.threshold,
             channels=excluded.channels,
             cooldown=excluded.cooldown,
             enabled=excluded.enabled
        """, rule)
    conn.commit()


@with_conn
def get_alert_rule(conn, rule_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM alert_rules WHERE id=?", (rule_id,)).fetchone()


@with_conn
def list_alert_rules(conn) -> List[sqlite3.Row]:
    return conn.execute("SELECT * FROM alert_rules ORDER BY id").fetchall()


@with_conn
def claim_alert_trigger(conn, rule_id: str, observed: Optional[str], now: str) -> bool:
    """Advance last_triggered only if nobody else moved it since we read it."""
    if observed is None:
        cur = conn.execute(
            "UPDATE alert_rules SET last_triggered=? WHERE id=? AND last_triggered IS NULL", (now, rule_id)
        )
    else:
        cur = conn.execute(
            "UPDATE alert_rules SET last_triggered=? WHERE id=? AND last_triggered=?", (now, rule_id, observed)
        )
    conn.commit()
    return cur.rowcount == 1


@with_conn
def insert_alert(conn, alert: Dict[str, Any]):
    conn.execute(
        "INSERT INTO alerts(id,rule_id,severity,message,data,created_at) VALUES(:id,:rule_id,:severity,:message,:data,:created_at)",
        alert,
    )
    conn.commit()


@with_conn
def list_alerts(conn, limit: int = 50) -> List[sqlite3.Row]:
    return conn.execute("SELECT * FROM alerts ORDER BY created_at DESC LIMIT ?", (limit,)).fetchall()


# -----------------------------
# Monitor registry
# -----------------------------
@with_conn
def register_worker(conn, wid: str, pid: int):
    conn.execute("INSERT INTO workers(id,pid,started_at) VALUES(?,?,?)", (wid, pid, iso(utcnow())))
    conn.commit()


@with_conn
def stop_worker_record(conn, wid: str):
    conn.execute("UPDATE workers SET stopped_at=? WHERE id=?", (iso(utcnow()), wid))
    conn.commit()


@with_conn
def list_workers(conn):
    return conn.execute("SELECT * FROM workers WHERE stopped_at IS NULL").fetchall()
