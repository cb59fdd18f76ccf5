import json
import sqlite3
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

import structlog

from .config import DEFAULT_CONFIG, validate_config_value
from .models import (
    PENDING, RUNNING, RETRY, DONE, FAILED, JOB_STATUSES, JOB_TYPES,
    ORDER_JOB_TYPES, CLAIMABLE_STATUSES, TERMINAL_STATUSES, IMPORT_ORDERS,
    ImportJobPayload, Job,
)
from .utils import now_iso, iso_in_utc_from_seconds_from_now

logger = structlog.get_logger()

MAX_ERROR_LENGTH = 1000


def _truncate(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return str(message)[:MAX_ERROR_LENGTH]


@contextmanager
def immediate_transaction(conn: sqlite3.Connection):
    """Run the block holding the database write lock from its first statement.

    Concurrent callers queue on the busy timeout instead of interleaving
    their reads and writes.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    cfg = dict(DEFAULT_CONFIG)
    cfg.update({r["key"]: r["value"] for r in cur.fetchall()})
    return cfg


def set_config(conn, key: str, value: str):
    value = validate_config_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )


def config_number(cfg: Dict[str, str], key: str) -> float:
    try:
        return float(cfg.get(key, DEFAULT_CONFIG[key]))
    except ValueError:
        return float(DEFAULT_CONFIG[key])


def config_int(cfg: Dict[str, str], key: str) -> int:
    return max(1, int(config_number(cfg, key)))


# ---------- Jobs: enqueue / claim / complete / retry ----------
def enqueue_job(
    conn,
    job_type: str,
    order_id: int,
    *,
    max_attempts: Optional[int] = None,
) -> int:
    """Create the job for (job_type, order_id) unless one already exists.

    An existing PENDING/RUNNING/RETRY job is left alone, a DONE/FAILED one
    is reset to PENDING. Returns the id of the job that now stands for the
    pair.
    """
    with immediate_transaction(conn):
        return enqueue_in_transaction(conn, job_type, order_id, max_attempts=max_attempts)


def enqueue_in_transaction(
    conn,
    job_type: str,
    order_id: int,
    *,
    max_attempts: Optional[int] = None,
) -> int:
    """enqueue_job for a caller already holding the write transaction.

    Nothing is committed here; the caller's commit or rollback decides.
    """
    if job_type not in ORDER_JOB_TYPES:
        raise ValueError(f"Job type must be one of: {', '.join(ORDER_JOB_TYPES)}")
    try:
        order_id = int(order_id)
    except (TypeError, ValueError):
        raise ValueError("order_id must be an integer.")
    if order_id <= 0:
        raise ValueError("order_id must be > 0")

    if max_attempts is None:
        max_attempts = config_int(get_config(conn), "max_attempts_default")
    elif int(max_attempts) <= 0:
        raise ValueError("max_attempts must be > 0")

    log = logger.bind(job_type=job_type, order_id=order_id)
    ts = now_iso()

    existing = conn.execute(
        "SELECT id, status FROM jobs WHERE type=? AND target_id=? ORDER BY id ASC LIMIT 1",
        (job_type, order_id),
    ).fetchone()

    if existing:
        if existing["status"] in TERMINAL_STATUSES:
            conn.execute(
                """UPDATE jobs
                   SET status=?, attempts=0, last_error=NULL, next_run_at=NULL, updated_at=?
                   WHERE id=?""",
                (PENDING, ts, existing["id"]),
            )
            log.info("job_reenabled", job_id=existing["id"], previous_status=existing["status"])
        return existing["id"]

    cur = conn.execute(
        """INSERT INTO jobs
           (type, target_id, payload, status, attempts, max_attempts, next_run_at, created_at, updated_at)
           VALUES (?, ?, ?, ?, 0, ?, NULL, ?, ?)""",
        (job_type, order_id, json.dumps({"order_id": order_id}), PENDING, int(max_attempts), ts, ts),
    )
    log.info("job_created", job_id=cur.lastrowid)
    return cur.lastrowid


def claim_due(conn, limit: int = 20) -> List[Job]:
    """Atomically claim up to `limit` due jobs, oldest first.

    Selected rows move to RUNNING and get attempts+1 inside the same write
    transaction, so no other claimant can see them as due.
    """
    if limit <= 0:
        return []

    now = now_iso()
    with immediate_transaction(conn):
        rows = conn.execute(
            """SELECT id FROM jobs
               WHERE status IN (?, ?) AND (next_run_at IS NULL OR next_run_at <= ?)
               ORDER BY id ASC
               LIMIT ?""",
            (*CLAIMABLE_STATUSES, now, int(limit)),
        ).fetchall()
        if not rows:
            return []

        ids = [r["id"] for r in rows]
        marks = ",".join("?" for _ in ids)
        conn.execute(
            f"""UPDATE jobs
                SET status=?, attempts=attempts + 1, updated_at=?
                WHERE id IN ({marks})""",
            (RUNNING, now, *ids),
        )
        claimed = conn.execute(
            f"SELECT * FROM jobs WHERE id IN ({marks}) ORDER BY id ASC", ids
        ).fetchall()

    return [Job.from_row(r) for r in claimed]


def mark_done(conn, job_id: int) -> bool:
    with conn:
        res = conn.execute(
            "UPDATE jobs SET status=?, last_error=NULL, updated_at=? WHERE id=?",
            (DONE, now_iso(), job_id),
        )
    return res.rowcount == 1


def mark_failed_permanent(conn, job_id: int, message: str) -> bool:
    with conn:
        res = conn.execute(
            "UPDATE jobs SET status=?, last_error=?, updated_at=? WHERE id=?",
            (FAILED, _truncate(message), now_iso(), job_id),
        )
    return res.rowcount == 1


def schedule_retry(conn, job_id: int, message: str, delay_seconds: float) -> bool:
    with conn:
        res = conn.execute(
            "UPDATE jobs SET status=?, last_error=?, next_run_at=?, updated_at=? WHERE id=?",
            (RETRY, _truncate(message), iso_in_utc_from_seconds_from_now(delay_seconds), now_iso(), job_id),
        )
    return res.rowcount == 1


def reenable_job(conn, job_id: int) -> bool:
    """Operator action: put a DONE/FAILED job back in the queue."""
    with conn:
        res = conn.execute(
            f"""UPDATE jobs
                SET status=?, attempts=0, last_error=NULL, next_run_at=NULL, updated_at=?
                WHERE id=? AND status IN ({",".join("?" for _ in TERMINAL_STATUSES)})""",
            (PENDING, now_iso(), job_id, *TERMINAL_STATUSES),
        )
    if res.rowcount == 1:
        logger.info("job_reenabled", job_id=job_id, source="operator")
    return res.rowcount == 1


# ---------- Import bookkeeping ----------
def create_import_job(conn, payload: ImportJobPayload) -> int:
    # Created RUNNING so the worker never claims it
    ts = now_iso()
    with conn:
        cur = conn.execute(
            """INSERT INTO jobs
               (type, target_id, payload, status, attempts, max_attempts, next_run_at, created_at, updated_at)
               VALUES (?, NULL, ?, ?, 1, 1, NULL, ?, ?)""",
            (IMPORT_ORDERS, payload.model_dump_json(), RUNNING, ts, ts),
        )
    return cur.lastrowid


def finish_import_job(conn, job_id: int, failed_orders: int, error: Optional[str] = None) -> str:
    """Close an import job. Any failed order, or an error aborting the run, makes it FAILED."""
    status = FAILED if failed_orders > 0 or error else DONE
    if error is None and failed_orders > 0:
        error = f"Failed orders: {failed_orders}"
    with conn:
        conn.execute(
            "UPDATE jobs SET status=?, last_error=?, updated_at=? WHERE id=?",
            (status, _truncate(error), now_iso(), job_id),
        )
    return status


# ---------- Queries ----------
def get_job(conn, job_id: int) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(
    conn,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    order_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Job]:
    if status and status not in JOB_STATUSES:
        raise ValueError(f"status must be one of: {', '.join(JOB_STATUSES)}")
    if job_type and job_type not in JOB_TYPES:
        raise ValueError(f"type must be one of: {', '.join(JOB_TYPES)}")

    clauses, params = [], []
    if status:
        clauses.append("status=?")
        params.append(status)
    if job_type:
        clauses.append("type=?")
        params.append(job_type)
    if order_id is not None:
        clauses.append("target_id=?")
        params.append(int(order_id))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    limit = min(max(int(limit), 1), 200)
    rows = conn.execute(
        f"SELECT * FROM jobs {where} ORDER BY id DESC LIMIT ? OFFSET ?",
        (*params, limit, max(int(offset), 0)),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in JOB_STATUSES}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status"):
        out[r["status"]] = r["c"]
    return out


def failed_jobs(conn) -> Iterable[Job]:
    rows = conn.execute(
        "SELECT * FROM jobs WHERE status=? ORDER BY updated_at DESC", (FAILED,)
    ).fetchall()
    return [Job.from_row(r) for r in rows]
