import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from .config import ALLOWED_CONFIG_KEYS, DEFAULT_CONFIG
from .db import open_db
from .errors import StoreError, ValidationError
from .models import (
    CANCELLED, DONE, FAILED, PENDING, PROCESSING, SEVERITIES, STATUSES,
    Job, JobInput, JobKind, QueueStats,
)
from .utils import now_iso, parse_iso, resolve_time, to_iso, utcnow

logger = logging.getLogger("relayq.store")

MAX_ERROR_LENGTH = 1000


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValidationError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        if int(value) < 0:
            raise ValueError(value)
    except ValueError:
        raise ValidationError(f"{key} must be a non-negative integer, got {value!r}")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(int(value))),
        )


def load_tunables(conn) -> Dict[str, int]:
    """Config table merged over the defaults, as integers."""
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(get_config(conn))
    return {k: int(v) for k, v in cfg.items() if k in ALLOWED_CONFIG_KEYS}


# ---------- Jobs ----------
class JobStore:
    """
    Durable job table for one job flavor.

    Every method opens its own connection and commits a single statement,
    so a store can be shared between the queue worker, the scheduler and
    callers on other threads.
    """

    def __init__(self, db_path, kind: JobKind, default_max_retries: int = 3):
        self.db_path = db_path
        self.kind = kind
        self.default_max_retries = default_max_retries

    def __repr__(self):
        return f"JobStore({self.kind.name!r}, {str(self.db_path)!r})"

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            with open_db(self.db_path) as conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(f"DB error on {self.kind.table}: {e}") from e

    # ---------- create / read ----------
    def create(self, job_input: JobInput) -> int:
        values = self._payload_values(job_input.payload)

        max_retries = job_input.max_retries
        if max_retries is None:
            max_retries = self.default_max_retries
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ValidationError("max_retries must be a non-negative integer.")

        scheduled_for = resolve_time(job_input.scheduled_for)
        columns = ("created_at", "scheduled_for", "status", "retry_count", "max_retries") + self.kind.columns
        params = (now_iso(), to_iso(scheduled_for), PENDING, 0, max_retries) + values

        with self._connect() as conn:
            with conn:
                cur = conn.execute(
                    f"INSERT INTO {self.kind.table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    params,
                )
        return cur.lastrowid

    def get(self, job_id: int) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.kind.table} WHERE id=?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    # ---------- state transitions ----------
    def set_status(self, job_id: int, status: str, error: Optional[str] = None,
                   expected: Optional[str] = None) -> bool:
        """
        Move a job to `status` in one UPDATE.

        `done` stamps executed_at; every other status clears it and overwrites
        last_error. With `expected`, the row only changes if it is still in
        that status. Returns whether a row changed.
        """
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status!r}")

        if status == DONE:
            sql = f"UPDATE {self.kind.table} SET status=?, executed_at=? WHERE id=?"
            params = [status, now_iso(), job_id]
        else:
            sql = f"UPDATE {self.kind.table} SET status=?, executed_at=NULL, last_error=? WHERE id=?"
            params = [status, error[:MAX_ERROR_LENGTH] if error else None, job_id]
        if expected is not None:
            sql += " AND status=?"
            params.append(expected)

        with self._connect() as conn:
            with conn:
                cur = conn.execute(sql, params)
        return cur.rowcount == 1

    def increment_retry(self, job_id: int, expected: Optional[str] = None) -> bool:
        sql = f"UPDATE {self.kind.table} SET retry_count = retry_count + 1 WHERE id=?"
        params = [job_id]
        if expected is not None:
            sql += " AND status=?"
            params.append(expected)
        with self._connect() as conn:
            with conn:
                cur = conn.execute(sql, params)
        return cur.rowcount == 1

    def schedule_retry(self, job_id: int, error: str, run_at: datetime,
                       expected: Optional[str] = PROCESSING) -> bool:
        """Put a failed attempt back to pending, not eligible before `run_at`."""
        sql = f"""UPDATE {self.kind.table}
                  SET status=?, executed_at=NULL, last_error=?, scheduled_for=?
                  WHERE id=?"""
        params = [PENDING, error[:MAX_ERROR_LENGTH] if error else None, to_iso(run_at), job_id]
        if expected is not None:
            sql += " AND status=?"
            params.append(expected)
        with self._connect() as conn:
            with conn:
                cur = conn.execute(sql, params)
        return cur.rowcount == 1

    def record_failure(self, job_id: int, error: str, run_at: datetime) -> Optional[Job]:
        """
        Count a failed attempt and pick the next status in one guarded UPDATE.

        Once retry_count reaches max_retries the row goes to `failed`;
        otherwise it goes back to `pending` with scheduled_for moved to
        `run_at`. Returns the updated job, or None when the row had already
        left `processing`.
        """
        sql = f"""UPDATE {self.kind.table}
                  SET retry_count = retry_count + 1,
                      status = CASE WHEN retry_count + 1 >= max_retries THEN ? ELSE ? END,
                      scheduled_for = CASE WHEN retry_count + 1 >= max_retries
                                           THEN scheduled_for ELSE ? END,
                      executed_at = NULL,
                      last_error = ?
                  WHERE id=? AND status=?"""
        params = (
            FAILED, PENDING, to_iso(run_at),
            error[:MAX_ERROR_LENGTH] if error else None, job_id, PROCESSING,
        )
        with self._connect() as conn:
            with conn:
                cur = conn.execute(sql, params)
                if cur.rowcount != 1:
                    return None
                row = conn.execute(
                    f"SELECT * FROM {self.kind.table} WHERE id=?", (job_id,)
                ).fetchone()
        return self._row_to_job(row)

    def set_receipt(self, job_id: int, receipt: str):
        with self._connect() as conn:
            with conn:
                conn.execute(
                    f"UPDATE {self.kind.table} SET receipt=? WHERE id=?", (receipt, job_id)
                )

    def cancel(self, job_id: int) -> bool:
        with self._connect() as conn:
            with conn:
                cur = conn.execute(
                    f"UPDATE {self.kind.table} SET status=? WHERE id=? AND status IN (?, ?)",
                    (CANCELLED, job_id, PENDING, PROCESSING),
                )
        return cur.rowcount == 1

    def retry_now(self, job_id: int) -> bool:
        with self._connect() as conn:
            with conn:
                cur = conn.execute(
                    f"""UPDATE {self.kind.table}
                        SET status=?, retry_count=0, last_error=NULL
                        WHERE id=? AND status=?""",
                    (PENDING, job_id, FAILED),
                )
        return cur.rowcount == 1

    # ---------- queries ----------
    def query_due(self, cutoff: Optional[datetime] = None) -> List[Job]:
        cutoff = cutoff or utcnow()
        return self._select(
            "WHERE status=? AND scheduled_for <= ? ORDER BY scheduled_for ASC, id ASC",
            (PENDING, to_iso(cutoff)),
        )

    def query_by_status(self, status: str, limit: Optional[int] = 50) -> List[Job]:
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status!r}")
        return self.history(limit=limit, status=status)

    def list_scheduled(self, limit: Optional[int] = 50) -> List[Job]:
        clause = "WHERE status=? AND scheduled_for > ? ORDER BY scheduled_for ASC, id ASC"
        params = [PENDING, now_iso()]
        if limit is not None:
            clause += " LIMIT ?"
            params.append(limit)
        return self._select(clause, params)

    def history(self, limit: Optional[int] = 50, status: Optional[str] = None) -> List[Job]:
        clause, params = "", []
        if status:
            clause = "WHERE status=?"
            params.append(status)
        clause += " ORDER BY id DESC"
        if limit is not None:
            clause += " LIMIT ?"
            params.append(limit)
        return self._select(clause, params)

    def stats(self) -> QueueStats:
        now = utcnow()
        with self._connect() as conn:
            row = conn.execute(
                f"""SELECT
                      SUM(CASE WHEN status=? AND scheduled_for <= ? THEN 1 ELSE 0 END) AS pending,
                      SUM(CASE WHEN status=? AND scheduled_for > ? THEN 1 ELSE 0 END) AS scheduled_future,
                      SUM(CASE WHEN status=? THEN 1 ELSE 0 END) AS processing,
                      SUM(CASE WHEN status=? THEN 1 ELSE 0 END) AS failed,
                      SUM(CASE WHEN status=? AND executed_at > ? THEN 1 ELSE 0 END) AS done_recent
                    FROM {self.kind.table}""",
                (PENDING, to_iso(now), PENDING, to_iso(now), PROCESSING, FAILED,
                 DONE, to_iso(now - timedelta(hours=24))),
            ).fetchone()
        return QueueStats(
            pending=row["pending"] or 0,
            processing=row["processing"] or 0,
            scheduled_future=row["scheduled_future"] or 0,
            failed=row["failed"] or 0,
            done_recent=row["done_recent"] or 0,
        )

    # ---------- maintenance ----------
    def cleanup_done(self, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._connect() as conn:
            with conn:
                cur = conn.execute(
                    f"DELETE FROM {self.kind.table} WHERE status=? AND executed_at < ?",
                    (DONE, to_iso(cutoff)),
                )
        if cur.rowcount:
            logger.info("Removed %d %s job(s) done before %s", cur.rowcount, self.kind.name, to_iso(cutoff))
        return cur.rowcount

    # ---------- helpers ----------
    def _select(self, clause: str, params) -> List[Job]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM {self.kind.table} {clause}", params).fetchall()
        return [self._row_to_job(r) for r in rows]

    def _payload_values(self, payload) -> tuple:
        if not isinstance(payload, self.kind.payload_type):
            raise ValidationError(
                f"{self.kind.name} jobs need a {self.kind.payload_type.__name__}, "
                f"got {type(payload).__name__}"
            )
        for name in self.kind.required:
            value = getattr(payload, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"Missing required field: {name}")

        severity = getattr(payload, "severity", None)
        if severity is not None and severity not in SEVERITIES:
            raise ValidationError(f"severity must be one of {', '.join(SEVERITIES)}")

        values = []
        for name in self.kind.columns:
            value = getattr(payload, name)
            if name == "metadata" and value is not None:
                if not isinstance(value, dict):
                    raise ValidationError("metadata must be a mapping")
                value = json.dumps(value)
            elif name == "notify_on_complete":
                value = int(bool(value))
            values.append(value)
        return tuple(values)

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        fields = {}
        for name in self.kind.columns:
            value = row[name]
            if name == "metadata":
                value = json.loads(value) if value else None
            elif name == "notify_on_complete":
                value = bool(value)
            fields[name] = value
        return Job(
            id=row["id"],
            kind=self.kind.name,
            payload=self.kind.payload_type(**fields),
            status=row["status"],
            created_at=parse_iso(row["created_at"]),
            scheduled_for=parse_iso(row["scheduled_for"]),
            executed_at=parse_iso(row["executed_at"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            last_error=row["last_error"],
            receipt=row["receipt"],
        )
