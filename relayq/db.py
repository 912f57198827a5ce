import sqlite3
from contextlib import contextmanager
from pathlib import Path

from .config import DEFAULT_CONFIG

JOB_COLUMNS = """
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    scheduled_for TEXT NOT NULL,
    executed_at TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    receipt TEXT,
"""

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS deliveries (
    {JOB_COLUMNS}
    source TEXT NOT NULL,
    title TEXT,
    message TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'info',
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_deliveries_status_scheduled ON deliveries(status, scheduled_for);

CREATE TABLE IF NOT EXISTS triggers (
    {JOB_COLUMNS}
    automation_id TEXT NOT NULL,
    automation_name TEXT,
    requested_by TEXT NOT NULL,
    notify_on_complete INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_triggers_status_scheduled ON triggers(status, scheduled_for);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path), timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def open_db(path):
    """Yield a connection and always close it; `with conn:` inside commits."""
    conn = connect_db(path)
    try:
        yield conn
    finally:
        conn.close()


def init_db(path):
    parent = Path(path).parent
    parent.mkdir(parents=True, exist_ok=True)
    with open_db(path) as conn:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript(SCHEMA)
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
