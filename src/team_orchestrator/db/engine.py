"""SQLite database connection management and schema initialization."""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    requirement TEXT NOT NULL,
    workflow_id TEXT,
    base_branch TEXT DEFAULT 'main',
    worktree_root TEXT,
    status TEXT DEFAULT 'spawning' CHECK (status IN
        ('spawning', 'ready', 'working', 'merging', 'completed', 'error', 'stopped')),
    progress INTEGER DEFAULT 0,
    agent_count INTEGER DEFAULT 0,
    session_id TEXT,
    error TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS team_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    team_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_team_events_team ON team_events(team_id);

CREATE TABLE IF NOT EXISTS workflow_sessions (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    requirement TEXT NOT NULL,
    status TEXT DEFAULT 'starting' CHECK (status IN
        ('starting', 'running', 'completed', 'failed', 'stopped')),
    current_phase TEXT,
    progress REAL DEFAULT 0,
    summary TEXT,
    error TEXT,
    started_at TEXT DEFAULT (datetime('now')),
    ended_at TEXT
);

CREATE TABLE IF NOT EXISTS workflow_tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES workflow_sessions(id) ON DELETE CASCADE,
    phase TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    role TEXT NOT NULL,
    task TEXT NOT NULL,
    success INTEGER NOT NULL,
    output TEXT,
    error TEXT,
    execution_time REAL,
    created_at TEXT DEFAULT (datetime('now'))
);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE teams ADD COLUMN session_id TEXT",
        "ALTER TABLE teams ADD COLUMN error TEXT",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists
    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


class SharedConnection:
    """A connection shared by worker threads, serialized by a lock."""

    def __init__(self, db_path: Path):
        self.conn = init_db(db_path)
        self.lock = threading.Lock()

    @contextmanager
    def cursor(self):
        with self.lock:
            yield self.conn

    def close(self):
        with self.lock:
            self.conn.close()
