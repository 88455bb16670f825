from __future__ import annotations

import os
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

import structlog

from billing import Subscription, parse_date

DB_PATH = Path(os.environ.get("SUBTRACKER_DB_PATH") or Path(__file__).with_name("subscriptions.db"))

logger = structlog.get_logger(__name__)

_schema_lock = threading.Lock()
_initialized_paths: set[Path] = set()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def init_db(path: Path | None = None) -> None:
    target = path or DB_PATH
    with sqlite3.connect(target) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                monthly_reports INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                token_hash TEXT NOT NULL UNIQUE,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                category TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                amount TEXT NOT NULL,
                billing_cycle TEXT NOT NULL,
                start_date TEXT NOT NULL,
                next_payment TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
            """
        )
        ensure_user_preferences_column(conn)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_token_hash ON sessions(token_hash)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_user_id ON subscriptions(user_id)")
    logger.debug("database_schema_ready", path=str(target))


def ensure_user_preferences_column(conn: sqlite3.Connection) -> None:
    columns = conn.execute("PRAGMA table_info(users)").fetchall()
    column_names = {column[1] for column in columns}
    if "monthly_reports" not in column_names:
        conn.execute("ALTER TABLE users ADD COLUMN monthly_reports INTEGER NOT NULL DEFAULT 1")


def ensure_schema(path: Path) -> None:
    if path in _initialized_paths:
        return
    with _schema_lock:
        if path not in _initialized_paths:
            init_db(path)
            _initialized_paths.add(path)


def connect() -> sqlite3.Connection:
    # DB_PATH is looked up at call time so it can be repointed (tests, CLI).
    path = Path(DB_PATH)
    ensure_schema(path)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def subscription_from_row(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        name=row["name"],
        amount=row["amount"],
        billing_cycle=row["billing_cycle"],
        category=row["category"],
        description=row["description"] or "",
        start_date=parse_date(row["start_date"]),
        next_payment=parse_date(row["next_payment"]),
    )


def fetch_user_subscriptions(conn: sqlite3.Connection, user_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM subscriptions WHERE user_id = ? ORDER BY created_at DESC, id DESC",
        (user_id,),
    ).fetchall()


def fetch_report_recipients(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT id, name, email FROM users WHERE monthly_reports = 1 ORDER BY id ASC"
    ).fetchall()
