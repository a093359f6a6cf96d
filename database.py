"""
Database layer for the bootcamp misconception service.

Uses raw sqlite3 with WAL mode and parameterized queries by default, or a
psycopg2 connection (see pg_compat.py) when DATABASE is a PostgreSQL URL.
A schema_version table handles migrations.
"""

from __future__ import annotations

import fcntl
import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from flask import current_app, g

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent / "bootcamp.db"


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- Question bank (reference data, authored offline or generated)
CREATE TABLE IF NOT EXISTS questions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    question_id TEXT NOT NULL UNIQUE,
    topic_id TEXT NOT NULL,
    subtopic TEXT NOT NULL DEFAULT '',
    module_id TEXT NOT NULL DEFAULT '',
    difficulty TEXT NOT NULL DEFAULT 'intermediate',
    cognitive_level TEXT NOT NULL DEFAULT 'application',
    question_category TEXT NOT NULL DEFAULT 'arithmetic',
    question_text TEXT NOT NULL DEFAULT '',
    correct_answer TEXT NOT NULL DEFAULT '',
    marks INTEGER NOT NULL DEFAULT 1,
    time_seconds INTEGER NOT NULL DEFAULT 60,
    prerequisite_skills TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_questions_topic ON questions(topic_id);

-- Answer options with their diagnostic misconception tags
CREATE TABLE IF NOT EXISTS answer_options (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    question_id TEXT NOT NULL,
    option_letter TEXT NOT NULL,
    answer_value TEXT NOT NULL,
    is_correct INTEGER NOT NULL DEFAULT 0,
    misconception_code TEXT,
    detection_confidence REAL NOT NULL DEFAULT 0.8,
    pattern_rules TEXT NOT NULL DEFAULT '{}',
    diagnostic_feedback TEXT NOT NULL DEFAULT '',
    UNIQUE(question_id, option_letter)
);

-- Authoritative response history
CREATE TABLE IF NOT EXISTS student_responses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL,
    question_id TEXT NOT NULL,
    selected_answer TEXT NOT NULL,
    is_correct INTEGER NOT NULL DEFAULT 0,
    confidence_rating REAL,
    misconception_detected TEXT,
    time_taken INTEGER NOT NULL DEFAULT 0,
    session_id TEXT NOT NULL DEFAULT '',
    responded_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_responses_student_time ON student_responses(student_id, responded_at);

-- Pending diagnostic explanation requests
CREATE TABLE IF NOT EXISTS misconception_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL,
    question_id TEXT NOT NULL,
    student_answer TEXT NOT NULL DEFAULT '',
    correct_answer TEXT NOT NULL DEFAULT '',
    misconception_code TEXT,
    priority INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT '',
    claimed_at TEXT NOT NULL DEFAULT '',
    processed_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_queue_status_priority ON misconception_queue(status, priority, created_at);

-- Generated explanations, keyed by student/question/misconception
CREATE TABLE IF NOT EXISTS explanation_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cache_key TEXT NOT NULL UNIQUE,
    explanation TEXT NOT NULL,
    api_source TEXT NOT NULL DEFAULT '',
    usage_count INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT '',
    last_accessed TEXT NOT NULL DEFAULT ''
);

-- Best-effort cache of the latest pattern analysis per student/misconception
CREATE TABLE IF NOT EXISTS misconception_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern_key TEXT NOT NULL UNIQUE,
    student_id TEXT NOT NULL,
    misconception_code TEXT NOT NULL,
    pattern_data TEXT NOT NULL DEFAULT '{}',
    hit_count INTEGER NOT NULL DEFAULT 0,
    last_used TEXT NOT NULL DEFAULT ''
);
"""


# Versioned migrations applied after SCHEMA
MIGRATIONS: list[tuple[int, str]] = [
    # Migration 2: retry bookkeeping for failed queue items
    (2, """
        ALTER TABLE misconception_queue ADD COLUMN last_error TEXT NOT NULL DEFAULT '';
    """),
    (3, """
        ALTER TABLE misconception_queue ADD COLUMN next_attempt_at TEXT NOT NULL DEFAULT '';
    """),

    # Migration 4: eviction sweep and pattern lookups
    (4, """
        CREATE INDEX IF NOT EXISTS idx_explanation_cache_accessed ON explanation_cache(last_accessed);
        CREATE INDEX IF NOT EXISTS idx_patterns_student ON misconception_patterns(student_id);
        CREATE INDEX IF NOT EXISTS idx_options_question ON answer_options(question_id);
    """),
]


def _database_url() -> str:
    return current_app.config.get("DATABASE", str(DEFAULT_DB_PATH))


def get_db():
    """Return a DB connection from Flask g, creating if needed.

    Supports both SQLite (default) and PostgreSQL (when DATABASE starts
    with postgresql:// or postgres://).
    """
    if "db" not in g:
        from pg_compat import connect_pg, is_postgres_url

        db_url = _database_url()
        if is_postgres_url(db_url):
            g.db = connect_pg(db_url)
            return g.db

        g.db = sqlite3.connect(db_url)
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA journal_mode=WAL")
        g.db.execute("PRAGMA foreign_keys=ON")
    return g.db


def rollback_db() -> None:
    """Abandon the open transaction after a swallowed DB error.

    PostgreSQL refuses every later statement on an aborted transaction, so
    best-effort paths call this before carrying on with the same connection.
    """
    db = g.get("db")
    if db is None:
        return
    try:
        db.rollback()
    except Exception as e:
        logger.warning("Rollback failed: %s", e)


def close_db(e=None) -> None:
    """Teardown handler — close DB connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db() -> None:
    """Execute schema DDL to create all tables."""
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


def run_migrations() -> None:
    """Apply any unapplied versioned migrations.

    Uses file-based locking to prevent race conditions when multiple
    Gunicorn workers start simultaneously.
    """
    from pg_compat import is_postgres_url

    db_url = _database_url()
    lock_file = None

    # File-based locking only for SQLite (PostgreSQL has its own locking)
    if not is_postgres_url(db_url):
        lock_path = Path(db_url).with_suffix(".migration.lock")
        try:
            lock_file = open(lock_path, "w")
            fcntl.flock(lock_file, fcntl.LOCK_EX)
        except OSError:
            lock_file = None

    try:
        db = get_db()
        applied = {
            row["version"]
            for row in db.execute("SELECT version FROM schema_version").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version in applied:
                continue
            try:
                db.executescript(sql)
            except Exception as e:
                err_msg = str(e).lower()
                if "duplicate column" not in err_msg and "already exists" not in err_msg:
                    raise
                logger.debug("Migration %d already applied: %s", version, e)
            db.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now().isoformat()),
            )
            db.commit()
    finally:
        if lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def ensure_initialized(app) -> None:
    """Create tables and apply migrations once per process. Needs an app context."""
    if not getattr(app, "_db_initialized", False):
        init_db()
        run_migrations()
        app._db_initialized = True


def init_app(app) -> None:
    """Register teardown and auto-init on first request."""
    app.teardown_appcontext(close_db)

    @app.before_request
    def _ensure_db():
        ensure_initialized(app)
