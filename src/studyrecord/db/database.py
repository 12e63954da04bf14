"""SQLite database connection and schema management.

Provides connection management and schema initialization for the academic
record. Every engine operation runs inside one ``get_db()`` block, which is
one transaction: committed on success, rolled back on any exception.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import structlog

logger = structlog.get_logger(__name__)

# Default database location
DEFAULT_DB_PATH = Path("db/studyrecord.db")

# Current database file (module-level for simplicity in CLI context)
_db_path: Path | None = None


def init_db(db_path: Path | None = None, seed: bool = True) -> None:
    """Initialize database with schema.

    Creates the database file and all required tables if they don't exist.

    Args:
        db_path: Path to database file. Defaults to db/studyrecord.db
        seed: If True, install the built-in grading schemes and conversions
    """
    global _db_path
    _db_path = db_path or DEFAULT_DB_PATH

    # Ensure directory exists
    _db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = _connect(_db_path)
    try:
        _create_schema(conn)
    finally:
        conn.close()

    if seed:
        from studyrecord.core.grading_schemes import install_builtin_schemes

        install_builtin_schemes()

    logger.info("database.initialized", path=str(_db_path))


def get_db_path() -> Path:
    """Return the database file currently in use."""
    return _db_path or DEFAULT_DB_PATH


def _connect(db_path: Path) -> sqlite3.Connection:
    # Transactions are opened explicitly by get_db()
    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db(immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
    """Get database connection as a transactional context manager.

    Args:
        immediate: Take the write lock up front (BEGIN IMMEDIATE). Used by
            every mutating operation so validation reads and writes happen
            in the same transaction.

    Yields:
        SQLite connection with row factory set to sqlite3.Row

    Example:
        with get_db(immediate=True) as conn:
            conn.execute("UPDATE courses SET state = ? WHERE id = ?", ...)
    """
    db_path = get_db_path()

    # Ensure directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = _connect(db_path)
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")

    try:
        yield conn
        if conn.in_transaction:
            conn.execute("COMMIT")
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


@contextmanager
def use_db(
    conn: sqlite3.Connection | None = None,
    immediate: bool = True,
) -> Generator[sqlite3.Connection, None, None]:
    """Join the caller's transaction, or open a new one.

    Repository functions accept an optional connection so several of them
    can be combined into one atomic operation.
    """
    if conn is not None:
        yield conn
        return

    with get_db(immediate=immediate) as new_conn:
        yield new_conn


def _create_schema(conn: sqlite3.Connection) -> None:
    """Create database schema.

    Uses IF NOT EXISTS for idempotency.
    """
    conn.executescript(
        """
        -- Grading schemes: scale is a JSON list ordered best -> worst
        CREATE TABLE IF NOT EXISTS grading_schemes (
            name TEXT PRIMARY KEY,
            scale TEXT NOT NULL,
            higher_is_better INTEGER NOT NULL,
            pass_threshold REAL NOT NULL,
            best REAL NOT NULL,
            worst REAL NOT NULL,
            is_discrete INTEGER NOT NULL DEFAULT 0,
            is_builtin INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS grade_conversions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            from_scheme TEXT NOT NULL,
            to_scheme TEXT NOT NULL,
            from_value REAL NOT NULL,
            to_value REAL NOT NULL,
            FOREIGN KEY (from_scheme) REFERENCES grading_schemes(name) ON DELETE CASCADE,
            FOREIGN KEY (to_scheme) REFERENCES grading_schemes(name) ON DELETE CASCADE,
            UNIQUE(from_scheme, to_scheme, from_value)
        );

        CREATE TABLE IF NOT EXISTS degrees (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            degree_type TEXT NOT NULL CHECK(degree_type IN ('bachelor', 'master', 'phd')),
            name TEXT NOT NULL,
            institution TEXT NOT NULL,
            total_ects_required INTEGER NOT NULL,
            grading_scheme TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (grading_scheme) REFERENCES grading_schemes(name),
            UNIQUE(degree_type, name, institution)
        );

        CREATE TABLE IF NOT EXISTS degree_areas (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            degree_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            required_ects INTEGER NOT NULL,
            counts_towards_gpa INTEGER NOT NULL DEFAULT 1,
            display_order INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (degree_id) REFERENCES degrees(id) ON DELETE CASCADE,
            UNIQUE(degree_id, name)
        );

        CREATE TABLE IF NOT EXISTS courses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            short_name TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            ects INTEGER NOT NULL CHECK(ects > 0),
            institution TEXT NOT NULL,
            grading_scheme TEXT NOT NULL,
            state TEXT NOT NULL DEFAULT 'enrolled'
                CHECK(state IN ('enrolled', 'completed', 'dropped', 'archived')),
            is_external INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (grading_scheme) REFERENCES grading_schemes(name)
        );

        -- Course-level policy overrides (NULL = inherit, max_attempts 0 = unlimited)
        CREATE TABLE IF NOT EXISTS course_policies (
            course_id INTEGER PRIMARY KEY,
            max_attempts INTEGER,
            strategy TEXT CHECK(strategy IN ('first_passing', 'best')),
            require_grade_for_completion INTEGER,
            warn_on_final_attempt INTEGER,
            allow_retake_after_pass INTEGER,
            FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS course_possible_categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            course_id INTEGER NOT NULL,
            degree_id INTEGER NOT NULL,
            area_id INTEGER NOT NULL,
            is_recommended INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
            FOREIGN KEY (degree_id) REFERENCES degrees(id) ON DELETE CASCADE,
            FOREIGN KEY (area_id) REFERENCES degree_areas(id) ON DELETE CASCADE,
            UNIQUE(course_id, degree_id, area_id)
        );

        CREATE TABLE IF NOT EXISTS course_degree_mappings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            course_id INTEGER NOT NULL,
            degree_id INTEGER NOT NULL,
            area_id INTEGER NOT NULL,
            ects_override INTEGER,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
            FOREIGN KEY (degree_id) REFERENCES degrees(id) ON DELETE CASCADE,
            FOREIGN KEY (area_id) REFERENCES degree_areas(id) ON DELETE CASCADE,
            UNIQUE(course_id, degree_id, area_id)
        );

        CREATE TABLE IF NOT EXISTS grade_components (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            course_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            weight REAL NOT NULL,
            is_bonus INTEGER NOT NULL DEFAULT 0,
            grade REAL,
            points_earned REAL,
            points_max REAL,
            is_completed INTEGER NOT NULL DEFAULT 0,
            completed_at TEXT,
            FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
            UNIQUE(course_id, name)
        );

        CREATE TABLE IF NOT EXISTS bonus_configs (
            course_id INTEGER PRIMARY KEY,
            max_points REAL NOT NULL,
            max_bonus_percent REAL NOT NULL,
            function TEXT NOT NULL CHECK(function IN ('linear', 'threshold')),
            steps TEXT NOT NULL DEFAULT '[]',
            timing TEXT NOT NULL CHECK(timing IN ('apply_before_pass', 'apply_after_pass')),
            grade_cap REAL NOT NULL,
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS exam_attempts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            course_id INTEGER NOT NULL,
            attempt_number INTEGER NOT NULL CHECK(attempt_number >= 1),
            exam_date TEXT NOT NULL,
            grade REAL NOT NULL,
            passed INTEGER NOT NULL,
            original_grade REAL,
            original_scheme TEXT,
            is_active INTEGER NOT NULL DEFAULT 0,
            forced INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
            UNIQUE(course_id, attempt_number)
        );

        -- Activation mode per course: policy-driven or manual(reason)
        CREATE TABLE IF NOT EXISTS attempt_state (
            course_id INTEGER PRIMARY KEY,
            mode TEXT NOT NULL DEFAULT 'policy' CHECK(mode IN ('policy', 'manual')),
            reason TEXT,
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE
        );

        -- Final grade snapshots linked to the attempt they were recorded as
        CREATE TABLE IF NOT EXISTS final_grades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            course_id INTEGER NOT NULL,
            value REAL NOT NULL,
            base_value REAL NOT NULL,
            bonus_applied INTEGER NOT NULL DEFAULT 0,
            scheme TEXT NOT NULL,
            passed INTEGER NOT NULL,
            attempt_id INTEGER,
            computed_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
            FOREIGN KEY (attempt_id) REFERENCES exam_attempts(id) ON DELETE SET NULL
        );

        -- Indexes
        CREATE UNIQUE INDEX IF NOT EXISTS idx_attempts_one_active
            ON exam_attempts(course_id) WHERE is_active = 1;
        CREATE INDEX IF NOT EXISTS idx_attempts_course ON exam_attempts(course_id);
        CREATE INDEX IF NOT EXISTS idx_components_course ON grade_components(course_id);
        CREATE INDEX IF NOT EXISTS idx_mappings_course ON course_degree_mappings(course_id);
        CREATE INDEX IF NOT EXISTS idx_mappings_area ON course_degree_mappings(area_id);
        CREATE INDEX IF NOT EXISTS idx_possible_course ON course_possible_categories(course_id);
        CREATE INDEX IF NOT EXISTS idx_courses_state ON courses(state);
        """
    )
