"""Repository functions for the courses table.

Provides CRUD operations for courses and their lifecycle state. Every
function accepts an optional connection so it can join a caller's
transaction.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import Enum

import structlog

from studyrecord.core.errors import NotFoundError, UnknownScheme, ValidationError
from studyrecord.db.database import use_db
from studyrecord.utils.validators import normalize_scheme_name

logger = structlog.get_logger(__name__)


class CourseState(str, Enum):
    """Course lifecycle states."""

    ENROLLED = "enrolled"
    COMPLETED = "completed"
    DROPPED = "dropped"
    ARCHIVED = "archived"

    @property
    def counts_for_progress(self) -> bool:
        return self not in (CourseState.DROPPED, CourseState.ARCHIVED)


@dataclass
class CourseRecord:
    """Course record from database."""

    id: int
    short_name: str
    name: str
    ects: int
    institution: str
    grading_scheme: str
    state: CourseState
    is_external: bool
    created_at: str
    updated_at: str


def create_course(
    short_name: str,
    name: str,
    ects: int,
    institution: str,
    grading_scheme: str = "german",
    is_external: bool = False,
    conn: sqlite3.Connection | None = None,
) -> CourseRecord:
    """Insert a new course.

    Args:
        short_name: Unique short name used on the command line
        name: Full course name
        ects: ECTS credits (> 0)
        institution: Institution the course is taken at
        grading_scheme: Scheme its grades are recorded in
        is_external: True for courses taken at another institution

    Returns:
        The created CourseRecord

    Raises:
        ValidationError: If ECTS is not positive or the short name is taken
        UnknownScheme: If the grading scheme is not registered
    """
    if not short_name.strip() or not name.strip():
        raise ValidationError("Course short name and name must not be empty")
    if int(ects) <= 0:
        raise ValidationError("ECTS must be > 0")

    scheme = normalize_scheme_name(grading_scheme)

    with use_db(conn) as db:
        if db.execute("SELECT 1 FROM grading_schemes WHERE name = ?", (scheme,)).fetchone() is None:
            raise UnknownScheme(grading_scheme)

        taken = db.execute(
            "SELECT 1 FROM courses WHERE short_name = ?", (short_name,)
        ).fetchone()
        if taken:
            raise ValidationError(f"Course '{short_name}' already exists")

        cursor = db.execute(
            """
            INSERT INTO courses (short_name, name, ects, institution, grading_scheme, is_external)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (short_name, name, int(ects), institution, scheme, int(is_external)),
        )
        course = _get(db, cursor.lastrowid)

    logger.debug("courses.inserted", course_id=course.id, short_name=short_name)
    return course


def _get(conn: sqlite3.Connection, course_id: int) -> CourseRecord | None:
    row = conn.execute("SELECT * FROM courses WHERE id = ?", (course_id,)).fetchone()
    if row is None:
        return None
    return _row_to_record(row)


def get_course(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> CourseRecord | None:
    """Get course by ID.

    Returns:
        CourseRecord if found, None otherwise
    """
    with use_db(conn, immediate=False) as db:
        return _get(db, course_id)


def require_course(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> CourseRecord:
    """Get course by ID or raise NotFoundError."""
    course = get_course(course_id, conn)
    if course is None:
        raise NotFoundError(f"Course {course_id} not found")
    return course


def get_course_by_short_name(
    short_name: str,
    conn: sqlite3.Connection | None = None,
) -> CourseRecord | None:
    """Get course by its unique short name."""
    with use_db(conn, immediate=False) as db:
        row = db.execute(
            "SELECT * FROM courses WHERE short_name = ?", (short_name,)
        ).fetchone()

    if row is None:
        return None

    return _row_to_record(row)


def list_courses(
    include_inactive: bool = True,
    conn: sqlite3.Connection | None = None,
) -> list[CourseRecord]:
    """Get all courses.

    Args:
        include_inactive: If False, dropped and archived courses are skipped

    Returns:
        List of CourseRecord ordered by short name
    """
    query = "SELECT * FROM courses"
    if not include_inactive:
        query += " WHERE state NOT IN ('dropped', 'archived')"
    query += " ORDER BY short_name"

    with use_db(conn, immediate=False) as db:
        rows = db.execute(query).fetchall()

    return [_row_to_record(row) for row in rows]


def set_course_state(
    course_id: int,
    state: CourseState | str,
    conn: sqlite3.Connection | None = None,
) -> CourseRecord:
    """Update a course's lifecycle state.

    Raises:
        ValidationError: If the state is unknown
        NotFoundError: If the course does not exist
    """
    try:
        state = CourseState(state)
    except ValueError:
        raise ValidationError(f"Unknown course state: {state}") from None

    with use_db(conn) as db:
        cursor = db.execute(
            "UPDATE courses SET state = ?, updated_at = datetime('now') WHERE id = ?",
            (state.value, course_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Course {course_id} not found")
        course = _get(db, course_id)

    logger.debug("courses.state_updated", course_id=course_id, state=state.value)
    return course


def delete_course(course_id: int, conn: sqlite3.Connection | None = None) -> bool:
    """Delete course by ID.

    Components, bonus config, attempts, final grades, policy overrides,
    possible categories and mappings are removed by ON DELETE CASCADE.

    Returns:
        True if deleted, False if not found
    """
    with use_db(conn) as db:
        cursor = db.execute("DELETE FROM courses WHERE id = ?", (course_id,))

    deleted = cursor.rowcount > 0
    if deleted:
        logger.debug("courses.deleted", course_id=course_id)

    return deleted


def _row_to_record(row) -> CourseRecord:
    """Convert database row to CourseRecord."""
    return CourseRecord(
        id=row["id"],
        short_name=row["short_name"],
        name=row["name"],
        ects=row["ects"],
        institution=row["institution"],
        grading_scheme=row["grading_scheme"],
        state=CourseState(row["state"]),
        is_external=bool(row["is_external"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
