"""Repository functions for degrees, degree areas and course mappings.

- degrees / degree_areas: programme definitions
- course_possible_categories: where a course *may* count (eligibility)
- course_degree_mappings: where a course *does* count (commitment)
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

import structlog

from studyrecord.core.errors import (
    DataIntegrityError,
    NotFoundError,
    UnknownScheme,
    ValidationError,
)
from studyrecord.db.database import use_db
from studyrecord.utils.validators import normalize_scheme_name, parse_degree_type

logger = structlog.get_logger(__name__)


@dataclass
class AreaRecord:
    """Degree area (category) record."""

    id: int
    degree_id: int
    name: str
    required_ects: int
    counts_towards_gpa: bool
    display_order: int


@dataclass
class DegreeRecord:
    """Degree record with its areas."""

    id: int
    degree_type: str
    name: str
    institution: str
    total_ects_required: int
    grading_scheme: str
    is_active: bool
    areas: list[AreaRecord] = field(default_factory=list)


@dataclass
class AreaDefinition:
    """Area to create together with a degree."""

    name: str
    required_ects: int
    counts_towards_gpa: bool = True


@dataclass
class MappingRecord:
    """Committed course -> (degree, area) assignment."""

    id: int
    course_id: int
    degree_id: int
    area_id: int
    ects_override: int | None


@dataclass
class PossibleCategoryRecord:
    """Eligibility of a course for a (degree, area)."""

    id: int
    course_id: int
    degree_id: int
    area_id: int
    is_recommended: bool
    notes: str | None


# =============================================================================
# DEGREES
# =============================================================================


def create_degree(
    degree_type: str,
    name: str,
    institution: str,
    total_ects_required: int,
    grading_scheme: str = "german",
    areas: list[AreaDefinition] | None = None,
    conn: sqlite3.Connection | None = None,
) -> DegreeRecord:
    """Insert a degree together with its areas in one transaction.

    Raises:
        ValidationError: If type, ECTS or area definitions are invalid, or
            the degree already exists
        UnknownScheme: If the grading scheme is not registered
    """
    degree_type = parse_degree_type(degree_type)
    if int(total_ects_required) <= 0:
        raise ValidationError("total_ects_required must be > 0")
    scheme = normalize_scheme_name(grading_scheme)

    with use_db(conn) as db:
        if db.execute("SELECT 1 FROM grading_schemes WHERE name = ?", (scheme,)).fetchone() is None:
            raise UnknownScheme(grading_scheme)

        exists = db.execute(
            "SELECT 1 FROM degrees WHERE degree_type = ? AND name = ? AND institution = ?",
            (degree_type, name, institution),
        ).fetchone()
        if exists:
            raise ValidationError(f"Degree '{name}' ({degree_type}, {institution}) already exists")

        cursor = db.execute(
            """
            INSERT INTO degrees (degree_type, name, institution, total_ects_required, grading_scheme)
            VALUES (?, ?, ?, ?, ?)
            """,
            (degree_type, name, institution, int(total_ects_required), scheme),
        )
        degree_id = cursor.lastrowid

        for area in areas or []:
            add_area(degree_id, area.name, area.required_ects, area.counts_towards_gpa, conn=db)

        degree = _get_degree(db, degree_id)

    logger.info("degrees.created", degree_id=degree.id, name=name, areas=len(degree.areas))
    return degree


def add_area(
    degree_id: int,
    name: str,
    required_ects: int,
    counts_towards_gpa: bool = True,
    display_order: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> AreaRecord:
    """Add an area to an existing degree.

    Raises:
        NotFoundError: If the degree does not exist
        ValidationError: If ECTS is negative or the area name is taken
    """
    if int(required_ects) < 0:
        raise ValidationError("required_ects must be >= 0")
    if not name.strip():
        raise ValidationError("Area name must not be empty")

    with use_db(conn) as db:
        if db.execute("SELECT 1 FROM degrees WHERE id = ?", (degree_id,)).fetchone() is None:
            raise NotFoundError(f"Degree {degree_id} not found")

        if db.execute(
            "SELECT 1 FROM degree_areas WHERE degree_id = ? AND name = ?", (degree_id, name)
        ).fetchone():
            raise ValidationError(f"Area '{name}' already exists in degree {degree_id}")

        if display_order is None:
            display_order = db.execute(
                "SELECT COALESCE(MAX(display_order) + 1, 0) FROM degree_areas WHERE degree_id = ?",
                (degree_id,),
            ).fetchone()[0]

        cursor = db.execute(
            """
            INSERT INTO degree_areas (degree_id, name, required_ects, counts_towards_gpa, display_order)
            VALUES (?, ?, ?, ?, ?)
            """,
            (degree_id, name, int(required_ects), int(counts_towards_gpa), display_order),
        )
        row = db.execute("SELECT * FROM degree_areas WHERE id = ?", (cursor.lastrowid,)).fetchone()

    logger.debug("degrees.area_added", degree_id=degree_id, area=name)
    return _row_to_area(row)


def _get_degree(conn: sqlite3.Connection, degree_id: int) -> DegreeRecord | None:
    row = conn.execute("SELECT * FROM degrees WHERE id = ?", (degree_id,)).fetchone()
    if row is None:
        return None

    areas = conn.execute(
        "SELECT * FROM degree_areas WHERE degree_id = ? ORDER BY display_order, id",
        (degree_id,),
    ).fetchall()

    return DegreeRecord(
        id=row["id"],
        degree_type=row["degree_type"],
        name=row["name"],
        institution=row["institution"],
        total_ects_required=row["total_ects_required"],
        grading_scheme=row["grading_scheme"],
        is_active=bool(row["is_active"]),
        areas=[_row_to_area(a) for a in areas],
    )


def get_degree(
    degree_id: int,
    conn: sqlite3.Connection | None = None,
) -> DegreeRecord | None:
    """Get a degree with its areas, or None if not found."""
    with use_db(conn, immediate=False) as db:
        return _get_degree(db, degree_id)


def require_degree(
    degree_id: int,
    conn: sqlite3.Connection | None = None,
) -> DegreeRecord:
    """Get a degree or raise NotFoundError."""
    degree = get_degree(degree_id, conn)
    if degree is None:
        raise NotFoundError(f"Degree {degree_id} not found")
    return degree


def list_degrees(
    include_inactive: bool = True,
    conn: sqlite3.Connection | None = None,
) -> list[DegreeRecord]:
    """Get all degrees with their areas."""
    query = "SELECT id FROM degrees"
    if not include_inactive:
        query += " WHERE is_active = 1"
    query += " ORDER BY id"

    with use_db(conn, immediate=False) as db:
        ids = [row["id"] for row in db.execute(query)]
        return [_get_degree(db, degree_id) for degree_id in ids]


def list_areas(
    degree_id: int,
    conn: sqlite3.Connection | None = None,
) -> list[AreaRecord]:
    """Get a degree's areas in display order."""
    with use_db(conn, immediate=False) as db:
        rows = db.execute(
            "SELECT * FROM degree_areas WHERE degree_id = ? ORDER BY display_order, id",
            (degree_id,),
        ).fetchall()

    return [_row_to_area(row) for row in rows]


def get_area(
    area_id: int,
    conn: sqlite3.Connection | None = None,
) -> AreaRecord | None:
    """Get a degree area by ID."""
    with use_db(conn, immediate=False) as db:
        row = db.execute("SELECT * FROM degree_areas WHERE id = ?", (area_id,)).fetchone()

    if row is None:
        return None

    return _row_to_area(row)


def update_area(
    area_id: int,
    name: str | None = None,
    required_ects: int | None = None,
    counts_towards_gpa: bool | None = None,
    display_order: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> AreaRecord:
    """Change the given fields of a degree area; None leaves a field as is.

    Raises:
        NotFoundError: If the area does not exist
        ValidationError: If ECTS is negative or the new name is taken
    """
    if required_ects is not None and int(required_ects) < 0:
        raise ValidationError("required_ects must be >= 0")
    if name is not None and not name.strip():
        raise ValidationError("Area name must not be empty")

    with use_db(conn) as db:
        row = db.execute("SELECT * FROM degree_areas WHERE id = ?", (area_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Area {area_id} not found")
        area = _row_to_area(row)

        if name is not None and name != area.name:
            if db.execute(
                "SELECT 1 FROM degree_areas WHERE degree_id = ? AND name = ?",
                (area.degree_id, name),
            ).fetchone():
                raise ValidationError(f"Area '{name}' already exists in degree {area.degree_id}")
            area.name = name
        if required_ects is not None:
            area.required_ects = int(required_ects)
        if counts_towards_gpa is not None:
            area.counts_towards_gpa = counts_towards_gpa
        if display_order is not None:
            area.display_order = display_order

        db.execute(
            """
            UPDATE degree_areas
            SET name = ?, required_ects = ?, counts_towards_gpa = ?, display_order = ?
            WHERE id = ?
            """,
            (area.name, area.required_ects, int(area.counts_towards_gpa), area.display_order, area_id),
        )

    logger.debug("degrees.area_updated", area_id=area_id)
    return area


def delete_area(area_id: int, conn: sqlite3.Connection | None = None) -> bool:
    """Delete a degree area; its eligibilities and mappings cascade.

    Returns:
        True if deleted, False if not found
    """
    with use_db(conn) as db:
        cursor = db.execute("DELETE FROM degree_areas WHERE id = ?", (area_id,))

    deleted = cursor.rowcount > 0
    if deleted:
        logger.debug("degrees.area_deleted", area_id=area_id)

    return deleted


def delete_degree(degree_id: int, conn: sqlite3.Connection | None = None) -> bool:
    """Delete a degree; areas, eligibilities and mappings cascade.

    Returns:
        True if deleted, False if not found
    """
    with use_db(conn) as db:
        cursor = db.execute("DELETE FROM degrees WHERE id = ?", (degree_id,))

    deleted = cursor.rowcount > 0
    if deleted:
        logger.debug("degrees.deleted", degree_id=degree_id)

    return deleted


# =============================================================================
# ELIGIBILITY AND MAPPINGS
# =============================================================================


def _check_references(
    conn: sqlite3.Connection,
    course_id: int,
    degree_id: int,
    area_id: int,
) -> None:
    """Verify course, degree and area exist and the area belongs to the degree."""
    if conn.execute("SELECT 1 FROM courses WHERE id = ?", (course_id,)).fetchone() is None:
        raise DataIntegrityError(f"Mapping references missing course {course_id}")
    if conn.execute("SELECT 1 FROM degrees WHERE id = ?", (degree_id,)).fetchone() is None:
        raise DataIntegrityError(f"Mapping references missing degree {degree_id}")

    area = conn.execute("SELECT degree_id FROM degree_areas WHERE id = ?", (area_id,)).fetchone()
    if area is None:
        raise DataIntegrityError(f"Mapping references missing area {area_id}")
    if area["degree_id"] != degree_id:
        raise ValidationError(f"Area {area_id} does not belong to degree {degree_id}")


def add_possible_category(
    course_id: int,
    degree_id: int,
    area_id: int,
    is_recommended: bool = False,
    notes: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> PossibleCategoryRecord:
    """Mark a course as eligible for a (degree, area)."""
    with use_db(conn) as db:
        _check_references(db, course_id, degree_id, area_id)
        if db.execute(
            """
            SELECT 1 FROM course_possible_categories
            WHERE course_id = ? AND degree_id = ? AND area_id = ?
            """,
            (course_id, degree_id, area_id),
        ).fetchone():
            raise ValidationError("Course is already eligible for this area")

        cursor = db.execute(
            """
            INSERT INTO course_possible_categories (course_id, degree_id, area_id, is_recommended, notes)
            VALUES (?, ?, ?, ?, ?)
            """,
            (course_id, degree_id, area_id, int(is_recommended), notes),
        )
        row = db.execute(
            "SELECT * FROM course_possible_categories WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()

    logger.debug("mappings.eligible_added", course_id=course_id, area_id=area_id)
    return _row_to_possible(row)


def list_possible_categories(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> list[PossibleCategoryRecord]:
    """Get the (degree, area) pairs a course is eligible for."""
    with use_db(conn, immediate=False) as db:
        rows = db.execute(
            "SELECT * FROM course_possible_categories WHERE course_id = ? ORDER BY id",
            (course_id,),
        ).fetchall()

    return [_row_to_possible(row) for row in rows]


def map_course(
    course_id: int,
    degree_id: int,
    area_id: int,
    ects_override: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> MappingRecord:
    """Commit a course to count toward a (degree, area).

    When the course has eligibility rows, the target must be one of them.

    Raises:
        DataIntegrityError: If the course, degree or area does not exist
        ValidationError: If the area belongs to another degree, the course
            is not eligible, the mapping exists or the override is negative
    """
    if ects_override is not None and int(ects_override) < 0:
        raise ValidationError("ects_override must be >= 0")

    with use_db(conn) as db:
        _check_references(db, course_id, degree_id, area_id)

        eligible = {
            (row["degree_id"], row["area_id"])
            for row in db.execute(
                "SELECT degree_id, area_id FROM course_possible_categories WHERE course_id = ?",
                (course_id,),
            )
        }
        if eligible and (degree_id, area_id) not in eligible:
            raise ValidationError(
                f"Course {course_id} is not eligible for area {area_id} of degree {degree_id}"
            )

        if db.execute(
            """
            SELECT 1 FROM course_degree_mappings
            WHERE course_id = ? AND degree_id = ? AND area_id = ?
            """,
            (course_id, degree_id, area_id),
        ).fetchone():
            raise ValidationError("Course is already mapped to this area")

        cursor = db.execute(
            """
            INSERT INTO course_degree_mappings (course_id, degree_id, area_id, ects_override)
            VALUES (?, ?, ?, ?)
            """,
            (course_id, degree_id, area_id, ects_override),
        )
        row = db.execute(
            "SELECT * FROM course_degree_mappings WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()

    logger.info("mappings.created", course_id=course_id, degree_id=degree_id, area_id=area_id)
    return _row_to_mapping(row)


def unmap_course(
    course_id: int,
    degree_id: int,
    area_id: int,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Remove a committed mapping.

    Raises:
        NotFoundError: If the mapping does not exist
    """
    with use_db(conn) as db:
        cursor = db.execute(
            """
            DELETE FROM course_degree_mappings
            WHERE course_id = ? AND degree_id = ? AND area_id = ?
            """,
            (course_id, degree_id, area_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(
                f"Course mapping not found for course {course_id}, "
                f"degree {degree_id}, area {area_id}"
            )

    logger.info("mappings.removed", course_id=course_id, degree_id=degree_id, area_id=area_id)


def list_mappings(
    course_id: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[MappingRecord]:
    """Get committed mappings, optionally for one course."""
    query = "SELECT * FROM course_degree_mappings"
    params: tuple = ()
    if course_id is not None:
        query += " WHERE course_id = ?"
        params = (course_id,)
    query += " ORDER BY id"

    with use_db(conn, immediate=False) as db:
        rows = db.execute(query, params).fetchall()

    return [_row_to_mapping(row) for row in rows]


def _row_to_area(row) -> AreaRecord:
    return AreaRecord(
        id=row["id"],
        degree_id=row["degree_id"],
        name=row["name"],
        required_ects=row["required_ects"],
        counts_towards_gpa=bool(row["counts_towards_gpa"]),
        display_order=row["display_order"],
    )


def _row_to_mapping(row) -> MappingRecord:
    return MappingRecord(
        id=row["id"],
        course_id=row["course_id"],
        degree_id=row["degree_id"],
        area_id=row["area_id"],
        ects_override=row["ects_override"],
    )


def _row_to_possible(row) -> PossibleCategoryRecord:
    return PossibleCategoryRecord(
        id=row["id"],
        course_id=row["course_id"],
        degree_id=row["degree_id"],
        area_id=row["area_id"],
        is_recommended=bool(row["is_recommended"]),
        notes=row["notes"],
    )
