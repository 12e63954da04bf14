"""Progress aggregation across degrees and areas.

Rolls the active attempt of every mapped course up into ECTS totals and an
ECTS-weighted GPA per area and per degree, plus an overall GPA across all
passed courses.

A mapping counts when its course is neither dropped nor archived and its
active attempt passed. Each mapping counts on its own, so a course mapped
into two degrees contributes fully to both. GPA is reported in the
degree's grading scheme; course grades are converted through the scheme
registry. Areas with ``counts_towards_gpa = False`` add ECTS but no GPA.

All reports read inside one deferred transaction (consistent snapshot).
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

import structlog

from studyrecord.core.errors import DataIntegrityError, NotFoundError
from studyrecord.core.grading_schemes import SchemeRegistry, load_registry
from studyrecord.db.courses_repository import CourseState
from studyrecord.db.database import use_db
from studyrecord.db.degrees_repository import AreaRecord, DegreeRecord, get_degree

logger = structlog.get_logger(__name__)

_INACTIVE_STATES = (CourseState.DROPPED.value, CourseState.ARCHIVED.value)

# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class CourseContribution:
    """One mapped course as seen from an area."""

    course_id: int
    short_name: str
    ects: int
    grade: float | None
    scheme: str
    passed: bool
    counted: bool
    gpa_grade: float | None = None


@dataclass
class AreaProgress:
    area_id: int
    name: str
    earned_ects: int
    required_ects: int
    gpa: float | None
    counts_towards_gpa: bool
    courses: list[CourseContribution] = field(default_factory=list)

    @property
    def missing_ects(self) -> int:
        return max(0, self.required_ects - self.earned_ects)


@dataclass
class DegreeProgress:
    degree: DegreeRecord
    areas: list[AreaProgress]
    total_earned: int
    gpa: float | None

    @property
    def total_required(self) -> int:
        return self.degree.total_ects_required


@dataclass
class AreaShortfall:
    area_id: int
    name: str
    required_ects: int
    earned_ects: int
    missing_ects: int


@dataclass
class MissingRequirements:
    degree_id: int
    areas: list[AreaShortfall]
    total_missing: int


@dataclass
class UnmappedCourse:
    """Course eligible for a degree but not yet mapped into it."""

    course_id: int
    short_name: str
    degree_id: int
    area_ids: list[int]
    recommended_area_ids: list[int] = field(default_factory=list)


@dataclass
class OverallGpa:
    """ECTS-weighted GPA across courses, independent of any single degree."""

    scheme: str
    gpa: float | None
    total_courses: int
    total_ects: int
    include_non_gpa: bool


# =============================================================================
# AGGREGATION
# =============================================================================


def _weighted_gpa(contributions: list[CourseContribution]) -> float | None:
    graded = [c for c in contributions if c.counted and c.gpa_grade is not None]
    total_ects = sum(c.ects for c in graded)
    if total_ects == 0:
        return None
    return sum(c.gpa_grade * c.ects for c in graded) / total_ects


def _area_progress(
    conn: sqlite3.Connection,
    registry: SchemeRegistry,
    degree: DegreeRecord,
    area: AreaRecord,
) -> AreaProgress:
    rows = conn.execute(
        """
        SELECT m.course_id, m.degree_id, m.ects_override,
               c.short_name, c.ects, c.grading_scheme, c.state,
               a.grade, a.passed
        FROM course_degree_mappings m
        JOIN courses c ON c.id = m.course_id
        LEFT JOIN exam_attempts a ON a.course_id = m.course_id AND a.is_active = 1
        WHERE m.area_id = ?
        ORDER BY c.short_name
        """,
        (area.id,),
    ).fetchall()

    courses: list[CourseContribution] = []
    for row in rows:
        if row["degree_id"] != degree.id:
            raise DataIntegrityError(
                f"Mapping of course {row['course_id']} puts area {area.id} "
                f"under degree {row['degree_id']} instead of {degree.id}"
            )
        if row["state"] in _INACTIVE_STATES:
            continue

        ects = row["ects_override"] if row["ects_override"] is not None else row["ects"]
        passed = bool(row["passed"]) if row["passed"] is not None else False
        contribution = CourseContribution(
            course_id=row["course_id"],
            short_name=row["short_name"],
            ects=ects,
            grade=row["grade"],
            scheme=row["grading_scheme"],
            passed=passed,
            counted=passed,
        )
        if contribution.counted and area.counts_towards_gpa:
            contribution.gpa_grade = registry.convert(
                contribution.grade, contribution.scheme, degree.grading_scheme
            )
        courses.append(contribution)

    return AreaProgress(
        area_id=area.id,
        name=area.name,
        earned_ects=sum(c.ects for c in courses if c.counted),
        required_ects=area.required_ects,
        gpa=_weighted_gpa(courses) if area.counts_towards_gpa else None,
        counts_towards_gpa=area.counts_towards_gpa,
        courses=courses,
    )


def _degree_progress(conn: sqlite3.Connection, degree_id: int) -> DegreeProgress:
    degree = get_degree(degree_id, conn)
    if degree is None:
        raise NotFoundError(f"Degree {degree_id} not found")

    registry = load_registry(conn)
    areas = [_area_progress(conn, registry, degree, area) for area in degree.areas]
    gpa_contributions = [
        course for area in areas if area.counts_towards_gpa for course in area.courses
    ]

    return DegreeProgress(
        degree=degree,
        areas=areas,
        total_earned=sum(area.earned_ects for area in areas),
        gpa=_weighted_gpa(gpa_contributions),
    )


def area_progress(area_id: int, conn: sqlite3.Connection | None = None) -> AreaProgress:
    """Progress of a single degree area.

    Raises:
        NotFoundError: If the area does not exist
        DataIntegrityError: If a mapping into the area names another degree
        UnmappedGradeValue: If a counted grade cannot be converted to the
            degree's scheme
    """
    with use_db(conn, immediate=False) as db:
        row = db.execute("SELECT degree_id FROM degree_areas WHERE id = ?", (area_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Area {area_id} not found")

        degree = get_degree(row["degree_id"], db)
        area = next(a for a in degree.areas if a.id == area_id)
        return _area_progress(db, load_registry(db), degree, area)


def degree_gpa(degree_id: int, conn: sqlite3.Connection | None = None) -> float | None:
    """ECTS-weighted GPA over the degree's GPA-counting areas (None if nothing counts)."""
    return degree_progress(degree_id, conn).gpa


def degree_progress(degree_id: int, conn: sqlite3.Connection | None = None) -> DegreeProgress:
    """Per-area progress plus degree totals."""
    with use_db(conn, immediate=False) as db:
        progress = _degree_progress(db, degree_id)

    logger.debug(
        "progress.degree_computed",
        degree_id=degree_id,
        total_earned=progress.total_earned,
        gpa=progress.gpa,
    )
    return progress


def overall_gpa(
    scheme: str = "german",
    include_non_gpa: bool = False,
    conn: sqlite3.Connection | None = None,
) -> OverallGpa:
    """GPA over every passed course, reported in ``scheme``.

    Each course counts once with its own ECTS, however many mappings it has.
    By default only courses mapped into at least one GPA-counting area are
    included; with ``include_non_gpa`` every passed course is.

    Raises:
        UnknownScheme: If ``scheme`` is not registered
        UnmappedGradeValue: If a grade cannot be converted to ``scheme``
    """
    query = """
        SELECT c.id, c.ects, c.grading_scheme, a.grade
        FROM courses c
        JOIN exam_attempts a ON a.course_id = c.id AND a.is_active = 1
        WHERE a.passed = 1
          AND c.state NOT IN (?, ?)
    """
    if not include_non_gpa:
        query += """
          AND EXISTS (
              SELECT 1 FROM course_degree_mappings m
              JOIN degree_areas da ON da.id = m.area_id
              WHERE m.course_id = c.id AND da.counts_towards_gpa = 1
          )
        """
    query += " ORDER BY c.id"

    with use_db(conn, immediate=False) as db:
        registry = load_registry(db)
        target = registry.get(scheme)
        rows = db.execute(query, _INACTIVE_STATES).fetchall()

    contributions = [
        (registry.convert(row["grade"], row["grading_scheme"], target.name), row["ects"])
        for row in rows
    ]
    total_ects = sum(ects for _, ects in contributions)
    gpa = sum(grade * ects for grade, ects in contributions) / total_ects if total_ects else None

    logger.debug("progress.overall_computed", scheme=target.name, courses=len(rows), gpa=gpa)
    return OverallGpa(
        scheme=target.name,
        gpa=gpa,
        total_courses=len(rows),
        total_ects=total_ects,
        include_non_gpa=include_non_gpa,
    )


def missing(degree_id: int, conn: sqlite3.Connection | None = None) -> MissingRequirements:
    """Per-area ECTS shortfall; ``total_missing`` is their sum."""
    progress = degree_progress(degree_id, conn)
    shortfalls = [
        AreaShortfall(
            area_id=area.area_id,
            name=area.name,
            required_ects=area.required_ects,
            earned_ects=area.earned_ects,
            missing_ects=area.missing_ects,
        )
        for area in progress.areas
    ]
    return MissingRequirements(
        degree_id=degree_id,
        areas=shortfalls,
        total_missing=sum(s.missing_ects for s in shortfalls),
    )


def unmapped_courses(
    degree_id: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[UnmappedCourse]:
    """Courses eligible for a degree without a mapping into that degree.

    Dropped and archived courses are skipped. With ``degree_id`` None all
    degrees are checked.
    """
    query = """
        SELECT pc.course_id, c.short_name, pc.degree_id, pc.area_id, pc.is_recommended
        FROM course_possible_categories pc
        JOIN courses c ON c.id = pc.course_id
        WHERE c.state NOT IN (?, ?)
          AND NOT EXISTS (
              SELECT 1 FROM course_degree_mappings m
              WHERE m.course_id = pc.course_id AND m.degree_id = pc.degree_id
          )
    """
    params: list = list(_INACTIVE_STATES)
    if degree_id is not None:
        query += " AND pc.degree_id = ?"
        params.append(degree_id)
    query += " ORDER BY c.short_name, pc.degree_id, pc.area_id"

    with use_db(conn, immediate=False) as db:
        rows = db.execute(query, params).fetchall()

    grouped: dict[tuple[int, int], UnmappedCourse] = {}
    for row in rows:
        key = (row["course_id"], row["degree_id"])
        entry = grouped.get(key)
        if entry is None:
            entry = grouped[key] = UnmappedCourse(
                course_id=row["course_id"],
                short_name=row["short_name"],
                degree_id=row["degree_id"],
                area_ids=[],
            )
        entry.area_ids.append(row["area_id"])
        if row["is_recommended"]:
            entry.recommended_area_ids.append(row["area_id"])

    return list(grouped.values())
