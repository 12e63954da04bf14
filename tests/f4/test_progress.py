"""Tests for progress aggregation across degrees and areas (F4)."""

import pytest

from studyrecord.core.attempt_resolver import add_attempt
from studyrecord.core.errors import DataIntegrityError, NotFoundError, UnmappedGradeValue
from studyrecord.core.progress import (
    area_progress,
    degree_gpa,
    degree_progress,
    missing,
    overall_gpa,
    unmapped_courses,
)
from studyrecord.db.courses_repository import CourseState, create_course, set_course_state
from studyrecord.db.database import get_db
from studyrecord.db.degrees_repository import (
    AreaDefinition,
    add_possible_category,
    create_degree,
    map_course,
)


@pytest.fixture
def bachelor(db_path):
    return create_degree(
        "bachelor",
        "Informatics",
        "TUM",
        180,
        areas=[
            AreaDefinition("Core", 60),
            AreaDefinition("Electives", 30),
            AreaDefinition("Soft Skills", 10, counts_towards_gpa=False),
        ],
    )


@pytest.fixture
def master(db_path):
    return create_degree("master", "Data Science", "TUM", 120, areas=[AreaDefinition("Y", 30)])


def _area_id(degree, name: str) -> int:
    return next(area.id for area in degree.areas if area.name == name)


def _graded_course(short_name: str, ects: int, grade: float, config, scheme: str = "german"):
    course = create_course(short_name, short_name.title(), ects, "TUM", grading_scheme=scheme)
    add_attempt(course.id, grade, config=config)
    return course


@pytest.fixture
def core_courses(bachelor, app_config):
    """Two passed courses in Core: 1.6 with 8 ECTS, 2.0 with 4 ECTS."""
    ana = _graded_course("ana1", 8, 1.6, app_config)
    lin = _graded_course("linalg", 4, 2.0, app_config)
    core = _area_id(bachelor, "Core")
    map_course(ana.id, bachelor.id, core)
    map_course(lin.id, bachelor.id, core)
    return ana, lin


class TestAreaProgress:
    def test_ects_weighted_gpa(self, bachelor, core_courses):
        progress = area_progress(_area_id(bachelor, "Core"))

        assert progress.earned_ects == 12
        assert progress.required_ects == 60
        assert progress.missing_ects == 48
        assert progress.gpa == pytest.approx(1.7333, abs=1e-4)
        assert [c.short_name for c in progress.courses] == ["ana1", "linalg"]

    def test_failed_course_does_not_count(self, bachelor, core_courses, app_config):
        failed = _graded_course("stats", 6, 5.0, app_config)
        map_course(failed.id, bachelor.id, _area_id(bachelor, "Core"))

        progress = area_progress(_area_id(bachelor, "Core"))

        assert progress.earned_ects == 12
        assert progress.gpa == pytest.approx(1.7333, abs=1e-4)
        stats = next(c for c in progress.courses if c.short_name == "stats")
        assert stats.counted is False
        assert stats.passed is False

    def test_course_without_attempt_does_not_count(self, bachelor):
        course = create_course("algo", "Algorithms", 8, "TUM")
        map_course(course.id, bachelor.id, _area_id(bachelor, "Core"))

        progress = area_progress(_area_id(bachelor, "Core"))

        assert progress.earned_ects == 0
        assert progress.gpa is None
        assert progress.courses[0].grade is None

    def test_dropped_course_excluded(self, bachelor, core_courses):
        _, lin = core_courses
        set_course_state(lin.id, CourseState.DROPPED)

        progress = area_progress(_area_id(bachelor, "Core"))

        assert progress.earned_ects == 8
        assert progress.gpa == pytest.approx(1.6)
        assert [c.short_name for c in progress.courses] == ["ana1"]

    def test_ects_override(self, bachelor, app_config):
        ana = _graded_course("ana1", 8, 1.6, app_config)
        lin = _graded_course("linalg", 4, 2.0, app_config)
        core = _area_id(bachelor, "Core")
        map_course(ana.id, bachelor.id, core)
        map_course(lin.id, bachelor.id, core, ects_override=2)

        progress = area_progress(core)

        assert progress.earned_ects == 10
        assert progress.gpa == pytest.approx(1.68)

    def test_non_gpa_area(self, bachelor, app_config):
        soft = _area_id(bachelor, "Soft Skills")
        course = _graded_course("rhetoric", 3, 1.0, app_config)
        map_course(course.id, bachelor.id, soft)

        progress = area_progress(soft)

        assert progress.earned_ects == 3
        assert progress.gpa is None
        assert progress.counts_towards_gpa is False
        assert progress.courses[0].gpa_grade is None

    def test_missing_area(self, db_path):
        with pytest.raises(NotFoundError):
            area_progress(999)


class TestDegreeProgress:
    def test_totals(self, bachelor, core_courses, app_config):
        course = _graded_course("rhetoric", 3, 1.0, app_config)
        map_course(course.id, bachelor.id, _area_id(bachelor, "Soft Skills"))

        progress = degree_progress(bachelor.id)

        assert progress.total_earned == 15
        assert progress.total_required == 180
        assert progress.gpa == pytest.approx(1.7333, abs=1e-4)
        assert [a.name for a in progress.areas] == ["Core", "Electives", "Soft Skills"]

    def test_gpa_spans_gpa_areas(self, bachelor, core_courses, app_config):
        elective = _graded_course("ml", 6, 1.0, app_config)
        map_course(elective.id, bachelor.id, _area_id(bachelor, "Electives"))

        # (1.6 * 8 + 2.0 * 4 + 1.0 * 6) / 18
        assert degree_gpa(bachelor.id) == pytest.approx(26.8 / 18)

    def test_no_counted_courses(self, bachelor):
        assert degree_gpa(bachelor.id) is None
        assert degree_progress(bachelor.id).total_earned == 0

    def test_multi_degree_course_counts_in_both(self, bachelor, master, core_courses):
        ana, _ = core_courses
        map_course(ana.id, master.id, master.areas[0].id)

        bachelor_progress = degree_progress(bachelor.id)
        master_progress = degree_progress(master.id)

        assert bachelor_progress.total_earned == 12
        assert master_progress.total_earned == 8
        assert master_progress.gpa == pytest.approx(1.6)

    def test_gpa_converted_to_degree_scheme(self, db_path, app_config):
        us_degree = create_degree(
            "master", "CS", "MIT", 120, grading_scheme="us", areas=[AreaDefinition("Core", 60)]
        )
        course = _graded_course("ana1", 8, 2.3, app_config)
        map_course(course.id, us_degree.id, us_degree.areas[0].id)

        progress = degree_progress(us_degree.id)

        assert progress.gpa == pytest.approx(2.7)
        assert progress.areas[0].courses[0].grade == 2.3
        assert progress.areas[0].courses[0].gpa_grade == pytest.approx(2.7)

    def test_unconvertible_grade(self, db_path, app_config):
        us_degree = create_degree(
            "master", "CS", "MIT", 120, grading_scheme="us", areas=[AreaDefinition("Core", 60)]
        )
        course = _graded_course("ana1", 8, 1.6, app_config)
        map_course(course.id, us_degree.id, us_degree.areas[0].id)

        with pytest.raises(UnmappedGradeValue):
            degree_progress(us_degree.id)

    def test_inconsistent_mapping(self, bachelor, master, core_courses):
        ana, _ = core_courses
        with get_db(immediate=True) as conn:
            conn.execute(
                "INSERT INTO course_degree_mappings (course_id, degree_id, area_id) VALUES (?, ?, ?)",
                (ana.id, master.id, _area_id(bachelor, "Electives")),
            )

        with pytest.raises(DataIntegrityError):
            degree_progress(bachelor.id)

    def test_missing_degree(self, db_path):
        with pytest.raises(NotFoundError):
            degree_progress(999)


class TestMissing:
    def test_shortfall_per_area(self, bachelor, core_courses):
        report = missing(bachelor.id)

        shortfalls = {a.name: a.missing_ects for a in report.areas}
        assert shortfalls == {"Core": 48, "Electives": 30, "Soft Skills": 10}
        assert report.total_missing == 88

    def test_complete_area_has_no_shortfall(self, db_path, app_config):
        degree = create_degree("phd", "Doctorate", "TUM", 30, areas=[AreaDefinition("Courses", 8)])
        course = _graded_course("ana1", 10, 2.0, app_config)
        map_course(course.id, degree.id, degree.areas[0].id)

        report = missing(degree.id)

        assert report.areas[0].missing_ects == 0
        assert report.total_missing == 0


class TestUnmappedCourses:
    def test_lists_eligible_unmapped(self, bachelor, master, db_path):
        course = create_course("ml", "Machine Learning", 6, "TUM")
        electives = _area_id(bachelor, "Electives")
        core = _area_id(bachelor, "Core")
        add_possible_category(course.id, bachelor.id, electives, is_recommended=True)
        add_possible_category(course.id, bachelor.id, core)
        add_possible_category(course.id, master.id, master.areas[0].id)

        items = unmapped_courses(bachelor.id)

        assert len(items) == 1
        assert items[0].short_name == "ml"
        assert sorted(items[0].area_ids) == sorted([core, electives])
        assert items[0].recommended_area_ids == [electives]
        assert len(unmapped_courses()) == 2

    def test_mapped_course_disappears(self, bachelor, db_path):
        course = create_course("ml", "Machine Learning", 6, "TUM")
        electives = _area_id(bachelor, "Electives")
        add_possible_category(course.id, bachelor.id, electives)

        map_course(course.id, bachelor.id, electives)

        assert unmapped_courses(bachelor.id) == []

    def test_dropped_course_skipped(self, bachelor, db_path):
        course = create_course("ml", "Machine Learning", 6, "TUM")
        add_possible_category(course.id, bachelor.id, _area_id(bachelor, "Electives"))

        set_course_state(course.id, "dropped")

        assert unmapped_courses() == []


class TestOverallGpa:
    def test_gpa_areas_only_by_default(self, bachelor, core_courses, app_config):
        rhetoric = _graded_course("rhetoric", 3, 1.0, app_config)
        map_course(rhetoric.id, bachelor.id, _area_id(bachelor, "Soft Skills"))

        report = overall_gpa()

        assert report.gpa == pytest.approx(1.7333, abs=1e-4)
        assert report.total_courses == 2
        assert report.total_ects == 12
        assert report.scheme == "german"

    def test_include_non_gpa(self, bachelor, core_courses, app_config):
        rhetoric = _graded_course("rhetoric", 3, 1.0, app_config)
        map_course(rhetoric.id, bachelor.id, _area_id(bachelor, "Soft Skills"))
        _graded_course("unmapped", 5, 1.0, app_config)

        report = overall_gpa(include_non_gpa=True)

        # (1.6 * 8 + 2.0 * 4 + 1.0 * 3 + 1.0 * 5) / 20
        assert report.gpa == pytest.approx(28.8 / 20)
        assert report.total_courses == 4
        assert report.include_non_gpa is True

    def test_course_in_two_degrees_counts_once(self, bachelor, master, core_courses):
        ana, _ = core_courses
        map_course(ana.id, master.id, master.areas[0].id)

        report = overall_gpa()

        assert report.total_courses == 2
        assert report.total_ects == 12

    def test_failed_and_dropped_courses_skipped(self, bachelor, core_courses, app_config):
        _, lin = core_courses
        failed = _graded_course("stats", 6, 5.0, app_config)
        map_course(failed.id, bachelor.id, _area_id(bachelor, "Core"))
        set_course_state(lin.id, CourseState.DROPPED)

        report = overall_gpa()

        assert report.gpa == pytest.approx(1.6)
        assert report.total_courses == 1

    def test_converted_to_target_scheme(self, bachelor, app_config):
        for short_name, grade in (("ana1", 2.3), ("linalg", 1.7)):
            course = _graded_course(short_name, 6, grade, app_config)
            map_course(course.id, bachelor.id, _area_id(bachelor, "Core"))

        report = overall_gpa("us")

        assert report.scheme == "us"
        assert report.gpa == pytest.approx(3.0)

    def test_nothing_counted(self, db_path):
        report = overall_gpa()

        assert report.gpa is None
        assert report.total_courses == 0
        assert report.total_ects == 0
