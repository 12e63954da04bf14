"""Tests for the courses repository."""

import pytest

from studyrecord.core.errors import NotFoundError, UnknownScheme, ValidationError
from studyrecord.db.courses_repository import (
    CourseState,
    create_course,
    delete_course,
    get_course,
    get_course_by_short_name,
    list_courses,
    require_course,
    set_course_state,
)


class TestCreateCourse:
    def test_create_course(self, db_path):
        course = create_course("ana1", "Analysis 1", 8, "TUM")

        assert course.id is not None
        assert course.short_name == "ana1"
        assert course.ects == 8
        assert course.grading_scheme == "german"
        assert course.state == CourseState.ENROLLED
        assert course.is_external is False

    def test_scheme_alias_is_normalized(self, db_path):
        course = create_course("stats", "Statistics", 5, "MIT", grading_scheme="GPA", is_external=True)

        assert course.grading_scheme == "us"
        assert course.is_external is True

    def test_non_positive_ects_rejected(self, db_path):
        with pytest.raises(ValidationError):
            create_course("ana1", "Analysis 1", 0, "TUM")

    def test_empty_name_rejected(self, db_path):
        with pytest.raises(ValidationError):
            create_course(" ", "Analysis 1", 8, "TUM")

    def test_unknown_scheme_rejected(self, db_path):
        with pytest.raises(UnknownScheme):
            create_course("ana1", "Analysis 1", 8, "TUM", grading_scheme="klingon")

    def test_duplicate_short_name_rejected(self, db_path):
        create_course("ana1", "Analysis 1", 8, "TUM")

        with pytest.raises(ValidationError):
            create_course("ana1", "Analysis 1 (again)", 8, "TUM")


class TestReadCourses:
    def test_get_and_require(self, db_path):
        course = create_course("ana1", "Analysis 1", 8, "TUM")

        assert get_course(course.id).name == "Analysis 1"
        assert get_course_by_short_name("ana1").id == course.id
        assert get_course(999) is None
        with pytest.raises(NotFoundError):
            require_course(999)

    def test_list_courses_filters_inactive(self, db_path):
        create_course("ana1", "Analysis 1", 8, "TUM")
        dropped = create_course("bio", "Biology", 5, "TUM")
        set_course_state(dropped.id, CourseState.DROPPED)

        assert [c.short_name for c in list_courses()] == ["ana1", "bio"]
        assert [c.short_name for c in list_courses(include_inactive=False)] == ["ana1"]


class TestCourseState:
    def test_set_state_by_value(self, db_path):
        course = create_course("ana1", "Analysis 1", 8, "TUM")

        updated = set_course_state(course.id, "archived")

        assert updated.state == CourseState.ARCHIVED
        assert not updated.state.counts_for_progress

    def test_unknown_state_rejected(self, db_path):
        course = create_course("ana1", "Analysis 1", 8, "TUM")

        with pytest.raises(ValidationError):
            set_course_state(course.id, "paused")

    def test_missing_course(self, db_path):
        with pytest.raises(NotFoundError):
            set_course_state(999, CourseState.COMPLETED)

    def test_counts_for_progress(self):
        assert CourseState.ENROLLED.counts_for_progress
        assert CourseState.COMPLETED.counts_for_progress
        assert not CourseState.DROPPED.counts_for_progress


class TestDeleteCourse:
    def test_delete_course(self, db_path):
        course = create_course("ana1", "Analysis 1", 8, "TUM")

        assert delete_course(course.id) is True
        assert get_course(course.id) is None
        assert delete_course(course.id) is False
