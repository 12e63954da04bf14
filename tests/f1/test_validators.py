"""Tests for validators module."""

import pytest

from studyrecord.core.errors import NotFoundError, ValidationError
from studyrecord.utils.validators import (
    AmbiguousCourseError,
    CourseNotFoundError,
    normalize_scheme_name,
    parse_degree_type,
    resolve_course_name,
)


class TestResolveCourseName:
    """Tests for course prefix resolution."""

    def test_exact_match(self):
        assert resolve_course_name("ana1", ["ana1", "ana2"]) == "ana1"

    def test_unique_prefix(self):
        assert resolve_course_name("lin", ["ana1", "linalg"]) == "linalg"

    def test_exact_match_wins_over_longer_candidates(self):
        assert resolve_course_name("ana", ["ana", "ana2"]) == "ana"

    def test_ambiguous_prefix(self):
        with pytest.raises(AmbiguousCourseError) as exc_info:
            resolve_course_name("ana", ["ana1", "ana2", "linalg"])

        assert exc_info.value.candidates == ["ana1", "ana2"]
        assert "ana1" in str(exc_info.value)

    def test_no_match(self):
        with pytest.raises(CourseNotFoundError) as exc_info:
            resolve_course_name("stats", ["ana1"])

        assert isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.prefix == "stats"


class TestNormalizeSchemeName:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("german", "german"),
            (" German ", "german"),
            ("de", "german"),
            ("GPA", "us"),
            ("pass/fail", "passfail"),
            ("swiss", "swiss"),
        ],
    )
    def test_aliases(self, raw, expected):
        assert normalize_scheme_name(raw) == expected


class TestParseDegreeType:
    def test_abbreviations(self):
        assert parse_degree_type("BSc") == "bachelor"
        assert parse_degree_type("m") == "master"
        assert parse_degree_type("doctorate") == "phd"

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_degree_type("diploma")
