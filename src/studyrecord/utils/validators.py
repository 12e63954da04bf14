"""Data validation helpers.

Naming conventions:
- course short names: "ana1", "linalg-ws24" (unique, case-sensitive)
- scheme names: lowercase; common aliases accepted ("de" -> "german")

Functions:
- resolve_course_name(prefix, candidates) -> str: Resolve prefix to unique short name
- normalize_scheme_name(name) -> str: Canonical scheme name
- parse_degree_type(value) -> str: Canonical degree type
"""

from studyrecord.core.errors import NotFoundError, ValidationError


class AmbiguousCourseError(ValidationError):
    """Raised when a course prefix matches multiple courses."""

    def __init__(self, prefix: str, candidates: list[str]):
        self.prefix = prefix
        self.candidates = candidates
        super().__init__(
            f"Prefix '{prefix}' is ambiguous. Candidates:\n"
            + "\n".join(f"  - {c}" for c in candidates)
        )


class CourseNotFoundError(NotFoundError):
    """Raised when no course matches the given prefix."""

    def __init__(self, prefix: str):
        self.prefix = prefix
        super().__init__(f"No course found with prefix '{prefix}'")


_SCHEME_ALIASES = {
    "de": "german",
    "ger": "german",
    "eu": "ects",
    "european": "ects",
    "gpa": "us",
    "american": "us",
    "percent": "percentage",
    "%": "percentage",
    "pass/fail": "passfail",
    "pf": "passfail",
}

_DEGREE_TYPE_ALIASES = {
    "bachelor": "bachelor",
    "b": "bachelor",
    "ba": "bachelor",
    "bsc": "bachelor",
    "master": "master",
    "m": "master",
    "ma": "master",
    "msc": "master",
    "phd": "phd",
    "doctorate": "phd",
    "dr": "phd",
}


def resolve_course_name(prefix: str, candidates: list[str]) -> str:
    """Resolve a course short-name prefix to a unique full short name.

    Args:
        prefix: Partial or full short name (e.g., "ana" or "ana1")
        candidates: List of all course short names

    Returns:
        The unique matching short name

    Raises:
        CourseNotFoundError: If no candidates match the prefix
        AmbiguousCourseError: If multiple candidates match the prefix
    """
    # Exact match first
    if prefix in candidates:
        return prefix

    # Prefix match
    matches = [c for c in candidates if c.startswith(prefix)]

    if len(matches) == 0:
        raise CourseNotFoundError(prefix)
    elif len(matches) == 1:
        return matches[0]
    else:
        raise AmbiguousCourseError(prefix, matches)


def normalize_scheme_name(name: str) -> str:
    """Return the canonical (lowercase, de-aliased) scheme name."""
    key = name.strip().lower()
    return _SCHEME_ALIASES.get(key, key)


def parse_degree_type(value: str) -> str:
    """Parse a degree type (case-insensitive, common abbreviations).

    Raises:
        ValidationError: If the value is not a known degree type
    """
    degree_type = _DEGREE_TYPE_ALIASES.get(value.strip().lower())
    if degree_type is None:
        raise ValidationError(
            f"Unknown degree type '{value}' (expected bachelor, master or phd)"
        )
    return degree_type
