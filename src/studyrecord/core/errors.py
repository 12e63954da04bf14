"""Error taxonomy for the grade and progress engine.

- ValidationError: caller-correctable input problems (no side effects)
- PolicyViolation: a retake/completion policy blocked the operation
- DataIntegrityError: the store references rows that do not exist or
  contradict each other; the transaction is rolled back

A pending final grade is not an error, see FinalGrade.pending.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from studyrecord.core.policy import Policy


class StudyRecordError(Exception):
    """Base class for all engine errors."""


class ValidationError(StudyRecordError):
    """Raised when input is invalid and can be corrected by the caller."""


class NotFoundError(ValidationError):
    """Raised when a referenced course, degree or area does not exist."""


class InvalidScheme(ValidationError):
    """Raised when a grading scheme definition is inconsistent."""


class UnknownScheme(ValidationError):
    """Raised when a grading scheme name is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown grading scheme '{name}'")


class UnmappedGradeValue(ValidationError):
    """Raised when a conversion table has no entry for a value."""

    def __init__(self, value: float, from_scheme: str, to_scheme: str):
        self.value = value
        self.from_scheme = from_scheme
        self.to_scheme = to_scheme
        super().__init__(
            f"No conversion for {value:g} from '{from_scheme}' to '{to_scheme}'"
        )


class WeightSumError(ValidationError):
    """Raised when non-bonus component weights do not sum to 100."""

    def __init__(self, total: float, message: str | None = None):
        self.total = total
        super().__init__(
            message or f"Component weights must sum to 100 (got {total:g})"
        )


class PendingGradeError(ValidationError):
    """Raised when an operation needs a final grade that is still pending."""


class AttemptNotFound(ValidationError):
    """Raised when an exam attempt number does not exist for a course."""

    def __init__(self, course_id: int, attempt_number: int | None):
        self.course_id = course_id
        self.attempt_number = attempt_number
        super().__init__(
            f"Attempt {attempt_number} not found for course {course_id}"
        )


class PolicyViolation(StudyRecordError):
    """Raised when the effective policy forbids an operation.

    Carries the governing policy and a suggested override so the caller can
    decide whether to retry with ``force`` and a justification note.
    """

    def __init__(self, message: str, policy: Policy, suggestion: str):
        self.policy = policy
        self.suggestion = suggestion
        super().__init__(message)


class RetakeNotAllowed(PolicyViolation):
    """Raised when retaking a passed exam is not allowed."""


class AttemptLimitExceeded(PolicyViolation):
    """Raised when all allowed exam attempts are used up."""


class GradeRequiredForCompletion(PolicyViolation):
    """Raised when completing a course without a passing grade."""


class DataIntegrityError(StudyRecordError):
    """Raised when stored rows reference missing or inconsistent rows."""
