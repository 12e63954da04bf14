"""Pydantic schemas for reports.

Serialization models for the engine's result dataclasses, used by the
command layer's ``--json`` output.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from studyrecord.core.attempt_resolver import ActivationMode
from studyrecord.core.policy import ActiveAttemptStrategy
from studyrecord.db.courses_repository import CourseState


# =============================================================================
# SCHEME SCHEMAS
# =============================================================================


class SchemeResponse(BaseModel):
    """A registered grading scheme."""

    name: str
    scale: list[float]
    higher_is_better: bool
    pass_threshold: float
    best: float
    worst: float
    discrete: bool = False

    model_config = {"from_attributes": True}


# =============================================================================
# COURSE SCHEMAS
# =============================================================================


class CourseResponse(BaseModel):
    """Response for a course."""

    id: int
    short_name: str
    name: str
    ects: int
    institution: str
    grading_scheme: str
    state: CourseState
    is_external: bool

    model_config = {"from_attributes": True}


class ComponentResponse(BaseModel):
    """A grade component with its score."""

    name: str
    weight: float
    is_bonus: bool
    grade: float | None = None
    points_earned: float | None = None
    points_max: float | None = None
    is_completed: bool

    model_config = {"from_attributes": True}


class FinalGradeResponse(BaseModel):
    """Computed final grade of a course."""

    value: float | None
    passed: bool
    pending: bool
    base_value: float | None = None
    bonus_applied: bool = False
    scheme: str | None = None

    model_config = {"from_attributes": True}


class FinalGradeRecordResponse(BaseModel):
    """Stored final grade snapshot."""

    id: int
    course_id: int
    value: float
    base_value: float
    bonus_applied: bool
    scheme: str
    passed: bool
    attempt_id: int | None = None
    computed_at: str

    model_config = {"from_attributes": True}


# =============================================================================
# ATTEMPT SCHEMAS
# =============================================================================


class PolicyResponse(BaseModel):
    """Effective retake policy (max_attempts None = unlimited)."""

    max_attempts: int | None = None
    strategy: ActiveAttemptStrategy
    require_grade_for_completion: bool
    warn_on_final_attempt: bool
    allow_retake_after_pass: bool

    model_config = {"from_attributes": True}


class ExamAttemptResponse(BaseModel):
    """A recorded exam attempt."""

    attempt_number: int = Field(..., ge=1)
    exam_date: str
    grade: float
    passed: bool
    original_grade: float | None = None
    original_scheme: str | None = None
    is_active: bool
    forced: bool
    notes: str | None = None

    model_config = {"from_attributes": True}


class AttemptHistoryResponse(BaseModel):
    """Attempts of a course and the active one."""

    course_id: int
    attempts: list[ExamAttemptResponse]
    active_index: int | None = None
    mode: ActivationMode
    reason: str | None = None
    attempts_remaining: int | None = None
    policy: PolicyResponse

    model_config = {"from_attributes": True}


class AttemptResultResponse(BaseModel):
    """Result of recording an attempt."""

    attempt: ExamAttemptResponse
    history: AttemptHistoryResponse
    warnings: list[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


# =============================================================================
# PROGRESS SCHEMAS
# =============================================================================


class AreaResponse(BaseModel):
    id: int
    name: str
    required_ects: int
    counts_towards_gpa: bool

    model_config = {"from_attributes": True}


class DegreeResponse(BaseModel):
    """A degree with its areas."""

    id: int
    degree_type: str
    name: str
    institution: str
    total_ects_required: int
    grading_scheme: str
    areas: list[AreaResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class CourseContributionResponse(BaseModel):
    course_id: int
    short_name: str
    ects: int
    grade: float | None = None
    scheme: str
    passed: bool
    counted: bool
    gpa_grade: float | None = None

    model_config = {"from_attributes": True}


class AreaProgressResponse(BaseModel):
    """Progress of one degree area."""

    area_id: int
    name: str
    earned_ects: int
    required_ects: int
    gpa: float | None = None
    counts_towards_gpa: bool
    courses: list[CourseContributionResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class DegreeProgressResponse(BaseModel):
    """Progress of a degree across its areas."""

    degree: DegreeResponse
    areas: list[AreaProgressResponse]
    total_earned: int
    total_required: int
    gpa: float | None = None

    model_config = {"from_attributes": True}


class AreaShortfallResponse(BaseModel):
    area_id: int
    name: str
    required_ects: int
    earned_ects: int
    missing_ects: int = Field(..., ge=0)

    model_config = {"from_attributes": True}


class MissingRequirementsResponse(BaseModel):
    """Remaining ECTS per area."""

    degree_id: int
    areas: list[AreaShortfallResponse]
    total_missing: int = Field(..., ge=0)

    model_config = {"from_attributes": True}


class UnmappedCourseResponse(BaseModel):
    course_id: int
    short_name: str
    degree_id: int
    area_ids: list[int]
    recommended_area_ids: list[int] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class OverallGpaResponse(BaseModel):
    """GPA across all passed courses."""

    scheme: str
    gpa: float | None = None
    total_courses: int
    total_ects: int
    include_non_gpa: bool = False

    model_config = {"from_attributes": True}
