"""Exam attempt resolver.

Responsibilities:
- Record exam attempts under the course's effective retake policy
- Keep exactly one active attempt per course
- Policy mode: recompute the active attempt after every change
- Manual mode: keep the attempt the user picked (with a reason)

Active attempt strategies:
- first_passing: lowest-numbered passed attempt, else the latest attempt
- best: best grade in the scheme's direction (ties go to the earliest)
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

import structlog

from studyrecord.config.app_config import AppConfig, load_app_config
from studyrecord.core.errors import (
    AttemptLimitExceeded,
    AttemptNotFound,
    GradeRequiredForCompletion,
    PolicyViolation,
    RetakeNotAllowed,
    ValidationError,
)
from studyrecord.core.grading_schemes import GradingScheme, load_registry
from studyrecord.core.policy import ActiveAttemptStrategy, Policy, effective_policy
from studyrecord.db.courses_repository import (
    CourseRecord,
    CourseState,
    require_course,
    set_course_state,
)
from studyrecord.db.database import get_db, use_db

logger = structlog.get_logger(__name__)

# =============================================================================
# DATA CLASSES
# =============================================================================


class ActivationMode(str, Enum):
    POLICY = "policy"
    MANUAL = "manual"


@dataclass
class ExamAttempt:
    """A recorded exam attempt (grade stored in the course's scheme)."""

    id: int
    course_id: int
    attempt_number: int
    exam_date: str
    grade: float
    passed: bool
    original_grade: float | None
    original_scheme: str | None
    is_active: bool
    forced: bool
    notes: str | None
    created_at: str


@dataclass
class AttemptHistory:
    """All attempts of a course and how the active one is chosen."""

    course_id: int
    attempts: list[ExamAttempt]
    active_index: int | None
    mode: ActivationMode
    reason: str | None
    attempts_remaining: int | None
    policy: Policy

    @property
    def active(self) -> ExamAttempt | None:
        if self.active_index is None:
            return None
        return self.attempts[self.active_index]


@dataclass
class AttemptResult:
    """Result of recording an attempt."""

    attempt: ExamAttempt
    history: AttemptHistory
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# HELPERS
# =============================================================================


def _row_to_attempt(row) -> ExamAttempt:
    return ExamAttempt(
        id=row["id"],
        course_id=row["course_id"],
        attempt_number=row["attempt_number"],
        exam_date=row["exam_date"],
        grade=row["grade"],
        passed=bool(row["passed"]),
        original_grade=row["original_grade"],
        original_scheme=row["original_scheme"],
        is_active=bool(row["is_active"]),
        forced=bool(row["forced"]),
        notes=row["notes"],
        created_at=row["created_at"],
    )


def _list_attempts(conn: sqlite3.Connection, course_id: int) -> list[ExamAttempt]:
    rows = conn.execute(
        "SELECT * FROM exam_attempts WHERE course_id = ? ORDER BY attempt_number",
        (course_id,),
    ).fetchall()
    return [_row_to_attempt(row) for row in rows]


def get_mode(conn: sqlite3.Connection, course_id: int) -> tuple[ActivationMode, str | None]:
    row = conn.execute(
        "SELECT mode, reason FROM attempt_state WHERE course_id = ?", (course_id,)
    ).fetchone()
    if row is None:
        return ActivationMode.POLICY, None
    return ActivationMode(row["mode"]), row["reason"]


def _set_mode(
    conn: sqlite3.Connection,
    course_id: int,
    mode: ActivationMode,
    reason: str | None,
) -> None:
    conn.execute(
        """
        INSERT INTO attempt_state (course_id, mode, reason)
        VALUES (?, ?, ?)
        ON CONFLICT(course_id) DO UPDATE SET
            mode = excluded.mode,
            reason = excluded.reason,
            updated_at = datetime('now')
        """,
        (course_id, mode.value, reason),
    )


def _activate(conn: sqlite3.Connection, course_id: int, attempt_id: int) -> None:
    # Clear first: the partial unique index allows one active row per course
    conn.execute(
        "UPDATE exam_attempts SET is_active = 0 WHERE course_id = ? AND is_active = 1",
        (course_id,),
    )
    conn.execute("UPDATE exam_attempts SET is_active = 1 WHERE id = ?", (attempt_id,))


def select_policy_active(
    attempts: list[ExamAttempt],
    scheme: GradingScheme,
    strategy: ActiveAttemptStrategy,
) -> ExamAttempt | None:
    """Pick the attempt that should be active under ``strategy``."""
    if not attempts:
        return None

    ordered = sorted(attempts, key=lambda a: a.attempt_number)

    if strategy == ActiveAttemptStrategy.FIRST_PASSING:
        for attempt in ordered:
            if attempt.passed:
                return attempt
        return ordered[-1]

    best = ordered[0]
    for attempt in ordered[1:]:
        if scheme.is_better(attempt.grade, best.grade):
            best = attempt
    return best


def recompute_active(
    conn: sqlite3.Connection,
    course_id: int,
    scheme: GradingScheme,
    policy: Policy,
) -> None:
    attempts = _list_attempts(conn, course_id)
    target = select_policy_active(attempts, scheme, policy.strategy)
    if target is not None and not target.is_active:
        _activate(conn, course_id, target.id)
        logger.debug(
            "attempts.active_recomputed",
            course_id=course_id,
            attempt_number=target.attempt_number,
            strategy=policy.strategy.value,
        )


def course_context(
    conn: sqlite3.Connection,
    course_id: int,
    config: AppConfig | None,
) -> tuple[CourseRecord, GradingScheme, Policy]:
    """Load a course with its grading scheme and effective policy."""
    course = require_course(course_id, conn)
    registry = load_registry(conn)
    scheme = registry.get(course.grading_scheme)
    institutions = (config or load_app_config()).institutions
    policy = effective_policy(course.id, course.institution, institutions, conn)
    return course, scheme, policy


def _history(conn: sqlite3.Connection, course_id: int, policy: Policy) -> AttemptHistory:
    attempts = _list_attempts(conn, course_id)
    mode, reason = get_mode(conn, course_id)
    active_index = next(
        (i for i, attempt in enumerate(attempts) if attempt.is_active), None
    )
    return AttemptHistory(
        course_id=course_id,
        attempts=attempts,
        active_index=active_index,
        mode=mode,
        reason=reason,
        attempts_remaining=policy.attempts_remaining(len(attempts)),
        policy=policy,
    )


def _check_policy(
    attempts: list[ExamAttempt],
    policy: Policy,
) -> PolicyViolation | None:
    active = next((a for a in attempts if a.is_active), None)

    if active is not None and active.passed and not policy.allow_retake_after_pass:
        return RetakeNotAllowed(
            f"Attempt {active.attempt_number} already passed "
            f"with {active.grade:g}; retakes after a pass are not allowed",
            policy,
            "retry with --force and a justification --note, or set "
            "allow_retake_after_pass for this course",
        )

    if policy.max_attempts is not None and len(attempts) >= policy.max_attempts:
        return AttemptLimitExceeded(
            f"All {policy.max_attempts} allowed attempts are used",
            policy,
            "retry with --force and a justification --note, or raise "
            "max_attempts for this course",
        )

    return None


# =============================================================================
# OPERATIONS
# =============================================================================


def record_attempt(
    conn: sqlite3.Connection,
    course: CourseRecord,
    scheme: GradingScheme,
    policy: Policy,
    grade: float,
    exam_date: str | None = None,
    force: bool = False,
    note: str | None = None,
    original: tuple[float, str] | None = None,
) -> AttemptResult:
    """Record an attempt inside an open transaction.

    ``grade`` must already be in the course's scheme; ``original`` keeps the
    grade as entered when it was converted.
    """
    grade = scheme.validate_grade(grade)
    attempts = _list_attempts(conn, course.id)
    warnings: list[str] = []

    violation = _check_policy(attempts, policy)
    if violation is not None:
        if not force:
            raise violation
        if not note or not note.strip():
            raise ValidationError(
                f"Forcing past a policy violation requires a justification note ({violation})"
            )
        warnings.append(f"Recorded despite policy: {violation}")
        logger.warning(
            "attempts.policy_forced",
            course_id=course.id,
            violation=type(violation).__name__,
            note=note,
        )

    attempt_number = (attempts[-1].attempt_number if attempts else 0) + 1
    cursor = conn.execute(
        """
        INSERT INTO exam_attempts (
            course_id, attempt_number, exam_date, grade, passed,
            original_grade, original_scheme, forced, notes
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            course.id,
            attempt_number,
            exam_date or date.today().isoformat(),
            grade,
            int(scheme.is_passing(grade)),
            original[0] if original else None,
            original[1] if original else None,
            int(violation is not None),
            note,
        ),
    )
    attempt_id = cursor.lastrowid

    mode, _ = get_mode(conn, course.id)
    if not attempts:
        _activate(conn, course.id, attempt_id)
    elif mode == ActivationMode.POLICY:
        recompute_active(conn, course.id, scheme, policy)

    remaining = policy.attempts_remaining(attempt_number)
    if remaining == 1 and policy.warn_on_final_attempt:
        warnings.append("Only one attempt left under the current policy")
        logger.warning("attempts.final_attempt_left", course_id=course.id)

    row = conn.execute("SELECT * FROM exam_attempts WHERE id = ?", (attempt_id,)).fetchone()
    attempt = _row_to_attempt(row)

    logger.info(
        "attempts.recorded",
        course_id=course.id,
        attempt_number=attempt_number,
        grade=grade,
        passed=attempt.passed,
        active=attempt.is_active,
    )

    return AttemptResult(attempt=attempt, history=_history(conn, course.id, policy), warnings=warnings)


def add_attempt(
    course_id: int,
    grade: float,
    exam_date: str | None = None,
    force: bool = False,
    note: str | None = None,
    scheme: str | None = None,
    config: AppConfig | None = None,
) -> AttemptResult:
    """Record a new exam attempt.

    Args:
        course_id: Course the attempt belongs to
        grade: Grade achieved
        exam_date: ISO date (defaults to today)
        force: Record even if the policy forbids it (needs ``note``)
        note: Justification stored with the attempt
        scheme: Scheme of ``grade`` if different from the course's scheme
        config: App config providing institution policies

    Returns:
        AttemptResult with the new attempt, updated history and warnings

    Raises:
        RetakeNotAllowed: Course already passed and retakes are forbidden
        AttemptLimitExceeded: No attempts left
        ValidationError: Grade outside the scheme, or force without note
        UnmappedGradeValue: ``grade`` cannot be converted to the course's scheme
    """
    with get_db(immediate=True) as conn:
        course, course_scheme, policy = course_context(conn, course_id, config)

        original = None
        if scheme is not None:
            registry = load_registry(conn)
            source = registry.get(scheme)
            if source.name != course_scheme.name:
                source.validate_grade(grade)
                original = (float(grade), source.name)
                grade = registry.convert(grade, source.name, course_scheme.name)

        return record_attempt(
            conn, course, course_scheme, policy, grade,
            exam_date=exam_date, force=force, note=note, original=original,
        )


def set_active(
    course_id: int,
    attempt_number: int | None = None,
    best: bool = False,
    reason: str = "",
    config: AppConfig | None = None,
) -> AttemptHistory:
    """Manually choose the active attempt.

    Switches the course to manual mode; later attempts do not change the
    active one until reset_to_policy is called.

    Raises:
        ValidationError: Empty reason, or neither/both targets given
        AttemptNotFound: The attempt does not exist
    """
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to set the active attempt manually")
    if (attempt_number is None) == (not best):
        raise ValidationError("Give either an attempt number or best=True")

    with get_db(immediate=True) as conn:
        _, scheme, policy = course_context(conn, course_id, config)
        attempts = _list_attempts(conn, course_id)

        if best:
            target = select_policy_active(attempts, scheme, ActiveAttemptStrategy.BEST)
        else:
            target = next((a for a in attempts if a.attempt_number == attempt_number), None)

        if target is None:
            raise AttemptNotFound(course_id, attempt_number)

        _activate(conn, course_id, target.id)
        _set_mode(conn, course_id, ActivationMode.MANUAL, reason.strip())
        history = _history(conn, course_id, policy)

    logger.info(
        "attempts.manual_active",
        course_id=course_id,
        attempt_number=target.attempt_number,
        reason=reason,
    )
    return history


def reset_to_policy(course_id: int, config: AppConfig | None = None) -> AttemptHistory:
    """Return to policy mode and recompute the active attempt."""
    with get_db(immediate=True) as conn:
        _, scheme, policy = course_context(conn, course_id, config)
        _set_mode(conn, course_id, ActivationMode.POLICY, None)
        recompute_active(conn, course_id, scheme, policy)
        history = _history(conn, course_id, policy)

    logger.info("attempts.reset_to_policy", course_id=course_id)
    return history


def active_attempt(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> ExamAttempt | None:
    """Get the active attempt, or None if the course has no attempts."""
    with use_db(conn, immediate=False) as db:
        row = db.execute(
            "SELECT * FROM exam_attempts WHERE course_id = ? AND is_active = 1",
            (course_id,),
        ).fetchone()

    if row is None:
        return None

    return _row_to_attempt(row)


def attempt_history(
    course_id: int,
    config: AppConfig | None = None,
    conn: sqlite3.Connection | None = None,
) -> AttemptHistory:
    """Get all attempts with the active index, mode and remaining attempts."""
    with use_db(conn, immediate=False) as db:
        course = require_course(course_id, db)
        institutions = (config or load_app_config()).institutions
        policy = effective_policy(course.id, course.institution, institutions, db)
        return _history(db, course_id, policy)


def complete_course(course_id: int, config: AppConfig | None = None) -> CourseRecord:
    """Mark a course completed.

    Raises:
        GradeRequiredForCompletion: The policy requires a passing active
            attempt and there is none
    """
    with get_db(immediate=True) as conn:
        _, _, policy = course_context(conn, course_id, config)

        if policy.require_grade_for_completion:
            active = active_attempt(course_id, conn)
            if active is None or not active.passed:
                raise GradeRequiredForCompletion(
                    f"Course {course_id} has no passing active attempt",
                    policy,
                    "record a passing attempt, or set "
                    "require_grade_for_completion=false for this course",
                )

        course = set_course_state(course_id, CourseState.COMPLETED, conn)

    logger.info("courses.completed", course_id=course_id)
    return course
