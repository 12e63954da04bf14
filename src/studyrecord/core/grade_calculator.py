"""Component grade calculator.

Responsibilities:
- Maintain a course's weighted grade components (non-bonus weights sum to 100)
- Record scores as direct grades or points (points interpolate over the scale)
- Compute the final grade with the optional bonus
- Finalize a computed grade as an exam attempt, keeping a snapshot

The bonus component is a single row flagged ``is_bonus`` (weight 0) that
holds the earned bonus points; its BonusConfig lives in bonus_configs.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass

import structlog

from studyrecord.config.app_config import AppConfig
from studyrecord.core import attempt_resolver
from studyrecord.core.bonus import (
    BonusConfig,
    BonusTiming,
    apply_bonus,
    bonus_function_for,
)
from studyrecord.core.errors import (
    DataIntegrityError,
    NotFoundError,
    PendingGradeError,
    ValidationError,
    WeightSumError,
)
from studyrecord.core.grading_schemes import load_registry
from studyrecord.db.courses_repository import require_course
from studyrecord.db.database import get_db, use_db

logger = structlog.get_logger(__name__)

BONUS_COMPONENT = "bonus"
WEIGHT_TOLERANCE = 1e-6
WEIGHT_PRECISION = 6

# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class GradeComponent:
    """A weighted grade component and its recorded score."""

    id: int
    course_id: int
    name: str
    weight: float
    is_bonus: bool
    grade: float | None
    points_earned: float | None
    points_max: float | None
    is_completed: bool
    completed_at: str | None


@dataclass
class FinalGrade:
    """Computed final grade; ``pending`` while components are missing."""

    value: float | None
    passed: bool
    pending: bool
    base_value: float | None = None
    bonus_applied: bool = False
    scheme: str | None = None


@dataclass
class FinalGradeRecord:
    """Stored snapshot of a finalized grade."""

    id: int
    course_id: int
    value: float
    base_value: float
    bonus_applied: bool
    scheme: str
    passed: bool
    attempt_id: int | None
    computed_at: str


# =============================================================================
# HELPERS
# =============================================================================


def _row_to_component(row) -> GradeComponent:
    return GradeComponent(
        id=row["id"],
        course_id=row["course_id"],
        name=row["name"],
        weight=row["weight"],
        is_bonus=bool(row["is_bonus"]),
        grade=row["grade"],
        points_earned=row["points_earned"],
        points_max=row["points_max"],
        is_completed=bool(row["is_completed"]),
        completed_at=row["completed_at"],
    )


def _row_to_snapshot(row) -> FinalGradeRecord:
    return FinalGradeRecord(
        id=row["id"],
        course_id=row["course_id"],
        value=row["value"],
        base_value=row["base_value"],
        bonus_applied=bool(row["bonus_applied"]),
        scheme=row["scheme"],
        passed=bool(row["passed"]),
        attempt_id=row["attempt_id"],
        computed_at=row["computed_at"],
    )


def _components(conn: sqlite3.Connection, course_id: int) -> list[GradeComponent]:
    rows = conn.execute(
        "SELECT * FROM grade_components WHERE course_id = ? ORDER BY is_bonus, id",
        (course_id,),
    ).fetchall()
    return [_row_to_component(row) for row in rows]


def _get_component(conn: sqlite3.Connection, course_id: int, name: str) -> GradeComponent:
    row = conn.execute(
        "SELECT * FROM grade_components WHERE course_id = ? AND name = ?",
        (course_id, name),
    ).fetchone()
    if row is None:
        raise NotFoundError(f"Component '{name}' not found for course {course_id}")
    return _row_to_component(row)


def _check_weight(weight: float) -> float:
    weight = float(weight)
    if not 0 < weight <= 100:
        raise ValidationError(f"Component weight must be in (0, 100] (got {weight:g})")
    return weight


def rebalance_weights(weights: dict[str, float], target: float) -> dict[str, float]:
    """Scale ``weights`` proportionally so they sum to ``target``.

    Values are rounded to 6 decimals; the rounding residue goes to the
    largest weight.
    """
    total = sum(weights.values())
    if total <= 0:
        raise WeightSumError(total, "Cannot rebalance components with zero total weight")

    factor = target / total
    scaled = {name: round(w * factor, WEIGHT_PRECISION) for name, w in weights.items()}
    largest = max(scaled, key=lambda name: scaled[name])
    scaled[largest] = round(
        scaled[largest] + target - sum(scaled.values()), WEIGHT_PRECISION
    )
    return scaled


def _write_weights(conn: sqlite3.Connection, course_id: int, weights: dict[str, float]) -> None:
    conn.executemany(
        "UPDATE grade_components SET weight = ? WHERE course_id = ? AND name = ?",
        [(weight, course_id, name) for name, weight in weights.items()],
    )


def _insert_component(
    conn: sqlite3.Connection,
    course_id: int,
    name: str,
    weight: float,
    is_bonus: bool = False,
) -> None:
    conn.execute(
        "INSERT INTO grade_components (course_id, name, weight, is_bonus) VALUES (?, ?, ?, ?)",
        (course_id, name, weight, int(is_bonus)),
    )


# =============================================================================
# COMPONENT SETUP
# =============================================================================


def setup_components(
    course_id: int,
    components: list[tuple[str, float]],
    conn: sqlite3.Connection | None = None,
) -> list[GradeComponent]:
    """Replace the non-bonus component set of a course.

    Recorded scores of replaced components are discarded. The bonus
    component is kept.

    Raises:
        WeightSumError: If the weights do not sum to 100
        ValidationError: If names are empty or repeated, or a weight is
            outside (0, 100]
    """
    names = [name.strip() for name, _ in components]
    if any(not name for name in names):
        raise ValidationError("Component names must not be empty")
    if len(set(names)) != len(names):
        raise ValidationError("Component names must be unique")
    if BONUS_COMPONENT in names:
        raise ValidationError(f"'{BONUS_COMPONENT}' is reserved for the bonus component")

    weights = [_check_weight(weight) for _, weight in components]
    total = sum(weights)
    if abs(total - 100) > WEIGHT_TOLERANCE:
        raise WeightSumError(total)

    with use_db(conn) as db:
        require_course(course_id, db)
        db.execute(
            "DELETE FROM grade_components WHERE course_id = ? AND is_bonus = 0",
            (course_id,),
        )
        for name, weight in zip(names, weights):
            _insert_component(db, course_id, name, weight)
        result = _components(db, course_id)

    logger.info("components.setup", course_id=course_id, count=len(names))
    return result


def add_component(
    course_id: int,
    name: str,
    weight: float,
    rebalance: bool = False,
    conn: sqlite3.Connection | None = None,
) -> list[GradeComponent]:
    """Add a non-bonus component.

    Args:
        rebalance: If True, existing weights are scaled by
            ``(100 - weight) / sum(existing)`` so the total is 100 again.
            The first component of a course then takes the full 100.

    Raises:
        WeightSumError: Without rebalance, if the total would exceed 100
        ValidationError: Duplicate name, or weight outside (0, 100] (and
            below 100 when rebalancing existing components)
    """
    name = name.strip()
    if not name:
        raise ValidationError("Component name must not be empty")
    if name == BONUS_COMPONENT:
        raise ValidationError(f"'{BONUS_COMPONENT}' is reserved for the bonus component")
    weight = _check_weight(weight)

    with use_db(conn) as db:
        require_course(course_id, db)
        existing = {c.name: c.weight for c in _components(db, course_id) if not c.is_bonus}
        if name in existing:
            raise ValidationError(f"Component '{name}' already exists")

        total = sum(existing.values())
        if not rebalance:
            if total + weight > 100 + WEIGHT_TOLERANCE:
                raise WeightSumError(
                    total + weight,
                    f"Adding '{name}' ({weight:g}) would bring the total to "
                    f"{total + weight:g}; use rebalance",
                )
        elif not existing:
            weight = 100.0
        else:
            if weight >= 100:
                raise ValidationError("Rebalanced component weight must be below 100")
            _write_weights(db, course_id, rebalance_weights(existing, 100 - weight))

        _insert_component(db, course_id, name, weight)
        result = _components(db, course_id)

    logger.info("components.added", course_id=course_id, name=name, weight=weight, rebalance=rebalance)
    return result


def remove_component(
    course_id: int,
    name: str,
    rebalance: bool = True,
    conn: sqlite3.Connection | None = None,
) -> list[GradeComponent]:
    """Remove a component, scaling the remaining weights up to 100.

    Removing the bonus component also removes the course's BonusConfig.

    Raises:
        WeightSumError: Without rebalance, if the remaining weights would
            no longer sum to 100
    """
    with use_db(conn) as db:
        component = _get_component(db, course_id, name)
        db.execute("DELETE FROM grade_components WHERE id = ?", (component.id,))

        if component.is_bonus:
            db.execute("DELETE FROM bonus_configs WHERE course_id = ?", (course_id,))
        else:
            remaining = {c.name: c.weight for c in _components(db, course_id) if not c.is_bonus}
            total = sum(remaining.values())
            if remaining and rebalance:
                _write_weights(db, course_id, rebalance_weights(remaining, 100))
            elif remaining and abs(total - 100) > WEIGHT_TOLERANCE:
                raise WeightSumError(
                    total,
                    f"Removing '{name}' would leave a total of {total:g}; use rebalance",
                )

        result = _components(db, course_id)

    logger.info("components.removed", course_id=course_id, name=name, rebalance=rebalance)
    return result


def list_components(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> list[GradeComponent]:
    """Get all components of a course (bonus component last)."""
    with use_db(conn, immediate=False) as db:
        return _components(db, course_id)


# =============================================================================
# SCORES
# =============================================================================


def record_score(
    course_id: int,
    component: str,
    grade: float | None = None,
    points: tuple[float, float] | None = None,
    scheme: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> GradeComponent:
    """Record a component score and mark it completed.

    Args:
        grade: Direct grade, in ``scheme`` or the course's scheme
        points: (earned, max); converted by linear interpolation from the
            scheme's worst value (0 %) to its best value (100 %)
        scheme: Scheme of ``grade`` when it differs from the course's

    Raises:
        ValidationError: Neither or both score forms given, points out of
            range, grade outside the scheme, or a grade for the bonus
        UnmappedGradeValue: ``grade`` cannot be converted
    """
    if (grade is None) == (points is None):
        raise ValidationError("Give either a grade or points")

    with use_db(conn) as db:
        course = require_course(course_id, db)
        registry = load_registry(db)
        course_scheme = registry.get(course.grading_scheme)
        target = _get_component(db, course_id, component)

        earned = maximum = None
        if points is not None:
            earned, maximum = float(points[0]), float(points[1])
            if maximum <= 0:
                raise ValidationError("Maximum points must be > 0")

        if target.is_bonus:
            if points is None:
                raise ValidationError("The bonus component accepts points only")
            config = _get_bonus_config(db, course_id)
            if config is None:
                raise DataIntegrityError(
                    f"Course {course_id} has a bonus component without a bonus config"
                )
            if abs(maximum - config.max_points) > WEIGHT_TOLERANCE:
                raise ValidationError(
                    f"Bonus points are out of {config.max_points:g} (got maximum {maximum:g})"
                )
            maximum = float(config.max_points)

        if points is not None and not 0 <= earned <= maximum:
            raise ValidationError(f"Points must be in [0, {maximum:g}] (got {earned:g})")

        if target.is_bonus:
            value = None
        elif points is not None:
            value = course_scheme.from_fraction(earned / maximum)
        else:
            value = float(grade)
            if scheme is not None:
                source = registry.get(scheme)
                if source.name != course_scheme.name:
                    source.validate_grade(value)
                    value = registry.convert(value, source.name, course_scheme.name)
            value = course_scheme.validate_grade(value)

        db.execute(
            """
            UPDATE grade_components
            SET grade = ?, points_earned = ?, points_max = ?,
                is_completed = 1, completed_at = datetime('now')
            WHERE id = ?
            """,
            (value, earned, maximum, target.id),
        )
        result = _get_component(db, course_id, component)

    logger.info(
        "components.score_recorded",
        course_id=course_id,
        component=component,
        grade=value,
        points=points,
    )
    return result


# =============================================================================
# BONUS
# =============================================================================


def _get_bonus_config(conn: sqlite3.Connection, course_id: int) -> BonusConfig | None:
    row = conn.execute("SELECT * FROM bonus_configs WHERE course_id = ?", (course_id,)).fetchone()
    if row is None:
        return None
    return BonusConfig(
        max_points=row["max_points"],
        max_bonus_percent=row["max_bonus_percent"],
        function=bonus_function_for(row["function"], json.loads(row["steps"])),
        timing=BonusTiming(row["timing"]),
        grade_cap=row["grade_cap"],
    )


def get_bonus_config(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> BonusConfig | None:
    """Get the course's bonus configuration, or None."""
    with use_db(conn, immediate=False) as db:
        return _get_bonus_config(db, course_id)


def configure_bonus(
    course_id: int,
    config: BonusConfig,
    conn: sqlite3.Connection | None = None,
) -> BonusConfig:
    """Create or replace the course's bonus configuration.

    Creates the bonus component if it does not exist. Finalized grades are
    not touched; see recompute_final_grade.
    """
    with use_db(conn) as db:
        course = require_course(course_id, db)
        config.validate(load_registry(db).get(course.grading_scheme))

        db.execute(
            """
            INSERT INTO bonus_configs (
                course_id, max_points, max_bonus_percent, function, steps, timing, grade_cap
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(course_id) DO UPDATE SET
                max_points = excluded.max_points,
                max_bonus_percent = excluded.max_bonus_percent,
                function = excluded.function,
                steps = excluded.steps,
                timing = excluded.timing,
                grade_cap = excluded.grade_cap,
                updated_at = datetime('now')
            """,
            (
                course_id,
                float(config.max_points),
                float(config.max_bonus_percent),
                config.function.kind,
                config.function.steps_json(),
                config.timing.value,
                float(config.grade_cap),
            ),
        )

        row = db.execute(
            "SELECT is_bonus FROM grade_components WHERE course_id = ? AND name = ?",
            (course_id, BONUS_COMPONENT),
        ).fetchone()
        if row is None:
            _insert_component(db, course_id, BONUS_COMPONENT, 0.0, is_bonus=True)
        elif not row["is_bonus"]:
            raise DataIntegrityError(
                f"Course {course_id} has a regular component named '{BONUS_COMPONENT}'"
            )

    logger.info(
        "bonus.configured",
        course_id=course_id,
        function=config.function.kind,
        timing=config.timing.value,
    )
    return config


def record_bonus_points(
    course_id: int,
    points: float,
    conn: sqlite3.Connection | None = None,
) -> GradeComponent:
    """Record earned bonus points out of the configured maximum."""
    with use_db(conn) as db:
        config = _get_bonus_config(db, course_id)
        if config is None:
            raise ValidationError(f"Course {course_id} has no bonus configuration")
        return record_score(
            course_id, BONUS_COMPONENT, points=(points, config.max_points), conn=db
        )


# =============================================================================
# FINAL GRADE
# =============================================================================


def _compute(conn: sqlite3.Connection, course_id: int) -> FinalGrade:
    course = require_course(course_id, conn)
    scheme = load_registry(conn).get(course.grading_scheme)
    components = _components(conn, course_id)
    regular = [c for c in components if not c.is_bonus]
    bonus_rows = [c for c in components if c.is_bonus]

    if not regular or any(not c.is_completed for c in regular):
        return FinalGrade(value=None, passed=False, pending=True, scheme=scheme.name)

    total = sum(c.weight for c in regular)
    if abs(total - 100) > WEIGHT_TOLERANCE:
        raise WeightSumError(total)

    base = scheme.snap(sum(c.weight / 100 * c.grade for c in regular))

    config = _get_bonus_config(conn, course_id)
    if bonus_rows and config is None:
        raise DataIntegrityError(f"Course {course_id} has a bonus component without a bonus config")

    earned = bonus_rows[0].points_earned if bonus_rows else None
    if config is None or earned is None:
        return FinalGrade(
            value=base,
            passed=scheme.is_passing(base),
            pending=False,
            base_value=base,
            scheme=scheme.name,
        )

    outcome = apply_bonus(base, scheme, config, earned)
    return FinalGrade(
        value=outcome.value,
        passed=outcome.passed,
        pending=False,
        base_value=base,
        bonus_applied=outcome.applied,
        scheme=scheme.name,
    )


def compute_final_grade(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> FinalGrade:
    """Compute the course's final grade.

    Returns a pending FinalGrade (value None) while any non-bonus component
    is unscored or none are defined.

    Raises:
        WeightSumError: If the non-bonus weights do not sum to 100
        DataIntegrityError: If a bonus component has no bonus config
    """
    with use_db(conn, immediate=False) as db:
        return _compute(db, course_id)


def finalize_grade(
    course_id: int,
    exam_date: str | None = None,
    force: bool = False,
    note: str | None = None,
    config: AppConfig | None = None,
) -> tuple[FinalGradeRecord, attempt_resolver.AttemptResult]:
    """Store the computed final grade and record it as an exam attempt.

    Both writes happen in one transaction; the attempt is subject to the
    course's retake policy like any other.

    Raises:
        PendingGradeError: If components are still unscored
        PolicyViolation: If the policy forbids another attempt
    """
    with get_db(immediate=True) as conn:
        final = _compute(conn, course_id)
        if final.pending:
            raise PendingGradeError(f"Final grade of course {course_id} is still pending")

        course, scheme, policy = attempt_resolver.course_context(conn, course_id, config)
        result = attempt_resolver.record_attempt(
            conn, course, scheme, policy, final.value,
            exam_date=exam_date, force=force, note=note,
        )

        cursor = conn.execute(
            """
            INSERT INTO final_grades (
                course_id, value, base_value, bonus_applied, scheme, passed, attempt_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                course_id,
                final.value,
                final.base_value,
                int(final.bonus_applied),
                final.scheme,
                int(final.passed),
                result.attempt.id,
            ),
        )
        row = conn.execute("SELECT * FROM final_grades WHERE id = ?", (cursor.lastrowid,)).fetchone()

    logger.info(
        "grades.finalized",
        course_id=course_id,
        value=final.value,
        attempt_number=result.attempt.attempt_number,
    )
    return _row_to_snapshot(row), result


def latest_final_grade(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> FinalGradeRecord | None:
    """Get the most recent finalized grade snapshot."""
    with use_db(conn, immediate=False) as db:
        row = db.execute(
            "SELECT * FROM final_grades WHERE course_id = ? ORDER BY id DESC LIMIT 1",
            (course_id,),
        ).fetchone()

    if row is None:
        return None

    return _row_to_snapshot(row)


def recompute_final_grade(
    course_id: int,
    config: AppConfig | None = None,
) -> FinalGradeRecord:
    """Recompute the latest finalized grade from the current components.

    Updates the snapshot and its linked attempt, then re-resolves the
    active attempt when the course is in policy mode.

    Raises:
        NotFoundError: If the course has no finalized grade
        PendingGradeError: If components are still unscored
    """
    with get_db(immediate=True) as conn:
        snapshot = latest_final_grade(course_id, conn)
        if snapshot is None:
            raise NotFoundError(f"Course {course_id} has no finalized grade")

        final = _compute(conn, course_id)
        if final.pending:
            raise PendingGradeError(f"Final grade of course {course_id} is still pending")

        conn.execute(
            """
            UPDATE final_grades
            SET value = ?, base_value = ?, bonus_applied = ?, scheme = ?, passed = ?,
                computed_at = datetime('now')
            WHERE id = ?
            """,
            (
                final.value,
                final.base_value,
                int(final.bonus_applied),
                final.scheme,
                int(final.passed),
                snapshot.id,
            ),
        )

        _, scheme, policy = attempt_resolver.course_context(conn, course_id, config)
        if snapshot.attempt_id is not None:
            conn.execute(
                "UPDATE exam_attempts SET grade = ?, passed = ? WHERE id = ?",
                (final.value, int(scheme.is_passing(final.value)), snapshot.attempt_id),
            )

        mode, _ = attempt_resolver.get_mode(conn, course_id)
        if mode == attempt_resolver.ActivationMode.POLICY:
            attempt_resolver.recompute_active(conn, course_id, scheme, policy)

        row = conn.execute("SELECT * FROM final_grades WHERE id = ?", (snapshot.id,)).fetchone()

    logger.info(
        "grades.recomputed",
        course_id=course_id,
        old_value=snapshot.value,
        new_value=final.value,
    )
    return _row_to_snapshot(row)
