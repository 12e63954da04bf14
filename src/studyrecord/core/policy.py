"""Retake policy resolution.

A policy is resolved through a typed override chain:

    course override  >  institution policy  >  DEFAULT_POLICY

Each PolicyOverride field left as None inherits from the next level.
``max_attempts`` uses 0 for "unlimited" in overrides and in the database;
the resolved Policy uses None.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Mapping

import structlog

from studyrecord.core.errors import ValidationError
from studyrecord.db.database import use_db

logger = structlog.get_logger(__name__)

UNLIMITED = 0


class ActiveAttemptStrategy(str, Enum):
    """How the active exam attempt is chosen in policy mode."""

    FIRST_PASSING = "first_passing"
    BEST = "best"


@dataclass(frozen=True)
class Policy:
    """Fully resolved policy for one course."""

    max_attempts: int | None = 3
    strategy: ActiveAttemptStrategy = ActiveAttemptStrategy.FIRST_PASSING
    require_grade_for_completion: bool = True
    warn_on_final_attempt: bool = True
    allow_retake_after_pass: bool = False

    def attempts_remaining(self, used: int) -> int | None:
        """Attempts left after ``used`` attempts (None if unlimited)."""
        if self.max_attempts is None:
            return None
        return max(0, self.max_attempts - used)

    def describe(self) -> str:
        limit = "unlimited" if self.max_attempts is None else str(self.max_attempts)
        return (
            f"max_attempts={limit}, strategy={self.strategy.value}, "
            f"allow_retake_after_pass={self.allow_retake_after_pass}"
        )


DEFAULT_POLICY = Policy()


@dataclass(frozen=True)
class PolicyOverride:
    """Partial policy; None fields inherit from the next level."""

    max_attempts: int | None = None
    strategy: ActiveAttemptStrategy | None = None
    require_grade_for_completion: bool | None = None
    warn_on_final_attempt: bool | None = None
    allow_retake_after_pass: bool | None = None

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 0:
            raise ValidationError("max_attempts must be >= 0 (0 = unlimited)")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PolicyOverride:
        """Build an override from a config mapping.

        ``max_attempts`` accepts an integer or the string "unlimited".
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown policy fields: {', '.join(sorted(unknown))}")

        max_attempts = data.get("max_attempts")
        if isinstance(max_attempts, str):
            if max_attempts.strip().lower() != "unlimited":
                raise ValidationError(f"Invalid max_attempts: {max_attempts}")
            max_attempts = UNLIMITED

        strategy = data.get("strategy")
        if strategy is not None:
            try:
                strategy = ActiveAttemptStrategy(strategy)
            except ValueError:
                raise ValidationError(f"Invalid strategy: {strategy}") from None

        return cls(
            max_attempts=max_attempts,
            strategy=strategy,
            require_grade_for_completion=data.get("require_grade_for_completion"),
            warn_on_final_attempt=data.get("warn_on_final_attempt"),
            allow_retake_after_pass=data.get("allow_retake_after_pass"),
        )

    def is_empty(self) -> bool:
        return all(value is None for value in asdict(self).values())


def resolve_policy(*overrides: PolicyOverride | None, base: Policy = DEFAULT_POLICY) -> Policy:
    """Resolve overrides (most specific first) over ``base``."""
    resolved: dict[str, Any] = {}
    for f in fields(Policy):
        value = getattr(base, f.name)
        for override in overrides:
            if override is None:
                continue
            candidate = getattr(override, f.name)
            if candidate is not None:
                value = candidate
                break
        resolved[f.name] = value

    if resolved["max_attempts"] == UNLIMITED:
        resolved["max_attempts"] = None

    return Policy(**resolved)


# =============================================================================
# COURSE OVERRIDES
# =============================================================================


def _optional_bool(value: Any) -> bool | None:
    return None if value is None else bool(value)


def get_course_policy(
    course_id: int,
    conn: sqlite3.Connection | None = None,
) -> PolicyOverride | None:
    """Get the course-level override, or None if the course has none."""
    with use_db(conn, immediate=False) as db:
        row = db.execute(
            "SELECT * FROM course_policies WHERE course_id = ?", (course_id,)
        ).fetchone()

    if row is None:
        return None

    return PolicyOverride(
        max_attempts=row["max_attempts"],
        strategy=ActiveAttemptStrategy(row["strategy"]) if row["strategy"] else None,
        require_grade_for_completion=_optional_bool(row["require_grade_for_completion"]),
        warn_on_final_attempt=_optional_bool(row["warn_on_final_attempt"]),
        allow_retake_after_pass=_optional_bool(row["allow_retake_after_pass"]),
    )


def set_course_policy(
    course_id: int,
    override: PolicyOverride,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Create or replace the course-level override (empty override deletes it).

    Does not recompute the active attempt; call reset_to_policy for that.
    """
    with use_db(conn) as db:
        if override.is_empty():
            db.execute("DELETE FROM course_policies WHERE course_id = ?", (course_id,))
        else:
            db.execute(
                """
                INSERT INTO course_policies (
                    course_id, max_attempts, strategy, require_grade_for_completion,
                    warn_on_final_attempt, allow_retake_after_pass
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(course_id) DO UPDATE SET
                    max_attempts = excluded.max_attempts,
                    strategy = excluded.strategy,
                    require_grade_for_completion = excluded.require_grade_for_completion,
                    warn_on_final_attempt = excluded.warn_on_final_attempt,
                    allow_retake_after_pass = excluded.allow_retake_after_pass
                """,
                (
                    course_id,
                    override.max_attempts,
                    override.strategy.value if override.strategy else None,
                    override.require_grade_for_completion,
                    override.warn_on_final_attempt,
                    override.allow_retake_after_pass,
                ),
            )

    logger.debug("policies.course_override_set", course_id=course_id)


def effective_policy(
    course_id: int,
    institution: str,
    institution_policies: Mapping[str, PolicyOverride],
    conn: sqlite3.Connection | None = None,
) -> Policy:
    """Resolve the policy for a course (course > institution > defaults)."""
    course_override = get_course_policy(course_id, conn)
    return resolve_policy(course_override, institution_policies.get(institution))
