"""Bonus functions and their application to a base grade.

A course may carry one BonusConfig. The configured function turns earned
bonus points into a fraction in [0, 1]; the fraction is scaled by
``max_bonus_percent`` and moves the base grade towards the scheme's best
end.

Variants:
- LinearBonus: earned / max_points
- ThresholdBonus: percent of the highest step whose points are reached
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from studyrecord.core.errors import ValidationError
from studyrecord.core.grading_schemes import GradingScheme


class BonusTiming(str, Enum):
    """When the bonus is applied relative to the pass check."""

    APPLY_BEFORE_PASS = "apply_before_pass"
    APPLY_AFTER_PASS = "apply_after_pass"


class BonusFunction(ABC):
    """Maps earned bonus points to a fraction of the maximum bonus."""

    kind: str

    @abstractmethod
    def fraction(self, earned: float, max_points: float) -> float:
        ...

    def steps_json(self) -> str:
        return "[]"


class LinearBonus(BonusFunction):
    kind = "linear"

    def fraction(self, earned: float, max_points: float) -> float:
        if max_points <= 0:
            return 0.0
        return min(max(earned / max_points, 0.0), 1.0)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, LinearBonus)

    def __repr__(self) -> str:
        return "LinearBonus()"


class ThresholdBonus(BonusFunction):
    """Step function: (points required, percent of max bonus) pairs."""

    kind = "threshold"

    def __init__(self, steps: list[tuple[float, float]]):
        if not steps:
            raise ValidationError("Threshold bonus needs at least one step")

        ordered = sorted((float(points), float(percent)) for points, percent in steps)
        for points, percent in ordered:
            if points < 0:
                raise ValidationError(f"Threshold step points must be >= 0 (got {points:g})")
            if not 0 <= percent <= 100:
                raise ValidationError(f"Threshold step percent must be in [0, 100] (got {percent:g})")

        # Percent must not drop as the point requirement rises
        for (p1, pct1), (p2, pct2) in zip(ordered, ordered[1:]):
            if p1 == p2:
                raise ValidationError(f"Duplicate threshold step at {p1:g} points")
            if pct2 < pct1:
                raise ValidationError(
                    f"Threshold step at {p2:g} points grants less than the step at {p1:g}"
                )

        self.steps: tuple[tuple[float, float], ...] = tuple(ordered)

    def fraction(self, earned: float, max_points: float) -> float:
        reached = [percent for points, percent in self.steps if earned >= points]
        if not reached:
            return 0.0
        return reached[-1] / 100

    def steps_json(self) -> str:
        return json.dumps([list(step) for step in self.steps])

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ThresholdBonus) and other.steps == self.steps

    def __repr__(self) -> str:
        return f"ThresholdBonus(steps={list(self.steps)!r})"


def bonus_function_for(kind: str, steps: list[Any] | None = None) -> BonusFunction:
    """Build the bonus function for a stored ``function`` column value."""
    if kind == LinearBonus.kind:
        return LinearBonus()
    if kind == ThresholdBonus.kind:
        return ThresholdBonus([tuple(step) for step in steps or []])
    raise ValidationError(f"Unknown bonus function '{kind}' (expected linear or threshold)")


@dataclass(frozen=True)
class BonusConfig:
    """Per-course bonus definition."""

    max_points: float
    max_bonus_percent: float
    function: BonusFunction
    timing: BonusTiming
    grade_cap: float

    def validate(self, scheme: GradingScheme) -> None:
        if self.max_points <= 0:
            raise ValidationError("Bonus max_points must be > 0")
        if not 0 < self.max_bonus_percent <= 100:
            raise ValidationError("Bonus max_bonus_percent must be in (0, 100]")
        if not scheme.in_bounds(self.grade_cap):
            raise ValidationError(
                f"Grade cap {self.grade_cap:g} is outside '{scheme.name}' bounds"
            )

    def bonus_percent(self, earned: float) -> float:
        """Relative improvement (0..1) granted for ``earned`` points."""
        return self.function.fraction(earned, self.max_points) * self.max_bonus_percent / 100


@dataclass
class BonusOutcome:
    value: float
    passed: bool
    applied: bool


def apply_bonus(
    base: float,
    scheme: GradingScheme,
    config: BonusConfig,
    earned: float,
) -> BonusOutcome:
    """Apply the bonus for ``earned`` points to ``base``.

    With APPLY_AFTER_PASS the bonus is granted only to a passing base and
    ``passed`` reflects the base. With APPLY_BEFORE_PASS it is always
    granted and ``passed`` reflects the adjusted value.

    The adjusted value never beats ``grade_cap`` unless the base already
    did, and it always stays inside the scheme bounds.
    """
    if config.timing == BonusTiming.APPLY_AFTER_PASS and not scheme.is_passing(base):
        return BonusOutcome(value=base, passed=False, applied=False)

    percent = config.bonus_percent(earned)
    if percent <= 0 or scheme.is_better(base, config.grade_cap) or base == config.grade_cap:
        adjusted = base
    else:
        adjusted = scheme.worse_of(scheme.improve(base, percent), config.grade_cap)
    adjusted = scheme.snap(scheme.clamp(adjusted))

    if config.timing == BonusTiming.APPLY_AFTER_PASS:
        passed = scheme.is_passing(base)
    else:
        passed = scheme.is_passing(adjusted)

    return BonusOutcome(value=adjusted, passed=passed, applied=adjusted != base)
