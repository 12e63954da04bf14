"""Grading scheme registry.

Responsibilities:
- Store scale definitions (direction, pass threshold, bounds)
- Store pairwise conversion tables between schemes
- Exact-match grade conversion (no interpolation)
- Direction-aware comparisons used by the calculator and the resolver

Built-in schemes (seeded by init_db):
- german: 1.0 (best) .. 5.0, pass <= 4.0
- ects: A..F stored as 1..6, pass <= 5 (E)
- us: 4.0 (best) .. 0.0, pass >= 2.0
- percentage: 100 .. 0, pass >= 50
- passfail: 1 (pass) / 0 (fail), discrete
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field

import structlog

from studyrecord.core.errors import (
    InvalidScheme,
    UnknownScheme,
    UnmappedGradeValue,
    ValidationError,
)
from studyrecord.db.database import use_db
from studyrecord.utils.validators import normalize_scheme_name

logger = structlog.get_logger(__name__)

# Conversion keys are rounded so 1.3 and 1.3000000000000003 hit the same entry
_KEY_PRECISION = 4

# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class GradingScheme:
    """A grade scale with its direction and pass threshold.

    ``scale`` is ordered from best to worst; ``best`` and ``worst`` are its
    ends. A ``discrete`` scheme only admits the values on its scale.
    """

    name: str
    scale: tuple[float, ...]
    higher_is_better: bool
    pass_threshold: float
    discrete: bool = False

    @property
    def best(self) -> float:
        return self.scale[0]

    @property
    def worst(self) -> float:
        return self.scale[-1]

    @property
    def lower_is_better(self) -> bool:
        return not self.higher_is_better

    def validate(self) -> None:
        """Check scale monotonicity and threshold bounds.

        Raises:
            InvalidScheme: If the definition is inconsistent
        """
        if not self.name:
            raise InvalidScheme("Scheme name must not be empty")
        if len(self.scale) < 2:
            raise InvalidScheme(f"Scheme '{self.name}' needs at least two scale values")

        for better, worse in zip(self.scale, self.scale[1:]):
            if not self.is_better(better, worse):
                direction = "decreasing" if self.higher_is_better else "increasing"
                raise InvalidScheme(
                    f"Scale of '{self.name}' must be strictly {direction} "
                    f"from best to worst ({better:g} -> {worse:g})"
                )

        if not self.in_bounds(self.pass_threshold):
            raise InvalidScheme(
                f"Pass threshold {self.pass_threshold:g} of '{self.name}' is outside "
                f"[{self.worst:g}, {self.best:g}]"
            )

    def is_better(self, a: float, b: float) -> bool:
        """True if grade ``a`` is strictly better than grade ``b``."""
        return a > b if self.higher_is_better else a < b

    def better_of(self, a: float, b: float) -> float:
        return a if self.is_better(a, b) else b

    def worse_of(self, a: float, b: float) -> float:
        return b if self.is_better(a, b) else a

    def is_passing(self, value: float) -> bool:
        if self.higher_is_better:
            return value >= self.pass_threshold
        return value <= self.pass_threshold

    def in_bounds(self, value: float) -> bool:
        low, high = sorted((self.best, self.worst))
        return low <= value <= high

    def clamp(self, value: float) -> float:
        low, high = sorted((self.best, self.worst))
        return min(max(value, low), high)

    def on_scale(self, value: float) -> bool:
        return any(_key(value) == _key(v) for v in self.scale)

    def validate_grade(self, value: float) -> float:
        """Return ``value`` as float, or raise if it is not a grade of this scheme."""
        value = float(value)
        if not self.in_bounds(value):
            raise ValidationError(
                f"Grade {value:g} is outside '{self.name}' bounds "
                f"[{self.worst:g}, {self.best:g}]"
            )
        if self.discrete and not self.on_scale(value):
            allowed = ", ".join(f"{v:g}" for v in self.scale)
            raise ValidationError(f"Grade {value:g} is not one of '{self.name}' values ({allowed})")
        return value

    def snap(self, value: float) -> float:
        """Nearest scale value for discrete schemes (ties go to the better one)."""
        if not self.discrete:
            return value
        return min(self.scale, key=lambda v: abs(v - value))

    def from_fraction(self, fraction: float) -> float:
        """Linear interpolation: 0.0 -> worst, 1.0 -> best."""
        fraction = min(max(fraction, 0.0), 1.0)
        return self.snap(self.worst + (self.best - self.worst) * fraction)

    def improve(self, value: float, percent: float) -> float:
        """Move ``value`` towards the best end by ``percent`` (0..1) of itself."""
        if self.lower_is_better:
            return value * (1 - percent)
        return value * (1 + percent)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "scale": list(self.scale),
            "higher_is_better": self.higher_is_better,
            "pass_threshold": self.pass_threshold,
            "best": self.best,
            "worst": self.worst,
            "discrete": self.discrete,
        }


@dataclass
class SchemeRegistry:
    """In-memory snapshot of schemes and conversion tables."""

    schemes: dict[str, GradingScheme] = field(default_factory=dict)
    conversions: dict[tuple[str, str, float], float] = field(default_factory=dict)

    def get(self, name: str) -> GradingScheme:
        key = normalize_scheme_name(name)
        scheme = self.schemes.get(key)
        if scheme is None:
            raise UnknownScheme(name)
        return scheme

    def convert(self, value: float, from_scheme: str, to_scheme: str) -> float:
        """Convert a grade by exact table lookup.

        Raises:
            UnknownScheme: If either scheme is not registered
            UnmappedGradeValue: If the table has no entry for ``value``
        """
        source = self.get(from_scheme)
        target = self.get(to_scheme)
        if source.name == target.name:
            return float(value)

        converted = self.conversions.get((source.name, target.name, _key(value)))
        if converted is None:
            raise UnmappedGradeValue(float(value), source.name, target.name)
        return converted

    def is_passing(self, value: float, scheme: str) -> bool:
        return self.get(scheme).is_passing(value)


# =============================================================================
# BUILT-IN SCHEMES
# =============================================================================

GERMAN = GradingScheme(
    name="german",
    scale=(1.0, 1.3, 1.7, 2.0, 2.3, 2.7, 3.0, 3.3, 3.7, 4.0, 5.0),
    higher_is_better=False,
    pass_threshold=4.0,
)

ECTS = GradingScheme(
    name="ects",
    scale=(1.0, 2.0, 3.0, 4.0, 5.0, 6.0),
    higher_is_better=False,
    pass_threshold=5.0,
)

US = GradingScheme(
    name="us",
    scale=(4.0, 3.7, 3.3, 3.0, 2.7, 2.3, 2.0, 1.7, 1.3, 1.0, 0.0),
    higher_is_better=True,
    pass_threshold=2.0,
)

PERCENTAGE = GradingScheme(
    name="percentage",
    scale=(100.0, 90.0, 80.0, 70.0, 60.0, 50.0, 0.0),
    higher_is_better=True,
    pass_threshold=50.0,
)

PASS_FAIL = GradingScheme(
    name="passfail",
    scale=(1.0, 0.0),
    higher_is_better=True,
    pass_threshold=1.0,
    discrete=True,
)

BUILTIN_SCHEMES = (GERMAN, ECTS, US, PERCENTAGE, PASS_FAIL)


def _german_to_ects(grade: float) -> float:
    if grade <= 1.5:
        return 1.0  # A
    if grade <= 2.5:
        return 2.0  # B
    if grade <= 3.5:
        return 3.0  # C
    if grade <= 4.0:
        return 4.0  # D
    return 6.0  # F


# ECTS letter -> percentage midpoint -> German grade
_ECTS_TO_GERMAN = {1.0: 1.3, 2.0: 1.9, 3.0: 2.5, 4.0: 3.1, 5.0: 3.7, 6.0: 4.6}


def builtin_conversions() -> list[tuple[str, str, float, float]]:
    """Conversion entries installed with the built-in schemes."""
    entries: list[tuple[str, str, float, float]] = []

    for grade in GERMAN.scale:
        us_value = round(min(max(5.0 - grade, 0.0), 4.0), 1)
        entries.append(("german", "us", grade, us_value))
        entries.append(("german", "ects", grade, _german_to_ects(grade)))

    for gpa in US.scale:
        entries.append(("us", "german", gpa, round(min(max(5.0 - gpa, 1.0), 5.0), 1)))

    for letter, grade in _ECTS_TO_GERMAN.items():
        entries.append(("ects", "german", letter, grade))

    return entries


# =============================================================================
# PERSISTENCE
# =============================================================================


def _key(value: float) -> float:
    return round(float(value), _KEY_PRECISION)


def _row_to_scheme(row) -> GradingScheme:
    return GradingScheme(
        name=row["name"],
        scale=tuple(json.loads(row["scale"])),
        higher_is_better=bool(row["higher_is_better"]),
        pass_threshold=row["pass_threshold"],
        discrete=bool(row["is_discrete"]),
    )


def _insert_scheme(conn: sqlite3.Connection, scheme: GradingScheme, builtin: bool) -> None:
    conn.execute(
        """
        INSERT INTO grading_schemes (
            name, scale, higher_is_better, pass_threshold, best, worst, is_discrete, is_builtin
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            scheme.name,
            json.dumps(list(scheme.scale)),
            int(scheme.higher_is_better),
            scheme.pass_threshold,
            scheme.best,
            scheme.worst,
            int(scheme.discrete),
            int(builtin),
        ),
    )


def install_builtin_schemes() -> None:
    """Insert built-in schemes and conversions that are not yet present."""
    with use_db() as conn:
        existing = {
            row["name"] for row in conn.execute("SELECT name FROM grading_schemes")
        }
        for scheme in BUILTIN_SCHEMES:
            if scheme.name not in existing:
                _insert_scheme(conn, scheme, builtin=True)

        conn.executemany(
            """
            INSERT OR IGNORE INTO grade_conversions (from_scheme, to_scheme, from_value, to_value)
            VALUES (?, ?, ?, ?)
            """,
            [(f, t, _key(fv), tv) for f, t, fv, tv in builtin_conversions()],
        )

    logger.debug("schemes.builtins_installed", count=len(BUILTIN_SCHEMES))


def register_scheme(
    scheme: GradingScheme,
    conn: sqlite3.Connection | None = None,
) -> GradingScheme:
    """Validate and store a new grading scheme.

    Args:
        scheme: Scheme definition (scale ordered best -> worst)
        conn: Optional connection to join an outer transaction

    Returns:
        The stored scheme (name normalized)

    Raises:
        InvalidScheme: If the scale is not monotonic in the declared
            direction or the pass threshold is out of bounds, or the name
            is already registered
    """
    scheme = GradingScheme(
        name=normalize_scheme_name(scheme.name),
        scale=tuple(float(v) for v in scheme.scale),
        higher_is_better=scheme.higher_is_better,
        pass_threshold=float(scheme.pass_threshold),
        discrete=scheme.discrete,
    )
    scheme.validate()

    with use_db(conn) as db:
        exists = db.execute(
            "SELECT 1 FROM grading_schemes WHERE name = ?", (scheme.name,)
        ).fetchone()
        if exists:
            raise InvalidScheme(f"Scheme '{scheme.name}' is already registered")
        _insert_scheme(db, scheme, builtin=False)

    logger.info("schemes.registered", scheme=scheme.name, values=len(scheme.scale))
    return scheme


def add_conversion(
    from_scheme: str,
    to_scheme: str,
    from_value: float,
    to_value: float,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Add one conversion entry (from_scheme, to_scheme, from_value) -> to_value.

    Raises:
        UnknownScheme: If either scheme is not registered
        ValidationError: If a value is outside its scheme bounds or the
            entry already exists
    """
    with use_db(conn) as db:
        registry = _load_registry(db)
        source = registry.get(from_scheme)
        target = registry.get(to_scheme)
        if source.name == target.name:
            raise ValidationError("Conversion requires two different schemes")

        source.validate_grade(from_value)
        target.validate_grade(to_value)

        key = (source.name, target.name, _key(from_value))
        if key in registry.conversions:
            raise ValidationError(
                f"Conversion for {from_value:g} from '{source.name}' to "
                f"'{target.name}' already exists"
            )

        db.execute(
            """
            INSERT INTO grade_conversions (from_scheme, to_scheme, from_value, to_value)
            VALUES (?, ?, ?, ?)
            """,
            (source.name, target.name, _key(from_value), float(to_value)),
        )

    logger.debug(
        "schemes.conversion_added",
        from_scheme=from_scheme,
        to_scheme=to_scheme,
        from_value=from_value,
    )


def _load_registry(conn: sqlite3.Connection) -> SchemeRegistry:
    schemes = {
        row["name"]: _row_to_scheme(row)
        for row in conn.execute("SELECT * FROM grading_schemes")
    }
    conversions = {
        (row["from_scheme"], row["to_scheme"], _key(row["from_value"])): row["to_value"]
        for row in conn.execute("SELECT * FROM grade_conversions")
    }
    return SchemeRegistry(schemes=schemes, conversions=conversions)


def load_registry(conn: sqlite3.Connection | None = None) -> SchemeRegistry:
    """Load all schemes and conversions into a SchemeRegistry."""
    with use_db(conn, immediate=False) as db:
        return _load_registry(db)


def get_scheme(name: str, conn: sqlite3.Connection | None = None) -> GradingScheme:
    """Get a scheme by name (aliases such as 'de' or 'gpa' accepted).

    Raises:
        UnknownScheme: If the scheme is not registered
    """
    with use_db(conn, immediate=False) as db:
        row = db.execute(
            "SELECT * FROM grading_schemes WHERE name = ?",
            (normalize_scheme_name(name),),
        ).fetchone()

    if row is None:
        raise UnknownScheme(name)

    return _row_to_scheme(row)


def list_schemes() -> list[GradingScheme]:
    """Get all registered schemes ordered by name."""
    with use_db(immediate=False) as db:
        rows = db.execute("SELECT * FROM grading_schemes ORDER BY name").fetchall()

    return [_row_to_scheme(row) for row in rows]


def convert(value: float, from_scheme: str, to_scheme: str) -> float:
    """Convert a grade between schemes by exact lookup.

    Raises:
        UnknownScheme: If either scheme is not registered
        UnmappedGradeValue: If no conversion entry exists
    """
    return load_registry().convert(value, from_scheme, to_scheme)


def is_passing(value: float, scheme: str) -> bool:
    """Check a grade against the scheme's pass threshold."""
    return get_scheme(scheme).is_passing(value)
