"""CLI commands for studyrecord.

Schemes:   schemes, add-scheme, add-conversion, convert
Courses:   courses, add-course, course-policy, set-state, complete, delete-course
Grading:   components, add-component, remove-component, bonus, score, grade,
           finalize, recompute
Attempts:  attempt, attempts, activate, reset-active
Degrees:   degrees, add-degree, add-area, update-area, delete-area, eligible,
           map, unmap, progress, gpa, missing, unmapped, delete-degree

Course arguments accept a unique short-name prefix. The database and config
file default to $STUDYRECORD_DB and $STUDYRECORD_CONFIG.
"""

import json
from contextlib import contextmanager
from dataclasses import fields, replace
from pathlib import Path
from typing import Iterator

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from studyrecord import schemas
from studyrecord.config.app_config import AppConfig, load_app_config
from studyrecord.core import attempt_resolver, grade_calculator, progress
from studyrecord.core.bonus import BonusConfig, BonusTiming, bonus_function_for
from studyrecord.core.errors import PolicyViolation, StudyRecordError, ValidationError
from studyrecord.core.grading_schemes import (
    GradingScheme,
    add_conversion as do_add_conversion,
    convert as do_convert,
    list_schemes,
    register_scheme,
)
from studyrecord.core.policy import (
    ActiveAttemptStrategy,
    PolicyOverride,
    effective_policy,
    get_course_policy,
    set_course_policy,
)
from studyrecord.db.courses_repository import (
    CourseRecord,
    create_course,
    delete_course as do_delete_course,
    get_course_by_short_name,
    list_courses,
    set_course_state,
)
from studyrecord.db.database import DEFAULT_DB_PATH, get_db_path, init_db
from studyrecord.db.degrees_repository import (
    AreaDefinition,
    DegreeRecord,
    add_area as do_add_area,
    add_possible_category,
    create_degree,
    delete_area as do_delete_area,
    delete_degree as do_delete_degree,
    get_area,
    list_degrees,
    map_course,
    require_degree,
    unmap_course,
    update_area as do_update_area,
)
from studyrecord.utils.validators import (
    AmbiguousCourseError,
    CourseNotFoundError,
    resolve_course_name,
)

app = typer.Typer(
    name="study",
    help="Academic record: grades, exam attempts and degree progress.",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    db: Path = typer.Option(
        DEFAULT_DB_PATH, "--db", envvar="STUDYRECORD_DB", help="SQLite database file"
    ),
    config: Path | None = typer.Option(
        None, "--config", envvar="STUDYRECORD_CONFIG", help="YAML config file"
    ),
) -> None:
    """Open (and create if needed) the record database."""
    init_db(db)
    ctx.obj = load_app_config(config) if config else load_app_config(force_reload=True)


# =============================================================================
# HELPERS
# =============================================================================


@contextmanager
def _engine_errors() -> Iterator[None]:
    """Print engine errors in red and exit with code 1."""
    try:
        yield
    except PolicyViolation as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        console.print(f"  [dim]Policy:[/dim] {escape(e.policy.describe())}")
        console.print(f"  [yellow]Suggestion:[/yellow] {escape(e.suggestion)}")
        raise typer.Exit(code=1)
    except StudyRecordError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1)


def _resolve_course_or_exit(prefix: str) -> CourseRecord:
    """Resolve a short-name prefix to a course, or exit with a helpful error."""
    candidates = [course.short_name for course in list_courses()]
    try:
        short_name = resolve_course_name(prefix, candidates)
    except CourseNotFoundError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        if candidates:
            console.print("\nAvailable courses:")
            for c in candidates:
                console.print(f"  - {c}")
        raise typer.Exit(code=1)
    except AmbiguousCourseError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    return get_course_by_short_name(short_name)


def _resolve_area_id(degree: DegreeRecord, area: str) -> int:
    """Accept an area id or (case-insensitive) name."""
    if area.isdigit():
        return int(area)
    for candidate in degree.areas:
        if candidate.name.lower() == area.lower():
            return candidate.id
    raise ValidationError(f"Degree {degree.id} has no area '{area}'")


def _parse_area_spec(spec: str, counts_towards_gpa: bool) -> AreaDefinition:
    name, sep, ects = spec.rpartition(":")
    if not sep or not name or not ects.strip().isdigit():
        raise ValidationError(f"Area must be NAME:ECTS (got '{spec}')")
    return AreaDefinition(name=name.strip(), required_ects=int(ects), counts_towards_gpa=counts_towards_gpa)


def _parse_points(value: str) -> tuple[float, float | None]:
    earned, sep, maximum = value.partition("/")
    try:
        return float(earned), float(maximum) if sep else None
    except ValueError:
        raise ValidationError(f"Points must be EARNED or EARNED/MAX (got '{value}')") from None


def _parse_step(value: str) -> tuple[float, float]:
    points, sep, percent = value.partition(":")
    try:
        if not sep:
            raise ValueError(value)
        return float(points), float(percent)
    except ValueError:
        raise ValidationError(f"Step must be POINTS:PERCENT (got '{value}')") from None


def _fmt(value: float | None, digits: int = 2) -> str:
    return "-" if value is None else f"{value:.{digits}f}"


def _dump_json(payload) -> str:
    return json.dumps(payload, indent=2)


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]⚠ {escape(warning)}[/yellow]")


# =============================================================================
# SCHEMES
# =============================================================================


@app.command()
def init() -> None:
    """Create the database and install the built-in grading schemes."""
    console.print(f"[green]✓ Database ready:[/green] {get_db_path()}")


@app.command()
def schemes(
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """List registered grading schemes."""
    registered = list_schemes()

    if as_json:
        payload = [schemas.SchemeResponse.model_validate(s).model_dump() for s in registered]
        typer.echo(_dump_json(payload))
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Scheme", style="cyan")
    table.add_column("Best", justify="right")
    table.add_column("Worst", justify="right")
    table.add_column("Pass", justify="right")
    table.add_column("Direction")

    for s in registered:
        direction = "higher is better" if s.higher_is_better else "lower is better"
        table.add_row(s.name, f"{s.best:g}", f"{s.worst:g}", f"{s.pass_threshold:g}", direction)

    console.print(table)


@app.command(name="add-scheme")
def add_scheme(
    name: str = typer.Argument(..., help="Scheme name"),
    scale: str = typer.Option(..., "--scale", help="Values best to worst, comma separated"),
    higher_is_better: bool = typer.Option(
        False, "--higher-is-better/--lower-is-better", help="Scale direction"
    ),
    pass_threshold: float = typer.Option(..., "--pass", help="Pass threshold"),
    discrete: bool = typer.Option(
        False, "--discrete", help="Only the listed scale values are valid grades"
    ),
) -> None:
    """Register a custom grading scheme."""
    with _engine_errors():
        try:
            values = tuple(float(v) for v in scale.split(","))
        except ValueError:
            raise ValidationError(f"Scale must be comma-separated numbers (got '{scale}')") from None

        scheme = register_scheme(
            GradingScheme(
                name=name,
                scale=values,
                higher_is_better=higher_is_better,
                pass_threshold=pass_threshold,
                discrete=discrete,
            )
        )

    console.print(f"[green]✓ Scheme registered:[/green] {scheme.name}")


@app.command(name="add-conversion")
def add_conversion(
    from_scheme: str = typer.Argument(..., help="Source scheme"),
    to_scheme: str = typer.Argument(..., help="Target scheme"),
    from_value: float = typer.Argument(..., help="Grade in the source scheme"),
    to_value: float = typer.Argument(..., help="Grade in the target scheme"),
) -> None:
    """Add one grade conversion entry."""
    with _engine_errors():
        do_add_conversion(from_scheme, to_scheme, from_value, to_value)

    console.print(
        f"[green]✓ Conversion added:[/green] {from_value:g} ({from_scheme}) -> {to_value:g} ({to_scheme})"
    )


@app.command()
def convert(
    value: float = typer.Argument(..., help="Grade to convert"),
    from_scheme: str = typer.Argument(..., help="Source scheme"),
    to_scheme: str = typer.Argument(..., help="Target scheme"),
) -> None:
    """Convert a grade between schemes (exact table lookup)."""
    with _engine_errors():
        result = do_convert(value, from_scheme, to_scheme)

    console.print(f"{value:g} ({from_scheme}) = [bold]{result:g}[/bold] ({to_scheme})")


# =============================================================================
# COURSES
# =============================================================================


@app.command()
def courses(
    all_courses: bool = typer.Option(False, "--all", help="Include dropped and archived"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """List courses."""
    records = list_courses(include_inactive=all_courses)

    if as_json:
        payload = [schemas.CourseResponse.model_validate(c).model_dump(mode="json") for c in records]
        typer.echo(_dump_json(payload))
        return

    if not records:
        console.print("[yellow]No courses yet[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Course", style="cyan")
    table.add_column("ECTS", justify="right")
    table.add_column("Institution")
    table.add_column("Scheme")
    table.add_column("State")

    for c in records:
        table.add_row(c.short_name, str(c.ects), c.institution, c.grading_scheme, c.state.value)

    console.print(table)


@app.command(name="add-course")
def add_course(
    ctx: typer.Context,
    short_name: str = typer.Argument(..., help="Unique short name (e.g., 'ana1')"),
    name: str = typer.Argument(..., help="Full course name"),
    ects: int = typer.Option(..., "--ects", help="ECTS credits"),
    institution: str | None = typer.Option(None, "--institution", "-i", help="Institution"),
    scheme: str | None = typer.Option(None, "--scheme", "-s", help="Grading scheme"),
    external: bool = typer.Option(False, "--external", help="Taken at another institution"),
) -> None:
    """Add a course."""
    config: AppConfig = ctx.obj

    with _engine_errors():
        course = create_course(
            short_name,
            name,
            ects,
            institution or config.defaults.institution,
            scheme or config.defaults.grading_scheme,
            is_external=external,
        )

    console.print(
        f"[green]✓ Course added:[/green] {course.short_name} "
        f"({course.ects} ECTS, {course.institution}, {course.grading_scheme})"
    )


@app.command(name="course-policy")
def course_policy(
    ctx: typer.Context,
    course: str = typer.Argument(..., help="Course short name or prefix"),
    max_attempts: str | None = typer.Option(
        None, "--max-attempts", help="Attempt limit or 'unlimited'"
    ),
    strategy: ActiveAttemptStrategy | None = typer.Option(
        None, "--strategy", help="Active attempt strategy"
    ),
    allow_retake: bool | None = typer.Option(
        None, "--allow-retake/--no-allow-retake", help="Allow retakes after a pass"
    ),
    require_grade: bool | None = typer.Option(
        None, "--require-grade/--no-require-grade", help="Require a passing grade to complete"
    ),
    warn_final: bool | None = typer.Option(
        None, "--warn-final/--no-warn-final", help="Warn when one attempt is left"
    ),
    clear: bool = typer.Option(False, "--clear", help="Remove the course override"),
) -> None:
    """Show or change a course's retake policy override."""
    config: AppConfig = ctx.obj
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        changes = {}
        if max_attempts is not None:
            changes["max_attempts"] = int(max_attempts) if max_attempts.isdigit() else max_attempts
        if strategy is not None:
            changes["strategy"] = strategy.value
        for field_name, value in (
            ("allow_retake_after_pass", allow_retake),
            ("require_grade_for_completion", require_grade),
            ("warn_on_final_attempt", warn_final),
        ):
            if value is not None:
                changes[field_name] = value

        if clear:
            set_course_policy(record.id, PolicyOverride())
        elif changes:
            update = PolicyOverride.from_dict(changes)
            current = get_course_policy(record.id) or PolicyOverride()
            merged = replace(
                current,
                **{
                    f.name: getattr(update, f.name)
                    for f in fields(update)
                    if getattr(update, f.name) is not None
                },
            )
            set_course_policy(record.id, merged)

        policy = effective_policy(record.id, record.institution, config.institutions)

    console.print(f"[bold]{record.short_name}[/bold] ({record.institution})")
    console.print(f"  {escape(policy.describe())}")
    console.print(
        f"  require_grade_for_completion={policy.require_grade_for_completion}, "
        f"warn_on_final_attempt={policy.warn_on_final_attempt}"
    )


@app.command(name="set-state")
def set_state(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    state: str = typer.Argument(..., help="enrolled, completed, dropped or archived"),
) -> None:
    """Change a course's lifecycle state."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        updated = set_course_state(record.id, state)

    console.print(f"[green]✓ {updated.short_name}:[/green] {updated.state.value}")


@app.command()
def complete(
    ctx: typer.Context,
    course: str = typer.Argument(..., help="Course short name or prefix"),
) -> None:
    """Mark a course completed (requires a passing grade if the policy says so)."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        attempt_resolver.complete_course(record.id, config=ctx.obj)

    console.print(f"[green]✓ Completed:[/green] {record.short_name}")


@app.command(name="delete-course")
def delete_course(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Delete a course with its components, attempts and mappings."""
    record = _resolve_course_or_exit(course)

    if not yes:
        confirm = typer.confirm(f"Delete {record.short_name} and all its grades?")
        if not confirm:
            console.print("[yellow]Cancelled[/yellow]")
            raise typer.Exit(code=0)

    do_delete_course(record.id)
    console.print(f"[green]✓ Deleted:[/green] {record.short_name}")


# =============================================================================
# GRADING
# =============================================================================


def _print_final_grade(final: grade_calculator.FinalGrade) -> None:
    if final.pending:
        console.print("[yellow]Final grade: pending[/yellow] (unscored components)")
        return

    status = "[green]passed[/green]" if final.passed else "[red]failed[/red]"
    line = f"Final grade: [bold]{_fmt(final.value)}[/bold] ({final.scheme}, {status})"
    if final.bonus_applied:
        line += f" [dim]base {_fmt(final.base_value)} + bonus[/dim]"
    console.print(line)


@app.command()
def components(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    set_weights: str | None = typer.Option(
        None, "--set", help="Replace components: 'midterm=40,final=60'"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show (or replace) a course's grade components."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        if set_weights:
            pairs = []
            for item in set_weights.split(","):
                name, sep, weight = item.partition("=")
                if not sep:
                    raise ValidationError(f"Component must be NAME=WEIGHT (got '{item}')")
                try:
                    pairs.append((name.strip(), float(weight)))
                except ValueError:
                    raise ValidationError(f"Invalid weight '{weight}'") from None
            grade_calculator.setup_components(record.id, pairs)

        items = grade_calculator.list_components(record.id)
        final = grade_calculator.compute_final_grade(record.id)

    if as_json:
        payload = {
            "components": [
                schemas.ComponentResponse.model_validate(c).model_dump() for c in items
            ],
            "final_grade": schemas.FinalGradeResponse.model_validate(final).model_dump(),
        }
        typer.echo(_dump_json(payload))
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Component", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Done", justify="center")

    for c in items:
        if c.is_bonus:
            weight = "bonus"
            score = "-" if c.points_earned is None else f"{c.points_earned:g}/{c.points_max:g} pts"
        else:
            weight = f"{c.weight:g}%"
            score = _fmt(c.grade)
        table.add_row(c.name, weight, score, "[green]✓[/green]" if c.is_completed else "")

    console.print(table)
    _print_final_grade(final)


@app.command(name="add-component")
def add_component(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    name: str = typer.Argument(..., help="Component name"),
    weight: float = typer.Argument(..., help="Weight in percent"),
    rebalance: bool = typer.Option(
        False, "--rebalance", help="Scale existing weights so the total stays 100"
    ),
) -> None:
    """Add a weighted grade component."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        items = grade_calculator.add_component(record.id, name, weight, rebalance=rebalance)

    total = sum(c.weight for c in items if not c.is_bonus)
    console.print(f"[green]✓ Component added:[/green] {name} (total weight {total:g}%)")


@app.command(name="remove-component")
def remove_component(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    name: str = typer.Argument(..., help="Component name"),
    rebalance: bool = typer.Option(
        True, "--rebalance/--no-rebalance", help="Scale remaining weights back to 100"
    ),
) -> None:
    """Remove a grade component."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        grade_calculator.remove_component(record.id, name, rebalance=rebalance)

    console.print(f"[green]✓ Component removed:[/green] {name}")


@app.command()
def bonus(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    max_points: float = typer.Option(..., "--max-points", help="Maximum bonus points"),
    max_percent: float = typer.Option(..., "--max-percent", help="Maximum improvement in percent"),
    function: str = typer.Option("linear", "--function", help="linear or threshold"),
    step: list[str] | None = typer.Option(
        None, "--step", help="Threshold step POINTS:PERCENT (repeatable)"
    ),
    timing: BonusTiming = typer.Option(
        BonusTiming.APPLY_AFTER_PASS, "--timing", help="When the bonus applies"
    ),
    cap: float = typer.Option(..., "--cap", help="Best grade reachable through the bonus"),
) -> None:
    """Configure a course's bonus."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        steps = [_parse_step(item) for item in step or []]
        config = BonusConfig(
            max_points=max_points,
            max_bonus_percent=max_percent,
            function=bonus_function_for(function, steps),
            timing=timing,
            grade_cap=cap,
        )
        grade_calculator.configure_bonus(record.id, config)

    console.print(
        f"[green]✓ Bonus configured:[/green] {function}, up to {max_percent:g}% "
        f"for {max_points:g} points, cap {cap:g}"
    )


@app.command()
def score(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    component: str = typer.Argument(..., help="Component name ('bonus' for bonus points)"),
    grade: float | None = typer.Option(None, "--grade", "-g", help="Direct grade"),
    points: str | None = typer.Option(None, "--points", "-p", help="EARNED/MAX points"),
    scheme: str | None = typer.Option(None, "--scheme", "-s", help="Scheme of --grade"),
) -> None:
    """Record a component score."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        if points is not None:
            earned, maximum = _parse_points(points)
            if maximum is None and component == grade_calculator.BONUS_COMPONENT:
                result = grade_calculator.record_bonus_points(record.id, earned)
            elif maximum is None:
                raise ValidationError("Points need a maximum: EARNED/MAX")
            else:
                result = grade_calculator.record_score(
                    record.id, component, points=(earned, maximum)
                )
        else:
            result = grade_calculator.record_score(record.id, component, grade=grade, scheme=scheme)

        final = grade_calculator.compute_final_grade(record.id)

    if result.is_bonus:
        console.print(f"[green]✓ Bonus points:[/green] {result.points_earned:g}/{result.points_max:g}")
    else:
        console.print(f"[green]✓ {result.name}:[/green] {_fmt(result.grade)}")
    _print_final_grade(final)


@app.command()
def grade(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Compute a course's final grade."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        final = grade_calculator.compute_final_grade(record.id)

    if as_json:
        typer.echo(schemas.FinalGradeResponse.model_validate(final).model_dump_json(indent=2))
        return

    _print_final_grade(final)


@app.command()
def finalize(
    ctx: typer.Context,
    course: str = typer.Argument(..., help="Course short name or prefix"),
    exam_date: str | None = typer.Option(None, "--date", help="Exam date (YYYY-MM-DD)"),
    force: bool = typer.Option(False, "--force", help="Record despite the retake policy"),
    note: str | None = typer.Option(None, "--note", help="Justification for --force"),
) -> None:
    """Record the computed final grade as an exam attempt."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        snapshot, result = grade_calculator.finalize_grade(
            record.id, exam_date=exam_date, force=force, note=note, config=ctx.obj
        )

    console.print(
        f"[green]✓ Finalized:[/green] {_fmt(snapshot.value)} as attempt "
        f"{result.attempt.attempt_number}"
    )
    _print_warnings(result.warnings)


@app.command()
def recompute(
    ctx: typer.Context,
    course: str = typer.Argument(..., help="Course short name or prefix"),
) -> None:
    """Recompute the latest finalized grade from the current components."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        snapshot = grade_calculator.recompute_final_grade(record.id, config=ctx.obj)

    console.print(f"[green]✓ Recomputed:[/green] {_fmt(snapshot.value)}")


# =============================================================================
# ATTEMPTS
# =============================================================================


def _print_history(history: attempt_resolver.AttemptHistory) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Date")
    table.add_column("Grade", justify="right")
    table.add_column("Result", justify="center")
    table.add_column("Active", justify="center")

    for a in history.attempts:
        result = "[green]pass[/green]" if a.passed else "[red]fail[/red]"
        grade_text = _fmt(a.grade)
        if a.original_scheme:
            grade_text += f" [dim]({a.original_grade:g} {a.original_scheme})[/dim]"
        table.add_row(
            str(a.attempt_number),
            a.exam_date,
            grade_text,
            result,
            "[bold]●[/bold]" if a.is_active else "",
        )

    console.print(table)

    mode = history.mode.value
    if history.reason:
        mode += f" ({escape(history.reason)})"
    remaining = "unlimited" if history.attempts_remaining is None else str(history.attempts_remaining)
    console.print(f"Mode: {mode}  Attempts remaining: {remaining}")


@app.command()
def attempt(
    ctx: typer.Context,
    course: str = typer.Argument(..., help="Course short name or prefix"),
    grade_value: float = typer.Argument(..., metavar="GRADE", help="Grade achieved"),
    exam_date: str | None = typer.Option(None, "--date", help="Exam date (YYYY-MM-DD)"),
    scheme: str | None = typer.Option(None, "--scheme", "-s", help="Scheme of GRADE"),
    force: bool = typer.Option(False, "--force", help="Record despite the retake policy"),
    note: str | None = typer.Option(None, "--note", help="Justification for --force"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Record an exam attempt."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        result = attempt_resolver.add_attempt(
            record.id,
            grade_value,
            exam_date=exam_date,
            force=force,
            note=note,
            scheme=scheme,
            config=ctx.obj,
        )

    if as_json:
        typer.echo(schemas.AttemptResultResponse.model_validate(result).model_dump_json(indent=2))
        return

    active = "active" if result.attempt.is_active else "inactive"
    console.print(
        f"[green]✓ Attempt {result.attempt.attempt_number} recorded:[/green] "
        f"{_fmt(result.attempt.grade)} ({active})"
    )
    _print_warnings(result.warnings)


@app.command()
def attempts(
    ctx: typer.Context,
    course: str = typer.Argument(..., help="Course short name or prefix"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show a course's exam attempts."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        history = attempt_resolver.attempt_history(record.id, config=ctx.obj)

    if as_json:
        typer.echo(schemas.AttemptHistoryResponse.model_validate(history).model_dump_json(indent=2))
        return

    if not history.attempts:
        console.print(f"[yellow]No attempts for {record.short_name}[/yellow]")
        return

    _print_history(history)


@app.command()
def activate(
    ctx: typer.Context,
    course: str = typer.Argument(..., help="Course short name or prefix"),
    attempt_number: int | None = typer.Argument(None, help="Attempt number"),
    best: bool = typer.Option(False, "--best", help="Activate the best attempt"),
    reason: str = typer.Option("", "--reason", "-r", help="Why the choice is made manually"),
) -> None:
    """Manually choose the active attempt."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        history = attempt_resolver.set_active(
            record.id, attempt_number=attempt_number, best=best, reason=reason, config=ctx.obj
        )

    console.print(
        f"[green]✓ Active attempt:[/green] {history.active.attempt_number} (manual)"
    )


@app.command(name="reset-active")
def reset_active(
    ctx: typer.Context,
    course: str = typer.Argument(..., help="Course short name or prefix"),
) -> None:
    """Let the retake policy choose the active attempt again."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        history = attempt_resolver.reset_to_policy(record.id, config=ctx.obj)

    active = history.active
    console.print(
        f"[green]✓ Policy mode:[/green] active attempt "
        f"{active.attempt_number if active else '-'}"
    )


# =============================================================================
# DEGREES AND PROGRESS
# =============================================================================


@app.command()
def degrees(
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """List degrees and their areas."""
    records = list_degrees()

    if as_json:
        payload = [schemas.DegreeResponse.model_validate(d).model_dump() for d in records]
        typer.echo(_dump_json(payload))
        return

    if not records:
        console.print("[yellow]No degrees yet[/yellow]")
        return

    for d in records:
        console.print(
            f"[bold]{d.id}[/bold] {d.name} ({d.degree_type}, {d.institution}, "
            f"{d.total_ects_required} ECTS)"
        )
        for area in d.areas:
            gpa = "" if area.counts_towards_gpa else " [dim](no GPA)[/dim]"
            console.print(f"    {area.id}: {area.name} {area.required_ects} ECTS{gpa}")


@app.command(name="add-degree")
def add_degree(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Degree name"),
    degree_type: str = typer.Option(..., "--type", "-t", help="bachelor, master or phd"),
    ects: int = typer.Option(..., "--ects", help="Total ECTS required"),
    institution: str | None = typer.Option(None, "--institution", "-i", help="Institution"),
    scheme: str | None = typer.Option(None, "--scheme", "-s", help="Scheme the GPA is reported in"),
    area: list[str] | None = typer.Option(None, "--area", help="Area NAME:ECTS (repeatable)"),
    non_gpa_area: list[str] | None = typer.Option(
        None, "--non-gpa-area", help="Area NAME:ECTS excluded from GPA (repeatable)"
    ),
) -> None:
    """Add a degree programme with its areas."""
    config: AppConfig = ctx.obj

    with _engine_errors():
        areas = [_parse_area_spec(spec, True) for spec in area or []]
        areas += [_parse_area_spec(spec, False) for spec in non_gpa_area or []]
        degree = create_degree(
            degree_type,
            name,
            institution or config.defaults.institution,
            ects,
            scheme or config.defaults.grading_scheme,
            areas=areas,
        )

    console.print(f"[green]✓ Degree added:[/green] {degree.name} (id {degree.id}, {len(degree.areas)} areas)")


@app.command(name="add-area")
def add_area(
    degree_id: int = typer.Argument(..., help="Degree ID"),
    name: str = typer.Argument(..., help="Area name"),
    required_ects: int = typer.Argument(..., help="ECTS required in the area"),
    gpa: bool = typer.Option(True, "--gpa/--no-gpa", help="Counts towards the GPA"),
) -> None:
    """Add an area to a degree."""
    with _engine_errors():
        record = do_add_area(degree_id, name, required_ects, counts_towards_gpa=gpa)

    console.print(f"[green]✓ Area added:[/green] {record.name} (id {record.id})")


@app.command(name="update-area")
def update_area(
    area_id: int = typer.Argument(..., help="Area ID"),
    name: str | None = typer.Option(None, "--name", help="New area name"),
    required_ects: int | None = typer.Option(None, "--ects", help="ECTS required in the area"),
    gpa: bool = typer.Option(False, "--gpa", help="Area counts towards the GPA"),
    no_gpa: bool = typer.Option(False, "--no-gpa", help="Area does not count towards the GPA"),
    order: int | None = typer.Option(None, "--order", help="Display position"),
) -> None:
    """Change an area of a degree."""
    with _engine_errors():
        if gpa and no_gpa:
            raise ValidationError("Use either --gpa or --no-gpa")
        counts_towards_gpa = gpa if gpa or no_gpa else None
        record = do_update_area(
            area_id,
            name=name,
            required_ects=required_ects,
            counts_towards_gpa=counts_towards_gpa,
            display_order=order,
        )

    gpa_text = "counts towards GPA" if record.counts_towards_gpa else "no GPA"
    console.print(
        f"[green]✓ Area updated:[/green] {record.name} ({record.required_ects} ECTS, {gpa_text})"
    )


@app.command(name="delete-area")
def delete_area(
    area_id: int = typer.Argument(..., help="Area ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Delete a degree area with its eligibilities and mappings."""
    area = get_area(area_id)
    if area is None:
        console.print(f"[red]✗ Area {area_id} not found[/red]")
        raise typer.Exit(code=1)

    if not yes:
        confirm = typer.confirm(f"Delete area '{area.name}' and all its mappings?")
        if not confirm:
            console.print("[yellow]Cancelled[/yellow]")
            raise typer.Exit(code=0)

    do_delete_area(area_id)
    console.print(f"[green]✓ Deleted area:[/green] {area.name}")


@app.command()
def eligible(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    degree_id: int = typer.Argument(..., help="Degree ID"),
    area: str = typer.Argument(..., help="Area ID or name"),
    recommended: bool = typer.Option(False, "--recommended", help="Recommended choice"),
    note: str | None = typer.Option(None, "--note", help="Free-form note"),
) -> None:
    """Mark a course as eligible for a degree area."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        degree = require_degree(degree_id)
        area_id = _resolve_area_id(degree, area)
        add_possible_category(record.id, degree_id, area_id, is_recommended=recommended, notes=note)

    console.print(f"[green]✓ Eligible:[/green] {record.short_name} -> degree {degree_id}, area {area}")


@app.command(name="map")
def map_command(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    degree_id: int = typer.Argument(..., help="Degree ID"),
    area: str = typer.Argument(..., help="Area ID or name"),
    ects: int | None = typer.Option(None, "--ects", help="ECTS counted in this area"),
) -> None:
    """Count a course toward a degree area."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        degree = require_degree(degree_id)
        area_id = _resolve_area_id(degree, area)
        map_course(record.id, degree_id, area_id, ects_override=ects)

    console.print(f"[green]✓ Mapped:[/green] {record.short_name} -> degree {degree_id}, area {area}")


@app.command()
def unmap(
    course: str = typer.Argument(..., help="Course short name or prefix"),
    degree_id: int = typer.Argument(..., help="Degree ID"),
    area: str = typer.Argument(..., help="Area ID or name"),
) -> None:
    """Remove a course mapping."""
    record = _resolve_course_or_exit(course)

    with _engine_errors():
        degree = require_degree(degree_id)
        unmap_course(record.id, degree_id, _resolve_area_id(degree, area))

    console.print(f"[green]✓ Unmapped:[/green] {record.short_name} from degree {degree_id}")


@app.command(name="progress")
def progress_command(
    degree_id: int = typer.Argument(..., help="Degree ID"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show ECTS and GPA progress of a degree."""
    with _engine_errors():
        report = progress.degree_progress(degree_id)

    if as_json:
        typer.echo(schemas.DegreeProgressResponse.model_validate(report).model_dump_json(indent=2))
        return

    degree = report.degree
    console.print(f"[bold]{degree.name}[/bold] ({degree.degree_type}, {degree.institution})")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Area", style="cyan")
    table.add_column("ECTS", justify="right")
    table.add_column("GPA", justify="right")
    table.add_column("Courses")

    for area in report.areas:
        gpa = _fmt(area.gpa) if area.counts_towards_gpa else "[dim]n/a[/dim]"
        counted = ", ".join(c.short_name for c in area.courses if c.counted)
        table.add_row(area.name, f"{area.earned_ects}/{area.required_ects}", gpa, counted)

    console.print(table)
    console.print(
        f"Total: {report.total_earned}/{report.total_required} ECTS  "
        f"GPA: {_fmt(report.gpa)} ({degree.grading_scheme})"
    )


@app.command()
def gpa(
    ctx: typer.Context,
    scheme: str | None = typer.Option(
        None, "--scheme", "-s", help="Scheme to report the GPA in (default from config)"
    ),
    include_non_gpa: bool = typer.Option(
        False, "--include-non-gpa", help="Also count courses outside GPA areas"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show the overall GPA across all passed courses."""
    with _engine_errors():
        config: AppConfig = ctx.obj
        report = progress.overall_gpa(
            scheme or config.defaults.grading_scheme, include_non_gpa=include_non_gpa
        )

    if as_json:
        typer.echo(schemas.OverallGpaResponse.model_validate(report).model_dump_json(indent=2))
        return

    if report.gpa is None:
        console.print("[dim]No passed courses count towards the GPA yet.[/dim]")
        return

    console.print(
        f"Overall GPA: [bold]{report.gpa:.2f}[/bold] ({report.scheme}) over "
        f"{report.total_courses} courses, {report.total_ects} ECTS"
    )


@app.command()
def missing(
    degree_id: int = typer.Argument(..., help="Degree ID"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show the ECTS still missing per area."""
    with _engine_errors():
        report = progress.missing(degree_id)

    if as_json:
        typer.echo(schemas.MissingRequirementsResponse.model_validate(report).model_dump_json(indent=2))
        return

    for area in report.areas:
        if area.missing_ects:
            console.print(f"  {area.name}: [yellow]{area.missing_ects}[/yellow] ECTS missing")
        else:
            console.print(f"  {area.name}: [green]✓ complete[/green]")
    console.print(f"Total missing: [bold]{report.total_missing}[/bold] ECTS")


@app.command()
def unmapped(
    degree_id: int | None = typer.Option(None, "--degree", "-d", help="Only this degree"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """List eligible courses that are not mapped yet."""
    with _engine_errors():
        items = progress.unmapped_courses(degree_id)

    if as_json:
        payload = [schemas.UnmappedCourseResponse.model_validate(u).model_dump() for u in items]
        typer.echo(_dump_json(payload))
        return

    if not items:
        console.print("[green]✓ All eligible courses are mapped[/green]")
        return

    for u in items:
        areas = ", ".join(str(a) for a in u.area_ids)
        console.print(f"  {u.short_name}: degree {u.degree_id}, areas {areas}")


@app.command(name="delete-degree")
def delete_degree(
    degree_id: int = typer.Argument(..., help="Degree ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Delete a degree with its areas and mappings."""
    with _engine_errors():
        degree = require_degree(degree_id)

    if not yes:
        confirm = typer.confirm(f"Delete degree '{degree.name}' and all its mappings?")
        if not confirm:
            console.print("[yellow]Cancelled[/yellow]")
            raise typer.Exit(code=0)

    do_delete_degree(degree_id)
    console.print(f"[green]✓ Deleted degree:[/green] {degree.name}")


if __name__ == "__main__":
    app()
