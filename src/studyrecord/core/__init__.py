"""Grade and progress resolution engine.

Modules:
- grading_schemes: scheme registry and grade conversion
- grade_calculator: weighted components, bonus, final grade
- bonus: bonus functions (linear, threshold)
- attempt_resolver: exam attempts and the active attempt
- policy: retake policy override chain
- progress: ECTS and GPA aggregation per area and degree
- errors: error taxonomy
"""

__all__ = [
    "grading_schemes",
    "grade_calculator",
    "bonus",
    "attempt_resolver",
    "policy",
    "progress",
    "errors",
]
