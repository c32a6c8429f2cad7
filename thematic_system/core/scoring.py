"""
Task quality scoring.

A completed task starts at 100 and loses a configurable penalty for each
missing output component.
"""

from typing import List, Optional, Tuple

from ..config import ScoringPolicy
from ..models import ComponentFailure, QualityLabel, Severity


def assess_components(state) -> List[ComponentFailure]:
    """List the output components missing from a completed pipeline state."""
    failures = []
    if not state.categories:
        failures.append(ComponentFailure(
            component="categories", severity=Severity.HIGH, description="No categories were generated"))
    if not state.assignments:
        failures.append(ComponentFailure(
            component="assignments", severity=Severity.HIGH, description="No respondents were classified"))
    if state.excerpt_count == 0:
        failures.append(ComponentFailure(
            component="excerpts", severity=Severity.MEDIUM, description="No supporting excerpts were produced"))
    if state.summary is None or state.summary.placeholder:
        failures.append(ComponentFailure(
            component="summary", severity=Severity.LOW,
            description=state.summary_warning or "No generated summary available"))
    validation = state.validation
    if validation is None or not validation.passed:
        attempts = validation.attempts if validation else 0
        errors = len(validation.errors) if validation else 0
        failures.append(ComponentFailure(
            component="validation", severity=Severity.MEDIUM,
            description=f"Evidence validation did not pass after {attempts} attempts ({errors} errors)"))
    return failures


def penalty_for(component: str, policy: ScoringPolicy) -> int:
    return {
        "categories": policy.no_categories,
        "assignments": policy.no_assignments,
        "excerpts": policy.no_excerpts,
        "summary": policy.no_summary,
        "validation": policy.validation_failed,
    }.get(component, 0)


def quality_label(score: int, policy: ScoringPolicy) -> QualityLabel:
    if score >= policy.good:
        return QualityLabel.GOOD
    if score >= policy.acceptable:
        return QualityLabel.ACCEPTABLE
    return QualityLabel.POOR


def score_components(failures: List[ComponentFailure], policy: Optional[ScoringPolicy] = None) -> Tuple[int, QualityLabel]:
    """Score a completed task from its missing components, floored at 0."""
    policy = policy or ScoringPolicy()
    score = 100 - sum(penalty_for(f.component, policy) for f in failures)
    score = max(0, score)
    return score, quality_label(score, policy)
