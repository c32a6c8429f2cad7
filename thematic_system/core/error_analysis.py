"""
Cross-task error analysis for a finished run.

Categorizes every recorded failure, looks for patterns that span several
tasks, and rates the run's overall quality impact.
"""

import math
import re
from enum import Enum
from typing import Dict, List, Sequence, Tuple

from ..models import ErrorAnalysis, ErrorPattern, Severity, TaskResult, TaskStatus


class ErrorCategory(str, Enum):
    LLM_FAILURE = "llm_failure"
    VALIDATION_FAILURE = "validation_failure"
    DATA_QUALITY = "data_quality"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    NETWORK_ERROR = "network_error"
    PARSING_ERROR = "parsing_error"
    WORKFLOW_ERROR = "workflow_error"
    UNKNOWN = "unknown"


_CATEGORY_PATTERNS = [
    (ErrorCategory.QUOTA_EXCEEDED, re.compile(r"rate.?limit|quota|\b429\b", re.I)),
    (ErrorCategory.TIMEOUT, re.compile(r"timeout|timed out", re.I)),
    (ErrorCategory.NETWORK_ERROR, re.compile(r"network|connection", re.I)),
    (ErrorCategory.LLM_FAILURE, re.compile(r"\bllm\b|openai|anthropic|\bapi\b|generat(or|ion) failed|provider", re.I)),
    (ErrorCategory.VALIDATION_FAILURE, re.compile(r"validation|hallucinat|excerpt|verbatim", re.I)),
    (ErrorCategory.PARSING_ERROR, re.compile(r"json|pars(e|ing)|format|unterminated", re.I)),
    (ErrorCategory.WORKFLOW_ERROR, re.compile(r"stage|pipeline|state", re.I)),
    (ErrorCategory.DATA_QUALITY, re.compile(r"\bdata\b|respon(se|dent)|answer", re.I)),
]

_GENERATOR_CATEGORIES = {ErrorCategory.LLM_FAILURE, ErrorCategory.QUOTA_EXCEEDED, ErrorCategory.TIMEOUT}
_CLASSIFICATION = re.compile(r"classif", re.I)
_EVIDENCE = re.compile(r"hallucinat|excerpt|evidence", re.I)


def categorize_error(message: str) -> ErrorCategory:
    """Map one error message onto an ErrorCategory; first matching pattern wins."""
    if not message or not isinstance(message, str):
        return ErrorCategory.UNKNOWN
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(message):
            return category
    return ErrorCategory.UNKNOWN


def _collect(results: Sequence[TaskResult]) -> List[Tuple[str, str, str]]:
    """(task_id, component, message) for every failure recorded on the results."""
    entries = []
    for result in results:
        if result.status == TaskStatus.SKIPPED:
            continue
        for failure in result.component_failures:
            entries.append((result.task_id, failure.component, failure.description))
        for message in result.errors:
            entries.append((result.task_id, "", message))
    return entries


def _tasks_matching(entries, predicate) -> List[str]:
    seen = []
    for task_id, component, message in entries:
        if predicate(component, message) and task_id not in seen:
            seen.append(task_id)
    return seen


def quality_impact(weighted_completion_rate: float) -> str:
    completeness = weighted_completion_rate * 100
    if completeness >= 90:
        return "high"
    if completeness >= 50:
        return "medium"
    return "low"


def analyze_results(results: Sequence[TaskResult], weighted_completion_rate: float = 0.0) -> ErrorAnalysis:
    """
    Summarize the failures recorded across a run.

    Args:
        results: Task results in submission order
        weighted_completion_rate: Run-level weighted completion rate in [0, 1]

    Returns:
        ErrorAnalysis with per-category counts, cross-task patterns and quality impact
    """
    entries = _collect(results)
    counts: Dict[str, int] = {}
    tasks_by_category: Dict[str, List[str]] = {}
    for task_id, _, message in entries:
        category = categorize_error(message).value
        counts[category] = counts.get(category, 0) + 1
        affected = tasks_by_category.setdefault(category, [])
        if task_id not in affected:
            affected.append(task_id)

    considered = [r for r in results if r.status != TaskStatus.SKIPPED]
    patterns = []

    generator_tasks = _tasks_matching(entries, lambda c, m: categorize_error(m) in _GENERATOR_CATEGORIES)
    if considered and generator_tasks and len(generator_tasks) >= math.ceil(len(considered) * 0.5):
        patterns.append(ErrorPattern(
            pattern="widespread_generator_issues",
            description="Most tasks hit generator failures; check provider status, quotas and connectivity",
            affected_tasks=generator_tasks,
            severity=Severity.CRITICAL,
        ))

    classification_tasks = _tasks_matching(
        entries, lambda c, m: c in ("assignments", "classify") or bool(_CLASSIFICATION.search(m)))
    if len(classification_tasks) >= 2:
        patterns.append(ErrorPattern(
            pattern="classification_issues",
            description="Several tasks failed to classify respondents; review batch completeness",
            affected_tasks=classification_tasks,
            severity=Severity.HIGH,
        ))

    evidence_tasks = _tasks_matching(
        entries, lambda c, m: c in ("validation", "excerpts", "extract_evidence") or bool(_EVIDENCE.search(m)))
    if len(evidence_tasks) >= 2:
        patterns.append(ErrorPattern(
            pattern="evidence_validation_issues",
            description="Several tasks produced unverifiable excerpts; review answer formatting and prompts",
            affected_tasks=evidence_tasks,
            severity=Severity.MEDIUM,
        ))

    data_tasks = _tasks_matching(entries, lambda c, m: categorize_error(m) == ErrorCategory.DATA_QUALITY)
    if considered and data_tasks and len(data_tasks) >= math.ceil(len(considered) * 0.3):
        patterns.append(ErrorPattern(
            pattern="data_quality_issues",
            description="Input records look malformed or empty for several tasks",
            affected_tasks=data_tasks,
            severity=Severity.HIGH,
        ))

    return ErrorAnalysis(
        counts_by_category=counts,
        tasks_by_category=tasks_by_category,
        patterns=patterns,
        quality_impact=quality_impact(weighted_completion_rate),
    )
