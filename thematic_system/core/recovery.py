"""
Recovery-strategy synthesis for a finished run.

Recommendations are advisory; nothing here re-runs a task.
"""

from typing import List, Sequence

from ..config import ScoringPolicy
from ..models import RecoveryRecommendation, TaskResult, TaskStatus

RETRY_EXTERNALLY = "retry_externally"
TARGETED_COMPONENT_RETRY = "targeted_component_retry"


def synthesize_recommendations(results: Sequence[TaskResult], policy: ScoringPolicy = None) -> List[RecoveryRecommendation]:
    """
    Build recovery recommendations from task results.

    Failed tasks get a single "retry externally" recommendation. Partially
    successful tasks scoring below the targeted-retry threshold get a
    "targeted component retry" recommendation naming their missing components.
    """
    policy = policy or ScoringPolicy()
    recommendations = []

    failed = [r for r in results if r.status == TaskStatus.FAILURE]
    if failed:
        recommendations.append(RecoveryRecommendation(
            strategy=RETRY_EXTERNALLY,
            task_ids=[r.task_id for r in failed],
            description=f"{len(failed)} tasks failed; re-run them in a separate invocation",
            components={r.task_id: [f.component for f in r.component_failures] for r in failed},
        ))

    weak = [
        r for r in results
        if r.status == TaskStatus.PARTIAL_SUCCESS
        and r.quality_score is not None
        and r.quality_score < policy.targeted_retry_below
    ]
    if weak:
        recommendations.append(RecoveryRecommendation(
            strategy=TARGETED_COMPONENT_RETRY,
            task_ids=[r.task_id for r in weak],
            description=(
                f"{len(weak)} partially successful tasks scored below {policy.targeted_retry_below}; "
                "regenerate only their missing components"
            ),
            components={r.task_id: [f.component for f in r.component_failures] for r in weak},
        ))
    return recommendations
