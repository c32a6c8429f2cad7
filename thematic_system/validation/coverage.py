"""Category coverage checks over a completed classification."""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from ..models import Assignment, Category

DOMINANCE_THRESHOLD = 0.8


@dataclass
class CoverageReport:
    distribution: Dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0
    warnings: List[str] = field(default_factory=list)


def check_category_coverage(categories: Sequence[Category], assignments: Sequence[Assignment],
                            dominance_threshold: float = DOMINANCE_THRESHOLD) -> CoverageReport:
    """Flag categories nobody was assigned to and categories that swallow most respondents."""
    counts = Counter(a.category_id for a in assignments)
    report = CoverageReport(distribution={c.category_id: counts.get(c.category_id, 0) for c in categories})
    if assignments:
        report.average_confidence = round(sum(a.confidence for a in assignments) / len(assignments), 3)

    for category in categories:
        if counts.get(category.category_id, 0) == 0:
            report.warnings.append(f"Category '{category.title}' has no assigned respondents")

    total = len(assignments)
    if total and len(categories) > 1:
        for category in categories:
            share = counts.get(category.category_id, 0) / total
            if share > dominance_threshold:
                report.warnings.append(
                    f"Category '{category.title}' holds {share:.0%} of respondents; categories may be too broad"
                )
    return report
