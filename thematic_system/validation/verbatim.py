"""
Verbatim excerpt validation (hallucination detection).

Every excerpt offered as evidence must appear word-for-word, modulo
normalization, inside the answer-only text of the respondent it names.
Containment is checked against the full normalized text, so reordered or
paraphrased excerpts fail even when each word exists in the source.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..config import ValidatorConfig
from ..exceptions import HallucinationError
from ..models import Assignment, Category, Excerpt, SourceRecord
from ..text.normalize import answer_only, normalize_text, word_count

logger = logging.getLogger(__name__)

_ELLIPSES = ("...", "…")


@dataclass
class ValidationReport:
    passed: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    counts_by_category: Dict[str, int] = field(default_factory=dict)
    hallucinations: List[HallucinationError] = field(default_factory=list)
    verified: Dict[str, List[Excerpt]] = field(default_factory=dict)
    total_excerpts: int = 0

    @property
    def verified_count(self) -> int:
        return sum(len(items) for items in self.verified.values())


def excerpt_quality(text: str, config: Optional[ValidatorConfig] = None) -> float:
    """
    Score an excerpt's usefulness as evidence in [0, 1].

    Penalizes fragments below the minimum word count, overlong excerpts,
    and excerpts that were visibly truncated with an ellipsis.
    """
    config = config or ValidatorConfig()
    if not text or not text.strip():
        return 0.0
    stripped = text.strip()
    words = word_count(stripped)
    score = 1.0
    if words < config.min_words:
        score -= 0.4
    elif words < 8 or words > 60:
        score -= 0.1
    if len(stripped) > config.max_length:
        score -= 0.3
    if stripped.startswith(_ELLIPSES) or stripped.endswith(_ELLIPSES):
        score -= 0.2
    return max(0.0, min(1.0, round(score, 2)))


class VerbatimValidator:
    """Checks generated excerpts against respondent answer text."""

    def __init__(self, config: Optional[ValidatorConfig] = None):
        self.config = config or ValidatorConfig()

    def normalize(self, text: str) -> str:
        return normalize_text(
            text,
            case_sensitive=self.config.case_sensitive,
            preserve_punctuation=self.config.preserve_punctuation,
        )

    def missing_part(self, excerpt: Excerpt, normalized_source: str) -> Optional[str]:
        """Return the first sub-fragment not contained in the source, or None if all are.

        An empty fragment, such as the tail of "I like ... ", always fails.
        """
        for part in excerpt.parts(self.config.part_separator):
            normalized = self.normalize(part)
            if not normalized or normalized not in normalized_source:
                return part
        return None

    def is_verbatim(self, text: str, source: SourceRecord) -> bool:
        """Convenience check for a single excerpt string against one source."""
        excerpt = Excerpt(text=text, source_id=source.source_id)
        return self.missing_part(excerpt, self.normalize(answer_only(source.raw_text))) is None

    def validate(
        self,
        excerpts: Mapping[str, Sequence[Excerpt]],
        sources: Mapping[str, SourceRecord],
        categories: Sequence[Category],
        assignments: Sequence[Assignment],
    ) -> ValidationReport:
        """
        Validate a task's excerpt map.

        Args:
            excerpts: category_id -> excerpts claimed for that category
            sources: source_id -> respondent record
            categories: the task's categories
            assignments: the task's classification results

        Returns:
            ValidationReport; passed is True iff no errors were recorded
        """
        report = ValidationReport()
        known_categories = {c.category_id for c in categories}
        assigned = {a.source_id: a.category_id for a in assignments}
        normalized_sources: Dict[str, str] = {}
        seen: Dict[Tuple[str, str], List[str]] = {}

        for category in categories:
            report.counts_by_category[category.category_id] = 0

        for category_id, items in (excerpts or {}).items():
            items = list(items or [])
            report.counts_by_category[category_id] = len(items)
            report.total_excerpts += len(items)
            report.verified[category_id] = []
            if category_id not in known_categories:
                report.warnings.append(f"Excerpts filed under unknown category '{category_id}'")

            for index, excerpt in enumerate(items):
                label = f"{category_id}[{index}]"
                error = self._structural_error(excerpt, sources, label)
                if error:
                    report.errors.append(error)
                    continue

                source_id = excerpt.source_id
                if source_id not in normalized_sources:
                    normalized_sources[source_id] = self.normalize(answer_only(sources[source_id].raw_text))
                normalized_source = normalized_sources[source_id]
                if not normalized_source:
                    report.errors.append(f"{label}: source {source_id} has no answer text")
                    continue

                failed = self.missing_part(excerpt, normalized_source)
                if failed is not None:
                    hallucination = self._hallucination(excerpt, failed, label)
                    report.hallucinations.append(hallucination)
                    report.errors.append(str(hallucination))
                    continue

                report.verified[category_id].append(excerpt.model_copy(update={"verified": True}))
                self._excerpt_warnings(excerpt, label, report)

                owner = assigned.get(source_id)
                if owner is not None and owner != category_id:
                    report.warnings.append(
                        f"{label}: attribution mismatch, source {source_id} is assigned to '{owner}'"
                    )

                key = (source_id, self.normalize(excerpt.text))
                seen.setdefault(key, [])
                if category_id not in seen[key]:
                    seen[key].append(category_id)

        for (source_id, _), category_ids in seen.items():
            if len(category_ids) > 1:
                report.warnings.append(
                    f"Duplicate excerpt from source {source_id} under categories: {', '.join(category_ids)}"
                )

        for category in categories:
            if report.counts_by_category.get(category.category_id, 0) == 0:
                report.warnings.append(f"Category '{category.title}' ({category.category_id}) has no excerpts")

        report.passed = not report.errors
        if report.hallucinations:
            logger.info(f"Verbatim check found {len(report.hallucinations)} hallucinated excerpts")
        return report

    def _structural_error(self, excerpt: Excerpt, sources: Mapping[str, SourceRecord], label: str) -> Optional[str]:
        if not excerpt.text or not any(self.normalize(part) for part in excerpt.parts(self.config.part_separator)):
            return f"{label}: excerpt text is empty"
        if not excerpt.source_id:
            return f"{label}: excerpt has no source id"
        if excerpt.source_id not in sources:
            return f"{label}: unknown source {excerpt.source_id}"
        return None

    def _hallucination(self, excerpt: Excerpt, failed: str, label: str) -> HallucinationError:
        message = f"HALLUCINATED EXCERPT {label}: \"{excerpt.text}\" not found verbatim in source {excerpt.source_id}"
        if failed.strip() != excerpt.text.strip():
            message += f" (part \"{failed}\" missing)"
        return HallucinationError(message, source_id=excerpt.source_id, excerpt=excerpt.text, failed_part=failed)

    def _excerpt_warnings(self, excerpt: Excerpt, label: str, report: ValidationReport) -> None:
        text = excerpt.text.strip()
        words = word_count(text)
        if words < self.config.min_words:
            report.warnings.append(f"{label}: excerpt is very short ({words} words)")
        if len(text) > self.config.max_length:
            report.warnings.append(f"{label}: excerpt is very long ({len(text)} characters)")
        if text.startswith(_ELLIPSES) or text.endswith(_ELLIPSES):
            report.warnings.append(f"{label}: excerpt appears truncated")
