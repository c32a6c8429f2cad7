"""Unit tests for quality scoring, recovery recommendations and error analysis."""

import pytest

from thematic_system.config import ScoringPolicy
from thematic_system.core.error_analysis import ErrorCategory, analyze_results, categorize_error, quality_impact
from thematic_system.core.recovery import RETRY_EXTERNALLY, TARGETED_COMPONENT_RETRY, synthesize_recommendations
from thematic_system.core.scoring import assess_components, score_components
from thematic_system.models import (
    Assignment,
    Category,
    ComponentFailure,
    Excerpt,
    QualityLabel,
    Severity,
    SourceRecord,
    Summary,
    Task,
    TaskResult,
    TaskStatus,
)
from thematic_system.pipeline.state import EvidenceValidation, PipelineState


def _failure(component):
    return ComponentFailure(component=component, severity=Severity.MEDIUM, description=component)


def _complete_state(**overrides):
    fields = dict(
        task=Task(task_id="q1", items=[SourceRecord(source_id="r1", raw_text="answer: cheap plans please")]),
        categories=[Category(category_id="price", title="Price", description="Cost")],
        assignments=[Assignment(source_id="r1", category_id="price")],
        excerpts={"price": [Excerpt(text="cheap plans please", source_id="r1", verified=True)]},
        validation=EvidenceValidation(passed=True, attempts=1),
        summary=Summary(headline="H", summary="S", insights=["I"]),
    )
    fields.update(overrides)
    return PipelineState(**fields)


class TestScoring:
    """Test component penalties and labels."""

    def test_complete_state_has_no_failures(self):
        """Test a fully populated state scores 100."""
        failures = assess_components(_complete_state())
        assert failures == []
        assert score_components(failures) == (100, QualityLabel.GOOD)

    def test_missing_components_detected(self):
        """Test each absent component is listed."""
        state = _complete_state(
            assignments=[],
            excerpts={"price": []},
            summary=Summary(headline="H", summary="S", insights=["I"], placeholder=True),
            validation=EvidenceValidation(passed=False, attempts=3, errors=["x"]),
        )
        components = [f.component for f in assess_components(state)]
        assert components == ["assignments", "excerpts", "summary", "validation"]

    @pytest.mark.parametrize("components,score,label", [
        (["summary"], 85, QualityLabel.GOOD),
        (["validation"], 90, QualityLabel.GOOD),
        (["excerpts", "validation"], 75, QualityLabel.ACCEPTABLE),
        (["assignments", "validation"], 60, QualityLabel.ACCEPTABLE),
        (["categories", "excerpts"], 45, QualityLabel.POOR),
        (["categories", "assignments", "excerpts", "summary", "validation"], 0, QualityLabel.POOR),
    ])
    def test_penalties(self, components, score, label):
        """Test scores and labels for combinations of missing components."""
        assert score_components([_failure(c) for c in components]) == (score, label)

    def test_score_floored_at_zero(self):
        """Test heavy custom penalties never go negative."""
        policy = ScoringPolicy(no_categories=80, no_assignments=80)
        assert score_components([_failure("categories"), _failure("assignments")], policy)[0] == 0

    def test_unknown_component_costs_nothing(self):
        """Test components without a penalty do not change the score."""
        assert score_components([_failure("task")])[0] == 100


class TestRecommendations:
    """Test recovery-strategy synthesis."""

    def test_failures_and_weak_partials(self):
        """Test failed tasks get external retry and weak partials get targeted retry."""
        results = [
            TaskResult(task_id="a", status=TaskStatus.FULL_SUCCESS, quality_score=100),
            TaskResult(task_id="b", status=TaskStatus.FAILURE, quality_score=0,
                       component_failures=[_failure("classify")]),
            TaskResult(task_id="c", status=TaskStatus.PARTIAL_SUCCESS, quality_score=45,
                       component_failures=[_failure("categories"), _failure("excerpts")]),
            TaskResult(task_id="d", status=TaskStatus.PARTIAL_SUCCESS, quality_score=85,
                       component_failures=[_failure("summary")]),
            TaskResult(task_id="e", status=TaskStatus.SKIPPED),
        ]
        recommendations = synthesize_recommendations(results)

        assert [r.strategy for r in recommendations] == [RETRY_EXTERNALLY, TARGETED_COMPONENT_RETRY]
        assert recommendations[0].task_ids == ["b"]
        assert recommendations[1].task_ids == ["c"]
        assert recommendations[1].components == {"c": ["categories", "excerpts"]}

    def test_threshold_is_exclusive(self):
        """Test a partial scoring exactly 60 gets no targeted retry."""
        results = [TaskResult(task_id="a", status=TaskStatus.PARTIAL_SUCCESS, quality_score=60)]
        assert synthesize_recommendations(results) == []


class TestErrorAnalysis:
    """Test cross-task error categorization."""

    @pytest.mark.parametrize("message,category", [
        ("fatal_external: 429 rate limit", ErrorCategory.QUOTA_EXCEEDED),
        ("timeout: Task exceeded 300s timeout", ErrorCategory.TIMEOUT),
        ("Connection reset", ErrorCategory.NETWORK_ERROR),
        ("HALLUCINATED EXCERPT price[0]", ErrorCategory.VALIDATION_FAILURE),
        ("Unparseable JSON in generator response", ErrorCategory.PARSING_ERROR),
        ("No respondent answers to categorize", ErrorCategory.DATA_QUALITY),
        ("", ErrorCategory.UNKNOWN),
        ("???", ErrorCategory.UNKNOWN),
    ])
    def test_categorize(self, message, category):
        """Test messages map to their error category."""
        assert categorize_error(message) == category

    @pytest.mark.parametrize("rate,impact", [(1.0, "high"), (0.9, "high"), (0.6, "medium"), (0.2, "low")])
    def test_quality_impact(self, rate, impact):
        """Test impact bands from weighted completion."""
        assert quality_impact(rate) == impact

    def test_patterns_across_tasks(self):
        """Test repeated evidence failures and widespread quota errors form patterns."""
        results = [
            TaskResult(task_id="a", status=TaskStatus.FAILURE, errors=["fatal_external: 429 rate limit"],
                       component_failures=[_failure("classify")]),
            TaskResult(task_id="b", status=TaskStatus.FAILURE, errors=["retry_exhausted: quota exceeded"],
                       component_failures=[_failure("classify")]),
            TaskResult(task_id="c", status=TaskStatus.PARTIAL_SUCCESS, component_failures=[_failure("validation")]),
            TaskResult(task_id="d", status=TaskStatus.PARTIAL_SUCCESS, component_failures=[_failure("validation")]),
            TaskResult(task_id="skip", status=TaskStatus.SKIPPED, errors=["rate limit"]),
        ]
        analysis = analyze_results(results, 0.35)
        patterns = {p.pattern: p for p in analysis.patterns}

        assert patterns["widespread_generator_issues"].affected_tasks == ["a", "b"]
        assert patterns["classification_issues"].affected_tasks == ["a", "b"]
        assert patterns["evidence_validation_issues"].affected_tasks == ["c", "d"]
        assert analysis.quality_impact == "low"
        assert "skip" not in analysis.tasks_by_category.get("quota_exceeded", [])

    def test_clean_run_has_no_patterns(self):
        """Test successful results produce an empty analysis."""
        analysis = analyze_results([TaskResult(task_id="a", status=TaskStatus.FULL_SUCCESS)], 1.0)
        assert analysis.patterns == []
        assert analysis.counts_by_category == {}
        assert analysis.quality_impact == "high"
