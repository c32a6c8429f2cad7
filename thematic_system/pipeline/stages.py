"""
Per-task stage pipeline.

GENERATE_CATEGORIES -> CLASSIFY -> EXTRACT_EVIDENCE -> SUMMARIZE, strictly in
order. A stage that returns Err halts the task; later stages never run.
Evidence and summary problems are reported on the state instead of halting.
"""

import asyncio
import time
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from ..config import BatchPolicy, Settings, ValidatorConfig, get_settings
from ..exceptions import (
    FatalExternalError,
    RetryExhaustedError,
    ThematicSystemError,
    ValidationError,
    failure_kind_for,
)
from ..llm.context import AttemptContext, PromptContext
from ..llm.errors import classify_error, suggests_payload_problem, to_external_error
from ..llm.generator import Generator
from ..llm.parsing import parse_assignments, parse_categories, parse_excerpts, parse_summary
from ..models import Assignment, Excerpt, SourceRecord, StageName, Summary
from ..text.normalize import dedupe_preserving_order
from ..validation.coverage import check_category_coverage
from ..validation.rescue import select_fallback_excerpt
from ..validation.verbatim import VerbatimValidator, excerpt_quality
from .batching import BatchRunResult, BoundedBatchRunner, call_with_backoff
from .state import STAGE_ORDER, ClassificationMeta, EvidenceValidation, PipelineState, StageOutcome

logger = structlog.get_logger(__name__)


class StagePipeline:
    """Runs one task through the analysis stages against an injected generator."""

    def __init__(
        self,
        generator: Generator,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.generator = generator
        self.settings = settings or get_settings()
        self.batch_policy = BatchPolicy.from_settings(self.settings)
        self.validator = VerbatimValidator(ValidatorConfig.from_settings(self.settings))
        self.runner = BoundedBatchRunner(self.batch_policy, sleep=sleep)
        self._sleep = sleep
        self._stages = {
            StageName.GENERATE_CATEGORIES: self.generate_categories,
            StageName.CLASSIFY: self.classify,
            StageName.EXTRACT_EVIDENCE: self.extract_and_validate_evidence,
            StageName.SUMMARIZE: self.summarize,
        }

    async def run(self, task) -> PipelineState:
        """Run every stage in order; the returned state carries the halting error, if any."""
        state = PipelineState(task=task)
        log = logger.bind(task_id=task.task_id)

        for stage in STAGE_ORDER:
            started = time.monotonic()
            try:
                outcome = await self._stages[stage](state)
            except ThematicSystemError as e:
                outcome = StageOutcome.failure(stage, failure_kind_for(e), str(e))
            except Exception as e:
                log.exception("stage_crashed", stage=stage.value)
                outcome = StageOutcome.failure(stage, "unexpected", f"{type(e).__name__}: {e}")

            if not outcome.ok:
                log.warning("stage_failed", stage=stage.value, kind=outcome.error.kind, error=outcome.error.message)
                return state.model_copy(update={"error": outcome.error})

            state = outcome.state
            log.info("stage_complete", stage=stage.value, seconds=round(time.monotonic() - started, 3))
        return state

    async def _generate(self, context: PromptContext) -> str:
        return await call_with_backoff(lambda: self.generator.generate(context), self.batch_policy, sleep=self._sleep)

    # ------------------------------------------------------------------ stages

    async def generate_categories(self, state: PipelineState) -> StageOutcome:
        stage = StageName.GENERATE_CATEGORIES
        task = state.task
        answers = dedupe_preserving_order(record.answer_text for record in task.items)
        if not answers:
            return StageOutcome.failure(stage, ValidationError.failure_kind, "No respondent answers to categorize")

        context = PromptContext(
            stage=stage,
            task_id=task.task_id,
            payload={
                "context": task.context_text,
                "stats": task.precomputed_stats,
                "responses": answers,
                "min_categories": self.settings.MIN_CATEGORIES,
                "max_categories": self.settings.MAX_CATEGORIES,
            },
        )
        try:
            text = await self._generate(context)
            question, categories = parse_categories(
                text, self.settings.MIN_CATEGORIES, self.settings.MAX_CATEGORIES
            )
        except ThematicSystemError as e:
            return StageOutcome.failure(stage, failure_kind_for(e), str(e))

        return StageOutcome.success(state.advance(
            stage,
            derived_question=question or task.context_text or None,
            categories=categories,
        ))

    async def classify(self, state: PipelineState) -> StageOutcome:
        stage = StageName.CLASSIFY
        records = [record for record in state.task.items if record.answer_text]
        call = partial(self._classify_batch, state)
        log = logger.bind(task_id=state.task.task_id)

        try:
            result = None
            if len(records) <= self.settings.CLASSIFY_BATCH_THRESHOLD:
                result = await self._classify_direct(state, records)
            if result is None:
                log.info("classify_batched", respondents=len(records), batch_size=self.batch_policy.batch_size)
                result = await self.runner.run(records, call, batch_size=self.batch_policy.batch_size)
                mode = "batched"
            else:
                mode = "direct"
        except ThematicSystemError as e:
            return StageOutcome.failure(stage, failure_kind_for(e), str(e))

        assignments = self._dedupe_assignments(result.units)
        assigned_ids = {a.source_id for a in assignments}
        missing = [r.source_id for r in records if r.source_id not in assigned_ids]
        coverage = check_category_coverage(state.categories or [], assignments)

        warnings = list(result.warnings)
        blank = len(state.task.items) - len(records)
        if blank:
            warnings.append(f"{blank} respondents had no answer text and were not classified")
        if missing:
            warnings.append(f"{len(missing)} respondents were not classified: {', '.join(missing[:10])}")
            log.warning("classify_shortfall", missing=len(missing), expected=len(records))
        warnings.extend(coverage.warnings)

        meta = ClassificationMeta(
            mode=mode,
            expected=len(records),
            actual=len(assignments),
            missing_source_ids=missing,
            success_rate=round(len(assignments) / len(records), 4) if records else 1.0,
            total_batches=result.total_batches,
            retried_batches=result.retried_batches,
            partial_batches=result.partial_batches,
            distribution=coverage.distribution,
            average_confidence=coverage.average_confidence,
            warnings=warnings,
        )
        return StageOutcome.success(state.advance(stage, assignments=assignments, classification=meta))

    async def extract_and_validate_evidence(self, state: PipelineState) -> StageOutcome:
        stage = StageName.EXTRACT_EVIDENCE
        task = state.task
        categories = state.categories or []
        assignments = state.assignments or []
        sources = task.sources_by_id()
        members = self._members_by_category(categories, assignments)
        log = logger.bind(task_id=task.task_id)

        attempt_context = AttemptContext(attempt=1)
        report = None
        last_errors: List[str] = []
        attempts = 0

        for attempt in range(1, self.settings.EVIDENCE_MAX_ATTEMPTS + 1):
            attempts = attempt
            context = PromptContext(
                stage=stage,
                task_id=task.task_id,
                payload=self._evidence_payload(state, members, sources),
                attempt=attempt_context,
            )
            try:
                text = await self._generate(context)
            except (FatalExternalError, RetryExhaustedError) as e:
                last_errors = [f"Attempt {attempt}: {e}"]
                log.warning("evidence_generation_failed", attempt=attempt, error=str(e))
                break

            try:
                proposed = parse_excerpts(text)
            except ValidationError as e:
                last_errors = [f"Attempt {attempt}: {e}"]
                attempt_context = attempt_context.next(last_errors, self.settings.EVIDENCE_FEEDBACK_ERRORS)
                continue

            report = self.validator.validate(proposed, sources, categories, assignments)
            last_errors = list(report.errors)
            if report.passed:
                break
            log.info("evidence_retry", attempt=attempt, errors=len(report.errors),
                     hallucinations=len(report.hallucinations))
            attempt_context = attempt_context.next(report.errors, self.settings.EVIDENCE_FEEDBACK_ERRORS)

        verified = report.verified if report else {}
        excerpts = {
            c.category_id: self._best_excerpts(verified.get(c.category_id, []))
            for c in categories
        }
        warnings = list(report.warnings) if report else []

        fallback_categories = []
        for category in categories:
            if excerpts[category.category_id]:
                continue
            rescued = select_fallback_excerpt(members.get(category.category_id, []), sources, self.validator)
            if rescued is not None:
                excerpts[category.category_id] = [rescued]
                fallback_categories.append(category.category_id)
                warnings.append(f"Category '{category.title}' uses a fallback excerpt")

        validation = EvidenceValidation(
            passed=report is not None and report.passed,
            attempts=attempts,
            errors=last_errors,
            warnings=warnings,
            counts_by_category={cid: len(items) for cid, items in excerpts.items()},
            dropped_excerpts=(report.total_excerpts - report.verified_count) if report else 0,
            fallback_categories=fallback_categories,
        )
        if not validation.passed:
            log.warning("evidence_unverified", attempts=attempts, errors=len(last_errors))
        return StageOutcome.success(state.advance(stage, excerpts=excerpts, validation=validation))

    async def summarize(self, state: PipelineState) -> StageOutcome:
        stage = StageName.SUMMARIZE
        context = PromptContext(
            stage=stage,
            task_id=state.task.task_id,
            payload=self._summary_payload(state),
        )
        warning = None
        try:
            summary = parse_summary(await self.generator.generate(context))
        except Exception as e:
            warning = f"Summary generation failed, using placeholder: {e}"
            logger.warning("summary_placeholder", task_id=state.task.task_id, error=str(e))
            summary = self._placeholder_summary(state)
        return StageOutcome.success(state.advance(stage, summary=summary, summary_warning=warning))

    # ----------------------------------------------------------------- helpers

    async def _classify_batch(self, state: PipelineState, batch: Sequence[SourceRecord]) -> List[Assignment]:
        context = PromptContext(
            stage=StageName.CLASSIFY,
            task_id=state.task.task_id,
            payload={
                "question": state.derived_question,
                "categories": [
                    {"id": c.category_id, "title": c.title, "description": c.description}
                    for c in state.categories or []
                ],
                "responses": [{"sourceId": r.source_id, "text": r.answer_text} for r in batch],
            },
        )
        text = await self.generator.generate(context)
        return parse_assignments(text, [r.source_id for r in batch], state.categories or [])

    async def _classify_direct(self, state: PipelineState, records: Sequence[SourceRecord]) -> Optional[BatchRunResult]:
        """One call for the whole set; None means fall back to the batched path."""
        log = logger.bind(task_id=state.task.task_id)
        try:
            units = await self._classify_batch(state, records)
        except FatalExternalError:
            raise
        except Exception as e:
            if suggests_payload_problem(e) or classify_error(e).retryable:
                log.warning("classify_direct_fallback", error=str(e))
                return None
            raise to_external_error(e) from e

        rate = len(units) / len(records) if records else 1.0
        if rate < self.batch_policy.accept_rate:
            log.warning("classify_direct_fallback", completion_rate=round(rate, 3))
            return None

        result = BatchRunResult(units=list(units), expected_count=len(records),
                                actual_count=len(units), total_batches=1)
        if rate < 1.0:
            result.partial_batches = 1
            result.warnings.append(f"Direct classification partial success {len(units)}/{len(records)} ({rate:.1%})")
        return result

    @staticmethod
    def _dedupe_assignments(units: Sequence[Assignment]) -> List[Assignment]:
        seen = set()
        result = []
        for assignment in units:
            if assignment.source_id in seen:
                continue
            seen.add(assignment.source_id)
            result.append(assignment)
        return result

    @staticmethod
    def _members_by_category(categories, assignments) -> Dict[str, List[str]]:
        members = {c.category_id: [] for c in categories}
        for assignment in assignments:
            members.setdefault(assignment.category_id, []).append(assignment.source_id)
        return members

    def _evidence_payload(self, state: PipelineState, members, sources) -> dict:
        return {
            "question": state.derived_question,
            "max_excerpts": self.settings.MAX_EXCERPTS_PER_CATEGORY,
            "categories": [
                {
                    "id": c.category_id,
                    "title": c.title,
                    "description": c.description,
                    "responses": [
                        {"sourceId": sid, "text": sources[sid].answer_text}
                        for sid in members.get(c.category_id, []) if sid in sources
                    ],
                }
                for c in state.categories or []
            ],
        }

    def _best_excerpts(self, excerpts: Sequence[Excerpt]) -> List[Excerpt]:
        ranked = sorted(excerpts, key=lambda e: excerpt_quality(e.text, self.validator.config), reverse=True)
        return ranked[:self.settings.MAX_EXCERPTS_PER_CATEGORY]

    def _summary_payload(self, state: PipelineState) -> dict:
        distribution = state.classification.distribution if state.classification else {}
        return {
            "question": state.derived_question,
            "total_respondents": len(state.task.items),
            "categories": [
                {
                    "title": c.title,
                    "description": c.description,
                    "respondents": distribution.get(c.category_id, 0),
                    "excerpts": [e.text for e in (state.excerpts or {}).get(c.category_id, [])],
                }
                for c in state.categories or []
            ],
        }

    @staticmethod
    def _placeholder_summary(state: PipelineState) -> Summary:
        categories = state.categories or []
        distribution = state.classification.distribution if state.classification else {}
        insights = [f"{c.title}: {distribution.get(c.category_id, 0)} respondents" for c in categories]
        return Summary(
            headline=f"Results for {state.derived_question or state.task.task_id}",
            summary=f"{len(state.task.items)} responses grouped into {len(categories)} categories.",
            insights=insights or ["No insights available"],
            placeholder=True,
        )
