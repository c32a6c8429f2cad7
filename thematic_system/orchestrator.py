"""
Fan-out orchestrator: runs many task pipelines under a concurrency ceiling.

Every task is isolated. A crash, timeout or failed stage in one task becomes
that task's Failure result and never reaches the caller or other tasks.
"""

import asyncio
import time
from typing import Callable, List, Optional, Sequence, Tuple

import structlog

from .config import ScoringPolicy, Settings, get_settings
from .core.error_analysis import analyze_results
from .core.recovery import synthesize_recommendations
from .core.scoring import assess_components, score_components
from .exceptions import TimeoutError as TaskTimeoutError, ValidationError
from .llm.generator import Generator
from .models import ComponentFailure, QualityLabel, RunReport, Severity, Task, TaskResult, TaskStatus
from .pipeline.stages import StagePipeline
from .pipeline.state import PipelineState

logger = structlog.get_logger(__name__)


def validate_tasks(tasks: Sequence[Task]) -> None:
    """Reject caller mistakes before any task starts."""
    if tasks is None:
        raise ValidationError("tasks must be a list of Task objects")
    seen = set()
    for index, task in enumerate(tasks):
        if not isinstance(task, Task):
            raise ValidationError(f"tasks[{index}] is {type(task).__name__}, expected Task")
        if task.task_id in seen:
            raise ValidationError(f"duplicate task_id {task.task_id!r}")
        seen.add(task.task_id)


class FanOutOrchestrator:
    """Runs one StagePipeline per task and aggregates the outcomes into a RunReport."""

    def __init__(
        self,
        generator: Generator,
        settings: Optional[Settings] = None,
        pipeline_factory: Optional[Callable[[], StagePipeline]] = None,
    ):
        self.generator = generator
        self.settings = settings or get_settings()
        self.scoring = ScoringPolicy.from_settings(self.settings)
        self._pipeline_factory = pipeline_factory or (lambda: StagePipeline(self.generator, self.settings))

    async def run_all(self, tasks: Sequence[Task], concurrency_limit: Optional[int] = None) -> RunReport:
        """
        Run every task and return the full report.

        Args:
            tasks: Tasks in submission order
            concurrency_limit: Pipelines in flight at once (defaults to MAX_CONCURRENT_TASKS)

        Returns:
            RunReport with results in submission order
        """
        validate_tasks(tasks)
        limit = self.settings.MAX_CONCURRENT_TASKS if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValidationError(f"concurrency_limit must be at least 1, got {limit}")

        started = time.monotonic()
        semaphore = asyncio.Semaphore(limit)
        logger.info("run_start", tasks=len(tasks), concurrency=limit)

        pending = [asyncio.ensure_future(self._run_one(index, task, semaphore)) for index, task in enumerate(tasks)]
        collected: List[Tuple[int, TaskResult]] = []
        try:
            for next_done in asyncio.as_completed(pending):
                index, result = await next_done
                collected.append((index, result))
                logger.info(
                    "task_progress",
                    task_id=result.task_id,
                    status=result.status.value,
                    completed=len(collected),
                    total=len(tasks),
                )
        except asyncio.CancelledError:
            for future in pending:
                future.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("run_cancelled", completed=len(collected), total=len(tasks))
            raise

        collected.sort(key=lambda pair: pair[0])
        report = self.build_report([result for _, result in collected], time.monotonic() - started)
        logger.info(
            "run_complete",
            full=report.full_success_count,
            partial=report.partial_success_count,
            failed=report.failure_count,
            skipped=report.skipped_count,
            weighted_completion_rate=round(report.weighted_completion_rate, 3),
            seconds=round(report.duration_seconds, 2),
        )
        return report

    async def _run_one(self, index: int, task: Task, semaphore: asyncio.Semaphore) -> Tuple[int, TaskResult]:
        if not task.items:
            return index, TaskResult(
                task_id=task.task_id,
                status=TaskStatus.SKIPPED,
                warnings=["Task has no respondent records"],
            )

        async with semaphore:
            started = time.monotonic()
            log = logger.bind(task_id=task.task_id)
            try:
                state = await asyncio.wait_for(
                    self._pipeline_factory().run(task),
                    timeout=self.settings.TASK_TIMEOUT_SECONDS,
                )
                result = self.classify_result(task, state)
            except asyncio.TimeoutError:
                error = TaskTimeoutError(f"Task exceeded {self.settings.TASK_TIMEOUT_SECONDS:g}s timeout")
                log.warning("task_timeout", timeout=self.settings.TASK_TIMEOUT_SECONDS)
                result = self._failure(task, "task", error.failure_kind, str(error))
            except Exception as e:
                log.exception("task_crashed")
                result = self._failure(task, "task", "unexpected", f"{type(e).__name__}: {e}")
            result.duration_seconds = round(time.monotonic() - started, 3)
            return index, result

    def _failure(self, task: Task, component: str, kind: str, message: str,
                 state: Optional[PipelineState] = None) -> TaskResult:
        return TaskResult(
            task_id=task.task_id,
            status=TaskStatus.FAILURE,
            state=state,
            quality_score=0,
            quality_label=QualityLabel.POOR,
            component_failures=[ComponentFailure(component=component, severity=Severity.CRITICAL, description=message)],
            errors=[f"{kind}: {message}"],
        )

    def classify_result(self, task: Task, state: PipelineState) -> TaskResult:
        """Turn a finished pipeline state into a scored TaskResult."""
        if state.error is not None:
            return self._failure(task, state.error.stage.value, state.error.kind, state.error.message, state)

        failures = assess_components(state)
        score, label = score_components(failures, self.scoring)

        warnings = []
        if state.classification:
            warnings.extend(state.classification.warnings)
        if state.validation:
            warnings.extend(state.validation.warnings)
            if not state.validation.passed:
                warnings.extend(f"Unverified evidence: {error}" for error in state.validation.errors)
        if state.summary_warning:
            warnings.append(state.summary_warning)

        return TaskResult(
            task_id=task.task_id,
            status=TaskStatus.PARTIAL_SUCCESS if failures else TaskStatus.FULL_SUCCESS,
            state=state,
            quality_score=score,
            quality_label=label,
            component_failures=failures,
            warnings=warnings,
        )

    def build_report(self, results: List[TaskResult], duration_seconds: float = 0.0) -> RunReport:
        """Aggregate task results (already in submission order) into a RunReport."""
        by_status = {status: 0 for status in TaskStatus}
        for result in results:
            by_status[result.status] += 1

        non_skipped = len(results) - by_status[TaskStatus.SKIPPED]
        weighted = 0.0
        if non_skipped:
            weighted = (
                by_status[TaskStatus.FULL_SUCCESS]
                + self.scoring.partial_weight * by_status[TaskStatus.PARTIAL_SUCCESS]
            ) / non_skipped

        scores = [r.quality_score for r in results if r.status != TaskStatus.SKIPPED and r.quality_score is not None]
        average = round(sum(scores) / len(scores), 1) if scores else None

        return RunReport(
            results=results,
            total_tasks=len(results),
            full_success_count=by_status[TaskStatus.FULL_SUCCESS],
            partial_success_count=by_status[TaskStatus.PARTIAL_SUCCESS],
            failure_count=by_status[TaskStatus.FAILURE],
            skipped_count=by_status[TaskStatus.SKIPPED],
            weighted_completion_rate=weighted,
            average_quality_score=average,
            recommendations=synthesize_recommendations(results, self.scoring),
            error_analysis=analyze_results(results, weighted),
            duration_seconds=round(duration_seconds, 3),
        )
