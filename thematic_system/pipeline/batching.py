"""
Bounded batch runner with completion-rate gating.

Large item sets are split into fixed-size batches, each sent to the
generator in one call. A batch whose completion rate falls below the
acceptance rate is retried with exponential backoff plus jitter; a batch that
never recovers aborts the run.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_random

from ..config import BatchPolicy
from ..exceptions import FatalExternalError, RetryExhaustedError, TransientExternalError
from ..llm.errors import classify_error

logger = structlog.get_logger(__name__)

BatchCall = Callable[[Sequence[Any]], Awaitable[Sequence[Any]]]


class IncompleteBatchError(Exception):
    """A batch call returned too few units; retried like a transient failure."""

    def __init__(self, batch_number: int, received: int, expected: int):
        super().__init__(f"Batch {batch_number} returned {received}/{expected} units")
        self.received = received
        self.expected = expected


@dataclass
class BatchJob:
    batch_number: int  # 1-based
    items: Sequence[Any]
    attempt: int = 0
    last_completion_rate: float = 0.0
    status: str = "pending"  # pending | complete | partial | failed

    @property
    def size(self) -> int:
        return len(self.items)


@dataclass
class BatchRunResult:
    units: List[Any] = field(default_factory=list)
    expected_count: int = 0
    actual_count: int = 0
    total_batches: int = 0
    retried_batches: int = 0
    partial_batches: int = 0
    warnings: List[str] = field(default_factory=list)
    jobs: List[BatchJob] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.expected_count:
            return 1.0
        return self.actual_count / self.expected_count


def backoff_wait(policy: BatchPolicy):
    """Delay before retry n: 2**n * base_delay plus uniform jitter, capped at max_delay."""
    # tenacity counts the failed attempt from 1
    return wait_exponential(multiplier=2 * policy.base_delay, max=policy.max_delay) + wait_random(0, policy.jitter)


async def call_with_backoff(fn: Callable[[], Awaitable[Any]], policy: BatchPolicy,
                            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> Any:
    """
    Await fn, retrying retryable generator errors with the shared backoff policy.

    Non-retryable errors propagate as FatalExternalError; retryable ones that
    outlast the policy become RetryExhaustedError.
    """
    async def invoke():
        try:
            return await fn()
        except (TransientExternalError, FatalExternalError):
            raise
        except Exception as e:
            kind = classify_error(e)
            if kind.retryable:
                raise TransientExternalError(str(e), kind=kind.value) from e
            raise FatalExternalError(str(e), kind=kind.value) from e

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=backoff_wait(policy),
        retry=retry_if_exception_type(TransientExternalError),
        sleep=sleep,
        reraise=True,
    )
    try:
        return await retrying(invoke)
    except TransientExternalError as e:
        raise RetryExhaustedError(
            f"Gave up after {policy.max_retries + 1} attempts: {e}",
            attempts=policy.max_retries + 1,
        ) from e


def partition(items: Sequence[Any], batch_size: int) -> List[Sequence[Any]]:
    """Split items into contiguous batches; the last one may be smaller."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [items[i:i + batch_size] for i in range(0, len(items), batch_size)]


class BoundedBatchRunner:
    """Runs a per-batch generator call over a large item set."""

    def __init__(self, policy: Optional[BatchPolicy] = None, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.policy = policy or BatchPolicy()
        self._sleep = sleep

    async def run(self, items: Sequence[Any], call: BatchCall, batch_size: Optional[int] = None) -> BatchRunResult:
        """
        Run call over items batch by batch.

        Args:
            items: Items to process
            call: async function mapping a batch to the units it produced
            batch_size: Override the policy's batch size

        Returns:
            BatchRunResult with accepted units in batch order

        Raises:
            RetryExhaustedError: a batch stayed below the acceptance rate, or kept
                failing with retryable errors, after all retries
            FatalExternalError: call failed with a non-retryable error
        """
        size = batch_size or self.policy.batch_size
        batches = partition(list(items), size)
        result = BatchRunResult(expected_count=len(items), total_batches=len(batches))
        logger.info("batch_run_start", items=len(items), batches=len(batches), batch_size=size)

        for number, batch in enumerate(batches, start=1):
            job = BatchJob(batch_number=number, items=batch)
            result.jobs.append(job)
            units = await self._run_job(job, call)

            if job.attempt > 1:
                result.retried_batches += 1
            if job.last_completion_rate < 1.0:
                job.status = "partial"
                result.partial_batches += 1
                result.warnings.append(
                    f"Batch {number}: partial success {len(units)}/{job.size} "
                    f"({job.last_completion_rate:.1%})"
                )
            else:
                job.status = "complete"
            result.units.extend(units)

        result.actual_count = len(result.units)
        logger.info(
            "batch_run_complete",
            expected=result.expected_count,
            actual=result.actual_count,
            success_rate=round(result.success_rate, 3),
            retried_batches=result.retried_batches,
            partial_batches=result.partial_batches,
        )
        return result

    async def _run_job(self, job: BatchJob, call: BatchCall) -> List[Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=backoff_wait(self.policy),
            retry=retry_if_exception_type((IncompleteBatchError, TransientExternalError)),
            before_sleep=lambda state: self._log_retry(job, state),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    job.attempt = attempt.retry_state.attempt_number
                    units = list(await self._invoke(job, call))
                    job.last_completion_rate = len(units) / job.size if job.size else 1.0
                    if job.last_completion_rate < self.policy.accept_rate:
                        raise IncompleteBatchError(job.batch_number, len(units), job.size)
        except IncompleteBatchError as e:
            job.status = "failed"
            raise RetryExhaustedError(
                f"Batch {job.batch_number} completion rate too low: {job.last_completion_rate:.1%} "
                f"({e.received}/{e.expected}) after {job.attempt} attempts",
                attempts=job.attempt,
                completion_rate=job.last_completion_rate,
            ) from e
        except TransientExternalError as e:
            job.status = "failed"
            raise RetryExhaustedError(
                f"Batch {job.batch_number} failed after {job.attempt} attempts: {e}",
                attempts=job.attempt,
            ) from e
        except FatalExternalError:
            job.status = "failed"
            raise
        return units

    async def _invoke(self, job: BatchJob, call: BatchCall) -> Sequence[Any]:
        try:
            return await call(job.items)
        except (TransientExternalError, FatalExternalError):
            raise
        except Exception as e:
            kind = classify_error(e)
            if kind.retryable:
                raise TransientExternalError(f"Batch {job.batch_number}: {e}", kind=kind.value) from e
            raise FatalExternalError(f"Batch {job.batch_number}: {e}", kind=kind.value) from e

    def _log_retry(self, job: BatchJob, retry_state) -> None:
        outcome = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "batch_retry",
            batch=job.batch_number,
            attempt=retry_state.attempt_number,
            completion_rate=round(job.last_completion_rate, 3),
            reason=str(outcome),
            wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        )
