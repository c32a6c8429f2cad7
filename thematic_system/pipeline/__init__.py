"""
Per-task stage pipeline and the bounded batch runner it uses for classification.
"""

from .batching import BatchJob, BatchRunResult, BoundedBatchRunner, call_with_backoff
from .state import STAGE_ORDER, PipelineState, StageError, StageOutcome
from .stages import StagePipeline

__all__ = [
    'BatchJob',
    'BatchRunResult',
    'BoundedBatchRunner',
    'call_with_backoff',
    'STAGE_ORDER',
    'PipelineState',
    'StageError',
    'StageOutcome',
    'StagePipeline',
]
