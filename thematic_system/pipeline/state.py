"""
Pipeline state and stage outcomes.

PipelineState accretes fields stage by stage. Each optional field is owned by
exactly one stage and stays None until that stage returns Ok; later stages read
it but never replace it.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import Assignment, Category, Excerpt, StageName, Summary, Task

STATE_VERSION = 1

STAGE_ORDER = (
    StageName.GENERATE_CATEGORIES,
    StageName.CLASSIFY,
    StageName.EXTRACT_EVIDENCE,
    StageName.SUMMARIZE,
)


class StageError(BaseModel):
    stage: StageName
    kind: str
    message: str


class ClassificationMeta(BaseModel):
    mode: str = "direct"  # direct | batched
    expected: int = 0
    actual: int = 0
    missing_source_ids: List[str] = Field(default_factory=list)
    success_rate: float = 1.0
    total_batches: int = 1
    retried_batches: int = 0
    partial_batches: int = 0
    distribution: Dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0
    warnings: List[str] = Field(default_factory=list)


class EvidenceValidation(BaseModel):
    passed: bool = False
    attempts: int = 0
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    counts_by_category: Dict[str, int] = Field(default_factory=dict)
    dropped_excerpts: int = 0
    fallback_categories: List[str] = Field(default_factory=list)


class PipelineState(BaseModel):
    version: int = STATE_VERSION
    task: Task
    completed_stages: List[StageName] = Field(default_factory=list)

    # GENERATE_CATEGORIES
    derived_question: Optional[str] = None
    categories: Optional[List[Category]] = None

    # CLASSIFY
    assignments: Optional[List[Assignment]] = None
    classification: Optional[ClassificationMeta] = None

    # EXTRACT_EVIDENCE
    excerpts: Optional[Dict[str, List[Excerpt]]] = None
    validation: Optional[EvidenceValidation] = None

    # SUMMARIZE
    summary: Optional[Summary] = None
    summary_warning: Optional[str] = None

    # set by the pipeline when a stage returns Err
    error: Optional[StageError] = None

    @property
    def halted(self) -> bool:
        return self.error is not None

    @property
    def excerpt_count(self) -> int:
        return sum(len(items) for items in (self.excerpts or {}).values())

    def advance(self, stage: StageName, **updates) -> "PipelineState":
        """Return a copy with the stage's fields set and the stage marked complete."""
        updates["completed_stages"] = list(self.completed_stages) + [stage]
        return self.model_copy(update=updates)


@dataclass(frozen=True)
class StageOutcome:
    """Ok(state) or Err(error); never both."""
    state: Optional[PipelineState] = None
    error: Optional[StageError] = None

    def __post_init__(self):
        if (self.state is None) == (self.error is None):
            raise ValueError("StageOutcome must carry exactly one of state or error")

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, state: PipelineState) -> "StageOutcome":
        return cls(state=state)

    @classmethod
    def failure(cls, stage: StageName, kind: str, message: str) -> "StageOutcome":
        return cls(error=StageError(stage=stage, kind=kind, message=message))
