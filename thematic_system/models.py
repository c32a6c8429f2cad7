from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from enum import Enum

from .text.normalize import answer_only


class TaskStatus(str, Enum):
    """Outcome classification for one task"""
    FULL_SUCCESS = "full_success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class StageName(str, Enum):
    """Pipeline stages in execution order"""
    GENERATE_CATEGORIES = "generate_categories"
    CLASSIFY = "classify"
    EXTRACT_EVIDENCE = "extract_evidence"
    SUMMARIZE = "summarize"


class QualityLabel(str, Enum):
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    POOR = "poor"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SourceRecord(BaseModel):
    """One respondent's raw text with interleaved prompt:/answer: segments."""
    model_config = ConfigDict(frozen=True)

    source_id: str = Field(min_length=1)
    raw_text: str = ""

    @property
    def answer_text(self) -> str:
        return answer_only(self.raw_text)


class Task(BaseModel):
    """One independently processed survey question and its respondents."""
    model_config = ConfigDict(frozen=True)

    task_id: str = Field(min_length=1)
    items: List[SourceRecord] = Field(default_factory=list)
    context_text: str = ""
    precomputed_stats: Dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_unique_sources(self):
        seen = set()
        for record in self.items:
            if record.source_id in seen:
                raise ValueError(f"duplicate source_id {record.source_id!r} in task {self.task_id!r}")
            seen.add(record.source_id)
        return self

    def sources_by_id(self) -> Dict[str, SourceRecord]:
        return {record.source_id: record for record in self.items}


class Category(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_id: str
    title: str
    description: str
    estimated_count: int = Field(default=0, ge=0)


class Assignment(BaseModel):
    source_id: str
    category_id: str
    confidence: float = Field(default=0.5, ge=0, le=1)
    reasoning: str = ""


class Excerpt(BaseModel):
    """A claimed verbatim fragment of a respondent's answer."""
    text: str = ""
    source_id: str = ""
    verified: bool = False
    fallback: bool = False  # literal sentence picked from an assigned respondent

    def parts(self, separator: str) -> List[str]:
        """Ordered sub-fragments; a single-element list when the separator is absent.

        Empty fragments are kept so a dangling separator is visible to callers.
        """
        if separator and separator in self.text:
            return [part.strip() for part in self.text.split(separator)]
        return [self.text.strip()]


class Summary(BaseModel):
    headline: str
    summary: str
    insights: List[str]
    placeholder: bool = False

    @field_validator("headline", "summary")
    @classmethod
    def non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty string")
        return v.strip()

    @field_validator("insights")
    @classmethod
    def non_empty_insights(cls, v: List[str]) -> List[str]:
        cleaned = [item.strip() for item in v if isinstance(item, str) and item.strip()]
        if not cleaned:
            raise ValueError("at least one insight is required")
        return cleaned


class ComponentFailure(BaseModel):
    component: str
    severity: Severity
    description: str


class RecoveryRecommendation(BaseModel):
    """Advisory follow-up for tasks that failed or scored poorly. Never executed automatically."""
    strategy: str  # "retry_externally" | "targeted_component_retry"
    task_ids: List[str]
    description: str
    components: Dict[str, List[str]] = Field(default_factory=dict)


class ErrorPattern(BaseModel):
    pattern: str
    description: str
    affected_tasks: List[str] = Field(default_factory=list)
    severity: Severity = Severity.MEDIUM


class ErrorAnalysis(BaseModel):
    counts_by_category: Dict[str, int] = Field(default_factory=dict)
    tasks_by_category: Dict[str, List[str]] = Field(default_factory=dict)
    patterns: List[ErrorPattern] = Field(default_factory=list)
    quality_impact: str = "low"


class TaskResult(BaseModel):
    task_id: str
    status: TaskStatus
    state: Optional[Any] = None  # PipelineState; Any avoids a models -> pipeline import cycle
    quality_score: Optional[int] = Field(default=None, ge=0, le=100)
    quality_label: Optional[QualityLabel] = None
    component_failures: List[ComponentFailure] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class RunReport(BaseModel):
    results: List[TaskResult]
    total_tasks: int
    full_success_count: int = 0
    partial_success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    weighted_completion_rate: float = 0.0
    average_quality_score: Optional[float] = None
    recommendations: List[RecoveryRecommendation] = Field(default_factory=list)
    error_analysis: ErrorAnalysis = Field(default_factory=ErrorAnalysis)
    duration_seconds: float = 0.0

    def result_for(self, task_id: str) -> Optional[TaskResult]:
        for result in self.results:
            if result.task_id == task_id:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
