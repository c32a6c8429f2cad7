from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Literal, Optional
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

DEFAULT_LLM: str = "disabled"  # CI-safe default, no secrets required


class Settings(BaseSettings):
    # ==== LLM provider ====
    LLM_PROVIDER: Literal["disabled", "openai", "anthropic"] = DEFAULT_LLM
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_API_BASE: Optional[str] = None
    ANTHROPIC_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = Field("gpt-4o-mini", description="OpenAI model to use")
    ANTHROPIC_MODEL: str = Field("claude-3-5-sonnet-20241022", description="Anthropic model to use")
    LLM_TEMPERATURE: float = Field(0.3, ge=0, le=2)
    LLM_MAX_TOKENS: int = Field(4000, gt=0)
    LLM_TIMEOUT_SECONDS: float = Field(120.0, gt=0, description="HTTP timeout for a single generator call")

    # ==== Orchestration ====
    MAX_CONCURRENT_TASKS: int = Field(6, ge=1, description="Pipelines in flight at once")
    TASK_TIMEOUT_SECONDS: float = Field(300.0, gt=0, description="Wall-clock budget per task")

    # ==== Classification batching ====
    CLASSIFY_BATCH_THRESHOLD: int = Field(25, ge=1, description="Above this many respondents, classify in batches")
    CLASSIFY_BATCH_SIZE: int = Field(25, ge=1)
    BATCH_MAX_RETRIES: int = Field(3, ge=0, description="Additional attempts per incomplete batch")
    BATCH_ACCEPT_RATE: float = Field(0.9, description="Minimum per-batch completion rate accepted without retry")
    RETRY_BASE_DELAY_SECONDS: float = Field(1.0, ge=0)
    RETRY_JITTER_SECONDS: float = Field(0.5, ge=0)
    RETRY_MAX_DELAY_SECONDS: float = Field(30.0, ge=0)

    # ==== Category generation ====
    MIN_CATEGORIES: int = Field(3, ge=1)
    MAX_CATEGORIES: int = Field(5, ge=1)

    # ==== Evidence extraction ====
    EVIDENCE_MAX_ATTEMPTS: int = Field(3, ge=1)
    EVIDENCE_FEEDBACK_ERRORS: int = Field(5, ge=0, description="Validation errors carried into the next attempt")
    MAX_EXCERPTS_PER_CATEGORY: int = Field(3, ge=1)
    EXCERPT_CASE_SENSITIVE: bool = False
    EXCERPT_PRESERVE_PUNCTUATION: bool = False
    EXCERPT_PART_SEPARATOR: str = " ... "
    EXCERPT_MIN_WORDS: int = Field(3, ge=0)
    EXCERPT_MAX_LENGTH: int = Field(500, ge=1)

    # ==== Quality scoring ====
    PENALTY_NO_CATEGORIES: int = Field(40, ge=0)
    PENALTY_NO_ASSIGNMENTS: int = Field(30, ge=0)
    PENALTY_NO_EXCERPTS: int = Field(15, ge=0)
    PENALTY_NO_SUMMARY: int = Field(15, ge=0)
    PENALTY_VALIDATION_FAILED: int = Field(10, ge=0)
    SCORE_GOOD: int = Field(80, ge=0, le=100)
    SCORE_ACCEPTABLE: int = Field(60, ge=0, le=100)
    PARTIAL_SUCCESS_WEIGHT: float = Field(0.7, ge=0, le=1)
    TARGETED_RETRY_BELOW: int = Field(60, ge=0, le=100)

    # ==== Logging ====
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = Field(True, description="Render logs as JSON lines (console renderer otherwise)")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    def model_post_init(self, __context):
        """Validate cross-field constraints after all fields are set"""
        if self.LLM_PROVIDER == "openai" and not self.OPENAI_API_KEY:
            raise ConfigurationError("OPENAI_API_KEY required for LLM_PROVIDER=openai")
        if self.LLM_PROVIDER == "anthropic" and not self.ANTHROPIC_API_KEY:
            raise ConfigurationError("ANTHROPIC_API_KEY required for LLM_PROVIDER=anthropic")
        if self.MIN_CATEGORIES > self.MAX_CATEGORIES:
            raise ConfigurationError(
                f"MIN_CATEGORIES ({self.MIN_CATEGORIES}) exceeds MAX_CATEGORIES ({self.MAX_CATEGORIES})"
            )
        if not 0 < self.BATCH_ACCEPT_RATE <= 1:
            raise ConfigurationError(f"BATCH_ACCEPT_RATE must be in (0, 1], got {self.BATCH_ACCEPT_RATE}")
        if self.SCORE_ACCEPTABLE > self.SCORE_GOOD:
            raise ConfigurationError("SCORE_ACCEPTABLE must not exceed SCORE_GOOD")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


@dataclass(frozen=True)
class BatchPolicy:
    """Retry and acceptance policy for batched generator calls."""
    batch_size: int = 25
    accept_rate: float = 0.9
    max_retries: int = 3
    base_delay: float = 1.0
    jitter: float = 0.5
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BatchPolicy":
        return cls(
            batch_size=settings.CLASSIFY_BATCH_SIZE,
            accept_rate=settings.BATCH_ACCEPT_RATE,
            max_retries=settings.BATCH_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )


@dataclass(frozen=True)
class ValidatorConfig:
    """Normalization and warning thresholds for verbatim excerpt checks."""
    case_sensitive: bool = False
    preserve_punctuation: bool = False
    part_separator: str = " ... "
    min_words: int = 3
    max_length: int = 500

    @classmethod
    def from_settings(cls, settings: Settings) -> "ValidatorConfig":
        return cls(
            case_sensitive=settings.EXCERPT_CASE_SENSITIVE,
            preserve_punctuation=settings.EXCERPT_PRESERVE_PUNCTUATION,
            part_separator=settings.EXCERPT_PART_SEPARATOR,
            min_words=settings.EXCERPT_MIN_WORDS,
            max_length=settings.EXCERPT_MAX_LENGTH,
        )


@dataclass(frozen=True)
class ScoringPolicy:
    """Per-component penalties and label thresholds for task quality scores."""
    no_categories: int = 40
    no_assignments: int = 30
    no_excerpts: int = 15
    no_summary: int = 15
    validation_failed: int = 10
    good: int = 80
    acceptable: int = 60
    partial_weight: float = 0.7
    targeted_retry_below: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringPolicy":
        return cls(
            no_categories=settings.PENALTY_NO_CATEGORIES,
            no_assignments=settings.PENALTY_NO_ASSIGNMENTS,
            no_excerpts=settings.PENALTY_NO_EXCERPTS,
            no_summary=settings.PENALTY_NO_SUMMARY,
            validation_failed=settings.PENALTY_VALIDATION_FAILED,
            good=settings.SCORE_GOOD,
            acceptable=settings.SCORE_ACCEPTABLE,
            partial_weight=settings.PARTIAL_SUCCESS_WEIGHT,
            targeted_retry_below=settings.TARGETED_RETRY_BELOW,
        )
