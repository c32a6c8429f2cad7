"""Inputs handed to the generator for one call."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..models import StageName


@dataclass(frozen=True)
class AttemptContext:
    """Retry bookkeeping threaded into an evidence-extraction call."""
    attempt: int = 1
    prior_errors: Tuple[str, ...] = ()

    def next(self, errors, limit: int) -> "AttemptContext":
        return AttemptContext(attempt=self.attempt + 1, prior_errors=tuple(errors[:limit]))


@dataclass(frozen=True)
class PromptContext:
    stage: StageName
    task_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempt: Optional[AttemptContext] = None
