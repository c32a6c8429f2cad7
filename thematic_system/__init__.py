"""
Thematic System - resilient, verified thematic analysis of survey responses
"""

__version__ = "1.0.0"
__author__ = "Thematic System Team"

__all__ = [
    "FanOutOrchestrator",
    "StagePipeline",
    "BoundedBatchRunner",
    "VerbatimValidator",
    "Task",
    "SourceRecord",
    "Settings",
    "__version__",
    "__author__",
]

def __getattr__(name: str):
    """Lazy import to avoid import-time side effects."""
    if name == "FanOutOrchestrator":
        from .orchestrator import FanOutOrchestrator
        return FanOutOrchestrator
    elif name == "StagePipeline":
        from .pipeline.stages import StagePipeline
        return StagePipeline
    elif name == "BoundedBatchRunner":
        from .pipeline.batching import BoundedBatchRunner
        return BoundedBatchRunner
    elif name == "VerbatimValidator":
        from .validation.verbatim import VerbatimValidator
        return VerbatimValidator
    elif name in ("Task", "SourceRecord"):
        from . import models
        return getattr(models, name)
    elif name == "Settings":
        from thematic_system.config import Settings
        return Settings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
