"""
Run-level scoring, recovery recommendations and error analysis.
"""

from .scoring import assess_components, quality_label, score_components
from .recovery import RETRY_EXTERNALLY, TARGETED_COMPONENT_RETRY, synthesize_recommendations
from .error_analysis import ErrorCategory, analyze_results, categorize_error

__all__ = [
    'assess_components',
    'quality_label',
    'score_components',
    'RETRY_EXTERNALLY',
    'TARGETED_COMPONENT_RETRY',
    'synthesize_recommendations',
    'ErrorCategory',
    'analyze_results',
    'categorize_error',
]
