"""
Output validation: verbatim excerpt checks and category coverage.
"""

from .verbatim import VerbatimValidator, ValidationReport, excerpt_quality
from .coverage import CoverageReport, check_category_coverage
from .rescue import select_fallback_excerpt

__all__ = [
    'VerbatimValidator',
    'ValidationReport',
    'excerpt_quality',
    'CoverageReport',
    'check_category_coverage',
    'select_fallback_excerpt',
]
