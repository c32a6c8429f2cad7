"""
Generator interface, prompt rendering, response parsing and error classification.
"""

from .context import AttemptContext, PromptContext
from .errors import ExternalErrorKind, classify_error, is_retryable, suggests_payload_problem, to_external_error
from .generator import Generator, LLMGenerator

__all__ = [
    'AttemptContext',
    'PromptContext',
    'ExternalErrorKind',
    'classify_error',
    'is_retryable',
    'suggests_payload_problem',
    'to_external_error',
    'Generator',
    'LLMGenerator',
]
