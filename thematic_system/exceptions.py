"""
Custom exceptions for the thematic analysis system
"""


class ThematicSystemError(Exception):
    """Base exception for thematic system"""
    failure_kind = "unexpected"


class ConfigurationError(ThematicSystemError):
    """Configuration related errors"""
    failure_kind = "configuration"


class ValidationError(ThematicSystemError):
    """Malformed or incomplete generator output, or failed structural checks"""
    failure_kind = "validation"


class HallucinationError(ValidationError):
    """Excerpt not found verbatim in the source it claims to come from"""
    failure_kind = "hallucination"

    def __init__(self, message: str, source_id: str = None, excerpt: str = None, failed_part: str = None):
        super().__init__(message)
        self.source_id = source_id
        self.excerpt = excerpt
        self.failed_part = failed_part


class RetryExhaustedError(ThematicSystemError):
    """Batch or evidence loop exceeded its attempt budget"""
    failure_kind = "retry_exhausted"

    def __init__(self, message: str, attempts: int = 0, completion_rate: float = None):
        super().__init__(message)
        self.attempts = attempts
        self.completion_rate = completion_rate


class TimeoutError(ThematicSystemError):
    """Operation timeout"""
    failure_kind = "timeout"


class ExternalServiceError(ThematicSystemError):
    """Error raised by the external text generator"""
    failure_kind = "external"

    def __init__(self, message: str, kind: str = "unknown", provider: str = None):
        super().__init__(message)
        self.kind = kind
        self.provider = provider


class TransientExternalError(ExternalServiceError):
    """Generator error classified as retryable (rate limit, network, server, parse)"""
    failure_kind = "transient_external"


class FatalExternalError(ExternalServiceError):
    """Generator error classified as non-retryable (auth, unknown)"""
    failure_kind = "fatal_external"


def failure_kind_for(exc: BaseException) -> str:
    """Map an exception onto the failure kind recorded in stage errors."""
    return getattr(exc, "failure_kind", "unexpected")
